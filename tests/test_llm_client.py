"""Tests for the OpenRouter completion client."""
import sys
import types
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from research_engine.llm_client import (
    MessageResponse,
    OpenRouterMessagesAdapter,
    OpenRouterStream,
    TextBlock,
    get_client,
    get_model,
    response_text,
)


class TestGetModel:
    def test_get_model_returns_default_when_no_override(self):
        with patch("research_engine.llm_client.settings") as mock_settings:
            mock_settings.openrouter_model = ""
            mock_settings.default_model = "anthropic/claude-sonnet-4.5"

            assert get_model() == "anthropic/claude-sonnet-4.5"

    def test_get_model_prefers_phase_override(self):
        with patch("research_engine.llm_client.settings") as mock_settings:
            mock_settings.openrouter_model = "openai/gpt-4.1"
            mock_settings.default_model = "anthropic/claude-sonnet-4.5"

            assert get_model("  openai/gpt-4o-mini ") == "openai/gpt-4o-mini"
            assert get_model("") == "openai/gpt-4.1"


class TestGetClient:
    def test_get_client_uses_openrouter(self):
        with patch("research_engine.llm_client.settings") as mock_settings:
            mock_settings.openrouter_api_key = "sk-or-valid-key"
            mock_settings.openrouter_base_url = "https://openrouter.ai/api/v1"

            openai_module = types.ModuleType("openai")
            mock_openai = MagicMock()
            openai_module.AsyncOpenAI = mock_openai

            with patch.dict(sys.modules, {"openai": openai_module}):
                get_client()

            mock_openai.assert_called_once_with(
                api_key="sk-or-valid-key",
                base_url="https://openrouter.ai/api/v1",
            )


class TestOpenRouterAdapter:
    @pytest.mark.asyncio
    async def test_create_maps_system_prompt_and_usage(self):
        openai_client = MagicMock()
        openai_client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(content='{"ok": true}'))],
                usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
            )
        )
        adapter = OpenRouterMessagesAdapter(openai_client)

        response = await adapter.create(
            model="anthropic/claude-sonnet-4.5",
            max_tokens=100,
            system="be brief",
            messages=[{"role": "user", "content": "hi"}],
        )

        kwargs = openai_client.chat.completions.create.await_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "be brief"}
        assert kwargs["temperature"] == 0
        assert response_text(response) == '{"ok": true}'
        assert response.usage.input_tokens == 12

    def test_temperature_for_gpt5_models(self):
        assert OpenRouterMessagesAdapter._temperature_for_model("openai/gpt-5-mini") == 1
        assert OpenRouterMessagesAdapter._temperature_for_model("anthropic/claude") == 0


class TestOpenRouterStream:
    @pytest.mark.asyncio
    async def test_stream_collects_text_and_usage(self):
        chunks = [
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="Hello "))], usage=None),
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="world"))], usage=None),
            SimpleNamespace(choices=[], usage=SimpleNamespace(prompt_tokens=5, completion_tokens=2)),
        ]

        class FakeOpenAIStream:
            def __init__(self):
                self.closed = False

            def __aiter__(self):
                return self._gen()

            async def _gen(self):
                for chunk in chunks:
                    yield chunk

            async def close(self):
                self.closed = True

        raw = FakeOpenAIStream()

        async def opener():
            return raw

        async with OpenRouterStream(opener()) as stream:
            pieces = [text async for text in stream.text_stream]
            final = await stream.get_final_message()

        assert pieces == ["Hello ", "world"]
        assert response_text(final) == "Hello world"
        assert final.usage.output_tokens == 2
        assert raw.closed


def test_response_text_ignores_non_text_blocks():
    response = MessageResponse(
        content=[TextBlock(type="text", text="a"), TextBlock(type="image", text="x"), TextBlock(type="text", text="b")]
    )
    assert response_text(response) == "a\nb"
