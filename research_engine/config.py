from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter (completion provider)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "anthropic/claude-sonnet-4.5"
    openrouter_model: str = ""
    classifier_model: str = ""  # optional override for LLM classification only
    planner_model: str = ""  # optional override for plan generation only
    synthesis_model: str = ""  # optional override for answer synthesis only

    # Search provider
    search_provider: str = "perplexity"  # perplexity | tavily
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    tavily_api_key: str = ""
    search_fallback_to_tavily: bool = True
    search_timeout_seconds: float = 60.0
    search_retry_max: int = 0

    # Research pipeline policy
    research_max_rounds: int = 2
    research_max_queries_per_round: int = 5
    research_max_total_cost: float = 0.5  # USD per session
    research_parallel_searches: int = 3
    research_gap_threshold: float = 0.6
    research_timeout_ms: int = 120000
    min_confidence_to_complete: float = 0.8
    max_gaps_to_address: int = 3
    max_sub_questions: int = 5
    min_sub_questions_complex: int = 3
    fast_path_min_confidence: float = 0.7
    llm_classification_confidence: float = 0.8

    # Pricing (approximate USD)
    sonar_cost_per_query: float = 0.005
    sonar_pro_cost_per_query: float = 0.02
    llm_input_cost_per_1k: float = 0.003
    llm_output_cost_per_1k: float = 0.015

    # Streaming
    stream_delay_ms: int = 50
    progress_update_interval_ms: int = 500

    # App
    max_query_chars: int = 2000
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
