"""Research Engine - multi-round research orchestration

Simple CLI for running research queries.
"""

import argparse
import asyncio

from research_engine.agents.orchestrator import ResearchOrchestrator
from research_engine.models.research import QueryComplexity, ResearchOptions


async def run_research(query: str, options: ResearchOptions):
    """Run research on the given query."""
    print(f"Research query: {query}")
    print("-" * 50)

    orchestrator = ResearchOrchestrator()

    async for event in orchestrator.research(query, options):
        data = event.data

        if event.type == "classify":
            print(f"[*] Complexity: {data.complexity.value} ({data.confidence:.2f})")
            print(f"    {data.reasoning}")

        elif event.type == "plan":
            print(f"\n[*] Research Plan ({len(data.sub_questions)} sub-questions):")
            for sq in data.sub_questions:
                deps = f" (after {', '.join(sq.depends_on)})" if sq.depends_on else ""
                print(f"  {sq.id} [{sq.priority.value}] {sq.question[:80]}{deps}")

        elif event.type == "search_start":
            print(f"  [~] {data.sub_question_id}: {data.question[:80]}")

        elif event.type == "search_complete":
            print(f"  [+] {data.sub_question_id}: {data.citations_count} sources")

        elif event.type == "synthesize_start":
            print(f"\n[+] Synthesizing round {data.round} from {data.notes_count} notes", end="")

        elif event.type == "synthesize_progress":
            print(".", end="", flush=True)

        elif event.type == "gap_found":
            print(f"\n  [?] Gap ({data.gap.priority.value}): {data.gap.description}")

        elif event.type == "round2_start":
            print(f"\n[*] Round 2: {len(data.new_queries)} follow-up searches")

        elif event.type == "research_complete":
            print(f"\n\n[*] Research Complete!")
            print(f"   Runtime: {data.total_time}ms")
            print(f"   Queries: {data.metrics.total_queries}")
            print(f"   Estimated cost: ${data.metrics.estimated_cost_usd:.4f}")
            print(f"\n{'='*50}")
            print("ANSWER:")
            print(f"{'='*50}")
            print(data.answer)
            if data.citations:
                print("\nSources:")
                for index, citation in enumerate(data.citations, 1):
                    print(f"  [{index}] {citation.title} - {citation.url}")

        elif event.type == "error":
            print(f"\n[!] Error ({data.code}): {data.message}")


def main():
    parser = argparse.ArgumentParser(description="Research Engine")
    parser.add_argument("--query", "-q", required=True, help="Research query")
    parser.add_argument(
        "--force-complexity",
        choices=[c.value for c in QueryComplexity],
        help="Skip classification and use this complexity",
    )
    parser.add_argument("--skip-round2", action="store_true", help="Never run a repair round")
    parser.add_argument("--max-cost", type=float, help="Search budget in USD (default: from config)")
    parser.add_argument(
        "--llm-classification",
        action="store_true",
        help="Ask the completion provider when the heuristic is unsure",
    )

    args = parser.parse_args()
    options = ResearchOptions(
        use_llm_classification=args.llm_classification,
        force_complexity=QueryComplexity(args.force_complexity) if args.force_complexity else None,
        skip_round2=args.skip_round2,
        max_cost=args.max_cost,
    )

    asyncio.run(run_research(args.query, options))


if __name__ == "__main__":
    main()
