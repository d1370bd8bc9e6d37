"""medresearch - run one question through the research engine from a terminal."""

import argparse
import asyncio

from medresearch.agents.orchestrator import ResearchOrchestrator, make_query
from medresearch.engine import EngineConfig


async def run_research(question: str, user_id: str, show_tokens: bool = True):
    """Run one journey and print its events."""
    print(f"Question: {question}")
    print("-" * 50)

    orchestrator = ResearchOrchestrator(EngineConfig.from_settings())
    query = make_query(question, user_id)

    async for event in orchestrator.research(query):
        event_type = event.type.value
        data = event.data

        if event_type == "tier_selected":
            print(f"[*] Tier {data['tier']} ({data['processingTier']}), confidence {data['confidence']}")
            print(f"    {data.get('reasoning', '')}")

        elif event_type == "planning_complete":
            plan = data["plan"]
            print(f"\n[*] Plan: {plan['strategy']}, ~{plan['estimatedRounds']} rounds")
            for area in plan["focusAreas"]:
                print(f"    - {area}")

        elif event_type == "round_started":
            print(f"\n[~] Round {data['round']} ({data['purpose']}): {data['query'][:80]}")

        elif event_type == "api_completed":
            mark = "+" if data["success"] else "!"
            suffix = f" ({data['error']})" if data.get("error") else ""
            print(f"  [{mark}] {data['api']}: {data['count']} results in {data['duration']}ms{suffix}")

        elif event_type == "round_complete":
            print(f"  [=] {data['newSources']} new, {data['totalSources']} total, status {data['status']}")

        elif event_type == "reflection_complete":
            reflection = data["reflection"]
            print(
                f"  [?] evidence {reflection['evidenceQuality']}, "
                f"gap score {reflection['gapScore']}, decision {reflection['decision']}"
            )

        elif event_type == "synthesis_started":
            print(f"\n[+] Synthesizing from {data['totalSources']} sources...\n")

        elif event_type == "token":
            if show_tokens:
                print(data["content"], end="", flush=True)

        elif event_type == "complete":
            summary = data["metadata"].get("summary", {})
            print(f"\n\n[*] Complete ({data['processingTier']})")
            print(f"   Time: {summary.get('totalTime')}ms")
            print(f"   Tokens: {summary.get('totalTokens')}")
            print(f"   Sources: {len(data.get('sources', []))}")
            verification = data["metadata"].get("citationVerification")
            if verification and verification.get("available"):
                print(f"   Citation score: {verification.get('overallScore')}")
            for note in summary.get("recommendations", []):
                print(f"   - {note}")

        elif event_type == "error":
            print(f"\n[!] Error: {data.get('message', 'Unknown error')} ({data.get('reason')})")

    await orchestrator.wait_closed()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="medresearch", description="Tiered medical research engine")
    parser.add_argument("question", nargs="+", help="Question to research")
    parser.add_argument("--user", "-u", default="cli", help="User id recorded on the journey")
    parser.add_argument("--quiet", action="store_true", help="Do not print answer tokens")
    return parser


def main(argv: list[str] | None = None):
    args = build_parser().parse_args(argv)
    question = " ".join(args.question)

    asyncio.run(run_research(question, args.user, show_tokens=not args.quiet))


if __name__ == "__main__":
    main()
