"""DeepSearch - evidence collection CLI

Runs one query, prints the validated references and, unless disabled,
a generated answer with linked citations.
"""

import argparse
import asyncio

from deepsearch.pipeline import DeepSearchPipeline


async def run_search(query: str, project: str, model: str | None = None, answer: bool = True):
    """Run a deep search on the given query."""
    print(f"Search query: {query}")
    print("-" * 50)

    pipeline = DeepSearchPipeline(project, model=model)
    result = await pipeline.run(query)

    print(f"\n[*] Sources ({len(result.sources)}):")
    for source in result.sources:
        ids = ", ".join(str(ref_id) for ref_id in source.reference_ids)
        print(f"  - {source.title} [{ids}]")
        print(f"    {source.url}")

    print(f"\n[*] References ({len(result.references)}):")
    for reference in result.references:
        print(f"  [{reference.ref_id}] {reference.url} (lines {reference.start_line}-{reference.end_line})")
        print(f"      {reference.viewpoint[:120]}")

    if result.errors:
        print(f"\n[!] Errors ({len(result.errors)}):")
        for error in result.errors:
            print(f"  - {error[:200]}")

    if result.fatal:
        print("\n[!] Every search or extract call failed; no usable evidence was collected.")

    if not answer:
        await pipeline.complete(result, "")
        return

    conclusion = await pipeline.generate_answer(result)
    linked = await pipeline.complete(result, conclusion)
    print(f"\n{'='*50}")
    print("ANSWER:")
    print(f"{'='*50}")
    print(linked)


def main():
    parser = argparse.ArgumentParser(description="DeepSearch evidence collection")
    parser.add_argument("--query", "-q", required=True, help="Search query")
    parser.add_argument("--model", "-m", help="Model to use (default: from config)")
    parser.add_argument("--project", "-p", default=".", help="Project directory holding the evidence store")
    parser.add_argument("--no-answer", action="store_true", help="Only collect references; skip answer generation")

    args = parser.parse_args()

    asyncio.run(run_search(args.query, args.project, args.model, answer=not args.no_answer))


if __name__ == "__main__":
    main()
