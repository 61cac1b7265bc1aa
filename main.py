"""ContactScout - media contact discovery

Simple CLI for running a single search or serving the HTTP API.
"""

import argparse
import asyncio

import uvicorn

from contactscout.context import build_context
from contactscout.models.search import (
    Priority,
    SearchConfiguration,
    SearchCriteria,
    SearchOptions,
)


def _split(value: str | None) -> tuple[str, ...]:
    return tuple(v.strip() for v in (value or "").split(",") if v.strip())


async def run_search(args: argparse.Namespace) -> int:
    """Submit one search and print its progress until it finishes."""
    configuration = SearchConfiguration(
        query=args.query,
        criteria=SearchCriteria(
            countries=_split(args.countries),
            beats=_split(args.beats),
            languages=_split(args.languages),
            domains=_split(args.domains),
        ),
        options=SearchOptions(
            max_results=args.max_results,
            enable_ai_enhancement=not args.no_ai,
            enable_content_scraping=not args.no_scrape,
            enable_caching=False,
        ),
    )

    context = build_context()
    await context.startup()
    try:
        orchestrator = context.orchestrator
        print(f"Search query: {args.query}")
        print("-" * 50)

        submission = await orchestrator.submit_search(
            args.user, configuration, priority=Priority(args.priority)
        )
        subscription = orchestrator.subscribe(submission.search_id)
        async for snapshot in subscription:
            print(f"[{snapshot.percentage:5.1f}%] {snapshot.stage.value}: {snapshot.message}")

        view = await orchestrator.get_search_status(submission.search_id, args.user)
        if view is None:
            print("\n[!] Search record disappeared")
            return 1

        print(f"\n[*] Search {view.status.value}")
        if view.error:
            print(f"   Error ({view.failed_stage}): {view.error}")
        print(f"   Sources: {len(view.sources)}")
        print(f"   Contacts found: {view.contacts_found}, unique: {view.contacts_imported}")
        for contact in view.contacts:
            details = ", ".join(v for v in (contact.title, contact.outlet, contact.email) if v)
            print(f"  - {contact.name} ({details}) [{contact.confidence_score:.2f}]")
        return 0 if view.status.value == "COMPLETED" else 1
    finally:
        await context.close()


def main():
    parser = argparse.ArgumentParser(description="ContactScout media contact search")
    parser.add_argument("--query", "-q", help="Search query")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API instead of a single search")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--user", "-u", default="cli", help="User id to run the search as")
    parser.add_argument("--countries", help="Comma-separated countries")
    parser.add_argument("--beats", help="Comma-separated beats")
    parser.add_argument("--languages", help="Comma-separated languages")
    parser.add_argument("--domains", help="Comma-separated domains to restrict results to")
    parser.add_argument("--max-results", type=int, default=20, help="Maximum search results")
    parser.add_argument("--priority", choices=[p.value for p in Priority], default="normal")
    parser.add_argument("--no-ai", action="store_true", help="Disable LLM enhancement")
    parser.add_argument("--no-scrape", action="store_true", help="Use search snippets instead of scraping")

    args = parser.parse_args()

    if args.serve:
        uvicorn.run("contactscout.main:app", host=args.host, port=args.port)
        return
    if not args.query:
        parser.error("--query is required unless --serve is given")

    raise SystemExit(asyncio.run(run_search(args)))


if __name__ == "__main__":
    main()
