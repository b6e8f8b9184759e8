"""
CLI - Command-line entry point.

    arborist [--config PATH] [-v] index <path> [--no-prune] [--concurrency N]
    arborist [--config PATH] [-v] query <text> [--top-k N]
    arborist [--config PATH] [-v] status

Exit codes: 0 success (per-path failures included), 1 service unavailable,
2 invalid path or configuration, 130 interrupted.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import IndexerConfig, set_config
from .errors import PolicyError, SystemicError
from .models import IndexReport, SkipReason
from .orchestrator import Orchestrator


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SYSTEMIC = 1
EXIT_POLICY = 2
EXIT_INTERRUPTED = 130

SNIPPET_CHARS = 160


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arborist",
        description="Summarize a directory tree with a local LLM and search it",
    )
    parser.add_argument("--config", type=Path, help="Path to config.toml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    sub = parser.add_subparsers(dest="command", required=True)

    index = sub.add_parser("index", help="Index (or re-index) a directory")
    index.add_argument("path", type=Path, help="Directory to index")
    index.add_argument("--no-prune", action="store_true",
                       help="Keep entries for paths that no longer exist")
    index.add_argument("--concurrency", type=int, help="Parallel indexing workers")

    query = sub.add_parser("query", help="Search indexed summaries")
    query.add_argument("text", nargs="+", help="Natural-language query")
    query.add_argument("--top-k", type=int, help="Number of results")

    sub.add_parser("status", help="Show cache and collection counts")
    return parser


def _print_report(report: IndexReport) -> None:
    """Print the summary line and every path that was not indexed."""
    print(f"\n{report}")
    for failure in report.failures:
        print(f"  FAILED {failure}")
    for skipped in report.skips:
        if skipped.reason is SkipReason.EXTRACTION_FAILED:
            print(f"  SKIPPED {skipped}")


async def _index(orchestrator: Orchestrator, args) -> int:
    task = asyncio.ensure_future(orchestrator.index(args.path))
    try:
        report = await asyncio.shield(task)
    except asyncio.CancelledError:
        # Ctrl-C: stop taking new work and let in-flight entries finish.
        orchestrator.cancel()
        _print_report(await task)
        return EXIT_INTERRUPTED

    _print_report(report)
    return EXIT_OK


async def _query(orchestrator: Orchestrator, args) -> int:
    results = await orchestrator.search(" ".join(args.text), args.top_k)
    if not results:
        print("No results.")
    for result in results:
        snippet = " ".join(result.summary.split())
        if len(snippet) > SNIPPET_CHARS:
            snippet = snippet[:SNIPPET_CHARS - 3] + "..."
        print(f"{result.score:.4f}  {result.path}")
        print(f"        {snippet}")
    return EXIT_OK


async def _status(orchestrator: Orchestrator, args) -> int:
    for key, value in (await orchestrator.status()).items():
        print(f"{key:>12}: {value}")
    return EXIT_OK


COMMANDS = {
    "index": _index,
    "query": _query,
    "status": _status,
}


async def run(args, config: IndexerConfig) -> int:
    orchestrator = Orchestrator(config)
    try:
        return await COMMANDS[args.command](orchestrator, args)
    finally:
        await orchestrator.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    try:
        config = IndexerConfig.load(args.config)
        if args.command == "index":
            if args.no_prune:
                config.prune_missing = False
            if args.concurrency is not None:
                config.worker_concurrency = args.concurrency
        config.validate()
        set_config(config)
        return asyncio.run(run(args, config))
    except PolicyError as e:
        logger.error(f"{e}")
        return EXIT_POLICY
    except SystemicError as e:
        logger.error(f"{e}")
        return EXIT_SYSTEMIC
    except KeyboardInterrupt:
        print("\nStopped.")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
