"""Command-line entry point for bulkgen."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence

from bulkgen.analyzer import summarize_plan
from bulkgen.config import load_config
from bulkgen.core import ProgressBarObserver
from bulkgen.items import fetch_items, load_items
from bulkgen.logging_utils import configure_logging
from bulkgen.models import ContentItem
from bulkgen.runtime import BulkGenerationRuntime, RunInProgressError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bulkgen", description="Bulk content-generation orchestrator")
    parser.add_argument("--config", help="Path to a YAML configuration file")
    parser.add_argument("--log-level", help="Console log level override (e.g. DEBUG)")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Generate every missing field for a batch of days")
    source = run.add_mutually_exclusive_group(required=True)
    source.add_argument("--items", help="JSON snapshot of the content overview")
    source.add_argument("--month", help="Fetch the overview for YYYY-MM from the API")
    run.add_argument("--mode", choices=("bible", "positivity"))
    run.add_argument("--translation", action="append", dest="translations", help="Expected translation code")
    run.add_argument("--concurrency", type=int)
    run.add_argument("--dry-run", action="store_true", help="Print the plan without generating")
    run.add_argument("--retry-failed", action="store_true", default=None)
    run.add_argument("--no-progress", action="store_true", help="Disable the per-phase progress bars")

    regenerate = commands.add_parser("regenerate", help="Regenerate one field of one day")
    regenerate.add_argument("--items", required=True, help="JSON snapshot of the content overview")
    regenerate.add_argument("--item-id", type=int, required=True)
    regenerate.add_argument("--field", required=True)
    regenerate.add_argument("--translation", help="Translation code for per-language fields")

    reconcile = commands.add_parser("reconcile", help="Resolve queue entries left running")
    reconcile.add_argument("--watch", action="store_true", help="Poll until no stale entries remain")

    queue = commands.add_parser("queue", help="Show or clear the generation queue")
    clearing = queue.add_mutually_exclusive_group()
    clearing.add_argument("--clear-completed", action="store_true")
    clearing.add_argument("--clear-all", action="store_true")
    return parser


def build_runtime(config: Dict[str, Any], logger: logging.Logger) -> BulkGenerationRuntime:
    return BulkGenerationRuntime(config, logger)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        result = load_config(args.config, include_sources=True)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1
    config, sources = result.config, result.sources
    logging_config = dict(config.get("logging", {}))
    logging_config.setdefault("log_dir", config.get("paths", {}).get("logs"))
    if args.log_level:
        logging_config["console_level"] = args.log_level
    logger = configure_logging(logging_config)
    logger.info("Loaded configuration from: %s", ", ".join(sources) or "<defaults>")

    runtime = build_runtime(config, logger)
    try:
        if args.command == "run":
            return _run(runtime, config, args, logger)
        if args.command == "regenerate":
            return _regenerate(runtime, args, logger)
        if args.command == "reconcile":
            remaining = asyncio.run(runtime.reconcile(watch=args.watch))
            logger.info("%d stale entr(ies) still running", remaining)
            return 0
        return _queue(runtime, args)
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        logger.warning("Interrupted by user.")
        return 1
    except RunInProgressError as exc:
        logger.error("%s", exc)
        return 1
    except Exception as exc:
        logger.exception("Runtime terminated due to unexpected error: %s", exc)
        return 1


def _load(config: Dict[str, Any], args: argparse.Namespace, mode: str, logger: logging.Logger) -> List[ContentItem]:
    if args.items:
        return load_items(args.items)
    api = config.get("api", {})
    return fetch_items(
        api["base_url"],
        month=args.month,
        mode=mode,
        items_path=api.get("items_path") or "/api/admin/content-production",
        auth_token=api.get("auth_token"),
        timeout=float(api.get("timeout", 30)),
        logger=logger,
    )


def _run(runtime: BulkGenerationRuntime, config: Dict[str, Any], args: argparse.Namespace, logger: logging.Logger) -> int:
    mode = args.mode or config.get("content", {}).get("mode", "bible")
    items = _load(config, args, mode, logger)
    if args.dry_run:
        tasks = runtime.plan(items, mode=mode, expected_translations=args.translations)
        for task in tasks:
            print(f"P{task.phase}  {task.post_date}  {task.label}")
        for phase, fields in summarize_plan(tasks).items():
            print(f"phase {phase}: " + ", ".join(f"{name}={count}" for name, count in fields.items()))
        print(f"{len(tasks)} task(s)")
        return 0

    result = asyncio.run(
        runtime.run_bulk(
            items,
            mode=mode,
            expected_translations=args.translations,
            concurrency=args.concurrency,
            retry_failed=args.retry_failed,
            observers=[ProgressBarObserver(disable=args.no_progress)],
            install_signals=True,
        )
    )
    return 0 if result.succeeded else 2


def _regenerate(runtime: BulkGenerationRuntime, args: argparse.Namespace, logger: logging.Logger) -> int:
    items = {item.id: item for item in load_items(args.items)}
    item = items.get(args.item_id)
    if item is None:
        logger.error("Item %s not found in %s", args.item_id, args.items)
        return 1
    outcome = asyncio.run(runtime.regenerate(item, args.field, args.translation))
    return 0 if outcome.ok else 2


def _queue(runtime: BulkGenerationRuntime, args: argparse.Namespace) -> int:
    if args.clear_completed:
        removed = asyncio.run(runtime.queue.clear_completed())
        print(f"Removed {removed} completed entr(ies)")
    elif args.clear_all:
        removed = asyncio.run(runtime.queue.clear_all())
        print(f"Removed {removed} entr(ies)")
    asyncio.run(runtime.queue.expire_successes())
    for entry in runtime.queue.entries():
        suffix = f"  {entry.error}" if entry.error else ""
        print(f"{entry.status:<8} {entry.post_date}  {entry.label}{suffix}")
    counts = runtime.queue.counts()
    print(", ".join(f"{status}={count}" for status, count in counts.items()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
