"""
Derivation Worker CLI

Drives the derivation pipeline from the command line or a scheduler.

Usage:
    python -m newsroom_ai.worker run-once
    python -m newsroom_ai.worker loop --interval 60
    python -m newsroom_ai.worker status --item-id UUID
    python -m newsroom_ai.worker diagnose
    python -m newsroom_ai.worker seed-categories --languages en,te,hi
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from newsroom_ai.config import PipelineSettings
from newsroom_ai.errors import NotFoundError, PipelineError
from newsroom_ai.pipeline import DerivationPipeline, get_pipeline

logger = logging.getLogger("worker")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
DRAIN_TIMEOUT_SECONDS = 30.0


def configure_logging(verbose: bool = False) -> None:
    """Attach one stream handler to the root logger."""
    root = logging.getLogger()
    if not any(getattr(h, "_newsroom", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        handler._newsroom = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # Third-party clients are noisy at DEBUG
    for name in ("httpx", "httpcore", "anthropic", "aiohttp"):
        logging.getLogger(name).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def run_once(pipeline: DerivationPipeline) -> int:
    """One batch pass, then wait for detached callbacks and translations."""
    try:
        return await pipeline.run_once()
    finally:
        await pipeline.tasks.drain(timeout=DRAIN_TIMEOUT_SECONDS)


async def run_loop(
    pipeline: DerivationPipeline,
    interval: float,
    max_iterations: Optional[int] = None,
) -> None:
    """Run batches back to back with *interval* seconds between them.

    Passes never overlap: the next one starts only after the previous
    pass (and its sleep) finished.
    """
    iteration = 0
    logger.info("Worker loop started (interval=%.0fs)", interval)
    try:
        while max_iterations is None or iteration < max_iterations:
            iteration += 1
            try:
                await pipeline.run_once()
            except Exception as exc:
                logger.error("Batch pass %d failed: %s", iteration, exc)
            if max_iterations is not None and iteration >= max_iterations:
                break
            await asyncio.sleep(interval)
    finally:
        await pipeline.tasks.drain(timeout=DRAIN_TIMEOUT_SECONDS)
        logger.info("Worker loop stopped after %d pass(es)", iteration)


async def show_status(pipeline: DerivationPipeline, item_id: str) -> Dict[str, Any]:
    return await pipeline.item_status(item_id)


async def seed_categories(pipeline: DerivationPipeline, languages: list) -> int:
    return await pipeline.resolver.seed_core_categories(languages or None)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def main(argv: Optional[list] = None) -> None:
    """CLI entry point for the derivation worker."""
    parser = argparse.ArgumentParser(
        prog="newsroom_ai.worker",
        description="AI content derivation worker",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", help="Worker commands")

    # --- run-once ---
    subparsers.add_parser("run-once", help="Process one batch of eligible work items")

    # --- loop ---
    p_loop = subparsers.add_parser("loop", help="Process batches on a fixed interval")
    p_loop.add_argument("--interval", type=float, default=None, help="Seconds between passes")
    p_loop.add_argument("--max-iterations", type=int, default=None, help="Stop after N passes")

    # --- status ---
    p_status = subparsers.add_parser("status", help="Show a work item's processing state")
    p_status.add_argument("--item-id", required=True, help="Work item ID")

    # --- diagnose ---
    subparsers.add_parser("diagnose", help="Check provider connectivity and configuration")

    # --- seed-categories ---
    p_seed = subparsers.add_parser("seed-categories", help="Insert missing core news categories")
    p_seed.add_argument("--languages", default="", help="Comma-separated language codes")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(args.verbose)
    settings = PipelineSettings.from_env()

    try:
        pipeline = get_pipeline(settings)
    except PipelineError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    # ---- run-once ----
    if args.command == "run-once":
        processed = asyncio.run(run_once(pipeline))
        print(f"Processed {processed} work item(s).")

    # ---- loop ----
    elif args.command == "loop":
        interval = args.interval if args.interval is not None else settings.loop_interval_seconds
        try:
            asyncio.run(run_loop(pipeline, interval, args.max_iterations))
        except KeyboardInterrupt:
            print("\nStopped.")

    # ---- status ----
    elif args.command == "status":
        try:
            _print_json(asyncio.run(show_status(pipeline, args.item_id)))
        except NotFoundError:
            print(f"Work item '{args.item_id}' not found.")
            sys.exit(1)

    # ---- diagnose ----
    elif args.command == "diagnose":
        report = asyncio.run(pipeline.diagnose())
        _print_json(report)
        if not report.get("provider", {}).get("ok"):
            sys.exit(2)

    # ---- seed-categories ----
    elif args.command == "seed-categories":
        languages = [code.strip() for code in args.languages.split(",") if code.strip()]
        added = asyncio.run(seed_categories(pipeline, languages))
        print(f"Added {added} core categor{'y' if added == 1 else 'ies'}.")


if __name__ == "__main__":
    main()
