"""CLI entry points for exercising a hybrid store.

Usage::

    # Hammer one store with concurrent upserts and activity inserts,
    # then print the activity report:
    python -m hybridstore stress --db diskDb.db --putters 5 --recorders 5

    # Show the persisted entities:
    python -m hybridstore entities --db diskDb.db
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import sys
from collections.abc import Awaitable, Callable
from dataclasses import replace
from pathlib import Path

import anyio

from hybridstore.config import get_config
from hybridstore.errors import StorageError
from hybridstore.store import HybridStore

log = logging.getLogger(__name__)

# Entity id is the index into this list.
NAMES: tuple[str, ...] = ("Andy", "Jim", "Sue", "SueSpoon")


async def _putter(store: HybridStore, instance: int, iterations: int) -> str:
    """Upsert randomly chosen entities *iterations* times."""
    errors = 0
    for _ in range(iterations):
        which = random.randrange(len(NAMES))
        try:
            await store.upsert_entity(which, NAMES[which])
        except StorageError as exc:
            errors += 1
            log.warning("putter %d: %s", instance, exc)
    return f"putter {instance} finished ({errors} errors)"


async def _recorder(store: HybridStore, instance: int, iterations: int, entity_id: int) -> str:
    """Record *iterations* activity events for *entity_id*."""
    errors = 0
    for _ in range(iterations):
        try:
            await store.record_activity(entity_id)
        except StorageError as exc:
            errors += 1
            log.warning("recorder %d: %s", instance, exc)
    return f"recorder {instance} finished ({errors} errors)"


async def _stress(args: argparse.Namespace) -> int:
    cfg = get_config()
    if args.max_open is not None:
        cfg = replace(cfg, pool=replace(cfg.pool, max_open=args.max_open))

    async with HybridStore(args.db, config=cfg) as store:
        async def run(worker: Callable[..., Awaitable[str]], *worker_args: int) -> None:
            print(await worker(store, *worker_args))

        async with anyio.create_task_group() as tg:
            for p in range(args.putters):
                tg.start_soon(run, _putter, p, args.putter_iterations)
            for r in range(args.recorders):
                tg.start_soon(run, _recorder, r, args.recorder_iterations, args.entity_id)

        async with store.report_activity() as report:
            async for row in report:
                print(
                    f"Result: {row.entity_id} {row.entity_name} "
                    f"{row.latest_timestamp.isoformat()} {row.event_count}"
                )
        stats = store.stats
        print(
            f"Pool: {stats.open} open, {stats.idle} idle "
            f"(max_open={stats.max_open}, max_idle={stats.max_idle})"
        )
    return 0


async def _entities(args: argparse.Namespace) -> int:
    async with HybridStore(args.db) as store:
        for entity in await store.list_entities():
            print(f"{entity.id}\t{entity.name}\t{entity.update_count}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m hybridstore",
        description="Exercise a pooled persistent + in-memory SQLite store",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    stress = sub.add_parser("stress", help="Run concurrent putters and recorders")
    stress.add_argument(
        "--db", type=Path, default=None,
        help="Persistent database path (default: configured db_path)",
    )
    stress.add_argument("--putters", type=int, default=5, help="Upsert workers (default: 5)")
    stress.add_argument("--recorders", type=int, default=5, help="Activity workers (default: 5)")
    stress.add_argument(
        "--putter-iterations", type=int, default=100,
        help="Upserts per putter (default: 100)",
    )
    stress.add_argument(
        "--recorder-iterations", type=int, default=1000,
        help="Activity events per recorder (default: 1000)",
    )
    stress.add_argument(
        "--entity-id", type=int, default=0,
        help="Entity id the recorders report activity for (default: 0)",
    )
    stress.add_argument(
        "--max-open", type=int, default=None,
        help="Override the pool's max_open",
    )
    stress.set_defaults(handler=_stress)

    entities = sub.add_parser("entities", help="List persisted entities")
    entities.add_argument(
        "--db", type=Path, default=None,
        help="Persistent database path (default: configured db_path)",
    )
    entities.set_defaults(handler=_entities)
    return parser


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m hybridstore``.
        e.g. ``["stress", "--putters", "3"]``
    """
    parsed = _build_parser().parse_args(args)
    logging.basicConfig(
        level=getattr(logging, parsed.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        code = asyncio.run(parsed.handler(parsed))
    except StorageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        code = 1
    sys.exit(code)
