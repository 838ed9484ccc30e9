#!/usr/bin/env python3
"""
Persist command line

Usage:
    python -m persist demo
    python -m persist inspect p1 --store players

    # Redis connection for inspect
    REDIS_HOST=redis.example.com python -m persist inspect p1 --store players
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from typing import Any, Optional, Sequence

from persist.core.config import ConflictPolicy, PersistSettings, StoreOptions
from persist.observability.logging import LogLevel, setup_logging
from persist.observability.metrics import MetricsCollector
from persist.session import record as R
from persist.session.session import UpdateOutcome
from persist.storage.config import RedisConfig
from persist.storage.memory import InMemoryBackend
from persist.storage.redis_store import RedisBackend
from persist.store.shutdown import ShutdownCoordinator
from persist.store.store import Store


async def demo_handoff() -> None:
    """
    Two servers sharing one in-memory backend hand a record over.

    server-a holds "p1"; server-b asks for it, server-a sees the request
    on its next save and releases, and server-b loads server-a's data.
    """
    print("\n" + "=" * 60)
    print("Persist - Session Handoff Demo")
    print("=" * 60 + "\n")

    backend = InMemoryBackend()
    coordinator = ShutdownCoordinator()
    players_a: dict[str, dict[str, Any]] = {}
    players_b: dict[str, dict[str, Any]] = {}

    def make_store(lock_id: str, players: dict[str, dict[str, Any]]) -> Store[str, dict[str, Any]]:
        return Store(
            "players",
            StoreOptions(
                backend=backend,
                lock_id=lock_id,
                data=lambda key: players[key],
                default=lambda key: {"coins": 0},
                autosave_seconds=0,
                retry_delays=(0.2,),
            ),
            coordinator=coordinator,
        )

    server_a = make_store("server-a", players_a)
    server_b = make_store("server-b", players_b)

    result = await server_a.load("p1")
    if result.is_err():
        print(f"Load error: {result.error}")
        sys.exit(1)

    session_a = result.unwrap()
    players_a["p1"] = dict(session_a.data, coins=100)
    await session_a.update()
    print(f"1. server-a loaded p1 and saved {players_a['p1']}")

    load_b = asyncio.ensure_future(server_b.load("p1", ConflictPolicy.REQUEST_RELEASE))
    await asyncio.sleep(0.05)
    print("2. server-b requested release of p1")

    outcome = await session_a.update()
    if outcome.is_ok() and outcome.unwrap() is UpdateOutcome.SAVED_AND_RELEASED:
        print("3. server-a saw the request, saved and released p1")

    result_b = await load_b
    if result_b.is_err():
        print(f"Load error: {result_b.error}")
        sys.exit(1)

    session_b = result_b.unwrap()
    print(f"4. server-b loaded p1 with {session_b.data}")

    await coordinator.shutdown()
    print("5. Shutdown released every session\n")

    print("--- Metrics ---")
    print(MetricsCollector.get_instance().export_prometheus())


async def inspect_record(store_name: str, key: str, config: RedisConfig) -> int:
    backend = RedisBackend(config)
    connected = await backend.connect()
    if connected.is_err():
        print(connected.error, file=sys.stderr)
        return 1

    try:
        result = await backend.collection(store_name).get(key)
    finally:
        await backend.close()

    if result.is_err():
        print(result.error, file=sys.stderr)
        return 1

    found = result.unwrap()
    if found is None:
        print(f"{store_name}/{key}: no record")
        return 0

    value, info = found
    try:
        record = R.Record.from_dict(value)
    except ValueError as e:
        print(f"{store_name}/{key}: corrupt record: {e}", file=sys.stderr)
        return 1

    last_save = R.get_last_save_time(record)
    age = int(time.time()) - last_save
    print(f"{store_name}/{key} (version {info.version})")
    print(f"  locked by:       {R.get_current_lock(record) or '-'}")
    print(f"  stale lock:      {record.lock is not None and R.is_dead_lock(record)}")
    print(f"  release request: {R.get_release_request(record) or '-'}")
    print(f"  last save:       {last_save} ({age}s ago)")
    print(f"  user ids:        {info.get_user_ids()}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="persist", description=__doc__.splitlines()[1])
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("demo", help="Run the two-server handoff demo in memory")

    inspect = sub.add_parser("inspect", help="Show the lock state of a record in Redis")
    inspect.add_argument("key")
    inspect.add_argument("--store", required=True, help="Collection name")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    settings_result = PersistSettings.from_env()
    if settings_result.is_err():
        print(settings_result.error, file=sys.stderr)
        sys.exit(1)

    settings = settings_result.unwrap()
    setup_logging(LogLevel.parse(settings.log_level), json_output=settings.log_json)

    if args.command == "demo":
        asyncio.run(demo_handoff())
    else:
        try:
            config = RedisConfig.from_env()
        except ValueError as e:
            print(e, file=sys.stderr)
            sys.exit(1)
        sys.exit(asyncio.run(inspect_record(args.store, args.key, config)))


if __name__ == "__main__":
    main()
