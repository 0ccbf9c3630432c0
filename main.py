# main.py
"""Command line entry for battlesync.

Run examples:
    python main.py login
    python main.py sync                  # the logged-in player
    python main.py sync 1234567890 --interactive
    python main.py opponents 111 222 333
    python main.py cleanup
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from datetime import datetime

from battlesync.config import SyncConfig, load_config, target_sids_from_env
from battlesync.engine import SyncEngine, SyncReport
from battlesync.fetcher import RateLimitedFetcher, StorageStateCredentials
from battlesync.models import SyncStatus
from battlesync.store import SyncStore

EXIT_NOT_AUTHENTICATED = 2
EXIT_IDENTITY_UNRESOLVED = 3


def _safe_print(message: str) -> None:
    """Print with Unicode fallback for restricted terminal encodings."""
    try:
        print(message)
    except UnicodeEncodeError:
        fallback = (
            message.replace("✅", "[OK]")
            .replace("⚠️", "[WARN]")
            .replace("❌", "[ERROR]")
        )
        print(fallback)


def _build_engine(config: SyncConfig, store: SyncStore) -> tuple[SyncEngine, RateLimitedFetcher]:
    fetcher = RateLimitedFetcher(
        credentials=StorageStateCredentials(config.storage_state_path),
        login_marker=config.login_marker,
    )
    return SyncEngine(fetcher, config, known_keys_loader=store.load_known_keys), fetcher


def _save_report(store: SyncStore, report: SyncReport) -> dict:
    """Persist a finished sync and return row counts."""
    counts = {
        "players": store.upsert("players", report.player_rows(), "short_id"),
        "battle_log": store.save_battle_log(report.battle_rows()),
        "act_history": store.upsert("act_history", report.act_rows(), "short_id,act_id,character_name"),
        "battle_stats": store.save_battle_stats(report.battle_stat_rows()),
    }
    return counts


def _print_report(report: SyncReport, counts: dict) -> None:
    name = report.profile.fighter_name if report.profile else "Unknown"
    _safe_print(f"✅ {name} ({report.subject_id})")
    stats = report.stats
    if stats is not None:
        suffix = " (stopped at stored battles)" if report.truncated_at_known else ""
        _safe_print(
            f"   {stats.total} new battles{suffix}: "
            f"{stats.wins}W {stats.losses}L {stats.draws}D, win rate {stats.win_rate_percent}%"
        )
    _safe_print(
        f"   saved {counts['battle_log']} battles, {counts['act_history']} act rows, "
        f"{counts['battle_stats']} battle stats rows"
    )


def _target_sids(args_sids: list[str], store: SyncStore) -> list[str]:
    if args_sids:
        return list(dict.fromkeys(args_sids))
    subscribed = store.get_active_subscriptions()
    if subscribed:
        logging.getLogger(__name__).info("Using %d active subscriptions", len(subscribed))
        return subscribed
    return target_sids_from_env()


async def _run_sync(config: SyncConfig, store: SyncStore, sids: list[str]) -> int:
    engine, fetcher = _build_engine(config, store)
    exit_code = 0
    async with fetcher:
        for sid in sids or [None]:
            report = await engine.sync_player(hint=sid)
            if report.status is SyncStatus.IDENTITY_UNRESOLVED:
                _safe_print(f"❌ {report.message}")
                return EXIT_IDENTITY_UNRESOLVED
            if report.status is SyncStatus.NOT_AUTHENTICATED:
                _safe_print("❌ Session expired. Run `python main.py login` and try again.")
                return EXIT_NOT_AUTHENTICATED
            counts = _save_report(store, report)
            _print_report(report, counts)
    return exit_code


async def _run_opponents(config: SyncConfig, store: SyncStore, sids: list[str]) -> int:
    engine, fetcher = _build_engine(config, store)
    async with fetcher:
        engine.queue_opponents(sids)
        await engine.batch.drain()

    summaries = [s for s in engine.batch.results.values() if s is not None]
    store.upsert("opponent_summaries", [s.to_row() for s in summaries], "short_id")
    for summary in summaries:
        store.upsert(
            "opponent_history",
            engine.summaries.history_rows(summary.subject_id),
            "short_id,character_id,point_date",
        )
    for summary in summaries:
        _safe_print(
            f"✅ {summary.subject_id}: {summary.main_character} "
            f"current {summary.current_rating}, best {summary.highest_rating_seen}"
        )
    for sid, reason in engine.batch.failures.items():
        _safe_print(f"⚠️ {sid}: {reason}")
    return 0


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Incremental Buckler battle log sync")
    parser.add_argument("--db", help="SQLite database path (default: BATTLESYNC_DB_PATH or data/battlesync.db)")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Sync battle log and act history")
    sync.add_argument("sids", nargs="*", help="Short ids (default: subscriptions, then BATTLESYNC_TARGET_SIDS, then yourself)")
    sync.add_argument("--force-full", action="store_true", help="Ignore stored data and fetch everything")
    sync.add_argument("--interactive", action="store_true", help="Use slower, human-like pacing")

    opponents = sub.add_parser("opponents", help="Refresh opponent summaries")
    opponents.add_argument("sids", nargs="+")

    sub.add_parser("login", help="Log in through a browser window and save the session")

    subscribe = sub.add_parser("subscribe", help="Add short ids to the unattended sync list")
    subscribe.add_argument("sids", nargs="+")

    sub.add_parser("cleanup", help="Apply the retention policy to stored data")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = load_config()
    if args.db:
        config = replace(config, db_path=args.db)
    if getattr(args, "force_full", False):
        config = replace(config, force_full=True)
    if getattr(args, "interactive", False):
        config = config.with_pacing("interactive")

    if args.command == "login":
        from battlesync.session import capture_storage_state

        path = capture_storage_state(config.storage_state_path, config.base_url, config.login_marker)
        _safe_print(f"✅ Session saved to {path}")
        return 0

    store = SyncStore(config.db_path)
    try:
        if args.command == "sync":
            started = datetime.now()
            code = asyncio.run(_run_sync(config, store, _target_sids(args.sids, store)))
            logging.getLogger(__name__).info("Finished in %.1fs", (datetime.now() - started).total_seconds())
            return code
        if args.command == "opponents":
            return asyncio.run(_run_opponents(config, store, args.sids))
        if args.command == "subscribe":
            for sid in args.sids:
                store.add_subscription(sid)
            _safe_print(f"✅ {len(args.sids)} subscription(s) saved")
            return 0
        if args.command == "cleanup":
            counts = store.cleanup_expired()
            _safe_print(
                f"✅ Removed {counts['deleted_battle_log']} battles, "
                f"{counts['deleted_opponent_summaries']} opponent summaries, "
                f"{counts['deleted_opponent_history']} opponent history points, "
                f"{counts['deleted_battle_stats']} battle stats rows"
            )
            return 0
    finally:
        store.close()
    return 1


if __name__ == '__main__':
    sys.exit(main())
