# battlesync/store.py

import logging
import os
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from battlesync.models import KnownKeys, UNKNOWN_REPLAY_ID

LOGGER = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 50
RETENTION_DAYS = 3
RETENTION_BATTLES = 100
CURRENT_ACT_ID = -1

# entity kind -> (table, allowed columns)
ENTITIES: Dict[str, tuple] = {
    "players": (
        "players",
        ("short_id", "fighter_name", "favorite_character", "updated_at"),
    ),
    "battle_log": (
        "battle_log",
        (
            "replay_id", "short_id", "battle_timestamp", "battle_date",
            "p1_name", "p1_id", "p1_character", "p1_type", "p1_rating", "p1_score",
            "p2_name", "p2_id", "p2_character", "p2_type", "p2_rating", "p2_score",
            "winner", "outcome", "fetched_at",
        ),
    ),
    "act_history": (
        "act_history",
        (
            "short_id", "act_id", "is_current", "character_id", "character_name",
            "lp", "mr", "mr_ranking", "league_rank", "fetched_at",
        ),
    ),
    "opponent_summaries": (
        "opponent_summaries",
        ("short_id", "current_rating", "highest_rating", "main_character", "computed_at"),
    ),
    "opponent_history": (
        "opponent_history",
        ("short_id", "character_id", "point_date", "rating", "computed_at"),
    ),
    "battle_stats": (
        "battle_stats",
        ("short_id", "category", "label", "value", "fetched_at"),
    ),
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncStore:
    """SQLite persistence for synced battle logs, act history and opponent summaries."""

    def __init__(self, db_path: str = "data/battlesync.db"):
        self.db_path = self._resolve_db_path(db_path)
        self.conn = None
        self.init_database()

    @staticmethod
    def _resolve_db_path(db_path: str) -> str:
        """Return an absolute database path anchored to project root when relative."""
        if db_path == ":memory:":
            return db_path
        path = Path(db_path)
        if path.is_absolute():
            return str(path)
        project_root = Path(__file__).resolve().parents[1]
        return str(project_root / path)

    def init_database(self):
        """Create tables if they don't exist."""
        try:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                try:
                    os.makedirs(db_dir, exist_ok=True)
                except OSError as e:
                    raise RuntimeError(f"Failed to create database directory '{db_dir}': {e}")

            self.conn = sqlite3.connect(self.db_path, timeout=30.0)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA busy_timeout = 30000")
            self._set_wal_mode_best_effort()

            cursor = self.conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS players (
                    short_id TEXT PRIMARY KEY,
                    fighter_name TEXT,
                    favorite_character TEXT,
                    updated_at TEXT
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS subscriptions (
                    short_id TEXT PRIMARY KEY,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS battle_log (
                    replay_id TEXT NOT NULL,
                    short_id TEXT NOT NULL,
                    battle_timestamp INTEGER,
                    battle_date TEXT,
                    p1_name TEXT,
                    p1_id TEXT,
                    p1_character TEXT,
                    p1_type TEXT,
                    p1_rating INTEGER,
                    p1_score INTEGER,
                    p2_name TEXT,
                    p2_id TEXT,
                    p2_character TEXT,
                    p2_type TEXT,
                    p2_rating INTEGER,
                    p2_score INTEGER,
                    winner INTEGER,
                    outcome TEXT,
                    fetched_at TEXT,
                    PRIMARY KEY (short_id, replay_id)
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS act_history (
                    short_id TEXT NOT NULL,
                    act_id INTEGER NOT NULL,
                    is_current INTEGER NOT NULL DEFAULT 0,
                    character_id TEXT,
                    character_name TEXT NOT NULL,
                    lp INTEGER,
                    mr INTEGER,
                    mr_ranking INTEGER,
                    league_rank INTEGER,
                    fetched_at TEXT,
                    PRIMARY KEY (short_id, act_id, character_name)
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS opponent_summaries (
                    short_id TEXT PRIMARY KEY,
                    current_rating INTEGER,
                    highest_rating INTEGER,
                    main_character TEXT,
                    computed_at INTEGER
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS opponent_history (
                    short_id TEXT NOT NULL,
                    character_id TEXT NOT NULL,
                    point_date INTEGER NOT NULL,
                    rating INTEGER,
                    computed_at INTEGER,
                    PRIMARY KEY (short_id, character_id, point_date)
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS battle_stats (
                    short_id TEXT NOT NULL,
                    category TEXT NOT NULL,
                    label TEXT NOT NULL,
                    value TEXT,
                    fetched_at TEXT NOT NULL,
                    PRIMARY KEY (short_id, category, label, fetched_at)
                )
            """)
            self._commit_with_retry(context="initialize schema")
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _commit_with_retry(self, retries: int = 8, delay_seconds: float = 0.25, context: str = "commit") -> None:
        """
        Retry commit on transient SQLITE_BUSY/locked errors.
        """
        last_error = None
        for attempt in range(retries):
            try:
                self.conn.commit()
                return
            except sqlite3.OperationalError as e:
                last_error = e
                if "locked" not in str(e).lower() and "busy" not in str(e).lower():
                    raise
                if attempt == retries - 1:
                    break
                time.sleep(delay_seconds)
        raise RuntimeError(
            f"Failed to {context}: database remained locked after {retries} attempts ({last_error})"
        )

    def _set_wal_mode_best_effort(self, retries: int = 5, delay_seconds: float = 0.2) -> None:
        """Try to enable WAL without failing startup if the DB is temporarily locked."""
        for attempt in range(retries):
            try:
                self.conn.execute("PRAGMA journal_mode = WAL")
                return
            except sqlite3.OperationalError as e:
                msg = str(e).lower()
                if "locked" not in msg and "busy" not in msg:
                    raise
                if attempt == retries - 1:
                    LOGGER.warning("Could not enable WAL mode (database locked); continuing. (%s)", e)
                    return
                time.sleep(delay_seconds)

    # --- Known keys (read before a sync) ---

    def get_known_replay_ids(self, short_id: str) -> set[str]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT replay_id FROM battle_log
            WHERE short_id = ? AND replay_id IS NOT NULL AND TRIM(replay_id) NOT IN ('', ?)
            """,
            (str(short_id), UNKNOWN_REPLAY_ID),
        )
        return {row["replay_id"] for row in cursor.fetchall()}

    def get_known_season_ids(self, short_id: str) -> set[int]:
        """Past acts already stored for a player (the current act is always refetched)."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT DISTINCT act_id FROM act_history WHERE short_id = ? AND is_current = 0",
            (str(short_id),),
        )
        return {int(row["act_id"]) for row in cursor.fetchall()}

    def load_known_keys(self, short_id: str) -> KnownKeys:
        return KnownKeys(
            replay_ids=frozenset(self.get_known_replay_ids(short_id)),
            season_ids=frozenset(self.get_known_season_ids(short_id)),
        )

    # --- Writes ---

    def upsert(
        self,
        entity_kind: str,
        rows: Sequence[Dict[str, Any]],
        conflict_key: Union[str, Sequence[str]],
        ignore_duplicates: bool = False,
    ) -> int:
        """Insert rows, updating (or skipping) rows that collide on ``conflict_key``."""
        if entity_kind not in ENTITIES:
            raise ValueError(f"Unknown entity kind '{entity_kind}'")
        table, allowed = ENTITIES[entity_kind]
        keys = [k.strip() for k in conflict_key.split(",")] if isinstance(conflict_key, str) else list(conflict_key)
        if not rows:
            return 0

        columns = [c for c in allowed if c in rows[0]]
        unknown = set(rows[0]) - set(allowed)
        if unknown:
            raise ValueError(f"Unknown columns for {entity_kind}: {', '.join(sorted(unknown))}")
        missing_keys = [k for k in keys if k not in columns]
        if missing_keys:
            raise ValueError(f"Conflict key columns missing from rows: {', '.join(missing_keys)}")

        placeholders = ", ".join("?" for _ in columns)
        updates = [c for c in columns if c not in keys]
        if ignore_duplicates or not updates:
            action = "DO NOTHING"
        else:
            action = "DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in updates)
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT({', '.join(keys)}) {action}"
        )

        written = 0
        try:
            cursor = self.conn.cursor()
            for start in range(0, len(rows), UPSERT_BATCH_SIZE):
                batch = rows[start:start + UPSERT_BATCH_SIZE]
                cursor.executemany(sql, [tuple(row.get(c) for c in columns) for row in batch])
                written += len(batch)
            self._commit_with_retry(context=f"upsert {entity_kind}")
        except sqlite3.Error as e:
            self.conn.rollback()
            raise RuntimeError(f"Failed to upsert {entity_kind}: {e}")
        LOGGER.debug("Upserted %d %s rows", written, entity_kind)
        return written

    def save_battle_log(self, rows: Iterable[Dict[str, Any]]) -> int:
        usable = [r for r in rows if r.get("replay_id") and r["replay_id"] != UNKNOWN_REPLAY_ID]
        return self.upsert("battle_log", usable, "short_id,replay_id", ignore_duplicates=True)

    def has_battle_stats_since(self, short_id: str, since_iso: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT 1 FROM battle_stats WHERE short_id = ? AND fetched_at >= ? LIMIT 1",
            (str(short_id), since_iso),
        )
        return cursor.fetchone() is not None

    def save_battle_stats(self, rows: Sequence[Dict[str, Any]]) -> int:
        """Store at most one battle stats snapshot per player per UTC day."""
        fresh: List[Dict[str, Any]] = []
        checked: Dict[str, bool] = {}
        for row in rows:
            short_id = str(row["short_id"])
            if short_id not in checked:
                day_start = str(row["fetched_at"])[:10] + "T00:00:00"
                checked[short_id] = self.has_battle_stats_since(short_id, day_start)
                if checked[short_id]:
                    LOGGER.info("Battle stats for %s already stored today; skipping", short_id)
            if not checked[short_id]:
                fresh.append(row)
        return self.upsert("battle_stats", fresh, "short_id,category,label,fetched_at")

    # --- Subscriptions ---

    def add_subscription(self, short_id: str, active: bool = True) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO subscriptions (short_id, is_active) VALUES (?, ?)
                ON CONFLICT(short_id) DO UPDATE SET is_active = excluded.is_active
                """,
                (str(short_id), 1 if active else 0),
            )
            self._commit_with_retry(context="save subscription")
        except sqlite3.Error as e:
            self.conn.rollback()
            raise RuntimeError(f"Failed to save subscription '{short_id}': {e}")

    def get_active_subscriptions(self) -> List[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT short_id FROM subscriptions WHERE is_active = 1 ORDER BY created_at, short_id")
        return [row["short_id"] for row in cursor.fetchall()]

    # --- Reads used by reports/tests ---

    def get_battle_log(self, short_id: str, limit: Optional[int] = None) -> List[Dict]:
        cursor = self.conn.cursor()
        query = "SELECT * FROM battle_log WHERE short_id = ? ORDER BY battle_timestamp DESC"
        params: List[Any] = [str(short_id)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]

    def get_opponent_summary(self, short_id: str) -> Optional[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM opponent_summaries WHERE short_id = ?", (str(short_id),))
        row = cursor.fetchone()
        return dict(row) if row else None

    def get_opponent_history(self, short_id: str) -> Dict[str, List[Dict]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT character_id, point_date, rating FROM opponent_history "
            "WHERE short_id = ? ORDER BY character_id, point_date",
            (str(short_id),),
        )
        history: Dict[str, List[Dict]] = {}
        for row in cursor.fetchall():
            history.setdefault(row["character_id"], []).append(
                {"date": row["point_date"], "rating": row["rating"]}
            )
        return history

    def get_battle_stats(self, short_id: str) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM battle_stats WHERE short_id = ? ORDER BY fetched_at, category, label",
            (str(short_id),),
        )
        return [dict(row) for row in cursor.fetchall()]

    # --- Retention ---

    def cleanup_expired(self, now_ms: Optional[int] = None) -> Dict[str, int]:
        """
        Drop battle log rows older than 3 days unless they are among a player's
        latest 100, plus opponent summaries and battle stats older than 3 days.
        Opponent rating history goes with its summary.
        """
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        cutoff = now_ms - RETENTION_DAYS * 86_400_000
        cutoff_iso = datetime.fromtimestamp(cutoff / 1000, timezone.utc).isoformat()
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                DELETE FROM battle_log
                WHERE COALESCE(battle_timestamp, 0) < ?
                  AND rowid NOT IN (
                      SELECT rid FROM (
                          SELECT rowid AS rid,
                                 ROW_NUMBER() OVER (
                                     PARTITION BY short_id
                                     ORDER BY COALESCE(battle_timestamp, 0) DESC
                                 ) AS rn
                          FROM battle_log
                      )
                      WHERE rn <= ?
                  )
                """,
                (cutoff, RETENTION_BATTLES),
            )
            deleted_battles = cursor.rowcount
            cursor.execute("DELETE FROM opponent_summaries WHERE COALESCE(computed_at, 0) < ?", (cutoff,))
            deleted_summaries = cursor.rowcount
            cursor.execute(
                "DELETE FROM opponent_history WHERE short_id NOT IN (SELECT short_id FROM opponent_summaries)"
            )
            deleted_history = cursor.rowcount
            cursor.execute("DELETE FROM battle_stats WHERE fetched_at < ?", (cutoff_iso,))
            deleted_stats = cursor.rowcount
            self._commit_with_retry(context="cleanup expired data")
        except sqlite3.Error as e:
            self.conn.rollback()
            raise RuntimeError(f"Failed to clean up expired data: {e}")

        LOGGER.info(
            "Cleanup removed %d battle_log rows, %d opponent summaries, %d opponent history points, "
            "%d battle stats rows",
            deleted_battles, deleted_summaries, deleted_history, deleted_stats,
        )
        return {
            "deleted_battle_log": deleted_battles,
            "deleted_opponent_summaries": deleted_summaries,
            "deleted_opponent_history": deleted_history,
            "deleted_battle_stats": deleted_stats,
        }

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
