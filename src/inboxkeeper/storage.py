"""Storage module for cached collections and delta-sync checkpoints."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generator

from inboxkeeper.models import CachedCollection, Email, utcnow

logger = logging.getLogger(__name__)


class CacheStorage:
    """SQLite-based storage for per-account email collections."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str | Path):
        """Initialize storage with database path."""
        self.db_path = Path(db_path)
        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(
                """
                -- Schema version tracking
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                );

                -- One serialized collection per account (key: cache_<email>)
                CREATE TABLE IF NOT EXISTS collections (
                    cache_key TEXT PRIMARY KEY,
                    emails_json TEXT NOT NULL,
                    email_count INTEGER NOT NULL,
                    refreshed_at TEXT NOT NULL
                );

                -- Delta sync checkpoint per account
                CREATE TABLE IF NOT EXISTS checkpoints (
                    account TEXT PRIMARY KEY,
                    checkpoint TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

            cursor = conn.execute("SELECT version FROM schema_version")
            row = cursor.fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper handling."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def load_collection(self, cache_key: str) -> CachedCollection | None:
        """Load a persisted collection, or None if there is none."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT emails_json, refreshed_at FROM collections WHERE cache_key = ?",
                (cache_key,),
            )
            row = cursor.fetchone()

        if row is None:
            return None

        try:
            emails = tuple(Email.from_dict(d) for d in json.loads(row["emails_json"]))
            refreshed_at = datetime.fromisoformat(row["refreshed_at"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cached collection {cache_key}: {e}")
            return None

        return CachedCollection(emails=emails, refreshed_at=refreshed_at)

    def save_collection(self, cache_key: str, collection: CachedCollection) -> None:
        """Persist a collection, replacing any previous one."""
        emails_json = json.dumps([e.to_dict() for e in collection.emails])
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO collections
                (cache_key, emails_json, email_count, refreshed_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    cache_key,
                    emails_json,
                    len(collection.emails),
                    collection.refreshed_at.isoformat(),
                ),
            )
        logger.debug(f"Saved {len(collection.emails)} emails for {cache_key}")

    def delete_collection(self, cache_key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM collections WHERE cache_key = ?", (cache_key,))

    def delete_all_collections(self) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM collections")
            conn.execute("DELETE FROM checkpoints")

    def list_collections(self) -> list[dict[str, Any]]:
        """Summary of every persisted collection."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT cache_key, email_count, refreshed_at
                FROM collections
                ORDER BY cache_key
                """
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_checkpoint(self, account: str) -> str | None:
        """Get the delta sync checkpoint for an account."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT checkpoint FROM checkpoints WHERE account = ?", (account,)
            )
            row = cursor.fetchone()
            return row["checkpoint"] if row else None

    def set_checkpoint(self, account: str, checkpoint: str) -> None:
        """Set the delta sync checkpoint for an account."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO checkpoints (account, checkpoint, updated_at)
                VALUES (?, ?, ?)
                """,
                (account, checkpoint, utcnow().isoformat()),
            )
        logger.debug(f"Checkpoint set for {account}: {checkpoint}")

    def delete_checkpoint(self, account: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM checkpoints WHERE account = ?", (account,))
