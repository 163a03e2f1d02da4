"""
Defines credential persistence, using SQLite, so that a node
restarts logged in as the last user.
"""

import sqlite3
import time
from contextlib import contextmanager
from typing import Iterator, Optional

# The node holds a single session
_SLOT = "current"


class StorageService:
    """Handles local storage of the session credential."""

    def __init__(self, db_name: str):
        self.db_name = db_name
        self._init_db()

    @contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_name)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._get_conn() as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    slot TEXT PRIMARY KEY,
                    token TEXT NOT NULL,
                    saved_at REAL
                    )
                """
            )

            conn.commit()

    def save_credential(self, token: str) -> None:
        """Stores the credential, replacing the previous one."""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO credentials
                    (slot, token, saved_at)
                    VALUES (?, ?, ?)
                """,
                (_SLOT, token, time.time()),
            )
            conn.commit()

    def load_credential(self) -> Optional[str]:
        """Returns the stored credential, if any."""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT token FROM credentials WHERE slot = ?
                """,
                (_SLOT,),
            )
            row = cursor.fetchone()
            return row["token"] if row else None

    def clear_credential(self) -> None:
        """Forgets the stored credential."""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                DELETE FROM credentials WHERE slot = ?
                """,
                (_SLOT,),
            )
            conn.commit()
