"""
Database connection management.
"""
import sqlite3
import logging
from pathlib import Path
from typing import Optional, Union

from ..exceptions import StoreUnreadable

MEMORY = ":memory:"


class DBManager:
    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def in_memory(self) -> bool:
        return str(self.db_path) == MEMORY

    def connect(self) -> sqlite3.Connection:
        """
        Connects to the SQLite database and configures performance pragmas.
        Raises StoreUnreadable if the file is not a database.
        """
        if self._conn:
            return self._conn

        logging.info(f"Connecting to database: {self.db_path}")
        try:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA temp_store=MEMORY;")
            self._conn.execute("PRAGMA cache_size=-200000;") # ~200MB cache
            self._conn.execute("PRAGMA foreign_keys=ON;")
        except sqlite3.DatabaseError as e:
            self.close()
            raise StoreUnreadable(f"Cannot open {self.db_path} as a store: {e}") from e

        return self._conn

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def set_foreign_keys(conn: sqlite3.Connection, enabled: bool):
    """Foreign key enforcement can only change outside a transaction."""
    if conn.in_transaction:
        conn.commit()
    conn.execute(f"PRAGMA foreign_keys={'ON' if enabled else 'OFF'};")
