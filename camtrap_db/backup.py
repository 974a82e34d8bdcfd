"""
Time-gated store backups.

Every write path asks the policy first; a snapshot is taken only when the
configured interval has passed since the previous one.
"""
import functools
import sqlite3
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from . import config

BACKUP_TIMESTAMP = "%Y-%m-%d.%H-%M-%S"


class BackupPolicy:
    def __init__(self,
                 conn: Optional[sqlite3.Connection],
                 store_path: Optional[Path],
                 interval: timedelta = config.BACKUP_INTERVAL,
                 clock: Callable[[], datetime] = datetime.now):
        self.conn = conn
        self.store_path = Path(store_path) if store_path and str(store_path) != ":memory:" else None
        self.interval = interval
        self._clock = clock
        self.last_backup: Optional[datetime] = self._most_recent_backup()

    @classmethod
    def disabled(cls) -> "BackupPolicy":
        return cls(None, None)

    @property
    def enabled(self) -> bool:
        return self.conn is not None and self.store_path is not None

    @property
    def backup_folder(self) -> Optional[Path]:
        if self.store_path is None:
            return None
        return self.store_path.parent / config.BACKUP_FOLDER

    def _most_recent_backup(self) -> Optional[datetime]:
        folder = self.backup_folder
        if folder is None or not folder.is_dir():
            return None
        mtimes = [p.stat().st_mtime for p in folder.glob(f"{self.store_path.stem}.*{self.store_path.suffix}")]
        if not mtimes:
            return None
        return datetime.fromtimestamp(max(mtimes))

    def due(self) -> bool:
        if not self.enabled:
            return False
        return self.last_backup is None or self._clock() - self.last_backup >= self.interval

    def create_backup_if_needed(self) -> Optional[Path]:
        if not self.due():
            return None
        return self.create_backup()

    def create_backup(self) -> Optional[Path]:
        """
        Snapshots the store with SQLite's online backup API.
        A failed backup is logged and does not block the write that asked for it.
        """
        now = self._clock()
        folder = self.backup_folder
        target = folder / f"{self.store_path.stem}.{now.strftime(BACKUP_TIMESTAMP)}{self.store_path.suffix}"
        try:
            folder.mkdir(parents=True, exist_ok=True)
            dest = sqlite3.connect(str(target))
            try:
                self.conn.backup(dest)
            finally:
                dest.close()
        except (OSError, sqlite3.Error) as e:
            logging.warning(f"Backup of {self.store_path} failed: {e}")
            return None
        self.last_backup = now
        logging.info(f"Backup created: {target}")
        return target


def backs_up(method):
    """Runs the owner's backup policy before a mutating method."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        self.backups.create_backup_if_needed()
        return method(self, *args, **kwargs)
    return wrapper
