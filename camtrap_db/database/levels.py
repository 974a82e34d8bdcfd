"""
Folder-level metadata tables.

Level n describes folders n components below the root: its table holds one
row per folder, keyed by the folder's relative path (FolderDataPath), with a
column per field of that level's schema.
"""
import sqlite3
import logging
import uuid
from typing import Dict, List, Optional, Sequence

from .. import config
from ..backup import BackupPolicy, backs_up
from ..exceptions import MetadataLevelMismatch
from ..models import LevelDescriptor, SchemaDefinition
from .records import to_db_value
from .schema import (
    create_folder_tables,
    create_level_table,
    level_table_name,
    quote_identifier,
    table_exists,
)
from .schema_store import SchemaStore


class HierarchicalMetadataTables:
    def __init__(self, conn: sqlite3.Connection, backups: Optional[BackupPolicy] = None):
        self.conn = conn
        self.backups = backups or BackupPolicy.disabled()

    def exist(self) -> bool:
        return table_exists(self.conn, config.FOLDER_INFO_TABLE)

    @staticmethod
    def table_name(level: int) -> str:
        return level_table_name(level)

    def schema_store(self, level: int) -> SchemaStore:
        return SchemaStore(self.conn, config.FOLDER_TEMPLATE_TABLE, level=level)

    def levels(self) -> List[LevelDescriptor]:
        if not self.exist():
            return []
        cur = self.conn.execute(f"SELECT Level, Guid, Alias FROM {config.FOLDER_INFO_TABLE} ORDER BY Level")
        return [
            LevelDescriptor(level=level, schema=self.schema_store(level).load(), guid=guid or "", alias=alias or "")
            for level, guid, alias in cur.fetchall()
        ]

    def level_count(self) -> int:
        if not self.exist():
            return 0
        return self.conn.execute(f"SELECT COUNT(*) FROM {config.FOLDER_INFO_TABLE}").fetchone()[0]

    @backs_up
    def add_level(self, schema: SchemaDefinition, alias: str = "", guid: Optional[str] = None) -> LevelDescriptor:
        """Adds the next level below the existing ones."""
        level = self.level_count() + 1
        descriptor = LevelDescriptor(level=level, schema=schema, guid=guid or str(uuid.uuid4()), alias=alias)
        with self.conn:
            self._create_level(descriptor)
        logging.info(f"Folder level {level} added ({alias or 'no alias'})")
        return descriptor

    def _create_level(self, descriptor: LevelDescriptor):
        create_folder_tables(self.conn)
        self.conn.execute(
            f"INSERT INTO {config.FOLDER_INFO_TABLE} (Level, Guid, Alias) VALUES (?, ?, ?)",
            (descriptor.level, descriptor.guid, descriptor.alias),
        )
        self.schema_store(descriptor.level).save(descriptor.schema)
        create_level_table(self.conn, descriptor.level, descriptor.schema)

    def max_id(self, level: int) -> int:
        return self.conn.execute(f"SELECT COALESCE(MAX(Id), 0) FROM {self.table_name(level)}").fetchone()[0]

    # --- Rows ---

    def rows(self, level: int) -> List[Dict[str, str]]:
        cur = self.conn.execute(f"SELECT * FROM {self.table_name(level)} ORDER BY {config.FOLDER_DATA_PATH}, Id")
        columns = [c[0] for c in cur.description]
        return [dict(zip(columns, row)) for row in cur.fetchall()]

    def get_row(self, level: int, folder_path: str) -> Optional[Dict[str, str]]:
        cur = self.conn.execute(
            f"SELECT * FROM {self.table_name(level)} WHERE {config.FOLDER_DATA_PATH} = ?", (folder_path,))
        row = cur.fetchone()
        if row is None:
            return None
        return dict(zip([c[0] for c in cur.description], row))

    @backs_up
    def set_row(self, level: int, folder_path: str, values: Dict[str, str]) -> int:
        """Creates or updates the row of one folder. Returns its Id."""
        schema = self.schema_store(level).load()
        columns = {label: to_db_value(schema[label], value) for label, value in values.items()}
        table = self.table_name(level)
        existing = self.get_row(level, folder_path)
        with self.conn:
            if existing is None:
                names = [config.FOLDER_DATA_PATH] + list(columns)
                cur = self.conn.execute(
                    f"INSERT INTO {table} ({', '.join(quote_identifier(n) for n in names)}) "
                    f"VALUES ({', '.join('?' for _ in names)})",
                    [folder_path] + list(columns.values()),
                )
                return cur.lastrowid
            if columns:
                assignments = ", ".join(f"{quote_identifier(label)} = ?" for label in columns)
                self.conn.execute(f"UPDATE {table} SET {assignments} WHERE Id = ?",
                                  list(columns.values()) + [existing[config.ID]])
            return existing[config.ID]


def check_merge_compatible(source: Sequence[LevelDescriptor],
                           destination: Sequence[LevelDescriptor],
                           levels_to_ignore: int):
    """
    Raises MetadataLevelMismatch unless the source levels line up with the
    destination levels found below `levels_to_ignore` leading ones: same
    count, each pair sharing a guid or an alias and the same data labels.
    """
    if not source:
        return
    if len(destination) - levels_to_ignore != len(source):
        raise MetadataLevelMismatch(
            f"The source has {len(source)} folder levels but the destination has "
            f"{len(destination)} with {levels_to_ignore} above the merge folder."
        )
    for src, dest in zip(source, destination[levels_to_ignore:]):
        if src.guid != dest.guid and src.alias != dest.alias:
            raise MetadataLevelMismatch(
                f"Source level {src.level} ({src.alias}) does not match destination level {dest.level} ({dest.alias})."
            )
        if sorted(src.schema.labels) != sorted(dest.schema.labels):
            raise MetadataLevelMismatch(
                f"Source level {src.level} and destination level {dest.level} have different fields."
            )
