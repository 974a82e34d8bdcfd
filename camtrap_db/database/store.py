import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence, Union

from .. import config
from ..backup import BackupPolicy
from ..exceptions import StoreCorrupt
from ..models import ImageSetSettings, LevelDescriptor, SchemaDefinition
from ..results import Result, returns_result
from .db import DBManager
from .levels import HierarchicalMetadataTables
from .recognition import RecognitionTables
from .records import RecordStore
from .schema import create_template_table, init_store_schema, table_exists, verify_store
from .schema_store import SchemaStore


@dataclass
class Template:
    """A file schema plus the folder-level schemas that go with it."""
    schema: SchemaDefinition
    levels: List[LevelDescriptor] = field(default_factory=list)


class Store:
    """
    One store file: its schema, records, recognitions and folder levels.
    """

    def __init__(self, manager: DBManager):
        self.manager = manager
        self.path = manager.db_path
        self.conn = manager.connect()
        self.backups = BackupPolicy(self.conn, None if manager.in_memory else Path(self.path))
        self.schema = SchemaStore(self.conn)
        self.records = RecordStore(self.conn, self.schema, self.backups)
        self.recognition = RecognitionTables(self.records)
        self.levels = HierarchicalMetadataTables(self.conn, self.backups)

    @classmethod
    @returns_result
    def create(cls,
               path: Union[Path, str],
               schema: SchemaDefinition,
               levels: Sequence[LevelDescriptor] = (),
               root_folder: str = "") -> "Result[Store]":
        """Creates a new store file. Refuses to overwrite an existing one."""
        if str(path) != ":memory:" and Path(path).exists():
            raise FileExistsError(f"{path} already exists")
        manager = DBManager(path)
        conn = manager.connect()
        try:
            init_store_schema(conn, schema, ImageSetSettings(root_folder=root_folder))
            with conn:
                SchemaStore(conn).save(schema)
            store = cls(manager)
            for level in levels:
                store.levels.add_level(level.schema, alias=level.alias, guid=level.guid)
        except BaseException:
            manager.close()
            raise
        logging.info(f"Store created: {path}")
        return store

    @classmethod
    @returns_result
    def open(cls, path: Union[Path, str]) -> "Result[Store]":
        if str(path) != ":memory:" and not Path(path).is_file():
            raise StoreCorrupt(f"No store file at {path}")
        manager = DBManager(path)
        conn = manager.connect()
        try:
            verify_store(conn)
            store = cls(manager)
        except BaseException:
            manager.close()
            raise
        logging.info(f"Store opened: {path} ({store.records.count()} records)")
        return store

    def template(self) -> Template:
        return Template(self.schema.load(), self.levels.levels())

    def close(self):
        self.manager.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


@returns_result
def read_template(path: Union[Path, str]) -> Template:
    """Reads the schema tables of a template file (or of any store)."""
    if not Path(path).is_file():
        raise StoreCorrupt(f"No template file at {path}")
    with DBManager(path) as conn:
        if not table_exists(conn, config.TEMPLATE_TABLE):
            raise StoreCorrupt(f"{path} has no {config.TEMPLATE_TABLE}")
        return Template(SchemaStore(conn).load(), HierarchicalMetadataTables(conn).levels())


@returns_result
def write_template(path: Union[Path, str], template: Template) -> Path:
    """Writes a template file holding only the schema tables."""
    if Path(path).exists():
        raise FileExistsError(f"{path} already exists")
    with DBManager(path) as conn:
        with conn:
            create_template_table(conn)
            SchemaStore(conn).save(template.schema)
        levels = HierarchicalMetadataTables(conn)
        for level in template.levels:
            levels.add_level(level.schema, alias=level.alias, guid=level.guid)
    return Path(path)
