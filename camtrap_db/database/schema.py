"""
Store table definitions.

The table and column names are the store's file format and are shared with
existing data files, so they must not change. The helpers here only issue
DDL; callers decide the transaction they run in.
"""
import sqlite3
import logging
from typing import Iterable, List

from .. import config
from ..exceptions import StoreCorrupt
from ..models import FieldDescriptor, ImageSetSettings, SchemaDefinition


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value) -> str:
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def table_exists(conn: sqlite3.Connection, name: str, schema: str = "main") -> bool:
    cur = conn.execute(
        f"SELECT 1 FROM {schema}.sqlite_master WHERE type = 'table' AND name = ?", (name,)
    )
    return cur.fetchone() is not None


def table_columns(conn: sqlite3.Connection, name: str, schema: str = "main") -> List[str]:
    cur = conn.execute(f"PRAGMA {schema}.table_info({quote_identifier(name)})")
    return [row[1] for row in cur.fetchall()]


def verify_store(conn: sqlite3.Connection):
    """Raises StoreCorrupt unless every required table is present."""
    missing = [t for t in config.REQUIRED_TABLES if not table_exists(conn, t)]
    if missing:
        raise StoreCorrupt(f"Store is missing tables: {', '.join(missing)}")


# 1. Template (schema) tables
TEMPLATE_COLUMNS = """
    Id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    ControlOrder        INTEGER,
    SpreadsheetOrder    INTEGER,
    Type                TEXT,
    DefaultValue        TEXT,
    Label               TEXT,
    DataLabel           TEXT,
    Tooltip             TEXT,
    TXTBOXWIDTH         INTEGER,
    Copyable            TEXT,
    Visible             TEXT,
    List                TEXT,
    ExportToCSV         TEXT
"""


def create_template_table(conn: sqlite3.Connection, table: str = config.TEMPLATE_TABLE, with_level: bool = False):
    level_column = ",\n    Level INTEGER" if with_level else ""
    conn.execute(f"CREATE TABLE IF NOT EXISTS {table} ({TEMPLATE_COLUMNS}{level_column});")


# 2. File attribute table
def column_definition(descriptor: FieldDescriptor) -> str:
    return f"{quote_identifier(descriptor.data_label)} TEXT DEFAULT {quote_literal(descriptor.default_value)}"


def create_data_table(conn: sqlite3.Connection, definition: SchemaDefinition):
    columns = ",\n    ".join(column_definition(d) for d in definition)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {config.DATA_TABLE} (
            Id INTEGER PRIMARY KEY AUTOINCREMENT,
            {columns}
        );
    """)
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_data_relpath_file ON {config.DATA_TABLE}(RelativePath, File);")
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_data_datetime ON {config.DATA_TABLE}(DateTime);")


# 3. Markers, one JSON point list per counter
def marker_column_definition(descriptor: FieldDescriptor) -> str:
    return f"{quote_identifier(descriptor.data_label)} TEXT DEFAULT '[]'"


def create_markers_table(conn: sqlite3.Connection, counters: Iterable[FieldDescriptor]):
    columns = "".join(f",\n    {marker_column_definition(d)}" for d in counters)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {config.MARKERS_TABLE} (
            Id INTEGER PRIMARY KEY REFERENCES {config.DATA_TABLE}(Id) ON DELETE CASCADE{columns}
        );
    """)


# 4. Image set singleton
def create_image_set_table(conn: sqlite3.Connection, settings: ImageSetSettings):
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {config.IMAGE_SET_TABLE} (
            Id                      INTEGER PRIMARY KEY,
            RootFolder              TEXT,
            Log                     TEXT,
            Row                     TEXT,
            VersionCompatabily      TEXT,
            BackwardsCompatibility  TEXT,
            SortTerms               TEXT,
            SearchTerms             TEXT,
            QuickPasteTerms         TEXT,
            BBDisplayThreshold      REAL
        );
    """)
    conn.execute(f"""
        INSERT OR IGNORE INTO {config.IMAGE_SET_TABLE}
        (Id, RootFolder, Log, Row, VersionCompatabily, BackwardsCompatibility,
         SortTerms, SearchTerms, QuickPasteTerms, BBDisplayThreshold)
        VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        settings.root_folder, settings.log, str(settings.most_recent_file_id),
        settings.version, settings.backwards_compatibility, settings.sort_terms,
        settings.search_terms, settings.quick_paste_terms, settings.bb_display_threshold,
    ))


# 5. Recognition tables (optional)
def create_recognition_tables(conn: sqlite3.Connection):
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {config.INFO_TABLE} (
            infoID                              INTEGER PRIMARY KEY AUTOINCREMENT,
            detector                            TEXT DEFAULT '{config.UNKNOWN_VALUE}',
            megadetector_version                TEXT DEFAULT '{config.UNKNOWN_DETECTOR_VERSION}',
            detection_completion_time           TEXT DEFAULT '{config.UNKNOWN_VALUE}',
            classifier                          TEXT DEFAULT '{config.UNKNOWN_VALUE}',
            classification_completion_time      TEXT DEFAULT '{config.UNKNOWN_VALUE}',
            typical_detection_threshold         REAL DEFAULT {config.TYPICAL_DETECTION_THRESHOLD},
            conservative_detection_threshold    REAL DEFAULT {config.CONSERVATIVE_DETECTION_THRESHOLD},
            typical_classification_threshold    REAL DEFAULT {config.TYPICAL_CLASSIFICATION_THRESHOLD}
        );
    """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {config.DETECTION_CATEGORIES_TABLE} (
            category    TEXT PRIMARY KEY,
            label       TEXT
        );
    """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {config.CLASSIFICATION_CATEGORIES_TABLE} (
            category    TEXT PRIMARY KEY,
            label       TEXT,
            description TEXT DEFAULT ''
        );
    """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {config.DETECTIONS_TABLE} (
            detectionID INTEGER PRIMARY KEY AUTOINCREMENT,
            category    TEXT,
            conf        REAL,
            bbox        TEXT,
            Id          INTEGER NOT NULL,
            FOREIGN KEY(Id) REFERENCES {config.DATA_TABLE}(Id) ON DELETE CASCADE
        );
    """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {config.CLASSIFICATIONS_TABLE} (
            classificationID    INTEGER PRIMARY KEY AUTOINCREMENT,
            category            TEXT,
            conf                REAL,
            Id                  INTEGER NOT NULL,
            FOREIGN KEY(Id) REFERENCES {config.DATA_TABLE}(Id) ON DELETE CASCADE
        );
    """)
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_detections_id ON {config.DETECTIONS_TABLE}(Id);")
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_classifications_id ON {config.CLASSIFICATIONS_TABLE}(Id);")


def drop_recognition_tables(conn: sqlite3.Connection):
    for table in config.RECOGNITION_TABLES:
        conn.execute(f"DROP TABLE IF EXISTS {table};")


# 6. Folder-level metadata tables (optional)
def create_folder_tables(conn: sqlite3.Connection):
    create_template_table(conn, config.FOLDER_TEMPLATE_TABLE, with_level=True)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {config.FOLDER_INFO_TABLE} (
            Id      INTEGER PRIMARY KEY AUTOINCREMENT,
            Level   INTEGER UNIQUE NOT NULL,
            Guid    TEXT,
            Alias   TEXT
        );
    """)


def level_table_name(level: int) -> str:
    return f"{config.LEVEL_TABLE_PREFIX}{level}"


def create_level_table(conn: sqlite3.Connection, level: int, definition: SchemaDefinition):
    columns = "".join(f",\n    {column_definition(d)}" for d in definition)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {level_table_name(level)} (
            Id              INTEGER PRIMARY KEY AUTOINCREMENT,
            {config.FOLDER_DATA_PATH}  TEXT{columns}
        );
    """)


def init_store_schema(conn: sqlite3.Connection, definition: SchemaDefinition, settings: ImageSetSettings):
    """
    Creates the four required store tables for the given schema.
    Idempotent: existing tables are left as they are.
    """
    with conn:
        create_template_table(conn)
        create_data_table(conn, definition)
        create_markers_table(conn, definition.counters)
        create_image_set_table(conn, settings)
    logging.debug("Store schema initialized.")
