import json
import sqlite3
import logging
from datetime import datetime
from itertools import islice
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .. import config
from ..backup import BackupPolicy, backs_up
from ..exceptions import UnknownFieldError
from ..models import (
    FieldDescriptor,
    FileRecord,
    ImageSetSettings,
    MarkerRow,
    SchemaDefinition,
    ValueType,
)
from .query import QueryBuilder, SelectionSpec
from .schema import (
    column_definition,
    marker_column_definition,
    quote_identifier,
    table_exists,
)
from .schema_store import SchemaStore

STANDARD_ATTRIBUTES = {
    config.FILE: "file",
    config.RELATIVE_PATH: "relative_path",
    config.DATE_TIME: "date_time",
    config.DELETE_FLAG: "delete_flag",
}


def parse_db_datetime(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    for fmt in config.DATETIME_PARSE_FORMATS:
        try:
            return datetime.strptime(text.strip(), fmt)
        except ValueError:
            continue
    return None


def format_db_datetime(value: datetime) -> str:
    return value.strftime(config.DATETIME_DB_FORMAT)


def to_db_value(descriptor: FieldDescriptor, value: Any) -> str:
    """Normalizes a Python value to the text the store keeps for the field."""
    if value is None:
        return descriptor.default_value
    if isinstance(value, datetime):
        return format_db_datetime(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if descriptor.value_type.is_boolean:
        return str(value).strip().lower()
    return str(value)


def batched(items: Iterable, size: int) -> Iterator[list]:
    iterator = iter(items)
    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch


class RecordStore:
    """
    The per-file attribute table (DataTable) and its companion MarkersTable.

    Holds the SchemaStore that describes its columns. Every public write
    commits on its own and asks the backup policy first.
    """

    def __init__(self, conn: sqlite3.Connection, schema: SchemaStore, backups: Optional[BackupPolicy] = None):
        self.conn = conn
        self.schema = schema
        self.backups = backups or BackupPolicy.disabled()
        self._definition: Optional[SchemaDefinition] = None
        self._detections_exist: Optional[bool] = None

    # --- Schema access ---

    @property
    def definition(self) -> SchemaDefinition:
        if self._definition is None:
            self._definition = self.schema.load()
        return self._definition

    def reload_schema(self):
        self._definition = None

    # --- Recognition presence cache ---

    def detections_exist(self) -> bool:
        """True when the Detections table is present and holds rows. Cached until invalidated."""
        if self._detections_exist is None:
            exists = table_exists(self.conn, config.DETECTIONS_TABLE)
            if exists:
                cur = self.conn.execute(f"SELECT EXISTS (SELECT 1 FROM {config.DETECTIONS_TABLE})")
                exists = bool(cur.fetchone()[0])
            self._detections_exist = exists
        return self._detections_exist

    def invalidate_detections_cache(self):
        self._detections_exist = None

    def query_builder(self) -> QueryBuilder:
        return QueryBuilder(self.definition, self.detections_exist())

    # --- Row conversion ---

    def _record_values(self, record: FileRecord) -> List[str]:
        values = []
        for d in self.definition:
            if d.data_label in STANDARD_ATTRIBUTES:
                values.append(to_db_value(d, getattr(record, STANDARD_ATTRIBUTES[d.data_label])))
            else:
                values.append(to_db_value(d, record.fields.get(d.data_label)))
        unknown = set(record.fields) - set(self.definition.labels)
        if unknown:
            raise UnknownFieldError(sorted(unknown)[0])
        return values

    def _to_record(self, columns: List[str], row: tuple) -> FileRecord:
        values = dict(zip(columns, row))
        fields = {
            label: value for label, value in values.items()
            if label != config.ID and label not in STANDARD_ATTRIBUTES
        }
        return FileRecord(
            id=values[config.ID],
            file=values.get(config.FILE) or "",
            relative_path=values.get(config.RELATIVE_PATH) or "",
            date_time=parse_db_datetime(values.get(config.DATE_TIME)),
            delete_flag=str(values.get(config.DELETE_FLAG)).lower() == "true",
            fields=fields,
        )

    def _updates_to_columns(self, updates: Dict[str, Any]) -> Dict[str, str]:
        columns = {}
        for label, value in updates.items():
            if label == config.ID:
                raise UnknownFieldError(label)
            columns[label] = to_db_value(self.definition[label], value)
        return columns

    # --- Inserts ---

    def bulk_insert(self, records: Iterable[FileRecord], batch_size: int = config.INSERT_BATCH_SIZE) -> int:
        """
        Inserts records in batches, one transaction per batch.
        Ids are assigned by the store; any id on the records is ignored.
        """
        labels = self.definition.labels
        columns = ", ".join(quote_identifier(l) for l in labels)
        placeholders = ", ".join("?" for _ in labels)
        sql = f"INSERT INTO {config.DATA_TABLE} ({columns}) VALUES ({placeholders})"

        inserted = 0
        for batch in batched(records, batch_size):
            self.backups.create_backup_if_needed()
            rows = [self._record_values(r) for r in batch]
            with self.conn:
                self.conn.executemany(sql, rows)
            inserted += len(rows)
            logging.debug(f"Inserted batch of {len(rows)} records")
        if inserted:
            logging.info(f"Inserted {inserted} records.")
        return inserted

    # --- Queries ---

    def iter_select(self, spec: Optional[SelectionSpec] = None) -> Iterator[FileRecord]:
        sql, params = self.query_builder().select(spec or SelectionSpec())
        cur = self.conn.execute(sql, params)
        columns = [c[0] for c in cur.description]
        for row in cur:
            yield self._to_record(columns, row)

    def select(self, spec: Optional[SelectionSpec] = None) -> List[FileRecord]:
        return list(self.iter_select(spec))

    def select_ids(self, spec: Optional[SelectionSpec] = None) -> List[int]:
        sql, params = self.query_builder().select_ids(spec or SelectionSpec())
        return [row[0] for row in self.conn.execute(sql, params)]

    def count_matching(self, spec: Optional[SelectionSpec] = None) -> int:
        sql, params = self.query_builder().count(spec or SelectionSpec())
        return self.conn.execute(sql, params).fetchone()[0]

    def exists_matching(self, spec: Optional[SelectionSpec] = None) -> bool:
        sql, params = self.query_builder().exists(spec or SelectionSpec())
        return bool(self.conn.execute(sql, params).fetchone()[0])

    def get(self, file_id: int) -> Optional[FileRecord]:
        cur = self.conn.execute(f"SELECT * FROM {config.DATA_TABLE} WHERE Id = ?", (file_id,))
        row = cur.fetchone()
        if row is None:
            return None
        return self._to_record([c[0] for c in cur.description], row)

    def count(self) -> int:
        return self.conn.execute(f"SELECT COUNT(*) FROM {config.DATA_TABLE}").fetchone()[0]

    def max_id(self) -> int:
        return self.conn.execute(f"SELECT COALESCE(MAX(Id), 0) FROM {config.DATA_TABLE}").fetchone()[0]

    # --- Duplicates ---

    def find_duplicate_keys(self) -> Set[Tuple[str, str]]:
        """(RelativePath, File) keys held by two or more records."""
        cur = self.conn.execute(f"""
            SELECT RelativePath, File FROM {config.DATA_TABLE}
            GROUP BY RelativePath, File
            HAVING COUNT(*) > 1
        """)
        return {(row[0], row[1]) for row in cur.fetchall()}

    def ids_by_key(self) -> Dict[Tuple[str, str], List[int]]:
        """Every (RelativePath, File) key with its record ids in ascending order."""
        cur = self.conn.execute(f"SELECT Id, RelativePath, File FROM {config.DATA_TABLE} ORDER BY Id")
        keyed: Dict[Tuple[str, str], List[int]] = {}
        for file_id, relative_path, file in cur:
            keyed.setdefault((relative_path, file), []).append(file_id)
        return keyed

    def ids_for_key(self, relative_path: str, file: str) -> List[int]:
        cur = self.conn.execute(
            f"SELECT Id FROM {config.DATA_TABLE} WHERE RelativePath = ? AND File = ? ORDER BY Id",
            (relative_path, file),
        )
        return [row[0] for row in cur.fetchall()]

    # --- Updates ---

    def _apply_update(self, file_id: int, columns: Dict[str, str]) -> int:
        assignments = ", ".join(f"{quote_identifier(label)} = ?" for label in columns)
        cur = self.conn.execute(
            f"UPDATE {config.DATA_TABLE} SET {assignments} WHERE Id = ?",
            list(columns.values()) + [file_id],
        )
        return cur.rowcount

    @backs_up
    def update(self, file_id: int, updates: Dict[str, Any]) -> bool:
        """Updates one existing record. Returns False if no record has that id."""
        columns = self._updates_to_columns(updates)
        if not columns:
            return False
        with self.conn:
            changed = self._apply_update(file_id, columns)
        return changed > 0

    @backs_up
    def bulk_update(self, updates: Iterable[Tuple[int, Dict[str, Any]]]) -> int:
        """Applies (id, {label: value}) pairs in one transaction. Returns the number of rows changed."""
        prepared = [(file_id, self._updates_to_columns(values)) for file_id, values in updates]
        changed = 0
        with self.conn:
            for file_id, columns in prepared:
                if columns:
                    changed += self._apply_update(file_id, columns)
        logging.debug(f"Bulk update changed {changed} records")
        return changed

    @backs_up
    def update_matching(self, spec: SelectionSpec, updates: Dict[str, Any]) -> int:
        """Sets the same values on every record the selection matches."""
        columns = self._updates_to_columns(updates)
        if not columns:
            return 0
        ids_sql, ids_params = self.query_builder().select_ids(spec)
        assignments = ", ".join(f"{quote_identifier(label)} = ?" for label in columns)
        with self.conn:
            cur = self.conn.execute(
                f"UPDATE {config.DATA_TABLE} SET {assignments} WHERE Id IN ({ids_sql})",
                list(columns.values()) + ids_params,
            )
        return cur.rowcount

    @backs_up
    def delete(self, file_ids: Iterable[int]) -> int:
        """Deletes records together with their markers and recognitions."""
        ids = [(file_id,) for file_id in file_ids]
        dependents = [config.MARKERS_TABLE]
        dependents += [t for t in (config.DETECTIONS_TABLE, config.CLASSIFICATIONS_TABLE) if table_exists(self.conn, t)]
        with self.conn:
            for table in dependents:
                self.conn.executemany(f"DELETE FROM {table} WHERE Id = ?", ids)
            cur = self.conn.executemany(f"DELETE FROM {config.DATA_TABLE} WHERE Id = ?", ids)
        self.invalidate_detections_cache()
        logging.info(f"Deleted {cur.rowcount} records.")
        return cur.rowcount

    # --- Markers ---

    def get_markers(self, file_id: int) -> MarkerRow:
        counters = [d.data_label for d in self.definition.counters]
        marker = MarkerRow(id=file_id, points={label: [] for label in counters})
        if not counters:
            return marker
        cur = self.conn.execute(
            f"SELECT {', '.join(quote_identifier(c) for c in counters)} FROM {config.MARKERS_TABLE} WHERE Id = ?",
            (file_id,),
        )
        row = cur.fetchone()
        if row is not None:
            for label, text in zip(counters, row):
                marker.points[label] = [tuple(p) for p in json.loads(text)] if text else []
        return marker

    @backs_up
    def set_markers(self, file_id: int, counter_label: str, points: List[Tuple[float, float]]):
        """Replaces a counter's points; the marker row is created on first use."""
        if self.definition[counter_label].value_type != ValueType.COUNTER:
            raise ValueError(f"{counter_label} is not a counter")
        with self.conn:
            self.conn.execute(f"INSERT OR IGNORE INTO {config.MARKERS_TABLE} (Id) VALUES (?)", (file_id,))
            self.conn.execute(
                f"UPDATE {config.MARKERS_TABLE} SET {quote_identifier(counter_label)} = ? WHERE Id = ?",
                (json.dumps([list(p) for p in points]), file_id),
            )

    # --- Image set singleton ---

    def image_set(self) -> ImageSetSettings:
        cur = self.conn.execute(f"""
            SELECT RootFolder, Log, Row, VersionCompatabily, BackwardsCompatibility,
                   SortTerms, SearchTerms, QuickPasteTerms, BBDisplayThreshold
            FROM {config.IMAGE_SET_TABLE} WHERE Id = 1
        """)
        row = cur.fetchone()
        if row is None:
            return ImageSetSettings()
        return ImageSetSettings(
            root_folder=row[0] or "",
            log=row[1] or "",
            most_recent_file_id=int(row[2]) if row[2] not in (None, "") else -1,
            version=row[3] or config.STORE_VERSION,
            backwards_compatibility=row[4] or config.BACKWARDS_COMPATIBILITY_VERSION,
            sort_terms=row[5] or "",
            search_terms=row[6] or "",
            quick_paste_terms=row[7] or "",
            bb_display_threshold=row[8] if row[8] is not None else config.BOUNDING_BOX_DISPLAY_THRESHOLD,
        )

    @backs_up
    def save_image_set(self, settings: ImageSetSettings):
        with self.conn:
            self.conn.execute(f"""
                UPDATE {config.IMAGE_SET_TABLE}
                SET RootFolder = ?, Log = ?, Row = ?, VersionCompatabily = ?, BackwardsCompatibility = ?,
                    SortTerms = ?, SearchTerms = ?, QuickPasteTerms = ?, BBDisplayThreshold = ?
                WHERE Id = 1
            """, (
                settings.root_folder, settings.log, str(settings.most_recent_file_id), settings.version,
                settings.backwards_compatibility, settings.sort_terms, settings.search_terms,
                settings.quick_paste_terms, settings.bb_display_threshold,
            ))

    def save_selection(self, spec: SelectionSpec):
        settings = self.image_set()
        settings.search_terms = spec.search_terms_json()
        settings.sort_terms = spec.sort_terms_json()
        self.save_image_set(settings)

    def load_selection(self) -> SelectionSpec:
        settings = self.image_set()
        return SelectionSpec.from_terms(settings.search_terms, settings.sort_terms)

    # --- Column maintenance (caller owns the transaction) ---

    def add_column(self, descriptor: FieldDescriptor):
        self.conn.execute(f"ALTER TABLE {config.DATA_TABLE} ADD COLUMN {column_definition(descriptor)}")
        if descriptor.value_type == ValueType.COUNTER:
            self.conn.execute(f"ALTER TABLE {config.MARKERS_TABLE} ADD COLUMN {marker_column_definition(descriptor)}")

    def drop_column(self, descriptor: FieldDescriptor):
        self.conn.execute(f"ALTER TABLE {config.DATA_TABLE} DROP COLUMN {quote_identifier(descriptor.data_label)}")
        if descriptor.value_type == ValueType.COUNTER:
            self.conn.execute(f"ALTER TABLE {config.MARKERS_TABLE} DROP COLUMN {quote_identifier(descriptor.data_label)}")

    def rename_column(self, descriptor: FieldDescriptor, new_label: str):
        old = quote_identifier(descriptor.data_label)
        new = quote_identifier(new_label)
        self.conn.execute(f"ALTER TABLE {config.DATA_TABLE} RENAME COLUMN {old} TO {new}")
        if descriptor.value_type == ValueType.COUNTER:
            self.conn.execute(f"ALTER TABLE {config.MARKERS_TABLE} RENAME COLUMN {old} TO {new}")

    def delete_empty_marker_rows(self) -> int:
        counters = [quote_identifier(d.data_label) for d in self.schema.load().counters]
        if counters:
            empty = " AND ".join(f"COALESCE({c}, '') IN ('', '[]')" for c in counters)
        else:
            empty = "1"
        cur = self.conn.execute(f"DELETE FROM {config.MARKERS_TABLE} WHERE {empty}")
        return cur.rowcount
