"""
Merging stores together and checking a folder out of a store.

Both operations attach the other store file to the connection of the store
being written and copy rows with INSERT ... SELECT inside one transaction,
so a failure or a cancellation leaves the written store as it was.
"""
import sqlite3
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from . import config
from .database.db import set_foreign_keys
from .database.levels import check_merge_compatible
from .database.recognition import merge_category_dictionaries, merge_info, INFO_COLUMNS
from .database.schema import create_recognition_tables, level_table_name, quote_identifier, table_exists
from .database.store import Store
from .exceptions import DestinationExists, SchemaMismatch, SchemaTypeConflict
from .models import LevelDescriptor, SchemaDefinition
from .progress import CancellationToken, ProgressEvent, ProgressRun
from .results import Result
from .sync import SchemaSynchronizer

SOURCE = "source"
SEP = config.PATH_SEPARATOR


def normalize_relative_path(path: str) -> str:
    return (path or "").replace("/", SEP).strip(SEP)


def path_depth(path: str) -> int:
    path = normalize_relative_path(path)
    return 0 if not path else path.count(SEP) + 1


def prefixed(column: str, prefix: str) -> Tuple[str, list]:
    """SQL putting `prefix` in front of a relative path column."""
    if not prefix:
        return column, []
    return (f"(CASE WHEN {column} IS NULL OR {column} = '' THEN ? ELSE ? || {column} END)",
            [prefix, prefix + SEP])


def trimmed(column: str, prefix: str) -> Tuple[str, list]:
    """SQL removing `prefix` from a relative path column at or under it."""
    return (f"(CASE WHEN {column} = ? THEN '' ELSE substr({column}, ?) END)",
            [prefix, len(prefix) + len(SEP) + 1])


def under(column: str, prefix: str) -> Tuple[str, list]:
    """SQL matching a path equal to `prefix` or below it."""
    return (f"({column} = ? OR substr({column}, 1, ?) = ?)",
            [prefix, len(prefix) + len(SEP), prefix + SEP])


def check_schemas_compatible(destination: SchemaDefinition, source: SchemaDefinition):
    compared = SchemaSynchronizer(destination).compare(source)
    if not compared.ok:
        raise SchemaTypeConflict(compared.lines[0], compared.lines)
    report = compared.value
    if report.added or report.removed:
        lines = [f"Only in the destination: {label}" for label in report.added]
        lines += [f"Only in the source: {label}" for label in report.removed]
        raise SchemaMismatch(lines[0], lines)


def _columns(labels: Sequence[str], schema: str = "") -> str:
    qualifier = f"{schema}." if schema else ""
    return ", ".join(qualifier + quote_identifier(label) for label in labels)


@dataclass
class MergeSummary:
    id_offset: int = 0
    records_added: int = 0
    records_replaced: int = 0
    markers_added: int = 0
    detections_added: int = 0
    classifications_added: int = 0
    level_rows_added: int = 0


@dataclass
class CheckoutSummary:
    destination: Optional[Path] = None
    records: int = 0
    markers: int = 0
    detections: int = 0
    classifications: int = 0
    level_rows: int = 0


class MergeEngine:
    """Merges other store files into `destination`."""

    def __init__(self, destination: Store):
        self.destination = destination
        self.conn: sqlite3.Connection = destination.conn

    def merge(self,
              source_path: Union[Path, str],
              prefix: str = "",
              levels_to_ignore: Optional[int] = None,
              replace_existing: bool = False,
              cancel: Optional[CancellationToken] = None) -> ProgressRun[MergeSummary]:
        """
        Adds every record of the source under `prefix`.
        `levels_to_ignore` is how many leading destination folder levels sit
        above the source's root (defaults to the depth of the prefix).
        With `replace_existing`, destination rows at or under the prefix are
        removed first so a checked-out folder can be merged back.
        """
        prefix = normalize_relative_path(prefix)
        if levels_to_ignore is None:
            levels_to_ignore = path_depth(prefix)
        return ProgressRun(
            self._merge(Path(source_path), prefix, levels_to_ignore, replace_existing, cancel or CancellationToken()),
            "Merge",
        )

    def _merge(self, source_path: Path, prefix: str, levels_to_ignore: int,
               replace_existing: bool, cancel: CancellationToken):
        destination = self.destination
        logging.info(f"Merging {source_path} into {destination.path} under '{prefix}'")

        # 1. Checks that need both stores, before anything is written
        opened = Store.open(source_path)
        if not opened.ok:
            return opened
        with opened.value as source:
            source_template = source.template()
            source_has_recognitions = source.recognition.exist()
            source_info = source.recognition.info()
            source_detection_categories = source.recognition.detection_categories()
            source_classification_categories = source.recognition.classification_categories()

        check_schemas_compatible(destination.schema.load(), source_template.schema)
        check_merge_compatible(source_template.levels, destination.levels.levels(), levels_to_ignore)

        destination_has_recognitions = destination.recognition.exist()
        detection_merge = classification_merge = None
        if source_has_recognitions and destination_has_recognitions:
            detection_merge = merge_category_dictionaries(
                destination.recognition.detection_categories(), source_detection_categories)
            if not detection_merge.ok:
                return detection_merge
            classification_merge = merge_category_dictionaries(
                destination.recognition.classification_categories(), source_classification_categories)
            if not classification_merge.ok:
                return classification_merge
        yield ProgressEvent(10, "Stores are compatible", cancellable=True)
        cancel.raise_if_cancelled("Merge cancelled; nothing was changed.")

        destination.records.backups.create_backup_if_needed()
        summary = MergeSummary()
        conn = self.conn
        set_foreign_keys(conn, False)
        conn.execute(f"ATTACH DATABASE ? AS {SOURCE}", (str(source_path),))
        try:
            conn.execute("BEGIN")
            # 2. Records and markers, shifted past the destination's ids
            summary.id_offset = destination.records.max_id()
            if replace_existing and prefix:
                summary.records_replaced = self._remove_under_prefix(prefix, levels_to_ignore)
            summary.records_added = self._copy_records(summary.id_offset, prefix)
            summary.markers_added = self._copy_markers(summary.id_offset)
            yield ProgressEvent(50, f"Merged {summary.records_added} records", cancellable=True)
            cancel.raise_if_cancelled("Merge cancelled; nothing was changed.")

            # 3. Recognitions
            if source_has_recognitions:
                if destination_has_recognitions:
                    self._merge_recognitions(summary, merge_info(destination.recognition.info(), source_info),
                                             detection_merge.value, classification_merge.value)
                else:
                    self._copy_recognitions(summary)
            yield ProgressEvent(75, f"Merged {summary.detections_added} detections", cancellable=True)
            cancel.raise_if_cancelled("Merge cancelled; nothing was changed.")

            # 4. Folder levels
            for level in source_template.levels:
                summary.level_rows_added += self._copy_level(level, levels_to_ignore + level.level, prefix)

            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.execute(f"DETACH DATABASE {SOURCE}")
            set_foreign_keys(conn, True)
            destination.records.invalidate_detections_cache()

        # 5. A store without detections keeps no recognition tables
        destination.recognition.drop_if_empty()
        logging.info(f"Merge committed: {summary.records_added} records, {summary.detections_added} detections, "
                     f"{summary.level_rows_added} folder rows")
        yield ProgressEvent(100, "Merge complete", cancellable=False)
        return Result.success(summary)

    def _remove_under_prefix(self, prefix: str, levels_to_ignore: int) -> int:
        data = config.DATA_TABLE
        where, params = under(config.RELATIVE_PATH, prefix)
        ids = f"SELECT Id FROM {data} WHERE {where}"
        dependents = [config.MARKERS_TABLE]
        dependents += [t for t in (config.DETECTIONS_TABLE, config.CLASSIFICATIONS_TABLE) if table_exists(self.conn, t)]
        for table in dependents:
            self.conn.execute(f"DELETE FROM main.{table} WHERE Id IN ({ids})", params)
        removed = self.conn.execute(f"DELETE FROM main.{data} WHERE {where}", params).rowcount

        where, params = under(config.FOLDER_DATA_PATH, prefix)
        for level in self.destination.levels.levels()[levels_to_ignore:]:
            self.conn.execute(f"DELETE FROM main.{level_table_name(level.level)} WHERE {where}", params)
        logging.info(f"Removed {removed} records under '{prefix}' before merging")
        return removed

    def _copy_records(self, id_offset: int, prefix: str) -> int:
        labels = self.destination.schema.load().labels
        expressions, params = [], [id_offset]
        for label in labels:
            column = f"{SOURCE}.{config.DATA_TABLE}.{quote_identifier(label)}"
            if label == config.RELATIVE_PATH:
                column, extra = prefixed(column, prefix)
                params.extend(extra)
            expressions.append(column)
        cur = self.conn.execute(
            f"INSERT INTO main.{config.DATA_TABLE} (Id, {_columns(labels)}) "
            f"SELECT Id + ?, {', '.join(expressions)} FROM {SOURCE}.{config.DATA_TABLE}",
            params,
        )
        return cur.rowcount

    def _copy_markers(self, id_offset: int) -> int:
        counters = [d.data_label for d in self.destination.schema.load().counters]
        columns = "".join(f", {quote_identifier(c)}" for c in counters)
        cur = self.conn.execute(
            f"INSERT INTO main.{config.MARKERS_TABLE} (Id{columns}) "
            f"SELECT Id + ?{columns} FROM {SOURCE}.{config.MARKERS_TABLE}",
            (id_offset,),
        )
        return cur.rowcount

    def _copy_recognitions(self, summary: MergeSummary):
        """The destination has no recognition tables: take the source's whole."""
        create_recognition_tables(self.conn)
        info_columns = ", ".join(INFO_COLUMNS.values())
        self.conn.execute(f"DELETE FROM main.{config.INFO_TABLE}")
        self.conn.execute(f"INSERT INTO main.{config.INFO_TABLE} ({info_columns}) "
                          f"SELECT {info_columns} FROM {SOURCE}.{config.INFO_TABLE}")
        self.conn.execute(f"INSERT INTO main.{config.DETECTION_CATEGORIES_TABLE} (category, label) "
                          f"SELECT category, label FROM {SOURCE}.{config.DETECTION_CATEGORIES_TABLE}")
        self.conn.execute(f"INSERT INTO main.{config.CLASSIFICATION_CATEGORIES_TABLE} (category, label, description) "
                          f"SELECT category, label, description FROM {SOURCE}.{config.CLASSIFICATION_CATEGORIES_TABLE}")
        self._copy_recognition_rows(summary, 0, 0, {}, {})

    def _merge_recognitions(self, summary: MergeSummary, info, detection_merge, classification_merge):
        recognition = self.destination.recognition
        columns = list(INFO_COLUMNS.values())
        self.conn.execute(f"DELETE FROM main.{config.INFO_TABLE}")
        self.conn.execute(
            f"INSERT INTO main.{config.INFO_TABLE} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            [getattr(info, name) for name in INFO_COLUMNS],
        )
        recognition.write_detection_categories(detection_merge.categories)
        table = config.CLASSIFICATION_CATEGORIES_TABLE
        source_descriptions = dict(self.conn.execute(
            f"SELECT category, description FROM {SOURCE}.{table} WHERE description IS NOT NULL AND description != ''"))
        recognition.write_classification_categories(classification_merge.categories, source_descriptions)
        self._copy_recognition_rows(
            summary,
            recognition.max_detection_id(),
            recognition.max_classification_id(),
            detection_merge.remap,
            classification_merge.remap,
        )

    def _copy_recognition_rows(self, summary: MergeSummary, detection_offset: int, classification_offset: int,
                               detection_remap: dict, classification_remap: dict):
        id_offset = summary.id_offset
        category, category_params = _remapped("category", detection_remap)
        summary.detections_added = self.conn.execute(
            f"INSERT INTO main.{config.DETECTIONS_TABLE} (detectionID, category, conf, bbox, Id) "
            f"SELECT detectionID + ?, {category}, conf, bbox, Id + ? FROM {SOURCE}.{config.DETECTIONS_TABLE}",
            [detection_offset] + category_params + [id_offset],
        ).rowcount
        category, category_params = _remapped("category", classification_remap)
        summary.classifications_added = self.conn.execute(
            f"INSERT INTO main.{config.CLASSIFICATIONS_TABLE} (classificationID, category, conf, Id) "
            f"SELECT classificationID + ?, {category}, conf, Id + ? FROM {SOURCE}.{config.CLASSIFICATIONS_TABLE}",
            [classification_offset] + category_params + [id_offset],
        ).rowcount

    def _copy_level(self, level: LevelDescriptor, destination_level: int, prefix: str) -> int:
        source_table = level_table_name(level.level)
        if not table_exists(self.conn, source_table, SOURCE):
            return 0
        destination_table = level_table_name(destination_level)
        offset = self.destination.levels.max_id(destination_level)
        path, path_params = prefixed(config.FOLDER_DATA_PATH, prefix)
        columns = "".join(f", {quote_identifier(label)}" for label in level.schema.labels)
        cur = self.conn.execute(
            f"INSERT INTO main.{destination_table} (Id, {config.FOLDER_DATA_PATH}{columns}) "
            f"SELECT Id + ?, {path}{columns} FROM {SOURCE}.{source_table}",
            [offset] + path_params,
        )
        return cur.rowcount


def _remapped(column: str, remap: dict) -> Tuple[str, list]:
    if not remap:
        return column, []
    cases = " ".join("WHEN ? THEN ?" for _ in remap)
    params: List[str] = []
    for source_code, destination_code in remap.items():
        params.extend([source_code, destination_code])
    return f"(CASE {column} {cases} ELSE {column} END)", params


class CheckoutEngine:
    """Extracts one folder of `source` into a new store."""

    def __init__(self, source: Store):
        self.source = source

    def checkout(self,
                 prefix: str,
                 destination_path: Union[Path, str],
                 cancel: Optional[CancellationToken] = None) -> ProgressRun[CheckoutSummary]:
        prefix = normalize_relative_path(prefix)
        if not prefix:
            raise ValueError("A checkout needs a folder path")
        return ProgressRun(self._checkout(prefix, Path(destination_path), cancel or CancellationToken()), "Checkout")

    def _checkout(self, prefix: str, destination_path: Path, cancel: CancellationToken):
        source = self.source
        logging.info(f"Checking out '{prefix}' from {source.path} into {destination_path}")
        if destination_path.exists():
            raise DestinationExists(f"{destination_path} already exists; choose a new file for the checkout.")
        template = source.template()
        start_level = path_depth(prefix) + 1
        child_levels = [
            LevelDescriptor(level=i, schema=level.schema, guid=level.guid, alias=level.alias)
            for i, level in enumerate(template.levels[start_level - 1:], start=1)
        ]
        settings = source.records.image_set()

        created = Store.create(destination_path, template.schema, child_levels,
                               root_folder=prefix.rsplit(SEP, 1)[-1])
        if not created.ok:
            return created
        summary = CheckoutSummary(destination=destination_path)
        with created.value as child:
            child_settings = child.records.image_set()
            child_settings.quick_paste_terms = settings.quick_paste_terms
            child_settings.bb_display_threshold = settings.bb_display_threshold
            child.records.save_image_set(child_settings)
            yield ProgressEvent(10, f"Created {destination_path.name}", cancellable=True)

            conn = child.conn
            conn.execute(f"ATTACH DATABASE ? AS {SOURCE}", (str(source.path),))
            try:
                conn.execute("BEGIN")
                summary.records = self._copy_records(conn, template.schema, prefix)
                summary.markers = self._copy_markers(conn, template.schema)
                yield ProgressEvent(50, f"Copied {summary.records} records", cancellable=True)
                cancel.raise_if_cancelled("Checkout cancelled.")

                if table_exists(conn, config.DETECTIONS_TABLE, SOURCE):
                    self._copy_recognitions(conn, summary)
                for child_level in child_levels:
                    summary.level_rows += self._copy_level(
                        conn, child_level, start_level + child_level.level - 1, prefix)
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.execute(f"DETACH DATABASE {SOURCE}")
                child.records.invalidate_detections_cache()
            child.recognition.drop_if_empty()

        logging.info(f"Checkout complete: {summary.records} records in {destination_path}")
        yield ProgressEvent(100, "Checkout complete", cancellable=False)
        return Result.success(summary)

    def _copy_records(self, conn: sqlite3.Connection, schema: SchemaDefinition, prefix: str) -> int:
        expressions, params = [], []
        for label in schema.labels:
            column = quote_identifier(label)
            if label == config.RELATIVE_PATH:
                column, extra = trimmed(column, prefix)
                params.extend(extra)
            expressions.append(column)
        where, where_params = under(config.RELATIVE_PATH, prefix)
        cur = conn.execute(
            f"INSERT INTO main.{config.DATA_TABLE} (Id, {_columns(schema.labels)}) "
            f"SELECT Id, {', '.join(expressions)} FROM {SOURCE}.{config.DATA_TABLE} WHERE {where}",
            params + where_params,
        )
        return cur.rowcount

    def _copy_markers(self, conn: sqlite3.Connection, schema: SchemaDefinition) -> int:
        columns = "".join(f", {quote_identifier(d.data_label)}" for d in schema.counters)
        cur = conn.execute(
            f"INSERT INTO main.{config.MARKERS_TABLE} (Id{columns}) "
            f"SELECT Id{columns} FROM {SOURCE}.{config.MARKERS_TABLE} "
            f"WHERE Id IN (SELECT Id FROM main.{config.DATA_TABLE})"
        )
        return cur.rowcount

    def _copy_recognitions(self, conn: sqlite3.Connection, summary: CheckoutSummary):
        create_recognition_tables(conn)
        info_columns = ", ".join(INFO_COLUMNS.values())
        conn.execute(f"INSERT INTO main.{config.INFO_TABLE} ({info_columns}) "
                     f"SELECT {info_columns} FROM {SOURCE}.{config.INFO_TABLE}")
        conn.execute(f"INSERT INTO main.{config.DETECTION_CATEGORIES_TABLE} (category, label) "
                     f"SELECT category, label FROM {SOURCE}.{config.DETECTION_CATEGORIES_TABLE}")
        conn.execute(f"INSERT INTO main.{config.CLASSIFICATION_CATEGORIES_TABLE} (category, label, description) "
                     f"SELECT category, label, description FROM {SOURCE}.{config.CLASSIFICATION_CATEGORIES_TABLE}")
        matching = f"WHERE Id IN (SELECT Id FROM main.{config.DATA_TABLE})"
        summary.detections = conn.execute(
            f"INSERT INTO main.{config.DETECTIONS_TABLE} (detectionID, category, conf, bbox, Id) "
            f"SELECT detectionID, category, conf, bbox, Id FROM {SOURCE}.{config.DETECTIONS_TABLE} {matching}"
        ).rowcount
        summary.classifications = conn.execute(
            f"INSERT INTO main.{config.CLASSIFICATIONS_TABLE} (classificationID, category, conf, Id) "
            f"SELECT classificationID, category, conf, Id FROM {SOURCE}.{config.CLASSIFICATIONS_TABLE} {matching}"
        ).rowcount

    def _copy_level(self, conn: sqlite3.Connection, child_level: LevelDescriptor, source_level: int, prefix: str) -> int:
        source_table = level_table_name(source_level)
        if not table_exists(conn, source_table, SOURCE):
            return 0
        path, path_params = trimmed(config.FOLDER_DATA_PATH, prefix)
        where, where_params = under(config.FOLDER_DATA_PATH, prefix)
        columns = "".join(f", {quote_identifier(label)}" for label in child_level.schema.labels)
        cur = conn.execute(
            f"INSERT INTO main.{level_table_name(child_level.level)} (Id, {config.FOLDER_DATA_PATH}{columns}) "
            f"SELECT Id, {path}{columns} FROM {SOURCE}.{source_table} WHERE {where}",
            path_params + where_params,
        )
        return cur.rowcount
