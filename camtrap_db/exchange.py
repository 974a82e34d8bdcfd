"""
CSV export and import of file records.

Export writes the current selection, one row per record, columns in
spreadsheet order. Import updates existing records only: rows are matched to
the store by (RelativePath, File), and nothing is written unless the whole
file passes header and value validation.
"""
import csv
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from itertools import groupby
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from . import config
from .database.query import SelectionSpec
from .database.records import RecordStore, batched
from .exceptions import CsvHeaderInvalid, CsvUnreadable, CsvValueInvalid, ErrorKind
from .models import FileRecord, FieldDescriptor, SchemaDefinition, ValueType
from .progress import CancellationToken, ProgressEvent, ProgressRun, ProgressThrottle, percent_of
from .results import Diagnostic, Result

PATH_LABELS = (config.FILE, config.RELATIVE_PATH)
IGNORED_LABELS = set(config.DEPRECATED_LABELS) | {config.ROOT_FOLDER_LABEL}
WHOLE_NUMBER = re.compile(r"[+-]?[0-9]+")


class DateTimeMode(Enum):
    COMBINED = "combined"       # 2024-05-01 10:00:00
    COMBINED_T = "combined-t"   # 2024-05-01T10:00:00
    SPLIT = "split"             # 01-May-2024 | 10:00:00


@dataclass
class ExportOptions:
    date_mode: DateTimeMode = DateTimeMode.COMBINED
    include_root_folder: bool = False
    # A leading space stops spreadsheets from reformatting the dates
    space_before_dates: bool = False


@dataclass
class ImportSummary:
    rows_read: int = 0
    rows_updated: int = 0
    rows_unmatched: int = 0
    duplicate_mismatches: int = 0
    dates_not_updated: int = 0
    partial: bool = False


def _parse(text: str, formats: Sequence[str]) -> Optional[datetime]:
    text = (text or "").strip()
    for fmt in formats:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def parse_csv_datetime(text: str) -> Optional[datetime]:
    return _parse(text, config.DATETIME_PARSE_FORMATS)


def combine_date_time(date_text: str, time_text: str) -> Optional[datetime]:
    date = _parse(date_text, config.DATE_PARSE_FORMATS)
    time = _parse(time_text, config.TIME_PARSE_FORMATS)
    if date is None or time is None:
        return None
    return datetime.combine(date.date(), time.time())


# --- Export ---

def export_header(definition: SchemaDefinition, options: ExportOptions) -> List[str]:
    header = []
    for d in definition.exportable_fields():
        if d.data_label == config.DATE_TIME and options.date_mode == DateTimeMode.SPLIT:
            header += [config.DATE_LABEL, config.TIME_LABEL]
        else:
            header.append(d.data_label)
    if options.include_root_folder:
        header.insert(0, config.ROOT_FOLDER_LABEL)
    return header


def _date_columns(value: Optional[datetime], options: ExportOptions) -> List[str]:
    space = " " if options.space_before_dates else ""
    if options.date_mode == DateTimeMode.SPLIT:
        if value is None:
            return ["", ""]
        return [space + value.strftime(config.DATE_CSV_FORMAT), value.strftime(config.TIME_CSV_FORMAT)]
    if value is None:
        return [""]
    fmt = config.DATETIME_T_FORMAT if options.date_mode == DateTimeMode.COMBINED_T else config.DATETIME_DB_FORMAT
    return [space + value.strftime(fmt)]


def export_row(record: FileRecord, fields: Sequence[FieldDescriptor], options: ExportOptions,
               root_folder: str = "") -> List[str]:
    row = [root_folder] if options.include_root_folder else []
    for d in fields:
        if d.data_label == config.DATE_TIME:
            row += _date_columns(record.date_time, options)
        elif d.data_label == config.FILE:
            row.append(record.file)
        elif d.data_label == config.RELATIVE_PATH:
            row.append(record.relative_path)
        elif d.data_label == config.DELETE_FLAG:
            row.append("true" if record.delete_flag else "false")
        else:
            row.append(record.fields.get(d.data_label) or "")
    return row


def export_csv(records: RecordStore,
               path: Union[Path, str],
               spec: Optional[SelectionSpec] = None,
               options: Optional[ExportOptions] = None,
               cancel: Optional[CancellationToken] = None) -> ProgressRun[int]:
    """Writes the records `spec` selects. The result value is the number of rows written."""
    return ProgressRun(
        _export(records, Path(path), spec or SelectionSpec(), options or ExportOptions(), cancel or CancellationToken()),
        "CSV export",
    )


def _export(records: RecordStore, path: Path, spec: SelectionSpec, options: ExportOptions,
            cancel: CancellationToken):
    fields = records.definition.exportable_fields()
    root_folder = records.image_set().root_folder
    total = records.count_matching(spec)
    logging.info(f"Exporting {total} records to {path}")

    written = 0
    try:
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(export_header(records.definition, options))
            for record in records.iter_select(spec):
                writer.writerow(export_row(record, fields, options, root_folder))
                written += 1
                if written % config.EXPORT_PROGRESS_STRIDE == 0:
                    cancel.raise_if_cancelled("Export cancelled.")
                    yield ProgressEvent(percent_of(written, total), f"Exported {written}/{total} records")
    except BaseException:
        # A half-written file is worse than none
        path.unlink(missing_ok=True)
        raise
    logging.info(f"Export complete: {written} records")
    yield ProgressEvent(100, f"Exported {written} records", cancellable=False)
    return Result.success(written)


# --- Import ---

def read_rows(path: Path) -> List[List[str]]:
    try:
        with open(path, newline="", encoding="utf-8-sig") as f:
            rows = [row for row in csv.reader(f) if row]
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise CsvUnreadable(f"Could not read {path}: {e}")
    if len(rows) < 2:
        raise CsvUnreadable(f"{path.name} needs a header row and at least one data row.")
    return rows


def validate_header(header: Sequence[str], definition: SchemaDefinition):
    lines = [f"The header has no {label} column." for label in PATH_LABELS if label not in header]
    for label in header:
        if label not in definition and label not in IGNORED_LABELS:
            lines.append(f"{label} is not a field of this store.")
    if lines:
        lines.append("No changes were made to the data.")
        raise CsvHeaderInvalid(lines[0], lines)


def value_problem(descriptor: FieldDescriptor, value: str) -> Optional[str]:
    """A description of what is wrong with `value`, or None if the field accepts it."""
    text = value.strip()
    if descriptor.value_type.is_boolean:
        if text.lower() not in ("true", "false"):
            return f"{descriptor.data_label} must be true or false, not '{value}'"
    elif descriptor.value_type == ValueType.COUNTER:
        if text and not WHOLE_NUMBER.fullmatch(text):
            return f"{descriptor.data_label} must be blank or a whole number, not '{value}'"
    elif descriptor.value_type == ValueType.FIXED_CHOICE:
        if text and text not in descriptor.choices:
            return f"{descriptor.data_label} must be blank or one of its choices, not '{value}'"
    return None


def row_problems(row: Dict[str, str], definition: SchemaDefinition) -> List[str]:
    problems = []
    for label, value in row.items():
        descriptor = definition.get(label)
        if descriptor is None:
            continue
        problem = value_problem(descriptor, value)
        if problem:
            problems.append(problem)
    return problems


def validate_rows(header: Sequence[str], rows: Sequence[List[str]], definition: SchemaDefinition) -> List[Dict[str, str]]:
    """Builds one label -> value map per data row, raising CsvValueInvalid on bad values."""
    maps = []
    lines = []
    for number, row in enumerate(rows, start=2):
        if len(row) > len(header):
            problems = [f"it has {len(row)} values but the header has {len(header)} columns"]
        else:
            values = dict(zip(header, row + [""] * (len(header) - len(row))))
            maps.append(values)
            problems = row_problems(values, definition)
        if not problems:
            continue
        if len(lines) == config.CSV_ERROR_CAP:
            lines.append("Further rows have errors as well; they are not listed.")
            break
        lines.append(f"Row {number}: {'; '.join(problems)}.")
    if lines:
        lines.append("No changes were made to the data.")
        raise CsvValueInvalid(lines[0], lines)
    return maps


def supplies_date(row: Dict[str, str]) -> bool:
    return config.DATE_TIME in row or (config.DATE_LABEL in row and config.TIME_LABEL in row)


def row_updates(row: Dict[str, str], definition: SchemaDefinition) -> Dict[str, object]:
    """Field updates for one CSV row. A date that does not parse is left out."""
    updates = {}
    for label, value in row.items():
        if label in PATH_LABELS or label not in definition:
            continue
        descriptor = definition[label]
        if descriptor.value_type == ValueType.DATE_TIME:
            date_time = parse_csv_datetime(value)
            if date_time is not None:
                updates[label] = date_time
        elif descriptor.value_type in (ValueType.COUNTER, ValueType.FIXED_CHOICE) or descriptor.value_type.is_boolean:
            updates[label] = value.strip()
        else:
            updates[label] = value
    if config.DATE_TIME not in row and config.DATE_LABEL in row and config.TIME_LABEL in row:
        date_time = combine_date_time(row[config.DATE_LABEL], row[config.TIME_LABEL])
        if date_time is not None:
            updates[config.DATE_TIME] = date_time
    return updates


def pair_rows(rows: Sequence[Dict[str, str]],
              ids_by_key: Dict[Tuple[str, str], List[int]]) -> Tuple[List[Tuple[int, Dict[str, str]]], List[Diagnostic], int]:
    """
    Pairs CSV rows with store ids by (RelativePath, File).
    Groups of equal keys are paired in encounter order: CSV file order
    against ascending store id. Surplus rows or ids on either side are left
    alone. Returns (pairs, diagnostics, unmatched row count).
    """
    def key(row):
        return row[config.RELATIVE_PATH], row[config.FILE]

    pairs = []
    diagnostics = []
    unmatched = 0
    for (relative_path, file), group in groupby(sorted(rows, key=key), key=key):
        group = list(group)
        ids = ids_by_key.get((relative_path, file), [])
        if not ids:
            unmatched += len(group)
            continue
        if len(group) == 1:
            pairs.append((ids[0], group[0]))
            continue
        if len(group) != len(ids):
            path = f"{relative_path}{config.PATH_SEPARATOR}{file}" if relative_path else file
            diagnostics.append(Diagnostic(
                ErrorKind.DUPLICATE_COUNT_MISMATCH,
                f"Duplicate entry mismatch for {path}: {len(ids)} database entries vs. {len(group)} CSV entries.",
            ))
        pairs.extend(zip(ids, group))
    return pairs, diagnostics, unmatched


def import_csv(records: RecordStore,
               path: Union[Path, str],
               cancel: Optional[CancellationToken] = None) -> ProgressRun[ImportSummary]:
    """
    Updates existing records from a CSV file.
    Batches are committed as they go: a cancelled import keeps what it has
    applied and returns a CANCELLED result whose summary is marked partial.
    """
    return ProgressRun(_import(records, Path(path), cancel or CancellationToken()), "CSV import")


def _import(records: RecordStore, path: Path, cancel: CancellationToken):
    logging.info(f"Importing {path}")
    definition = records.definition
    rows = read_rows(path)
    header = [label.strip() for label in rows[0]]
    validate_header(header, definition)
    maps = validate_rows(header, rows[1:], definition)
    yield ProgressEvent(5, f"Validated {len(maps)} rows")

    pairs, diagnostics, unmatched = pair_rows(maps, records.ids_by_key())
    summary = ImportSummary(rows_read=len(maps), rows_unmatched=unmatched, duplicate_mismatches=len(diagnostics))
    for d in diagnostics:
        logging.warning(d.message)

    throttle = ProgressThrottle()
    done = 0
    for batch in batched(pairs, config.IMPORT_BATCH_SIZE):
        if cancel.cancelled:
            summary.partial = True
            logging.warning(f"Import cancelled after updating {summary.rows_updated} records")
            result = Result.failure(
                ErrorKind.CANCELLED,
                [f"Import cancelled; {summary.rows_updated} records were already updated."],
                summary,
            )
            result.diagnostics = diagnostics + result.diagnostics
            return result
        updates = []
        for file_id, row in batch:
            fields = row_updates(row, definition)
            if supplies_date(row) and config.DATE_TIME not in fields:
                summary.dates_not_updated += 1
            updates.append((file_id, fields))
        summary.rows_updated += records.bulk_update(updates)
        done += len(batch)
        percent = percent_of(done, len(pairs))
        if throttle.due(percent):
            yield ProgressEvent(percent, f"Updated {done}/{len(pairs)} records")

    if summary.dates_not_updated:
        message = f"Date/Time was not updated for {summary.dates_not_updated} files: the values could not be read."
        logging.warning(message)
        diagnostics.append(Diagnostic(ErrorKind.DATE_TIME_NOT_UPDATED, message))
    logging.info(f"Import complete: {summary.rows_updated} updated, {summary.rows_unmatched} rows not in the store")
    yield ProgressEvent(100, "Import complete", cancellable=False)
    return Result.success(summary, diagnostics)
