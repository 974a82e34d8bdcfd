"""
Detection and classification tables.

Recognitions arrive as an already-parsed structure:
    { info, detection_categories: {code: label},
      classification_categories: {code: label},
      classification_category_descriptions: {code: description},
      images: [{file, detections: [{category, conf, bbox, classifications}]}] }
Only the parts needed to fill the tables are read.
"""
import sqlite3
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .. import config
from ..backup import BackupPolicy, backs_up
from ..exceptions import ErrorKind
from ..models import ClassificationRecord, DetectionRecord, RecognitionInfo
from ..progress import CancellationToken, ProgressEvent, ProgressRun, ProgressThrottle, percent_of
from ..results import Result
from .records import RecordStore, batched
from .schema import create_recognition_tables, drop_recognition_tables, table_exists

INFO_COLUMNS = {
    "detector": "detector",
    "detector_version": "megadetector_version",
    "detection_completion_time": "detection_completion_time",
    "classifier": "classifier",
    "classification_completion_time": "classification_completion_time",
    "typical_detection_threshold": "typical_detection_threshold",
    "conservative_detection_threshold": "conservative_detection_threshold",
    "typical_classification_threshold": "typical_classification_threshold",
}

POPULATE_BATCH_SIZE = 1000


@dataclass
class CategoryMerge:
    categories: Dict[str, str]
    # source code -> destination code, only for codes that change
    remap: Dict[str, str] = field(default_factory=dict)


@dataclass
class PopulateSummary:
    images_matched: int = 0
    images_unmatched: int = 0
    detections: int = 0
    classifications: int = 0


def merge_category_dictionaries(destination: Mapping[str, str], source: Mapping[str, str]) -> Result[CategoryMerge]:
    """
    Combines two code -> label dictionaries.
    A code carrying different labels on the two sides is a category conflict.
    A source label the destination already has under another code is
    remapped to the destination's code. Everything else is added.
    """
    merged = dict(destination)
    code_for_label = {label: code for code, label in destination.items()}
    remap: Dict[str, str] = {}
    conflicts: List[str] = []
    for code, label in source.items():
        if code in destination:
            if destination[code] != label:
                conflicts.append(
                    f"Category {code} is '{destination[code]}' in the destination but '{label}' in the source."
                )
            continue
        if label in code_for_label:
            remap[code] = code_for_label[label]
            continue
        merged[code] = label
        code_for_label[label] = code
    if conflicts:
        return Result.failure(ErrorKind.CATEGORY_CONFLICT, conflicts)
    return Result.success(CategoryMerge(merged, remap))


def _is_unset(value, default) -> bool:
    return value in (None, "", default, config.UNKNOWN_VALUE, config.UNKNOWN_DETECTOR_VERSION)


def merge_info(destination: RecognitionInfo, source: RecognitionInfo) -> RecognitionInfo:
    """Field by field: a known value beats an unknown one, otherwise the destination wins."""
    defaults = RecognitionInfo()
    merged = RecognitionInfo()
    for name in RecognitionInfo.field_names():
        dest_value = getattr(destination, name)
        src_value = getattr(source, name)
        default = getattr(defaults, name)
        if _is_unset(dest_value, default) and not _is_unset(src_value, default):
            setattr(merged, name, src_value)
        else:
            setattr(merged, name, dest_value)
    return merged


def info_from_source(info: Mapping[str, Any]) -> RecognitionInfo:
    detector_meta = info.get("detector_metadata") or {}
    classifier_meta = info.get("classifier_metadata") or {}
    result = RecognitionInfo()
    result.detector = info.get("detector") or result.detector
    result.detection_completion_time = info.get("detection_completion_time") or result.detection_completion_time
    result.classifier = info.get("classifier") or result.classifier
    result.classification_completion_time = (
        info.get("classification_completion_time") or result.classification_completion_time
    )
    result.detector_version = detector_meta.get("megadetector_version") or result.detector_version
    result.typical_detection_threshold = float(
        detector_meta.get("typical_detection_threshold", result.typical_detection_threshold))
    result.conservative_detection_threshold = float(
        detector_meta.get("conservative_detection_threshold", result.conservative_detection_threshold))
    result.typical_classification_threshold = float(
        classifier_meta.get("typical_classification_threshold", result.typical_classification_threshold))
    return result


def split_image_path(path: str) -> Tuple[str, str]:
    """'site/cam/img.jpg' -> ('site\\cam', 'img.jpg') in the store's separator."""
    normalized = path.replace("/", config.PATH_SEPARATOR).strip(config.PATH_SEPARATOR)
    if config.PATH_SEPARATOR not in normalized:
        return "", normalized
    relative_path, file = normalized.rsplit(config.PATH_SEPARATOR, 1)
    return relative_path, file


def format_bbox(bbox) -> Optional[str]:
    if not bbox:
        return None
    return ", ".join(str(v) for v in bbox)


def parse_bbox(text: Optional[str]):
    if not text:
        return None
    return tuple(float(v) for v in text.split(","))


class RecognitionTables:
    def __init__(self, records: RecordStore):
        self.records = records
        self.conn: sqlite3.Connection = records.conn

    @property
    def backups(self) -> BackupPolicy:
        return self.records.backups

    def exist(self) -> bool:
        return table_exists(self.conn, config.DETECTIONS_TABLE)

    def create(self):
        with self.conn:
            create_recognition_tables(self.conn)
            if self.conn.execute(f"SELECT COUNT(*) FROM {config.INFO_TABLE}").fetchone()[0] == 0:
                self.conn.execute(f"INSERT INTO {config.INFO_TABLE} DEFAULT VALUES")
        self.records.invalidate_detections_cache()

    @backs_up
    def drop(self):
        with self.conn:
            drop_recognition_tables(self.conn)
        self.records.invalidate_detections_cache()
        logging.info("Recognition tables dropped.")

    def drop_if_empty(self) -> bool:
        """A store without detection rows keeps no recognition tables."""
        if not self.exist() or self.detection_count() > 0:
            return False
        self.drop()
        return True

    # --- Info ---

    def info(self) -> RecognitionInfo:
        if not self.exist():
            return RecognitionInfo()
        columns = ", ".join(INFO_COLUMNS.values())
        row = self.conn.execute(f"SELECT {columns} FROM {config.INFO_TABLE} ORDER BY infoID LIMIT 1").fetchone()
        if row is None:
            return RecognitionInfo()
        return RecognitionInfo(**dict(zip(INFO_COLUMNS.keys(), row)))

    @backs_up
    def save_info(self, info: RecognitionInfo):
        columns = list(INFO_COLUMNS.values())
        values = [getattr(info, name) for name in INFO_COLUMNS]
        with self.conn:
            self.conn.execute(f"DELETE FROM {config.INFO_TABLE}")
            self.conn.execute(
                f"INSERT INTO {config.INFO_TABLE} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                values,
            )

    # --- Categories ---

    def _categories(self, table: str) -> Dict[str, str]:
        if not table_exists(self.conn, table):
            return {}
        return {code: label for code, label in self.conn.execute(f"SELECT category, label FROM {table} ORDER BY category")}

    def detection_categories(self) -> Dict[str, str]:
        return self._categories(config.DETECTION_CATEGORIES_TABLE)

    def classification_categories(self) -> Dict[str, str]:
        return self._categories(config.CLASSIFICATION_CATEGORIES_TABLE)

    def classification_descriptions(self) -> Dict[str, str]:
        table = config.CLASSIFICATION_CATEGORIES_TABLE
        if not table_exists(self.conn, table):
            return {}
        return dict(self.conn.execute(
            f"SELECT category, description FROM {table} WHERE description IS NOT NULL AND description != ''"))

    def write_detection_categories(self, categories: Mapping[str, str]):
        """Replaces the detection categories inside the caller's transaction."""
        table = config.DETECTION_CATEGORIES_TABLE
        self.conn.execute(f"DELETE FROM {table}")
        self.conn.executemany(f"INSERT INTO {table} (category, label) VALUES (?, ?)", list(categories.items()))

    def write_classification_categories(self, categories: Mapping[str, str],
                                        descriptions: Optional[Mapping[str, str]] = None):
        """
        Replaces the classification categories inside the caller's transaction.
        Descriptions already stored win over `descriptions` for the same code.
        """
        table = config.CLASSIFICATION_CATEGORIES_TABLE
        merged = dict(descriptions or {})
        merged.update(self.classification_descriptions())
        self.conn.execute(f"DELETE FROM {table}")
        self.conn.executemany(
            f"INSERT INTO {table} (category, label, description) VALUES (?, ?, ?)",
            [(code, label, merged.get(code, "")) for code, label in categories.items()],
        )

    @backs_up
    def save_categories(self, detection: Mapping[str, str], classification: Mapping[str, str]):
        with self.conn:
            self.write_detection_categories(detection)
            self.write_classification_categories(classification)

    # --- Rows ---

    def detection_count(self) -> int:
        if not self.exist():
            return 0
        return self.conn.execute(f"SELECT COUNT(*) FROM {config.DETECTIONS_TABLE}").fetchone()[0]

    def max_detection_id(self) -> int:
        if not self.exist():
            return 0
        return self.conn.execute(f"SELECT COALESCE(MAX(detectionID), 0) FROM {config.DETECTIONS_TABLE}").fetchone()[0]

    def max_classification_id(self) -> int:
        if not table_exists(self.conn, config.CLASSIFICATIONS_TABLE):
            return 0
        return self.conn.execute(
            f"SELECT COALESCE(MAX(classificationID), 0) FROM {config.CLASSIFICATIONS_TABLE}"
        ).fetchone()[0]

    def detections_for(self, file_id: int) -> List[DetectionRecord]:
        if not self.exist():
            return []
        cur = self.conn.execute(
            f"SELECT detectionID, category, conf, bbox FROM {config.DETECTIONS_TABLE} WHERE Id = ? ORDER BY detectionID",
            (file_id,),
        )
        return [DetectionRecord(file_id, category, conf, parse_bbox(bbox), detection_id)
                for detection_id, category, conf, bbox in cur.fetchall()]

    def classifications_for(self, file_id: int) -> List[ClassificationRecord]:
        if not table_exists(self.conn, config.CLASSIFICATIONS_TABLE):
            return []
        cur = self.conn.execute(
            f"SELECT classificationID, category, conf FROM {config.CLASSIFICATIONS_TABLE} "
            f"WHERE Id = ? ORDER BY classificationID",
            (file_id,),
        )
        return [ClassificationRecord(file_id, category, conf, classification_id)
                for classification_id, category, conf in cur.fetchall()]

    # --- Population ---

    def populate(self, source: Mapping[str, Any], cancel: Optional[CancellationToken] = None) -> ProgressRun[PopulateSummary]:
        return ProgressRun(self._populate(source, cancel or CancellationToken()), "Recognition import")

    def _populate(self, source: Mapping[str, Any], cancel: CancellationToken):
        images = source.get("images")
        if not isinstance(images, list):
            raise ValueError("Recognition source has no 'images' list")

        detection_merge = merge_category_dictionaries(
            self.detection_categories(), source.get("detection_categories") or {})
        if not detection_merge.ok:
            return detection_merge
        classification_merge = merge_category_dictionaries(
            self.classification_categories(), source.get("classification_categories") or {})
        if not classification_merge.ok:
            return classification_merge
        detection_remap = detection_merge.value.remap
        classification_remap = classification_merge.value.remap

        self.backups.create_backup_if_needed()
        self.create()
        info = merge_info(self.info(), info_from_source(source.get("info") or {}))
        ids_by_key = self.records.ids_by_key()
        summary = PopulateSummary()
        throttle = ProgressThrottle()
        done = 0

        try:
            self.conn.execute("BEGIN")
            for batch in batched(images, POPULATE_BATCH_SIZE):
                cancel.raise_if_cancelled("Recognition import cancelled; nothing was changed.")
                detections, classifications = [], []
                for image in batch:
                    ids = ids_by_key.get(split_image_path(image.get("file", "")))
                    if not ids:
                        summary.images_unmatched += 1
                        continue
                    summary.images_matched += 1
                    for file_id in ids:
                        for detection in image.get("detections") or []:
                            category = str(detection.get("category"))
                            detections.append((detection_remap.get(category, category), detection.get("conf"),
                                               format_bbox(detection.get("bbox")), file_id))
                            for code, conf in detection.get("classifications") or []:
                                code = str(code)
                                classifications.append((classification_remap.get(code, code), conf, file_id))
                        for code, conf in image.get("classifications") or []:
                            code = str(code)
                            classifications.append((classification_remap.get(code, code), conf, file_id))
                self.conn.executemany(
                    f"INSERT INTO {config.DETECTIONS_TABLE} (category, conf, bbox, Id) VALUES (?, ?, ?, ?)", detections)
                self.conn.executemany(
                    f"INSERT INTO {config.CLASSIFICATIONS_TABLE} (category, conf, Id) VALUES (?, ?, ?)", classifications)
                summary.detections += len(detections)
                summary.classifications += len(classifications)
                done += len(batch)
                percent = percent_of(done, len(images))
                if throttle.due(percent):
                    yield ProgressEvent(percent, f"Recognitions for {done}/{len(images)} images")
            self.write_detection_categories(detection_merge.value.categories)
            self.write_classification_categories(classification_merge.value.categories,
                                                 source.get("classification_category_descriptions"))
            self.conn.commit()
        except BaseException:
            self.conn.rollback()
            raise
        finally:
            self.records.invalidate_detections_cache()

        self.save_info(info)
        self.drop_if_empty()
        logging.info(f"Recognitions imported: {summary.detections} detections, "
                     f"{summary.images_unmatched} images not in the store")
        return Result.success(summary)
