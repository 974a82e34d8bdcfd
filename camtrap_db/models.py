import re
from dataclasses import dataclass, field, fields as dataclass_fields, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from . import config
from .exceptions import UnknownFieldError

DATA_LABEL_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


class ValueType(Enum):
    TEXT = "Text"
    NOTE = "Note"
    COUNTER = "Counter"
    FLAG = "Flag"
    FIXED_CHOICE = "FixedChoice"
    DATE_TIME = "DateTime"
    FILE = "File"
    RELATIVE_PATH = "RelativePath"
    DELETE_FLAG = "DeleteFlag"

    @property
    def is_boolean(self) -> bool:
        return self in (ValueType.FLAG, ValueType.DELETE_FLAG)

    @property
    def default_value(self) -> str:
        if self == ValueType.COUNTER:
            return "0"
        if self.is_boolean:
            return "false"
        if self == ValueType.DATE_TIME:
            return config.DEFAULT_DATETIME
        return ""


STANDARD_TYPES = {
    config.FILE: ValueType.FILE,
    config.RELATIVE_PATH: ValueType.RELATIVE_PATH,
    config.DATE_TIME: ValueType.DATE_TIME,
    config.DELETE_FLAG: ValueType.DELETE_FLAG,
}

STANDARD_DISPLAY_LABELS = {
    config.FILE: "File",
    config.RELATIVE_PATH: "Relative path",
    config.DATE_TIME: "Date Time",
    config.DELETE_FLAG: "Delete?",
}

# Attributes that may differ between two schemas without any data migration
COSMETIC_ATTRIBUTES = (
    "label",
    "default_value",
    "tooltip",
    "width",
    "visible",
    "exportable",
    "copyable",
    "choices",
    "include_empty_choice",
    "control_order",
    "spreadsheet_order",
)


@dataclass
class FieldDescriptor:
    """
    One field ("control") of a schema.
    """
    data_label: str
    value_type: ValueType
    label: str = ""
    default_value: Optional[str] = None
    control_order: int = 0
    spreadsheet_order: int = 0
    exportable: bool = True
    visible: bool = True
    tooltip: str = ""
    width: int = config.DEFAULT_FIELD_WIDTH
    copyable: bool = True
    choices: List[str] = field(default_factory=list)
    include_empty_choice: bool = True

    def __post_init__(self):
        if not DATA_LABEL_PATTERN.match(self.data_label or ""):
            raise ValueError(f"Invalid data label: {self.data_label!r}")
        if not self.label:
            self.label = self.data_label
        if self.default_value is None:
            self.default_value = self.value_type.default_value

    @property
    def is_standard(self) -> bool:
        return self.data_label in STANDARD_TYPES

    def cosmetic_differences(self, other: "FieldDescriptor") -> List[str]:
        return [name for name in COSMETIC_ATTRIBUTES if getattr(self, name) != getattr(other, name)]

    @classmethod
    def standard(cls, data_label: str) -> "FieldDescriptor":
        return cls(
            data_label=data_label,
            value_type=STANDARD_TYPES[data_label],
            label=STANDARD_DISPLAY_LABELS[data_label],
            copyable=False,
        )


class SchemaDefinition:
    """
    Ordered, label-unique set of field descriptors.

    A file schema always holds the four structural fields (File,
    RelativePath, DateTime, DeleteFlag); missing ones are inserted ahead of
    the user fields. Folder-level schemas are built with standard=False.
    Order indices are kept contiguous (1..N) after every structural change.
    """

    def __init__(self, descriptors: Iterable[FieldDescriptor] = (), standard: bool = True):
        self.standard = standard
        ordered = sorted(
            (replace(d, choices=list(d.choices)) for d in descriptors),
            key=lambda d: (d.control_order <= 0, d.control_order),
        )
        seen = set()
        for d in ordered:
            if d.data_label in seen:
                raise ValueError(f"Duplicate data label: {d.data_label}")
            seen.add(d.data_label)
        if standard:
            missing = [FieldDescriptor.standard(label) for label in config.STANDARD_LABELS if label not in seen]
            ordered = missing + ordered
            for d in ordered:
                if d.is_standard and d.value_type != STANDARD_TYPES[d.data_label]:
                    raise ValueError(f"Structural field {d.data_label} must have type {STANDARD_TYPES[d.data_label].value}")
        self._fields: List[FieldDescriptor] = ordered
        self.renumber()

    @classmethod
    def with_fields(cls, *descriptors: FieldDescriptor) -> "SchemaDefinition":
        """Builds a file schema: the structural fields followed by the given ones."""
        return cls(
            [FieldDescriptor.standard(label) for label in config.STANDARD_LABELS]
            + [replace(d, control_order=0, spreadsheet_order=0) for d in descriptors]
        )

    def __iter__(self) -> Iterator[FieldDescriptor]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __contains__(self, data_label: str) -> bool:
        return self.get(data_label) is not None

    def __getitem__(self, data_label: str) -> FieldDescriptor:
        found = self.get(data_label)
        if found is None:
            raise UnknownFieldError(data_label)
        return found

    def __eq__(self, other):
        if not isinstance(other, SchemaDefinition):
            return NotImplemented
        return self._fields == other._fields

    def get(self, data_label: str) -> Optional[FieldDescriptor]:
        for d in self._fields:
            if d.data_label == data_label:
                return d
        return None

    @property
    def labels(self) -> List[str]:
        return [d.data_label for d in self._fields]

    def of_type(self, value_type: ValueType) -> List[FieldDescriptor]:
        return [d for d in self._fields if d.value_type == value_type]

    @property
    def counters(self) -> List[FieldDescriptor]:
        return self.of_type(ValueType.COUNTER)

    def by_spreadsheet_order(self) -> List[FieldDescriptor]:
        return sorted(self._fields, key=lambda d: d.spreadsheet_order)

    def exportable_fields(self) -> List[FieldDescriptor]:
        return [d for d in self.by_spreadsheet_order() if d.exportable]

    def copy(self) -> "SchemaDefinition":
        return SchemaDefinition(self._fields, standard=self.standard)

    def renumber(self):
        """Makes both order indices contiguous, keeping their relative order."""
        for i, d in enumerate(self._fields, start=1):
            d.control_order = i
        by_sheet = sorted(self._fields, key=lambda d: (d.spreadsheet_order <= 0, d.spreadsheet_order, d.control_order))
        for i, d in enumerate(by_sheet, start=1):
            d.spreadsheet_order = i

    def add(self, descriptor: FieldDescriptor) -> FieldDescriptor:
        """Appends a field at the end of both orders."""
        if descriptor.data_label in self:
            raise ValueError(f"Duplicate data label: {descriptor.data_label}")
        added = replace(descriptor, choices=list(descriptor.choices),
                        control_order=len(self._fields) + 1,
                        spreadsheet_order=len(self._fields) + 1)
        self._fields.append(added)
        self.renumber()
        return added

    def remove(self, data_label: str) -> FieldDescriptor:
        removed = self[data_label]
        if self.standard and removed.is_standard:
            raise ValueError(f"Structural field {data_label} cannot be removed")
        self._fields.remove(removed)
        self.renumber()
        return removed

    def rename(self, old_label: str, new_label: str) -> FieldDescriptor:
        renamed = self[old_label]
        if self.standard and renamed.is_standard:
            raise ValueError(f"Structural field {old_label} cannot be renamed")
        if new_label in self:
            raise ValueError(f"Duplicate data label: {new_label}")
        if not DATA_LABEL_PATTERN.match(new_label):
            raise ValueError(f"Invalid data label: {new_label!r}")
        renamed.data_label = new_label
        return renamed


@dataclass
class FileRecord:
    """
    One row of the file-attribute table.
    User-defined field values are kept as the strings the store holds.
    """
    file: str
    relative_path: str = ""
    date_time: Optional[datetime] = None
    delete_flag: bool = False
    fields: Dict[str, str] = field(default_factory=dict)
    id: Optional[int] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.relative_path, self.file)


Point = Tuple[float, float]


@dataclass
class MarkerRow:
    id: int
    points: Dict[str, List[Point]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not any(self.points.values())


@dataclass
class DetectionRecord:
    file_id: int
    category: str
    confidence: float
    bbox: Optional[Tuple[float, float, float, float]] = None
    detection_id: Optional[int] = None


@dataclass
class ClassificationRecord:
    file_id: int
    category: str
    confidence: float
    classification_id: Optional[int] = None


@dataclass
class RecognitionInfo:
    """The single info record describing how recognitions were produced."""
    detector: str = config.UNKNOWN_VALUE
    detector_version: str = config.UNKNOWN_DETECTOR_VERSION
    detection_completion_time: str = config.UNKNOWN_VALUE
    classifier: str = config.UNKNOWN_VALUE
    classification_completion_time: str = config.UNKNOWN_VALUE
    typical_detection_threshold: float = config.TYPICAL_DETECTION_THRESHOLD
    conservative_detection_threshold: float = config.CONSERVATIVE_DETECTION_THRESHOLD
    typical_classification_threshold: float = config.TYPICAL_CLASSIFICATION_THRESHOLD

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in dataclass_fields(cls)]


@dataclass
class LevelDescriptor:
    level: int
    schema: SchemaDefinition
    guid: str
    alias: str = ""


@dataclass
class ImageSetSettings:
    """The singleton ImageSetTable row (Id = 1)."""
    root_folder: str = ""
    log: str = ""
    most_recent_file_id: int = -1
    version: str = config.STORE_VERSION
    backwards_compatibility: str = config.BACKWARDS_COMPATIBILITY_VERSION
    sort_terms: str = ""
    search_terms: str = ""
    quick_paste_terms: str = ""
    bb_display_threshold: float = config.BOUNDING_BOX_DISPLAY_THRESHOLD
