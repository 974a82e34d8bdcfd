"""
Selection specifications and their translation to SQL.

A SelectionSpec is a predicate tree, up to two sort keys and a join mode.
QueryBuilder is the only place that turns one into SQL text; every value
travels as a bound parameter and every column name is checked against the
schema before it is quoted.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple, Union

from .. import config
from ..exceptions import UnknownFieldError
from ..models import SchemaDefinition, ValueType
from .schema import quote_identifier


class Operator(Enum):
    EQUAL = "="
    NOT_EQUAL = "<>"
    LESS = "<"
    LESS_EQUAL = "<="
    GREATER = ">"
    GREATER_EQUAL = ">="
    GLOB = "GLOB"
    NOT_GLOB = "NOT GLOB"

    @property
    def is_glob(self) -> bool:
        return self in (Operator.GLOB, Operator.NOT_GLOB)


@dataclass(frozen=True)
class Comparison:
    label: str
    operator: Operator
    value: Union[str, int, bool, datetime]


@dataclass(frozen=True)
class AllOf:
    terms: Tuple["Predicate", ...] = ()


@dataclass(frozen=True)
class AnyOf:
    terms: Tuple["Predicate", ...] = ()


Predicate = Union[Comparison, AllOf, AnyOf]


def all_of(*terms: Predicate) -> AllOf:
    return AllOf(tuple(terms))


def any_of(*terms: Predicate) -> AnyOf:
    return AnyOf(tuple(terms))


class JoinMode(Enum):
    PLAIN = "plain"
    MISSING_DETECTIONS = "missing_detections"
    DETECTIONS = "detections"
    CLASSIFICATIONS = "classifications"


@dataclass(frozen=True)
class RecognitionFilter:
    """Category (None for any) and inclusive range of the best confidence per file."""
    category: Optional[str] = None
    min_confidence: float = 0.0
    max_confidence: float = 1.0


@dataclass(frozen=True)
class SortKey:
    label: str
    descending: bool = False


DEFAULT_SORT = (SortKey(config.RELATIVE_PATH), SortKey(config.DATE_TIME))


@dataclass(frozen=True)
class SelectionSpec:
    predicate: Optional[Predicate] = None
    sort: Tuple[SortKey, ...] = DEFAULT_SORT
    join: JoinMode = JoinMode.PLAIN
    recognition: RecognitionFilter = field(default_factory=RecognitionFilter)
    # When set, a match on any member of an episode selects the whole episode
    episode_label: Optional[str] = None

    def __post_init__(self):
        if len(self.sort) > 2:
            raise ValueError("At most two sort keys are supported")

    # --- Serialization (ImageSetTable.SearchTerms / SortTerms) ---

    def search_terms_json(self) -> str:
        return json.dumps({
            "predicate": _predicate_to_dict(self.predicate),
            "join": self.join.value,
            "recognition": {
                "category": self.recognition.category,
                "min": self.recognition.min_confidence,
                "max": self.recognition.max_confidence,
            },
            "episode": self.episode_label,
        })

    def sort_terms_json(self) -> str:
        return json.dumps([{"label": k.label, "descending": k.descending} for k in self.sort])

    @classmethod
    def from_terms(cls, search_terms: str, sort_terms: str) -> "SelectionSpec":
        search = json.loads(search_terms) if search_terms else {}
        sort = json.loads(sort_terms) if sort_terms else None
        recognition = search.get("recognition") or {}
        return cls(
            predicate=_predicate_from_dict(search.get("predicate")),
            sort=tuple(SortKey(k["label"], bool(k.get("descending"))) for k in sort) if sort is not None else DEFAULT_SORT,
            join=JoinMode(search.get("join", JoinMode.PLAIN.value)),
            recognition=RecognitionFilter(
                recognition.get("category"),
                float(recognition.get("min", 0.0)),
                float(recognition.get("max", 1.0)),
            ),
            episode_label=search.get("episode"),
        )


def _predicate_to_dict(predicate: Optional[Predicate]):
    if predicate is None:
        return None
    if isinstance(predicate, AllOf):
        return {"all": [_predicate_to_dict(t) for t in predicate.terms]}
    if isinstance(predicate, AnyOf):
        return {"any": [_predicate_to_dict(t) for t in predicate.terms]}
    value = predicate.value
    if isinstance(value, datetime):
        value = value.strftime(config.DATETIME_DB_FORMAT)
    return {"label": predicate.label, "op": predicate.operator.value, "value": value}


def _predicate_from_dict(data) -> Optional[Predicate]:
    if data is None:
        return None
    if "all" in data:
        return AllOf(tuple(_predicate_from_dict(t) for t in data["all"]))
    if "any" in data:
        return AnyOf(tuple(_predicate_from_dict(t) for t in data["any"]))
    return Comparison(data["label"], Operator(data["op"]), data["value"])


def episode_key(column: str) -> str:
    """SQL for the episode tag of a value such as '25:1|8' (the part before ':')."""
    return f"(CASE WHEN instr({column}, ':') > 0 THEN substr({column}, 1, instr({column}, ':') - 1) ELSE {column} END)"


class QueryBuilder:
    """
    Lowers a SelectionSpec to SQL over DataTable.
    `recognitions_exist` tells whether the detection/classification tables
    hold rows; without them the recognition join modes reduce to constant
    filters instead of joining tables that may be absent.
    """

    def __init__(self, definition: SchemaDefinition, recognitions_exist: bool):
        self.definition = definition
        self.recognitions_exist = recognitions_exist

    def column(self, label: str) -> str:
        if label != config.ID and label not in self.definition:
            raise UnknownFieldError(label)
        return f"{config.DATA_TABLE}.{quote_identifier(label)}"

    # --- Predicates ---

    def _comparison(self, term: Comparison) -> Tuple[str, list]:
        column = self.column(term.label)
        value = term.value
        if term.label == config.ID:
            return f"{column} {term.operator.value} ?", [int(value)]

        value_type = self.definition[term.label].value_type
        if isinstance(value, datetime):
            value = value.strftime(config.DATETIME_DB_FORMAT)
        elif isinstance(value, bool):
            value = "true" if value else "false"

        if value_type == ValueType.COUNTER and not term.operator.is_glob:
            return f"CAST({column} AS INTEGER) {term.operator.value} ?", [int(value)]
        if value_type.is_boolean:
            value = str(value).lower()
        return f"{column} {term.operator.value} ?", [str(value)]

    def predicate(self, predicate: Optional[Predicate]) -> Tuple[str, list]:
        if predicate is None:
            return "1", []
        if isinstance(predicate, Comparison):
            return self._comparison(predicate)
        joiner = " AND " if isinstance(predicate, AllOf) else " OR "
        if not predicate.terms:
            return ("1" if isinstance(predicate, AllOf) else "0"), []
        parts, params = [], []
        for term in predicate.terms:
            sql, term_params = self.predicate(term)
            parts.append(sql)
            params.extend(term_params)
        return "(" + joiner.join(parts) + ")", params

    # --- Sorting ---

    def order_by(self, spec: SelectionSpec) -> str:
        terms = []
        for key in spec.sort:
            column = self.column(key.label)
            if key.label != config.ID and self.definition[key.label].value_type == ValueType.COUNTER:
                column = f"CAST({column} AS INTEGER)"
            terms.append(column + (" DESC" if key.descending else ""))
        if spec.sort and spec.sort[0].label == config.DATE_TIME:
            # duplicates share a timestamp, so order them by file name
            terms.append(self.column(config.FILE))
        terms.append(self.column(config.ID))
        return " ORDER BY " + ", ".join(terms)

    # --- Statements ---

    def _matching(self, spec: SelectionSpec) -> Tuple[str, list]:
        """SELECT DataTable.* for the spec without ordering."""
        where, params = self.predicate(spec.predicate)
        data = config.DATA_TABLE
        mode = spec.join

        if mode == JoinMode.MISSING_DETECTIONS and self.recognitions_exist:
            det = config.DETECTIONS_TABLE
            sql = (f"SELECT {data}.* FROM {data} LEFT JOIN {det} ON {data}.Id = {det}.Id "
                   f"WHERE {det}.Id IS NULL AND {where}")
        elif mode in (JoinMode.DETECTIONS, JoinMode.CLASSIFICATIONS):
            if not self.recognitions_exist:
                return f"SELECT {data}.* FROM {data} WHERE 0", []
            table = config.DETECTIONS_TABLE if mode == JoinMode.DETECTIONS else config.CLASSIFICATIONS_TABLE
            recognition = spec.recognition
            category_clause = ""
            category_params: list = []
            if recognition.category is not None:
                category_clause = f"{table}.category = ? AND "
                category_params = [recognition.category]
            sql = (f"SELECT {data}.* FROM {table} INNER JOIN {data} ON {data}.Id = {table}.Id "
                   f"WHERE {category_clause}{where} GROUP BY {table}.Id "
                   f"HAVING MAX({table}.conf) BETWEEN ? AND ?")
            params = category_params + params + [recognition.min_confidence, recognition.max_confidence]
        else:
            sql = f"SELECT {data}.* FROM {data} WHERE {where}"

        if spec.episode_label:
            sql, params = self._expand_episodes(spec.episode_label, sql, params)
        return sql, params

    def _expand_episodes(self, label: str, inner: str, params: list) -> Tuple[str, list]:
        column = self.column(label)
        bare = quote_identifier(label)
        sql = (f"SELECT {config.DATA_TABLE}.* FROM {config.DATA_TABLE} "
               f"WHERE {config.DATA_TABLE}.Id IN (SELECT Id FROM ({inner})) "
               f"OR ({column} <> '' AND {episode_key(column)} IN "
               f"(SELECT {episode_key(bare)} FROM ({inner}) WHERE {bare} <> ''))")
        return sql, params + params

    def select(self, spec: SelectionSpec) -> Tuple[str, list]:
        sql, params = self._matching(spec)
        return sql + self.order_by(spec), params

    def select_ids(self, spec: SelectionSpec) -> Tuple[str, list]:
        sql, params = self._matching(spec)
        return f"SELECT Id FROM ({sql})", params

    def count(self, spec: SelectionSpec) -> Tuple[str, list]:
        sql, params = self._matching(spec)
        return f"SELECT COUNT(*) FROM ({sql})", params

    def exists(self, spec: SelectionSpec) -> Tuple[str, list]:
        sql, params = self._matching(spec)
        return f"SELECT EXISTS ({sql})", params
