import json
import sqlite3
import logging
from typing import Optional

from .. import config
from ..models import FieldDescriptor, SchemaDefinition, ValueType

TEMPLATE_FIELDS = (
    "ControlOrder, SpreadsheetOrder, Type, DefaultValue, Label, DataLabel, "
    "Tooltip, TXTBOXWIDTH, Copyable, Visible, List, ExportToCSV"
)


def to_flag(value: bool) -> str:
    return "true" if value else "false"


def from_flag(value) -> bool:
    return str(value).strip().lower() == "true"


def choices_to_json(descriptor: FieldDescriptor) -> str:
    if descriptor.value_type != ValueType.FIXED_CHOICE and not descriptor.choices:
        return ""
    return json.dumps({
        "IncludeEmptyChoice": descriptor.include_empty_choice,
        "ChoiceListNonEmpty": list(descriptor.choices),
    })


def choices_from_json(text: Optional[str]):
    """Returns (choices, include_empty). Unparseable text yields an empty list."""
    if not text:
        return [], True
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        # Very old templates kept choices as a '|' separated list
        return [c for c in text.split("|") if c], True
    return list(parsed.get("ChoiceListNonEmpty") or []), bool(parsed.get("IncludeEmptyChoice", True))


class SchemaStore:
    """
    Persists a SchemaDefinition in a template table.

    The file schema lives in TemplateTable; folder-level schemas share
    FolderDataTemplateTable and are told apart by their Level column.
    Methods do not commit; the caller owns the transaction.
    """

    def __init__(self, conn: sqlite3.Connection, table: str = config.TEMPLATE_TABLE, level: Optional[int] = None):
        self.conn = conn
        self.table = table
        self.level = level

    @property
    def standard(self) -> bool:
        return self.level is None

    def _where(self) -> tuple:
        if self.level is None:
            return "", ()
        return " WHERE Level = ?", (self.level,)

    def _and_level(self) -> tuple:
        if self.level is None:
            return "", ()
        return " AND Level = ?", (self.level,)

    def load(self) -> SchemaDefinition:
        where, params = self._where()
        cur = self.conn.execute(f"SELECT {TEMPLATE_FIELDS} FROM {self.table}{where} ORDER BY ControlOrder", params)
        descriptors = []
        for row in cur.fetchall():
            (control_order, sheet_order, type_name, default, label, data_label,
             tooltip, width, copyable, visible, choice_text, export) = row
            choices, include_empty = choices_from_json(choice_text)
            descriptors.append(FieldDescriptor(
                data_label=data_label,
                value_type=ValueType(type_name),
                label=label or data_label,
                default_value=default,
                control_order=int(control_order or 0),
                spreadsheet_order=int(sheet_order or 0),
                exportable=from_flag(export),
                visible=from_flag(visible),
                tooltip=tooltip or "",
                width=int(width) if width not in (None, "") else config.DEFAULT_FIELD_WIDTH,
                copyable=from_flag(copyable),
                choices=choices,
                include_empty_choice=include_empty,
            ))
        return SchemaDefinition(descriptors, standard=self.standard)

    def _row(self, d: FieldDescriptor) -> tuple:
        return (
            d.control_order, d.spreadsheet_order, d.value_type.value, d.default_value,
            d.label, d.data_label, d.tooltip, d.width, to_flag(d.copyable),
            to_flag(d.visible), choices_to_json(d), to_flag(d.exportable),
        )

    def _insert(self, d: FieldDescriptor):
        if self.level is None:
            self.conn.execute(
                f"INSERT INTO {self.table} ({TEMPLATE_FIELDS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._row(d),
            )
        else:
            self.conn.execute(
                f"INSERT INTO {self.table} ({TEMPLATE_FIELDS}, Level) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._row(d) + (self.level,),
            )

    def save(self, definition: SchemaDefinition):
        """Replaces the stored schema with the given one."""
        where, params = self._where()
        self.conn.execute(f"DELETE FROM {self.table}{where}", params)
        for d in definition:
            self._insert(d)

    def _write_orders(self, definition: SchemaDefinition):
        level_clause, level_param = self._and_level()
        self.conn.executemany(
            f"UPDATE {self.table} SET ControlOrder = ?, SpreadsheetOrder = ? WHERE DataLabel = ?{level_clause}",
            [(d.control_order, d.spreadsheet_order, d.data_label) + level_param for d in definition],
        )

    def add_field(self, descriptor: FieldDescriptor) -> FieldDescriptor:
        """Appends a field after the existing ones in both orders."""
        definition = self.load()
        added = definition.add(descriptor)
        self._insert(added)
        self._write_orders(definition)
        logging.info(f"Schema field added: {added.data_label} ({added.value_type.value})")
        return added

    def remove_field(self, data_label: str) -> FieldDescriptor:
        definition = self.load()
        removed = definition.remove(data_label)
        level_clause, level_param = self._and_level()
        self.conn.execute(f"DELETE FROM {self.table} WHERE DataLabel = ?{level_clause}", (data_label,) + level_param)
        self._write_orders(definition)
        logging.info(f"Schema field removed: {data_label}")
        return removed

    def rename_field(self, old_label: str, new_label: str) -> FieldDescriptor:
        definition = self.load()
        renamed = definition.rename(old_label, new_label)
        level_clause, level_param = self._and_level()
        self.conn.execute(
            f"UPDATE {self.table} SET DataLabel = ? WHERE DataLabel = ?{level_clause}",
            (new_label, old_label) + level_param,
        )
        logging.info(f"Schema field renamed: {old_label} -> {new_label}")
        return renamed

    def update_field(self, descriptor: FieldDescriptor):
        """Overwrites the cosmetic attributes of an existing field."""
        self.load()[descriptor.data_label]  # raises UnknownFieldError
        level_clause, level_param = self._and_level()
        self.conn.execute(f"""
            UPDATE {self.table}
            SET ControlOrder = ?, SpreadsheetOrder = ?, DefaultValue = ?, Label = ?, Tooltip = ?,
                TXTBOXWIDTH = ?, Copyable = ?, Visible = ?, List = ?, ExportToCSV = ?
            WHERE DataLabel = ?{level_clause}
        """, (
            descriptor.control_order, descriptor.spreadsheet_order, descriptor.default_value,
            descriptor.label, descriptor.tooltip, descriptor.width, to_flag(descriptor.copyable),
            to_flag(descriptor.visible), choices_to_json(descriptor), to_flag(descriptor.exportable),
            descriptor.data_label,
        ) + level_param)
