import json

import pytest

from camtrap_db import config
from camtrap_db.database.schema import create_folder_tables
from camtrap_db.database.schema_store import SchemaStore, choices_from_json, choices_to_json
from camtrap_db.exceptions import UnknownFieldError
from camtrap_db.models import FieldDescriptor, SchemaDefinition, ValueType


def test_save_load_roundtrip(conn, schema):
    """A saved schema loads back equal, choices and flags included."""
    store = SchemaStore(conn)
    store.save(schema)
    loaded = store.load()
    assert loaded == schema
    assert loaded["Species"].choices == ["deer", "fox", "empty"]
    assert loaded["Checked"].value_type == ValueType.FLAG


def test_choice_list_format(conn, schema):
    SchemaStore(conn).save(schema)
    text = conn.execute(f"SELECT List FROM {config.TEMPLATE_TABLE} WHERE DataLabel = 'Species'").fetchone()[0]
    assert json.loads(text) == {"IncludeEmptyChoice": True, "ChoiceListNonEmpty": ["deer", "fox", "empty"]}


def test_legacy_pipe_separated_choices():
    assert choices_from_json("a|b||c") == (["a", "b", "c"], True)
    assert choices_from_json("") == ([], True)
    assert choices_to_json(FieldDescriptor("Notes", ValueType.NOTE)) == ""


def test_add_remove_rename(conn, schema):
    store = SchemaStore(conn)
    store.save(schema)
    added = store.add_field(FieldDescriptor("Fox", ValueType.COUNTER))
    assert added.control_order == len(schema) + 1

    store.remove_field("Notes")
    store.rename_field("Checked", "Reviewed")
    loaded = store.load()
    assert "Notes" not in loaded
    assert "Reviewed" in loaded and "Checked" not in loaded
    assert [d.control_order for d in loaded] == list(range(1, len(loaded) + 1))


def test_update_field_changes_cosmetics_only(conn, schema):
    store = SchemaStore(conn)
    store.save(schema)
    changed = store.load()["Notes"]
    changed.tooltip = "What you saw"
    changed.width = 250
    store.update_field(changed)
    loaded = store.load()["Notes"]
    assert loaded.tooltip == "What you saw"
    assert loaded.width == 250
    assert loaded.value_type == ValueType.NOTE


def test_update_unknown_field(conn, schema):
    store = SchemaStore(conn)
    store.save(schema)
    with pytest.raises(UnknownFieldError):
        store.update_field(FieldDescriptor("Nope", ValueType.TEXT))


def test_level_schemas_are_kept_apart(conn):
    """Folder-level schemas share one table, separated by level."""
    create_folder_tables(conn)
    first = SchemaStore(conn, config.FOLDER_TEMPLATE_TABLE, level=1)
    second = SchemaStore(conn, config.FOLDER_TEMPLATE_TABLE, level=2)
    first.save(SchemaDefinition([FieldDescriptor("Site", ValueType.TEXT)], standard=False))
    second.save(SchemaDefinition([FieldDescriptor("Camera", ValueType.TEXT)], standard=False))
    assert first.load().labels == ["Site"]
    assert second.load().labels == ["Camera"]

    second.remove_field("Camera")
    assert first.load().labels == ["Site"]
    assert second.load().labels == []
