import pytest

from camtrap_db.exceptions import UnknownFieldError
from camtrap_db.models import FieldDescriptor, SchemaDefinition, ValueType


def test_structural_fields_always_present():
    """A file schema gets File, RelativePath, DateTime and DeleteFlag ahead of user fields."""
    definition = SchemaDefinition([FieldDescriptor("Notes", ValueType.NOTE)])
    assert definition.labels == ["File", "RelativePath", "DateTime", "DeleteFlag", "Notes"]
    assert [d.control_order for d in definition] == [1, 2, 3, 4, 5]


def test_duplicate_labels_rejected():
    with pytest.raises(ValueError):
        SchemaDefinition([FieldDescriptor("Notes", ValueType.NOTE), FieldDescriptor("Notes", ValueType.TEXT)])


def test_invalid_data_label_rejected():
    with pytest.raises(ValueError):
        FieldDescriptor("not a label", ValueType.TEXT)


def test_defaults_follow_value_type():
    assert FieldDescriptor("Deer", ValueType.COUNTER).default_value == "0"
    assert FieldDescriptor("Checked", ValueType.FLAG).default_value == "false"
    assert FieldDescriptor("Notes", ValueType.NOTE).default_value == ""
    assert FieldDescriptor("Notes", ValueType.NOTE).label == "Notes"


def test_standard_fields_cannot_be_removed_or_renamed(schema):
    with pytest.raises(ValueError):
        schema.remove("File")
    with pytest.raises(ValueError):
        schema.rename("DateTime", "Taken")


def test_remove_and_add_keep_orders_contiguous(schema):
    """Order indices stay 1..N after structural changes."""
    schema.remove("Deer")
    added = schema.add(FieldDescriptor("Fox", ValueType.COUNTER))
    assert added.control_order == len(schema)
    assert sorted(d.control_order for d in schema) == list(range(1, len(schema) + 1))
    assert sorted(d.spreadsheet_order for d in schema) == list(range(1, len(schema) + 1))


def test_rename_keeps_position(schema):
    position = schema["Notes"].control_order
    schema.rename("Notes", "Comments")
    assert "Notes" not in schema
    assert schema["Comments"].control_order == position


def test_unknown_label_is_a_key_error(schema):
    with pytest.raises(UnknownFieldError) as excinfo:
        schema["Nope"]
    assert isinstance(excinfo.value, KeyError)
    assert excinfo.value.label == "Nope"


def test_cosmetic_differences():
    a = FieldDescriptor("Notes", ValueType.NOTE, tooltip="old")
    b = FieldDescriptor("Notes", ValueType.NOTE, tooltip="new", width=200)
    assert a.cosmetic_differences(b) == ["tooltip", "width"]


def test_level_schema_has_no_structural_fields():
    definition = SchemaDefinition([FieldDescriptor("Habitat", ValueType.TEXT)], standard=False)
    assert definition.labels == ["Habitat"]
