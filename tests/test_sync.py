import pytest

from camtrap_db.exceptions import ErrorKind
from camtrap_db.models import FieldDescriptor, FileRecord, SchemaDefinition, ValueType
from camtrap_db.sync import SchemaSynchronizer

from conftest import make_records, make_schema


def template_with(*extra, without=()):
    fields = [d for d in make_schema() if not d.is_standard and d.data_label not in without]
    return SchemaDefinition.with_fields(*(fields + list(extra)))


def test_compare_classifies_fields(schema):
    reference = template_with(FieldDescriptor("Fox", ValueType.COUNTER), without=("Notes",))
    result = SchemaSynchronizer(reference).compare(schema)
    assert result.ok
    assert result.value.added == ["Fox"]
    assert result.value.removed == ["Notes"]
    assert result.value.renamed == []


def test_type_conflict_aborts(store):
    """A data label whose type changed cannot be synchronized."""
    reference = template_with(FieldDescriptor("Notes", ValueType.COUNTER), without=("Notes",))
    result = SchemaSynchronizer(reference).synchronize(store.records)
    assert result.error == ErrorKind.SCHEMA_TYPE_CONFLICT
    assert "Notes" in result.lines[0]
    assert store.schema.load()["Notes"].value_type == ValueType.NOTE


def test_apply_adds_and_removes_columns(store):
    store.records.bulk_insert(make_records(2))
    reference = template_with(FieldDescriptor("Fox", ValueType.COUNTER), without=("Notes",))
    result = SchemaSynchronizer(reference).synchronize(store.records)
    assert result.ok

    assert "Fox" in store.schema.load()
    assert "Notes" not in store.schema.load()
    record = store.records.get(1)
    assert record.fields["Fox"] == "0"
    assert "Notes" not in record.fields
    store.records.set_markers(1, "Fox", [(0.5, 0.5)])


def test_confirmed_rename_keeps_data(store):
    store.records.bulk_insert(make_records(2))
    reference = template_with(FieldDescriptor("Comments", ValueType.NOTE), without=("Notes",))
    result = SchemaSynchronizer(reference).synchronize(store.records, renames={"Notes": "Comments"})
    assert result.ok
    assert result.value.renamed == [("Notes", "Comments")]
    assert store.records.get(2).fields["Comments"] == "note 1"


def test_counter_rename_moves_markers(store):
    store.records.bulk_insert(make_records(1))
    store.records.set_markers(1, "Deer", [(0.1, 0.2)])
    reference = template_with(FieldDescriptor("Elk", ValueType.COUNTER), without=("Deer",))
    assert SchemaSynchronizer(reference).synchronize(store.records, renames={"Deer": "Elk"}).ok
    assert store.records.get_markers(1).points["Elk"] == [(0.1, 0.2)]


def test_rename_must_be_a_removed_added_pair(schema):
    with pytest.raises(ValueError):
        SchemaSynchronizer(schema).compare(schema, renames={"Notes": "Comments"})


def test_removing_counter_drops_empty_marker_rows(store):
    store.records.bulk_insert(make_records(2))
    store.records.set_markers(1, "Deer", [(0.1, 0.2)])
    reference = template_with(without=("Deer",))
    assert SchemaSynchronizer(reference).synchronize(store.records).ok
    assert store.conn.execute("SELECT COUNT(*) FROM MarkersTable").fetchone()[0] == 0


def test_sync_is_idempotent(store):
    """A second run against the repaired store finds nothing to change."""
    reference = template_with(FieldDescriptor("Fox", ValueType.COUNTER), without=("Checked",))
    synchronizer = SchemaSynchronizer(reference)
    assert synchronizer.synchronize(store.records).ok

    again = synchronizer.compare(store.schema.load())
    assert again.value.added == []
    assert again.value.removed == []
    assert again.value.renamed == []
    assert again.value.is_empty
    assert again.diagnostics == []


def test_cosmetic_drift_is_reported_and_adopted(store):
    reference = template_with()
    reference["Notes"].tooltip = "Anything unusual"
    result = SchemaSynchronizer(reference).synchronize(store.records)
    assert result.ok
    drift = result.of_kind(ErrorKind.SCHEMA_COSMETIC_DRIFT)
    assert len(drift) == 1 and drift[0].message.startswith("Notes")
    assert store.schema.load()["Notes"].tooltip == "Anything unusual"


def test_removed_choices_warn_without_touching_data(store):
    store.records.bulk_insert(make_records(2))
    reference = template_with()
    reference["Species"].choices = ["deer", "empty"]
    result = SchemaSynchronizer(reference).synchronize(store.records)
    assert result.ok
    warnings = result.of_kind(ErrorKind.CHOICES_REMOVED)
    assert warnings[0].message == "Choice: Species no longer includes these list values: fox"
    assert not warnings[0].kind.fatal
    assert store.records.get(1).fields["Species"] == "fox"


def test_dry_run_changes_nothing(store):
    reference = template_with(FieldDescriptor("Fox", ValueType.COUNTER))
    result = SchemaSynchronizer(reference).synchronize(store.records, dry_run=True)
    assert result.value.added == ["Fox"]
    assert "Fox" not in store.schema.load()


def test_failed_apply_rolls_back(store, monkeypatch):
    store.records.bulk_insert([FileRecord(file="a.jpg")])
    reference = template_with(FieldDescriptor("Fox", ValueType.COUNTER), without=("Notes",))

    def broken(descriptor):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store.records, "add_column", broken)
    with pytest.raises(RuntimeError):
        SchemaSynchronizer(reference).synchronize(store.records)
    assert "Notes" in store.schema.load()
    assert "Fox" not in store.schema.load()
    assert "Notes" in store.records.get(1).fields
