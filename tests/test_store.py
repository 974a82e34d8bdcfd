import pytest
import sqlite3

from camtrap_db.database.store import Store, Template, read_template, write_template
from camtrap_db.exceptions import ErrorKind
from camtrap_db.models import FieldDescriptor, LevelDescriptor, SchemaDefinition, ValueType

from conftest import make_records


def test_create_and_reopen(store_factory, tmp_path, schema):
    """A created store reopens with its schema, records and image set."""
    s = store_factory("data.ddb", records=make_records(2), root_folder="Survey2024")
    s.close()
    with Store.open(tmp_path / "data.ddb").value as reopened:
        assert reopened.schema.load() == schema
        assert reopened.records.count() == 2
        assert reopened.records.image_set().root_folder == "Survey2024"


def test_create_refuses_existing_file(store_factory, tmp_path, schema):
    store_factory("data.ddb")
    with pytest.raises(FileExistsError):
        Store.create(tmp_path / "data.ddb", schema)


def test_open_missing_store(tmp_path):
    assert Store.open(tmp_path / "nope.ddb").error == ErrorKind.STORE_CORRUPT


def test_open_non_database_file(tmp_path):
    path = tmp_path / "junk.ddb"
    path.write_bytes(b"this is not sqlite" * 100)
    assert Store.open(path).error == ErrorKind.STORE_UNREADABLE


def test_open_database_without_store_tables(tmp_path):
    path = tmp_path / "empty.ddb"
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE Other (x)")
    conn.close()
    result = Store.open(path)
    assert result.error == ErrorKind.STORE_CORRUPT
    assert "DataTable" in result.lines[0]


def test_template_file_round_trip(tmp_path, schema):
    levels = [LevelDescriptor(1, SchemaDefinition([FieldDescriptor("Site", ValueType.TEXT)], standard=False),
                              "g-site", "Site")]
    assert write_template(tmp_path / "t.tdb", Template(schema, levels)).ok
    template = read_template(tmp_path / "t.tdb").value
    assert template.schema == schema
    assert [(l.level, l.guid, l.alias, l.schema.labels) for l in template.levels] == [(1, "g-site", "Site", ["Site"])]


def test_store_doubles_as_template(store_factory):
    s = store_factory("data.ddb")
    assert read_template(s.path).value.schema == s.schema.load()
