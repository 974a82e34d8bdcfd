import pytest
import sqlite3
from datetime import datetime

from camtrap_db.database.schema import init_store_schema
from camtrap_db.database.store import Store
from camtrap_db.models import FieldDescriptor, FileRecord, ImageSetSettings, SchemaDefinition, ValueType


def make_schema() -> SchemaDefinition:
    return SchemaDefinition.with_fields(
        FieldDescriptor("Notes", ValueType.NOTE),
        FieldDescriptor("Deer", ValueType.COUNTER),
        FieldDescriptor("Checked", ValueType.FLAG),
        FieldDescriptor("Species", ValueType.FIXED_CHOICE, choices=["deer", "fox", "empty"]),
    )


def make_records(count: int = 4, folder: str = "site1") -> list:
    return [
        FileRecord(
            file=f"IMG_{i:04d}.JPG",
            relative_path=folder,
            date_time=datetime(2024, 5, 1, 10, 0, i),
            fields={"Notes": f"note {i}", "Deer": str(i % 3), "Species": "deer" if i % 2 else "fox"},
        )
        for i in range(count)
    ]


@pytest.fixture
def schema():
    """A file schema with one field of each user-facing type."""
    return make_schema()


@pytest.fixture
def conn(schema):
    """Returns an in-memory SQLite connection with the store tables initialized."""
    c = sqlite3.connect(":memory:")
    init_store_schema(c, schema, ImageSetSettings())
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def store(schema):
    """An in-memory store holding the sample schema and no records."""
    s = Store.create(":memory:", schema).value
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def store_factory(tmp_path):
    """Creates store files under tmp_path; every store is closed at teardown."""
    created = []

    def make(name="data.ddb", schema=None, levels=(), records=(), root_folder=""):
        result = Store.create(tmp_path / name, schema or make_schema(), levels, root_folder=root_folder)
        assert result.ok, result.lines
        s = result.value
        if records:
            s.records.bulk_insert(records)
        created.append(s)
        return s

    yield make
    for s in created:
        s.close()
