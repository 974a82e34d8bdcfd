import pytest

from camtrap_db.database.store import Store
from camtrap_db.exceptions import ErrorKind
from camtrap_db.merge import CheckoutEngine, MergeEngine, normalize_relative_path, path_depth
from camtrap_db.models import FieldDescriptor, FileRecord, LevelDescriptor, SchemaDefinition, ValueType
from camtrap_db.progress import CancellationToken

from conftest import make_records, make_schema


def snapshot(store):
    """Every record without its id, in a stable order."""
    return sorted(
        (r.relative_path, r.file, r.date_time, r.delete_flag, tuple(sorted(r.fields.items())))
        for r in store.records.select()
    )


def add_detections(store, images, categories=None):
    source = {
        "detection_categories": categories or {"1": "animal"},
        "classification_categories": {"1": "deer"},
        "images": images,
    }
    result = store.recognition.populate(source).run()
    assert result.ok, result.lines


def level_schema(*labels):
    return SchemaDefinition([FieldDescriptor(label, ValueType.TEXT) for label in labels], standard=False)


def test_path_helpers():
    assert normalize_relative_path("/a/b/") == "a\\b"
    assert path_depth("") == 0
    assert path_depth("a\\b") == 2


def test_merge_checkout_round_trip(store_factory, tmp_path):
    """Checking out the merge folder gives back the source's records."""
    records = make_records(3, folder="") + make_records(2, folder="cam1")
    source = store_factory("source.ddb", records=records)
    source.records.set_markers(4, "Deer", [(0.5, 0.5)])
    add_detections(source, [{"file": "cam1/IMG_0001.JPG",
                             "detections": [{"category": "1", "conf": 0.9, "bbox": [0, 0, 1, 1]}]}])

    destination = store_factory("destination.ddb")
    merged = MergeEngine(destination).merge(source.path, prefix="X").run()
    assert merged.ok, merged.lines
    assert merged.value.records_added == 5

    checkout = CheckoutEngine(destination).checkout("X", tmp_path / "child.ddb").run()
    assert checkout.ok, checkout.lines
    with Store.open(tmp_path / "child.ddb").value as child:
        assert snapshot(child) == snapshot(source)
        assert child.records.image_set().root_folder == "X"
        child_ids = child.records.ids_for_key("cam1", "IMG_0001.JPG")
        assert [d.category for d in child.recognition.detections_for(child_ids[0])] == ["1"]
        marked = child.records.ids_for_key("cam1", "IMG_0000.JPG")[0]
        assert child.records.get_markers(marked).points["Deer"] == [(0.5, 0.5)]


def test_merge_prefixes_paths_and_offsets_ids(store_factory):
    destination = store_factory("destination.ddb", records=make_records(3, folder="old"))
    source = store_factory("source.ddb", records=make_records(2, folder="") + make_records(1, folder="cam1"))

    result = MergeEngine(destination).merge(source.path, prefix="site2").run()
    assert result.ok
    assert result.value.id_offset == 3

    ids = destination.records.select_ids()
    assert len(ids) == len(set(ids)) == 6
    paths = {destination.records.get(i).relative_path for i in range(4, 7)}
    assert paths == {"site2", "site2\\cam1"}


def test_merge_without_prefix_keeps_paths(store_factory):
    destination = store_factory("destination.ddb")
    source = store_factory("source.ddb", records=make_records(2, folder="cam1"))
    assert MergeEngine(destination).merge(source.path).run().ok
    assert {r.relative_path for r in destination.records.select()} == {"cam1"}


def test_detection_ids_stay_unique(store_factory):
    images = [{"file": "cam1/IMG_0000.JPG",
               "detections": [{"category": "1", "conf": 0.9, "bbox": [0, 0, 1, 1]},
                              {"category": "1", "conf": 0.4, "bbox": [0, 0, 1, 1]}]}]
    destination = store_factory("destination.ddb", records=make_records(1, folder="cam1"))
    add_detections(destination, images)
    source = store_factory("source.ddb", records=make_records(1, folder="cam1"))
    add_detections(source, images)

    result = MergeEngine(destination).merge(source.path, prefix="b").run()
    assert result.ok
    assert result.value.detections_added == 2
    detection_ids = [row[0] for row in destination.conn.execute("SELECT detectionID FROM Detections")]
    assert len(detection_ids) == len(set(detection_ids)) == 4
    assert len(destination.recognition.detections_for(2)) == 2


def test_source_categories_remapped(store_factory):
    images = [{"file": "IMG_0000.JPG", "detections": [{"category": "3", "conf": 0.9, "bbox": [0, 0, 1, 1]}]}]
    destination = store_factory("destination.ddb", records=make_records(1, folder=""))
    add_detections(destination, [{"file": "IMG_0000.JPG",
                                  "detections": [{"category": "1", "conf": 0.9, "bbox": [0, 0, 1, 1]}]}])
    source = store_factory("source.ddb", records=make_records(1, folder=""))
    add_detections(source, images, categories={"3": "animal", "4": "vehicle"})

    assert MergeEngine(destination).merge(source.path, prefix="b").run().ok
    assert [d.category for d in destination.recognition.detections_for(2)] == ["1"]
    assert destination.recognition.detection_categories() == {"1": "animal", "4": "vehicle"}


def test_category_conflict_aborts(store_factory):
    destination = store_factory("destination.ddb", records=make_records(1, folder=""))
    add_detections(destination, [{"file": "IMG_0000.JPG",
                                  "detections": [{"category": "1", "conf": 0.9, "bbox": [0, 0, 1, 1]}]}])
    source = store_factory("source.ddb", records=make_records(1, folder=""))
    add_detections(source, [{"file": "IMG_0000.JPG",
                             "detections": [{"category": "1", "conf": 0.9, "bbox": [0, 0, 1, 1]}]}],
                   categories={"1": "person"})

    result = MergeEngine(destination).merge(source.path, prefix="b").run()
    assert result.error == ErrorKind.CATEGORY_CONFLICT
    assert destination.records.count() == 1


def test_source_recognitions_copied_into_store_without_them(store_factory):
    destination = store_factory("destination.ddb", records=make_records(2, folder="a"))
    source = store_factory("source.ddb", records=make_records(1, folder=""))
    add_detections(source, [{"file": "IMG_0000.JPG",
                             "detections": [{"category": "1", "conf": 0.9, "bbox": [0, 0, 1, 1]}]}])
    result = MergeEngine(destination).merge(source.path, prefix="b").run()
    assert result.ok
    assert destination.recognition.exist()
    assert len(destination.recognition.detections_for(3)) == 1
    assert destination.records.detections_exist()


def test_schema_mismatch_aborts(store_factory):
    destination = store_factory("destination.ddb")
    other = SchemaDefinition.with_fields(FieldDescriptor("Notes", ValueType.COUNTER))
    source = store_factory("source.ddb", schema=other, records=[FileRecord(file="a.jpg")])
    result = MergeEngine(destination).merge(source.path, prefix="b").run()
    assert result.error == ErrorKind.SCHEMA_TYPE_CONFLICT

    missing = SchemaDefinition.with_fields(FieldDescriptor("Notes", ValueType.NOTE))
    source = store_factory("source2.ddb", schema=missing, records=[FileRecord(file="a.jpg")])
    result = MergeEngine(destination).merge(source.path, prefix="b").run()
    assert result.error == ErrorKind.SCHEMA_MISMATCH
    assert destination.records.count() == 0


def test_missing_source_is_a_failed_result(store_factory, tmp_path):
    destination = store_factory("destination.ddb")
    result = MergeEngine(destination).merge(tmp_path / "nope.ddb").run()
    assert result.error == ErrorKind.STORE_CORRUPT


def test_cancelled_merge_changes_nothing(store_factory):
    destination = store_factory("destination.ddb", records=make_records(1, folder="a"))
    source = store_factory("source.ddb", records=make_records(3, folder=""))
    cancel = CancellationToken()
    run = MergeEngine(destination).merge(source.path, prefix="b", cancel=cancel)
    for event in run:
        if event.percent >= 50:
            cancel.cancel()
    assert run.result.error == ErrorKind.CANCELLED
    assert destination.records.count() == 1
    assert destination.conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1


def test_replace_existing_swaps_folder(store_factory):
    """Merging a checked-out folder back with replace leaves one copy of it."""
    destination = store_factory("destination.ddb",
                                records=make_records(2, folder="keep") + make_records(2, folder="site\\cam"))
    source = store_factory("source.ddb", records=make_records(3, folder="cam"))
    result = MergeEngine(destination).merge(source.path, prefix="site", replace_existing=True).run()
    assert result.ok
    assert result.value.records_replaced == 2
    paths = sorted(r.relative_path for r in destination.records.select())
    assert paths == ["keep", "keep", "site\\cam", "site\\cam", "site\\cam"]
    assert destination.records.select_ids() == [1, 2, 5, 6, 7]


def test_levels_shift_below_destination_levels(store_factory, tmp_path):
    project = LevelDescriptor(1, level_schema("Project"), "g-project", "Project")
    site = LevelDescriptor(2, level_schema("Site"), "g-site", "Site")
    destination = store_factory("destination.ddb", levels=[project, site])
    source = store_factory("source.ddb", levels=[LevelDescriptor(1, level_schema("Site"), "g-site", "Site")],
                           records=make_records(1, folder="north"))
    source.levels.set_row(1, "north", {"Site": "North ridge"})

    result = MergeEngine(destination).merge(source.path, prefix="proj").run()
    assert result.ok, result.lines
    assert result.value.level_rows_added == 1
    assert destination.levels.get_row(2, "proj\\north")["Site"] == "North ridge"

    checkout = CheckoutEngine(destination).checkout("proj", tmp_path / "child.ddb").run()
    assert checkout.ok
    with Store.open(tmp_path / "child.ddb").value as child:
        levels = child.levels.levels()
        assert [(l.level, l.alias) for l in levels] == [(1, "Site")]
        assert child.levels.get_row(1, "north")["Site"] == "North ridge"


def test_level_mismatch_aborts(store_factory):
    destination = store_factory("destination.ddb")
    source = store_factory("source.ddb", levels=[LevelDescriptor(1, level_schema("Site"), "g-site", "Site")])
    result = MergeEngine(destination).merge(source.path).run()
    assert result.error == ErrorKind.METADATA_LEVEL_MISMATCH


def test_checkout_selects_folder_and_subfolders(store_factory, tmp_path):
    source = store_factory("source.ddb", records=(
        make_records(1, folder="site") + make_records(1, folder="site\\cam") + make_records(1, folder="site2")
    ))
    settings = source.records.image_set()
    settings.quick_paste_terms = '[{"Notes": "empty"}]'
    source.records.save_image_set(settings)

    result = CheckoutEngine(source).checkout("site", tmp_path / "child.ddb").run()
    assert result.value.records == 2
    with Store.open(tmp_path / "child.ddb").value as child:
        assert sorted(r.relative_path for r in child.records.select()) == ["", "cam"]
        assert child.records.image_set().quick_paste_terms == '[{"Notes": "empty"}]'
        assert child.schema.load() == make_schema()
        assert not child.recognition.exist()


def test_checkout_refuses_empty_prefix(store_factory, tmp_path):
    source = store_factory("source.ddb")
    with pytest.raises(ValueError):
        CheckoutEngine(source).checkout("", tmp_path / "child.ddb")


def test_checkout_to_existing_file_is_a_failed_result(store_factory, tmp_path):
    source = store_factory("source.ddb", records=make_records(1, folder="site"))
    existing = tmp_path / "child.ddb"
    existing.write_text("keep me")
    result = CheckoutEngine(source).checkout("site", existing).run()
    assert result.error == ErrorKind.DESTINATION_EXISTS
    assert existing.read_text() == "keep me"


def test_classification_descriptions_survive_merge(store_factory):
    image = {"file": "IMG_0000.JPG", "detections": [{"category": "1", "conf": 0.9, "bbox": [0, 0, 1, 1],
                                                     "classifications": [["1", 0.8]]}]}
    destination = store_factory("destination.ddb", records=make_records(1, folder=""))
    assert destination.recognition.populate({
        "detection_categories": {"1": "animal"},
        "classification_categories": {"1": "deer"},
        "classification_category_descriptions": {"1": "mammalia;cervidae"},
        "images": [image],
    }).run().ok
    source = store_factory("source.ddb", records=make_records(1, folder=""))
    assert source.recognition.populate({
        "detection_categories": {"1": "animal"},
        "classification_categories": {"1": "deer", "2": "fox"},
        "classification_category_descriptions": {"1": "other text", "2": "mammalia;canidae"},
        "images": [image],
    }).run().ok

    assert MergeEngine(destination).merge(source.path, prefix="b").run().ok
    assert destination.recognition.classification_categories() == {"1": "deer", "2": "fox"}
    assert destination.recognition.classification_descriptions() == {"1": "mammalia;cervidae", "2": "mammalia;canidae"}
