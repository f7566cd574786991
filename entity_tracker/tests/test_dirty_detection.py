import pytest

from entity_tracker import ChangeTracker, DmlKind, EntityState, MappingModel, TrackerOptions
from entity_tracker.storages.memory import InMemoryStore
from entity_tracker.tests.school import Grade, Student


@pytest.fixture()
def seeded(store: InMemoryStore) -> InMemoryStore:
    store.seed("grades", [{"id": 1, "name": "First"}])
    store.seed("students", [{"id": 1, "name": "Bill", "grade_id": 1, "created_by": "admin"}])
    return store


def test_loaded_entity_is_unchanged(tracker: ChangeTracker, seeded: InMemoryStore) -> None:
    student = tracker.find(Student, 1)

    assert student.name == "Bill"
    assert tracker.entry(student).state is EntityState.UNCHANGED
    assert tracker.entry(student).get("created_by") == "admin"
    assert tracker.entry(student).get("grade_id") == 1
    assert not tracker.has_changes()


def test_find_returns_tracked_instance(tracker: ChangeTracker, seeded: InMemoryStore) -> None:
    assert tracker.find(Student, 1) is tracker.find(Student, 1)
    assert tracker.load(Student, {"grade_id": 1})[0] is tracker.find(Student, 1)


def test_changing_one_property_updates_one_column(tracker: ChangeTracker, seeded: InMemoryStore) -> None:
    student = tracker.find(Student, 1)
    student.name = "Steve"

    assert tracker.entry(student).modified_properties == {"name"}
    result = tracker.commit()

    assert result.is_ok
    (intent,) = seeded.batches[0]
    assert intent.kind is DmlKind.UPDATE
    assert intent.identity_key == {"id": 1}
    assert intent.column_values == {"name": "Steve"}
    assert tracker.entry(student).state is EntityState.UNCHANGED


def test_is_modified_reports_single_property(tracker: ChangeTracker, seeded: InMemoryStore) -> None:
    student = tracker.find(Student, 1)
    student.name = "Steve"

    view = tracker.entry(student)
    assert view.is_modified("name")
    assert not view.is_modified("created_by")
    assert not view.is_modified("grade_id")


def test_changing_shadow_property_updates_its_column(tracker: ChangeTracker, seeded: InMemoryStore) -> None:
    student = tracker.find(Student, 1)

    tracker.entry(student).set("created_by", "registrar")

    assert tracker.entry(student).state is EntityState.MODIFIED
    tracker.commit().unwrap()
    assert seeded.batches[0][0].column_values == {"created_by": "registrar"}
    assert seeded.rows("students")[0]["created_by"] == "registrar"


def test_value_changed_back_is_not_modified(tracker: ChangeTracker, seeded: InMemoryStore) -> None:
    student = tracker.find(Student, 1)
    student.name = "Steve"
    student.name = "Bill"

    assert not tracker.has_changes()
    assert tracker.entry(student).state is EntityState.UNCHANGED


def test_reassigning_navigation_updates_foreign_key(tracker: ChangeTracker, seeded: InMemoryStore) -> None:
    seeded.seed("grades", [{"id": 2, "name": "Second"}])
    student = tracker.find(Student, 1)
    student.grade = tracker.find(Grade, 2)

    tracker.commit().unwrap()

    assert seeded.batches[0][0].column_values == {"grade_id": 2}
    assert tracker.entry(student).get("grade_id") == 2


def test_commit_without_changes_does_nothing(tracker: ChangeTracker, seeded: InMemoryStore) -> None:
    tracker.find(Student, 1)

    result = tracker.commit()

    assert result.is_ok
    assert result.value == []
    assert seeded.batches == []


def test_changes_are_found_only_on_request_without_auto_detection(
    model: MappingModel, seeded: InMemoryStore
) -> None:
    tracker = ChangeTracker(model, seeded, seeded, TrackerOptions(auto_detect_changes=False))
    student = tracker.find(Student, 1)
    student.name = "Steve"

    assert not tracker.has_changes()
    tracker.detect_changes()
    assert tracker.entry(student).state is EntityState.MODIFIED
    assert tracker.has_changes()


def test_reload_overwrites_local_changes(tracker: ChangeTracker, seeded: InMemoryStore) -> None:
    student = tracker.find(Student, 1)
    student.name = "Steve"

    tracker.entry(student).reload()

    assert student.name == "Bill"
    assert tracker.entry(student).state is EntityState.UNCHANGED
