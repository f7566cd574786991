import typing

import attr
import pytest

from entity_tracker import (
    ChangeTracker,
    CommitError,
    CyclicInsertDependency,
    DmlKind,
    EntityState,
    EntityType,
    ExecutionError,
    InvalidOperationError,
    MappingModel,
    Navigation,
    NavigationKind,
    OptimisticConcurrencyError,
    PendingKey,
    Property,
)
from entity_tracker.commit import CommitOutcome, DmlIntent, is_conflict
from entity_tracker.interfaces import CommandExecutor
from entity_tracker.storages.memory import InMemoryStore
from entity_tracker.tests.school import Course, Grade, Student, StudentCourse


def test_added_graph_is_inserted_principals_first(tracker: ChangeTracker, store: InMemoryStore) -> None:
    grade = Grade(name="First")
    student = Student(name="Bill", grade=grade)
    tracker.add(student)

    result = tracker.commit()

    assert result.is_ok
    intents = store.batches[0]
    assert [intent.table for intent in intents] == ["grades", "students"]
    assert intents[0].column_values == {"name": "First"}
    assert intents[1].column_values == {"name": "Bill", "grade_id": PendingKey(0)}
    assert grade.id == 1
    assert student.id == 1
    assert tracker.entry(student).get("grade_id") == 1
    assert store.rows("students") == [{"id": 1, "name": "Bill", "created_by": None, "grade_id": 1}]
    assert tracker.entry(student).state is EntityState.UNCHANGED
    assert tracker.entry(grade).state is EntityState.UNCHANGED
    assert tracker.find(Grade, 1) is grade


def test_second_commit_is_empty(tracker: ChangeTracker, store: InMemoryStore) -> None:
    tracker.add(Student(name="Bill", grade=Grade(name="First")))
    tracker.commit().unwrap()

    result = tracker.commit()

    assert result.value == []
    assert len(store.batches) == 1


def test_collection_children_get_principal_key(tracker: ChangeTracker, store: InMemoryStore) -> None:
    grade = Grade(name="First", students=[Student(name="Bill"), Student(name="Steve")])
    tracker.add(grade)

    tracker.commit().unwrap()

    assert [row["grade_id"] for row in store.rows("students")] == [1, 1]


def test_join_entity_waits_for_both_principals(tracker: ChangeTracker, store: InMemoryStore) -> None:
    student = Student(name="Bill")
    course = Course(title="Math")
    link = StudentCourse(student=student, course=course)
    student.courses = [link]
    tracker.add(student)

    tracker.commit().unwrap()

    assert [intent.table for intent in store.batches[0]] == ["students", "courses", "student_courses"]
    assert (link.student_id, link.course_id) == (1, 1)
    assert tracker.entry(link).key is not None


def test_explicit_key_is_inserted_as_given(tracker: ChangeTracker, store: InMemoryStore) -> None:
    tracker.add(Grade(id=7, name="Seventh"))

    tracker.commit().unwrap()

    assert store.batches[0][0].column_values == {"id": 7, "name": "Seventh"}
    assert store.rows("grades") == [{"id": 7, "name": "Seventh"}]


def test_deleted_entities_go_dependents_first(tracker: ChangeTracker, store: InMemoryStore) -> None:
    store.seed("grades", [{"id": 1, "name": "First"}])
    store.seed("students", [{"id": 1, "name": "Bill", "grade_id": 1}])
    grade = tracker.find(Grade, 1)
    student = tracker.find(Student, 1)
    tracker.remove(grade)
    tracker.remove(student)

    tracker.commit().unwrap()

    assert [intent.table for intent in store.batches[0]] == ["students", "grades"]
    assert store.rows("grades") == []
    assert tracker.entry(grade).state is EntityState.DETACHED
    assert len(tracker) == 0


def test_deleting_missing_row_succeeds(tracker: ChangeTracker, store: InMemoryStore) -> None:
    grade = Grade(id=5, name="Gone")
    tracker.remove(grade)

    result = tracker.commit()

    assert result.is_ok
    assert result.value[0].rows_affected == 0
    assert tracker.entry(grade).state is EntityState.DETACHED


def test_update_of_missing_row_is_a_conflict(tracker: ChangeTracker, store: InMemoryStore) -> None:
    grade = Grade(id=5, name="Gone")
    tracker.update(grade)

    result = tracker.commit()

    assert result.is_err
    assert isinstance(result.error, OptimisticConcurrencyError)
    assert [entry.entity for entry in result.error.entries] == [grade]
    assert tracker.entry(grade).state is EntityState.MODIFIED


def test_concurrency_token_guards_update(tracker: ChangeTracker, store: InMemoryStore) -> None:
    store.seed("courses", [{"id": 1, "title": "Math", "version": 1}])
    course = tracker.find(Course, 1)
    course.title = "Algebra"
    store.seed("courses", [{"id": 1, "title": "Math", "version": 2}])

    result = tracker.commit()

    assert isinstance(result.error, OptimisticConcurrencyError)
    assert store.batches == []
    assert store.rows("courses")[0]["title"] == "Math"
    assert tracker.entry(course).state is EntityState.MODIFIED


def test_concurrency_token_matches(tracker: ChangeTracker, store: InMemoryStore) -> None:
    store.seed("courses", [{"id": 1, "title": "Math", "version": 1}])
    course = tracker.find(Course, 1)
    course.title = "Algebra"
    course.version = 2

    tracker.commit().unwrap()

    (intent,) = store.batches[0]
    assert intent.concurrency_predicate == {"version": 1}
    assert intent.column_values == {"title": "Algebra", "version": 2}
    assert tracker.entry(course).original_values["version"] == 2


def test_delete_with_stale_token_is_a_conflict(tracker: ChangeTracker, store: InMemoryStore) -> None:
    store.seed("courses", [{"id": 1, "title": "Math", "version": 1}])
    course = tracker.find(Course, 1)
    tracker.remove(course)
    store.seed("courses", [{"id": 1, "title": "Math", "version": 2}])

    result = tracker.commit()

    assert isinstance(result.error, OptimisticConcurrencyError)
    assert tracker.entry(course).state is EntityState.DELETED


def test_delete_with_token_of_never_stored_row_is_accepted(tracker: ChangeTracker, store: InMemoryStore) -> None:
    course = Course(id=5, title="Gone", version=1)
    tracker.remove(course)

    result = tracker.commit()

    assert result.is_ok
    (outcome,) = result.value
    assert outcome.rows_affected == 0
    assert store.batches[0][0].concurrency_predicate == {"version": 1}
    assert tracker.entry(course).state is EntityState.DETACHED


def test_failed_batch_leaves_store_and_states_untouched(tracker: ChangeTracker, store: InMemoryStore) -> None:
    grade = Grade(name="First")
    student = Student(name="Bill")
    tracker.add(grade)
    tracker.add(student)
    tracker.entry(student).set("grade_id", 42)

    result = tracker.commit()

    assert isinstance(result.error, ExecutionError)
    assert store.rows("grades") == []
    assert grade.id == 0
    assert tracker.entry(grade).state is EntityState.ADDED
    assert tracker.entry(student).state is EntityState.ADDED


def test_commit_without_executor_is_rejected(model: MappingModel) -> None:
    tracker = ChangeTracker(model)
    tracker.add(Grade(name="First"))

    result = tracker.commit()

    assert isinstance(result.error, InvalidOperationError)
    assert tracker.has_changes()


def test_commit_without_executor_and_changes_succeeds(model: MappingModel) -> None:
    assert ChangeTracker(model).commit().value == []


class SilentExecutor(CommandExecutor):
    """Reports every intent as touching no rows and never raises."""

    def __init__(self) -> None:
        self.batches: typing.List[typing.Sequence[DmlIntent]] = []

    def execute_batch(self, intents: typing.Sequence[DmlIntent]) -> typing.List[CommitOutcome]:
        self.batches.append(intents)
        return [CommitOutcome(rows_affected=0) for _ in intents]


def test_unraised_update_conflict_is_an_execution_error(model: MappingModel) -> None:
    executor = SilentExecutor()
    tracker = ChangeTracker(model, executor=executor)
    grade = Grade(id=1, name="First")
    tracker.update(grade)

    result = tracker.commit()

    assert isinstance(result.error, ExecutionError)
    assert not isinstance(result.error, OptimisticConcurrencyError)
    assert "may already be applied" in str(result.error)
    assert result.error.intent is executor.batches[0][0]
    assert tracker.entry(grade).state is EntityState.MODIFIED


def test_added_entity_without_any_key_is_rejected(tracker: ChangeTracker, store: InMemoryStore) -> None:
    tracker.add(StudentCourse())

    result = tracker.commit()

    assert isinstance(result.error, CommitError)
    assert store.batches == []


@attr.s(auto_attribs=True, eq=False)
class Team:
    id: int = 0
    captain: typing.Optional["Captain"] = None


@attr.s(auto_attribs=True, eq=False)
class Captain:
    id: int = 0
    team: typing.Optional[Team] = None


def cyclic_model(nullable: bool) -> MappingModel:
    def entity_type(cls: typing.Type, table: str, navigation: str, target: typing.Type) -> EntityType:
        return EntityType(
            cls=cls,
            table=table,
            properties=[
                Property("id", int, is_key=True, generated=True),
                Property(f"{navigation}_id", int, nullable=nullable, shadow=True),
            ],
            navigations=[Navigation(navigation, target, NavigationKind.REFERENCE, f"{navigation}_id", nullable)],
        )

    return MappingModel([entity_type(Team, "teams", "captain", Captain), entity_type(Captain, "captains", "team", Team)])


def cyclic_pair() -> typing.Tuple[Team, Captain]:
    team = Team()
    captain = Captain(team=team)
    team.captain = captain
    return team, captain


def test_cycle_through_required_foreign_keys_is_rejected():
    model = cyclic_model(nullable=False)
    store = InMemoryStore(model)
    tracker = ChangeTracker(model, store, store)
    team, _captain = cyclic_pair()
    tracker.add(team)

    result = tracker.commit()

    assert isinstance(result.error, CyclicInsertDependency)
    assert store.batches == []


def test_cycle_through_nullable_foreign_key_is_inserted_then_patched():
    model = cyclic_model(nullable=True)
    store = InMemoryStore(model)
    tracker = ChangeTracker(model, store, store)
    team, captain = cyclic_pair()
    tracker.add(team)

    tracker.commit().unwrap()

    kinds = [(intent.kind, intent.table) for intent in store.batches[0]]
    assert kinds == [(DmlKind.INSERT, "teams"), (DmlKind.INSERT, "captains"), (DmlKind.UPDATE, "teams")]
    assert store.rows("teams") == [{"id": 1, "captain_id": 1}]
    assert store.rows("captains") == [{"id": 1, "team_id": 1}]
    assert tracker.entry(team).get("captain_id") == 1
    assert tracker.entry(captain).state is EntityState.UNCHANGED


@pytest.mark.parametrize(
    "kind, rows_affected, predicate, expected",
    [
        (DmlKind.UPDATE, 0, None, True),
        (DmlKind.UPDATE, 1, None, False),
        (DmlKind.DELETE, 0, None, False),
        (DmlKind.DELETE, 0, {"version": 1}, False),
        (DmlKind.INSERT, 0, None, False),
    ],
)
def test_is_conflict(kind: DmlKind, rows_affected: int, predicate: typing.Optional[dict], expected: bool) -> None:
    intent = DmlIntent(kind=kind, table="grades", identity_key={"id": 1}, concurrency_predicate=predicate)

    assert is_conflict(intent, rows_affected) is expected
