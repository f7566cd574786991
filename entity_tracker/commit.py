"""Turns tracked entries into an ordered batch of data-manipulation intents.

Order of the batch:

1. INSERTs of Added entries, principals before their dependents,
2. UPDATEs filling in foreign keys that had to be inserted as NULL to break a cycle,
3. UPDATEs of Modified entries, only the changed columns,
4. DELETEs of Deleted entries, dependents before their principals.

Values of keys generated by the store are not known while planning; intents
refer to them through ``PendingKey`` placeholders which executors resolve with
``resolve_pending`` as they go.
"""
import enum
import logging
import typing

import attr

from entity_tracker.entry import EntityEntry
from entity_tracker.errors import CommitError, CyclicInsertDependency
from entity_tracker.identity_map import IdentityKey, is_unset_value
from entity_tracker.mapping import ForeignKey, MappingModel
from entity_tracker.state import EntityState

logger = logging.getLogger(__name__)


class DmlKind(enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@attr.s(auto_attribs=True, frozen=True)
class PendingKey:
    intent_index: int


@attr.s(auto_attribs=True)
class DmlIntent:
    kind: DmlKind
    table: str
    identity_key: typing.Optional[typing.Dict[str, typing.Any]]
    column_values: typing.Dict[str, typing.Any] = attr.Factory(dict)
    concurrency_predicate: typing.Optional[typing.Dict[str, typing.Any]] = None
    # generated column an INSERT reports back through CommitOutcome.generated_key
    generated_column: typing.Optional[str] = None


@attr.s(auto_attribs=True, frozen=True)
class CommitOutcome:
    generated_key: typing.Any = None
    rows_affected: int = 0


def resolve_pending(
    values: typing.Optional[typing.Mapping[str, typing.Any]], outcomes: typing.Sequence[CommitOutcome]
) -> typing.Optional[typing.Dict[str, typing.Any]]:
    if values is None:
        return None
    resolved = {}
    for column, value in values.items():
        if isinstance(value, PendingKey):
            value = outcomes[value.intent_index].generated_key
        resolved[column] = value
    return resolved


@attr.s(auto_attribs=True)
class PlannedStep:
    intent_index: int
    entry: EntityEntry
    kind: DmlKind


# value of a foreign key whose principal is Added and has no key yet
@attr.s(auto_attribs=True, frozen=True, eq=False)
class PendingPrincipal:
    entry: EntityEntry


Overlay = typing.Dict[typing.Tuple[int, str], PendingPrincipal]


@attr.s(auto_attribs=True)
class CommitPlan:
    intents: typing.List[DmlIntent] = attr.Factory(list)
    steps: typing.List[PlannedStep] = attr.Factory(list)
    insert_index: typing.Dict[int, int] = attr.Factory(dict)
    overlay: Overlay = attr.Factory(dict)

    def __len__(self) -> int:
        return len(self.intents)

    def add(self, intent: DmlIntent, entry: EntityEntry) -> int:
        index = len(self.intents)
        self.intents.append(intent)
        self.steps.append(PlannedStep(index, entry, intent.kind))
        if intent.kind is DmlKind.INSERT:
            self.insert_index[id(entry)] = index
        return index


@attr.s(auto_attribs=True, frozen=True, eq=False)
class _Edge:
    dependent: EntityEntry
    principal: EntityEntry
    foreign_key: ForeignKey


class CommitPlanner:
    def __init__(self, model: MappingModel) -> None:
        self._model = model

    def plan(self, entries: typing.Iterable[EntityEntry], overlay: typing.Optional[Overlay] = None) -> CommitPlan:
        overlay = overlay or {}
        added: typing.List[EntityEntry] = []
        modified: typing.List[EntityEntry] = []
        deleted: typing.List[EntityEntry] = []
        for entry in entries:
            if entry.state is EntityState.ADDED:
                added.append(entry)
            elif entry.state is EntityState.MODIFIED:
                modified.append(entry)
            elif entry.state is EntityState.DELETED:
                deleted.append(entry)

        plan = CommitPlan(overlay=overlay)
        ordered, deferred = self._order_inserts(added, overlay)
        deferred_keys = {(id(edge.dependent), edge.foreign_key.name) for edge in deferred}
        for entry in ordered:
            plan.add(self._insert_intent(entry, plan, deferred_keys), entry)
        for edge in deferred:
            plan.add(self._deferred_fk_intent(edge, plan), edge.dependent)
        for entry in modified:
            intent = self._update_intent(entry, plan)
            if intent is not None:
                plan.add(intent, entry)
        for entry in self._order_deletes(deleted):
            plan.add(self._delete_intent(entry), entry)

        logger.debug(
            "Planned %d intent(s): %d added, %d modified, %d deleted",
            len(plan),
            len(added),
            len(modified),
            len(deleted),
        )
        return plan

    def _value(self, entry: EntityEntry, name: str, plan: CommitPlan) -> typing.Any:
        pending = plan.overlay.get((id(entry), name))
        if pending is None:
            return entry.read(name)
        try:
            return PendingKey(plan.insert_index[id(pending.entry)])
        except KeyError:
            raise CommitError(
                f"{entry.entity_type.name}.{name} references a {pending.entry.entity_type.name} "
                f"that is not being inserted"
            ) from None

    def _key_values(self, entry: EntityEntry, plan: CommitPlan) -> typing.Dict[str, typing.Any]:
        if id(entry) not in plan.insert_index:
            return self._stored_key(entry)
        values = {}
        for prop in self._key_properties(entry):
            if prop.generated and is_unset_value(entry.read(prop.name)):
                values[prop.column] = PendingKey(plan.insert_index[id(entry)])
            else:
                values[prop.column] = self._value(entry, prop.name, plan)
        return values

    def _key_properties(self, entry: EntityEntry) -> typing.List:
        return [prop for prop in entry.entity_type.properties if prop.is_key]

    def _stored_key(self, entry: EntityEntry) -> typing.Dict[str, typing.Any]:
        if entry.key is None:
            raise CommitError(f"{entry.state} {entry.entity_type.name} has no key to address its row with")
        return {prop.column: value for prop, value in zip(self._key_properties(entry), entry.key.values)}

    def _insert_intent(
        self, entry: EntityEntry, plan: CommitPlan, deferred_keys: typing.Set[typing.Tuple[int, str]]
    ) -> DmlIntent:
        entity_type = entry.entity_type
        generated_column = None
        values = {}
        for prop in entity_type.properties:
            if (id(entry), prop.name) in deferred_keys:
                continue
            value = self._value(entry, prop.name, plan)
            if prop.generated:
                generated_column = prop.column
                if is_unset_value(value):
                    continue
            if value is None:
                continue
            values[prop.column] = value

        key_values = [values.get(prop.column) for prop in self._key_properties(entry)]
        if generated_column is None and all(is_unset_value(value) for value in key_values):
            raise CommitError(f"Added {entity_type.name} has no key value and its key is not generated")
        return DmlIntent(
            kind=DmlKind.INSERT,
            table=entity_type.table,
            identity_key=None,
            column_values=values,
            generated_column=generated_column,
        )

    def _deferred_fk_intent(self, edge: _Edge, plan: CommitPlan) -> DmlIntent:
        entity_type = edge.dependent.entity_type
        column = entity_type.get_property(edge.foreign_key.name).column
        return DmlIntent(
            kind=DmlKind.UPDATE,
            table=entity_type.table,
            identity_key=self._key_values(edge.dependent, plan),
            column_values={column: self._value(edge.dependent, edge.foreign_key.name, plan)},
        )

    def _update_intent(self, entry: EntityEntry, plan: CommitPlan) -> typing.Optional[DmlIntent]:
        entity_type = entry.entity_type
        names = set(entry.modified)
        names.update(name for entry_id, name in plan.overlay if entry_id == id(entry))
        values = {
            prop.column: self._value(entry, prop.name, plan)
            for prop in entity_type.properties
            if prop.name in names and not prop.is_key
        }
        if not values:
            return None
        return DmlIntent(
            kind=DmlKind.UPDATE,
            table=entity_type.table,
            identity_key=self._key_values(entry, plan),
            column_values=values,
            concurrency_predicate=self._concurrency_predicate(entry),
        )

    def _delete_intent(self, entry: EntityEntry) -> DmlIntent:
        return DmlIntent(
            kind=DmlKind.DELETE,
            table=entry.entity_type.table,
            identity_key=self._stored_key(entry),
            concurrency_predicate=self._concurrency_predicate(entry),
        )

    def _concurrency_predicate(self, entry: EntityEntry) -> typing.Optional[typing.Dict[str, typing.Any]]:
        token = entry.entity_type.concurrency_token
        if token is None:
            return None
        return {token.column: entry.original_values.get(token.name)}

    def _principal_edges(
        self,
        entries: typing.Sequence[EntityEntry],
        overlay: Overlay,
        value_of: typing.Callable[[EntityEntry, str], typing.Any],
    ) -> typing.List[_Edge]:
        by_key = {entry.current_key(): entry for entry in entries}
        members = {id(entry) for entry in entries}
        edges = []
        for dependent in entries:
            for foreign_key in self._model.foreign_keys(dependent.entity_type.cls):
                pending = overlay.get((id(dependent), foreign_key.name))
                if pending is not None:
                    principal = pending.entry if id(pending.entry) in members else None
                else:
                    value = value_of(dependent, foreign_key.name)
                    if is_unset_value(value):
                        continue
                    principal = by_key.get(IdentityKey.for_values(foreign_key.principal, (value,)))
                if principal is not None and principal is not dependent:
                    edges.append(_Edge(dependent, principal, foreign_key))
        return edges

    def _order_inserts(
        self, added: typing.List[EntityEntry], overlay: Overlay
    ) -> typing.Tuple[typing.List[EntityEntry], typing.List[_Edge]]:
        edges = self._principal_edges(added, overlay, lambda entry, name: entry.read(name))
        ordered, stuck = _topological(added, edges)
        if not stuck:
            return ordered, []

        # drop nullable edges inside the cycle one at a time until it is broken
        deferred: typing.List[_Edge] = []
        while stuck:
            stuck_ids = {id(entry) for entry in stuck}
            breakable = next(
                (
                    edge
                    for edge in edges
                    if edge.foreign_key.nullable and id(edge.dependent) in stuck_ids and id(edge.principal) in stuck_ids
                ),
                None,
            )
            if breakable is None:
                raise CyclicInsertDependency(stuck)
            deferred.append(breakable)
            edges = [edge for edge in edges if edge is not breakable]
            ordered, stuck = _topological(added, edges)
        logger.debug("Broke insert cycle by deferring %d nullable foreign key(s)", len(deferred))
        return ordered, deferred

    def _order_deletes(self, deleted: typing.List[EntityEntry]) -> typing.List[EntityEntry]:
        # original values: the row as the store knows it
        edges = self._principal_edges(deleted, {}, lambda entry, name: entry.original_values.get(name))
        reversed_edges = [_Edge(edge.principal, edge.dependent, edge.foreign_key) for edge in edges]
        ordered, stuck = _topological(deleted, reversed_edges)
        if stuck:
            logger.warning("Deleted entities reference each other, deleting %d of them in tracking order", len(stuck))
        return ordered + stuck


def _topological(
    entries: typing.List[EntityEntry], edges: typing.List[_Edge]
) -> typing.Tuple[typing.List[EntityEntry], typing.List[EntityEntry]]:
    """Kahn's algorithm keeping tracking order among independent entries.

    Returns the ordered entries and the ones left over because of a cycle.
    """
    blockers: typing.Dict[int, int] = {id(entry): 0 for entry in entries}
    dependents: typing.Dict[int, typing.List[EntityEntry]] = {id(entry): [] for entry in entries}
    for edge in edges:
        blockers[id(edge.dependent)] += 1
        dependents[id(edge.principal)].append(edge.dependent)

    ordered: typing.List[EntityEntry] = []
    emitted: typing.Set[int] = set()
    progress = True
    while progress:
        progress = False
        for entry in entries:
            if id(entry) in emitted or blockers[id(entry)]:
                continue
            ordered.append(entry)
            emitted.add(id(entry))
            progress = True
            for dependent in dependents[id(entry)]:
                blockers[id(dependent)] -= 1
            break
    stuck = [entry for entry in entries if id(entry) not in emitted]
    return ordered, stuck


def is_conflict(intent: DmlIntent, rows_affected: int) -> bool:
    """Whether an intent touching no rows means the row changed under us.

    An UPDATE must always hit its row. A DELETE of a row that is already gone is
    accepted; a tokenized DELETE whose row is still present under another token
    is a conflict the executor detects by looking the key up.
    """
    return not rows_affected and intent.kind is DmlKind.UPDATE
