import logging
import typing

from entity_tracker.commit import CommitOutcome, CommitPlan, CommitPlanner, DmlKind, Overlay, PendingPrincipal, is_conflict
from entity_tracker.config import TrackerOptions
from entity_tracker.entry import EntityEntry, EntityEntryView
from entity_tracker.errors import (
    CommitError,
    DuplicateTrackingError,
    ExecutionError,
    InvalidOperationError,
    OptimisticConcurrencyError,
    TrackingError,
)
from entity_tracker.graph import POLICIES, GraphOperation, GraphWalker, NodeInfo, Policy
from entity_tracker.identity_map import IdentityKey, IdentityMap, is_unset_value
from entity_tracker.interfaces import CommandExecutor, Loader, Predicate, Row
from entity_tracker.mapping import EntityType, MappingModel
from entity_tracker.result import Err, Ok, Result
from entity_tracker.state import EntityState

logger = logging.getLogger(__name__)

TrackGraphCallback = typing.Callable[[NodeInfo], typing.Optional[EntityState]]

PENDING_STATES = (EntityState.ADDED, EntityState.MODIFIED, EntityState.DELETED)


class ChangeTracker:
    """Unit of work over a bounded set of entities.

    Not safe for use from several threads; create one tracker per unit of work.
    """

    def __init__(
        self,
        model: MappingModel,
        executor: typing.Optional[CommandExecutor] = None,
        loader: typing.Optional[Loader] = None,
        options: typing.Optional[TrackerOptions] = None,
    ) -> None:
        self.model = model
        self.options = options or TrackerOptions()
        self._executor = executor
        self._loader = loader
        self._identity_map = IdentityMap()
        # keyed by id() of the entity, the entry keeps the entity alive
        self._entries: typing.Dict[int, EntityEntry] = {}
        self._walker = GraphWalker(model, self._find_entry, self.options.partial_key_policy)
        self._planner = CommitPlanner(model)

    def __enter__(self) -> "ChangeTracker":
        return self

    def __exit__(self, *exc_info: typing.Any) -> None:
        self.clear()

    def __len__(self) -> int:
        return len(self._entries)

    # Graph operations, a policy given to any of them replaces its built-in classification

    def attach(self, entity: typing.Any, policy: typing.Optional[Policy] = None) -> Result:
        return self._apply_graph(entity, GraphOperation.ATTACH, policy or POLICIES[GraphOperation.ATTACH])

    def add(self, entity: typing.Any, policy: typing.Optional[Policy] = None) -> Result:
        return self._apply_graph(entity, GraphOperation.ADD, policy or POLICIES[GraphOperation.ADD])

    def update(self, entity: typing.Any, policy: typing.Optional[Policy] = None) -> Result:
        return self._apply_graph(entity, GraphOperation.UPDATE, policy or POLICIES[GraphOperation.UPDATE])

    def remove(self, entity: typing.Any, policy: typing.Optional[Policy] = None) -> Result:
        entry = self._find_entry(entity)
        if entry is not None and entry.state is EntityState.ADDED:
            # never reached the store, forgetting it is enough
            self._detach_entry(entry)
            return Ok(self.entry(entity))
        return self._apply_graph(entity, GraphOperation.REMOVE, policy or POLICIES[GraphOperation.REMOVE])

    def track_graph(self, root: typing.Any, callback: TrackGraphCallback) -> Result:
        def policy(node: NodeInfo) -> typing.Optional[EntityState]:
            if node.is_tracked:
                return None
            state = callback(node)
            if state is not None and not isinstance(state, EntityState):
                raise TypeError(f"track_graph callback must return an EntityState or None, got {state!r}")
            return None if state is EntityState.DETACHED else state

        return self._apply_graph(root, GraphOperation.TRACK_GRAPH, policy)

    def entry(self, entity: typing.Any) -> EntityEntryView:
        return EntityEntryView(self, entity)

    def entries(self, state: typing.Optional[EntityState] = None) -> typing.List[EntityEntryView]:
        if self.options.auto_detect_changes:
            self.detect_changes()
        return [
            EntityEntryView(self, entry.entity)
            for entry in list(self._entries.values())
            if state is None or entry.state is state
        ]

    def has_changes(self) -> bool:
        if self.options.auto_detect_changes:
            self.detect_changes()
        return any(entry.state in PENDING_STATES for entry in self._entries.values())

    def detect_changes(self) -> None:
        self._fix_up()
        for entry in list(self._entries.values()):
            entry.detect_changes()

    def detach(self, entity: typing.Any) -> None:
        entry = self._find_entry(entity)
        if entry is None:
            return
        if not self.options.cascade_detach:
            self._detach_entry(entry)
            return
        for node, state in self._walker.walk(entity, lambda node: EntityState.DETACHED if node.is_tracked else None):
            if state is EntityState.DETACHED:
                self._detach_entry(node.tracked_entry)

    def clear(self) -> None:
        self._identity_map.clear()
        self._entries.clear()

    # Loading

    def find(self, cls: typing.Type, *key_values: typing.Any) -> typing.Optional[typing.Any]:
        entity_type = self.model.entity_type(cls)
        key = IdentityKey.for_values(entity_type.cls, key_values)
        entry = self._identity_map.resolve(key)
        if entry is not None:
            return entry.entity
        if self._loader is None:
            return None
        row = self._loader.load_by_key(key)
        if row is None:
            return None
        return self._materialize(entity_type, row)

    def load(self, cls: typing.Type, predicate: typing.Optional[Predicate] = None) -> typing.List[typing.Any]:
        entity_type = self.model.entity_type(cls)
        if self._loader is None:
            raise InvalidOperationError("ChangeTracker has no loader")
        rows = self._loader.load_by_predicate(entity_type, predicate if predicate is not None else {})
        return [self._materialize(entity_type, row) for row in rows]

    # Commit

    def commit(self) -> Result:
        try:
            overlay = self._fix_up()
            if self.options.auto_detect_changes:
                for entry in list(self._entries.values()):
                    entry.detect_changes()
            plan = self._planner.plan(list(self._entries.values()), overlay)
        except TrackingError as error:
            logger.warning("Commit rejected while planning: %s", error)
            return Err(error)

        outcomes: typing.List[CommitOutcome] = []
        if plan.intents:
            if self._executor is None:
                return Err(InvalidOperationError("ChangeTracker has no command executor"))
            try:
                outcomes = list(self._executor.execute_batch(plan.intents))
            except OptimisticConcurrencyError as error:
                logger.warning("Commit failed on a concurrency conflict: %s", error)
                return Err(OptimisticConcurrencyError(self._entries_for(plan, error.intents), error.intents))
            except CommitError as error:
                logger.warning("Commit failed while executing: %s", error)
                return Err(error)

            if len(outcomes) != len(plan.intents):
                return Err(ExecutionError(f"Expected {len(plan.intents)} outcome(s), got {len(outcomes)}"))
            unreported = [
                intent for intent, outcome in zip(plan.intents, outcomes) if is_conflict(intent, outcome.rows_affected)
            ]
            if unreported:
                # the executor has finished, so the batch may already be in the store
                logger.error("Command executor returned %d conflicting outcome(s) without raising", len(unreported))
                return Err(
                    ExecutionError(
                        f"Command executor reported {len(unreported)} UPDATE(s) touching no rows without raising "
                        "OptimisticConcurrencyError; the batch may already be applied",
                        unreported[0],
                    )
                )

        self._accept(plan, outcomes)
        logger.info("Committed %d intent(s)", len(plan.intents))
        return Ok(outcomes)

    # Internals

    def _find_entry(self, entity: typing.Any) -> typing.Optional[EntityEntry]:
        entry = self._entries.get(id(entity))
        if entry is not None and entry.entity is entity:
            return entry
        return None

    def _apply_graph(self, root: typing.Any, operation: GraphOperation, policy: Policy) -> Result:
        try:
            classified = self._walker.walk(root, policy)
        except TrackingError as error:
            return Err(error)

        root_node = classified[0][0]
        if operation is GraphOperation.REMOVE and not root_node.is_tracked and not root_node.is_key_set:
            return Err(InvalidOperationError(f"Cannot remove a {root_node.entity_type.name} without a key"))

        changes: typing.List[typing.Tuple[NodeInfo, EntityState]] = []
        for node, state in classified:
            if state is None:
                continue
            # entities tracked before the call keep their state unless named directly
            if node.is_tracked and not (node.is_root and operation is not GraphOperation.ATTACH):
                continue
            changes.append((node, state))
        duplicate = self._find_duplicate(changes)
        if duplicate is not None:
            return Err(duplicate)

        self._apply_changes(
            [
                (node.tracked_entry or EntityEntry(node.entity, node.entity_type, EntityState.DETACHED), state)
                for node, state in changes
            ]
        )
        logger.debug("%s %s: %d entities changed", operation.value, type(root).__name__, len(changes))
        return Ok(self.entry(root))

    def _set_state(self, entity: typing.Any, state: EntityState) -> Result:
        entry = self._find_entry(entity)
        if entry is None and state is EntityState.DETACHED:
            return Ok(self.entry(entity))
        try:
            node = self._walker.describe(entity)
        except TrackingError as error:
            return Err(error)
        duplicate = self._find_duplicate([(node, state)])
        if duplicate is not None:
            return Err(duplicate)
        if entry is None:
            entry = EntityEntry(entity, node.entity_type, EntityState.DETACHED)
        self._apply_changes([(entry, state)])
        return Ok(self.entry(entity))

    def _apply_changes(self, changes: typing.List[typing.Tuple[EntityEntry, EntityState]]) -> None:
        # foreign keys implied by navigations are part of the snapshot, so they are fixed up first
        settling: typing.List[typing.Tuple[EntityEntry, EntityState]] = []
        for entry, state in changes:
            if state is EntityState.DETACHED:
                self._detach_entry(entry)
                continue
            settling.append((entry, entry.state))
            entry.state = state
            self._entries[id(entry.entity)] = entry

        self._fix_up(only={id(entry) for entry, _previous in settling})
        for entry, previous in settling:
            self._settle(entry, previous)
            self._register_key(entry)
            logger.debug("%s: %s -> %s", entry.entity_type.name, previous, entry.state)

    def _settle(self, entry: EntityEntry, previous: EntityState) -> None:
        has_snapshot = previous not in (EntityState.DETACHED, EntityState.ADDED)
        if entry.state is EntityState.UNCHANGED:
            entry.take_snapshot()
        elif entry.state is EntityState.MODIFIED:
            if not has_snapshot:
                entry.take_snapshot()
            entry.mark_all_modified()
        elif entry.state is EntityState.DELETED:
            if not has_snapshot:
                entry.take_snapshot()
        else:
            entry.modified.clear()

    def _register_key(self, entry: EntityEntry) -> None:
        key = entry.current_key()
        if entry.key == key:
            return
        if entry.key is not None and self._identity_map.resolve(entry.key) is entry:
            self._identity_map.remove(entry.key)
        if key.is_unset(self.options.partial_key_policy):
            entry.key = None
            return
        self._identity_map.insert(key, entry)
        entry.key = key

    def _detach_entry(self, entry: EntityEntry) -> None:
        if entry.key is not None and self._identity_map.resolve(entry.key) is entry:
            self._identity_map.remove(entry.key)
        self._entries.pop(id(entry.entity), None)
        logger.debug("%s: %s -> %s", entry.entity_type.name, entry.state, EntityState.DETACHED)
        entry.state = EntityState.DETACHED

    def _find_duplicate(
        self, changes: typing.Sequence[typing.Tuple[NodeInfo, EntityState]]
    ) -> typing.Optional[DuplicateTrackingError]:
        """Check the keys the changed nodes will have once fix-up has run.

        Nothing is tracked yet at this point, so a collision leaves the tracker as it was.
        """
        members: typing.Dict[int, typing.Tuple[typing.Any, EntityType]] = {
            entity_id: (entry.entity, entry.entity_type) for entity_id, entry in self._entries.items()
        }
        keys: typing.Dict[int, IdentityKey] = {
            entity_id: entry.current_key() for entity_id, entry in self._entries.items()
        }
        projected: typing.Dict[int, typing.Dict[str, typing.Any]] = {}
        for node, state in changes:
            if state is EntityState.DETACHED:
                members.pop(id(node.entity), None)
                continue
            members[id(node.entity)] = (node.entity, node.entity_type)
            keys[id(node.entity)] = node.key
            projected[id(node.entity)] = dict(zip(node.entity_type.key_names, node.key.values))

        for dependent, foreign_key, principal in self._navigation_links(members):
            values = projected.get(dependent)
            if values is None or foreign_key not in values:
                continue
            principal_key = keys[principal]
            if not principal_key.is_unset(self.options.partial_key_policy):
                values[foreign_key] = principal_key.values[0]

        claimed: typing.Dict[IdentityKey, int] = {}
        for node, state in changes:
            if state is EntityState.DETACHED:
                continue
            values = projected[id(node.entity)]
            key = IdentityKey.for_values(node.entity_type.cls, (values[name] for name in node.entity_type.key_names))
            if key.is_unset(self.options.partial_key_policy):
                continue
            existing = self._identity_map.resolve(key)
            if existing is not None and existing is not node.tracked_entry:
                return DuplicateTrackingError(key)
            if claimed.setdefault(key, id(node.entity)) != id(node.entity):
                return DuplicateTrackingError(key)
        return None

    def _navigation_links(
        self, members: typing.Mapping[int, typing.Tuple[typing.Any, EntityType]]
    ) -> typing.Iterator[typing.Tuple[int, str, int]]:
        """Yield (dependent id, foreign key, principal id) for navigations between members."""

        def is_member(value: typing.Any) -> bool:
            member = members.get(id(value))
            return member is not None and member[0] is value

        for entity_id, (entity, entity_type) in list(members.items()):
            for navigation in entity_type.navigations:
                value = getattr(entity, navigation.name, None)
                if value is None:
                    continue
                if navigation.is_collection:
                    for child in value:
                        if is_member(child):
                            yield id(child), navigation.foreign_key, entity_id
                elif is_member(value):
                    yield entity_id, navigation.foreign_key, id(value)

    def _links(self) -> typing.Iterator[typing.Tuple[EntityEntry, str, EntityEntry]]:
        """Yield (dependent, foreign key, principal) for navigations between tracked entities."""
        entries = dict(self._entries)
        members = {entity_id: (entry.entity, entry.entity_type) for entity_id, entry in entries.items()}
        for dependent, foreign_key, principal in self._navigation_links(members):
            yield entries[dependent], foreign_key, entries[principal]

    def _fix_up(self, only: typing.Optional[typing.Set[int]] = None) -> Overlay:
        """Copy principal keys into foreign keys of tracked dependents.

        Principals whose key the store has yet to generate are returned as
        placeholders instead of being written. With ``only`` given, just those
        entries are fixed up, silently: they are about to take their snapshot.
        """
        overlay: Overlay = {}
        for dependent, foreign_key, principal in self._links():
            if only is not None:
                key = principal.current_key()
                if id(dependent) in only and not key.is_unset(self.options.partial_key_policy):
                    dependent.write(foreign_key, key.values[0])
                continue
            if EntityState.DELETED in (dependent.state, principal.state):
                continue
            key = principal.current_key()
            if not key.is_unset(self.options.partial_key_policy):
                if dependent.read(foreign_key) != key.values[0]:
                    dependent.write(foreign_key, key.values[0])
                    dependent.note_write(foreign_key)
                    self._register_key(dependent)
                continue
            overlay[(id(dependent), foreign_key)] = PendingPrincipal(principal)
            if dependent.state in (EntityState.UNCHANGED, EntityState.MODIFIED):
                dependent.modified.add(foreign_key)
                dependent.state = EntityState.MODIFIED
        return overlay

    def _entries_for(self, plan: CommitPlan, intents: typing.Sequence[typing.Any]) -> typing.List[EntityEntry]:
        return [
            step.entry
            for step in plan.steps
            if any(plan.intents[step.intent_index] is intent for intent in intents)
        ]

    def _accept(self, plan: CommitPlan, outcomes: typing.Sequence[CommitOutcome]) -> None:
        for step in plan.steps:
            if step.kind is not DmlKind.INSERT:
                continue
            for prop in step.entry.entity_type.properties:
                if prop.generated and is_unset_value(step.entry.read(prop.name)):
                    step.entry.write(prop.name, outcomes[step.intent_index].generated_key)

        by_id = {id(entry): entry for entry in self._entries.values()}
        for (entry_id, foreign_key), pending in plan.overlay.items():
            by_id[entry_id].write(foreign_key, pending.entry.current_key().values[0])

        for entry in list(self._entries.values()):
            if entry.state is EntityState.DELETED:
                self._detach_entry(entry)
            elif entry.state in (EntityState.ADDED, EntityState.MODIFIED):
                entry.state = EntityState.UNCHANGED
                entry.take_snapshot()
                self._register_key(entry)

    def _materialize(self, entity_type: EntityType, row: Row) -> typing.Any:
        values = {prop.name: row.get(prop.column) for prop in entity_type.properties}
        key = IdentityKey.for_values(entity_type.cls, (values[name] for name in entity_type.key_names))
        existing = self._identity_map.resolve(key)
        if existing is not None:
            return existing.entity

        entity = entity_type.cls(**{name: values[name] for name in entity_type.scalar_names})
        entry = EntityEntry(entity, entity_type, EntityState.UNCHANGED)
        entry.shadow_values.update((name, values[name]) for name in entity_type.shadow_names)
        entry.take_snapshot()
        self._entries[id(entity)] = entry
        self._register_key(entry)
        return entity

    def _reject_changes(self, entry: EntityEntry) -> None:
        if entry.state is EntityState.ADDED:
            self._detach_entry(entry)
            return
        entry.restore_snapshot()
        entry.state = EntityState.UNCHANGED

    def _reload(self, entry: EntityEntry) -> None:
        if self._loader is None:
            raise InvalidOperationError("ChangeTracker has no loader")
        if entry.key is None:
            raise InvalidOperationError(f"Cannot reload a {entry.entity_type.name} without a key")
        row = self._loader.load_by_key(entry.key)
        if row is None:
            self._detach_entry(entry)
            return
        for prop in entry.entity_type.properties:
            entry.write(prop.name, row.get(prop.column))
        entry.state = EntityState.UNCHANGED
        entry.take_snapshot()
