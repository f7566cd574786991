import copy
import logging
import typing

from entity_tracker.errors import InvalidOperationError
from entity_tracker.identity_map import IdentityKey
from entity_tracker.mapping import EntityType
from entity_tracker.state import EntityState

if typing.TYPE_CHECKING:
    from entity_tracker.tracker import ChangeTracker

logger = logging.getLogger(__name__)


class EntityEntry:
    """Tracking record of a single entity.

    Holds the state, the snapshot of original values taken when the entity became
    Unchanged, the current values of shadow properties and the set of properties
    known to differ from the snapshot.
    """

    def __init__(self, entity: typing.Any, entity_type: EntityType, state: EntityState) -> None:
        self.entity = entity
        self.entity_type = entity_type
        self.state = state
        self.key: typing.Optional[IdentityKey] = None
        self.original_values: typing.Dict[str, typing.Any] = {}
        self.shadow_values: typing.Dict[str, typing.Any] = {name: None for name in entity_type.shadow_names}
        self.modified: typing.Set[str] = set()

    def __repr__(self) -> str:
        return f"<EntityEntry {self.entity_type.name} {self.state} key={self.key}>"

    def current_key(self) -> IdentityKey:
        return IdentityKey.for_values(self.entity_type.cls, (self.read(name) for name in self.entity_type.key_names))

    def read(self, name: str) -> typing.Any:
        prop = self.entity_type.get_property(name)
        if prop.shadow:
            return self.shadow_values.get(name)
        return getattr(self.entity, name)

    def write(self, name: str, value: typing.Any) -> None:
        prop = self.entity_type.get_property(name)
        if prop.shadow:
            self.shadow_values[name] = value
        else:
            setattr(self.entity, name, value)

    def current_values(self) -> typing.Dict[str, typing.Any]:
        return {prop.name: self.read(prop.name) for prop in self.entity_type.properties}

    def take_snapshot(self) -> None:
        self.original_values = copy.deepcopy(self.current_values())
        self.modified.clear()

    def restore_snapshot(self) -> None:
        for name, value in self.original_values.items():
            self.write(name, copy.deepcopy(value))
        self.modified.clear()

    def mutable_names(self) -> typing.Tuple[str, ...]:
        return tuple(prop.name for prop in self.entity_type.properties if not prop.is_key)

    def mark_all_modified(self) -> None:
        self.modified = set(self.mutable_names())

    def note_write(self, name: str) -> None:
        if self.state not in (EntityState.UNCHANGED, EntityState.MODIFIED):
            return
        if self.entity_type.get_property(name).is_key:
            return
        if self.read(name) != self.original_values.get(name):
            self.modified.add(name)
            self._flag_modified()

    def detect_changes(self) -> bool:
        if self.state not in (EntityState.UNCHANGED, EntityState.MODIFIED):
            return False
        for name in self.mutable_names():
            if name not in self.modified and self.read(name) != self.original_values.get(name):
                self.modified.add(name)
        if self.modified:
            self._flag_modified()
        return bool(self.modified)

    def _flag_modified(self) -> None:
        if self.state is EntityState.UNCHANGED:
            logger.debug("%s modified: %s", self.key, sorted(self.modified))
            self.state = EntityState.MODIFIED


class EntityEntryView:
    """Handle for inspecting and changing how the tracker sees one entity.

    A view exists for any object, tracked or not; for objects the tracker does
    not know about it reports ``EntityState.DETACHED``.
    """

    def __init__(self, tracker: "ChangeTracker", entity: typing.Any) -> None:
        self._tracker = tracker
        self._entity = entity

    def __repr__(self) -> str:
        return f"<EntityEntryView {type(self._entity).__name__} {self.state}>"

    @property
    def _entry(self) -> typing.Optional[EntityEntry]:
        return self._tracker._find_entry(self._entity)

    def _require_entry(self) -> EntityEntry:
        entry = self._entry
        if entry is None:
            raise InvalidOperationError(f"{type(self._entity).__name__} instance is not tracked")
        return entry

    @property
    def entity(self) -> typing.Any:
        return self._entity

    @property
    def state(self) -> EntityState:
        entry = self._entry
        return entry.state if entry is not None else EntityState.DETACHED

    @state.setter
    def state(self, state: EntityState) -> None:
        self._tracker._set_state(self._entity, state).unwrap()

    @property
    def key(self) -> typing.Optional[IdentityKey]:
        entry = self._entry
        return entry.key if entry is not None else None

    @property
    def original_values(self) -> typing.Dict[str, typing.Any]:
        return dict(self._require_entry().original_values)

    @property
    def current_values(self) -> typing.Dict[str, typing.Any]:
        return self._require_entry().current_values()

    @property
    def modified_properties(self) -> typing.FrozenSet[str]:
        entry = self._entry
        if entry is None:
            return frozenset()
        if self._tracker.options.auto_detect_changes:
            entry.detect_changes()
        return frozenset(entry.modified)

    def is_modified(self, name: str) -> bool:
        return name in self.modified_properties

    def get(self, name: str) -> typing.Any:
        entry = self._entry
        if entry is not None:
            return entry.read(name)
        prop = self._tracker.model.entity_type(self._entity).get_property(name)
        if prop.shadow:
            raise InvalidOperationError(f"Shadow property {name!r} is only available on tracked entities")
        return getattr(self._entity, name)

    def set(self, name: str, value: typing.Any) -> None:
        entry = self._entry
        if entry is None:
            prop = self._tracker.model.entity_type(self._entity).get_property(name)
            if prop.shadow:
                raise InvalidOperationError(f"Shadow property {name!r} is only available on tracked entities")
            setattr(self._entity, name, value)
            return
        entry.write(name, value)
        entry.note_write(name)

    def detect_changes(self) -> bool:
        entry = self._entry
        return entry.detect_changes() if entry is not None else False

    def reject_changes(self) -> None:
        self._tracker._reject_changes(self._require_entry())

    def reload(self) -> None:
        self._tracker._reload(self._require_entry())
