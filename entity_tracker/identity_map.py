import typing
import uuid

import attr

from entity_tracker.errors import DuplicateTrackingError

if typing.TYPE_CHECKING:
    from entity_tracker.entry import EntityEntry

NIL_UUID = uuid.UUID(int=0)


def is_unset_value(value: typing.Any) -> bool:
    if value is None:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return value == 0
    if isinstance(value, str):
        return value == ""
    if isinstance(value, uuid.UUID):
        return value == NIL_UUID
    return False


@attr.s(auto_attribs=True, frozen=True)
class IdentityKey:
    cls: typing.Type
    values: typing.Tuple[typing.Any, ...] = attr.ib(converter=tuple)

    @classmethod
    def for_values(cls, entity_cls: typing.Type, values: typing.Iterable[typing.Any]) -> "IdentityKey":
        return cls(entity_cls, tuple(values))

    def is_unset(self, policy: str = "any") -> bool:
        if policy == "all":
            return all(is_unset_value(value) for value in self.values)
        return any(is_unset_value(value) for value in self.values)

    def __str__(self) -> str:
        values = ", ".join(repr(value) for value in self.values)
        return f"{self.cls.__name__}({values})"


class IdentityMap:
    def __init__(self) -> None:
        self._entries: typing.Dict[IdentityKey, "EntityEntry"] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: IdentityKey) -> bool:
        return key in self._entries

    def __iter__(self) -> typing.Iterator["EntityEntry"]:
        return iter(list(self._entries.values()))

    def resolve(self, key: IdentityKey) -> typing.Optional["EntityEntry"]:
        return self._entries.get(key)

    def insert(self, key: IdentityKey, entry: "EntityEntry") -> None:
        existing = self._entries.get(key)
        if existing is not None and existing is not entry:
            raise DuplicateTrackingError(key)
        self._entries[key] = entry

    def remove(self, key: IdentityKey) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
