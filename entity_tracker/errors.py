import typing

if typing.TYPE_CHECKING:
    from entity_tracker.commit import DmlIntent
    from entity_tracker.entry import EntityEntry
    from entity_tracker.identity_map import IdentityKey


class TrackingError(Exception):
    pass


class DuplicateTrackingError(TrackingError):
    def __init__(self, key: "IdentityKey") -> None:
        super().__init__(f"Another instance with key {key} is already tracked")
        self.key = key


class InvalidOperationError(TrackingError):
    pass


class UnmappedEntityError(InvalidOperationError):
    def __init__(self, cls: typing.Type) -> None:
        super().__init__(f"{cls.__name__} is not part of the mapping model")
        self.cls = cls


class UnknownPropertyError(InvalidOperationError):
    def __init__(self, cls: typing.Type, name: str) -> None:
        super().__init__(f"{cls.__name__} has no mapped property {name!r}")
        self.cls = cls
        self.name = name


class CommitError(TrackingError):
    pass


class CyclicInsertDependency(CommitError):
    def __init__(self, entries: typing.Sequence["EntityEntry"]) -> None:
        names = ", ".join(type(entry.entity).__name__ for entry in entries)
        super().__init__(f"Added entities reference each other through non-nullable foreign keys: {names}")
        self.entries = list(entries)


class OptimisticConcurrencyError(CommitError):
    def __init__(
        self, entries: typing.Sequence["EntityEntry"] = (), intents: typing.Sequence["DmlIntent"] = ()
    ) -> None:
        count = len(entries) or len(intents)
        super().__init__(f"{count} row(s) were changed or deleted since they were loaded")
        self.entries = list(entries)
        self.intents = list(intents)


class ExecutionError(CommitError):
    def __init__(self, message: str, intent: typing.Optional["DmlIntent"] = None) -> None:
        super().__init__(message)
        self.intent = intent


class MappingError(TrackingError):
    pass


class EntityNotFoundError(TrackingError, LookupError):
    def __init__(self, cls: typing.Type, identity: typing.Any) -> None:
        super().__init__(f"No {cls.__name__} with identity {identity!r}")
        self.cls = cls
        self.identity = identity
