import typing

from entity_tracker.errors import EntityNotFoundError
from entity_tracker.interfaces import Predicate
from entity_tracker.result import Result
from entity_tracker.tracker import ChangeTracker

EntityClass = typing.TypeVar("EntityClass")
IdentityClass = typing.TypeVar("IdentityClass")


class Repository(typing.Generic[EntityClass, IdentityClass]):
    """Per-entity-type view over a change tracker.

        class StudentRepo(Repository[Student, int]):
            pass

        students = StudentRepo(tracker)
    """

    entity: typing.Optional[typing.Type] = None

    def __init_subclass__(cls, **kwargs: typing.Any) -> None:
        super().__init_subclass__(**kwargs)
        for base in getattr(cls, "__orig_bases__", ()):
            if typing.get_origin(base) is Repository:
                entity_cls, _identity_cls = typing.get_args(base)
                if isinstance(entity_cls, type):
                    cls.entity = entity_cls

    def __init__(self, tracker: ChangeTracker, entity: typing.Optional[typing.Type] = None) -> None:
        self._tracker = tracker
        if entity is not None:
            self.entity = entity
        assert self.entity is not None, "Repository needs an entity class, either as a type argument or explicitly"
        tracker.model.entity_type(self.entity)

    def _key_values(self, identity: IdentityClass) -> typing.Tuple[typing.Any, ...]:
        return tuple(identity) if isinstance(identity, tuple) else (identity,)

    def find(self, identity: IdentityClass) -> typing.Optional[EntityClass]:
        return self._tracker.find(self.entity, *self._key_values(identity))

    def get(self, identity: IdentityClass) -> EntityClass:
        result = self.find(identity)
        if result is None:
            raise EntityNotFoundError(self.entity, identity)
        return result

    def all(self, predicate: typing.Optional[Predicate] = None) -> typing.List[EntityClass]:
        return self._tracker.load(self.entity, predicate)

    def add(self, entity: EntityClass) -> Result:
        return self._tracker.add(entity)

    def save(self, entity: EntityClass) -> Result:
        # new entities get inserted, keyed ones updated
        return self._tracker.update(entity)

    def remove(self, entity: EntityClass) -> Result:
        return self._tracker.remove(entity)
