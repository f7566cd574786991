"""Resolved mapping model: entity types, their columns, keys and relationships.

The model is fixed for the lifetime of a tracker. It also plays the role of the
schema catalog consulted while planning a commit: ordered columns, key columns,
identity-generated columns and foreign keys per entity type.
"""
import enum
import typing

import attr

from entity_tracker.errors import MappingError, UnknownPropertyError, UnmappedEntityError


class NavigationKind(enum.Enum):
    REFERENCE = "reference"
    COLLECTION = "collection"


@attr.s(auto_attribs=True, frozen=True)
class Property:
    name: str
    type: typing.Type = object
    nullable: bool = False
    is_key: bool = False
    generated: bool = False
    shadow: bool = False
    concurrency_token: bool = False
    column: str = attr.ib(default=attr.Factory(lambda self: self.name, takes_self=True))


@attr.s(auto_attribs=True, frozen=True)
class Navigation:
    name: str
    target: typing.Type
    kind: NavigationKind
    # REFERENCE: property of the owning type, COLLECTION: property of the target type
    foreign_key: str
    nullable: bool = True

    @property
    def is_collection(self) -> bool:
        return self.kind is NavigationKind.COLLECTION


@attr.s(auto_attribs=True, frozen=True)
class ForeignKey:
    dependent: typing.Type
    name: str
    principal: typing.Type
    nullable: bool


@attr.s(auto_attribs=True, frozen=True)
class EntityType:
    cls: typing.Type
    table: str
    properties: typing.Tuple[Property, ...] = attr.ib(converter=tuple)
    navigations: typing.Tuple[Navigation, ...] = attr.ib(converter=tuple, default=())

    def __attrs_post_init__(self) -> None:
        names = [prop.name for prop in self.properties]
        if len(names) != len(set(names)):
            raise MappingError(f"{self.name} declares a property twice")
        if not self.key_names:
            raise MappingError(f"{self.name} has no key property")
        if sum(1 for prop in self.properties if prop.concurrency_token) > 1:
            raise MappingError(f"{self.name} declares more than one concurrency token")

    @property
    def name(self) -> str:
        return self.cls.__name__

    @property
    def key_names(self) -> typing.Tuple[str, ...]:
        return tuple(prop.name for prop in self.properties if prop.is_key)

    @property
    def scalar_names(self) -> typing.Tuple[str, ...]:
        return tuple(prop.name for prop in self.properties if not prop.shadow)

    @property
    def shadow_names(self) -> typing.Tuple[str, ...]:
        return tuple(prop.name for prop in self.properties if prop.shadow)

    @property
    def columns(self) -> typing.Tuple[str, ...]:
        return tuple(prop.column for prop in self.properties)

    @property
    def key_columns(self) -> typing.Tuple[str, ...]:
        return tuple(prop.column for prop in self.properties if prop.is_key)

    @property
    def generated_columns(self) -> typing.Tuple[str, ...]:
        return tuple(prop.column for prop in self.properties if prop.generated)

    @property
    def concurrency_token(self) -> typing.Optional[Property]:
        return next((prop for prop in self.properties if prop.concurrency_token), None)

    def get_property(self, name: str) -> Property:
        for prop in self.properties:
            if prop.name == name:
                return prop
        raise UnknownPropertyError(self.cls, name)

    def has_property(self, name: str) -> bool:
        return any(prop.name == name for prop in self.properties)

    def navigation(self, name: str) -> Navigation:
        for navigation in self.navigations:
            if navigation.name == name:
                return navigation
        raise UnknownPropertyError(self.cls, name)


class MappingModel:
    def __init__(self, entity_types: typing.Iterable[EntityType]) -> None:
        self._entity_types: typing.Dict[typing.Type, EntityType] = {}
        for entity_type in entity_types:
            if entity_type.cls in self._entity_types:
                raise MappingError(f"{entity_type.name} is mapped twice")
            self._entity_types[entity_type.cls] = entity_type
        self._foreign_keys: typing.Dict[typing.Type, typing.Tuple[ForeignKey, ...]] = self._resolve_foreign_keys()

    def __iter__(self) -> typing.Iterator[EntityType]:
        return iter(self._entity_types.values())

    def __contains__(self, cls: typing.Type) -> bool:
        return cls in self._entity_types

    def entity_type(self, cls_or_entity: typing.Any) -> EntityType:
        cls = cls_or_entity if isinstance(cls_or_entity, type) else type(cls_or_entity)
        try:
            return self._entity_types[cls]
        except KeyError:
            raise UnmappedEntityError(cls) from None

    def foreign_keys(self, cls: typing.Type) -> typing.Tuple[ForeignKey, ...]:
        return self._foreign_keys.get(cls, ())

    def columns(self, cls: typing.Type) -> typing.Tuple[str, ...]:
        return self.entity_type(cls).columns

    def key_columns(self, cls: typing.Type) -> typing.Tuple[str, ...]:
        return self.entity_type(cls).key_columns

    def generated_columns(self, cls: typing.Type) -> typing.Tuple[str, ...]:
        return self.entity_type(cls).generated_columns

    def _resolve_foreign_keys(self) -> typing.Dict[typing.Type, typing.Tuple[ForeignKey, ...]]:
        found: typing.Dict[typing.Type, typing.Dict[str, ForeignKey]] = {cls: {} for cls in self._entity_types}
        for entity_type in self._entity_types.values():
            for navigation in entity_type.navigations:
                target_type = self.entity_type(navigation.target)
                if navigation.is_collection:
                    dependent, principal = target_type, entity_type
                else:
                    dependent, principal = entity_type, target_type
                if not dependent.has_property(navigation.foreign_key):
                    raise MappingError(
                        f"{dependent.name} lacks foreign key {navigation.foreign_key!r} used by "
                        f"{entity_type.name}.{navigation.name}"
                    )
                if len(principal.key_names) != 1:
                    raise MappingError(f"{principal.name} has a composite key, relationships need a single key")
                existing = found[dependent.cls].get(navigation.foreign_key)
                prop = dependent.get_property(navigation.foreign_key)
                found[dependent.cls][navigation.foreign_key] = ForeignKey(
                    dependent=dependent.cls,
                    name=navigation.foreign_key,
                    principal=principal.cls,
                    nullable=(
                        navigation.nullable
                        and prop.nullable
                        and not prop.is_key
                        and (existing is None or existing.nullable)
                    ),
                )
        return {cls: tuple(fks.values()) for cls, fks in found.items()}
