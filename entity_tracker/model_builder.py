"""Builds the mapping model out of attrs-declared entity classes."""
import types
import typing

import attr
import inflection

from entity_tracker.entity import ConcurrencyToken, Entity, Identity
from entity_tracker.errors import MappingError
from entity_tracker.mapping import EntityType, MappingModel, Navigation, NavigationKind, Property


def _is_generic(field_type: typing.Type) -> bool:
    return typing.get_origin(field_type) is not None


def _get_wrapped_type(wrapped_type: typing.Type) -> typing.Type:
    return typing.get_args(wrapped_type)[0]


def _is_field_nullable(field_type: typing.Type) -> bool:
    return typing.get_origin(field_type) in (typing.Union, types.UnionType) and type(None) in typing.get_args(
        field_type
    )


def _is_entity(field_type: typing.Type) -> bool:
    return isinstance(field_type, type) and issubclass(field_type, Entity)


def _is_nullable_entity(field_type: typing.Type) -> bool:
    return _is_generic(field_type) and _is_field_nullable(field_type) and _is_entity(_get_wrapped_type(field_type))


def _is_list_of_entities(field_type: typing.Type) -> bool:
    return (
        typing.get_origin(field_type) in (list, typing.List)
        and bool(typing.get_args(field_type))
        and _is_entity(_get_wrapped_type(field_type))
    )


def _key_of(cls: typing.Type, hints: typing.Dict[str, typing.Any]) -> typing.Tuple[str, typing.Type]:
    if hints is None:
        raise MappingError(f"{cls.__name__} is not among the entities being built")
    keys = [(name, _get_wrapped_type(hint)) for name, hint in hints.items() if Identity.is_identity(hint)]
    if len(keys) != 1:
        raise MappingError(f"{cls.__name__} is referenced by another entity, so it needs exactly one identity")
    return keys[0]


def table_name(cls: typing.Type) -> str:
    return inflection.pluralize(inflection.underscore(cls.__name__))


def build(*entity_classes: typing.Type[Entity]) -> MappingModel:
    local_names = {cls.__name__: cls for cls in entity_classes}
    hints = {cls: typing.get_type_hints(cls, localns=local_names) for cls in entity_classes}
    properties: typing.Dict[typing.Type, typing.Dict[str, Property]] = {cls: {} for cls in entity_classes}
    navigations: typing.Dict[typing.Type, typing.List[Navigation]] = {cls: [] for cls in entity_classes}

    def add_foreign_key(dependent: typing.Type, name: str, principal: typing.Type, nullable: bool) -> None:
        if dependent not in properties:
            raise MappingError(f"{dependent.__name__} is not among the entities being built")
        if name in properties[dependent]:
            return
        _key_name, key_type = _key_of(principal, hints.get(principal))
        properties[dependent][name] = Property(name=name, type=key_type, nullable=nullable, shadow=True)

    for cls in entity_classes:
        fields = {field.name for field in attr.fields(cls)}
        keys = [name for name, hint in hints[cls].items() if name in fields and Identity.is_identity(hint)]
        for field in attr.fields(cls):
            field_type = hints[cls][field.name]

            if _is_entity(field_type) or _is_nullable_entity(field_type):
                nullable = not _is_entity(field_type)
                target = field_type if not nullable else _get_wrapped_type(field_type)
                key_name, _key_type = _key_of(target, hints.get(target))
                navigations[cls].append(
                    Navigation(
                        name=field.name,
                        target=target,
                        kind=NavigationKind.REFERENCE,
                        foreign_key=f"{field.name}_{key_name}",
                        nullable=nullable,
                    )
                )
                continue

            if _is_list_of_entities(field_type):
                target = _get_wrapped_type(field_type)
                key_name, _key_type = _key_of(cls, hints[cls])
                navigations[cls].append(
                    Navigation(
                        name=field.name,
                        target=target,
                        kind=NavigationKind.COLLECTION,
                        foreign_key=f"{inflection.underscore(cls.__name__)}_{key_name}",
                    )
                )
                continue

            nullable = False
            is_identity = False
            is_token = False
            if _is_generic(field_type):
                if Identity.is_identity(field_type):
                    field_type = _get_wrapped_type(field_type)
                    is_identity = True
                elif ConcurrencyToken.is_token(field_type):
                    field_type = _get_wrapped_type(field_type)
                    is_token = True
                elif _is_field_nullable(field_type):
                    field_type = _get_wrapped_type(field_type)
                    nullable = True
                else:
                    raise MappingError(f"Unhandled generic type - {field_type}")

            properties[cls][field.name] = Property(
                name=field.name,
                type=field_type,
                nullable=nullable,
                is_key=is_identity,
                generated=is_identity and len(keys) == 1 and field_type is int,
                concurrency_token=is_token,
            )

        for name, shadow_type in getattr(cls, "__shadow__", {}).items():
            properties[cls][name] = Property(name=name, type=shadow_type, nullable=True, shadow=True)

    for cls in entity_classes:
        for navigation in navigations[cls]:
            if navigation.is_collection:
                add_foreign_key(navigation.target, navigation.foreign_key, cls, navigation.nullable)
            else:
                add_foreign_key(cls, navigation.foreign_key, navigation.target, navigation.nullable)

    return MappingModel(
        EntityType(cls=cls, table=table_name(cls), properties=properties[cls].values(), navigations=navigations[cls])
        for cls in entity_classes
    )
