import abc
import typing

import attr


class EntityWithoutIdentity(TypeError):
    pass


T = typing.TypeVar("T")


class Identity(typing.Generic[T]):
    @classmethod
    def is_identity(cls, field_type: typing.Any) -> bool:
        return typing.get_origin(field_type) is cls


class ConcurrencyToken(typing.Generic[T]):
    @classmethod
    def is_token(cls, field_type: typing.Any) -> bool:
        return typing.get_origin(field_type) is cls


class EntityMeta(abc.ABCMeta):
    def __new__(mcs, name: str, bases: tuple, namespace: dict):
        cls = super().__new__(mcs, name, bases, namespace)
        if name == "Entity":
            return cls
        attr_cls = attr.s(auto_attribs=True, eq=False, repr=True)(cls)
        annotations = {}
        for klass in reversed(attr_cls.__mro__):
            annotations.update(getattr(klass, "__annotations__", {}))
        if not any(_annotation_is_identity(annotation) for annotation in annotations.values()):
            raise EntityWithoutIdentity(name)
        return attr_cls


def _annotation_is_identity(annotation: typing.Any) -> bool:
    if isinstance(annotation, str):
        return annotation.startswith(("Identity[", "entity_tracker.Identity["))
    return Identity.is_identity(annotation)


class Entity(metaclass=EntityMeta):
    """Optional base for entity classes, turning them into attrs classes.

    Fields annotated with ``Identity[T]`` form the key, ``ConcurrencyToken[T]``
    marks the concurrency token, a nested ``Entity`` is a reference and a
    ``List[Entity]`` a collection. ``__shadow__`` maps names of shadow
    properties to their types.
    """

    __shadow__: typing.ClassVar[typing.Dict[str, typing.Type]] = {}
