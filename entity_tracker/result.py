"""Typed outcomes of tracking operations.

Operations that may be rejected (attach, add, update, remove, track_graph, commit)
return either ``Ok(value)`` or ``Err(error)`` instead of raising, so callers decide
how to react to a rejected operation:

    result = tracker.attach(student)
    if result.is_err:
        log.warning("skipping %s: %s", student, result.error)

``unwrap()`` turns the result back into a value or raises the carried error.
"""
import typing

import attr

from entity_tracker.errors import TrackingError

T = typing.TypeVar("T")


@attr.s(auto_attribs=True, frozen=True)
class Ok(typing.Generic[T]):
    value: T

    is_ok = True
    is_err = False

    @property
    def error(self) -> None:
        return None

    def unwrap(self) -> T:
        return self.value


@attr.s(auto_attribs=True, frozen=True)
class Err:
    error: TrackingError

    is_ok = False
    is_err = True

    @property
    def value(self) -> None:
        return None

    def unwrap(self) -> typing.NoReturn:
        raise self.error


Result = typing.Union[Ok[T], Err]
