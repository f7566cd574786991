"""Breadth-first discovery of entities reachable from a root through navigations."""
import enum
import logging
import typing
from collections import deque

import attr

from entity_tracker.entry import EntityEntry
from entity_tracker.identity_map import IdentityKey
from entity_tracker.mapping import EntityType, MappingModel, Navigation
from entity_tracker.state import EntityState

logger = logging.getLogger(__name__)


class GraphOperation(enum.Enum):
    ATTACH = "attach"
    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"
    TRACK_GRAPH = "track_graph"


@attr.s(auto_attribs=True, frozen=True)
class NodeInfo:
    entity: typing.Any
    entity_type: EntityType
    key: IdentityKey
    is_key_set: bool
    is_root: bool
    # entity and navigation through which this node was reached, None for the root
    source: typing.Any = None
    navigation: typing.Optional[Navigation] = None
    tracked_entry: typing.Optional[EntityEntry] = attr.ib(default=None, repr=False)

    @property
    def is_tracked(self) -> bool:
        return self.tracked_entry is not None


Policy = typing.Callable[[NodeInfo], typing.Optional[EntityState]]


def attach_policy(node: NodeInfo) -> EntityState:
    return EntityState.UNCHANGED if node.is_key_set else EntityState.ADDED


def add_policy(node: NodeInfo) -> EntityState:
    return EntityState.ADDED


def update_policy(node: NodeInfo) -> EntityState:
    return EntityState.MODIFIED if node.is_key_set else EntityState.ADDED


def remove_policy(node: NodeInfo) -> EntityState:
    if node.is_root:
        return EntityState.DELETED
    return attach_policy(node)


POLICIES: typing.Dict[GraphOperation, Policy] = {
    GraphOperation.ATTACH: attach_policy,
    GraphOperation.ADD: add_policy,
    GraphOperation.UPDATE: update_policy,
    GraphOperation.REMOVE: remove_policy,
}


class GraphWalker:
    def __init__(
        self,
        model: MappingModel,
        lookup: typing.Callable[[typing.Any], typing.Optional[EntityEntry]],
        partial_key_policy: str = "any",
    ) -> None:
        self._model = model
        self._lookup = lookup
        self._partial_key_policy = partial_key_policy

    def describe(
        self, entity: typing.Any, is_root: bool = True, source: typing.Any = None, navigation: Navigation = None
    ) -> NodeInfo:
        entity_type = self._model.entity_type(entity)
        tracked_entry = self._lookup(entity)
        if tracked_entry is not None:
            key = tracked_entry.current_key()
        else:
            key = IdentityKey.for_values(
                entity_type.cls,
                (
                    None if entity_type.get_property(name).shadow else getattr(entity, name)
                    for name in entity_type.key_names
                ),
            )
        return NodeInfo(
            entity=entity,
            entity_type=entity_type,
            key=key,
            is_key_set=not key.is_unset(self._partial_key_policy),
            is_root=is_root,
            source=source,
            navigation=navigation,
            tracked_entry=tracked_entry,
        )

    def walk(
        self, root: typing.Any, policy: Policy
    ) -> typing.List[typing.Tuple[NodeInfo, typing.Optional[EntityState]]]:
        """Classify the root and everything reachable from it.

        Each object is visited once, keyed by reference, so shared and cyclic
        references terminate. Nodes the policy declines (``None``) are reported
        but their navigations are not followed.
        """
        visited: typing.Set[int] = {id(root)}
        pending: typing.Deque[NodeInfo] = deque([self.describe(root)])
        classified: typing.List[typing.Tuple[NodeInfo, typing.Optional[EntityState]]] = []

        while pending:
            node = pending.popleft()
            state = policy(node)
            classified.append((node, state))
            if state is None and not node.is_tracked:
                continue
            for navigation, child in self._children(node):
                if id(child) in visited:
                    continue
                visited.add(id(child))
                pending.append(self.describe(child, is_root=False, source=node.entity, navigation=navigation))

        logger.debug("Walked %d node(s) from %s", len(classified), type(root).__name__)
        return classified

    def _children(self, node: NodeInfo) -> typing.Iterator[typing.Tuple[Navigation, typing.Any]]:
        for navigation in node.entity_type.navigations:
            value = getattr(node.entity, navigation.name, None)
            if value is None:
                continue
            if navigation.is_collection:
                for child in value:
                    if child is not None:
                        yield navigation, child
            else:
                yield navigation, value
