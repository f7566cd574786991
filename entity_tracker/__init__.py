from entity_tracker.commit import CommitOutcome, DmlIntent, DmlKind, PendingKey
from entity_tracker.config import TrackerOptions
from entity_tracker.entity import ConcurrencyToken, Entity, Identity
from entity_tracker.entry import EntityEntryView
from entity_tracker.errors import (
    CommitError,
    CyclicInsertDependency,
    DuplicateTrackingError,
    EntityNotFoundError,
    ExecutionError,
    InvalidOperationError,
    MappingError,
    OptimisticConcurrencyError,
    TrackingError,
)
from entity_tracker.graph import NodeInfo
from entity_tracker.identity_map import IdentityKey
from entity_tracker.interfaces import CommandExecutor, Loader
from entity_tracker.mapping import EntityType, MappingModel, Navigation, NavigationKind, Property
from entity_tracker.model_builder import build
from entity_tracker.repository import Repository
from entity_tracker.result import Err, Ok
from entity_tracker.state import EntityState
from entity_tracker.tracker import ChangeTracker

__all__ = [
    "ChangeTracker",
    "CommandExecutor",
    "CommitError",
    "CommitOutcome",
    "ConcurrencyToken",
    "CyclicInsertDependency",
    "DmlIntent",
    "DmlKind",
    "DuplicateTrackingError",
    "Entity",
    "EntityEntryView",
    "EntityNotFoundError",
    "EntityState",
    "EntityType",
    "Err",
    "ExecutionError",
    "Identity",
    "IdentityKey",
    "InvalidOperationError",
    "Loader",
    "MappingError",
    "MappingModel",
    "Navigation",
    "NavigationKind",
    "NodeInfo",
    "Ok",
    "OptimisticConcurrencyError",
    "PendingKey",
    "Property",
    "Repository",
    "TrackerOptions",
    "TrackingError",
    "build",
]
