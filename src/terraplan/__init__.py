"""
terraplan: Infrastructure-as-Code plan/apply engine.

This library provides:
- A validated, acyclic resource graph built from declarations
  (``count``/``for_each`` expansion, typed ``${...}`` references)
- Deterministic plans (create/update/replace/delete/no-op) with
  ``prevent_destroy``, ``ignore_changes``, taint and force-new handling
- Concurrent, dependency-ordered apply with per-entry commits and
  partial-failure containment
- Versioned, lockable, workspace-partitioned state (memory, local files, DynamoDB)
- Pluggable providers via ProviderProtocol

Example:
    from terraplan import Engine, Manifest

    engine = await Engine.builder().local().provider(AzureProvider()).build()
    async with engine:
        graph = engine.build_graph(Manifest.from_dict(config))
        change_set = await engine.plan(graph, "staging")
        result = await engine.apply(change_set)
        for error in result.errors:
            print(error)
"""

from importlib.metadata import PackageNotFoundError, version

from .backend_protocol import StateBackendProtocol
from .backends import DynamoDBBackend, LocalBackend, MemoryBackend
from .config import EngineConfig
from .differ import Action, AttributeDiff, ChangeSet, ChangeSetEntry, compute_plan
from .engine import Engine, EngineBuilder
from .exceptions import (
    ConfigError,
    CyclicDependencyError,
    DuplicateAddressError,
    InstanceNotFoundError,
    InvalidIndexKeyError,
    LockConflictError,
    MalformedEntryError,
    PlanError,
    PreventDestroyViolation,
    ProviderError,
    ProviderNotFoundError,
    ResourceNotFoundError,
    SnapshotNotFoundError,
    StaleLockError,
    StateError,
    TerraplanError,
    UnresolvedReferenceError,
    UpstreamFailure,
    ValidationError,
    VersionConflictError,
    WorkspaceExistsError,
    WorkspaceNotEmpty,
    WorkspaceNotFoundError,
)
from .executor import ApplyError, ApplyResult, ApplyStatus, EntryStatus, Executor
from .expressions import UNKNOWN
from .graph import Declaration, Lifecycle, ResourceGraph, build_graph
from .manifest import Manifest
from .models import (
    LockToken,
    ResourceAddress,
    ResourceInstance,
    ResourceNode,
    SnapshotInfo,
    StateMutation,
    StateSnapshot,
)
from .planner import Planner
from .providers import ProviderProtocol, ProviderRegistry, ResourceSchema
from .state import StateStore

try:
    __version__ = version("terraplan")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Main classes
    "Engine",
    "EngineBuilder",
    "EngineConfig",
    "Planner",
    "Executor",
    "StateStore",
    # Graph
    "Declaration",
    "Lifecycle",
    "Manifest",
    "ResourceGraph",
    "build_graph",
    # Plans
    "Action",
    "AttributeDiff",
    "ChangeSet",
    "ChangeSetEntry",
    "compute_plan",
    "UNKNOWN",
    # Apply
    "ApplyError",
    "ApplyResult",
    "ApplyStatus",
    "EntryStatus",
    # Models
    "LockToken",
    "ResourceAddress",
    "ResourceInstance",
    "ResourceNode",
    "SnapshotInfo",
    "StateMutation",
    "StateSnapshot",
    # Providers
    "ProviderProtocol",
    "ProviderRegistry",
    "ResourceSchema",
    # Backends
    "StateBackendProtocol",
    "DynamoDBBackend",
    "LocalBackend",
    "MemoryBackend",
    # Exceptions
    "TerraplanError",
    "ConfigError",
    "PlanError",
    "StateError",
    "ProviderError",
    "ValidationError",
    "DuplicateAddressError",
    "InvalidIndexKeyError",
    "UnresolvedReferenceError",
    "CyclicDependencyError",
    "PreventDestroyViolation",
    "MalformedEntryError",
    "LockConflictError",
    "StaleLockError",
    "VersionConflictError",
    "WorkspaceNotEmpty",
    "WorkspaceNotFoundError",
    "WorkspaceExistsError",
    "SnapshotNotFoundError",
    "InstanceNotFoundError",
    "ResourceNotFoundError",
    "ProviderNotFoundError",
    "UpstreamFailure",
]
