"""Engine facade and builder.

The Engine ties one state store and one provider registry to a planner and
an executor. The EngineBuilder separates sync configuration from async
initialization (e.g. creating the DynamoDB table). Configuration is done via
fluent method chaining, then ``build()`` performs all async work and returns
a ready Engine.

Example:
    engine = await (
        Engine.builder()
        .local(".terraplan")
        .provider(AzureProvider())
        .parallelism(10)
        .lock_timeout(30)
        .build()
    )
    async with engine:
        graph = engine.build_graph(Manifest.from_dict(config), {"location": "westeurope"})
        change_set = await engine.plan(graph, "staging")
        result = await engine.apply(change_set)
"""

import asyncio
import logging
import os
from collections.abc import Iterable, Mapping
from typing import Any

from .backend_protocol import StateBackendProtocol
from .backends import DynamoDBBackend, LocalBackend, MemoryBackend
from .config import EngineConfig
from .differ import ChangeSet
from .executor import ApplyResult, Executor
from .graph import Declaration, ResourceGraph, build_graph
from .manifest import Manifest
from .models import ResourceAddress
from .naming import DEFAULT_TABLE_NAME, resolve_workspace_name
from .planner import Planner
from .providers import ProviderProtocol, ProviderRegistry
from .state import StateStore

logger = logging.getLogger(__name__)


class Engine:
    """
    Plan/apply entry point for one state store and provider registry.

    Workspaces are passed explicitly to every call; ``None`` resolves to
    ``TERRAPLAN_WORKSPACE`` or ``"default"``.
    """

    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        *,
        parallelism: int | None = None,
        refresh: bool = True,
    ) -> None:
        self.store = store
        self.providers = providers
        self.planner = Planner(store, providers, refresh=refresh)
        self.executor = Executor(store, providers, parallelism=parallelism)

    @staticmethod
    def builder() -> "EngineBuilder":
        return EngineBuilder()

    async def __aenter__(self) -> "Engine":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.store.close()

    def build_graph(
        self,
        config: Manifest | Mapping[str, Any] | Iterable[Declaration],
        variables: Mapping[str, Any] | None = None,
        *,
        tainted: Iterable[ResourceAddress | str] = (),
    ) -> ResourceGraph:
        """Build a resource graph, using provider schemas for computed attributes."""
        if isinstance(config, Mapping):
            config = Manifest.from_dict(config)
        if isinstance(config, Manifest):
            return config.build_graph(variables, schemas=self.providers.schema, tainted=tainted)
        return build_graph(config, variables, schemas=self.providers.schema, tainted=tainted)

    async def plan(
        self,
        graph: ResourceGraph,
        workspace: str | None = None,
        *,
        destroy: bool = False,
        refresh: bool | None = None,
    ) -> ChangeSet:
        """Plan changes for ``workspace``. See :meth:`Planner.plan`."""
        name = resolve_workspace_name(workspace)
        return await self.planner.plan(graph, name, destroy=destroy, refresh=refresh)

    async def apply(
        self,
        change_set: ChangeSet,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Apply a change-set. See :meth:`Executor.apply`."""
        return await self.executor.apply(change_set, cancel=cancel)

    async def plan_and_apply(
        self,
        graph: ResourceGraph,
        workspace: str | None = None,
        *,
        destroy: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Plan, then apply the plan right away."""
        change_set = await self.plan(graph, workspace, destroy=destroy)
        return await self.apply(change_set, cancel=cancel)


class EngineBuilder:
    """Fluent builder for constructing a ready Engine.

    All configuration methods return ``self`` for chaining. Call ``build()``
    to perform async initialization and get an ``Engine``.

    Defaults mirror :meth:`EngineConfig.from_env` with an empty environment:
    local backend in ``.terraplan``, fail-fast locking, refresh enabled.
    """

    def __init__(self) -> None:
        self._backend_kind = "local"
        self._state_dir: str | os.PathLike[str] | None = None
        self._table_name = DEFAULT_TABLE_NAME
        self._region: str | None = None
        self._endpoint_url: str | None = None
        self._create_table = False
        self._backend: StateBackendProtocol | None = None
        self._registry = ProviderRegistry()
        self._parallelism: int | None = None
        self._lock_timeout = 0.0
        self._lock_ttl: float | None = None
        self._holder: str | None = None
        self._refresh = True

    # -------------------------------------------------------------------------
    # Backend configuration
    # -------------------------------------------------------------------------

    def local(self, path: str | os.PathLike[str] | None = None) -> "EngineBuilder":
        """Store state as JSON files under ``path`` (default: ``.terraplan``)."""
        self._backend_kind = "local"
        self._state_dir = path
        return self

    def memory(self) -> "EngineBuilder":
        """Keep state in process memory (lost on exit)."""
        self._backend_kind = "memory"
        return self

    def dynamodb(
        self,
        table_name: str = DEFAULT_TABLE_NAME,
        *,
        region: str | None = None,
        endpoint_url: str | None = None,
        create_table: bool = False,
    ) -> "EngineBuilder":
        """Store state in a DynamoDB table, optionally creating it during build."""
        self._backend_kind = "dynamodb"
        self._table_name = table_name
        self._region = region
        self._endpoint_url = endpoint_url
        self._create_table = create_table
        return self

    def backend(self, backend: StateBackendProtocol) -> "EngineBuilder":
        """Use an already constructed backend."""
        self._backend = backend
        return self

    # -------------------------------------------------------------------------
    # Providers
    # -------------------------------------------------------------------------

    def provider(
        self,
        provider: ProviderProtocol,
        *,
        prefixes: Iterable[str] | None = None,
    ) -> "EngineBuilder":
        """Register a provider (default prefix: its name)."""
        self._registry.register(provider, prefixes=prefixes)
        return self

    def providers(self, registry: ProviderRegistry) -> "EngineBuilder":
        """Use an existing provider registry."""
        self._registry = registry
        return self

    def entry_point_providers(self) -> "EngineBuilder":
        """Use providers from installed ``terraplan.providers`` entry points."""
        self._registry = ProviderRegistry.from_entry_points()
        return self

    # -------------------------------------------------------------------------
    # Behavioral configuration
    # -------------------------------------------------------------------------

    def parallelism(self, value: int) -> "EngineBuilder":
        """Set the maximum number of concurrent entries during apply."""
        self._parallelism = value
        return self

    def lock_timeout(self, seconds: float) -> "EngineBuilder":
        """Set how long to wait for a held lock (default: 0, fail fast)."""
        self._lock_timeout = seconds
        return self

    def lock_ttl(self, seconds: float | None) -> "EngineBuilder":
        """Set lock expiry; expired locks may be taken over (default: never)."""
        self._lock_ttl = seconds
        return self

    def holder(self, name: str) -> "EngineBuilder":
        """Set the identity recorded in locks (default: ``user@host``)."""
        self._holder = name
        return self

    def refresh(self, enabled: bool) -> "EngineBuilder":
        """Enable/disable refresh before planning (default: True)."""
        self._refresh = enabled
        return self

    def config(self, config: EngineConfig) -> "EngineBuilder":
        """Apply every setting of an :class:`EngineConfig`."""
        if config.backend == "memory":
            self.memory()
        elif config.backend == "dynamodb":
            self.dynamodb(config.table_name, region=config.region, endpoint_url=config.endpoint_url)
        else:
            self.local(config.state_dir)
        self._parallelism = config.parallelism
        self._lock_timeout = config.lock_timeout
        self._lock_ttl = config.lock_ttl
        self._refresh = config.refresh
        return self

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    def _make_backend(self) -> StateBackendProtocol:
        if self._backend is not None:
            return self._backend
        if self._backend_kind == "memory":
            return MemoryBackend()
        if self._backend_kind == "dynamodb":
            return DynamoDBBackend(self._table_name, self._region, self._endpoint_url)
        return LocalBackend(self._state_dir)

    async def build(self) -> Engine:
        """Create the backend (and DynamoDB table if requested) and return an Engine."""
        backend = self._make_backend()
        if self._create_table and isinstance(backend, DynamoDBBackend):
            await backend.create_table()
        store = StateStore(
            backend,
            lock_timeout=self._lock_timeout,
            lock_ttl=self._lock_ttl,
            holder=self._holder,
        )
        logger.debug(
            "Built engine with %s backend and providers %s",
            type(backend).__name__,
            self._registry.names,
        )
        return Engine(
            store,
            self._registry,
            parallelism=self._parallelism,
            refresh=self._refresh,
        )
