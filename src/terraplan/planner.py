"""Async planning: read state, optionally refresh it from providers, diff."""

import asyncio
import logging

from .differ import ChangeSet, compute_plan
from .exceptions import ProviderNotFoundError, ResourceNotFoundError
from .graph import ResourceGraph
from .models import ResourceInstance, StateSnapshot
from .providers import ProviderRegistry
from .state import StateStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_CONCURRENCY = 10


class Planner:
    """
    Produces change-sets for a workspace.

    Refresh reads every tracked object through its provider before diffing.
    Objects deleted out-of-band (``ResourceNotFoundError``) are dropped from
    the refreshed view, so the next plan re-creates them. Instances whose
    provider is not registered keep their stored attributes. The refreshed view
    is never committed; the plan carries the stored versions it was based on.

    Args:
        store: State store to read from
        providers: Provider registry (reads and schemas)
        refresh: Refresh before planning by default
        concurrency: Maximum concurrent provider reads
    """

    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        *,
        refresh: bool = True,
        concurrency: int = DEFAULT_REFRESH_CONCURRENCY,
    ) -> None:
        self.store = store
        self.providers = providers
        self.refresh_enabled = refresh
        self.concurrency = concurrency

    async def refresh(
        self,
        snapshot: StateSnapshot,
        graph: ResourceGraph | None = None,
    ) -> StateSnapshot:
        """Return ``snapshot`` with attributes re-read from providers."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def read(instance: ResourceInstance) -> ResourceInstance | None:
            node = graph.get(instance.address) if graph is not None else None
            try:
                provider = self.providers.resolve(
                    instance.address.type, node.provider if node is not None else None
                )
            except ProviderNotFoundError as e:
                # Planned from stored attributes; applying it fails the entry
                logger.warning("Not refreshing %s: %s", instance.address, e)
                return instance
            async with semaphore:
                try:
                    attributes = await provider.read(instance.address.type, instance.external_id)
                except ResourceNotFoundError:
                    logger.warning(
                        "%s (%s) no longer exists; it will be planned for creation",
                        instance.address,
                        instance.external_id,
                    )
                    return None
            return instance.with_changes(attributes=dict(attributes))

        refreshed = await asyncio.gather(*(read(i) for i in snapshot))
        kept = [i for i in refreshed if i is not None]
        logger.debug(
            "Refreshed %d instance(s) of workspace %s, %d gone",
            len(snapshot),
            snapshot.workspace,
            len(snapshot) - len(kept),
        )
        return snapshot.with_instances(kept)

    async def plan(
        self,
        graph: ResourceGraph,
        workspace: str,
        *,
        destroy: bool = False,
        refresh: bool | None = None,
    ) -> ChangeSet:
        """
        Plan the changes that bring ``workspace`` to ``graph``.

        Raises:
            PreventDestroyViolation: If the plan would delete or replace a protected resource
        """
        stored = await self.store.read(workspace)
        do_refresh = self.refresh_enabled if refresh is None else refresh
        current = await self.refresh(stored, graph) if do_refresh else stored
        change_set = compute_plan(
            graph,
            current,
            schemas=self.providers.schema,
            destroy=destroy,
            base=stored,
        )
        logger.info("Plan for workspace %s: %s", workspace, change_set.summary())
        return change_set
