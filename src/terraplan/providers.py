"""Provider capability interface.

Providers are the external collaborators that talk to real infrastructure.
The engine only needs four async capabilities per resource type (create,
read, update, delete) plus a static :class:`ResourceSchema` describing which
attributes cannot change in place and which are computed by the provider.

The protocol uses Python's typing.Protocol with @runtime_checkable, so any
object with the right methods works - no inheritance needed.

Example:
    class AzureProvider:
        name = "azurerm"

        def schema(self, resource_type: str) -> ResourceSchema | None:
            if resource_type == "azurerm_resource_group":
                return ResourceSchema(resource_type, force_new=frozenset({"location"}))
            return None

        async def create(self, resource_type, attributes):
            ...

    registry = ProviderRegistry([AzureProvider()])
    registry.resolve("azurerm_resource_group")  # -> AzureProvider
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Any, Protocol, runtime_checkable

from .exceptions import ProviderNotFoundError

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "terraplan.providers"


@dataclass(frozen=True)
class ResourceSchema:
    """
    Static description of a resource type.

    Attributes:
        type: Resource type name (e.g., ``azurerm_virtual_network``)
        force_new: Attributes that require replacement when they change
        computed: Attributes set by the provider (referenceable, never diffed)
    """

    type: str
    force_new: frozenset[str] = frozenset()
    computed: frozenset[str] = frozenset()

    def forces_replacement(self, attribute: str) -> bool:
        return attribute in self.force_new


SchemaSource = Callable[[str], ResourceSchema | None] | Mapping[str, ResourceSchema] | None


def schema_lookup(schemas: SchemaSource) -> Callable[[str], ResourceSchema | None]:
    """Normalize a mapping, callable or None into a lookup function."""
    if schemas is None:
        return lambda _type: None
    if isinstance(schemas, Mapping):
        return schemas.get
    return schemas


@runtime_checkable
class ProviderProtocol(Protocol):
    """
    Capabilities a provider must offer.

    Any exception raised by create/update/delete marks the plan entry as
    failed and is surfaced verbatim. ``read`` must raise
    :class:`~terraplan.exceptions.ResourceNotFoundError` when the object was
    deleted out-of-band.
    """

    @property
    def name(self) -> str:
        """Provider name, also the default resource type prefix (``azurerm``)."""
        ...

    def schema(self, resource_type: str) -> ResourceSchema | None:
        """Schema for ``resource_type``, or None if nothing is force-new/computed."""
        ...

    async def create(
        self,
        resource_type: str,
        attributes: dict[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        """
        Create an object.

        Returns:
            Tuple of (external_id, resulting attributes)
        """
        ...

    async def read(self, resource_type: str, external_id: str) -> dict[str, Any]:
        """Return the current attributes of an object."""
        ...

    async def update(
        self,
        resource_type: str,
        external_id: str,
        changes: dict[str, Any],
    ) -> dict[str, Any]:
        """Apply in-place ``changes`` (attribute -> new value); return resulting attributes."""
        ...

    async def delete(self, resource_type: str, external_id: str) -> None:
        """Delete an object."""
        ...


def type_prefix(resource_type: str) -> str:
    """Provider prefix of a resource type (``azurerm_resource_group`` -> ``azurerm``)."""
    return resource_type.split("_", 1)[0]


class ProviderRegistry:
    """
    Routes resource types to providers.

    A resource is handled by the provider named explicitly on its node, or
    else by the provider registered for its type prefix.
    """

    def __init__(self, providers: Iterable[ProviderProtocol] | None = None) -> None:
        self._providers: dict[str, ProviderProtocol] = {}
        self._prefixes: dict[str, str] = {}
        for provider in providers or ():
            self.register(provider)

    def register(
        self,
        provider: ProviderProtocol,
        *,
        prefixes: Iterable[str] | None = None,
    ) -> "ProviderRegistry":
        """
        Register a provider under its name and the given type prefixes.

        Args:
            provider: The provider
            prefixes: Resource type prefixes it handles (default: its name)

        Returns:
            self, for chaining
        """
        name = provider.name
        if name in self._providers:
            logger.warning("Replacing provider %s", name)
        self._providers[name] = provider
        for prefix in prefixes if prefixes is not None else (name,):
            self._prefixes[prefix] = name
        return self

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    @property
    def names(self) -> list[str]:
        return sorted(self._providers)

    def resolve(self, resource_type: str, provider: str | None = None) -> ProviderProtocol:
        """
        Find the provider for a resource type.

        Raises:
            ProviderNotFoundError: If nothing handles the type
        """
        if provider is not None:
            try:
                return self._providers[provider]
            except KeyError:
                raise ProviderNotFoundError(resource_type, provider) from None
        name = self._prefixes.get(type_prefix(resource_type))
        if name is None:
            raise ProviderNotFoundError(resource_type)
        return self._providers[name]

    def schema(self, resource_type: str) -> ResourceSchema | None:
        """Schema for a type, or None when no provider handles it."""
        name = self._prefixes.get(type_prefix(resource_type))
        if name is None:
            return None
        return self._providers[name].schema(resource_type)

    @classmethod
    def from_entry_points(cls, group: str = ENTRY_POINT_GROUP) -> "ProviderRegistry":
        """
        Build a registry from installed ``terraplan.providers`` entry points.

        Each entry point must load to a zero-argument callable (usually the
        provider class) returning a provider.
        """
        registry = cls()
        for ep in entry_points(group=group):
            factory = ep.load()
            provider = factory()
            logger.debug("Loaded provider %s from entry point %s", provider.name, ep.name)
            registry.register(provider)
        return registry
