"""Tests for provider routing and schemas."""

from unittest.mock import MagicMock, patch

import pytest

from terraplan import (
    ProviderNotFoundError,
    ProviderProtocol,
    ProviderRegistry,
    ResourceSchema,
)
from terraplan.providers import schema_lookup, type_prefix
from tests.fixtures.configs import RG, SCHEMAS
from tests.fixtures.providers import FakeProvider


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_fake_provider_satisfies_protocol(self, provider):
        assert isinstance(provider, ProviderProtocol)

    def test_resolve_by_prefix(self, registry, provider):
        assert registry.resolve(RG) is provider
        assert "azurerm" in registry
        assert registry.names == ["azurerm"]

    def test_resolve_unknown_type(self, registry):
        with pytest.raises(ProviderNotFoundError) as exc_info:
            registry.resolve("aws_instance")
        assert exc_info.value.resource_type == "aws_instance"

    def test_explicit_provider_name(self, registry):
        second = FakeProvider("azurerm_west")
        registry.register(second, prefixes=[])
        assert registry.resolve(RG, "azurerm_west") is second
        assert registry.resolve(RG) is not second
        with pytest.raises(ProviderNotFoundError):
            registry.resolve(RG, "missing")

    def test_register_with_prefixes(self):
        provider = FakeProvider("multi")
        registry = ProviderRegistry().register(provider, prefixes=["azurerm", "azuread"])
        assert registry.resolve("azuread_user") is provider
        assert registry.resolve(RG) is provider

    def test_replacing_provider(self, registry):
        replacement = FakeProvider()
        registry.register(replacement)
        assert registry.resolve(RG) is replacement

    def test_schema(self, registry):
        assert registry.schema(RG) == SCHEMAS[RG]
        assert registry.schema("azurerm_unknown") is None
        assert registry.schema("aws_instance") is None

    def test_from_entry_points(self):
        ep = MagicMock()
        ep.name = "fake"
        ep.load.return_value = lambda: FakeProvider("fake")
        with patch("terraplan.providers.entry_points", return_value=[ep]) as mock_eps:
            registry = ProviderRegistry.from_entry_points()
        mock_eps.assert_called_once_with(group="terraplan.providers")
        assert registry.names == ["fake"]


class TestSchemas:
    """Tests for schema helpers."""

    def test_type_prefix(self):
        assert type_prefix("azurerm_resource_group") == "azurerm"
        assert type_prefix("random") == "random"

    def test_forces_replacement(self):
        schema = ResourceSchema(RG, force_new=frozenset({"location"}))
        assert schema.forces_replacement("location")
        assert not schema.forces_replacement("tags")

    def test_schema_lookup_sources(self):
        assert schema_lookup(None)(RG) is None
        assert schema_lookup(SCHEMAS)(RG) == SCHEMAS[RG]
        assert schema_lookup(SCHEMAS.get)(RG) == SCHEMAS[RG]
