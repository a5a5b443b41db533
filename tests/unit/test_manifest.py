"""Tests for Terraform-JSON-shaped configuration mappings."""

import pytest

from terraplan import Manifest, ResourceAddress, ValidationError
from tests.fixtures.configs import RG, VNET, demo_config


class TestManifest:
    """Tests for Manifest parsing."""

    def test_from_dict_splits_meta_arguments(self):
        manifest = Manifest.from_dict(
            {
                "resource": {
                    RG: {
                        "rg": {
                            "name": "rg-${count.index}",
                            "count": 2,
                            "depends_on": [f"{VNET}.x"],
                            "provider": "azurerm.secondary",
                            "lifecycle": {
                                "prevent_destroy": True,
                                "create_before_destroy": True,
                                "ignore_changes": ["tags"],
                            },
                        }
                    }
                }
            }
        )
        (decl,) = manifest.declarations
        assert decl.attributes == {"name": "rg-${count.index}"}
        assert decl.count == 2
        assert decl.depends_on == (f"{VNET}.x",)
        assert decl.provider == "azurerm"
        assert decl.lifecycle.prevent_destroy
        assert decl.lifecycle.create_before_destroy
        assert decl.lifecycle.ignore_changes == frozenset({"tags"})

    def test_variable_defaults(self):
        manifest = Manifest.from_dict(demo_config())
        assert manifest.defaults == {"location": "westeurope"}
        assert manifest.addresses == [f"{RG}.rg1", f"{VNET}.net1"]

    def test_build_graph_variables_override_defaults(self):
        graph = Manifest.from_dict(demo_config()).build_graph({"location": "northeurope"})
        node = graph.node(ResourceAddress(RG, "rg1"))
        assert node.attributes["location"] == "northeurope"

    def test_to_dict_round_trip(self):
        config = {
            "resource": {
                RG: {
                    "rg": {
                        "name": "x",
                        "for_each": ["a"],
                        "depends_on": [f"{VNET}.y"],
                        "lifecycle": {"ignore_changes": "all"},
                    }
                }
            },
            "variable": {"env": {"default": "prod"}},
        }
        assert Manifest.from_dict(config).to_dict() == config

    def test_string_depends_on_rejected(self):
        with pytest.raises(ValidationError):
            Manifest.from_dict({"resource": {RG: {"rg": {"depends_on": f"{VNET}.x"}}}})

    def test_non_object_block_rejected(self):
        with pytest.raises(ValidationError):
            Manifest.from_dict({"resource": {RG: {"rg": "oops"}}})

    def test_empty(self):
        manifest = Manifest.from_dict({})
        assert manifest.declarations == ()
        assert len(manifest.build_graph()) == 0
