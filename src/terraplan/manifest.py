"""Terraform-JSON-shaped configuration mapping.

The configuration loader hands the engine an already-parsed mapping with the
same shape as a ``.tf.json`` file::

    {
        "variable": {"location": {"default": "westeurope"}},
        "resource": {
            "azurerm_resource_group": {
                "rg": {"name": "rg-demo", "location": "${var.location}"}
            },
            "azurerm_virtual_network": {
                "net": {
                    "name": "vnet-demo",
                    "resource_group_name": "${azurerm_resource_group.rg.name}",
                    "lifecycle": {"prevent_destroy": true}
                }
            }
        }
    }

Meta-arguments (``count``, ``for_each``, ``depends_on``, ``lifecycle``,
``provider``) are split off; everything else is an attribute.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .exceptions import ValidationError
from .graph import Declaration, Lifecycle, ResourceGraph, build_graph
from .models import ResourceAddress
from .providers import SchemaSource

META_ARGUMENTS = frozenset({"count", "for_each", "depends_on", "lifecycle", "provider"})


def declaration_from_dict(type_name: str, name: str, body: Mapping[str, Any]) -> Declaration:
    """Build a Declaration from one ``resource.TYPE.NAME`` block."""
    if not isinstance(body, Mapping):
        raise ValidationError(f"resource.{type_name}.{name}", body, "expected an object")
    depends_on = body.get("depends_on", ())
    if isinstance(depends_on, str):
        raise ValidationError("depends_on", depends_on, "expected a list of addresses")
    provider = body.get("provider")
    if provider is not None:
        # "azurerm.secondary" selects an aliased configuration of azurerm
        provider = str(provider).split(".", 1)[0]
    return Declaration(
        type=type_name,
        name=name,
        attributes={k: v for k, v in body.items() if k not in META_ARGUMENTS},
        count=body.get("count"),
        for_each=body.get("for_each"),
        depends_on=tuple(depends_on),
        lifecycle=Lifecycle.from_dict(body.get("lifecycle", {})),
        provider=provider,
    )


def declaration_to_dict(decl: Declaration) -> dict[str, Any]:
    result: dict[str, Any] = dict(decl.attributes)
    if decl.count is not None:
        result["count"] = decl.count
    if decl.for_each is not None:
        result["for_each"] = decl.for_each
    if decl.depends_on:
        result["depends_on"] = list(decl.depends_on)
    if decl.provider is not None:
        result["provider"] = decl.provider
    lifecycle: dict[str, Any] = {}
    if decl.lifecycle.prevent_destroy:
        lifecycle["prevent_destroy"] = True
    if decl.lifecycle.create_before_destroy:
        lifecycle["create_before_destroy"] = True
    if decl.lifecycle.ignore_changes == frozenset({"*"}):
        lifecycle["ignore_changes"] = "all"
    elif decl.lifecycle.ignore_changes:
        lifecycle["ignore_changes"] = sorted(decl.lifecycle.ignore_changes)
    if lifecycle:
        result["lifecycle"] = lifecycle
    return result


@dataclass(frozen=True)
class Manifest:
    """Parsed configuration: resource declarations plus declared variable defaults."""

    declarations: tuple[Declaration, ...] = ()
    defaults: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> Manifest:
        resources = d.get("resource", {})
        if not isinstance(resources, Mapping):
            raise ValidationError("resource", resources, "expected an object of resource types")

        declarations = []
        for type_name, blocks in resources.items():
            if not isinstance(blocks, Mapping):
                raise ValidationError(f"resource.{type_name}", blocks, "expected an object")
            for name, body in blocks.items():
                declarations.append(declaration_from_dict(type_name, name, body))

        defaults = {}
        for var_name, var_body in d.get("variable", {}).items():
            if isinstance(var_body, Mapping) and "default" in var_body:
                defaults[var_name] = var_body["default"]

        return cls(declarations=tuple(declarations), defaults=defaults)

    def to_dict(self) -> dict[str, Any]:
        resources: dict[str, dict[str, Any]] = {}
        for decl in self.declarations:
            resources.setdefault(decl.type, {})[decl.name] = declaration_to_dict(decl)
        result: dict[str, Any] = {"resource": resources}
        if self.defaults:
            result["variable"] = {k: {"default": v} for k, v in self.defaults.items()}
        return result

    @property
    def addresses(self) -> list[str]:
        """Unexpanded ``type.name`` of every declaration, sorted."""
        return sorted(decl.resource for decl in self.declarations)

    def build_graph(
        self,
        variables: Mapping[str, Any] | None = None,
        *,
        schemas: SchemaSource = None,
        tainted: Iterable[ResourceAddress | str] = (),
    ) -> ResourceGraph:
        """Build the resource graph; ``variables`` win over declared defaults."""
        merged = {**self.defaults, **(variables or {})}
        return build_graph(self.declarations, merged, schemas=schemas, tainted=tainted)
