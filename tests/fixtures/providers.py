"""In-memory provider for exercising planning and apply without real infrastructure."""

import asyncio
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from terraplan import ResourceNotFoundError, ResourceSchema


class ProviderFailure(Exception):
    """Injected provider failure."""


@dataclass
class Call:
    """One recorded provider call."""

    op: str
    resource_type: str
    external_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


class FakeProvider:
    """
    Keeps objects in a dict and records every call.

    Every object gets an ``id`` attribute equal to its external ID, plus any
    ``computed`` values configured per type. ``fail_on`` maps ``(op, name)``
    pairs to the number of times the call should fail, where ``name`` is the
    ``name`` attribute of the object (create/update) or its external ID
    (read/delete).
    """

    def __init__(
        self,
        name: str = "azurerm",
        *,
        schemas: dict[str, ResourceSchema] | None = None,
        computed: dict[str, dict[str, Any]] | None = None,
        delay: float = 0.0,
    ) -> None:
        self._name = name
        self.schemas = schemas or {}
        self.computed = computed or {}
        self.delay = delay
        self.objects: dict[str, tuple[str, dict[str, Any]]] = {}
        self.calls: list[Call] = []
        self.fail_on: dict[tuple[str, str], int] = {}
        self._ids = itertools.count(1)
        self.in_flight = 0
        self.max_in_flight = 0
        self.before_create: Callable[[str, dict[str, Any]], Awaitable[None]] | None = None

    @property
    def name(self) -> str:
        return self._name

    def schema(self, resource_type: str) -> ResourceSchema | None:
        return self.schemas.get(resource_type)

    def fail(self, op: str, name: str, times: int = 1) -> None:
        self.fail_on[(op, name)] = times

    def _maybe_fail(self, op: str, name: str) -> None:
        remaining = self.fail_on.get((op, name), 0)
        if remaining:
            self.fail_on[(op, name)] = remaining - 1
            raise ProviderFailure(f"{op} {name} failed")

    async def _enter(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if self.delay:
            await asyncio.sleep(self.delay)

    def ops(self, op: str | None = None) -> list[tuple[str, str]]:
        """``(op, name or external id)`` for every recorded call, optionally filtered."""
        result = []
        for call in self.calls:
            if op is not None and call.op != op:
                continue
            label = call.attributes.get("name", call.external_id)
            result.append((call.op, str(label)))
        return result

    async def create(
        self,
        resource_type: str,
        attributes: dict[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        self.calls.append(Call("create", resource_type, attributes=dict(attributes)))
        if self.before_create is not None:
            await self.before_create(resource_type, attributes)
        await self._enter()
        try:
            self._maybe_fail("create", str(attributes.get("name")))
            external_id = f"/{resource_type}/{next(self._ids)}"
            result = {"id": external_id, **self.computed.get(resource_type, {})}
            self.objects[external_id] = (resource_type, {**attributes, **result})
            return external_id, result
        finally:
            self.in_flight -= 1

    async def read(self, resource_type: str, external_id: str) -> dict[str, Any]:
        self.calls.append(Call("read", resource_type, external_id))
        self._maybe_fail("read", external_id)
        if external_id not in self.objects:
            raise ResourceNotFoundError(resource_type, external_id)
        return dict(self.objects[external_id][1])

    async def update(
        self,
        resource_type: str,
        external_id: str,
        changes: dict[str, Any],
    ) -> dict[str, Any]:
        self.calls.append(Call("update", resource_type, external_id, dict(changes)))
        await self._enter()
        try:
            current = self.objects[external_id][1]
            self._maybe_fail("update", str(current.get("name")))
            current.update(changes)
            return {"id": external_id}
        finally:
            self.in_flight -= 1

    async def delete(self, resource_type: str, external_id: str) -> None:
        self.calls.append(Call("delete", resource_type, external_id))
        await self._enter()
        try:
            self._maybe_fail("delete", external_id)
            if external_id not in self.objects:
                raise ResourceNotFoundError(resource_type, external_id)
            del self.objects[external_id]
        finally:
            self.in_flight -= 1
