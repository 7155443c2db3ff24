from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from ..errors import ConfigError, DuplicateTool, InvalidArguments, UnknownTool
from .base import ToolContext, ToolDescriptor, ToolResult, ToolSpec

BUILTIN_BUNDLE = "builtin"


def qualified_name(bundle: str, name: str) -> str:
    """Builtin tools keep their bare name; everything else is `mcp__<bundle>__<name>`."""
    if bundle == BUILTIN_BUNDLE:
        return name
    return f"mcp__{bundle}__{name}"


@dataclass
class ToolBundle:
    name: str
    version: str = "1.0.0"
    tools: Dict[str, ToolDescriptor] = field(default_factory=dict)


@dataclass(frozen=True)
class _Entry:
    bundle: str
    descriptor: ToolDescriptor
    validator: Draft202012Validator


class ToolRegistry:
    """Named tools grouped into bundles.

    Registration happens at startup; lookups afterwards only read the index,
    so concurrent loops can share one registry.
    """

    def __init__(self) -> None:
        self._bundles: Dict[str, ToolBundle] = {}
        self._index: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def register(self, bundle_name: str, tools: Iterable[ToolDescriptor], *, version: str = "1.0.0") -> ToolBundle:
        tools = list(tools)
        prepared: list[tuple[str, _Entry]] = []
        seen: set[str] = set()
        for d in tools:
            name = d.spec.name
            if name in seen:
                raise DuplicateTool(f"Tool already registered in bundle {bundle_name}: {name}")
            seen.add(name)
            schema = d.spec.parameters or {"type": "object"}
            try:
                Draft202012Validator.check_schema(schema)
            except SchemaError as e:
                raise ConfigError(f"Tool {bundle_name}/{name} has an invalid input schema: {e.message}") from e
            prepared.append((qualified_name(bundle_name, name), _Entry(bundle_name, d, Draft202012Validator(schema))))

        with self._lock:
            bundle = self._bundles.get(bundle_name)
            if bundle is None:
                bundle = ToolBundle(name=bundle_name, version=version)
            for qname, entry in prepared:
                if entry.descriptor.spec.name in bundle.tools or qname in self._index:
                    raise DuplicateTool(f"Tool already registered in bundle {bundle_name}: {entry.descriptor.spec.name}")
            self._bundles[bundle_name] = bundle
            for qname, entry in prepared:
                bundle.tools[entry.descriptor.spec.name] = entry.descriptor
                self._index[qname] = entry
        return bundle

    def resolve(self, qualified: str) -> ToolDescriptor:
        entry = self._index.get(qualified)
        if entry is None:
            raise UnknownTool(f"Unknown tool: {qualified}")
        return entry.descriptor

    def get_optional(self, qualified: str) -> Optional[ToolDescriptor]:
        """Return a tool if registered, otherwise None."""
        entry = self._index.get(qualified)
        return entry.descriptor if entry else None

    def validate(self, qualified: str, args: dict[str, Any]) -> None:
        entry = self._index.get(qualified)
        if entry is None:
            raise UnknownTool(f"Unknown tool: {qualified}")
        errors = sorted(entry.validator.iter_errors(args), key=lambda e: list(e.path))
        if errors:
            details = "; ".join(
                f"{'/'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
            )
            raise InvalidArguments(f"Invalid arguments for {qualified}: {details}")

    async def invoke(
        self,
        qualified: str,
        args: dict[str, Any],
        ctx: ToolContext | None = None,
        *,
        timeout: float | None = None,
    ) -> ToolResult:
        """Validate `args` and run the handler.

        Raises UnknownTool / InvalidArguments before the handler runs. Handler
        exceptions and timeouts come back as error results.
        """
        self.validate(qualified, args)
        d = self._index[qualified].descriptor
        ctx = ctx or ToolContext(cwd=".")
        try:
            if timeout is not None:
                return await asyncio.wait_for(d.call(ctx, args), timeout=timeout)
            return await d.call(ctx, args)
        except asyncio.TimeoutError:
            return ToolResult.text(f"Tool {qualified} timed out after {timeout}s.", is_error=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return ToolResult.text(f"Tool {qualified} exception: {e}", is_error=True)

    def names(self) -> list[str]:
        return sorted(self._index.keys())

    def bundles(self) -> list[ToolBundle]:
        return list(self._bundles.values())

    def bundle_of(self, qualified: str) -> str:
        entry = self._index.get(qualified)
        if entry is None:
            raise UnknownTool(f"Unknown tool: {qualified}")
        return entry.bundle

    def list_specs(self, allowed: Iterable[str] | None = None) -> list[tuple[str, ToolSpec]]:
        """(qualified name, spec) pairs, optionally filtered to an allow-set."""
        allow = set(allowed) if allowed is not None else None
        out = []
        for qname in self.names():
            if allow is not None and qname not in allow:
                continue
            out.append((qname, self._index[qname].descriptor.spec))
        return out
