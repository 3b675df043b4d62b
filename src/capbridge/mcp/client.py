"""Capability client: discovery, name resolution and resilient calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Mapping
from pathlib import Path
from types import TracebackType
from typing import Any

from capbridge.config import ClientConfig
from capbridge.errors import (
    UnknownToolError,
    ValidationError,
    classify_invocation_error,
    error_message,
)
from capbridge.mcp.catalog_cache import EpochClock, ToolCatalogCache, epoch_ms
from capbridge.mcp.invoker import RetryingInvoker, Sleeper
from capbridge.mcp.resolver import NameResolver
from capbridge.mcp.session import SessionManager
from capbridge.mcp.transport import TransportFactory, default_transport_factory
from capbridge.models import CapabilityDescriptor, JSONObject
from capbridge.redact import redact_string, redact_tool

logger = logging.getLogger(__name__)


class CapabilityClient:
    """Discover and call remote capabilities over one shared session."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport_factory: TransportFactory | None = None,
        clock: EpochClock = epoch_ms,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
        cache_root: Path | None = None,
    ) -> None:
        self._config = config or ClientConfig.from_env()
        factory = transport_factory or default_transport_factory(
            api_key=self._config.api_key,
            timeout_ms=self._config.timeout_ms,
        )
        self._session = SessionManager(
            self._config.resolved_endpoints(),
            factory,
            timeout_ms=self._config.timeout_ms,
        )
        self._cache = ToolCatalogCache(self._config, clock=clock, root=cache_root)
        self._invoker = RetryingInvoker(
            self._session,
            self._config.retry,
            timeout_ms=self._config.timeout_ms,
            credential=self._config.api_key,
            sleep=sleep,
            rng=rng,
        )
        self._resolver = NameResolver(self.list_tools)

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def cache(self) -> ToolCatalogCache:
        return self._cache

    @property
    def invoker(self) -> RetryingInvoker:
        return self._invoker

    async def __aenter__(self) -> CapabilityClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()

    async def list_tools(self, refresh: bool = False) -> list[CapabilityDescriptor]:
        """Catalog from the cache when fresh, otherwise from live discovery."""
        cached = await self._cache.read(refresh)
        if cached is not None:
            return cached
        handle = await self._session.ensure_ready()
        try:
            tools = await handle.transport.list_capabilities()
        except Exception as exc:  # noqa: BLE001
            await self._session.invalidate(handle.generation)
            classified = classify_invocation_error(exc, timeout_ms=self._config.timeout_ms)
            message = redact_string(error_message(exc), self._config.api_key)
            logger.warning("Tool discovery failed: %s", message)
            raise classified from exc
        await self._cache.write(tools)
        logger.info("Discovered %s tool(s)", len(tools))
        return tools

    async def search_tools(
        self,
        text: str | None = None,
        *,
        full: bool = False,
    ) -> list[str] | list[CapabilityDescriptor]:
        """Tool names containing ``text`` (case-insensitive); redacted schemas if ``full``."""
        tools = await self.list_tools()
        if text:
            needle = text.lower()
            tools = [tool for tool in tools if needle in tool.name.lower()]
        if full:
            return [redact_tool(tool, self._config.api_key) for tool in tools]
        return [tool.name for tool in tools]

    async def get_tool(self, name: str) -> CapabilityDescriptor | None:
        """Find a tool by exact name or dotted suffix."""
        return await self._resolver.find(name)

    async def describe_tool(self, name: str) -> CapabilityDescriptor:
        """Redacted descriptor for display."""
        tool = await self._resolver.find(name)
        if tool is None:
            raise UnknownToolError(name)
        return redact_tool(tool, self._config.api_key)

    async def resolve_tool_name(self, name: str) -> str:
        return await self._resolver.resolve(name)

    async def call(
        self,
        name: str,
        args: Mapping[str, Any] | None = None,
        *,
        dry_run: bool = False,
    ) -> Any:
        """Resolve ``name``, check the argument shape, then invoke with retries."""
        tool = await self._resolver.find(name)
        if tool is None:
            raise UnknownToolError(name)
        arguments = check_arguments(tool, args)
        if dry_run:
            return {"tool": tool.name, "args": arguments}
        return await self._invoker.invoke(tool.name, arguments)

    async def summary(self, *, include_tools: bool = True) -> dict[str, Any]:
        """Environment and connectivity report."""
        report: dict[str, Any] = {
            "env": {
                "apiKeyPresent": bool(self._config.api_key),
                "mode": self._config.mode,
                "baseUrl": self._config.resolved_base_url,
            },
            "cache": {
                "enabled": self._cache.active,
                "path": str(self._cache.path),
            },
        }
        if not include_tools or not self._config.api_key:
            return report
        tools = await self.list_tools()
        by_group: dict[str, int] = {}
        for tool in tools:
            by_group[tool.group] = by_group.get(tool.group, 0) + 1
        report["mcp"] = {"toolCount": len(tools), "servers": by_group}
        return report

    async def close(self, timeout_ms: int | None = None) -> None:
        await self._session.teardown(timeout_ms)


def check_arguments(tool: CapabilityDescriptor, args: Mapping[str, Any] | None) -> JSONObject:
    """Basic shape check: a string-keyed mapping carrying every required key."""
    if args is None:
        args = {}
    if not isinstance(args, Mapping):
        msg = f"Arguments for {tool.name} must be an object"
        raise ValidationError(msg, code=400)
    if not all(isinstance(key, str) for key in args):
        msg = f"Argument names for {tool.name} must be strings"
        raise ValidationError(msg, code=400)
    required = tool.input_schema.get("required")
    if isinstance(required, list):
        missing = [key for key in required if isinstance(key, str) and key not in args]
        if missing:
            msg = f"Missing required argument(s) for {tool.name}: {', '.join(missing)}"
            raise ValidationError(msg, code=400)
    return dict(args)
