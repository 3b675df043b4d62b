"""Resolve short or fully-qualified tool names against the catalog."""

from __future__ import annotations

from typing_extensions import TypeAliasType
import logging
from collections.abc import Awaitable, Callable, Sequence

from capbridge.errors import UnknownToolError
from capbridge.models import CapabilityDescriptor

logger = logging.getLogger(__name__)

CatalogProvider = TypeAliasType("CatalogProvider", Callable[[bool], Awaitable[list[CapabilityDescriptor]]])


def match_tool(
    catalog: Sequence[CapabilityDescriptor],
    identifier: str,
) -> CapabilityDescriptor | None:
    """Exact name first, then the first entry whose dotted suffix matches."""
    for descriptor in catalog:
        if descriptor.name == identifier:
            return descriptor
    suffix = f".{identifier}"
    for descriptor in catalog:
        if descriptor.name.endswith(suffix):
            return descriptor
    return None


class NameResolver:
    """Map user-supplied identifiers to fully-qualified capability names."""

    def __init__(self, catalog: CatalogProvider) -> None:
        self._catalog = catalog

    async def find(self, identifier: str) -> CapabilityDescriptor | None:
        """Look up ``identifier``, refreshing the catalog once on a miss."""
        found = match_tool(await self._catalog(False), identifier)
        if found is not None:
            return found
        logger.info("Tool %s not in catalog, forcing a refresh", identifier)
        return match_tool(await self._catalog(True), identifier)

    async def resolve(self, identifier: str) -> str:
        found = await self.find(identifier)
        if found is None:
            raise UnknownToolError(identifier)
        return found.name
