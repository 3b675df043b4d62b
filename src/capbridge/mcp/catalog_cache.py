"""Read-through, TTL-bounded on-disk cache of discovered tool catalogs."""

from __future__ import annotations

from typing_extensions import TypeAliasType
import asyncio
import json
import logging
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from pydantic import ValidationError as ModelValidationError

from capbridge.config import ClientConfig
from capbridge.models import CACHE_FORMAT_VERSION, CacheEntry, CapabilityDescriptor
from capbridge.redact import redact_tool

logger = logging.getLogger(__name__)

EpochClock = TypeAliasType("EpochClock", Callable[[], int])


def epoch_ms() -> int:
    return int(time.time() * 1000)


class ToolCatalogCache:
    """Best-effort persistence of catalog snapshots keyed by config fingerprint.

    The cache only ever speeds up discovery. Any failure to read is treated as a
    miss and any failure to write is ignored.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        clock: EpochClock = epoch_ms,
        root: Path | None = None,
    ) -> None:
        self._settings = config.cache
        self._credential = config.api_key
        self._clock = clock
        self._path = (root or config.cache_root()) / f"tools-{config.fingerprint()}.json"

    @property
    def path(self) -> Path:
        return self._path

    @property
    def active(self) -> bool:
        return self._settings.enabled and self._settings.ttl_ms > 0

    async def read(self, force_refresh: bool = False) -> list[CapabilityDescriptor] | None:
        """Cached catalog, or ``None`` when absent, stale, foreign or disabled."""
        if force_refresh or not self.active:
            return None
        try:
            raw = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            logger.debug("Tool cache miss at %s", self._path)
            return None
        entry = self._decode(raw)
        if entry is None:
            return None
        age = self._clock() - entry.captured_at_epoch_ms
        if age > self._settings.ttl_ms:
            logger.debug("Tool cache at %s expired (%sms old)", self._path, age)
            return None
        return list(entry.catalog)

    async def write(self, catalog: Sequence[CapabilityDescriptor]) -> None:
        """Persist a redacted snapshot. Failures are ignored."""
        if not self.active:
            return
        entry = CacheEntry(
            format_version=CACHE_FORMAT_VERSION,
            captured_at_epoch_ms=self._clock(),
            catalog=[redact_tool(descriptor, self._credential) for descriptor in catalog],
        )
        try:
            text = json.dumps(entry.to_wire())
            await asyncio.to_thread(self._write_text, text)
        except (OSError, TypeError, ValueError) as exc:
            logger.debug("Ignoring tool cache write failure: %s", exc)

    def _write_text(self, text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(text, encoding="utf-8")

    def _decode(self, raw: str) -> CacheEntry | None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Tool cache at %s is not valid JSON", self._path)
            return None
        if not isinstance(data, dict) or data.get("formatVersion") != CACHE_FORMAT_VERSION:
            return None
        if not isinstance(data.get("catalog"), list):
            return None
        try:
            return CacheEntry.model_validate(data)
        except ModelValidationError:
            return None
