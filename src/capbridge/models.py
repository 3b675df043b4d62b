"""Capability catalog domain models."""

from __future__ import annotations

from typing_extensions import TypeAliasType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

JSONValue = TypeAliasType("JSONValue", None | bool | int | float | str | list["JSONValue"] | dict[str, "JSONValue"])
JSONObject = TypeAliasType("JSONObject", dict[str, JSONValue])

CACHE_FORMAT_VERSION = 1


class CapabilityDescriptor(BaseModel):
    """One discovered remote capability."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    output_schema: dict[str, Any] = Field(default_factory=dict, alias="outputSchema")
    description: str | None = None

    @property
    def group(self) -> str:
        """Second dot-segment of the name (the server group), or ``unknown``."""
        parts = self.name.split(".")
        return parts[1] if len(parts) >= 2 else "unknown"

    def to_wire(self) -> dict[str, Any]:
        """Serialize with the wire field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CacheEntry(BaseModel):
    """Persisted catalog snapshot."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    format_version: int = Field(alias="formatVersion")
    captured_at_epoch_ms: int = Field(alias="capturedAtEpochMs")
    catalog: list[CapabilityDescriptor]

    def to_wire(self) -> dict[str, Any]:
        return {
            "formatVersion": self.format_version,
            "capturedAtEpochMs": self.captured_at_epoch_ms,
            "catalog": [descriptor.to_wire() for descriptor in self.catalog],
        }


class EndpointDescriptor(BaseModel):
    """One backend MCP server registered with the transport."""

    model_config = ConfigDict(frozen=True)

    provider: str
    group: str
    url: str

    @property
    def prefix(self) -> str:
        return f"{self.provider}.{self.group}"


class RegistrationResult(BaseModel):
    """Outcome of registering endpoints with a transport."""

    success: bool
    errors: list[str] = Field(default_factory=list)
