"""Immutable client configuration loaded once from the environment."""

from __future__ import annotations

import hashlib
import json
import os
import sys
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from capbridge.models import EndpointDescriptor

APP_NAME = "capbridge"
ENV_PREFIX = "CAPBRIDGE_"
CREDENTIAL_ENV_VARS = ("CAPBRIDGE_API_KEY", "Z_AI_API_KEY", "ZAI_API_KEY")
FINGERPRINT_LENGTH = 16

DEFAULT_PROVIDER = "zai"
MODE_BASE_URLS = {
    "ZAI": "https://api.z.ai/api/mcp",
    "ZHIPU": "https://open.bigmodel.cn/api/mcp",
}
ENDPOINT_PATHS = {
    "search": "web_search_prime/mcp",
    "reader": "web_reader/mcp",
    "zread": "zread/mcp",
    "vision": "vision/mcp",
}


class RetryPolicy(BaseModel):
    """Backoff and retry budget for capability calls."""

    model_config = ConfigDict(frozen=True)

    base_delay_ms: int = 500
    max_delay_ms: int = 8000
    jitter_max_ms: int = 250
    max_retries: int = 0
    namespace_retries: dict[str, int] = Field(default_factory=lambda: {"vision": 2})

    def retries_for(self, name: str) -> int:
        """Retry budget for one fully-qualified capability name."""
        namespaces = name.split(".")[1:-1]
        for namespace in namespaces:
            override = self.namespace_retries.get(namespace)
            if override is not None:
                return max(0, override)
        return max(0, self.max_retries)

    def backoff_ms(self, attempt: int) -> int:
        """Deterministic part of the delay before retry number ``attempt``."""
        return min(self.max_delay_ms, self.base_delay_ms * 2 ** (attempt - 1))


class CacheSettings(BaseModel):
    """On-disk tool catalog cache settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    ttl_ms: int = 86_400_000
    directory: Path | None = None


class ClientConfig(BaseModel):
    """Everything a capability client reads, constructed once at startup."""

    model_config = ConfigDict(frozen=True)

    api_key: str | None = None
    mode: str = "ZAI"
    base_url: str | None = None
    vision_enabled: bool = True
    timeout_ms: int = 300_000
    endpoints: tuple[EndpointDescriptor, ...] | None = None
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    cache: CacheSettings = Field(default_factory=CacheSettings)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ClientConfig:
        """Build a config from ``CAPBRIDGE_*`` environment variables."""
        env = os.environ if environ is None else environ
        namespace_retries = {"vision": _env_int(env, "VISION_RETRY_COUNT", 2)}
        return cls(
            api_key=next((env[name] for name in CREDENTIAL_ENV_VARS if env.get(name)), None),
            mode=env.get(f"{ENV_PREFIX}MODE", "ZAI").upper(),
            base_url=env.get(f"{ENV_PREFIX}BASE_URL") or None,
            vision_enabled=_env_flag(env, "VISION", True),
            timeout_ms=_env_int(env, "TIMEOUT_MS", 300_000),
            retry=RetryPolicy(
                base_delay_ms=_env_int(env, "RETRY_BASE_MS", 500),
                max_delay_ms=_env_int(env, "RETRY_MAX_MS", 8000),
                jitter_max_ms=_env_int(env, "RETRY_JITTER_MS", 250),
                max_retries=_env_int(env, "RETRY_COUNT", 0),
                namespace_retries=namespace_retries,
            ),
            cache=CacheSettings(
                enabled=_env_flag(env, "TOOL_CACHE", True),
                ttl_ms=_env_int(env, "TOOL_CACHE_TTL_MS", 86_400_000),
                directory=Path(env[f"{ENV_PREFIX}CACHE_DIR"])
                if env.get(f"{ENV_PREFIX}CACHE_DIR")
                else None,
            ),
        )

    @property
    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return MODE_BASE_URLS.get(self.mode, MODE_BASE_URLS["ZAI"])

    def resolved_endpoints(self) -> list[EndpointDescriptor]:
        """Explicit endpoints, else the default servers for the configured mode."""
        if self.endpoints is not None:
            return [
                endpoint
                for endpoint in self.endpoints
                if self.vision_enabled or endpoint.group != "vision"
            ]
        base = self.resolved_base_url
        return [
            EndpointDescriptor(provider=DEFAULT_PROVIDER, group=group, url=f"{base}/{path}")
            for group, path in ENDPOINT_PATHS.items()
            if self.vision_enabled or group != "vision"
        ]

    def fingerprint(self) -> str:
        """Cache partition key over mode, base URL, endpoints and vision flag."""
        key_data = {
            "mode": self.mode,
            "baseUrl": self.resolved_base_url,
            "endpoints": [endpoint.model_dump() for endpoint in self.resolved_endpoints()],
            "enableVision": self.vision_enabled,
        }
        canonical = json.dumps(key_data, sort_keys=True, separators=(",", ":"))
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return digest[:FINGERPRINT_LENGTH]

    def cache_root(self, environ: Mapping[str, str] | None = None) -> Path:
        """Explicit cache directory, else the platform user cache directory."""
        if self.cache.directory is not None:
            return self.cache.directory
        env = os.environ if environ is None else environ
        xdg = env.get("XDG_CACHE_HOME")
        if xdg:
            return Path(xdg) / APP_NAME
        if sys.platform == "darwin":
            return Path.home() / "Library" / "Caches" / APP_NAME
        return Path.home() / ".cache" / APP_NAME


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false"}
