"""Transport boundary for capability registration, discovery and calls."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol, cast
from uuid import uuid4

import httpx

from capbridge.models import (
    CapabilityDescriptor,
    EndpointDescriptor,
    JSONObject,
    JSONValue,
    RegistrationResult,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-11-25"
CLIENT_INFO: JSONObject = {"name": "capbridge", "version": "0.1.0"}


class CapabilityTransport(Protocol):
    """External collaborator that owns the wire protocol to backend servers."""

    async def register(self, endpoints: Sequence[EndpointDescriptor]) -> RegistrationResult:
        """Register backend endpoints; report per-endpoint errors."""

    async def list_capabilities(self) -> list[CapabilityDescriptor]:
        """Return every capability discoverable from registered endpoints."""

    async def invoke(self, name: str, args: JSONObject) -> Any:
        """Call one fully-qualified capability."""

    async def close(self) -> None:
        """Release the underlying connections."""


class TransportFactory(Protocol):
    """Create a fresh transport for each new session."""

    def __call__(self) -> CapabilityTransport:
        """Return an unregistered transport."""


class TransportError(RuntimeError):
    """Transport failure whose message carries its category."""


class HTTPCapabilityTransport:
    """JSON-RPC 2.0 over Streamable HTTP against MCP servers."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Accept": "application/json, text/event-stream"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._headers = headers
        self._endpoints: dict[str, EndpointDescriptor] = {}
        self._session_ids: dict[str, str] = {}

    async def register(self, endpoints: Sequence[EndpointDescriptor]) -> RegistrationResult:
        errors: list[str] = []
        for endpoint in endpoints:
            try:
                await self._initialize(endpoint)
            except TransportError as exc:
                errors.append(f"{endpoint.prefix}: {exc}")
                continue
            self._endpoints[endpoint.prefix] = endpoint
        return RegistrationResult(success=not errors, errors=errors)

    async def list_capabilities(self) -> list[CapabilityDescriptor]:
        tools: list[CapabilityDescriptor] = []
        for prefix, endpoint in self._endpoints.items():
            result = await self._request(endpoint, "tools/list", {})
            raw_tools = result.get("tools") if isinstance(result, dict) else None
            if not isinstance(raw_tools, list):
                msg = f"Invalid tools/list result from {prefix}"
                raise TransportError(msg)
            for raw in raw_tools:
                if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
                    continue
                tools.append(
                    CapabilityDescriptor(
                        name=f"{prefix}.{raw['name']}",
                        input_schema=_as_object(raw.get("inputSchema")),
                        output_schema=_as_object(raw.get("outputSchema")),
                        description=raw.get("description")
                        if isinstance(raw.get("description"), str)
                        else None,
                    )
                )
        return tools

    async def invoke(self, name: str, args: JSONObject) -> Any:
        endpoint, tool_name = self._route(name)
        result = await self._request(
            endpoint,
            "tools/call",
            {"name": tool_name, "arguments": args},
        )
        if not isinstance(result, dict):
            return result
        content = result.get("content")
        text = _joined_text(content)
        if result.get("isError"):
            raise TransportError(text or "tool call reported an error")
        if "structuredContent" in result:
            return result["structuredContent"]
        if text is not None:
            return text
        return content

    async def close(self) -> None:
        self._endpoints.clear()
        self._session_ids.clear()
        await self._client.aclose()

    def _route(self, name: str) -> tuple[EndpointDescriptor, str]:
        for prefix, endpoint in self._endpoints.items():
            if name.startswith(f"{prefix}."):
                return endpoint, name[len(prefix) + 1 :]
        msg = f"No registered endpoint for tool {name}"
        raise TransportError(msg)

    async def _initialize(self, endpoint: EndpointDescriptor) -> None:
        await self._request(
            endpoint,
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "clientInfo": CLIENT_INFO,
                "capabilities": {},
            },
        )
        await self._post(
            endpoint,
            {"jsonrpc": "2.0", "method": "notifications/initialized", "params": {}},
        )

    async def _request(
        self,
        endpoint: EndpointDescriptor,
        method: str,
        params: JSONObject,
    ) -> JSONValue:
        request: JSONObject = {
            "jsonrpc": "2.0",
            "id": str(uuid4()),
            "method": method,
            "params": params,
        }
        payload = await self._post(endpoint, request)
        if payload is None:
            msg = f"Empty JSON-RPC response for {method}"
            raise TransportError(msg)
        error_payload = payload.get("error")
        if error_payload is not None:
            raise TransportError(_rpc_error_message(error_payload))
        if "result" not in payload:
            msg = "rpc error: missing result"
            raise TransportError(msg)
        return payload["result"]

    async def _post(self, endpoint: EndpointDescriptor, request: JSONObject) -> JSONObject | None:
        headers = dict(self._headers)
        session_id = self._session_ids.get(endpoint.prefix)
        if session_id:
            headers["Mcp-Session-Id"] = session_id
        try:
            response = await self._client.post(endpoint.url, json=request, headers=headers)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            msg = f"timeout contacting {endpoint.url}"
            raise TransportError(msg) from exc
        except httpx.HTTPStatusError as exc:
            msg = f"http {exc.response.status_code}"
            raise TransportError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"network error: {exc}"
            raise TransportError(msg) from exc

        new_session = response.headers.get("mcp-session-id")
        if new_session:
            self._session_ids[endpoint.prefix] = new_session
        if response.status_code == 202 or not response.content:
            return None
        return _decode_payload(response)


def _decode_payload(response: httpx.Response) -> JSONObject:
    content_type = response.headers.get("content-type", "")
    if content_type.startswith("text/event-stream"):
        data_lines = [
            line[len("data:") :].strip()
            for line in response.text.splitlines()
            if line.startswith("data:")
        ]
        if not data_lines:
            msg = "Invalid JSON-RPC response payload"
            raise TransportError(msg)
        try:
            payload = json.loads(data_lines[-1])
        except ValueError as exc:
            msg = "Invalid JSON-RPC response payload"
            raise TransportError(msg) from exc
    else:
        try:
            payload = response.json()
        except ValueError as exc:
            msg = "Invalid JSON-RPC response payload"
            raise TransportError(msg) from exc
    if not isinstance(payload, dict) or not all(isinstance(key, str) for key in payload):
        msg = "Invalid JSON-RPC response payload"
        raise TransportError(msg)
    return cast(JSONObject, payload)


def _rpc_error_message(error_payload: JSONValue) -> str:
    if isinstance(error_payload, dict):
        message = error_payload.get("message")
        code = error_payload.get("code")
        if isinstance(message, str):
            return f"{message} (code {code})" if code is not None else message
        return f"rpc error: code={code}"
    return str(error_payload)


def _joined_text(content: JSONValue) -> str | None:
    if not isinstance(content, list):
        return None
    texts = [
        block["text"]
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    ]
    if not texts:
        return None
    return "\n".join(cast(list[str], texts))


def _as_object(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def default_transport_factory(*, api_key: str | None, timeout_ms: int) -> TransportFactory:
    """Factory producing one ``HTTPCapabilityTransport`` per session."""

    def create() -> CapabilityTransport:
        logger.debug("Creating HTTP capability transport")
        return HTTPCapabilityTransport(api_key=api_key, timeout_seconds=timeout_ms / 1000)

    return create
