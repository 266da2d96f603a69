# src/taskmaster_sync/remote/tool_client.py

"""
Remote tool client.

The remote task service is an opaque capability: invoke(tool_name, params) -> result.
Calls go out as JSON-RPC 2.0 `tools/call` requests over one shared httpx.AsyncClient.

Retries: transport errors, timeouts and HTTP 5xx are retried with a short exponential
backoff (1s, 2s, 4s, capped at 5s). A JSON-RPC error object is an answer, not an outage,
so it is raised immediately as RemoteToolError.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from ..errors import RemoteToolError, ServiceConnectionError

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 5.0


def retry_delay(attempt: int) -> float:
    """Delay after the given (1-based) failed attempt."""
    return min(RETRY_BASE_DELAY * 2 ** (attempt - 1), RETRY_MAX_DELAY)


def decode_tool_result(result: Any) -> Any:
    """
    Unwrap {"content": [{"type": "text", "text": "<json>"}]}.

    Text that is not JSON, or any other shape, is returned unchanged.
    """
    if isinstance(result, dict):
        content = result.get("content")
        if isinstance(content, list) and content:
            item = content[0]
            if isinstance(item, dict) and item.get("type") == "text" and item.get("text"):
                try:
                    return json.loads(item["text"])
                except json.JSONDecodeError:
                    logger.warning("Tool result text is not JSON, returning raw result")
                    return result
    return result


class HttpToolClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url
        self._retry_attempts = max(1, retry_attempts)
        self._sleep = sleep
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> HttpToolClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def invoke(self, tool_name: str, params: dict[str, Any] | None = None) -> Any:
        last_error: Exception | None = None

        for attempt in range(1, self._retry_attempts + 1):
            payload = {
                "jsonrpc": "2.0",
                "id": next(self._ids),
                "method": "tools/call",
                "params": {"name": tool_name, "arguments": params or {}},
            }
            try:
                response = await self._client.post(self._base_url, json=payload)
                if response.status_code >= 500:
                    raise httpx.HTTPStatusError(
                        f"Server error {response.status_code}", request=response.request, response=response
                    )
                response.raise_for_status()
                body = response.json()
            except (httpx.TransportError, httpx.HTTPStatusError) as e:
                if isinstance(e, httpx.HTTPStatusError) and e.response.status_code < 500:
                    raise RemoteToolError(
                        f"{tool_name}: HTTP {e.response.status_code}",
                        details={"tool": tool_name, "status": e.response.status_code},
                    ) from e
                last_error = e
                logger.warning(
                    "Tool call %s attempt %d/%d failed: %s", tool_name, attempt, self._retry_attempts, e
                )
                if attempt < self._retry_attempts:
                    await self._sleep(retry_delay(attempt))
                continue
            except ValueError as e:
                raise RemoteToolError(f"{tool_name}: response is not JSON", details={"tool": tool_name}) from e

            if not isinstance(body, dict):
                raise RemoteToolError(f"{tool_name}: malformed JSON-RPC response", details={"tool": tool_name})

            error = body.get("error")
            if error is not None:
                message = error.get("message") if isinstance(error, dict) else str(error)
                code = error.get("code") if isinstance(error, dict) else None
                raise RemoteToolError(
                    f"{tool_name}: {message}", details={"tool": tool_name, "code": code}
                )

            result = body.get("result")
            if isinstance(result, dict) and result.get("isError"):
                raise RemoteToolError(
                    f"{tool_name}: tool reported an error",
                    details={"tool": tool_name, "result": decode_tool_result(result)},
                )
            return decode_tool_result(result)

        raise ServiceConnectionError(
            f"Failed to call {tool_name} after {self._retry_attempts} attempts",
            details={"tool": tool_name, "url": self._base_url, "cause": str(last_error)},
        ) from last_error
