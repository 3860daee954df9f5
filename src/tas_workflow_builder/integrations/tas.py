"""Clients for TAS platform services used by workflow steps.

- LLM router: OpenAI-compatible chat completions endpoint
- MCP server: JSON-RPC 2.0 over HTTP (`tools/call`)

Both clients send the execution's space in `X-TAS-Space` so the platform can
enforce tenant isolation.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any

import requests

logger = logging.getLogger(__name__)

USER_AGENT = "tas-workflow-builder"


class TasServiceError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class ChatCompletion:
    content: str
    model: str
    usage: dict[str, Any]

    def to_json(self) -> dict[str, object]:
        return {"content": self.content, "model": self.model, "usage": self.usage}


def _session(api_key: str, space: str) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-TAS-Space": space,
        }
    )
    if api_key:
        session.headers["Authorization"] = f"Bearer {api_key}"
    return session


class LLMRouterClient:
    """Small wrapper over the TAS LLM router's chat completions API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        space: str = "default",
        timeout: float = 120.0,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("TAS_LLM_ROUTER_URL is required for llm steps")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or _session(api_key, space)

    def chat(
        self,
        *,
        messages: list[dict[str, str]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatCompletion:
        payload: dict[str, Any] = {"messages": messages}
        if model:
            payload["model"] = model
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        url = f"{self._base_url}/v1/chat/completions"
        logger.debug("Calling LLM router", extra={"url": url, "model": model})
        resp = self._session.post(url, json=payload, timeout=self._timeout)
        if resp.status_code >= 400:
            raise TasServiceError(f"LLM router returned {resp.status_code}: {resp.text[:500]}")

        data: dict[str, Any] = resp.json()
        choices = data.get("choices") or []
        if not choices:
            raise TasServiceError("LLM router returned no choices")
        message = choices[0].get("message") or {}
        return ChatCompletion(
            content=str(message.get("content") or ""),
            model=str(data.get("model") or model or ""),
            usage=dict(data.get("usage") or {}),
        )

    def close(self) -> None:
        self._session.close()


class MCPClient:
    """JSON-RPC client for a TAS MCP server exposed over HTTP."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        space: str = "default",
        timeout: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("TAS_MCP_SERVER_URL is required for mcp steps")
        self._url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or _session(api_key, space)
        self._ids = itertools.count(1)

    def _rpc(self, method: str, params: dict[str, Any]) -> Any:
        request_id = next(self._ids)
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        resp = self._session.post(self._url, json=payload, timeout=self._timeout)
        if resp.status_code >= 400:
            raise TasServiceError(f"MCP server returned {resp.status_code}: {resp.text[:500]}")

        data: dict[str, Any] = resp.json()
        error = data.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise TasServiceError(f"MCP error {code}: {message}")
        return data.get("result")

    def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        result = self._rpc("tools/call", {"name": name, "arguments": arguments})
        # MCP reports tool-level failures in-band.
        if isinstance(result, dict) and result.get("isError"):
            raise TasServiceError(f"MCP tool {name!r} failed: {_content_text(result)}")
        return result

    def close(self) -> None:
        self._session.close()


def _content_text(result: dict[str, Any]) -> str:
    parts = []
    for item in result.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text":
            parts.append(str(item.get("text") or ""))
    return "\n".join(parts) or "no details"
