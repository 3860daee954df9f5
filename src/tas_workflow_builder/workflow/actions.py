from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.integrations.tas import LLMRouterClient, MCPClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ActionResult:
    ok: bool
    output: object = None
    message: str = ""


@dataclass(frozen=True, slots=True)
class ActionContext:
    """Everything an action may know about the step it runs in.

    Keep this explicit. Actions must not reach for global state.
    """

    execution_id: str
    step_name: str
    space: str
    attempt: int
    settings: WorkflowBuilderSettings
    log: Callable[..., None]
    cancelled: threading.Event = field(default_factory=threading.Event)


class Action(Protocol):
    """A single unit of step work.

    Actions receive fully rendered parameters. They either return an
    `ActionResult` or raise; both a raised exception and `ok=False` count as a
    failed attempt and are subject to the step's retry policy.
    """

    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult: ...


class UnknownActionError(KeyError):
    def __str__(self) -> str:
        return f"Unknown action: {self.args[0]}"


class ActionRegistry:
    def __init__(self) -> None:
        self._actions: dict[str, Action] = {}

    def register(self, name: str, action: Action, *, replace: bool = False) -> None:
        if name in self._actions and not replace:
            raise ValueError(f"Action already registered: {name}")
        self._actions[name] = action

    def get(self, name: str) -> Action:
        try:
            return self._actions[name]
        except KeyError:
            raise UnknownActionError(name) from None

    def has(self, name: str) -> bool:
        return name in self._actions

    def names(self) -> list[str]:
        return sorted(self._actions)

    def action(self, name: str) -> Callable[[ActionFunc], ActionFunc]:
        """Decorator registering a plain function as an action."""

        def decorator(func: ActionFunc) -> ActionFunc:
            self.register(name, FunctionAction(func))
            return func

        return decorator


ActionFunc = Callable[[dict[str, Any], ActionContext], ActionResult]


@dataclass(frozen=True, slots=True)
class FunctionAction:
    func: ActionFunc

    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        return self.func(params, ctx)


class NoopAction:
    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        return ActionResult(ok=True, output=params, message="noop")


class LogAction:
    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        message = str(params.get("message", ""))
        level = str(params.get("level", "info")).lower()
        ctx.log(message, level=level)
        return ActionResult(ok=True, output={"message": message}, message="logged")


class SetAction:
    """Publish values (usually rendered templates) as the step output."""

    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        values = params.get("values", params)
        return ActionResult(ok=True, output=values)


class DelayAction:
    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        seconds = float(params.get("seconds", 0))
        if seconds < 0:
            return ActionResult(ok=False, message="seconds must be >= 0")
        # Event.wait returns True when cancellation interrupts the sleep.
        if ctx.cancelled.wait(timeout=seconds):
            return ActionResult(ok=False, message="Cancelled while waiting")
        return ActionResult(ok=True, output={"slept_seconds": seconds})


class FailAction:
    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        return ActionResult(ok=False, message=str(params.get("message", "Step failed")))


class HttpAction:
    """Call an HTTP endpoint.

    Params: method, url, headers, params, json, data, timeout, expected_status.
    """

    def __init__(self, session_factory: Callable[[], requests.Session] = requests.Session) -> None:
        self._session_factory = session_factory

    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        url = params.get("url")
        if not isinstance(url, str) or not url.strip():
            return ActionResult(ok=False, message="http step requires a 'url'")
        method = str(params.get("method", "GET")).upper()
        timeout = float(params.get("timeout", 30))
        expected = params.get("expected_status")
        if isinstance(expected, int):
            expected = [expected]

        session = self._session_factory()
        try:
            resp = session.request(
                method,
                url,
                headers=params.get("headers") or None,
                params=params.get("params") or None,
                json=params.get("json"),
                data=params.get("data"),
                timeout=timeout,
            )
        finally:
            session.close()

        body: object
        content_type = resp.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                body = resp.json()
            except ValueError:
                body = resp.text
        else:
            body = resp.text

        output = {"status_code": resp.status_code, "headers": dict(resp.headers), "body": body}
        ok = resp.status_code in expected if expected else resp.status_code < 400
        message = f"{method} {url} -> {resp.status_code}"
        return ActionResult(ok=ok, output=output, message=message)


class LLMAction:
    """Chat completion through the TAS LLM router."""

    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        messages = params.get("messages")
        if not messages:
            prompt = params.get("prompt")
            if not prompt:
                return ActionResult(ok=False, message="llm step requires 'prompt' or 'messages'")
            messages = []
            if params.get("system"):
                messages.append({"role": "system", "content": str(params["system"])})
            messages.append({"role": "user", "content": str(prompt)})

        client = LLMRouterClient(
            base_url=ctx.settings.tas_llm_router_url,
            api_key=ctx.settings.tas_api_key,
            space=ctx.space,
            timeout=float(params.get("timeout", 120)),
        )
        try:
            completion = client.chat(
                messages=messages,
                model=params.get("model"),
                temperature=params.get("temperature"),
                max_tokens=params.get("max_tokens"),
            )
        finally:
            client.close()
        return ActionResult(ok=True, output=completion.to_json(), message=completion.model)


class MCPAction:
    """Invoke a tool on the TAS MCP server."""

    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        tool = params.get("tool")
        if not tool:
            return ActionResult(ok=False, message="mcp step requires a 'tool'")
        server_url = str(params.get("server_url") or ctx.settings.tas_mcp_server_url)
        client = MCPClient(
            base_url=server_url,
            api_key=ctx.settings.tas_api_key,
            space=ctx.space,
            timeout=float(params.get("timeout", 60)),
        )
        try:
            result = client.call_tool(str(tool), dict(params.get("arguments") or {}))
        finally:
            client.close()
        return ActionResult(ok=True, output=result, message=f"tool {tool}")


def default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("noop", NoopAction())
    registry.register("log", LogAction())
    registry.register("set", SetAction())
    registry.register("transform", SetAction())
    registry.register("delay", DelayAction())
    registry.register("fail", FailAction())
    registry.register("http", HttpAction())
    registry.register("llm", LLMAction())
    registry.register("mcp", MCPAction())
    return registry
