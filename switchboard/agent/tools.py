"""Tool execution layer - per-tool timeouts and structured failures.

Domain tools (GitHub, Gmail, Home Assistant, ...) live outside this library;
they plug in through BaseTool (or FunctionTool for plain async callables).
The core only knows a tool's name, schema, and the uniform invoke contract:

    execute(params) -> ToolResult(success, data?, message?)

ToolExecutor adds the guarantees callers rely on:
  1. Every call is bounded by its entry in TOOL_TIMEOUTS (default 10 s)
  2. Failures are classified (see switchboard.agent.errors) and returned as
     ToolResult(success=False, ...) - nothing is raised past this layer
  3. All tool calls planned in one model turn run concurrently
"""

from __future__ import annotations

import asyncio
import ast
import operator
import re
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Collection, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from switchboard.agent.errors import (
    ErrorCode,
    ToolExecutionError,
    create_tool_error,
    recovery_suggestion,
    user_friendly_error,
)
from switchboard.agent.llm import ToolCall

log = structlog.get_logger(__name__)

DEFAULT_TOOL_TIMEOUT_MS = 10_000

# Per-tool deadline in milliseconds. External APIs get 10-20 s, device
# control 5 s, SQL up to 30 s, trivial local compute 1 s.
TOOL_TIMEOUTS: dict[str, int] = {
    # GitHub
    "github_search_code": 15_000,
    "github_get_file": 10_000,
    "github_list_prs": 10_000,
    "github_create_issue": 15_000,
    "github_create_pr": 20_000,
    # Supabase
    "supabase_run_sql": 30_000,
    "supabase_get_schema": 10_000,
    "supabase_vector_search": 15_000,
    # Google Workspace
    "gmail_list_messages": 15_000,
    "gmail_send_message": 20_000,
    "calendar_list_events": 10_000,
    "calendar_create_event": 15_000,
    "drive_search_files": 15_000,
    # Home Assistant
    "control_device": 5_000,
    "set_climate": 5_000,
    "activate_scene": 5_000,
    "get_device_state": 5_000,
    # Local
    "get_current_datetime": 1_000,
    "calculate": 1_000,
    "get_weather": 10_000,
}

# Side-effecting tools the host must confirm with the user before running
CONFIRMATION_REQUIRED_TOOLS: frozenset[str] = frozenset(
    {
        "gmail_send_message",
        "github_create_issue",
        "github_create_pr",
        "calendar_delete_event",
        "supabase_run_sql",
    }
)


def get_tool_timeout(tool: str, default_ms: int = DEFAULT_TOOL_TIMEOUT_MS) -> int:
    """Return the deadline in milliseconds for a tool."""
    return TOOL_TIMEOUTS.get(tool, default_ms)


_DESTRUCTIVE_SQL = re.compile(r"\b(DELETE|DROP|TRUNCATE|ALTER|UPDATE)\b", re.IGNORECASE)


def requires_confirmation(tool: str, args: dict[str, Any] | None = None) -> bool:
    """True when the host must ask the user before running this call.

    SQL only needs confirmation when the query modifies or drops data.
    """
    if tool not in CONFIRMATION_REQUIRED_TOOLS:
        return False
    if tool == "supabase_run_sql":
        query = str((args or {}).get("query") or "")
        return _DESTRUCTIVE_SQL.search(query) is not None
    return True


@dataclass
class ToolResult:
    """Outcome of a single tool call, success or not."""

    success: bool
    data: Any = None
    message: str | None = None
    error: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.message is not None:
            payload["message"] = self.message
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_error(cls, error: ToolExecutionError) -> ToolResult:
        return cls(
            success=False,
            message=user_friendly_error(error.tool),
            error=error.to_dict(include_technical=True),
        )


@dataclass(frozen=True)
class ToolEvent:
    """Immutable record of one tool invocation within a request."""

    id: str
    tool: str
    args: dict[str, Any]
    result: ToolResult
    duration_ms: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def success(self) -> bool:
        return self.result.success

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool": self.tool,
            "args": self.args,
            "result": self.result.to_dict(),
            "success": self.success,
            "duration_ms": round(self.duration_ms, 2),
            "timestamp": self.timestamp.isoformat(),
        }


class BaseTool(ABC):
    """A callable capability exposed to the model by name."""

    name: str
    description: str
    parameters_schema: dict[str, Any]

    @abstractmethod
    async def execute(self, params: dict[str, Any]) -> ToolResult:
        """Run with the arguments the model supplied."""

    def schema(self) -> dict[str, Any]:
        """Return the OpenAI function-calling schema for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }


class FunctionTool(BaseTool):
    """Adapts an external async callable to the tool contract.

    The callable may return a ToolResult, or any JSON-serialisable value
    which is wrapped as a successful result.
    """

    def __init__(
        self,
        name: str,
        description: str,
        fn: Callable[[dict[str, Any]], Awaitable[Any]],
        parameters_schema: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.parameters_schema = parameters_schema or {"type": "object", "properties": {}}
        self._fn = fn

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        value = await self._fn(params)
        if isinstance(value, ToolResult):
            return value
        return ToolResult(success=True, data=value)


_BINARY_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


def _arithmetic(node: ast.AST) -> float:
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        return float(node.value)
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        return _BINARY_OPS[type(node.op)](_arithmetic(node.left), _arithmetic(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_arithmetic(node.operand))
    raise ValueError(f"{type(node).__name__} is not allowed in an expression")


class CalculatorTool(BaseTool):
    """Arithmetic over numeric literals; the parsed tree is walked, not eval'd."""

    name = "calculate"
    description = "Evaluate an arithmetic expression such as '(5 + 3) * 2'."
    parameters_schema = {
        "type": "object",
        "properties": {
            "expression": {"type": "string", "description": "Arithmetic using + - * / // % ** and parentheses"}
        },
        "required": ["expression"],
    }

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        expression = str(params.get("expression", ""))
        try:
            value = _arithmetic(ast.parse(expression, mode="eval").body)
        except (SyntaxError, ValueError, ZeroDivisionError, OverflowError) as exc:
            return ToolResult(
                success=False,
                message=f"Calculation error: {exc}",
                error={"code": ErrorCode.VALIDATION_ERROR.value, "recoverable": False},
            )
        return ToolResult(success=True, data={"result": value, "expression": expression})


class DateTimeTool(BaseTool):
    """Return the current date and time in UTC."""

    name = "get_current_datetime"
    description = "Get the current date and time (UTC, ISO 8601)."
    parameters_schema = {"type": "object", "properties": {}}

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        now = datetime.now(UTC)
        return ToolResult(
            success=True,
            data={"iso": now.isoformat(), "date": now.date().isoformat(), "weekday": now.strftime("%A")},
        )


class ToolExecutor:
    """Runs tool calls with per-tool deadlines and error boundaries."""

    def __init__(
        self,
        tools: Iterable[BaseTool] = (),
        *,
        timeouts: dict[str, int] | None = None,
        default_timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS,
    ) -> None:
        self._tools: dict[str, BaseTool] = {}
        self._timeouts = dict(TOOL_TIMEOUTS if timeouts is None else timeouts)
        self._default_timeout_ms = default_timeout_ms
        for tool in tools:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        log.debug("tool.registered", tool=tool.name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def timeout_for(self, name: str) -> int:
        return self._timeouts.get(name, self._default_timeout_ms)

    def schemas_for(self, tool_names: Sequence[str]) -> list[dict[str, Any]]:
        """Return function-calling schemas for the registered subset of tool_names."""
        return [self._tools[name].schema() for name in tool_names if name in self._tools]

    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        *,
        allowed: Collection[str] | None = None,
    ) -> ToolResult:
        """Execute a named tool. Never raises; failures come back as results.

        When allowed is given, tools outside it are treated as unknown even
        if they are registered.
        """
        tool = self._tools.get(name)
        if allowed is not None and name not in allowed:
            tool = None
        if tool is None:
            log.warning("tool.not_found", tool=name, registered=name in self._tools)
            return ToolResult(
                success=False,
                message=f"Unknown tool: {name!r}",
                error={
                    "code": ErrorCode.TOOL_NOT_FOUND.value,
                    "recoverable": False,
                    "suggestion": recovery_suggestion(ErrorCode.TOOL_NOT_FOUND),
                },
            )

        timeout_ms = self.timeout_for(name)
        log.info("tool.executing", tool=name, timeout_ms=timeout_ms)
        try:
            try:
                result = await asyncio.wait_for(tool.execute(params), timeout=timeout_ms / 1000)
            except TimeoutError as exc:
                raise ToolExecutionError(
                    code=ErrorCode.TIMEOUT,
                    message=f"Tool '{name}' timed out after {timeout_ms}ms",
                    tool=name,
                    recoverable=True,
                    details={"timeout_ms": timeout_ms},
                ) from exc
        except Exception as exc:
            error = create_tool_error(name, exc)
            log.warning(
                "tool.execution_failed",
                tool=name,
                code=error.code.value,
                recoverable=error.recoverable,
                error=error.message,
            )
            return ToolResult.from_error(error)

        if not isinstance(result, ToolResult):
            result = ToolResult(success=True, data=result)
        return result

    async def execute_call(
        self, call: ToolCall, *, allowed: Collection[str] | None = None
    ) -> ToolEvent:
        started = time.perf_counter()
        result = await self.execute(call.name, call.arguments, allowed=allowed)
        duration_ms = (time.perf_counter() - started) * 1000
        return ToolEvent(
            id=call.id or f"tool_{uuid.uuid4().hex[:12]}",
            tool=call.name,
            args=call.arguments,
            result=result,
            duration_ms=duration_ms,
        )

    async def execute_many(
        self,
        calls: Sequence[ToolCall],
        *,
        allowed: Collection[str] | None = None,
    ) -> list[ToolEvent]:
        """Execute all calls from one model turn concurrently.

        Results are returned in call order regardless of completion order.
        allowed restricts the batch to one agent's declared tools.
        """
        if not calls:
            return []
        started = time.perf_counter()
        events = await asyncio.gather(*(self.execute_call(call, allowed=allowed) for call in calls))
        log.debug(
            "tool.batch_completed",
            tool_count=len(calls),
            total_ms=round((time.perf_counter() - started) * 1000, 2),
            durations_ms=[round(event.duration_ms, 2) for event in events],
        )
        return list(events)


def default_tools() -> list[BaseTool]:
    """Built-in local tools available to every deployment."""
    return [CalculatorTool(), DateTimeTool()]
