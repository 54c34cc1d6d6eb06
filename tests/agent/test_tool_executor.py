"""Tests for the tool execution layer."""

import asyncio
import time

import pytest

from switchboard.agent.errors import ErrorCode
from switchboard.agent.llm import ToolCall
from switchboard.agent.tools import (
    CalculatorTool,
    DateTimeTool,
    FunctionTool,
    ToolExecutor,
    ToolResult,
    default_tools,
    get_tool_timeout,
    requires_confirmation,
)


def _sleepy_tool(name: str, seconds: float, value=None) -> FunctionTool:
    async def run(params):
        await asyncio.sleep(seconds)
        return value if value is not None else {"slept": seconds}

    return FunctionTool(name, f"sleeps {seconds}s", run)


# ---------------------------------------------------------------------------
# Timeouts and confirmation tables
# ---------------------------------------------------------------------------


class TestToolTables:
    def test_known_tool_timeouts(self):
        assert get_tool_timeout("supabase_run_sql") == 30_000
        assert get_tool_timeout("control_device") == 5_000
        assert get_tool_timeout("calculate") == 1_000

    def test_unknown_tool_uses_default(self):
        assert get_tool_timeout("mystery") == 10_000
        assert get_tool_timeout("mystery", default_ms=2_500) == 2_500

    def test_confirmation_required(self):
        assert requires_confirmation("gmail_send_message")
        assert not requires_confirmation("calendar_list_events")

    @pytest.mark.parametrize(
        "query,expected",
        [
            ("SELECT * FROM users", False),
            ("insert into notes values (1)", False),
            ("delete from users where id = 1", True),
            ("DROP TABLE users", True),
            ("truncate logs", True),
            ("ALTER TABLE users ADD COLUMN age int", True),
            ("UPDATE users SET name = 'x'", True),
            ("SELECT updated_at FROM users", False),
        ],
    )
    def test_sql_confirmation_only_for_destructive_queries(self, query, expected):
        assert requires_confirmation("supabase_run_sql", {"query": query}) is expected

    def test_sql_without_query_needs_no_confirmation(self):
        assert not requires_confirmation("supabase_run_sql")


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


class TestBuiltInTools:
    @pytest.mark.asyncio
    async def test_calculator_evaluates_arithmetic(self):
        result = await CalculatorTool().execute({"expression": "(5 + 3) * 2"})
        assert result.success
        assert result.data["result"] == 16.0

    @pytest.mark.asyncio
    async def test_calculator_rejects_names(self):
        """Anything beyond arithmetic (names, calls) is refused."""
        result = await CalculatorTool().execute({"expression": "__import__('os')"})
        assert not result.success
        assert result.error["code"] == ErrorCode.VALIDATION_ERROR.value

    @pytest.mark.asyncio
    async def test_calculator_division_by_zero(self):
        result = await CalculatorTool().execute({"expression": "1 / 0"})
        assert not result.success

    @pytest.mark.asyncio
    async def test_datetime_tool(self):
        result = await DateTimeTool().execute({})
        assert result.success
        assert "iso" in result.data

    def test_schema_shape(self):
        schema = CalculatorTool().schema()
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "calculate"
        assert "expression" in schema["function"]["parameters"]["properties"]


# ---------------------------------------------------------------------------
# ToolExecutor
# ---------------------------------------------------------------------------


class TestToolExecutor:
    """Deadlines, error boundaries and parallel batches."""

    def test_duplicate_registration_rejected(self):
        executor = ToolExecutor([CalculatorTool()])
        with pytest.raises(ValueError, match="already registered"):
            executor.register(CalculatorTool())

    def test_schemas_for_skips_unregistered(self):
        executor = ToolExecutor(default_tools())
        schemas = executor.schemas_for(["calculate", "web_search"])
        assert [s["function"]["name"] for s in schemas] == ["calculate"]

    @pytest.mark.asyncio
    async def test_unknown_tool_returns_failure(self):
        result = await ToolExecutor().execute("nope", {})
        assert not result.success
        assert result.error["code"] == ErrorCode.TOOL_NOT_FOUND.value

    @pytest.mark.asyncio
    async def test_timeout_becomes_structured_result(self):
        """A tool that overruns its deadline yields a TIMEOUT result, not an exception."""
        executor = ToolExecutor([_sleepy_tool("slow", 1.0)], timeouts={"slow": 50})
        result = await executor.execute("slow", {})
        assert not result.success
        assert result.error["code"] == ErrorCode.TIMEOUT.value
        assert result.error["recoverable"] is True

    @pytest.mark.asyncio
    async def test_exception_is_classified(self):
        async def broken(params):
            raise RuntimeError("401 unauthorized")

        executor = ToolExecutor([FunctionTool("gmail_list_messages", "d", broken)])
        result = await executor.execute("gmail_list_messages", {})
        assert not result.success
        assert result.error["code"] == ErrorCode.AUTH_ERROR.value
        assert "email" in result.message

    @pytest.mark.asyncio
    async def test_function_tool_wraps_plain_values(self):
        async def echo(params):
            return {"echo": params["x"]}

        executor = ToolExecutor([FunctionTool("echo", "d", echo)])
        result = await executor.execute("echo", {"x": 1})
        assert result == ToolResult(success=True, data={"echo": 1})

    @pytest.mark.asyncio
    async def test_execute_many_runs_in_parallel(self):
        """Three 200ms tools finish in well under 600ms."""
        executor = ToolExecutor(
            [_sleepy_tool(f"t{i}", 0.2) for i in range(3)],
            timeouts={f"t{i}": 2_000 for i in range(3)},
        )
        calls = [ToolCall(id=f"c{i}", name=f"t{i}") for i in range(3)]
        started = time.perf_counter()
        events = await executor.execute_many(calls)
        elapsed = time.perf_counter() - started
        assert elapsed < 0.5
        assert [e.id for e in events] == ["c0", "c1", "c2"]
        assert all(e.success for e in events)

    @pytest.mark.asyncio
    async def test_execute_many_keeps_call_order(self):
        """Results are in call order even when later calls finish first."""
        executor = ToolExecutor(
            [_sleepy_tool("slow", 0.15, "slow"), _sleepy_tool("fast", 0.0, "fast")],
            timeouts={"slow": 1_000, "fast": 1_000},
        )
        events = await executor.execute_many(
            [ToolCall(id="a", name="slow"), ToolCall(id="b", name="fast")]
        )
        assert [e.result.data for e in events] == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_execute_many_isolates_failures(self):
        async def boom(params):
            raise ValueError("invalid input")

        executor = ToolExecutor([FunctionTool("boom", "d", boom), CalculatorTool()])
        events = await executor.execute_many(
            [
                ToolCall(id="1", name="boom"),
                ToolCall(id="2", name="calculate", arguments={"expression": "2+2"}),
            ]
        )
        assert [e.success for e in events] == [False, True]

    @pytest.mark.asyncio
    async def test_execute_many_rejects_tools_outside_allowed(self):
        """A registered tool the agent did not declare is never invoked."""
        sent = []

        async def send(params):
            sent.append(params)
            return {"sent": True}

        executor = ToolExecutor([FunctionTool("gmail_send_message", "d", send), CalculatorTool()])
        events = await executor.execute_many(
            [
                ToolCall(id="1", name="gmail_send_message", arguments={"to": "x"}),
                ToolCall(id="2", name="calculate", arguments={"expression": "2+2"}),
            ],
            allowed=("calculate", "get_current_datetime"),
        )
        assert sent == []
        assert [e.success for e in events] == [False, True]
        assert events[0].result.error["code"] == ErrorCode.TOOL_NOT_FOUND.value

    @pytest.mark.asyncio
    async def test_execute_many_empty(self):
        assert await ToolExecutor().execute_many([]) == []

    @pytest.mark.asyncio
    async def test_tool_event_to_dict(self):
        executor = ToolExecutor([CalculatorTool()])
        (event,) = await executor.execute_many(
            [ToolCall(id="x", name="calculate", arguments={"expression": "1+1"})]
        )
        payload = event.to_dict()
        assert payload["tool"] == "calculate"
        assert payload["success"] is True
        assert payload["result"]["data"]["result"] == 2.0
