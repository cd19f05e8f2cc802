"""Tests for agent tool definitions and execution."""

import json
import threading
from datetime import date

import pytest

from journal_insights.engine import InsightsEngine
from journal_insights.errors import InvalidArgumentError, UnauthorizedError, UnknownToolError
from journal_insights.messages import ToolCallMessage, ToolResultMessage
from journal_insights.tools import execute_tool, make_tools

from conftest import FakeNarrator, make_entry


TODAY = date(2026, 3, 31)


@pytest.fixture
def engine(config, entries, embedder, extractor):
    """Create a test engine over in-memory entries and scripted providers."""
    eng = InsightsEngine(
        config,
        entries=entries,
        embedder=embedder,
        extractor=extractor,
        sleep=lambda seconds: None,
        today=lambda: TODAY,
    )
    yield eng
    eng.close()


@pytest.fixture
def populated(engine, entries):
    """Engine with three embedded and analysed entries in March 2026."""
    entries.put(make_entry("run", "Went for a long run by the river at dawn.", date(2026, 3, 2)))
    entries.put(make_entry("work", "Long meeting about the quarterly budget.", date(2026, 3, 10)))
    entries.put(make_entry("feb", "Snow all day, stayed in and read.", date(2026, 2, 20)))
    engine.embed()
    engine.analyze()
    return engine


class TestMakeTools:
    """Tests for make_tools function."""

    def test_make_tools_returns_all_tools(self):
        """make_tools returns all expected tool definitions."""
        tools = make_tools()

        expected_tools = [
            "search_semantic",
            "get_month_summary",
            "get_year_summary",
            "get_time_series",
            "get_current_state",
        ]
        assert sorted(tools) == sorted(expected_tools)
        for tool_name in expected_tools:
            assert "name" in tools[tool_name]
            assert "description" in tools[tool_name]
            assert "inputSchema" in tools[tool_name]

    def test_tool_schema_structure(self):
        """Tool schemas have proper structure."""
        for tool_name, tool_def in make_tools().items():
            assert tool_def["name"] == tool_name
            assert isinstance(tool_def["description"], str)
            assert tool_def["inputSchema"]["type"] == "object"

    def test_time_series_metric_enum(self):
        schema = make_tools()["get_time_series"]["inputSchema"]

        assert schema["properties"]["metric"]["enum"] == ["happiness", "stress", "energy"]
        assert schema["required"] == ["metric", "from", "to"]


class TestSearchSemantic:
    """Tests for the search_semantic tool."""

    @pytest.mark.asyncio
    async def test_finds_matching_passage(self, populated):
        result = await execute_tool(populated.dispatcher, "search_semantic", {
            "query": "long run by the river", "k": 1,
        })

        assert result["success"] is True
        structured = result["structured_result"]
        assert structured["count"] == 1
        assert structured["results"][0]["entry_id"] == "run"
        assert structured["results"][0]["date"] == "2026-03-02"
        assert result["text_rendering"].startswith("Found 1 passage for")

    @pytest.mark.asyncio
    async def test_date_filter(self, populated):
        result = await execute_tool(populated.dispatcher, "search_semantic", {
            "query": "long run by the river", "date_from": "2026-03-05",
        })

        entry_ids = [r["entry_id"] for r in result["structured_result"]["results"]]
        assert "run" not in entry_ids
        assert "work" in entry_ids

    @pytest.mark.asyncio
    async def test_integral_float_k_accepted(self, populated):
        result = await execute_tool(populated.dispatcher, "search_semantic", {"query": "river", "k": 2.0})

        assert result["success"] is True
        assert result["structured_result"]["count"] == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("k", [0, 21, "5", True, 2.5])
    async def test_invalid_k(self, engine, k):
        result = await execute_tool(engine.dispatcher, "search_semantic", {"query": "x", "k": k})

        assert result["success"] is False
        assert result["error_type"] == "invalid_argument"
        assert result["argument"] == "k"

    @pytest.mark.asyncio
    async def test_missing_query(self, engine):
        result = await execute_tool(engine.dispatcher, "search_semantic", {})

        assert result["error_type"] == "invalid_argument"
        assert result["argument"] == "query"

    @pytest.mark.asyncio
    async def test_bad_dates(self, engine):
        result = await execute_tool(engine.dispatcher, "search_semantic", {
            "query": "x", "date_from": "March 1st",
        })
        assert result["argument"] == "date_from"

        result = await execute_tool(engine.dispatcher, "search_semantic", {
            "query": "x", "date_from": "2026-03-10", "date_to": "2026-03-01",
        })
        assert result["error_type"] == "invalid_argument"

    @pytest.mark.asyncio
    async def test_provider_error_reported(self, engine, embedder):
        embedder.errors = [UnauthorizedError("bad key")]

        result = await execute_tool(engine.dispatcher, "search_semantic", {"query": "x"})

        assert result["success"] is False
        assert result["error_type"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_empty_index(self, engine):
        result = await execute_tool(engine.dispatcher, "search_semantic", {"query": "anything"})

        assert result["success"] is True
        assert result["structured_result"]["results"] == []


class TestSummaryTools:
    """Tests for the summary tools."""

    @pytest.mark.asyncio
    async def test_month_summary(self, populated):
        result = await execute_tool(populated.dispatcher, "get_month_summary", {"year": 2026, "month": 3})

        summary = result["structured_result"]
        assert summary["entry_count"] == 2
        assert summary["happiness_avg"] == 70.0
        assert "Happiness 70.0" in result["text_rendering"]

    @pytest.mark.asyncio
    async def test_empty_month_returns_zeros(self, engine):
        result = await execute_tool(engine.dispatcher, "get_month_summary", {"year": 2024, "month": 1})

        assert result["success"] is True
        summary = result["structured_result"]
        assert summary["entry_count"] == 0
        assert summary["happiness_avg"] == 0.0
        assert summary["happiness_confidence_interval"] == {"lower": 0.0, "upper": 0.0}
        assert summary["top_events"] == []

    @pytest.mark.asyncio
    async def test_tools_do_not_write(self, populated):
        """Reading a summary never persists one."""
        await execute_tool(populated.dispatcher, "get_month_summary", {"year": 2026, "month": 3})
        await execute_tool(populated.dispatcher, "get_year_summary", {"year": 2026})

        stats = populated.store.get_stats()
        assert stats["month_summaries"] == 0
        assert stats["year_summaries"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arguments,argument", [
        ({"year": 2026, "month": 13}, "month"),
        ({"year": 2026, "month": 0}, "month"),
        ({"year": "2026", "month": 3}, "year"),
        ({"month": 3}, "year"),
    ])
    async def test_invalid_month_arguments(self, engine, arguments, argument):
        result = await execute_tool(engine.dispatcher, "get_month_summary", arguments)

        assert result["error_type"] == "invalid_argument"
        assert result["argument"] == argument

    @pytest.mark.asyncio
    async def test_first_year_has_no_previous_period(self, engine):
        """Year 1 is accepted; the missing prior period reads as stable."""
        month = await execute_tool(engine.dispatcher, "get_month_summary", {"year": 1, "month": 1})
        year = await execute_tool(engine.dispatcher, "get_year_summary", {"year": 1})

        assert month["success"] is True
        assert month["structured_result"]["happiness_trend"] == "stable"
        assert year["success"] is True
        assert year["structured_result"]["happiness_trend"] == "stable"

    @pytest.mark.asyncio
    async def test_year_summary(self, populated):
        result = await execute_tool(populated.dispatcher, "get_year_summary", {"year": 2026})

        summary = result["structured_result"]
        assert summary["entry_count"] == 3
        assert summary["months_covered"] == [2, 3]


class TestTimeSeriesAndState:
    """Tests for get_time_series and get_current_state."""

    @pytest.mark.asyncio
    async def test_time_series(self, populated):
        result = await execute_tool(populated.dispatcher, "get_time_series", {
            "metric": "Happiness", "from": "2026-03-01", "to": "2026-03-31",
        })

        structured = result["structured_result"]
        assert structured["metric"] == "happiness"
        assert [p["date"] for p in structured["points"]] == ["2026-03-02", "2026-03-10"]
        assert result["text_rendering"].startswith("Happiness from 2026-03-01 to 2026-03-31: 2 days")

    @pytest.mark.asyncio
    async def test_time_series_without_data(self, engine):
        result = await execute_tool(engine.dispatcher, "get_time_series", {
            "metric": "stress", "from": "2026-01-01", "to": "2026-01-31",
        })

        assert result["structured_result"]["points"] == []
        assert result["text_rendering"].startswith("No stress data")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arguments,argument", [
        ({"metric": "sleep", "from": "2026-01-01", "to": "2026-01-31"}, "metric"),
        ({"metric": "energy", "from": "2026-01-01"}, "to"),
        ({"metric": "energy", "from": "2026-02-01", "to": "2026-01-01"}, "from"),
    ])
    async def test_time_series_invalid(self, engine, arguments, argument):
        result = await execute_tool(engine.dispatcher, "get_time_series", arguments)

        assert result["error_type"] == "invalid_argument"
        assert result["argument"] == argument

    @pytest.mark.asyncio
    async def test_current_state_defaults(self, populated):
        result = await execute_tool(populated.dispatcher, "get_current_state", {})

        state = result["structured_result"]
        assert state["days_analyzed"] == 30
        assert state["entry_count"] == 2
        assert result["text_rendering"].startswith("Last 30 days (2 entries).")

    @pytest.mark.asyncio
    async def test_current_state_groups_todos_by_theme(self, config, entries, embedder, extractor):
        """Suggested todos are rendered under their theme."""
        narrator = FakeNarrator(todos=[
            {"title": "Walk", "first_step": "Shoes on", "why_it_matters": "Energy",
             "theme": "health", "estimated_minutes": 20},
            {"title": "Inbox zero", "first_step": "Open mail", "why_it_matters": "Calm",
             "theme": "work", "estimated_minutes": 30},
            {"title": "Stretch", "first_step": "Mat out", "why_it_matters": "Sleep",
             "theme": "health", "estimated_minutes": 90},
        ])
        eng = InsightsEngine(
            config, entries=entries, embedder=embedder, extractor=extractor,
            narrator=narrator, sleep=lambda seconds: None, today=lambda: TODAY,
        )
        try:
            entries.put(make_entry("today", "A busy but good day.", TODAY))
            eng.analyze()

            result = await execute_tool(eng.dispatcher, "get_current_state", {"days_analyzed": 7})
        finally:
            eng.close()

        lines = result["text_rendering"].splitlines()
        health = lines.index("Suggested for health:")
        assert lines[health + 1:health + 3] == [
            "- Walk (20 min): Shoes on",
            "- Stretch (1 hr 30 min): Mat out",
        ]
        assert lines[health + 3:] == ["Suggested for work:", "- Inbox zero (30 min): Open mail"]
        assert len(result["structured_result"]["suggested_todos"]) == 3

    @pytest.mark.asyncio
    async def test_current_state_out_of_range(self, engine):
        result = await execute_tool(engine.dispatcher, "get_current_state", {"days_analyzed": 91})

        assert result["error_type"] == "invalid_argument"


class TestDispatch:
    """Tests for dispatch errors and agent tool calls."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, engine):
        result = await execute_tool(engine.dispatcher, "get_weather", {})

        assert result["success"] is False
        assert result["error_type"] == "unknown_tool"
        assert "search_semantic" in result["suggestion"]

    @pytest.mark.asyncio
    async def test_arguments_must_be_object(self, engine):
        result = await execute_tool(engine.dispatcher, "get_year_summary", ["2026"])

        assert result["error_type"] == "invalid_argument"
        assert result["argument"] == "arguments"

    @pytest.mark.asyncio
    async def test_unexpected_error(self, engine, monkeypatch):
        def explode(year):
            raise RuntimeError("boom")

        monkeypatch.setattr(engine.aggregation, "get_year_summary", explode)
        result = await execute_tool(engine.dispatcher, "get_year_summary", {"year": 2026})

        assert result == {"success": False, "error": "boom", "error_type": "unexpected_error"}

    @pytest.mark.asyncio
    async def test_dispatch_runs_off_event_loop_thread(self, engine, monkeypatch):
        """Handlers run in a worker thread so the event loop stays free."""
        loop_thread = threading.get_ident()
        threads = []
        original = engine.dispatcher.dispatch

        def recording(name, arguments=None):
            threads.append(threading.get_ident())
            return original(name, arguments)

        monkeypatch.setattr(engine.dispatcher, "dispatch", recording)
        result = await execute_tool(engine.dispatcher, "get_year_summary", {"year": 2026})

        assert result["success"] is True
        assert len(threads) == 1
        assert threads[0] != loop_thread

    def test_dispatch_raises(self, engine):
        with pytest.raises(UnknownToolError):
            engine.dispatcher.dispatch("nope")
        with pytest.raises(InvalidArgumentError):
            engine.dispatcher.dispatch("get_year_summary", {})

    def test_handle_tool_call(self, populated):
        call = ToolCallMessage("call_1", "get_month_summary", {"year": 2026, "month": 3})

        reply = populated.dispatcher.handle_tool_call(call)

        assert isinstance(reply, ToolResultMessage)
        assert reply.call_id == "call_1"
        assert reply.tool_name == "get_month_summary"
        payload = json.loads(reply.result)
        assert payload["structured_result"]["entry_count"] == 2
        assert payload["text_rendering"]

    def test_handle_tool_call_error(self, engine):
        reply = engine.dispatcher.handle_tool_call(ToolCallMessage("call_2", "nope", {}))

        payload = json.loads(reply.result)
        assert payload["error_type"] == "unknown_tool"
