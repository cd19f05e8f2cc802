"""Agent tool definitions and dispatch over the analytics engine.

Every tool is read-only: handlers query the semantic index, stored analytics
and the aggregation engine, and never write.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Optional

from .aggregation import MAX_CURRENT_STATE_DAYS, AggregationEngine
from .errors import InsightsError, InvalidArgumentError, UnknownToolError
from .messages import ToolCallMessage, ToolResultMessage
from .models import Metric, parse_date
from .semantic_index import SemanticIndex

logger = logging.getLogger(__name__)

MAX_SEARCH_RESULTS = 20
SNIPPET_CHARS = 300


def make_tools() -> dict[str, dict]:
    """Create tool definitions (name, description, JSON inputSchema).

    Returns:
        Dict mapping tool names to their definitions.
    """

    tools = {}

    # ========== search_semantic ==========
    tools["search_semantic"] = {
        "name": "search_semantic",
        "description": "Find journal passages semantically similar to a query. Returns the best matching chunks with their dates and similarity scores.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "What to look for, in natural language",
                },
                "k": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": MAX_SEARCH_RESULTS,
                    "default": 10,
                    "description": "Number of passages to return",
                },
                "date_from": {
                    "type": "string",
                    "description": "Only passages on or after this date (YYYY-MM-DD)",
                },
                "date_to": {
                    "type": "string",
                    "description": "Only passages on or before this date (YYYY-MM-DD)",
                },
            },
            "required": ["query"],
        },
    }

    # ========== get_month_summary ==========
    tools["get_month_summary"] = {
        "name": "get_month_summary",
        "description": "Summary of one month: average happiness with confidence interval, key topics, positive and negative drivers, top events and source spans.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "year": {"type": "integer", "description": "Year, e.g. 2026"},
                "month": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 12,
                    "description": "Month number (1-12)",
                },
            },
            "required": ["year", "month"],
        },
    }

    # ========== get_year_summary ==========
    tools["get_year_summary"] = {
        "name": "get_year_summary",
        "description": "Summary of one year: average happiness with confidence interval, key topics, drivers, top events and the months covered.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "year": {"type": "integer", "description": "Year, e.g. 2026"},
            },
            "required": ["year"],
        },
    }

    # ========== get_time_series ==========
    tools["get_time_series"] = {
        "name": "get_time_series",
        "description": "Daily values of a mood metric (0-100) over a date range, with the mean analysis confidence of each day.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "metric": {
                    "type": "string",
                    "enum": [m.value for m in Metric],
                    "description": "Metric to chart",
                },
                "from": {"type": "string", "description": "Start date (YYYY-MM-DD), inclusive"},
                "to": {"type": "string", "description": "End date (YYYY-MM-DD), inclusive"},
            },
            "required": ["metric", "from", "to"],
        },
    }

    # ========== get_current_state ==========
    tools["get_current_state"] = {
        "name": "get_current_state",
        "description": "Snapshot of recent days: themes, mood (happiness, stress, energy with trends), stressors, protective factors and suggested actions.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "days_analyzed": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": MAX_CURRENT_STATE_DAYS,
                    "default": 30,
                    "description": "How many recent days to analyze",
                },
            },
        },
    }

    return tools


@dataclass(frozen=True)
class ToolResult:
    tool_name: str
    structured_result: dict[str, Any]
    text_rendering: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "tool_name": self.tool_name,
            "structured_result": self.structured_result,
            "text_rendering": self.text_rendering,
        }


# ========== argument validation ==========


def _int_arg(
    arguments: dict[str, Any],
    name: str,
    default: Optional[int] = None,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> int:
    value = arguments.get(name)
    if value is None:
        if default is None:
            raise InvalidArgumentError(name, "is required")
        return default
    # JSON clients sometimes send 10.0 for 10
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(name, f"must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise InvalidArgumentError(name, f"must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise InvalidArgumentError(name, f"must be <= {maximum}, got {value}")
    return value


def _str_arg(arguments: dict[str, Any], name: str) -> str:
    value = arguments.get(name)
    if value is None:
        raise InvalidArgumentError(name, "is required")
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(name, "must be a non-empty string")
    return value.strip()


def _date_arg(arguments: dict[str, Any], name: str, required: bool = False) -> Optional[date]:
    value = arguments.get(name)
    if value is None:
        if required:
            raise InvalidArgumentError(name, "is required")
        return None
    if not isinstance(value, str):
        raise InvalidArgumentError(name, f"must be an ISO date string, got {value!r}")
    try:
        return parse_date(value)
    except ValueError:
        raise InvalidArgumentError(name, f"is not a valid date: {value!r}") from None


def _check_range(date_from: Optional[date], date_to: Optional[date], name: str) -> None:
    if date_from is not None and date_to is not None and date_from > date_to:
        raise InvalidArgumentError(name, "start date is after end date")


# ========== dispatcher ==========


class ToolDispatcher:
    """Validates tool arguments and routes calls to the engine components."""

    def __init__(self, index: SemanticIndex, aggregation: AggregationEngine):
        self.index = index
        self.aggregation = aggregation
        self.definitions = make_tools()
        self._handlers: dict[str, Callable[[dict[str, Any]], ToolResult]] = {
            "search_semantic": self._search_semantic,
            "get_month_summary": self._get_month_summary,
            "get_year_summary": self._get_year_summary,
            "get_time_series": self._get_time_series,
            "get_current_state": self._get_current_state,
        }

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    def dispatch(self, name: str, arguments: Optional[dict[str, Any]] = None) -> ToolResult:
        """Run a tool.

        Raises:
            UnknownToolError: No tool with that name
            InvalidArgumentError: Missing, ill-typed or out-of-range argument
            InsightsError: Failure inside the engine (e.g. provider error)
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownToolError(name, self.tool_names)
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidArgumentError("arguments", "must be an object")
        return handler(arguments)

    def handle_tool_call(self, message: ToolCallMessage) -> ToolResultMessage:
        """Answer an agent tool call; errors are reported in the result payload."""
        try:
            result = self.dispatch(message.tool_name, message.arguments)
            payload = {
                "structured_result": result.structured_result,
                "text_rendering": result.text_rendering,
            }
        except InsightsError as e:
            logger.warning("Tool call %s (%s) failed: %s", message.call_id, message.tool_name, e)
            payload = {"error": str(e), "error_type": e.error_type}
        return ToolResultMessage(
            call_id=message.call_id,
            tool_name=message.tool_name,
            result=json.dumps(payload, default=str),
        )

    # ---------- handlers ----------

    def _search_semantic(self, arguments: dict[str, Any]) -> ToolResult:
        query = _str_arg(arguments, "query")
        k = _int_arg(arguments, "k", default=10, minimum=1, maximum=MAX_SEARCH_RESULTS)
        date_from = _date_arg(arguments, "date_from")
        date_to = _date_arg(arguments, "date_to")
        _check_range(date_from, date_to, "date_from")

        date_range = (date_from, date_to) if date_from or date_to else None
        hits = self.index.search_text(query, k, date_range=date_range)

        results = [
            {
                "chunk_id": h.chunk.id,
                "entry_id": h.chunk.entry_id,
                "date": h.chunk.date.isoformat(),
                "score": round(h.score, 4),
                "text": h.chunk.text,
                "span": h.chunk.span.to_dict(),
            }
            for h in hits
        ]
        lines = [f"Found {len(results)} passage{'' if len(results) == 1 else 's'} for {query!r}."]
        for i, h in enumerate(hits, 1):
            snippet = " ".join(h.chunk.text.split())
            if len(snippet) > SNIPPET_CHARS:
                snippet = snippet[:SNIPPET_CHARS].rstrip() + "..."
            lines.append(f"{i}. [{h.chunk.date.isoformat()}] (score {h.score:.2f}) {snippet}")

        return ToolResult(
            "search_semantic",
            {"query": query, "count": len(results), "results": results},
            "\n".join(lines),
        )

    def _get_month_summary(self, arguments: dict[str, Any]) -> ToolResult:
        year = _int_arg(arguments, "year", minimum=1, maximum=9999)
        month = _int_arg(arguments, "month", minimum=1, maximum=12)
        summary = self.aggregation.get_month_summary(year, month)
        return ToolResult("get_month_summary", summary.to_dict(), _render_summary(summary))

    def _get_year_summary(self, arguments: dict[str, Any]) -> ToolResult:
        year = _int_arg(arguments, "year", minimum=1, maximum=9999)
        summary = self.aggregation.get_year_summary(year)
        return ToolResult("get_year_summary", summary.to_dict(), _render_summary(summary))

    def _get_time_series(self, arguments: dict[str, Any]) -> ToolResult:
        raw_metric = _str_arg(arguments, "metric")
        try:
            metric = Metric(raw_metric.lower())
        except ValueError:
            choices = ", ".join(m.value for m in Metric)
            raise InvalidArgumentError("metric", f"must be one of {choices}") from None
        date_from = _date_arg(arguments, "from", required=True)
        date_to = _date_arg(arguments, "to", required=True)
        _check_range(date_from, date_to, "from")

        points = self.aggregation.time_series(metric, date_from, date_to)
        structured = {
            "metric": metric.value,
            "from": date_from.isoformat(),
            "to": date_to.isoformat(),
            "points": [p.to_dict() for p in points],
        }
        if points:
            mean = sum(p.value for p in points) / len(points)
            header = (
                f"{metric.value.capitalize()} from {date_from} to {date_to}: "
                f"{len(points)} days with data, mean {mean:.1f}."
            )
        else:
            header = f"No {metric.value} data from {date_from} to {date_to}."
        lines = [header] + [
            f"{p.date.isoformat()}: {p.value:.1f} (confidence {p.confidence:.2f})" for p in points
        ]
        return ToolResult("get_time_series", structured, "\n".join(lines))

    def _get_current_state(self, arguments: dict[str, Any]) -> ToolResult:
        days = _int_arg(
            arguments, "days_analyzed",
            default=self.aggregation.config.default_days,
            minimum=1, maximum=MAX_CURRENT_STATE_DAYS,
        )
        state = self.aggregation.current_state(days)
        lines = [f"Last {days} days ({state.entry_count} entries). {state.summary()}."]
        if state.themes:
            lines.append(f"Themes: {', '.join(state.themes)}")
        if state.stressors:
            lines.append(f"Stressors: {', '.join(state.stressors)}")
        if state.protective_factors:
            lines.append(f"Protective factors: {', '.join(state.protective_factors)}")
        for theme, todos in state.todos_by_theme().items():
            lines.append(f"Suggested for {theme}:")
            lines.extend(
                f"- {todo.title} ({todo.time_estimate()}): {todo.first_step}" for todo in todos
            )
        return ToolResult("get_current_state", state.to_dict(), "\n".join(lines))


def _render_summary(summary) -> str:
    ci = summary.happiness_confidence_interval
    lines = [summary.summary_text]
    if summary.entry_count:
        lines.append(
            f"Happiness {summary.happiness_avg:.1f} "
            f"[{ci.lower:.1f}, {ci.upper:.1f}], trend {summary.happiness_trend.description}."
        )
    if summary.key_topics:
        lines.append(f"Key topics: {', '.join(summary.key_topics)}")
    if summary.top_events:
        lines.append("Top events: " + "; ".join(e.title for e in summary.top_events))
    return "\n".join(lines)


async def execute_tool(
    dispatcher: ToolDispatcher, name: str, arguments: dict[str, Any]
) -> dict[str, Any]:
    """Execute a tool and return the result.

    Args:
        dispatcher: ToolDispatcher instance
        name: Tool name
        arguments: Tool arguments

    Returns:
        Result dict with success status and data or error
    """
    try:
        # dispatch blocks on SQLite and provider HTTP
        result = await asyncio.to_thread(dispatcher.dispatch, name, arguments)
        return result.to_dict()

    except UnknownToolError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": e.error_type,
            "suggestion": f"Available tools: {', '.join(e.available)}",
        }

    except InvalidArgumentError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": e.error_type,
            "argument": e.argument,
        }

    except InsightsError as e:
        return {"success": False, "error": str(e), "error_type": e.error_type}

    except Exception as e:
        logger.exception("Unexpected error in tool %s", name)
        return {
            "success": False,
            "error": str(e),
            "error_type": "unexpected_error",
        }
