"""journal-insights command line and MCP server entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

# MCP imports are optional - only needed when running the server
try:
    from mcp.server import Server  # pragma: no cover
    from mcp.server.stdio import stdio_server  # pragma: no cover
    from mcp.types import Tool, TextContent  # pragma: no cover
    HAS_MCP = True  # pragma: no cover
except ImportError:
    HAS_MCP = False
    Server = None  # type: ignore
    Tool = None  # type: ignore
    TextContent = None  # type: ignore

from .config import InsightsConfig, load_config
from .engine import InsightsEngine
from .entries import DirectoryEntryStore
from .tools import execute_tool

logger = logging.getLogger(__name__)


def create_server(engine: InsightsEngine) -> "Server":
    """Create and configure the MCP server.

    Raises:
        ImportError: If MCP package is not installed
    """
    if not HAS_MCP:
        raise ImportError(
            "MCP package not installed. Install with: pip install journal-insights[mcp]"
        )

    server = Server("journal-insights")
    tool_defs = engine.dispatcher.definitions

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return list of available tools."""
        return [
            Tool(
                name=t["name"],
                description=t["description"],
                inputSchema=t["inputSchema"],
            )
            for t in tool_defs.values()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool invocation."""
        result = await execute_tool(engine.dispatcher, name, arguments or {})
        return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]

    return server


async def run_server(engine: InsightsEngine) -> None:
    """Run the MCP server with stdio transport."""
    if not HAS_MCP:
        raise ImportError(
            "MCP package not installed. Install with: pip install journal-insights[mcp]"
        )

    server = create_server(engine)  # pragma: no cover

    async with stdio_server() as (read_stream, write_stream):  # pragma: no cover
        await server.run(  # pragma: no cover
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="journal-insights",
        description="Journal analytics and semantic retrieval engine",
    )
    parser.add_argument(
        "--project-root",
        "-p",
        type=Path,
        default=Path.cwd(),
        help="Project root directory (default: current directory)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to config file (default: auto-detect in project root)",
    )
    parser.add_argument(
        "--entries",
        "-e",
        type=Path,
        help="Directory of journal entries (default: storage.entries_dir)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the MCP server on stdio (default)")
    sub.add_parser("embed", help="Chunk and embed new or changed entries")
    sub.add_parser("analyze", help="Analyse new or changed entries")

    summarize = sub.add_parser("summarize", help="Regenerate summaries (default: all stale)")
    summarize.add_argument("--year", type=int, help="Year to regenerate")
    summarize.add_argument("--month", type=int, help="Month to regenerate (needs --year)")

    sub.add_parser("stats", help="Show chunking, embedding and analysis coverage")

    tool = sub.add_parser("tool", help="Call an agent tool and print its JSON result")
    tool.add_argument("name", help="Tool name, e.g. get_month_summary")
    tool.add_argument(
        "--args", dest="tool_args", default="{}",
        help='Tool arguments as a JSON object, e.g. \'{"year": 2026, "month": 1}\'',
    )
    return parser


def build_engine(args: argparse.Namespace) -> InsightsEngine:
    project_root = args.project_root.resolve()
    config: InsightsConfig = load_config(project_root, args.config)
    entries = DirectoryEntryStore(args.entries.resolve()) if args.entries else None
    return InsightsEngine(config, entries=entries)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    command = args.command or "serve"

    if command == "summarize" and args.month is not None and args.year is None:
        parser.error("--month requires --year")

    if command == "tool":
        try:
            tool_args = json.loads(args.tool_args)
        except ValueError as e:
            parser.error(f"--args is not valid JSON: {e}")
        if not isinstance(tool_args, dict):
            parser.error("--args must be a JSON object")

    # Check for MCP before loading config for server mode
    if command == "serve" and not HAS_MCP:
        print("Error: MCP package not installed.", file=sys.stderr)
        print("Install with: pip install journal-insights[mcp]", file=sys.stderr)
        return 1

    try:
        engine = build_engine(args)
    except (OSError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    try:
        if command == "serve":
            asyncio.run(run_server(engine))
            return 0

        if command == "embed":
            run = engine.embed()
            _print_json(run.to_dict())
            return 0 if run.error is None else 1

        if command == "analyze":
            report = engine.analyze()
            _print_json(report.to_dict())
            return 0

        if command == "summarize":
            if args.year is not None and args.month is not None:
                result = engine.aggregation.regenerate_month_summary(args.year, args.month).to_dict()
            elif args.year is not None:
                result = engine.aggregation.regenerate_year_summary(args.year).to_dict()
            else:
                result = engine.aggregation.regenerate_stale()
            _print_json(result)
            return 0

        if command == "stats":
            _print_json(engine.stats())
            return 0

        if command == "tool":
            result = asyncio.run(execute_tool(engine.dispatcher, args.name, tool_args))
            _print_json(result)
            return 0 if result.get("success") else 1

        parser.error(f"Unknown command: {command}")  # pragma: no cover
    finally:
        engine.close()
    return 1  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
