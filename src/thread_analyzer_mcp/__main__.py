import asyncio
import logging
import os
import sys

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

from thread_analyzer_mcp.tools_adapter import (
    Result,
    analyze_tool_call,
    blocking_tree_tool_call,
    deadlocks_tool_call,
)

logger = logging.getLogger("thread_analyzer_mcp")

LOG_LEVEL_ENV = "THREAD_ANALYZER_LOG_LEVEL"

_PATH_PROPERTY = {"type": "string", "description": "Path to thread dump text file"}
_FAIL_ON_ERRORS_PROPERTY = {
    "type": "boolean",
    "default": False,
    "description": "Reject the dump when a chunk can not be recognized instead of skipping it",
}
_QUERY_PROPERTIES = {
    "path": _PATH_PROPERTY,
    "thread_pattern": {
        "type": "string",
        "description": "Regular expression searched in thread names, restricts the threads of interest",
    },
    "show_stack_traces": {
        "type": "boolean",
        "default": False,
        "description": "Append full stack traces of involved threads to the report",
    },
    "fail_on_errors": _FAIL_ON_ERRORS_PROPERTY,
}


def _to_call_result(result: Result) -> CallToolResult:
    if result.ok:
        return CallToolResult(content=[TextContent(type="text", text=result.text or "")])
    text = f"{result.error_code}: {result.error_message}"
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=True)


async def main_async() -> None:
    server = Server("thread-analyzer-mcp")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(
                name="analyze_thread_dump",
                description=(
                    "Parses a JVM thread dump and returns thread state counts, deadlocked threads "
                    "and threads at the root of blocking chains."
                ),
                inputSchema={
                    "type": "object",
                    "required": ["path"],
                    "properties": {"path": _PATH_PROPERTY, "fail_on_errors": _FAIL_ON_ERRORS_PROPERTY},
                    "additionalProperties": False,
                },
            ),
            Tool(
                name="detect_deadlocks",
                description=(
                    "Finds cycles of threads blocked on monitors held by each other in a JVM thread dump."
                ),
                inputSchema={
                    "type": "object",
                    "required": ["path"],
                    "properties": _QUERY_PROPERTIES,
                    "additionalProperties": False,
                },
            ),
            Tool(
                name="blocking_tree",
                description=(
                    "Builds the forest of threads transitively blocking other threads on monitors "
                    "in a JVM thread dump."
                ),
                inputSchema={
                    "type": "object",
                    "required": ["path"],
                    "properties": _QUERY_PROPERTIES,
                    "additionalProperties": False,
                },
            ),
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> CallToolResult:
        arguments = arguments or {}
        logger.debug("Tool call %s %s", name, arguments)
        if name == "analyze_thread_dump":
            result = analyze_tool_call(
                path=arguments.get("path"),
                fail_on_errors=arguments.get("fail_on_errors", False),
            )
        elif name == "detect_deadlocks":
            result = deadlocks_tool_call(
                path=arguments.get("path"),
                thread_pattern=arguments.get("thread_pattern"),
                show_stack_traces=arguments.get("show_stack_traces", False),
                fail_on_errors=arguments.get("fail_on_errors", False),
            )
        elif name == "blocking_tree":
            result = blocking_tree_tool_call(
                path=arguments.get("path"),
                thread_pattern=arguments.get("thread_pattern"),
                show_stack_traces=arguments.get("show_stack_traces", False),
                fail_on_errors=arguments.get("fail_on_errors", False),
            )
        else:
            return CallToolResult(content=[TextContent(type="text", text=f"Unknown tool: {name}")], isError=True)
        return _to_call_result(result)

    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def _log_level() -> int:
    level = logging.getLevelName(os.environ.get(LOG_LEVEL_ENV, "WARNING").upper())
    if not isinstance(level, int):
        return logging.WARNING
    return level


def main() -> None:
    # stdout carries the MCP protocol
    logging.basicConfig(
        stream=sys.stderr,
        level=_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
