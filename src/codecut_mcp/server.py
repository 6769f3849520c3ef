#!/usr/bin/env python3
"""
CodeCut MCP Server - module-level organisation of disassembled programs.

Provides tools for grouping a Ghidra program's symbols into module
namespaces: renaming, splitting and combining namespaces, importing and
exporting module map files, and guessing module names from the strings
each module references.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

try:
    from mcp.server import Server, NotificationOptions
    from mcp.server.models import InitializationOptions
    import mcp.server.stdio
    import mcp.types as types
except ImportError:
    print("Error: MCP SDK not installed. Run: pip install mcp", file=sys.stderr)
    sys.exit(1)

from .bridge.backend import get_backend
from .config import config
from .naming import ModuleNamer
from .preferences import (
    LAST_EXPORT_DIRECTORY,
    LAST_IMPORT_DIRECTORY,
    PYTHON_EXECUTABLE,
    get_preferences,
)
from .views import ReferenceMode, symbol_row

logger = logging.getLogger("codecut.server")

# Initialize MCP server
server = Server("codecut")


def setup_logging() -> None:
    """Send the codecut.* loggers to log_dir/codecut.log."""
    log_file = config.log_dir / "codecut.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("codecut")
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def _text(text: str) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=text)]


def _json(data: Any) -> list[types.TextContent]:
    return _text(json.dumps(data, indent=2))


SYMBOL_ARG = {
    "type": "string",
    "description": "Symbol name, address ('0x401000') or id ('#123')"
}

NAMESPACE_ARG = {
    "type": "string",
    "description": "Namespace path ('module' or 'outer::inner') or id ('#123')"
}

TASK_WAIT_ARG = {
    "type": "boolean",
    "description": "Block until the task finishes and return its result (default: false)"
}


TOOLS = [
    types.Tool(
        name="open_program",
        description="Open a program in Ghidra (importing and analyzing the binary if it is not yet in the project) and make it the active program.",
        inputSchema={
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path to the binary, or the name of a program already in the project"
                },
                "project_name": {
                    "type": "string",
                    "description": "Ghidra project name (default: 'default')"
                },
                "analyze": {
                    "type": "boolean",
                    "description": "Run auto-analysis after a fresh import (default: true)"
                }
            },
            "required": ["file_path"]
        }
    ),
    types.Tool(
        name="close_program",
        description="Save and close a program. Closes the active program when no name is given.",
        inputSchema={
            "type": "object",
            "properties": {
                "program_name": {"type": "string", "description": "Program to close"},
                "project_name": {"type": "string", "description": "Ghidra project name (default: 'default')"},
                "save": {"type": "boolean", "description": "Save before closing (default: true)"}
            }
        }
    ),
    types.Tool(
        name="list_symbols",
        description="List the symbols of the active program that pass the current symbol filter, sorted by address.",
        inputSchema={
            "type": "object",
            "properties": {
                "namespace": {**NAMESPACE_ARG, "description": "Only list symbols directly in this namespace"},
                "offset": {"type": "integer", "description": "Pagination offset (default: 0)"},
                "limit": {"type": "integer", "description": "Maximum symbols to return (default: 100)"}
            }
        }
    ),
    types.Tool(
        name="set_symbol_filter",
        description="Change which symbols list_symbols shows. Omitted options keep their current value.",
        inputSchema={
            "type": "object",
            "properties": {
                "functions": {"type": "boolean"},
                "labels": {"type": "boolean"},
                "namespaces": {"type": "boolean"},
                "variables": {"type": "boolean"},
                "externals": {"type": "boolean"},
                "dynamic": {"type": "boolean"},
                "user_defined": {"type": "boolean"},
                "analysis": {"type": "boolean"},
                "imported": {"type": "boolean"},
                "default_source": {"type": "boolean"},
                "name_contains": {"type": "string", "description": "Case-insensitive name substring; empty string clears it"}
            }
        }
    ),
    types.Tool(
        name="list_namespaces",
        description="List module namespaces with their address ranges and symbol counts.",
        inputSchema={
            "type": "object",
            "properties": {
                "all": {"type": "boolean", "description": "Include nested namespaces, not just top-level modules (default: false)"}
            }
        }
    ),
    types.Tool(
        name="symbol_references",
        description="List references to a symbol, or the instruction/data references made from it.",
        inputSchema={
            "type": "object",
            "properties": {
                "symbol": {**SYMBOL_ARG, "description": "Symbol to inspect (default: the currently selected symbol)"},
                "mode": {
                    "type": "string",
                    "enum": [m.value for m in ReferenceMode],
                    "description": "'to' (default), 'instructions_from' or 'data_from'"
                }
            }
        }
    ),
    types.Tool(
        name="go_to_symbol",
        description="Select a symbol and navigate to its address.",
        inputSchema={
            "type": "object",
            "properties": {"symbol": SYMBOL_ARG},
            "required": ["symbol"]
        }
    ),
    types.Tool(
        name="delete_symbols",
        description="Delete symbols. Each deletion is its own transaction; failures are reported and the rest continue.",
        inputSchema={
            "type": "object",
            "properties": {
                "symbols": {"type": "array", "items": SYMBOL_ARG, "description": "Symbols to delete"}
            },
            "required": ["symbols"]
        }
    ),
    types.Tool(
        name="rename_namespace",
        description="Rename a namespace by moving all of its symbols into a new namespace of that name.",
        inputSchema={
            "type": "object",
            "properties": {
                "namespace": NAMESPACE_ARG,
                "new_name": {"type": "string", "description": "New namespace name"}
            },
            "required": ["namespace", "new_name"]
        }
    ),
    types.Tool(
        name="split_namespace",
        description="Split a namespace at a symbol: the symbol and every later symbol of its namespace move to a new namespace.",
        inputSchema={
            "type": "object",
            "properties": {
                "symbol": SYMBOL_ARG,
                "new_name": {"type": "string", "description": "Name of the new namespace"}
            },
            "required": ["symbol", "new_name"]
        }
    ),
    types.Tool(
        name="combine_namespaces",
        description="Move every symbol of the second namespace into the first and delete the second, optionally renaming the result.",
        inputSchema={
            "type": "object",
            "properties": {
                "first": NAMESPACE_ARG,
                "second": NAMESPACE_ARG,
                "new_name": {"type": "string", "description": "Optional name for the combined namespace"}
            },
            "required": ["first", "second"]
        }
    ),
    types.Tool(
        name="export_module_map",
        description="Write one '.text' map line per top-level module namespace. Relative paths resolve against the last export directory.",
        inputSchema={
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Map file to write ('.map' is appended when missing)"},
                "overwrite": {"type": "boolean", "description": "Replace an existing file (default: false)"}
            },
            "required": ["file_path"]
        }
    ),
    types.Tool(
        name="import_module_map",
        description="Move function symbols into the module namespaces described by a map file. Runs as a cancellable background task.",
        inputSchema={
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Map file to read. Relative paths resolve against the last import directory."},
                "wait": TASK_WAIT_ARG
            },
            "required": ["file_path"]
        }
    ),
    types.Tool(
        name="guess_module_names",
        description="Collect the strings each module references, ask the module naming script for a name, and rename modules accordingly. Runs as a cancellable background task.",
        inputSchema={
            "type": "object",
            "properties": {
                "python_executable": {"type": "string", "description": "Python interpreter used to run the naming script (remembered for later runs)"},
                "wait": TASK_WAIT_ARG
            }
        }
    ),
    types.Tool(
        name="symbol_changes",
        description="Return the symbol and reference view updates seen since the last call. Set watch=false to stop collecting updates; watch=true resumes and reloads the view.",
        inputSchema={
            "type": "object",
            "properties": {
                "watch": {"type": "boolean", "description": "Collect view updates from now on"}
            }
        }
    ),
    types.Tool(
        name="task_status",
        description="Show progress, state and result of a background task. Lists all tasks when no id is given.",
        inputSchema={
            "type": "object",
            "properties": {"task_id": {"type": "string"}}
        }
    ),
    types.Tool(
        name="cancel_task",
        description="Request cancellation of a background task. Work already committed is kept.",
        inputSchema={
            "type": "object",
            "properties": {"task_id": {"type": "string"}},
            "required": ["task_id"]
        }
    ),
    types.Tool(
        name="bridge_status",
        description="Get the status of the JPype bridge to Ghidra and the active program.",
        inputSchema={"type": "object", "properties": {}}
    ),
]


@server.list_tools()
async def handle_list_tools() -> list[types.Tool]:
    """List available CodeCut tools."""
    return TOOLS


# ============================================================================
# Tool Handlers
# ============================================================================

@server.call_tool()
async def handle_call_tool(
    name: str,
    arguments: dict[str, Any] | None
) -> Sequence[types.TextContent | types.ImageContent | types.EmbeddedResource]:
    """Handle tool execution."""
    arguments = arguments or {}
    logger.info(f"Tool call: {name} with {arguments}")

    try:
        if name == "open_program":
            return await handle_open_program(arguments)
        elif name == "close_program":
            return handle_close_program(arguments)
        elif name == "list_symbols":
            return handle_list_symbols(arguments)
        elif name == "set_symbol_filter":
            return handle_set_symbol_filter(arguments)
        elif name == "list_namespaces":
            return handle_list_namespaces(arguments)
        elif name == "symbol_references":
            return handle_symbol_references(arguments)
        elif name == "go_to_symbol":
            return handle_go_to_symbol(arguments)
        elif name == "delete_symbols":
            return handle_delete_symbols(arguments)
        # Namespace editing
        elif name == "rename_namespace":
            return handle_rename_namespace(arguments)
        elif name == "split_namespace":
            return handle_split_namespace(arguments)
        elif name == "combine_namespaces":
            return handle_combine_namespaces(arguments)
        # Module maps and naming
        elif name == "export_module_map":
            return handle_export_module_map(arguments)
        elif name == "import_module_map":
            return await handle_import_module_map(arguments)
        elif name == "guess_module_names":
            return await handle_guess_module_names(arguments)
        # Views, tasks and status
        elif name == "symbol_changes":
            return handle_symbol_changes(arguments)
        elif name == "task_status":
            return handle_task_status(arguments)
        elif name == "cancel_task":
            return handle_cancel_task(arguments)
        elif name == "bridge_status":
            return handle_bridge_status(arguments)
        else:
            return _text(f"Unknown tool: {name}")
    except Exception as e:
        logger.error(f"Error in {name}: {e}")
        return _text(f"Error: {str(e)}")


async def handle_open_program(args: dict) -> Sequence[types.TextContent]:
    """Open a program and make it the active one."""
    backend = get_backend()
    info = await asyncio.to_thread(
        backend.open_program,
        args["file_path"],
        args.get("project_name", config.default_project),
        args.get("analyze", True),
    )
    return _text(
        f"Opened **{info['program']}** in project `{info['project']}` "
        f"in {info['load_time']}s ({info['symbols']} symbols shown)"
    )


def handle_close_program(args: dict) -> Sequence[types.TextContent]:
    backend = get_backend()
    key = backend.close_program(
        args.get("program_name"),
        args.get("project_name"),
        save=args.get("save", True),
    )
    return _text(f"Closed {key}")


def handle_list_symbols(args: dict) -> Sequence[types.TextContent]:
    """List filtered symbols of the active program."""
    session = get_backend().session
    offset = args.get("offset", 0)
    limit = args.get("limit", 100)

    symbols = session.symbols(args.get("namespace"))
    page = symbols[offset:offset + limit]
    return _json({
        "program": session.require_program().name,
        "total": len(symbols),
        "offset": offset,
        "symbols": [symbol_row(s) for s in page],
    })


def handle_set_symbol_filter(args: dict) -> Sequence[types.TextContent]:
    changes = dict(args)
    if changes.get("name_contains") == "":
        changes["name_contains"] = None
    new_filter = get_backend().session.set_filter(**changes)
    return _json(new_filter.to_dict())


def handle_list_namespaces(args: dict) -> Sequence[types.TextContent]:
    """List module namespaces."""
    namespaces = get_backend().session.namespaces(top_level_only=not args.get("all", False))
    text = f"# Namespaces ({len(namespaces)})\n\n"
    for ns in namespaces:
        span = f"{ns['start']}-{ns['end']}" if ns["start"] else "empty"
        text += f"- {ns['path']} (#{ns['id']}) [{span}] ({ns['symbol_count']} symbols)\n"
    return _text(text)


def handle_symbol_references(args: dict) -> Sequence[types.TextContent]:
    session = get_backend().session
    mode = ReferenceMode(args["mode"]) if args.get("mode") else None
    refs = session.references(args.get("symbol"), mode)
    symbol = session.current_symbol
    return _json({
        "symbol": symbol_row(symbol) if symbol else None,
        "mode": session.reference_view.mode.value,
        "references": [
            {
                "from": f"0x{r.from_address:x}",
                "to": f"0x{r.to_address:x}",
                "type": r.ref_type,
            }
            for r in refs
        ],
    })


def handle_go_to_symbol(args: dict) -> Sequence[types.TextContent]:
    location = get_backend().session.go_to(args["symbol"])
    return _text(f"{location.program_name}: {location.symbol_name} @ 0x{location.address:x}")


def handle_delete_symbols(args: dict) -> Sequence[types.TextContent]:
    result = get_backend().session.delete_symbols(list(args["symbols"]))
    return _json({
        "deleted": result.deleted,
        "failed": {f"#{k}": v for k, v in result.failed.items()},
    })


def handle_rename_namespace(args: dict) -> Sequence[types.TextContent]:
    ns = get_backend().session.rename_namespace(args["namespace"], args["new_name"])
    return _text(f"Renamed {args['namespace']} to {ns.display_name()} (#{ns.id})")


def handle_split_namespace(args: dict) -> Sequence[types.TextContent]:
    ns = get_backend().session.split_namespace(args["symbol"], args["new_name"])
    return _text(f"Created {ns.display_name()} (#{ns.id}) starting at {args['symbol']}")


def handle_combine_namespaces(args: dict) -> Sequence[types.TextContent]:
    ns = get_backend().session.combine_namespaces(
        args["first"], args["second"], args.get("new_name")
    )
    return _text(f"Combined {args['second']} into {ns.display_name()} (#{ns.id})")


def handle_export_module_map(args: dict) -> Sequence[types.TextContent]:
    """Export the module map of the active program."""
    prefs = get_preferences()
    path = prefs.resolve_map_path(args["file_path"], LAST_EXPORT_DIRECTORY, config.exports_dir)
    written, entries = get_backend().session.export_module_map(path, overwrite=args.get("overwrite", False))
    prefs.remember_directory(LAST_EXPORT_DIRECTORY, written)
    return _text(f"Exported {len(entries)} modules to {written}")


async def _task_response(handle, wait: bool) -> Sequence[types.TextContent]:
    backend = get_backend()
    if wait:
        await asyncio.to_thread(backend.tasks.wait, handle.id)
    return _json(backend.session.task_status(handle.id))


async def handle_import_module_map(args: dict) -> Sequence[types.TextContent]:
    """Start a module map import task."""
    prefs = get_preferences()
    path = prefs.resolve_map_path(args["file_path"], LAST_IMPORT_DIRECTORY, config.exports_dir)
    if not path.exists():
        return _text(f"Error: Map file not found: {path}")
    prefs.remember_directory(LAST_IMPORT_DIRECTORY, path)

    handle = get_backend().session.start_import_module_map(path)
    return await _task_response(handle, args.get("wait", False))


async def handle_guess_module_names(args: dict) -> Sequence[types.TextContent]:
    """Start a module name guessing task."""
    prefs = get_preferences()
    python_exec = args.get("python_executable")
    if python_exec:
        prefs.set(PYTHON_EXECUTABLE, python_exec)
    else:
        python_exec = prefs.get(PYTHON_EXECUTABLE, config.python_exec)

    namer = ModuleNamer(python_exec, Path(config.modnaming_script), config.naming_timeout)
    handle = get_backend().session.start_guess_module_names(namer)
    return await _task_response(handle, args.get("wait", False))


def handle_symbol_changes(args: dict) -> Sequence[types.TextContent]:
    session = get_backend().session
    updates = session.drain_updates()
    if "watch" in args:
        session.set_visible(bool(args["watch"]))
    return _json([
        {
            "target": u.target.value,
            "action": u.action.value,
            "symbol_id": u.symbol_id,
            "symbol": symbol_row(u.symbol) if u.symbol and not u.symbol.is_deleted else None,
        }
        for u in updates
    ])


def handle_task_status(args: dict) -> Sequence[types.TextContent]:
    backend = get_backend()
    task_id = args.get("task_id")
    if task_id:
        return _json(backend.session.task_status(task_id))
    return _json([h.status() for h in backend.tasks.all()])


def handle_cancel_task(args: dict) -> Sequence[types.TextContent]:
    handle = get_backend().tasks.cancel(args["task_id"])
    return _text(f"Cancellation requested for task {handle.id} ({handle.task.title})")


# ============================================================================
# Bridge Status Handler
# ============================================================================

def handle_bridge_status(args: dict) -> Sequence[types.TextContent]:
    """Get JPype bridge status."""
    status = get_backend().get_status()

    output = [
        "# CodeCut Bridge Status\n",
        f"**JPype Available:** {status['jpype_available']}",
        f"**Bridge Started:** {status['bridge_started']}",
        f"**Ghidra Home:** {status['ghidra_home']}",
        f"**Active Program:** {status['active_program'] or 'none'}",
        f"**Bulk Edit Active:** {status['bulk_edit_active']}",
        f"**Tasks:** {status['tasks']}",
    ]

    if status.get("jpype_error"):
        output.append(f"**JPype Error:** {status['jpype_error']}")
    if status.get("bridge_error"):
        output.append(f"**Bridge Error:** {status['bridge_error']}")
    if status.get("open_programs") is not None:
        output.append(f"**Open Programs:** {', '.join(status['open_programs']) or 'none'}")

    if not status["bridge_started"]:
        output.extend([
            "",
            "## Note",
            "The bridge starts on the first open_program call.",
            "Requirements: JPype1 >= 1.5.0 and a Java JDK 17+.",
        ])

    return _text("\n".join(output))


# ============================================================================
# Main Entry Point
# ============================================================================

async def main():
    """Run the MCP server."""
    errors = config.validate()
    if errors:
        for error in errors:
            print(f"Configuration error: {error}", file=sys.stderr)
        sys.exit(1)

    config.ensure_directories()
    setup_logging()

    logger.info("Starting CodeCut MCP Server")
    logger.info(f"Ghidra home: {config.ghidra_home}")
    logger.info(f"Project dir: {config.project_dir}")

    try:
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name="codecut",
                    server_version="1.0.0",
                    capabilities=server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                ),
            )
    finally:
        get_backend().shutdown()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
