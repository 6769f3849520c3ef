"""
JPype-based Ghidra access for CodeCut MCP Server.

Ghidra stays the owner of the program database; this package starts its
libraries inside the Python process and adapts a live ``Program`` to the
``ProgramAdapter`` interface the CodeCut operations are written against.

Usage:
    from codecut_mcp.bridge import get_backend

    backend = get_backend()
    backend.open_program("/path/to/binary", "project_name")
    session = backend.session
"""

from .jpype_bridge import GhidraBridge, get_bridge, BridgeError
from .backend import CodeCutBackend, BackendUnavailableError, get_backend, reset_backend

__all__ = [
    # Low-level bridge
    "GhidraBridge",
    "get_bridge",
    "BridgeError",
    # Backend
    "CodeCutBackend",
    "BackendUnavailableError",
    "get_backend",
    "reset_backend",
]
