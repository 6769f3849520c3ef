"""
Backend for CodeCut operations.

Owns the JPype bridge, the programs opened through it and the single
``CodeCutSession`` that follows the active program. MCP handlers only talk
to this object.

Usage:
    from codecut_mcp.bridge.backend import get_backend

    backend = get_backend()
    backend.open_program("/samples/firmware.bin", "default")
    backend.session.rename_namespace("mod_1", "crypto")
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..program import ProgramAdapter
from ..session import CodeCutSession
from ..tasks import TaskManager

logger = logging.getLogger("codecut.backend")

# Track bridge availability
_bridge_available: Optional[bool] = None
_bridge_error: Optional[str] = None


def _check_bridge_available() -> bool:
    """Check if the JPype bridge can be used."""
    global _bridge_available, _bridge_error

    if _bridge_available is not None:
        return _bridge_available

    try:
        import jpype  # noqa: F401
        _bridge_available = True
        logger.info("JPype is available")
    except ImportError as e:
        _bridge_available = False
        _bridge_error = f"JPype not installed: {e}. Install with: pip install JPype1"
        logger.warning(_bridge_error)

    return _bridge_available


class BackendUnavailableError(Exception):
    """Raised when Ghidra cannot be reached through JPype."""
    pass


class CodeCutBackend:
    """Programs opened through the bridge plus the session over the active one."""

    def __init__(self, session: Optional[CodeCutSession] = None):
        from ..config import config
        self.config = config
        self._bridge = None
        self._bridge_initialized = False
        self._bridge_start_error: Optional[str] = None
        self.tasks = TaskManager()
        self.session = session or CodeCutSession(tasks=self.tasks)
        self._active_key: Optional[str] = None

    @property
    def is_bridge_started(self) -> bool:
        return self._bridge is not None

    def _ensure_bridge(self):
        """Start the bridge on first use; raise when that is impossible."""
        if self._bridge is not None:
            return self._bridge

        if not _check_bridge_available():
            raise BackendUnavailableError(_bridge_error)

        if self._bridge_initialized and self._bridge_start_error:
            raise BackendUnavailableError(self._bridge_start_error)

        self._bridge_initialized = True
        try:
            from .jpype_bridge import get_bridge
            bridge = get_bridge()
            bridge.ensure_started()
        except Exception as e:
            self._bridge_start_error = f"Failed to start JPype bridge: {e}"
            logger.error(self._bridge_start_error)
            raise BackendUnavailableError(self._bridge_start_error)

        self._bridge = bridge
        logger.info("JPype bridge started successfully")
        return bridge

    # =========================================================================
    # Programs
    # =========================================================================

    def open_program(
        self,
        file_path: str,
        project_name: Optional[str] = None,
        analyze: bool = True,
    ) -> Dict[str, Any]:
        """Open (importing when needed) a program and make it the active one."""
        from .ghidra_program import GhidraProgram

        bridge = self._ensure_bridge()
        project_name = project_name or self.config.default_project

        binary_path = Path(file_path).expanduser()
        handle = bridge.open_program(
            binary_path=str(binary_path),
            project_name=project_name,
            project_dir=self.config.project_dir,
            analyze=analyze,
        )

        self.activate(GhidraProgram(handle.program))
        self._active_key = f"{project_name}:{handle.name}"
        return {
            "program": handle.name,
            "project": project_name,
            "load_time": round(handle.load_time, 3),
            "symbols": len(self.session.state.rows),
        }

    def activate(self, program: Optional[ProgramAdapter]) -> None:
        self.session.activate(program)
        if program is None:
            self._active_key = None

    def close_program(self, program_name: Optional[str] = None,
                      project_name: Optional[str] = None, save: bool = True) -> str:
        active = self.session.program
        if program_name is None:
            if active is None:
                raise ValueError("No active program to close")
            program_name = active.name
        project_name = project_name or self.config.default_project
        key = f"{project_name}:{program_name}"

        if key == self._active_key:
            self.activate(None)

        if self._bridge is not None:
            self._bridge.close_program(project_name, program_name, save=save)
        logger.info(f"Closed program {key}")
        return key

    def get_status(self) -> Dict[str, Any]:
        """Get backend status information."""
        _check_bridge_available()
        program = self.session.program
        status: Dict[str, Any] = {
            "jpype_available": _bridge_available,
            "bridge_started": self._bridge is not None,
            "ghidra_home": str(self.config.ghidra_home) if self.config.ghidra_home else None,
            "active_program": program.name if program is not None else None,
            "bulk_edit_active": self.session.bulk.active,
            "tasks": len(self.tasks.all()),
        }

        if _bridge_error:
            status["jpype_error"] = _bridge_error
        if self._bridge_start_error:
            status["bridge_error"] = self._bridge_start_error
        if self._bridge is not None:
            status["open_programs"] = [h.name for h in self._bridge.open_programs()]

        return status

    def shutdown(self) -> None:
        self.session.dispose()
        if self._bridge is not None:
            from .jpype_bridge import close_bridge
            close_bridge()
            self._bridge = None


# =============================================================================
# Global Backend Instance
# =============================================================================

_backend: Optional[CodeCutBackend] = None


def get_backend() -> CodeCutBackend:
    """Get the global backend instance."""
    global _backend
    if _backend is None:
        _backend = CodeCutBackend()
    return _backend


def reset_backend() -> None:
    """Reset the backend (for testing)."""
    global _backend
    _backend = None
