"""
Bulk-edit suppression.

Bulk operations (map import, namespace renames, name guessing) generate a
storm of host change events. While a bulk-edit scope is open the session
ignores those events; when the outermost scope closes the guard fires a
single release callback so the views reload once.

Usage:
    guard = BulkEditGuard(on_release=session.request_reload)
    with guard.scope("import map") as token:
        import_module_map(program, path, monitor, token)
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

logger = logging.getLogger("codecut.bulk")


class BulkEditError(Exception):
    """Raised when a bulk mutation runs without a live bulk-edit token."""
    pass


class BulkEditToken:
    """Proof that the holder runs inside an open bulk-edit scope."""

    def __init__(self, guard: "BulkEditGuard", reason: str):
        self._guard = guard
        self.reason = reason
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def check(self) -> None:
        if not self._active:
            raise BulkEditError(f"Bulk-edit token for '{self.reason}' was already released")

    def _release(self) -> None:
        self._active = False

    def __repr__(self) -> str:
        state = "active" if self._active else "released"
        return f"BulkEditToken({self.reason!r}, {state})"


class BulkEditGuard:
    """Counts outstanding tokens; active while at least one is held."""

    def __init__(self, on_release: Optional[Callable[[], None]] = None):
        self._lock = threading.Lock()
        self._outstanding = 0
        self._on_release = on_release

    @property
    def active(self) -> bool:
        with self._lock:
            return self._outstanding > 0

    @contextmanager
    def scope(self, reason: str = "bulk edit") -> Iterator[BulkEditToken]:
        token = BulkEditToken(self, reason)
        with self._lock:
            self._outstanding += 1
        logger.debug(f"Bulk edit started: {reason}")
        try:
            yield token
        finally:
            token._release()
            with self._lock:
                self._outstanding -= 1
                released = self._outstanding == 0
            logger.debug(f"Bulk edit finished: {reason}")
            if released and self._on_release is not None:
                self._on_release()
