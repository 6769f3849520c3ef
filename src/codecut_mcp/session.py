"""
CodeCut session - the plugin lifecycle for one active program.

A session follows the program the client activated: it listens for the
program's change events, keeps the symbol view in step with them, and runs
the namespace, map and naming operations against that program.

Usage:
    session = CodeCutSession()
    session.activate(program)

    session.rename_namespace("mod_401000", "crypto")
    handle = session.start_import_module_map(Path("modules.map"))
"""

import logging
import threading
from collections import deque
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from . import modmap, namespaces, naming
from .bulk import BulkEditGuard
from .events import Action, ChangeEvent, Target, ViewState, ViewUpdate, dispatch
from .models import NamespaceRecord, ProgramLocation, ReferenceRecord, SymbolRecord
from .program import ProgramAdapter, ProgramError
from .tasks import BackgroundTask, TaskHandle, TaskManager, TaskMonitor
from .views import ReferenceMode, ReferenceView, SymbolFilter, sorted_rows

logger = logging.getLogger("codecut.session")

LocationListener = Callable[[ProgramLocation], None]


class NoProgramError(ProgramError):
    """Raised when an operation needs an active program and there is none."""
    pass


class ImportModuleMapTask(BackgroundTask):
    title = "Import Module Map"

    def __init__(self, session: "CodeCutSession", path: Path):
        self.session = session
        self.path = path

    def run(self, monitor: TaskMonitor) -> Dict[str, Any]:
        program = self.session.require_program()
        with self.session.bulk.scope("import module map") as token:
            result = modmap.import_module_map(program, self.path, monitor, token)
        return result.to_dict()


class GuessModuleNamesTask(BackgroundTask):
    title = "Guess Module Names"

    def __init__(self, session: "CodeCutSession", namer: naming.ModuleNamer):
        self.session = session
        self.namer = namer

    def run(self, monitor: TaskMonitor) -> Dict[str, Any]:
        session = self.session
        program = session.require_program()

        session.suggested_module_names.clear()
        session.string_map = naming.gather_module_strings(program, monitor)
        try:
            with session.bulk.scope("guess module names") as token:
                result = naming.guess_module_names(
                    program,
                    session.string_map,
                    self.namer,
                    monitor,
                    token,
                    suggested=session.suggested_module_names,
                )
        finally:
            session.string_map = {}
        return result.to_dict()


class CodeCutSession:
    """Symbol/reference views and module operations for the active program."""

    def __init__(self, tasks: Optional[TaskManager] = None, max_updates: int = 1000):
        self.program: Optional[ProgramAdapter] = None
        self.state = ViewState()
        self.visible = True
        self.reference_view = ReferenceView()
        self.bulk = BulkEditGuard(on_release=self._request_reload)
        self.tasks = tasks or TaskManager()

        self.string_map: Dict[NamespaceRecord, List[str]] = {}
        self.suggested_module_names: Dict[NamespaceRecord, str] = {}

        self.current_location: Optional[ProgramLocation] = None
        self._location_listeners: List[LocationListener] = []
        self._updates: Deque[ViewUpdate] = deque(maxlen=max_updates)
        self._reload_pending = False
        self._lock = threading.RLock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def activate(self, program: Optional[ProgramAdapter]) -> None:
        """Switch to ``program`` (None deactivates)."""
        with self._lock:
            old = self.program
            if old is not None:
                old.remove_listener(self.domain_object_changed)
                self.state = replace(self.state, rows={}, reference_symbol_id=None)
                self.current_location = None
                self._updates.clear()
                logger.info(f"Deactivated program {old.name}")

            self.program = program
            if program is not None:
                program.add_listener(self.domain_object_changed)
                self.reload()
                logger.info(f"Activated program {program.name} ({len(self.state.rows)} symbols)")

    def deactivate(self) -> None:
        self.activate(None)

    def dispose(self) -> None:
        self.deactivate()
        self.string_map.clear()
        self.suggested_module_names.clear()
        self._location_listeners.clear()

    def require_program(self) -> ProgramAdapter:
        if self.program is None:
            raise NoProgramError("No active program; open one with open_program first")
        return self.program

    # =========================================================================
    # Change handling
    # =========================================================================

    def domain_object_changed(self, event: ChangeEvent) -> None:
        if not self.visible:
            return
        if self.bulk.active:
            return

        with self._lock:
            self.state, updates = dispatch(event, self.state)
            for update in updates:
                if update.action == Action.RELOAD and update.target == Target.SYMBOLS:
                    self.reload()
                self._updates.append(update)

    def _request_reload(self) -> None:
        # runs on whichever thread closed the bulk scope
        self._reload_pending = True

    def _sync(self) -> None:
        if self._reload_pending:
            self.reload()

    def reload(self) -> None:
        with self._lock:
            self._reload_pending = False
            if self.program is None:
                self.state = replace(self.state, rows={})
                return
            rows = {s.id: s for s in self.program.symbols() if self.state.filter.accepts(s)}
            ref_id = self.state.reference_symbol_id
            if ref_id is not None and self.program.get_symbol(ref_id) is None:
                ref_id = None
            self.state = replace(self.state, rows=rows, reference_symbol_id=ref_id)

    def set_visible(self, visible: bool) -> None:
        """A hidden view ignores change events and reloads when shown again."""
        with self._lock:
            was_visible = self.visible
            self.visible = visible
            if visible and not was_visible:
                self._updates.clear()
                self.reload()

    def drain_updates(self) -> List[ViewUpdate]:
        with self._lock:
            self._sync()
            updates = list(self._updates)
            self._updates.clear()
            return updates

    # =========================================================================
    # Symbol table
    # =========================================================================

    @property
    def symbol_filter(self) -> SymbolFilter:
        return self.state.filter

    def set_filter(self, **changes: Any) -> SymbolFilter:
        with self._lock:
            self.state = replace(self.state, filter=self.state.filter.updated(**changes))
            self.reload()
            return self.state.filter

    def symbols(self, namespace: Optional[str] = None) -> List[SymbolRecord]:
        program = self.require_program()
        with self._lock:
            self._sync()
            ns_id = program.resolve_namespace(namespace).id if namespace else None
            return sorted_rows(dict(self.state.rows), ns_id)

    @property
    def current_symbol(self) -> Optional[SymbolRecord]:
        ref_id = self.state.reference_symbol_id
        if ref_id is None or self.program is None:
            return None
        return self.program.get_symbol(ref_id)

    def select_symbol(self, ref: str) -> SymbolRecord:
        symbol = self.require_program().resolve_symbol(ref)
        with self._lock:
            self.state = replace(self.state, reference_symbol_id=symbol.id)
        return symbol

    def references(self, ref: Optional[str] = None, mode: Optional[ReferenceMode] = None) -> List[ReferenceRecord]:
        program = self.require_program()
        symbol = self.select_symbol(ref) if ref else self.current_symbol
        if symbol is None:
            raise ProgramError("No symbol selected")
        if mode is not None:
            self.reference_view.mode = mode
        return self.reference_view.references(program, symbol)

    def add_location_listener(self, listener: LocationListener) -> None:
        self._location_listeners.append(listener)

    def go_to(self, ref: str) -> ProgramLocation:
        program = self.require_program()
        symbol = self.select_symbol(ref)
        location = ProgramLocation(program.name, symbol.address, symbol.name)
        self.current_location = location
        for listener in list(self._location_listeners):
            listener(location)
        return location

    def delete_symbols(self, refs: List[str]) -> namespaces.DeleteResult:
        program = self.require_program()
        symbols = [program.resolve_symbol(r) for r in refs]
        return namespaces.delete_symbols(program, symbols)

    # =========================================================================
    # Namespaces
    # =========================================================================

    def namespaces(self, top_level_only: bool = True) -> List[Dict[str, Any]]:
        program = self.require_program()
        found = namespaces.top_level_namespaces(program) if top_level_only else namespaces.all_namespaces(program)
        return [namespaces.describe_namespace(program, ns) for ns in found]

    def rename_namespace(self, namespace: str, new_name: str) -> NamespaceRecord:
        program = self.require_program()
        ns = program.resolve_namespace(namespace)
        with self.bulk.scope("rename namespace") as token:
            result = namespaces.rename_namespace(program, ns, new_name, token)
        self._sync()
        return result

    def split_namespace(self, symbol_ref: str, new_name: str) -> NamespaceRecord:
        program = self.require_program()
        symbol = program.resolve_symbol(symbol_ref)
        with self.bulk.scope("split namespace") as token:
            result = namespaces.split_namespace(program, symbol, new_name, token)
        self._sync()
        return result

    def combine_namespaces(self, first: str, second: str, new_name: Optional[str] = None) -> NamespaceRecord:
        program = self.require_program()
        first_ns = program.resolve_namespace(first)
        second_ns = program.resolve_namespace(second)
        with self.bulk.scope("combine namespaces") as token:
            result = namespaces.combine_namespaces(program, first_ns, second_ns, token, new_name)
        self._sync()
        return result

    # =========================================================================
    # Module map and name guessing
    # =========================================================================

    def export_module_map(self, path: Path, overwrite: bool = False) -> Tuple[Path, List[modmap.ModuleMapEntry]]:
        """Write the map for the active program; returns the path actually written."""
        program = self.require_program()
        path = Path(path)
        if path.suffix.lower() != modmap.MAP_EXTENSION:
            path = path.with_name(path.name + modmap.MAP_EXTENSION)
        if path.exists() and not overwrite:
            raise modmap.ModuleMapError(f"{path} already exists; pass overwrite to replace it")
        return path, modmap.export_module_map(program, path)

    def start_import_module_map(self, path: Path, background: bool = True) -> TaskHandle:
        self.require_program()
        task = ImportModuleMapTask(self, path)
        handle = self.tasks.launch(task) if background else self.tasks.run_inline(task)
        return handle

    def start_guess_module_names(self, namer: naming.ModuleNamer, background: bool = True) -> TaskHandle:
        self.require_program()
        task = GuessModuleNamesTask(self, namer)
        handle = self.tasks.launch(task) if background else self.tasks.run_inline(task)
        return handle

    def task_status(self, task_id: str) -> Dict[str, Any]:
        handle = self.tasks.get(task_id)
        self._sync()
        status = handle.status()
        if handle.result is not None:
            status["result"] = handle.result
        return status
