"""
Pytest configuration and shared fixtures for CodeCut MCP tests.

``FakeProgram`` stands in for a Ghidra program: it keeps namespaces,
symbols, references and strings in memory, requires an open transaction
for every mutation, restores its state on rollback, and reports changes to
listeners the way Ghidra's domain object events do.
"""

import copy
import itertools
import pytest
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Set

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from codecut_mcp.bulk import BulkEditGuard
from codecut_mcp.events import ChangeEvent, ChangeKind, ChangeRecord
from codecut_mcp.models import (
    AddressRange,
    DefinedString,
    NamespaceRecord,
    ReferenceRecord,
    SourceType,
    SymbolKind,
    SymbolRecord,
)
from codecut_mcp.program import (
    DuplicateNameError,
    InvalidInputError,
    NamespaceNotFoundError,
    ProgramAdapter,
    ProgramError,
    SymbolNotFoundError,
)
from codecut_mcp.tasks import TaskMonitor

GLOBAL_ID = 0


class FakeProgram(ProgramAdapter):
    """In-memory ProgramAdapter used throughout the tests."""

    def __init__(self, name: str = "sample.bin"):
        self._name = name
        self._ids = itertools.count(1)
        self._tx_ids = itertools.count(1)
        self._ns: Dict[int, dict] = {GLOBAL_ID: {"name": "Global", "parent": None}}
        self._symbols: Dict[int, SymbolRecord] = {}
        self._bodies: Dict[int, AddressRange] = {}
        self._refs: List[ReferenceRecord] = []
        self._strings: List[DefinedString] = []
        self._listeners = []
        self._open: Dict[int, tuple] = {}

        self.committed: List[str] = []
        self.rolled_back: List[str] = []
        self.events: List[ChangeEvent] = []
        # mutations of these symbols raise ProgramError
        self.locked_symbols: Set[int] = set()
        # create_namespace raises DuplicateNameError for these
        self.reserved_names: Set[str] = set()

    @property
    def name(self) -> str:
        return self._name

    # -- building --------------------------------------------------------

    def add_namespace(self, name: str, parent_id: int = GLOBAL_ID) -> NamespaceRecord:
        ns_id = next(self._ids)
        self._ns[ns_id] = {"name": name, "parent": parent_id}
        return self._ns_record(ns_id)

    def add_symbol(
        self,
        name: str,
        address: int,
        namespace_id: int = GLOBAL_ID,
        kind: SymbolKind = SymbolKind.LABEL,
        source: SourceType = SourceType.ANALYSIS,
        **fields,
    ) -> SymbolRecord:
        sym = SymbolRecord(
            id=next(self._ids),
            name=name,
            address=address,
            namespace_id=namespace_id,
            namespace_name=self._path(namespace_id),
            kind=kind,
            source=source,
            **fields,
        )
        self._symbols[sym.id] = sym
        return sym

    def add_function(
        self,
        name: str,
        start: int,
        end: Optional[int] = None,
        namespace_id: int = GLOBAL_ID,
        **fields,
    ) -> SymbolRecord:
        sym = self.add_symbol(name, start, namespace_id, SymbolKind.FUNCTION, **fields)
        self._bodies[sym.id] = AddressRange(start, end if end is not None else start + 0xF)
        return sym

    def add_string(self, address: int, value: str) -> DefinedString:
        string = DefinedString(address, value)
        self._strings.append(string)
        return string

    def add_reference(self, from_address: int, to_address: int,
                      ref_type: str = "DATA", is_data: bool = True) -> ReferenceRecord:
        ref = ReferenceRecord(from_address, to_address, ref_type, is_data=is_data, is_flow=not is_data)
        self._refs.append(ref)
        return ref

    def fire(self, *records: ChangeRecord) -> ChangeEvent:
        event = ChangeEvent(tuple(records))
        self.events.append(event)
        for listener in list(self._listeners):
            listener(event)
        return event

    # -- helpers ---------------------------------------------------------

    def _path(self, ns_id: int) -> str:
        if ns_id == GLOBAL_ID:
            return "Global"
        parts = []
        while ns_id is not None and ns_id != GLOBAL_ID:
            if ns_id in self._ns:
                parts.append(self._ns[ns_id]["name"])
                ns_id = self._ns[ns_id]["parent"]
            else:
                sym = self._symbols[ns_id]
                parts.append(sym.name)
                ns_id = sym.namespace_id
        return "::".join(reversed(parts))

    def _ns_record(self, ns_id: int) -> NamespaceRecord:
        data = self._ns[ns_id]
        return NamespaceRecord(
            id=ns_id,
            name=data["name"],
            parent_id=data["parent"],
            is_global=ns_id == GLOBAL_ID,
            full_path=self._path(ns_id),
        )

    def _ns_symbol(self, ns_id: int) -> SymbolRecord:
        # namespaces have no address of their own, like Ghidra's NO_ADDRESS
        parent_id = self._ns[ns_id]["parent"]
        return SymbolRecord(
            id=ns_id,
            name=self._ns[ns_id]["name"],
            address=0,
            namespace_id=parent_id,
            namespace_name=self._path(parent_id),
            kind=SymbolKind.NAMESPACE,
            source=SourceType.USER_DEFINED,
        )

    def _is_within(self, ns_id: int, ancestor_id: int) -> bool:
        while ns_id is not None:
            if ns_id == ancestor_id:
                return True
            ns_id = self._ns[ns_id]["parent"] if ns_id in self._ns else None
        return False

    def _function_ns(self, sym: SymbolRecord) -> NamespaceRecord:
        return NamespaceRecord(sym.id, sym.name, sym.namespace_id, full_path=self._path(sym.id))

    def _require_transaction(self) -> None:
        if not self._open:
            raise ProgramError("No open transaction")

    def _check_namespace(self, ns_id: Optional[int]) -> int:
        ns_id = GLOBAL_ID if ns_id is None else ns_id
        if ns_id not in self._ns:
            raise NamespaceNotFoundError(f"Namespace #{ns_id} not found")
        return ns_id

    # -- namespaces ------------------------------------------------------

    def global_namespace(self) -> NamespaceRecord:
        return self._ns_record(GLOBAL_ID)

    def get_namespace(self, namespace_id: int) -> Optional[NamespaceRecord]:
        if namespace_id in self._ns:
            return self._ns_record(namespace_id)
        sym = self._symbols.get(namespace_id)
        if sym is not None and sym.is_function():
            return self._function_ns(sym)
        return None

    def namespaces(self) -> List[NamespaceRecord]:
        return [self._ns_record(i) for i in self._ns if i != GLOBAL_ID]

    def child_namespaces(self, parent_id: int) -> List[NamespaceRecord]:
        return [self._ns_record(i) for i, d in self._ns.items() if d["parent"] == parent_id]

    def find_namespace(self, name: str, parent_id: Optional[int] = None) -> Optional[NamespaceRecord]:
        parent_id = GLOBAL_ID if parent_id is None else parent_id
        for ns in self.child_namespaces(parent_id):
            if ns.name == name:
                return ns
        return None

    def create_namespace(self, parent_id: Optional[int], name: str) -> NamespaceRecord:
        self._require_transaction()
        parent_id = self._check_namespace(parent_id)
        taken = (
            name in self.reserved_names
            or self.find_namespace(name, parent_id) is not None
            or any(s.name == name and s.namespace_id == parent_id and s.is_function()
                   for s in self._symbols.values())
        )
        if taken:
            raise DuplicateNameError(f"{name} already exists in {self._path(parent_id)}")
        return self.add_namespace(name, parent_id)

    def delete_namespace(self, namespace_id: int) -> None:
        self._require_transaction()
        if namespace_id == GLOBAL_ID:
            raise ProgramError("The global namespace cannot be deleted")
        self._check_namespace(namespace_id)
        del self._ns[namespace_id]

    def namespace_body(self, namespace_id: int) -> Optional[AddressRange]:
        members = [s for s in self.symbols() if s.namespace_id == namespace_id]
        if not members:
            return None
        lows, highs = [], []
        for sym in members:
            body = self._bodies.get(sym.id, AddressRange(sym.address, sym.address))
            lows.append(body.min_address)
            highs.append(body.max_address)
        return AddressRange(min(lows), max(highs))

    def namespace_at(self, address: int) -> NamespaceRecord:
        for sym_id, body in self._bodies.items():
            if body.contains(address):
                return self._function_ns(self._symbols[sym_id])
        return self.global_namespace()

    # -- symbols ---------------------------------------------------------

    def symbols(self) -> List[SymbolRecord]:
        records = [replace(s, namespace_name=self._path(s.namespace_id)) for s in self._symbols.values()]
        return sorted(records, key=lambda s: (s.address, s.id))

    def symbols_in(self, namespace_id: int) -> List[SymbolRecord]:
        """Members of a namespace, child namespaces included as Ghidra lists them."""
        children = [self._ns_symbol(i) for i, d in self._ns.items() if d["parent"] == namespace_id]
        return children + [s for s in self.symbols() if s.namespace_id == namespace_id]

    def get_symbol(self, symbol_id: int) -> Optional[SymbolRecord]:
        return self._symbols.get(symbol_id)

    def primary_symbol_at(self, address: int) -> Optional[SymbolRecord]:
        for sym in self.symbols_at(address):
            if sym.is_primary:
                return sym
        return None

    def symbols_at(self, address: int) -> List[SymbolRecord]:
        return [s for s in self.symbols() if s.address == address]

    def find_symbols(self, name: str) -> List[SymbolRecord]:
        return [s for s in self.symbols() if s.name == name]

    def set_symbol_namespace(self, symbol_id: int, namespace_id: int) -> SymbolRecord:
        self._require_transaction()
        if symbol_id in self._ns and symbol_id != GLOBAL_ID:
            return self._move_namespace(symbol_id, namespace_id)
        if symbol_id not in self._symbols:
            raise SymbolNotFoundError(f"Symbol #{symbol_id} not found")
        if symbol_id in self.locked_symbols:
            raise ProgramError(f"Symbol #{symbol_id} is locked")
        self._check_namespace(namespace_id)
        sym = replace(
            self._symbols[symbol_id],
            namespace_id=namespace_id,
            namespace_name=self._path(namespace_id),
        )
        self._symbols[symbol_id] = sym
        self.fire(ChangeRecord(ChangeKind.SYMBOL_SCOPE_CHANGED, sym.address, symbol=sym))
        return sym

    def _move_namespace(self, ns_id: int, parent_id: int) -> SymbolRecord:
        parent_id = self._check_namespace(parent_id)
        if self._is_within(parent_id, ns_id):
            raise InvalidInputError(f"Cannot move {self._path(ns_id)} into itself")
        if self.find_namespace(self._ns[ns_id]["name"], parent_id) is not None:
            raise DuplicateNameError(f"{self._ns[ns_id]['name']} already exists in {self._path(parent_id)}")
        self._ns[ns_id]["parent"] = parent_id
        sym = self._ns_symbol(ns_id)
        self.fire(ChangeRecord(ChangeKind.SYMBOL_SCOPE_CHANGED, sym.address, symbol=sym))
        return sym

    def delete_symbol(self, symbol_id: int) -> None:
        self._require_transaction()
        if symbol_id not in self._symbols:
            raise SymbolNotFoundError(f"Symbol #{symbol_id} not found")
        if symbol_id in self.locked_symbols:
            raise ProgramError(f"Symbol #{symbol_id} is locked")
        sym = self._symbols.pop(symbol_id)
        self._bodies.pop(symbol_id, None)
        self.fire(ChangeRecord(
            ChangeKind.SYMBOL_REMOVED,
            sym.address,
            symbol_id=symbol_id,
            primary=self.primary_symbol_at(sym.address),
        ))

    # -- references and data ---------------------------------------------

    def references_to(self, address: int) -> List[ReferenceRecord]:
        return [r for r in self._refs if r.to_address == address]

    def references_from(self, body: AddressRange) -> List[ReferenceRecord]:
        return [r for r in self._refs if body.contains(r.from_address)]

    def function_body(self, symbol_id: int) -> Optional[AddressRange]:
        return self._bodies.get(symbol_id)

    def defined_strings(self) -> List[DefinedString]:
        return list(self._strings)

    def defined_data_count(self) -> int:
        return len(self._strings)

    # -- transactions and events -----------------------------------------

    def start_transaction(self, description: str) -> int:
        tid = next(self._tx_ids)
        snapshot = (copy.deepcopy(self._ns), dict(self._symbols), dict(self._bodies))
        self._open[tid] = (description, snapshot)
        return tid

    def end_transaction(self, transaction_id: int, commit: bool) -> None:
        description, snapshot = self._open.pop(transaction_id)
        if commit:
            self.committed.append(description)
        else:
            self._ns, self._symbols, self._bodies = snapshot
            self.rolled_back.append(description)

    def add_listener(self, listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


@pytest.fixture
def fake_program():
    """Factory for empty FakePrograms."""
    return FakeProgram


@pytest.fixture
def program():
    """A small program with two modules, a global function and some strings.

    crypto_mod   0x1000-0x12ff  encrypt, decrypt, key_schedule
    net_mod      0x2000-0x21ff  connect, send_packet
    Global       0x3000         entry
    """
    prog = FakeProgram("firmware.bin")
    crypto = prog.add_namespace("crypto_mod")
    net = prog.add_namespace("net_mod")

    prog.add_function("encrypt", 0x1000, 0x10FF, crypto.id)
    prog.add_function("decrypt", 0x1100, 0x11FF, crypto.id)
    prog.add_function("key_schedule", 0x1200, 0x12FF, crypto.id)
    prog.add_function("connect", 0x2000, 0x20FF, net.id)
    prog.add_function("send_packet", 0x2100, 0x21FF, net.id)
    prog.add_function("entry", 0x3000, 0x30FF)
    prog.add_symbol("DAT_4000", 0x4000, kind=SymbolKind.LABEL, source=SourceType.DEFAULT)

    prog.add_string(0x5000, "cipher key schedule failed")
    prog.add_string(0x5100, "cipher block size %d")
    prog.add_string(0x5200, "socket connect failed")
    prog.add_string(0x5300, "socket timeout")
    prog.add_reference(0x1010, 0x5000)
    prog.add_reference(0x1110, 0x5100)
    prog.add_reference(0x2010, 0x5200)
    prog.add_reference(0x2110, 0x5300)
    prog.add_reference(0x3010, 0x1000, "UNCONDITIONAL_CALL", is_data=False)
    return prog


@pytest.fixture
def token():
    """An active bulk-edit token."""
    with BulkEditGuard().scope("test") as tok:
        yield tok


@pytest.fixture
def monitor():
    return TaskMonitor("test")


@pytest.fixture
def session(program):
    """A CodeCutSession with the sample program active."""
    from codecut_mcp.session import CodeCutSession

    sess = CodeCutSession()
    sess.activate(program)
    yield sess
    sess.dispose()


@pytest.fixture
def mock_config(tmp_path, monkeypatch):
    """Mock the config module with temporary directories."""
    from codecut_mcp import config as cfg
    from codecut_mcp import preferences

    project_dir = tmp_path / "projects"
    project_dir.mkdir()

    exports_dir = tmp_path / "exports"
    exports_dir.mkdir()

    log_dir = tmp_path / "logs"
    log_dir.mkdir()

    preferences_file = tmp_path / "prefs" / "preferences.json"

    monkeypatch.setattr(cfg.config, "project_dir", project_dir)
    monkeypatch.setattr(cfg.config, "exports_dir", exports_dir)
    monkeypatch.setattr(cfg.config, "log_dir", log_dir)
    monkeypatch.setattr(cfg.config, "preferences_file", preferences_file)
    preferences.reset_preferences()

    yield {
        "project_dir": project_dir,
        "exports_dir": exports_dir,
        "log_dir": log_dir,
        "preferences_file": preferences_file,
    }

    preferences.reset_preferences()
