"""
ProgramAdapter over a live Ghidra Program reached through JPype.

Java objects never leave this module: symbols, namespaces and references
are snapshotted into the records of ``codecut_mcp.models`` and Ghidra's
change records are translated into ``events.ChangeEvent`` values before
the session sees them.

All Ghidra imports are local to the methods that use them because the
``ghidra`` package only exists once the bridge has started the JVM.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..events import RELOAD_KINDS, ChangeEvent, ChangeKind, ChangeRecord
from ..models import (
    AddressRange,
    DefinedString,
    NamespaceRecord,
    ReferenceRecord,
    SourceType,
    SymbolKind,
    SymbolRecord,
)
from ..program import (
    ChangeListener,
    DuplicateNameError,
    InvalidInputError,
    NamespaceNotFoundError,
    ProgramAdapter,
    ProgramError,
    SymbolNotFoundError,
)

logger = logging.getLogger("codecut.ghidra")


@contextmanager
def _java_errors(action: str) -> Iterator[None]:
    """Turn any Java exception raised in the block into a ProgramError."""
    from jpype import JException

    try:
        yield
    except JException as e:
        raise ProgramError(f"{action}: {e}") from e


def _make_domain_listener(adapter: "GhidraProgram", listener: ChangeListener) -> Any:
    from jpype import JImplements, JOverride

    @JImplements("ghidra.framework.model.DomainObjectListener")
    class CodeCutDomainListener:
        @JOverride
        def domainObjectChanged(self, ev):
            try:
                event = adapter.translate_event(ev)
                if event.records:
                    listener(event)
            except Exception:
                # raising back into the JVM would only reach Ghidra's event queue
                logger.exception("Change listener failed")

    return CodeCutDomainListener()


class GhidraProgram(ProgramAdapter):
    """Adapter for a ``ghidra.program.model.listing.Program``."""

    def __init__(self, program: Any):
        self._program = program
        self._symbol_table = program.getSymbolTable()
        self._space = program.getAddressFactory().getDefaultAddressSpace()
        self._listeners: Dict[ChangeListener, Any] = {}

    @property
    def java_program(self) -> Any:
        return self._program

    @property
    def name(self) -> str:
        return str(self._program.getName())

    # =========================================================================
    # Conversions
    # =========================================================================

    def _addr(self, offset: int) -> Any:
        return self._space.getAddress(offset)

    def _address_set(self, body: AddressRange) -> Any:
        from ghidra.program.model.address import AddressSet
        return AddressSet(self._addr(body.min_address), self._addr(body.max_address))

    @staticmethod
    def _range(address_set: Any) -> Optional[AddressRange]:
        if address_set is None or address_set.isEmpty():
            return None
        return AddressRange(
            int(address_set.getMinAddress().getOffset()),
            int(address_set.getMaxAddress().getOffset()),
        )

    def _namespace_record(self, ns: Any) -> NamespaceRecord:
        is_global = bool(ns.isGlobal())
        parent = None if is_global else ns.getParentNamespace()
        return NamespaceRecord(
            id=int(ns.getID()),
            name=str(ns.getName()),
            parent_id=int(parent.getID()) if parent is not None else None,
            is_global=is_global,
            full_path=str(ns.getName(True)),
        )

    def _symbol_record(self, sym: Any) -> SymbolRecord:
        if sym.isDeleted():
            return SymbolRecord(
                id=int(sym.getID()),
                name="",
                address=0,
                namespace_id=0,
                namespace_name="",
                kind=SymbolKind.OTHER,
                is_deleted=True,
            )

        ns = sym.getParentNamespace()
        try:
            source = SourceType(str(sym.getSource().name()))
        except ValueError:
            source = SourceType.DEFAULT
        return SymbolRecord(
            id=int(sym.getID()),
            name=str(sym.getName()),
            address=int(sym.getAddress().getOffset()),
            namespace_id=int(ns.getID()),
            namespace_name=str(ns.getName(True)),
            kind=SymbolKind.from_host(str(sym.getSymbolType())),
            is_primary=bool(sym.isPrimary()),
            is_dynamic=bool(sym.isDynamic()),
            is_external=bool(sym.isExternal()),
            source=source,
            reference_count=int(sym.getReferenceCount()),
        )

    @staticmethod
    def _reference_record(ref: Any) -> ReferenceRecord:
        ref_type = ref.getReferenceType()
        return ReferenceRecord(
            from_address=int(ref.getFromAddress().getOffset()),
            to_address=int(ref.getToAddress().getOffset()),
            ref_type=str(ref_type),
            is_data=bool(ref_type.isData()),
            is_flow=bool(ref_type.isFlow()),
            to_memory=bool(ref.getToAddress().isMemoryAddress()),
        )

    # =========================================================================
    # Java object lookup
    # =========================================================================

    def _java_namespace(self, namespace_id: Optional[int]) -> Any:
        from ghidra.program.model.symbol import Namespace

        global_ns = self._program.getGlobalNamespace()
        if namespace_id is None or namespace_id == int(global_ns.getID()):
            return global_ns
        sym = self._symbol_table.getSymbol(namespace_id)
        if sym is not None:
            obj = sym.getObject()
            if isinstance(obj, Namespace):
                return obj
        raise NamespaceNotFoundError(f"Namespace #{namespace_id} not found")

    def _java_symbol(self, symbol_id: int) -> Any:
        sym = self._symbol_table.getSymbol(symbol_id)
        if sym is None:
            raise SymbolNotFoundError(f"Symbol #{symbol_id} not found")
        return sym

    @staticmethod
    def _is_module_namespace(sym: Any) -> bool:
        from ghidra.program.model.symbol import SymbolType
        sym_type = sym.getSymbolType()
        return sym_type == SymbolType.NAMESPACE or sym_type == SymbolType.CLASS

    # =========================================================================
    # Namespaces
    # =========================================================================

    def global_namespace(self) -> NamespaceRecord:
        return self._namespace_record(self._program.getGlobalNamespace())

    def get_namespace(self, namespace_id: int) -> Optional[NamespaceRecord]:
        try:
            return self._namespace_record(self._java_namespace(namespace_id))
        except NamespaceNotFoundError:
            return None

    def child_namespaces(self, parent_id: int) -> List[NamespaceRecord]:
        parent = self._java_namespace(parent_id)
        children = []
        for sym in self._symbol_table.getSymbols(parent):
            if self._is_module_namespace(sym):
                children.append(self._namespace_record(sym.getObject()))
        return children

    def namespaces(self) -> List[NamespaceRecord]:
        found: List[NamespaceRecord] = []
        pending = self.child_namespaces(self.global_namespace().id)
        while pending:
            ns = pending.pop(0)
            found.append(ns)
            pending.extend(self.child_namespaces(ns.id))
        return found

    def find_namespace(self, name: str, parent_id: Optional[int] = None) -> Optional[NamespaceRecord]:
        parent = self._java_namespace(parent_id)
        ns = self._symbol_table.getNamespace(name, parent)
        if ns is None:
            return None
        return self._namespace_record(ns)

    def create_namespace(self, parent_id: Optional[int], name: str) -> NamespaceRecord:
        from ghidra.program.model.symbol import SourceType as JSourceType
        from ghidra.util.exception import DuplicateNameException, InvalidInputException

        parent = self._java_namespace(parent_id)
        with _java_errors(f"Cannot create namespace '{name}'"):
            try:
                ns = self._symbol_table.createNameSpace(parent, name, JSourceType.USER_DEFINED)
            except DuplicateNameException as e:
                raise DuplicateNameError(f"Namespace '{name}' already exists: {e.getMessage()}")
            except InvalidInputException as e:
                raise InvalidInputError(f"Invalid namespace name '{name}': {e.getMessage()}")
        return self._namespace_record(ns)

    def delete_namespace(self, namespace_id: int) -> None:
        ns = self._java_namespace(namespace_id)
        if ns.isGlobal():
            raise ProgramError("The global namespace cannot be deleted")
        with _java_errors(f"Cannot delete namespace {ns.getName(True)}"):
            deleted = ns.getSymbol().delete()
        if not deleted:
            raise ProgramError(f"Ghidra refused to delete namespace {ns.getName(True)}")

    def namespace_body(self, namespace_id: int) -> Optional[AddressRange]:
        return self._range(self._java_namespace(namespace_id).getBody())

    def namespace_at(self, address: int) -> NamespaceRecord:
        return self._namespace_record(self._symbol_table.getNamespace(self._addr(address)))

    # =========================================================================
    # Symbols
    # =========================================================================

    def symbols(self) -> Iterable[SymbolRecord]:
        records = [self._symbol_record(s) for s in self._symbol_table.getDefinedSymbols()]
        records.sort(key=lambda s: s.address)
        return records

    def symbols_in(self, namespace_id: int) -> List[SymbolRecord]:
        ns = self._java_namespace(namespace_id)
        return [self._symbol_record(s) for s in self._symbol_table.getSymbols(ns)]

    def get_symbol(self, symbol_id: int) -> Optional[SymbolRecord]:
        sym = self._symbol_table.getSymbol(symbol_id)
        if sym is None:
            return None
        return self._symbol_record(sym)

    def primary_symbol_at(self, address: int) -> Optional[SymbolRecord]:
        sym = self._symbol_table.getPrimarySymbol(self._addr(address))
        if sym is None:
            return None
        return self._symbol_record(sym)

    def symbols_at(self, address: int) -> List[SymbolRecord]:
        return [self._symbol_record(s) for s in self._symbol_table.getSymbols(self._addr(address))]

    def find_symbols(self, name: str) -> List[SymbolRecord]:
        from java.lang import String
        return [self._symbol_record(s) for s in self._symbol_table.getSymbols(String(name))]

    def set_symbol_namespace(self, symbol_id: int, namespace_id: int) -> SymbolRecord:
        from ghidra.util.exception import (
            CircularDependencyException,
            DuplicateNameException,
            InvalidInputException,
        )

        sym = self._java_symbol(symbol_id)
        ns = self._java_namespace(namespace_id)
        with _java_errors(f"Cannot move {sym.getName()} into {ns.getName(True)}"):
            try:
                sym.setNamespace(ns)
            except DuplicateNameException as e:
                raise DuplicateNameError(
                    f"{sym.getName()} already exists in {ns.getName(True)}: {e.getMessage()}"
                )
            except (InvalidInputException, CircularDependencyException) as e:
                raise InvalidInputError(
                    f"Cannot move {sym.getName()} into {ns.getName(True)}: {e.getMessage()}"
                )
        return self._symbol_record(sym)

    def delete_symbol(self, symbol_id: int) -> None:
        sym = self._java_symbol(symbol_id)
        with _java_errors(f"Cannot delete symbol {sym.getName(True)}"):
            deleted = sym.delete()
        if not deleted:
            raise ProgramError(f"Ghidra refused to delete symbol {sym.getName(True)}")

    # =========================================================================
    # References and data
    # =========================================================================

    def references_to(self, address: int) -> List[ReferenceRecord]:
        refs = self._program.getReferenceManager().getReferencesTo(self._addr(address))
        return [self._reference_record(r) for r in refs]

    def references_from(self, body: AddressRange) -> List[ReferenceRecord]:
        ref_mgr = self._program.getReferenceManager()
        records = []
        for from_addr in ref_mgr.getReferenceSourceIterator(self._address_set(body), True):
            for ref in ref_mgr.getReferencesFrom(from_addr):
                records.append(self._reference_record(ref))
        return records

    def function_body(self, symbol_id: int) -> Optional[AddressRange]:
        sym = self._java_symbol(symbol_id)
        func = self._program.getFunctionManager().getFunctionAt(sym.getAddress())
        if func is None:
            return None
        return self._range(func.getBody())

    def defined_strings(self) -> Iterable[DefinedString]:
        from ghidra.program.model.data import StringDataInstance
        from ghidra.program.util import DefinedDataIterator

        for data in DefinedDataIterator.definedStrings(self._program):
            value = StringDataInstance.getStringDataInstance(data).getStringValue()
            if value is None:
                continue
            yield DefinedString(int(data.getAddress().getOffset()), str(value))

    def defined_data_count(self) -> int:
        return int(self._program.getListing().getNumDefinedData())

    # =========================================================================
    # Transactions and events
    # =========================================================================

    def start_transaction(self, description: str) -> int:
        return int(self._program.startTransaction(description))

    def end_transaction(self, transaction_id: int, commit: bool) -> None:
        self._program.endTransaction(transaction_id, commit)

    def add_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            return
        java_listener = _make_domain_listener(self, listener)
        self._listeners[listener] = java_listener
        self._program.addListener(java_listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        java_listener = self._listeners.pop(listener, None)
        if java_listener is not None:
            self._program.removeListener(java_listener)

    def translate_event(self, ev: Any) -> ChangeEvent:
        """Turn a DomainObjectChangedEvent into a ChangeEvent."""
        from ghidra.program.util import ProgramChangeRecord

        records = []
        for i in range(ev.numRecords()):
            rec = ev.getChangeRecord(i)
            kind = ChangeKind.from_host(str(rec.getEventType()))
            if kind is None:
                continue
            if kind in RELOAD_KINDS:
                records.append(ChangeRecord(kind))
                continue
            if not isinstance(rec, ProgramChangeRecord):
                continue
            translated = self._translate_record(kind, rec)
            if translated is not None:
                records.append(translated)
        return ChangeEvent(tuple(records))

    def _optional_symbol(self, sym: Any) -> Optional[SymbolRecord]:
        return self._symbol_record(sym) if sym is not None else None

    def _translate_record(self, kind: ChangeKind, rec: Any) -> Optional[ChangeRecord]:
        from ghidra.program.model.listing import Data

        st = self._symbol_table
        start = rec.getStart()
        address = int(start.getOffset()) if start is not None else None

        if kind in (ChangeKind.CODE_ADDED, ChangeKind.CODE_REMOVED):
            is_data = isinstance(rec.getNewValue(), Data)
            primary = st.getPrimarySymbol(start) if is_data and start is not None else None
            return ChangeRecord(kind, address, is_data=is_data, primary=self._optional_symbol(primary))

        if kind == ChangeKind.SYMBOL_ADDED:
            primary = st.getPrimarySymbol(start) if start is not None else None
            return ChangeRecord(
                kind,
                address,
                symbol=self._optional_symbol(rec.getNewValue()),
                primary=self._optional_symbol(primary),
            )

        if kind == ChangeKind.SYMBOL_REMOVED:
            new_value = rec.getNewValue()
            primary = st.getPrimarySymbol(start) if start is not None else None
            return ChangeRecord(
                kind,
                address,
                symbol_id=int(new_value) if new_value is not None else None,
                primary=self._optional_symbol(primary),
            )

        if kind in (ChangeKind.SYMBOL_RENAMED, ChangeKind.SYMBOL_SCOPE_CHANGED,
                    ChangeKind.SYMBOL_DATA_CHANGED, ChangeKind.SYMBOL_SOURCE_CHANGED):
            return ChangeRecord(kind, address, symbol=self._optional_symbol(rec.getObject()))

        if kind == ChangeKind.SYMBOL_PRIMARY_STATE_CHANGED:
            return ChangeRecord(
                kind,
                address,
                symbol=self._optional_symbol(rec.getNewValue()),
                old_symbol=self._optional_symbol(rec.getOldValue()),
            )

        if kind in (ChangeKind.SYMBOL_ASSOCIATION_ADDED, ChangeKind.SYMBOL_ASSOCIATION_REMOVED):
            return ChangeRecord(kind, address)

        if kind in (ChangeKind.REFERENCE_ADDED, ChangeKind.REFERENCE_REMOVED):
            ref = rec.getObject()
            if ref is None:
                return None
            to_addr = ref.getToAddress()
            to_memory = bool(to_addr.isMemoryAddress())
            symbol = st.getSymbol(ref) if to_memory else None
            dynamic_id = None
            if kind == ChangeKind.REFERENCE_REMOVED and to_memory and symbol is None:
                dynamic_id = int(st.getDynamicSymbolID(to_addr))
            return ChangeRecord(
                kind,
                int(to_addr.getOffset()),
                symbol=self._optional_symbol(symbol),
                to_memory=to_memory,
                dynamic_symbol_id=dynamic_id,
            )

        if kind in (ChangeKind.EXTERNAL_ENTRY_ADDED, ChangeKind.EXTERNAL_ENTRY_REMOVED):
            at = tuple(self._symbol_record(s) for s in st.getSymbols(start)) if start is not None else ()
            return ChangeRecord(kind, address, symbols_at=at)

        return None
