"""
Host program adapter.

Everything CodeCut does to a program goes through ``ProgramAdapter``. The
production implementation wraps a live Ghidra ``Program`` over JPype
(see ``bridge.ghidra_program``); the symbol table, address spaces,
transactions and change events all stay owned by Ghidra.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, List, Optional

from .models import (
    AddressRange,
    DefinedString,
    NamespaceRecord,
    ReferenceRecord,
    SymbolRecord,
)


class ProgramError(Exception):
    """Base exception for failures reported by the host program."""
    pass


class DuplicateNameError(ProgramError):
    """Raised when a name is already taken within its parent namespace."""
    pass


class InvalidInputError(ProgramError):
    """Raised when the host rejects a name or argument."""
    pass


class SymbolNotFoundError(ProgramError):
    """Raised when a symbol id, name or address does not resolve."""
    pass


class NamespaceNotFoundError(ProgramError):
    """Raised when a namespace id or name does not resolve."""
    pass


ChangeListener = Callable[[Any], None]


class ProgramAdapter(ABC):
    """Narrow view of a host program used by the CodeCut operations."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    # Namespaces

    @abstractmethod
    def global_namespace(self) -> NamespaceRecord:
        ...

    @abstractmethod
    def get_namespace(self, namespace_id: int) -> Optional[NamespaceRecord]:
        ...

    @abstractmethod
    def namespaces(self) -> List[NamespaceRecord]:
        """All namespaces except the global one."""

    @abstractmethod
    def child_namespaces(self, parent_id: int) -> List[NamespaceRecord]:
        ...

    @abstractmethod
    def find_namespace(self, name: str, parent_id: Optional[int] = None) -> Optional[NamespaceRecord]:
        """Namespace called ``name`` directly below ``parent_id`` (global when None)."""

    @abstractmethod
    def create_namespace(self, parent_id: Optional[int], name: str) -> NamespaceRecord:
        """Create a user-defined namespace. Raises DuplicateNameError."""

    @abstractmethod
    def delete_namespace(self, namespace_id: int) -> None:
        ...

    @abstractmethod
    def namespace_body(self, namespace_id: int) -> Optional[AddressRange]:
        """Smallest range covering the namespace body, None when empty."""

    @abstractmethod
    def namespace_at(self, address: int) -> NamespaceRecord:
        """Innermost namespace of the code at ``address``."""

    # Symbols

    @abstractmethod
    def symbols(self) -> Iterable[SymbolRecord]:
        """Defined (non-dynamic) symbols in address order."""

    @abstractmethod
    def symbols_in(self, namespace_id: int) -> List[SymbolRecord]:
        ...

    @abstractmethod
    def get_symbol(self, symbol_id: int) -> Optional[SymbolRecord]:
        ...

    @abstractmethod
    def primary_symbol_at(self, address: int) -> Optional[SymbolRecord]:
        ...

    @abstractmethod
    def symbols_at(self, address: int) -> List[SymbolRecord]:
        ...

    @abstractmethod
    def find_symbols(self, name: str) -> List[SymbolRecord]:
        ...

    @abstractmethod
    def set_symbol_namespace(self, symbol_id: int, namespace_id: int) -> SymbolRecord:
        ...

    @abstractmethod
    def delete_symbol(self, symbol_id: int) -> None:
        ...

    # References and data

    @abstractmethod
    def references_to(self, address: int) -> List[ReferenceRecord]:
        ...

    @abstractmethod
    def references_from(self, body: AddressRange) -> List[ReferenceRecord]:
        """References whose source lies in ``body``."""

    @abstractmethod
    def function_body(self, symbol_id: int) -> Optional[AddressRange]:
        ...

    @abstractmethod
    def defined_strings(self) -> Iterable[DefinedString]:
        ...

    @abstractmethod
    def defined_data_count(self) -> int:
        ...

    # Transactions and events

    @abstractmethod
    def start_transaction(self, description: str) -> int:
        ...

    @abstractmethod
    def end_transaction(self, transaction_id: int, commit: bool) -> None:
        ...

    @abstractmethod
    def add_listener(self, listener: ChangeListener) -> None:
        ...

    @abstractmethod
    def remove_listener(self, listener: ChangeListener) -> None:
        ...

    @contextmanager
    def transaction(self, description: str) -> Iterator[int]:
        """Commit when the block finishes, roll back when it raises."""
        tid = self.start_transaction(description)
        try:
            yield tid
        except BaseException:
            self.end_transaction(tid, False)
            raise
        self.end_transaction(tid, True)

    def function_symbols(self) -> List[SymbolRecord]:
        return [s for s in self.symbols() if s.is_function()]

    def resolve_symbol(self, ref: str) -> SymbolRecord:
        """Find a symbol by name, ``0x`` address or ``#id``."""
        ref = ref.strip()
        if ref.startswith("#"):
            symbol = self.get_symbol(int(ref[1:]))
            if symbol is not None:
                return symbol
        elif ref.lower().startswith("0x"):
            symbol = self.primary_symbol_at(int(ref, 16))
            if symbol is not None:
                return symbol
        else:
            matches = self.find_symbols(ref)
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                raise SymbolNotFoundError(
                    f"Symbol name '{ref}' is ambiguous ({len(matches)} matches); use an address or #id"
                )
        raise SymbolNotFoundError(f"Symbol '{ref}' not found")

    def resolve_namespace(self, ref: str) -> NamespaceRecord:
        """Find a namespace by ``#id``, ``A::B`` path or top-level name."""
        ref = ref.strip()
        if ref.startswith("#"):
            ns = self.get_namespace(int(ref[1:]))
            if ns is not None:
                return ns
            raise NamespaceNotFoundError(f"Namespace '{ref}' not found")

        parent_id = None
        ns = None
        for part in ref.split("::"):
            ns = self.find_namespace(part, parent_id)
            if ns is None:
                raise NamespaceNotFoundError(f"Namespace '{ref}' not found")
            parent_id = ns.id
        if ns is None:
            raise NamespaceNotFoundError(f"Namespace '{ref}' not found")
        return ns
