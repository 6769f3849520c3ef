"""Snapshots of host program objects used throughout CodeCut.

Ghidra owns the real symbol table. These records are what the adapter hands
out so the rest of the package can work with plain Python values.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SymbolKind(Enum):
    FUNCTION = "Function"
    LABEL = "Label"
    NAMESPACE = "Namespace"
    CLASS = "Class"
    LIBRARY = "Library"
    PARAMETER = "Parameter"
    LOCAL_VAR = "Local Var"
    GLOBAL_VAR = "Global Var"
    OTHER = "Other"

    @classmethod
    def from_host(cls, type_name: str) -> "SymbolKind":
        # Ghidra's SymbolType.toString() returns the display names above
        for kind in cls:
            if kind.value.lower() == type_name.strip().lower():
                return kind
        return cls.OTHER


class SourceType(Enum):
    DEFAULT = "DEFAULT"
    ANALYSIS = "ANALYSIS"
    IMPORTED = "IMPORTED"
    USER_DEFINED = "USER_DEFINED"


@dataclass(frozen=True)
class AddressRange:
    # inclusive on both ends, like Ghidra's AddressRange
    min_address: int
    max_address: int

    def __post_init__(self):
        if self.max_address < self.min_address:
            raise ValueError(
                f"range end 0x{self.max_address:x} precedes start 0x{self.min_address:x}"
            )

    def contains(self, address: int) -> bool:
        return self.min_address <= address <= self.max_address

    @property
    def length(self) -> int:
        return self.max_address - self.min_address + 1

    def __repr__(self) -> str:
        return f"AddressRange(0x{self.min_address:x}-0x{self.max_address:x})"


@dataclass(frozen=True)
class NamespaceRecord:
    id: int
    name: str
    # None only for the global namespace
    parent_id: Optional[int]
    is_global: bool = False
    full_path: str = ""

    def display_name(self) -> str:
        return self.full_path or self.name


@dataclass(frozen=True)
class SymbolRecord:
    id: int
    name: str
    address: int
    namespace_id: int
    namespace_name: str
    kind: SymbolKind
    is_primary: bool = True
    is_dynamic: bool = False
    is_external: bool = False
    source: SourceType = SourceType.DEFAULT
    reference_count: int = 0
    is_deleted: bool = False

    def is_function(self) -> bool:
        return self.kind == SymbolKind.FUNCTION

    def summary(self) -> str:
        return f"{self.namespace_name}::{self.name} @ {self.address:08x} ({self.kind.value}, {self.source.value})"

    def __repr__(self) -> str:
        return f"SymbolRecord({self.name} @ {self.address:08x}, id={self.id}, ns={self.namespace_name}, kind={self.kind.name})"


@dataclass(frozen=True)
class ReferenceRecord:
    from_address: int
    to_address: int
    ref_type: str
    is_data: bool = False
    is_flow: bool = False
    to_memory: bool = True


@dataclass(frozen=True)
class DefinedString:
    address: int
    value: str


@dataclass(frozen=True)
class ProgramLocation:
    program_name: str
    address: int
    symbol_name: Optional[str] = None

    def __repr__(self) -> str:
        return f"ProgramLocation({self.program_name} @ {self.address:08x}, {self.symbol_name})"
