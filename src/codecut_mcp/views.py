"""
Symbol table and reference views.

These are the headless counterparts of the symbol and reference tables:
they hold what a client is looking at (filter, selected symbol, reference
mode) and read everything else from the program on demand.
"""

from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from .models import AddressRange, ReferenceRecord, SourceType, SymbolKind, SymbolRecord
from .program import ProgramAdapter


@dataclass(frozen=True)
class SymbolFilter:
    functions: bool = True
    labels: bool = True
    namespaces: bool = False
    variables: bool = False
    externals: bool = True
    dynamic: bool = False
    user_defined: bool = True
    analysis: bool = True
    imported: bool = True
    default_source: bool = True
    name_contains: Optional[str] = None

    def accepts(self, symbol: SymbolRecord) -> bool:
        if symbol.is_deleted:
            return False
        if symbol.is_dynamic and not self.dynamic:
            return False
        if symbol.is_external and not self.externals:
            return False

        kind = symbol.kind
        if kind == SymbolKind.FUNCTION and not self.functions:
            return False
        if kind == SymbolKind.LABEL and not self.labels:
            return False
        if kind in (SymbolKind.NAMESPACE, SymbolKind.CLASS, SymbolKind.LIBRARY) and not self.namespaces:
            return False
        if kind in (SymbolKind.PARAMETER, SymbolKind.LOCAL_VAR, SymbolKind.GLOBAL_VAR) and not self.variables:
            return False

        source_ok = {
            SourceType.USER_DEFINED: self.user_defined,
            SourceType.ANALYSIS: self.analysis,
            SourceType.IMPORTED: self.imported,
            SourceType.DEFAULT: self.default_source,
        }[symbol.source]
        if not source_ok:
            return False

        if self.name_contains and self.name_contains.lower() not in symbol.name.lower():
            return False
        return True

    def updated(self, **changes: Any) -> "SymbolFilter":
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown filter options: {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReferenceMode(Enum):
    REFERENCES_TO = "to"
    INSTRUCTIONS_FROM = "instructions_from"
    DATA_FROM = "data_from"


def symbol_row(symbol: SymbolRecord) -> Dict[str, Any]:
    return {
        "id": symbol.id,
        "name": symbol.name,
        "address": f"0x{symbol.address:x}",
        "namespace": symbol.namespace_name,
        "type": symbol.kind.value,
        "source": symbol.source.value,
        "primary": symbol.is_primary,
        "references": symbol.reference_count,
    }


def sorted_rows(rows: Dict[int, SymbolRecord], namespace_id: Optional[int] = None) -> List[SymbolRecord]:
    selected = rows.values()
    if namespace_id is not None:
        selected = [s for s in selected if s.namespace_id == namespace_id]
    return sorted(selected, key=lambda s: (s.address, s.name))


class ReferenceView:
    """References of the selected symbol in one of three modes."""

    def __init__(self):
        self.mode = ReferenceMode.REFERENCES_TO

    def references(self, program: ProgramAdapter, symbol: SymbolRecord) -> List[ReferenceRecord]:
        if self.mode == ReferenceMode.REFERENCES_TO:
            return program.references_to(symbol.address)

        body = program.function_body(symbol.id) if symbol.is_function() else None
        if body is None:
            body = AddressRange(symbol.address, symbol.address)
        refs = program.references_from(body)
        if self.mode == ReferenceMode.DATA_FROM:
            return [r for r in refs if r.is_data]
        return [r for r in refs if not r.is_data]
