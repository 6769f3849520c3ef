"""
Program change dispatch.

Host change notifications are translated into ``ChangeRecord`` values (see
``bridge.ghidra_program``) and folded into the symbol view state here. Each
change kind has one arm; every arm is a pure function from
``(record, state)`` to ``(state, updates)`` where ``updates`` tells the
views and clients what to refresh.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .models import SymbolRecord
from .views import SymbolFilter


class ChangeKind(Enum):
    OBJECT_RESTORED = "RESTORED"
    MEMORY_BLOCK_ADDED = "MEMORY_BLOCK_ADDED"
    MEMORY_BLOCK_REMOVED = "MEMORY_BLOCK_REMOVED"
    CODE_ADDED = "CODE_ADDED"
    CODE_REMOVED = "CODE_REMOVED"
    SYMBOL_ADDED = "SYMBOL_ADDED"
    SYMBOL_REMOVED = "SYMBOL_REMOVED"
    SYMBOL_RENAMED = "SYMBOL_RENAMED"
    SYMBOL_SCOPE_CHANGED = "SYMBOL_SCOPE_CHANGED"
    SYMBOL_DATA_CHANGED = "SYMBOL_DATA_CHANGED"
    SYMBOL_SOURCE_CHANGED = "SYMBOL_SOURCE_CHANGED"
    SYMBOL_PRIMARY_STATE_CHANGED = "SYMBOL_PRIMARY_STATE_CHANGED"
    SYMBOL_ASSOCIATION_ADDED = "SYMBOL_ASSOCIATION_ADDED"
    SYMBOL_ASSOCIATION_REMOVED = "SYMBOL_ASSOCIATION_REMOVED"
    REFERENCE_ADDED = "REFERENCE_ADDED"
    REFERENCE_REMOVED = "REFERENCE_REMOVED"
    EXTERNAL_ENTRY_ADDED = "EXTERNAL_ENTRY_ADDED"
    EXTERNAL_ENTRY_REMOVED = "EXTERNAL_ENTRY_REMOVED"

    @classmethod
    def from_host(cls, event_name: str) -> Optional["ChangeKind"]:
        try:
            return cls(event_name)
        except ValueError:
            return None


RELOAD_KINDS = frozenset({
    ChangeKind.OBJECT_RESTORED,
    ChangeKind.MEMORY_BLOCK_ADDED,
    ChangeKind.MEMORY_BLOCK_REMOVED,
})


@dataclass(frozen=True)
class ChangeRecord:
    kind: ChangeKind
    address: Optional[int] = None
    # new value, or the changed object, depending on the kind
    symbol: Optional[SymbolRecord] = None
    old_symbol: Optional[SymbolRecord] = None
    symbol_id: Optional[int] = None
    # lookups made by the translator so the arms stay pure
    primary: Optional[SymbolRecord] = None
    symbols_at: Tuple[SymbolRecord, ...] = ()
    is_data: bool = False
    to_memory: bool = True
    dynamic_symbol_id: Optional[int] = None


@dataclass(frozen=True)
class ChangeEvent:
    records: Tuple[ChangeRecord, ...] = ()

    def contains(self, *kinds: ChangeKind) -> bool:
        return any(r.kind in kinds for r in self.records)


class Target(Enum):
    SYMBOLS = "symbols"
    REFERENCES = "references"


class Action(Enum):
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"
    RELOAD = "reload"


@dataclass(frozen=True)
class ViewUpdate:
    target: Target
    action: Action
    symbol_id: Optional[int] = None
    symbol: Optional[SymbolRecord] = None


@dataclass(frozen=True)
class ViewState:
    rows: Mapping[int, SymbolRecord] = field(default_factory=dict)
    filter: SymbolFilter = field(default_factory=SymbolFilter)
    reference_symbol_id: Optional[int] = None


Updates = List[ViewUpdate]
Arm = Callable[[ChangeRecord, ViewState], Tuple[ViewState, Updates]]


def _put(state: ViewState, symbol: SymbolRecord) -> ViewState:
    rows = dict(state.rows)
    if state.filter.accepts(symbol):
        rows[symbol.id] = symbol
    else:
        rows.pop(symbol.id, None)
    return replace(state, rows=rows)


def _drop(state: ViewState, symbol_id: int) -> ViewState:
    rows = dict(state.rows)
    rows.pop(symbol_id, None)
    ref_id = None if state.reference_symbol_id == symbol_id else state.reference_symbol_id
    return replace(state, rows=rows, reference_symbol_id=ref_id)


def _changed(state: ViewState, symbol: SymbolRecord, references: bool = True) -> Tuple[ViewState, Updates]:
    updates = [ViewUpdate(Target.SYMBOLS, Action.CHANGED, symbol.id, symbol)]
    if references:
        updates.append(ViewUpdate(Target.REFERENCES, Action.CHANGED, symbol.id, symbol))
    return _put(state, symbol), updates


def on_code_changed(record: ChangeRecord, state: ViewState) -> Tuple[ViewState, Updates]:
    primary = record.primary
    if record.is_data and primary is not None and primary.is_dynamic:
        return _changed(state, primary)
    return state, []


def on_symbol_added(record: ChangeRecord, state: ViewState) -> Tuple[ViewState, Updates]:
    updates: Updates = []
    primary = record.primary
    if primary is not None and primary.is_dynamic:
        state = _drop(state, primary.id)
        updates.append(ViewUpdate(Target.SYMBOLS, Action.REMOVED, primary.id, primary))
    symbol = record.symbol
    if symbol is not None:
        state = _put(state, symbol)
        updates.append(ViewUpdate(Target.SYMBOLS, Action.ADDED, symbol.id, symbol))
        updates.append(ViewUpdate(Target.REFERENCES, Action.ADDED, symbol.id, symbol))
    return state, updates


def on_symbol_removed(record: ChangeRecord, state: ViewState) -> Tuple[ViewState, Updates]:
    updates: Updates = []
    if record.symbol_id is not None:
        state = _drop(state, record.symbol_id)
        updates.append(ViewUpdate(Target.SYMBOLS, Action.REMOVED, record.symbol_id))
        updates.append(ViewUpdate(Target.REFERENCES, Action.REMOVED, record.symbol_id))
    primary = record.primary
    if primary is not None and primary.is_dynamic:
        state = _put(state, primary)
        updates.append(ViewUpdate(Target.SYMBOLS, Action.ADDED, primary.id, primary))
        updates.append(ViewUpdate(Target.REFERENCES, Action.REMOVED, primary.id, primary))
    return state, updates


def on_symbol_changed(record: ChangeRecord, state: ViewState) -> Tuple[ViewState, Updates]:
    symbol = record.symbol
    if symbol is None:
        return state, []
    if symbol.is_deleted:
        return state, []
    return _changed(state, symbol)


def on_source_changed(record: ChangeRecord, state: ViewState) -> Tuple[ViewState, Updates]:
    if record.symbol is None:
        return state, []
    return _changed(state, record.symbol, references=False)


def on_primary_changed(record: ChangeRecord, state: ViewState) -> Tuple[ViewState, Updates]:
    updates: Updates = []
    if record.symbol is not None:
        state, more = _changed(state, record.symbol, references=False)
        updates.extend(more)
    if record.old_symbol is not None:
        state, more = _changed(state, record.old_symbol, references=False)
        updates.extend(more)
    return state, updates


def on_association_changed(record: ChangeRecord, state: ViewState) -> Tuple[ViewState, Updates]:
    return state, []


def on_reference_added(record: ChangeRecord, state: ViewState) -> Tuple[ViewState, Updates]:
    if record.symbol is None:
        return state, []
    return _changed(state, record.symbol)


def on_reference_removed(record: ChangeRecord, state: ViewState) -> Tuple[ViewState, Updates]:
    if not record.to_memory:
        return state, []
    if record.symbol is None:
        if record.dynamic_symbol_id is None:
            return state, []
        state = _drop(state, record.dynamic_symbol_id)
        return state, [ViewUpdate(Target.SYMBOLS, Action.REMOVED, record.dynamic_symbol_id)]
    return state, [ViewUpdate(Target.REFERENCES, Action.CHANGED, record.symbol.id, record.symbol)]


def on_external_entry_changed(record: ChangeRecord, state: ViewState) -> Tuple[ViewState, Updates]:
    updates: Updates = []
    for symbol in record.symbols_at:
        state, more = _changed(state, symbol)
        updates.extend(more)
    return state, updates


ARMS: Dict[ChangeKind, Arm] = {
    ChangeKind.CODE_ADDED: on_code_changed,
    ChangeKind.CODE_REMOVED: on_code_changed,
    ChangeKind.SYMBOL_ADDED: on_symbol_added,
    ChangeKind.SYMBOL_REMOVED: on_symbol_removed,
    ChangeKind.SYMBOL_RENAMED: on_symbol_changed,
    ChangeKind.SYMBOL_SCOPE_CHANGED: on_symbol_changed,
    ChangeKind.SYMBOL_DATA_CHANGED: on_symbol_changed,
    ChangeKind.SYMBOL_SOURCE_CHANGED: on_source_changed,
    ChangeKind.SYMBOL_PRIMARY_STATE_CHANGED: on_primary_changed,
    ChangeKind.SYMBOL_ASSOCIATION_ADDED: on_association_changed,
    ChangeKind.SYMBOL_ASSOCIATION_REMOVED: on_association_changed,
    ChangeKind.REFERENCE_ADDED: on_reference_added,
    ChangeKind.REFERENCE_REMOVED: on_reference_removed,
    ChangeKind.EXTERNAL_ENTRY_ADDED: on_external_entry_changed,
    ChangeKind.EXTERNAL_ENTRY_REMOVED: on_external_entry_changed,
}


def dispatch(event: ChangeEvent, state: ViewState) -> Tuple[ViewState, Updates]:
    """Fold every record of ``event`` into ``state``."""
    if event.contains(*RELOAD_KINDS):
        return state, [
            ViewUpdate(Target.SYMBOLS, Action.RELOAD),
            ViewUpdate(Target.REFERENCES, Action.RELOAD),
        ]

    updates: Updates = []
    for record in event.records:
        arm = ARMS.get(record.kind)
        if arm is None:
            continue
        state, more = arm(record, state)
        updates.extend(more)
    return state, updates
