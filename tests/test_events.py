"""
Unit tests for program change dispatch.

Tests cover:
- Reload events
- Symbol added/removed/changed arms
- Reference and external entry arms
- Filtering and purity of the dispatch
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from codecut_mcp.events import (
    Action,
    ChangeEvent,
    ChangeKind,
    ChangeRecord,
    Target,
    ViewState,
    ViewUpdate,
    dispatch,
)
from codecut_mcp.models import SourceType, SymbolKind, SymbolRecord
from codecut_mcp.views import SymbolFilter


def _sym(id, name="sym", address=0x1000, **fields):
    fields.setdefault("kind", SymbolKind.LABEL)
    return SymbolRecord(
        id=id, name=name, address=address, namespace_id=0, namespace_name="Global", **fields
    )


def _event(*records):
    return ChangeEvent(tuple(records))


@pytest.fixture
def label():
    return _sym(1, "LAB_1000")


@pytest.fixture
def state(label):
    return ViewState(rows={label.id: label})


class TestReload:
    """Tests for events that force a full reload."""

    @pytest.mark.parametrize("kind", [
        ChangeKind.OBJECT_RESTORED,
        ChangeKind.MEMORY_BLOCK_ADDED,
        ChangeKind.MEMORY_BLOCK_REMOVED,
    ])
    def test_reload_kinds(self, state, kind):
        new_state, updates = dispatch(_event(ChangeRecord(kind)), state)

        assert new_state is state
        assert updates == [
            ViewUpdate(Target.SYMBOLS, Action.RELOAD),
            ViewUpdate(Target.REFERENCES, Action.RELOAD),
        ]

    def test_reload_wins_over_other_records(self, state):
        added = _sym(2, "new")
        event = _event(
            ChangeRecord(ChangeKind.SYMBOL_ADDED, symbol=added),
            ChangeRecord(ChangeKind.OBJECT_RESTORED),
        )

        new_state, updates = dispatch(event, state)

        assert 2 not in new_state.rows
        assert {u.action for u in updates} == {Action.RELOAD}

    def test_from_host_names(self):
        assert ChangeKind.from_host("RESTORED") == ChangeKind.OBJECT_RESTORED
        assert ChangeKind.from_host("SYMBOL_SCOPE_CHANGED") == ChangeKind.SYMBOL_SCOPE_CHANGED
        assert ChangeKind.from_host("FUNCTION_CHANGED") is None


class TestSymbolArms:
    """Tests for symbol added/removed/changed handling."""

    def test_added_symbol_is_inserted(self, state):
        added = _sym(2, "FUN_2000", 0x2000, kind=SymbolKind.FUNCTION)

        new_state, updates = dispatch(_event(ChangeRecord(ChangeKind.SYMBOL_ADDED, 0x2000, symbol=added)), state)

        assert new_state.rows[2] == added
        assert [(u.target, u.action) for u in updates] == [
            (Target.SYMBOLS, Action.ADDED),
            (Target.REFERENCES, Action.ADDED),
        ]

    def test_added_symbol_replaces_dynamic_primary(self):
        dynamic = _sym(5, "DAT_1000", is_dynamic=True)
        state = ViewState(rows={5: dynamic}, filter=SymbolFilter(dynamic=True))
        added = _sym(6, "counter")

        new_state, updates = dispatch(
            _event(ChangeRecord(ChangeKind.SYMBOL_ADDED, 0x1000, symbol=added, primary=dynamic)), state
        )

        assert 5 not in new_state.rows
        assert 6 in new_state.rows
        assert updates[0] == ViewUpdate(Target.SYMBOLS, Action.REMOVED, 5, dynamic)

    def test_filtered_symbol_is_not_inserted(self, state):
        local = _sym(3, "local_10", kind=SymbolKind.LOCAL_VAR)

        new_state, _ = dispatch(_event(ChangeRecord(ChangeKind.SYMBOL_ADDED, symbol=local)), state)

        assert 3 not in new_state.rows

    def test_removed_symbol_is_dropped(self, state, label):
        state = ViewState(rows=state.rows, reference_symbol_id=label.id)

        new_state, updates = dispatch(
            _event(ChangeRecord(ChangeKind.SYMBOL_REMOVED, label.address, symbol_id=label.id)), state
        )

        assert new_state.rows == {}
        assert new_state.reference_symbol_id is None
        assert updates[0] == ViewUpdate(Target.SYMBOLS, Action.REMOVED, label.id)

    def test_removed_symbol_reveals_dynamic_primary(self, state, label):
        dynamic = _sym(9, "LAB_1000", is_dynamic=True)
        state = ViewState(rows=state.rows, filter=SymbolFilter(dynamic=True))

        new_state, _ = dispatch(
            _event(ChangeRecord(ChangeKind.SYMBOL_REMOVED, symbol_id=label.id, primary=dynamic)), state
        )

        assert list(new_state.rows) == [9]

    @pytest.mark.parametrize("kind", [
        ChangeKind.SYMBOL_RENAMED,
        ChangeKind.SYMBOL_SCOPE_CHANGED,
        ChangeKind.SYMBOL_DATA_CHANGED,
    ])
    def test_changed_symbol_is_updated(self, state, label, kind):
        renamed = _sym(label.id, "init_table")

        new_state, updates = dispatch(_event(ChangeRecord(kind, symbol=renamed)), state)

        assert new_state.rows[label.id].name == "init_table"
        assert {u.target for u in updates} == {Target.SYMBOLS, Target.REFERENCES}

    def test_changed_deleted_symbol_is_ignored(self, state, label):
        gone = _sym(label.id, "init_table", is_deleted=True)

        new_state, updates = dispatch(_event(ChangeRecord(ChangeKind.SYMBOL_RENAMED, symbol=gone)), state)

        assert new_state is state
        assert updates == []

    def test_source_change_leaves_references_alone(self, state, label):
        user = _sym(label.id, "LAB_1000", source=SourceType.USER_DEFINED)

        _, updates = dispatch(_event(ChangeRecord(ChangeKind.SYMBOL_SOURCE_CHANGED, symbol=user)), state)

        assert [u.target for u in updates] == [Target.SYMBOLS]

    def test_change_can_filter_a_row_out(self, label):
        state = ViewState(rows={label.id: label}, filter=SymbolFilter(name_contains="LAB"))
        renamed = _sym(label.id, "init_table")

        new_state, _ = dispatch(_event(ChangeRecord(ChangeKind.SYMBOL_RENAMED, symbol=renamed)), state)

        assert label.id not in new_state.rows

    def test_primary_change_updates_both_symbols(self, state, label):
        new_primary = _sym(4, "table_start")
        old_primary = _sym(label.id, "LAB_1000", is_primary=False)

        new_state, updates = dispatch(
            _event(ChangeRecord(
                ChangeKind.SYMBOL_PRIMARY_STATE_CHANGED, symbol=new_primary, old_symbol=old_primary
            )),
            state,
        )

        assert new_state.rows[4] == new_primary
        assert new_state.rows[label.id].is_primary is False
        assert [u.symbol_id for u in updates] == [4, label.id]

    def test_association_changes_are_ignored(self, state):
        new_state, updates = dispatch(_event(ChangeRecord(ChangeKind.SYMBOL_ASSOCIATION_ADDED)), state)

        assert new_state is state
        assert updates == []


class TestCodeAndReferenceArms:
    """Tests for code, reference and external entry handling."""

    def test_code_added_under_dynamic_data_symbol(self, state):
        dynamic = _sym(7, "DAT_3000", 0x3000, is_dynamic=True)

        new_state, updates = dispatch(
            _event(ChangeRecord(ChangeKind.CODE_ADDED, 0x3000, primary=dynamic, is_data=True)), state
        )

        assert updates[0] == ViewUpdate(Target.SYMBOLS, Action.CHANGED, 7, dynamic)
        assert 7 not in new_state.rows

    def test_code_added_for_instructions_is_ignored(self, state):
        named = _sym(8, "FUN_3000", 0x3000)

        _, updates = dispatch(_event(ChangeRecord(ChangeKind.CODE_ADDED, 0x3000, primary=named)), state)

        assert updates == []

    def test_reference_added_refreshes_target(self, state, label):
        counted = _sym(label.id, label.name, reference_count=3)

        new_state, _ = dispatch(_event(ChangeRecord(ChangeKind.REFERENCE_ADDED, symbol=counted)), state)

        assert new_state.rows[label.id].reference_count == 3

    def test_reference_removed_from_register_is_ignored(self, state, label):
        _, updates = dispatch(
            _event(ChangeRecord(ChangeKind.REFERENCE_REMOVED, symbol=label, to_memory=False)), state
        )

        assert updates == []

    def test_reference_removed_drops_orphaned_dynamic_symbol(self):
        dynamic = _sym(11, "DAT_5000", 0x5000, is_dynamic=True)
        state = ViewState(rows={11: dynamic}, filter=SymbolFilter(dynamic=True))

        new_state, updates = dispatch(
            _event(ChangeRecord(ChangeKind.REFERENCE_REMOVED, 0x5000, dynamic_symbol_id=11)), state
        )

        assert new_state.rows == {}
        assert updates == [ViewUpdate(Target.SYMBOLS, Action.REMOVED, 11)]

    def test_reference_removed_refreshes_references(self, state, label):
        new_state, updates = dispatch(
            _event(ChangeRecord(ChangeKind.REFERENCE_REMOVED, symbol=label)), state
        )

        assert new_state is state
        assert updates == [ViewUpdate(Target.REFERENCES, Action.CHANGED, label.id, label)]

    def test_external_entry_updates_every_symbol_at_address(self, state, label):
        other = _sym(12, "entry_alias")

        new_state, updates = dispatch(
            _event(ChangeRecord(ChangeKind.EXTERNAL_ENTRY_ADDED, 0x1000, symbols_at=(label, other))), state
        )

        assert set(new_state.rows) == {label.id, 12}
        assert len(updates) == 4


class TestDispatchPurity:
    """Dispatch never mutates its input state."""

    def test_input_rows_untouched(self, state, label):
        before = dict(state.rows)

        dispatch(_event(ChangeRecord(ChangeKind.SYMBOL_REMOVED, symbol_id=label.id)), state)
        dispatch(_event(ChangeRecord(ChangeKind.SYMBOL_ADDED, symbol=_sym(2))), state)

        assert dict(state.rows) == before

    def test_records_are_folded_in_order(self, state, label):
        event = _event(
            ChangeRecord(ChangeKind.SYMBOL_ADDED, symbol=_sym(2, "a")),
            ChangeRecord(ChangeKind.SYMBOL_RENAMED, symbol=_sym(2, "b")),
            ChangeRecord(ChangeKind.SYMBOL_REMOVED, symbol_id=label.id),
        )

        new_state, _ = dispatch(event, state)

        assert {k: v.name for k, v in new_state.rows.items()} == {2: "b"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
