"""
Namespace (module) editing helpers.

CodeCut treats each namespace directly below the global namespace as a
module of the original binary. Renaming never happens in place: the host
does not merge cleanly on rename, so a fresh namespace is created, every
symbol is migrated, and the emptied namespace is deleted.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from .bulk import BulkEditToken
from .models import AddressRange, NamespaceRecord, SymbolRecord
from .program import DuplicateNameError, InvalidInputError, ProgramAdapter, ProgramError

logger = logging.getLogger("codecut.namespaces")


def all_namespaces(program: ProgramAdapter) -> List[NamespaceRecord]:
    return program.namespaces()


def top_level_namespaces(program: ProgramAdapter) -> List[NamespaceRecord]:
    return program.child_namespaces(program.global_namespace().id)


def matching_namespaces(
    program: ProgramAdapter,
    name: str,
    roots: Optional[Sequence[NamespaceRecord]] = None,
) -> List[NamespaceRecord]:
    """Every namespace called ``name`` anywhere below ``roots``."""
    if roots is None:
        roots = [program.global_namespace()]

    matches = []
    stack = list(roots)
    seen = set()
    while stack:
        ns = stack.pop()
        if ns.id in seen:
            continue
        seen.add(ns.id)
        for child in program.child_namespaces(ns.id):
            if child.name == name:
                matches.append(child)
            stack.append(child)
    return matches


def namespace_range(program: ProgramAdapter, ns: NamespaceRecord) -> Optional[AddressRange]:
    return program.namespace_body(ns.id)


def unique_namespace_name(program: ProgramAdapter, base: str, taken: Iterable[str] = ()) -> str:
    """``base`` if unused, else ``base`` plus the smallest free integer suffix."""
    taken = set(taken)
    name = base
    num = 1
    while name in taken or matching_namespaces(program, name):
        name = f"{base}{num}"
        num += 1
    return name


def create_unique_namespace(
    program: ProgramAdapter,
    parent_id: Optional[int],
    base: str,
    limit: int = 1000,
) -> NamespaceRecord:
    """Create ``base``, or the first suffixed name the host accepts.

    Names used by any namespace are skipped up front; names the host still
    rejects (a function or class of that name, say) are skipped on
    ``DuplicateNameError``.
    """
    rejected = set()
    for _ in range(limit):
        name = unique_namespace_name(program, base, rejected)
        try:
            return program.create_namespace(parent_id, name)
        except DuplicateNameError:
            rejected.add(name)
    raise DuplicateNameError(f"No free name for namespace {base}")


def validate_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidInputError("Namespace name must not be empty")
    if any(c.isspace() for c in name) or "::" in name:
        raise InvalidInputError(f"Invalid namespace name: '{name}'")
    return name


def move_symbols(
    program: ProgramAdapter,
    symbols: Iterable[SymbolRecord],
    target: NamespaceRecord,
) -> int:
    """Reparent symbols into ``target``; caller owns the transaction."""
    moved = 0
    for symbol in symbols:
        if symbol.namespace_id == target.id or symbol.id == target.id:
            continue
        program.set_symbol_namespace(symbol.id, target.id)
        moved += 1
    return moved


def _delete_if_empty(program: ProgramAdapter, ns: NamespaceRecord) -> bool:
    if program.symbols_in(ns.id) or program.child_namespaces(ns.id):
        logger.warning(f"Namespace {ns.name} still has members, leaving it in place")
        return False
    program.delete_namespace(ns.id)
    return True


def rename_namespace(
    program: ProgramAdapter,
    ns: NamespaceRecord,
    new_name: str,
    token: BulkEditToken,
    unique: bool = False,
) -> NamespaceRecord:
    """Move everything in ``ns`` into a new sibling called ``new_name``.

    With ``unique=True`` a taken name gets a numeric suffix instead of
    raising ``DuplicateNameError``.
    """
    token.check()
    if ns.is_global:
        raise InvalidInputError("The global namespace cannot be renamed")

    new_name = validate_name(new_name)
    if new_name == ns.name:
        return ns

    with program.transaction(f"Rename namespace {ns.name}"):
        if unique:
            new_ns = create_unique_namespace(program, ns.parent_id, new_name)
        else:
            new_ns = program.create_namespace(ns.parent_id, new_name)
        logger.info(f"Created namespace {new_name} for module {ns.name}")
        moved = move_symbols(program, program.symbols_in(ns.id), new_ns)
        _delete_if_empty(program, ns)

    logger.info(f"Namespace {ns.name} renamed to {new_ns.name} ({moved} symbols)")
    return new_ns


def split_namespace(
    program: ProgramAdapter,
    symbol: SymbolRecord,
    new_name: str,
    token: BulkEditToken,
) -> NamespaceRecord:
    """Start a new module at ``symbol``.

    The symbol and every later symbol of its namespace move into a new
    namespace created next to the old one.
    """
    token.check()
    ns = program.get_namespace(symbol.namespace_id)
    if ns is None:
        raise ProgramError(f"Namespace of {symbol.name} no longer exists")

    new_name = validate_name(new_name)
    parent_id = ns.parent_id if not ns.is_global else ns.id
    tail = [s for s in program.symbols_in(ns.id) if s.address >= symbol.address]

    with program.transaction(f"Split namespace {ns.name}"):
        new_ns = program.create_namespace(parent_id, new_name)
        moved = move_symbols(program, tail, new_ns)

    logger.info(f"Split {ns.name} at {symbol.name}: {moved} symbols moved to {new_ns.name}")
    return new_ns


def combine_namespaces(
    program: ProgramAdapter,
    first: NamespaceRecord,
    second: NamespaceRecord,
    token: BulkEditToken,
    new_name: Optional[str] = None,
) -> NamespaceRecord:
    """Fold ``second`` into ``first``, optionally renaming the result."""
    token.check()
    if first.id == second.id:
        raise InvalidInputError(f"Cannot combine namespace {first.name} with itself")
    if first.is_global or second.is_global:
        raise InvalidInputError("The global namespace cannot be combined")

    with program.transaction(f"Combine {second.name} into {first.name}"):
        moved = move_symbols(program, program.symbols_in(second.id), first)
        _delete_if_empty(program, second)
    logger.info(f"Combined {second.name} into {first.name} ({moved} symbols)")

    if new_name and new_name != first.name:
        return rename_namespace(program, first, new_name, token)
    return first


@dataclass
class DeleteResult:
    deleted: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)


def delete_symbols(program: ProgramAdapter, symbols: Iterable[SymbolRecord]) -> DeleteResult:
    """Delete each symbol in its own transaction; failures do not stop the loop."""
    result = DeleteResult()
    for symbol in symbols:
        try:
            with program.transaction(f"Delete {symbol.name}"):
                program.delete_symbol(symbol.id)
            result.deleted.append(symbol.id)
        except ProgramError as e:
            logger.warning(f"Could not delete symbol {symbol.name}: {e}")
            result.failed[symbol.id] = str(e)
    return result


def describe_namespace(program: ProgramAdapter, ns: NamespaceRecord) -> Dict:
    body = namespace_range(program, ns)
    return {
        "id": ns.id,
        "name": ns.name,
        "path": ns.display_name(),
        "symbol_count": len(program.symbols_in(ns.id)),
        "start": f"0x{body.min_address:x}" if body else None,
        "end": f"0x{body.max_address:x}" if body else None,
    }
