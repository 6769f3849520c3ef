"""
Module map import/export.

A module map is a line-oriented text file, one module per line:

     .text       0x0000000000401000      0x2a0 crypto

i.e. ``" %-11s 0x%016x %11s %s"`` with the section, base, size and module
name. Parsing splits on runs of spaces, so the leading blank produces an
empty first token and a well-formed line has exactly five tokens. Only
``.text`` lines are used; anything else is skipped.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from .bulk import BulkEditToken
from .models import NamespaceRecord, SymbolRecord
from .namespaces import create_unique_namespace, top_level_namespaces
from .program import DuplicateNameError, ProgramAdapter, ProgramError
from .tasks import TaskMonitor

logger = logging.getLogger("codecut.modmap")

MAP_EXTENSION = ".map"
TEXT_SECTION = ".text"

_SPLIT_RE = re.compile(r"[ ]+")


class ModuleMapError(Exception):
    """Raised when a map file cannot be read or written."""
    pass


@dataclass(frozen=True)
class ModuleMapEntry:
    name: str
    start: int
    size: int
    section: str = TEXT_SECTION

    @property
    def end(self) -> int:
        # exclusive
        return self.start + self.size

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end


def format_map_line(start: int, size: int, name: str, section: str = TEXT_SECTION) -> str:
    return " %-11s 0x%016x %11s %s\n" % (section, start, f"0x{size:x}", name)


def parse_map_line(line: str) -> Optional[ModuleMapEntry]:
    """Parse one map line, None when the line is not a usable ``.text`` entry."""
    tokens = _SPLIT_RE.split(line.rstrip())
    if len(tokens) != 5:
        return None
    _, section, start_str, size_str, name = tokens
    if section != TEXT_SECTION:
        return None
    try:
        start = int(start_str, 16)
        size = int(size_str, 16)
    except ValueError:
        logger.warning(f"Bad address or size in map line: {line.strip()!r}")
        return None
    if size <= 0:
        logger.warning(f"Non-positive module size in map line: {line.strip()!r}")
        return None
    return ModuleMapEntry(name=name, start=start, size=size, section=section)


def read_module_map(path: Union[str, Path]) -> List[ModuleMapEntry]:
    path = Path(path)
    entries = []
    skipped = 0
    try:
        with path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                entry = parse_map_line(line)
                if entry is None:
                    logger.debug(f"{path.name}:{lineno}: skipping {line.strip()!r}")
                    skipped += 1
                    continue
                entries.append(entry)
    except OSError as e:
        raise ModuleMapError(f"Map import failed: cannot read {path}: {e}") from e

    logger.info(f"Read {len(entries)} modules from {path} ({skipped} lines skipped)")
    return entries


def write_module_map(path: Union[str, Path], entries: List[ModuleMapEntry]) -> None:
    path = Path(path)
    try:
        with path.open("w", encoding="utf-8") as f:
            for entry in entries:
                f.write(format_map_line(entry.start, entry.size, entry.name, entry.section))
    except OSError as e:
        raise ModuleMapError(f"Map export failed: cannot write {path}: {e}") from e


def export_entries(program: ProgramAdapter) -> List[ModuleMapEntry]:
    """One entry per top-level namespace with a non-empty body."""
    entries = []
    for ns in top_level_namespaces(program):
        body = program.namespace_body(ns.id)
        if body is None:
            continue
        logger.info(
            f"Module {ns.name} base=0x{body.min_address:x} "
            f"max=0x{body.max_address:x} size=0x{body.length:x}"
        )
        entries.append(ModuleMapEntry(name=ns.name, start=body.min_address, size=body.length))
    entries.sort(key=lambda e: e.start)
    return entries


def export_module_map(program: ProgramAdapter, path: Union[str, Path]) -> List[ModuleMapEntry]:
    entries = export_entries(program)
    write_module_map(path, entries)
    logger.info(f"Exported {len(entries)} modules from {program.name} to {path}")
    return entries


@dataclass
class MapImportResult:
    entries_read: int = 0
    entries_applied: int = 0
    symbols_moved: int = 0
    namespaces_created: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    def to_dict(self) -> Dict:
        return {
            "entries_read": self.entries_read,
            "entries_applied": self.entries_applied,
            "symbols_moved": self.symbols_moved,
            "namespaces_created": self.namespaces_created,
            "failures": self.failures,
            "cancelled": self.cancelled,
        }


def _module_namespace(
    program: ProgramAdapter,
    name: str,
    created: Dict[str, NamespaceRecord],
    monitor: TaskMonitor,
) -> NamespaceRecord:
    if name in created:
        return created[name]

    ns = program.find_namespace(name, None)
    if ns is not None:
        created[name] = ns
        return ns

    monitor.set_message(f"Creating namespace {name}")
    try:
        ns = program.create_namespace(None, name)
    except DuplicateNameError:
        # taken by a non-namespace symbol at global scope
        ns = create_unique_namespace(program, None, name)
        logger.info(f"Name {name} is taken, using {ns.name}")
    logger.info(f"Creating namespace {ns.name}")
    created[name] = ns
    return ns


def apply_module_map(
    program: ProgramAdapter,
    entries: List[ModuleMapEntry],
    monitor: TaskMonitor,
    token: BulkEditToken,
) -> MapImportResult:
    """Move every function symbol into the module whose range contains it.

    Each entry is applied in its own transaction; a failing entry is rolled
    back and the rest still run. Cancellation is honoured between entries.
    """
    token.check()
    result = MapImportResult(entries_read=len(entries))
    functions: List[SymbolRecord] = program.function_symbols()
    monitor.initialize(len(functions))
    existing = {ns.name for ns in top_level_namespaces(program)}
    modules: Dict[str, NamespaceRecord] = {}

    for entry in entries:
        if monitor.is_cancelled:
            result.cancelled = True
            logger.info("Map import cancelled, keeping modules applied so far")
            break

        members = [sym for sym in functions if entry.contains(sym.address)]
        if not members:
            continue

        moved = 0
        try:
            with program.transaction("nsImport"):
                ns = _module_namespace(program, entry.name, modules, monitor)
                for sym in members:
                    if sym.namespace_id == ns.id:
                        continue
                    monitor.set_message(f"Setting namespace of {sym.name} to {ns.name}")
                    logger.debug(f"Setting namespace of {sym.name} to {ns.name}")
                    program.set_symbol_namespace(sym.id, ns.id)
                    moved += 1
        except ProgramError as e:
            logger.warning(f"Failed to apply module {entry.name}: {e}")
            result.failures[entry.name] = str(e)
            modules.pop(entry.name, None)
            continue

        if ns.name not in existing and ns.name not in result.namespaces_created:
            result.namespaces_created.append(ns.name)
        result.entries_applied += 1
        result.symbols_moved += moved
        monitor.increment_progress(len(members))

    return result


def import_module_map(
    program: ProgramAdapter,
    path: Union[str, Path],
    monitor: TaskMonitor,
    token: BulkEditToken,
) -> MapImportResult:
    path = Path(path)
    monitor.set_message("Importing module map file...")
    if path.suffix != MAP_EXTENSION:
        logger.warning(f"Unrecognized extension for map file: {path.name}")
    if not path.exists():
        raise ModuleMapError(f"Map file not found: {path}")

    entries = read_module_map(path)
    result = apply_module_map(program, entries, monitor, token)
    logger.info(
        f"Map import from {path.name}: {result.entries_applied}/{result.entries_read} modules, "
        f"{result.symbols_moved} symbols moved"
    )
    return result
