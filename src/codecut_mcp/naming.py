"""
Module name guessing.

For every module the strings referenced from its code are concatenated,
cleaned up, and piped to an external guessing script. The script answers
with a single identifier, or ``unknown`` when it found nothing usable.

Protocol with the script:
    stdin   strings joined by `` tzvlw ``, terminated by ``\\r\\n\\0``
    stdout  suggested name, or ``unknown``
    stderr  anything here means the script failed
"""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .bulk import BulkEditToken
from .models import NamespaceRecord
from .namespaces import rename_namespace
from .program import ProgramAdapter, ProgramError
from .tasks import TaskMonitor

logger = logging.getLogger("codecut.naming")

# separator understood by modnaming.py
STRING_SEPARATOR = "tzvlw"
PAYLOAD_TERMINATOR = "\r\n\0"
UNKNOWN_NAME = "unknown"
GLOBAL_NAMESPACE_NAME = "Global"

_FORMAT_SPEC_RE = re.compile(r"%[0-9A-Za-z]+")
_PATH_SEP_RE = re.compile(r"[/\\]")
_NON_WORD_RE = re.compile(r"[^A-Za-z0-9_.]")


class NameGuessingError(Exception):
    """Raised when the guessing script cannot be run or reports an error."""
    pass


def gather_module_strings(
    program: ProgramAdapter,
    monitor: Optional[TaskMonitor] = None,
) -> Dict[NamespaceRecord, List[str]]:
    """Map each module to the strings its code references.

    The module of a reference is the parent of the referring code's
    namespace, or that namespace itself when it has no parent.
    """
    string_map: Dict[NamespaceRecord, List[str]] = {}
    if monitor is not None:
        monitor.initialize(program.defined_data_count())
        monitor.set_message("Gathering string information...")

    for string in program.defined_strings():
        for ref in program.references_to(string.address):
            ref_ns = program.namespace_at(ref.from_address)
            module = None
            if ref_ns.parent_id is not None:
                module = program.get_namespace(ref_ns.parent_id)
            if module is None:
                module = ref_ns
            string_map.setdefault(module, []).append(string.value)

        if monitor is not None:
            monitor.check_cancelled()
            monitor.increment_progress(1)

    logger.info(f"Collected strings for {len(string_map)} modules in {program.name}")
    return string_map


def sanitize_strings(strings: Sequence[str]) -> str:
    """Build the stdin payload for the guessing script."""
    text = f" {STRING_SEPARATOR} ".join(strings)
    text = _FORMAT_SPEC_RE.sub(" ", text)
    text = text.replace("-", "_")
    text = text.replace("_", " ")
    text = _PATH_SEP_RE.sub(" ", text)
    text = _NON_WORD_RE.sub(" ", text)
    return text + PAYLOAD_TERMINATOR


class ModuleNamer:
    """Runs the external guessing script once per module."""

    def __init__(self, python_exec: str, script: Path, timeout: int = 60):
        self.python_exec = python_exec
        self.script = Path(script)
        self.timeout = timeout

    @property
    def command(self) -> List[str]:
        return [str(self.python_exec), str(self.script)]

    def guess(self, payload: str) -> str:
        try:
            proc = subprocess.run(
                self.command,
                input=payload,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise NameGuessingError(
                f"Module name guessing script timed out after {self.timeout}s"
            ) from e
        except OSError as e:
            raise NameGuessingError(
                f"Error starting module name guessing script {self.command}: {e}"
            ) from e

        error = proc.stderr.strip()
        if error:
            raise NameGuessingError(f"Error providing strings to module name guessing script: {error}")
        if proc.returncode != 0:
            raise NameGuessingError(
                f"Module name guessing script exited with status {proc.returncode}"
            )

        for line in proc.stdout.splitlines():
            line = line.strip()
            if line:
                return line
        return UNKNOWN_NAME


@dataclass
class NameGuessResult:
    suggestions: Dict[str, str] = field(default_factory=dict)
    renamed: Dict[str, str] = field(default_factory=dict)
    unchanged: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "error": self.error,
            "suggestions": self.suggestions,
            "renamed": self.renamed,
            "unchanged": self.unchanged,
            "failures": self.failures,
            "cancelled": self.cancelled,
        }


def guess_module_names(
    program: ProgramAdapter,
    string_map: Dict[NamespaceRecord, List[str]],
    namer: ModuleNamer,
    monitor: TaskMonitor,
    token: BulkEditToken,
    suggested: Optional[Dict[NamespaceRecord, str]] = None,
) -> NameGuessResult:
    """Ask the namer about every module and rename the ones it recognises.

    ``suggested`` collects the raw suggestions per namespace. On
    cancellation, namespaces already renamed stay renamed and the modules
    not reached yet get no suggestion. A failing script stops the run.
    """
    token.check()
    result = NameGuessResult()
    if suggested is None:
        suggested = {}

    total = len(string_map)
    monitor.initialize(total)
    done = 0

    for ns, strings in string_map.items():
        if monitor.is_cancelled:
            result.cancelled = True
            logger.info("Module name guessing cancelled, remaining modules left unchanged")
            break

        if ns.is_global or ns.name == GLOBAL_NAMESPACE_NAME:
            done += 1
            monitor.set_progress(done)
            continue

        monitor.set_message(f"Guessing module name for {ns.name}")
        try:
            suggestion = namer.guess(sanitize_strings(strings))
        except NameGuessingError as e:
            logger.error(str(e))
            result.error = str(e)
            break

        if suggestion == UNKNOWN_NAME:
            logger.info(f"No name guess found for module {ns.name}, leaving unchanged")
            result.unchanged.append(ns.name)
        else:
            suggested[ns] = suggestion
            result.suggestions[ns.name] = suggestion
            monitor.set_message(f"Updating module name of {ns.name}...")
            # an earlier rename may have moved this module under a new parent
            current = program.get_namespace(ns.id)
            if current is None:
                logger.warning(f"Module {ns.name} no longer exists, skipping rename")
                result.failures[ns.name] = "Namespace no longer exists"
                done += 1
                monitor.set_progress(done)
                continue
            try:
                new_ns = rename_namespace(program, current, suggestion, token, unique=True)
                result.renamed[ns.name] = new_ns.name
            except ProgramError as e:
                logger.warning(f"Exception when renaming namespace {ns.name}: {e}")
                result.failures[ns.name] = str(e)

        done += 1
        monitor.set_progress(done)

    return result
