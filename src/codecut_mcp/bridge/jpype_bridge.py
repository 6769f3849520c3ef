"""
JPype-based Ghidra Bridge - in-process JVM access to the host program model.

CodeCut never reimplements Ghidra's symbol table, address spaces or
transactions. This module starts Ghidra's libraries inside the Python
process once and keeps opened programs in memory so every tool call works
against the live program database.

Architecture:
    Python Process
        ↓
    JPype (in-process JVM)
        ↓
    Ghidra Libraries (loaded once)
        ↓
    Program Cache (opened programs stay in memory)
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("codecut.bridge")


class BridgeError(Exception):
    """Base exception for bridge errors."""
    pass


class ProgramNotFoundError(BridgeError):
    """Raised when a program is not open in the bridge."""
    pass


@dataclass
class ProgramHandle:
    """Handle to a loaded Ghidra program."""
    program: Any  # Java Program object
    project: Any  # Java GhidraProject object
    name: str
    project_name: str
    path: str
    load_time: float
    access_count: int = 0
    last_access: float = field(default_factory=time.time)

    def touch(self):
        """Update access time and count."""
        self.access_count += 1
        self.last_access = time.time()


class GhidraBridge:
    """
    Direct JPype bridge to Ghidra.

    This class manages:
    - JVM lifecycle (start/stop)
    - Ghidra classpath configuration
    - Program loading and caching

    Thread Safety:
    - JVM operations are thread-safe via JPype
    - Program cache uses threading.Lock for concurrent access
    """

    # Relative to the installation root; Homebrew installs nest it under libexec
    JAR_DIRS = [
        "Ghidra/Framework/Generic/lib",
        "Ghidra/Framework/SoftwareModeling/lib",
        "Ghidra/Framework/Project/lib",
        "Ghidra/Framework/Docking/lib",
        "Ghidra/Framework/Utility/lib",
        "Ghidra/Framework/DB/lib",
        "Ghidra/Framework/FileSystem/lib",
        "Ghidra/Framework/Gui/lib",
        "Ghidra/Framework/Help/lib",
        "Ghidra/Features/Base/lib",
        "Ghidra/Features/PDB/lib",
        "Ghidra/Features/FileFormats/lib",
        "Ghidra/Features/GnuDemangler/lib",
        "Ghidra/Features/MicrosoftDmang/lib",
        "Ghidra/Features/MicrosoftCodeAnalyzer/lib",
        "Ghidra/Processors/x86/lib",
        "Ghidra/Processors/ARM/lib",
        "Ghidra/Processors/AARCH64/lib",
        "Ghidra/Processors/MIPS/lib",
        "Ghidra/Processors/PowerPC/lib",
        "support/lib",
    ]

    def __init__(self, ghidra_home: Path, max_memory: str = "4G"):
        """
        Initialize the bridge (does not start JVM yet).

        Args:
            ghidra_home: Path to Ghidra installation
            max_memory: JVM max heap size (e.g., "4G", "8G")
        """
        self.ghidra_home = Path(ghidra_home)
        self.max_memory = max_memory
        self._started = False
        self._lock = threading.Lock()

        # Program cache: project_name:program_name -> ProgramHandle
        self._program_cache: Dict[str, ProgramHandle] = {}
        self._cache_lock = threading.Lock()

    def _install_roots(self) -> List[Path]:
        roots = [self.ghidra_home]
        cellar = self.ghidra_home / "Cellar" / "ghidra"
        if cellar.exists():
            versions = sorted((d for d in cellar.iterdir() if d.is_dir()), reverse=True)
            if versions:
                roots.insert(0, versions[0] / "libexec")
        return roots

    def _find_ghidra_classpath(self) -> List[Path]:
        """Find all Ghidra JAR files needed for the classpath."""
        jars: List[Path] = []
        seen = set()
        for root in self._install_roots():
            for rel in self.JAR_DIRS:
                jar_dir = root / rel
                if not jar_dir.exists():
                    continue
                for jar in sorted(jar_dir.glob("*.jar")):
                    if jar not in seen:
                        seen.add(jar)
                        jars.append(jar)
        return jars

    def _get_ghidra_app_properties(self) -> Path:
        """Find the Ghidra application.properties file."""
        for root in self._install_roots():
            for candidate in (root / "Ghidra" / "application.properties",
                              root / "application.properties"):
                if candidate.exists():
                    return candidate

        raise BridgeError(f"Cannot find Ghidra application.properties in {self.ghidra_home}")

    def start(self) -> None:
        """
        Start the JVM with Ghidra libraries loaded.

        This is idempotent - calling multiple times is safe.
        """
        with self._lock:
            if self._started:
                return

            import jpype
            import jpype.imports  # noqa: F401

            if jpype.isJVMStarted():
                logger.info("JVM already running, attaching to existing instance")
                self._started = True
                self._initialize_ghidra()
                return

            jars = self._find_ghidra_classpath()
            if not jars:
                raise BridgeError(
                    f"No Ghidra JARs found in {self.ghidra_home}. "
                    "Ensure GHIDRA_INSTALL_DIR points to valid installation."
                )

            classpath = os.pathsep.join(str(j) for j in jars)

            app_props = self._get_ghidra_app_properties()
            ghidra_root = app_props.parent.parent

            logger.info(f"Starting JVM with {len(jars)} JARs, max memory: {self.max_memory}")
            logger.debug(f"Ghidra root: {ghidra_root}")

            try:
                jpype.startJVM(
                    f"-Xmx{self.max_memory}",
                    f"-Dghidra.root={ghidra_root}",
                    "-Djava.awt.headless=true",
                    classpath=classpath,
                    convertStrings=True,
                )
            except Exception as e:
                raise BridgeError(f"Failed to start JVM: {e}")

            self._started = True
            self._initialize_ghidra()
            logger.info("JVM started successfully")

    def _initialize_ghidra(self) -> None:
        """Initialize Ghidra application (required before using APIs)."""
        from ghidra.app.util.headless import HeadlessGhidraApplicationConfiguration
        from ghidra.framework import Application

        if not Application.isInitialized():
            logger.info("Initializing Ghidra application...")
            Application.initializeApplication(HeadlessGhidraApplicationConfiguration())
            logger.info("Ghidra application initialized")

    def ensure_started(self) -> None:
        """Ensure the bridge is started, starting it if needed."""
        if not self._started:
            self.start()

    def stop(self) -> None:
        """
        Stop the JVM (if running).

        Note: In JPype, the JVM cannot be restarted after shutdown.
        """
        with self._lock:
            if not self._started:
                return

            self._close_all_programs()

            import jpype
            if jpype.isJVMStarted():
                jpype.shutdownJVM()

            self._started = False
            logger.info("JVM stopped")

    @property
    def is_started(self) -> bool:
        """Check if the bridge is started."""
        return self._started

    # =========================================================================
    # Program Management
    # =========================================================================

    def _get_cache_key(self, project_name: str, program_name: str) -> str:
        return f"{project_name}:{program_name}"

    def open_program(
        self,
        binary_path: str,
        project_name: str = "default",
        project_dir: Optional[Path] = None,
        analyze: bool = True
    ) -> ProgramHandle:
        """
        Open a program from the project, importing the binary first if needed.

        Args:
            binary_path: Path to the binary file, or the name of a program
                already in the project
            project_name: Ghidra project name
            project_dir: Directory for Ghidra project files
            analyze: Whether to run auto-analysis after a fresh import

        Returns:
            ProgramHandle for the loaded program
        """
        self.ensure_started()

        binary_path = Path(binary_path)
        program_name = binary_path.name
        cache_key = self._get_cache_key(project_name, program_name)

        with self._cache_lock:
            if cache_key in self._program_cache:
                handle = self._program_cache[cache_key]
                handle.touch()
                logger.debug(f"Cache hit for {cache_key} (accesses: {handle.access_count})")
                return handle

        logger.info(f"Loading program: {binary_path} into project {project_name}")
        start_time = time.time()

        from java.io import File as JFile
        from ghidra.base.project import GhidraProject
        from ghidra.util.task import ConsoleTaskMonitor

        if project_dir is None:
            from ..config import config
            project_dir = config.project_dir

        project_dir = Path(project_dir)
        project_dir.mkdir(parents=True, exist_ok=True)

        monitor = ConsoleTaskMonitor()

        try:
            gpr_file = project_dir / f"{project_name}.gpr"
            if gpr_file.exists():
                project = GhidraProject.openProject(JFile(str(project_dir)), project_name, True)
            else:
                project = GhidraProject.createProject(JFile(str(project_dir)), project_name, False)

            program = None
            try:
                program = project.openProgram("/", program_name, False)
            except Exception as e:
                logger.debug(f"{program_name} not yet in project {project_name}: {e}")

            if program is None:
                if not binary_path.exists():
                    raise ProgramNotFoundError(
                        f"Program {program_name} is not in project {project_name} "
                        f"and {binary_path} does not exist"
                    )
                logger.info(f"Importing {program_name}...")
                program = project.importProgram(JFile(str(binary_path)), monitor)
                if program is None:
                    raise BridgeError(f"Failed to import {binary_path}")

                if analyze:
                    self._analyze(program, monitor)

                project.saveAs(program, "/", program_name, True)

            load_time = time.time() - start_time
            logger.info(f"Program loaded in {load_time:.2f}s")

            handle = ProgramHandle(
                program=program,
                project=project,
                name=program_name,
                project_name=project_name,
                path=str(binary_path),
                load_time=load_time,
            )

            with self._cache_lock:
                self._program_cache[cache_key] = handle

            return handle

        except BridgeError:
            raise
        except Exception as e:
            logger.error(f"Failed to open program: {e}")
            raise BridgeError(f"Failed to open program {binary_path}: {e}")

    def _analyze(self, program: Any, monitor: Any) -> None:
        from ghidra.app.plugin.core.analysis import AutoAnalysisManager
        from ghidra.program.util import GhidraProgramUtilities

        logger.info(f"Analyzing {program.getName()}...")
        auto_mgr = AutoAnalysisManager.getAnalysisManager(program)
        tid = program.startTransaction("Auto Analysis")
        try:
            auto_mgr.initializeOptions()
            auto_mgr.reAnalyzeAll(None)
            auto_mgr.startAnalysis(monitor)
            GhidraProgramUtilities.markProgramAnalyzed(program)
        finally:
            program.endTransaction(tid, True)

    def save_program(self, handle: ProgramHandle) -> None:
        """Write the program's committed transactions back to the project."""
        from ghidra.util.task import ConsoleTaskMonitor
        handle.program.save("CodeCut", ConsoleTaskMonitor())

    def close_program(self, project_name: str, program_name: str, save: bool = True) -> None:
        """Close a program and remove it from the cache."""
        cache_key = self._get_cache_key(project_name, program_name)

        with self._cache_lock:
            handle = self._program_cache.pop(cache_key, None)

        if handle is None:
            return
        try:
            if save:
                self.save_program(handle)
            handle.project.close()
        except Exception as e:
            logger.warning(f"Error closing program {cache_key}: {e}")

    def open_programs(self) -> List[ProgramHandle]:
        with self._cache_lock:
            return list(self._program_cache.values())

    def _close_all_programs(self) -> None:
        with self._cache_lock:
            for key, handle in list(self._program_cache.items()):
                try:
                    handle.project.close()
                except Exception as e:
                    logger.warning(f"Error closing {key}: {e}")
            self._program_cache.clear()


# =============================================================================
# Global Bridge Instance
# =============================================================================

_bridge: Optional[GhidraBridge] = None
_bridge_lock = threading.Lock()


def get_bridge() -> GhidraBridge:
    """
    Get the global bridge instance, creating it if necessary.

    Configuration is read from environment/config module.
    """
    global _bridge

    with _bridge_lock:
        if _bridge is None:
            from ..config import config
            if config.ghidra_home is None:
                raise BridgeError(
                    "Ghidra installation not found; set GHIDRA_INSTALL_DIR"
                )
            _bridge = GhidraBridge(
                ghidra_home=config.ghidra_home,
                max_memory=config.max_memory,
            )

        return _bridge


def close_bridge() -> None:
    """Close the global bridge instance."""
    global _bridge

    with _bridge_lock:
        if _bridge is not None:
            _bridge.stop()
            _bridge = None
