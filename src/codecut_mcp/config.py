"""Configuration management for CodeCut MCP Server."""

import os
import sys
from pathlib import Path
from typing import Optional


class Config:
    """Configuration for CodeCut MCP Server.

    Configuration is read from environment variables with sensible defaults.
    A missing Ghidra installation is not fatal here; ``validate()`` reports it
    so the server can refuse to start while tests can still import the module.
    """

    def __init__(self):
        # Base paths
        self._package_root = Path(__file__).resolve().parent
        self._project_root = self._package_root.parent.parent

        # Ghidra installation path - try environment variable first, then auto-detect
        ghidra_env = os.environ.get("GHIDRA_INSTALL_DIR")
        self.ghidra_home: Optional[Path]
        if ghidra_env:
            self.ghidra_home = Path(ghidra_env)
        else:
            self.ghidra_home = self._detect_ghidra_installation()

        # Project directories
        self.project_dir = Path(os.environ.get(
            "CODECUT_PROJECT_DIR",
            str(self._project_root / "projects")
        ))
        self.exports_dir = Path(os.environ.get(
            "CODECUT_EXPORTS_DIR",
            str(self._project_root / "exports")
        ))
        self.log_dir = Path(os.environ.get(
            "CODECUT_LOG_DIR",
            str(self._project_root / "logs")
        ))
        self.scripts_dir = self._package_root / "scripts"

        # Memory settings (for JVM)
        self.max_memory = os.environ.get("CODECUT_MAX_MEMORY", "4G")

        # Default project name
        self.default_project = os.environ.get("CODECUT_DEFAULT_PROJECT", "default")

        # Module name guessing
        self.python_exec = os.environ.get("CODECUT_PYTHON_EXEC", sys.executable)
        self.modnaming_script = Path(os.environ.get(
            "CODECUT_MODNAMING_SCRIPT",
            str(self.scripts_dir / "modnaming.py")
        ))
        self.naming_timeout = int(os.environ.get("CODECUT_NAMING_TIMEOUT", "60"))

        # Last-used directories and other user choices
        self.preferences_file = Path(os.environ.get(
            "CODECUT_PREFERENCES_FILE",
            str(Path.home() / ".codecut" / "preferences.json")
        ))

    def _detect_ghidra_installation(self) -> Optional[Path]:
        """Auto-detect Ghidra installation in common locations."""
        common_locations = []

        if sys.platform == "darwin":  # macOS
            common_locations = [
                Path("/opt/homebrew"),  # Apple Silicon Homebrew
                Path("/usr/local"),  # Intel Homebrew
                Path("/Applications/ghidra_11.2_PUBLIC"),
                Path("/Applications/ghidra_11.1_PUBLIC"),
                Path("/Applications/ghidra"),
            ]
        elif sys.platform == "linux":
            common_locations = [
                Path("/home/linuxbrew/.linuxbrew"),  # Linux Homebrew
                Path("/opt/ghidra"),
                Path.home() / "ghidra",
                Path("/usr/local/ghidra"),
            ]
        elif sys.platform == "win32":
            common_locations = [
                Path("C:/ghidra"),
                Path("C:/ghidra_11.2_PUBLIC"),
                Path("C:/ghidra_11.1_PUBLIC"),
                Path.home() / "ghidra",
            ]

        for location in common_locations:
            if location.exists():
                if self._find_application_properties(location):
                    return location

        return None

    def _find_application_properties(self, base_path: Path) -> Optional[Path]:
        """Find Ghidra's application.properties below an installation root.

        Supports:
        - Traditional installations: {base}/Ghidra/application.properties
        - Homebrew (macOS/Linux): {base}/Cellar/ghidra/*/libexec/Ghidra/application.properties
        """
        if (base_path / "Cellar" / "ghidra").exists():
            cellar_path = base_path / "Cellar" / "ghidra"
            version_dirs = sorted(
                (d for d in cellar_path.iterdir() if d.is_dir()), reverse=True
            )
            for version_dir in version_dirs:
                props = version_dir / "libexec" / "Ghidra" / "application.properties"
                if props.exists():
                    return props

        for candidate in (base_path / "Ghidra" / "application.properties",
                          base_path / "application.properties"):
            if candidate.exists():
                return candidate

        return None

    def validate(self) -> list[str]:
        """Validate configuration. Returns list of error messages."""
        errors = []

        if self.ghidra_home is None:
            errors.append(
                "GHIDRA_INSTALL_DIR environment variable not set and Ghidra not "
                "found in common locations"
            )
        elif not self.ghidra_home.exists():
            errors.append(f"Ghidra installation not found at: {self.ghidra_home}")
        elif self._find_application_properties(self.ghidra_home) is None:
            errors.append(
                f"No Ghidra application.properties under {self.ghidra_home}; "
                "ensure GHIDRA_INSTALL_DIR points to a valid installation"
            )

        if self.naming_timeout <= 0:
            errors.append(f"CODECUT_NAMING_TIMEOUT must be positive, got {self.naming_timeout}")

        return errors

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for directory in [self.project_dir, self.exports_dir, self.log_dir]:
            directory.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return (
            f"Config(\n"
            f"  ghidra_home={self.ghidra_home},\n"
            f"  project_dir={self.project_dir},\n"
            f"  exports_dir={self.exports_dir},\n"
            f"  python_exec={self.python_exec}\n"
            f")"
        )


# Global config instance
config = Config()
