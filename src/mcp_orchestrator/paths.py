"""
Bundled executable resolution.

Tool servers shipped with the application are built per platform, so the
abstract identifier stored in a server definition (e.g. ``python-mcp-server``)
has to be mapped to a concrete file. Candidate locations are probed in order:

1. Packaged application resources (MCP_ORCHESTRATOR_RESOURCES, then the
   bundle directory of a frozen build)
2. Development tree locations relative to this package and the project root

Anything that is not a known bundled identifier is returned unchanged so
arbitrary system commands (``npx``, ``uvx``, absolute paths) work as-is.
"""

import logging
import os
import platform
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

from mcp_orchestrator.errors import ExecutableNotFoundError

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent.parent

# identifier -> file name prefix of the per-platform builds
BUNDLED_EXECUTABLES: Dict[str, str] = {
    "python-mcp-server": "python-mcp-server",
}


def platform_executable_name(base_name: str, system: str, machine: str) -> Optional[str]:
    """
    Compute the per-platform file name for a bundled executable.

    Args:
        base_name: File name prefix (e.g. "python-mcp-server")
        system: platform.system() value ("Windows", "Darwin", "Linux")
        machine: platform.machine() value ("arm64", "x86_64", ...)

    Returns:
        The file name, or None for unsupported platforms
    """
    system = system.lower()
    machine = machine.lower()

    if system == "windows":
        return f"{base_name}-windows.exe"
    if system == "darwin":
        if machine in ("arm64", "aarch64"):
            return f"{base_name}-mac-arm64"
        if machine in ("x86_64", "amd64"):
            return f"{base_name}-mac-intel"
        return f"{base_name}-mac-universal"
    if system == "linux":
        return f"{base_name}-linux"
    return None


def default_resource_dirs() -> List[Path]:
    """Directories a packaged build may ship bundled executables in."""
    dirs = []
    resources = os.environ.get("MCP_ORCHESTRATOR_RESOURCES")
    if resources:
        dirs.append(Path(resources))
    # PyInstaller and similar freezers unpack data next to sys._MEIPASS
    frozen_dir = getattr(sys, "_MEIPASS", None)
    if frozen_dir:
        dirs.append(Path(frozen_dir))
    return dirs


class PathResolver:
    """Resolves bundled executable identifiers to concrete paths."""

    def __init__(
        self,
        resource_dirs: Optional[List[Path]] = None,
        project_root: Path = PROJECT_ROOT,
        exists: Callable[[str], bool] = os.path.isfile,
        system: Optional[str] = None,
        machine: Optional[str] = None,
    ):
        self.resource_dirs = [Path(d) for d in resource_dirs] if resource_dirs is not None else default_resource_dirs()
        self.project_root = Path(project_root)
        self.exists = exists
        self.system = system or platform.system()
        self.machine = machine or platform.machine()

    def is_bundled(self, identifier: str) -> bool:
        return identifier in BUNDLED_EXECUTABLES

    def candidate_paths(self, identifier: str) -> List[str]:
        """Ordered list of locations probed for a bundled identifier."""
        executable_name = platform_executable_name(
            BUNDLED_EXECUTABLES[identifier], self.system, self.machine
        )
        if executable_name is None:
            return []

        candidates = []
        for resource_dir in self.resource_dirs:
            candidates.append(resource_dir / "services" / executable_name)
            candidates.append(resource_dir / "bundled-mcp" / executable_name)

        candidates.append(self.project_root / "src" / "mcp_orchestrator" / "services" / executable_name)
        candidates.append(self.project_root / "bundled-mcp" / executable_name)
        candidates.append(self.project_root / "bin" / executable_name)

        return [str(path) for path in candidates]

    def resolve(self, identifier: str) -> str:
        """
        Resolve an executable identifier to a path.

        Raises:
            ExecutableNotFoundError: A bundled identifier matched no candidate
        """
        if not self.is_bundled(identifier):
            return identifier

        candidates = self.candidate_paths(identifier)
        if not candidates:
            raise ExecutableNotFoundError(
                identifier, [], reason=f"Unsupported platform for bundled executable: {self.system}/{self.machine}"
            )

        for candidate in candidates:
            if self.exists(candidate):
                logger.info(f"Resolved bundled executable path: {identifier} -> {candidate}")
                return candidate

        logger.error(f"Bundled executable not found. Tried paths: {', '.join(candidates)}")
        raise ExecutableNotFoundError(identifier, candidates)
