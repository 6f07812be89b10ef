"""
Child process environment composition.

GUI launchers and service managers usually start us with a minimal PATH, so
``npx``/``node`` based tool servers fail to spawn even though they work from
a shell. The composed PATH appends the usual Node.js install locations that
exist on this machine.
"""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

COMMAND_PROBE_TIMEOUT = 10.0


def find_nvm_bin(home: Path, isdir: Callable[[str], bool] = os.path.isdir) -> Optional[str]:
    """Return the bin directory of the first installed nvm Node.js version."""
    versions_dir = home / ".nvm" / "versions" / "node"
    try:
        versions = sorted(os.listdir(versions_dir))
    except OSError:
        return None
    for version in versions:
        candidate = str(versions_dir / version / "bin")
        if isdir(candidate):
            return candidate
    return None


def runtime_search_dirs(home: Optional[Path] = None) -> List[str]:
    """Well-known Node.js installation directories, existing or not."""
    home = home or Path.home()
    return [
        "/usr/local/bin",
        "/opt/homebrew/bin",
        "/usr/bin",
        find_nvm_bin(home),
        str(home / ".volta" / "bin"),
        str(home / ".fnm" / "current" / "bin"),
        str(home / "n" / "bin"),
        "/usr/local/node/bin",
        "/opt/node/bin",
    ]


def compose_path(
    base_path: Optional[str] = None,
    home: Optional[Path] = None,
    isdir: Callable[[str], bool] = os.path.isdir,
) -> str:
    """
    Build the PATH handed to tool server processes.

    Args:
        base_path: Current search path (default: os.environ["PATH"])
        home: Home directory used for per-user locations
        isdir: Directory existence check (injectable for tests)

    Returns:
        base_path followed by the existing runtime directories
    """
    if base_path is None:
        base_path = os.environ.get("PATH", "")

    extra = []
    for directory in runtime_search_dirs(home):
        if not directory:
            continue
        try:
            if isdir(directory):
                extra.append(directory)
        except OSError:
            continue

    return os.pathsep.join(entry for entry in [base_path, *extra] if entry)


def compose_env(overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Process environment with the composed PATH; definition overrides win."""
    env = os.environ.copy()
    env["PATH"] = compose_path()

    # Ensure HOME is set (needed by some tools)
    if "HOME" not in env:
        env["HOME"] = str(Path.home())

    if overrides:
        env.update({str(k): str(v) for k, v in overrides.items()})
    return env


async def command_exists(command: str, timeout: float = COMMAND_PROBE_TIMEOUT) -> bool:
    """Check a command by running ``<command> --version`` with the composed environment."""
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            env=compose_env(),
        )
        returncode = await asyncio.wait_for(proc.wait(), timeout=timeout)
        return returncode == 0
    except OSError as e:
        logger.debug(f"Command probe failed for {command}: {e}")
        return False
    except asyncio.TimeoutError:
        logger.warning(f"Command probe for {command} timed out after {timeout}s")
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return False


def _platform_binary(name: str) -> str:
    if sys.platform == "win32":
        return f"{name}.exe" if name == "node" else f"{name}.cmd"
    return name


def diagnose(path: Optional[str] = None) -> Dict[str, object]:
    """
    Report whether node, npm and npx are reachable through the composed PATH.

    Returns:
        dict with runtime_available (node), tool_available (npm),
        secondary_tool_available (npx), the discovered paths, the searched
        directories and human-readable suggestions
    """
    path_dirs = [d for d in (path or compose_path()).split(os.pathsep) if d]

    found: Dict[str, Optional[str]] = {"node": None, "npm": None, "npx": None}
    for directory in path_dirs:
        for name in found:
            if found[name] is None:
                candidate = os.path.join(directory, _platform_binary(name))
                if os.path.isfile(candidate):
                    found[name] = candidate

    diagnosis = {
        "runtime_available": found["node"] is not None,
        "tool_available": found["npm"] is not None,
        "secondary_tool_available": found["npx"] is not None,
        "runtime_path": found["node"],
        "tool_path": found["npm"],
        "secondary_tool_path": found["npx"],
        "path_dirs": path_dirs,
        "suggestions": [],
    }

    suggestions = diagnosis["suggestions"]
    if not diagnosis["runtime_available"]:
        suggestions.append("Node.js is not installed or not found in PATH. Install it from https://nodejs.org/")
    if not diagnosis["tool_available"]:
        suggestions.append("npm is not available. It ships with the Node.js installer.")
    if not diagnosis["secondary_tool_available"]:
        suggestions.append("npx is not available. It ships with npm 5.2.0 or later.")
    if not suggestions:
        suggestions.append("Node.js, npm and npx are all available.")

    return diagnosis
