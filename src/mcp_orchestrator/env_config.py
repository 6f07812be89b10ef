"""
Environment configuration for mcp-orchestrator.

Loads environment variables from:
1. The .env file named by MCP_ORCHESTRATOR_ENV_FILE
   (default: ~/.mcp-orchestrator/.env), if it exists
2. System environment variables (which override .env values)
"""

import os
from pathlib import Path
from typing import Optional

APP_DIR = Path.home() / ".mcp-orchestrator"
ENV_FILE = Path(os.environ.get("MCP_ORCHESTRATOR_ENV_FILE", str(APP_DIR / ".env")))

DEFAULT_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_CALL_TIMEOUT = 60.0
DEFAULT_PROBE_TIMEOUT = 10.0


def load_env_file(env_file: Path = ENV_FILE):
    """Load environment variables from .env file if it exists."""
    if not env_file.exists():
        return

    with open(env_file) as f:
        for line in f:
            line = line.strip()

            # Skip comments and empty lines
            if not line or line.startswith("#"):
                continue

            if "=" in line:
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")

                # Only set if not already in environment
                if key not in os.environ:
                    os.environ[key] = value


# Load .env file when module is imported
load_env_file()


def get_env(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get environment variable with optional default."""
    return os.getenv(key, default)


def get_env_float(key: str, default: float) -> float:
    """Get a numeric environment variable, or default when unset or empty."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {value!r}")


def default_config_path() -> Path:
    """Location of the persisted server configuration file."""
    return Path(get_env("MCP_ORCHESTRATOR_CONFIG", str(APP_DIR / "mcp_config.json")))


def handshake_timeout() -> float:
    return get_env_float("MCP_HANDSHAKE_TIMEOUT", DEFAULT_HANDSHAKE_TIMEOUT)


def call_timeout() -> float:
    return get_env_float("MCP_CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT)


def probe_timeout() -> float:
    return get_env_float("MCP_PROBE_TIMEOUT", DEFAULT_PROBE_TIMEOUT)
