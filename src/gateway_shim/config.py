"""Runtime configuration, read from the environment.

Every knob has a default that works without any environment at all;
the variables only exist to turn debugging on or to loosen a limit.

    GATEWAY_SHIM_DEBUG               - verbose console + JSONL sink (with LOG_FILE)
    GATEWAY_SHIM_LOG_FILE            - path of the JSONL debug sink
    GATEWAY_SHIM_STRIP_CACHE_KEY     - drop prompt_cache_key from payloads
    GATEWAY_SHIM_TOOL_OVERLAY        - runtime tool notice (default on, "0" disables)
    GATEWAY_SHIM_OVERLAY_MAX_TOOLS   - tool names listed in the notice
    GATEWAY_SHIM_DEFAULT_INSTRUCTIONS- fallback `instructions` string
    GATEWAY_SHIM_MODEL_PREFIX        - models the normalizer applies to
    GATEWAY_SHIM_CONVERSATION_TTL    - idle seconds before conversation state expires
    GATEWAY_SHIM_CONVERSATION_LIMIT  - max conversations held in memory
    GATEWAY_SHIM_AUTH_FILE           - credential store path
    GATEWAY_SHIM_AUTH_MODE           - "x-api-key" or "bearer"
    GATEWAY_SHIM_RETRY_MAX_ATTEMPTS  - 429 retry ceiling
    GATEWAY_SHIM_RETRY_MAX_DELAY_MS  - longest single retry wait
    GATEWAY_SHIM_RETRY_BASE_MS       - first exponential backoff step
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

ENV_PREFIX = "GATEWAY_SHIM_"

# Fallback `instructions`; never blank
DEFAULT_INSTRUCTIONS = "."

_TRUTHY = ("1", "true", "yes")


def _flag(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _int(environ: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return max(minimum, value)


def _text(environ: Mapping[str, str], name: str, default: str) -> str:
    """Value as given, or `default` when unset or blank."""
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    return raw


def default_auth_file(environ: Mapping[str, str] | None = None) -> Path:
    """Where the host keeps its credentials (XDG data dir, opencode layout)."""
    environ = os.environ if environ is None else environ
    data_home = environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(data_home) / "opencode" / "auth.json"


@dataclass
class ShimSettings:
    """All tunables for the normalizer and the relay."""

    debug: bool = False
    log_file: str | None = None

    # Compatibility normalizer
    model_prefix: str = "gpt"
    default_instructions: str = DEFAULT_INSTRUCTIONS
    strip_cache_key: bool = False

    # Tool overlay
    tool_overlay: bool = True
    overlay_max_tools: int = 60
    conversation_ttl: float = 6 * 60 * 60
    conversation_limit: int = 1024

    # Relay
    auth_file: Path | None = None
    auth_mode: str | None = None
    retry_max_attempts: int = 3
    retry_max_delay_ms: int = 30_000
    retry_base_ms: int = 1_000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ShimSettings":
        """Build settings from GATEWAY_SHIM_* variables."""
        environ = os.environ if environ is None else environ
        auth_file = environ.get(ENV_PREFIX + "AUTH_FILE")
        auth_mode = environ.get(ENV_PREFIX + "AUTH_MODE") or None
        return cls(
            debug=_flag(environ, "DEBUG", False),
            log_file=environ.get(ENV_PREFIX + "LOG_FILE") or None,
            model_prefix=environ.get(ENV_PREFIX + "MODEL_PREFIX") or "gpt",
            default_instructions=_text(environ, "DEFAULT_INSTRUCTIONS", DEFAULT_INSTRUCTIONS),
            strip_cache_key=_flag(environ, "STRIP_CACHE_KEY", False),
            # Opt-out toggle: anything other than "0" keeps it on
            tool_overlay=environ.get(ENV_PREFIX + "TOOL_OVERLAY", "1").strip() != "0",
            overlay_max_tools=_int(environ, "OVERLAY_MAX_TOOLS", 60, minimum=1),
            conversation_ttl=float(_int(environ, "CONVERSATION_TTL", 6 * 60 * 60, minimum=1)),
            conversation_limit=_int(environ, "CONVERSATION_LIMIT", 1024, minimum=1),
            auth_file=Path(auth_file) if auth_file else default_auth_file(environ),
            auth_mode=auth_mode.strip().lower() if auth_mode else None,
            retry_max_attempts=_int(environ, "RETRY_MAX_ATTEMPTS", 3, minimum=1),
            retry_max_delay_ms=_int(environ, "RETRY_MAX_DELAY_MS", 30_000),
            retry_base_ms=_int(environ, "RETRY_BASE_MS", 1_000),
        )
