"""Observability setup - Logfire configuration and the debug sink.

Centralizes logging configuration so every gateway_shim consumer gets
the same behavior. We use logfire.info/warn/error/debug directly instead
of Python's logging module, so log lines land inside the current span.

The JSONL debug sink is separate: an append-only file of structured
records, written only when debug mode AND a log file are both set.
Neither is needed for correctness.
"""

import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import logfire

from .config import ShimSettings


def configure(service_name: str = "gateway_shim", debug: bool = False) -> None:
    """Configure Logfire for observability.

    Args:
        service_name: Name to identify this service in traces.
        debug: If True, also log to console. Default False (quiet mode).
    """
    logfire.configure(
        service_name=service_name,
        distributed_tracing=True,
        scrubbing=False,  # Too aggressive, redacts normal words
        send_to_logfire="if-token-present",
        console=debug,  # Only show console output in debug mode
    )

    # Instrument httpx for trace propagation
    logfire.instrument_httpx()


class DebugLog:
    """Append-only JSONL sink for request/rewrite diagnostics."""

    def __init__(self, path: str | Path | None, enabled: bool = True):
        self.path = Path(path) if path else None
        self.enabled = bool(enabled and self.path)

    @classmethod
    def from_settings(cls, settings: ShimSettings) -> "DebugLog":
        return cls(settings.log_file, enabled=settings.debug)

    def event(self, category: str, **data: Any) -> None:
        """Write one record. Never raises."""
        if not self.enabled or self.path is None:
            return
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "category": category,
            **data,
        }
        try:
            with open(self.path, "a") as f:
                f.write(json.dumps(record, default=str) + "\n")
        except OSError as e:
            logfire.warning(f"Debug sink write failed: {e}")


def redact_header_value(key: str, value: str) -> str:
    """Mask credentials in a header value before it is logged."""
    lower_key = key.lower()

    if lower_key == "authorization":
        scheme = value.split(" ", 1)[0] or "REDACTED"
        return f"{scheme} ***"

    if lower_key == "x-api-key" or lower_key.endswith("api-key"):
        return "***"
    if lower_key == "cookie":
        return "***"

    return value


def redact_headers(headers: Iterable[tuple[str, str]]) -> dict[str, str]:
    return {k: redact_header_value(k, v) for k, v in headers}


def summarize_body(body: Any) -> dict[str, Any] | None:
    """Summarize a JSON request body for logs without dumping it."""
    if isinstance(body, (bytes, bytearray)):
        body = bytes(body).decode("utf-8", errors="replace")
    if not isinstance(body, str):
        return None if body is None else {"type": type(body).__name__}

    try:
        parsed = json.loads(body)
    except ValueError:
        return {"raw_length": len(body)}
    if not isinstance(parsed, dict):
        return {"type": type(parsed).__name__}

    system = parsed.get("system")
    system_texts: list[str] = []
    if isinstance(system, list):
        for block in system:
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                system_texts.append(block["text"])
    elif isinstance(system, str):
        system_texts.append(system)

    def _count(key: str) -> int | None:
        value = parsed.get(key)
        return len(value) if isinstance(value, list) else None

    return {
        "keys": sorted(parsed),
        "model": parsed.get("model"),
        "max_tokens": parsed.get("max_tokens"),
        "stream": parsed.get("stream"),
        "tools_count": _count("tools"),
        "messages_count": _count("messages"),
        "input_count": _count("input"),
        "system_blocks": _count("system"),
        "system_text_sha256": (
            hashlib.sha256("\n".join(system_texts).encode()).hexdigest() if system_texts else None
        ),
    }
