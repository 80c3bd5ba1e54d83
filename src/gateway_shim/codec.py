"""Payload codec - request bodies in, JSON dicts out, and back.

Pure functions. Anything that isn't a JSON object comes back as None,
which callers treat as "don't touch this request".
"""

import json
from typing import Any


def decode_text(body: Any) -> str | None:
    """Turn a request body into text, if it's one of the byte-ish shapes."""
    if isinstance(body, str):
        return body
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8", errors="replace")
    if isinstance(body, memoryview):
        return body.tobytes().decode("utf-8", errors="replace")
    return None


def decode_payload(body: Any) -> dict[str, Any] | None:
    """Parse a request body into a payload dict.

    Returns None for empty bodies, invalid JSON, and JSON that isn't an
    object (arrays, scalars).
    """
    text = decode_text(body)
    if not text:
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def encode_payload(payload: dict[str, Any]) -> str:
    """Serialize a payload compactly, the way JSON.stringify would."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
