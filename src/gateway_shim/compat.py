"""Compatibility normalizer - fields the stateless gateway insists on.

Each rule is independent and idempotent; running normalize() on its own
output changes nothing. Only payloads whose model matches the targeted
prefix are touched.
"""

from typing import Any

import logfire

from .config import DEFAULT_INSTRUCTIONS, ShimSettings

ENCRYPTED_REASONING = "reasoning.encrypted_content"

PREVIOUS_RESPONSE_FIELDS = ("previous_response_id", "previousResponseId")

OUTPUT_TOKEN_FIELDS = (
    "max_output_tokens",
    "maxOutputTokens",
    "max_completion_tokens",
    "maxCompletionTokens",
)

CACHE_KEY_FIELD = "prompt_cache_key"


class InstructionsCache:
    """Authoritative `instructions` text per model, as recorded by the host.

    The host sees the real base instructions on some requests and not on
    others (follow-ups often omit them). Whatever it records here wins over
    the configured fallback.
    """

    def __init__(self):
        self._by_model: dict[str, str] = {}

    def record(self, model: str, text: str) -> None:
        if text:
            self._by_model[model] = text

    def get(self, model: str | None) -> str | None:
        if not model:
            return None
        return self._by_model.get(model)

    def clear(self) -> None:
        self._by_model.clear()


def is_targeted_model(payload: dict[str, Any], prefix: str) -> bool:
    model = payload.get("model")
    return isinstance(model, str) and model.startswith(prefix)


def ensure_instructions(
    payload: dict[str, Any],
    instructions: InstructionsCache | None,
    fallback: str,
) -> bool:
    existing = payload.get("instructions")
    if isinstance(existing, str) and existing.strip():
        return False

    cached = instructions.get(payload.get("model")) if instructions else None
    if cached:
        payload["instructions"] = cached
        logfire.debug("Filled instructions from cache", model=payload.get("model"))
    else:
        payload["instructions"] = fallback if fallback.strip() else DEFAULT_INSTRUCTIONS
        logfire.debug("Filled instructions with fallback", model=payload.get("model"))
    return True


def normalize(
    payload: dict[str, Any],
    settings: ShimSettings | None = None,
    instructions: InstructionsCache | None = None,
) -> bool:
    """Apply the gateway field constraints to payload in place.

    Returns:
        True if any field was changed
    """
    settings = settings or ShimSettings()
    if not is_targeted_model(payload, settings.model_prefix):
        return False

    changed = ensure_instructions(payload, instructions, settings.default_instructions)

    if payload.get("store") is not False:
        payload["store"] = False
        changed = True

    for field in PREVIOUS_RESPONSE_FIELDS:
        if field in payload:
            del payload[field]
            changed = True

    if "parallel_tool_calls" not in payload:
        payload["parallel_tool_calls"] = False
        changed = True

    include = payload.get("include")
    if not isinstance(include, list):
        payload["include"] = [ENCRYPTED_REASONING]
        changed = True
    elif ENCRYPTED_REASONING not in include:
        payload["include"] = [*include, ENCRYPTED_REASONING]
        changed = True

    for field in OUTPUT_TOKEN_FIELDS:
        if field in payload:
            del payload[field]
            changed = True

    if settings.strip_cache_key and CACHE_KEY_FIELD in payload:
        del payload[CACHE_KEY_FIELD]
        changed = True

    return changed
