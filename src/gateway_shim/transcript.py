"""Typed view over Responses-API transcript items.

The wire format is loose: messages, tool calls, tool outputs and
back-references are all plain dicts told apart by `type` and `role`,
and the same shapes show up both as top-level items and as blocks
inside a message's `content` array. `classify()` turns one of those
dicts into a variant so callers can dispatch on the kind instead of
probing fields. Variants keep the raw dict; nothing here copies or
mutates it.
"""

import enum
import json
from dataclasses import dataclass
from typing import Any

# Field that carries server-side item ids. Bookkeeping only; must not
# reach a stateless gateway.
ID_FIELD = "id"

# Spellings the client uses for the invocation <-> output link
CALL_ID_FIELDS = ("call_id", "callId", "tool_call_id", "toolCallId")

ITEM_REFERENCE_TYPE = "item_reference"


class CallKind(enum.Enum):
    FUNCTION = "function_call"
    LOCAL_SHELL = "local_shell_call"
    CUSTOM_TOOL = "custom_tool_call"


TOOL_OUTPUT_TYPES = frozenset({
    "function_call_output",
    "tool_call_output",
    "custom_tool_call_output",
    "local_shell_call_output",
})


@dataclass(frozen=True)
class Message:
    raw: dict

    @property
    def role(self) -> str | None:
        role = self.raw.get("role")
        return role if isinstance(role, str) else None


@dataclass(frozen=True)
class ToolCall:
    raw: dict
    kind: CallKind

    @property
    def call_id(self) -> str | None:
        # Invocations sometimes only carry their call id in `id`
        return get_call_id(self.raw) or _call_id_from_id_field(self.raw)


@dataclass(frozen=True)
class ToolOutput:
    raw: dict

    @property
    def call_id(self) -> str | None:
        return get_call_id(self.raw)

    @property
    def text(self) -> str:
        return output_text(self.raw)


@dataclass(frozen=True)
class ItemReference:
    raw: dict


@dataclass(frozen=True)
class Other:
    """Anything else: text blocks, reasoning items, non-dict junk."""

    raw: Any


Item = Message | ToolCall | ToolOutput | ItemReference | Other

_CALL_KINDS = {kind.value: kind for kind in CallKind}


def classify(obj: Any) -> Item:
    """Wrap a transcript item or content block in its variant."""
    if not isinstance(obj, dict):
        return Other(obj)

    item_type = obj.get("type")
    if isinstance(item_type, str):
        if item_type == ITEM_REFERENCE_TYPE:
            return ItemReference(obj)
        if item_type in _CALL_KINDS:
            return ToolCall(obj, _CALL_KINDS[item_type])
        if item_type in TOOL_OUTPUT_TYPES:
            return ToolOutput(obj)
        if item_type == "message":
            return Message(obj)

    if isinstance(obj.get("role"), str):
        return Message(obj)
    return Other(obj)


def get_call_id(obj: dict) -> str | None:
    """First non-empty call id under any of the known spellings."""
    for field in CALL_ID_FIELDS:
        value = obj.get(field)
        if isinstance(value, str):
            return value or None
    return None


def _call_id_from_id_field(obj: dict) -> str | None:
    value = obj.get(ID_FIELD)
    if isinstance(value, str) and value.startswith("call_"):
        return value
    return None


def output_text(obj: dict) -> str:
    """The text a tool output carries, untruncated.

    `output` wins over `content` when the key exists at all. Structured
    outputs are rendered as compact JSON.
    """
    out = obj["output"] if "output" in obj else obj.get("content")
    if isinstance(out, str):
        return out
    if out is None:
        return ""
    try:
        return json.dumps(out, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return str(out)


def is_typed(obj: Any) -> bool:
    """Does this item use the typed (`type: ...`) item shape?"""
    return isinstance(obj, dict) and isinstance(obj.get("type"), str)


def uses_typed_items(items: list) -> bool:
    return any(is_typed(item) for item in items)
