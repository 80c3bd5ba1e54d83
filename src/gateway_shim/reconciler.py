"""Reference reconciler - make a transcript stand on its own.

A client built for a stateful upstream sends transcripts that lean on
server memory: `item_reference` entries pointing at items the server
was supposed to keep, `id` fields naming persisted items, and tool
outputs whose invocation was dropped from the history. A stateless
gateway rejects all three. This module rewrites the transcript so that:

1. every remaining tool output answers an invocation present in the
   same transcript,
2. tool outputs that don't are demoted to plain assistant messages
   carrying the full output text, tagged with their call id,
3. back-references are gone,
4. no item or block carries an `id`.

Call ids are collected in a first pass, so matching doesn't depend on
whether the output comes before or after its invocation.

The input list is never mutated. Items that need changes are copied.
"""

from dataclasses import dataclass, field
from typing import Any

import logfire

from .observability import DebugLog
from .transcript import (
    ID_FIELD,
    CallKind,
    ItemReference,
    ToolCall,
    ToolOutput,
    classify,
    get_call_id,
    is_typed,
)

DEMOTED_PREFIX = "Tool output (call_id="
UNKNOWN_CALL_ID = "unknown"


@dataclass
class ReconcileResult:
    changed: bool
    items: list[Any]


@dataclass
class CallIndex:
    """Call ids seen on invocations, one set per invocation kind."""

    by_kind: dict[CallKind, set[str]] = field(
        default_factory=lambda: {kind: set() for kind in CallKind}
    )

    def add(self, call: ToolCall) -> None:
        call_id = call.call_id
        if call_id:
            self.by_kind[call.kind].add(call_id)

    def match(self, call_id: str | None) -> CallKind | None:
        """Kind of the invocation that introduced call_id, first hit wins."""
        if not call_id:
            return None
        for kind in CallKind:
            if call_id in self.by_kind[kind]:
                return kind
        return None


def collect_call_ids(items: list[Any]) -> CallIndex:
    """Index invocations that will survive reconciliation.

    Back-references are dropped whole, so nothing inside one counts.
    """
    index = CallIndex()
    for item in items:
        variant = classify(item)
        if isinstance(variant, ItemReference):
            continue
        if isinstance(variant, ToolCall):
            index.add(variant)
        content = item.get("content") if isinstance(item, dict) else None
        if isinstance(content, list):
            for block in content:
                block_variant = classify(block)
                if isinstance(block_variant, ToolCall):
                    index.add(block_variant)
    return index


def demoted_message(reference: Any, call_id: str | None, text: str) -> dict[str, Any]:
    """Plain assistant message standing in for an orphaned tool output."""
    content = f"{DEMOTED_PREFIX}{call_id or UNKNOWN_CALL_ID}):\n\n{text}"
    if is_typed(reference):
        return {"type": "message", "role": "assistant", "content": content}
    return {"role": "assistant", "content": content}


def _without_id(obj: dict) -> dict:
    stripped = {k: v for k, v in obj.items() if k != ID_FIELD}
    # An invocation whose only call id was its `id` keeps it as `call_id`
    variant = classify(obj)
    if isinstance(variant, ToolCall) and get_call_id(obj) is None and variant.call_id:
        stripped["call_id"] = variant.call_id
    return stripped


def _is_empty(item: dict) -> bool:
    if not item:
        return True
    content = item.get("content")
    return isinstance(item.get("role"), str) and isinstance(content, list) and not content


def reconcile(items: list[Any], debug_log: DebugLog | None = None) -> ReconcileResult:
    """Rewrite a transcript into a referentially self-contained one.

    Args:
        items: The payload's `input` list (left untouched)
        debug_log: Optional JSONL sink for demotion records

    Returns:
        ReconcileResult; `items` is the original list when nothing changed.
    """
    index = collect_call_ids(items)
    result: list[Any] = []
    changed = False

    def demote(output: ToolOutput, reference: Any, where: str) -> None:
        text = output.text
        result.append(demoted_message(reference, output.call_id, text))
        logfire.debug(
            "Demoted orphaned tool output {where} (call_id={call_id}, {size} bytes)",
            where=where,
            call_id=output.call_id,
            size=len(text),
        )
        if debug_log is not None:
            debug_log.event(
                f"orphaned_tool_output_{where}",
                callId=output.call_id,
                type=output.raw.get("type"),
                outputPreview=text[:500],
                outputBytes=len(text),
            )

    for item in items:
        variant = classify(item)

        if isinstance(variant, ItemReference):
            changed = True
            continue

        if not isinstance(item, dict):
            result.append(item)
            continue

        current = item
        content = item.get("content")
        if isinstance(content, list):
            blocks: list[Any] = []
            blocks_changed = False
            for block in content:
                block_variant = classify(block)
                if isinstance(block_variant, ItemReference):
                    blocks_changed = True
                    continue
                if isinstance(block_variant, ToolOutput) and index.match(block_variant.call_id) is None:
                    demote(block_variant, item, "block")
                    blocks_changed = True
                    continue
                if isinstance(block, dict) and ID_FIELD in block:
                    block = _without_id(block)
                    blocks_changed = True
                blocks.append(block)
            if blocks_changed:
                current = {**item, "content": blocks}
                changed = True

        if isinstance(variant, ToolOutput) and index.match(variant.call_id) is None:
            demote(variant, item, "item")
            changed = True
            continue

        if ID_FIELD in current:
            if debug_log is not None:
                debug_log.event(
                    "stripped_item_id",
                    id=current.get(ID_FIELD),
                    type=current.get("type"),
                    role=current.get("role"),
                )
            current = _without_id(current)
            changed = True

        if _is_empty(current):
            changed = True
            continue

        result.append(current)

    if not changed:
        return ReconcileResult(False, items)
    return ReconcileResult(True, result)
