"""Tests for gateway_shim.reconciler."""

from __future__ import annotations

import copy
import json

from gateway_shim.observability import DebugLog
from gateway_shim.reconciler import reconcile
from gateway_shim.transcript import ToolCall, ToolOutput, classify


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _call(call_id: str, item_type: str = "function_call", **extra) -> dict:
    return {"type": item_type, "call_id": call_id, "name": "mcp_bash", "arguments": "{}", **extra}


def _output(call_id: str, output: str = "ok", item_type: str = "function_call_output", **extra) -> dict:
    return {"type": item_type, "call_id": call_id, "output": output, **extra}


def _user(text: str, **extra) -> dict:
    return {"type": "message", "role": "user", "content": text, **extra}


def _has_id(obj) -> bool:
    if isinstance(obj, dict):
        if "id" in obj:
            return True
        content = obj.get("content")
        if isinstance(content, list):
            return any(_has_id(block) for block in content)
    return False


def _dangling_outputs(items: list) -> list[str | None]:
    """Call ids of outputs that have no invocation in the same transcript."""
    calls, outputs = set(), []
    for item in items:
        nodes = [item]
        if isinstance(item, dict) and isinstance(item.get("content"), list):
            nodes.extend(item["content"])
        for node in nodes:
            variant = classify(node)
            if isinstance(variant, ToolCall):
                calls.add(variant.call_id)
            elif isinstance(variant, ToolOutput):
                outputs.append(variant.call_id)
    return [call_id for call_id in outputs if call_id not in calls]


MESSY_TRANSCRIPT = [
    {"type": "item_reference", "id": "rs_abc"},
    _user("fix the bug", id="msg_1"),
    _call("call_1", id="fc_1"),
    _output("call_1", "file contents", id="fco_1"),
    _output("call_42", "orphan output"),
    {"type": "local_shell_call", "id": "call_sh", "action": {"command": ["ls"]}},
    _output("call_sh", "a.txt", item_type="local_shell_call_output"),
    {"role": "assistant", "content": [
        {"type": "output_text", "text": "thinking", "id": "blk_1"},
        {"type": "item_reference", "id": "rs_def"},
        {"type": "function_call_output", "call_id": "call_gone", "output": {"rows": 3}},
    ]},
    {"role": "user", "content": []},
    {"id": "only_an_id"},
]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestOrphanedOutputs:
    def test_orphan_is_demoted_to_assistant_message(self):
        items = [_user("hi"), _output("call_42", "<output>")]
        result = reconcile(items)

        assert result.changed is True
        assert result.items == [
            _user("hi"),
            {"type": "message", "role": "assistant", "content": "Tool output (call_id=call_42):\n\n<output>"},
        ]

    def test_role_tool_message_is_not_a_tool_output(self):
        items = [{"role": "tool", "tool_call_id": "call_7", "content": "result"}]
        assert reconcile(items).changed is False

    def test_generic_tool_call_output_type(self):
        items = [{"type": "tool_call_output", "call_id": "call_7", "output": "result"}]
        assert reconcile(items).items == [
            {"type": "message", "role": "assistant", "content": "Tool output (call_id=call_7):\n\nresult"},
        ]

    def test_matched_output_stays_in_place_without_id(self):
        items = [_call("call_1"), _output("call_1", "ok", id="fco_1")]
        result = reconcile(items)

        assert result.changed is True
        assert result.items == [_call("call_1"), _output("call_1", "ok")]

    def test_match_is_order_independent(self):
        items = [_output("call_1", "early"), _call("call_1")]
        result = reconcile(items)
        assert result.changed is False
        assert result.items is items

    def test_each_invocation_kind_counts(self):
        for kind in ("function_call", "local_shell_call", "custom_tool_call"):
            items = [_call("call_x", item_type=kind), _output("call_x", item_type="custom_tool_call_output")]
            assert reconcile(items).changed is False

    def test_demoted_text_is_never_truncated(self):
        big = "x" * 200_000
        result = reconcile([_output("call_big", big)])
        assert result.items[0]["content"].endswith(big)

    def test_structured_output_is_rendered_as_json(self):
        result = reconcile([_output("call_s", None) | {"output": {"rows": 3}}])
        assert result.items[0]["content"] == 'Tool output (call_id=call_s):\n\n{"rows":3}'

    def test_output_without_call_id_is_demoted(self):
        result = reconcile([{"type": "function_call_output", "output": "lost"}])
        assert result.items == [
            {"type": "message", "role": "assistant", "content": "Tool output (call_id=unknown):\n\nlost"},
        ]

    def test_orphan_block_goes_before_its_parent(self):
        items = [
            {"role": "assistant", "content": [
                {"type": "output_text", "text": "before"},
                {"type": "function_call_output", "call_id": "call_b", "output": "blk"},
            ]},
        ]
        result = reconcile(items)
        assert result.items == [
            {"role": "assistant", "content": "Tool output (call_id=call_b):\n\nblk"},
            {"role": "assistant", "content": [{"type": "output_text", "text": "before"}]},
        ]

    def test_block_invocations_satisfy_item_outputs(self):
        items = [
            {"role": "assistant", "content": [_call("call_blk")]},
            _output("call_blk", "fine"),
        ]
        assert reconcile(items).changed is False


class TestBackReferences:
    def test_item_reference_removed(self):
        items = [{"type": "item_reference", "id": "rs_1"}, _user("hello")]
        result = reconcile(items)
        assert result.changed is True
        assert result.items == [_user("hello")]

    def test_invocation_inside_reference_does_not_count(self):
        items = [
            {"type": "item_reference", "id": "msg_1", "content": [{"type": "function_call", "call_id": "call_9"}]},
            _output("call_9", "ok"),
        ]
        result = reconcile(items)

        assert result.items == [
            {"type": "message", "role": "assistant", "content": "Tool output (call_id=call_9):\n\nok"},
        ]
        assert _dangling_outputs(result.items) == []

    def test_item_reference_block_removed(self):
        items = [{"role": "user", "content": [
            {"type": "input_text", "text": "hi"},
            {"type": "item_reference", "id": "rs_2"},
        ]}]
        assert reconcile(items).items == [{"role": "user", "content": [{"type": "input_text", "text": "hi"}]}]


class TestIdentifierStripping:
    def test_item_and_block_ids_removed(self):
        items = [{"role": "user", "id": "msg_1", "content": [{"type": "input_text", "text": "hi", "id": "b_1"}]}]
        assert reconcile(items).items == [{"role": "user", "content": [{"type": "input_text", "text": "hi"}]}]

    def test_call_id_survives_when_it_lived_in_id(self):
        items = [
            {"type": "local_shell_call", "id": "call_sh", "action": {}},
            _output("call_sh", item_type="local_shell_call_output"),
        ]
        first = reconcile(items)
        assert first.items[0] == {"type": "local_shell_call", "action": {}, "call_id": "call_sh"}
        assert reconcile(first.items).changed is False

    def test_emptied_items_dropped(self):
        items = [{"role": "user", "content": []}, {"id": "x"}, _user("keep")]
        assert reconcile(items).items == [_user("keep")]


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


class TestProperties:
    def test_input_never_mutated(self):
        items = copy.deepcopy(MESSY_TRANSCRIPT)
        reconcile(items)
        assert items == MESSY_TRANSCRIPT

    def test_idempotent(self):
        once = reconcile(MESSY_TRANSCRIPT)
        twice = reconcile(once.items)
        assert once.changed is True
        assert twice.changed is False
        assert twice.items == once.items

    def test_referential_closure(self):
        assert _dangling_outputs(MESSY_TRANSCRIPT) == ["call_42", "call_gone"]
        assert _dangling_outputs(reconcile(MESSY_TRANSCRIPT).items) == []

    def test_no_identifier_leakage(self):
        result = reconcile(MESSY_TRANSCRIPT)
        assert not any(_has_id(item) for item in result.items)

    def test_all_output_text_preserved(self):
        text = json.dumps(reconcile(MESSY_TRANSCRIPT).items)
        for fragment in ("file contents", "orphan output", "a.txt", "rows"):
            assert fragment in text

    def test_clean_transcript_untouched(self):
        items = [_user("hi"), _call("call_1"), _output("call_1")]
        result = reconcile(items)
        assert result.changed is False
        assert result.items is items


class TestDebugSink:
    def test_demotions_are_recorded(self, tmp_path):
        log_file = tmp_path / "shim.jsonl"
        reconcile([_output("call_42", "x" * 600)], debug_log=DebugLog(log_file))

        records = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert records[0]["category"] == "orphaned_tool_output_item"
        assert records[0]["callId"] == "call_42"
        assert records[0]["outputBytes"] == 600
        assert len(records[0]["outputPreview"]) == 500

    def test_disabled_sink_writes_nothing(self, tmp_path):
        log_file = tmp_path / "shim.jsonl"
        reconcile([_output("call_42")], debug_log=DebugLog(log_file, enabled=False))
        assert not log_file.exists()
