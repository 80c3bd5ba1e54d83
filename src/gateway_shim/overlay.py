"""Runtime tool notice - correct the model when it reaches for tools that aren't there.

The client sends a base `instructions` prompt written for a different
agent, one with tools like `apply_patch` and `local_shell`. The model
believes it, calls those names, and the host answers with "unknown tool".
Left alone, it keeps trying.

Two interventions, both marked with MARKER so we never stack them:

- Compact notice: once per conversation, a leading user item saying tool
  names must come from the request's `tools` schema, with a small
  foreign-name -> host-name table.
- Escalated notice: whenever a tool-output-looking text in the
  transcript reports an unknown tool, a longer notice is appended to
  that exact text, with suggested replacements from the live tool list.

Detection is phrase-based and deliberately loose. It can miss differently
worded errors and can fire on ordinary text that quotes these phrases.
"""

import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

import logfire

from .transcript import uses_typed_items

MARKER = "<runtime_tool_notice>"
MARKER_END = "</runtime_tool_notice>"

MAX_STRIKES = 3
MAX_SUGGESTIONS = 8

FAILURE_PHRASES = (
    "unknown tool",
    "tool not found",
    "no such tool",
    "unrecognized tool",
    "unknown function",
    "invalid tool",
)

# Phrase, then anything up to an optional quote, then the attempted name
_ATTEMPT_PATTERNS = [
    re.compile(
        r"\b" + re.escape(phrase) + r"""\b[^\n`"']*[`"']?([a-zA-Z0-9_.:/-]{2,})[`"']?""",
        re.IGNORECASE,
    )
    for phrase in FAILURE_PHRASES
]
_ANY_FAILURE = re.compile(
    "|".join(r"\b" + re.escape(phrase) + r"\b" for phrase in FAILURE_PHRASES),
    re.IGNORECASE,
)

# Tool names the foreign agent prompt teaches -> patterns for host equivalents.
# Checked first, on exact or substring match of the attempted name.
FOREIGN_TOOL_PATTERNS: dict[str, list[re.Pattern]] = {
    "apply_patch": [re.compile(p, re.I) for p in (r"mcp_edit", r"mcp_write", r"edit", r"write")],
    "update_plan": [re.compile(p, re.I) for p in (r"mcp_todowrite", r"todowrite", r"todo")],
    "local_shell": [re.compile(p, re.I) for p in (r"mcp_bash", r"bash", r"shell")],
    "read_file": [re.compile(p, re.I) for p in (r"mcp_read", r"read")],
    "write_file": [re.compile(p, re.I) for p in (r"mcp_write", r"write")],
    "list_dir": [re.compile(p, re.I) for p in (r"mcp_glob", r"glob", r"list_dir")],
}

# Fallback: keyword in the attempted name -> pattern over live tool names
KEYWORD_PATTERNS: list[tuple[re.Pattern, re.Pattern]] = [
    (re.compile(r"shell|bash|cmd|terminal|exec|run|local_shell"),
     re.compile(r"bash|shell|cmd|terminal|local_shell", re.I)),
    (re.compile(r"read|cat|open|file"),
     re.compile(r"read|file|cat|open", re.I)),
    (re.compile(r"write|edit|patch|apply"),
     re.compile(r"write|edit|patch|apply", re.I)),
    (re.compile(r"search|web|browse|fetch|http"),
     re.compile(r"web|search|fetch|grok", re.I)),
    (re.compile(r"grep|find|ripgrep|rg|pattern"),
     re.compile(r"grep|rg|pattern|search", re.I)),
    (re.compile(r"idea|lsp|typecheck|diagnostic|problem"),
     re.compile(r"idea|lsp|typecheck|problem|diagnostic", re.I)),
    (re.compile(r"plan|todo|task"),
     re.compile(r"todo|plan|task", re.I)),
]

COMPACT_MAPPINGS = "apply_patch→mcp_edit/mcp_write, update_plan→mcp_todowrite, local_shell→mcp_bash"


@dataclass
class Drift:
    found: bool
    attempted_tool: str | None = None


@dataclass
class ConversationState:
    injected: bool = False
    strike: int = 0


class ConversationRegistry:
    """Per-conversation overlay state, in memory only.

    Bounded two ways: entries idle longer than `ttl` seconds are dropped,
    and past `max_entries` the least recently seen conversation goes.
    Losing an entry only means the compact notice may be sent again.
    """

    def __init__(
        self,
        ttl: float = 6 * 60 * 60,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[ConversationState, float]] = OrderedDict()

    def get(self, key: str) -> ConversationState:
        """State for `key`, created on first sight."""
        now = self._clock()
        self._expire(now)

        entry = self._entries.pop(key, None)
        state = entry[0] if entry else ConversationState()
        self._entries[key] = (state, now)

        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return state

    def _expire(self, now: float) -> None:
        while self._entries:
            _, (_, seen) = next(iter(self._entries.items()))
            if now - seen <= self.ttl:
                break
            self._entries.popitem(last=False)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() - entry[1] <= self.ttl

    def __len__(self) -> int:
        return len(self._entries)


def extract_tool_names(payload: dict[str, Any]) -> list[str]:
    """Sorted, de-duplicated tool names declared in payload["tools"]."""
    tools = payload.get("tools")
    if not isinstance(tools, list):
        return []

    names: list[str] = []
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        name = tool.get("name")
        if isinstance(name, str) and name.strip():
            names.append(name.strip())
            continue
        fn = tool.get("function")
        if isinstance(fn, dict) and isinstance(fn.get("name"), str) and fn["name"].strip():
            names.append(fn["name"].strip())

    return sorted(set(names))


def suggest_alternatives(
    tool_names: list[str],
    attempted_tool: str | None,
    foreign_patterns: dict[str, list[re.Pattern]] | None = None,
    keyword_patterns: list[tuple[re.Pattern, re.Pattern]] | None = None,
    limit: int = MAX_SUGGESTIONS,
) -> list[str]:
    """Live tool names that could stand in for `attempted_tool`.

    Known foreign names are looked up first; otherwise keywords in the
    attempted name pick pattern sets. Order follows `tool_names`.
    """
    if not tool_names:
        return []
    foreign_patterns = FOREIGN_TOOL_PATTERNS if foreign_patterns is None else foreign_patterns
    keyword_patterns = KEYWORD_PATTERNS if keyword_patterns is None else keyword_patterns
    query = attempted_tool.lower() if isinstance(attempted_tool, str) else ""

    for foreign_name, patterns in foreign_patterns.items():
        if query == foreign_name or foreign_name in query:
            matches = [name for name in tool_names if any(p.search(name) for p in patterns)]
            if matches:
                return matches[:limit]

    selected = [pattern for keyword, pattern in keyword_patterns if keyword.search(query)]
    if not selected:
        return []
    return [name for name in tool_names if any(p.search(name) for p in selected)][:limit]


def format_tool_list(tool_names: list[str], max_tools: int = 60) -> str:
    if not tool_names:
        return "(unavailable in payload.tools)"
    shown = tool_names[: max(1, max_tools)]
    more = len(tool_names) - len(shown)
    suffix = f" …(+{more} more)" if more > 0 else ""
    return ", ".join(shown) + suffix


def build_overlay(
    tool_names: list[str],
    level: str = "compact",
    attempted_tool: str | None = None,
    max_tools: int = 60,
    suggestions: list[str] | None = None,
) -> str:
    """Render the notice text. `level` is "compact" or "escalated"."""
    tool_list = format_tool_list(tool_names, max_tools)

    if level == "escalated":
        lines = [
            f"{MARKER} severity=high",
            "RUNTIME TOOL REALITY:",
            "1) The host's own agent prompt is authoritative.",
            "2) The base `instructions` are compatibility-only and may mention tools that do not exist here.",
            "3) You MUST call tools using exact names from this request's `tools` schema. "
            "If a name isn't in the schema, treat it as unavailable.",
        ]
        if attempted_tool and attempted_tool.strip():
            if suggestions is None:
                suggestions = suggest_alternatives(tool_names, attempted_tool)
            if suggestions:
                lines.append(f"Suggested replacements for `{attempted_tool}`: {', '.join(suggestions)}")
            else:
                lines.append(
                    f"No direct replacement match for `{attempted_tool}`. Use only names from the tools schema."
                )
        lines.append(f"Available tools (subset): {tool_list}")
        lines.append(MARKER_END)
        return "\n".join(lines)

    return "\n".join([
        MARKER,
        "RUNTIME TOOL REALITY: the base `instructions` may mention non-existent tools.",
        "Tool calls MUST use exact names from this request's `tools` schema only.",
        f"Foreign→host mappings: {COMPACT_MAPPINGS}",
        f"Available tools (subset): {tool_list}",
        MARKER_END,
    ])


def _text_targets(item: dict) -> list[tuple[dict, str, str]]:
    """(owner, key, text) for each text an item carries, first shape wins."""
    content = item.get("content")
    if isinstance(content, str):
        return [(item, "content", content)]
    if isinstance(item.get("output"), str):
        return [(item, "output", item["output"])]

    targets = []
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            if isinstance(block.get("text"), str):
                targets.append((block, "text", block["text"]))
            elif isinstance(block.get("output"), str):
                targets.append((block, "output", block["output"]))
    return targets


def _looks_like_tool_output(item: dict, text: str) -> bool:
    role = item.get("role") if isinstance(item.get("role"), str) else ""
    item_type = item.get("type") if isinstance(item.get("type"), str) else ""
    return (
        (role == "assistant" and "Tool output (call_id=" in text)
        or role == "tool"
        or item_type.endswith("_call_output")
    )


def _candidate_texts(items: list[Any]):
    for item in items:
        if not isinstance(item, dict):
            continue
        for owner, key, text in _text_targets(item):
            if not _looks_like_tool_output(item, text):
                continue
            if MARKER in text:
                continue
            yield owner, key, text


def detect_drift(items: list[Any]) -> Drift:
    """First unknown-tool failure reported in a tool-output text."""
    for _, _, text in _candidate_texts(items):
        for pattern in _ATTEMPT_PATTERNS:
            match = pattern.search(text)
            if match:
                return Drift(True, match.group(1))
    return Drift(False)


def has_marker(items: list[Any], marker: str = MARKER) -> bool:
    for item in items:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        if isinstance(content, str) and marker in content:
            return True
        if isinstance(item.get("output"), str) and marker in item["output"]:
            return True
        if isinstance(content, list):
            for block in content:
                if not isinstance(block, dict):
                    continue
                if isinstance(block.get("text"), str):
                    text = block["text"]
                elif isinstance(block.get("output"), str):
                    text = block["output"]
                else:
                    text = ""
                if marker in text:
                    return True
    return False


class OverlayInjector:
    """Applies the compact and escalated notices to payloads."""

    def __init__(
        self,
        registry: ConversationRegistry | None = None,
        enabled: bool = True,
        max_tools: int = 60,
        foreign_patterns: dict[str, list[re.Pattern]] | None = None,
        keyword_patterns: list[tuple[re.Pattern, re.Pattern]] | None = None,
    ):
        self.registry = registry if registry is not None else ConversationRegistry()
        self.enabled = enabled
        self.max_tools = max_tools
        self.foreign_patterns = foreign_patterns
        self.keyword_patterns = keyword_patterns

    def apply(self, payload: dict[str, Any], tool_names: list[str], conversation_key: str) -> bool:
        """Inject notices into payload["input"] in place.

        Returns:
            True if the payload was modified
        """
        if not self.enabled:
            return False
        items = payload.get("input")
        if not isinstance(items, list):
            return False

        state = self.registry.get(conversation_key)
        changed = False

        drift = detect_drift(items)
        if drift.found:
            state.strike = min(MAX_STRIKES, state.strike + 1)
            suggestions = suggest_alternatives(
                tool_names, drift.attempted_tool, self.foreign_patterns, self.keyword_patterns
            )
            overlay = build_overlay(
                tool_names,
                level="escalated",
                attempted_tool=drift.attempted_tool,
                max_tools=self.max_tools,
                suggestions=suggestions,
            )
            for owner, key, text in list(_candidate_texts(items)):
                if _ANY_FAILURE.search(text):
                    owner[key] = f"{text}\n\n{overlay}"
                    changed = True
            logfire.info(
                "Tool drift detected: {attempted} (strike {strike})",
                attempted=drift.attempted_tool,
                strike=state.strike,
                suggestions=suggestions,
                conversation=conversation_key,
            )

        # Covers requests replayed after the host compacted its context
        if has_marker(items):
            state.injected = True

        if not state.injected:
            overlay = build_overlay(tool_names, level="compact", max_tools=self.max_tools)
            if uses_typed_items(items):
                items.insert(0, {"type": "message", "role": "user", "content": overlay})
            else:
                items.insert(0, {"role": "user", "content": overlay})
            state.injected = True
            changed = True
            logfire.debug("Injected compact tool notice", conversation=conversation_key)

        return changed
