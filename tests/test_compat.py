"""Tests for gateway_shim.compat and gateway_shim.config."""

from __future__ import annotations

import copy
from pathlib import Path

import pytest

from gateway_shim.compat import ENCRYPTED_REASONING, InstructionsCache, normalize
from gateway_shim.config import ShimSettings, default_auth_file


# ---------------------------------------------------------------------------
# normalize
# ---------------------------------------------------------------------------


class TestNormalize:
    def test_stateful_fields_removed(self):
        payload = {"model": "gpt-5.2", "store": True, "previous_response_id": "resp_1", "input": []}

        assert normalize(payload) is True
        assert payload["store"] is False
        assert "previous_response_id" not in payload

    def test_full_rule_set(self):
        payload = {
            "model": "gpt-5.2-codex",
            "previousResponseId": "resp_1",
            "max_output_tokens": 100,
            "maxOutputTokens": 100,
            "max_completion_tokens": 100,
            "maxCompletionTokens": 100,
            "include": ["file_search_call.results"],
        }
        normalize(payload)
        assert payload == {
            "model": "gpt-5.2-codex",
            "instructions": ".",
            "store": False,
            "parallel_tool_calls": False,
            "include": ["file_search_call.results", ENCRYPTED_REASONING],
        }

    def test_other_models_untouched(self):
        payload = {"model": "claude-sonnet-4", "store": True}
        assert normalize(payload) is False
        assert payload == {"model": "claude-sonnet-4", "store": True}

    def test_missing_model_untouched(self):
        assert normalize({"store": True}) is False

    def test_idempotent(self):
        payload = {"model": "gpt-5.2", "store": True, "include": "junk", "max_output_tokens": 5}
        normalize(payload)
        snapshot = copy.deepcopy(payload)

        assert normalize(payload) is False
        assert payload == snapshot

    def test_non_list_include_replaced(self):
        payload = {"model": "gpt-5.2", "include": "reasoning"}
        normalize(payload)
        assert payload["include"] == [ENCRYPTED_REASONING]

    def test_explicit_parallel_tool_calls_kept(self):
        payload = {"model": "gpt-5.2", "parallel_tool_calls": True}
        normalize(payload)
        assert payload["parallel_tool_calls"] is True

    def test_existing_instructions_kept(self):
        payload = {"model": "gpt-5.2", "instructions": "be brief"}
        normalize(payload)
        assert payload["instructions"] == "be brief"

    def test_blank_instructions_filled_from_cache(self):
        cache = InstructionsCache()
        cache.record("gpt-5.2", "the real prompt")
        payload = {"model": "gpt-5.2", "instructions": "   "}

        normalize(payload, instructions=cache)
        assert payload["instructions"] == "the real prompt"

    def test_fallback_instructions_configurable(self):
        payload = {"model": "gpt-5.2"}
        normalize(payload, ShimSettings(default_instructions="You are helpful."))
        assert payload["instructions"] == "You are helpful."

    def test_blank_fallback_instructions_still_idempotent(self):
        settings = ShimSettings(default_instructions="")
        payload = {"model": "gpt-5.2"}

        assert normalize(payload, settings) is True
        assert payload["instructions"] == "."
        assert normalize(payload, settings) is False

    def test_cache_key_kept_by_default(self):
        payload = {"model": "gpt-5.2", "prompt_cache_key": "ses_1"}
        normalize(payload)
        assert payload["prompt_cache_key"] == "ses_1"

    def test_cache_key_stripped_when_enabled(self):
        payload = {"model": "gpt-5.2", "prompt_cache_key": "ses_1"}
        normalize(payload, ShimSettings(strip_cache_key=True))
        assert "prompt_cache_key" not in payload

    def test_model_prefix_configurable(self):
        payload = {"model": "o4-mini", "store": True}
        assert normalize(payload, ShimSettings(model_prefix="o4")) is True
        assert payload["store"] is False


class TestInstructionsCache:
    def test_record_and_clear(self):
        cache = InstructionsCache()
        cache.record("gpt-5.2", "")
        assert cache.get("gpt-5.2") is None

        cache.record("gpt-5.2", "prompt")
        assert cache.get("gpt-5.2") == "prompt"
        assert cache.get(None) is None

        cache.clear()
        assert cache.get("gpt-5.2") is None


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


class TestSettingsFromEnv:
    def test_defaults(self):
        settings = ShimSettings.from_env({"XDG_DATA_HOME": "/data"})
        assert settings.debug is False
        assert settings.tool_overlay is True
        assert settings.overlay_max_tools == 60
        assert settings.retry_max_attempts == 3
        assert settings.auth_file == Path("/data/opencode/auth.json")
        assert settings.auth_mode is None

    def test_overrides(self):
        settings = ShimSettings.from_env({
            "GATEWAY_SHIM_DEBUG": "yes",
            "GATEWAY_SHIM_LOG_FILE": "/tmp/shim.jsonl",
            "GATEWAY_SHIM_STRIP_CACHE_KEY": "true",
            "GATEWAY_SHIM_TOOL_OVERLAY": "0",
            "GATEWAY_SHIM_OVERLAY_MAX_TOOLS": "5",
            "GATEWAY_SHIM_AUTH_FILE": "/secrets/auth.json",
            "GATEWAY_SHIM_AUTH_MODE": " Bearer ",
            "GATEWAY_SHIM_RETRY_MAX_ATTEMPTS": "7",
        })
        assert settings.debug is True
        assert settings.log_file == "/tmp/shim.jsonl"
        assert settings.strip_cache_key is True
        assert settings.tool_overlay is False
        assert settings.overlay_max_tools == 5
        assert settings.auth_file == Path("/secrets/auth.json")
        assert settings.auth_mode == "bearer"
        assert settings.retry_max_attempts == 7

    @pytest.mark.parametrize("value", ["false", "no", "off", ""])
    def test_overlay_stays_on_unless_zero(self, value):
        assert ShimSettings.from_env({"GATEWAY_SHIM_TOOL_OVERLAY": value}).tool_overlay is True

    @pytest.mark.parametrize("value", ["", "   "])
    def test_blank_default_instructions_fall_back(self, value):
        settings = ShimSettings.from_env({"GATEWAY_SHIM_DEFAULT_INSTRUCTIONS": value})
        assert settings.default_instructions == "."

        payload = {"model": "gpt-5.2"}
        normalize(payload, settings)
        assert normalize(payload, settings) is False

    def test_default_instructions_kept_verbatim(self):
        settings = ShimSettings.from_env({"GATEWAY_SHIM_DEFAULT_INSTRUCTIONS": " You are terse. "})
        assert settings.default_instructions == " You are terse. "

    def test_malformed_numbers_fall_back(self):
        settings = ShimSettings.from_env({
            "GATEWAY_SHIM_OVERLAY_MAX_TOOLS": "lots",
            "GATEWAY_SHIM_RETRY_MAX_ATTEMPTS": "0",
        })
        assert settings.overlay_max_tools == 60
        assert settings.retry_max_attempts == 1

    def test_default_auth_file_without_xdg(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert default_auth_file({}) == tmp_path / ".local" / "share" / "opencode" / "auth.json"
