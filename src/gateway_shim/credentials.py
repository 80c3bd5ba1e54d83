"""Credential store boundary.

The host owns credential storage. We only need a structured view of one
provider's entry and a way to write a refreshed one back. The default
store reads the host's auth.json:

    {
      "anthropic": {"type": "oauth", "refresh": "...", "access": "...", "expires": 1735689600000},
      "openai": {"type": "api", "key": "sk-..."}
    }

`expires` is epoch milliseconds.
"""

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import logfire


@dataclass
class Credential:
    """One provider's credential: an expiring OAuth token pair or a static key."""

    type: str
    access: str | None = None
    refresh: str | None = None
    expires: int | None = None
    key: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        expires = data.get("expires")
        return cls(
            type=str(data.get("type", "")),
            access=data.get("access") or None,
            refresh=data.get("refresh") or None,
            expires=int(expires) if isinstance(expires, (int, float)) else None,
            key=data.get("key") or data.get("apiKey") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        if self.type == "api":
            return {"type": "api", "key": self.key}
        return {
            "type": self.type,
            "refresh": self.refresh,
            "access": self.access,
            "expires": self.expires,
        }

    @property
    def is_oauth(self) -> bool:
        return self.type == "oauth"

    def needs_refresh(self, now_ms: int | None = None) -> bool:
        """OAuth credential with no access token, or one past its expiry."""
        if not self.is_oauth:
            return False
        if not self.access:
            return True
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return self.expires is not None and self.expires < now_ms

    @property
    def token(self) -> str:
        """The secret to send: access token for OAuth, key for API credentials."""
        if self.type == "oauth":
            return self.access or ""
        if self.type == "api":
            return self.key or ""
        return ""


class CredentialStore(Protocol):
    def load(self, provider: str) -> Credential | None: ...

    def save(self, provider: str, credential: Credential) -> None: ...


class JsonCredentialStore:
    """auth.json-backed store. Missing or unreadable files mean no credential."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _read(self) -> dict[str, Any]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logfire.warning(f"Unreadable credential file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def load(self, provider: str) -> Credential | None:
        entry = self._read().get(provider)
        if not isinstance(entry, dict):
            return None
        return Credential.from_dict(entry)

    def save(self, provider: str, credential: Credential) -> None:
        data = self._read()
        data[provider] = credential.to_dict()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2))
        logfire.debug(f"Saved {provider} credential to {self.path}")


class MemoryCredentialStore:
    """Dict-backed store, for hosts that keep credentials themselves."""

    def __init__(self, credentials: dict[str, Credential] | None = None):
        self.credentials = dict(credentials or {})

    def load(self, provider: str) -> Credential | None:
        return self.credentials.get(provider)

    def save(self, provider: str, credential: Credential) -> None:
        self.credentials[provider] = credential


def load_api_key(store: CredentialStore, provider: str = "openai") -> str | None:
    """Static API key for `provider`, if the store has one."""
    credential = store.load(provider)
    if credential is None or credential.type != "api":
        return None
    return credential.key or None
