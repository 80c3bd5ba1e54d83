"""gateway_shim - make stateful-upstream clients work against stateless gateways.

Architecture:
- RequestDispatcher wraps a fetch primitive and rewrites Responses API
  payloads (normalize -> reconcile -> tool notice) before they leave
- AuthRelay wraps a fetch primitive for the Messages API (credentials,
  fingerprint headers, 429 retry, streaming tool-name rewrite)
- ShimProxy exposes either pipeline as a local HTTP endpoint
- OAuthLogin turns a pasted authorization code into a stored credential
"""

from .compat import InstructionsCache, normalize
from .config import ShimSettings
from .credentials import Credential, CredentialStore, JsonCredentialStore, MemoryCredentialStore
from .dispatcher import HttpxFetch, RequestDispatcher
from .errors import LoginError, ShimError, TokenRefreshError
from .oauth import OAuthLogin, authorize, generate_pkce
from .observability import configure as configure_observability
from .overlay import ConversationRegistry, OverlayInjector
from .proxy import ShimProxy
from .reconciler import reconcile
from .relay import AuthRelay

__all__ = [
    # Pipelines
    "RequestDispatcher",
    "AuthRelay",
    "HttpxFetch",
    "ShimProxy",
    # Rewriting steps
    "normalize",
    "reconcile",
    "OverlayInjector",
    "ConversationRegistry",
    "InstructionsCache",
    # Credentials
    "Credential",
    "CredentialStore",
    "JsonCredentialStore",
    "MemoryCredentialStore",
    "OAuthLogin",
    "authorize",
    "generate_pkce",
    # Config, errors, observability
    "ShimSettings",
    "ShimError",
    "TokenRefreshError",
    "LoginError",
    "configure_observability",
]
__version__ = "0.1.0"
