"""OAuth login for the Anthropic provider.

Produces the credential the relay later refreshes and sends:

1. authorize(mode) builds the PKCE authorization URL for the user to open
2. The user pastes back the code shown on the callback page (`code#state`)
3. OAuthLogin.login() exchanges it for an OAuth token pair and saves it,
   or OAuthLogin.create_api_key() exchanges it and mints a static API key
"""

import base64
import hashlib
import json
import secrets
import time
from dataclasses import dataclass
from typing import Callable

import httpx
import logfire

from .credentials import Credential, CredentialStore
from .dispatcher import Fetch
from .errors import LoginError
from .relay import CLIENT_ID, PROVIDER, TOKEN_URL

REDIRECT_URI = "https://console.anthropic.com/oauth/code/callback"
OAUTH_SCOPE = "org:create_api_key user:profile user:inference"
API_KEY_URL = "https://api.anthropic.com/api/oauth/claude_cli/create_api_key"
AUTH_INSTRUCTIONS = "Paste the authorization code here: "

# "max" logs in with a Claude subscription, "console" with a Console account
AUTHORIZE_HOSTS = {
    "max": "claude.ai",
    "console": "console.anthropic.com",
}


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCE:
    verifier: str
    challenge: str


@dataclass(frozen=True)
class Authorization:
    """Where to send the user, and the verifier to hold until they come back."""

    url: str
    verifier: str
    instructions: str = AUTH_INSTRUCTIONS


def generate_pkce() -> PKCE:
    """S256 PKCE pair: 32 random bytes for the verifier, its sha256 for the challenge."""
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return PKCE(verifier=verifier, challenge=challenge)


def authorize(mode: str = "max", client_id: str = CLIENT_ID, pkce: PKCE | None = None) -> Authorization:
    if mode not in AUTHORIZE_HOSTS:
        raise ValueError(f"Unknown login mode {mode!r}, expected one of {tuple(AUTHORIZE_HOSTS)}")
    pkce = pkce or generate_pkce()

    url = httpx.URL(
        f"https://{AUTHORIZE_HOSTS[mode]}/oauth/authorize",
        params={
            "code": "true",
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": REDIRECT_URI,
            "scope": OAUTH_SCOPE,
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
            "state": pkce.verifier,
        },
    )
    return Authorization(url=str(url), verifier=pkce.verifier)


class OAuthLogin:
    """Turns a pasted authorization code into a stored credential.

    Usage:
        auth = authorize("max")
        print(auth.url)
        code = input(auth.instructions)
        credential = await OAuthLogin(HttpxFetch(client), store).login(code, auth.verifier)
    """

    def __init__(
        self,
        fetch: Fetch,
        store: CredentialStore,
        provider: str = PROVIDER,
        token_url: str = TOKEN_URL,
        api_key_url: str = API_KEY_URL,
        client_id: str = CLIENT_ID,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch = fetch
        self.store = store
        self.provider = provider
        self.token_url = token_url
        self.api_key_url = api_key_url
        self.client_id = client_id
        self._clock = clock

    async def _post_json(
        self,
        url: str,
        body: dict | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict:
        response = await self._fetch(url, {
            "method": "POST",
            "headers": {"content-type": "application/json", **(headers or {})},
            "body": json.dumps(body) if body is not None else None,
        })
        try:
            if not response.is_success:
                logfire.error(f"OAuth request to {url} failed: {response.status_code}")
                raise LoginError(response.status_code)
            await response.aread()
            try:
                data = response.json()
            except ValueError as e:
                raise LoginError(response.status_code, f"OAuth response was not JSON: {e}") from e
            if not isinstance(data, dict):
                raise LoginError(response.status_code, "OAuth response was not a JSON object")
            return data
        finally:
            await response.aclose()

    async def exchange(self, code: str, verifier: str) -> Credential:
        """Authorization code (as pasted, `code#state`) to an OAuth token pair."""
        auth_code, _, state = code.strip().partition("#")

        with logfire.span("oauth.exchange", provider=self.provider):
            data = await self._post_json(self.token_url, {
                "code": auth_code,
                "state": state,
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "redirect_uri": REDIRECT_URI,
                "code_verifier": verifier,
            })
            try:
                return Credential(
                    type="oauth",
                    refresh=data["refresh_token"],
                    access=data["access_token"],
                    expires=int(self._clock() * 1000 + data["expires_in"] * 1000),
                )
            except (KeyError, TypeError) as e:
                raise LoginError(None, f"Token exchange returned bad payload: {e}") from e

    async def login(self, code: str, verifier: str) -> Credential:
        credential = await self.exchange(code, verifier)
        self.store.save(self.provider, credential)
        logfire.info("Logged in to {provider} with OAuth", provider=self.provider)
        return credential

    async def create_api_key(self, code: str, verifier: str) -> Credential:
        """Exchange the code, then use the access token to mint and store an API key."""
        oauth = await self.exchange(code, verifier)

        with logfire.span("oauth.create_api_key", provider=self.provider):
            data = await self._post_json(
                self.api_key_url,
                headers={"authorization": f"Bearer {oauth.access}"},
            )
            key = data.get("raw_key")
            if not isinstance(key, str) or not key:
                raise LoginError(None, "API key creation returned no raw_key")

        credential = Credential(type="api", key=key)
        self.store.save(self.provider, credential)
        logfire.info("Created {provider} API key", provider=self.provider)
        return credential
