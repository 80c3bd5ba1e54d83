"""Authenticated relay for the Anthropic Messages API.

A fetch wrapper (same (target, init) -> response shape as the
dispatcher) that makes outbound calls look like the reference CLI:

1. Refresh an expired OAuth access token before the call (fatal on failure)
2. Attach the credential as `authorization: Bearer` or `x-api-key`
3. Set the reference client's fingerprint headers
4. Prefix tool names in the request body; add `?beta=true` on /messages
5. Retry 429s, honoring Retry-After, with capped exponential backoff
6. Strip the tool-name prefix from the response body as it streams

Only rate limiting is retried. Any other status comes back as-is.
"""

import asyncio
import email.utils
import json
import math
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
import logfire

from .codec import decode_text
from .config import ShimSettings
from .credentials import Credential, CredentialStore
from .dispatcher import Fetch, FetchTarget, RequestInit, merge_headers, parse_request_url
from .errors import TokenRefreshError
from .observability import DebugLog, redact_headers, summarize_body
from .streaming import TOOL_PREFIX, strip_tool_prefix

PROVIDER = "anthropic"
CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"

ANTHROPIC_BETAS = "claude-code-20250219,interleaved-thinking-2025-05-14"
USER_AGENT = "claude-cli/2.1.4 (external, sdk-cli)"

# What the reference CLI (and the Stainless SDK under it) sends
FINGERPRINT_HEADERS = {
    "anthropic-beta": ANTHROPIC_BETAS,
    "user-agent": USER_AGENT,
    "x-app": "cli",
    "anthropic-dangerous-direct-browser-access": "true",
    "anthropic-version": "2023-06-01",
    "x-stainless-lang": "js",
    "x-stainless-package-version": "0.70.0",
    "x-stainless-os": "Linux",
    "x-stainless-arch": "x64",
    "x-stainless-runtime": "node",
    "x-stainless-runtime-version": "v24.11.1",
}

# Describe the encoded upstream body; wrong once we hand out decoded bytes
_BODY_ENCODING_HEADERS = ("content-encoding", "content-length")


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Retry-After as seconds to wait. Accepts delta-seconds or an HTTP date."""
    if not value or not value.strip():
        return None

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else None

    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def retry_delay(attempt: int, retry_after: float | None, base_ms: int, max_delay_ms: int) -> float:
    """Seconds to wait before attempt `attempt + 1`."""
    if retry_after is not None:
        delay_ms = retry_after * 1000
    else:
        delay_ms = base_ms * (2 ** (attempt - 1))
    return min(delay_ms, max_delay_ms) / 1000


def prefix_tool_names(body: str, prefix: str = TOOL_PREFIX) -> str:
    """Prefix declared tool names and tool_use block names in a Messages body."""
    try:
        parsed = json.loads(body)
    except ValueError:
        return body
    if not isinstance(parsed, dict):
        return body

    tools = parsed.get("tools")
    if isinstance(tools, list):
        parsed["tools"] = [
            {**tool, "name": f"{prefix}{tool['name']}"}
            if isinstance(tool, dict) and tool.get("name") else tool
            for tool in tools
        ]

    messages = parsed.get("messages")
    if isinstance(messages, list):
        for message in messages:
            if not isinstance(message, dict) or not isinstance(message.get("content"), list):
                continue
            message["content"] = [
                {**block, "name": f"{prefix}{block['name']}"}
                if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("name")
                else block
                for block in message["content"]
            ]

    return json.dumps(parsed, separators=(",", ":"), ensure_ascii=False)


class StrippedStream(httpx.AsyncByteStream):
    """Upstream body through the prefix stripper; closing it closes upstream."""

    def __init__(self, response: httpx.Response, prefix: str = TOOL_PREFIX):
        self._response = response
        self._prefix = prefix

    async def __aiter__(self):
        try:
            async for chunk in strip_tool_prefix(self._response.aiter_bytes(), self._prefix):
                yield chunk
        finally:
            await self._response.aclose()

    async def aclose(self) -> None:
        await self._response.aclose()


def wrap_response(response: httpx.Response, prefix: str = TOOL_PREFIX) -> httpx.Response:
    """Same status and headers, body streamed through the prefix stripper."""
    headers = [
        (key, value)
        for key, value in response.headers.multi_items()
        if key.lower() not in _BODY_ENCODING_HEADERS
    ]

    extensions = {
        key: response.extensions[key]
        for key in ("reason_phrase", "http_version")
        if key in response.extensions
    }
    try:
        request = response.request
    except RuntimeError:
        request = None

    return httpx.Response(
        response.status_code,
        headers=headers,
        stream=StrippedStream(response, prefix),
        request=request,
        extensions=extensions,
    )


class AuthRelay:
    """Fetch wrapper that authenticates, disguises, and retries Messages API calls.

    Usage:
        relay = AuthRelay(HttpxFetch(client), JsonCredentialStore(settings.auth_file), settings)
        response = await relay("https://api.anthropic.com/v1/messages", {
            "method": "POST",
            "body": json.dumps(body),
        })
    """

    def __init__(
        self,
        fetch: Fetch,
        store: CredentialStore,
        settings: ShimSettings | None = None,
        provider: str = PROVIDER,
        token_url: str = TOKEN_URL,
        client_id: str = CLIENT_ID,
        tool_prefix: str = TOOL_PREFIX,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        debug_log: DebugLog | None = None,
    ):
        self._fetch = fetch
        self.store = store
        self.settings = settings or ShimSettings()
        self.provider = provider
        self.token_url = token_url
        self.client_id = client_id
        self.tool_prefix = tool_prefix
        self._sleep = sleep
        self._clock = clock
        self.debug_log = debug_log if debug_log is not None else DebugLog.from_settings(self.settings)

    async def ensure_credential(self) -> Credential | None:
        """Current credential, refreshed first if it's an expired OAuth token."""
        credential = self.store.load(self.provider)
        if credential is None:
            return None
        if credential.needs_refresh(int(self._clock() * 1000)):
            credential = await self._refresh(credential)
        return credential

    async def _refresh(self, credential: Credential) -> Credential:
        with logfire.span("relay.refresh", provider=self.provider) as span:
            response = await self._fetch(self.token_url, {
                "method": "POST",
                "headers": {"content-type": "application/json"},
                "body": json.dumps({
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh,
                    "client_id": self.client_id,
                }),
            })
            try:
                span.set_attribute("status_code", response.status_code)
                if not response.is_success:
                    logfire.error(f"Token refresh failed: {response.status_code}")
                    raise TokenRefreshError(response.status_code)
                await response.aread()
                try:
                    data = response.json()
                    refreshed = Credential(
                        type="oauth",
                        refresh=data["refresh_token"],
                        access=data["access_token"],
                        expires=int(self._clock() * 1000 + data["expires_in"] * 1000),
                    )
                except (ValueError, KeyError, TypeError) as e:
                    raise TokenRefreshError(response.status_code, f"Token refresh returned bad payload: {e}") from e
            finally:
                await response.aclose()

        self.store.save(self.provider, refreshed)
        logfire.info("Refreshed {provider} access token", provider=self.provider)
        return refreshed

    def _auth_mode(self, credential: Credential | None) -> str:
        if self.settings.auth_mode:
            return self.settings.auth_mode
        return "x-api-key" if credential is not None and credential.type == "api" else "bearer"

    async def __call__(self, target: FetchTarget, init: RequestInit | None = None) -> httpx.Response:
        credential = await self.ensure_credential()

        request_init: RequestInit = dict(init or {})
        request = target if isinstance(target, httpx.Request) else None
        headers = merge_headers(request, request_init.get("headers"))

        token = credential.token if credential is not None else ""
        auth_mode = self._auth_mode(credential)
        if token and auth_mode == "x-api-key":
            headers["x-api-key"] = token
            if "authorization" in headers:
                del headers["authorization"]
        elif token:
            headers["authorization"] = f"Bearer {token}"
            if "x-api-key" in headers:
                del headers["x-api-key"]
        for key, value in FINGERPRINT_HEADERS.items():
            headers[key] = value

        body = request_init.get("body")
        if body is None and request is not None:
            body = await request.aread()
        body_text = decode_text(body)
        if body_text is not None:
            request_init["body"] = prefix_tool_names(body_text, self.tool_prefix)
            if "content-length" in headers:
                del headers["content-length"]

        forward_target: FetchTarget = target
        url = parse_request_url(target)
        if url is not None and url.path.endswith("/messages") and "beta" not in url.params:
            url = url.copy_merge_params({"beta": "true"})
            forward_target = str(url)
            if request is not None:
                request_init.setdefault("method", request.method)
                if "body" not in request_init:
                    request_init["body"] = await request.aread()

        request_init["headers"] = headers
        method = request_init.get("method") or (request.method if request is not None else None)

        if self.settings.debug:
            self.debug_log.event(
                "request",
                url=str(url) if url is not None else None,
                authMode=auth_mode,
                method=method,
                headers=redact_headers(headers.items()),
                body=summarize_body(request_init.get("body")),
            )

        max_attempts = max(1, self.settings.retry_max_attempts)
        with logfire.span("relay.fetch", url=str(url) if url is not None else None) as span:
            response = None
            for attempt in range(1, max_attempts + 1):
                response = await self._fetch(forward_target, request_init)

                retry_after_header = response.headers.get("retry-after")
                retry_after = parse_retry_after(retry_after_header)
                if self.settings.debug:
                    self.debug_log.event(
                        "response",
                        url=str(url) if url is not None else None,
                        attempt=attempt,
                        status=response.status_code,
                        statusText=response.reason_phrase,
                        retryAfter=retry_after_header,
                        headers=redact_headers(response.headers.items()),
                    )

                if response.status_code != 429 or attempt == max_attempts:
                    break

                await response.aclose()
                delay = retry_delay(
                    attempt,
                    retry_after,
                    self.settings.retry_base_ms,
                    self.settings.retry_max_delay_ms,
                )
                logfire.warning(
                    "Rate limited (attempt {attempt}/{max_attempts}), retrying in {delay:.1f}s",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay=delay,
                )
                self.debug_log.event("retry", attempt=attempt, delayMs=int(delay * 1000))
                await self._sleep(delay)

            span.set_attribute("status_code", response.status_code)
            span.set_attribute("attempts", attempt)

        if self.settings.debug and not response.is_success:
            content_type = response.headers.get("content-type", "")
            if "text/event-stream" not in content_type:
                preview = (await response.aread()).decode("utf-8", errors="replace")
                self.debug_log.event("error_body", contentType=content_type, preview=preview[:2000])

        return wrap_response(response, self.tool_prefix)
