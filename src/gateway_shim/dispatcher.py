"""Request dispatcher - the interception point for Responses API calls.

Everything outbound goes through a "fetch" callable: (target, init) ->
response, where target is a URL string, an httpx.URL, or a prebuilt
httpx.Request, and init optionally carries method/headers/body. The
dispatcher is itself such a callable, wrapping another one:

1. Not `POST .../responses`, body not JSON, model not targeted:
   forward (target, init) exactly as given.
2. Otherwise: merge headers, add auth and conversation headers, run
   normalize -> reconcile -> overlay on the decoded payload.
3. Re-encode and re-dispatch only if something changed; else forward
   the original target with the merged headers.
"""

import uuid
from typing import Any, Awaitable, Callable, Iterable, Mapping, TypedDict

import httpx
import logfire

from .codec import decode_payload, decode_text, encode_payload
from .compat import InstructionsCache, is_targeted_model, normalize
from .config import ShimSettings
from .observability import DebugLog, redact_headers
from .overlay import ConversationRegistry, OverlayInjector, extract_tool_names
from .reconciler import reconcile

RESPONSES_SUFFIX = "/responses"

# Headers that describe the body or the connection, not the call
_RECOMPUTED_HEADERS = ("content-length", "host", "transfer-encoding")

FetchTarget = str | httpx.URL | httpx.Request

HeadersInit = httpx.Headers | Mapping[str, Any] | Iterable[tuple[str, Any]]


class RequestInit(TypedDict, total=False):
    method: str
    headers: HeadersInit
    body: str | bytes | bytearray | memoryview | None


Fetch = Callable[[FetchTarget, RequestInit | None], Awaitable[httpx.Response]]


def parse_request_url(target: Any) -> httpx.URL | None:
    """Absolute URL of a fetch target, or None if there isn't a usable one."""
    try:
        if isinstance(target, httpx.Request):
            url = target.url
        elif isinstance(target, (str, httpx.URL)):
            url = httpx.URL(target)
        else:
            return None
    except (httpx.InvalidURL, TypeError, ValueError):
        return None
    return url if url.is_absolute_url else None


def merge_headers(request: httpx.Request | None, init_headers: HeadersInit | None) -> httpx.Headers:
    """Case-insensitive merge; init headers win over the request's own."""
    headers = httpx.Headers()

    if request is not None:
        for key, value in request.headers.items():
            headers[key] = value

    if not init_headers:
        return headers

    if isinstance(init_headers, (httpx.Headers, Mapping)):
        pairs = init_headers.items()
    else:
        pairs = init_headers
    for key, value in pairs:
        if value is not None:
            headers[key] = str(value)

    return headers


async def read_body_text(target: FetchTarget, init: RequestInit) -> str | None:
    from_init = decode_text(init.get("body"))
    if from_init is not None:
        return from_init

    if isinstance(target, httpx.Request):
        try:
            # aread() swaps the stream for the buffered bytes, so the
            # request can still be sent afterwards
            content = await target.aread()
        except (httpx.StreamError, RuntimeError):
            return None
        return decode_text(content)

    return None


class HttpxFetch:
    """Fetch primitive on top of an httpx.AsyncClient.

    Responses are opened in streaming mode; the caller owns them and
    must read or aclose() them.
    """

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def __call__(self, target: FetchTarget, init: RequestInit | None = None) -> httpx.Response:
        init = init or {}
        request = target if isinstance(target, httpx.Request) else None

        if request is not None and not init:
            return await self.client.send(request, stream=True)

        url = request.url if request is not None else httpx.URL(target)
        method = str(init.get("method") or (request.method if request is not None else "GET")).upper()

        headers = merge_headers(request, init.get("headers"))
        for name in _RECOMPUTED_HEADERS:
            if name in headers:
                del headers[name]

        if "body" in init:
            content = init["body"]
            if isinstance(content, (bytearray, memoryview)):
                content = bytes(content)
        elif request is not None:
            content = await request.aread()
        else:
            content = None

        built = self.client.build_request(method, url, headers=headers, content=content)
        return await self.client.send(built, stream=True)


class RequestDispatcher:
    """Fetch wrapper that normalizes Responses API payloads for a stateless gateway.

    Usage:
        fetch = RequestDispatcher(HttpxFetch(client), settings=ShimSettings.from_env())
        response = await fetch("https://gateway.example/v1/responses", {
            "method": "POST",
            "headers": {"content-type": "application/json"},
            "body": body,
        })
    """

    def __init__(
        self,
        fetch: Fetch,
        settings: ShimSettings | None = None,
        api_key: str | None = None,
        instructions: InstructionsCache | None = None,
        overlay: OverlayInjector | None = None,
        debug_log: DebugLog | None = None,
        path_suffix: str = RESPONSES_SUFFIX,
    ):
        self.settings = settings or ShimSettings()
        self._fetch = fetch
        self.api_key = api_key
        self.instructions = instructions if instructions is not None else InstructionsCache()
        self.overlay = overlay if overlay is not None else OverlayInjector(
            registry=ConversationRegistry(
                ttl=self.settings.conversation_ttl,
                max_entries=self.settings.conversation_limit,
            ),
            enabled=self.settings.tool_overlay,
            max_tools=self.settings.overlay_max_tools,
        )
        self.debug_log = debug_log if debug_log is not None else DebugLog.from_settings(self.settings)
        self.path_suffix = path_suffix

        # Fallback conversation key for the life of this process
        self.conversation_id = str(uuid.uuid4())

    async def __call__(self, target: FetchTarget, init: RequestInit | None = None) -> httpx.Response:
        request_init: RequestInit = init or {}
        request = target if isinstance(target, httpx.Request) else None
        url = parse_request_url(target)
        method = str(request_init.get("method") or (request.method if request is not None else "GET")).upper()

        if method != "POST" or url is None or not url.path.endswith(self.path_suffix):
            return await self._fetch(target, init)

        body_text = await read_body_text(target, request_init)
        payload = decode_payload(body_text)
        if payload is None or not is_targeted_model(payload, self.settings.model_prefix):
            return await self._fetch(target, init)

        headers = merge_headers(request, request_init.get("headers"))

        with logfire.span("shim.dispatch", path=url.path, model=payload.get("model")) as span:
            if self.settings.debug:
                self._log_request(url, payload)

            if "authorization" not in headers and self.api_key:
                headers["authorization"] = f"Bearer {self.api_key}"

            self._ensure_conversation_headers(headers, payload)
            changed = self.rewrite(payload, headers["conversation_id"])
            span.set_attribute("changed", changed)

            if not changed:
                return await self._fetch(target, {**request_init, "headers": headers})

            headers["content-type"] = "application/json"
            if "content-length" in headers:
                del headers["content-length"]

            if self.settings.debug:
                self.debug_log.event(
                    "patched_request",
                    url=str(url),
                    keys=sorted(payload),
                    store=payload.get("store"),
                    inputCount=len(payload["input"]) if isinstance(payload.get("input"), list) else None,
                    headers=redact_headers(headers.items()),
                )
            logfire.debug("Patched {path} request", path=url.path)

            return await self._fetch(
                str(url),
                {**request_init, "method": method, "headers": headers, "body": encode_payload(payload)},
            )

    def rewrite(self, payload: dict[str, Any], conversation_key: str) -> bool:
        """Run the rewriting pipeline on payload in place.

        Returns:
            True if anything changed
        """
        changed = normalize(payload, self.settings, self.instructions)

        items = payload.get("input")
        if isinstance(items, list):
            result = reconcile(items, self.debug_log)
            if result.changed:
                payload["input"] = result.items
                changed = True

        tool_names = extract_tool_names(payload)
        if self.overlay.apply(payload, tool_names, conversation_key):
            changed = True

        return changed

    def conversation_key(self, payload: dict[str, Any]) -> str:
        for field in ("prompt_cache_key", "promptCacheKey"):
            value = payload.get(field)
            if isinstance(value, str) and value:
                return value
        return self.conversation_id

    def _ensure_conversation_headers(self, headers: httpx.Headers, payload: dict[str, Any]) -> None:
        key = self.conversation_key(payload)
        if "conversation_id" not in headers:
            headers["conversation_id"] = key
        if "session_id" not in headers:
            headers["session_id"] = key

    def _log_request(self, url: httpx.URL, payload: dict[str, Any]) -> None:
        """Describe the incoming payload shape (debug mode only)."""
        items = payload.get("input") if isinstance(payload.get("input"), list) else []
        content_string = content_array = content_other = typed = 0
        samples: list[dict[str, Any]] = []

        for i, item in enumerate(items):
            if not isinstance(item, dict):
                continue
            if isinstance(item.get("type"), str):
                typed += 1
            content = item.get("content")
            if isinstance(content, str):
                content_string += 1
            elif isinstance(content, list):
                content_array += 1
            else:
                content_other += 1

            interesting = (
                isinstance(item.get("id"), str)
                or isinstance(item.get("type"), str)
                or (content is not None and not isinstance(content, str))
            )
            if interesting and len(samples) < 3:
                samples.append({
                    "i": i,
                    "keys": sorted(k for k in item if k != "content"),
                    "role": item.get("role"),
                    "type": item.get("type"),
                    "contentType": "array" if isinstance(content, list) else type(content).__name__,
                    "hasId": isinstance(item.get("id"), str),
                })

        summary = {
            "url": str(url),
            "model": payload.get("model"),
            "keys": sorted(payload),
            "store": payload.get("store"),
            "inputCount": len(items),
            "inputHasIds": any(isinstance(item, dict) and isinstance(item.get("id"), str) for item in items),
            "inputContentString": content_string,
            "inputContentArray": content_array,
            "inputContentOther": content_other,
            "inputHasTypeField": typed,
            "inputSamples": samples,
            "hasMaxOutputTokens": "max_output_tokens" in payload,
            "hasMaxTokens": "max_tokens" in payload,
            "hasMaxOutputTokensAlt": "maxOutputTokens" in payload,
        }
        logfire.debug("Responses request", **summary)
        self.debug_log.event("request", **summary)
