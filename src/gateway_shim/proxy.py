"""Local proxy that puts the shim in front of an upstream API.

Hosts that can't have their fetch function swapped point their base URL
at this proxy instead. It runs an aiohttp server on a free localhost port
and sends every request through a fetch pipeline:

- "responses" mode: RequestDispatcher (stateless Responses API normalizer)
- "messages" mode:  AuthRelay (credentials, fingerprint, 429 retry)

Responses stream back chunk by chunk. Error responses (>= 400) are
buffered so they can be logged in full, then passed through unchanged.
"""

import socket

import httpx
import logfire
from aiohttp import web

from .compat import InstructionsCache
from .config import ShimSettings
from .credentials import CredentialStore, JsonCredentialStore, load_api_key
from .dispatcher import Fetch, HttpxFetch, RequestDispatcher
from .errors import ShimError
from .relay import AuthRelay

OPENAI_API_URL = "https://api.openai.com"
ANTHROPIC_API_URL = "https://api.anthropic.com"

# Request headers that belong to the hop to us, not the upstream call
SKIP_REQUEST_HEADERS = {
    "host",
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}

# Headers to skip when forwarding response (hop-by-hop)
SKIP_RESPONSE_HEADERS = {
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
    "keep-alive",
}

MODES = ("responses", "messages")


def _find_free_port() -> int:
    """Find an available port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


class ShimProxy:
    """Async proxy server running requests through the shim pipeline.

    Usage:
        proxy = ShimProxy(mode="responses", upstream_url="https://gateway.example")
        await proxy.start()

        os.environ["OPENAI_BASE_URL"] = proxy.base_url + "/v1"
        proxy.instructions.record("gpt-5.2", base_instructions)

        # ... run the host ...

        await proxy.stop()

    Pass `fetch` to supply a prebuilt pipeline instead of the default one.
    """

    def __init__(
        self,
        mode: str = "responses",
        upstream_url: str | None = None,
        settings: ShimSettings | None = None,
        fetch: Fetch | None = None,
        store: CredentialStore | None = None,
        instructions: InstructionsCache | None = None,
    ):
        if mode not in MODES:
            raise ValueError(f"Unknown proxy mode {mode!r}, expected one of {MODES}")
        self.mode = mode
        self.upstream_url = (upstream_url or (
            OPENAI_API_URL if mode == "responses" else ANTHROPIC_API_URL
        )).rstrip("/")
        self.settings = settings or ShimSettings.from_env()
        self._store = store
        # Host-recorded base instructions, consulted by the "responses" pipeline
        self.instructions = instructions if instructions is not None else InstructionsCache()

        self._fetch = fetch
        self._port: int | None = None
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._http_client: httpx.AsyncClient | None = None

    def _build_pipeline(self) -> Fetch:
        self._http_client = httpx.AsyncClient(timeout=300.0)
        base = HttpxFetch(self._http_client)

        store = self._store
        if store is None and self.settings.auth_file is not None:
            store = JsonCredentialStore(self.settings.auth_file)

        if self.mode == "messages":
            if store is None:
                raise ShimError("messages mode needs a credential store")
            return AuthRelay(base, store, self.settings)

        api_key = load_api_key(store) if store is not None else None
        return RequestDispatcher(base, self.settings, api_key=api_key, instructions=self.instructions)

    async def start(self) -> int:
        """Start the proxy server. Returns the port number."""
        if self._fetch is None:
            self._fetch = self._build_pipeline()

        self._port = _find_free_port()

        # Default client_max_size is 1 MB, too small for long transcripts. 0 = no limit.
        self._app = web.Application(client_max_size=0)
        self._app.router.add_route("*", "/{path:.*}", self._handle_request)

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, "127.0.0.1", self._port)
        await self._site.start()

        logfire.info(f"Shim proxy ({self.mode}) listening on http://127.0.0.1:{self._port}")
        return self._port

    async def stop(self) -> None:
        """Stop the proxy server."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self._site = None
        self._app = None
        logfire.debug("Shim proxy stopped")

    async def __aenter__(self) -> "ShimProxy":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    @property
    def base_url(self) -> str:
        """Get the base URL for this proxy."""
        if self._port is None:
            raise RuntimeError("Proxy not started")
        return f"http://127.0.0.1:{self._port}"

    @property
    def port(self) -> int | None:
        """Get the port number."""
        return self._port

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        """Handle incoming requests."""
        path = "/" + request.match_info.get("path", "")

        if request.method == "GET" and path == "/health":
            return web.Response(text="ok")

        with logfire.span("proxy.forward", path=path, method=request.method, mode=self.mode) as span:
            try:
                return await self._forward_request(request, path, span)
            except ShimError as e:
                logfire.error(f"Shim proxy upstream auth error: {e}")
                span.set_attribute("error", str(e))
                return web.Response(status=502, text=str(e))
            except httpx.HTTPError as e:
                logfire.error(f"Shim proxy transport error: {e}")
                span.set_attribute("error", str(e))
                return web.Response(status=502, text=str(e))

    async def _forward_request(
        self,
        request: web.Request,
        path: str,
        span: logfire.LogfireSpan,
    ) -> web.StreamResponse:
        """Run the request through the pipeline and stream the answer back."""
        body_bytes = await request.read()

        # Case-insensitive, and repeated headers stay repeated
        headers = httpx.Headers([
            (key, value)
            for key, value in request.headers.items()
            if key.lower() not in SKIP_REQUEST_HEADERS
        ])

        url = f"{self.upstream_url}{path}"
        if request.query_string:
            url = f"{url}?{request.query_string}"

        span.set_attribute("request_size_bytes", len(body_bytes))

        if self._fetch is None:
            raise RuntimeError("Proxy not started")

        response = await self._fetch(url, {
            "method": request.method,
            "headers": headers,
            "body": body_bytes if body_bytes else None,
        })

        try:
            span.set_attribute("status_code", response.status_code)

            # On error responses: buffer the body and log it
            if response.status_code >= 400:
                error_body = await response.aread()
                self._log_error_response(path, response.status_code, error_body)

                resp = web.Response(status=response.status_code, body=error_body)
                for key, value in response.headers.items():
                    if key.lower() not in SKIP_RESPONSE_HEADERS:
                        resp.headers[key] = value
                return resp

            resp = web.StreamResponse(status=response.status_code, reason=response.reason_phrase or None)
            for key, value in response.headers.items():
                if key.lower() not in SKIP_RESPONSE_HEADERS:
                    resp.headers[key] = value

            await resp.prepare(request)

            async for chunk in response.aiter_bytes():
                await resp.write(chunk)

            await resp.write_eof()
            return resp
        finally:
            await response.aclose()

    def _log_error_response(self, path: str, status_code: int, body: bytes) -> None:
        try:
            body_text = body.decode("utf-8")
        except UnicodeDecodeError:
            body_text = f"<binary, {len(body)} bytes>"

        logfire.error(
            "API {status_code} on {path}: {preview}",
            status_code=status_code,
            path=path,
            preview=body_text[:2000],
        )
