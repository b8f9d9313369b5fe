from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError

from . import __version__
from .anthropic_compat import ErrorResponse, MessagesRequest
from .config import Settings
from .config import settings as default_settings
from .errors import AuthenticationError, InvalidRequestError, ProxyError
from .http_client import aclose_all as _aclose_http_clients
from .mock_auth import handle_auth_request
from .oauth import CredentialManager
from .relay import StreamRelay
from .router import CHAT_PATH_PREFIX, Classification, classify

logger = logging.getLogger("uvicorn.error")

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def _error_response(error_type: str, message: str, *, status_code: int) -> JSONResponse:
    payload = ErrorResponse(error={"type": error_type, "message": message}).model_dump()
    return JSONResponse(status_code=status_code, content=payload)


def _extract_api_key(request: Request) -> str:
    authorization = request.headers.get("authorization") or ""
    if authorization.startswith("Bearer "):
        return authorization.removeprefix("Bearer ").strip()
    return (request.headers.get("x-api-key") or "").strip()


def _mask(secret: str) -> str:
    return f"{secret[:20]}..." if len(secret) > 20 else f"{secret[:4]}..."


def _truncate_for_log(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... (truncated, {len(text)} chars total)"


@dataclass
class RequestStats:
    """Counters since startup, logged at shutdown."""

    total_requests: int = 0
    chat_requests: int = 0
    failed_requests: int = 0
    by_class: dict[str, int] = field(default_factory=dict)

    def record(self, classification: Classification) -> None:
        self.total_requests += 1
        self.by_class[classification.value] = self.by_class.get(classification.value, 0) + 1
        if classification is Classification.CHAT_COMPLETION:
            self.chat_requests += 1


def create_app(
    settings: Settings | None = None,
    *,
    credentials: CredentialManager | None = None,
    upstream_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    settings = settings or default_settings
    credentials = credentials or CredentialManager(settings)
    relay = StreamRelay(settings, credentials, client=upstream_client)
    stats = RequestStats()

    app = FastAPI(title="codex-proxy", version=__version__, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.credentials = credentials
    app.state.relay = relay
    app.state.stats = stats

    @app.exception_handler(ProxyError)
    async def _proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        stats.failed_requests += 1
        return _error_response(exc.error_type, exc.message, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        stats.failed_requests += 1
        logger.exception("unhandled error for %s %s", request.method, request.url.path)
        return _error_response("api_error", "Internal proxy error", status_code=500)

    @app.on_event("startup")
    async def _log_startup_config() -> None:
        # Intentionally omit secrets (tokens, API keys).
        items: list[tuple[str, object]] = [
            ("listen", f"{settings.host}:{settings.port}"),
            ("codex_api_endpoint", settings.codex_api_endpoint),
            ("issuer", settings.issuer),
            ("token_file", settings.token_file),
            ("anthropic_api_host", settings.anthropic_api_host),
            ("auth_hosts", ", ".join(settings.auth_hosts)),
            ("include_instructions", settings.include_instructions),
            ("model_map_overrides", len(settings.model_map)),
            ("timeout_seconds", settings.timeout_seconds),
            ("verbose", settings.verbose),
        ]
        width = max(len(k) for k, _ in items)
        rendered = "Proxy config:\n" + "\n".join(f"  {k:<{width}} = {v}" for k, v in items)
        logger.info(rendered)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        logger.info(
            "Proxy stats: requests=%d chat=%d failed=%d by_class=%s",
            stats.total_requests,
            stats.chat_requests,
            stats.failed_requests,
            stats.by_class,
        )
        await _aclose_http_clients()

    async def _handle_chat(request: Request, path: str) -> Response:
        api_key = _extract_api_key(request)
        if not api_key or not api_key.startswith(settings.api_key_prefix):
            raise AuthenticationError("Invalid API key. Please set ANTHROPIC_API_KEY environment variable.")
        logger.debug("API key received: %s", _mask(api_key))

        if not path.startswith(CHAT_PATH_PREFIX):
            logger.info("Unknown API endpoint: %s - returning mock response", path)
            return JSONResponse({"status": "ok", "message": "Endpoint not implemented in proxy"})

        body = await request.body()
        if settings.verbose:
            logger.info("Request body: %s", _truncate_for_log(body.decode("utf-8", "replace"), settings.log_max_chars))
        try:
            raw = json.loads(body)
        except ValueError as e:
            raise InvalidRequestError(f"Request body is not valid JSON: {e}") from e
        try:
            req = MessagesRequest.model_validate(raw)
        except ValidationError as e:
            errs = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            raise InvalidRequestError(f"Invalid request: {errs}") from e

        request_id = f"msg_{uuid.uuid4().hex}"
        t0 = time.time()
        logger.info("[%s] chat request model=%s stream=%s messages=%d", request_id, req.model, req.stream, len(req.messages))

        if not req.stream:
            envelope = await relay.complete(req, request_id=request_id)
            logger.info(
                "[%s] response status=200 duration_ms=%d stop_reason=%s",
                request_id,
                int((time.time() - t0) * 1000),
                envelope.get("stop_reason"),
            )
            return JSONResponse(envelope)

        events = await relay.stream(req, request_id=request_id)
        return StreamingResponse(
            events,
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Request-ID": request_id},
        )

    @app.api_route("/{full_path:path}", methods=_ALL_METHODS)
    async def dispatch(request: Request, full_path: str) -> Response:
        path = request.url.path
        host = request.headers.get("host")
        classification = classify(request.method, host, path, settings)
        stats.record(classification)
        logger.info("%s %s (Host: %s) -> %s", request.method, path, host, classification.value)

        if classification is Classification.CHAT_COMPLETION:
            return await _handle_chat(request, path)
        if classification is Classification.AUTH_MOCK:
            return handle_auth_request(request.method, path, dict(request.query_params))
        if classification is Classification.HEALTH_CHECK:
            return JSONResponse({"status": "healthy", "service": "codex-proxy"})
        return JSONResponse({"status": "ok", "proxy": "codex-proxy"})

    return app
