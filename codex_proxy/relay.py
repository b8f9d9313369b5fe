from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from .anthropic_compat import MessagesRequest
from .config import Settings
from .errors import AuthenticationError, UpstreamError
from .http_client import get_async_client
from .oauth import CredentialManager
from .translator import (
    CODEX_SYSTEM_INSTRUCTIONS,
    SignalKind,
    content_block_delta_event,
    content_block_start_event,
    content_block_stop_event,
    map_stop_reason,
    message_delta_event,
    message_start_event,
    message_stop_event,
    translate_request,
    translate_response,
    translate_stream_chunk,
)

logger = logging.getLogger("uvicorn.error")

_DATA_PREFIX = "data:"
_DONE = "[DONE]"


class LineBuffer:
    """Reassemble newline-terminated lines from arbitrarily split reads."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.removesuffix("\r") for line in lines]

    def flush(self) -> list[str]:
        rest = (self._pending + self._decoder.decode(b"", final=True)).removesuffix("\r")
        self._pending = ""
        return [rest] if rest else []


@dataclass
class RelayStats:
    frames: int = 0
    deltas: int = 0
    ignored_frames: int = 0
    dropped_frames: int = 0


def parse_data_line(line: str, stats: RelayStats | None = None) -> dict[str, Any] | None:
    """Return the JSON object carried by a `data:` line, or None.

    Non-data lines (`event:`, comments, blanks) and the `[DONE]` sentinel are
    skipped; undecodable payloads are dropped and counted.
    """
    if not line.startswith(_DATA_PREFIX):
        return None
    data = line[len(_DATA_PREFIX) :].strip()
    if not data or data == _DONE:
        return None
    try:
        obj = json.loads(data)
    except ValueError:
        obj = None
    if not isinstance(obj, dict):
        if stats is not None:
            stats.dropped_frames += 1
        logger.debug("dropping undecodable stream frame: %.200s", data)
        return None
    if stats is not None:
        stats.frames += 1
    return obj


class EventStreamTranslator:
    """Turns upstream chunk lines into the Anthropic SSE event sequence.

    `start()` once, `feed_line()` per complete line, `finish()` once at EOF.
    """

    def __init__(self, *, message_id: str, model: str) -> None:
        self.message_id = message_id
        self.model = model
        self.stats = RelayStats()
        self.finish_reason: str | None = None
        self.output_tokens = 0
        self._started = False
        self._finished = False

    def start(self) -> list[str]:
        if self._started:
            return []
        self._started = True
        return [message_start_event(message_id=self.message_id, model=self.model), content_block_start_event()]

    def feed_line(self, line: str) -> list[str]:
        chunk = parse_data_line(line, self.stats)
        if chunk is None:
            return []
        usage = chunk.get("usage")
        if isinstance(usage, dict) and isinstance(usage.get("completion_tokens"), int):
            self.output_tokens = usage["completion_tokens"]
        signal = translate_stream_chunk(chunk)
        if signal is None:
            self.stats.ignored_frames += 1
            return []
        if signal.kind is SignalKind.TURN_COMPLETE:
            self.finish_reason = signal.finish_reason
            return []
        self.stats.deltas += 1
        return [content_block_delta_event(signal.text)]

    @property
    def stop_reason(self) -> str | None:
        if self.finish_reason is None:
            return "end_turn"
        return map_stop_reason(self.finish_reason)

    def finish(self) -> list[str]:
        if self._finished:
            return []
        self._finished = True
        return [
            content_block_stop_event(),
            message_delta_event(self.stop_reason, self.output_tokens),
            message_stop_event(),
        ]


def _truncate(text: str, limit: int) -> str:
    cleaned = text.replace("\r", "").replace("\n", "\\n")
    if len(cleaned) > limit:
        return f"{cleaned[:limit]}... (len={len(cleaned)})"
    return cleaned


class StreamRelay:
    """Forwards one Messages request to Codex and translates the reply."""

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialManager,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self._client = client

    async def _http(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_async_client("codex-upstream")

    def build_payload(self, req: MessagesRequest) -> dict[str, Any]:
        instructions = CODEX_SYSTEM_INSTRUCTIONS if self.settings.include_instructions else None
        return translate_request(req, instructions=instructions, model_map=self.settings.effective_model_map())

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
            "Accept": "text/event-stream",
            "User-Agent": self.settings.user_agent,
        }

    async def _open(self, req: MessagesRequest, *, request_id: str) -> tuple[httpx.Response, dict[str, Any]]:
        token = await self.credentials.get_valid_access_token()
        if not token:
            raise AuthenticationError("Not authenticated with Codex. Run 'codex-proxy login' first.")

        payload = self.build_payload(req)
        url = self.settings.codex_api_endpoint
        client = await self._http()
        request = client.build_request(
            "POST",
            url,
            json=payload,
            headers=self._headers(token),
            timeout=self.settings.timeout_seconds,
        )
        logger.debug(
            "[%s] forwarding to Codex: url=%s model=%s stream=%s messages=%d",
            request_id,
            url,
            payload["model"],
            payload["stream"],
            len(payload["messages"]),
        )
        try:
            resp = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("[%s] request to Codex failed: %s", request_id, e)
            raise UpstreamError("Failed to connect to Codex API") from e

        if not 200 <= resp.status_code < 300:
            try:
                body = (await resp.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await resp.aclose()
            logger.error(
                "[%s] Codex upstream error: status=%d body=%s",
                request_id,
                resp.status_code,
                _truncate(body, self.settings.log_max_chars),
            )
            raise UpstreamError(
                f"Codex API returned status {resp.status_code}",
                upstream_status=resp.status_code,
                upstream_body=body,
            )
        return resp, payload

    async def complete(self, req: MessagesRequest, *, request_id: str) -> dict[str, Any]:
        resp, payload = await self._open(req, request_id=request_id)
        try:
            raw = await resp.aread()
        except httpx.HTTPError as e:
            logger.error("[%s] Codex response read failed: %s", request_id, e)
            raise UpstreamError("Codex API connection failed") from e
        finally:
            await resp.aclose()

        try:
            body = json.loads(raw)
        except ValueError as e:
            logger.error("[%s] error parsing Codex response: %s", request_id, _truncate(raw.decode("utf-8", "replace"), self.settings.log_max_chars))
            raise UpstreamError("Error parsing upstream response") from e

        translated = translate_response(body)
        upstream_id = body.get("id") if isinstance(body, dict) else None
        return {
            "id": upstream_id if isinstance(upstream_id, str) and upstream_id else request_id,
            "type": "message",
            "role": "assistant",
            "content": translated.content,
            "model": payload["model"],
            "stop_reason": translated.stop_reason,
            "stop_sequence": None,
            "usage": translated.usage,
        }

    async def stream(self, req: MessagesRequest, *, request_id: str) -> AsyncIterator[str]:
        """Open the upstream stream and return the downstream event iterator.

        Authentication and connection failures raise here, before any event is
        produced, so the caller can still answer with a JSON error.
        """
        resp, _ = await self._open(req, request_id=request_id)
        translator = EventStreamTranslator(message_id=request_id, model=req.model)
        return self._relay(resp, translator, request_id=request_id)

    async def _relay(
        self,
        resp: httpx.Response,
        translator: EventStreamTranslator,
        *,
        request_id: str,
    ) -> AsyncIterator[str]:
        buffer = LineBuffer()
        completed = False
        try:
            for event in translator.start():
                yield event
            try:
                async for chunk in resp.aiter_bytes():
                    for line in buffer.feed(chunk):
                        for event in translator.feed_line(line):
                            yield event
            except httpx.HTTPError as e:
                # Frames already sent stay sent; the response just ends here.
                logger.error("[%s] Codex stream error: %s", request_id, e)
                return
            for line in buffer.flush():
                for event in translator.feed_line(line):
                    yield event
            for event in translator.finish():
                yield event
            completed = True
        finally:
            await resp.aclose()
            stats = translator.stats
            log = logger.warning if stats.dropped_frames else logger.info
            log(
                "[%s] stream %s: frames=%d deltas=%d ignored=%d dropped=%d stop_reason=%s",
                request_id,
                "completed" if completed else "aborted",
                stats.frames,
                stats.deltas,
                stats.ignored_frames,
                stats.dropped_frames,
                translator.stop_reason,
            )
