"""Pytest fixtures for testing."""

from __future__ import annotations

import json
import socket
import time
from collections.abc import AsyncIterator, Callable, Iterable
from pathlib import Path
from typing import Any

import httpx
import pytest

from codex_proxy.config import Settings

ISSUER = "https://auth.test"
CODEX_ENDPOINT = "https://codex.test/backend-api/codex/responses"


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered as exactly these reads."""

    def __init__(self, chunks: Iterable[bytes], *, error: Exception | None = None):
        self._chunks = list(chunks)
        self._error = error

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def chunk_line(
    content: str | None = None,
    *,
    finish_reason: str | None = None,
    usage: dict[str, int] | None = None,
) -> str:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    obj: dict[str, Any] = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "gpt-5.2-codex",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    if usage is not None:
        obj["usage"] = usage
    return f"data: {json.dumps(obj)}\n\n"


def parse_sse(text: str) -> list[tuple[str, dict[str, Any]]]:
    events: list[tuple[str, dict[str, Any]]] = []
    for block in text.split("\n\n"):
        if not block.strip():
            continue
        name = None
        data = None
        for line in block.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: ") :]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: ") :])
        assert name is not None and data is not None, block
        events.append((name, data))
    return events


def write_credential(path: Path, *, expires_in_s: float, access: str = "access-1", refresh: str = "refresh-1") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(
            {
                "access_token": access,
                "refresh_token": refresh,
                "expires_at": int((time.time() + expires_in_s) * 1000),
            }
        ),
        encoding="utf-8",
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from the user's home and environment."""
    return Settings(
        host="127.0.0.1",
        port=8080,
        issuer=ISSUER,
        client_id="app_test_client",
        oauth_port=free_port(),
        oauth_timeout_seconds=5,
        token_file=str(tmp_path / "codex-proxy" / "tokens.json"),
        refresh_margin_seconds=300,
        default_token_lifetime_seconds=3600,
        codex_api_endpoint=CODEX_ENDPOINT,
        timeout_seconds=30,
        user_agent="codex-proxy/test",
        include_instructions=True,
        model_map={},
        api_key_prefix="sk-ant-",
        anthropic_api_host="api.anthropic.com",
        auth_hosts=("claude.ai", "platform.claude.com"),
        verbose=False,
    )


@pytest.fixture
def logged_in(settings: Settings) -> Path:
    """A credential that stays valid for an hour."""
    path = Path(settings.token_file)
    write_credential(path, expires_in_s=3600)
    return path


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make
