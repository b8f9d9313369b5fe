from __future__ import annotations

import argparse
import asyncio
import errno
import os
import socket
import sys
from collections.abc import Awaitable
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import uvicorn
from rich.console import Console

from . import __version__
from .http_client import aclose_all

if TYPE_CHECKING:
    from .config import Settings

T = TypeVar("T")

console = Console(stderr=True)


def _maybe_load_dotenv(path: Path) -> None:
    if not path.exists() or not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if value and value[0] in {"'", '"'} and value[-1] == value[0]:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codex-proxy",
        description="Serve the Anthropic Messages API on top of a Codex (ChatGPT Plus/Pro) OAuth login.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--env-file",
        default=None,
        help="Optionally load environment variables from this .env file.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("login", help="Authenticate with Codex OAuth.")
    sub.add_parser("logout", help="Clear stored authentication tokens.")
    sub.add_parser("status", help="Check authentication status.")

    start = sub.add_parser("start", help="Start the proxy server.")
    start.add_argument("--host", default=None, help="Bind host (default: 127.0.0.1).")
    start.add_argument("-p", "--port", type=int, default=None, help="Bind port (default: 8080).")
    start.add_argument("-v", "--verbose", action="store_true", help="Log request bodies.")
    start.add_argument(
        "--log-level",
        default=os.environ.get("CODEX_PROXY_LOG_LEVEL", "info"),
        help="Uvicorn log level (default: info).",
    )
    start.add_argument("--ssl-certfile", default=None, help="Serve HTTPS with this certificate.")
    start.add_argument("--ssl-keyfile", default=None, help="Private key for --ssl-certfile.")
    return parser


async def _closing(coro: Awaitable[T]) -> T:
    # Shared httpx clients are bound to the loop that created them.
    try:
        return await coro
    finally:
        await aclose_all()


def _login(settings: Settings) -> int:
    from .oauth import CredentialManager

    manager = CredentialManager(settings)

    def _show_url(url: str) -> None:
        console.print("Opening browser for OAuth authorization...")
        console.print("If the browser doesn't open, visit this URL:")
        console.print(url, style="cyan", soft_wrap=True)

    try:
        with console.status("Waiting for authorization in the browser..."):
            credential = asyncio.run(_closing(manager.authorize(on_url=_show_url)))
    except Exception as e:
        console.print(f"[red]Authentication failed: {e}[/red]")
        return 1
    console.print("[green]Successfully authenticated with Codex![/green]")
    expires = datetime.fromtimestamp(credential.expires_at / 1000)
    console.print(f"Token expires at: {expires:%Y-%m-%d %H:%M:%S}")
    return 0


def _logout(settings: Settings) -> int:
    from .oauth import CredentialManager

    CredentialManager(settings).clear()
    console.print("[green]✓ Cleared authentication tokens[/green]")
    return 0


def _status(settings: Settings) -> int:
    from .oauth import CredentialManager

    status = CredentialManager(settings).status()
    if not status.authenticated:
        console.print("[yellow]⚠ Not authenticated[/yellow]")
        console.print("Run 'codex-proxy login' to authenticate")
        return 1
    if status.expired:
        # The refresh token may still be good; `start` will try it.
        console.print("[yellow]⚠ Token expired[/yellow]")
        console.print("Run 'codex-proxy login' to re-authenticate")
        return 1
    console.print("[green]✓ Authenticated[/green]")
    console.print(f"Token expires in {status.minutes_remaining} minutes")
    return 0


def _bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def _start(settings: Settings, args: argparse.Namespace) -> int:
    from .oauth import CredentialManager
    from .server import create_app

    manager = CredentialManager(settings)
    token = asyncio.run(_closing(manager.get_valid_access_token()))
    if not token:
        console.print("[red]✗ Not authenticated[/red]")
        console.print("Run 'codex-proxy login' first")
        return 1

    try:
        sock = _bind_socket(settings.host, settings.port)
    except OSError as e:
        if e.errno == errno.EACCES:
            console.print(f"[red]Permission denied: port {settings.port} is privileged[/red]")
            console.print("[yellow]Pick a port above 1024 with --port, or run with elevated privileges.[/yellow]")
        else:
            console.print(f"[red]Failed to start server on {settings.host}:{settings.port}: {e}[/red]")
        return 1

    scheme = "https" if args.ssl_certfile else "http"
    console.print(f"[blue]🚀 Codex Proxy Server running on {scheme}://{settings.host}:{settings.port}[/blue]")
    console.print(f"📡 Intercepting requests to {settings.anthropic_api_host}")
    console.print("🎯 Forwarding to Codex API")
    console.print(f"🏥 Health check at {scheme}://{settings.host}:{settings.port}{settings.health_path}")

    config = uvicorn.Config(
        create_app(settings, credentials=manager),
        log_level=args.log_level,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
    )
    server = uvicorn.Server(config)
    try:
        server.run(sockets=[sock])
    finally:
        sock.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.env_file:
        path = Path(args.env_file)
        _maybe_load_dotenv(path)
        if path.exists():
            console.print(f"[codex-proxy] loaded env: {path}", markup=False)

    # Import config only after the .env file is applied: Settings defaults are
    # read from the environment at import time.
    from .config import Settings

    settings = Settings()
    if args.command == "start":
        overrides: dict[str, object] = {}
        if args.host:
            overrides["host"] = args.host
        if args.port is not None:
            overrides["port"] = args.port
        if args.verbose:
            overrides["verbose"] = True
        settings = replace(settings, **overrides)

    if args.command == "login":
        rc = _login(settings)
    elif args.command == "logout":
        rc = _logout(settings)
    elif args.command == "status":
        rc = _status(settings)
    else:
        rc = _start(settings, args)
    sys.exit(rc)


__all__ = ["main"]
