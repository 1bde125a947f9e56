"""chatstream CLI — sign in, post, read history, tail the live stream.

Usage:
    chatstream login alice                 # Dev sign-in, prints a token
    chatstream send "hello"                # Post a message
    chatstream history                     # Print chat history
    chatstream tail                        # Follow the event stream (auto-reconnects)

The token comes from --token or CHATSTREAM_TOKEN.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import html
import os
import sys
from typing import Optional

import click
import httpx
from httpx_sse import SSEError, aconnect_sse

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"
DEFAULT_RECONNECT_DELAY = 3.0


def _api_url() -> str:
    return os.environ.get("CHATSTREAM_API_URL", DEFAULT_API_URL).rstrip("/")


def _client(token: Optional[str] = None, timeout: Optional[float] = 30.0) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the chatstream backend."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=timeout)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Offloads to a thread when a loop is already running (Click CliRunner
    inside an async test).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _token(token: Optional[str]) -> str:
    tok = token or os.environ.get("CHATSTREAM_TOKEN")
    if not tok:
        click.secho(
            "Error: --token required (or set CHATSTREAM_TOKEN; see `chatstream login`)",
            fg="red",
            err=True,
        )
        sys.exit(1)
    return tok


def _format_message(msg: dict) -> str:
    # Content arrives HTML-escaped for browsers; a terminal wants it plain.
    stamp = msg.get("created_at", "")[11:16]
    user = click.style(msg.get("username", "?"), bold=True)
    return f"[{stamp}] {user}: {html.unescape(msg.get('content', ''))}"


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="chatstream")
def main():
    """chatstream — real-time chat over Server-Sent Events."""


@main.command()
@click.argument("username")
@click.option("--avatar-url", help="Avatar image URL")
def login(username: str, avatar_url: Optional[str]):
    """Sign in as USERNAME (development servers only) and print a token."""
    _run(_login_impl(username, avatar_url))


async def _login_impl(username: str, avatar_url: Optional[str]):
    async with _client() as c:
        r = await c.post("/api/v1/auth/dev-login", json={
            "username": username,
            "avatar_url": avatar_url,
        })
        if r.status_code == 404:
            click.secho("Dev login is disabled on this server.", fg="red", err=True)
            sys.exit(1)
        r.raise_for_status()
        data = r.json()
    click.secho(f"Signed in as {data['user']['username']} (#{data['user']['id']})", fg="green", err=True)
    click.echo(data["access_token"])


@main.command()
@click.argument("text")
@click.option("--token", help="Access token (or set CHATSTREAM_TOKEN)")
def send(text: str, token: Optional[str]):
    """Post TEXT to the chat."""
    _run(_send_impl(text, _token(token)))


async def _send_impl(text: str, token: str):
    async with _client(token) as c:
        r = await c.post("/api/v1/messages", json={"content": text})
        if r.status_code == 422:
            click.secho(f"Rejected: {r.json()['detail']}", fg="red", err=True)
            sys.exit(1)
        r.raise_for_status()
        msg = r.json()["message"]
    click.echo(f"Sent #{msg['id']}")


@main.command()
@click.option("--token", help="Access token (or set CHATSTREAM_TOKEN)")
@click.option("--limit", "-n", type=int, default=None, help="Only the most recent N")
def history(token: Optional[str], limit: Optional[int]):
    """Print chat history, oldest first."""
    _run(_history_impl(_token(token), limit))


async def _fetch_history(c: httpx.AsyncClient, limit: Optional[int]) -> list[dict]:
    params = {"limit": limit} if limit else {}
    r = await c.get("/api/v1/messages", params=params)
    r.raise_for_status()
    return r.json()["messages"]


async def _history_impl(token: str, limit: Optional[int]):
    async with _client(token) as c:
        for msg in await _fetch_history(c, limit):
            click.echo(_format_message(msg))


@main.command()
@click.option("--token", help="Access token (or set CHATSTREAM_TOKEN)")
@click.option("--reconnect-delay", type=float, default=DEFAULT_RECONNECT_DELAY,
              show_default=True, help="Seconds to wait before reconnecting")
@click.option("--backlog", type=int, default=20, show_default=True,
              help="Messages of history to show on (re)connect")
def tail(token: Optional[str], reconnect_delay: float, backlog: int):
    """Follow the live event stream, reconnecting when it drops."""
    try:
        _run(_tail_impl(_token(token), reconnect_delay, backlog))
    except KeyboardInterrupt:
        pass


async def _tail_impl(token: str, reconnect_delay: float, backlog: int):
    # Deliveries are at-least-once and history overlaps the stream on
    # reconnect; message ids are monotonic, so the highest seen id dedupes.
    last_seen = 0

    def show(msg: dict):
        nonlocal last_seen
        if msg["id"] <= last_seen:
            return
        last_seen = msg["id"]
        click.echo(_format_message(msg))

    async with _client(token, timeout=None) as c:
        while True:
            try:
                for msg in await _fetch_history(c, backlog):
                    show(msg)

                async with aconnect_sse(c, "GET", "/api/v1/events") as event_source:
                    r = event_source.response
                    if r.status_code == 401:
                        click.secho("Not authorized; sign in again.", fg="red", err=True)
                        return
                    r.raise_for_status()
                    # comment pings never surface here, only named events
                    async for sse in event_source.aiter_sse():
                        payload = sse.json() if sse.data else {}
                        if sse.event == "connected":
                            click.secho("-- connected --", fg="green", err=True)
                        elif sse.event == "message":
                            show(payload)
                        elif sse.event == "error":
                            click.secho(f"-- server error: {payload.get('message')} --", fg="red", err=True)
                click.secho("-- stream closed --", fg="yellow", err=True)
            except (httpx.HTTPError, SSEError) as e:
                click.secho(f"-- connection failed: {e} --", fg="yellow", err=True)

            click.secho(f"-- reconnecting in {reconnect_delay:.0f}s --", fg="yellow", err=True)
            await asyncio.sleep(reconnect_delay)
