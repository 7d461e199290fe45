from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import anyio
import pytest

from coday_slack.client import SlackApiError
from coday_slack.socket_mode import SlackSocketConnection


class _FakeWebSocket:
    def __init__(self, frames: list[str | bytes]) -> None:
        self._frames = list(frames)
        self.sent: list[dict[str, Any]] = []

    async def __aenter__(self) -> "_FakeWebSocket":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def recv(self) -> str | bytes:
        if not self._frames:
            await anyio.sleep_forever()
        return self._frames.pop(0)

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))


class _Connector:
    def __init__(self, sessions: list[list[str | bytes]]) -> None:
        self.sockets = [_FakeWebSocket(frames) for frames in sessions]
        self.urls: list[str] = []
        self.kwargs: list[dict[str, Any]] = []

    def __call__(self, url: str, **kwargs: Any) -> _FakeWebSocket:
        index = len(self.urls)
        self.urls.append(url)
        self.kwargs.append(kwargs)
        return self.sockets[index]


def _events_api(envelope_id: str, event: dict[str, Any]) -> str:
    return json.dumps(
        {"envelope_id": envelope_id, "type": "events_api", "payload": {"event": event}}
    )


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)


def _open_url(urls: list[str]):
    async def open_url(token: str) -> str:
        urls.append(token)
        return f"wss://example.test/{len(urls)}"

    return open_url


@pytest.mark.anyio
async def test_acks_envelopes_and_dispatches_events() -> None:
    received: list[dict[str, Any]] = []

    async def on_event(event: dict[str, Any]) -> None:
        received.append(event)

    connector = _Connector(
        [
            [
                json.dumps({"type": "hello"}),
                "not json",
                _events_api("env-1", {"type": "message", "text": "hi"}).encode(),
                json.dumps({"envelope_id": "env-2", "type": "slash_commands"}),
            ]
        ]
    )
    opened: list[str] = []
    connection = SlackSocketConnection(
        "demo",
        "xapp-1",
        on_event,
        open_url=_open_url(opened),
        connect=connector,
    )
    async with anyio.create_task_group() as tg:
        tg.start_soon(connection.run)
        await _wait_for(lambda: len(connector.sockets[0].sent) == 2)
        await _wait_for(lambda: bool(received))
        await connection.disconnect()

    assert opened == ["xapp-1"]
    assert connector.urls == ["wss://example.test/1"]
    assert connector.kwargs[0] == {"ping_interval": 10, "ping_timeout": 10}
    assert connector.sockets[0].sent == [{"envelope_id": "env-1"}, {"envelope_id": "env-2"}]
    assert received == [{"type": "message", "text": "hi"}]


@pytest.mark.anyio
async def test_disconnect_envelope_triggers_reconnect() -> None:
    received: list[str] = []

    async def on_event(event: dict[str, Any]) -> None:
        received.append(event["text"])

    connector = _Connector(
        [
            [
                json.dumps({"type": "disconnect", "reason": "refresh_requested"}),
                _events_api("env-lost", {"type": "message", "text": "never"}),
            ],
            [_events_api("env-3", {"type": "message", "text": "after"})],
        ]
    )
    opened: list[str] = []
    connection = SlackSocketConnection(
        "demo",
        "xapp-1",
        on_event,
        backoff_s=0.01,
        open_url=_open_url(opened),
        connect=connector,
    )
    async with anyio.create_task_group() as tg:
        tg.start_soon(connection.run)
        await _wait_for(lambda: received == ["after"])
        await connection.disconnect()

    assert len(opened) == 2
    assert connector.urls == ["wss://example.test/1", "wss://example.test/2"]
    assert connector.sockets[1].sent == [{"envelope_id": "env-3"}]


@pytest.mark.anyio
async def test_open_failure_retries_after_backoff() -> None:
    attempts: list[str] = []

    async def open_url(token: str) -> str:
        attempts.append(token)
        if len(attempts) == 1:
            raise SlackApiError("Slack API error: invalid_auth", error="invalid_auth")
        return "wss://example.test/ok"

    async def on_event(event: dict[str, Any]) -> None:
        return None

    connector = _Connector([[]])
    connection = SlackSocketConnection(
        "demo", "xapp-1", on_event, backoff_s=0.01, open_url=open_url, connect=connector
    )
    async with anyio.create_task_group() as tg:
        tg.start_soon(connection.run)
        await _wait_for(lambda: bool(connector.urls))
        await connection.disconnect()

    assert len(attempts) == 2
    assert connector.urls == ["wss://example.test/ok"]


@pytest.mark.anyio
async def test_handler_errors_do_not_drop_the_session() -> None:
    calls: list[str] = []

    async def on_event(event: dict[str, Any]) -> None:
        calls.append(event["text"])
        if event["text"] == "boom":
            raise RuntimeError("handler failed")

    connector = _Connector(
        [
            [
                _events_api("env-1", {"type": "message", "text": "boom"}),
                _events_api("env-2", {"type": "message", "text": "fine"}),
            ]
        ]
    )
    connection = SlackSocketConnection(
        "demo", "xapp-1", on_event, open_url=_open_url([]), connect=connector
    )
    async with anyio.create_task_group() as tg:
        tg.start_soon(connection.run)
        await _wait_for(lambda: sorted(calls) == ["boom", "fine"])
        await connection.disconnect()

    assert len(connector.urls) == 1


@pytest.mark.anyio
async def test_disconnect_before_run_is_a_no_op() -> None:
    async def on_event(event: dict[str, Any]) -> None:
        return None

    connector = _Connector([])
    connection = SlackSocketConnection(
        "demo", "xapp-1", on_event, open_url=_open_url([]), connect=connector
    )
    with anyio.fail_after(1):
        await connection.disconnect()
        # a stopped connection never opens a session
        await connection.run()
    assert connector.urls == []
