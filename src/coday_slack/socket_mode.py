from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

import anyio
import websockets
from anyio.abc import TaskGroup
from websockets.exceptions import WebSocketException

from .client import SlackApiError, open_socket_url
from .logging import get_logger, log_context

logger = get_logger(__name__)

OnEvent = Callable[[dict[str, Any]], Awaitable[None]]


class SlackSocketConnection:
    """One Socket Mode session per project, reconnecting until disconnected."""

    def __init__(
        self,
        project: str,
        app_token: str,
        on_event: OnEvent,
        *,
        backoff_s: float = 1.0,
        open_url: Callable[[str], Awaitable[str]] = open_socket_url,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._project = project
        self._app_token = app_token
        self._on_event = on_event
        self._backoff_s = backoff_s
        self._open_url = open_url
        self._connect = connect
        self._stopping = False
        self._started = False
        self._stopped = anyio.Event()
        self._scope: anyio.CancelScope | None = None
        self._connected = False

    async def run(self) -> None:
        self._started = True
        try:
            with log_context(project=self._project):
                with anyio.CancelScope() as scope:
                    self._scope = scope
                    async with anyio.create_task_group() as tg:
                        while not self._stopping:
                            await self._session(tg)
                            if self._stopping:
                                break
                            await anyio.sleep(self._backoff_s)
                        tg.cancel_scope.cancel()
        finally:
            self._connected = False
            self._stopped.set()

    async def disconnect(self) -> None:
        self._stopping = True
        if not self._started:
            return
        if self._scope is not None:
            self._scope.cancel()
        await self._stopped.wait()
        logger.info("slack.socket.closed", project=self._project)

    async def _session(self, tg: TaskGroup) -> None:
        try:
            socket_url = await self._open_url(self._app_token)
        except SlackApiError as exc:
            logger.warning("slack.socket.open_failed", error=str(exc))
            return

        try:
            async with self._connect(
                socket_url,
                ping_interval=10,
                ping_timeout=10,
            ) as ws:
                self._connected = True
                logger.info("slack.socket.connected")
                while True:
                    raw = await ws.recv()
                    if isinstance(raw, bytes):
                        raw = raw.decode("utf-8", "ignore")
                    try:
                        envelope = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("slack.socket.bad_payload")
                        continue
                    if not isinstance(envelope, dict):
                        continue

                    envelope_id = envelope.get("envelope_id")
                    if isinstance(envelope_id, str) and envelope_id:
                        await ws.send(json.dumps({"envelope_id": envelope_id}))

                    msg_type = envelope.get("type")
                    if msg_type == "disconnect":
                        logger.info(
                            "slack.socket.disconnect_requested",
                            reason=envelope.get("reason"),
                        )
                        break
                    if msg_type != "events_api":
                        continue
                    payload = envelope.get("payload")
                    if not isinstance(payload, dict):
                        continue
                    event = payload.get("event")
                    if not isinstance(event, dict):
                        continue
                    tg.start_soon(self._safe_handle, event)
        except WebSocketException as exc:
            logger.warning("slack.socket.error", error=str(exc))
        except OSError as exc:
            logger.warning("slack.socket.error", error=str(exc))
        finally:
            if self._connected:
                self._connected = False
                logger.info("slack.socket.disconnected")

    async def _safe_handle(self, event: dict[str, Any]) -> None:
        try:
            await self._on_event(event)
        except Exception as exc:
            logger.exception(
                "slack.socket.event_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
