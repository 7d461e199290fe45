from __future__ import annotations

import json
import math
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from .client import SlackApiError, SlackClient, SlackMessage
from .config import DEFAULT_GREETING, ConfigError, SlackIntegrationConfig
from .events import AssistantEvent, MessageEvent
from .logging import get_logger, log_context
from .markdown import markdown_to_slack
from .projects import ProjectNotFoundError, ProjectService
from .registry import ThreadRegistry
from .routing import (
    DIRECT_MESSAGE_CHANNEL_TYPE,
    build_thread_key,
    should_handle_message,
    split_thread_key,
    strip_bot_mention,
)
from .signature import SIGNATURE_HEADER, TIMESTAMP_HEADER, match_signing_project
from .threads import (
    SLACK_THREAD_PREFIX,
    ConversationBridge,
    ThreadHandle,
    ThreadService,
    Unsubscribe,
)
from .users import SlackUserDirectory

logger = get_logger(__name__)

THINKING_TEXT = ":hourglass_flowing_sand: _Thinking_"
THINKING_BLOCKS: list[dict[str, Any]] = [
    {
        "type": "context",
        "elements": [
            {"type": "mrkdwn", "text": ":hourglass_flowing_sand: _Thinking..._"}
        ],
    }
]
# chat.postMessage truncates text past 40k; stay well below so edits succeed too
MAX_MESSAGE_CHARS = 3900


class SocketConnection(Protocol):
    async def run(self) -> None: ...

    async def disconnect(self) -> None: ...


SocketEventHandler = Callable[[dict[str, Any]], Awaitable[None]]
SocketFactory = Callable[[str, str, SocketEventHandler], SocketConnection]
ClientFactory = Callable[[str], SlackClient]


def _default_socket_factory(
    project: str, app_token: str, on_event: SocketEventHandler
) -> SocketConnection:
    from .socket_mode import SlackSocketConnection

    return SlackSocketConnection(project, app_token, on_event)


@dataclass(frozen=True, slots=True)
class SlackMessageRef:
    channel: str
    ts: str
    thread_ts: str | None = None


@dataclass(frozen=True, slots=True)
class InboundMessage:
    channel: str
    ts: str
    thread_ts: str | None = None
    is_dm: bool = False

    @property
    def reply_thread_ts(self) -> str:
        # DMs stay in the visible chat flow; channels thread under the user's message
        if self.is_dm:
            return self.thread_ts or self.ts
        return self.ts


@dataclass(slots=True)
class SlackThreadState:
    project: str
    handle: ThreadHandle
    thinking_message: SlackMessageRef | None = None
    original_message: InboundMessage | None = None
    unsubscribe: Unsubscribe | None = None
    outbox: MemoryObjectSendStream[AssistantEvent] | None = None


@dataclass(frozen=True, slots=True)
class WebhookResult:
    status_code: int
    body: Any
    process: Callable[[], Awaitable[None]] | None = None


@dataclass(frozen=True, slots=True)
class _Destination:
    channel: str
    thread_ts: str | None
    # set when the thread has no key yet and the first reply should create one
    new_key: bool = False


def _split_text(text: str, max_chars: int = MAX_MESSAGE_CHARS) -> list[str]:
    if max_chars <= 0 or len(text) <= max_chars:
        return [text]
    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_chars:
        cut = remaining.rfind("\n", 0, max_chars)
        if cut <= 0:
            cut = max_chars
        chunk = remaining[:cut].rstrip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[cut:].lstrip("\n")
    if remaining:
        chunks.append(remaining)
    return chunks


class SlackCanal:
    def __init__(
        self,
        project_service: ProjectService,
        thread_service: ThreadService,
        *,
        client_factory: ClientFactory = SlackClient,
        socket_factory: SocketFactory = _default_socket_factory,
        greeting: str = DEFAULT_GREETING,
    ) -> None:
        self._projects = project_service
        self._threads = thread_service
        self._client_factory = client_factory
        self._socket_factory = socket_factory
        self._greeting = greeting
        self._bridge: ConversationBridge | None = None
        self._task_group: TaskGroup | None = None
        self._states: dict[str, SlackThreadState] = {}
        self._sockets: dict[str, SocketConnection] = {}
        self._clients: dict[str, SlackClient] = {}
        self._directories: dict[str, SlackUserDirectory] = {}
        self._closed = False

    @property
    def thread_states(self) -> Mapping[str, SlackThreadState]:
        return self._states

    @property
    def socket_projects(self) -> list[str]:
        return sorted(self._sockets)

    async def initialize(
        self, bridge: ConversationBridge, task_group: TaskGroup
    ) -> None:
        self._bridge = bridge
        self._task_group = task_group
        for summary in self._projects.list_projects():
            try:
                config = self._load_config(summary.name)
            except ConfigError as exc:
                logger.warning(
                    "slack.project.invalid_config",
                    project=summary.name,
                    error=str(exc),
                )
                continue
            if config is None or not config.socket_mode:
                continue
            if not config.socket_ready or config.app_token is None:
                logger.info(
                    "slack.socket.skipped",
                    project=summary.name,
                    reason="socketMode needs appToken, apiKey and username",
                )
                continue
            connection = self._socket_factory(
                summary.name,
                config.app_token,
                partial(self.handle_socket_event, summary.name),
            )
            self._sockets[summary.name] = connection
            task_group.start_soon(self._run_socket, summary.name, connection)
        logger.info(
            "slack.canal.initialized",
            socket_projects=self.socket_projects,
        )

    async def _run_socket(self, project: str, connection: SocketConnection) -> None:
        try:
            await connection.run()
        except Exception as exc:
            logger.exception(
                "slack.socket.crashed",
                project=project,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    def _load_config(self, project: str) -> SlackIntegrationConfig | None:
        record = self._projects.get_project(project)
        if record is None:
            return None
        return SlackIntegrationConfig.from_project_config(
            record.config, project=project
        )

    def _load_config_safely(self, project: str) -> SlackIntegrationConfig | None:
        try:
            return self._load_config(project)
        except ConfigError as exc:
            logger.warning(
                "slack.project.invalid_config", project=project, error=str(exc)
            )
            return None

    def _signing_secrets(self) -> Iterator[tuple[str, str | None]]:
        for summary in self._projects.list_projects():
            config = self._load_config_safely(summary.name)
            if config is not None and config.signing_secret:
                yield summary.name, config.signing_secret

    def _require_bridge(self) -> ConversationBridge:
        if self._bridge is None:
            raise RuntimeError("SlackCanal.initialize() has not been called")
        return self._bridge

    def _require_task_group(self) -> TaskGroup:
        if self._task_group is None:
            raise RuntimeError("SlackCanal.initialize() has not been called")
        return self._task_group

    def _client(self, token: str) -> SlackClient:
        client = self._clients.get(token)
        if client is None:
            client = self._client_factory(token)
            self._clients[token] = client
        return client

    def _directory(self, token: str) -> SlackUserDirectory:
        directory = self._directories.get(token)
        if directory is None:
            directory = SlackUserDirectory(self._client(token))
            self._directories[token] = directory
        return directory

    # inbound

    def handle_webhook(
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookResult:
        project = match_signing_project(
            raw_body,
            headers.get(SIGNATURE_HEADER),
            headers.get(TIMESTAMP_HEADER),
            self._signing_secrets(),
        )
        if project is None:
            logger.warning("slack.webhook.bad_signature")
            return WebhookResult(401, {"error": "Invalid signature"})
        try:
            payload = json.loads(raw_body)
        except ValueError:
            logger.warning("slack.webhook.bad_json", project=project)
            return WebhookResult(400, {"error": "Invalid JSON"})
        if not isinstance(payload, dict):
            return WebhookResult(400, {"error": "Invalid JSON"})
        if payload.get("type") == "url_verification":
            return WebhookResult(200, {"challenge": payload.get("challenge")})
        event = payload.get("event")
        if not isinstance(event, dict):
            return WebhookResult(200, "OK")
        return WebhookResult(
            200, "OK", process=partial(self._process_webhook_event, project, event)
        )

    async def _process_webhook_event(
        self, project: str, event: dict[str, Any]
    ) -> None:
        config = self._load_config_safely(project)
        if config is None:
            return
        await self._dispatch(project, config, event)

    async def handle_socket_event(self, project: str, event: dict[str, Any]) -> None:
        config = self._load_config_safely(project)
        if config is None:
            return
        await self._dispatch(project, config, event)

    async def _dispatch(
        self, project: str, config: SlackIntegrationConfig, event: dict[str, Any]
    ) -> None:
        if self._closed:
            return
        if not config.api_key or not config.username:
            logger.info(
                "slack.project.incomplete",
                project=project,
                reason="apiKey and username are required",
            )
            return
        result = should_handle_message(event, config)
        if not result.allowed:
            logger.debug("slack.message.filtered", project=project, reason=result.reason)
            return
        with log_context(project=project, channel=event.get("channel")):
            try:
                if result.is_channel_join:
                    channel = str(event.get("channel") or "")
                    if not channel:
                        return
                    key = build_thread_key(
                        channel,
                        event.get("thread_ts"),
                        event.get("ts"),
                        event.get("channel_type"),
                    )
                    await self.handle_channel_join(project, config, channel, key)
                    return
                await self.handle_incoming_message(project, config, event)
            except Exception as exc:
                logger.exception(
                    "slack.message_failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )

    async def handle_incoming_message(
        self, project: str, config: SlackIntegrationConfig, event: Mapping[str, Any]
    ) -> None:
        bridge = self._require_bridge()
        channel = str(event["channel"])
        ts = str(event["ts"])
        thread_ts = event.get("thread_ts") or None
        channel_type = event.get("channel_type")
        key = build_thread_key(channel, thread_ts, ts, channel_type)

        prompt = strip_bot_mention(str(event.get("text") or ""), config.bot_user_id)
        if not prompt:
            logger.debug("slack.message.empty_prompt", key=key)
            return
        if config.api_key:
            prompt = await self._directory(config.api_key).resolve_mentions(prompt)

        inbound = InboundMessage(
            channel=channel,
            ts=ts,
            thread_ts=thread_ts,
            is_dm=channel_type == DIRECT_MESSAGE_CHANNEL_TYPE,
        )
        username = config.username or ""
        thread_id = ThreadRegistry(self._projects, project).lookup(key)

        if thread_id is None:
            if not config.auto_create_threads:
                logger.info("slack.thread.auto_create_disabled", key=key)
                return
            channel_name = await self._channel_name(config, channel)
            handle = await bridge.get_or_create_thread(
                project,
                username,
                key,
                f"{SLACK_THREAD_PREFIX}{channel_name}",
                initial_prompt=prompt,
            )
            state = self._attach(handle, project)
            self._persist(project, key, handle.thread_id)
            # the seed prompt already starts the first turn
            state.original_message = inbound
            logger.info("slack.thread.created", key=key, thread_id=handle.thread_id)
            return

        state = self._states.get(thread_id)
        if state is None:
            logger.info("slack.thread.reattach", key=key, thread_id=thread_id)
            handle = await bridge.get_existing_thread(thread_id, project, username)
            state = self._attach(handle, project)
        state.original_message = inbound
        await bridge.send_message(thread_id, prompt)

    async def handle_channel_join(
        self,
        project: str,
        config: SlackIntegrationConfig,
        channel: str,
        key: str,
    ) -> None:
        if ThreadRegistry(self._projects, project).lookup(key) is not None:
            return
        bridge = self._require_bridge()
        channel_name = await self._channel_name(config, channel)
        handle = await bridge.get_or_create_thread(
            project,
            config.username or "",
            key,
            f"{SLACK_THREAD_PREFIX}{channel_name}",
        )
        self._persist(project, key, handle.thread_id)
        self._attach(handle, project)
        if not config.api_key:
            return
        try:
            await self._client(config.api_key).post_message(
                channel_id=channel, text=self._greeting
            )
        except SlackApiError as exc:
            logger.warning(
                "slack.greeting_failed",
                channel_id=channel,
                error=exc.error or str(exc),
            )

    async def _channel_name(self, config: SlackIntegrationConfig, channel: str) -> str:
        if not config.api_key:
            return channel
        try:
            name = await self._client(config.api_key).conversation_name(
                channel_id=channel
            )
        except SlackApiError as exc:
            logger.info(
                "slack.channel_name_failed",
                channel_id=channel,
                error=exc.error or str(exc),
            )
            return channel
        return name or channel

    def _persist(
        self, project: str, key: str, thread_id: str
    ) -> SlackIntegrationConfig | None:
        try:
            return ThreadRegistry(self._projects, project).persist(key, thread_id)
        except (ProjectNotFoundError, ConfigError, OSError) as exc:
            logger.error(
                "slack.thread_map.persist_failed",
                project=project,
                key=key,
                thread_id=thread_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

    # thread state

    def _attach(self, handle: ThreadHandle, project: str) -> SlackThreadState:
        existing = self._states.get(handle.thread_id)
        if existing is not None:
            return existing
        send, receive = anyio.create_memory_object_stream(max_buffer_size=math.inf)
        state = SlackThreadState(project=project, handle=handle, outbox=send)
        thread_id = handle.thread_id

        def _on_event(event: AssistantEvent) -> None:
            if event.replayed or event.kind not in ("thinking", "message"):
                return
            try:
                send.send_nowait(event)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.debug("slack.forward.dropped", thread_id=thread_id)

        state.unsubscribe = handle.on_event(_on_event)
        self._states[thread_id] = state
        self._require_task_group().start_soon(self._forward_loop, thread_id, receive)
        return state

    async def _forward_loop(
        self, thread_id: str, receive: MemoryObjectReceiveStream[AssistantEvent]
    ) -> None:
        async with receive:
            async for event in receive:
                try:
                    await self.forward_event(thread_id, event)
                except Exception as exc:
                    logger.exception(
                        "slack.forward_failed",
                        thread_id=thread_id,
                        error=str(exc),
                        error_type=exc.__class__.__name__,
                    )

    def cleanup_thread(self, thread_id: str) -> None:
        state = self._states.pop(thread_id, None)
        if state is None:
            return
        if state.unsubscribe is not None:
            state.unsubscribe()
        if state.outbox is not None:
            state.outbox.close()

    async def shutdown(self) -> None:
        self._closed = True
        for thread_id in list(self._states):
            self.cleanup_thread(thread_id)
        sockets = list(self._sockets.items())
        self._sockets.clear()
        async with anyio.create_task_group() as tg:
            for project, connection in sockets:
                tg.start_soon(self._disconnect, project, connection)
        for directory in self._directories.values():
            directory.clear()
        self._directories.clear()
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.close()
        logger.info("slack.canal.shutdown", sockets=len(sockets))

    async def _disconnect(self, project: str, connection: SocketConnection) -> None:
        try:
            await connection.disconnect()
        except Exception as exc:
            logger.exception(
                "slack.socket.disconnect_failed",
                project=project,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    # outbound

    async def forward_event(self, thread_id: str, event: AssistantEvent) -> None:
        state = self._states.get(thread_id)
        if state is None or event.replayed:
            return
        if event.kind not in ("thinking", "message"):
            return
        if event.kind == "message" and event.role != "assistant":
            return
        config = self._load_config_safely(state.project)
        if config is None or not config.api_key:
            return
        thread = self._threads.get_thread(state.project, thread_id)
        slack_originated = thread is not None and thread.slack_originated
        client = self._client(config.api_key)

        if event.kind == "thinking":
            await self._show_thinking(client, config, state, thread_id, slack_originated)
        elif event.kind == "message":
            await self._deliver_reply(
                client, config, state, thread_id, slack_originated, event
            )

    def _destination(
        self,
        config: SlackIntegrationConfig,
        state: SlackThreadState,
        thread_id: str,
        slack_originated: bool,
    ) -> _Destination | None:
        """Where thinking placeholders and replies for a thread go.

        A Slack-originated thread answers in the key's channel. Once an inbound
        message is known, both the placeholder and the reply follow its
        reply threading (a DM's thread or message ts, a channel message's ts),
        so the placeholder is always edited in the place the reply belongs.
        """
        key = ThreadRegistry(self._projects, state.project).reverse_lookup(thread_id)
        if slack_originated:
            if key is None:
                return None
            channel, key_thread_ts = split_thread_key(key)
            original = state.original_message
            if original is not None:
                return _Destination(channel, original.reply_thread_ts)
            return _Destination(channel, key_thread_ts)

        if not config.forward_events:
            return None
        if key is not None:
            channel, key_thread_ts = split_thread_key(key)
            return _Destination(channel, key_thread_ts)
        if config.notify_channel:
            return _Destination(config.notify_channel, None, new_key=True)
        return None

    async def _show_thinking(
        self,
        client: SlackClient,
        config: SlackIntegrationConfig,
        state: SlackThreadState,
        thread_id: str,
        slack_originated: bool,
    ) -> None:
        placeholder = state.thinking_message
        if placeholder is not None:
            try:
                await client.update_message(
                    channel_id=placeholder.channel,
                    ts=placeholder.ts,
                    text=THINKING_TEXT,
                    blocks=THINKING_BLOCKS,
                )
            except SlackApiError as exc:
                logger.warning(
                    "slack.thinking.update_failed",
                    thread_id=thread_id,
                    error=exc.error or str(exc),
                )
            return

        destination = self._destination(config, state, thread_id, slack_originated)
        if destination is None:
            return
        try:
            sent = await client.post_message(
                channel_id=destination.channel,
                text=THINKING_TEXT,
                blocks=THINKING_BLOCKS,
                thread_ts=destination.thread_ts,
            )
        except SlackApiError as exc:
            logger.warning(
                "slack.thinking.post_failed",
                thread_id=thread_id,
                channel_id=destination.channel,
                error=exc.error or str(exc),
            )
            return
        if sent.ts:
            state.thinking_message = SlackMessageRef(
                channel=destination.channel,
                ts=sent.ts,
                thread_ts=destination.thread_ts,
            )

    async def _deliver_reply(
        self,
        client: SlackClient,
        config: SlackIntegrationConfig,
        state: SlackThreadState,
        thread_id: str,
        slack_originated: bool,
        event: MessageEvent,
    ) -> None:
        text = event.text_content
        if not text:
            return
        chunks = _split_text(markdown_to_slack(text))
        destination = self._destination(config, state, thread_id, slack_originated)

        placeholder = state.thinking_message
        if placeholder is not None:
            state.thinking_message = None
            try:
                await client.update_message(
                    channel_id=placeholder.channel,
                    ts=placeholder.ts,
                    text=chunks[0],
                )
            except SlackApiError as exc:
                logger.warning(
                    "slack.reply.update_failed",
                    thread_id=thread_id,
                    error=exc.error or str(exc),
                )
            else:
                await self._post_chunks(
                    client, placeholder.channel, chunks[1:], placeholder.thread_ts
                )
                if (
                    destination is not None
                    and destination.new_key
                    and placeholder.thread_ts is None
                ):
                    self._persist(
                        state.project, f"{placeholder.channel}:{placeholder.ts}", thread_id
                    )
                return

        if destination is None:
            return
        sent = await self._post_reply(
            client, destination.channel, chunks[0], destination.thread_ts
        )
        if sent is None:
            return
        await self._post_chunks(
            client, destination.channel, chunks[1:], destination.thread_ts
        )
        if destination.new_key and sent.ts:
            self._persist(state.project, f"{destination.channel}:{sent.ts}", thread_id)

    async def _post_reply(
        self,
        client: SlackClient,
        channel: str,
        text: str,
        thread_ts: str | None,
    ) -> SlackMessage | None:
        try:
            return await client.post_message(
                channel_id=channel, text=text, thread_ts=thread_ts
            )
        except SlackApiError as exc:
            logger.warning(
                "slack.reply.post_failed",
                channel_id=channel,
                thread_ts=thread_ts,
                error=exc.error or str(exc),
            )
        if thread_ts is None:
            return None
        try:
            return await client.post_message(channel_id=channel, text=text)
        except SlackApiError as exc:
            logger.warning(
                "slack.reply.post_failed",
                channel_id=channel,
                error=exc.error or str(exc),
            )
            return None

    async def _post_chunks(
        self,
        client: SlackClient,
        channel: str,
        chunks: list[str],
        thread_ts: str | None,
    ) -> None:
        for chunk in chunks:
            try:
                await client.post_message(
                    channel_id=channel, text=chunk, thread_ts=thread_ts
                )
            except SlackApiError as exc:
                logger.warning(
                    "slack.reply.followup_failed",
                    channel_id=channel,
                    error=exc.error or str(exc),
                )
                return
