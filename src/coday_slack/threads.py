from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import anyio
from anyio.abc import TaskGroup

from .assistant import Assistant, AssistantError
from .events import AnswerEvent, AssistantEvent, InviteEvent, MessageEvent, ThinkingEvent
from .logging import get_logger
from .projects import STATE_VERSION, atomic_write_json, read_versioned_json

logger = get_logger(__name__)

SLACK_THREAD_PREFIX = "slack:"
DEFAULT_INVITE = "What can I do for you?"
INVITE_TIMEOUT_S = 1.0

EventCallback = Callable[[AssistantEvent], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True, slots=True)
class ThreadRecord:
    id: str
    project: str
    username: str
    name: str
    created_at: float

    @property
    def slack_originated(self) -> bool:
        return self.name.startswith(SLACK_THREAD_PREFIX)


class ThreadService(Protocol):
    def create_thread(self, project: str, username: str, name: str) -> ThreadRecord: ...

    def get_thread(self, project: str, thread_id: str) -> ThreadRecord | None: ...


class JsonThreadService:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._loaded = False
        self._mtime_ns: int | None = None
        self._threads: dict[str, ThreadRecord] = {}

    def _stat_mtime_ns(self) -> int | None:
        try:
            return self._path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def _reload_if_needed(self) -> None:
        current = self._stat_mtime_ns()
        if self._loaded and current == self._mtime_ns:
            return
        self._loaded = True
        self._mtime_ns = current
        entries = read_versioned_json(self._path, section="threads")
        threads: dict[str, ThreadRecord] = {}
        for thread_id, entry in (entries or {}).items():
            if not isinstance(entry, dict):
                continue
            project = entry.get("project")
            username = entry.get("username")
            name = entry.get("name")
            if not all(isinstance(v, str) for v in (project, username, name)):
                continue
            created_at = entry.get("created_at")
            threads[thread_id] = ThreadRecord(
                id=thread_id,
                project=project,
                username=username,
                name=name,
                created_at=float(created_at)
                if isinstance(created_at, (int, float))
                else 0.0,
            )
        self._threads = threads

    def _save(self, threads: dict[str, ThreadRecord]) -> None:
        payload = {
            "version": STATE_VERSION,
            "threads": {
                record.id: {
                    "project": record.project,
                    "username": record.username,
                    "name": record.name,
                    "created_at": record.created_at,
                }
                for record in threads.values()
            },
        }
        atomic_write_json(self._path, payload)
        self._threads = threads
        self._mtime_ns = self._stat_mtime_ns()

    def create_thread(self, project: str, username: str, name: str) -> ThreadRecord:
        self._reload_if_needed()
        record = ThreadRecord(
            id=uuid.uuid4().hex,
            project=project,
            username=username,
            name=name,
            created_at=time.time(),
        )
        self._save({**self._threads, record.id: record})
        logger.info("thread.created", project=project, thread_id=record.id, name=name)
        return record

    def get_thread(self, project: str, thread_id: str) -> ThreadRecord | None:
        self._reload_if_needed()
        record = self._threads.get(thread_id)
        if record is None or record.project != project:
            return None
        return record


class ThreadHandle(Protocol):
    @property
    def thread_id(self) -> str: ...

    def on_event(self, callback: EventCallback) -> Unsubscribe: ...


class ConversationBridge(Protocol):
    async def get_or_create_thread(
        self,
        project: str,
        username: str,
        key: str,
        display_name: str,
        *,
        initial_prompt: str | None = None,
    ) -> ThreadHandle: ...

    async def get_existing_thread(
        self, thread_id: str, project: str, username: str
    ) -> ThreadHandle: ...

    async def send_message(self, thread_id: str, prompt: str) -> None: ...


class ThreadRunner:
    """One assistant conversation; turns are taken one at a time from the inbox."""

    def __init__(
        self,
        thread_id: str,
        assistant: Assistant,
        *,
        thinking_interval_s: float = 3.0,
        initial_prompt: str | None = None,
    ) -> None:
        self._thread_id = thread_id
        self._assistant = assistant
        self._thinking_interval_s = thinking_interval_s
        self._initial_prompt = initial_prompt
        self._subscribers: list[EventCallback] = []
        self._history: list[MessageEvent] = []
        self._last_invite: InviteEvent | None = None
        self._scope = anyio.CancelScope()
        self._inbox_send, self._inbox_receive = anyio.create_memory_object_stream(
            max_buffer_size=16
        )

    @property
    def thread_id(self) -> str:
        return self._thread_id

    @property
    def history(self) -> tuple[MessageEvent, ...]:
        return tuple(self._history)

    def on_event(self, callback: EventCallback) -> Unsubscribe:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: AssistantEvent) -> None:
        for callback in list(self._subscribers):
            callback(event)

    def replay_last_invite(self) -> None:
        if self._last_invite is not None:
            self._emit(self._last_invite)

    async def answer(self, event: AnswerEvent) -> None:
        await self._inbox_send.send(event)

    def stop(self) -> None:
        self._scope.cancel()
        self._inbox_send.close()

    async def run(self) -> None:
        with self._scope:
            async with self._inbox_receive:
                if self._initial_prompt:
                    await self._take_turn(AnswerEvent(answer=self._initial_prompt))
                while True:
                    invite = InviteEvent(invite=DEFAULT_INVITE)
                    self._last_invite = invite
                    self._emit(invite)
                    try:
                        answer = await self._inbox_receive.receive()
                    except anyio.EndOfStream:
                        return
                    await self._take_turn(answer)

    async def _take_turn(self, answer: AnswerEvent) -> None:
        self._emit(answer)
        self._history.append(MessageEvent(role="user", content=answer.answer))
        reply = await self._respond()
        if reply is None:
            return
        message = MessageEvent(role="assistant", content=reply)
        self._history.append(message)
        self._emit(message)

    async def _respond(self) -> str | None:
        reply: str | None = None
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._heartbeat)
            try:
                reply = await self._assistant.respond(self._thread_id, self.history)
            except AssistantError as exc:
                logger.error(
                    "thread.turn_failed",
                    thread_id=self._thread_id,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                reply = f"Sorry, I could not complete that request: {exc}"
            finally:
                tg.cancel_scope.cancel()
        return reply or None

    async def _heartbeat(self) -> None:
        while True:
            self._emit(ThinkingEvent())
            await anyio.sleep(self._thinking_interval_s)


class ThreadRunManager:
    def __init__(
        self,
        task_group: TaskGroup,
        assistant: Assistant,
        *,
        thinking_interval_s: float = 3.0,
    ) -> None:
        self._task_group = task_group
        self._assistant = assistant
        self._thinking_interval_s = thinking_interval_s
        self._runners: dict[str, ThreadRunner] = {}

    def get(self, thread_id: str) -> ThreadRunner | None:
        return self._runners.get(thread_id)

    def ensure(
        self, thread_id: str, *, initial_prompt: str | None = None
    ) -> ThreadRunner:
        runner = self._runners.get(thread_id)
        if runner is not None:
            return runner
        runner = ThreadRunner(
            thread_id,
            self._assistant,
            thinking_interval_s=self._thinking_interval_s,
            initial_prompt=initial_prompt,
        )
        self._runners[thread_id] = runner
        self._task_group.start_soon(self._run, runner)
        return runner

    async def _run(self, runner: ThreadRunner) -> None:
        try:
            await runner.run()
        except Exception as exc:
            logger.exception(
                "thread.runner_crashed",
                thread_id=runner.thread_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
        finally:
            if self._runners.get(runner.thread_id) is runner:
                del self._runners[runner.thread_id]
            logger.debug("thread.runner_stopped", thread_id=runner.thread_id)

    def cleanup(self, thread_id: str) -> None:
        runner = self._runners.pop(thread_id, None)
        if runner is not None:
            runner.stop()

    def close(self) -> None:
        runners = list(self._runners.values())
        self._runners.clear()
        for runner in runners:
            runner.stop()


class LocalConversationBridge:
    def __init__(
        self,
        manager: ThreadRunManager,
        thread_service: ThreadService,
        *,
        invite_timeout_s: float = INVITE_TIMEOUT_S,
    ) -> None:
        self._manager = manager
        self._threads = thread_service
        self._invite_timeout_s = invite_timeout_s

    async def get_or_create_thread(
        self,
        project: str,
        username: str,
        key: str,
        display_name: str,
        *,
        initial_prompt: str | None = None,
    ) -> ThreadRunner:
        record = self._threads.create_thread(project, username, display_name)
        logger.info(
            "thread.started",
            project=project,
            key=key,
            thread_id=record.id,
            seeded=bool(initial_prompt),
        )
        return self._manager.ensure(record.id, initial_prompt=initial_prompt)

    async def get_existing_thread(
        self, thread_id: str, project: str, username: str
    ) -> ThreadRunner:
        if self._threads.get_thread(project, thread_id) is None:
            logger.warning(
                "thread.reattach_unknown",
                project=project,
                thread_id=thread_id,
                username=username,
            )
        return self._manager.ensure(thread_id)

    async def send_message(self, thread_id: str, prompt: str) -> None:
        runner = self._manager.get(thread_id)
        if runner is None:
            logger.warning("thread.send_without_runner", thread_id=thread_id)
            return

        invites: list[InviteEvent] = []
        got_invite = anyio.Event()

        def _on_event(event: AssistantEvent) -> None:
            if event.kind == "invite" and not got_invite.is_set():
                invites.append(event)
                got_invite.set()

        unsubscribe = runner.on_event(_on_event)
        try:
            runner.replay_last_invite()
            with anyio.move_on_after(self._invite_timeout_s):
                await got_invite.wait()
        finally:
            unsubscribe()

        if invites:
            await runner.answer(invites[0].build_answer(prompt))
            return
        logger.warning(
            "thread.invite_timeout",
            thread_id=thread_id,
            timeout_s=self._invite_timeout_s,
        )
        await runner.answer(AnswerEvent(answer=prompt))
