from __future__ import annotations

import copy
import itertools
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from coday_slack.client import SlackApiError, SlackMessage, SlackUser
from coday_slack.events import AssistantEvent
from coday_slack.projects import Project, ProjectNotFoundError, ProjectSummary
from coday_slack.threads import ThreadRecord


class InMemoryProjectService:
    def __init__(self, projects: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self.projects: dict[str, dict[str, Any]] = {
            name: copy.deepcopy(dict(config)) for name, config in (projects or {}).items()
        }
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.fail_updates = False

    def list_projects(self) -> list[ProjectSummary]:
        return [ProjectSummary(name=name) for name in self.projects]

    def get_project(self, name: str) -> Project | None:
        config = self.projects.get(name)
        if config is None:
            return None
        return Project(name=name, config=copy.deepcopy(config))

    def update_project_config(self, name: str, config: Mapping[str, Any]) -> None:
        if name not in self.projects:
            raise ProjectNotFoundError(name)
        if self.fail_updates:
            raise OSError("disk full")
        self.projects[name] = copy.deepcopy(dict(config))
        self.updates.append((name, copy.deepcopy(dict(config))))

    def thread_map(self, name: str) -> dict[str, str]:
        return dict(self.projects[name]["integration"]["SLACK"].get("threadMap") or {})


class FakeThreadService:
    def __init__(self) -> None:
        self.threads: dict[str, ThreadRecord] = {}
        self._ids = itertools.count(1)

    def create_thread(self, project: str, username: str, name: str) -> ThreadRecord:
        record = ThreadRecord(
            id=f"thread-{next(self._ids)}",
            project=project,
            username=username,
            name=name,
            created_at=0.0,
        )
        self.threads[record.id] = record
        return record

    def add(self, thread_id: str, project: str, name: str) -> ThreadRecord:
        record = ThreadRecord(
            id=thread_id, project=project, username="coday", name=name, created_at=0.0
        )
        self.threads[thread_id] = record
        return record

    def get_thread(self, project: str, thread_id: str) -> ThreadRecord | None:
        record = self.threads.get(thread_id)
        if record is None or record.project != project:
            return None
        return record


class FakeHandle:
    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        self.subscribers: list[Callable[[AssistantEvent], None]] = []

    def on_event(self, callback: Callable[[AssistantEvent], None]) -> Callable[[], None]:
        self.subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self.subscribers:
                self.subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: AssistantEvent) -> None:
        for callback in list(self.subscribers):
            callback(event)


@dataclass
class FakeBridge:
    threads: FakeThreadService
    created: list[dict[str, Any]] = field(default_factory=list)
    reattached: list[str] = field(default_factory=list)
    sent: list[tuple[str, str]] = field(default_factory=list)
    handles: dict[str, FakeHandle] = field(default_factory=dict)

    async def get_or_create_thread(
        self,
        project: str,
        username: str,
        key: str,
        display_name: str,
        *,
        initial_prompt: str | None = None,
    ) -> FakeHandle:
        record = self.threads.create_thread(project, username, display_name)
        self.created.append(
            {
                "project": project,
                "username": username,
                "key": key,
                "name": display_name,
                "initial_prompt": initial_prompt,
                "thread_id": record.id,
            }
        )
        handle = FakeHandle(record.id)
        self.handles[record.id] = handle
        return handle

    async def get_existing_thread(
        self, thread_id: str, project: str, username: str
    ) -> FakeHandle:
        _ = project, username
        self.reattached.append(thread_id)
        handle = self.handles.get(thread_id)
        if handle is None:
            handle = FakeHandle(thread_id)
            self.handles[thread_id] = handle
        return handle

    async def send_message(self, thread_id: str, prompt: str) -> None:
        self.sent.append((thread_id, prompt))


@dataclass
class SlackCall:
    method: str
    kwargs: dict[str, Any]


class FakeSlackClient:
    def __init__(self, token: str = "xoxb-test") -> None:
        self.token = token
        self.calls: list[SlackCall] = []
        self.channel_names: dict[str, str] = {}
        self.users: list[SlackUser] = []
        self.fail: set[str] = set()
        self.closed = False
        self._ts = itertools.count(1)

    def _record(self, method: str, **kwargs: Any) -> None:
        self.calls.append(SlackCall(method, kwargs))
        if method in self.fail:
            raise SlackApiError(f"Slack API error: {method}_failed", error=f"{method}_failed")

    def calls_to(self, method: str) -> list[SlackCall]:
        return [call for call in self.calls if call.method == method]

    async def post_message(
        self,
        *,
        channel_id: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
        thread_ts: str | None = None,
    ) -> SlackMessage:
        self._record(
            "post_message",
            channel_id=channel_id,
            text=text,
            blocks=blocks,
            thread_ts=thread_ts,
        )
        return SlackMessage(
            ts=f"200.{next(self._ts):06d}",
            text=text,
            user=None,
            bot_id="BCODAY",
            subtype=None,
            thread_ts=thread_ts,
        )

    async def update_message(
        self,
        *,
        channel_id: str,
        ts: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
    ) -> SlackMessage:
        self._record("update_message", channel_id=channel_id, ts=ts, text=text, blocks=blocks)
        return SlackMessage(
            ts=ts, text=text, user=None, bot_id="BCODAY", subtype=None, thread_ts=None
        )

    async def conversation_name(self, *, channel_id: str) -> str | None:
        self._record("conversation_name", channel_id=channel_id)
        return self.channel_names.get(channel_id)

    async def list_users(self) -> list[SlackUser]:
        self._record("list_users")
        return list(self.users)

    async def close(self) -> None:
        self.closed = True


def slack_project(**overrides: Any) -> dict[str, Any]:
    table: dict[str, Any] = {
        "apiKey": "xoxb-test",
        "signingSecret": "signing-secret",
        "username": "coday",
        "botUserId": "UBOT",
        "autoCreateThreads": True,
    }
    table.update(overrides)
    return {"integration": {"SLACK": table}}
