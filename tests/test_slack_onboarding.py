from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from coday_slack.config import SlackIntegrationConfig
from coday_slack.onboarding import interactive_setup
from coday_slack.projects import JsonProjectStore
from slack_fakes import slack_project


class _Prompt:
    def __init__(self, answer: Any) -> None:
        self._answer = answer

    def ask(self) -> Any:
        return self._answer


class _Script:
    def __init__(self, answers: list[Any]) -> None:
        self.answers = list(answers)
        self.prompts: list[tuple[str, Any]] = []

    def __call__(self, prompt: str, default: Any = None, **_: Any) -> _Prompt:
        self.prompts.append((prompt, default))
        return _Prompt(self.answers.pop(0))


@pytest.fixture
def script(monkeypatch) -> _Script:
    # one shared queue keeps the answers in prompt order
    shared = _Script([])
    for name in ("text", "password", "confirm"):
        monkeypatch.setattr(f"coday_slack.onboarding.questionary.{name}", shared)
    return shared


def test_socket_mode_setup(tmp_path: Path, script: _Script) -> None:
    store = JsonProjectStore(tmp_path / "projects.json")
    script.answers = [
        "xoxb-1",
        "coday",
        True,
        "xapp-1",
        "UBOT",
        True,
        True,
        " C1, C2 ,,",
    ]

    assert interactive_setup("demo", store) is True

    project = store.get_project("demo")
    assert project is not None
    config = SlackIntegrationConfig.from_project_config(project.config, project="demo")
    assert config.api_key == "xoxb-1"
    assert config.app_token == "xapp-1"
    assert config.username == "coday"
    assert config.socket_ready is True
    assert config.bot_user_id == "UBOT"
    assert config.require_mention is True
    assert config.auto_create_threads is True
    assert config.channel_allowlist == ("C1", "C2")


def test_webhook_setup_keeps_thread_map(tmp_path: Path, script: _Script) -> None:
    store = JsonProjectStore(tmp_path / "projects.json")
    store.create_project("demo", slack_project(threadMap={"C1": "t-1"}))
    script.answers = ["xoxb-2", "coday", False, "shh", "", False, False, ""]

    assert interactive_setup("demo", store) is True

    project = store.get_project("demo")
    assert project is not None
    table = project.config["integration"]["SLACK"]
    assert table["threadMap"] == {"C1": "t-1"}
    assert table["signingSecret"] == "shh"
    assert "botUserId" not in table
    assert table["channelAllowlist"] == []
    # existing answers are offered as defaults
    assert script.prompts[0][1] == "xoxb-test"


def test_cancelled_setup_writes_nothing(tmp_path: Path, script: _Script) -> None:
    store = JsonProjectStore(tmp_path / "projects.json")
    store.create_project("demo", slack_project())
    script.answers = ["xoxb-2", None]

    assert interactive_setup("demo", store) is False
    project = store.get_project("demo")
    assert project is not None
    assert project.config == slack_project()
