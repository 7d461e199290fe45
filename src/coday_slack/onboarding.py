from __future__ import annotations

from typing import Any

import questionary

from .config import raw_slack_table, with_slack_table
from .projects import JsonProjectStore


def _ask_text(prompt: str, default: Any, *, secret: bool = False) -> str | None:
    current = default if isinstance(default, str) else ""
    if secret:
        answer = questionary.password(prompt, default=current).ask()
    else:
        answer = questionary.text(prompt, default=current).ask()
    if answer is None:
        return None
    return str(answer).strip()


def _ask_confirm(prompt: str, default: Any) -> bool | None:
    return questionary.confirm(
        prompt, default=default if isinstance(default, bool) else False
    ).ask()


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def interactive_setup(project: str, store: JsonProjectStore) -> bool:
    record = store.get_project(project) or store.create_project(project)
    existing = dict(raw_slack_table(record.config) or {})

    token = _ask_text("Slack bot token (xoxb-...)", existing.get("apiKey"), secret=True)
    if not token:
        return False
    username = _ask_text("Coday username for Slack threads", existing.get("username"))
    if not username:
        return False
    socket_mode = _ask_confirm("Use Socket Mode?", existing.get("socketMode", True))
    if socket_mode is None:
        return False

    table = dict(existing)
    table["apiKey"] = token
    table["username"] = username
    table["socketMode"] = socket_mode
    if socket_mode:
        app_token = _ask_text(
            "Slack app-level token (xapp-...)", existing.get("appToken"), secret=True
        )
        if not app_token:
            return False
        table["appToken"] = app_token
    else:
        secret = _ask_text(
            "Slack signing secret", existing.get("signingSecret"), secret=True
        )
        if not secret:
            return False
        table["signingSecret"] = secret

    bot_user_id = _ask_text("Bot user id (U...)", existing.get("botUserId"))
    if bot_user_id is None:
        return False
    require_mention = _ask_confirm(
        "Require @bot mention in channels?", existing.get("requireMention")
    )
    auto_create = _ask_confirm(
        "Create a thread for new channels automatically?",
        existing.get("autoCreateThreads", True),
    )
    if require_mention is None or auto_create is None:
        return False
    allowlist = _ask_text(
        "Channel allow-list (comma separated, empty for all)",
        ",".join(_str_list(existing.get("channelAllowlist"))),
    )
    if allowlist is None:
        return False

    if bot_user_id:
        table["botUserId"] = bot_user_id
    else:
        table.pop("botUserId", None)
    table["requireMention"] = require_mention
    table["autoCreateThreads"] = auto_create
    table["channelAllowlist"] = [
        channel.strip() for channel in allowlist.split(",") if channel.strip()
    ]
    store.update_project_config(project, with_slack_table(record.config, table))
    return True
