from __future__ import annotations

import re
from typing import Protocol

import anyio

from .client import SlackApiError, SlackUser
from .logging import get_logger

logger = get_logger(__name__)

_USER_MENTION_RE = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")


class SlackUserLister(Protocol):
    async def list_users(self) -> list[SlackUser]: ...


class SlackUserDirectory:
    """Lazily populated user cache for one workspace token.

    Owned by whoever holds the Slack client; nothing is shared between
    instances.
    """

    def __init__(self, client: SlackUserLister) -> None:
        self._client = client
        self._lock = anyio.Lock()
        self._users: dict[str, SlackUser] = {}
        self._populated = False

    async def _populate(self) -> None:
        async with self._lock:
            if self._populated:
                return
            try:
                users = await self._client.list_users()
            except SlackApiError as exc:
                logger.warning(
                    "slack.users.populate_failed",
                    error=exc.error or str(exc),
                    status_code=exc.status_code,
                )
                return
            self._users = {user.id: user for user in users if not user.deleted}
            self._populated = True
            logger.debug("slack.users.populated", count=len(self._users))

    async def resolve_mentions(self, text: str) -> str:
        if not _USER_MENTION_RE.search(text):
            return text
        await self._populate()

        def _replace(match: re.Match[str]) -> str:
            user = self._users.get(match.group(1))
            if user is None:
                return match.group(0)
            return f"@{user.display_name}"

        return _USER_MENTION_RE.sub(_replace, text)

    def clear(self) -> None:
        self._users = {}
        self._populated = False
