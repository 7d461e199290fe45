from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import anyio
import httpx

from .logging import get_logger

logger = get_logger(__name__)

SLACK_API_URL = "https://slack.com/api"


class SlackApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class SlackMessage:
    ts: str
    text: str | None
    user: str | None
    bot_id: str | None
    subtype: str | None
    thread_ts: str | None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "SlackMessage":
        return cls(
            ts=str(payload.get("ts") or ""),
            text=payload.get("text"),
            user=payload.get("user"),
            bot_id=payload.get("bot_id"),
            subtype=payload.get("subtype"),
            thread_ts=payload.get("thread_ts"),
        )


@dataclass(frozen=True, slots=True)
class SlackUser:
    id: str
    name: str
    real_name: str | None = None
    deleted: bool = False
    is_bot: bool = False

    @property
    def display_name(self) -> str:
        return self.real_name or self.name

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "SlackUser | None":
        user_id = payload.get("id")
        if not isinstance(user_id, str) or not user_id:
            return None
        name = payload.get("name")
        real_name = payload.get("real_name")
        return cls(
            id=user_id,
            name=name if isinstance(name, str) and name else user_id,
            real_name=real_name if isinstance(real_name, str) and real_name else None,
            deleted=bool(payload.get("deleted")),
            is_bot=bool(payload.get("is_bot")),
        )


class SlackClient:
    def __init__(
        self,
        token: str,
        *,
        base_url: str = SLACK_API_URL,
        timeout_s: float = 30.0,
    ) -> None:
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout_s,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await _request_with_client(
            self._client,
            method,
            endpoint,
            params=params,
            json=json,
        )

    async def post_message(
        self,
        *,
        channel_id: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
        thread_ts: str | None = None,
    ) -> SlackMessage:
        data: dict[str, Any] = {
            "channel": channel_id,
            "text": text,
            "mrkdwn": True,
        }
        if blocks is not None:
            data["blocks"] = blocks
        if thread_ts is not None:
            data["thread_ts"] = thread_ts
        payload = await self._request("POST", "/chat.postMessage", json=data)
        message = payload.get("message")
        if not isinstance(message, dict):
            raise SlackApiError("Slack postMessage missing message payload")
        if not message.get("ts") and isinstance(payload.get("ts"), str):
            message = {**message, "ts": payload["ts"]}
        return SlackMessage.from_api(message)

    async def update_message(
        self,
        *,
        channel_id: str,
        ts: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
    ) -> SlackMessage:
        data: dict[str, Any] = {
            "channel": channel_id,
            "ts": ts,
            "text": text,
            "mrkdwn": True,
        }
        if blocks is not None:
            data["blocks"] = blocks
        payload = await self._request("POST", "/chat.update", json=data)
        message = payload.get("message")
        if not isinstance(message, dict):
            raise SlackApiError("Slack update missing message payload")
        if not message.get("ts"):
            message = {**message, "ts": payload.get("ts") or ts}
        return SlackMessage.from_api(message)

    async def conversation_name(self, *, channel_id: str) -> str | None:
        payload = await self._request(
            "GET", "/conversations.info", params={"channel": channel_id}
        )
        channel = payload.get("channel")
        if not isinstance(channel, dict):
            return None
        name = channel.get("name")
        if not isinstance(name, str) or not name.strip():
            return None
        return name.strip()

    async def list_users(self, *, page_size: int = 200) -> list[SlackUser]:
        users: list[SlackUser] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"limit": page_size}
            if cursor:
                params["cursor"] = cursor
            payload = await self._request("GET", "/users.list", params=params)
            members = payload.get("members")
            if isinstance(members, list):
                for raw in members:
                    if not isinstance(raw, dict):
                        continue
                    user = SlackUser.from_api(raw)
                    if user is not None:
                        users.append(user)
            metadata = payload.get("response_metadata")
            next_cursor = (
                metadata.get("next_cursor") if isinstance(metadata, dict) else None
            )
            if not isinstance(next_cursor, str) or not next_cursor:
                return users
            cursor = next_cursor


async def _request_with_client(
    client: httpx.AsyncClient,
    method: str,
    endpoint: str,
    *,
    params: dict[str, Any] | None = None,
    json: dict[str, Any] | None = None,
) -> dict[str, Any]:
    while True:
        try:
            response = await client.request(
                method, endpoint, params=params, json=json
            )
        except httpx.HTTPError as exc:
            logger.warning("slack.network_error", endpoint=endpoint, error=str(exc))
            raise SlackApiError("Slack request failed") from exc

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                delay = int(retry_after) if retry_after is not None else 1
            except ValueError:
                delay = 1
            logger.info("slack.rate_limited", endpoint=endpoint, retry_after=delay)
            await anyio.sleep(delay)
            continue

        if response.status_code >= 400:
            raise SlackApiError(
                f"Slack HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise SlackApiError("Slack response was not JSON") from exc

        if not isinstance(payload, dict) or payload.get("ok") is not True:
            error = payload.get("error") if isinstance(payload, dict) else None
            raise SlackApiError(
                f"Slack API error: {error}",
                error=error,
                status_code=response.status_code,
            )

        return payload


async def open_socket_url(
    app_token: str,
    *,
    base_url: str = SLACK_API_URL,
    timeout_s: float = 30.0,
) -> str:
    token = app_token.strip()
    if not token:
        raise SlackApiError("Missing Slack app token")
    async with httpx.AsyncClient(
        base_url=base_url,
        headers={"Authorization": f"Bearer {token}"},
        timeout=timeout_s,
    ) as client:
        payload = await _request_with_client(
            client,
            "POST",
            "/apps.connections.open",
        )
    url = payload.get("url")
    if not isinstance(url, str) or not url.strip():
        raise SlackApiError("Slack socket url missing")
    return url.strip()
