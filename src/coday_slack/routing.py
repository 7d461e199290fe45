from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .config import SlackIntegrationConfig

DIRECT_MESSAGE_CHANNEL_TYPE = "im"
CHANNEL_JOIN_SUBTYPE = "channel_join"
MESSAGE_CHANGED_SUBTYPE = "message_changed"


@dataclass(frozen=True, slots=True)
class FilterResult:
    allowed: bool
    reason: str | None = None
    is_channel_join: bool = False


def should_handle_message(
    event: Mapping[str, Any] | None, config: SlackIntegrationConfig
) -> FilterResult:
    if not event:
        return FilterResult(False, "No event provided")
    event_type = event.get("type")
    if event_type != "message":
        return FilterResult(False, f"Event type is {event_type!r}, not 'message'")

    subtype = event.get("subtype")
    if subtype == CHANNEL_JOIN_SUBTYPE:
        return FilterResult(True, is_channel_join=True)
    # edits come through; deletions and other subtypes do not
    if subtype and subtype != MESSAGE_CHANGED_SUBTYPE:
        return FilterResult(False, f"Event subtype {subtype!r} is not allowed")

    text = event.get("text")
    channel = event.get("channel")
    if not text:
        return FilterResult(False, "No text in message")
    if not channel:
        return FilterResult(False, "No channel in message")
    if not event.get("ts"):
        return FilterResult(False, "No timestamp in message")
    bot_id = event.get("bot_id")
    if bot_id:
        return FilterResult(False, f"Message is from a bot (bot_id: {bot_id})")

    if config.channel_allowlist and channel not in config.channel_allowlist:
        allowed = ", ".join(config.channel_allowlist)
        return FilterResult(False, f"Channel {channel!r} not in allowlist [{allowed}]")

    if config.require_mention and event.get("channel_type") != DIRECT_MESSAGE_CHANNEL_TYPE:
        if not config.bot_user_id:
            return FilterResult(
                False, "requireMention is enabled but botUserId is not configured"
            )
        if mention_token(config.bot_user_id) not in str(text):
            return FilterResult(
                False,
                f"requireMention is enabled and {mention_token(config.bot_user_id)} "
                "was not mentioned",
            )

    return FilterResult(True)


def build_thread_key(
    channel: str,
    thread_ts: str | None = None,
    message_ts: str | None = None,
    channel_type: str | None = None,
) -> str:
    # a DM is one continuous conversation; thread_ts never re-keys it
    if channel_type == DIRECT_MESSAGE_CHANNEL_TYPE:
        return channel
    if thread_ts and thread_ts != message_ts:
        return f"{channel}:{thread_ts}"
    return channel


def split_thread_key(key: str) -> tuple[str, str | None]:
    channel, sep, thread_ts = key.partition(":")
    if not sep or not thread_ts:
        return channel, None
    return channel, thread_ts


def mention_token(user_id: str) -> str:
    return f"<@{user_id}>"


def strip_bot_mention(text: str, bot_user_id: str | None) -> str:
    if not bot_user_id:
        return text
    pattern = re.compile(rf"<@{re.escape(bot_user_id)}(\|[^>]+)?>")
    return pattern.sub("", text).strip()
