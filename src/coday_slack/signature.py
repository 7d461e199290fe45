"""Slack request signing (v0 HMAC-SHA256 with a replay window)."""

from __future__ import annotations

import hashlib
import hmac
import math
import time
from collections.abc import Iterable

SIGNATURE_HEADER = "x-slack-signature"
TIMESTAMP_HEADER = "x-slack-request-timestamp"
SIGNATURE_VERSION = "v0"
REPLAY_WINDOW_S = 60 * 5


def compute_slack_signature(raw_body: bytes, signing_secret: str, timestamp: str) -> str:
    base = b":".join(
        (SIGNATURE_VERSION.encode(), timestamp.encode("utf-8"), raw_body)
    )
    digest = hmac.new(signing_secret.encode("utf-8"), base, hashlib.sha256)
    return f"{SIGNATURE_VERSION}={digest.hexdigest()}"


def verify_slack_signature(
    raw_body: bytes,
    signing_secret: str,
    signature: str | None,
    timestamp: str | None,
    *,
    now: float | None = None,
) -> bool:
    if not signature or not timestamp:
        return False
    try:
        ts = float(timestamp)
    except ValueError:
        return False
    if not math.isfinite(ts):
        return False
    current = int(time.time()) if now is None else now
    if abs(current - ts) > REPLAY_WINDOW_S:
        return False
    expected = compute_slack_signature(raw_body, signing_secret, timestamp)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def match_signing_project(
    raw_body: bytes,
    signature: str | None,
    timestamp: str | None,
    secrets: Iterable[tuple[str, str | None]],
    *,
    now: float | None = None,
) -> str | None:
    """Return the first project whose signing secret validates the request.

    A single endpoint serves every project, so there is no global secret:
    each configured secret is tried in order until one matches.
    """
    for project, secret in secrets:
        if not secret:
            continue
        if verify_slack_signature(raw_body, secret, signature, timestamp, now=now):
            return project
    return None
