from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog
from structlog.testing import capture_logs

from coday_slack.logging import get_logger, log_context, setup_logging


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


def test_info_level_filters_debug() -> None:
    setup_logging(debug=False)
    logger = get_logger("coday_slack.test")

    with capture_logs() as logs:
        logger.debug("slack.hidden")
        logger.info("slack.shown", channel_id="C1")

    assert [entry["event"] for entry in logs] == ["slack.shown"]
    assert logs[0]["channel_id"] == "C1"


def test_debug_level_keeps_debug() -> None:
    setup_logging(debug=True)
    logger = get_logger("coday_slack.test")

    with capture_logs() as logs:
        logger.debug("slack.visible")

    assert [entry["event"] for entry in logs] == ["slack.visible"]


def test_log_context_binds_and_unbinds() -> None:
    before = structlog.contextvars.get_contextvars()
    with log_context(project="demo"):
        assert structlog.contextvars.get_contextvars()["project"] == "demo"
    assert structlog.contextvars.get_contextvars() == before
