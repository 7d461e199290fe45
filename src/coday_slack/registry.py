from __future__ import annotations

from .config import SlackIntegrationConfig, raw_slack_table, with_slack_table
from .logging import get_logger
from .projects import ProjectNotFoundError, ProjectService

logger = get_logger(__name__)


class ThreadRegistry:
    """Slack thread key to assistant thread id, stored in the project config.

    Every call reads the project fresh. ``persist`` does its read, merge and
    write without yielding to the event loop, so concurrent persists for
    different keys cannot drop each other's entries.
    """

    def __init__(self, project_service: ProjectService, project_name: str) -> None:
        self._projects = project_service
        self._project_name = project_name

    def _current(self) -> SlackIntegrationConfig:
        project = self._projects.get_project(self._project_name)
        if project is None:
            return SlackIntegrationConfig()
        return SlackIntegrationConfig.from_project_config(
            project.config, project=self._project_name
        )

    def lookup(self, key: str) -> str | None:
        return self._current().thread_map.get(key)

    def reverse_lookup(self, thread_id: str) -> str | None:
        for key, mapped in self._current().thread_map.items():
            if mapped == thread_id:
                return key
        return None

    def persist(self, key: str, thread_id: str) -> SlackIntegrationConfig:
        project = self._projects.get_project(self._project_name)
        if project is None:
            raise ProjectNotFoundError(self._project_name)
        table = dict(raw_slack_table(project.config) or {})
        existing = table.get("threadMap")
        thread_map = dict(existing) if isinstance(existing, dict) else {}
        thread_map[key] = thread_id
        table["threadMap"] = thread_map
        updated = with_slack_table(project.config, table)
        config = SlackIntegrationConfig.from_project_config(
            updated, project=self._project_name
        )
        self._projects.update_project_config(self._project_name, updated)
        logger.info(
            "slack.thread_map.persisted",
            project=self._project_name,
            key=key,
            thread_id=thread_id,
        )
        return config
