from __future__ import annotations

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

HOME_CONFIG_PATH = Path.home() / ".coday" / "slack.toml"
DEFAULT_STATE_DIR = Path.home() / ".coday" / "slack"
DEFAULT_GREETING = (
    "Hello! :wave: I'm Coday, your AI assistant. I'm here to help with tasks, "
    "answer questions, and collaborate with your team. Feel free to mention me "
    "or ask me anything!"
)
SLACK_INTEGRATION_KEY = "SLACK"


class ConfigError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class SlackIntegrationConfig:
    api_key: str | None = None
    app_token: str | None = None
    signing_secret: str | None = None
    username: str | None = None
    bot_user_id: str | None = None
    require_mention: bool = False
    channel_allowlist: tuple[str, ...] = ()
    thread_map: Mapping[str, str] = field(default_factory=dict)
    socket_mode: bool = False
    auto_create_threads: bool = False
    forward_events: bool = False
    notify_channel: str | None = None

    @property
    def socket_ready(self) -> bool:
        return bool(
            self.socket_mode and self.app_token and self.api_key and self.username
        )

    @classmethod
    def from_config(cls, config: object, *, project: str) -> "SlackIntegrationConfig":
        if config is None:
            return cls()
        if isinstance(config, SlackIntegrationConfig):
            return config
        if not isinstance(config, dict):
            raise ConfigError(
                f"Invalid `integration.SLACK` in project {project!r}; "
                "expected a table."
            )
        source = f"project {project!r}"
        return cls(
            api_key=_optional_str(config, "apiKey", None, source),
            app_token=_optional_str(config, "appToken", None, source),
            signing_secret=_optional_str(config, "signingSecret", None, source),
            username=_optional_str(config, "username", None, source),
            bot_user_id=_optional_str(config, "botUserId", None, source),
            require_mention=_optional_bool(config, "requireMention", False, source),
            channel_allowlist=tuple(
                _optional_str_list(config, "channelAllowlist", [], source)
            ),
            thread_map=_optional_thread_map(config, "threadMap", source),
            socket_mode=_optional_bool(config, "socketMode", False, source),
            auto_create_threads=_optional_bool(
                config, "autoCreateThreads", False, source
            ),
            forward_events=_optional_bool(config, "forwardEvents", False, source),
            notify_channel=_optional_str(config, "notifyChannel", None, source),
        )

    @classmethod
    def from_project_config(
        cls, project_config: Mapping[str, Any] | None, *, project: str
    ) -> "SlackIntegrationConfig":
        return cls.from_config(raw_slack_table(project_config), project=project)


def raw_slack_table(project_config: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not project_config:
        return None
    integration = project_config.get("integration")
    if not isinstance(integration, Mapping):
        return None
    table = integration.get(SLACK_INTEGRATION_KEY)
    return table if isinstance(table, dict) else None


def with_slack_table(
    project_config: Mapping[str, Any] | None, table: Mapping[str, Any]
) -> dict[str, Any]:
    base = dict(project_config or {})
    integration = base.get("integration")
    updated = dict(integration) if isinstance(integration, Mapping) else {}
    updated[SLACK_INTEGRATION_KEY] = dict(table)
    base["integration"] = updated
    return base


@dataclass(frozen=True, slots=True)
class BridgeSettings:
    host: str = "127.0.0.1"
    port: int = 3000
    state_dir: Path = DEFAULT_STATE_DIR
    debug: bool = False
    log_json: bool = False
    thinking_interval_s: float = 3.0
    assistant_model: str = "gpt-4o-mini"
    assistant_system_prompt: str | None = None
    openai_base_url: str | None = None
    greeting: str = DEFAULT_GREETING

    @property
    def projects_path(self) -> Path:
        return self.state_dir / "projects.json"

    @property
    def threads_path(self) -> Path:
        return self.state_dir / "threads.json"

    @classmethod
    def from_config(cls, config: object, *, config_path: Path) -> "BridgeSettings":
        if config is None:
            return cls()
        if isinstance(config, BridgeSettings):
            return config
        if not isinstance(config, dict):
            raise ConfigError(f"Invalid config in {config_path}; expected a table.")

        allowed_keys = {
            "host",
            "port",
            "state_dir",
            "debug",
            "log_json",
            "thinking_interval_s",
            "assistant",
            "greeting",
        }
        unknown_keys = set(config) - allowed_keys
        if unknown_keys:
            unknown = ", ".join(sorted(unknown_keys))
            raise ConfigError(f"Invalid config in {config_path}; unknown keys: {unknown}.")

        source = str(config_path)
        host = _optional_str(config, "host", "127.0.0.1", source) or "127.0.0.1"
        port = config.get("port", 3000)
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise ConfigError(
                f"Invalid `port` in {config_path}; expected an integer in 1..65535."
            )
        state_dir = _optional_str(config, "state_dir", None, source)
        state_path = DEFAULT_STATE_DIR
        if state_dir is not None:
            state_path = Path(state_dir).expanduser()
            if not state_path.is_absolute():
                state_path = config_path.parent / state_path

        assistant = config.get("assistant") or {}
        if not isinstance(assistant, dict):
            raise ConfigError(
                f"Invalid `assistant` in {config_path}; expected a table."
            )
        model = _optional_str(
            assistant, "model", "gpt-4o-mini", source, label="assistant.model"
        )

        return cls(
            host=host,
            port=port,
            state_dir=state_path,
            debug=_optional_bool(config, "debug", False, source),
            log_json=_optional_bool(config, "log_json", False, source),
            thinking_interval_s=_require_number(
                config,
                "thinking_interval_s",
                default=3.0,
                config_path=config_path,
                min_value=0.5,
            ),
            assistant_model=model or "gpt-4o-mini",
            assistant_system_prompt=_optional_str(
                assistant,
                "system_prompt",
                None,
                source,
                label="assistant.system_prompt",
            ),
            openai_base_url=_optional_str(
                assistant, "base_url", None, source, label="assistant.base_url"
            ),
            greeting=_optional_str(config, "greeting", DEFAULT_GREETING, source)
            or DEFAULT_GREETING,
        )


def read_config(config_path: Path) -> dict[str, Any]:
    try:
        raw = config_path.read_bytes()
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"Could not read {config_path}: {exc}") from exc
    try:
        return tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc


def load_settings(config_path: Path | None = None) -> tuple[BridgeSettings, Path]:
    path = config_path or HOME_CONFIG_PATH
    return BridgeSettings.from_config(read_config(path), config_path=path), path


def _optional_str(
    config: dict[str, Any],
    key: str,
    default: str | None,
    source: str,
    *,
    label: str | None = None,
) -> str | None:
    if key not in config:
        return default
    value = config.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        name = label or key
        raise ConfigError(f"Invalid `{name}` in {source}; expected a string.")
    cleaned = value.strip()
    return cleaned or None


def _optional_bool(
    config: dict[str, Any],
    key: str,
    default: bool,
    source: str,
    *,
    label: str | None = None,
) -> bool:
    if key not in config:
        return default
    value = config.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    name = label or key
    raise ConfigError(f"Invalid `{name}` in {source}; expected a boolean.")


def _optional_str_list(
    config: dict[str, Any],
    key: str,
    default: Sequence[str],
    source: str,
    *,
    label: str | None = None,
) -> list[str]:
    if key not in config:
        return list(default)
    value = config.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        name = label or key
        raise ConfigError(f"Invalid `{name}` in {source}; expected a list of strings.")
    return [item.strip() for item in value if item.strip()]


def _optional_thread_map(
    config: dict[str, Any], key: str, source: str
) -> dict[str, str]:
    value = config.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid `{key}` in {source}; expected a table.")
    thread_map: dict[str, str] = {}
    for thread_key, thread_id in value.items():
        if not isinstance(thread_key, str) or not isinstance(thread_id, str):
            raise ConfigError(
                f"Invalid `{key}` in {source}; expected string keys and values."
            )
        if thread_key and thread_id:
            thread_map[thread_key] = thread_id
    return thread_map


def _require_number(
    config: dict[str, Any],
    key: str,
    *,
    default: float,
    config_path: Path,
    min_value: float | None = None,
) -> float:
    value = config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected a number.")
    value = float(value)
    if min_value is not None and value < min_value:
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected >= {min_value}.")
    return value
