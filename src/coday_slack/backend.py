from __future__ import annotations

import anyio
import uvicorn
from openai import OpenAIError

from .assistant import Assistant, OpenAIAssistant
from .canal import SlackCanal
from .config import BridgeSettings, ConfigError
from .logging import get_logger, setup_logging
from .projects import JsonProjectStore
from .routes import create_app
from .threads import JsonThreadService, LocalConversationBridge, ThreadRunManager

logger = get_logger(__name__)


def _build_assistant(settings: BridgeSettings) -> OpenAIAssistant:
    try:
        return OpenAIAssistant(
            model=settings.assistant_model,
            system_prompt=settings.assistant_system_prompt,
            base_url=settings.openai_base_url,
        )
    except OpenAIError as exc:
        raise ConfigError(f"Could not create the OpenAI client: {exc}") from exc


async def serve(settings: BridgeSettings, *, assistant: Assistant | None = None) -> None:
    projects = JsonProjectStore(settings.projects_path)
    threads = JsonThreadService(settings.threads_path)
    owned: OpenAIAssistant | None = None
    if assistant is None:
        owned = _build_assistant(settings)
        assistant = owned

    canal = SlackCanal(projects, threads, greeting=settings.greeting)
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(canal),
            host=settings.host,
            port=settings.port,
            log_config=None,
            lifespan="off",
        )
    )

    async with anyio.create_task_group() as tg:
        manager = ThreadRunManager(
            tg, assistant, thinking_interval_s=settings.thinking_interval_s
        )
        bridge = LocalConversationBridge(manager, threads)
        await canal.initialize(bridge, tg)
        logger.info(
            "slack.bridge.serving",
            host=settings.host,
            port=settings.port,
            state_dir=str(settings.state_dir),
        )
        try:
            await server.serve()
        finally:
            with anyio.CancelScope(shield=True):
                await canal.shutdown()
                manager.close()
                if owned is not None:
                    await owned.close()
            tg.cancel_scope.cancel()


def build_and_run(settings: BridgeSettings) -> None:
    setup_logging(debug=settings.debug, json=settings.log_json)
    anyio.run(serve, settings)
