from __future__ import annotations

from datetime import datetime, timezone

from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

from .canal import SlackCanal


def create_app(canal: SlackCanal) -> Starlette:
    async def health(_request: Request) -> Response:
        return JSONResponse(
            {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    async def events(request: Request) -> Response:
        raw_body = await request.body()
        result = canal.handle_webhook(raw_body, request.headers)
        if result.status_code != 200:
            return JSONResponse(result.body, status_code=result.status_code)
        if isinstance(result.body, dict):
            return JSONResponse(result.body)
        # Slack retries anything slower than 3s, so reply before processing
        background = BackgroundTask(result.process) if result.process else None
        return PlainTextResponse(str(result.body), background=background)

    return Starlette(
        routes=[
            Route("/api/slack/health", health, methods=["GET"]),
            Route("/api/slack/events", events, methods=["POST"]),
        ],
    )
