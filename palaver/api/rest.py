"""REST API for Palaver.

Endpoints:
  POST /chat/stream            - Send a message, SSE stream of ChatEvents
  POST /chat/edit/stream       - Edit a past user message and regenerate (SSE)
  POST /chat/cancel            - Cancel the in-flight response
  GET  /chat                   - Active chat with all turns
  PUT  /chat/model             - Switch model for the active chat
  PUT  /chat/personality       - Switch personality for the active chat
  POST /chats                  - Start a new chat
  GET  /chats                  - List stored chats
  POST /chats/{chat_id}/load   - Make a stored chat active
  GET  /tools                  - Tool schemas
  GET  /usage                  - Today's token usage
  GET  /health                 - Health check
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from dataclasses import asdict
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from palaver.chat.manager import ChatSessionManager
from palaver.chat.schemas import ChatEvent
from palaver.config import Settings
from palaver.errors import ConfigurationError, InvalidOperationError, NotFoundError, PalaverError
from palaver.services.usage import DailyUsageTracker

logger = logging.getLogger(__name__)


def _error_response(e: Exception) -> JSONResponse:
    if isinstance(e, NotFoundError):
        status = 404
    elif isinstance(e, InvalidOperationError):
        status = 409
    elif isinstance(e, ConfigurationError):
        status = 422
    else:
        status = 500
    return JSONResponse({"error": str(e)}, status_code=status)


async def _read_json(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _sse(events: AsyncGenerator[ChatEvent, None]) -> StreamingResponse:
    async def event_generator():
        try:
            async for event in events:
                yield f"data: {json.dumps(event.to_dict())}\n\n"
        except Exception as e:
            logger.error("Stream error: %s", e)
            error_data = json.dumps({"type": "error", "message": str(e)})
            yield f"data: {error_data}\n\n"
        finally:
            await events.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


def create_app(
    manager: ChatSessionManager,
    settings: Settings,
    usage_tracker: DailyUsageTracker | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat_stream(request: Request):
        """POST /chat/stream - SSE streaming chat."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        message = body.get("message")
        if not message:
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)
        try:
            events = await manager.send_user_message(message)
        except PalaverError as e:
            return _error_response(e)
        return _sse(events)

    async def edit_stream(request: Request):
        """POST /chat/edit/stream - edit a user turn, truncate, regenerate."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        turn_id = body.get("turn_id")
        message = body.get("message")
        if not turn_id or not message:
            return JSONResponse({"error": "Missing required fields: turn_id, message"}, status_code=400)
        try:
            events = await manager.edit_user_message(turn_id, message)
        except PalaverError as e:
            return _error_response(e)
        return _sse(events)

    async def cancel(request: Request) -> JSONResponse:
        """POST /chat/cancel"""
        return JSONResponse({"cancelled": manager.cancel_active_stream()})

    async def get_chat(request: Request) -> JSONResponse:
        """GET /chat - active chat with turns."""
        try:
            conversation = manager.conversation()
        except PalaverError as e:
            return _error_response(e)
        data = conversation.model_dump(mode="json")
        data["streaming"] = manager.is_streaming
        return JSONResponse(data)

    async def set_model(request: Request) -> JSONResponse:
        """PUT /chat/model"""
        body = await _read_json(request)
        if body is None or not body.get("model_id"):
            return JSONResponse({"error": "Missing required field: model_id"}, status_code=400)
        try:
            identity = await manager.set_active_model(body["model_id"])
        except PalaverError as e:
            return _error_response(e)
        return JSONResponse(asdict(identity))

    async def set_personality(request: Request) -> JSONResponse:
        """PUT /chat/personality"""
        body = await _read_json(request)
        if body is None or not body.get("personality_id"):
            return JSONResponse({"error": "Missing required field: personality_id"}, status_code=400)
        try:
            identity = await manager.set_active_personality(body["personality_id"])
        except PalaverError as e:
            return _error_response(e)
        return JSONResponse(asdict(identity))

    async def new_chat(request: Request) -> JSONResponse:
        """POST /chats - start a new chat."""
        try:
            identity = await manager.start_new_chat()
        except PalaverError as e:
            return _error_response(e)
        return JSONResponse(asdict(identity), status_code=201)

    async def list_chats(request: Request) -> JSONResponse:
        """GET /chats"""
        chats = await manager.list_chats()
        return JSONResponse({"chats": [c.model_dump(mode="json") for c in chats]})

    async def load_chat(request: Request) -> JSONResponse:
        """POST /chats/{chat_id}/load"""
        chat_id = request.path_params["chat_id"]
        try:
            identity = await manager.load_chat(chat_id)
        except PalaverError as e:
            return _error_response(e)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse(asdict(identity))

    async def tools(request: Request) -> JSONResponse:
        """GET /tools - all registered tool schemas."""
        schemas = manager.list_tool_schemas()
        return JSONResponse({"tools": [s.model_dump() for s in schemas]})

    async def usage(request: Request) -> JSONResponse:
        """GET /usage - today's token totals."""
        if usage_tracker is None:
            return JSONResponse({"error": "Usage tracking disabled"}, status_code=404)
        totals = await usage_tracker.read_day()
        return JSONResponse(totals.model_dump())

    async def health(request: Request) -> JSONResponse:
        """GET /health"""
        return JSONResponse({
            "status": "healthy",
            "chat_id": manager.chat_id,
            "adapter": manager.adapter.kind if manager.adapter else None,
            "streaming": manager.is_streaming,
        })

    routes = [
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/edit/stream", edit_stream, methods=["POST"]),
        Route("/chat/cancel", cancel, methods=["POST"]),
        Route("/chat", get_chat, methods=["GET"]),
        Route("/chat/model", set_model, methods=["PUT"]),
        Route("/chat/personality", set_personality, methods=["PUT"]),
        Route("/chats", new_chat, methods=["POST"]),
        Route("/chats", list_chats, methods=["GET"]),
        Route("/chats/{chat_id}/load", load_chat, methods=["POST"]),
        Route("/tools", tools, methods=["GET"]),
        Route("/usage", usage, methods=["GET"]),
        Route("/health", health, methods=["GET"]),
    ]

    return Starlette(routes=routes, lifespan=lifespan)
