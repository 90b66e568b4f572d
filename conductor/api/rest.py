"""REST API for Conductor.

Endpoints:
  POST   /chat/stream              - SSE streaming turn
  POST   /chat/{session}/abort     - Cancel the running turn
  GET    /chat/{session}/history   - Visible chat history
  GET    /chat/{session}/context   - Context manager state
  POST   /chat/{session}/activity  - Post a collaborator activity
  POST   /chat/{session}/reset     - Clear history, keep system prompt
  DELETE /chat/{session}           - End conversation
  GET    /health                   - Health check
  POST   /model                    - Switch the active model
"""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from conductor.api.runner import AgentRunner, TurnInProgressError
from conductor.api.schemas import AgentActivity
from conductor.config import Settings

logger = logging.getLogger(__name__)


def create_app(
    runner: AgentRunner,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat_stream(request: Request) -> StreamingResponse:
        """POST /chat/stream - SSE streaming chat."""
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message") if isinstance(body, dict) else None
        if not message:
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        session_id = body.get("session_id") or str(uuid4())
        if runner.is_turn_in_progress(session_id):
            return JSONResponse(
                {"error": f"A turn is already in progress for session '{session_id}'"},
                status_code=409,
            )

        async def event_generator():
            try:
                async for chunk in runner.stream_chat(session_id, message):
                    yield f"data: {chunk.to_json()}\n\n"
            except TurnInProgressError as e:
                yield f"data: {json.dumps({'type': 'done', 'error': str(e)})}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "X-Session-Id": session_id,
            },
        )

    async def abort_chat(request: Request) -> JSONResponse:
        """POST /chat/{session_id}/abort - Cancel the running turn."""
        session_id = request.path_params["session_id"]
        aborted = runner.abort(session_id)
        return JSONResponse({"session_id": session_id, "aborted": aborted})

    async def chat_history(request: Request) -> JSONResponse:
        """GET /chat/{session_id}/history - Visible chat entries."""
        session_id = request.path_params["session_id"]
        entries = runner.get_chat_history(session_id)
        return JSONResponse(
            {
                "session_id": session_id,
                "entries": [e.model_dump(mode="json") for e in entries],
            }
        )

    async def context_summary(request: Request) -> JSONResponse:
        """GET /chat/{session_id}/context - Token count and summary state."""
        session_id = request.path_params["session_id"]
        summary = runner.get_context_summary(session_id)
        if summary is None:
            return JSONResponse({"error": "Unknown session"}, status_code=404)
        return JSONResponse(summary)

    async def post_activity(request: Request) -> JSONResponse:
        """POST /chat/{session_id}/activity - Collaborator status notification."""
        session_id = request.path_params["session_id"]
        try:
            activity = AgentActivity.model_validate_json(await request.body())
        except ValidationError as e:
            return JSONResponse({"error": json.loads(e.json(include_url=False))}, status_code=422)
        accepted = runner.add_agent_activity(session_id, activity)
        return JSONResponse(
            {"session_id": session_id, "accepted": accepted},
            status_code=202 if accepted else 503,
        )

    async def reset_chat(request: Request) -> JSONResponse:
        """POST /chat/{session_id}/reset - Clear the conversation."""
        session_id = request.path_params["session_id"]
        try:
            runner.reset_conversation(session_id)
        except TurnInProgressError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return JSONResponse({"status": "reset", "session_id": session_id})

    async def end_chat(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id} - End a conversation."""
        session_id = request.path_params["session_id"]
        ended = await runner.end_conversation(session_id)
        return JSONResponse(
            {"status": "ended" if ended else "not_found", "session_id": session_id}
        )

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse(
            {
                "status": "healthy",
                "model": runner.current_model,
                "default_model": settings.model,
                "tools": len(runner.tool_names()),
            }
        )

    async def switch_model(request: Request) -> JSONResponse:
        """POST /model - Switch the model used by subsequent rounds."""
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        model = body.get("model") if isinstance(body, dict) else None
        if not isinstance(model, str) or not model.strip():
            return JSONResponse({"error": "Missing required field: model"}, status_code=400)

        previous = runner.current_model
        runner.set_model(model.strip())
        return JSONResponse({"model": runner.current_model, "previous": previous})

    routes = [
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{session_id}/abort", abort_chat, methods=["POST"]),
        Route("/chat/{session_id}/history", chat_history),
        Route("/chat/{session_id}/context", context_summary),
        Route("/chat/{session_id}/activity", post_activity, methods=["POST"]),
        Route("/chat/{session_id}/reset", reset_chat, methods=["POST"]),
        Route("/chat/{session_id}", end_chat, methods=["DELETE"]),
        Route("/health", health),
        Route("/model", switch_model, methods=["POST"]),
    ]

    return Starlette(routes=routes, lifespan=lifespan)
