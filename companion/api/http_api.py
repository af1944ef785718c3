"""
HTTP API adapter for the companion engine.

Architectural role:
- Expose companion lifecycle and chat over HTTP (JSON and SSE).
- Enforce transport-level input shape through pydantic schemas.
- Delegate every decision to `companion.core.engine.CompanionEngine`.
- Translate `CompanionError` into the `{code, message}` envelope.

Endpoint responsibilities:
- `POST /v1/companions`: create a companion (201).
- `GET /v1/companions/{id}`: fetch a companion record.
- `POST /v1/companions/{id}/deactivate`: soft-deactivate a companion.
- `POST /v1/companions/{id}/cancel`: cancel the in-flight turn, if any.
- `POST /v1/chat`: single-shot chat turn.
- `POST /v1/chat/stream`: streamed chat turn as `text/event-stream`.

Error handling strategy:
- Engine errors map to HTTP status by code (see `STATUS_BY_CODE`).
- Request schema violations, unknown keys included, are reported as
  `ValidationError` with HTTP 400.
- Streaming errors are delivered in-band as a terminal `error` event, because
  the 200 status line has already been sent.

Streaming:
- Every frame is `data: <json>\\n\\n` carrying one stream event.
- A client disconnect closes the engine stream, which cancels the turn; nothing
  is committed for a turn the client never saw finish.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from companion.core.engine import CompanionEngine, build_engine
from companion.errors import CompanionError
from companion.logging_config import setup_logging
from companion.registry.models import Companion


logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "ValidationError": 400,
    "NotFound": 404,
    "Busy": 409,
    "Cancelled": 409,
    "GenerationFailure": 502,
    "StorageFailure": 503,
    "Timeout": 504,
}


# ============================================================
# Request Schemas
# ============================================================

class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class CreateCompanionBody(_Schema):
    owner_id: str = Field(alias="ownerId", min_length=1)
    name: str
    traits: dict[str, Any] | None = Field(default=None, validation_alias=AliasChoices("traits", "personality"))
    interests: list[str] | None = None


class HistoryItem(_Schema):
    role: str
    content: str
    timestamp: str | None = None


class ChatBody(_Schema):
    companion_id: str = Field(alias="companionId", min_length=1)
    message: str
    history: list[HistoryItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("history", "conversationHistory"),
    )
    context: Any = None

    def turns(self) -> list[dict[str, Any]]:
        return [item.model_dump(exclude_none=True) for item in self.history]


# ============================================================
# Response Formatting
# ============================================================

def companion_payload(companion: Companion) -> dict[str, Any]:
    return {
        "id": companion.id,
        "ownerId": companion.owner_id,
        "name": companion.name,
        "traits": companion.traits.as_dict(),
        "interests": list(companion.interests),
        "description": companion.description,
        "communicationStyle": companion.communication_style,
        "relationshipLevel": companion.relationship_level,
        "interactionCount": companion.interaction_count,
        "lastInteractionAt": (
            companion.last_interaction_at.isoformat() if companion.last_interaction_at else None
        ),
        "active": companion.active,
        "createdAt": companion.created_at.isoformat(),
    }


def error_response(exc: CompanionError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(exc.code, 500),
        content={"code": exc.code, "message": exc.message},
    )


def sse_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


# ============================================================
# Application Factory
# ============================================================

def create_app(engine: CompanionEngine | None = None) -> FastAPI:
    """Build the FastAPI app around `engine` (built from the environment if omitted)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "engine", None) is None:
            setup_logging()
            app.state.engine = build_engine()
        yield
        await app.state.engine.close()

    app = FastAPI(title="Companion Engine", lifespan=lifespan)
    app.state.engine = engine

    def get_engine(request: Request) -> CompanionEngine:
        return request.app.state.engine

    @app.exception_handler(CompanionError)
    async def companion_error_handler(request: Request, exc: CompanionError):
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content={"code": "ValidationError", "message": message})

    # ============================================================
    # Companions
    # ============================================================

    @app.post("/v1/companions", status_code=201)
    async def create_companion(body: CreateCompanionBody, request: Request):
        companion = await get_engine(request).create_companion(
            body.owner_id,
            body.name,
            body.traits,
            body.interests,
        )
        return companion_payload(companion)

    @app.get("/v1/companions/{companion_id}")
    async def get_companion(companion_id: str, request: Request):
        companion = await get_engine(request).get_companion(companion_id)
        return companion_payload(companion)

    @app.post("/v1/companions/{companion_id}/deactivate")
    async def deactivate_companion(companion_id: str, request: Request):
        companion = await get_engine(request).deactivate_companion(companion_id)
        return companion_payload(companion)

    @app.post("/v1/companions/{companion_id}/cancel")
    async def cancel_turn(companion_id: str, request: Request):
        engine = get_engine(request)
        await engine.get_companion(companion_id)
        return {"cancelled": engine.cancel(companion_id)}

    # ============================================================
    # Chat
    # ============================================================

    @app.post("/v1/chat")
    async def chat(body: ChatBody, request: Request):
        response = await get_engine(request).chat(
            body.companion_id,
            body.message,
            history=body.turns(),
            context=body.context,
        )
        return response.to_dict()

    @app.post("/v1/chat/stream")
    async def chat_stream(body: ChatBody, request: Request):
        engine = get_engine(request)

        async def event_generator():
            """
            Forward engine stream events as SSE frames.

            Side effects:
            - Checks client connection state before each frame; a disconnect
              closes the engine stream, which cancels the turn.
            """
            events = engine.stream_chat(
                body.companion_id,
                body.message,
                history=body.turns(),
                context=body.context,
            )
            try:
                async for event in events:
                    if await request.is_disconnected():
                        logger.info("Client disconnected during stream for companion %s", body.companion_id)
                        return
                    yield sse_frame(event.to_dict())
            finally:
                await events.aclose()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    return app
