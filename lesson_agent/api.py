from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse

from .document import Document
from .orchestrator import TurnInProgressError
from .schemas import (
    BlockCreateRequest,
    BlockMoveRequest,
    BlockPatchRequest,
    DocumentCreateRequest,
    DocumentResponse,
    ModelResponse,
    RuntimeConfigResponse,
    RuntimeConfigUpdateRequest,
    SessionResponse,
    TaskStatusResponse,
    TurnCreateRequest,
    TurnResponse,
)
from .service_container import Services
from .session import Session
from .transport import TransportError

SSE_PING_SECONDS = 15.0


def _document_or_404(services: Services, document_id: str) -> Document:
    document = services.documents.get(document_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return document


def _ensure_editor_can_write(services: Services, document_id: str) -> None:
    if services.orchestrator.is_running(document_id):
        raise HTTPException(status_code=409, detail="The assistant is editing this document")


def _session_response(session: Session) -> SessionResponse:
    return SessionResponse(
        document_id=session.document_id,
        model=session.model,
        busy=session.busy,
        turns=[TurnResponse(**turn.to_dict()) for turn in session.turns],
    )


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="Lesson Agent", version="0.1.0")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        services.sessions.close()
        services.repository.close()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/health/backend")
    async def health_backend() -> dict[str, Any]:
        status = await services.client.health_check()
        selected = services.runtime_config.get().selected_model
        status["selected_model"] = selected
        if status.get("connected"):
            names = status.get("models") or []
            status["model_available"] = any(name == selected or name.startswith(selected) for name in names)
        return status

    @app.get("/v1/models", response_model=list[ModelResponse])
    async def list_models() -> list[ModelResponse]:
        try:
            models = await services.client.list_models()
        except TransportError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return [ModelResponse(**model) for model in models]

    @app.get("/v1/runtime/config", response_model=RuntimeConfigResponse)
    async def get_runtime_config() -> RuntimeConfigResponse:
        return RuntimeConfigResponse(**services.runtime_config.public_view())

    @app.patch("/v1/runtime/config", response_model=RuntimeConfigResponse)
    async def patch_runtime_config(request: RuntimeConfigUpdateRequest) -> RuntimeConfigResponse:
        updated = services.runtime_config.update(
            selected_model=request.selected_model,
            ollama_base_url=request.ollama_base_url,
            ollama_timeout_seconds=request.ollama_timeout_seconds,
            agent_mode=request.agent_mode,
            throttle_window_ms=request.throttle_window_ms,
            parallel_commands_enabled=request.parallel_commands_enabled,
            parallel_commands_max_workers=request.parallel_commands_max_workers,
        )
        active = services.sessions.active
        if active is not None and request.selected_model is not None:
            active.model = updated.selected_model
        return RuntimeConfigResponse(**services.runtime_config.public_view())

    @app.post("/v1/documents", response_model=DocumentResponse)
    async def create_document(request: DocumentCreateRequest) -> DocumentResponse:
        document = services.documents.create(title=request.title, icon=request.icon)
        return DocumentResponse(**document.snapshot())

    @app.get("/v1/documents", response_model=list[DocumentResponse])
    async def list_documents() -> list[DocumentResponse]:
        return [DocumentResponse(**document.snapshot()) for document in services.documents.list_documents()]

    @app.get("/v1/documents/{document_id}", response_model=DocumentResponse)
    async def get_document(document_id: str) -> DocumentResponse:
        return DocumentResponse(**_document_or_404(services, document_id).snapshot())

    @app.post("/v1/documents/{document_id}/blocks", response_model=DocumentResponse)
    async def create_block(document_id: str, request: BlockCreateRequest) -> DocumentResponse:
        document = _document_or_404(services, document_id)
        _ensure_editor_can_write(services, document_id)
        data = request.model_dump(exclude={"after_id"}, exclude_none=True)
        document.add_block(data, after_id=request.after_id)
        return DocumentResponse(**document.snapshot())

    @app.patch("/v1/documents/{document_id}/blocks/{block_id}", response_model=DocumentResponse)
    async def patch_block(document_id: str, block_id: str, request: BlockPatchRequest) -> DocumentResponse:
        document = _document_or_404(services, document_id)
        _ensure_editor_can_write(services, document_id)
        if not document.update_block(block_id, request.field, request.value):
            raise HTTPException(status_code=404, detail="Block not found")
        return DocumentResponse(**document.snapshot())

    @app.post("/v1/documents/{document_id}/blocks/{block_id}/move", response_model=DocumentResponse)
    async def move_block(document_id: str, block_id: str, request: BlockMoveRequest) -> DocumentResponse:
        document = _document_or_404(services, document_id)
        _ensure_editor_can_write(services, document_id)
        if not document.move_block(block_id, request.new_index):
            raise HTTPException(status_code=404, detail="Block not found")
        return DocumentResponse(**document.snapshot())

    @app.delete("/v1/documents/{document_id}/blocks/{block_id}", response_model=DocumentResponse)
    async def delete_block(document_id: str, block_id: str) -> DocumentResponse:
        document = _document_or_404(services, document_id)
        _ensure_editor_can_write(services, document_id)
        if not document.delete_block(block_id):
            raise HTTPException(status_code=404, detail="Block not found")
        return DocumentResponse(**document.snapshot())

    @app.post("/v1/documents/{document_id}/session", response_model=SessionResponse)
    async def open_session(document_id: str) -> SessionResponse:
        _document_or_404(services, document_id)
        return _session_response(services.sessions.open(document_id))

    @app.get("/v1/documents/{document_id}/turns", response_model=list[TurnResponse])
    async def list_turns(document_id: str) -> list[TurnResponse]:
        _document_or_404(services, document_id)
        session = services.sessions.get(document_id)
        turns = session.turns if session is not None else services.repository.list_turns(document_id)
        return [TurnResponse(**turn.to_dict()) for turn in turns]

    @app.post("/v1/documents/{document_id}/turns", response_model=TaskStatusResponse)
    async def create_turn(document_id: str, request: TurnCreateRequest) -> TaskStatusResponse:
        document = _document_or_404(services, document_id)
        session = services.sessions.open(document_id)
        try:
            services.orchestrator.start_turn(
                session=session,
                document=document,
                user_input=request.content,
                images=request.images,
                attachments=[item.model_dump() for item in request.attachments],
            )
        except TurnInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return TaskStatusResponse(document_id=document_id, status="running")

    @app.post("/v1/documents/{document_id}/turns/cancel", response_model=TaskStatusResponse)
    async def cancel_turn(document_id: str) -> TaskStatusResponse:
        _document_or_404(services, document_id)
        cancelled = services.orchestrator.cancel_turn(document_id)
        return TaskStatusResponse(document_id=document_id, status="cancelling" if cancelled else "idle")

    @app.delete("/v1/documents/{document_id}/turns", response_model=SessionResponse)
    async def clear_turns(document_id: str) -> SessionResponse:
        _document_or_404(services, document_id)
        if services.orchestrator.is_running(document_id):
            raise HTTPException(status_code=409, detail="A turn is already running for this document")
        session = services.sessions.open(document_id)
        services.sessions.clear_history(session)
        return _session_response(session)

    @app.get("/v1/documents/{document_id}/events/stream")
    async def stream_events(document_id: str) -> StreamingResponse:
        _document_or_404(services, document_id)
        session = services.sessions.get(document_id)
        if session is None:
            raise HTTPException(status_code=404, detail="No open session for this document")

        queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        unsubscribe = session.subscribe(lambda event_type, payload: queue.put_nowait((event_type, payload)))

        async def generator() -> Any:
            try:
                while True:
                    try:
                        event_type, payload = await asyncio.wait_for(queue.get(), timeout=SSE_PING_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": ping\n\n"
                        continue
                    yield f"event: {event_type}\n"
                    yield f"data: {json.dumps(payload)}\n\n"
                    if event_type == "session_closed":
                        return
            finally:
                unsubscribe()

        return StreamingResponse(generator(), media_type="text/event-stream")

    @app.exception_handler(ValueError)
    async def value_error_handler(_request: Any, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app
