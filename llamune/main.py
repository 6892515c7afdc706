from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from .candidates import CandidateError, ConfirmResult
from .chat import ChatService
from .config import AppSettings, load_settings
from .db import Database
from .llm import OllamaClient, format_size
from .orchestrator import ToolLoop
from .schemas import (
    CreateSessionRequest,
    RetryDecisionRequest,
    RetryRequest,
    SelectRequest,
    SendRequest,
    Session,
    UpdateSessionRequest,
)
from .tools import ToolExecutor, Workspace


SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


class ApiError(HTTPException):
    def __init__(self, status_code: int, error: str, code: str):
        super().__init__(status_code=status_code, detail={"error": error, "code": code})


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_llm_client(request: Request) -> OllamaClient:
    return request.app.state.llm_client


def get_executor(request: Request) -> ToolExecutor:
    return request.app.state.executor


def get_chat(request: Request) -> ChatService:
    return request.app.state.chat


async def require_session(db: Database, session_id: int) -> Session:
    session = await db.get_session(session_id)
    if not session:
        raise ApiError(404, "Session not found", "NOT_FOUND")
    return session


def sse_response(generator) -> StreamingResponse:
    return StreamingResponse(generator, media_type="text/event-stream", headers=SSE_HEADERS)


router = APIRouter()


@router.get("/api/models")
async def list_models(lm_client: OllamaClient = Depends(get_llm_client)):
    try:
        models = await lm_client.list_models()
    except Exception as exc:
        raise ApiError(502, f"Failed to get models: {exc}", "MODEL_UNAVAILABLE")
    return {
        "models": [
            {
                "name": m.get("name"),
                "size": m.get("size"),
                "sizeFormatted": format_size(m.get("size")),
                "modifiedAt": m.get("modified_at"),
            }
            for m in models
        ]
    }


@router.get("/api/tools")
async def list_tools(executor: ToolExecutor = Depends(get_executor)):
    return {"tools": executor.schemas()}


@router.get("/api/sessions")
async def list_sessions(limit: int = 200, db: Database = Depends(get_db)):
    return {"sessions": await db.list_sessions(limit=limit)}


@router.post("/api/sessions", status_code=201)
async def create_session(
    payload: CreateSessionRequest,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
):
    root = payload.workspace_root
    if root and not Path(root).expanduser().is_dir():
        raise ApiError(400, "Workspace root is not a directory", "VALIDATION_ERROR")
    session = await db.create_session(
        model=payload.model or settings.default_model,
        title=payload.title,
        system_prompt=payload.system_prompt if payload.system_prompt is not None else settings.default_system_prompt,
        workspace_root=str(Path(root).expanduser().resolve()) if root else None,
    )
    return {"session": session.model_dump()}


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: int, db: Database = Depends(get_db)):
    session = await require_session(db, session_id)
    messages = await db.list_messages(session_id)
    return {"session": session.model_dump(), "messages": [m.model_dump(exclude={"tool_calls"}) for m in messages]}


@router.get("/api/sessions/{session_id}/messages")
async def get_session_messages(session_id: int, db: Database = Depends(get_db)):
    await require_session(db, session_id)
    messages = await db.list_messages(session_id)
    return {"messages": [m.model_dump(exclude={"tool_calls"}) for m in messages]}


@router.patch("/api/sessions/{session_id}")
async def update_session(session_id: int, payload: UpdateSessionRequest, db: Database = Depends(get_db)):
    session = await db.update_session(
        session_id,
        title=payload.title,
        model=payload.model,
        system_prompt=payload.system_prompt,
        workspace_root=payload.workspace_root,
    )
    if not session:
        raise ApiError(404, "Session not found", "NOT_FOUND")
    return {"session": session.model_dump()}


@router.delete("/api/sessions/{session_id}")
async def delete_session(session_id: int, db: Database = Depends(get_db)):
    if not await db.delete_session(session_id):
        raise ApiError(404, "Session not found", "NOT_FOUND")
    return {"success": True}


@router.post("/api/chat/send")
async def send_message(
    payload: SendRequest,
    db: Database = Depends(get_db),
    chat: ChatService = Depends(get_chat),
):
    text = payload.message.strip()
    if not text:
        raise ApiError(400, "Session ID and message are required", "VALIDATION_ERROR")
    session = await require_session(db, payload.session_id)
    return sse_response(chat.send(session, text, model=payload.model))


@router.post("/api/chat/retry")
async def retry_message(
    payload: RetryRequest,
    db: Database = Depends(get_db),
    chat: ChatService = Depends(get_chat),
):
    session = await require_session(db, payload.session_id)
    cset = await chat.candidates(session.id)
    if not cset:
        raise ApiError(400, "No message to retry", "NO_RETRY_MESSAGES")
    if cset.is_full:
        raise ApiError(400, f"At most {cset.max_candidates} candidates can be compared", "CANDIDATE_LIMIT")
    return sse_response(cset.add_retry(chat.loop, session, model=payload.model))


def decision_response(session: Session, result: ConfirmResult) -> Dict[str, Any]:
    return {
        "success": True,
        "sessionId": session.id,
        "adoptedId": result.adopted_id,
        "discardedIds": result.discarded_ids,
    }


@router.post("/api/chat/retry/accept")
async def accept_retry(
    payload: RetryDecisionRequest,
    db: Database = Depends(get_db),
    chat: ChatService = Depends(get_chat),
):
    session = await require_session(db, payload.session_id)
    cset = await chat.candidates(session.id)
    try:
        result = await cset.accept_retry()
    except CandidateError as exc:
        raise ApiError(400, str(exc), exc.code)
    return decision_response(session, result)


@router.post("/api/chat/retry/reject")
async def reject_retry(
    payload: RetryDecisionRequest,
    db: Database = Depends(get_db),
    chat: ChatService = Depends(get_chat),
):
    session = await require_session(db, payload.session_id)
    cset = await chat.candidates(session.id)
    try:
        result = await cset.reject_retry()
    except CandidateError as exc:
        raise ApiError(400, str(exc), exc.code)
    return decision_response(session, result)


@router.post("/api/chat/retry/select")
async def select_retry(
    payload: SelectRequest,
    db: Database = Depends(get_db),
    chat: ChatService = Depends(get_chat),
):
    session = await require_session(db, payload.session_id)
    cset = await chat.candidates(session.id)
    try:
        result = await cset.select(payload.adopted_index, payload.keep_indices, payload.discard_indices)
    except CandidateError as exc:
        raise ApiError(400, str(exc), exc.code)
    return {
        "success": True,
        "sessionId": session.id,
        "adoptedId": result.adopted_id,
        "keptIds": result.kept_ids,
        "discardedIds": result.discarded_ids,
    }


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.detail)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Invalid request", "code": "VALIDATION_ERROR"})


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[OllamaClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            await app.state.llm_client.close()

    app = FastAPI(title="Llamune Chat", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or OllamaClient(settings.ollama_base_url, timeout=settings.request_timeout_s)
    app.state.executor = ToolExecutor(
        Workspace(
            max_file_bytes=settings.tool_max_file_bytes,
            tree_max_depth=settings.tree_max_depth,
            tree_max_entries=settings.tree_max_entries,
        )
    )
    loop = ToolLoop(app.state.llm_client, app.state.executor, max_tool_rounds=settings.max_tool_rounds)
    app.state.chat = ChatService(app.state.db, loop, max_candidates=settings.max_candidates)

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


def run() -> None:
    import os
    import uvicorn

    settings = load_settings()
    reload_enabled = os.getenv("LLAMUNE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "llamune.main:create_default_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass


def create_default_app() -> FastAPI:
    return create_app(load_settings())


if __name__ == "__main__":
    run()
