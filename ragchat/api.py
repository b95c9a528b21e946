# ragchat/api.py
from __future__ import annotations
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
import asyncio
import logging

from fastapi import FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from .config import settings as default_settings
from .errors import ChatbotError, ValidationError
from .factory import Services, create_services

log = logging.getLogger(__name__)


# ---------- Models ----------
class ChatRequest(BaseModel):
    message: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    session_id: Optional[str] = None


class ChatResponse(BaseModel):
    reply: str


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or create_services(default_settings)
    s = services.settings
    core = services.core
    ingest = services.ingest

    # ---------- App & DI ----------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await core.dispatcher.startup()
        if s.OLLAMA_WARMUP and "ollama" in core.dispatcher.adapters:
            try:
                adapter, model = core.dispatcher.resolve("ollama")
                await adapter.warmup(model)
            except Exception as e:
                log.warning(f"Warmup failed: {e}")
        yield
        await core.dispatcher.shutdown()

    app = FastAPI(title="ragchat", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=s.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services

    static_dir = Path(s.STATIC_DIR)
    if static_dir.is_dir():
        app.mount("/static", StaticFiles(directory=static_dir), name="static")

    @app.exception_handler(ChatbotError)
    async def chatbot_error_handler(request: Request, exc: ChatbotError):
        if exc.status_code >= 500:
            log.error(f"{request.url.path}: {type(exc).__name__}: {exc}")
        else:
            log.info(f"{request.url.path}: {type(exc).__name__}: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # falscher Typ oder kaputtes JSON -> gleiche 400-Form wie ein fehlendes Feld
        fields = {str(part) for err in exc.errors() for part in err.get("loc", ())}
        error = ValidationError("Message is required" if "message" in fields else "")
        return await chatbot_error_handler(request, error)

    def _session(body_id: Optional[str], header_id: Optional[str]) -> Optional[str]:
        return body_id or header_id

    # ---------- Endpoints ----------
    @app.get("/health")
    def health():
        return {"status": "ok", "providers": core.dispatcher.providers}

    @app.post("/chat", response_model=ChatResponse)
    @app.post("/chatbot", response_model=ChatResponse)
    async def chat(payload: ChatRequest, x_session_id: Optional[str] = Header(default=None)):
        """
        POST /chat
        Body: {"message": "...", "provider": "openai", "model": "gpt-4o-mini"}
        Antwort: {"reply": "..."}
        """
        reply = await core.chat(
            payload.message,
            provider=payload.provider,
            model=payload.model,
            session_id=_session(payload.session_id, x_session_id),
        )
        return {"reply": reply}

    @app.post("/chat/stream")
    async def chat_stream(payload: ChatRequest, request: Request, x_session_id: Optional[str] = Header(default=None)):
        """
        Server-Sent Events:
          - event: message, data: {"delta":"..."}
          - event: ping, data: "ping"
          - event: error, data: {"message": "..."}
          - event: done, data: {"ok": true}
        """
        events = await core.stream(
            payload.message,
            provider=payload.provider,
            model=payload.model,
            session_id=_session(payload.session_id, x_session_id),
        )

        async def gen():
            async for evt in events:
                if await request.is_disconnected():
                    break
                yield evt

        return EventSourceResponse(gen(), headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})

    @app.delete("/history")
    async def clear_history(session_id: Optional[str] = None, x_session_id: Optional[str] = Header(default=None)):
        cleared = core.clear_history(_session(session_id, x_session_id))
        return {"cleared": cleared}

    @app.post("/upload")
    async def upload(file: Optional[UploadFile] = File(default=None)):
        """
        multipart/form-data: file=@doc.pdf
        Antwort: {"message": "...", "fileName": "doc.pdf"}
        """
        if file is None or not file.filename:
            raise ValidationError("No files were uploaded.")
        data = await file.read()
        result = await asyncio.to_thread(ingest.ingest_upload, file.filename, data)
        return {"message": "File uploaded successfully", "fileName": result["file_name"]}

    @app.get("/files")
    def files():
        return ingest.list_files()

    @app.get("/")
    def index():
        page = static_dir / "index.html"
        if not page.is_file():
            raise HTTPException(404, "index.html not found")
        return FileResponse(page)

    return app
