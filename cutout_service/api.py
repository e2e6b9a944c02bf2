"""
FastAPI layer exposing the cutout session.

Endpoints:
 - GET /health
 - GET /state
 - POST /images
 - POST /retry
 - POST /reset
 - GET /result
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field

from . import config
from .coordinator import NOT_READY_MESSAGE, Phase, SessionState
from .session import CutoutSession
from .validation import ImageFile
from .worker import SegmentationEngine

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


class ProgressBody(BaseModel):
    percent: Optional[int] = None
    message: str


class StateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    phase: str
    backend: Optional[str] = None
    model_ready: bool = Field(alias="modelReady")
    request_id: int = Field(alias="requestId")
    processing_time_ms: Optional[int] = Field(default=None, alias="processingTimeMs")
    error: Optional[str] = None
    result_filename: Optional[str] = Field(default=None, alias="resultFilename")
    progress: Optional[ProgressBody] = None


def _default_engine() -> SegmentationEngine:
    # Imported lazily so the API module loads without initializing torch.
    from .engine import ModnetEngine

    return ModnetEngine(settings)


def _state_body(session: CutoutSession, state: SessionState) -> StateResponse:
    update = session.coordinator.progress
    return StateResponse(
        phase=state.phase.value,
        backend=state.backend,
        model_ready=state.model_ready,
        request_id=state.current_request_id,
        processing_time_ms=state.processing_time_ms,
        error=state.last_error,
        result_filename=state.result_image.filename if state.result_image else None,
        progress=ProgressBody(percent=update.percent, message=update.message) if update else None,
    )


def create_app(engine_factory: Optional[Callable[[], SegmentationEngine]] = None) -> FastAPI:
    factory = engine_factory or _default_engine

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        session = CutoutSession(factory(), settings=settings)
        session.start()
        app.state.session = session
        try:
            yield
        finally:
            session.close()

    app = FastAPI(title="Background Cutout Service", version="0.1.0", lifespan=lifespan)

    def _session(request: Request) -> CutoutSession:
        return request.app.state.session

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/state", response_model=StateResponse, response_model_by_alias=True)
    def get_state(request: Request):
        session = _session(request)
        return _state_body(session, session.coordinator.state)

    def _submit(session: CutoutSession, file: ImageFile) -> StateResponse:
        previous_id = session.coordinator.state.current_request_id
        state = session.coordinator.submit_image(file)
        if state.phase is Phase.ERROR:
            if state.current_request_id != previous_id:
                # The request was sent but the channel refused it.
                raise HTTPException(status_code=503, detail=state.last_error)
            status = 409 if state.last_error == NOT_READY_MESSAGE else 400
            raise HTTPException(status_code=status, detail=state.last_error)
        return _state_body(session, state)

    @app.post("/images", status_code=202, response_model=StateResponse, response_model_by_alias=True)
    async def submit_image(request: Request, filename: str = "image"):
        session = _session(request)
        body = await request.body()
        mime_type = request.headers.get("content-type", "").split(";")[0].strip()
        file = ImageFile(name=filename, mime_type=mime_type, data=body)
        return await run_in_threadpool(_submit, session, file)

    @app.post("/retry", response_model=StateResponse, response_model_by_alias=True)
    def retry(request: Request):
        session = _session(request)
        return _state_body(session, session.coordinator.retry())

    @app.post("/reset", response_model=StateResponse, response_model_by_alias=True)
    def reset(request: Request):
        session = _session(request)
        return _state_body(session, session.coordinator.reset())

    @app.get("/result")
    def download_result(request: Request):
        session = _session(request)
        handle = session.coordinator.state.result_image
        if handle is None:
            raise HTTPException(status_code=404, detail="No result available")
        try:
            png_bytes = session.store.get(handle.ref)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="No result available") from exc
        return Response(
            content=png_bytes,
            media_type="image/png",
            headers={"Content-Disposition": f'attachment; filename="{handle.filename}"'},
        )

    return app


app = create_app()
