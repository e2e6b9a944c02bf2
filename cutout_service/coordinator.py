"""
Control context: session state machine for the cutout workflow.

The coordinator owns ``SessionState``, issues requests to the compute
context and applies responses one at a time. Each ``process`` request carries
a fresh identity; any ``processing``, ``result`` or identified ``error``
response with an older identity is dropped, so a slow superseded job can never
overwrite a newer submission.

Phases::

    loading_model --init_complete--> idle --processing--> processing
    processing --result--> result          any --error--> error
    error --retry--> loading_model | (processing) | idle
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import logging
import threading
import time
from typing import Callable, Optional

from pydantic import BaseModel

from . import config
from .compositor import apply_mask, derive_output_filename, encode_png, load_raster
from .errors import WorkerTransportError
from .progress import ProgressAggregator, ProgressUpdate
from .protocol import (
    Backend,
    ErrorResponse,
    InitComplete,
    InitProgress,
    InitRequest,
    Processing,
    ProcessRequest,
    Result,
)
from .resources import ImageStore
from .validation import ImageFile, validate_image_file

logger = logging.getLogger(__name__)

NOT_READY_MESSAGE = "The model is still loading. Please wait a moment and try again."


class Phase(str, Enum):
    IDLE = "idle"
    LOADING_MODEL = "loading_model"
    PROCESSING = "processing"
    RESULT = "result"
    ERROR = "error"


@dataclass(frozen=True)
class ImageHandle:
    ref: str
    filename: str
    mime_type: str


@dataclass
class SessionState:
    phase: Phase = Phase.IDLE
    backend: Optional[Backend] = None
    model_ready: bool = False
    original_image: Optional[ImageHandle] = None
    result_image: Optional[ImageHandle] = None
    processing_time_ms: Optional[int] = None
    last_error: Optional[str] = None
    current_request_id: int = 0


def transition(state: SessionState, phase: Phase, error: Optional[str] = None) -> Phase:
    """Move ``state`` to ``phase`` and return the previous phase."""
    previous = state.phase
    state.phase = phase
    state.last_error = (error or "Unknown error") if phase is Phase.ERROR else None
    logger.info("state %s -> %s", previous.value, phase.value)
    return previous


class Coordinator:
    def __init__(
        self,
        send: Callable[[BaseModel], None],
        store: ImageStore,
        settings: Optional[config.Settings] = None,
        on_change: Optional[Callable[[SessionState], None]] = None,
        on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._sender = send
        self._store = store
        self._settings = settings or config.get_settings()
        self._on_change = on_change
        self._on_progress = on_progress
        self._clock = clock

        self._state = SessionState()
        self._progress = ProgressAggregator()
        self._last_progress: Optional[ProgressUpdate] = None
        self._init_pending = False
        self._submitted_at: Optional[float] = None
        self._started_at: Optional[float] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return replace(self._state)

    @property
    def progress(self) -> Optional[ProgressUpdate]:
        with self._lock:
            return self._last_progress

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    def start(self) -> SessionState:
        with self._lock:
            logger.info("Initializing, loading model...")
            self._send_init()
            return replace(self._state)

    def submit_image(self, file: ImageFile) -> SessionState:
        with self._lock:
            reason = validate_image_file(file, self._settings)
            if reason:
                logger.info("Rejected %s (%s): %s", file.name, file.mime_type, reason)
                self._transition(Phase.ERROR, reason)
                return replace(self._state)

            self._release_images()
            ref = self._store.register(file.data)
            self._state.original_image = ImageHandle(ref=ref, filename=file.name, mime_type=file.mime_type)

            if not self._state.model_ready:
                self._transition(Phase.ERROR, NOT_READY_MESSAGE)
                return replace(self._state)

            self._send_process()
            return replace(self._state)

    def retry(self) -> SessionState:
        with self._lock:
            if not self._state.model_ready:
                self._send_init()
            elif self._state.original_image is not None:
                self._send_process()
            else:
                self._transition(Phase.IDLE)
            return replace(self._state)

    def reset(self) -> SessionState:
        with self._lock:
            self._release_images()
            self._state.processing_time_ms = None
            if self._state.model_ready:
                self._transition(Phase.IDLE)
            elif self._init_pending:
                self._transition(Phase.LOADING_MODEL)
            else:
                self._send_init()
            return replace(self._state)

    # ------------------------------------------------------------------
    # Responses from the compute context
    # ------------------------------------------------------------------

    def handle_response(self, msg: BaseModel) -> None:
        with self._lock:
            if isinstance(msg, InitProgress):
                self._apply_progress(msg)

            elif isinstance(msg, InitComplete):
                self._state.backend = msg.backend
                self._state.model_ready = True
                self._init_pending = False
                logger.info("Model ready backend=%s", msg.backend)
                self._transition(Phase.IDLE)

            elif isinstance(msg, Processing):
                if self._is_stale(msg.request_id, "processing"):
                    return
                self._started_at = self._clock()
                self._transition(Phase.PROCESSING)

            elif isinstance(msg, Result):
                if self._is_stale(msg.request_id, "result"):
                    return
                self._apply_result(msg)

            elif isinstance(msg, ErrorResponse):
                if msg.request_id is not None and self._is_stale(msg.request_id, "error"):
                    return
                if msg.request_id is None:
                    self._init_pending = False
                logger.error("Worker error: %s", msg.message)
                self._transition(Phase.ERROR, msg.message)

            else:
                self._transition(Phase.ERROR, f"Unknown message type: {type(msg).__name__}")

    def handle_transport_failure(self, exc: Exception) -> None:
        """Surface a broken or undecodable channel as an unidentified error."""
        self.handle_response(ErrorResponse(message=f"Worker error: {exc}"))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_stale(self, request_id: int, kind: str) -> bool:
        if request_id != self._state.current_request_id:
            logger.debug(
                "dropping stale %s for request %d (current %d)",
                kind,
                request_id,
                self._state.current_request_id,
            )
            return True
        return False

    def _transition(self, phase: Phase, error: Optional[str] = None) -> None:
        transition(self._state, phase, error)
        self._notify()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(replace(self._state))

    def _send(self, message: BaseModel) -> None:
        try:
            self._sender(message)
        except WorkerTransportError as exc:
            logger.error("Failed to send %s: %s", type(message).__name__, exc)
            self.handle_transport_failure(exc)

    def _send_init(self) -> None:
        self._progress.reset()
        self._last_progress = None
        self._init_pending = True
        self._transition(Phase.LOADING_MODEL)
        self._send(InitRequest())

    def _send_process(self) -> None:
        handle = self._state.original_image
        if handle is None:
            raise RuntimeError("No original image to process")
        self._state.current_request_id += 1
        self._submitted_at = self._clock()
        self._started_at = None
        logger.info("Submitting %s as request %d", handle.filename, self._state.current_request_id)
        self._notify()
        self._send(ProcessRequest(image_ref=handle.ref, request_id=self._state.current_request_id))

    def _apply_progress(self, msg: InitProgress) -> None:
        update = self._progress.on_event(msg.data)
        if update is None:
            return
        self._last_progress = update
        if self._on_progress is not None:
            self._on_progress(update)

    def _apply_result(self, msg: Result) -> None:
        original = self._state.original_image
        try:
            if original is None:
                raise RuntimeError("No original image available")
            started = self._started_at if self._started_at is not None else self._submitted_at
            elapsed_ms = (self._clock() - started) * 1000.0 if started is not None else 0.0

            original_raster = load_raster(self._store.get(original.ref), self._settings.max_dimension)
            composite = apply_mask(original_raster, msg.mask)
            png_bytes = encode_png(composite)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Compositing failed for request %d", msg.request_id)
            self._transition(Phase.ERROR, str(exc) or type(exc).__name__)
            return

        self._release_result()
        ref = self._store.register(png_bytes)
        self._state.result_image = ImageHandle(
            ref=ref,
            filename=derive_output_filename(original.filename, self._settings.output_suffix),
            mime_type="image/png",
        )
        self._state.processing_time_ms = int(elapsed_ms + 0.5)
        logger.info(
            "%dx%d mask applied in %dms",
            msg.mask.width,
            msg.mask.height,
            self._state.processing_time_ms,
        )
        self._transition(Phase.RESULT)

    def _release_result(self) -> None:
        if self._state.result_image is not None:
            self._store.release(self._state.result_image.ref)
            self._state.result_image = None

    def _release_images(self) -> None:
        if self._state.original_image is not None:
            self._store.release(self._state.original_image.ref)
            self._state.original_image = None
        self._release_result()
