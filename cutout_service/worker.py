"""
Compute context: owns the segmentation engine and answers requests.

Requests are handled strictly one at a time in arrival order. There is no
cancellation; the control context discards answers it no longer wants.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

import numpy as np
from pydantic import BaseModel

from .channel import MessageChannel
from .compositor import mask_from_matte
from .errors import InferenceError, NotReadyError, WorkerTransportError
from .protocol import (
    Backend,
    ErrorResponse,
    InitComplete,
    InitProgress,
    InitRequest,
    Processing,
    ProcessRequest,
    Result,
    parse_request,
    progress_event_from_dict,
)
from .resources import ImageStore

logger = logging.getLogger(__name__)


class SegmentationEngine(Protocol):
    def load(self, on_progress) -> Backend:
        """Prepare the model, reporting download progress dicts as it goes."""

    def segment(self, image_bytes: bytes) -> np.ndarray:
        """Return a 2-D uint8 opacity matte for the image."""


class InferenceWorker(threading.Thread):
    def __init__(
        self,
        engine: SegmentationEngine,
        requests: MessageChannel,
        responses: MessageChannel,
        store: ImageStore,
    ) -> None:
        super().__init__(name="inference-worker", daemon=True)
        self._engine = engine
        self._requests = requests
        self._responses = responses
        self._store = store
        self._ready = False

    def _respond(self, message: BaseModel) -> None:
        self._responses.send(message, timeout=None)

    def run(self) -> None:
        while True:
            raw = self._requests.receive()
            if raw is None:
                logger.debug("request channel closed; worker exiting")
                return
            try:
                self.handle(raw)
            except WorkerTransportError as exc:
                logger.warning("Response channel unavailable, worker exiting: %s", exc)
                return

    def handle(self, raw: str) -> None:
        try:
            request = parse_request(raw)
        except WorkerTransportError as exc:
            logger.warning("Rejected request: %s", exc)
            self._respond(ErrorResponse(message=str(exc)))
            return

        request_id: Optional[int] = getattr(request, "request_id", None)
        try:
            if isinstance(request, InitRequest):
                self._init_pipeline()
            elif isinstance(request, ProcessRequest):
                self._process_image(request)
        except WorkerTransportError:
            raise
        except (NotReadyError, InferenceError) as exc:
            logger.warning("Request %s failed: %s", request_id, exc)
            self._respond(ErrorResponse(message=str(exc), request_id=request_id))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Request %s failed: %s", request_id, exc)
            self._respond(ErrorResponse(message=str(exc) or type(exc).__name__, request_id=request_id))

    def _forward_progress(self, data: dict) -> None:
        self._respond(InitProgress(data=progress_event_from_dict(data)))

    def _init_pipeline(self) -> None:
        backend = self._engine.load(self._forward_progress)
        self._ready = True
        logger.info("Pipeline ready backend=%s", backend)
        self._respond(InitComplete(backend=backend))

    def _process_image(self, request: ProcessRequest) -> None:
        if not self._ready:
            raise NotReadyError("Pipeline not initialized")

        self._respond(Processing(request_id=request.request_id))
        image_bytes = self._store.get(request.image_ref)
        try:
            matte = self._engine.segment(image_bytes)
        except Exception as exc:  # noqa: BLE001
            raise InferenceError(str(exc) or type(exc).__name__) from exc
        mask = mask_from_matte(matte)
        logger.info(
            "Request %d segmented, mask %dx%d", request.request_id, mask.width, mask.height
        )
        self._respond(Result(mask=mask, request_id=request.request_id))
