"""
Wire the control and compute contexts together.

One bounded channel per direction connects the coordinator to the inference
worker. A pump thread decodes responses and feeds them to the coordinator in
arrival order.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from . import config
from .channel import MessageChannel
from .coordinator import Coordinator, SessionState
from .errors import WorkerTransportError
from .progress import ProgressUpdate
from .protocol import parse_response
from .resources import ImageStore
from .worker import InferenceWorker, SegmentationEngine

logger = logging.getLogger(__name__)


class CutoutSession:
    def __init__(
        self,
        engine: SegmentationEngine,
        settings: Optional[config.Settings] = None,
        on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
    ) -> None:
        self.settings = settings or config.get_settings()
        self.store = ImageStore()
        self.requests = MessageChannel(self.settings.channel_capacity, name="request channel")
        self.responses = MessageChannel(self.settings.channel_capacity, name="response channel")

        self._changed = threading.Condition()
        self._snapshot = SessionState()
        self._external_progress = on_progress

        self.coordinator = Coordinator(
            send=self.requests.send,
            store=self.store,
            settings=self.settings,
            on_change=self._state_changed,
            on_progress=self._progress_changed,
        )
        self.worker = InferenceWorker(engine, self.requests, self.responses, self.store)
        self._pump = threading.Thread(target=self._pump_responses, name="response-pump", daemon=True)

    def __enter__(self) -> "CutoutSession":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def start(self) -> None:
        self.worker.start()
        self._pump.start()
        self.coordinator.start()

    def close(self, timeout: float = 5.0) -> None:
        self.requests.close()
        self.responses.close()
        self.worker.join(timeout)
        self._pump.join(timeout)

    def _state_changed(self, state: SessionState) -> None:
        with self._changed:
            self._snapshot = state
            self._changed.notify_all()

    def _progress_changed(self, update: ProgressUpdate) -> None:
        if self._external_progress is not None:
            self._external_progress(update)

    def _pump_responses(self) -> None:
        while True:
            raw = self.responses.receive()
            if raw is None:
                return
            try:
                message = parse_response(raw)
            except WorkerTransportError as exc:
                logger.warning("Undecodable response: %s", exc)
                self.coordinator.handle_transport_failure(exc)
                continue
            self.coordinator.handle_response(message)

    def wait_for(
        self, predicate: Callable[[SessionState], bool], timeout: Optional[float] = None
    ) -> SessionState:
        """Block until ``predicate`` holds for the latest state snapshot."""
        with self._changed:
            if not self._changed.wait_for(lambda: predicate(self._snapshot), timeout=timeout):
                raise TimeoutError(f"Session stayed in phase {self._snapshot.phase.value}")
            return self._snapshot
