"""
Bounded, ordered message channel between execution contexts.

Messages are serialized to JSON on ``send`` so the two sides never share
objects; each end decodes what it receives with the protocol helpers.
"""

from __future__ import annotations

import logging
import queue
from typing import Optional

from pydantic import BaseModel

from .errors import WorkerTransportError
from .protocol import encode_message

logger = logging.getLogger(__name__)

_CLOSED = object()


class MessageChannel:
    def __init__(self, capacity: int = 64, name: str = "channel") -> None:
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=capacity)
        self._closed = False
        self.name = name

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: BaseModel, timeout: Optional[float] = 0) -> None:
        """
        Enqueue a message.

        ``timeout=0`` (the default) fails at once on a full channel; ``None``
        waits for room.
        """
        if self._closed:
            raise WorkerTransportError(f"{self.name} is closed")
        self.send_raw(encode_message(message), timeout=timeout)

    def send_raw(self, payload: str, timeout: Optional[float] = 0) -> None:
        try:
            if timeout == 0:
                self._queue.put_nowait(payload)
            else:
                self._queue.put(payload, timeout=timeout)
        except queue.Full as exc:
            raise WorkerTransportError(f"{self.name} is full") from exc

    def receive(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next raw payload in arrival order, or ``None`` once closed."""
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # Leave the marker for any other reader.
            self._queue.put(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug("closing %s", self.name)
        try:
            self._queue.put(_CLOSED, timeout=1.0)
        except queue.Full:
            logger.warning("%s still full at close; reader was not woken", self.name)
