"""
Handle registry for image byte buffers.

Plays the role of a platform blob store: callers get an opaque reference for
the bytes they register and must release it when done. Releasing an unknown
or already released reference is a no-op.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Dict
import uuid

logger = logging.getLogger(__name__)


class ImageStore:
    def __init__(self) -> None:
        self._buffers: Dict[str, bytes] = {}
        self._lock = Lock()

    def register(self, data: bytes) -> str:
        ref = f"blob:{uuid.uuid4()}"
        with self._lock:
            self._buffers[ref] = data
        logger.debug("registered %s (%d bytes)", ref, len(data))
        return ref

    def get(self, ref: str) -> bytes:
        with self._lock:
            try:
                return self._buffers[ref]
            except KeyError:
                raise KeyError(f"Image handle {ref} is not available") from None

    def release(self, ref: str) -> None:
        with self._lock:
            released = self._buffers.pop(ref, None)
        if released is not None:
            logger.debug("released %s", ref)

    def __contains__(self, ref: object) -> bool:
        with self._lock:
            return ref in self._buffers

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)
