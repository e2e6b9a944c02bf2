"""Error taxonomy shared by the control and compute contexts.

Every kind ends up as a message string in the coordinator's ``error`` phase;
the classes exist so callers at the edges (API, scripts) can tell them apart.
"""

from __future__ import annotations


class CutoutError(Exception):
    """Base class for all service errors."""


class ValidationError(CutoutError):
    """Submitted file has an unsupported type or is too large."""


class NotReadyError(CutoutError):
    """An image was submitted before the model finished loading."""


class WorkerTransportError(CutoutError):
    """The message channel failed or carried an undecodable payload."""


class InferenceError(CutoutError):
    """The segmentation engine failed on a request's image."""


class UnknownMessageType(WorkerTransportError):
    """A message carried a ``type`` tag outside the protocol."""

    def __init__(self, message_type: str) -> None:
        super().__init__(f"Unknown message type: {message_type}")
        self.message_type = message_type
