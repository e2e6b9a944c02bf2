"""
Message contract between the control context and the compute context.

Messages are pydantic models tagged by a ``type`` (or ``status`` for progress
events) literal, so a decoded payload is always exactly one variant. They
travel as JSON; wire field names are camelCase, Python attributes are
snake_case.
"""

from __future__ import annotations

import json
from typing import Annotated, Literal, Optional, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
import pydantic

from .errors import UnknownMessageType, WorkerTransportError

CHANNELS = 4  # R, G, B, A

Backend = Literal["accelerated", "fallback"]


class _Message(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        frozen=True,
        extra="ignore",
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )


class Raster(BaseModel):
    """Row-major RGBA pixels, 8 bits per channel."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    width: int = Field(gt=0)
    height: int = Field(gt=0)
    pixels: bytes = Field(repr=False)

    @model_validator(mode="after")
    def check_length(self) -> "Raster":
        expected = self.width * self.height * CHANNELS
        if len(self.pixels) != expected:
            raise ValueError(
                f"pixel buffer has {len(self.pixels)} bytes, expected {expected} "
                f"for {self.width}x{self.height} RGBA"
            )
        return self

    def to_array(self) -> np.ndarray:
        """Read-only ``(height, width, 4)`` uint8 view of the pixels."""
        return np.frombuffer(self.pixels, dtype=np.uint8).reshape(self.height, self.width, CHANNELS)

    @classmethod
    def from_array(cls, array: np.ndarray) -> "Raster":
        arr = np.ascontiguousarray(array, dtype=np.uint8)
        if arr.ndim != 3 or arr.shape[2] != CHANNELS:
            raise ValueError(f"expected an (h, w, {CHANNELS}) array, got shape {arr.shape}")
        height, width = arr.shape[:2]
        return cls(width=width, height=height, pixels=arr.tobytes())


# ---------------------------------------------------------------------------
# Model download progress
# ---------------------------------------------------------------------------


class _ProgressBase(_Message):
    file: Optional[str] = None
    name: Optional[str] = None


class InitiateEvent(_ProgressBase):
    status: Literal["initiate"] = "initiate"


class DownloadEvent(_ProgressBase):
    status: Literal["download"] = "download"


class FileProgressEvent(_ProgressBase):
    status: Literal["progress"] = "progress"
    progress: Optional[float] = None  # percent for this file only
    loaded: float = 0
    total: float = 0


class DoneEvent(_ProgressBase):
    status: Literal["done"] = "done"


class ReadyEvent(_ProgressBase):
    status: Literal["ready"] = "ready"


ProgressEvent = Annotated[
    Union[InitiateEvent, DownloadEvent, FileProgressEvent, DoneEvent, ReadyEvent],
    Field(discriminator="status"),
]


# ---------------------------------------------------------------------------
# Control -> compute
# ---------------------------------------------------------------------------


class InitRequest(_Message):
    type: Literal["init"] = "init"


class ProcessRequest(_Message):
    type: Literal["process"] = "process"
    image_ref: str = Field(alias="imageRef")
    request_id: int = Field(alias="requestId")


Request = Annotated[Union[InitRequest, ProcessRequest], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Compute -> control
# ---------------------------------------------------------------------------


class InitProgress(_Message):
    type: Literal["init_progress"] = "init_progress"
    data: ProgressEvent


class InitComplete(_Message):
    type: Literal["init_complete"] = "init_complete"
    backend: Backend


class Processing(_Message):
    type: Literal["processing"] = "processing"
    request_id: int = Field(alias="requestId")


class Result(_Message):
    type: Literal["result"] = "result"
    mask: Raster
    request_id: int = Field(alias="requestId")


class ErrorResponse(_Message):
    type: Literal["error"] = "error"
    message: str
    request_id: Optional[int] = Field(default=None, alias="requestId")


Response = Annotated[
    Union[InitProgress, InitComplete, Processing, Result, ErrorResponse],
    Field(discriminator="type"),
]

REQUEST_TYPES = frozenset({"init", "process"})
RESPONSE_TYPES = frozenset({"init_progress", "init_complete", "processing", "result", "error"})

_REQUEST_ADAPTER: TypeAdapter = TypeAdapter(Request)
_RESPONSE_ADAPTER: TypeAdapter = TypeAdapter(Response)
_PROGRESS_ADAPTER: TypeAdapter = TypeAdapter(ProgressEvent)


def encode_message(message: BaseModel) -> str:
    """Serialize a message to its JSON wire form."""
    return message.model_dump_json(by_alias=True, exclude_none=True)


def _decode(adapter: TypeAdapter, raw: str, known_types: frozenset):
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise WorkerTransportError(f"Undecodable message: {exc}") from exc
    if not isinstance(payload, dict):
        raise WorkerTransportError("Message must be a JSON object")

    message_type = payload.get("type")
    if message_type not in known_types:
        raise UnknownMessageType(str(message_type))

    try:
        return adapter.validate_json(raw)
    except pydantic.ValidationError as exc:
        raise WorkerTransportError(f"Malformed '{message_type}' message: {exc}") from exc


def parse_request(raw: str) -> Union[InitRequest, ProcessRequest]:
    return _decode(_REQUEST_ADAPTER, raw, REQUEST_TYPES)


def parse_response(
    raw: str,
) -> Union[InitProgress, InitComplete, Processing, Result, ErrorResponse]:
    return _decode(_RESPONSE_ADAPTER, raw, RESPONSE_TYPES)


def progress_event_from_dict(data: dict) -> Union[
    InitiateEvent, DownloadEvent, FileProgressEvent, DoneEvent, ReadyEvent
]:
    """Build a typed progress event from a loader callback payload."""
    return _PROGRESS_ADAPTER.validate_python(data)
