from io import BytesIO
from typing import List

import numpy as np
import pytest
from PIL import Image

from cutout_service.config import Settings
from cutout_service.coordinator import Coordinator
from cutout_service.resources import ImageStore
from cutout_service.validation import ImageFile


class FakeEngine:
    """Engine double: reports two model files and returns a constant matte."""

    def __init__(self, value: int = 200, scale: int = 2, fail: bool = False) -> None:
        self.value = value
        self.scale = scale
        self.fail = fail
        self.loaded = False
        self.calls: List[tuple] = []

    def load(self, on_progress):
        for name, total in (("model.onnx", 100), ("config.json", 50)):
            on_progress({"status": "initiate", "file": name})
            on_progress({"status": "download", "file": name})
            on_progress({"status": "progress", "file": name, "loaded": total, "total": total, "progress": 100.0})
            on_progress({"status": "done", "file": name})
        on_progress({"status": "ready"})
        self.loaded = True
        return "fallback"

    def segment(self, image_bytes: bytes) -> np.ndarray:
        if self.fail:
            raise RuntimeError("inference exploded")
        with Image.open(BytesIO(image_bytes)) as im:
            width, height = im.size
        self.calls.append((width, height))
        return np.full(
            (max(1, height // self.scale), max(1, width // self.scale)), self.value, dtype=np.uint8
        )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        model_path=tmp_path / "model.torchscript",
        channel_capacity=256,
    )


@pytest.fixture
def make_png():
    def _make(width: int = 8, height: int = 6, color=(10, 20, 30, 255), fmt: str = "PNG") -> bytes:
        mode = "RGBA" if fmt == "PNG" else "RGB"
        image = Image.new(mode, (width, height), color if mode == "RGBA" else color[:3])
        buf = BytesIO()
        image.save(buf, format=fmt)
        return buf.getvalue()

    return _make


@pytest.fixture
def make_file(make_png):
    def _make(name: str = "photo.png", width: int = 8, height: int = 6, color=(10, 20, 30, 255)) -> ImageFile:
        return ImageFile(name=name, mime_type="image/png", data=make_png(width, height, color))

    return _make


@pytest.fixture
def store():
    return ImageStore()


@pytest.fixture
def sent():
    return []


@pytest.fixture
def coordinator(settings, store, sent):
    return Coordinator(send=sent.append, store=store, settings=settings)


@pytest.fixture
def fake_engine():
    return FakeEngine()
