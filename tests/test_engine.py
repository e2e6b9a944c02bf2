from io import BytesIO
from unittest.mock import patch

import numpy as np
from PIL import Image
import pytest
import torch

from cutout_service import engine as engine_module
from cutout_service.engine import ModnetEngine, compute_resize_dims, select_device


class TinyMatte(torch.nn.Module):
    def forward(self, x: torch.Tensor, inference: bool):
        matte = x.mean(dim=1, keepdim=True) * 0.5 + 0.5
        return matte, matte, matte


@pytest.fixture
def scripted_model(settings):
    settings.model_path.parent.mkdir(parents=True, exist_ok=True)
    torch.jit.script(TinyMatte()).save(str(settings.model_path))
    return settings.model_path


def test_compute_resize_dims_keeps_multiples_of_32():
    assert compute_resize_dims(2048, 1024, 1024) == (1024, 512)
    assert compute_resize_dims(100, 50, 1024) == (128, 64)
    assert compute_resize_dims(10, 10, 1024) == (32, 32)


def test_select_device_falls_back_to_cpu():
    with patch.object(torch.cuda, "is_available", return_value=False), patch.object(
        torch.backends.mps, "is_available", return_value=False
    ):
        device, backend = select_device()
    assert device.type == "cpu"
    assert backend == "fallback"


def test_load_and_segment_with_cached_model(settings, scripted_model, make_png):
    with patch.object(engine_module, "select_device", return_value=(torch.device("cpu"), "fallback")):
        engine = ModnetEngine(settings)

    events = []
    assert engine.load(events.append) == "fallback"
    assert [e["status"] for e in events] == ["initiate", "done", "ready"]

    white = make_png(64, 40, color=(255, 255, 255, 255))
    matte = engine.segment(white)
    assert matte.dtype == np.uint8
    assert matte.shape == (64, 64)
    assert np.all(matte == 255)


def test_segment_requires_load(settings):
    with patch.object(engine_module, "select_device", return_value=(torch.device("cpu"), "fallback")):
        engine = ModnetEngine(settings)
    with pytest.raises(RuntimeError):
        engine.segment(b"")


def test_segment_rejects_invalid_image(settings, scripted_model):
    with patch.object(engine_module, "select_device", return_value=(torch.device("cpu"), "fallback")):
        engine = ModnetEngine(settings)
    engine.load(lambda e: None)
    with pytest.raises(ValueError):
        engine.segment(b"not an image")
