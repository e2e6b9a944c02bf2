"""
Default segmentation engine backed by a MODNet TorchScript checkpoint.

The engine:
 - picks the inference device (CUDA -> Apple MPS -> CPU),
 - fetches the checkpoint into the local cache when it is missing,
 - resizes by the longest edge and normalizes into MODNet's input space,
 - returns the predicted matte at the resized resolution.

Upsampling back to the original size is left to the compositor.
"""

from __future__ import annotations

from io import BytesIO
import logging
import math
from threading import Lock
from typing import Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError
import torch

from . import config
from .model_fetcher import ModelFile, ProgressCallback, fetch_model_files
from .protocol import Backend

logger = logging.getLogger(__name__)


def select_device() -> Tuple[torch.device, Backend]:
    if torch.cuda.is_available():
        return torch.device("cuda"), "accelerated"
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps"), "accelerated"
    return torch.device("cpu"), "fallback"


def compute_resize_dims(width: int, height: int, max_long_edge: int) -> Tuple[int, int]:
    """Preserve aspect ratio while constraining the longest edge."""
    if max_long_edge <= 0:
        return width, height
    long_edge = max(width, height)
    if long_edge <= max_long_edge:
        new_w, new_h = width, height
    else:
        scale = max_long_edge / long_edge
        new_w, new_h = int(width * scale), int(height * scale)
    # MODNet down/up sampling chains need dimensions divisible by 32.
    new_w = max(32, math.ceil(new_w / 32) * 32)
    new_h = max(32, math.ceil(new_h / 32) * 32)
    return new_w, new_h


class ModnetEngine:
    def __init__(self, settings: Optional[config.Settings] = None) -> None:
        self._settings = settings or config.get_settings()
        self._model: Optional[torch.nn.Module] = None
        self._device, self._backend = select_device()
        self._lock = Lock()

    @property
    def backend(self) -> Backend:
        return self._backend

    def load(self, on_progress: ProgressCallback) -> Backend:
        with self._lock:
            if self._model is None:
                settings = self._settings
                (model_path,) = fetch_model_files(
                    [ModelFile(url=settings.model_url, path=settings.model_path)],
                    on_progress,
                    chunk_size=settings.download_chunk_size,
                    timeout_seconds=settings.request_timeout_seconds,
                )
                logger.info("Loading TorchScript model from %s", model_path)
                model = torch.jit.load(str(model_path), map_location=self._device)
                model.eval()
                self._model = model
                logger.info("MODNet loaded on device: %s", self._device)
            else:
                on_progress({"status": "ready"})
        return self._backend

    def _preprocess(self, image_bytes: bytes) -> torch.Tensor:
        try:
            image = Image.open(BytesIO(image_bytes)).convert("RGB")
        except (UnidentifiedImageError, OSError) as exc:
            raise ValueError("Invalid image data") from exc

        new_w, new_h = compute_resize_dims(image.width, image.height, self._settings.max_long_edge)
        if (new_w, new_h) != image.size:
            image = image.resize((new_w, new_h), Image.Resampling.BILINEAR)

        im_np = np.asarray(image).astype("float32") / 255.0
        im_np = (im_np - 0.5) / 0.5
        im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW
        return torch.from_numpy(im_np).unsqueeze(0).to(self._device)

    def segment(self, image_bytes: bytes) -> np.ndarray:
        if self._model is None:
            raise RuntimeError("Model not loaded")

        tensor = self._preprocess(image_bytes)
        with torch.no_grad():
            _, _, pred_matte = self._model(tensor, True)  # (B,1,H,W)
        matte = pred_matte[0, 0].detach().cpu().numpy()
        return (np.clip(matte, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)
