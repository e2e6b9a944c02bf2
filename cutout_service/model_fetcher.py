"""
Download model files into a local cache, reporting progress per file.

Progress is reported through a callback with the same payload shape the
compute context forwards to the control context:
``{"status": ..., "file": ..., "loaded": ..., "total": ..., "progress": ...}``.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import requests

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict], None]


@dataclass(frozen=True)
class ModelFile:
    url: Optional[str]
    path: Path

    @property
    def key(self) -> str:
        return self.path.name


def _download(
    item: ModelFile,
    on_progress: ProgressCallback,
    chunk_size: int,
    timeout_seconds: int,
) -> None:
    if not item.url:
        raise FileNotFoundError(f"Model file not found at {item.path} and no download URL configured")

    on_progress({"status": "download", "file": item.key})
    item.path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = item.path.with_name(item.path.name + ".part")

    resp = requests.get(item.url, stream=True, timeout=(5, timeout_seconds))
    try:
        resp.raise_for_status()
        total = int(resp.headers.get("content-length") or 0)
        loaded = 0
        with open(tmp_path, "wb") as f:
            for chunk in resp.iter_content(chunk_size=chunk_size):
                if not chunk:
                    continue
                f.write(chunk)
                loaded += len(chunk)
                on_progress(
                    {
                        "status": "progress",
                        "file": item.key,
                        "loaded": loaded,
                        "total": total,
                        "progress": (loaded / total * 100.0) if total else 0.0,
                    }
                )
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise
    finally:
        resp.close()

    tmp_path.replace(item.path)
    logger.info("Downloaded %s (%d bytes) to %s", item.url, loaded, item.path)


def fetch_model_files(
    files: Iterable[ModelFile],
    on_progress: ProgressCallback,
    chunk_size: int = 8192,
    timeout_seconds: int = 30,
) -> List[Path]:
    """
    Ensure every file exists locally, downloading the missing ones.

    Emits ``initiate``/``done`` for each file (plus ``download`` and
    ``progress`` when it has to be fetched) and a single ``ready`` at the end.
    """
    paths: List[Path] = []
    for item in files:
        on_progress({"status": "initiate", "file": item.key})
        if item.path.exists():
            logger.info("Using cached model file %s", item.path)
        else:
            _download(item, on_progress, chunk_size, timeout_seconds)
        on_progress({"status": "done", "file": item.key})
        paths.append(item.path)

    on_progress({"status": "ready"})
    return paths
