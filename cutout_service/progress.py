"""
Aggregate model-download progress across files.

The loader reports progress per file, in any interleaving and for an unknown
number of files. The aggregator keeps the latest ``{loaded, total}`` per file
and recomputes the overall percentage from the full snapshot on each event,
so a lost or reordered event never skews the result for long.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, Optional

from .protocol import (
    DoneEvent,
    FileProgressEvent,
    InitiateEvent,
    ReadyEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY = "__default__"


@dataclass
class FileProgress:
    loaded: float = 0
    total: float = 0


@dataclass(frozen=True)
class ProgressUpdate:
    message: str
    percent: Optional[int] = None


class ProgressAggregator:
    def __init__(self) -> None:
        self._files: Dict[str, FileProgress] = {}
        self._displayed = 0

    @property
    def files(self) -> Dict[str, FileProgress]:
        return dict(self._files)

    @property
    def displayed_percent(self) -> int:
        return self._displayed

    def aggregate_percent(self) -> int:
        total_loaded = sum(f.loaded for f in self._files.values())
        total_size = sum(f.total for f in self._files.values())
        if total_size <= 0:
            return 0
        # Half-up rounding rather than Python's banker's rounding.
        return int(total_loaded / total_size * 100 + 0.5)

    def on_event(self, event) -> Optional[ProgressUpdate]:
        key = getattr(event, "file", None) or DEFAULT_KEY

        if isinstance(event, InitiateEvent):
            self._files[key] = FileProgress()
            return ProgressUpdate(message=f"Preparing {event.file or 'file'}...")

        if isinstance(event, FileProgressEvent):
            self._files[key] = FileProgress(loaded=event.loaded, total=event.total)
            pct = self.aggregate_percent()
            # Newly initiated files grow the denominator; never show a step back.
            self._displayed = max(self._displayed, pct)
            return ProgressUpdate(
                message=f"Downloading model... {self._displayed}%",
                percent=self._displayed,
            )

        if isinstance(event, DoneEvent):
            entry = self._files.get(key)
            if entry is not None and entry.total > 0:
                entry.loaded = entry.total
            logger.debug("download done file=%s", key)
            return ProgressUpdate(message="Model files ready")

        if isinstance(event, ReadyEvent):
            return ProgressUpdate(message="Model ready")

        return None

    def reset(self) -> None:
        self._files.clear()
        self._displayed = 0
