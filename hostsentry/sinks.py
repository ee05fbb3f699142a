from __future__ import annotations
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, IO, Optional

from .models import TelemetrySnapshot

log = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 5 * 1024 * 1024


class RotatingJSONLWriter:
    """
    Appends one JSON object per line. Once the file reaches max_bytes it is
    renamed to <path>.<unix_ms> and a fresh file is opened at once.
    """
    def __init__(self, path: str, max_bytes: int = 0):
        self.path = Path(path)
        self.max_bytes = max_bytes if max_bytes > 0 else DEFAULT_MAX_BYTES
        self._lock = threading.Lock()
        self._fh: Optional[IO[str]] = None
        self._size = 0

    def write(self, obj: Dict[str, Any]) -> None:
        line = json.dumps(obj, default=str, ensure_ascii=False) + "\n"
        with self._lock:
            self._ensure_open()
            self._fh.write(line)
            self._fh.flush()
            self._size = os.fstat(self._fh.fileno()).st_size
            if self._size >= self.max_bytes:
                self._rotate()

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None

    def _ensure_open(self) -> None:
        if self._fh is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path, "a", encoding="utf-8")
        self._size = os.fstat(self._fh.fileno()).st_size

    def _rotate(self) -> None:
        self._fh.close()
        self._fh = None
        rotated = f"{self.path}.{int(time.time() * 1000)}"
        os.replace(self.path, rotated)
        log.info("rotated %s -> %s", self.path, rotated)
        self._ensure_open()


def snapshot_to_dict(s: TelemetrySnapshot) -> Dict[str, Any]:
    return {
        "summary": s.summary,
        "metrics": dict(s.metrics or {}),
        "fields": dict(s.fields or {}),
        "meta": s.meta.to_dict(),
    }


class JSONFileSink:
    """Telemetry sink writing every snapshot as a JSON line."""
    def __init__(self, path: str, max_bytes: int = 0):
        self._writer = RotatingJSONLWriter(path, max_bytes)

    @property
    def path(self) -> Path:
        return self._writer.path

    def name(self) -> str:
        return "json_file"

    def consume(self, snapshot: TelemetrySnapshot) -> None:
        self._writer.write(snapshot_to_dict(snapshot))

    def close(self) -> None:
        self._writer.close()
