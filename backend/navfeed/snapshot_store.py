from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock

from pydantic import TypeAdapter, ValidationError

from .logging_utils import log_event, log_warning
from .models import TrafficSegment

_SEGMENTS = TypeAdapter(list[TrafficSegment])


class TrafficSnapshotStore:
    """Last fused traffic snapshot on disk so an offline restart still has data."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = Lock()

    @classmethod
    def under(cls, out_dir: str | Path) -> TrafficSnapshotStore:
        return cls(Path(out_dir) / "offline" / "traffic_snapshot.json")

    @property
    def path(self) -> Path:
        return self._path

    def save(self, segments: list[TrafficSegment]) -> None:
        payload = {
            "updated_at": datetime.now(UTC).isoformat(),
            "segments": _SEGMENTS.dump_python(segments, mode="json"),
        }
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload), encoding="utf-8")
            os.replace(tmp, self._path)
        log_event("traffic_snapshot_saved", segments=len(segments))

    def load(self) -> tuple[list[TrafficSegment], str] | None:
        with self._lock:
            if not self._path.exists():
                return None
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                log_warning("traffic_snapshot_unreadable", path=str(self._path), error=str(exc))
                return None

        if not isinstance(raw, dict) or not isinstance(raw.get("updated_at"), str):
            return None
        try:
            segments = _SEGMENTS.validate_python(raw.get("segments"))
        except ValidationError:
            log_warning("traffic_snapshot_invalid", path=str(self._path))
            return None
        return segments, raw["updated_at"]

    def clear(self) -> bool:
        with self._lock:
            if not self._path.exists():
                return False
            self._path.unlink()
            return True
