from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from threading import Lock
from typing import Any, Protocol

from .errors import CacheWriteFailed


class KeyValueStore(Protocol):
    """Blocking key-value persistence; callers offload it from the event loop."""

    def read(self, key: str) -> str | None: ...

    def write(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> bool: ...

    def keys(self, prefix: str = "") -> list[str]: ...

    def prune_corrupt(self) -> int: ...


class MemoryStore:
    def __init__(self, *, quota_bytes: int | None = None) -> None:
        self._lock = Lock()
        self._items: dict[str, str] = {}
        self._quota_bytes = quota_bytes

    def read(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def write(self, key: str, value: str) -> None:
        with self._lock:
            if self._quota_bytes is not None:
                used = sum(len(v) for k, v in self._items.items() if k != key)
                if used + len(value) > self._quota_bytes:
                    raise CacheWriteFailed(key, "quota exceeded")
            self._items[key] = value

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._items if k.startswith(prefix))

    def prune_corrupt(self) -> int:
        # Values are opaque strings here; undecodable ones surface through keys().
        return 0


class JsonFileStore:
    """One JSON document per key inside a directory; survives process restarts."""

    def __init__(self, root: Path | str, *, quota_bytes: int | None = None) -> None:
        self._root = Path(root)
        self._quota_bytes = quota_bytes
        self._lock = Lock()

    @property
    def root(self) -> Path:
        return self._root

    def _ensure_root(self) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        return self._root

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return self._root / f"{digest}.json"

    def _load(self, path: Path) -> dict[str, Any] | None:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(raw, dict):
            return None
        if not isinstance(raw.get("key"), str) or not isinstance(raw.get("value"), str):
            return None
        return raw

    def _used_bytes(self, *, excluding: Path) -> int:
        total = 0
        for path in self._root.glob("*.json"):
            if path == excluding:
                continue
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return total

    def read(self, key: str) -> str | None:
        path = self._path_for(key)
        with self._lock:
            if not path.exists():
                return None
            raw = self._load(path)
        if raw is None or raw["key"] != key:
            return None
        return raw["value"]

    def write(self, key: str, value: str) -> None:
        document = json.dumps({"key": key, "value": value})
        try:
            with self._lock:
                root = self._ensure_root()
                path = self._path_for(key)
                if self._quota_bytes is not None:
                    if self._used_bytes(excluding=path) + len(document.encode("utf-8")) > self._quota_bytes:
                        raise CacheWriteFailed(key, "quota exceeded")
                tmp = root / f".{path.name}.tmp"
                tmp.write_text(document, encoding="utf-8")
                os.replace(tmp, path)
        except OSError as exc:
            raise CacheWriteFailed(key, f"{type(exc).__name__}: {exc}") from exc

    def remove(self, key: str) -> bool:
        path = self._path_for(key)
        with self._lock:
            if not path.exists():
                return False
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            if not self._root.exists():
                return []
            out: list[str] = []
            for path in self._root.glob("*.json"):
                raw = self._load(path)
                if raw is None:
                    continue
                if raw["key"].startswith(prefix):
                    out.append(raw["key"])
        return sorted(out)

    def prune_corrupt(self) -> int:
        """Delete files that no longer parse; they are invisible to ``keys()`` but still use quota."""
        removed = 0
        with self._lock:
            if not self._root.exists():
                return 0
            for path in self._root.glob("*.json"):
                if self._load(path) is not None:
                    continue
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue
                removed += 1
        return removed
