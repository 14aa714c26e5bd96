"""Key/value backends for the pattern store.

The pattern store needs only ``get`` / ``set`` / ``delete`` / list-by-prefix
from its backing service.  Backends signal transport failures by raising
``ConnectionError`` (or any other ``OSError``); the store reacts by
reconnecting.  Any other exception is a bug and propagates.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable


@runtime_checkable
class PatternBackend(Protocol):
    """Minimal key/value contract required by :class:`PatternStore`."""

    def ping(self) -> bool:
        """Return ``True`` when the backing service answers."""
        ...

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def keys(self, prefix: str) -> list[str]:
        ...

    def close(self) -> None:
        ...


class InMemoryPatternBackend:
    """Thread-safe dict-backed backend.

    Can be dumped to and loaded from a JSON document so that the CLI can keep
    patterns between invocations without a server.
    """

    def __init__(self, data: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(data or {})
        self._lock = threading.Lock()

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str) -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def close(self) -> None:
        pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    # -- persistence ---------------------------------------------------------

    def to_json(self, indent: int | None = 2) -> str:
        with self._lock:
            return json.dumps(self._data, indent=indent, sort_keys=True)

    @classmethod
    def from_json(cls, json_str: str) -> InMemoryPatternBackend:
        raw = json.loads(json_str)
        if not isinstance(raw, dict):
            raise ValueError("Top-level JSON must be an object")
        return cls({str(k): str(v) for k, v in raw.items()})

    def save(self, path: str | Path) -> None:
        Path(path).write_text(self.to_json(), encoding="utf-8")

    @classmethod
    def load(cls, path: str | Path) -> InMemoryPatternBackend:
        p = Path(path)
        if not p.exists():
            return cls()
        return cls.from_json(p.read_text(encoding="utf-8"))
