from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional


class JsonStore:
    def __init__(self, path: Path, default: Any):
        self.path = path
        self.default = default
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Any:
        if not self.path.exists():
            self.save(self.default)
            return self.default
        with self.path.open("r", encoding="utf-8") as fh:
            return json.load(fh)

    def save(self, data: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False)
        tmp_path.replace(self.path)


class KeyValueStore(JsonStore):
    """
    Flat string-keyed store persisted as one JSON object.

    Callers namespace their keys (user, role, category, item id) so several
    accounts can share a single file. Every ``set`` is written through.
    """

    def __init__(self, path: Path):
        super().__init__(path, default={})
        self._cache: Optional[dict[str, Any]] = None

    def _data(self) -> dict[str, Any]:
        if self._cache is None:
            loaded = self.load()
            self._cache = dict(loaded) if isinstance(loaded, dict) else {}
        return self._cache

    def get(self, key: str, default: Any = None) -> Any:
        return self._data().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = dict(self._data())
        data[key] = value
        self.save(data)
        self._cache = data
