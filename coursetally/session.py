from __future__ import annotations

import copy
import json
import threading
from typing import Any


class SessionStore:
    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self.lock = threading.RLock()

    def get_json(self, key: str, default: Any = None) -> Any:
        with self.lock:
            raw = self._values.get(key)
        if raw is None:
            return copy.deepcopy(default)
        return json.loads(raw)

    def set_json(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        with self.lock:
            self._values[key] = encoded

    def remove(self, key: str) -> None:
        with self.lock:
            self._values.pop(key, None)

    def keys(self) -> list[str]:
        with self.lock:
            return list(self._values)

    def clear(self) -> None:
        with self.lock:
            self._values.clear()
