"""Durable key/value state for one window (disk-backed, fail-soft).

Design
- One JSON document per workspace: {"version": 1, "updatedAt": <ms>, "items": {...}}.
- Atomic writes: write temp file then replace.
- Corrupt or missing files load as empty state.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import time
from contextlib import suppress
from pathlib import Path
from typing import Any

_LOGGER = logging.getLogger("panel_feedback.persistence")


class StateStore:
    """Small memento: `get(key, default)` / `update(key, value)`.

    Values must be JSON-serializable. Reads are served from memory after the
    first load; every `update` rewrites the whole file.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._items: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._items is not None:
            return self._items
        items: dict[str, Any] = {}
        try:
            if self.path.exists() and self.path.is_file():
                obj = json.loads(self.path.read_text(encoding="utf-8", errors="replace"))
                if isinstance(obj, dict) and isinstance(obj.get("items"), dict):
                    items = dict(obj["items"])
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("ignoring unreadable state file %s: %s", self.path, exc)
            items = {}
        self._items = items
        return items

    def get(self, key: str, default: Any = None) -> Any:
        items = self._load()
        if key not in items:
            return default
        return copy.deepcopy(items[key])

    def update(self, key: str, value: Any) -> bool:
        items = self._load()
        if value is None:
            items.pop(key, None)
        else:
            items[key] = copy.deepcopy(value)
        return self._save(items)

    def _save(self, items: dict[str, Any]) -> bool:
        payload = {"version": 1, "updatedAt": int(time.time() * 1000), "items": items}
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), encoding="utf-8")
            with suppress(Exception):
                os.chmod(tmp, 0o600)
            tmp.replace(self.path)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.error("failed to persist state to %s: %s", self.path, exc)
            with suppress(Exception):
                tmp.unlink(missing_ok=True)
            return False
        return True
