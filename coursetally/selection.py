from __future__ import annotations

import threading

from coursetally.state_store import StateStore


SELECTION_KEY = "selected_master_entity_ids"
SELECTION_DIRTY_KEY = "selection_dirty"
PANEL_WIDTH_KEY = "panel_left_width"

DEFAULT_PANEL_WIDTH = 400
MIN_PANEL_WIDTH = 250


class SelectionStore:
    """Ordered set of master entity ids the user is tracking; survives restarts."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store
        self.lock = threading.RLock()

    def list_selected(self) -> list[str]:
        raw = self.state_store.get_json_meta(SELECTION_KEY, [])
        if not isinstance(raw, list):
            return []
        return [str(item) for item in raw]

    def contains(self, entity_id: str) -> bool:
        return entity_id in self.list_selected()

    def _save(self, ids: list[str], dirty: bool) -> None:
        self.state_store.set_json_meta(SELECTION_KEY, ids)
        self.state_store.set_meta(SELECTION_DIRTY_KEY, "1" if dirty else "0")

    def toggle(self, entity_id: str) -> bool:
        with self.lock:
            selected = self.list_selected()
            if entity_id in selected:
                selected.remove(entity_id)
                self._save(selected, dirty=True)
                return False
            selected.append(entity_id)
            self._save(selected, dirty=True)
            return True

    def remove(self, entity_id: str) -> bool:
        with self.lock:
            selected = self.list_selected()
            if entity_id not in selected:
                return False
            selected.remove(entity_id)
            self._save(selected, dirty=True)
            return True

    def replace(self, entity_ids: list[str]) -> None:
        """Adopt a server-side selection; the result is considered in sync."""
        with self.lock:
            unique: list[str] = []
            for entity_id in entity_ids:
                text = str(entity_id).strip()
                if text and text not in unique:
                    unique.append(text)
            self._save(unique, dirty=False)

    def is_dirty(self) -> bool:
        return self.state_store.get_meta(SELECTION_DIRTY_KEY) == "1"

    def mark_synced(self) -> None:
        self.state_store.set_meta(SELECTION_DIRTY_KEY, "0")


class PanelLayout:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def get_width(self) -> int:
        raw = self.state_store.get_meta(PANEL_WIDTH_KEY)
        try:
            return max(MIN_PANEL_WIDTH, int(raw)) if raw is not None else DEFAULT_PANEL_WIDTH
        except ValueError:
            return DEFAULT_PANEL_WIDTH

    def set_width(self, width: int) -> int:
        value = max(MIN_PANEL_WIDTH, int(width))
        self.state_store.set_meta(PANEL_WIDTH_KEY, str(value))
        return value
