# saved_filters.py
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Union

from errors import DataError, ValidationError
from models import FilterState, SavedFilter, now_str
from queries import saved_filters_key

logger = logging.getLogger(__name__)

FilterData = Union[FilterState, Dict[str, Any]]


class SavedFilterStore:
    """
    Named filter presets for one user, plus the filter currently applied to
    the complaint list. Listeners get the new FilterState whenever the
    active filter is replaced.
    """

    def __init__(self, backend, cache, user_id: str):
        self.backend = backend
        self.cache = cache
        self.user_id = user_id
        self.active = FilterState()
        self._listeners: List[Callable[[FilterState], None]] = []
        self._lock = threading.Lock()

    @property
    def key(self):
        return saved_filters_key(self.user_id)

    def add_listener(self, callback: Callable[[FilterState], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def remove():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return remove

    def list(self) -> List[SavedFilter]:
        """Newest first."""

        def load():
            rows = self.backend.select("saved_filters", {"user_id": self.user_id})
            filters = [SavedFilter.from_row(r) for r in rows]
            return sorted(filters, key=lambda f: (f.updated_at or f.created_at, f.id), reverse=True)

        return self.cache.fetch(self.key, load)

    def get(self, filter_id: str) -> Optional[SavedFilter]:
        return next((f for f in self.list() if f.id == filter_id), None)

    def save(self, name: str, filter_data: FilterData, is_default: bool = False) -> SavedFilter:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Filter name is required", "name")
        state = filter_data if isinstance(filter_data, FilterState) else FilterState.from_dict(filter_data)

        def op():
            ts = now_str()
            writes = self._clear_defaults() if is_default else []
            writes.append(("insert", "saved_filters", {
                "user_id": self.user_id,
                "name": name,
                "filter_data": state.to_dict(),
                "is_default": bool(is_default),
                "created_at": ts,
                "updated_at": ts,
            }))
            return self.backend.commit(writes)[-1]

        row = self.cache.mutate(op, invalidates=[self.key], description="save the filter")
        logger.info("Saved filter %r for %s", name, self.user_id)
        return SavedFilter.from_row(row)

    def delete(self, filter_id: str) -> None:
        """Deleting a filter that does not exist is not an error."""
        self.cache.mutate(
            lambda: self.backend.delete("saved_filters", filter_id),
            invalidates=[self.key],
            description="delete the filter",
        )

    def set_default(self, filter_id: str) -> None:
        if self.get(filter_id) is None:
            raise DataError("Saved filter not found.")

        def op():
            writes = self._clear_defaults(keep=filter_id)
            writes.append(("update", "saved_filters", filter_id, {"is_default": True, "updated_at": now_str()}))
            self.backend.commit(writes)

        self.cache.mutate(op, invalidates=[self.key], description="update the default filter")

    def _clear_defaults(self, keep: Optional[str] = None) -> List[tuple]:
        """Writes that unmark the user's other defaults, for the caller's batch."""
        rows = self.backend.select("saved_filters", {"user_id": self.user_id, "is_default": True})
        return [("update", "saved_filters", row["id"], {"is_default": False})
                for row in rows if row["id"] != keep]

    def load(self, filter_id: str) -> None:
        saved = self.get(filter_id)
        if saved is None:
            raise DataError("Saved filter not found.")
        self._apply(saved.filter_data)

    def apply_default(self) -> Optional[FilterState]:
        """
        Apply the user's default filter when exactly one is marked default.
        With none, or an ambiguous several, nothing is applied.
        """
        defaults = [f for f in self.list() if f.is_default]
        if len(defaults) != 1:
            if defaults:
                logger.warning(
                    "User %s has %d default filters, applying none", self.user_id, len(defaults)
                )
            return None
        self._apply(defaults[0].filter_data)
        return self.active

    def set_active(self, filter_data: FilterData) -> None:
        state = filter_data if isinstance(filter_data, FilterState) else FilterState.from_dict(filter_data)
        self._apply(state)

    def reset(self) -> None:
        self._apply(FilterState())

    def _apply(self, state: FilterState):
        # copy, so later edits to the active filter never touch the saved one
        self.active = FilterState(**state.to_dict())
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(self.active)
            except Exception:
                logger.exception("Filter listener failed")
