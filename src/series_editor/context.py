from __future__ import annotations

import logging
from typing import Any, Callable

from series_editor.exceptions import TransportError
from series_editor.grid import format_clock, parse_time_of_day

logger = logging.getLogger(__name__)

DATA_UPDATED = "data-updated"
LOADING_CHANGED = "loading-changed"
NOTIFICATION = "notification"
SERIES_CHANGED = "series-changed"

Listener = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe by event name."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event: str, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.setdefault(event, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def emit(self, event: str, payload: Any = None) -> None:
        for listener in list(self._listeners.get(event, [])):
            listener(payload)


def copy_records(records: list[dict]) -> list[dict]:
    """Copy corpus records and their point dicts."""
    return [{**r, "data": [dict(p) for p in r.get("data", [])]} for r in records]


def _time_key(date: str, time: Any) -> str:
    """Canonical ``"YYYY-MM-DD HH:MM:SS"`` key for a point on *date*.

    Full timestamps keep their own date; bare clock strings and hour
    numbers are placed on *date*.  Clock parts are normalized so
    ``"08:30"`` and ``"08:30:00"`` match.
    """
    text = str(time).strip() if not isinstance(time, (int, float)) else None
    if text is not None and " " in text:
        point_date, _, clock = text.partition(" ")
        return f"{point_date} {format_clock(parse_time_of_day(clock))}"
    return f"{date} {format_clock(parse_time_of_day(time))}"


class DatasetContext:
    """Dataset selection and reference corpus shared with the editor.

    Parameters
    ----------
    current_dataset : str
        Name of the active dataset; decides the non-negativity policy.
    non_negative_datasets : tuple of str
        Datasets whose values may never drop below zero.
    events : EventBus, optional
        Bus used for ``data-updated``, ``loading-changed``, ``notification``
        and ``series-changed`` events.
    """

    def __init__(
        self,
        current_dataset: str = "",
        non_negative_datasets: tuple[str, ...] = ("step", "electricity"),
        events: EventBus | None = None,
    ):
        self.current_dataset = current_dataset
        self.non_negative_datasets = tuple(non_negative_datasets)
        self.events = events or EventBus()
        self.original_data: list[dict] = []
        self.edited_data: list[dict] = []
        self.trans_data: list[dict] = []

    @property
    def prevent_negative(self) -> bool:
        return self.current_dataset in self.non_negative_datasets

    def set_dataset(self, name: str) -> None:
        self.current_dataset = name

    def set_original_data(self, records: list[dict]) -> None:
        """Set the reference corpus and reset the edited copy from it."""
        self.original_data = records
        self.edited_data = copy_records(records)

    def set_trans_data(self, updates: list[dict]) -> None:
        self.trans_data = updates

    def merge_transport(self, updates: list[dict] | None = None) -> bool:
        """Merge partial per-user updates into ``edited_data``.

        Each update is ``{"id", "date", "data": [{"time", "value"}]}``.
        Points whose time key exists on that date are overwritten, others
        are appended and the user's points re-sorted.  Returns True when
        the merge completed.  Failures are reported through a
        ``notification`` event rather than raised.
        """
        updates = self.trans_data if updates is None else updates
        if not updates:
            logger.warning("No transport data to merge")
            self.events.emit(LOADING_CHANGED, False)
            return False

        self.events.emit(LOADING_CHANGED, True)
        try:
            merged = copy_records(self.edited_data)
            user_index = {user["id"]: i for i, user in enumerate(merged)}
            for update in updates:
                self._merge_one(merged, update, user_index)
        except (TransportError, KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.exception("Error updating edited data: %s", exc)
            self.events.emit(NOTIFICATION, {"level": "error", "message": "Error updating data"})
            return False
        else:
            self.edited_data = merged
            self.events.emit(DATA_UPDATED, {"edited_data": copy_records(merged)})
            return True
        finally:
            self.events.emit(LOADING_CHANGED, False)

    def _merge_one(self, records: list[dict], update: dict, user_index: dict[Any, int]) -> None:
        missing = [k for k in ("id", "date", "data") if k not in update]
        if missing:
            raise TransportError(f"transport update missing fields {missing}")

        idx = user_index.get(update["id"])
        if idx is None:
            logger.warning("User %s not found in edited data", update["id"])
            return

        points = records[idx].setdefault("data", [])
        target_date = str(update["date"]).split(" ")[0]

        by_key: dict[str, int] = {}
        for i, point in enumerate(points):
            key = _time_key(target_date, point["time"])
            if key.split(" ")[0] == target_date:
                by_key.setdefault(key, i)

        appended: dict[str, dict] = {}
        for incoming in update["data"]:
            key = _time_key(target_date, incoming["time"])
            existing = by_key.get(key)
            if existing is not None:
                points[existing]["value"] = incoming["value"]
            elif key in appended:
                appended[key]["value"] = incoming["value"]
            else:
                appended[key] = {"time": key, "value": incoming["value"]}

        if appended:
            points.extend(appended.values())
            points.sort(key=lambda p: _time_key(target_date, p["time"]))
