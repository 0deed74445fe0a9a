from __future__ import annotations

import copy
import datetime
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

from series_editor.exceptions import HistoryError, require
from series_editor.series import TimePoint, TimeRange, copy_points

logger = logging.getLogger(__name__)

Snapshot = dict[str, list[TimePoint]]


def _copy_snapshot(snapshot: Snapshot | None) -> Snapshot | None:
    if snapshot is None:
        return None
    return {sid: copy_points(points) for sid, points in snapshot.items()}


def _snapshot_to_dict(snapshot: Snapshot | None) -> dict | None:
    if snapshot is None:
        return None
    return {sid: [p.to_dict() for p in points] for sid, points in snapshot.items()}


def _snapshot_from_dict(d: dict | None) -> Snapshot | None:
    if d is None:
        return None
    return {sid: [TimePoint.from_dict(p) for p in points] for sid, points in d.items()}


@dataclass
class Operation:
    """One undoable edit with full before/after copies of affected data."""

    type: str
    series_ids: list[str]
    params: dict[str, Any] = field(default_factory=dict)
    before_data: Snapshot | None = None
    after_data: Snapshot | None = None
    time_range: TimeRange | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type,
            "seriesIds": list(self.series_ids),
            "timeRange": self.time_range.to_dict() if self.time_range else None,
            "params": copy.deepcopy(self.params),
            "beforeData": _snapshot_to_dict(self.before_data),
            "afterData": _snapshot_to_dict(self.after_data),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Operation:
        try:
            return cls(
                id=str(d["id"]),
                timestamp=str(d["timestamp"]),
                type=str(d["type"]),
                series_ids=list(d["seriesIds"]),
                time_range=TimeRange.from_dict(d["timeRange"]) if d.get("timeRange") else None,
                params=copy.deepcopy(dict(d.get("params") or {})),
                before_data=_snapshot_from_dict(d.get("beforeData")),
                after_data=_snapshot_from_dict(d.get("afterData")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise HistoryError(f"malformed operation record: {exc}") from exc


class OperationLog:
    """Bounded linear undo/redo log.

    ``pointer`` indexes the last applied operation (-1 when none).
    Recording while the pointer is behind the tail discards the redo
    branch; exceeding *capacity* evicts the oldest entry.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._ops: list[Operation] = []
        self._pointer = -1

    def __len__(self) -> int:
        return len(self._ops)

    @property
    def pointer(self) -> int:
        return self._pointer

    @property
    def operations(self) -> tuple[Operation, ...]:
        return tuple(self._ops)

    @property
    def can_undo(self) -> bool:
        return self._pointer >= 0

    @property
    def can_redo(self) -> bool:
        return self._pointer < len(self._ops) - 1

    @property
    def undo_depth(self) -> int:
        return self._pointer + 1

    def record(
        self,
        type: str,
        series_ids: str | Iterable[str],
        params: dict | None = None,
        before: Snapshot | None = None,
        after: Snapshot | None = None,
        time_range: TimeRange | None = None,
    ) -> Operation:
        ids = [series_ids] if isinstance(series_ids, str) else list(series_ids)
        if self._pointer < len(self._ops) - 1:
            del self._ops[self._pointer + 1 :]

        op = Operation(
            type=type,
            series_ids=ids,
            params=copy.deepcopy(params or {}),
            before_data=_copy_snapshot(before),
            after_data=_copy_snapshot(after),
            time_range=time_range,
        )
        self._ops.append(op)
        if len(self._ops) > self.capacity:
            evicted = self._ops.pop(0)
            logger.debug("History full, evicted %s (%s)", evicted.id, evicted.type)
        self._pointer = len(self._ops) - 1
        return op

    def undo(self) -> Operation | None:
        """Step back; returns the operation whose ``before_data`` to restore."""
        if self._pointer < 0:
            return None
        op = self._ops[self._pointer]
        self._pointer -= 1
        return op

    def redo(self) -> Operation | None:
        """Step forward; returns the operation whose ``after_data`` to restore."""
        if self._pointer >= len(self._ops) - 1:
            return None
        self._pointer += 1
        return self._ops[self._pointer]

    def clear(self) -> None:
        self._ops.clear()
        self._pointer = -1

    # -- export / import --

    def export(self) -> dict:
        for op in self._ops:
            if op.before_data is None or op.after_data is None:
                logger.debug("Operation %s (%s) exported with missing data", op.id, op.type)
        return {
            "operations": [op.to_dict() for op in self._ops],
            "currentIndex": self._pointer,
        }

    def load(self, blob: dict) -> None:
        """Replace the log with an exported blob."""
        require(isinstance(blob, dict), "history blob must be a mapping", HistoryError)
        try:
            records = blob["operations"]
            index = int(blob["currentIndex"])
        except (KeyError, TypeError, ValueError) as exc:
            raise HistoryError(f"malformed history blob: {exc}") from exc

        ops = [Operation.from_dict(r) for r in records]
        if not -1 <= index < len(ops):
            raise HistoryError(f"currentIndex {index} out of range for {len(ops)} operations")
        if len(ops) > self.capacity:
            drop = len(ops) - self.capacity
            ops = ops[drop:]
            index = max(-1, index - drop)
        self._ops = ops
        self._pointer = index
        logger.info("Loaded %d operations, pointer at %d", len(ops), index)

    def to_json(self) -> str:
        return json.dumps(self.export())

    @classmethod
    def from_json(cls, s: str, capacity: int = 100) -> OperationLog:
        log = cls(capacity)
        try:
            blob = json.loads(s)
        except json.JSONDecodeError as exc:
            raise HistoryError(f"history is not valid JSON: {exc}") from exc
        log.load(blob)
        return log


# ---------------------------------------------------------------------------
# Human-readable descriptions
# ---------------------------------------------------------------------------


def _range_text(r: dict | None) -> str:
    if not r:
        return "?"
    return f"{float(r['start']):.2f} to {float(r['end']):.2f}"


def describe_operation(op: Operation) -> str:
    ids = ", ".join(op.series_ids)
    p = op.params
    if op.type == "move-x":
        return f"Adjusted horizontal position of series {ids}"
    if op.type == "move-y":
        return f"Adjusted vertical position of series {ids}"
    if op.type == "move-xy":
        return f"Adjusted position of series {ids}"
    if op.type == "curve":
        return f"Applied curve transformation to series {ids}"
    if op.type == "clone":
        return (
            f"Cloned segment {_range_text(p.get('sourceRange'))} "
            f"onto {_range_text(p.get('targetRange'))}"
        )
    if op.type == "expand":
        return f"Expanded {len(p.get('selections', []))} segments to fill 24 hours"
    if op.type == "replace":
        return f"Replaced selection with pattern from series {p.get('patternId')}"
    if op.type == "delete":
        return f"Deleted series {ids}"
    if op.type == "save":
        return f"Saved state of {len(op.series_ids)} series"
    return f"{op.type} operation on series {ids}"


def format_operation_history(operations: Iterable[Operation]) -> list[dict]:
    out = []
    for op in operations:
        try:
            stamp = datetime.datetime.fromisoformat(op.timestamp).strftime("%H:%M:%S")
        except ValueError:
            stamp = op.timestamp
        time_range = (
            f"Time range: {op.time_range.start:.2f} - {op.time_range.end:.2f}"
            if op.time_range
            else ""
        )
        out.append(
            {
                "id": op.id,
                "timestamp": stamp,
                "type": op.type,
                "description": describe_operation(op),
                "timeRange": time_range,
                "seriesIds": list(op.series_ids),
            }
        )
    return out
