from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

import numpy as np

SERIES_TYPES = ("original", "lf", "mf", "hf", "decomposition-component", "preview")

# Display order among siblings; anything else sorts after hf
SIBLING_ORDER = {"lf": 1, "mf": 2, "hf": 3}


@dataclass(frozen=True)
class TimePoint:
    """A single sample: *time* in hours-of-day, *value* in data units."""

    time: float
    value: float

    def to_dict(self) -> dict:
        return {"time": self.time, "value": self.value}

    @classmethod
    def from_dict(cls, d: dict) -> TimePoint:
        return cls(time=float(d["time"]), value=float(d["value"]))


@dataclass(frozen=True)
class TimeRange:
    """Inclusive ``[start, end]`` span in hours."""

    start: float
    end: float

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(
                f"end must not precede start, got start={self.start}, end={self.end}"
            )

    @property
    def duration(self) -> float:
        return self.end - self.start

    def contains(self, time: float) -> bool:
        return self.start <= time <= self.end

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}

    @classmethod
    def from_dict(cls, d: dict) -> TimeRange:
        return cls(start=float(d["start"]), end=float(d["end"]))

    @classmethod
    def coerce(cls, value: TimeRange | dict | tuple) -> TimeRange:
        if isinstance(value, TimeRange):
            return value
        if isinstance(value, dict):
            return cls.from_dict(value)
        start, end = value
        return cls(float(start), float(end))


def copy_points(points: Iterable[TimePoint]) -> list[TimePoint]:
    """Structural copy of a point sequence, independent of the source list."""
    return [TimePoint(p.time, p.value) for p in points]


def points_from_records(records: Iterable[dict | TimePoint]) -> list[TimePoint]:
    return [r if isinstance(r, TimePoint) else TimePoint.from_dict(r) for r in records]


def points_to_records(points: Iterable[TimePoint]) -> list[dict]:
    return [p.to_dict() for p in points]


def to_arrays(points: Iterable[TimePoint]) -> tuple[np.ndarray, np.ndarray]:
    """Split points into ``(times, values)`` float arrays, in input order."""
    pts = list(points)
    times = np.fromiter((p.time for p in pts), dtype=float, count=len(pts))
    values = np.fromiter((p.value for p in pts), dtype=float, count=len(pts))
    return times, values


def from_arrays(times: np.ndarray, values: np.ndarray) -> list[TimePoint]:
    return [TimePoint(float(t), float(v)) for t, v in zip(times, values)]


def sort_points(points: Iterable[TimePoint]) -> list[TimePoint]:
    """Stable sort by time."""
    return sorted(points, key=lambda p: p.time)


@dataclass
class Series:
    """One editable per-minute daily series.

    Parameters
    ----------
    id : str
        Stable identity.
    data : list of TimePoint
        Samples ordered by time.  The repository keeps this on the
        canonical 1440-point grid.
    type : str
        One of ``SERIES_TYPES``.  Only affects sibling display order.
    parent_id : str, optional
        Id of the aggregate series this one contributes to.  A relation
        only; the parent is looked up through the repository.
    visible : bool
        Invisible series are excluded from interactive edits.
    date, variable : str, optional
        Identity qualifiers used when de-duplicating on insert.
    metadata : dict
        Free-form fields carried through merges untouched.
    """

    id: str
    data: list[TimePoint] = field(default_factory=list)
    type: str = "original"
    parent_id: str | None = None
    visible: bool = True
    date: str | None = None
    variable: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("series id must be a non-empty string")
        if self.type not in SERIES_TYPES:
            raise ValueError(f"type must be one of {SERIES_TYPES}, got {self.type!r}")
        self.data = points_from_records(self.data)

    @property
    def sibling_rank(self) -> int:
        return SIBLING_ORDER.get(self.type, 99)

    def times(self) -> np.ndarray:
        return to_arrays(self.data)[0]

    def values(self) -> np.ndarray:
        return to_arrays(self.data)[1]

    def copy(self) -> Series:
        return Series(
            id=self.id,
            data=copy_points(self.data),
            type=self.type,
            parent_id=self.parent_id,
            visible=self.visible,
            date=self.date,
            variable=self.variable,
            metadata=dict(self.metadata),
        )

    # -- serialization --

    def to_dict(self, include_data: bool = True) -> dict:
        d = {
            "id": self.id,
            "type": self.type,
            "parentId": self.parent_id,
            "visible": self.visible,
            "date": self.date,
            "variable": self.variable,
            "metadata": dict(self.metadata),
        }
        if include_data:
            d["data"] = points_to_records(self.data)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Series:
        """Build a Series, accepting both ``parentId`` and ``parent_id``."""
        return cls(
            id=d["id"],
            data=d.get("data", []),
            type=d.get("type") or "original",
            parent_id=d.get("parentId", d.get("parent_id")),
            visible=d.get("visible", True),
            date=d.get("date"),
            variable=d.get("variable"),
            metadata=dict(d.get("metadata", {})),
        )
