"""Boundary-similarity search for replacement patterns.

Candidate windows are drawn from a reference corpus of per-user,
multi-day readings.  A window scores well when the corpus values at its
start and end are close to the selected series' values at the selection
boundaries, so a replacement joins the surrounding data without a jump.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np
import pandas as pd

from series_editor.config import SearchConfig
from series_editor.grid import HOURS_PER_DAY, interpolate_value, interpolate_values, split_timestamp
from series_editor.series import TimePoint, TimeRange, from_arrays

logger = logging.getLogger(__name__)

UNKNOWN_DATE = "unknown"

_USER_IN_ID = re.compile(r"user_([^_]+)")


@dataclass
class Pattern:
    """A candidate replacement slice of reference data."""

    series_id: str
    start: float
    end: float
    data: list[TimePoint]
    similarity: float
    user_id: Any = None
    date: str | None = None
    source_type: str = "dataset"  # "dataset" | "edited"
    left_value: float = 0.0
    right_value: float = 0.0
    energy: float = 0.0
    source_name: str = ""

    @property
    def span(self) -> TimeRange:
        return TimeRange(self.start, self.end)

    def to_dict(self) -> dict:
        return {
            "seriesId": self.series_id,
            "start": self.start,
            "end": self.end,
            "data": [p.to_dict() for p in self.data],
            "similarity": self.similarity,
            "userId": self.user_id,
            "date": self.date,
            "sourceType": self.source_type,
            "leftValue": self.left_value,
            "rightValue": self.right_value,
            "energy": self.energy,
            "sourceName": self.source_name,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Pattern:
        return cls(
            series_id=d["seriesId"],
            start=float(d["start"]),
            end=float(d["end"]),
            data=[TimePoint.from_dict(p) for p in d.get("data", [])],
            similarity=float(d.get("similarity", 0.0)),
            user_id=d.get("userId"),
            date=d.get("date"),
            source_type=d.get("sourceType", "dataset"),
            left_value=float(d.get("leftValue", 0.0)),
            right_value=float(d.get("rightValue", 0.0)),
            energy=float(d.get("energy", 0.0)),
            source_name=d.get("sourceName", ""),
        )


def pattern_energy(values: Sequence[float]) -> float:
    """Mean absolute first difference; 0 for fewer than two values."""
    v = np.asarray(values, dtype=float)
    if len(v) < 2:
        return 0.0
    return float(np.abs(np.diff(v)).mean())


def boundary_similarity(a: float, b: float, max_diff: float = 200.0) -> float:
    return 1.0 - min(abs(a - b) / max_diff, 1.0)


def user_id_from_series_id(series_id: str | None) -> str | None:
    """Extract ``<id>`` from ids of the form ``...user_<id>...``."""
    if not series_id:
        return None
    m = _USER_IN_ID.search(series_id)
    return m.group(1) if m else None


def bucket_by_date(points: Iterable[dict]) -> dict[str, pd.DataFrame]:
    """Group raw corpus points into per-date frames of ``hour``/``value``.

    Dates keep first-seen order.  Points without a usable value are
    dropped; points without a date part go to ``"unknown"``.
    """
    records = [p.to_dict() if isinstance(p, TimePoint) else p for p in points]
    frame = pd.DataFrame.from_records(records, columns=["time", "value"])
    if frame.empty:
        return {}
    frame["value"] = pd.to_numeric(frame["value"], errors="coerce")
    frame = frame[frame["time"].notna() & frame["value"].notna()]
    if frame.empty:
        return {}

    parsed = [split_timestamp(t) for t in frame["time"]]
    frame = frame.assign(
        date=[d if d is not None else UNKNOWN_DATE for d, _ in parsed],
        hour=[h for _, h in parsed],
    )
    frame = frame[np.isfinite(frame["hour"].to_numpy(dtype=float))]

    return {
        str(date): day.sort_values("hour", kind="stable").reset_index(drop=True)
        for date, day in frame.groupby("date", sort=False)
    }


def _scan_day(
    day: pd.DataFrame,
    selection: TimeRange,
    left_value: float,
    right_value: float,
    skip_near: float | None,
    cfg: SearchConfig,
) -> list[tuple[float, float, float, float, float]]:
    """Accepted windows of one day as ``(start, end, sim, left, right)``."""
    duration = selection.duration
    times = day["hour"].to_numpy(dtype=float)
    day_points = from_arrays(times, day["value"].to_numpy(dtype=float))

    step = max(1, len(times) // cfg.candidate_windows)
    starts = times[::step]
    lefts = interpolate_values(day_points, starts)
    rights = interpolate_values(day_points, starts + duration)

    # Pre-rank on the left boundary alone and keep the best share
    order = np.argsort(np.abs(left_value - lefts), kind="stable")
    keep = math.ceil(len(starts) * cfg.prefilter_fraction)

    accepted = []
    for idx in order[:keep]:
        window_start = float(starts[idx])
        window_end = window_start + duration
        if window_end > HOURS_PER_DAY:
            continue
        if skip_near is not None and abs(window_start - skip_near) < duration * cfg.overlap_fraction:
            continue

        left_sim = boundary_similarity(left_value, float(lefts[idx]), cfg.max_value_diff)
        if left_sim < cfg.min_left_similarity:
            continue

        right_sim = boundary_similarity(right_value, float(rights[idx]), cfg.max_value_diff)
        similarity = (left_sim + right_sim) / 2.0
        if similarity <= cfg.min_similarity:
            continue
        accepted.append(
            (window_start, window_end, similarity, float(lefts[idx]), float(rights[idx]))
        )
    return accepted


def diversify(patterns: list[Pattern], cfg: SearchConfig) -> list[Pattern]:
    """Re-rank similarity-sorted *patterns* to spread results across users.

    The best match always leads.  Further picks skip already-represented
    users until ``min(min_distinct_users, n / 2)`` users are present, then
    the remaining slots fill in similarity order.
    """
    if not patterns:
        return []
    limit = cfg.max_results
    picked = [0]
    users = {patterns[0].user_id}
    wanted_users = min(cfg.min_distinct_users, len(patterns) / 2)

    for i, p in enumerate(patterns):
        if len(picked) >= limit:
            break
        if p.user_id in users and len(users) < wanted_users:
            continue
        if i not in picked:
            picked.append(i)
            users.add(p.user_id)

    if len(picked) < min(limit, len(patterns)):
        for i in range(len(patterns)):
            if len(picked) >= limit:
                break
            if i not in picked:
                picked.append(i)

    return [patterns[i] for i in picked]


def find_similar_patterns(
    source_data: Sequence[TimePoint],
    selection: TimeRange,
    reference: Iterable[dict] | None,
    source_id: str | None = None,
    source_user_id: Any = None,
    config: SearchConfig | None = None,
) -> list[Pattern]:
    """Rank reference windows by boundary similarity to *selection*.

    Parameters
    ----------
    source_data : list of TimePoint
        The series being edited.
    selection : TimeRange
        Active selection; candidate windows share its duration.
    reference : iterable of dict
        Corpus records ``{"id": user_id, "data": [{"time", "value"}, ...]}``
        where times may be ``"YYYY-MM-DD HH:MM:SS"`` strings.
    source_id : str, optional
        Id of the edited series.  When it embeds ``user_<id>``, windows of
        that user starting near the selection are skipped.
    source_user_id : optional
        Explicit owner of the edited series; overrides *source_id*.

    Returns
    -------
    list of Pattern
        At most ``config.max_results`` patterns, deterministic for equal
        inputs.
    """
    cfg = config or SearchConfig()
    if not reference:
        return []

    left_value = interpolate_value(source_data, selection.start)
    right_value = interpolate_value(source_data, selection.end)
    owner = source_user_id if source_user_id is not None else user_id_from_series_id(source_id)

    per_user: dict[Any, list[Pattern]] = {}
    scanned_days = 0
    for record in reference:
        if not record or not record.get("data") or record.get("id") is None:
            continue
        user_id = record["id"]
        skip_near = selection.start if owner is not None and str(user_id) == str(owner) else None

        try:
            days = bucket_by_date(record["data"])
            found: list[Pattern] = []
            for date, day in days.items():
                if len(day) < cfg.min_day_samples:
                    continue
                scanned_days += 1
                for start, end, sim, lv, rv in _scan_day(
                    day, selection, left_value, right_value, skip_near, cfg
                ):
                    window = day[(day["hour"] >= start) & (day["hour"] <= end)]
                    values = window["value"].to_numpy(dtype=float)
                    found.append(
                        Pattern(
                            series_id=f"dataset_user_{user_id}_{date}",
                            start=start,
                            end=end,
                            data=from_arrays(window["hour"].to_numpy(dtype=float), values),
                            similarity=sim,
                            user_id=user_id,
                            date=date,
                            source_type="dataset",
                            left_value=lv,
                            right_value=rv,
                            energy=pattern_energy(values),
                            source_name=f"user {user_id} ({date})",
                        )
                    )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Skipping reference user %s: %s", user_id, exc)
            continue
        per_user.setdefault(user_id, []).extend(found)

    # Cap each user at its best windows; ties keep scan order
    candidates: list[Pattern] = []
    for found in per_user.values():
        ranked = sorted(found, key=lambda p: -p.similarity)
        candidates.extend(ranked[: cfg.max_per_user])

    candidates.sort(key=lambda p: -p.similarity)
    logger.debug(
        "Pattern search scanned %d days, %d candidates", scanned_days, len(candidates)
    )
    return diversify(candidates, cfg)
