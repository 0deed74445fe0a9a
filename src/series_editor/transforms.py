from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np

from series_editor.exceptions import DegenerateRangeError
from series_editor.grid import (
    GRID_SIZE,
    HOURS_PER_DAY,
    MINUTES_PER_HOUR,
    VALUE_PRECISION,
    grid_times,
)
from series_editor.series import TimePoint, TimeRange, from_arrays, sort_points, to_arrays

# Shortest span (hours) that can be rescaled; about 3.6 seconds
MIN_DURATION = 1e-3

# Absorbs float drift when converting accumulated hours to minute indices
_MINUTE_EPS = 1e-9


def _require_span(time_range: TimeRange, label: str) -> None:
    if time_range.duration < MIN_DURATION:
        raise DegenerateRangeError(
            f"degenerate {label} range [{time_range.start}, {time_range.end}]: "
            f"duration must be at least {MIN_DURATION} h"
        )


def clip_negative(
    points: Iterable[TimePoint], time_range: TimeRange | None = None
) -> list[TimePoint]:
    """Floor values at 0, only inside *time_range* when one is given."""
    return [
        TimePoint(p.time, 0.0)
        if p.value < 0 and (time_range is None or time_range.contains(p.time))
        else p
        for p in points
    ]


def shift_range(
    points: Iterable[TimePoint],
    time_range: TimeRange,
    dx: float = 0.0,
    dy: float = 0.0,
    ceiling: float | None = 15000.0,
    non_negative: bool = False,
) -> list[TimePoint]:
    """Translate the points inside *time_range* by ``(dx, dy)``.

    Shifted values are floored at 0 when *non_negative* and capped at
    *ceiling*.  The result is re-sorted by time.
    """
    out = []
    for p in points:
        if time_range.contains(p.time):
            value = p.value + dy
            if non_negative:
                value = max(0.0, value)
            if ceiling is not None:
                value = min(ceiling, value)
            out.append(TimePoint(p.time + dx, value))
        else:
            out.append(p)
    return sort_points(out)


def _curve_arrays(curve: Sequence[dict | tuple]) -> tuple[np.ndarray, np.ndarray]:
    if len(curve) == 0:
        raise ValueError("curve needs at least one control point")
    pairs = [(c["x"], c["y"]) if isinstance(c, dict) else tuple(c) for c in curve]
    xs = np.array([float(x) for x, _ in pairs])
    ys = np.array([float(y) for _, y in pairs])
    order = np.argsort(xs, kind="stable")
    return xs[order], ys[order]


def evaluate_curve(curve: Sequence[dict | tuple], positions: np.ndarray) -> np.ndarray:
    """Piecewise-linear multiplier curve evaluated at *positions* in [0, 1].

    Positions are clamped to [0, 1]; positions outside the control-point
    span hold the nearest end value.  A single control point is a constant.
    """
    xs, ys = _curve_arrays(curve)
    positions = np.clip(np.asarray(positions, dtype=float), 0.0, 1.0)
    if len(xs) == 1:
        return np.full(positions.shape, ys[0])
    if xs[-1] - xs[0] <= 0:
        raise DegenerateRangeError("curve control points share a single x position")
    return np.interp(positions, xs, ys)


def apply_curve(
    points: Iterable[TimePoint],
    time_range: TimeRange,
    curve: Sequence[dict | tuple],
) -> list[TimePoint]:
    """Scale each in-range value by the curve at its relative position."""
    _require_span(time_range, "curve")
    pts = list(points)
    times, values = to_arrays(pts)
    inside = (times >= time_range.start) & (times <= time_range.end)
    if inside.any():
        rel = (times[inside] - time_range.start) / time_range.duration
        values = values.copy()
        values[inside] = values[inside] * evaluate_curve(curve, rel)
    return from_arrays(times, values)


def remap_points(
    points: Iterable[TimePoint], source: TimeRange, target: TimeRange
) -> list[TimePoint]:
    """Linearly map point times from *source* onto *target*."""
    _require_span(source, "source")
    _require_span(target, "target")
    scale = target.duration / source.duration
    mapped = [
        TimePoint(target.start + (p.time - source.start) * scale, p.value) for p in points
    ]
    return sort_points(mapped)


def splice_range(
    points: Iterable[TimePoint], target: TimeRange, incoming: Iterable[TimePoint]
) -> list[TimePoint]:
    """Drop points inside *target* and merge *incoming* in their place."""
    kept = [p for p in points if not target.contains(p.time)]
    return sort_points(kept + list(incoming))


def clone_range(
    points: Iterable[TimePoint], source: TimeRange, target: TimeRange
) -> list[TimePoint]:
    """Copy the *source* segment onto *target*, rescaling its duration."""
    pts = list(points)
    segment = sort_points(p for p in pts if source.contains(p.time))
    return splice_range(pts, target, remap_points(segment, source, target))


def replace_range(
    points: Iterable[TimePoint],
    pattern_points: Iterable[TimePoint],
    pattern_span: TimeRange,
    target: TimeRange,
) -> list[TimePoint]:
    """Replace the *target* segment with pattern data mapped from *pattern_span*."""
    return splice_range(points, target, remap_points(pattern_points, pattern_span, target))


def _segment_values(seg_t: np.ndarray, seg_v: np.ndarray, at: np.ndarray) -> np.ndarray:
    """Interpolate inside one segment; hold end values outside it."""
    idx = np.searchsorted(seg_t, at, side="right")
    out = np.empty(len(at))
    first = idx == 0
    last = idx >= len(seg_t)
    inner = ~(first | last)
    out[first] = seg_v[0]
    out[last] = seg_v[-1]
    i1 = idx[inner]
    i0 = i1 - 1
    frac = (at[inner] - seg_t[i0]) / (seg_t[i1] - seg_t[i0])
    out[inner] = seg_v[i0] + frac * (seg_v[i1] - seg_v[i0])
    return out


def _fill_gaps(values: np.ndarray, fallback: float) -> np.ndarray:
    """Fill NaNs from the nearest known neighbours, left to right.

    Filled values count as known for later gaps, so a run of NaNs after
    a known value takes that value forward.
    """
    out = values.copy()
    n = len(out)

    # Nearest known value at or after each index, from the unfilled input
    next_known: list[float | None] = [None] * (n + 1)
    for i in range(n - 1, -1, -1):
        next_known[i] = next_known[i + 1] if np.isnan(values[i]) else float(values[i])

    for i in range(n):
        if not np.isnan(out[i]):
            continue
        prev = float(out[i - 1]) if i > 0 else None
        nxt = next_known[i + 1]
        if prev is not None and nxt is not None:
            out[i] = (prev + nxt) / 2.0
        elif prev is not None:
            out[i] = prev
        elif nxt is not None:
            out[i] = nxt
        else:
            out[i] = fallback
    return out


def expand_selections(
    points: Sequence[TimePoint],
    selections: Sequence[TimeRange],
    expected_count: int = GRID_SIZE,
    precision: int = VALUE_PRECISION,
) -> list[TimePoint]:
    """Stretch the concatenated *selections* over the whole day.

    Each selection keeps its share of the total selected duration,
    scaled by ``24 / total``.  Grid minutes not reached by any segment are
    filled from their neighbours, or from the first original point.
    """
    total = sum(s.duration for s in selections)
    if total < MIN_DURATION:
        raise DegenerateRangeError("selections span no time; nothing to expand")
    scale = HOURS_PER_DAY / total

    times, values = to_arrays(points)
    valid = ~(np.isnan(times) | np.isnan(values))
    times, values = times[valid], values[valid]
    order = np.argsort(times, kind="stable")
    times, values = times[order], values[order]

    out = np.full(expected_count, np.nan)
    current = 0.0
    for sel in selections:
        seg_duration = sel.duration * scale
        seg_end = current + seg_duration
        mask = (times >= sel.start) & (times <= sel.end)
        if mask.any() and seg_duration > 0:
            lo = int(np.floor(current * MINUTES_PER_HOUR + _MINUTE_EPS))
            hi = min(int(np.floor(seg_end * MINUTES_PER_HOUR + _MINUTE_EPS)), expected_count)
            if hi > lo:
                minutes = np.arange(lo, hi)
                progress = (minutes / MINUTES_PER_HOUR - current) / seg_duration
                source_t = sel.start + progress * sel.duration
                seg_vals = _segment_values(times[mask], values[mask], source_t)
                out[lo:hi] = np.round(seg_vals, precision)
        current = seg_end

    fallback = float(values[0]) if len(values) else 0.0
    filled = np.round(_fill_gaps(out, fallback), precision)
    return from_arrays(grid_times(expected_count), filled)
