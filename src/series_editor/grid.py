"""Canonical per-minute grid and point lookup primitives.

Every committed series lives on a grid of ``GRID_SIZE`` samples at
``time = i / 60`` hours.  The helpers here resample arbitrary point sets
onto that grid and look values up in point sequences that may be
temporarily off-grid while an edit is in flight.
"""

from __future__ import annotations

from typing import Iterable

import numpy as np

from series_editor.exceptions import GridError
from series_editor.series import TimePoint, from_arrays, to_arrays

GRID_SIZE = 1440
MINUTES_PER_HOUR = 60
HOURS_PER_DAY = 24.0
VALUE_PRECISION = 8

# Points closer than this (hours) are treated as coincident
COINCIDENT_EPS = 1e-4


def grid_times(expected_count: int = GRID_SIZE) -> np.ndarray:
    """Grid times ``i / 60`` for ``i in range(expected_count)``."""
    return np.arange(expected_count, dtype=float) / MINUTES_PER_HOUR


def _valid_arrays(points: Iterable[TimePoint]) -> tuple[np.ndarray, np.ndarray]:
    times, values = to_arrays(points)
    ok = ~(np.isnan(times) | np.isnan(values))
    return times[ok], values[ok]


def _sorted_arrays(points: Iterable[TimePoint]) -> tuple[np.ndarray, np.ndarray]:
    times, values = _valid_arrays(points)
    order = np.argsort(times, kind="stable")
    return times[order], values[order]


def resample_values(
    times: np.ndarray,
    values: np.ndarray,
    targets: np.ndarray,
    coincident_eps: float = 0.0,
) -> np.ndarray:
    """Linear interpolation with flat extension past either end.

    *times* must be sorted.  Each target uses the last sample at or before
    it and the first sample strictly after it, so duplicate times resolve
    to the later duplicate.  Bracketing samples closer than
    *coincident_eps* hours yield the earlier sample's value.
    """
    n = len(times)
    right = np.searchsorted(times, targets, side="right")
    left = right - 1

    out = np.empty(len(targets), dtype=float)
    before = left < 0
    after = right >= n
    out[before] = values[0]
    out[after] = values[-1]

    inner = ~(before | after)
    li, ri = left[inner], right[inner]
    span = times[ri] - times[li]
    coincident = span < coincident_eps
    frac = (targets[inner] - times[li]) / np.where(coincident, 1.0, span)
    interp = values[li] + frac * (values[ri] - values[li])
    out[inner] = np.where(coincident, values[li], interp)
    return out


def ensure_data_points(
    points: Iterable[TimePoint],
    expected_count: int = GRID_SIZE,
    precision: int = VALUE_PRECISION,
) -> list[TimePoint]:
    """Resample *points* onto the canonical grid.

    Raises
    ------
    GridError
        If *points* holds no usable samples.
    """
    times, values = _sorted_arrays(points)
    if len(times) == 0:
        raise GridError("cannot resample an empty point set onto the grid")

    targets = grid_times(expected_count)
    resampled = np.round(resample_values(times, values, targets), precision)
    return from_arrays(targets, resampled)


def is_on_grid(points: list[TimePoint], expected_count: int = GRID_SIZE) -> bool:
    """True when *points* already sit exactly on the canonical grid."""
    if len(points) != expected_count:
        return False
    times, _ = to_arrays(points)
    return bool(np.allclose(times, grid_times(expected_count), rtol=0.0, atol=1e-9))


# ---------------------------------------------------------------------------
# Lookup primitives
# ---------------------------------------------------------------------------


def interpolate_value(points: Iterable[TimePoint], time: float) -> float:
    """Value at *time* from the bracketing samples.

    Uses the latest sample at or before *time* and the earliest after it.
    Falls back to whichever side exists, and to 0 for an empty sequence.
    """
    times, values = _valid_arrays(points)
    if len(times) == 0:
        return 0.0

    le = times <= time
    if not le.any():
        gt_idx = np.flatnonzero(~le)
        return float(values[gt_idx[np.argmin(times[gt_idx])]])

    le_idx = np.flatnonzero(le)
    prev = le_idx[np.argmax(times[le_idx])]
    if le.all():
        return float(values[prev])

    gt_idx = np.flatnonzero(~le)
    nxt = gt_idx[np.argmin(times[gt_idx])]

    span = times[nxt] - times[prev]
    if abs(span) < COINCIDENT_EPS:
        return float(values[prev])
    t = (time - times[prev]) / span
    return float(values[prev] + t * (values[nxt] - values[prev]))


def interpolate_values(
    points: Iterable[TimePoint], targets: np.ndarray
) -> np.ndarray:
    """Vectorized :func:`interpolate_value` over sorted, valid samples."""
    times, values = _sorted_arrays(points)
    targets = np.asarray(targets, dtype=float)
    if len(times) == 0:
        return np.zeros(len(targets))
    return resample_values(times, values, targets, COINCIDENT_EPS)



def find_closest_point_values(
    points: Iterable[TimePoint],
    targets: np.ndarray,
    threshold: float = 0.01,
) -> np.ndarray:
    """Vectorized :func:`find_closest_point_value`."""
    times, values = _sorted_arrays(points)
    targets = np.asarray(targets, dtype=float)
    n = len(times)
    if n == 0:
        return np.zeros(len(targets))

    # Nearest sample, ties resolved to the earlier one
    pos = np.searchsorted(times, targets, side="left")
    lo = np.clip(pos - 1, 0, n - 1)
    hi = np.clip(pos, 0, n - 1)
    d_lo = np.abs(times[lo] - targets)
    d_hi = np.abs(times[hi] - targets)
    nearest = np.where(d_hi < d_lo, hi, lo)
    d_near = np.minimum(d_lo, d_hi)
    close = d_near < threshold

    # Interpolation between the samples at-or-before and at-or-after
    before_idx = np.searchsorted(times, targets, side="right") - 1
    after_idx = pos
    has_before = before_idx >= 0
    has_after = after_idx < n
    b = np.clip(before_idx, 0, n - 1)
    a = np.clip(after_idx, 0, n - 1)
    span = times[a] - times[b]
    both = has_before & has_after & (span > 0)
    safe_span = np.where(both, span, 1.0)
    interp = values[b] + (values[a] - values[b]) * (targets - times[b]) / safe_span

    out = np.where(has_before, values[b], values[a])
    out = np.where(both, interp, out)
    return np.where(close, values[nearest], out)


def find_closest_point_value(
    points: Iterable[TimePoint], time: float, threshold: float = 0.01
) -> float:
    """Value of the nearest sample within *threshold* of *time*.

    Falls back to linear interpolation between the neighbours on either
    side, then to the single available side, then to 0.
    """
    return float(find_closest_point_values(points, np.array([time]), threshold)[0])


# ---------------------------------------------------------------------------
# Time-of-day parsing
# ---------------------------------------------------------------------------


def _clock_to_hours(text: str) -> float:
    parts = text.strip().split(":")
    if len(parts) < 2:
        return 0.0
    try:
        nums = [float(p) for p in parts[:3]]
    except ValueError:
        return 0.0
    seconds = nums[2] if len(nums) > 2 else 0.0
    return nums[0] + nums[1] / 60.0 + seconds / 3600.0


def split_timestamp(value: float | str | None) -> tuple[str | None, float]:
    """Split a timestamp into ``(date, hours)``.

    Accepts plain hour numbers, ``"HH:MM[:SS]"`` and
    ``"YYYY-MM-DD HH:MM[:SS]"``.  The date is None when absent.
    Unparseable input yields 0 hours.
    """
    if value is None:
        return None, 0.0
    if isinstance(value, (int, float, np.integer, np.floating)):
        return None, float(value)
    text = str(value).strip()
    if "-" in text and " " in text:
        date_part, _, time_part = text.partition(" ")
        return date_part, _clock_to_hours(time_part)
    return None, _clock_to_hours(text)


def parse_time_of_day(value: float | str | None) -> float:
    return split_timestamp(value)[1]


def format_time(hour: float) -> str:
    """Render hours-of-day as ``HH:MM``."""
    hours = int(np.floor(hour))
    minutes = int(np.floor((hour - hours) * 60))
    return f"{hours:02d}:{minutes:02d}"


def format_clock(hour: float) -> str:
    """Render hours-of-day as ``HH:MM:SS``, rounded to the second."""
    total = int(round(hour * 3600))
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"
