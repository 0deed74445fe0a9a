import numpy as np
import pytest

from series_editor.aggregation import CooperativeScheduler
from series_editor.context import DatasetContext
from series_editor.editor import SeriesEditor
from series_editor.grid import grid_times
from series_editor.series import Series, from_arrays


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _on_grid(values: np.ndarray) -> list:
    return from_arrays(grid_times(), values)


def _family() -> list[Series]:
    """Parent plus lf/mf/hf children that sum exactly to it."""
    t = grid_times()
    lf = 100.0 + 20.0 * np.sin(2 * np.pi * t / 24)
    mf = 10.0 * np.cos(2 * np.pi * t / 6)
    hf = 0.5 * t
    return [
        Series(id="p", data=_on_grid(lf + mf + hf), type="original"),
        Series(id="hf", data=_on_grid(hf), type="hf", parent_id="p"),
        Series(id="lf", data=_on_grid(lf), type="lf", parent_id="p"),
        Series(id="mf", data=_on_grid(mf), type="mf", parent_id="p"),
    ]


def _day_records(date: str, values) -> list[dict]:
    """One corpus day with a point every minute."""
    values = np.broadcast_to(np.asarray(values, dtype=float), (1440,))
    return [
        {"time": f"{date} {i // 60:02d}:{i % 60:02d}:00", "value": float(v)}
        for i, v in enumerate(values)
    ]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return CooperativeScheduler(clock)


@pytest.fixture
def family():
    return _family()


@pytest.fixture
def corpus():
    """Three users, two days each.

    User ``a`` is flat at 50, ``b`` flat at 100 and ``c`` flat at 300.
    """
    corpus = []
    for user, level in (("a", 50.0), ("b", 100.0), ("c", 300.0)):
        data = _day_records("2024-01-01", level) + _day_records("2024-01-02", level)
        corpus.append({"id": user, "data": data})
    return corpus


@pytest.fixture
def editor(clock, family):
    ed = SeriesEditor(context=DatasetContext(current_dataset="water"), clock=clock)
    for s in family:
        ed.add_series(s)
    return ed
