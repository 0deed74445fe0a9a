import numpy as np
import pytest

from series_editor.exceptions import DuplicateSeriesError, SeriesNotFoundError
from series_editor.grid import GRID_SIZE, grid_times
from series_editor.repository import SeriesRepository
from series_editor.series import Series, TimePoint, to_arrays


def _flat(series_id: str, value: float, **kwargs) -> Series:
    data = [TimePoint(0.0, value), TimePoint(23.0, value)]
    return Series(id=series_id, data=data, **kwargs)


def _repo(*series) -> SeriesRepository:
    repo = SeriesRepository()
    for s in series:
        repo.add(s)
    return repo


class TestAdd:
    def test_data_resampled_to_grid(self):
        repo = _repo(_flat("a", 3.0))
        times, values = to_arrays(repo.get("a").data)
        assert len(times) == GRID_SIZE
        np.testing.assert_allclose(times, grid_times())
        assert np.all(values == 3.0)

    def test_stored_copy_is_independent(self):
        s = _flat("a", 1.0)
        repo = _repo(s)
        s.visible = False
        assert repo.get("a").visible is True

    def test_merge_on_matching_id(self):
        repo = _repo(_flat("a", 1.0, date="2024-01-01", metadata={"unit": "kW"}))
        repo.add(_flat("a", 5.0, visible=False))
        stored = repo.get("a")
        assert len(repo) == 1
        assert stored.visible is False
        assert stored.data[0].value == 5.0
        assert stored.date == "2024-01-01"
        assert stored.metadata == {"unit": "kW"}

    def test_merge_fills_missing_qualifier(self):
        repo = _repo(_flat("a", 1.0))
        repo.add(_flat("a", 2.0, variable="flow"))
        assert repo.get("a").variable == "flow"

    def test_qualifier_mismatch_raises(self):
        repo = _repo(_flat("a", 1.0, date="2024-01-01"))
        with pytest.raises(DuplicateSeriesError, match="already held"):
            repo.add(_flat("a", 1.0, date="2024-01-02"))

    def test_siblings_ordered_by_band(self, family):
        repo = _repo(*family)
        assert repo.ids() == ["p", "lf", "mf", "hf"]

    def test_retype_on_merge_reorders_siblings(self, family):
        repo = _repo(*family)
        repo.add(_flat("hf", 1.0, type="lf", parent_id="p"))
        assert repo.get("hf").type == "lf"
        assert repo.ids() == ["p", "lf", "hf", "mf"]

    def test_position(self):
        repo = _repo(_flat("a", 1.0), _flat("b", 1.0))
        repo.add(_flat("c", 1.0), position=0)
        assert repo.ids() == ["c", "a", "b"]
        assert repo.position("a") == 1


class TestQueries:
    def test_get_missing(self):
        repo = _repo()
        assert repo.get("nope") is None
        assert repo.get(None) is None

    def test_require_missing(self):
        with pytest.raises(SeriesNotFoundError):
            _repo().require("nope")

    def test_not_found_is_key_error(self):
        with pytest.raises(KeyError):
            _repo().require("nope")

    def test_children(self, family):
        repo = _repo(*family)
        assert [c.id for c in repo.children_of("p")] == ["lf", "mf", "hf"]
        assert repo.has_children("p")
        assert not repo.has_children("lf")
        assert repo.parent_of(repo.get("lf")).id == "p"

    def test_ancestors_and_descendants(self, family):
        repo = _repo(*family)
        repo.add(_flat("lf-low", 1.0, parent_id="lf"))
        repo.add(_flat("root", 1.0))
        repo.get("p").parent_id = "root"
        assert repo.ancestors("lf-low") == ["lf", "p", "root"]
        assert repo.descendants("p") == ["lf", "lf-low", "mf", "hf"]

    def test_ancestors_stop_at_cycle(self):
        repo = _repo(_flat("a", 1.0, parent_id="b"), _flat("b", 1.0, parent_id="a"))
        assert repo.ancestors("a") == ["b"]


class TestMutation:
    def test_delete_does_not_cascade(self, family):
        repo = _repo(*family)
        repo.delete("p")
        assert "p" not in repo
        assert repo.ids() == ["lf", "mf", "hf"]

    def test_delete_missing(self):
        assert _repo().delete("nope") is None

    def test_set_data_regrids(self):
        repo = _repo(_flat("a", 1.0))
        repo.set_data("a", [TimePoint(0.0, 0.0), TimePoint(24.0, 24.0)])
        assert len(repo.get("a").data) == GRID_SIZE
        assert repo.get("a").data[60].value == pytest.approx(1.0)

    def test_import_batch(self):
        repo = _repo(_flat("a", 1.0, type="lf"))
        touched = repo.import_batch([
            {"id": "a", "data": [{"time": 0.0, "value": 4.0}]},
            {"id": "b", "data": [{"time": 0.0, "value": 2.0}], "visible": False},
        ])
        assert touched == ["a", "b"]
        assert repo.get("a").type == "lf"
        assert repo.get("a").data[0].value == 4.0
        assert repo.get("b").type == "original"
        assert repo.get("b").visible is True

    def test_clear(self, family):
        repo = _repo(*family)
        repo.clear()
        assert len(repo) == 0


class TestSnapshots:
    def test_snapshot_is_independent(self):
        repo = _repo(_flat("a", 1.0))
        snap = repo.snapshot(["a"])
        repo.set_data("a", [TimePoint(0.0, 9.0)])
        assert snap["a"][0].value == 1.0

    def test_empty_ids(self):
        assert _repo().snapshot([]) is None

    def test_unknown_ids_skipped(self):
        repo = _repo(_flat("a", 1.0))
        assert set(repo.snapshot(["a", "zzz"])) == {"a"}

    def test_restore(self):
        repo = _repo(_flat("a", 1.0))
        snap = repo.snapshot(["a"])
        repo.set_data("a", [TimePoint(0.0, 9.0)])
        assert repo.restore({**snap, "gone": []}) == ["a"]
        assert repo.get("a").data == snap["a"]
        assert repo.get("a").data is not snap["a"]

    def test_restore_none(self):
        assert _repo().restore(None) == []
