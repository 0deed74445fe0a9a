import threading
import time

import numpy as np
import pytest

from series_editor.aggregation import ThreadingScheduler
from series_editor.config import EditorConfig
from series_editor.context import SERIES_CHANGED, DatasetContext
from series_editor.editor import SeriesEditor
from series_editor.exceptions import DegenerateRangeError
from series_editor.grid import find_closest_point_values, grid_times, interpolate_value
from series_editor.search import Pattern
from series_editor.series import Series, TimePoint, to_arrays


def state_of(editor: SeriesEditor) -> list[dict]:
    return [s.to_dict() for s in editor.series]


def _assert_consistent(editor: SeriesEditor, parent_id: str = "p") -> None:
    parent = editor.get_series(parent_id)
    times, values = to_arrays(parent.data)
    expected = np.zeros(len(times))
    for child in editor.repository.children_of(parent_id):
        expected += find_closest_point_values(child.data, times)
    np.testing.assert_allclose(values, expected, atol=1e-6)


def _values(editor: SeriesEditor, series_id: str) -> np.ndarray:
    return editor.get_series(series_id).values()


def _in_range(lo: float, hi: float) -> np.ndarray:
    t = grid_times()
    return (t >= lo) & (t <= hi)


def _flat_pattern(value: float) -> Pattern:
    data = [TimePoint(h / 4, value) for h in range(9)]
    return Pattern(series_id="dataset_user_x_2024-01-01", start=0.0, end=2.0, data=data, similarity=0.9)


class TestStructure:
    def test_family_loaded(self, editor):
        assert [s.id for s in editor.series] == ["p", "lf", "mf", "hf"]
        assert all(len(s.data) == 1440 for s in editor.series)
        assert [op.type for op in editor.history.operations] == ["save"] * 4
        last = editor.history.operations[-1]
        assert last.before_data is None
        assert set(last.after_data) == {"p", "lf", "mf", "hf"}

    def test_add_series_from_dict(self, editor):
        editor.add_series({"id": "x", "data": [{"time": 0.0, "value": 2.0}]})
        assert editor.get_series("x").data[-1].value == 2.0
        assert len(editor.history) == 5

    def test_add_without_record(self, editor):
        editor.add_series(Series(id="x", data=[TimePoint(0.0, 1.0)]), record=False)
        assert len(editor.history) == 4

    def test_import_data(self, editor):
        touched = editor.import_data([
            {"id": "hf", "data": [{"time": 0.0, "value": 1.0}]},
            Series(id="new", data=[TimePoint(0.0, 3.0)], type="lf", visible=False),
        ])
        assert touched == ["hf", "new"]
        assert editor.get_series("hf").type == "hf"
        assert np.all(_values(editor, "hf") == 1.0)
        assert editor.get_series("new").type == "original"
        assert editor.get_series("new").visible
        assert editor.history.operations[-1].type == "save"

    def test_import_child_updates_parent(self, editor):
        editor.import_data([{"id": "lf", "data": [{"time": 0.0, "value": 500.0}]}])
        assert np.all(_values(editor, "lf") == 500.0)
        _assert_consistent(editor)
        saved = editor.history.operations[-1].after_data
        assert saved["p"] == editor.get_series("p").data

    def test_merge_child_updates_parent(self, editor):
        flat = [TimePoint(0.0, 42.0), TimePoint(23.0, 42.0)]
        editor.add_series(Series(id="mf", data=flat, type="mf", parent_id="p"))
        assert np.all(_values(editor, "mf") == 42.0)
        _assert_consistent(editor)
        saved = editor.history.operations[-1].after_data
        assert saved["p"] == editor.get_series("p").data

    def test_import_nothing(self, editor):
        assert editor.import_data([]) == []
        assert len(editor.history) == 4

    def test_clear_all(self, editor):
        editor.set_selection((8, 10), ["lf"])
        editor.clear_all()
        assert editor.series == []
        assert not editor.can_undo
        assert editor.selected_range is None

    def test_history_capacity_from_config(self, clock, family):
        ed = SeriesEditor(config=EditorConfig(history_capacity=2), clock=clock)
        for s in family:
            ed.add_series(s)
        assert len(ed.history) == 2


class TestSelection:
    def test_filters_invisible_and_unknown(self, editor):
        editor.get_series("mf").visible = False
        editor.set_selection((8, 10), ["lf", "mf", "zzz", "lf"])
        assert editor.selected_series == ["lf"]
        assert editor.selected_range.duration == 2.0

    def test_none_clears(self, editor):
        editor.set_selection((8, 10), ["lf"])
        editor.set_selection(None)
        assert editor.selected_range is None
        assert editor.selected_series == []

    def test_preview(self, editor):
        editor.set_selection((8, 10), ["lf"])
        preview = editor.set_preview(_flat_pattern(7.0))
        assert preview.type == "preview"
        assert all(8.0 <= p.time <= 10.0 for p in preview.data)
        assert "preview" not in editor.repository
        assert len(editor.history) == 4
        editor.clear_preview()
        assert editor.preview is None

    def test_preview_needs_selection(self, editor):
        assert editor.set_preview(_flat_pattern(7.0)) is None


class TestMove:
    def test_parent_kept_consistent(self, editor):
        editor.set_selection((8, 10), ["lf"])
        editor.move("lf", dy=5.0)
        _assert_consistent(editor)

    def test_values_shifted_in_range(self, editor):
        before = _values(editor, "lf").copy()
        editor.set_selection((8, 10), ["lf"])
        editor.move("lf", dy=5.0)
        mask = _in_range(8, 10)
        np.testing.assert_allclose(_values(editor, "lf")[mask], before[mask] + 5.0)
        np.testing.assert_array_equal(_values(editor, "lf")[~mask], before[~mask])

    def test_operation_recorded(self, editor):
        editor.set_selection((8, 10), ["lf"])
        op = editor.move("lf", dy=5.0)
        assert op.type == "move-y"
        assert op.series_ids == ["lf", "p"]
        assert op.params == {"offset": {"x": 0.0, "y": 5.0}}
        assert editor.history.operations[-1] is op
        assert editor.selected_series == ["lf", "p"]

    @pytest.mark.parametrize("dx, dy, expected", [(0.5, 0.0, "move-x"), (0.5, 1.0, "move-xy")])
    def test_move_types(self, editor, dx, dy, expected):
        editor.set_selection((8, 10), ["lf"])
        assert editor.move("lf", dx=dx, dy=dy).type == expected
        assert len(editor.get_series("lf").data) == 1440
        _assert_consistent(editor)

    def test_inverse_move_round_trip(self, editor):
        lf = _values(editor, "lf").copy()
        parent = _values(editor, "p").copy()
        editor.set_selection((8, 10), ["lf"])
        editor.move("lf", dy=12.5)
        editor.move("lf", dy=-12.5)
        np.testing.assert_allclose(_values(editor, "lf"), lf, atol=1e-6)
        np.testing.assert_allclose(_values(editor, "p"), parent, atol=1e-6)

    def test_no_selection(self, editor):
        assert editor.move("lf", dy=1.0) is None
        assert len(editor.history) == 4

    def test_invisible(self, editor):
        editor.set_selection((8, 10), ["lf"])
        editor.get_series("lf").visible = False
        assert editor.move("lf", dy=1.0) is None

    def test_missing_series(self, editor):
        editor.set_selection((8, 10), ["lf"])
        assert editor.move("nope", dy=1.0) is None

    def test_moving_parent_warns(self, editor, caplog):
        editor.set_selection((8, 10), ["p"])
        with caplog.at_level("WARNING", logger="series_editor.editor"):
            assert editor.move("p", dy=1.0) is not None
        assert "breaks consistency" in caplog.text

    def test_non_negative_dataset(self, editor):
        editor.context.set_dataset("electricity")
        editor.set_selection((8, 10), ["lf"])
        editor.move("lf", dy=-1000.0)
        assert np.all(_values(editor, "lf")[_in_range(8, 10)] == 0.0)

    def test_ceiling(self, editor):
        editor.set_selection((8, 10), ["lf"])
        editor.move("lf", dy=1e6)
        assert np.all(_values(editor, "lf")[_in_range(8, 10)] == 15000.0)


class TestCurve:
    def test_constant_multiplier(self, editor):
        before = _values(editor, "lf").copy()
        editor.set_selection((8, 10), ["lf"])
        op = editor.apply_curve("lf", [{"x": 0.5, "y": 2.0}])
        mask = _in_range(8, 10)
        np.testing.assert_allclose(_values(editor, "lf")[mask], before[mask] * 2.0)
        assert op.params == {"curve": [{"x": 0.5, "y": 2.0}]}
        _assert_consistent(editor)

    def test_clamped_inside_selection_only(self, editor):
        editor.context.set_dataset("electricity")
        before = _values(editor, "mf").copy()
        editor.set_selection((8, 10), ["mf"])
        editor.apply_curve("mf", [(0.0, 1.0), (1.0, 1.0)])
        mask = _in_range(8, 10)
        np.testing.assert_allclose(_values(editor, "mf")[mask], np.maximum(before[mask], 0.0))
        np.testing.assert_array_equal(_values(editor, "mf")[~mask], before[~mask])

    def test_move_only_policy_leaves_negatives(self, clock, family):
        ed = SeriesEditor(
            context=DatasetContext("electricity"),
            config=EditorConfig(clamp_policy="move"),
            clock=clock,
        )
        for s in family:
            ed.add_series(s)
        ed.set_selection((8, 10), ["mf"])
        ed.apply_curve("mf", [(0.0, 1.0)])
        assert _values(ed, "mf")[_in_range(8, 10)].min() < 0


class TestClone:
    def test_clone(self, editor):
        original = editor.get_series("lf").data
        expected = interpolate_value(original, 3.0)
        op = editor.clone("lf", (2, 4), (10, 12))
        assert interpolate_value(editor.get_series("lf").data, 11.0) == pytest.approx(expected, abs=1e-6)
        assert op.params["targetRange"] == {"start": 10.0, "end": 12.0}
        _assert_consistent(editor)

    def test_degenerate_target_rejected(self, editor):
        before = state_of(editor)
        with pytest.raises(DegenerateRangeError):
            editor.clone("lf", (2, 4), (10, 10.0001))
        assert state_of(editor) == before
        assert len(editor.history) == 4


class TestExpand:
    def test_full_day_is_identity(self, editor):
        before = {sid: _values(editor, sid).copy() for sid in ("lf", "mf")}
        editor.set_selection((0, 24), ["lf", "mf"])
        op = editor.expand([(0.0, 24.0)])
        for sid, values in before.items():
            np.testing.assert_allclose(_values(editor, sid), values, atol=1e-6)
        assert op.type == "expand"
        assert op.series_ids == ["lf", "p", "mf"]
        assert editor.selected_range is None

    def test_parent_consistent(self, editor):
        editor.set_selection((6, 12), ["lf", "mf"])
        editor.expand([(6.0, 12.0)])
        _assert_consistent(editor)

    def test_noop_without_input(self, editor):
        assert editor.expand([(0.0, 24.0)]) is None
        editor.set_selection((6, 12), ["lf"])
        assert editor.expand([]) is None


class TestReplace:
    def test_replace_with_search_result(self, editor, corpus):
        editor.context.set_original_data(corpus)
        editor.set_selection((8, 10), ["lf"])
        patterns = editor.find_similar_patterns("lf")
        assert patterns
        assert {p.user_id for p in patterns} == {"b"}

        op = editor.replace_with_pattern(patterns[0], "lf")
        assert op.type == "replace"
        assert op.params["patternId"] == patterns[0].series_id
        assert interpolate_value(editor.get_series("lf").data, 9.0) == pytest.approx(100.0)
        _assert_consistent(editor)

    def test_search_needs_selection(self, editor, corpus):
        editor.context.set_original_data(corpus)
        assert editor.find_similar_patterns("lf") == []

    def test_noop_cases(self, editor):
        assert editor.replace_with_pattern(_flat_pattern(1.0), "lf") is None
        editor.set_selection((8, 10), ["lf"])
        assert editor.replace_with_pattern(None, "lf") is None
        assert editor.replace_with_pattern(_flat_pattern(1.0), "nope") is None


class TestDelete:
    def test_cascades(self, editor):
        op = editor.delete_series("p")
        assert editor.series == []
        assert op.type == "delete"
        assert op.after_data is None
        assert set(op.before_data) == {"p", "lf", "mf", "hf"}

    def test_child_removed_from_parent(self, editor):
        expected = _values(editor, "lf") + _values(editor, "mf")
        editor.delete_series("hf")
        assert "hf" not in editor.repository
        np.testing.assert_allclose(_values(editor, "p"), expected, atol=1e-6)

    def test_undo_restores_tree(self, editor):
        before = state_of(editor)
        editor.delete_series("p")
        editor.undo()
        assert state_of(editor) == before

    def test_redo_deletes_again(self, editor):
        editor.delete_series("hf")
        after = state_of(editor)
        editor.undo()
        editor.redo()
        assert state_of(editor) == after

    def test_missing(self, editor):
        assert editor.delete_series("nope") is None


def _do_move(ed):
    ed.set_selection((8, 10), ["lf"])
    ed.move("lf", dx=0.25, dy=3.0)


def _do_curve(ed):
    ed.set_selection((8, 10), ["mf"])
    ed.apply_curve("mf", [(0.0, 0.5), (1.0, 1.5)])


def _do_clone(ed):
    ed.clone("hf", (2, 4), (12, 15))


def _do_expand(ed):
    ed.set_selection((6, 18), ["lf", "hf"])
    ed.expand([(6.0, 9.0), (15.0, 18.0)])


def _do_replace(ed):
    ed.set_selection((8, 10), ["lf"])
    ed.replace_with_pattern(_flat_pattern(42.0), "lf")


def _do_delete(ed):
    ed.delete_series("mf")


ACTIONS = [_do_move, _do_curve, _do_clone, _do_expand, _do_replace, _do_delete]


class TestUndoRedo:
    @pytest.mark.parametrize("action", ACTIONS, ids=lambda f: f.__name__)
    def test_undo_restores_previous_state(self, editor, action):
        before = state_of(editor)
        action(editor)
        assert state_of(editor) != before
        editor.undo()
        assert state_of(editor) == before

    @pytest.mark.parametrize("action", ACTIONS, ids=lambda f: f.__name__)
    def test_redo_after_undo_is_exact(self, editor, action):
        action(editor)
        after = state_of(editor)
        editor.undo()
        editor.redo()
        assert state_of(editor) == after

    @pytest.mark.parametrize("action", ACTIONS, ids=lambda f: f.__name__)
    def test_parent_consistent_after_each_operation(self, editor, action):
        action(editor)
        _assert_consistent(editor)

    def test_empty_log(self, clock):
        ed = SeriesEditor(clock=clock)
        assert ed.undo() is None
        assert ed.redo() is None
        assert not ed.can_undo

    def test_can_redo(self, editor):
        _do_move(editor)
        assert not editor.can_redo
        editor.undo()
        assert editor.can_redo

    def test_new_edit_discards_redo(self, editor):
        _do_move(editor)
        editor.undo()
        _do_curve(editor)
        assert not editor.can_redo

    def test_series_changed_events(self, editor):
        seen = []
        editor.context.events.subscribe(SERIES_CHANGED, seen.append)
        _do_move(editor)
        editor.undo()
        editor.redo()
        assert seen == [{"series_ids": ["lf", "p"]}] * 3


class TestDragGesture:
    def test_throttled_then_recorded(self, editor, clock):
        editor.set_selection((8, 10), ["lf"])
        before = editor.snapshot(["lf", "p"])

        editor.move_without_record("lf", dy=1.0)
        clock.advance(0.01)
        editor.move_without_record("lf", dy=1.0)
        assert editor.scheduler.pending == 1
        assert len(editor.history) == 4

        clock.advance(0.05)
        assert editor.run_due() == 1
        _assert_consistent(editor)

        op = editor.record_batch_operation(
            "move-y", ["lf", "p"], {"offset": {"x": 0, "y": 2}}, before, editor.snapshot(["lf", "p"])
        )
        assert len(editor.history) == 5
        editor.undo()
        assert editor.get_series("lf").data == before["lf"]
        assert editor.get_series("p").data == before["p"]
        assert op.type == "move-y"

    def test_record_flushes_pending(self, editor, clock):
        editor.set_selection((8, 10), ["lf"])
        editor.move_without_record("lf", dy=1.0)
        editor.move_without_record("lf", dy=1.0)
        editor.record_batch_operation("move-y", "lf", before=editor.snapshot(["lf", "p"]))
        assert editor.aggregator.pending_parents == []
        _assert_consistent(editor)

    def test_record_without_snapshots_warns(self, editor, caplog):
        with caplog.at_level("WARNING", logger="series_editor.editor"):
            op = editor.record_batch_operation("move-y", ["lf"])
        assert "without before data" in caplog.text
        assert op.after_data["lf"] == editor.get_series("lf").data

    def test_flush(self, editor):
        editor.set_selection((8, 10), ["lf"])
        editor.move_without_record("lf", dy=1.0)
        editor.move_without_record("lf", dy=1.0)
        assert editor.flush() == ["p"]
        _assert_consistent(editor)


class TestHistoryExport:
    def test_export_import(self, editor, clock):
        _do_move(editor)
        blob = editor.export_history()
        assert blob["currentIndex"] == 4

        other = SeriesEditor(clock=clock)
        other.import_history(blob)
        assert len(other.history) == 5
        assert other.can_undo
        assert other.history.operations[-1].type == "move-xy"


def _threaded_editor(family, interval: float = 0.025) -> SeriesEditor:
    ed = SeriesEditor(
        context=DatasetContext("water"),
        config=EditorConfig(aggregation_interval=interval),
        scheduler=ThreadingScheduler(),
    )
    for s in family:
        ed.add_series(s)
    return ed


def _wait_idle(ed: SeriesEditor, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        with ed._lock:
            if not ed.aggregator.pending_parents and ed.scheduler.pending == 0:
                return
        time.sleep(0.01)
    raise AssertionError("deferred propagations did not settle")


class TestThreadedScheduler:
    def test_drag_settles_consistent(self, family):
        ed = _threaded_editor(family)
        before = _values(ed, "lf").copy()
        ed.set_selection((8, 10), ["lf"])
        for _ in range(5):
            ed.move_without_record("lf", dy=1.0)
            time.sleep(0.005)

        _wait_idle(ed)
        mask = _in_range(8, 10)
        np.testing.assert_allclose(_values(ed, "lf")[mask], before[mask] + 5.0)
        _assert_consistent(ed)

    def test_concurrent_edits_serialized(self, family):
        ed = _threaded_editor(family)
        ed.set_selection((8, 10), ["lf"])
        workers = [
            threading.Thread(target=lambda: [ed.move_without_record("lf", dy=0.5) for _ in range(10)])
            for _ in range(3)
        ]
        for w in workers:
            w.start()
        for w in workers:
            w.join()

        _wait_idle(ed)
        mask = _in_range(8, 10)
        assert _values(ed, "lf")[mask][0] == pytest.approx(interpolate_value(family[2].data, 8.0) + 15.0)
        _assert_consistent(ed)

    def test_clear_all_cancels_timers(self, family):
        ed = _threaded_editor(family, interval=5.0)
        ed.set_selection((8, 10), ["lf"])
        ed.move_without_record("lf", dy=1.0)
        assert ed.scheduler.pending == 1
        ed.clear_all()
        assert ed.scheduler.pending == 0
        assert ed.series == []
