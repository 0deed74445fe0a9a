"""Interactive editing session over a set of daily series.

:class:`SeriesEditor` ties the pieces together: it owns the repository,
the operation log and the parent aggregator, tracks the active selection,
and runs each editing operation as snapshot, transform, re-grid,
propagate, record.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Iterable, Sequence

from series_editor.aggregation import Clock, CooperativeScheduler, ParentAggregator, Scheduler
from series_editor.config import EditorConfig
from series_editor.context import SERIES_CHANGED, DatasetContext
from series_editor.grid import is_on_grid
from series_editor.history import Operation, OperationLog
from series_editor.repository import SeriesRepository, Snapshot
from series_editor.search import Pattern, find_similar_patterns
from series_editor.series import Series, TimePoint, TimeRange, points_to_records
from series_editor.transforms import (
    apply_curve,
    clip_negative,
    clone_range,
    expand_selections,
    remap_points,
    replace_range,
    shift_range,
)

logger = logging.getLogger(__name__)


def _move_type(dx: float, dy: float) -> str:
    if dx != 0 and dy == 0:
        return "move-x"
    if dx == 0 and dy != 0:
        return "move-y"
    return "move-xy"


def _curve_params(curve: Sequence[dict | tuple]) -> list[dict]:
    return [
        {"x": float(c["x"]), "y": float(c["y"])}
        if isinstance(c, dict)
        else {"x": float(c[0]), "y": float(c[1])}
        for c in curve
    ]


def _unique(ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(ids))


class SeriesEditor:
    """One editing session.

    Parameters
    ----------
    context : DatasetContext, optional
        Dataset name, reference corpus and event bus.
    config : EditorConfig, optional
        Grid, clamp, history and search settings.
    scheduler : Scheduler, optional
        Runs deferred parent recomputations.  Defaults to a
        :class:`CooperativeScheduler` the host drives via :meth:`run_due`.
    clock : callable
        Monotonic time source for the aggregation guard.
    """

    def __init__(
        self,
        context: DatasetContext | None = None,
        config: EditorConfig | None = None,
        scheduler: Scheduler | None = None,
        clock: Clock = time.monotonic,
    ):
        self.config = config or EditorConfig()
        self.context = context or DatasetContext(
            non_negative_datasets=self.config.non_negative_datasets
        )
        self.repository = SeriesRepository(self.config.grid_size, self.config.value_precision)
        self.history = OperationLog(self.config.history_capacity)
        self._lock = threading.RLock()
        self.scheduler = scheduler or CooperativeScheduler(clock)
        self.aggregator = ParentAggregator(
            self.repository,
            scheduler=self.scheduler,
            interval=self.config.aggregation_interval,
            clock=clock,
            threshold=self.config.closest_point_threshold,
            lock=self._lock,
        )
        self.selected_range: TimeRange | None = None
        self.selected_series: list[str] = []
        self.preview: Series | None = None

    # -- queries --

    @property
    def series(self) -> list[Series]:
        return list(self.repository)

    def get_series(self, series_id: str) -> Series | None:
        return self.repository.get(series_id)

    def snapshot(self, series_ids: Iterable[str]) -> Snapshot | None:
        with self._lock:
            return self.repository.snapshot(series_ids)

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo

    def _clamp_all(self) -> bool:
        return self.config.clamp_policy == "all" and self.context.prevent_negative

    def _emit_changed(self, ids: Iterable[str]) -> None:
        self.context.events.emit(SERIES_CHANGED, {"series_ids": list(ids)})

    # -- structure --

    def add_series(self, series: Series | dict, record: bool = True) -> Series:
        """Insert or merge a series, then record a ``save`` entry."""
        with self._lock:
            if isinstance(series, dict):
                series = Series.from_dict(series)
            stored = self.repository.add(series)
            self._propagate_from([stored.id])
            if record:
                self.save_state()
            return stored

    def import_data(self, batch: Iterable[Series | dict]) -> list[str]:
        with self._lock:
            batch = list(batch)
            if not batch:
                return []
            touched = self.repository.import_batch(batch)
            self._propagate_from(touched)
            self.save_state()
            return touched

    def _propagate_from(self, series_ids: Iterable[str]) -> None:
        """Bring the parents of freshly written children back in line."""
        for sid in _unique(series_ids):
            series = self.repository.get(sid)
            if series is not None and series.parent_id is not None:
                self.aggregator.propagate(sid, immediate=True)

    def save_state(self) -> Operation:
        """Record every series' current data as a ``save`` entry."""
        with self._lock:
            for s in self.repository:
                if not is_on_grid(s.data, self.config.grid_size):
                    logger.warning(
                        "Series %s has %d points, resampling to %d",
                        s.id,
                        len(s.data),
                        self.config.grid_size,
                    )
                    self.repository.set_data(s.id, s.data)
            return self.history.record(
                "save",
                self.repository.ids(),
                {},
                None,
                self.repository.snapshot(self.repository.ids()),
                self.selected_range,
            )

    def clear_all(self) -> None:
        with self._lock:
            self.aggregator.flush()
            cancel_all = getattr(self.scheduler, "cancel_all", None)
            if cancel_all is not None:
                cancel_all()
            self.repository.clear()
            self.history.clear()
            self.clear_selection()
            self.preview = None

    # -- selection and preview --

    def set_selection(
        self, time_range: TimeRange | dict | tuple | None, series_ids: Iterable[str] = ()
    ) -> None:
        """Select a range over the visible series among *series_ids*."""
        with self._lock:
            if time_range is None:
                self.clear_selection()
                return
            self.selected_range = TimeRange.coerce(time_range)
            self.selected_series = [
                sid
                for sid in _unique(series_ids)
                if (s := self.repository.get(sid)) is not None and s.visible
            ]

    def clear_selection(self) -> None:
        self.selected_range = None
        self.selected_series = []

    def _select_with_parent(self, series: Series) -> None:
        if series.parent_id is None or self.selected_range is None:
            return
        self.set_selection(
            self.selected_range, [*self.selected_series, series.id, series.parent_id]
        )

    def set_preview(self, pattern: Pattern | None) -> Series | None:
        """Show *pattern* mapped into the selection without committing it."""
        with self._lock:
            if pattern is None or self.selected_range is None:
                self.preview = None
                return None
            data = remap_points(pattern.data, pattern.span, self.selected_range)
            self.preview = Series(id="preview", data=data, type="preview", visible=True)
            return self.preview

    def clear_preview(self) -> None:
        self.preview = None

    # -- shared operation plumbing --

    def _editable(self, series_id: str) -> Series | None:
        series = self.repository.get(series_id)
        if series is None or not series.visible:
            return None
        return series

    def _affected(self, series_id: str) -> list[str]:
        return [series_id, *self.repository.ancestors(series_id)]

    def _commit(
        self, series: Series, data: list[TimePoint], clamp_range: TimeRange | None = None
    ) -> None:
        """Store *data*, flooring the changed region at 0 when the policy asks."""
        if clamp_range is not None and self._clamp_all():
            data = clip_negative(data, clamp_range)
        self.repository.set_data(series.id, data)
        self.aggregator.propagate(series.id, immediate=True)

    def _finish(
        self,
        op_type: str,
        series: Series,
        ids: list[str],
        params: dict,
        before: Snapshot | None,
    ) -> Operation:
        after = self.repository.snapshot(ids)
        op = self.history.record(op_type, ids, params, before, after, self.selected_range)
        self._select_with_parent(series)
        self._emit_changed(ids)
        return op

    # -- editing operations --

    def move(self, series_id: str, dx: float = 0.0, dy: float = 0.0) -> Operation | None:
        """Shift the selected segment of a series by ``(dx, dy)``."""
        with self._lock:
            series = self._editable(series_id)
            if series is None or self.selected_range is None:
                return None
            if self.repository.has_children(series_id):
                logger.warning(
                    "Moving parent series %s directly breaks consistency with its children",
                    series_id,
                )

            ids = self._affected(series_id)
            before = self.repository.snapshot(ids)
            data = shift_range(
                series.data,
                self.selected_range,
                dx,
                dy,
                ceiling=self.config.value_ceiling,
                non_negative=self.context.prevent_negative,
            )
            self._commit(series, data)
            return self._finish(
                _move_type(dx, dy), series, ids, {"offset": {"x": dx, "y": dy}}, before
            )

    def move_without_record(self, series_id: str, dx: float = 0.0, dy: float = 0.0) -> None:
        """Drag step: like :meth:`move`, throttled and not recorded.

        Pair a gesture's steps with one :meth:`record_batch_operation`.
        """
        with self._lock:
            series = self._editable(series_id)
            if series is None or self.selected_range is None:
                return
            if self.repository.has_children(series_id):
                logger.warning(
                    "Moving parent series %s directly breaks consistency with its children",
                    series_id,
                )
            data = shift_range(
                series.data,
                self.selected_range,
                dx,
                dy,
                ceiling=self.config.value_ceiling,
                non_negative=self.context.prevent_negative,
            )
            self.repository.set_data(series_id, data)
            self.aggregator.propagate(series_id)

    def record_batch_operation(
        self,
        op_type: str,
        series_ids: str | Iterable[str],
        params: dict | None = None,
        before: Snapshot | None = None,
        after: Snapshot | None = None,
    ) -> Operation:
        """Record one entry for a multi-step gesture.

        Pending propagations are applied first so the entry describes a
        consistent state.  Without either snapshot the current data is
        recorded as the after state.
        """
        with self._lock:
            self.aggregator.flush()
            ids = [series_ids] if isinstance(series_ids, str) else list(series_ids)
            if before is None and after is None:
                logger.warning("Operation %s recorded without before data", op_type)
                after = self.repository.snapshot(ids)
            return self.history.record(op_type, ids, params, before, after, self.selected_range)

    def apply_curve(self, series_id: str, curve: Sequence[dict | tuple]) -> Operation | None:
        """Multiply the selected segment by a piecewise-linear curve."""
        with self._lock:
            series = self._editable(series_id)
            if series is None or self.selected_range is None:
                return None
            ids = self._affected(series_id)
            data = apply_curve(series.data, self.selected_range, curve)
            before = self.repository.snapshot(ids)
            self._commit(series, data, self.selected_range)
            return self._finish("curve", series, ids, {"curve": _curve_params(curve)}, before)

    def clone(
        self,
        series_id: str,
        source_range: TimeRange | dict | tuple,
        target_range: TimeRange | dict | tuple,
    ) -> Operation | None:
        """Copy one segment of a series over another, rescaling its duration."""
        with self._lock:
            source = TimeRange.coerce(source_range)
            target = TimeRange.coerce(target_range)
            series = self._editable(series_id)
            if series is None:
                return None
            ids = self._affected(series_id)
            data = clone_range(series.data, source, target)
            before = self.repository.snapshot(ids)
            self._commit(series, data, target)
            params = {"sourceRange": source.to_dict(), "targetRange": target.to_dict()}
            return self._finish("clone", series, ids, params, before)

    def replace_with_pattern(self, pattern: Pattern | None, series_id: str) -> Operation | None:
        """Replace the selected segment with a search result."""
        with self._lock:
            if pattern is None or self.selected_range is None:
                return None
            series = self._editable(series_id)
            if series is None:
                return None
            ids = self._affected(series_id)
            data = replace_range(series.data, pattern.data, pattern.span, self.selected_range)
            before = self.repository.snapshot(ids)
            self._commit(series, data, self.selected_range)
            params = {
                "patternId": pattern.series_id,
                "patternSource": pattern.source_type,
                "timeRange": self.selected_range.to_dict(),
            }
            return self._finish("replace", series, ids, params, before)

    def expand(self, selections: Sequence[TimeRange | dict | tuple]) -> Operation | None:
        """Stretch the given segments of every selected series over the day."""
        with self._lock:
            ranges = [TimeRange.coerce(s) for s in selections or ()]
            targets = [s for s in map(self.repository.get, self.selected_series) if s is not None]
            if not ranges or not targets:
                return None

            expanded = {
                s.id: expand_selections(
                    s.data, ranges, self.config.grid_size, self.config.value_precision
                )
                for s in targets
            }
            ids = _unique(sid for s in targets for sid in self._affected(s.id))
            before = self.repository.snapshot(ids)
            clamp = self._clamp_all()
            for s in targets:
                data = clip_negative(expanded[s.id]) if clamp else expanded[s.id]
                self.repository.set_data(s.id, data)
            for s in targets:
                self.aggregator.propagate(s.id, immediate=True)

            after = self.repository.snapshot(ids)
            op = self.history.record(
                "expand",
                ids,
                {"selections": [r.to_dict() for r in ranges]},
                before,
                after,
                self.selected_range,
            )
            self.clear_selection()
            self._emit_changed(ids)
            return op

    def delete_series(self, series_id: str) -> Operation | None:
        """Delete a series and, recursively, its children.

        Each removed child first has its contribution zeroed from its
        parent.  The entry keeps the removed series' metadata so undo can
        re-insert them.
        """
        with self._lock:
            series = self.repository.get(series_id)
            if series is None:
                return None

            doomed = [series_id, *self.repository.descendants(series_id)]
            ancestors = self.repository.ancestors(series_id)
            ids = doomed + ancestors
            before = self.repository.snapshot(ids)
            removed = [
                {
                    **self.repository.get(sid).to_dict(include_data=False),
                    "position": self.repository.position(sid),
                }
                for sid in doomed
            ]

            self._remove_tree(series_id)
            parent_after = self.repository.snapshot(ancestors) or {}
            op = self.history.record(
                "delete",
                ids,
                {
                    "removed": removed,
                    "parentAfter": {
                        sid: points_to_records(points) for sid, points in parent_after.items()
                    },
                },
                before,
                None,
                self.selected_range,
            )
            self.selected_series = [sid for sid in self.selected_series if sid not in doomed]
            logger.info("Deleted %s and %d descendants", series_id, len(doomed) - 1)
            self._emit_changed(ids)
            return op

    def _remove_tree(self, series_id: str) -> None:
        for child in self.repository.children_of(series_id):
            self._remove_tree(child.id)
        series = self.repository.get(series_id)
        if series is None:
            return
        if series.parent_id is not None:
            zeros = [TimePoint(p.time, 0.0) for p in series.data]
            self.aggregator.propagate(series_id, zeros, immediate=True)
        self.repository.delete(series_id)

    # -- pattern search --

    def find_similar_patterns(self, series_id: str) -> list[Pattern]:
        """Search the context's reference corpus around the selection."""
        with self._lock:
            if self.selected_range is None or not series_id:
                return []
            source = self.repository.get(series_id)
            if source is None:
                return []
            return find_similar_patterns(
                source.data,
                self.selected_range,
                self.context.original_data,
                source_id=series_id,
                config=self.config.search,
            )

    # -- undo / redo --

    def undo(self) -> Operation | None:
        with self._lock:
            self.aggregator.flush()
            op = self.history.undo()
            if op is None:
                return None
            if op.type == "delete":
                self._reinsert(op)
            self.repository.restore(op.before_data)
            logger.info("Undid %s (%s)", op.type, op.id)
            self._emit_changed(op.series_ids)
            return op

    def redo(self) -> Operation | None:
        with self._lock:
            self.aggregator.flush()
            op = self.history.redo()
            if op is None:
                return None
            if op.type == "delete":
                self._redelete(op)
            else:
                self.repository.restore(op.after_data)
            logger.info("Redid %s (%s)", op.type, op.id)
            self._emit_changed(op.series_ids)
            return op

    def _reinsert(self, op: Operation) -> None:
        removed = sorted(op.params.get("removed", []), key=lambda m: m.get("position", 0))
        for meta in removed:
            if meta["id"] in self.repository:
                continue
            restored = Series.from_dict(meta)
            restored.data = list((op.before_data or {}).get(meta["id"], []))
            if not restored.data:
                continue
            self.repository.add(restored, position=meta.get("position"))

    def _redelete(self, op: Operation) -> None:
        for meta in reversed(op.params.get("removed", [])):
            self.repository.delete(meta["id"])
        parent_after = {
            sid: [TimePoint.from_dict(p) for p in points]
            for sid, points in op.params.get("parentAfter", {}).items()
        }
        self.repository.restore(parent_after)

    # -- history export --

    def export_history(self) -> dict[str, Any]:
        with self._lock:
            return self.history.export()

    def import_history(self, blob: dict) -> None:
        with self._lock:
            self.history.load(blob)

    # -- deferred work --

    def run_due(self) -> int:
        """Run due deferred propagations on a cooperative scheduler."""
        run_due = getattr(self.scheduler, "run_due", None)
        if run_due is None:
            return 0
        with self._lock:
            return run_due()

    def flush(self) -> list[str]:
        with self._lock:
            return self.aggregator.flush()
