from __future__ import annotations

import logging
from typing import Iterable, Iterator

from series_editor.exceptions import DuplicateSeriesError, SeriesNotFoundError
from series_editor.grid import GRID_SIZE, VALUE_PRECISION, ensure_data_points, is_on_grid
from series_editor.series import Series, TimePoint, copy_points

logger = logging.getLogger(__name__)

Snapshot = dict[str, list[TimePoint]]


def _qualifiers_match(existing: Series, new: Series) -> bool:
    """Identity test used for de-duplication.

    Records without date and variable match on id alone.  Otherwise a
    qualifier takes part in the comparison only when both records carry it.
    """
    if existing.id != new.id:
        return False
    if new.date is None and new.variable is None:
        return True
    for a, b in ((existing.date, new.date), (existing.variable, new.variable)):
        if a is not None and b is not None and a != b:
            return False
    return True


class SeriesRepository:
    """In-memory collection of series indexed by id.

    Parent/child links are held only as ``parent_id`` strings; children are
    found by querying, never through stored object references.
    """

    def __init__(self, grid_size: int = GRID_SIZE, precision: int = VALUE_PRECISION):
        self.grid_size = grid_size
        self.precision = precision
        self._index: dict[str, Series] = {}
        self._order: list[str] = []

    # -- queries --

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[Series]:
        return (self._index[sid] for sid in self._order)

    def __contains__(self, series_id: object) -> bool:
        return series_id in self._index

    def ids(self) -> list[str]:
        return list(self._order)

    def get(self, series_id: str | None) -> Series | None:
        if series_id is None:
            return None
        return self._index.get(series_id)

    def require(self, series_id: str) -> Series:
        series = self._index.get(series_id)
        if series is None:
            raise SeriesNotFoundError(series_id)
        return series

    def position(self, series_id: str) -> int:
        return self._order.index(series_id)

    def children_of(self, parent_id: str) -> list[Series]:
        return [s for s in self if s.parent_id == parent_id]

    def has_children(self, series_id: str) -> bool:
        return any(s.parent_id == series_id for s in self._index.values())

    def parent_of(self, series: Series) -> Series | None:
        return self.get(series.parent_id)

    def ancestors(self, series_id: str) -> list[str]:
        """Ids from the direct parent upwards, stopping at missing links."""
        chain: list[str] = []
        current = self.get(series_id)
        while current is not None and current.parent_id is not None:
            parent = self.get(current.parent_id)
            if parent is None or parent.id in chain or parent.id == series_id:
                break
            chain.append(parent.id)
            current = parent
        return chain

    def descendants(self, series_id: str) -> list[str]:
        """Ids below *series_id*, depth-first, parents before children."""
        out: list[str] = []
        stack = [c.id for c in reversed(self.children_of(series_id))]
        while stack:
            sid = stack.pop()
            if sid in out or sid == series_id:
                continue
            out.append(sid)
            stack.extend(c.id for c in reversed(self.children_of(sid)))
        return out

    # -- mutation --

    def _grid(self, data: list[TimePoint]) -> list[TimePoint]:
        if is_on_grid(data, self.grid_size):
            return copy_points(data)
        return ensure_data_points(data, self.grid_size, self.precision)

    def add(self, series: Series, position: int | None = None) -> Series:
        """Insert *series*, or merge it into a matching existing record.

        A merge replaces data, visibility and type and fills in missing
        date/variable; other metadata on the stored record is kept.
        Data is resampled onto the grid either way.
        """
        data = self._grid(series.data)

        existing = self._index.get(series.id)
        if existing is not None:
            if not _qualifiers_match(existing, series):
                raise DuplicateSeriesError(
                    f"series {series.id!r} already held for "
                    f"date={existing.date!r}, variable={existing.variable!r}"
                )
            if series.date is not None and existing.date is None:
                existing.date = series.date
            if series.variable is not None and existing.variable is None:
                existing.variable = series.variable
            existing.data = data
            existing.visible = series.visible
            retyped = series.type and series.type != existing.type
            existing.type = series.type or existing.type
            if retyped and existing.parent_id is not None:
                self._order_siblings(existing.parent_id)
            return existing

        stored = series.copy()
        stored.data = data
        self._index[stored.id] = stored
        if position is None or position >= len(self._order):
            self._order.append(stored.id)
        else:
            self._order.insert(max(0, position), stored.id)
        if stored.parent_id is not None:
            self._order_siblings(stored.parent_id)
        return stored

    def _order_siblings(self, parent_id: str) -> None:
        slots = [i for i, sid in enumerate(self._order) if self._index[sid].parent_id == parent_id]
        ranked = sorted(
            (self._order[i] for i in slots), key=lambda sid: self._index[sid].sibling_rank
        )
        for slot, sid in zip(slots, ranked):
            self._order[slot] = sid

    def delete(self, series_id: str) -> Series | None:
        """Remove one series.  Children are left in place."""
        series = self._index.pop(series_id, None)
        if series is not None:
            self._order.remove(series_id)
        return series

    def set_data(self, series_id: str, data: Iterable[TimePoint]) -> Series | None:
        series = self._index.get(series_id)
        if series is None:
            return None
        series.data = self._grid(list(data))
        return series

    def import_batch(self, batch: Iterable[Series | dict]) -> list[str]:
        """Replace data of known ids and add the rest as visible originals."""
        touched: list[str] = []
        for item in batch:
            imported = item if isinstance(item, Series) else Series.from_dict(item)
            existing = self._index.get(imported.id)
            if existing is not None:
                existing.data = self._grid(imported.data)
            else:
                self.add(Series(id=imported.id, data=imported.data, type="original", visible=True))
            touched.append(imported.id)
        return touched

    def clear(self) -> None:
        self._index.clear()
        self._order.clear()

    # -- snapshots --

    def snapshot(self, series_ids: Iterable[str]) -> Snapshot | None:
        """Independent copies of the data of each known id, or None."""
        ids = list(series_ids)
        if not ids:
            return None
        return {
            sid: copy_points(self._index[sid].data) for sid in ids if sid in self._index
        }

    def restore(self, snapshot: Snapshot | None) -> list[str]:
        """Write snapshot data back verbatim.  Unknown ids are skipped."""
        if not snapshot:
            return []
        restored = []
        for sid, data in snapshot.items():
            series = self._index.get(sid)
            if series is None:
                logger.debug("Skipping restore of missing series %s", sid)
                continue
            series.data = copy_points(data)
            restored.append(sid)
        return restored
