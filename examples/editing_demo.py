"""Demo: Editing a Decomposed Daily Series

This script walks through a short editing session: a parent series with
lf/mf/hf children, a few edits, a pattern search and undo/redo.
"""

import numpy as np
import pandas as pd
from series_editor import DatasetContext, Series, SeriesEditor, configure_logging
from series_editor.grid import grid_times
from series_editor.history import format_operation_history
from series_editor.series import from_arrays

configure_logging()

print("=" * 70)
print("Series Editor - Demo")
print("=" * 70)

# Build a decomposition family on the 1440-point grid
print("\n1. Creating parent series with three bands...")
t = grid_times()
lf = 100 + 20 * np.sin(2 * np.pi * t / 24)
mf = 10 * np.cos(2 * np.pi * t / 6)
hf = np.random.default_rng(0).normal(0, 1, len(t))

editor = SeriesEditor(context=DatasetContext(current_dataset="electricity"))
editor.add_series(Series(id="demand", data=from_arrays(t, lf + mf + hf)))
for band, values in (("lf", lf), ("mf", mf), ("hf", hf)):
    editor.add_series(Series(id=f"demand_{band}", data=from_arrays(t, values), type=band, parent_id="demand"))
print(f"   - Series: {[s.id for s in editor.series]}")
print(f"   - Points per series: {len(editor.get_series('demand').data)}")

# Edit the low-frequency band
print("\n2. Raising the morning peak of the lf band...")
editor.set_selection((7.0, 10.0), ["demand_lf"])
editor.move("demand_lf", dy=15.0)
editor.apply_curve("demand_lf", [{"x": 0.0, "y": 1.0}, {"x": 0.5, "y": 1.2}, {"x": 1.0, "y": 1.0}])
parent = editor.get_series("demand").values()
children = sum(editor.get_series(f"demand_{b}").values() for b in ("lf", "mf", "hf"))
print(f"   - Selection now covers: {editor.selected_series}")
print(f"   - Max |parent - sum(children)|: {np.abs(parent - children).max():.2e}")

# Search a synthetic reference corpus
print("\n3. Searching a reference corpus for replacement patterns...")
corpus = []
for user, level in (("u1", 110.0), ("u2", 125.0), ("u3", 400.0)):
    stamps = pd.date_range("2024-01-01", periods=2 * 1440, freq="min")
    values = level + 5 * np.sin(2 * np.pi * np.arange(len(stamps)) / 1440)
    corpus.append({
        "id": user,
        "data": [{"time": s.strftime("%Y-%m-%d %H:%M:%S"), "value": v} for s, v in zip(stamps, values)],
    })
editor.context.set_original_data(corpus)
patterns = editor.find_similar_patterns("demand_lf")
print(f"   - Patterns found: {len(patterns)}")
for p in patterns[:3]:
    print(f"     {p.source_name}: {p.start:.2f}-{p.end:.2f}h, similarity={p.similarity:.3f}")

if patterns:
    editor.replace_with_pattern(patterns[0], "demand_lf")
    print(f"   - Replaced selection with {patterns[0].series_id}")

# Undo / redo
print("\n4. Undo and redo...")
before = editor.get_series("demand_lf").values().copy()
editor.undo()
editor.redo()
np.testing.assert_allclose(editor.get_series("demand_lf").values(), before)
print(f"   - Can undo: {editor.can_undo}, can redo: {editor.can_redo}")

print("\n5. Operation history...")
for row in format_operation_history(editor.history.operations):
    print(f"   [{row['timestamp']}] {row['description']} {row['timeRange']}")

blob = editor.export_history()
print(f"   - Exported {len(blob['operations'])} operations, pointer at {blob['currentIndex']}")

print("\n" + "=" * 70)
print("Demo complete!")
print("=" * 70)
