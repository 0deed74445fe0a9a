from series_editor.series import Series, TimePoint, TimeRange
from series_editor.config import EditorConfig, SearchConfig, default_config
from series_editor.exceptions import (
    DegenerateRangeError,
    DuplicateSeriesError,
    GeometryError,
    GridError,
    HistoryError,
    SeriesEditorError,
    SeriesNotFoundError,
    TransportError,
)
from series_editor.grid import ensure_data_points, find_closest_point_value, interpolate_value
from series_editor.repository import SeriesRepository
from series_editor.aggregation import CooperativeScheduler, ParentAggregator, ThreadingScheduler
from series_editor.search import Pattern, find_similar_patterns
from series_editor.history import Operation, OperationLog, format_operation_history
from series_editor.context import DatasetContext, EventBus
from series_editor.editor import SeriesEditor
from series_editor.logs import configure_logging

try:
    from importlib.metadata import version as _pkg_version
    __version__ = _pkg_version("series-editor")
except Exception:
    __version__ = "dev"  # fallback for editable/dev installs
__license__ = "MIT"

__all__ = [
    "Series",
    "TimePoint",
    "TimeRange",
    "EditorConfig",
    "SearchConfig",
    "default_config",
    "SeriesEditorError",
    "GridError",
    "GeometryError",
    "DegenerateRangeError",
    "SeriesNotFoundError",
    "DuplicateSeriesError",
    "HistoryError",
    "TransportError",
    "ensure_data_points",
    "interpolate_value",
    "find_closest_point_value",
    "SeriesRepository",
    "ParentAggregator",
    "CooperativeScheduler",
    "ThreadingScheduler",
    "Pattern",
    "find_similar_patterns",
    "Operation",
    "OperationLog",
    "format_operation_history",
    "DatasetContext",
    "EventBus",
    "SeriesEditor",
    "configure_logging",
]
