from __future__ import annotations


class SeriesEditorError(Exception): ...


class GridError(SeriesEditorError, ValueError): ...


class GeometryError(SeriesEditorError, ValueError): ...


class DegenerateRangeError(GeometryError): ...


class SeriesNotFoundError(SeriesEditorError, KeyError): ...


class DuplicateSeriesError(SeriesEditorError): ...


class HistoryError(SeriesEditorError): ...


class TransportError(SeriesEditorError): ...


def require(
    condition: bool, message: str, exc: type[SeriesEditorError] = SeriesEditorError
) -> None:
    """Raise the given exception if condition is False."""
    if not condition:
        raise exc(message)
