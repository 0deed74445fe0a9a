from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields


@dataclass
class SearchConfig:
    """Thresholds for boundary-similarity pattern search."""

    # Boundary differences at or beyond this score zero similarity
    max_value_diff: float = 200.0

    # Per-day candidate generation
    min_day_samples: int = 100
    candidate_windows: int = 200
    prefilter_fraction: float = 0.5

    # Acceptance
    min_left_similarity: float = 0.6
    min_similarity: float = 0.7  # combined score must be strictly above
    overlap_fraction: float = 0.3  # of the selection duration

    # Result shaping
    max_per_user: int = 3
    max_results: int = 10
    min_distinct_users: int = 5

    def __post_init__(self) -> None:
        if self.max_value_diff <= 0:
            raise ValueError("max_value_diff must be positive")
        if self.candidate_windows < 1:
            raise ValueError("candidate_windows must be at least 1")
        if not (0.0 < self.prefilter_fraction <= 1.0):
            raise ValueError(
                f"prefilter_fraction must be in (0, 1], got {self.prefilter_fraction}"
            )
        if self.max_per_user < 1 or self.max_results < 1:
            raise ValueError("max_per_user and max_results must be at least 1")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> SearchConfig:
        _reject_unknown(cls, d)
        return cls(**d)


@dataclass
class EditorConfig:
    # Canonical grid
    grid_size: int = 1440
    value_precision: int = 8

    # Value clamps
    value_ceiling: float = 15000.0
    non_negative_datasets: tuple[str, ...] = ("step", "electricity")
    clamp_policy: str = "all"  # "all" | "move"

    # History
    history_capacity: int = 100

    # Aggregation
    aggregation_interval: float = 0.025  # seconds
    closest_point_threshold: float = 0.01  # hours

    search: SearchConfig = field(default_factory=SearchConfig)

    def __post_init__(self) -> None:
        if self.grid_size < 2:
            raise ValueError(f"grid_size must be at least 2, got {self.grid_size}")
        if self.history_capacity < 1:
            raise ValueError("history_capacity must be at least 1")
        if self.aggregation_interval < 0:
            raise ValueError("aggregation_interval must be non-negative")
        if self.clamp_policy not in ("all", "move"):
            raise ValueError(
                f"clamp_policy must be 'all' or 'move', got {self.clamp_policy!r}"
            )
        self.non_negative_datasets = tuple(self.non_negative_datasets)
        if isinstance(self.search, dict):
            self.search = SearchConfig.from_dict(self.search)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["non_negative_datasets"] = list(self.non_negative_datasets)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> EditorConfig:
        _reject_unknown(cls, d)
        d = dict(d)
        if "search" in d and isinstance(d["search"], dict):
            d["search"] = SearchConfig.from_dict(d["search"])
        return cls(**d)


def _reject_unknown(cls: type, d: dict) -> None:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(d) - known)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {unknown}")


def default_config() -> EditorConfig:
    return EditorConfig()
