"""Source tracking for resolved configuration values."""

from .types import ConfigOrigin, SourceMap


class SourceTracker:
    """Records where each configuration value came from during resolution."""

    def __init__(self) -> None:
        self._origins: dict[str, ConfigOrigin] = {}

    def set_origin(self, field: str, origin: ConfigOrigin) -> None:
        self._origins[field] = origin

    def get_source_map(self) -> SourceMap:
        """A copy of the field-to-origin mapping."""
        return dict(self._origins)


def summarize_origins(source_map: SourceMap) -> dict[str, int]:
    """Count fields per origin, e.g. ``{"default": 15, "env": 2}``.

    Carries no values, so it is safe to log or report as a metric.
    """
    counts: dict[str, int] = {}
    for origin in source_map.values():
        counts[origin] = counts.get(origin, 0) + 1
    return counts
