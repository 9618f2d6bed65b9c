"""Chart query - bounded, anchored price series."""

from launchpad_indexer.chart.sampler import (
    ChartPoint,
    ChartQuery,
    ChartQueryError,
    ChartSeries,
    TokenNotFoundError,
    anchor_point,
    downsample,
    filter_noise,
)

__all__ = [
    "ChartPoint",
    "ChartQuery",
    "ChartQueryError",
    "ChartSeries",
    "TokenNotFoundError",
    "anchor_point",
    "downsample",
    "filter_noise",
]
