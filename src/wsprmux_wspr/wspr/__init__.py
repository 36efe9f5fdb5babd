"""WSPR spot pipeline: ingest, windowed dedup, spot log, statistics, upload."""

from .aggregator import WindowAggregator
from .bands import frequency_to_band
from .ingest import SpotIngestor, SpotPayloadError, parse_spot_payload
from .service import AggregatorService
from .spot import Spot
from .spotlog import SpotLog
from .statistics import StatisticsEngine
from .submitter import WsprNetSubmitter

__all__ = [
    "AggregatorService",
    "Spot",
    "SpotIngestor",
    "SpotLog",
    "SpotPayloadError",
    "StatisticsEngine",
    "WindowAggregator",
    "WsprNetSubmitter",
    "frequency_to_band",
    "parse_spot_payload",
]
