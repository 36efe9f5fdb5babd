"""Canonical spot record shared by ingest, aggregation, logging and upload."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from functools import cached_property

from wsprmux_core.timeutils import cycle_start

from .bands import frequency_to_band

HASHED_CALLSIGN = "<...>"
WSPR_MODE = "WSPR"

DedupKey = tuple[str, str, int, str]


@dataclass(frozen=True)
class Spot:
    """One receiver's decode of one transmitter in one WSPR cycle.

    ``frequency_hz`` is the transmitter frequency (MEPT ``tqrg``);
    ``receiver_freq_hz`` is the receiver tuned frequency used for band
    classification.
    """

    callsign: str
    locator: str
    snr: int
    frequency_hz: int
    receiver_freq_hz: int
    dt: float
    drift: int
    dbm: int
    epoch_time: datetime
    mode: str = WSPR_MODE
    instance_name: str = ""
    country: str = ""

    @cached_property
    def band(self) -> str:
        return frequency_to_band(self.receiver_freq_hz)

    @property
    def epoch_seconds(self) -> float:
        return self.epoch_time.timestamp()

    @property
    def window_start(self) -> int:
        return cycle_start(self.epoch_seconds)

    @property
    def dedup_key(self) -> DedupKey:
        return (self.callsign, self.mode, self.window_start, self.band)

    @property
    def entry_id(self) -> str:
        """Stable identifier of the deduped log entry for this spot's key."""
        return f"{self.callsign}_{self.mode}_{self.window_start}_{self.band}"
