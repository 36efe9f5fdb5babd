"""Rolling statistics over ingested and deduplicated spots.

The engine keeps per-window, per-instance, per-band, per-country and
SNR-history views for the operator dashboard. All state sits behind one
re-entrant lock; dashboard reads and aggregator writes share it.

Snapshots are plain JSON with sorted keys, so saving a freshly loaded
snapshot reproduces the same document apart from ``saved_at``.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from wsprmux_core.timeutils import cycle_start, isoformat_utc

from .geo import haversine_km, maidenhead_to_latlon

LOG = logging.getLogger(__name__)

RECENT_CALLSIGNS = 10
DEFAULT_HISTORY_WINDOWS = 720
SUBMITTER_STAT_KEYS = ("successful", "failed", "retries")


@dataclass(slots=True)
class BandInstanceStats:
    total_spots: int = 0
    unique_spots: int = 0
    best_snr_wins: int = 0
    tied_snr: int = 0
    tied_with: dict[str, int] = field(default_factory=dict)
    duplicates_with: dict[str, int] = field(default_factory=dict)
    total_snr: int = 0
    snr_count: int = 0
    min_distance: float = 0.0
    max_distance: float = 0.0
    total_distance: float = 0.0
    distance_count: int = 0

    @property
    def average_snr(self) -> float:
        return self.total_snr / self.snr_count if self.snr_count else 0.0

    @property
    def average_distance(self) -> float:
        return self.total_distance / self.distance_count if self.distance_count else 0.0

    def add_distance(self, km: float) -> None:
        if self.distance_count == 0:
            self.min_distance = km
            self.max_distance = km
        else:
            self.min_distance = min(self.min_distance, km)
            self.max_distance = max(self.max_distance, km)
        self.total_distance += km
        self.distance_count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_spots": self.total_spots,
            "unique_spots": self.unique_spots,
            "best_snr_wins": self.best_snr_wins,
            "tied_snr": self.tied_snr,
            "tied_with": dict(self.tied_with),
            "duplicates_with": dict(self.duplicates_with),
            "total_snr": self.total_snr,
            "snr_count": self.snr_count,
            "average_snr": self.average_snr,
            "min_distance": self.min_distance,
            "max_distance": self.max_distance,
            "total_distance": self.total_distance,
            "distance_count": self.distance_count,
            "average_distance": self.average_distance,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BandInstanceStats:
        return cls(
            total_spots=int(data.get("total_spots", 0)),
            unique_spots=int(data.get("unique_spots", 0)),
            best_snr_wins=int(data.get("best_snr_wins", 0)),
            tied_snr=int(data.get("tied_snr", 0)),
            tied_with={str(k): int(v) for k, v in (data.get("tied_with") or {}).items()},
            duplicates_with={
                str(k): int(v) for k, v in (data.get("duplicates_with") or {}).items()
            },
            total_snr=int(data.get("total_snr", 0)),
            snr_count=int(data.get("snr_count", 0)),
            min_distance=float(data.get("min_distance", 0.0)),
            max_distance=float(data.get("max_distance", 0.0)),
            total_distance=float(data.get("total_distance", 0.0)),
            distance_count=int(data.get("distance_count", 0)),
        )


@dataclass(slots=True)
class InstanceStats:
    name: str
    total_spots: int = 0
    unique_spots: int = 0
    best_snr_wins: int = 0
    tied_snr: int = 0
    band_stats: dict[str, BandInstanceStats] = field(default_factory=dict)
    last_report_time: float | None = None
    last_window_time: int | None = None
    recent_callsigns: list[str] = field(default_factory=list)

    def band(self, band: str) -> BandInstanceStats:
        stats = self.band_stats.get(band)
        if stats is None:
            stats = self.band_stats[band] = BandInstanceStats()
        return stats

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "total_spots": self.total_spots,
            "unique_spots": self.unique_spots,
            "best_snr_wins": self.best_snr_wins,
            "tied_snr": self.tied_snr,
            "band_stats": {band: stats.to_dict() for band, stats in self.band_stats.items()},
            "last_report_time": self.last_report_time,
            "last_window_time": self.last_window_time,
            "recent_callsigns": list(self.recent_callsigns),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InstanceStats:
        last_report = data.get("last_report_time")
        last_window = data.get("last_window_time")
        return cls(
            name=str(data.get("name", "")),
            total_spots=int(data.get("total_spots", 0)),
            unique_spots=int(data.get("unique_spots", 0)),
            best_snr_wins=int(data.get("best_snr_wins", 0)),
            tied_snr=int(data.get("tied_snr", 0)),
            band_stats={
                str(band): BandInstanceStats.from_dict(stats)
                for band, stats in (data.get("band_stats") or {}).items()
            },
            last_report_time=float(last_report) if last_report is not None else None,
            last_window_time=int(last_window) if last_window is not None else None,
            recent_callsigns=[str(c) for c in data.get("recent_callsigns") or []],
        )


@dataclass(slots=True)
class CountryStats:
    country: str
    band: str
    unique_callsigns: set[str] = field(default_factory=set)
    min_snr: int = 0
    max_snr: int = 0
    total_snr: int = 0
    count: int = 0

    def add(self, callsign: str, snr: int) -> None:
        if self.count == 0:
            self.min_snr = snr
            self.max_snr = snr
        else:
            self.min_snr = min(self.min_snr, snr)
            self.max_snr = max(self.max_snr, snr)
        self.unique_callsigns.add(callsign)
        self.total_snr += snr
        self.count += 1

    @property
    def average_snr(self) -> float:
        return self.total_snr / self.count if self.count else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "country": self.country,
            "band": self.band,
            "unique_callsigns": sorted(self.unique_callsigns),
            "min_snr": self.min_snr,
            "max_snr": self.max_snr,
            "total_snr": self.total_snr,
            "count": self.count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CountryStats:
        return cls(
            country=str(data.get("country", "")),
            band=str(data.get("band", "")),
            unique_callsigns={str(c) for c in data.get("unique_callsigns") or []},
            min_snr=int(data.get("min_snr", 0)),
            max_snr=int(data.get("max_snr", 0)),
            total_snr=int(data.get("total_snr", 0)),
            count=int(data.get("count", 0)),
        )


@dataclass(slots=True)
class MapSpot:
    """Where a transmitter was last heard from, for the map view."""

    callsign: str
    locator: str
    country: str = ""
    snr_by_band: dict[str, int] = field(default_factory=dict)
    last_heard: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "callsign": self.callsign,
            "locator": self.locator,
            "country": self.country,
            "bands": sorted(self.snr_by_band),
            "snr_by_band": dict(self.snr_by_band),
            "last_heard": self.last_heard,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MapSpot:
        return cls(
            callsign=str(data.get("callsign", "")),
            locator=str(data.get("locator", "")),
            country=str(data.get("country", "")),
            snr_by_band={str(k): int(v) for k, v in (data.get("snr_by_band") or {}).items()},
            last_heard=float(data.get("last_heard", 0.0)),
        )


@dataclass(slots=True)
class SnrHistoryPoint:
    window_start: int
    spot_count: int
    average_snr: float
    average_distance: float = 0.0
    distance_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_start": self.window_start,
            "spot_count": self.spot_count,
            "average_snr": self.average_snr,
            "average_distance": self.average_distance,
            "distance_count": self.distance_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SnrHistoryPoint:
        return cls(
            window_start=int(data["window_start"]),
            spot_count=int(data.get("spot_count", 0)),
            average_snr=float(data.get("average_snr", 0.0)),
            average_distance=float(data.get("average_distance", 0.0)),
            distance_count=int(data.get("distance_count", 0)),
        )


@dataclass(slots=True)
class WindowStats:
    window_start: int
    total_unique: int = 0
    duplicates_removed: int = 0
    failed_count: int = 0
    band_breakdown: dict[str, int] = field(default_factory=dict)
    duplicate_breakdown: dict[str, int] = field(default_factory=dict)
    unique_by_instance: dict[str, list[str]] = field(default_factory=dict)
    best_snr_by_instance: dict[str, int] = field(default_factory=dict)
    tied_snr_by_instance: dict[str, int] = field(default_factory=dict)
    finished_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_start": self.window_start,
            "total_unique": self.total_unique,
            "duplicates_removed": self.duplicates_removed,
            "failed_count": self.failed_count,
            "band_breakdown": dict(self.band_breakdown),
            "duplicate_breakdown": dict(self.duplicate_breakdown),
            "unique_by_instance": {k: list(v) for k, v in self.unique_by_instance.items()},
            "best_snr_by_instance": dict(self.best_snr_by_instance),
            "tied_snr_by_instance": dict(self.tied_snr_by_instance),
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WindowStats:
        finished = data.get("finished_at")
        return cls(
            window_start=int(data["window_start"]),
            total_unique=int(data.get("total_unique", 0)),
            duplicates_removed=int(data.get("duplicates_removed", 0)),
            failed_count=int(data.get("failed_count", 0)),
            band_breakdown=_int_map(data.get("band_breakdown")),
            duplicate_breakdown=_int_map(data.get("duplicate_breakdown")),
            unique_by_instance={
                str(k): [str(c) for c in v]
                for k, v in (data.get("unique_by_instance") or {}).items()
            },
            best_snr_by_instance=_int_map(data.get("best_snr_by_instance")),
            tied_snr_by_instance=_int_map(data.get("tied_snr_by_instance")),
            finished_at=float(finished) if finished is not None else None,
        )


def _int_map(value: Any) -> dict[str, int]:
    return {str(k): int(v) for k, v in (value or {}).items()}


@dataclass(slots=True)
class _WindowAccumulator:
    """Per-window counters gathered at ingest time, folded in at flush."""

    snr: dict[tuple[str, str], list[float]] = field(default_factory=dict)
    best_snr: dict[str, int] = field(default_factory=dict)
    tied_snr: dict[str, int] = field(default_factory=dict)


class StatisticsEngine:
    def __init__(
        self,
        receiver_locator: str | None = None,
        history_windows: int = DEFAULT_HISTORY_WINDOWS,
        retention_hours: int = 24,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self.history_windows = history_windows
        self.retention_s = retention_hours * 3600
        self._receiver = maidenhead_to_latlon(receiver_locator)
        if receiver_locator and self._receiver is None:
            LOG.warning("Receiver locator %r is invalid; distances disabled", receiver_locator)
        self._reset()

    def _reset(self) -> None:
        self._windows: list[WindowStats] = []
        self._instances: dict[str, InstanceStats] = {}
        self._countries: dict[tuple[str, str], CountryStats] = {}
        self._map_spots: dict[str, MapSpot] = {}
        self._snr_history: dict[str, dict[str, list[SnrHistoryPoint]]] = {}
        self._pending: dict[int, _WindowAccumulator] = {}
        self._current: WindowStats | None = None
        self.total_submitted = 0
        self.total_duplicates = 0
        self.total_unique = 0

    # --- Recording ---------------------------------------------------------------
    def _instance(self, name: str) -> InstanceStats:
        stats = self._instances.get(name)
        if stats is None:
            stats = self._instances[name] = InstanceStats(name=name)
        return stats

    def _accumulator(self, window_start: int | None) -> _WindowAccumulator:
        if window_start is None:
            window_start = cycle_start(self._clock())
        acc = self._pending.get(window_start)
        if acc is None:
            acc = self._pending[window_start] = _WindowAccumulator()
        return acc

    def distance_km(self, locator: str) -> float | None:
        if self._receiver is None:
            return None
        target = maidenhead_to_latlon(locator)
        if target is None:
            return None
        return haversine_km(self._receiver[0], self._receiver[1], target[0], target[1])

    def record_spot(
        self,
        instance: str,
        band: str,
        callsign: str,
        country: str,
        locator: str,
        snr: int,
        window_start: int | None = None,
    ) -> None:
        """Account for one ingested spot (before deduplication)."""
        distance = self.distance_km(locator) if locator else None
        now = float(self._clock())
        with self._lock:
            stats = self._instance(instance)
            stats.total_spots += 1
            stats.last_report_time = now
            band_stats = stats.band(band)
            band_stats.total_spots += 1
            band_stats.total_snr += snr
            band_stats.snr_count += 1
            if distance is not None:
                band_stats.add_distance(distance)

            stats.recent_callsigns.append(callsign)
            del stats.recent_callsigns[:-RECENT_CALLSIGNS]

            if country:
                key = (band, country)
                country_stats = self._countries.get(key)
                if country_stats is None:
                    country_stats = self._countries[key] = CountryStats(country, band)
                country_stats.add(callsign, snr)

            if locator:
                spot = self._map_spots.get(callsign)
                if spot is None:
                    spot = self._map_spots[callsign] = MapSpot(callsign, locator, country)
                spot.locator = locator
                if country:
                    spot.country = country
                best = spot.snr_by_band.get(band)
                if best is None or snr > best:
                    spot.snr_by_band[band] = snr
                spot.last_heard = now

            acc = self._accumulator(window_start).snr.setdefault((band, instance), [0, 0, 0.0, 0])
            acc[0] += snr
            acc[1] += 1
            if distance is not None:
                acc[2] += distance
                acc[3] += 1

    def record_best_snr(self, instance: str, band: str, window_start: int | None = None) -> None:
        with self._lock:
            stats = self._instance(instance)
            stats.best_snr_wins += 1
            stats.band(band).best_snr_wins += 1
            acc = self._accumulator(window_start)
            acc.best_snr[instance] = acc.best_snr.get(instance, 0) + 1

    def record_tied_snr(
        self,
        instance_a: str,
        band: str,
        instance_b: str,
        window_start: int | None = None,
    ) -> None:
        """Count a best-SNR tie for both instances.

        A tie between an instance and itself (the same spot delivered twice)
        is counted once.
        """
        with self._lock:
            acc = self._accumulator(window_start)
            pairs = [(instance_a, instance_b)]
            if instance_a != instance_b:
                pairs.append((instance_b, instance_a))
            for this, other in pairs:
                stats = self._instance(this)
                stats.tied_snr += 1
                band_stats = stats.band(band)
                band_stats.tied_snr += 1
                band_stats.tied_with[other] = band_stats.tied_with.get(other, 0) + 1
                acc.tied_snr[this] = acc.tied_snr.get(this, 0) + 1

    def record_duplicate(self, instance_a: str, band: str, instance_b: str) -> None:
        with self._lock:
            pairs = [(instance_a, instance_b)]
            if instance_a != instance_b:
                pairs.append((instance_b, instance_a))
            for this, other in pairs:
                band_stats = self._instance(this).band(band)
                band_stats.duplicates_with[other] = band_stats.duplicates_with.get(other, 0) + 1

    def record_unique(self, instance: str, band: str, callsign: str) -> None:
        with self._lock:
            stats = self._instance(instance)
            stats.unique_spots += 1
            stats.band(band).unique_spots += 1
            if self._current is not None:
                self._current.unique_by_instance.setdefault(instance, []).append(callsign)

    def start_window(self, window_start: int) -> None:
        with self._lock:
            self._current = WindowStats(window_start=window_start)

    def finish_window(
        self,
        unique_count: int,
        duplicate_count: int,
        failed_count: int,
        band_breakdown: Mapping[str, int],
        duplicate_breakdown: Mapping[str, int] | None = None,
    ) -> WindowStats:
        """Commit the window opened by :meth:`start_window`."""
        now = float(self._clock())
        with self._lock:
            window = self._current or WindowStats(window_start=cycle_start(now))
            self._current = None
            window.total_unique = unique_count
            window.duplicates_removed = duplicate_count
            window.failed_count = failed_count
            window.band_breakdown = dict(band_breakdown)
            window.duplicate_breakdown = dict(duplicate_breakdown or {})
            window.finished_at = now

            acc = self._pending.pop(window.window_start, None) or _WindowAccumulator()
            window.best_snr_by_instance = dict(acc.best_snr)
            window.tied_snr_by_instance = dict(acc.tied_snr)

            for stats in self._instances.values():
                stats.last_window_time = window.window_start

            self._windows.append(window)
            self._windows.sort(key=lambda item: item.window_start)
            del self._windows[: -self.history_windows]

            self.total_unique += unique_count
            self.total_duplicates += duplicate_count
            self.total_submitted += unique_count - failed_count

            self._record_snr_history(window.window_start, acc)
        LOG.debug(
            "Window %s committed: %d unique, %d duplicates",
            isoformat_utc(window.window_start),
            unique_count,
            duplicate_count,
        )
        return window

    def _record_snr_history(self, window_start: int, acc: _WindowAccumulator) -> None:
        cutoff = self._clock() - self.retention_s
        for (band, instance), (total_snr, count, total_km, km_count) in sorted(acc.snr.items()):
            if not count:
                continue
            point = SnrHistoryPoint(
                window_start=window_start,
                spot_count=int(count),
                average_snr=total_snr / count,
                average_distance=total_km / km_count if km_count else 0.0,
                distance_count=int(km_count),
            )
            points = self._snr_history.setdefault(band, {}).setdefault(instance, [])
            points.append(point)
            points[:] = [p for p in points if p.window_start >= cutoff][-self.history_windows :]

    # --- Queries ----------------------------------------------------------------
    def instance_stats(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {name: stats.to_dict() for name, stats in sorted(self._instances.items())}

    def recent_windows(self, count: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            windows = self._windows if not count or count <= 0 else self._windows[-count:]
            return [window.to_dict() for window in windows]

    def country_stats(self) -> dict[str, list[dict[str, Any]]]:
        result: dict[str, list[dict[str, Any]]] = {}
        with self._lock:
            for (band, country), stats in sorted(self._countries.items()):
                result.setdefault(band, []).append(
                    {
                        "country": country,
                        "unique_callsigns": len(stats.unique_callsigns),
                        "min_snr": stats.min_snr,
                        "max_snr": stats.max_snr,
                        "avg_snr": stats.average_snr,
                        "total_spots": stats.count,
                    }
                )
        return result

    def current_spots(self) -> list[dict[str, Any]]:
        with self._lock:
            return [spot.to_dict() for _call, spot in sorted(self._map_spots.items())]

    def snr_history(self) -> dict[str, dict[str, list[dict[str, Any]]]]:
        cutoff = self._clock() - self.retention_s
        result: dict[str, dict[str, list[dict[str, Any]]]] = {}
        with self._lock:
            for band, instances in sorted(self._snr_history.items()):
                for instance, points in sorted(instances.items()):
                    recent = [p.to_dict() for p in points if p.window_start >= cutoff]
                    if recent:
                        result.setdefault(band, {})[instance] = recent
        return result

    def overall_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "total_submitted": self.total_submitted,
                "total_duplicates": self.total_duplicates,
                "total_unique": self.total_unique,
                "windows": len(self._windows),
                "instances": len(self._instances),
            }

    def instance_performance(self) -> dict[str, list[dict[str, int]]]:
        """Post-dedup spots credited to each instance per window."""
        cutoff = self._clock() - self.retention_s
        result: dict[str, list[dict[str, int]]] = {}
        with self._lock:
            for window in self._windows:
                if window.window_start < cutoff:
                    continue
                counts: dict[str, int] = {}
                for instance, callsigns in window.unique_by_instance.items():
                    counts[instance] = counts.get(instance, 0) + len(callsigns)
                for source in (window.best_snr_by_instance, window.tied_snr_by_instance):
                    for instance, count in source.items():
                        counts[instance] = counts.get(instance, 0) + count
                for instance, count in sorted(counts.items()):
                    if count > 0:
                        result.setdefault(instance, []).append(
                            {"window_start": window.window_start, "spot_count": count}
                        )
        return result

    def prune(self) -> None:
        """Drop windows, history points and map spots past the retention horizon."""
        cutoff = self._clock() - self.retention_s
        with self._lock:
            self._windows = [w for w in self._windows if w.window_start >= cutoff]
            for band in list(self._snr_history):
                instances = self._snr_history[band]
                for instance in list(instances):
                    kept = [p for p in instances[instance] if p.window_start >= cutoff]
                    if kept:
                        instances[instance] = kept
                    else:
                        del instances[instance]
                if not instances:
                    del self._snr_history[band]
            self._map_spots = {
                call: spot for call, spot in self._map_spots.items() if spot.last_heard >= cutoff
            }
            self._pending = {
                start: acc for start, acc in self._pending.items() if start >= cutoff
            }

    def clear_all(self) -> None:
        with self._lock:
            self._reset()
        LOG.info("Statistics cleared")

    # --- Persistence --------------------------------------------------------------
    def snapshot(self, submitter_stats: Mapping[str, int] | None = None) -> dict[str, Any]:
        wsprnet = {key: int((submitter_stats or {}).get(key, 0)) for key in SUBMITTER_STAT_KEYS}
        with self._lock:
            return {
                "saved_at": isoformat_utc(self._clock()),
                "windows": [window.to_dict() for window in self._windows],
                "instances": {name: stats.to_dict() for name, stats in self._instances.items()},
                "country_stats": {
                    f"{band}_{country}": stats.to_dict()
                    for (band, country), stats in self._countries.items()
                },
                "map_spots": {call: spot.to_dict() for call, spot in self._map_spots.items()},
                "snr_history": {
                    band: {inst: [p.to_dict() for p in points] for inst, points in instances.items()}
                    for band, instances in self._snr_history.items()
                },
                "total_stats": {
                    "total_submitted": self.total_submitted,
                    "total_duplicates": self.total_duplicates,
                    "total_unique": self.total_unique,
                },
                "wsprnet_stats": wsprnet,
            }

    def save(self, path: Path, submitter_stats: Mapping[str, int] | None = None) -> bool:
        """Write a snapshot atomically. Returns False (and logs) on failure."""
        path = Path(path)
        try:
            text = json.dumps(self.snapshot(submitter_stats), sort_keys=True, indent=2)
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".stats_", dir=str(path.parent))
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(text + "\n")
                tmp_path.replace(path)
            finally:
                if tmp_path.exists():
                    tmp_path.unlink(missing_ok=True)
        except (OSError, TypeError, ValueError):
            LOG.warning("Failed to save statistics snapshot to %s", path, exc_info=True)
            return False
        LOG.debug("Statistics snapshot saved to %s", path)
        return True

    def load(self, path: Path) -> dict[str, int] | None:
        """Merge a snapshot into memory and return its submitter counters.

        Only windows strictly newer than every in-memory window are adopted.
        Instance, country, map and history views are adopted only when no
        window has been committed yet, so a stale snapshot never double counts.
        Returns None when the file is absent or unreadable.
        """
        path = Path(path)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            windows = [WindowStats.from_dict(item) for item in data.get("windows") or []]
            instances = {
                str(name): InstanceStats.from_dict(item)
                for name, item in (data.get("instances") or {}).items()
            }
            countries: dict[tuple[str, str], CountryStats] = {}
            for item in (data.get("country_stats") or {}).values():
                stats = CountryStats.from_dict(item)
                countries[(stats.band, stats.country)] = stats
            map_spots = {
                str(call): MapSpot.from_dict(item)
                for call, item in (data.get("map_spots") or {}).items()
            }
            history = {
                str(band): {
                    str(inst): [SnrHistoryPoint.from_dict(p) for p in points]
                    for inst, points in instances_map.items()
                }
                for band, instances_map in (data.get("snr_history") or {}).items()
            }
            totals = data.get("total_stats") or {}
            wsprnet = data.get("wsprnet_stats") or {}
            submitter = {key: int(wsprnet.get(key, 0)) for key in SUBMITTER_STAT_KEYS}
        except (OSError, ValueError, TypeError, KeyError, AttributeError):
            LOG.warning("Failed to load statistics snapshot %s", path, exc_info=True)
            return None

        with self._lock:
            cold = not self._windows
            newest = max((w.window_start for w in self._windows), default=None)
            adopted = [w for w in windows if newest is None or w.window_start > newest]
            self._windows.extend(adopted)
            self._windows.sort(key=lambda item: item.window_start)
            del self._windows[: -self.history_windows]
            if cold:
                self._instances = instances
                self._countries = countries
                self._map_spots = map_spots
                self._snr_history = history
                self.total_submitted = int(totals.get("total_submitted", 0))
                self.total_duplicates = int(totals.get("total_duplicates", 0))
                self.total_unique = int(totals.get("total_unique", 0))
        LOG.info(
            "Loaded statistics snapshot %s (%d windows adopted%s)",
            path,
            len(adopted),
            "" if cold else ", counters kept",
        )
        return submitter
