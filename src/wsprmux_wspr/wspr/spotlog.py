"""Append-only JSON-lines spot log with an in-memory query cache.

Two streams are kept, each as one file per UTC day under ``spots_dir``:

* ``raw-YYYYMMDD.jsonl`` holds every spot received from every instance.
* ``deduped-YYYYMMDD.jsonl`` holds the winning spot of each dedup key plus
  ``{"type": "outcome", ...}`` records that update an entry's submission
  status once the uploader reports back.

Lines are never rewritten; outcome records are replayed over their entry
on load. Write failures are logged and never propagate to callers.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from wsprmux_core.timeutils import (
    CYCLE_SECONDS,
    cycle_start,
    format_cycle,
    isoformat_utc,
    parse_rfc3339,
)

from .spot import Spot

LOG = logging.getLogger(__name__)

RAW_STREAM = "raw"
DEDUPED_STREAM = "deduped"
DEDUPED_SOURCE = "deduped"
OUTCOME_TYPE = "outcome"
# Cycles this recent may still be in flight through the aggregator
GAP_SETTLE_SECONDS = 240


@dataclass
class GapInfo:
    source: str
    band: str
    gap_count: int
    total_cycles: int
    coverage_rate: float
    missing_cycles: list[str] = field(default_factory=list)
    missing_timestamps: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def spot_entry(spot: Spot, received_at: float) -> dict[str, Any]:
    """Serialisable form of a spot shared by both streams."""
    return {
        "timestamp": spot.epoch_time.astimezone(timezone.utc).isoformat(),
        "received_at": isoformat_utc(received_at),
        "instance": spot.instance_name,
        "callsign": spot.callsign,
        "locator": spot.locator,
        "snr": spot.snr,
        "frequency": spot.receiver_freq_hz,
        "tx_frequency": spot.frequency_hz,
        "band": spot.band,
        "mode": spot.mode,
        "dbm": spot.dbm,
        "drift": spot.drift,
        "dt": spot.dt,
        "country": spot.country,
    }


class SpotLog:
    def __init__(
        self,
        spots_dir: Path,
        retention_hours: int = 24,
        clock: Callable[[], float] = time.time,
        load: bool = True,
    ) -> None:
        self.spots_dir = Path(spots_dir)
        self.retention_s = retention_hours * 3600
        self._clock = clock
        self._raw_lock = threading.Lock()
        self._deduped_lock = threading.Lock()
        self._cache_lock = threading.Lock()
        # (epoch seconds, entry) pairs in arrival order
        self._raw: list[tuple[float, dict[str, Any]]] = []
        self._deduped: list[tuple[float, dict[str, Any]]] = []
        self._deduped_index: dict[str, dict[str, Any]] = {}
        self.write_errors = 0
        try:
            self.spots_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            LOG.exception("Failed to create spots directory %s", self.spots_dir)
        if load:
            self.load()

    # --- Paths --------------------------------------------------------------
    def day_path(self, stream: str, epoch_seconds: float) -> Path:
        day = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).strftime("%Y%m%d")
        return self.spots_dir / f"{stream}-{day}.jsonl"

    def _day_files(self, stream: str) -> list[tuple[datetime, Path]]:
        files: list[tuple[datetime, Path]] = []
        if not self.spots_dir.exists():
            return files
        for path in self.spots_dir.glob(f"{stream}-*.jsonl"):
            stamp = path.stem[len(stream) + 1 :]
            try:
                day = datetime.strptime(stamp, "%Y%m%d").replace(tzinfo=timezone.utc)
            except ValueError:
                continue
            files.append((day, path))
        return sorted(files)

    # --- Writing --------------------------------------------------------------
    def _append(self, lock: threading.Lock, path: Path, record: dict[str, Any]) -> bool:
        line = json.dumps(record, default=str) + "\n"
        with lock:
            try:
                with path.open("a", encoding="utf-8") as fh:
                    fh.write(line)
                    fh.flush()
            except OSError:
                self.write_errors += 1
                LOG.warning("Failed to append spot record to %s", path, exc_info=True)
                return False
        return True

    def write_raw(self, spot: Spot, received_at: float | None = None) -> None:
        now = self._clock() if received_at is None else received_at
        entry = spot_entry(spot, now)
        epoch = spot.epoch_seconds
        self._append(self._raw_lock, self.day_path(RAW_STREAM, epoch), entry)
        with self._cache_lock:
            self._raw.append((epoch, entry))

    def write_deduped(
        self,
        spot: Spot,
        window_start: int,
        submitted: bool = False,
        error: str = "",
    ) -> str:
        """Log the winning spot of a dedup key; return its entry id."""
        entry = spot_entry(spot, self._clock())
        entry_id = spot.entry_id
        entry.update(
            {
                "id": entry_id,
                "window_start": window_start,
                "submitted": submitted,
                "error": error,
            }
        )
        self._append(
            self._deduped_lock, self.day_path(DEDUPED_STREAM, window_start), entry
        )
        with self._cache_lock:
            self._deduped.append((spot.epoch_seconds, entry))
            self._deduped_index[entry_id] = entry
        return entry_id

    def record_outcome(self, spots: Iterable[Spot], submitted: bool, error: str = "") -> None:
        """Record the upload outcome of previously logged deduped spots."""
        now = self._clock()
        for spot in spots:
            entry_id = spot.entry_id
            record = {
                "type": OUTCOME_TYPE,
                "id": entry_id,
                "submitted": submitted,
                "error": error,
                "at": isoformat_utc(now),
            }
            self._append(
                self._deduped_lock,
                self.day_path(DEDUPED_STREAM, spot.window_start),
                record,
            )
            with self._cache_lock:
                entry = self._deduped_index.get(entry_id)
                if entry is not None:
                    entry["submitted"] = submitted
                    entry["error"] = error

    # --- Loading and maintenance ------------------------------------------------
    def load(self) -> None:
        """Rebuild the cache from day files inside the retention horizon."""
        cutoff = self._clock() - self.retention_s
        raw: list[tuple[float, dict[str, Any]]] = []
        deduped: list[tuple[float, dict[str, Any]]] = []
        index: dict[str, dict[str, Any]] = {}

        for _day, path in self._day_files(RAW_STREAM):
            for record in self._read_lines(path):
                epoch = _entry_epoch(record)
                if epoch is not None and epoch >= cutoff:
                    raw.append((epoch, record))

        for _day, path in self._day_files(DEDUPED_STREAM):
            for record in self._read_lines(path):
                if record.get("type") == OUTCOME_TYPE:
                    entry = index.get(str(record.get("id")))
                    if entry is not None:
                        entry["submitted"] = bool(record.get("submitted"))
                        entry["error"] = str(record.get("error") or "")
                    continue
                epoch = _entry_epoch(record)
                if epoch is None or epoch < cutoff:
                    continue
                record.setdefault("submitted", False)
                record.setdefault("error", "")
                deduped.append((epoch, record))
                if record.get("id"):
                    index[str(record["id"])] = record

        with self._cache_lock:
            self._raw = raw
            self._deduped = deduped
            self._deduped_index = index
        if raw or deduped:
            LOG.info(
                "Loaded %d raw and %d deduped spots from %s",
                len(raw),
                len(deduped),
                self.spots_dir,
            )

    def _read_lines(self, path: Path) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        try:
            with path.open("r", encoding="utf-8") as fh:
                for lineno, line in enumerate(fh, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except ValueError:
                        LOG.warning("Skipping malformed line %s:%d", path.name, lineno)
                        continue
                    if isinstance(record, dict):
                        records.append(record)
        except OSError:
            LOG.warning("Failed to read spot file %s", path, exc_info=True)
        return records

    def prune(self) -> int:
        """Drop cache entries and day files older than the retention horizon."""
        cutoff = self._clock() - self.retention_s
        with self._cache_lock:
            before = len(self._raw) + len(self._deduped)
            self._raw = [item for item in self._raw if item[0] >= cutoff]
            self._deduped = [item for item in self._deduped if item[0] >= cutoff]
            self._deduped_index = {
                entry["id"]: entry for _epoch, entry in self._deduped if "id" in entry
            }
            dropped = before - len(self._raw) - len(self._deduped)

        # A day file is expired once the whole day lies before the cutoff
        for stream, lock in (
            (RAW_STREAM, self._raw_lock),
            (DEDUPED_STREAM, self._deduped_lock),
        ):
            with lock:
                for day, path in self._day_files(stream):
                    if day.timestamp() + 86400 <= cutoff:
                        try:
                            path.unlink()
                            LOG.info("Removed expired spot file %s", path.name)
                        except OSError:
                            LOG.warning("Failed to remove %s", path, exc_info=True)
        return dropped

    def clear(self) -> int:
        """Delete every spot file and empty the cache. Returns files removed."""
        removed = 0
        with self._raw_lock, self._deduped_lock, self._cache_lock:
            self._raw = []
            self._deduped = []
            self._deduped_index = {}
            if self.spots_dir.exists():
                for path in sorted(self.spots_dir.glob("*.jsonl")):
                    try:
                        path.unlink()
                        removed += 1
                    except OSError:
                        LOG.warning("Failed to delete spot file %s", path, exc_info=True)
        LOG.info("Cleared spot log (%d files removed)", removed)
        return removed

    # --- Queries ----------------------------------------------------------------
    def get_raw(
        self,
        instance: str | None = None,
        band: str | None = None,
        start: float | None = None,
        end: float | None = None,
    ) -> list[dict[str, Any]]:
        with self._cache_lock:
            items = list(self._raw)
        return [
            dict(entry)
            for epoch, entry in items
            if (instance in (None, "", "all") or entry.get("instance") == instance)
            and _matches(entry, epoch, band, start, end)
        ]

    def get_deduped(
        self,
        band: str | None = None,
        start: float | None = None,
        end: float | None = None,
        submitted: bool | None = None,
    ) -> list[dict[str, Any]]:
        with self._cache_lock:
            items = [(epoch, dict(entry)) for epoch, entry in self._deduped]
        return [
            entry
            for epoch, entry in items
            if _matches(entry, epoch, band, start, end)
            and (submitted is None or bool(entry.get("submitted")) == submitted)
        ]

    def list_instances(self) -> list[str]:
        with self._cache_lock:
            return sorted({str(entry.get("instance") or "") for _e, entry in self._raw})

    def analyze_gaps(self, hours_back: int) -> dict[str, list[GapInfo]]:
        """Report missing WSPR cycles per source and band.

        Sources are every instance seen in the raw stream plus ``"deduped"``.
        Only (source, band) pairs with at least one spot in range are
        reported; pairs with full coverage are included with zero gaps.
        """
        end = cycle_start(self._clock() - GAP_SETTLE_SECONDS)
        start = cycle_start(end - hours_back * 3600)
        total = (end - start) // CYCLE_SECONDS
        expected = range(start, end, CYCLE_SECONDS)

        seen: dict[tuple[str, str], set[int]] = {}
        with self._cache_lock:
            for epoch, entry in self._raw:
                cycle = cycle_start(epoch)
                if start <= cycle < end:
                    key = (str(entry.get("instance") or ""), str(entry.get("band")))
                    seen.setdefault(key, set()).add(cycle)
            for epoch, entry in self._deduped:
                cycle = cycle_start(epoch)
                if start <= cycle < end:
                    key = (DEDUPED_SOURCE, str(entry.get("band")))
                    seen.setdefault(key, set()).add(cycle)

        result: dict[str, list[GapInfo]] = {}
        for (source, band), cycles in sorted(seen.items()):
            missing = [cycle for cycle in expected if cycle not in cycles]
            coverage = (total - len(missing)) / total * 100.0 if total else 0.0
            result.setdefault(source, []).append(
                GapInfo(
                    source=source,
                    band=band,
                    gap_count=len(missing),
                    total_cycles=total,
                    coverage_rate=coverage,
                    missing_cycles=[format_cycle(cycle) for cycle in missing],
                    missing_timestamps=missing,
                )
            )
        LOG.debug(
            "Gap analysis %s..%s: %d cycles, %d source/band pairs",
            isoformat_utc(start),
            isoformat_utc(end),
            total,
            len(seen),
        )
        return result


def _entry_epoch(entry: dict[str, Any]) -> float | None:
    parsed = parse_rfc3339(entry.get("timestamp"))
    return parsed.timestamp() if parsed is not None else None


def _matches(
    entry: dict[str, Any],
    epoch: float,
    band: str | None,
    start: float | None,
    end: float | None,
) -> bool:
    if band not in (None, "", "all") and entry.get("band") != band:
        return False
    if start is not None and epoch < start:
        return False
    if end is not None and epoch > end:
        return False
    return True
