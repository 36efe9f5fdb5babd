"""Per-cycle deduplication of spots reported by several receivers.

Spots are grouped into 2-minute windows keyed by cycle start. Within a
window each (callsign, mode, window, band) key keeps only the spot with the
best SNR; on equal SNR the first arrival stays. A flush thread wakes shortly
after every even minute and hands windows that are at least 2 minutes old
to the spot log and the WSPRNet submitter.
"""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from collections import Counter
from typing import Any, Callable, Optional

from wsprmux_core.timeutils import CYCLE_SECONDS, format_cycle, seconds_until_next_cycle

from .spot import DedupKey, Spot
from .spotlog import SpotLog
from .statistics import StatisticsEngine, WindowStats
from .submitter import SubmitterError, SubmitterQueueFull, WsprNetSubmitter

LOG = logging.getLogger(__name__)

CHANNEL_CAPACITY = 1000
STALE_AFTER_S = 300
FLUSH_AFTER_S = CYCLE_SECONDS
LATE_AFTER_S = 2 * CYCLE_SECONDS
FLUSH_OFFSET_RANGE_S = (3, 20)
STOP_TIMEOUT_S = 10.0

FlushHook = Callable[[WindowStats], Any]


class WindowAggregator:
    def __init__(
        self,
        spot_log: SpotLog,
        statistics: StatisticsEngine,
        submitter: WsprNetSubmitter,
        clock: Callable[[], float] = time.time,
        channel_capacity: int = CHANNEL_CAPACITY,
        flush_offset_s: Optional[float] = None,
        on_flush: Optional[FlushHook] = None,
    ) -> None:
        self.spot_log = spot_log
        self.statistics = statistics
        self.submitter = submitter
        self.on_flush = on_flush
        self._clock = clock
        # Chosen once so parallel deployments spread their uploads
        self.flush_offset_s = (
            float(random.randint(*FLUSH_OFFSET_RANGE_S))
            if flush_offset_s is None
            else flush_offset_s
        )

        self._channel: queue.Queue[Spot] = queue.Queue(maxsize=channel_capacity)
        self._windows: dict[int, dict[DedupKey, Spot]] = {}
        self._windows_lock = threading.Lock()
        self._duplicates: dict[int, dict[str, list[Spot]]] = {}
        self._duplicates_lock = threading.Lock()
        # Window starts already handed off; a late spot must not reopen them
        self._flushed: set[int] = set()

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._counter_lock = threading.Lock()
        self.accepted = 0
        self.stale_dropped = 0
        self.late_dropped = 0
        self.channel_dropped = 0
        self.windows_flushed = 0
        self.spots_flushed = 0
        self.duplicates_removed = 0

    def _count(self, name: str, amount: int = 1) -> None:
        with self._counter_lock:
            setattr(self, name, getattr(self, name) + amount)

    # --- Lifecycle ------------------------------------------------------------
    def start(self) -> None:
        if self._threads:
            return
        self._stop_event.clear()
        for target, name in (
            (self._consume, "aggregator-ingest"),
            (self._flush_loop, "aggregator-flush"),
        ):
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        LOG.info("Aggregator started (flush offset %.0fs)", self.flush_offset_s)

    def stop(self, timeout: float = STOP_TIMEOUT_S) -> None:
        """Stop both threads, drain the spot channel and flush every window."""
        self._stop_event.set()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                LOG.warning("Aggregator thread %s did not stop in time", thread.name)
        self._threads = []

        drained = 0
        while True:
            try:
                spot = self._channel.get_nowait()
            except queue.Empty:
                break
            self.add_spot(spot)
            drained += 1
        if drained:
            LOG.info("Aggregator drained %d pending spots", drained)
        flushed = self.flush_all()
        LOG.info("Aggregator stopped (%d windows flushed at shutdown)", len(flushed))

    # --- Ingest -----------------------------------------------------------------
    def offer(self, spot: Spot) -> bool:
        """Queue a spot without blocking; drops it when the channel is full."""
        try:
            self._channel.put_nowait(spot)
        except queue.Full:
            self._count("channel_dropped")
            LOG.warning(
                "Spot channel full; dropping %s from %s", spot.callsign, spot.instance_name
            )
            return False
        return True

    def _consume(self) -> None:
        while not self._stop_event.is_set():
            try:
                spot = self._channel.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.add_spot(spot)
            except Exception:
                LOG.exception("Failed to aggregate spot %s", spot.callsign)

    def add_spot(self, spot: Spot) -> bool:
        """Record ``spot`` in its window. Returns False when it was dropped."""
        now = self._clock()
        age = now - spot.epoch_seconds
        if age >= STALE_AFTER_S:
            self._count("stale_dropped")
            LOG.warning(
                "Dropping stale spot %s from %s (%.0fs old)",
                spot.callsign,
                spot.instance_name,
                age,
            )
            return False

        window_start = spot.window_start
        band = spot.band
        key = spot.dedup_key
        stats = self.statistics
        # The flushed check and every side effect share one critical section
        with self._windows_lock, self._duplicates_lock:
            if window_start in self._flushed:
                self._count("late_dropped")
                LOG.warning(
                    "Dropping %s from %s: window %s already flushed",
                    spot.callsign,
                    spot.instance_name,
                    format_cycle(window_start),
                )
                return False
            self.spot_log.write_raw(spot, received_at=now)
            stats.record_spot(
                spot.instance_name,
                band,
                spot.callsign,
                spot.country,
                spot.locator,
                spot.snr,
                window_start=window_start,
            )
            window = self._windows.setdefault(window_start, {})
            existing = window.get(key)
            if existing is None:
                window[key] = spot
            else:
                rejected = self._duplicates.setdefault(window_start, {}).setdefault(
                    spot.callsign, []
                )
                if spot.snr > existing.snr:
                    window[key] = spot
                    rejected.append(existing)
                    stats.record_best_snr(spot.instance_name, band, window_start)
                elif spot.snr < existing.snr:
                    rejected.append(spot)
                    stats.record_best_snr(existing.instance_name, band, window_start)
                else:
                    # equal SNR: first arrival keeps the win
                    rejected.append(spot)
                    stats.record_tied_snr(
                        existing.instance_name, band, spot.instance_name, window_start
                    )
                stats.record_duplicate(spot.instance_name, band, existing.instance_name)
        self._count("accepted")
        return True

    # --- Flushing ---------------------------------------------------------------
    def _flush_loop(self) -> None:
        delay = seconds_until_next_cycle(self._clock()) + self.flush_offset_s
        LOG.info("First aggregator flush in %.1fs", delay)
        while not self._stop_event.wait(delay):
            try:
                self.flush_ready()
            except Exception:
                LOG.exception("Aggregator flush failed")
            # Ticks stay on cycle boundary plus offset regardless of flush time
            delay = seconds_until_next_cycle(self._clock()) + self.flush_offset_s

    def _take_windows(self, ready: Callable[[int], bool]) -> list[tuple[int, dict, dict]]:
        with self._windows_lock, self._duplicates_lock:
            starts = sorted(start for start in self._windows if ready(start))
            taken = []
            for start in starts:
                spots = self._windows.pop(start)
                duplicates = self._duplicates.pop(start, {})
                self._flushed.add(start)
                taken.append((start, spots, duplicates))
            # Spots for starts older than this fail the stale check anyway
            horizon = self._clock() - 2 * STALE_AFTER_S
            self._flushed = {start for start in self._flushed if start >= horizon}
        return taken

    def flush_ready(self) -> list[WindowStats]:
        """Flush every window at least 2 minutes old."""
        now = self._clock()
        taken = self._take_windows(lambda start: now - start >= FLUSH_AFTER_S)
        results = []
        for start, spots, duplicates in taken:
            if now - start > LATE_AFTER_S:
                LOG.warning(
                    "Flushing window %s late (%.0fs old)", format_cycle(start), now - start
                )
            results.append(self.flush_window(start, spots, duplicates))
        return results

    def flush_all(self) -> list[WindowStats]:
        """Flush every open window regardless of age."""
        taken = self._take_windows(lambda start: True)
        return [self.flush_window(start, spots, dups) for start, spots, dups in taken]

    def flush_window(
        self,
        window_start: int,
        spots: dict[DedupKey, Spot],
        duplicates: dict[str, list[Spot]],
    ) -> WindowStats:
        stats = self.statistics
        stats.start_window(window_start)

        winners = list(spots.values())
        rejected = [spot for group in duplicates.values() for spot in group]
        band_breakdown = Counter(spot.band for spot in winners)
        duplicate_breakdown = Counter(spot.band for spot in rejected)

        # A transmitter is unique to an instance when no other instance heard it
        for key, winner in spots.items():
            heard_by = {winner.instance_name}
            heard_by.update(
                dup.instance_name
                for dup in duplicates.get(winner.callsign, [])
                if dup.dedup_key == key
            )
            if len(heard_by) == 1:
                stats.record_unique(winner.instance_name, winner.band, winner.callsign)

        refused = 0
        for spot in sorted(winners, key=lambda item: (item.band, item.callsign)):
            self.spot_log.write_deduped(spot, window_start)
            try:
                queued = self.submitter.submit(spot)
            except SubmitterQueueFull:
                refused += 1
                LOG.warning("Submitter queue full; %s not uploaded", spot.callsign)
                self.spot_log.record_outcome([spot], False, "submitter queue full")
                continue
            except SubmitterError as exc:
                refused += 1
                LOG.warning("Submitter refused %s: %s", spot.callsign, exc)
                self.spot_log.record_outcome([spot], False, str(exc))
                continue
            if not queued:
                self.spot_log.record_outcome([spot], False, "not eligible for upload")

        window = stats.finish_window(
            len(winners),
            len(rejected),
            refused,
            dict(band_breakdown),
            dict(duplicate_breakdown),
        )
        self._count("windows_flushed")
        self._count("spots_flushed", len(winners))
        self._count("duplicates_removed", len(rejected))
        LOG.info(
            "Window %s: %d unique spots, %d duplicates removed (%s)",
            format_cycle(window_start),
            len(winners),
            len(rejected),
            ", ".join(f"{band}={count}" for band, count in sorted(band_breakdown.items()))
            or "no spots",
        )
        if self.on_flush is not None:
            try:
                self.on_flush(window)
            except Exception:
                LOG.exception("Flush hook failed for window %s", format_cycle(window_start))
        return window

    def status(self) -> dict[str, Any]:
        with self._windows_lock:
            active = len(self._windows)
            pending = sum(len(window) for window in self._windows.values())
        with self._counter_lock:
            counters = {
                "accepted": self.accepted,
                "stale_dropped": self.stale_dropped,
                "late_dropped": self.late_dropped,
                "channel_dropped": self.channel_dropped,
                "windows_flushed": self.windows_flushed,
                "spots_flushed": self.spots_flushed,
                "duplicates_removed": self.duplicates_removed,
            }
        return {
            "active_windows": active,
            "pending_spots": pending,
            "channel_depth": self._channel.qsize(),
            "flush_offset_s": self.flush_offset_s,
            **counters,
        }
