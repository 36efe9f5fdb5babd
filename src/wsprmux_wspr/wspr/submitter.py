"""WSPRNet MEPT bulk submitter with a batching worker and retry queue."""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Callable, Iterable, Optional

import requests

from wsprmux_core import __version__
from wsprmux_core.config import DEFAULT_WSPRNET_ENDPOINT

from .spot import HASHED_CALLSIGN, WSPR_MODE, Spot

LOG = logging.getLogger(__name__)

MAX_QUEUE_SPOTS = 10_000
MAX_BATCH_SIZE = 999
MAX_RETRIES = 3
RETRY_DELAYS_S = (120, 240, 360)
TIMEOUT_S = 30.0
STOP_TIMEOUT_S = 10.0

MEPT_LINE_FORMAT = "%s %s %3d %3d %5.2f %12s  %s %s %2d %11d %5d %4d"
RESPONSE_PATTERN = re.compile(r"(\d+)\s+(?:out of|spot.*added.*out of)\s+(\d+)")

OutcomeCallback = Callable[[list[Spot], bool, str], Any]


class SubmitterError(RuntimeError):
    """Base class for submit() refusals."""


class SubmitterQueueFull(SubmitterError):
    pass


class SubmitterNotRunning(SubmitterError):
    pass


@dataclass(frozen=True)
class BatchResult:
    accepted: int
    offered: int
    success: bool
    message: str = ""


@dataclass
class SubmitBatch:
    spots: list[Spot]
    retry_count: int = 0
    next_retry_time: float = 0.0


@dataclass
class SubmitterStats:
    successful: int = 0
    failed: int = 0
    retries: int = 0
    abandoned: int = 0
    batches_sent: int = 0
    last_error: Optional[str] = None
    last_batch_at: Optional[float] = None


def format_mept_line(spot: Spot) -> str:
    """Render one spot in the ALL_WSPR.TXT layout expected by meptspots.php."""
    when = spot.epoch_time.astimezone(timezone.utc)
    dt = spot.dt
    # "-0.00" is rejected by the server
    if -0.05 < dt < 0.0:
        dt = 0.0
    return MEPT_LINE_FORMAT % (
        when.strftime("%y%m%d"),
        when.strftime("%H%M"),
        1,
        spot.snr,
        dt,
        f"{spot.frequency_hz / 1_000_000:.7f}",
        spot.callsign,
        spot.locator[:4],
        spot.dbm,
        spot.drift,
        0,
        0,
    )


def build_mept(spots: Iterable[Spot]) -> str:
    return "\n".join(format_mept_line(spot) for spot in spots)


def parse_response(body: str, offered: int) -> BatchResult:
    """Classify a meptspots.php response body."""
    if "Upload limit" in body and "reached" in body:
        # Rate limited; a retry would only burn more quota
        return BatchResult(offered, offered, True, "upload limit reached")

    match = RESPONSE_PATTERN.search(body)
    if match:
        accepted = int(match.group(1))
        in_response = int(match.group(2))
        if in_response != offered:
            LOG.warning(
                "WSPRNet response mentions %d spots but %d were offered",
                in_response,
                offered,
            )
        if accepted == 0:
            return BatchResult(0, offered, False, f"0 of {offered} spots accepted")
        accepted = min(accepted, offered)
        return BatchResult(accepted, offered, True, f"{accepted} of {offered} accepted")

    if "Processing took" in body and "spot" not in body:
        return BatchResult(0, offered, False, "server added no spots")
    return BatchResult(0, offered, False, "unparseable response")


class WsprNetSubmitter:
    """Queue spots and upload them to WSPRNet in MEPT batches.

    One worker thread drains the primary queue in batches of up to 999 spots
    and replays failed batches from the retry queue once their delay has
    elapsed. ``on_outcome(spots, submitted, error)`` is called once per batch
    outcome so callers can record per-spot results.
    """

    def __init__(
        self,
        callsign: str,
        locator: str,
        program_name: str,
        program_version: str = "",
        dry_run: bool = False,
        endpoint: str = DEFAULT_WSPRNET_ENDPOINT,
        session: object | None = None,
        clock: Callable[[], float] | None = None,
        on_outcome: OutcomeCallback | None = None,
        batch_wait_s: float = 0.5,
        idle_sleep_s: float = 0.1,
        timeout_s: float = TIMEOUT_S,
    ) -> None:
        if not callsign or not locator or not program_name:
            raise ValueError("callsign, locator and program name are required")
        self.callsign = callsign
        self.locator = locator
        self.program_name = program_name
        self.program_version = program_version
        self.dry_run = dry_run
        self.endpoint = endpoint
        self.on_outcome = on_outcome
        self.batch_wait_s = batch_wait_s
        self.idle_sleep_s = idle_sleep_s
        self._timeout = timeout_s
        self._clock = clock or time.time
        self._session: Any = session or requests.Session()
        self._session.headers.setdefault("User-Agent", f"wsprmux/{__version__}")

        self._queue: deque[Spot] = deque()
        self._queue_lock = threading.Lock()
        self._retry: list[SubmitBatch] = []
        self._retry_lock = threading.Lock()
        self._stats = SubmitterStats()
        self._stats_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def version_field(self) -> str:
        if self.program_version:
            return f"{self.program_name}_{self.program_version}"
        return self.program_name

    @property
    def running(self) -> bool:
        return self._running

    # --- Lifecycle ------------------------------------------------------------
    def start(self) -> None:
        if self._running:
            return
        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(
            target=self._run, name="wsprnet-submitter", daemon=True
        )
        self._thread.start()
        LOG.info(
            "WSPRNet submitter started for %s (%s)%s",
            self.callsign,
            self.locator,
            " [dry run]" if self.dry_run else "",
        )

    def stop(self, timeout: float = STOP_TIMEOUT_S) -> None:
        """Stop the worker, then drain both queues until ``timeout`` expires.

        During the drain retry batches are sent immediately and a failure is
        final. Anything still queued at the deadline is abandoned.
        """
        if not self._running:
            return
        deadline = time.monotonic() + timeout
        self._running = False
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(max(0.0, deadline - time.monotonic()))
            if self._thread.is_alive():
                LOG.warning("WSPRNet worker did not stop before deadline")
            self._thread = None

        while time.monotonic() < deadline:
            batch = self._take_retry(force=True) or self._take_primary()
            if batch is None:
                break
            self._process(batch, draining=True)

        leftover = self._take_all()
        if leftover:
            LOG.warning("WSPRNet: abandoning %d queued spots at shutdown", len(leftover))
            with self._stats_lock:
                self._stats.abandoned += len(leftover)
            self._report(leftover, False, "abandoned at shutdown")

        stats = self.stats()
        LOG.info(
            "WSPRNet submitter stopped: successful=%d failed=%d retries=%d",
            stats["successful"],
            stats["failed"],
            stats["retries"],
        )

    # --- Queueing ---------------------------------------------------------------
    def submit(self, spot: Spot) -> bool:
        """Queue ``spot`` for upload.

        Returns False when the spot is silently filtered (non-WSPR mode,
        missing callsign or locator, hashed callsign). Raises
        SubmitterNotRunning before :meth:`start` and SubmitterQueueFull when
        the primary queue is at capacity.
        """
        if not self._running:
            raise SubmitterNotRunning("WSPRNet submitter not running")
        if spot.mode != WSPR_MODE:
            return False
        if not spot.callsign or not spot.locator or spot.callsign == HASHED_CALLSIGN:
            return False
        with self._queue_lock:
            if len(self._queue) >= MAX_QUEUE_SPOTS:
                raise SubmitterQueueFull("WSPRNet queue full")
            self._queue.append(spot)
        return True

    def queue_depths(self) -> dict[str, int]:
        with self._queue_lock:
            primary = len(self._queue)
        with self._retry_lock:
            retry_batches = len(self._retry)
            retry_spots = sum(len(batch.spots) for batch in self._retry)
        return {"primary": primary, "retry_batches": retry_batches, "retry_spots": retry_spots}

    def _take_retry(self, force: bool = False) -> Optional[SubmitBatch]:
        now = self._clock()
        with self._retry_lock:
            for index, batch in enumerate(self._retry):
                if force or batch.next_retry_time <= now:
                    return self._retry.pop(index)
        return None

    def _take_primary(self) -> Optional[SubmitBatch]:
        with self._queue_lock:
            if not self._queue:
                return None
            count = min(len(self._queue), MAX_BATCH_SIZE)
            spots = [self._queue.popleft() for _ in range(count)]
        return SubmitBatch(spots=spots)

    def _take_all(self) -> list[Spot]:
        with self._queue_lock:
            spots = list(self._queue)
            self._queue.clear()
        with self._retry_lock:
            for batch in self._retry:
                spots.extend(batch.spots)
            self._retry = []
        return spots

    # --- Worker -----------------------------------------------------------------
    def _run(self) -> None:
        while not self._stop_event.is_set():
            batch = self._take_retry()
            if batch is None:
                with self._queue_lock:
                    pending = bool(self._queue)
                if pending:
                    # let the rest of the flush arrive so it goes out in one post
                    self._stop_event.wait(self.batch_wait_s)
                    batch = self._take_primary()
            if batch is None:
                self._stop_event.wait(self.idle_sleep_s)
                continue
            try:
                self._process(batch)
            except Exception:
                LOG.exception("WSPRNet worker failed processing a batch")

    def _process(self, batch: SubmitBatch, draining: bool = False) -> BatchResult:
        was_retry = batch.retry_count > 0
        result = self.send_batch(batch.spots)
        with self._stats_lock:
            self._stats.batches_sent += 1
            self._stats.last_batch_at = self._clock()

        if result.success:
            error = ""
            if result.accepted < result.offered:
                error = f"partial: {result.accepted} of {result.offered} accepted"
                LOG.warning("WSPRNet: partial success, %s", error)
            if was_retry:
                LOG.info(
                    "WSPRNet: batch of %d spots sent after %d retries",
                    result.accepted,
                    batch.retry_count,
                )
            with self._stats_lock:
                self._stats.successful += result.accepted
            self._report(batch.spots, True, error)
            return result

        with self._stats_lock:
            self._stats.last_error = result.message

        if draining or batch.retry_count >= MAX_RETRIES:
            with self._stats_lock:
                self._stats.failed += len(batch.spots)
            LOG.error(
                "WSPRNet: giving up on batch of %d spots after %d retries: %s",
                len(batch.spots),
                batch.retry_count,
                result.message,
            )
            self._report(batch.spots, False, result.message or "upload failed")
            return result

        delay = RETRY_DELAYS_S[min(batch.retry_count, len(RETRY_DELAYS_S) - 1)]
        batch.retry_count += 1
        batch.next_retry_time = self._clock() + delay
        with self._retry_lock:
            queued = sum(len(item.spots) for item in self._retry)
            accepted = queued + len(batch.spots) <= MAX_QUEUE_SPOTS
            if accepted:
                self._retry.append(batch)
        if not accepted:
            with self._stats_lock:
                self._stats.failed += len(batch.spots)
            LOG.error("WSPRNet: retry queue full; dropping batch of %d spots", len(batch.spots))
            self._report(batch.spots, False, "retry queue full")
            return result

        with self._stats_lock:
            self._stats.retries += 1
        LOG.warning(
            "WSPRNet: failed to send batch of %d spots (%s); retry in %ds (attempt %d/%d)",
            len(batch.spots),
            result.message,
            delay,
            batch.retry_count,
            MAX_RETRIES,
        )
        return result

    def _report(self, spots: list[Spot], submitted: bool, error: str) -> None:
        if self.on_outcome is None or not spots:
            return
        try:
            self.on_outcome(spots, submitted, error)
        except Exception:
            LOG.exception("WSPRNet outcome callback failed")

    # --- HTTP -------------------------------------------------------------------
    def build_mept(self, spots: Iterable[Spot]) -> str:
        return build_mept(spots)

    def send_batch(self, spots: list[Spot]) -> BatchResult:
        """POST one MEPT batch and classify the response."""
        offered = len(spots)
        if self.dry_run:
            LOG.info("WSPRNet: [DRY RUN] would upload batch of %d spots", offered)
            return BatchResult(offered, offered, True, "dry run")

        mept = self.build_mept(spots)
        LOG.info("WSPRNet: uploading %d spots to %s", offered, self.endpoint)
        first = mept.split("\n", 1)[0]
        LOG.debug("WSPRNet: first spot: %s", first)

        started = time.monotonic()
        try:
            response = self._session.post(
                self.endpoint,
                data={
                    "version": self.version_field,
                    "call": self.callsign,
                    "grid": self.locator,
                },
                files={"allmept": ("spots.txt", mept.encode("utf-8"), "text/plain")},
                headers={"Connection": "Keep-Alive"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            LOG.warning("WSPRNet request failed: %s", exc)
            return BatchResult(0, offered, False, f"request error: {exc}")
        elapsed = time.monotonic() - started

        body = response.text or ""
        if response.status_code != 200:
            LOG.warning("WSPRNet HTTP %s after %.2fs", response.status_code, elapsed)
            return BatchResult(0, offered, False, f"HTTP {response.status_code}")

        result = parse_response(body, offered)
        if result.success:
            LOG.info("WSPRNet: %s in %.2fs", result.message, elapsed)
        else:
            LOG.warning(
                "WSPRNet: %s after %.2fs. Response: %s",
                result.message,
                elapsed,
                body.strip()[:200],
            )
        return result

    # --- Counters ---------------------------------------------------------------
    def stats(self) -> dict[str, int]:
        with self._stats_lock:
            return {
                "successful": self._stats.successful,
                "failed": self._stats.failed,
                "retries": self._stats.retries,
            }

    def status(self) -> dict[str, Any]:
        with self._stats_lock:
            info: dict[str, Any] = {
                "successful": self._stats.successful,
                "failed": self._stats.failed,
                "retries": self._stats.retries,
                "abandoned": self._stats.abandoned,
                "batches_sent": self._stats.batches_sent,
                "last_error": self._stats.last_error,
                "last_batch_at": self._stats.last_batch_at,
            }
        info.update(self.queue_depths())
        info["running"] = self._running
        info["dry_run"] = self.dry_run
        return info

    def set_stats(self, successful: int, failed: int, retries: int) -> None:
        with self._stats_lock:
            self._stats.successful = successful
            self._stats.failed = failed
            self._stats.retries = retries

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = SubmitterStats()
        LOG.info("WSPRNet statistics reset")
