"""Wire the spot log, statistics, submitter, aggregator and MQTT ingest."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from wsprmux_core.config import AggregatorConfig, default_storage
from wsprmux_telemetry.mqtt_subscriber import MqttSubscriber, make_subscriber_from_config

from .aggregator import WindowAggregator
from .country import CountryLookup, PrefixCountryTable
from .ingest import SpotIngestor
from .spotlog import SpotLog
from .statistics import StatisticsEngine, WindowStats
from .submitter import WsprNetSubmitter

LOG = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_S = 10.0

SubscriberFactory = Callable[[AggregatorConfig, list[str], Callable[[str, bytes], Any]], Any]


def _default_subscriber(
    cfg: AggregatorConfig, topics: list[str], handler: Callable[[str, bytes], Any]
) -> MqttSubscriber:
    return make_subscriber_from_config(cfg.mqtt, topics, handler)


class AggregatorService:
    """Own the component graph and its start/stop order."""

    def __init__(
        self,
        config: AggregatorConfig,
        spot_log: SpotLog,
        statistics: StatisticsEngine,
        submitter: WsprNetSubmitter,
        aggregator: WindowAggregator,
        ingestor: SpotIngestor,
        subscriber_factory: SubscriberFactory = _default_subscriber,
    ) -> None:
        self.config = config
        self.spot_log = spot_log
        self.statistics = statistics
        self.submitter = submitter
        self.aggregator = aggregator
        self.ingestor = ingestor
        self._subscriber_factory = subscriber_factory
        self.subscriber: Any = None
        self._stop_event = threading.Event()
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: AggregatorConfig,
        *,
        session: object | None = None,
        country_lookup: CountryLookup | None = None,
        subscriber_factory: SubscriberFactory = _default_subscriber,
    ) -> AggregatorService:
        storage = config.storage or default_storage()
        spot_log = SpotLog(storage.spots_dir, retention_hours=storage.retention_hours)
        statistics = StatisticsEngine(
            receiver_locator=config.receiver.locator,
            retention_hours=storage.retention_hours,
        )
        submitter = WsprNetSubmitter(
            callsign=config.receiver.callsign,
            locator=config.receiver.locator,
            program_name=config.wsprnet.program_name,
            program_version=config.wsprnet.program_version,
            dry_run=config.wsprnet.dry_run,
            endpoint=config.wsprnet.endpoint,
            session=session,
            on_outcome=spot_log.record_outcome,
            timeout_s=config.wsprnet.timeout_s,
        )
        aggregator = WindowAggregator(spot_log, statistics, submitter)
        if country_lookup is None and config.country_table is not None:
            try:
                country_lookup = PrefixCountryTable.from_file(config.country_table)
            except (OSError, ValueError):
                LOG.warning(
                    "Failed to load country table %s; countries disabled",
                    config.country_table,
                    exc_info=True,
                )
        ingestor = SpotIngestor(config.mqtt.instances, aggregator.offer, country_lookup)
        service = cls(
            config,
            spot_log,
            statistics,
            submitter,
            aggregator,
            ingestor,
            subscriber_factory=subscriber_factory,
        )
        aggregator.on_flush = service._after_flush
        return service

    @property
    def stats_file(self) -> Path:
        return (self.config.storage or default_storage()).stats_file

    def start(self) -> None:
        if self._started:
            return
        self._stop_event.clear()
        restored = self.statistics.load(self.stats_file)
        if restored:
            self.submitter.set_stats(
                restored.get("successful", 0),
                restored.get("failed", 0),
                restored.get("retries", 0),
            )
        try:
            self.submitter.start()
            self.aggregator.start()
            topics = self.ingestor.topics()
            self.subscriber = self._subscriber_factory(
                self.config, topics, self.ingestor.handle_message
            )
            self.subscriber.connect()
        except Exception:
            LOG.error("wsprmux failed to start; stopping started components")
            self._shutdown()
            raise
        self._started = True
        LOG.info("wsprmux running: %d topics subscribed", len(topics))

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._shutdown()
        LOG.info("wsprmux stopped")

    def _shutdown(self) -> None:
        # One deadline covers the aggregator and the submitter together
        deadline = time.monotonic() + SHUTDOWN_TIMEOUT_S
        self._stop_event.set()
        if self.subscriber is not None:
            self.subscriber.close()
        self.aggregator.stop(max(0.0, deadline - time.monotonic()))
        self.submitter.stop(max(0.0, deadline - time.monotonic()))
        self.save_statistics()

    def run_forever(self, poll_s: float = 1.0) -> None:
        """Start and block until :meth:`request_stop` or Ctrl+C, then stop."""
        try:
            self.start()
            while not self._stop_event.wait(poll_s):
                pass
        except KeyboardInterrupt:
            LOG.info("Interrupted by user")
        finally:
            self.stop()

    def request_stop(self) -> None:
        self._stop_event.set()

    def save_statistics(self) -> bool:
        return self.statistics.save(self.stats_file, self.submitter.stats())

    def _after_flush(self, window: WindowStats) -> None:
        self.save_statistics()
        self.statistics.prune()
        self.spot_log.prune()

    def status(self) -> dict[str, Any]:
        subscriber: Optional[dict[str, Any]] = None
        if self.subscriber is not None:
            subscriber = {
                "connected": bool(getattr(self.subscriber, "connected", False)),
                "messages_received": getattr(self.subscriber, "messages_received", 0),
            }
        return {
            "aggregator": self.aggregator.status(),
            "submitter": self.submitter.status(),
            "ingest": self.ingestor.status(),
            "subscriber": subscriber,
            "statistics": self.statistics.overall_stats(),
        }
