"""Tests for service wiring, start/stop ordering and persistence."""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from wsprmux_core.config import (
    AggregatorConfig,
    InstanceConfig,
    MqttConfig,
    ReceiverConfig,
    StorageConfig,
    WsprNetConfig,
)
from wsprmux_wspr.wspr import service as service_module
from wsprmux_wspr.wspr.service import AggregatorService


class FakeSubscriber:
    def __init__(self, topics, handler) -> None:
        self.topics = topics
        self.handler = handler
        self.connected = False
        self.messages_received = 0
        self.closed = False

    def connect(self):
        self.connected = True

    def close(self):
        self.closed = True
        self.connected = False


class DummySession:
    def __init__(self) -> None:
        self.headers: dict[str, str] = {}
        self.calls = []

    def post(self, *args, **kwargs):  # pragma: no cover - dry run never posts
        self.calls.append((args, kwargs))
        raise AssertionError("dry run must not post")


@pytest.fixture
def config(tmp_path: Path) -> AggregatorConfig:
    cfg = AggregatorConfig(
        receiver=ReceiverConfig(callsign="N0CALL", locator="JO01"),
        mqtt=MqttConfig(
            broker="mqtt.local",
            instances=[
                InstanceConfig(name="roof", topic_prefix="home/roof"),
                InstanceConfig(name="attic", topic_prefix="home/attic"),
            ],
        ),
        wsprnet=WsprNetConfig(dry_run=True),
        storage=StorageConfig(
            data_dir=tmp_path,
            spots_dir=tmp_path / "spots",
            stats_file=tmp_path / "wsprnet_stats.json",
        ),
    )
    cfg.validate()
    return cfg


def _payload(snr: int) -> bytes:
    return json.dumps(
        {
            "mode": "WSPR",
            "callsign": "W1ABC",
            "locator": "FN42",
            "snr": snr,
            "frequency": 7_040_100,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    ).encode("utf-8")


def _service(config):
    subscribers = []

    def factory(cfg, topics, handler):
        subscriber = FakeSubscriber(topics, handler)
        subscribers.append(subscriber)
        return subscriber

    service = AggregatorService.from_config(
        config, session=DummySession(), subscriber_factory=factory
    )
    return service, subscribers


def test_start_subscribes_every_instance(config):
    service, subscribers = _service(config)
    service.start()
    try:
        assert sorted(subscribers[0].topics) == [
            "home/attic/digital_modes/WSPR/+",
            "home/roof/digital_modes/WSPR/+",
        ]
        assert subscribers[0].connected
        assert service.status()["subscriber"]["connected"] is True
    finally:
        service.stop()
    assert subscribers[0].closed


def test_end_to_end_dedup_and_upload_on_shutdown(config):
    service, subscribers = _service(config)
    service.start()
    handler = subscribers[0].handler
    handler("home/roof/digital_modes/WSPR/40m", _payload(-15))
    handler("home/attic/digital_modes/WSPR/40m", _payload(-12))

    service.stop()

    deduped = service.spot_log.get_deduped()
    assert len(deduped) == 1
    assert deduped[0]["instance"] == "attic"
    assert deduped[0]["submitted"] is True
    assert service.submitter.stats()["successful"] == 1
    assert len(service.spot_log.get_raw()) == 2

    snapshot = json.loads(config.storage.stats_file.read_text(encoding="utf-8"))
    assert snapshot["wsprnet_stats"]["successful"] == 1
    assert snapshot["total_stats"]["total_unique"] == 1
    assert snapshot["total_stats"]["total_duplicates"] == 1


def test_restart_restores_submitter_counters(config):
    service, _ = _service(config)
    service.start()
    service.submitter.set_stats(5, 1, 2)
    service.stop()

    restarted, _ = _service(config)
    restarted.start()
    try:
        assert restarted.submitter.stats() == {"successful": 5, "failed": 1, "retries": 2}
    finally:
        restarted.stop()


def test_request_stop_ends_run_forever(config):
    service, _ = _service(config)
    original = service._subscriber_factory

    def factory(cfg, topics, handler):
        subscriber = original(cfg, topics, handler)
        service.request_stop()
        return subscriber

    service._subscriber_factory = factory
    service.run_forever(poll_s=0.01)
    assert not service.submitter.running


def test_country_table_is_loaded(config, tmp_path: Path):
    table = tmp_path / "cty.toml"
    table.write_text('[prefixes]\n"W" = "United States"\n', encoding="utf-8")
    config.country_table = table
    service, subscribers = _service(config)
    service.start()
    subscribers[0].handler("home/roof/digital_modes/WSPR/40m", _payload(-15))
    service.stop()

    assert service.spot_log.get_raw()[0]["country"] == "United States"


def test_failed_start_stops_started_components(config):
    class RefusingSubscriber(FakeSubscriber):
        def connect(self):
            raise ConnectionRefusedError("broker down")

    service = AggregatorService.from_config(
        config,
        session=DummySession(),
        subscriber_factory=lambda cfg, topics, handler: RefusingSubscriber(topics, handler),
    )

    with pytest.raises(ConnectionRefusedError):
        service.run_forever(poll_s=0.01)

    assert not service.submitter.running
    workers = {"aggregator-ingest", "aggregator-flush", "wsprnet-submitter"}
    assert not [t for t in threading.enumerate() if t.name in workers and t.is_alive()]
    assert service.subscriber.closed
    assert config.storage.stats_file.exists()


def test_shutdown_uses_one_deadline(config, monkeypatch):
    service, _ = _service(config)
    service.start()

    now = [1000.0]
    monkeypatch.setattr(service_module.time, "monotonic", lambda: now[0])
    timeouts = {}
    aggregator_stop = service.aggregator.stop
    submitter_stop = service.submitter.stop

    def slow_aggregator_stop(timeout):
        timeouts["aggregator"] = timeout
        aggregator_stop(timeout)
        now[0] += 7.0

    def record_submitter_stop(timeout):
        timeouts["submitter"] = timeout
        submitter_stop(timeout)

    monkeypatch.setattr(service.aggregator, "stop", slow_aggregator_stop)
    monkeypatch.setattr(service.submitter, "stop", record_submitter_stop)
    service.stop()

    assert timeouts["aggregator"] == pytest.approx(service_module.SHUTDOWN_TIMEOUT_S)
    assert timeouts["submitter"] == pytest.approx(service_module.SHUTDOWN_TIMEOUT_S - 7.0)
