"""Tests for bus payload decoding and topic routing."""

import json
from datetime import datetime, timezone

import pytest

from wsprmux_core.config import InstanceConfig
from wsprmux_wspr.wspr.country import PrefixCountryTable
from wsprmux_wspr.wspr.ingest import (
    SpotIngestor,
    SpotPayloadError,
    parse_spot_payload,
    topic_for_instance,
)


def sample_payload(**overrides):
    payload = {
        "mode": "WSPR",
        "callsign": "k1abc",
        "locator": "FN42",
        "snr": -12,
        "frequency": 14_095_600,
        "tx_frequency": 14_097_100,
        "timestamp": "2024-03-10T09:00:00Z",
        "dt": 0.4,
        "drift": -1,
        "dbm": 37,
    }
    payload.update(overrides)
    return payload


def test_parse_valid_payload():
    spot = parse_spot_payload(json.dumps(sample_payload()).encode("utf-8"), "rx1")

    assert spot.callsign == "K1ABC"
    assert spot.locator == "FN42"
    assert spot.snr == -12
    assert spot.frequency_hz == 14_097_100
    assert spot.receiver_freq_hz == 14_095_600
    assert spot.band == "20m"
    assert spot.instance_name == "rx1"
    assert spot.epoch_time == datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)
    assert spot.dbm == 37
    assert spot.drift == -1


def test_tx_frequency_defaults_to_receiver_frequency():
    payload = sample_payload()
    del payload["tx_frequency"]
    spot = parse_spot_payload(payload, "rx1")
    assert spot.frequency_hz == 14_095_600


@pytest.mark.parametrize(
    "payload",
    [
        b"{not json",
        json.dumps([1, 2, 3]),
        json.dumps(sample_payload(callsign="<...>")),
        json.dumps(sample_payload(callsign="")),
        json.dumps(sample_payload(timestamp="nonsense")),
        json.dumps(sample_payload(snr="loud")),
        json.dumps(sample_payload(frequency=0)),
    ],
)
def test_malformed_payloads_raise(payload):
    with pytest.raises(SpotPayloadError):
        parse_spot_payload(payload, "rx1")


def test_missing_field_is_named():
    payload = sample_payload()
    del payload["locator"]
    with pytest.raises(SpotPayloadError, match="locator"):
        parse_spot_payload(payload, "rx1")


def test_country_from_lookup_when_payload_has_none():
    table = PrefixCountryTable({"K": "United States"})
    spot = parse_spot_payload(sample_payload(), "rx1", table)
    assert spot.country == "United States"

    spot = parse_spot_payload(sample_payload(country="Elsewhere"), "rx1", table)
    assert spot.country == "Elsewhere"


def test_topic_for_instance():
    assert topic_for_instance("home/rx1/") == "home/rx1/digital_modes/WSPR/+"


def _ingestor(received):
    return SpotIngestor(
        [
            InstanceConfig(name="roof", topic_prefix="home"),
            InstanceConfig(name="attic", topic_prefix="home/attic"),
        ],
        received.append,
    )


def test_ingestor_routes_by_longest_prefix():
    received = []
    ingestor = _ingestor(received)

    payload = json.dumps(sample_payload()).encode("utf-8")
    ingestor.handle_message("home/attic/digital_modes/WSPR/20m", payload)
    ingestor.handle_message("home/digital_modes/WSPR/20m", payload)

    assert [spot.instance_name for spot in received] == ["attic", "roof"]
    assert ingestor.status()["instance_counts"] == {"attic": 1, "roof": 1}
    assert sorted(ingestor.topics()) == [
        "home/attic/digital_modes/WSPR/+",
        "home/digital_modes/WSPR/+",
    ]


def test_ingestor_counts_and_drops_bad_messages():
    received = []
    ingestor = _ingestor(received)

    assert ingestor.handle_message("elsewhere/digital_modes/WSPR/20m", b"{}") is None
    assert ingestor.handle_message("home/digital_modes/WSPR/20m", b"garbage") is None

    status = ingestor.status()
    assert received == []
    assert status["total_messages"] == 2
    assert status["unknown_topic"] == 1
    assert status["malformed"] == 1


def test_ingestor_survives_sink_failure():
    def sink(_spot):
        raise RuntimeError("boom")

    ingestor = SpotIngestor([InstanceConfig(name="rx1", topic_prefix="rx1")], sink)
    payload = json.dumps(sample_payload())
    assert ingestor.handle_message("rx1/digital_modes/WSPR/20m", payload) is None
    assert ingestor.status()["instance_counts"] == {"rx1": 1}
