"""Ingest adapter: decode bus payloads into spots for the aggregator.

Each configured receiver instance publishes decodes under
``{topic_prefix}/digital_modes/WSPR/<band>``. The trailing band segment is
informational only; the authoritative band is computed from the receiver
frequency.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Iterable, Mapping

from wsprmux_core.config import InstanceConfig
from wsprmux_core.timeutils import parse_rfc3339

from .country import CountryLookup
from .spot import HASHED_CALLSIGN, Spot

LOG = logging.getLogger(__name__)

TOPIC_SUFFIX = "digital_modes/WSPR/+"

REQUIRED_FIELDS = ("mode", "callsign", "locator", "snr", "frequency", "timestamp")

SpotSink = Callable[[Spot], Any]


class SpotPayloadError(ValueError):
    """Raised when a bus payload cannot be decoded into a spot."""


def topic_for_instance(topic_prefix: str) -> str:
    return f"{topic_prefix.rstrip('/')}/{TOPIC_SUFFIX}"


def parse_spot_payload(
    payload: bytes | str | Mapping[str, Any],
    instance_name: str,
    country_lookup: CountryLookup | None = None,
) -> Spot:
    """Decode one JSON payload into a :class:`Spot`.

    Raises SpotPayloadError on malformed JSON, missing required fields,
    invalid numbers or timestamps, empty callsign/locator or a hashed
    (``<...>``) callsign.
    """
    if isinstance(payload, Mapping):
        data: Any = payload
    else:
        try:
            data = json.loads(payload)
        except (TypeError, ValueError, UnicodeDecodeError) as exc:
            raise SpotPayloadError(f"malformed JSON: {exc}") from exc
    if not isinstance(data, Mapping):
        raise SpotPayloadError("payload is not a JSON object")

    missing = [name for name in REQUIRED_FIELDS if data.get(name) in (None, "")]
    if missing:
        raise SpotPayloadError(f"missing fields: {', '.join(missing)}")

    callsign = str(data["callsign"]).strip().upper()
    locator = str(data["locator"]).strip()
    if not callsign or not locator:
        raise SpotPayloadError("empty callsign or locator")
    if callsign == HASHED_CALLSIGN:
        raise SpotPayloadError("hashed callsign")

    timestamp = parse_rfc3339(str(data["timestamp"]))
    if timestamp is None:
        raise SpotPayloadError(f"invalid timestamp: {data['timestamp']!r}")

    try:
        receiver_freq = int(data["frequency"])
        tx_raw = data.get("tx_frequency")
        tx_freq = int(tx_raw) if tx_raw not in (None, "", 0) else receiver_freq
        snr = int(data["snr"])
        dt = float(data.get("dt") or 0.0)
        drift = int(data.get("drift") or 0)
        dbm = int(data.get("dbm") or 0)
    except (TypeError, ValueError) as exc:
        raise SpotPayloadError(f"invalid numeric field: {exc}") from exc
    if receiver_freq <= 0 or tx_freq <= 0:
        raise SpotPayloadError("frequency must be positive")

    country = str(data.get("country") or "").strip()
    if not country and country_lookup is not None:
        country = country_lookup.lookup(callsign)

    return Spot(
        callsign=callsign,
        locator=locator,
        snr=snr,
        frequency_hz=tx_freq,
        receiver_freq_hz=receiver_freq,
        dt=dt,
        drift=drift,
        dbm=dbm,
        epoch_time=timestamp,
        mode=str(data["mode"]).strip(),
        instance_name=instance_name,
        country=country,
    )


class SpotIngestor:
    """Route bus messages to the aggregator on behalf of every instance.

    ``handle_message`` is called from the bus network thread and never
    raises; malformed payloads are logged, counted and dropped.
    """

    def __init__(
        self,
        instances: Iterable[InstanceConfig],
        sink: SpotSink,
        country_lookup: CountryLookup | None = None,
    ) -> None:
        # Longest prefix first so nested prefixes resolve to the most specific
        self._instances = sorted(
            instances, key=lambda inst: len(inst.topic_prefix), reverse=True
        )
        self._sink = sink
        self._country_lookup = country_lookup
        self._lock = threading.Lock()
        self.total_messages = 0
        self.malformed = 0
        self.unknown_topic = 0
        self._instance_counts: dict[str, int] = {}

    def topics(self) -> list[str]:
        return [topic_for_instance(inst.topic_prefix) for inst in self._instances]

    def resolve_instance(self, topic: str) -> str | None:
        for inst in self._instances:
            prefix = inst.topic_prefix.rstrip("/")
            if topic.startswith(prefix + "/"):
                return inst.name or prefix
        return None

    def handle_message(self, topic: str, payload: bytes | str) -> Spot | None:
        with self._lock:
            self.total_messages += 1
            total = self.total_messages

        instance_name = self.resolve_instance(topic)
        if instance_name is None:
            with self._lock:
                self.unknown_topic += 1
            LOG.warning("Ignoring message on unconfigured topic %s", topic)
            return None

        try:
            spot = parse_spot_payload(payload, instance_name, self._country_lookup)
        except SpotPayloadError as exc:
            with self._lock:
                self.malformed += 1
            LOG.warning("Dropping malformed spot from %s (%s): %s", instance_name, topic, exc)
            return None

        with self._lock:
            self._instance_counts[instance_name] = (
                self._instance_counts.get(instance_name, 0) + 1
            )

        try:
            self._sink(spot)
        except Exception:
            LOG.exception("Spot sink failed for %s from %s", spot.callsign, instance_name)
            return None

        if total % 100 == 0:
            LOG.info("Ingest: processed %d messages", total)
        return spot

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_messages": self.total_messages,
                "malformed": self.malformed,
                "unknown_topic": self.unknown_topic,
                "instance_counts": dict(self._instance_counts),
            }
