"""Tests for the JSON-lines spot log and gap analysis."""

import json
from datetime import datetime, timezone
from pathlib import Path

from wsprmux_core.timeutils import from_epoch
from wsprmux_wspr.wspr.spot import Spot
from wsprmux_wspr.wspr.spotlog import SpotLog

NINE = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


def make_spot(callsign="W1ABC", snr=-15, instance="A", at=NINE, freq=7_040_100):
    return Spot(
        callsign=callsign,
        locator="FN42",
        snr=snr,
        frequency_hz=freq,
        receiver_freq_hz=freq,
        dt=0.3,
        drift=0,
        dbm=37,
        epoch_time=from_epoch(at),
        instance_name=instance,
    )


def test_write_raw_appends_day_file(tmp_path: Path):
    clock = FakeClock(NINE + 30)
    log = SpotLog(tmp_path, clock=clock)
    log.write_raw(make_spot())
    log.write_raw(make_spot(instance="B", freq=14_097_100))

    path = tmp_path / "raw-20240310.jsonl"
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["callsign"] == "W1ABC"
    assert first["band"] == "40m"
    assert first["instance"] == "A"
    assert first["timestamp"] == "2024-03-10T09:00:00+00:00"

    assert len(log.get_raw()) == 2
    assert [e["instance"] for e in log.get_raw(instance="B")] == ["B"]
    assert [e["band"] for e in log.get_raw(band="40m")] == ["40m"]
    assert log.list_instances() == ["A", "B"]


def test_outcomes_update_deduped_entries_and_survive_reload(tmp_path: Path):
    clock = FakeClock(NINE + 250)
    log = SpotLog(tmp_path, clock=clock)
    accepted = make_spot()
    refused = make_spot(callsign="K9XYZ")
    assert log.write_deduped(accepted, int(NINE)) == f"W1ABC_WSPR_{int(NINE)}_40m"
    log.write_deduped(refused, int(NINE))

    log.record_outcome([accepted], True)
    log.record_outcome([refused], False, "HTTP 500")

    assert [e["callsign"] for e in log.get_deduped(submitted=True)] == ["W1ABC"]
    failed = log.get_deduped(submitted=False)
    assert failed[0]["error"] == "HTTP 500"

    reloaded = SpotLog(tmp_path, clock=clock)
    entries = {e["callsign"]: e for e in reloaded.get_deduped()}
    assert entries["W1ABC"]["submitted"] is True
    assert entries["K9XYZ"]["submitted"] is False
    assert entries["K9XYZ"]["error"] == "HTTP 500"
    # outcome records are not entries
    assert len(entries) == 2


def test_load_skips_malformed_lines(tmp_path: Path):
    clock = FakeClock(NINE + 60)
    log = SpotLog(tmp_path, clock=clock)
    log.write_raw(make_spot())
    with (tmp_path / "raw-20240310.jsonl").open("a", encoding="utf-8") as fh:
        fh.write("{truncated\n")

    reloaded = SpotLog(tmp_path, clock=clock)
    assert len(reloaded.get_raw()) == 1


def test_gap_analysis_reports_missing_cycle(tmp_path: Path):
    clock = FakeClock(NINE + 3600 + 270)  # 10:04:30
    log = SpotLog(tmp_path, clock=clock)
    for minute in range(0, 62, 2):
        if minute == 20:
            continue
        log.write_raw(make_spot(at=NINE + minute * 60 + 1), received_at=clock())

    report = log.analyze_gaps(1)

    assert list(report) == ["A"]
    gap = report["A"][0]
    assert gap.band == "40m"
    assert gap.total_cycles == 30
    assert gap.gap_count == 1
    assert gap.missing_cycles == ["09:20"]
    assert gap.missing_timestamps == [int(NINE) + 20 * 60]
    assert abs(gap.coverage_rate - 96.67) < 0.01


def test_gap_analysis_includes_deduped_stream(tmp_path: Path):
    clock = FakeClock(NINE + 3600 + 270)
    log = SpotLog(tmp_path, clock=clock)
    log.write_deduped(make_spot(at=NINE + 600), int(NINE) + 600)

    report = log.analyze_gaps(1)
    assert report["deduped"][0].gap_count == 29
    assert report["deduped"][0].to_dict()["source"] == "deduped"


def test_prune_drops_expired_files_and_cache(tmp_path: Path):
    clock = FakeClock(NINE + 60)
    log = SpotLog(tmp_path, retention_hours=24, clock=clock)
    log.write_raw(make_spot())

    clock.advance(3 * 86400)
    log.write_raw(make_spot(at=clock()))
    dropped = log.prune()

    assert dropped == 1
    assert not (tmp_path / "raw-20240310.jsonl").exists()
    assert len(log.get_raw()) == 1


def test_clear_removes_everything(tmp_path: Path):
    clock = FakeClock(NINE + 60)
    log = SpotLog(tmp_path, clock=clock)
    log.write_raw(make_spot())
    log.write_deduped(make_spot(), int(NINE))

    assert log.clear() == 2
    assert list(tmp_path.glob("*.jsonl")) == []
    assert log.get_raw() == []
    assert log.get_deduped() == []


def test_write_failure_is_counted_not_raised(tmp_path: Path):
    blocker = tmp_path / "spots"
    blocker.write_text("not a directory", encoding="utf-8")
    log = SpotLog(blocker, clock=FakeClock(NINE), load=False)

    log.write_raw(make_spot())

    assert log.write_errors == 1
