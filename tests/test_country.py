"""Tests for the callsign prefix country table."""

from pathlib import Path

import pytest

from wsprmux_wspr.wspr.country import PrefixCountryTable


@pytest.fixture
def table():
    return PrefixCountryTable(
        {
            "K": "United States",
            "W": "United States",
            "VE": "Canada",
            "EA": "Spain",
            "EA8": "Canary Islands",
            "G": "England",
            "=W1AW": "ARRL HQ",
        }
    )


def test_longest_prefix_wins(table):
    assert table.lookup("EA8ABC") == "Canary Islands"
    assert table.lookup("EA1ABC") == "Spain"
    assert table.lookup("ve3xyz") == "Canada"


def test_exact_match_beats_prefix(table):
    assert table.lookup("W1AW") == "ARRL HQ"
    assert table.lookup("W1AX") == "United States"


def test_portable_suffix_and_prefix(table):
    assert table.lookup("G4ABC/P") == "England"
    assert table.lookup("EA8/G4ABC") == "Canary Islands"


def test_unknown_callsign(table):
    assert table.lookup("ZZ9ZZZ") == ""
    assert table.lookup("") == ""
    assert len(table) == 7


def test_from_file(tmp_path: Path):
    path = tmp_path / "cty.toml"
    path.write_text('[prefixes]\n"JA" = "Japan"\n"=JA1XYZ" = "Special"\n', encoding="utf-8")
    table = PrefixCountryTable.from_file(path)
    assert table.lookup("JA2ABC") == "Japan"
    assert table.lookup("JA1XYZ") == "Special"


def test_from_file_rejects_non_table(tmp_path: Path):
    path = tmp_path / "cty.toml"
    path.write_text('prefixes = "nope"\n', encoding="utf-8")
    with pytest.raises(ValueError):
        PrefixCountryTable.from_file(path)
