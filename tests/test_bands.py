"""Tests for frequency to band classification."""

import pytest

from wsprmux_wspr.wspr.bands import BAND_TABLE, frequency_to_band


@pytest.mark.parametrize(
    "freq_hz,band",
    [
        (7_040_100, "40m"),
        (14_097_100, "20m"),
        (14_000_000, "20m"),
        (10_140_200, "30m"),
        (474_200, "630m"),
        (137_500, "2200m"),
        (28_126_100, "10m"),
    ],
)
def test_known_bands(freq_hz, band):
    assert frequency_to_band(freq_hz) == band


def test_upper_edge_is_exclusive():
    assert frequency_to_band(14_350_000) == "14.350MHz"


def test_out_of_band_frequency_uses_mhz_tag():
    assert frequency_to_band(50_293_000) == "50.293MHz"
    assert frequency_to_band(135_000) == "0.135MHz"


def test_band_table_runs_from_2200m_to_10m():
    bands = [band for _, _, band in BAND_TABLE]
    assert bands[0] == "2200m"
    assert bands[-1] == "10m"
    assert len(set(bands)) == len(bands)
