"""Frequency to amateur band classification for WSPR spots."""

from __future__ import annotations

# (lower MHz inclusive, upper MHz exclusive, band tag)
BAND_TABLE: tuple[tuple[float, float, str], ...] = (
    (0.1357, 0.1378, "2200m"),
    (0.472, 0.479, "630m"),
    (1.8, 2.0, "160m"),
    (3.5, 4.0, "80m"),
    (5.25, 5.45, "60m"),
    (7.0, 7.3, "40m"),
    (10.1, 10.15, "30m"),
    (14.0, 14.35, "20m"),
    (18.068, 18.168, "17m"),
    (21.0, 21.45, "15m"),
    (24.89, 24.99, "12m"),
    (28.0, 29.7, "10m"),
)


def frequency_to_band(frequency_hz: int | float) -> str:
    """Return the band tag for ``frequency_hz``.

    Frequencies outside every known band yield ``"<MHz to 3 decimals>MHz"``.
    """
    freq_mhz = float(frequency_hz) / 1_000_000.0
    for lower, upper, band in BAND_TABLE:
        if lower <= freq_mhz < upper:
            return band
    return f"{freq_mhz:.3f}MHz"
