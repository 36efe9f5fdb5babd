"""Callsign prefix to country lookup.

The prefix data set is maintained outside this project; this module only
defines the lookup interface and a longest-prefix-match table that can be
loaded from a TOML file of the form::

    [prefixes]
    "K" = "United States"
    "VE" = "Canada"
    "=W1AW" = "United States"   # exact callsign match
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Protocol

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for <3.11
    import tomli as tomllib  # type: ignore[no-redef]

LOG = logging.getLogger(__name__)


class CountryLookup(Protocol):
    def lookup(self, callsign: str) -> str:  # pragma: no cover - interface
        ...


class PrefixCountryTable:
    """Longest-prefix match of callsigns against a prefix table."""

    def __init__(self, prefixes: Mapping[str, str] | None = None) -> None:
        self._exact: dict[str, str] = {}
        self._prefixes: dict[str, str] = {}
        for prefix, country in (prefixes or {}).items():
            key = prefix.strip().upper()
            if key.startswith("="):
                self._exact[key[1:]] = country
            elif key:
                self._prefixes[key] = country
        self._max_len = max((len(p) for p in self._prefixes), default=0)

    def __len__(self) -> int:
        return len(self._exact) + len(self._prefixes)

    def lookup(self, callsign: str) -> str:
        """Return the country for ``callsign`` or an empty string."""
        call = _base_callsign(callsign)
        if not call:
            return ""
        if call in self._exact:
            return self._exact[call]
        for length in range(min(len(call), self._max_len), 0, -1):
            country = self._prefixes.get(call[:length])
            if country is not None:
                return country
        return ""

    @classmethod
    def from_file(cls, path: Path) -> PrefixCountryTable:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
        prefixes = data.get("prefixes", {})
        if not isinstance(prefixes, dict):
            raise ValueError(f"{path}: [prefixes] must be a table")
        table = cls({str(k): str(v) for k, v in prefixes.items()})
        LOG.info("Loaded %d country prefixes from %s", len(table), path)
        return table


def _base_callsign(callsign: str) -> str:
    """Strip portable suffixes such as ``/P`` or ``/QRP``.

    A leading portable prefix (``EA8/G4ABC``) is kept because it selects the
    operating country.
    """
    call = callsign.strip().upper()
    if "/" not in call:
        return call
    parts = [part for part in call.split("/") if part]
    if not parts:
        return ""
    # "EA8/G4ABC": the shorter leading part is the operating prefix
    return parts[0]
