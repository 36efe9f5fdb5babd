"""Clear command: delete the spot log (and optionally the statistics snapshot)."""

from __future__ import annotations

import logging
from argparse import Namespace

from wsprmux_wspr.wspr.spotlog import SpotLog

from .gaps import resolve_storage

LOG = logging.getLogger(__name__)


def run_clear(args: Namespace) -> int:
    storage = resolve_storage(args)
    removed = SpotLog(storage.spots_dir, load=False).clear()
    print(f"Removed {removed} spot files from {storage.spots_dir}")

    if getattr(args, "include_stats", False):
        try:
            storage.stats_file.unlink(missing_ok=True)
        except OSError:
            LOG.exception("Failed to delete statistics snapshot %s", storage.stats_file)
            return 1
        print(f"Removed statistics snapshot {storage.stats_file}")
    return 0
