"""Statistics command: summarise the last saved snapshot."""

from __future__ import annotations

import json
import logging
from argparse import Namespace

from wsprmux_core.timeutils import isoformat_utc
from wsprmux_wspr.wspr.statistics import StatisticsEngine

from .gaps import resolve_storage

LOG = logging.getLogger(__name__)


def run_stats(args: Namespace) -> int:
    storage = resolve_storage(args)
    engine = StatisticsEngine(retention_hours=storage.retention_hours)
    submitter = engine.load(storage.stats_file)
    if submitter is None:
        LOG.error("No readable statistics snapshot at %s", storage.stats_file)
        return 1

    summary = {
        "overall": engine.overall_stats(),
        "wsprnet": submitter,
        "instances": {
            name: {
                "total_spots": item["total_spots"],
                "unique_spots": item["unique_spots"],
                "best_snr_wins": item["best_snr_wins"],
                "tied_snr": item["tied_snr"],
                "bands": sorted(item["band_stats"]),
            }
            for name, item in engine.instance_stats().items()
        },
        "recent_windows": engine.recent_windows(5),
    }

    if getattr(args, "json", False):
        print(json.dumps(summary, indent=2))
        return 0

    overall = summary["overall"]
    print(f"Snapshot  : {storage.stats_file}")
    print(
        f"Windows   : {overall['windows']}  unique={overall['total_unique']} "
        f"duplicates={overall['total_duplicates']} submitted={overall['total_submitted']}"
    )
    print(
        f"WSPRNet   : successful={submitter['successful']} failed={submitter['failed']} "
        f"retries={submitter['retries']}"
    )
    for name, item in summary["instances"].items():
        print(
            f"  {name}: {item['total_spots']} spots, {item['unique_spots']} unique, "
            f"{item['best_snr_wins']} best-SNR, {item['tied_snr']} tied "
            f"[{', '.join(item['bands'])}]"
        )
    for window in summary["recent_windows"]:
        print(
            f"  window {isoformat_utc(window['window_start'])}: "
            f"{window['total_unique']} unique, {window['duplicates_removed']} duplicates"
        )
    return 0
