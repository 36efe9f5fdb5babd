"""Gap analysis command: list WSPR cycles with no spots per source and band."""

from __future__ import annotations

import json
import logging
from argparse import Namespace

from wsprmux_core import config as config_module
from wsprmux_wspr.wspr.spotlog import SpotLog

LOG = logging.getLogger(__name__)


def resolve_storage(args: Namespace) -> config_module.StorageConfig:
    """Storage from the configuration file, or the defaults when there is none."""
    try:
        cfg = config_module.load_config(getattr(args, "config", None))
    except FileNotFoundError:
        return config_module.default_storage()
    except ValueError as exc:
        LOG.warning("Ignoring invalid configuration (%s); using default storage", exc)
        return config_module.default_storage()
    return cfg.storage or config_module.default_storage()


def run_gaps(args: Namespace) -> int:
    hours = int(getattr(args, "hours", 1) or 1)
    if hours <= 0:
        LOG.error("--hours must be positive")
        return 1
    storage = resolve_storage(args)
    retention = max(storage.retention_hours, hours + 1)
    spot_log = SpotLog(storage.spots_dir, retention_hours=retention)
    report = spot_log.analyze_gaps(hours)

    if getattr(args, "json", False):
        print(
            json.dumps(
                {source: [gap.to_dict() for gap in gaps] for source, gaps in report.items()},
                indent=2,
            )
        )
        return 0

    if not report:
        print(f"No spots logged in the last {hours}h under {storage.spots_dir}")
        return 0
    for source in sorted(report):
        print(source)
        for gap in report[source]:
            print(
                f"  {gap.band:>10}  {gap.coverage_rate:6.2f}% coverage  "
                f"{gap.gap_count}/{gap.total_cycles} cycles missing"
            )
            if gap.missing_cycles:
                print(f"              missing: {' '.join(gap.missing_cycles)}")
    return 0
