"""Aggregator run command implementation.

Subscribes to every configured receiver instance, deduplicates spots per
WSPR cycle and uploads the survivors until interrupted.
"""

from __future__ import annotations

import logging
from argparse import Namespace

from wsprmux_core import config as config_module

LOG = logging.getLogger(__name__)


def run_aggregator(args: Namespace) -> int:
    """Run the aggregator service in the foreground."""
    overrides = {}
    if getattr(args, "dry_run", False):
        overrides = {"wsprnet": {"dry_run": True}}
    try:
        cfg = config_module.load_config(getattr(args, "config", None), cli_overrides=overrides)
    except FileNotFoundError as exc:
        LOG.error("No configuration at %s; run 'wsprmux init' or pass --config", exc)
        return 1
    except ValueError as exc:
        LOG.error("Invalid configuration: %s", exc)
        return 1

    LOG.info("Starting wsprmux\n%s", config_module.config_summary(cfg))

    from wsprmux_wspr.wspr.service import AggregatorService

    try:
        service = AggregatorService.from_config(cfg)
    except (ImportError, ValueError) as exc:
        LOG.error("Cannot start aggregator: %s", exc)
        return 1

    try:
        service.run_forever()
    except Exception:
        LOG.exception("Aggregator terminated unexpectedly")
        return 1
    return 0
