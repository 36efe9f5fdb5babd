"""Init command: write a starter configuration file."""

from __future__ import annotations

import logging
from argparse import Namespace

from wsprmux_core import config as config_module

LOG = logging.getLogger(__name__)


def _parse_instances(values: list[str]) -> list[config_module.InstanceConfig]:
    instances = []
    for value in values:
        name, sep, prefix = value.partition("=")
        if not sep:
            prefix = name
        instances.append(
            config_module.InstanceConfig(name=name.strip(), topic_prefix=prefix.strip())
        )
    return instances


def run_init(args: Namespace) -> int:
    path = config_module.resolve_config_path(getattr(args, "config", None))
    if path.exists() and not getattr(args, "force", False):
        LOG.error("Configuration already exists at %s (use --force to overwrite)", path)
        return 1

    instances = _parse_instances(getattr(args, "instance", []) or []) or [
        config_module.InstanceConfig(name="receiver", topic_prefix="receiver")
    ]
    cfg = config_module.AggregatorConfig(
        receiver=config_module.ReceiverConfig(
            callsign=args.callsign.strip().upper(), locator=args.locator.strip()
        ),
        mqtt=config_module.MqttConfig(
            broker=args.broker, port=args.port, instances=instances
        ),
    )
    try:
        cfg.validate()
    except ValueError as exc:
        LOG.error("Invalid settings: %s", exc)
        return 1

    written = config_module.save_config(cfg, path)
    print(f"Wrote configuration to {written}")
    print(config_module.config_summary(cfg))
    return 0
