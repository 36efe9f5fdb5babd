"""wsprmux subcommands (run, gaps, stats, clear-spots, init)."""

from .run import run_aggregator
from .gaps import run_gaps
from .stats import run_stats
from .clear import run_clear
from .init_config import run_init

__all__ = [
    "run_aggregator",
    "run_gaps",
    "run_stats",
    "run_clear",
    "run_init",
]
