"""Per-node log capture and retrieval."""

from .aggregator import LOGS_DIR_NAME, LogAggregator, LogHandle

__all__ = [
    "LOGS_DIR_NAME",
    "LogAggregator",
    "LogHandle",
]
