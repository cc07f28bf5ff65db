"""
Observability module for netz runs.

Provides CloudWatch log stream waiting, watching and writing, plus console links.
"""

from .stream import (
    LogStreamWaiter,
    LogStreamWatcher,
    LogStreamWriter,
    ensure_log_group,
    wait_any,
)
from .cw_links import CloudWatchLinkBuilder

__all__ = [
    "LogStreamWaiter",
    "LogStreamWatcher",
    "LogStreamWriter",
    "ensure_log_group",
    "wait_any",
    "CloudWatchLinkBuilder",
]
