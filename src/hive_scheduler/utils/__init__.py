"""Utility exports for concurrency helpers."""

from hive_scheduler.utils.concurrency import CancellationToken, gather_bounded

__all__ = ["CancellationToken", "gather_bounded"]
