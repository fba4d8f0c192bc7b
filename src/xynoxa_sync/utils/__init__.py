"""Utility helpers for xynoxa-sync."""

from xynoxa_sync.utils.logging import setup_logging
from xynoxa_sync.utils.retry import retry_with_backoff

__all__ = ["setup_logging", "retry_with_backoff"]
