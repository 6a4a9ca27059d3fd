"""Retry scheduling with exponential backoff."""

from .scheduler import RetryPolicy, RetryScheduler

__all__ = ["RetryPolicy", "RetryScheduler"]
