"""
Utility functions and helpers.

Retry logic shared by embedding providers.
"""

from memsearch.utils.retry import retry_with_backoff

__all__ = [
    "retry_with_backoff",
]
