"""Utility modules for crosspay."""

from crosspay.utils.async_tools import (
    AsyncDebouncer,
    AsyncMemo,
    DebouncedCall,
    Generation,
    RequestCancelled,
)
from crosspay.utils.locks import KeyedLocks, LockTimeoutError
from crosspay.utils.retry import RetryPolicy, with_retry

__all__ = [
    "AsyncDebouncer",
    "AsyncMemo",
    "DebouncedCall",
    "Generation",
    "RequestCancelled",
    "KeyedLocks",
    "LockTimeoutError",
    "RetryPolicy",
    "with_retry",
]
