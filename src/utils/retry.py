"""
Bounded retries with exponential backoff.

Used for verdict lookups and whole link store units of work. Callers narrow
`retry_on` to the transient errors of the resource they touch; every other
exception propagates on the first attempt.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Optional, Tuple, Type

from config.config import RETRY_DEFAULTS

logger = logging.getLogger(__name__)

_stats: Counter = Counter()
_stats_lock = threading.Lock()


def _count(event: str) -> None:
    with _stats_lock:
        _stats[event] += 1


def get_retry_stats() -> Dict[str, int]:
    with _stats_lock:
        return {"retries": _stats["retries"], "retry_exhaustions": _stats["retry_exhaustions"]}


def reset_retry_stats() -> None:
    with _stats_lock:
        _stats.clear()


@dataclass(frozen=True)
class RetryConfig:
    """Attempt budget and backoff curve for one kind of call."""

    max_retries: int = int(RETRY_DEFAULTS["max_retries"])
    initial_backoff: float = float(RETRY_DEFAULTS["initial_backoff"])
    max_backoff: float = float(RETRY_DEFAULTS["max_backoff"])
    jitter: float = float(RETRY_DEFAULTS["jitter"])
    retry_on: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError)

    def delays(self) -> Iterator[float]:
        """Sleep durations between attempts, doubling up to max_backoff."""
        base = max(0.0, self.initial_backoff)
        for _ in range(self.max_retries):
            yield min(base, self.max_backoff) + max(0.0, self.jitter)
            base = min(base * 2.0, self.max_backoff)


def _name(fn: Callable[..., Any]) -> str:
    return getattr(fn, "__qualname__", None) or repr(fn)


def retry_call(fn: Callable[..., Any], *args: Any, cfg: Optional[RetryConfig] = None, **kwargs: Any) -> Any:
    """Call fn until it succeeds or the retry budget in cfg is spent."""
    cfg = cfg or RetryConfig()
    delays = cfg.delays()
    attempt = 1
    while True:
        try:
            return fn(*args, **kwargs)
        except cfg.retry_on as exc:
            delay = next(delays, None)
            if delay is None:
                _count("retry_exhaustions")
                logger.warning(
                    "Giving up on %s after %d attempts: %s", _name(fn), attempt, type(exc).__name__
                )
                raise
            _count("retries")
            logger.debug("Attempt %d of %s failed (%s), retrying in %.2fs", attempt, _name(fn), exc, delay)
            time.sleep(delay)
            attempt += 1


def with_retry(_fn: Optional[Callable[..., Any]] = None, *, cfg: Optional[RetryConfig] = None) -> Callable[..., Any]:
    """Decorator form of retry_call; usable bare or with cfg=."""

    def decorate(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return retry_call(fn, *args, cfg=cfg, **kwargs)

        return wrapper

    return decorate(_fn) if callable(_fn) else decorate
