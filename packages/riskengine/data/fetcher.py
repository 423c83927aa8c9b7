"""Request-coalescing wrapper around a price provider.

Concurrent requests for the same (ticker, window_days) share one in-flight
provider call; every waiter receives the same result or the same error.
Fetches run on a worker pool so a caller timeout only abandons the wait;
the shared fetch keeps running and still completes for the other waiters.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional, Tuple

import structlog

from ..risk.models import PricePoint
from .providers import PriceProvider

logger = structlog.get_logger(__name__)

FetchKey = Tuple[str, int]


class PriceHistoryFetcher:
    """Single-flight price history fetcher."""

    def __init__(
        self,
        provider: PriceProvider,
        max_workers: int = 8,
        default_timeout: Optional[float] = None,
    ):
        self._provider = provider
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="price-fetch")
        self._default_timeout = default_timeout
        self._inflight: Dict[FetchKey, Future] = {}
        self._lock = threading.Lock()

    @property
    def provider(self) -> PriceProvider:
        return self._provider

    def in_flight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def _submit(self, key: FetchKey) -> Tuple[Future, bool]:
        """Return the in-flight future for key, starting one if needed.

        Returns:
            Tuple of (future, started_here)
        """
        with self._lock:
            future = self._inflight.get(key)
            if future is not None:
                return future, False

            future = self._executor.submit(self._provider.fetch_price_history, key[0], key[1])
            self._inflight[key] = future

        future.add_done_callback(lambda f, k=key: self._release(k, f))
        return future, True

    def _release(self, key: FetchKey, future: Future) -> None:
        with self._lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    def fetch_price_history(
        self,
        ticker: str,
        window_days: int,
        timeout: Optional[float] = None,
    ) -> List[PricePoint]:
        """Fetch through the shared in-flight call for (ticker, window_days).

        Raises:
            ProviderError: The shared fetch failed (same error for all waiters)
            TimeoutError: This caller stopped waiting; the fetch is unaffected
        """
        key = (ticker.upper(), int(window_days))
        future, started = self._submit(key)
        if not started:
            logger.debug("price_fetcher: joined in-flight fetch", ticker=key[0], window_days=key[1])

        wait = timeout if timeout is not None else self._default_timeout
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError:
            logger.warning("price_fetcher: caller timed out", ticker=key[0], window_days=key[1], timeout=wait)
            raise TimeoutError(f"Timed out after {wait}s waiting for {key[0]} price history") from None

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
