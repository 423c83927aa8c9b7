"""Price history providers.

Every provider satisfies the same capability interface,
``fetch_price_history(ticker, window_days) -> list[PricePoint]``, and raises
``ProviderError`` (or a subclass) on failure. ``FallbackPriceProvider``
chains providers explicitly; ``FailureCache`` keeps known-bad tickers from
being re-fetched until their failure expires.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

import httpx
import pandas as pd
import structlog
import yfinance as yf

from ..risk.errors import ProviderError, RateLimitedError, TickerNotFoundError
from ..risk.models import PricePoint
from ..risk.returns import validate_price_points

logger = structlog.get_logger(__name__)

ALPHAVANTAGE_URL = "https://www.alphavantage.co/query"
# Calendar days fetched per trading day requested, plus a fixed buffer
CALENDAR_DAYS_PER_TRADING_DAY = 1.5
CALENDAR_BUFFER_DAYS = 10


@runtime_checkable
class PriceProvider(Protocol):
    """Capability interface for daily price history sources."""

    name: str

    def fetch_price_history(self, ticker: str, window_days: int) -> List[PricePoint]:
        ...


def _last_window(points: Sequence[PricePoint], window_days: int) -> List[PricePoint]:
    """Sorted, validated points trimmed to window_days + 1 closes."""
    clean = validate_price_points(points)
    if window_days > 0:
        clean = clean[-(window_days + 1):]
    return clean


def _start_date(window_days: int, today: date) -> date:
    span = int(window_days * CALENDAR_DAYS_PER_TRADING_DAY) + CALENDAR_BUFFER_DAYS
    return today - timedelta(days=span)


# ---------------------------------------------------------------------------
# Yahoo Finance
# ---------------------------------------------------------------------------


class YahooPriceProvider:
    """Daily closes from Yahoo Finance via yfinance."""

    name = "yahoo"

    def __init__(self, today: Optional[Callable[[], date]] = None):
        self._today = today or date.today

    def fetch_price_history(self, ticker: str, window_days: int) -> List[PricePoint]:
        today = self._today()
        start = _start_date(window_days, today)

        try:
            df = yf.Ticker(ticker).history(
                start=start,
                end=today + timedelta(days=1),
                auto_adjust=False,
            )
        except Exception as e:
            logger.error("yahoo_fetch_error", ticker=ticker, error=str(e), exc_info=True)
            raise ProviderError(f"Yahoo fetch failed for {ticker}: {e}", ticker=ticker) from e

        if df is None or df.empty:
            logger.warning("yahoo_no_data", ticker=ticker)
            raise TickerNotFoundError(f"No Yahoo data for {ticker}", ticker=ticker)

        points = self._to_points(df)

        logger.debug("yahoo_fetch_success", ticker=ticker, rows=len(points))
        return _last_window(points, window_days)

    @staticmethod
    def _to_points(df: pd.DataFrame) -> List[PricePoint]:
        # Prefer adjusted close so splits and dividends do not show up as returns
        column = "Adj Close" if "Adj Close" in df.columns else "Close"
        dates = pd.to_datetime(df.index).date
        return [
            PricePoint(date=d, close=float(c))
            for d, c in zip(dates, df[column].to_numpy())
            if pd.notna(c)
        ]


# ---------------------------------------------------------------------------
# Alpha Vantage
# ---------------------------------------------------------------------------


class AlphaVantagePriceProvider:
    """Daily closes from Alpha Vantage TIME_SERIES_DAILY over httpx."""

    name = "alphavantage"

    def __init__(
        self,
        api_key: str,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        if not api_key:
            raise ValueError("Alpha Vantage API key is required")
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def fetch_price_history(self, ticker: str, window_days: int) -> List[PricePoint]:
        params = {
            "function": "TIME_SERIES_DAILY",
            "symbol": ticker,
            "outputsize": "full" if window_days > 100 else "compact",
            "apikey": self._api_key,
        }

        try:
            resp = self._client.get(ALPHAVANTAGE_URL, params=params)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("alphavantage_http_error", ticker=ticker, status_code=status)
            if status == 429:
                raise RateLimitedError(f"Alpha Vantage rate limited for {ticker}", ticker=ticker) from exc
            if status == 404:
                raise TickerNotFoundError(f"Alpha Vantage has no data for {ticker}", ticker=ticker) from exc
            raise ProviderError(f"Alpha Vantage HTTP {status} for {ticker}", ticker=ticker) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("alphavantage_fetch_error", ticker=ticker, error=str(exc))
            raise ProviderError(f"Alpha Vantage request failed for {ticker}: {exc}", ticker=ticker) from exc

        return _last_window(self._parse(ticker, data), window_days)

    @staticmethod
    def _parse(ticker: str, data: Mapping) -> List[PricePoint]:
        if "Error Message" in data:
            raise TickerNotFoundError(f"Alpha Vantage: {data['Error Message']}", ticker=ticker)

        notice = data.get("Note") or data.get("Information")
        series = data.get("Time Series (Daily)")
        if series is None:
            if notice and ("frequency" in notice.lower() or "rate limit" in notice.lower()):
                raise RateLimitedError(f"Alpha Vantage rate limited: {notice}", ticker=ticker)
            raise ProviderError(
                f"Alpha Vantage response for {ticker} has no daily series: {notice or 'empty'}",
                ticker=ticker,
            )

        points = []
        for day, bar in series.items():
            try:
                points.append(PricePoint(date=date.fromisoformat(day), close=float(bar["4. close"])))
            except (KeyError, ValueError):
                logger.warning("alphavantage_bad_bar", ticker=ticker, date=day)
        if not points:
            raise TickerNotFoundError(f"Alpha Vantage returned no prices for {ticker}", ticker=ticker)
        return points


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class StaticPriceProvider:
    """Serves fixed histories from memory (offline replays and tests)."""

    name = "static"

    def __init__(self, histories: Mapping[str, Sequence[PricePoint]]):
        self._histories = {t.upper(): list(p) for t, p in histories.items()}
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def fetch_price_history(self, ticker: str, window_days: int) -> List[PricePoint]:
        with self._lock:
            self.calls.append((ticker, window_days))
        points = self._histories.get(ticker.upper())
        if points is None:
            raise TickerNotFoundError(f"No static history for {ticker}", ticker=ticker)
        return _last_window(points, window_days)


# ---------------------------------------------------------------------------
# Failure cache
# ---------------------------------------------------------------------------


class FailureKind(str, Enum):
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    API_ERROR = "api_error"


FAILURE_TTL: Dict[FailureKind, timedelta] = {
    FailureKind.NOT_FOUND: timedelta(hours=24),
    FailureKind.RATE_LIMITED: timedelta(hours=1),
    FailureKind.API_ERROR: timedelta(hours=6),
}


@dataclass(frozen=True)
class FailureInfo:
    ticker: str
    kind: FailureKind
    failed_at: datetime
    message: str = ""

    @property
    def expires_at(self) -> datetime:
        return self.failed_at + FAILURE_TTL[self.kind]


def failure_kind(error: ProviderError) -> FailureKind:
    if isinstance(error, TickerNotFoundError):
        return FailureKind.NOT_FOUND
    if isinstance(error, RateLimitedError):
        return FailureKind.RATE_LIMITED
    return FailureKind.API_ERROR


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FailureCache:
    """Thread-safe record of recently failed tickers with per-kind TTL."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._entries: Dict[str, FailureInfo] = {}
        self._lock = threading.Lock()

    def is_failed(self, ticker: str) -> Optional[FailureInfo]:
        key = ticker.upper()
        with self._lock:
            info = self._entries.get(key)
            if info is None:
                return None
            if self._clock() >= info.expires_at:
                del self._entries[key]
                return None
            return info

    def record_failure(self, ticker: str, kind: FailureKind, message: str = "") -> None:
        info = FailureInfo(ticker=ticker.upper(), kind=kind, failed_at=self._clock(), message=message)
        with self._lock:
            self._entries[info.ticker] = info
        logger.info("failure_cache: failure recorded", ticker=info.ticker, kind=kind.value)

    def clear(self, ticker: str) -> None:
        with self._lock:
            self._entries.pop(ticker.upper(), None)

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [t for t, info in self._entries.items() if now >= info.expires_at]
            for t in expired:
                del self._entries[t]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Fallback chain
# ---------------------------------------------------------------------------


class FallbackPriceProvider:
    """Tries each provider in order, moving on after a ProviderError.

    With a failure cache attached, a ticker that recently failed on every
    provider is rejected immediately until its failure expires.
    """

    name = "fallback"

    def __init__(
        self,
        providers: Sequence[PriceProvider],
        failure_cache: Optional[FailureCache] = None,
    ):
        if not providers:
            raise ValueError("FallbackPriceProvider needs at least one provider")
        self._providers = list(providers)
        self._failures = failure_cache

    def fetch_price_history(self, ticker: str, window_days: int) -> List[PricePoint]:
        if self._failures is not None:
            known = self._failures.is_failed(ticker)
            if known is not None:
                logger.debug("fallback_provider: skipping known failure", ticker=ticker, kind=known.kind.value)
                error_cls = {
                    FailureKind.NOT_FOUND: TickerNotFoundError,
                    FailureKind.RATE_LIMITED: RateLimitedError,
                }.get(known.kind, ProviderError)
                raise error_cls(
                    f"{ticker} failed recently ({known.kind.value}); retry after {known.expires_at.isoformat()}",
                    ticker=ticker,
                )

        last_error: Optional[ProviderError] = None
        for provider in self._providers:
            try:
                points = provider.fetch_price_history(ticker, window_days)
            except ProviderError as e:
                logger.warning(
                    "fallback_provider: provider failed",
                    ticker=ticker,
                    provider=getattr(provider, "name", type(provider).__name__),
                    error=str(e),
                )
                last_error = e
                continue

            if self._failures is not None:
                self._failures.clear(ticker)
            return points

        if self._failures is not None:
            self._failures.record_failure(ticker, failure_kind(last_error), str(last_error))
        raise last_error
