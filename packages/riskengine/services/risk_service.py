"""Risk computation orchestration service.

``RiskEngine`` is the entry point a transport layer talks to. It fetches
price histories through the coalescing fetcher, delegates every computation
to the pure functions in ``riskengine.risk``, caches results per metric
family, and owns the shared regime model store.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Type, TypeVar, Union

import structlog
from pydantic import BaseModel, ValidationError

from ..config import ScorePolicy, Settings, get_settings
from ..data.fetcher import PriceHistoryFetcher
from ..data.providers import (
    AlphaVantagePriceProvider,
    FailureCache,
    FallbackPriceProvider,
    PriceProvider,
    YahooPriceProvider,
)
from ..logging import configure_logging
from ..risk import beta as beta_engine
from ..risk import correlation as correlation_engine
from ..risk import garch, regime
from ..risk.aggregate import PositionInput, aggregate_portfolio_risk, weights_from_market_values
from ..risk.data_quality import build_data_quality_pack
from ..risk.errors import CacheCorruptionError, InsufficientDataError, ProviderError, TickerNotFoundError
from ..risk.metrics import compute_risk_metrics
from ..risk.models import (
    BetaForecast,
    BetaForecastMethod,
    BetaObservation,
    ClusterResult,
    HmmModel,
    InsufficientData,
    PortfolioRiskView,
    PricePoint,
    RegimeDetection,
    RegimeForecast,
    ReturnSeries,
    RiskMetrics,
    VolatilityForecast,
)
from ..risk.returns import build_return_series
from .cache import (
    InMemoryResultCache,
    MetricKind,
    ResultCache,
    build_result_cache,
    make_cache_key,
    ttls_from_settings,
)
from .regime_store import RegimeModelStore

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

REGIME_FILTER_DAYS = 252
BETA_HISTORY_PADDING = 252


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _BetaObservations(BaseModel):
    observations: List[BetaObservation]


class RiskEngine:
    """Quantitative risk and forecasting engine.

    Args:
        source: Price provider, or an already-configured PriceHistoryFetcher
        settings: Engine configuration (defaults to environment settings)
        cache: Result cache (defaults to an in-memory cache)
        regime_store: Shared regime model store
        policy: Composite risk score policy
        clock: Returns the current UTC time; drives regime retrain cadence
    """

    def __init__(
        self,
        source: Union[PriceProvider, PriceHistoryFetcher],
        settings: Optional[Settings] = None,
        cache: Optional[ResultCache] = None,
        regime_store: Optional[RegimeModelStore] = None,
        policy: Optional[ScorePolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings or get_settings()
        self.fetcher = source if isinstance(source, PriceHistoryFetcher) else PriceHistoryFetcher(source)
        self.cache = cache if cache is not None else InMemoryResultCache()
        self.regime_store = regime_store or RegimeModelStore(
            retrain_interval=timedelta(days=self.settings.REGIME_RETRAIN_DAYS)
        )
        self.policy = policy or ScorePolicy()
        self._clock = clock
        self._ttls = ttls_from_settings(self.settings)
        self._retrain_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="regime-retrain")
        self._retrain_lock = threading.Lock()
        self._pending_retrain: Optional[Future] = None

    def close(self) -> None:
        """Stop background regime retrains and the price fetch pool."""
        self._retrain_executor.shutdown(wait=True)
        self.fetcher.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _prices(self, ticker: str, window_days: int) -> List[PricePoint]:
        return self.fetcher.fetch_price_history(
            ticker, window_days, timeout=self.settings.FETCH_TIMEOUT_SECONDS
        )

    def _optional_prices(self, ticker: str, window_days: int) -> Optional[List[PricePoint]]:
        """Prices for a secondary series; an unknown ticker yields None."""
        try:
            return self._prices(ticker, window_days)
        except TickerNotFoundError:
            logger.warning("risk_engine: secondary series not found", ticker=ticker)
            return None

    def _cached(
        self,
        kind: MetricKind,
        subject: str,
        window: Optional[int],
        params: Mapping[str, Any],
        model_cls: Type[M],
        compute: Callable[[], Optional[M]],
    ) -> Optional[M]:
        key = make_cache_key(subject, kind, window, params)
        payload = self.cache.get(key)
        if payload is not None:
            try:
                result = model_cls.model_validate(payload)
            except ValidationError as e:
                logger.error("risk_engine: cached payload invalid", key=key)
                raise CacheCorruptionError(f"Cached payload for {key} does not match {model_cls.__name__}") from e
            logger.debug("risk_engine: cache hit", key=key)
            return result

        result = compute()
        if isinstance(result, model_cls):
            self.cache.set(key, result.model_dump(mode="json"), self._ttls[kind])
        return result

    # ------------------------------------------------------------------
    # Core metrics
    # ------------------------------------------------------------------

    def compute_risk_metrics(
        self,
        ticker: str,
        benchmark: Optional[str] = None,
        window_days: Optional[int] = None,
    ) -> Union[RiskMetrics, InsufficientData]:
        """Risk metrics for one ticker against a benchmark.

        The configured extra benchmarks (e.g. QQQ, IWM) contribute to
        ``benchmark_betas``. A missing benchmark is flagged, not raised.

        Raises:
            ProviderError: If the ticker's own history cannot be fetched
        """
        benchmark = (benchmark or self.settings.DEFAULT_BENCHMARK).upper()
        window_days = window_days or self.settings.DEFAULT_WINDOW_DAYS
        ticker = ticker.upper()

        def compute() -> Union[RiskMetrics, InsufficientData]:
            prices = self._prices(ticker, window_days)
            bench_prices = self._optional_prices(benchmark, window_days) if benchmark != ticker else prices
            extras = {}
            for symbol in self.settings.extra_benchmarks:
                if symbol == benchmark:
                    continue
                points = self._optional_prices(symbol, window_days)
                if points:
                    extras[symbol] = points
            return compute_risk_metrics(
                ticker,
                prices,
                benchmark_prices=bench_prices,
                benchmark=benchmark,
                window_days=window_days,
                risk_free_rate=self.settings.RISK_FREE_RATE,
                policy=self.policy,
                extra_benchmarks=extras,
            )

        return self._cached(
            MetricKind.RISK_METRICS,
            ticker,
            window_days,
            {"benchmark": benchmark, "rf": self.settings.RISK_FREE_RATE, "policy": self.policy.model_dump()},
            RiskMetrics,
            compute,
        )

    # ------------------------------------------------------------------
    # Volatility forecasting
    # ------------------------------------------------------------------

    def forecast_volatility(
        self,
        ticker: str,
        horizon_days: int = 30,
        confidence: float = 0.95,
    ) -> Union[VolatilityForecast, InsufficientData]:
        """GARCH(1,1) variance forecast with confidence bands."""
        ticker = ticker.upper()
        history = self.settings.GARCH_HISTORY_DAYS

        def compute() -> Union[VolatilityForecast, InsufficientData]:
            try:
                series = build_return_series(ticker, self._prices(ticker, history))
                return garch.forecast_volatility(
                    ticker,
                    series.returns,
                    horizon_days=horizon_days,
                    confidence=confidence,
                    max_iterations=self.settings.GARCH_MAX_ITERATIONS,
                )
            except InsufficientDataError as e:
                return InsufficientData(
                    ticker=ticker,
                    reason="insufficient_history_for_garch",
                    observations=e.observations,
                    required=e.required,
                )

        return self._cached(
            MetricKind.VOLATILITY_FORECAST,
            ticker,
            history,
            {"horizon": horizon_days, "confidence": confidence},
            VolatilityForecast,
            compute,
        )

    # ------------------------------------------------------------------
    # Regimes
    # ------------------------------------------------------------------

    def _regime_series(self) -> ReturnSeries:
        ticker = self.settings.REGIME_TICKER.upper()
        return build_return_series(ticker, self._prices(ticker, self.settings.REGIME_LOOKBACK_DAYS))

    def retrain_regime_model(self, force: bool = False) -> HmmModel:
        """Retrain the HMM if the current snapshot is stale (or if forced).

        Raises:
            InsufficientDataError: If the regime ticker has too little history
        """
        now = self._clock()

        def train() -> HmmModel:
            series = self._regime_series()
            return regime.train_hmm(
                series.returns,
                dates=series.dates,
                max_iterations=self.settings.HMM_MAX_ITERATIONS,
                trained_at=now,
            )

        return self.regime_store.retrain(train, now=now, force=force)

    def schedule_regime_retrain(self) -> Future:
        """Queue a background retrain unless one is already pending.

        Returns:
            Future resolving to the snapshot in service once the retrain
            finishes (the previous one if training failed)
        """
        with self._retrain_lock:
            pending = self._pending_retrain
            if pending is not None and not pending.done():
                return pending
            self._pending_retrain = self._retrain_executor.submit(self._background_retrain)
            logger.info("risk_engine: regime retrain scheduled")
            return self._pending_retrain

    def _background_retrain(self) -> Optional[HmmModel]:
        try:
            return self.retrain_regime_model()
        except (InsufficientDataError, ProviderError, TimeoutError) as e:
            current = self.regime_store.current()
            logger.warning(
                "risk_engine: regime retrain failed",
                error=str(e),
                keeping_previous=current is not None,
            )
            return current

    def _regime_model(self) -> Optional[HmmModel]:
        """Snapshot for a request.

        Only the very first snapshot is trained inline. A stale snapshot keeps
        serving while its replacement trains in the background.
        """
        current = self.regime_store.current()
        if current is None:
            try:
                return self.retrain_regime_model()
            except InsufficientDataError as e:
                logger.warning("risk_engine: initial regime training skipped", error=str(e))
                return self.regime_store.current()
        if self.regime_store.is_stale(self._clock()):
            self.schedule_regime_retrain()
        return current

    def detect_regime(self) -> Union[RegimeDetection, InsufficientData]:
        """Current market regime distribution from the shared HMM."""
        model = self._regime_model()
        if model is None:
            return InsufficientData(ticker=self.settings.REGIME_TICKER.upper(), reason="regime_model_unavailable")
        return self._detect(model)

    def _detect(self, model: HmmModel) -> Union[RegimeDetection, InsufficientData]:
        ticker = self.settings.REGIME_TICKER.upper()
        try:
            series = build_return_series(ticker, self._prices(ticker, REGIME_FILTER_DAYS))
        except InsufficientDataError as e:
            return InsufficientData(ticker=ticker, reason="insufficient_price_history", observations=e.observations)

        def compute() -> RegimeDetection:
            return regime.detect_regime(model, series.returns, as_of=series.dates[-1])

        return self._cached(
            MetricKind.REGIME,
            ticker,
            REGIME_FILTER_DAYS,
            {
                "op": "detect",
                "trained_at": model.trained_at.isoformat(),
                "as_of": series.dates[-1].isoformat(),
            },
            RegimeDetection,
            compute,
        )

    def forecast_regime(self, horizon_days: int = 5) -> Union[RegimeForecast, InsufficientData]:
        """Regime distribution for each of the next ``horizon_days`` days."""
        model = self._regime_model()
        if model is None:
            return InsufficientData(ticker=self.settings.REGIME_TICKER.upper(), reason="regime_model_unavailable")
        detection = self._detect(model)
        if isinstance(detection, InsufficientData):
            return detection
        return regime.forecast_regime(model, detection.probabilities, horizon_days)

    # ------------------------------------------------------------------
    # Beta
    # ------------------------------------------------------------------

    def rolling_beta(
        self,
        ticker: str,
        benchmark: Optional[str] = None,
        windows: Iterable[int] = beta_engine.DEFAULT_WINDOWS,
    ) -> List[BetaObservation]:
        """Rolling beta observations for every requested window.

        An unavailable benchmark yields an empty list.
        """
        ticker = ticker.upper()
        benchmark = (benchmark or self.settings.DEFAULT_BENCHMARK).upper()
        windows = sorted({int(w) for w in windows})
        history = max(windows) + BETA_HISTORY_PADDING

        def compute() -> _BetaObservations:
            prices = self._prices(ticker, history)
            bench_prices = self._optional_prices(benchmark, history)
            if not bench_prices:
                return _BetaObservations(observations=[])
            try:
                series = build_return_series(ticker, prices)
                bench = build_return_series(benchmark, bench_prices)
            except InsufficientDataError:
                return _BetaObservations(observations=[])
            return _BetaObservations(observations=beta_engine.rolling_beta(series, bench, windows))

        result = self._cached(
            MetricKind.BETA,
            ticker,
            history,
            {"benchmark": benchmark, "windows": windows},
            _BetaObservations,
            compute,
        )
        return result.observations

    def forecast_beta(
        self,
        ticker: str,
        benchmark: Optional[str] = None,
        horizon_days: int = 30,
        method: BetaForecastMethod = BetaForecastMethod.ENSEMBLE,
        window: int = 90,
    ) -> Optional[BetaForecast]:
        """Forecast beta from the rolling ``window``-day beta history.

        Returns None when fewer than 10 beta observations exist.
        """
        ticker = ticker.upper()
        benchmark = (benchmark or self.settings.DEFAULT_BENCHMARK).upper()
        observations = [o for o in self.rolling_beta(ticker, benchmark, [window]) if o.window == window]

        return beta_engine.forecast_beta(
            [o.beta for o in observations],
            horizon_days,
            method=method,
            ticker=ticker,
            benchmark=benchmark,
            window=window,
            dates=[o.date for o in observations],
            lookback=self.settings.BETA_FORECAST_LOOKBACK,
        )

    # ------------------------------------------------------------------
    # Correlation
    # ------------------------------------------------------------------

    def cluster_correlations(
        self,
        tickers: Iterable[str],
        window_days: Optional[int] = None,
        weights: Optional[Mapping[str, float]] = None,
    ) -> ClusterResult:
        """Correlation clustering across tickers.

        Tickers that are unknown to the provider or too short are reported in
        ``excluded_tickers``; they never abort the whole computation.
        """
        symbols = sorted({t.upper() for t in tickers})
        window_days = window_days or self.settings.DEFAULT_WINDOW_DAYS
        weights_upper = {t.upper(): w for t, w in (weights or {}).items()}

        def compute() -> ClusterResult:
            series: Dict[str, ReturnSeries] = {}
            excluded: Dict[str, str] = {}
            for symbol in symbols:
                try:
                    series[symbol] = build_return_series(symbol, self._prices(symbol, window_days))
                except TickerNotFoundError:
                    excluded[symbol] = "ticker_not_found"
                except InsufficientDataError:
                    excluded[symbol] = "insufficient_history"

            result = correlation_engine.cluster_correlations(
                series,
                min_overlap=self.settings.CORRELATION_MIN_OVERLAP,
                weights=weights_upper or None,
            )
            if excluded:
                result = result.model_copy(update={"excluded_tickers": {**result.excluded_tickers, **excluded}})
            return result

        return self._cached(
            MetricKind.CORRELATION,
            ",".join(symbols),
            window_days,
            {"min_overlap": self.settings.CORRELATION_MIN_OVERLAP, "weights": weights_upper},
            ClusterResult,
            compute,
        )

    # ------------------------------------------------------------------
    # Portfolio
    # ------------------------------------------------------------------

    def aggregate_portfolio_risk(self, positions: Mapping[str, PositionInput]) -> PortfolioRiskView:
        return aggregate_portfolio_risk(positions, policy=self.policy)

    def compute_portfolio_risk(
        self,
        market_values: Mapping[str, float],
        benchmark: Optional[str] = None,
        window_days: Optional[int] = None,
    ) -> PortfolioRiskView:
        """Metrics for every holding, then the aggregated portfolio view.

        Holdings the provider does not know become InsufficientData and are
        excluded from the weighted figures.
        """
        weights = weights_from_market_values(market_values)
        positions: Dict[str, PositionInput] = {}
        for ticker, weight in weights.items():
            try:
                metrics = self.compute_risk_metrics(ticker, benchmark, window_days)
            except TickerNotFoundError:
                metrics = InsufficientData(ticker=ticker.upper(), reason="ticker_not_found")
            positions[ticker.upper()] = (weight, metrics)
        return self.aggregate_portfolio_risk(positions)

    # ------------------------------------------------------------------
    # Data quality
    # ------------------------------------------------------------------

    def assess_data_quality(self, tickers: Sequence[str], window_days: Optional[int] = None) -> Dict[str, Any]:
        window_days = window_days or self.settings.DEFAULT_WINDOW_DAYS
        histories = {}
        for ticker in tickers:
            histories[ticker.upper()] = self._optional_prices(ticker.upper(), window_days) or []
        return build_data_quality_pack(histories)


def build_price_provider(settings: Settings) -> PriceProvider:
    """Yahoo first, then Alpha Vantage when an API key is configured."""
    providers: List[PriceProvider] = [YahooPriceProvider()]
    if settings.ALPHAVANTAGE_API_KEY:
        providers.append(
            AlphaVantagePriceProvider(settings.ALPHAVANTAGE_API_KEY, timeout=settings.FETCH_TIMEOUT_SECONDS)
        )
    return FallbackPriceProvider(providers, failure_cache=FailureCache())


def create_risk_engine(settings: Optional[Settings] = None) -> RiskEngine:
    """Wire a RiskEngine from settings: logging, provider chain and result cache."""
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL, json=settings.LOG_JSON)
    engine = RiskEngine(
        build_price_provider(settings),
        settings=settings,
        cache=build_result_cache(settings),
    )
    logger.info(
        "create_risk_engine: engine ready",
        benchmark=settings.DEFAULT_BENCHMARK,
        redis=bool(settings.REDIS_URL),
        alphavantage=bool(settings.ALPHAVANTAGE_API_KEY),
    )
    return engine
