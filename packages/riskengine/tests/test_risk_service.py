"""
Integration tests for the RiskEngine service.

Runs the full pipeline (fetcher, caches, regime store, computations) over
static in-memory price histories.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from riskengine.config import Settings
from riskengine.data.providers import FallbackPriceProvider, StaticPriceProvider
from riskengine.risk import errors
from riskengine.risk.errors import CacheCorruptionError, TickerNotFoundError
from riskengine.risk.models import (
    BetaForecast,
    ClusterResult,
    InsufficientData,
    RegimeDetection,
    RegimeForecast,
    RiskMetrics,
    VolatilityForecast,
)
from riskengine.services import InMemoryResultCache, RiskEngine, build_price_provider, create_risk_engine


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 3, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


class GarbageCache:
    """Cache whose every entry fails validation."""

    def get(self, key):
        return {"unexpected": True}

    def set(self, key, value, ttl_seconds):
        pass

    def delete(self, key):
        pass


@pytest.fixture
def settings():
    return Settings(EXTRA_BENCHMARKS="HEDGE", REDIS_URL="", ALPHAVANTAGE_API_KEY="")


@pytest.fixture
def provider(sample_histories, points_factory):
    histories = dict(sample_histories)
    histories["SHORT"] = points_factory([100.0 + i for i in range(20)])
    return StaticPriceProvider(histories)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(provider, settings, clock):
    engine = RiskEngine(provider, settings=settings, cache=InMemoryResultCache(), clock=clock)
    yield engine
    engine.close()


class TestRiskMetrics:
    """Tests for RiskEngine.compute_risk_metrics."""

    def test_metrics_with_extra_benchmarks(self, engine):
        metrics = engine.compute_risk_metrics("hibeta")

        assert isinstance(metrics, RiskMetrics)
        assert metrics.ticker == "HIBETA"
        assert metrics.benchmark == "SPY"
        assert set(metrics.benchmark_betas) == {"SPY", "HEDGE"}
        assert metrics.benchmark_betas["HEDGE"] < 0

    def test_second_call_served_from_cache(self, engine, provider):
        first = engine.compute_risk_metrics("LOBETA")
        calls = len(provider.calls)

        second = engine.compute_risk_metrics("LOBETA")

        assert second == first
        assert len(provider.calls) == calls

    def test_unknown_benchmark_flagged(self, engine):
        metrics = engine.compute_risk_metrics("HIBETA", benchmark="NOPE")

        assert metrics.beta is None
        assert errors.BENCHMARK_UNAVAILABLE in metrics.flags

    def test_unknown_ticker_propagates(self, engine):
        with pytest.raises(TickerNotFoundError):
            engine.compute_risk_metrics("NOPE")

    def test_corrupted_cache_raises(self, provider, settings, clock):
        engine = RiskEngine(provider, settings=settings, cache=GarbageCache(), clock=clock)

        with pytest.raises(CacheCorruptionError):
            engine.compute_risk_metrics("HIBETA")


class TestVolatilityForecast:
    """Tests for RiskEngine.forecast_volatility."""

    def test_forecast(self, engine):
        forecast = engine.forecast_volatility("SPY", horizon_days=10, confidence=0.80)

        assert isinstance(forecast, VolatilityForecast)
        assert len(forecast.points) == 10
        assert forecast.confidence == 0.80

    def test_short_history_insufficient(self, engine):
        result = engine.forecast_volatility("SHORT")

        assert isinstance(result, InsufficientData)
        assert result.required == 30


class TestRegimes:
    """Tests for regime detection through the shared model store."""

    def test_detect_trains_once(self, engine):
        detection = engine.detect_regime()
        again = engine.detect_regime()

        assert isinstance(detection, RegimeDetection)
        assert again == detection
        assert engine.regime_store.version == 1
        assert sum(detection.probabilities.values()) == pytest.approx(1.0)

    def test_retrains_when_stale(self, engine, clock):
        engine.detect_regime()

        clock.now += timedelta(days=31)
        engine.detect_regime()
        engine.schedule_regime_retrain().result(timeout=60)

        assert engine.regime_store.version == 2
        assert engine.regime_store.current().trained_at == clock.now

    def test_stale_model_served_while_retraining(self, engine, clock, monkeypatch):
        """A request on a stale snapshot answers from it and never waits for training."""
        first = engine.detect_regime()
        stale = engine.regime_store.current()

        started = threading.Event()
        release = threading.Event()
        train = engine.retrain_regime_model

        def slow_retrain(force=False):
            started.set()
            release.wait(30)
            return train(force)

        monkeypatch.setattr(engine, "retrain_regime_model", slow_retrain)
        clock.now += timedelta(days=31)

        detection = engine.detect_regime()
        forecast = engine.forecast_regime(horizon_days=3)

        assert started.wait(10)
        assert not release.is_set()
        assert detection == first
        assert isinstance(forecast, RegimeForecast)
        assert engine.regime_store.current() is stale
        assert engine.regime_store.version == 1

        pending = engine.schedule_regime_retrain()
        release.set()
        pending.result(timeout=60)

        assert engine.regime_store.version == 2

    def test_failed_retrain_keeps_snapshot(self, engine, clock, monkeypatch):
        engine.detect_regime()
        current = engine.regime_store.current()

        def failing_retrain(force=False):
            raise errors.InsufficientDataError("no history", observations=0)

        monkeypatch.setattr(engine, "retrain_regime_model", failing_retrain)
        clock.now += timedelta(days=31)

        assert engine.schedule_regime_retrain().result(timeout=10) is current
        assert isinstance(engine.detect_regime(), RegimeDetection)
        assert engine.regime_store.version == 1

    def test_forced_retrain(self, engine):
        engine.retrain_regime_model()
        engine.retrain_regime_model(force=True)

        assert engine.regime_store.version == 2

    def test_forecast(self, engine):
        forecast = engine.forecast_regime(horizon_days=5)

        assert isinstance(forecast, RegimeForecast)
        assert len(forecast.trajectory) == 5

    def test_unavailable_model(self, provider, clock):
        settings = Settings(REGIME_TICKER="SHORT", EXTRA_BENCHMARKS="")
        engine = RiskEngine(provider, settings=settings, clock=clock)

        result = engine.forecast_regime(horizon_days=5)

        assert isinstance(result, InsufficientData)
        assert result.reason == "regime_model_unavailable"
        assert engine.regime_store.current() is None


class TestBeta:
    """Tests for rolling beta and beta forecasts."""

    def test_rolling_beta(self, engine):
        observations = engine.rolling_beta("HIBETA", windows=[30, 60])

        assert {o.window for o in observations} == {30, 60}
        assert all(1.0 < o.beta < 2.0 for o in observations)

    def test_unknown_benchmark_empty(self, engine):
        assert engine.rolling_beta("HIBETA", benchmark="NOPE", windows=[30]) == []

    def test_forecast_beta(self, engine):
        forecast = engine.forecast_beta("LOBETA", horizon_days=15)

        assert isinstance(forecast, BetaForecast)
        assert forecast.window == 90
        assert forecast.benchmark == "SPY"
        assert len(forecast.points) == 15


class TestCorrelation:
    """Tests for RiskEngine.cluster_correlations."""

    def test_unknown_and_short_tickers_excluded(self, engine):
        result = engine.cluster_correlations(["SPY", "HIBETA", "HEDGE", "NOISE", "SHORT", "NOPE"])

        assert isinstance(result, ClusterResult)
        assert result.excluded_tickers["NOPE"] == "ticker_not_found"
        assert "SHORT" in result.excluded_tickers
        members = sorted(m for c in result.clusters for m in c.members)
        assert members == sorted(result.tickers) == ["HEDGE", "HIBETA", "NOISE", "SPY"]


class TestPortfolio:
    """Tests for portfolio aggregation through the engine."""

    def test_portfolio_from_market_values(self, engine):
        view = engine.compute_portfolio_risk({"HIBETA": 5000.0, "LOBETA": 3000.0, "NOPE": 2000.0})

        assert view.positions_included == 2
        assert view.excluded_tickers == ["NOPE"]
        assert sum(c.contribution_pct for c in view.contributions) == pytest.approx(100.0)

    def test_aggregate_precomputed(self, engine):
        positions = {
            "HIBETA": (0.5, engine.compute_risk_metrics("HIBETA")),
            "SHORT": (0.5, engine.compute_risk_metrics("SHORT")),
        }

        view = engine.aggregate_portfolio_risk(positions)

        assert view.positions_included == 2
        assert sum(c.weight for c in view.contributions) == pytest.approx(1.0)


class TestDataQuality:
    def test_pack(self, engine):
        pack = engine.assess_data_quality(["SPY", "SHORT", "NOPE"])

        assert pack["tickers"] == 3
        assert "SHORT" in pack["tickers_with_warnings"]
        assert pack["reports"]["NOPE"]["usable_points"] == 0


class TestWiring:
    def test_price_provider_chain(self):
        provider = build_price_provider(Settings(ALPHAVANTAGE_API_KEY="demo"))

        assert isinstance(provider, FallbackPriceProvider)

    def test_create_engine(self):
        engine = create_risk_engine(Settings(REDIS_URL="", LOG_LEVEL="WARNING"))

        assert isinstance(engine.cache, InMemoryResultCache)
        assert isinstance(engine.fetcher.provider, FallbackPriceProvider)
        engine.fetcher.shutdown()
