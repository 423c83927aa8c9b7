"""
Shared test fixtures for the risk engine test suite.

Provides consistent test data across all test modules:
- Price point histories built from close arrays
- Correlated multi-ticker histories with a benchmark
- Simulated GARCH(1,1) returns
- Regime-switching returns for HMM training
"""

from datetime import datetime, timezone

import numpy as np
import pandas as pd
import pytest

from riskengine.risk.models import PricePoint


def make_points(closes, start="2023-01-02"):
    """Build PricePoints on consecutive business days from a list of closes."""
    dates = pd.bdate_range(start, periods=len(closes))
    return [PricePoint(date=d.date(), close=float(c)) for d, c in zip(dates, closes)]


def prices_from_returns(returns, base=100.0, start="2023-01-02"):
    """Compound returns into closes (one more close than returns)."""
    closes = base * np.concatenate([[1.0], np.cumprod(1.0 + np.asarray(returns, dtype=float))])
    return make_points(closes, start=start)


@pytest.fixture
def points_factory():
    """Expose make_points to tests that build their own histories."""
    return make_points


@pytest.fixture
def returns_to_points():
    """Expose prices_from_returns to tests that compound their own returns."""
    return prices_from_returns


@pytest.fixture
def market_returns():
    """Benchmark daily returns over 300 trading days.

    Returns:
        np.ndarray: 300 normal returns, mean 0.0004, std 0.01
    """
    np.random.seed(42)
    return np.random.normal(0.0004, 0.01, 300)


@pytest.fixture
def sample_histories(market_returns):
    """Price histories for a benchmark and four stocks with known structure.

    Returns:
        Dict[str, List[PricePoint]]:
            SPY  - the benchmark
            HIBETA - 1.5x the benchmark plus noise
            LOBETA - 0.5x the benchmark plus noise
            HEDGE - exactly the negated benchmark return
            NOISE - independent returns
    """
    np.random.seed(7)
    n = len(market_returns)
    returns = {
        "SPY": market_returns,
        "HIBETA": 1.5 * market_returns + np.random.normal(0, 0.005, n),
        "LOBETA": 0.5 * market_returns + np.random.normal(0, 0.005, n),
        "HEDGE": -market_returns,
        "NOISE": np.random.normal(0.0, 0.012, n),
    }
    return {ticker: prices_from_returns(r) for ticker, r in returns.items()}


@pytest.fixture
def garch_returns():
    """Simulated GARCH(1,1) returns with omega=1e-6, alpha=0.10, beta=0.85.

    Returns:
        np.ndarray: 2000 daily returns
    """
    np.random.seed(42)
    n = 2000
    omega, alpha, beta = 1e-6, 0.10, 0.85
    sigma2 = omega / (1 - alpha - beta)
    out = np.empty(n)
    for t in range(n):
        out[t] = np.sqrt(sigma2) * np.random.normal()
        sigma2 = omega + alpha * out[t] ** 2 + beta * sigma2
    return out


@pytest.fixture
def regime_returns():
    """Returns alternating between calm-up, volatile-down and choppy blocks.

    Returns:
        np.ndarray: 600 daily returns in six 100-day blocks
    """
    np.random.seed(42)
    blocks = [
        np.random.normal(0.001, 0.006, 100),
        np.random.normal(-0.002, 0.025, 100),
        np.random.normal(0.0, 0.010, 100),
        np.random.normal(0.001, 0.006, 100),
        np.random.normal(-0.002, 0.025, 100),
        np.random.normal(0.0, 0.010, 100),
    ]
    return np.concatenate(blocks)


@pytest.fixture
def trained_at():
    return datetime(2024, 6, 3, tzinfo=timezone.utc)
