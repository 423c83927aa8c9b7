"""
Unit tests for aggregate.py - Portfolio Risk Aggregation Module

Tests cover:
- Market value weights
- Risk contributions
- Weighted portfolio figures with excluded positions
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from riskengine.risk.aggregate import (
    aggregate_portfolio_risk,
    risk_contributions,
    weights_from_market_values,
)
from riskengine.risk.metrics import compute_risk_metrics
from riskengine.risk.models import InsufficientData, RiskLevel


@pytest.fixture
def position_metrics(sample_histories):
    """RiskMetrics for the sample stocks against SPY."""
    return {
        ticker: compute_risk_metrics(ticker, sample_histories[ticker], sample_histories["SPY"], benchmark="SPY")
        for ticker in ("HIBETA", "LOBETA", "NOISE")
    }


class TestWeights:
    """Tests for weights_from_market_values function."""

    def test_weights_sum_to_one(self):
        weights = weights_from_market_values({"A": 6000.0, "B": 3000.0, "C": 1000.0})

        assert_allclose(sum(weights.values()), 1.0)
        assert_allclose(weights["A"], 0.6)

    def test_non_positive_total_raises(self):
        with pytest.raises(ValueError, match="must be positive"):
            weights_from_market_values({"A": 0.0})


class TestRiskContributions:
    """Tests for risk_contributions function."""

    def test_sum_to_100(self):
        contrib = risk_contributions(np.array([0.5, 0.3, 0.2]), np.array([0.2, 0.4, 0.1]))

        assert_allclose(contrib.sum(), 100.0)
        assert_allclose(contrib, np.array([0.10, 0.12, 0.02]) / 0.24 * 100)

    def test_zero_volatility_equal_split(self):
        contrib = risk_contributions(np.array([0.5, 0.5]), np.zeros(2))

        assert_allclose(contrib, [50.0, 50.0])

    def test_empty(self):
        assert len(risk_contributions(np.array([]), np.array([]))) == 0


class TestAggregatePortfolioRisk:
    """Tests for aggregate_portfolio_risk function."""

    def test_contributions_sum_to_100(self, position_metrics):
        positions = {t: (w, position_metrics[t]) for t, w in zip(position_metrics, (0.5, 0.3, 0.2))}

        view = aggregate_portfolio_risk(positions)

        assert_allclose(sum(c.contribution_pct for c in view.contributions), 100.0)
        assert view.positions_included == 3
        assert view.positions_excluded == 0

    def test_weighted_volatility_and_beta(self, position_metrics):
        weights = {"HIBETA": 0.5, "LOBETA": 0.3, "NOISE": 0.2}
        positions = {t: (w, position_metrics[t]) for t, w in weights.items()}

        view = aggregate_portfolio_risk(positions)

        expected_vol = sum(w * position_metrics[t].volatility for t, w in weights.items())
        expected_beta = sum(w * position_metrics[t].beta for t, w in weights.items())
        assert_allclose(view.portfolio_volatility, expected_vol, rtol=1e-12)
        assert_allclose(view.portfolio_beta, expected_beta, rtol=1e-12)
        assert view.portfolio_max_drawdown <= 0.0
        assert 0.0 <= view.risk_score <= 100.0

    def test_insufficient_positions_excluded_and_renormalized(self, position_metrics):
        positions = {
            "HIBETA": (0.4, position_metrics["HIBETA"]),
            "LOBETA": (0.4, position_metrics["LOBETA"]),
            "NEWCO": (0.2, InsufficientData(ticker="NEWCO", reason="insufficient_price_history")),
        }

        view = aggregate_portfolio_risk(positions)

        assert view.excluded_tickers == ["NEWCO"]
        assert view.positions_included == 2
        assert_allclose(sum(c.weight for c in view.contributions), 1.0)
        assert_allclose(sum(c.contribution_pct for c in view.contributions), 100.0)

    def test_contributions_sorted(self, position_metrics):
        positions = {t: (1 / 3, m) for t, m in position_metrics.items()}

        view = aggregate_portfolio_risk(positions)

        pcts = [abs(c.contribution_pct) for c in view.contributions]
        assert pcts == sorted(pcts, reverse=True)

    def test_missing_beta_renormalizes(self, position_metrics, sample_histories):
        no_bench = compute_risk_metrics("NOISE", sample_histories["NOISE"])
        positions = {
            "HIBETA": (0.5, position_metrics["HIBETA"]),
            "NOISE": (0.5, no_bench),
        }

        view = aggregate_portfolio_risk(positions)

        assert no_bench.beta is None
        assert_allclose(view.portfolio_beta, position_metrics["HIBETA"].beta, rtol=1e-12)

    def test_all_excluded(self):
        view = aggregate_portfolio_risk({"X": (1.0, InsufficientData(ticker="X", reason="none"))})

        assert view.positions_included == 0
        assert view.contributions == []
        assert view.risk_level == RiskLevel.LOW
