"""
Unit tests for correlation.py - Correlation Analysis Module

Tests cover:
- Correlation matrix computation
- Top correlated pairs identification
- Hierarchical clustering and silhouette-based cluster count
- Cluster exposure analysis
- End-to-end clustering of return series
"""

import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_allclose

from riskengine.risk.correlation import (
    average_correlation,
    cluster_correlations,
    cluster_exposures,
    correlation_distance,
    correlation_matrix,
    diversification_score,
    hierarchical_clusters,
    select_cluster_count,
    top_correlated_pairs,
)
from riskengine.risk.returns import build_return_series


@pytest.fixture
def sample_returns():
    """Returns matrix with two correlated blocks.

    Returns:
        pd.DataFrame: 252 x 6 returns; A1-A3 share one factor, B1-B3 another
    """
    np.random.seed(42)
    dates = pd.bdate_range("2023-01-02", periods=252)
    f1 = np.random.normal(0, 0.02, 252)
    f2 = np.random.normal(0, 0.02, 252)
    data = {}
    for i in range(1, 4):
        data[f"A{i}"] = f1 + np.random.normal(0, 0.005, 252)
        data[f"B{i}"] = f2 + np.random.normal(0, 0.005, 252)
    return pd.DataFrame(data, index=dates)


@pytest.fixture
def return_series(sample_histories):
    return {t: build_return_series(t, p) for t, p in sample_histories.items()}


class TestCorrelationMatrix:
    """Tests for correlation_matrix function."""

    def test_correlation_matrix_diagonal(self, sample_returns):
        """Diagonal should be all 1.0 (self-correlation)."""
        corr = correlation_matrix(sample_returns)

        assert_allclose(np.diag(corr.values), 1.0, rtol=1e-12)

    def test_correlation_bounds_and_symmetry(self, sample_returns):
        corr = correlation_matrix(sample_returns)

        assert np.all(corr.values >= -1.0)
        assert np.all(corr.values <= 1.0)
        assert_allclose(corr.values, corr.values.T, rtol=1e-12)

    def test_anti_correlated_pair(self):
        """A series and its negation correlate at exactly -1."""
        np.random.seed(42)
        x = np.random.normal(0, 0.01, 100)
        returns = pd.DataFrame({"X": x, "NEG": -x})

        corr = correlation_matrix(returns)

        assert_allclose(corr.loc["X", "NEG"], -1.0, rtol=1e-12)

    def test_empty_raises(self):
        with pytest.raises(ValueError, match="empty"):
            correlation_matrix(pd.DataFrame())

    def test_zero_variance_raises(self):
        returns = pd.DataFrame({"A": [0.01, 0.02, -0.01], "FLAT": [0.0, 0.0, 0.0]})

        with pytest.raises(ValueError, match="NaN"):
            correlation_matrix(returns)


class TestSummaries:
    """Tests for average_correlation, diversification_score and distance."""

    def test_average_single_asset(self):
        assert average_correlation(pd.DataFrame([[1.0]], index=["A"], columns=["A"])) == 1.0

    def test_diversification_clipped(self):
        assert diversification_score(1.0) == 0.0
        assert diversification_score(0.25) == pytest.approx(75.0)
        assert diversification_score(-0.5) == 100.0

    def test_distance_range(self, sample_returns):
        distance = correlation_distance(correlation_matrix(sample_returns))

        assert np.all(np.diag(distance) == 0)
        assert np.all(distance >= 0)
        assert np.all(distance <= 2.0 + 1e-12)


class TestTopCorrelatedPairs:
    """Tests for top_correlated_pairs function."""

    def test_sorted_by_absolute_value(self, sample_returns):
        pairs = top_correlated_pairs(correlation_matrix(sample_returns), n=5)

        values = [abs(p.correlation) for p in pairs]
        assert len(pairs) == 5
        assert values == sorted(values, reverse=True)

    def test_no_self_pairs(self, sample_returns):
        pairs = top_correlated_pairs(correlation_matrix(sample_returns), n=50)

        assert all(p.ticker_a != p.ticker_b for p in pairs)
        assert len(pairs) == 15


class TestClustering:
    """Tests for hierarchical_clusters and select_cluster_count."""

    def test_two_blocks_found(self, sample_returns):
        labels, silhouette = select_cluster_count(correlation_matrix(sample_returns))

        assert len(set(labels.values())) == 2
        assert labels["A1"] == labels["A2"] == labels["A3"]
        assert labels["B1"] == labels["B2"] == labels["B3"]
        assert labels["A1"] != labels["B1"]
        assert silhouette is not None and silhouette > 0.5

    def test_labels_cover_all_tickers(self, sample_returns):
        labels = hierarchical_clusters(correlation_matrix(sample_returns), 3)

        assert set(labels) == set(sample_returns.columns)
        assert all(1 <= c <= 3 for c in labels.values())

    def test_single_asset(self):
        corr = pd.DataFrame([[1.0]], index=["A"], columns=["A"])

        labels, silhouette = select_cluster_count(corr)

        assert labels == {"A": 1}
        assert silhouette is None

    def test_two_assets_split(self):
        corr = pd.DataFrame([[1.0, 0.9], [0.9, 1.0]], index=["A", "B"], columns=["A", "B"])

        labels, silhouette = select_cluster_count(corr)

        assert labels["A"] != labels["B"]
        assert silhouette is None


class TestClusterExposures:
    """Tests for cluster_exposures function."""

    def test_gross_sums_to_100(self):
        labels = {"A": 1, "B": 1, "C": 2}
        weights = {"A": 0.5, "B": -0.2, "C": 0.3}

        exposures = cluster_exposures(labels, weights)

        assert_allclose(sum(e.gross_exposure_pct for e in exposures), 100.0)
        by_id = {e.cluster_id: e for e in exposures}
        assert_allclose(by_id[1].gross_exposure_pct, 70.0)
        assert_allclose(by_id[1].net_exposure_pct, 30.0)

    def test_zero_exposure(self):
        assert cluster_exposures({"A": 1}, {"A": 0.0}) == []


class TestClusterCorrelations:
    """Tests for cluster_correlations function."""

    def test_clusters_partition_tickers(self, return_series):
        result = cluster_correlations(return_series)

        members = [m for c in result.clusters for m in c.members]
        assert sorted(members) == sorted(result.tickers)
        assert len(members) == len(set(members))
        assert set(result.labels) == set(result.tickers)
        assert result.n_clusters == len(result.clusters)

    def test_hedge_separated_from_benchmark(self, return_series):
        result = cluster_correlations(return_series)

        assert_allclose(result.correlation["SPY"]["HEDGE"], -1.0, atol=1e-10)
        assert result.labels["SPY"] != result.labels["HEDGE"]

    def test_zero_variance_excluded(self, return_series, returns_to_points):
        return_series = dict(return_series)
        return_series["FLAT"] = build_return_series("FLAT", returns_to_points(np.zeros(300)))

        result = cluster_correlations(return_series)

        assert result.excluded_tickers["FLAT"] == "zero_variance"
        assert "FLAT" not in result.tickers

    def test_short_history_excluded(self, return_series, sample_histories):
        return_series = dict(return_series)
        return_series["SHORT"] = build_return_series("SHORT", sample_histories["NOISE"][-30:])

        result = cluster_correlations(return_series, min_overlap=60)

        assert "SHORT" in result.excluded_tickers
        assert "SHORT" not in result.labels

    def test_exposures_when_weighted(self, return_series):
        weights = {"SPY": 0.4, "HIBETA": 0.3, "HEDGE": 0.3}

        result = cluster_correlations(return_series, weights=weights)

        assert_allclose(sum(e.gross_exposure_pct for e in result.exposures), 100.0)

    def test_empty_input(self):
        result = cluster_correlations({})

        assert result.n_clusters == 0
        assert result.clusters == []

    def test_diversification_matches_average(self, return_series):
        result = cluster_correlations(return_series)

        assert_allclose(result.diversification_score, np.clip(100 * (1 - result.average_correlation), 0, 100))
