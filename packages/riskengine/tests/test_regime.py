"""
Unit tests for regime.py - Market Regime Module

Tests cover:
- HMM training (shapes, labelling, minimum data)
- Filtered state probabilities
- Rule-based classification
- Ensemble detection and multi-day regime forecasts
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from riskengine.risk.errors import InsufficientDataError
from riskengine.risk.models import REGIME_STATES, HmmModel, RegimeState
from riskengine.risk.regime import (
    classify_rule_based,
    detect_regime,
    forecast_confidence_label,
    forecast_regime,
    state_probabilities,
    train_hmm,
)


def _manual_model(transition, trained_at):
    return HmmModel(
        state_names=list(REGIME_STATES),
        transition_matrix=transition,
        initial_distribution=[0.25, 0.25, 0.25, 0.25],
        state_means=[0.001, -0.002, -0.001, 0.0],
        state_stdevs=[0.006, 0.015, 0.030, 0.010],
        log_likelihood=0.0,
        iterations=1,
        converged=True,
        observations=100,
        trained_at=trained_at,
    )


@pytest.fixture
def trained_model(regime_returns, trained_at):
    return train_hmm(regime_returns, trained_at=trained_at)


class TestTrainHmm:
    """Tests for train_hmm function."""

    def test_model_shapes(self, trained_model):
        assert trained_model.state_names == REGIME_STATES
        assert len(trained_model.transition_matrix) == 4
        assert all(len(row) == 4 for row in trained_model.transition_matrix)
        assert len(trained_model.state_means) == 4
        assert len(trained_model.state_stdevs) == 4

    def test_stochastic_matrices(self, trained_model):
        assert_allclose(np.sum(trained_model.transition_matrix, axis=1), 1.0, rtol=1e-10)
        assert_allclose(sum(trained_model.initial_distribution), 1.0, rtol=1e-10)
        assert np.all(np.asarray(trained_model.transition_matrix) >= 0)

    def test_high_volatility_state_has_largest_spread(self, trained_model):
        stdevs = dict(zip(trained_model.state_names, trained_model.state_stdevs))

        assert stdevs[RegimeState.HIGH_VOLATILITY] == max(stdevs.values())
        assert stdevs[RegimeState.HIGH_VOLATILITY] > 0.015

    def test_bull_mean_not_below_bear_mean(self, trained_model):
        means = dict(zip(trained_model.state_names, trained_model.state_means))

        assert means[RegimeState.BULL] >= means[RegimeState.BEAR]

    def test_records_training_metadata(self, regime_returns, trained_at):
        model = train_hmm(regime_returns, max_iterations=5, trained_at=trained_at)

        assert model.iterations <= 5
        assert model.observations == len(regime_returns)
        assert model.trained_at == trained_at

    def test_too_few_returns(self):
        with pytest.raises(InsufficientDataError) as exc_info:
            train_hmm(np.random.normal(0, 0.01, 59))

        assert exc_info.value.required == 60

    def test_constant_returns(self):
        with pytest.raises(InsufficientDataError, match="non-constant"):
            train_hmm(np.full(100, 0.001))


class TestStateProbabilities:
    """Tests for state_probabilities function."""

    def test_probabilities_sum_to_one(self, trained_model, regime_returns):
        for end in (60, 150, 400, 600):
            probs = state_probabilities(trained_model, regime_returns[:end])

            assert_allclose(probs.sum(), 1.0, rtol=1e-10)
            assert np.all(probs >= 0)

    def test_empty_returns_initial_distribution(self, trained_model):
        probs = state_probabilities(trained_model, [])

        assert_allclose(probs, trained_model.initial_distribution, rtol=1e-10)


class TestRuleBased:
    """Tests for classify_rule_based function."""

    def test_high_volatility(self):
        result = classify_rule_based(0.03 * (-1.0) ** np.arange(30))

        assert result.state == RegimeState.HIGH_VOLATILITY
        assert result.confidence >= 0.75

    def test_bull(self):
        result = classify_rule_based(0.001 + 0.0005 * (-1.0) ** np.arange(30))

        assert result.state == RegimeState.BULL
        assert result.trailing_return > 0
        assert result.confidence >= 0.60

    def test_bear(self):
        result = classify_rule_based(-0.002 + 0.018 * (-1.0) ** np.arange(30))

        assert result.state == RegimeState.BEAR
        assert result.trailing_return < 0

    def test_normal(self):
        result = classify_rule_based(0.01 * (-1.0) ** np.arange(30))

        assert result.state == RegimeState.NORMAL
        assert result.confidence == pytest.approx(0.70)

    def test_uses_trailing_window_only(self):
        """Only the last 30 returns matter."""
        calm = 0.001 + 0.0005 * (-1.0) ** np.arange(30)
        wild = 0.05 * (-1.0) ** np.arange(200)

        assert classify_rule_based(np.concatenate([wild, calm])).state == RegimeState.BULL

    def test_too_few_returns(self):
        with pytest.raises(InsufficientDataError):
            classify_rule_based([0.01])


class TestDetectRegime:
    """Tests for detect_regime function."""

    def test_distribution_over_all_states(self, trained_model, regime_returns):
        detection = detect_regime(trained_model, regime_returns)

        assert set(detection.probabilities) == set(REGIME_STATES)
        assert_allclose(sum(detection.probabilities.values()), 1.0, rtol=1e-10)
        assert detection.most_likely == max(detection.probabilities, key=detection.probabilities.get)

    def test_high_confidence_requires_agreement(self, trained_model, regime_returns):
        detection = detect_regime(trained_model, regime_returns)

        assert detection.rule_based is not None
        assert detection.high_confidence == (detection.rule_based.state == detection.most_likely)

    def test_without_ensemble(self, trained_model, regime_returns):
        detection = detect_regime(trained_model, regime_returns, ensemble=False)

        assert detection.rule_based is None
        assert not detection.high_confidence


class TestForecastRegime:
    """Tests for forecast_regime function."""

    def test_trajectory_length_and_normalization(self, trained_model):
        current = {state: 0.25 for state in REGIME_STATES}

        forecast = forecast_regime(trained_model, current, 10)

        assert len(forecast.trajectory) == 10
        for day in forecast.trajectory:
            assert_allclose(sum(day.values()), 1.0, rtol=1e-10)

    def test_identity_transitions_stay_put(self, trained_at):
        model = _manual_model(np.eye(4).tolist(), trained_at)

        forecast = forecast_regime(model, {RegimeState.BEAR: 1.0}, 5)

        assert forecast.predicted_regime == RegimeState.BEAR
        assert forecast.transition_probability == pytest.approx(0.0)
        assert forecast.confidence == "high"

    def test_uniform_transitions_mix(self, trained_at):
        model = _manual_model([[0.25] * 4 for _ in range(4)], trained_at)

        forecast = forecast_regime(model, {RegimeState.BULL: 1.0}, 3)

        assert_allclose(list(forecast.trajectory[0].values()), 0.25)
        assert forecast.transition_probability == pytest.approx(0.75)
        assert forecast.confidence == "low"

    @pytest.mark.parametrize("horizon", [0, 31])
    def test_horizon_bounds(self, trained_model, horizon):
        with pytest.raises(ValueError, match="between 1 and 30"):
            forecast_regime(trained_model, {RegimeState.NORMAL: 1.0}, horizon)

    @pytest.mark.parametrize("p, label", [(0.9, "high"), (0.6, "medium"), (0.5, "low")])
    def test_confidence_labels(self, p, label):
        assert forecast_confidence_label(p) == label
