"""
Market Regime Detection Module

Four-state Gaussian hidden Markov model over daily benchmark returns, with a
threshold-based classifier used as a cross-check.

States are labelled after training from the fitted emission parameters:
highest standard deviation -> high_volatility, then highest mean -> bull,
lowest mean -> bear, remaining state -> normal. All matrices in an HmmModel
follow the REGIME_STATES order.
"""

from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from .errors import InsufficientDataError
from .models import (
    REGIME_STATES,
    HmmModel,
    RegimeDetection,
    RegimeForecast,
    RegimeState,
    RuleBasedRegime,
)

logger = structlog.get_logger(__name__)

N_STATES = 4
MIN_TRAINING_OBSERVATIONS = 60
DEFAULT_MAX_ITERATIONS = 200
DEFAULT_TOLERANCE = 1e-6
MAX_FORECAST_HORIZON = 30

# Rule-based classifier thresholds (annualized volatility, decimals)
BULL_VOL_THRESHOLD = 0.20
BEAR_VOL_THRESHOLD = 0.25
HIGH_VOL_THRESHOLD = 0.35
RULE_LOOKBACK_DAYS = 30

_VAR_FLOOR = 1e-4  # on standardized returns
_PROB_FLOOR = 1e-6


# ---------------------------------------------------------------------------
# HMM core (scaled recursions)
# ---------------------------------------------------------------------------


def _log_emissions(x: np.ndarray, means: np.ndarray, stdevs: np.ndarray) -> np.ndarray:
    """log N(x_t | mean_s, std_s^2) as a (T, N) array."""
    var = stdevs ** 2
    diff = x[:, None] - means[None, :]
    return -0.5 * (np.log(2 * np.pi * var)[None, :] + diff ** 2 / var[None, :])


def _scaled_emissions(log_b: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Emission densities rescaled so each row peaks at 1, with the log offsets."""
    offsets = log_b.max(axis=1)
    return np.exp(log_b - offsets[:, None]), offsets


def _forward(b: np.ndarray, a: np.ndarray, pi: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Normalized forward pass.

    Returns:
        Tuple of (alpha, c): alpha[t] is P(state_t | x_1..x_t) and c[t] the
        per-step normalizer, so sum(log c) is the scaled log-likelihood
    """
    T, N = b.shape
    alpha = np.empty((T, N))
    c = np.empty(T)
    v = pi * b[0]
    for t in range(T):
        if t > 0:
            v = (alpha[t - 1] @ a) * b[t]
        c[t] = max(v.sum(), 1e-300)
        alpha[t] = v / c[t]
    return alpha, c


def _backward(b: np.ndarray, a: np.ndarray, c: np.ndarray) -> np.ndarray:
    T, N = b.shape
    beta = np.ones((T, N))
    for t in range(T - 2, -1, -1):
        beta[t] = a @ (b[t + 1] * beta[t + 1]) / c[t + 1]
    return beta


def _initial_parameters(z: np.ndarray):
    """Deterministic start: split the sorted observations into equal chunks."""
    chunks = np.array_split(np.sort(z), N_STATES)
    means = np.array([c.mean() for c in chunks])
    stdevs = np.array([max(c.std(), np.sqrt(_VAR_FLOOR)) for c in chunks])
    # Outer chunks hold the tails, give them the wider spread
    stdevs[0] = stdevs[-1] = max(stdevs[0], stdevs[-1], 1.0)

    a = np.full((N_STATES, N_STATES), 0.1 / (N_STATES - 1))
    np.fill_diagonal(a, 0.9)
    pi = np.full(N_STATES, 1.0 / N_STATES)
    return means, stdevs, a, pi


def _label_states(means: np.ndarray, stdevs: np.ndarray) -> List[int]:
    """Map fitted state indices onto REGIME_STATES order.

    Returns:
        List where entry k is the fitted index of REGIME_STATES[k]
    """
    remaining = list(range(len(means)))
    high_vol = max(remaining, key=lambda i: stdevs[i])
    remaining.remove(high_vol)
    bull = max(remaining, key=lambda i: means[i])
    remaining.remove(bull)
    bear = min(remaining, key=lambda i: means[i])
    remaining.remove(bear)
    normal = remaining[0]

    order = {
        RegimeState.BULL: bull,
        RegimeState.BEAR: bear,
        RegimeState.HIGH_VOLATILITY: high_vol,
        RegimeState.NORMAL: normal,
    }
    return [order[s] for s in REGIME_STATES]


def train_hmm(
    returns: Sequence[float],
    dates: Optional[Sequence[date]] = None,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    tol: float = DEFAULT_TOLERANCE,
    trained_at: Optional[datetime] = None,
) -> HmmModel:
    """Train the 4-state Gaussian HMM with Baum-Welch.

    Returns are standardized for numerical stability; emission parameters
    are reported back in return units.

    Args:
        returns: Chronological daily returns
        dates: Dates of the returns, recorded as the training range
        max_iterations: EM iteration bound
        tol: Log-likelihood improvement below which EM stops
        trained_at: Timestamp to stamp on the snapshot (default: now, UTC)

    Returns:
        Immutable HmmModel snapshot

    Raises:
        InsufficientDataError: If fewer than 60 finite returns are supplied
    """
    x = np.asarray(returns, dtype=float)
    x = x[np.isfinite(x)]
    T = len(x)
    if T < MIN_TRAINING_OBSERVATIONS:
        raise InsufficientDataError(
            f"HMM training needs at least {MIN_TRAINING_OBSERVATIONS} returns, got {T}",
            observations=T,
            required=MIN_TRAINING_OBSERVATIONS,
        )

    center = float(x.mean())
    scale = float(x.std())
    if scale < 1e-12:
        raise InsufficientDataError("HMM training needs non-constant returns", observations=T)
    z = (x - center) / scale

    means, stdevs, a, pi = _initial_parameters(z)

    prev_ll = -np.inf
    log_ll = -np.inf
    converged = False
    iteration = 0

    for iteration in range(1, max_iterations + 1):
        b, offsets = _scaled_emissions(_log_emissions(z, means, stdevs))
        alpha, c = _forward(b, a, pi)
        beta = _backward(b, a, c)
        log_ll = float(np.log(c).sum() + offsets.sum())

        gamma = alpha * beta
        gamma /= np.clip(gamma.sum(axis=1, keepdims=True), 1e-300, None)

        xi_sum = a * (alpha[:-1].T @ (b[1:] * beta[1:] / c[1:, None]))

        # M-step
        pi = np.clip(gamma[0], _PROB_FLOOR, None)
        pi /= pi.sum()

        a = xi_sum / np.clip(gamma[:-1].sum(axis=0)[:, None], 1e-300, None)
        a = np.clip(a, _PROB_FLOOR, None)
        a /= a.sum(axis=1, keepdims=True)

        weights = gamma.sum(axis=0) + 1e-12
        means = (gamma * z[:, None]).sum(axis=0) / weights
        var = (gamma * (z[:, None] - means[None, :]) ** 2).sum(axis=0) / weights
        stdevs = np.sqrt(np.clip(var, _VAR_FLOOR, None))

        if abs(log_ll - prev_ll) < tol:
            converged = True
            break
        prev_ll = log_ll

    order = _label_states(means, stdevs)
    a = a[np.ix_(order, order)]
    a /= a.sum(axis=1, keepdims=True)
    pi = pi[order] / pi[order].sum()

    model = HmmModel(
        n_states=N_STATES,
        state_names=list(REGIME_STATES),
        transition_matrix=a.tolist(),
        initial_distribution=pi.tolist(),
        state_means=(means[order] * scale + center).tolist(),
        state_stdevs=(stdevs[order] * scale).tolist(),
        # Likelihood of the original data: undo the change of variables
        log_likelihood=float(log_ll - T * np.log(scale)),
        iterations=iteration,
        converged=converged,
        observations=T,
        trained_at=trained_at or datetime.now(timezone.utc),
        training_start=dates[0] if dates else None,
        training_end=dates[-1] if dates else None,
    )

    logger.info(
        "train_hmm: model trained",
        observations=T,
        iterations=iteration,
        converged=converged,
        log_likelihood=model.log_likelihood,
        state_means=model.state_means,
        state_stdevs=model.state_stdevs,
    )

    return model


# ---------------------------------------------------------------------------
# Inference and forecasting
# ---------------------------------------------------------------------------


def _as_dict(probs: np.ndarray) -> Dict[RegimeState, float]:
    return {state: float(p) for state, p in zip(REGIME_STATES, probs)}


def _normalize(probs: np.ndarray) -> np.ndarray:
    probs = np.clip(probs, 0.0, None)
    total = probs.sum()
    if total <= 0:
        return np.full(len(probs), 1.0 / len(probs))
    return probs / total


def state_probabilities(model: HmmModel, returns: Sequence[float]) -> np.ndarray:
    """Filtered posterior P(state_T | r_1..r_T) via the forward algorithm.

    With no observations the initial distribution is returned.
    """
    x = np.asarray(returns, dtype=float)
    x = x[np.isfinite(x)]
    pi = np.asarray(model.initial_distribution, dtype=float)
    if len(x) == 0:
        return _normalize(pi)

    b, _ = _scaled_emissions(
        _log_emissions(
            x,
            np.asarray(model.state_means, dtype=float),
            np.clip(np.asarray(model.state_stdevs, dtype=float), 1e-12, None),
        )
    )
    alpha, _ = _forward(b, np.asarray(model.transition_matrix, dtype=float), _normalize(pi))
    return _normalize(alpha[-1])


def classify_rule_based(
    returns: Sequence[float],
    lookback_days: int = RULE_LOOKBACK_DAYS,
    bull_vol_threshold: float = BULL_VOL_THRESHOLD,
    bear_vol_threshold: float = BEAR_VOL_THRESHOLD,
    high_vol_threshold: float = HIGH_VOL_THRESHOLD,
) -> RuleBasedRegime:
    """Classify the regime from trailing volatility and trailing return.

    High volatility takes precedence; bull needs a positive return with
    volatility below the bull threshold; bear needs a negative return with
    volatility above the bear threshold; anything else is normal.
    """
    x = np.asarray(returns, dtype=float)
    x = x[np.isfinite(x)][-lookback_days:]
    if len(x) < 2:
        raise InsufficientDataError(
            f"Rule-based regime needs at least 2 returns, got {len(x)}",
            observations=len(x),
            required=2,
        )

    vol = float(np.std(x) * np.sqrt(252))
    trailing = float(np.prod(1.0 + x) - 1.0)

    if vol > high_vol_threshold:
        state = RegimeState.HIGH_VOLATILITY
        confidence = min(max((vol - high_vol_threshold) / high_vol_threshold, 0.75), 1.0)
    elif trailing > 0 and vol < bull_vol_threshold:
        state = RegimeState.BULL
        margin = (bull_vol_threshold - vol) / bull_vol_threshold
        strength = min(trailing / 0.10, 1.0)
        confidence = min(max(margin * 0.6 + strength * 0.4, 0.60), 1.0)
    elif trailing < 0 and vol > bear_vol_threshold:
        state = RegimeState.BEAR
        excess = (vol - bear_vol_threshold) / bear_vol_threshold
        decline = min(abs(trailing) / 0.10, 1.0)
        confidence = min(max(excess * 0.6 + decline * 0.4, 0.60), 1.0)
    else:
        state = RegimeState.NORMAL
        confidence = 0.70

    return RuleBasedRegime(
        state=state,
        confidence=float(confidence),
        annualized_volatility=vol,
        trailing_return=trailing,
    )


def detect_regime(
    model: HmmModel,
    returns: Sequence[float],
    as_of: Optional[date] = None,
    ensemble: bool = True,
) -> RegimeDetection:
    """Posterior regime distribution for the latest observation.

    In ensemble mode the rule-based classifier runs alongside the HMM and
    ``high_confidence`` is set only when both agree on the state.
    """
    probs = state_probabilities(model, returns)
    most_likely = REGIME_STATES[int(np.argmax(probs))]

    rule_based = None
    if ensemble:
        try:
            rule_based = classify_rule_based(returns)
        except InsufficientDataError:
            logger.info("detect_regime: too few returns for rule-based check")

    detection = RegimeDetection(
        probabilities=_as_dict(probs),
        most_likely=most_likely,
        rule_based=rule_based,
        high_confidence=rule_based is not None and rule_based.state == most_likely,
        as_of=as_of,
    )

    logger.info(
        "detect_regime: regime detected",
        most_likely=most_likely.value,
        probability=float(probs.max()),
        rule_based=rule_based.state.value if rule_based else None,
        high_confidence=detection.high_confidence,
    )

    return detection


def forecast_confidence_label(max_probability: float) -> str:
    if max_probability > 0.7:
        return "high"
    if max_probability > 0.5:
        return "medium"
    return "low"


def forecast_regime(
    model: HmmModel,
    current: Dict[RegimeState, float],
    horizon_days: int,
) -> RegimeForecast:
    """Propagate the current distribution through the transition matrix.

    P(S_{t+n}) = P(S_t) @ A^n, one distribution per day 1..horizon_days.

    Raises:
        ValueError: If horizon_days is outside 1..30
    """
    if not 1 <= horizon_days <= MAX_FORECAST_HORIZON:
        raise ValueError(
            f"Forecast horizon must be between 1 and {MAX_FORECAST_HORIZON} days, got {horizon_days}"
        )

    a = np.asarray(model.transition_matrix, dtype=float)
    p = _normalize(np.array([current.get(s, 0.0) for s in REGIME_STATES], dtype=float))

    trajectory = []
    for _ in range(horizon_days):
        p = _normalize(p @ a)
        trajectory.append(_as_dict(p))

    max_p = float(p.max())
    return RegimeForecast(
        horizon_days=horizon_days,
        trajectory=trajectory,
        predicted_regime=REGIME_STATES[int(np.argmax(p))],
        transition_probability=1.0 - max_p,
        confidence=forecast_confidence_label(max_p),
    )
