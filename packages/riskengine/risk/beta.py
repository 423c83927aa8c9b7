"""
Rolling Beta and Beta Forecasting Module

Rolling-window beta against a benchmark, trend forecasts over the recent beta
history, and detection of structural shifts in beta.
"""

from datetime import date
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
import structlog
from scipy import stats

from .models import (
    BetaForecast,
    BetaForecastMethod,
    BetaForecastPoint,
    BetaObservation,
    BetaRegimeChange,
    ReturnSeries,
)
from .returns import align_return_series

logger = structlog.get_logger(__name__)

DEFAULT_WINDOWS = (30, 60, 90, 252)
MIN_FORECAST_POINTS = 10
DEFAULT_LOOKBACK = 60
DEFAULT_SMOOTHING = 0.3
MEAN_REVERSION_DECAY = 0.005
MEAN_REVERSION_TARGET = 1.0
REGIME_WINDOW = 30
REGIME_Z_THRESHOLD = 2.0
HIGH_BETA_VOLATILITY = 0.5


def rolling_beta(
    series: ReturnSeries,
    benchmark: ReturnSeries,
    windows: Iterable[int] = DEFAULT_WINDOWS,
) -> List[BetaObservation]:
    """Compute beta and R^2 over trailing windows of date-aligned returns.

    Windows with a degenerate benchmark variance are skipped. Windows longer
    than the aligned history produce no observations.

    Args:
        series: Asset returns
        benchmark: Benchmark returns
        windows: Trailing window lengths in trading days

    Returns:
        Observations ordered by date, then window
    """
    asset, bench, dates = align_return_series(series, benchmark)
    windows = sorted({int(w) for w in windows})

    if any(w < 2 for w in windows):
        raise ValueError(f"Beta windows must be >= 2, got {windows}")

    frame = pd.DataFrame({"asset": asset, "bench": bench}, index=pd.Index(dates))

    observations: List[BetaObservation] = []
    for window in windows:
        if len(frame) < window:
            logger.info(
                "rolling_beta: window longer than history",
                ticker=series.ticker,
                window=window,
                observations=len(frame),
            )
            continue

        cov = frame["asset"].rolling(window).cov(frame["bench"])
        var = frame["bench"].rolling(window).var()
        corr = frame["asset"].rolling(window).corr(frame["bench"])
        asset_var = frame["asset"].rolling(window).var()

        betas = cov / var.where(var > 1e-20)
        # A flat asset has beta 0 and explains none of the benchmark
        flat = asset_var.notna() & (asset_var <= 1e-20)
        r_squared = (corr ** 2).clip(upper=1.0).where(~flat, 0.0)
        betas = betas.where(~flat | betas.isna(), 0.0)
        valid = betas.notna() & r_squared.notna()

        for d, b, r2 in zip(frame.index[valid], betas[valid], r_squared[valid]):
            observations.append(
                BetaObservation(
                    date=d,
                    window=window,
                    beta=float(b),
                    r_squared=float(r2),
                )
            )

    observations.sort(key=lambda o: (o.date, o.window))

    logger.info(
        "rolling_beta: betas computed",
        ticker=series.ticker,
        benchmark=benchmark.ticker,
        windows=windows,
        num_observations=len(observations),
    )

    return observations


def beta_volatility(betas: Sequence[float]) -> float:
    values = np.asarray(betas, dtype=float)
    if len(values) < 2:
        return 0.0
    return float(np.std(values, ddof=1))


def _linear_fit(values: np.ndarray):
    """Least-squares line through values indexed 0..n-1.

    Returns:
        Tuple of (slope, intercept, residual_std)
    """
    x = np.arange(len(values), dtype=float)
    slope, intercept = np.polyfit(x, values, 1)
    residuals = values - (intercept + slope * x)
    dof = max(len(values) - 2, 1)
    residual_std = float(np.sqrt(np.sum(residuals ** 2) / dof))
    return float(slope), float(intercept), residual_std


def _ewma_level(values: np.ndarray, smoothing: float) -> float:
    level = float(values[0])
    for v in values[1:]:
        level = smoothing * float(v) + (1.0 - smoothing) * level
    return level


def detect_beta_regime_changes(
    betas: Sequence[float],
    dates: Sequence[date],
    window: int = REGIME_WINDOW,
    z_threshold: float = REGIME_Z_THRESHOLD,
) -> List[BetaRegimeChange]:
    """Flag points where the mean beta of the next window departs from the
    previous window by more than ``z_threshold`` standard deviations.

    Consecutive split points above the threshold belong to one shift; only
    the split with the largest z-score is reported, and the scan resumes at
    least one window after it so a single shift is reported once.
    """
    values = np.asarray(betas, dtype=float)
    changes: List[BetaRegimeChange] = []

    if len(values) < window * 2:
        return changes

    last = len(values) - window
    scores = np.zeros(last + 1)
    stats_at = {}
    for i in range(window, last + 1):
        before = values[i - window:i]
        after = values[i:i + window]
        std_before = float(before.std())
        if std_before < 0.01:
            continue
        mean_before = float(before.mean())
        mean_after = float(after.mean())
        scores[i] = abs(mean_after - mean_before) / std_before
        stats_at[i] = (mean_before, mean_after, std_before)

    i = window
    while i <= last:
        if scores[i] <= z_threshold:
            i += 1
            continue

        end = i
        while end + 1 <= last and scores[end + 1] > z_threshold:
            end += 1
        peak = i + int(np.argmax(scores[i:end + 1]))

        mean_before, mean_after, std_before = stats_at[peak]
        changes.append(
            BetaRegimeChange(
                date=dates[peak],
                beta_before=mean_before,
                beta_after=mean_after,
                z_score=float(scores[peak]),
                change_type=classify_beta_change(mean_before, mean_after, std_before),
            )
        )
        i = max(end + 1, peak + window)

    return changes


def classify_beta_change(mean_before: float, mean_after: float, std_dev: float) -> str:
    change = mean_after - mean_before
    if std_dev > 0.3:
        return "high_volatility"
    if abs(change) > 0.5:
        return "structural_break"
    if abs(mean_before - 1.0) > 0.3 and abs(mean_after - 1.0) < 0.2:
        return "mean_reversion"
    if change > 0:
        return "increasing_beta"
    return "decreasing_beta"


def forecast_beta(
    betas: Sequence[float],
    horizon_days: int,
    method: BetaForecastMethod = BetaForecastMethod.ENSEMBLE,
    ticker: str = "",
    benchmark: str = "",
    window: int = 90,
    dates: Optional[Sequence[date]] = None,
    lookback: int = DEFAULT_LOOKBACK,
    smoothing: float = DEFAULT_SMOOTHING,
    confidence: float = 0.95,
) -> Optional[BetaForecast]:
    """Forecast beta from the most recent beta observations of one window.

    Linear regression extrapolates the least-squares trend of the last
    ``lookback`` points, exponential smoothing holds the EWMA level flat,
    ensemble is the arithmetic mean of the two, and mean reversion decays
    the current beta toward 1.0. Every method shares the band
    ``z * residual_std * sqrt(h)`` built from the linear-fit residuals.

    Args:
        betas: Chronological beta values for a single window
        horizon_days: Number of days to forecast (>= 1)
        method: Forecast method
        ticker: Asset symbol for labelling
        benchmark: Benchmark symbol for labelling
        window: Rolling window the betas were computed over
        dates: Dates of the betas, enables regime-change detection
        lookback: Number of most recent points used for fitting
        smoothing: EWMA smoothing factor in (0, 1]
        confidence: Two-sided band confidence level

    Returns:
        BetaForecast, or None if fewer than 10 beta points are available
    """
    if horizon_days < 1:
        raise ValueError(f"Horizon must be >= 1, got {horizon_days}")
    if not 0 < smoothing <= 1:
        raise ValueError(f"Smoothing must be in (0, 1], got {smoothing}")
    if not 0 < confidence < 1:
        raise ValueError(f"Confidence must be between 0 and 1, got {confidence}")

    history = np.asarray(betas, dtype=float)
    history = history[np.isfinite(history)]

    if len(history) < MIN_FORECAST_POINTS:
        logger.info(
            "forecast_beta: not enough beta history",
            ticker=ticker,
            points=len(history),
            required=MIN_FORECAST_POINTS,
        )
        return None

    recent = history[-lookback:] if lookback > 0 else history
    slope, intercept, residual_std = _linear_fit(recent)
    level = _ewma_level(recent, smoothing)
    current = float(history[-1])
    z = float(stats.norm.ppf(0.5 + confidence / 2))
    last_x = len(recent) - 1

    points = []
    for h in range(1, horizon_days + 1):
        linear = intercept + slope * (last_x + h)
        if method == BetaForecastMethod.LINEAR_REGRESSION:
            value = linear
        elif method == BetaForecastMethod.EXPONENTIAL_SMOOTHING:
            value = level
        elif method == BetaForecastMethod.MEAN_REVERSION:
            decay = np.exp(-MEAN_REVERSION_DECAY * h)
            value = decay * current + (1.0 - decay) * MEAN_REVERSION_TARGET
        else:
            value = (linear + level) / 2.0

        half_width = z * residual_std * np.sqrt(h)
        points.append(
            BetaForecastPoint(
                day=h,
                beta=float(value),
                lower=float(value - half_width),
                upper=float(value + half_width),
            )
        )

    vol = beta_volatility(history)
    warnings = []
    if vol > HIGH_BETA_VOLATILITY:
        warnings.append("High beta volatility detected. Forecast confidence may be lower.")
    if len(history) < 90:
        warnings.append(f"Limited beta history ({len(history)} points). Forecast confidence may be lower.")

    regime_changes: List[BetaRegimeChange] = []
    if dates is not None:
        finite_dates = [d for d, b in zip(dates, betas) if np.isfinite(b)]
        regime_changes = detect_beta_regime_changes(history, finite_dates)
        if regime_changes and finite_dates:
            recent_cut = finite_dates[max(len(finite_dates) - REGIME_WINDOW, 0)]
            if any(rc.date >= recent_cut for rc in regime_changes):
                warnings.append("Recent beta regime change detected. Forecast may not reflect the new regime.")

    logger.info(
        "forecast_beta: forecast generated",
        ticker=ticker,
        benchmark=benchmark,
        method=method.value,
        horizon_days=horizon_days,
        current_beta=current,
        residual_std=residual_std,
    )

    return BetaForecast(
        ticker=ticker,
        benchmark=benchmark,
        window=window,
        method=method,
        current_beta=current,
        beta_volatility=vol,
        residual_std=residual_std,
        confidence=confidence,
        points=points,
        regime_changes=regime_changes,
        warnings=warnings,
    )
