"""
Risk Metrics Module

Closed-form per-ticker statistics: volatility, drawdown, beta, Sharpe/Sortino,
historical VaR/CVaR, capture ratios and the composite 0-100 risk score.
Pure computation functions over numpy arrays; ``compute_risk_metrics`` ties
them together and never raises for data-quality conditions.
"""

from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import structlog

from ..config import ScorePolicy
from . import errors
from .errors import InsufficientDataError
from .models import (
    InsufficientData,
    PricePoint,
    RiskDecomposition,
    RiskLevel,
    RiskMetrics,
)
from .returns import align_return_series, build_return_series, trim_points, validate_price_points

logger = structlog.get_logger(__name__)

TRADING_DAYS = 252
EPSILON = 1e-10
MIN_RETURNS = 2
MIN_TAIL_OBSERVATIONS = 20
MIN_BETA_OBSERVATIONS = 10

DEFAULT_POLICY = ScorePolicy()


def annualized_volatility(returns: np.ndarray) -> float:
    """Sample standard deviation (ddof=1) of daily returns scaled by sqrt(252).

    Raises:
        ValueError: If fewer than 2 returns are supplied
    """
    returns = np.asarray(returns, dtype=float)
    if len(returns) < 2:
        raise ValueError(f"Need at least 2 returns for volatility, got {len(returns)}")
    return float(np.std(returns, ddof=1) * np.sqrt(TRADING_DAYS))


def max_drawdown(prices: np.ndarray) -> float:
    """Largest peak-to-trough decline as a non-positive decimal.

    Args:
        prices: Chronological positive prices

    Returns:
        min over t of (p_t - running_peak_t) / running_peak_t, in [-1, 0]
    """
    prices = np.asarray(prices, dtype=float)
    if len(prices) == 0:
        return 0.0
    peaks = np.maximum.accumulate(prices)
    drawdowns = (prices - peaks) / peaks
    return float(min(drawdowns.min(), 0.0))


def annualized_return(returns: np.ndarray) -> float:
    return float(np.mean(returns) * TRADING_DAYS)


def compute_beta(returns: np.ndarray, benchmark_returns: np.ndarray) -> Optional[float]:
    """cov(r, r_b) / var(r_b) on equal-length aligned returns.

    Returns None when the benchmark variance is degenerate or fewer than
    two pairs are available.
    """
    returns = np.asarray(returns, dtype=float)
    benchmark_returns = np.asarray(benchmark_returns, dtype=float)

    if len(returns) != len(benchmark_returns):
        raise ValueError(
            f"Return lengths differ: {len(returns)} vs benchmark {len(benchmark_returns)}"
        )
    if len(returns) < 2:
        return None

    bench_var = np.var(benchmark_returns, ddof=1)
    if bench_var < EPSILON ** 2:
        return None

    cov = np.cov(returns, benchmark_returns, ddof=1)[0, 1]
    return float(cov / bench_var)


def correlation(a: np.ndarray, b: np.ndarray) -> Optional[float]:
    """Pearson correlation, None if either side has no variance."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if len(a) < 2 or len(a) != len(b):
        return None
    if np.std(a) < EPSILON or np.std(b) < EPSILON:
        return None
    return float(np.clip(np.corrcoef(a, b)[0, 1], -1.0, 1.0))


def sharpe_ratio(returns: np.ndarray, risk_free_rate: float) -> Optional[float]:
    """(annualized mean - rf) / annualized volatility; None iff volatility < eps."""
    vol = annualized_volatility(returns)
    if vol < EPSILON:
        return None
    return float((annualized_return(returns) - risk_free_rate) / vol)


def downside_deviation(returns: np.ndarray) -> Optional[float]:
    """Annualized root-mean-square of the negative daily returns.

    Returns None when there are no negative returns.
    """
    returns = np.asarray(returns, dtype=float)
    negatives = returns[returns < 0]
    if len(negatives) == 0:
        return None
    return float(np.sqrt(np.mean(negatives ** 2)) * np.sqrt(TRADING_DAYS))


def sortino_ratio(returns: np.ndarray, risk_free_rate: float) -> Optional[float]:
    """Sharpe numerator over the annualized downside deviation."""
    dd = downside_deviation(returns)
    if dd is None or dd < EPSILON:
        return None
    return float((annualized_return(returns) - risk_free_rate) / dd)


def historical_var(returns: np.ndarray, confidence: float = 0.95) -> Optional[float]:
    """Empirical (1 - confidence) percentile of daily returns.

    Uses the order statistic at index floor(n * (1 - confidence)) of the
    ascending returns. The result is a return (negative for a loss).
    Returns None below 20 observations.
    """
    if not 0 < confidence < 1:
        raise ValueError(f"Confidence must be between 0 and 1, got {confidence}")

    returns = np.asarray(returns, dtype=float)
    n = len(returns)
    if n < MIN_TAIL_OBSERVATIONS:
        return None

    ordered = np.sort(returns)
    idx = min(int(np.floor(n * (1 - confidence))), n - 1)
    return float(ordered[idx])


def conditional_var(returns: np.ndarray, confidence: float = 0.95) -> Optional[float]:
    """Mean of the returns at or below the historical VaR (expected shortfall).

    Always <= historical_var for the same confidence.
    """
    var = historical_var(returns, confidence)
    if var is None:
        return None
    returns = np.asarray(returns, dtype=float)
    tail = returns[returns <= var]
    return float(min(tail.mean(), var))


def capture_ratios(
    returns: np.ndarray,
    benchmark_returns: np.ndarray,
) -> Tuple[Optional[float], Optional[float]]:
    """Upside and downside capture versus the benchmark.

    Upside capture = mean asset return on up-benchmark days divided by the
    mean benchmark return on those days; downside capture likewise on
    down-benchmark days.
    """
    returns = np.asarray(returns, dtype=float)
    benchmark_returns = np.asarray(benchmark_returns, dtype=float)

    def _ratio(mask: np.ndarray) -> Optional[float]:
        if not mask.any():
            return None
        bench_mean = benchmark_returns[mask].mean()
        if abs(bench_mean) < EPSILON:
            return None
        return float(returns[mask].mean() / bench_mean)

    return _ratio(benchmark_returns > 0), _ratio(benchmark_returns < 0)


def risk_decomposition(
    returns: np.ndarray,
    benchmark_returns: np.ndarray,
    total_volatility: float,
) -> Optional[RiskDecomposition]:
    """Split annualized volatility using R^2 = corr^2 against the benchmark.

    systematic = sqrt(R^2) * total, idiosyncratic = sqrt(1 - R^2) * total.
    """
    rho = correlation(returns, benchmark_returns)
    if rho is None:
        return None

    r_squared = rho ** 2
    total_variance = total_volatility ** 2
    return RiskDecomposition(
        systematic_risk=float(np.sqrt(max(r_squared * total_variance, 0.0))),
        idiosyncratic_risk=float(np.sqrt(max((1.0 - r_squared) * total_variance, 0.0))),
        r_squared=float(r_squared),
        total_risk=float(total_volatility),
    )


def compute_risk_score(
    volatility: float,
    drawdown: float,
    beta_value: Optional[float] = None,
    var_95: Optional[float] = None,
    policy: ScorePolicy = DEFAULT_POLICY,
) -> float:
    """Composite 0-100 risk score.

    Each component is normalized against its reference range, clipped to
    [0, 1] and weighted per ``policy``. Missing beta or VaR contributes 0.
    """

    def _norm(value: float, upper: float) -> float:
        if not np.isfinite(value):
            return 0.0
        return float(np.clip(value / upper, 0.0, 1.0))

    score = (
        policy.volatility_weight * _norm(volatility, policy.volatility_range)
        + policy.drawdown_weight * _norm(-drawdown, policy.drawdown_range)
        + policy.beta_weight * (_norm(abs(beta_value), policy.beta_range) if beta_value is not None else 0.0)
        + policy.var_weight * (_norm(abs(var_95), policy.var_range) if var_95 is not None else 0.0)
    ) * 100.0

    return float(np.clip(score, 0.0, 100.0))


def _aligned_benchmark(
    ticker: str,
    series,
    benchmark_points: Optional[Sequence[PricePoint]],
    window_days: int,
) -> Tuple[Optional[np.ndarray], Optional[np.ndarray], Optional[str]]:
    """Align asset returns with benchmark returns, or return the failure flag."""
    if not benchmark_points:
        return None, None, errors.BENCHMARK_UNAVAILABLE

    try:
        bench_series = build_return_series(
            f"{ticker}:benchmark",
            trim_points(validate_price_points(benchmark_points), window_days),
        )
    except InsufficientDataError:
        return None, None, errors.BENCHMARK_UNAVAILABLE

    asset, bench, _ = align_return_series(series, bench_series)
    if len(asset) < MIN_BETA_OBSERVATIONS:
        return None, None, errors.BENCHMARK_MISALIGNED

    return asset, bench, None


def compute_risk_metrics(
    ticker: str,
    prices: Sequence[PricePoint],
    benchmark_prices: Optional[Sequence[PricePoint]] = None,
    benchmark: Optional[str] = None,
    window_days: int = TRADING_DAYS,
    risk_free_rate: float = 0.045,
    policy: ScorePolicy = DEFAULT_POLICY,
    extra_benchmarks: Optional[Mapping[str, Sequence[PricePoint]]] = None,
) -> Union[RiskMetrics, InsufficientData]:
    """Compute the full RiskMetrics record for one ticker.

    Args:
        ticker: Asset symbol
        prices: Asset price history (any order; validated here)
        benchmark_prices: Benchmark price history, optional
        benchmark: Benchmark symbol for labelling
        window_days: Trailing window in trading days
        risk_free_rate: Annual risk-free rate as a decimal
        policy: Composite score weights and ranges
        extra_benchmarks: Additional benchmark symbol -> prices for
            multi-benchmark beta

    Returns:
        RiskMetrics, or InsufficientData if fewer than 2 returns are usable
    """
    clean = trim_points(validate_price_points(prices), window_days)

    try:
        series = build_return_series(ticker, clean)
    except InsufficientDataError as e:
        logger.info("compute_risk_metrics: insufficient data", ticker=ticker, observations=e.observations)
        return InsufficientData(
            ticker=ticker,
            reason="insufficient_price_history",
            observations=max(e.observations - 1, 0),
            required=MIN_RETURNS,
        )

    returns = np.asarray(series.returns, dtype=float)
    n = len(returns)
    if n < MIN_RETURNS:
        return InsufficientData(
            ticker=ticker,
            reason="insufficient_price_history",
            observations=n,
            required=MIN_RETURNS,
        )

    flags: List[str] = []

    vol = annualized_volatility(returns)
    dd = max_drawdown(np.array([p.close for p in clean], dtype=float))
    ann_ret = annualized_return(returns)

    sharpe = sharpe_ratio(returns, risk_free_rate)
    if sharpe is None:
        flags.append(errors.DEGENERATE_VARIANCE)

    downside = downside_deviation(returns)
    sortino = sortino_ratio(returns, risk_free_rate)
    if downside is None:
        flags.append(errors.NO_DOWNSIDE_RETURNS)

    var_95 = historical_var(returns, 0.95)
    var_99 = historical_var(returns, 0.99)
    cvar_95 = conditional_var(returns, 0.95)
    cvar_99 = conditional_var(returns, 0.99)
    if var_95 is None:
        flags.append(errors.LOW_SAMPLE_SIZE)

    beta_value = None
    upside_capture = downside_capture = None
    decomposition = None

    if benchmark is not None or benchmark_prices is not None:
        asset, bench, flag = _aligned_benchmark(ticker, series, benchmark_prices, window_days)
        if flag is not None:
            flags.append(flag)
        else:
            beta_value = compute_beta(asset, bench)
            if beta_value is None and errors.DEGENERATE_VARIANCE not in flags:
                flags.append(errors.DEGENERATE_VARIANCE)
            upside_capture, downside_capture = capture_ratios(asset, bench)
            decomposition = risk_decomposition(asset, bench, vol)

    benchmark_betas: Dict[str, Optional[float]] = {}
    if benchmark is not None and beta_value is not None:
        benchmark_betas[benchmark] = beta_value
    for symbol, points in (extra_benchmarks or {}).items():
        if symbol == benchmark:
            continue
        asset, bench, flag = _aligned_benchmark(ticker, series, points, window_days)
        benchmark_betas[symbol] = compute_beta(asset, bench) if flag is None else None

    score = compute_risk_score(vol, dd, beta_value, var_95, policy)

    metrics = RiskMetrics(
        ticker=ticker,
        benchmark=benchmark,
        window_days=window_days,
        observations=n,
        volatility=vol,
        max_drawdown=dd,
        annualized_return=ann_ret,
        beta=beta_value,
        sharpe=sharpe,
        sortino=sortino,
        downside_deviation=downside,
        upside_capture=upside_capture,
        downside_capture=downside_capture,
        var_95=var_95,
        var_99=var_99,
        cvar_95=cvar_95,
        cvar_99=cvar_99,
        risk_decomposition=decomposition,
        benchmark_betas=benchmark_betas,
        risk_score=score,
        risk_level=RiskLevel.from_score(score),
        flags=flags,
    )

    logger.info(
        "compute_risk_metrics: metrics computed",
        ticker=ticker,
        benchmark=benchmark,
        observations=n,
        volatility=vol,
        risk_score=score,
        flags=flags,
    )

    return metrics
