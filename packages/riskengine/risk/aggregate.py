"""
Portfolio Risk Aggregation Module

Combines per-position RiskMetrics with portfolio weights into weighted
portfolio figures and a per-position risk contribution table. Positions
without usable metrics are excluded from every weighted figure, the
remaining weights are renormalized, and the exclusions are reported.
"""

from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
import structlog

from ..config import ScorePolicy
from .metrics import DEFAULT_POLICY, compute_risk_score
from .models import (
    InsufficientData,
    PortfolioRiskView,
    PositionContribution,
    RiskLevel,
    RiskMetrics,
)

logger = structlog.get_logger(__name__)

PositionInput = Tuple[float, Union[RiskMetrics, InsufficientData]]


def weights_from_market_values(market_values: Mapping[str, float]) -> Dict[str, float]:
    """Weight = market value / total market value.

    Raises:
        ValueError: If the total market value is not positive
    """
    total = float(sum(market_values.values()))
    if total <= 0:
        raise ValueError(f"Total market value must be positive, got {total}")
    return {ticker: float(value) / total for ticker, value in market_values.items()}


def _weighted_optional(
    weights: np.ndarray,
    values: List[Optional[float]],
) -> Optional[float]:
    """Weighted mean over the positions where the value exists, renormalized."""
    mask = np.array([v is not None for v in values])
    if not mask.any():
        return None
    w = weights[mask]
    total = w.sum()
    if abs(total) < 1e-12:
        return None
    v = np.array([v for v in values if v is not None], dtype=float)
    return float(np.dot(w, v) / total)


def risk_contributions(weights: np.ndarray, volatilities: np.ndarray) -> np.ndarray:
    """Percentage risk contribution c_i = w_i * sigma_i / sum_j(w_j * sigma_j) * 100.

    Falls back to an equal split when the weighted volatility sums to zero so
    the contributions always total 100.
    """
    weights = np.asarray(weights, dtype=float)
    volatilities = np.asarray(volatilities, dtype=float)
    if len(weights) == 0:
        return np.array([])

    weighted = weights * volatilities
    total = weighted.sum()
    if abs(total) < 1e-12:
        logger.warning("risk_contributions: zero weighted volatility, splitting equally")
        return np.full(len(weights), 100.0 / len(weights))
    return weighted / total * 100.0


def aggregate_portfolio_risk(
    positions: Mapping[str, PositionInput],
    policy: ScorePolicy = DEFAULT_POLICY,
) -> PortfolioRiskView:
    """Aggregate per-position metrics into a portfolio risk view.

    Args:
        positions: ticker -> (weight, RiskMetrics | InsufficientData)
        policy: Composite score weights and ranges

    Returns:
        PortfolioRiskView; always returned, even if every position is excluded
    """
    included: List[Tuple[str, float, RiskMetrics]] = []
    excluded: List[str] = []

    for ticker, (weight, metrics) in positions.items():
        if not isinstance(metrics, RiskMetrics) or weight is None or not np.isfinite(weight):
            excluded.append(ticker)
            continue
        included.append((ticker, float(weight), metrics))

    gross = sum(w for _, w, _ in included)
    if included and abs(gross) < 1e-12:
        logger.warning("aggregate_portfolio_risk: included weights sum to zero")
        excluded.extend(t for t, _, _ in included)
        included = []

    if not included:
        logger.warning(
            "aggregate_portfolio_risk: no positions with usable metrics",
            positions_excluded=len(excluded),
        )
        return PortfolioRiskView(
            portfolio_volatility=0.0,
            portfolio_beta=None,
            portfolio_sharpe=None,
            portfolio_max_drawdown=0.0,
            portfolio_var_95=None,
            portfolio_cvar_95=None,
            risk_score=0.0,
            risk_level=RiskLevel.LOW,
            contributions=[],
            positions_included=0,
            positions_excluded=len(excluded),
            excluded_tickers=sorted(excluded),
        )

    weights = np.array([w for _, w, _ in included]) / gross
    vols = np.array([m.volatility for _, _, m in included])

    port_vol = float(np.dot(weights, vols))
    port_beta = _weighted_optional(weights, [m.beta for _, _, m in included])
    port_sharpe = _weighted_optional(weights, [m.sharpe for _, _, m in included])
    port_var = _weighted_optional(weights, [m.var_95 for _, _, m in included])
    port_cvar = _weighted_optional(weights, [m.cvar_95 for _, _, m in included])
    port_dd = min(float(np.dot(weights, [m.max_drawdown for _, _, m in included])), 0.0)

    contrib_pct = risk_contributions(weights, vols)

    contributions = [
        PositionContribution(
            ticker=ticker,
            weight=float(w),
            volatility=metrics.volatility,
            beta=metrics.beta,
            risk_score=metrics.risk_score,
            contribution_pct=float(c),
        )
        for (ticker, _, metrics), w, c in zip(included, weights, contrib_pct)
    ]
    contributions.sort(key=lambda c: abs(c.contribution_pct), reverse=True)

    score = compute_risk_score(abs(port_vol), port_dd, port_beta, port_var, policy)

    view = PortfolioRiskView(
        portfolio_volatility=port_vol,
        portfolio_beta=port_beta,
        portfolio_sharpe=port_sharpe,
        portfolio_max_drawdown=port_dd,
        portfolio_var_95=port_var,
        portfolio_cvar_95=port_cvar,
        risk_score=score,
        risk_level=RiskLevel.from_score(score),
        contributions=contributions,
        positions_included=len(included),
        positions_excluded=len(excluded),
        excluded_tickers=sorted(excluded),
    )

    logger.info(
        "aggregate_portfolio_risk: portfolio aggregated",
        positions_included=view.positions_included,
        positions_excluded=view.positions_excluded,
        portfolio_volatility=port_vol,
        risk_score=score,
    )

    return view
