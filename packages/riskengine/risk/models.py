"""Pydantic value objects for the risk engine.

Every result type is frozen and JSON-serializable via ``model_dump()`` so any
transport adapter can hand it straight to its serializer.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Prices and returns
# ---------------------------------------------------------------------------


class PricePoint(_Frozen):
    """One daily close for one ticker."""

    date: date
    close: float


class ReturnSeries(_Frozen):
    """Arithmetic daily returns aligned with the date of the later price."""

    ticker: str
    returns: List[float]
    dates: List[date]

    def __len__(self) -> int:
        return len(self.returns)


class InsufficientData(_Frozen):
    """Normal "unavailable" result: too few usable observations."""

    ticker: str
    reason: str
    observations: int = 0
    required: int = 0


# ---------------------------------------------------------------------------
# Core risk metrics
# ---------------------------------------------------------------------------


class RiskLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"

    @classmethod
    def from_score(cls, score: float) -> "RiskLevel":
        if score < 40.0:
            return cls.LOW
        if score < 70.0:
            return cls.MODERATE
        return cls.HIGH


class RiskDecomposition(_Frozen):
    """Split of annualized volatility into market and stock-specific parts."""

    systematic_risk: float
    idiosyncratic_risk: float
    r_squared: float
    total_risk: float


class RiskMetrics(_Frozen):
    """Full per-ticker risk metrics for one window and benchmark.

    Ratios are decimals (0.25 == 25%). Fields that are derivable in principle
    but undefined for this series (zero variance, no downside, too few
    observations for VaR) are explicitly ``None`` and explained in ``flags``.
    """

    ticker: str
    benchmark: Optional[str] = None
    window_days: int
    observations: int
    volatility: float = Field(ge=0.0)
    max_drawdown: float = Field(le=0.0)
    annualized_return: Optional[float] = None
    beta: Optional[float] = None
    sharpe: Optional[float] = None
    sortino: Optional[float] = None
    downside_deviation: Optional[float] = None
    upside_capture: Optional[float] = None
    downside_capture: Optional[float] = None
    var_95: Optional[float] = None
    var_99: Optional[float] = None
    cvar_95: Optional[float] = None
    cvar_99: Optional[float] = None
    risk_decomposition: Optional[RiskDecomposition] = None
    benchmark_betas: Dict[str, Optional[float]] = Field(default_factory=dict)
    risk_score: float = Field(ge=0.0, le=100.0)
    risk_level: RiskLevel
    flags: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Beta
# ---------------------------------------------------------------------------


class BetaObservation(_Frozen):
    date: date
    window: int
    beta: float
    r_squared: float


class BetaForecastMethod(str, Enum):
    LINEAR_REGRESSION = "linear_regression"
    EXPONENTIAL_SMOOTHING = "exponential_smoothing"
    MEAN_REVERSION = "mean_reversion"
    ENSEMBLE = "ensemble"


class BetaForecastPoint(_Frozen):
    day: int
    beta: float
    lower: float
    upper: float


class BetaRegimeChange(_Frozen):
    date: date
    beta_before: float
    beta_after: float
    z_score: float
    change_type: str


class BetaForecast(_Frozen):
    ticker: str
    benchmark: str
    window: int
    method: BetaForecastMethod
    current_beta: float
    beta_volatility: float
    residual_std: float
    confidence: float
    points: List[BetaForecastPoint]
    regime_changes: List[BetaRegimeChange] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# GARCH
# ---------------------------------------------------------------------------


class GarchModel(_Frozen):
    """Fitted GARCH(1,1) parameters on daily returns.

    ``fallback`` is True when the optimizer result was rejected and the model
    degenerated to the sample (unconditional) variance.
    """

    omega: float
    alpha: float
    beta: float
    long_run_variance: float
    persistence: float
    log_likelihood: Optional[float] = None
    converged: bool = True
    iterations: int = 0
    fallback: bool = False
    warnings: List[str] = Field(default_factory=list)


class VolatilityForecastPoint(_Frozen):
    day: int
    variance: float
    lower: float
    upper: float
    annualized_volatility: float


class VolatilityForecast(_Frozen):
    ticker: str
    horizon_days: int
    confidence: float
    current_volatility: float
    long_run_volatility: float
    model: GarchModel
    points: List[VolatilityForecastPoint]
    warnings: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Regimes
# ---------------------------------------------------------------------------


class RegimeState(str, Enum):
    BULL = "bull"
    BEAR = "bear"
    HIGH_VOLATILITY = "high_volatility"
    NORMAL = "normal"


REGIME_STATES: List[RegimeState] = [
    RegimeState.BULL,
    RegimeState.BEAR,
    RegimeState.HIGH_VOLATILITY,
    RegimeState.NORMAL,
]


class HmmModel(_Frozen):
    """Immutable snapshot of a trained 4-state Gaussian HMM.

    Row/column order of every matrix follows ``state_names``.
    """

    n_states: int = 4
    state_names: List[RegimeState]
    transition_matrix: List[List[float]]
    initial_distribution: List[float]
    state_means: List[float]
    state_stdevs: List[float]
    log_likelihood: float
    iterations: int
    converged: bool
    observations: int
    trained_at: datetime
    training_start: Optional[date] = None
    training_end: Optional[date] = None


class RuleBasedRegime(_Frozen):
    state: RegimeState
    confidence: float
    annualized_volatility: float
    trailing_return: float


class RegimeDetection(_Frozen):
    """Posterior distribution over regimes for the latest observation."""

    probabilities: Dict[RegimeState, float]
    most_likely: RegimeState
    rule_based: Optional[RuleBasedRegime] = None
    high_confidence: bool = False
    as_of: Optional[date] = None


class RegimeForecast(_Frozen):
    horizon_days: int
    trajectory: List[Dict[RegimeState, float]]
    predicted_regime: RegimeState
    transition_probability: float
    confidence: str


# ---------------------------------------------------------------------------
# Correlation clustering
# ---------------------------------------------------------------------------


class Cluster(_Frozen):
    cluster_id: int
    members: List[str]
    intra_correlation: float
    size: int


class CorrelatedPair(_Frozen):
    ticker_a: str
    ticker_b: str
    correlation: float


class ClusterExposure(_Frozen):
    cluster_id: int
    members: List[str]
    gross_exposure_pct: float
    net_exposure_pct: float


class ClusterResult(_Frozen):
    tickers: List[str]
    correlation: Dict[str, Dict[str, float]]
    clusters: List[Cluster]
    labels: Dict[str, int]
    n_clusters: int
    silhouette: Optional[float] = None
    average_correlation: float
    diversification_score: float
    excluded_tickers: Dict[str, str] = Field(default_factory=dict)
    top_pairs: List[CorrelatedPair] = Field(default_factory=list)
    exposures: List[ClusterExposure] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Portfolio aggregation
# ---------------------------------------------------------------------------


class PositionContribution(_Frozen):
    ticker: str
    weight: float
    volatility: float
    beta: Optional[float] = None
    risk_score: float
    contribution_pct: float


class PortfolioRiskView(_Frozen):
    portfolio_volatility: float
    portfolio_beta: Optional[float] = None
    portfolio_sharpe: Optional[float] = None
    portfolio_max_drawdown: float
    portfolio_var_95: Optional[float] = None
    portfolio_cvar_95: Optional[float] = None
    risk_score: float
    risk_level: RiskLevel
    contributions: List[PositionContribution]
    positions_included: int
    positions_excluded: int
    excluded_tickers: List[str] = Field(default_factory=list)
