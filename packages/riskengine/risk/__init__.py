"""
Risk Analytics Engine

Quantitative risk and forecasting computations over daily price histories.
Pure computation modules operating on pydantic value objects, pandas
DataFrames and numpy arrays.

Modules:
- returns: Price validation, return series and alignment helpers
- metrics: Volatility, drawdown, beta, Sharpe/Sortino, VaR/CVaR, risk score
- beta: Rolling beta, beta forecasts and beta regime changes
- garch: GARCH(1,1) volatility fitting and forecasting
- regime: Four-state HMM market regime detection and forecasting
- correlation: Correlation matrix and Ward clustering
- aggregate: Portfolio-level weighting and risk contributions
- data_quality: Price history integrity checks
"""

# Returns module
from .returns import (
    validate_price_points,
    build_return_series,
    align_return_series,
    build_aligned_returns,
)

# Metrics module
from .metrics import (
    annualized_volatility,
    max_drawdown,
    compute_beta,
    sharpe_ratio,
    sortino_ratio,
    historical_var,
    conditional_var,
    compute_risk_score,
    compute_risk_metrics,
)

# Beta module
from .beta import (
    rolling_beta,
    forecast_beta,
    detect_beta_regime_changes,
)

# GARCH module
from .garch import (
    fit_garch,
    forecast_volatility,
)

# Regime module
from .regime import (
    train_hmm,
    state_probabilities,
    classify_rule_based,
    detect_regime,
    forecast_regime,
)

# Correlation module
from .correlation import (
    correlation_matrix,
    top_correlated_pairs,
    hierarchical_clusters,
    select_cluster_count,
    cluster_exposures,
    cluster_correlations,
)

# Aggregation module
from .aggregate import (
    weights_from_market_values,
    risk_contributions,
    aggregate_portfolio_risk,
)

# Data quality module
from .data_quality import (
    assess_price_history,
    build_data_quality_pack,
)

__all__ = [
    # Returns
    'validate_price_points',
    'build_return_series',
    'align_return_series',
    'build_aligned_returns',
    # Metrics
    'annualized_volatility',
    'max_drawdown',
    'compute_beta',
    'sharpe_ratio',
    'sortino_ratio',
    'historical_var',
    'conditional_var',
    'compute_risk_score',
    'compute_risk_metrics',
    # Beta
    'rolling_beta',
    'forecast_beta',
    'detect_beta_regime_changes',
    # GARCH
    'fit_garch',
    'forecast_volatility',
    # Regime
    'train_hmm',
    'state_probabilities',
    'classify_rule_based',
    'detect_regime',
    'forecast_regime',
    # Correlation
    'correlation_matrix',
    'top_correlated_pairs',
    'hierarchical_clusters',
    'select_cluster_count',
    'cluster_exposures',
    'cluster_correlations',
    # Aggregation
    'weights_from_market_values',
    'risk_contributions',
    'aggregate_portfolio_risk',
    # Data quality
    'assess_price_history',
    'build_data_quality_pack',
]
