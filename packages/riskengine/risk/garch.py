"""
GARCH(1,1) Volatility Forecasting Module

sigma2_t = omega + alpha * eps2_{t-1} + beta * sigma2_{t-1}

Parameters are fitted by maximum likelihood with the ``arch`` package under a
bounded iteration count. Fits that fail to converge, are non-stationary
(alpha + beta >= 1) or do not improve on the constant-variance likelihood
are replaced by the unconditional sample variance so callers always receive
a usable model.
"""

from typing import List, Sequence, Tuple

import numpy as np
import structlog
from arch import arch_model
from scipy import stats

from .errors import InsufficientDataError, NonStationaryModelError
from .models import GarchModel, VolatilityForecast, VolatilityForecastPoint

logger = structlog.get_logger(__name__)

TRADING_DAYS = 252
MIN_OBSERVATIONS = 30
DEFAULT_MAX_ITERATIONS = 2000
ARCH_TEST_LAGS = 5
ARCH_TEST_SIGNIFICANCE = 0.05
LR_TEST_SIGNIFICANCE = 0.05

HIGH_PERSISTENCE = 0.95
HIGH_ALPHA = 0.15
ELEVATED_VOL_RATIO = 1.5

# arch fits percent returns; variances scale by 100^2
_PERCENT = 100.0


def conditional_variances(
    eps: np.ndarray,
    omega: float,
    alpha: float,
    beta: float,
    initial_variance: float,
) -> np.ndarray:
    """Run the GARCH(1,1) recursion over demeaned returns.

    Returns:
        Array of length len(eps) + 1; the last element is the one-step-ahead
        variance sigma2_{T+1}
    """
    sigma2 = np.empty(len(eps) + 1)
    sigma2[0] = initial_variance
    for t in range(1, len(eps) + 1):
        sigma2[t] = omega + alpha * eps[t - 1] ** 2 + beta * sigma2[t - 1]
    return sigma2


def constant_variance_log_likelihood(eps: np.ndarray) -> float:
    """Gaussian log-likelihood of eps under its MLE constant variance."""
    variance = float(np.mean(eps ** 2))
    return float(-0.5 * len(eps) * (np.log(2 * np.pi) + np.log(variance) + 1.0))


def arch_lm_test(eps: np.ndarray, lags: int = ARCH_TEST_LAGS) -> float:
    """Engle's Lagrange-multiplier test for ARCH effects.

    Regresses eps^2_t on its own ``lags`` lags; LM = n * R^2 ~ chi2(lags).

    Returns:
        p-value; 1.0 when the squared residuals have no variation
    """
    sq = np.asarray(eps, dtype=float) ** 2
    if len(sq) <= lags + 1 or np.std(sq) < 1e-12 * max(np.mean(sq), 1e-300):
        return 1.0

    y = sq[lags:]
    X = np.column_stack([np.ones(len(y))] + [sq[lags - k:-k] for k in range(1, lags + 1)])
    coef, *_ = np.linalg.lstsq(X, y, rcond=None)
    resid = y - X @ coef
    ss_tot = np.sum((y - y.mean()) ** 2)
    if ss_tot <= 0:
        return 1.0
    r_squared = 1.0 - np.sum(resid ** 2) / ss_tot
    lm = len(y) * max(r_squared, 0.0)
    return float(stats.chi2.sf(lm, lags))


def _unconditional_model(sample_var: float, warnings: List[str], fallback: bool) -> GarchModel:
    return GarchModel(
        omega=sample_var,
        alpha=0.0,
        beta=0.0,
        long_run_variance=sample_var,
        persistence=0.0,
        log_likelihood=None,
        converged=not fallback,
        iterations=0,
        fallback=fallback,
        warnings=warnings,
    )


def _optimize(eps: np.ndarray, max_iterations: int) -> GarchModel:
    """Fit a zero-mean GARCH(1,1) with arch and validate the result.

    Raises:
        NonStationaryModelError: If the optimizer did not converge or the
            fitted parameters violate alpha + beta < 1
    """
    model = arch_model(eps * _PERCENT, mean="Zero", vol="GARCH", p=1, q=1, dist="normal", rescale=False)
    try:
        result = model.fit(disp="off", show_warning=False, options={"maxiter": max_iterations})
    except (ValueError, np.linalg.LinAlgError) as e:
        raise NonStationaryModelError(f"GARCH optimizer failed: {e}") from e

    omega = float(result.params["omega"]) / _PERCENT ** 2
    alpha = float(result.params["alpha[1]"])
    beta = float(result.params["beta[1]"])

    if result.convergence_flag != 0:
        raise NonStationaryModelError(
            f"GARCH optimizer did not converge: {result.optimization_result.message}"
        )
    if omega <= 0 or alpha < 0 or beta < 0 or alpha + beta >= 1:
        raise NonStationaryModelError(
            f"GARCH fit is non-stationary: alpha={alpha:.4f}, beta={beta:.4f}"
        )

    persistence = alpha + beta
    return GarchModel(
        omega=omega,
        alpha=alpha,
        beta=beta,
        long_run_variance=omega / (1.0 - persistence),
        persistence=persistence,
        # Likelihood of the original returns: undo the percent scaling
        log_likelihood=float(result.loglikelihood) + len(eps) * np.log(_PERCENT),
        converged=True,
        iterations=int(result.optimization_result.nit),
    )


def fit_garch(
    returns: Sequence[float],
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    arch_test: bool = True,
) -> GarchModel:
    """Fit GARCH(1,1) to daily returns.

    When ``arch_test`` is set and Engle's LM test finds no ARCH effect, the
    constant-variance model (alpha = beta = 0, omega = sample variance) is
    returned directly, as beta is not identified without an ARCH term. A
    fitted model is also kept only if a likelihood-ratio test against the
    constant-variance model rejects it at the 5% level.

    Args:
        returns: Daily returns (demeaned internally)
        max_iterations: Optimizer iteration bound
        arch_test: Pre-test for ARCH effects before optimizing

    Returns:
        GarchModel; ``fallback`` is True when the optimizer result was rejected

    Raises:
        InsufficientDataError: If fewer than 30 returns are supplied
    """
    r = np.asarray(returns, dtype=float)
    r = r[np.isfinite(r)]
    if len(r) < MIN_OBSERVATIONS:
        raise InsufficientDataError(
            f"GARCH needs at least {MIN_OBSERVATIONS} returns, got {len(r)}",
            observations=len(r),
            required=MIN_OBSERVATIONS,
        )

    eps = r - r.mean()
    sample_var = float(np.var(eps, ddof=1))

    if sample_var <= 0:
        logger.warning("fit_garch: zero sample variance", observations=len(r))
        return _unconditional_model(0.0, ["Zero return variance; volatility forecast is flat at zero."], fallback=True)

    if arch_test:
        p_value = arch_lm_test(eps)
        if p_value > ARCH_TEST_SIGNIFICANCE:
            logger.info("fit_garch: no ARCH effect, using constant variance", p_value=p_value)
            return _unconditional_model(
                sample_var,
                [f"No significant ARCH effect (LM p={p_value:.3f}); volatility modelled as constant."],
                fallback=False,
            )

    try:
        model = _optimize(eps, max_iterations)
    except NonStationaryModelError as e:
        logger.warning("fit_garch: fit rejected, falling back to sample variance", error=str(e))
        return _unconditional_model(
            sample_var,
            [f"GARCH fit rejected ({e}); using unconditional sample variance."],
            fallback=True,
        )

    # alpha and beta are the two restrictions of the constant-variance model
    lr_stat = 2.0 * (model.log_likelihood - constant_variance_log_likelihood(eps))
    lr_p_value = float(stats.chi2.sf(max(lr_stat, 0.0), 2))
    if lr_p_value > LR_TEST_SIGNIFICANCE:
        logger.info(
            "fit_garch: no likelihood gain over constant variance",
            lr_stat=lr_stat,
            p_value=lr_p_value,
            alpha=model.alpha,
            beta=model.beta,
        )
        return _unconditional_model(
            sample_var,
            [f"GARCH likelihood gain not significant (LR p={lr_p_value:.3f}); volatility modelled as constant."],
            fallback=False,
        )

    logger.info(
        "fit_garch: model fitted",
        omega=model.omega,
        alpha=model.alpha,
        beta=model.beta,
        persistence=model.persistence,
        iterations=model.iterations,
    )

    return model


def forecast_variance_path(
    model: GarchModel,
    next_variance: float,
    horizon_days: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Multi-step variance forecast and its forecast-error variance.

    sigma2_{T+h} = LR + (alpha + beta)^(h-1) * (sigma2_{T+1} - LR)

    The error e_h of the variance forecast follows
    e_h = (alpha + beta) * e_{h-1} + alpha * nu_{T+h-1} with
    Var(nu_s) = 2 * sigma2_s^2 under Gaussian innovations, e_1 = 0.

    Returns:
        Tuple of (variances, error_variances), each of length horizon_days
    """
    if horizon_days < 1:
        raise ValueError(f"Horizon must be >= 1, got {horizon_days}")

    lr = model.long_run_variance
    phi = model.persistence
    h = np.arange(1, horizon_days + 1)
    variances = lr + phi ** (h - 1) * (next_variance - lr)

    error_var = np.zeros(horizon_days)
    for i in range(1, horizon_days):
        error_var[i] = phi ** 2 * error_var[i - 1] + model.alpha ** 2 * 2.0 * variances[i - 1] ** 2

    return variances, error_var


def generate_warnings(model: GarchModel, current_variance: float) -> List[str]:
    warnings = list(model.warnings)

    if model.persistence > HIGH_PERSISTENCE:
        warnings.append(
            "High volatility persistence (alpha + beta > 0.95). Shocks will take longer to dissipate."
        )
    if model.alpha > HIGH_ALPHA:
        warnings.append(
            "High shock sensitivity (alpha > 0.15). Volatility reacts strongly to recent moves."
        )
    if model.long_run_variance > 0 and np.sqrt(current_variance) > ELEVATED_VOL_RATIO * np.sqrt(model.long_run_variance):
        warnings.append(
            "Current volatility is more than 1.5x its long-run level; expect it to decline."
        )

    return warnings


def forecast_volatility(
    ticker: str,
    returns: Sequence[float],
    horizon_days: int = 30,
    confidence: float = 0.95,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> VolatilityForecast:
    """Fit GARCH(1,1) to returns and forecast daily variance with bands.

    Args:
        ticker: Symbol for labelling
        returns: Daily returns, chronological
        horizon_days: Forecast horizon in trading days
        confidence: Band confidence level, e.g. 0.80 or 0.95
        max_iterations: Optimizer iteration bound

    Returns:
        VolatilityForecast with one point per day

    Raises:
        InsufficientDataError: If too few returns are supplied
    """
    if not 0 < confidence < 1:
        raise ValueError(f"Confidence must be between 0 and 1, got {confidence}")

    r = np.asarray(returns, dtype=float)
    r = r[np.isfinite(r)]
    model = fit_garch(r, max_iterations=max_iterations)

    eps = r - r.mean()
    sigma2 = conditional_variances(eps, model.omega, model.alpha, model.beta, float(np.var(eps, ddof=1)))
    next_variance = float(sigma2[-1])

    variances, error_var = forecast_variance_path(model, next_variance, horizon_days)
    z = float(stats.norm.ppf(0.5 + confidence / 2))
    half_width = z * np.sqrt(error_var)

    points = [
        VolatilityForecastPoint(
            day=i + 1,
            variance=float(v),
            lower=float(max(v - w, 0.0)),
            upper=float(v + w),
            annualized_volatility=float(np.sqrt(v * TRADING_DAYS)),
        )
        for i, (v, w) in enumerate(zip(variances, half_width))
    ]

    forecast = VolatilityForecast(
        ticker=ticker,
        horizon_days=horizon_days,
        confidence=confidence,
        current_volatility=float(np.sqrt(next_variance * TRADING_DAYS)),
        long_run_volatility=float(np.sqrt(model.long_run_variance * TRADING_DAYS)),
        model=model,
        points=points,
        warnings=generate_warnings(model, next_variance),
    )

    logger.info(
        "forecast_volatility: forecast generated",
        ticker=ticker,
        horizon_days=horizon_days,
        current_volatility=forecast.current_volatility,
        long_run_volatility=forecast.long_run_volatility,
        fallback=model.fallback,
    )

    return forecast
