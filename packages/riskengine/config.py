"""Configuration for the risk engine loaded from environment variables."""

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings


class ScorePolicy(BaseModel):
    """Weights and normalization ranges for the composite risk score.

    Each component is min-max normalized against [0, *_range] and clipped to
    [0, 1] before weighting. Weights must sum to 1.
    """

    volatility_weight: float = 0.40
    drawdown_weight: float = 0.30
    beta_weight: float = 0.20
    var_weight: float = 0.10

    volatility_range: float = 0.50
    drawdown_range: float = 0.50
    beta_range: float = 2.0
    var_range: float = 0.10

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check(self) -> "ScorePolicy":
        total = self.volatility_weight + self.drawdown_weight + self.beta_weight + self.var_weight
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"Score weights must sum to 1, got {total}")
        for name in ("volatility_range", "drawdown_range", "beta_range", "var_range"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return self


class Settings(BaseSettings):
    """Risk engine configuration.

    Every field has a default suitable for local use; provider keys and the
    Redis URL are optional and enable the corresponding backends when set.
    """

    RISK_FREE_RATE: float = 0.045
    DEFAULT_BENCHMARK: str = "SPY"
    DEFAULT_WINDOW_DAYS: int = 252
    EXTRA_BENCHMARKS: str = "QQQ,IWM"  # Comma-separated, for multi-benchmark beta

    REGIME_TICKER: str = "SPY"
    REGIME_LOOKBACK_DAYS: int = 2520
    REGIME_RETRAIN_DAYS: int = 30
    HMM_MAX_ITERATIONS: int = 200

    GARCH_HISTORY_DAYS: int = 500
    GARCH_MAX_ITERATIONS: int = 2000

    CORRELATION_MIN_OVERLAP: int = 60
    BETA_FORECAST_LOOKBACK: int = 60

    # Result cache TTLs (seconds)
    TTL_VOLATILITY_FORECAST: int = 24 * 3600
    TTL_REGIME: int = 30 * 24 * 3600
    TTL_CORRELATION: int = 3600
    TTL_RISK_METRICS: int = 4 * 3600
    TTL_BETA: int = 24 * 3600

    ALPHAVANTAGE_API_KEY: str = ""  # Optional, enables the Alpha Vantage fallback
    REDIS_URL: str = ""  # Optional, enables the Redis result cache
    FETCH_TIMEOUT_SECONDS: float = 30.0

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def extra_benchmarks(self) -> list:
        return [s.strip().upper() for s in self.EXTRA_BENCHMARKS.split(",") if s.strip()]


def get_settings() -> Settings:
    """Return a Settings instance."""
    return Settings()
