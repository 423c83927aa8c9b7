"""Error taxonomy for the risk engine.

Data-quality conditions never surface as exceptions from the public
operations: they come back as ``InsufficientData`` or as ``None`` fields with
a flag. Only infrastructure failures (provider, cache) propagate.
"""

from __future__ import annotations

# Flags attached to RiskMetrics.flags
LOW_SAMPLE_SIZE = "low_sample_size"
DEGENERATE_VARIANCE = "degenerate_variance"
NO_DOWNSIDE_RETURNS = "no_downside_returns"
BENCHMARK_UNAVAILABLE = "benchmark_unavailable"
BENCHMARK_MISALIGNED = "benchmark_misaligned"


class InsufficientDataError(ValueError):
    """Raised internally when fewer usable observations remain than required."""

    def __init__(self, message: str, observations: int = 0, required: int = 0):
        super().__init__(message)
        self.observations = observations
        self.required = required


class NonStationaryModelError(ValueError):
    """A GARCH fit violated alpha + beta < 1 (or failed to converge)."""


class ProviderError(RuntimeError):
    """External price fetch failed. Retryable with backoff by the caller."""

    def __init__(self, message: str, ticker: str | None = None):
        super().__init__(message)
        self.ticker = ticker


class TickerNotFoundError(ProviderError):
    pass


class RateLimitedError(ProviderError):
    pass


class CacheCorruptionError(RuntimeError):
    """A cached payload could not be decoded."""
