"""Price history ingestion: providers, failure cache and the coalescing fetcher."""

from .providers import (
    AlphaVantagePriceProvider,
    FailureCache,
    FailureKind,
    FallbackPriceProvider,
    PriceProvider,
    StaticPriceProvider,
    YahooPriceProvider,
)
from .fetcher import PriceHistoryFetcher

__all__ = [
    "AlphaVantagePriceProvider",
    "FailureCache",
    "FailureKind",
    "FallbackPriceProvider",
    "PriceProvider",
    "PriceHistoryFetcher",
    "StaticPriceProvider",
    "YahooPriceProvider",
]
