"""Engine services: result caching, the regime model store and the RiskEngine facade."""

from .cache import (
    InMemoryResultCache,
    MetricKind,
    RedisResultCache,
    build_result_cache,
    make_cache_key,
)
from .regime_store import RegimeModelStore
from .risk_service import RiskEngine, build_price_provider, create_risk_engine

__all__ = [
    "InMemoryResultCache",
    "MetricKind",
    "RedisResultCache",
    "RegimeModelStore",
    "RiskEngine",
    "build_price_provider",
    "build_result_cache",
    "create_risk_engine",
    "make_cache_key",
]
