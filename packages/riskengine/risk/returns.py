"""
Return Construction Module

Pure functions for validating price histories and computing returns.
Every other risk component derives its inputs from here; nothing is cached,
a ReturnSeries is rebuilt on each call.
"""

import math
from datetime import date
from typing import Dict, Iterable, List, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import structlog

from .errors import InsufficientDataError
from .models import PricePoint, ReturnSeries

logger = structlog.get_logger(__name__)

PriceInput = Union[PricePoint, Tuple[date, float]]


def validate_price_points(points: Iterable[PriceInput]) -> List[PricePoint]:
    """Return usable price points sorted by date.

    Accepts PricePoint objects or (date, close) pairs. Drops non-finite and
    non-positive closes (a non-positive previous close cannot anchor a
    return) and keeps the last point for a duplicated date.

    Args:
        points: Price points in any order

    Returns:
        List of PricePoint strictly increasing by date
    """
    by_date: Dict[date, PricePoint] = {}
    dropped = 0
    out_of_order = False
    last_seen = None

    for raw in points:
        point = raw if isinstance(raw, PricePoint) else PricePoint(date=raw[0], close=float(raw[1]))

        if last_seen is not None and point.date < last_seen:
            out_of_order = True
        last_seen = point.date

        if not math.isfinite(point.close) or point.close <= 0:
            dropped += 1
            continue
        by_date[point.date] = point

    if dropped or out_of_order:
        logger.info(
            "validate_price_points: input cleaned",
            dropped_points=dropped,
            resorted=out_of_order,
        )

    return [by_date[d] for d in sorted(by_date)]


def build_return_series(ticker: str, points: Iterable[PriceInput]) -> ReturnSeries:
    """Compute arithmetic daily returns: (P_t - P_{t-1}) / P_{t-1}

    Args:
        ticker: Symbol the prices belong to
        points: Raw price points (validated and sorted here)

    Returns:
        ReturnSeries with len(returns) == len(usable prices) - 1

    Raises:
        InsufficientDataError: If fewer than 2 usable prices remain
    """
    clean = validate_price_points(points)

    if len(clean) < 2:
        raise InsufficientDataError(
            f"Need at least 2 usable prices for {ticker}, got {len(clean)}",
            observations=len(clean),
            required=2,
        )

    closes = np.array([p.close for p in clean], dtype=float)
    returns = (closes[1:] - closes[:-1]) / closes[:-1]

    return ReturnSeries(
        ticker=ticker,
        returns=returns.tolist(),
        dates=[p.date for p in clean[1:]],
    )


def return_series_to_pandas(series: ReturnSeries) -> pd.Series:
    index = pd.DatetimeIndex([pd.Timestamp(d) for d in series.dates])
    return pd.Series(series.returns, index=index, dtype=float, name=series.ticker)


def trim_points(points: Sequence[PricePoint], window_days: int) -> List[PricePoint]:
    """Keep the last window_days + 1 prices so at most window_days returns remain."""
    if window_days <= 0:
        return list(points)
    return list(points[-(window_days + 1):])


def align_return_series(
    series: ReturnSeries,
    benchmark: ReturnSeries,
) -> Tuple[np.ndarray, np.ndarray, List[date]]:
    """Align two return series on their common dates.

    Returns:
        Tuple of (asset_returns, benchmark_returns, common_dates), equal length
    """
    bench_by_date = dict(zip(benchmark.dates, benchmark.returns))
    asset, bench, dates = [], [], []
    for d, r in zip(series.dates, series.returns):
        b = bench_by_date.get(d)
        if b is None:
            continue
        asset.append(r)
        bench.append(b)
        dates.append(d)

    return np.asarray(asset, dtype=float), np.asarray(bench, dtype=float), dates


def build_aligned_returns(
    series: Dict[str, ReturnSeries],
    min_overlap: int = 60,
) -> Tuple[pd.DataFrame, Dict[str, str]]:
    """Build a date-aligned returns matrix across tickers.

    Tickers are admitted greedily, longest history first, as long as the
    common date set stays at or above min_overlap observations. Anything
    rejected is reported with a reason rather than silently dropped.

    Returns:
        Tuple of (returns_df, excluded) where excluded maps ticker -> reason
    """
    excluded: Dict[str, str] = {}
    candidates = []

    for ticker, rs in series.items():
        if len(rs) < min_overlap:
            excluded[ticker] = f"insufficient_history ({len(rs)} < {min_overlap})"
            continue
        candidates.append(return_series_to_pandas(rs))

    # Longest first, ticker name as a deterministic tie-break
    candidates.sort(key=lambda s: (-len(s), s.name))

    common_index = None
    admitted: Dict[str, pd.Series] = {}
    for s in candidates:
        overlap = s.index if common_index is None else common_index.intersection(s.index)
        if len(overlap) < min_overlap:
            excluded[s.name] = f"insufficient_overlap ({len(overlap)} < {min_overlap})"
            continue
        common_index = overlap
        admitted[s.name] = s

    if not admitted:
        logger.warning("build_aligned_returns: no tickers admitted", excluded=excluded)
        return pd.DataFrame(), excluded

    frame = pd.DataFrame({t: s.loc[common_index] for t, s in admitted.items()}).sort_index()

    if excluded:
        logger.info(
            "build_aligned_returns: some tickers excluded",
            excluded_count=len(excluded),
            excluded=excluded,
        )

    logger.info(
        "build_aligned_returns: returns aligned",
        num_symbols=len(frame.columns),
        num_periods=len(frame),
    )

    return frame, excluded
