"""Data quality checks for price histories.

Flags the conditions that silently distort risk figures: outlier returns,
flat streaks from stale quotes, calendar gaps, and unordered or duplicated
input. Results are plain dicts so they can ride alongside any result payload.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Mapping, Sequence

import numpy as np
import structlog

from .models import PricePoint
from .returns import validate_price_points

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Warning thresholds (configurable constants)
# ---------------------------------------------------------------------------

OUTLIER_RETURN_THRESHOLD = 0.30       # |return| > 30% flagged as outlier
FLAT_STREAK_THRESHOLD = 5             # >=5 days of flat returns flagged
GAP_CALENDAR_DAYS = 7                 # more than a week between closes
WARN_MIN_OBSERVATIONS = 60


def count_flat_streaks(returns: np.ndarray, threshold: int = FLAT_STREAK_THRESHOLD) -> int:
    """Count runs of at least ``threshold`` essentially-zero returns."""
    streaks = 0
    streak = 0
    for r in np.abs(returns):
        if r < 1e-8:  # essentially zero return
            streak += 1
            if streak >= threshold:
                streaks += 1
                streak = 0
        else:
            streak = 0
    return streaks


def assess_price_history(ticker: str, points: Sequence[PricePoint]) -> Dict[str, Any]:
    """Assess one raw price history before it feeds any computation.

    Args:
        ticker: Symbol
        points: Raw price points as received from the provider

    Returns:
        Dict with observation counts, integrity counters and warnings
    """
    raw = list(points)
    raw_dates = [p.date for p in raw]
    non_monotonic = any(b <= a for a, b in zip(raw_dates, raw_dates[1:]))

    usable = [p for p in raw if math.isfinite(p.close) and p.close > 0]
    dropped = len(raw) - len(usable)
    usable_dates = [p.date for p in usable]
    duplicates = len(usable_dates) - len(set(usable_dates))

    clean = validate_price_points(usable)

    closes = np.array([p.close for p in clean], dtype=float)
    returns = closes[1:] / closes[:-1] - 1.0 if len(closes) > 1 else np.array([])

    outlier_days = int(np.sum(np.abs(returns) > OUTLIER_RETURN_THRESHOLD))
    flat_streaks = count_flat_streaks(returns)

    gaps = []
    for a, b in zip(clean, clean[1:]):
        delta = (b.date - a.date).days
        if delta > GAP_CALENDAR_DAYS:
            gaps.append({"start": a.date.isoformat(), "end": b.date.isoformat(), "days": delta})

    warnings: List[str] = []
    if len(clean) < WARN_MIN_OBSERVATIONS:
        warnings.append(f"Short history: {len(clean)} usable prices (< {WARN_MIN_OBSERVATIONS})")
    if outlier_days:
        warnings.append(f"{outlier_days} daily return(s) beyond {OUTLIER_RETURN_THRESHOLD:.0%}")
    if flat_streaks:
        warnings.append(f"{flat_streaks} flat streak(s) of {FLAT_STREAK_THRESHOLD}+ days; quotes may be stale")
    if gaps:
        warnings.append(f"{len(gaps)} gap(s) longer than {GAP_CALENDAR_DAYS} calendar days")
    if non_monotonic:
        warnings.append("Input was not strictly date-ordered; it was sorted and de-duplicated")
    if dropped:
        warnings.append(f"{dropped} non-finite or non-positive close(s) dropped")

    report = {
        "ticker": ticker,
        "raw_points": len(raw),
        "usable_points": len(clean),
        "duplicate_dates": duplicates,
        "dropped_points": dropped,
        "non_monotonic_input": non_monotonic,
        "outlier_return_days": outlier_days,
        "flat_streak_flags": flat_streaks,
        "gaps": gaps,
        "first_date": clean[0].date.isoformat() if clean else None,
        "last_date": clean[-1].date.isoformat() if clean else None,
        "warnings": warnings,
    }

    if warnings:
        logger.info("assess_price_history: quality warnings", ticker=ticker, warnings=warnings)

    return report


def build_data_quality_pack(histories: Mapping[str, Sequence[PricePoint]]) -> Dict[str, Any]:
    """Assess several histories and summarize them.

    Returns:
        Dict with per-ticker reports and portfolio-level counters
    """
    reports = {ticker: assess_price_history(ticker, points) for ticker, points in histories.items()}

    return {
        "tickers": len(reports),
        "tickers_with_warnings": sorted(t for t, r in reports.items() if r["warnings"]),
        "outlier_return_days": sum(r["outlier_return_days"] for r in reports.values()),
        "flat_streak_flags": sum(r["flat_streak_flags"] for r in reports.values()),
        "reports": reports,
    }
