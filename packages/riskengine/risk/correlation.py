"""
Correlation Analysis and Clustering Module

Functions for analyzing correlation structure, identifying highly correlated pairs,
and performing Ward hierarchical clustering with silhouette-selected cluster count.
"""

from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
import structlog
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform
from sklearn.metrics import silhouette_score

from .models import (
    Cluster,
    ClusterExposure,
    ClusterResult,
    CorrelatedPair,
    ReturnSeries,
)
from .returns import build_aligned_returns

logger = structlog.get_logger(__name__)

MIN_CLUSTERS = 2
MAX_CLUSTERS = 5
DEFAULT_MIN_OVERLAP = 60


def correlation_matrix(returns: pd.DataFrame) -> pd.DataFrame:
    """Compute correlation matrix from returns DataFrame.

    The result is symmetric with a unit diagonal and values clipped to [-1, 1].

    Args:
        returns: DataFrame of returns (T x N)

    Returns:
        DataFrame with symbol labels on both axes (N x N correlation matrix)
    """
    if returns.empty:
        raise ValueError("Cannot compute correlation from empty returns DataFrame")

    if len(returns) < 2:
        raise ValueError(f"Need at least 2 observations, got {len(returns)}")

    corr = returns.corr()

    if corr.isna().any().any():
        nan_symbols = corr.columns[corr.isna().any()].tolist()
        logger.error(
            "correlation_matrix: NaN values in correlation matrix",
            affected_symbols=nan_symbols
        )
        raise ValueError(f"NaN values in correlation matrix for symbols: {nan_symbols}")

    values = np.clip(corr.values, -1.0, 1.0)
    values = (values + values.T) / 2.0
    np.fill_diagonal(values, 1.0)
    corr = pd.DataFrame(values, index=corr.index, columns=corr.columns)

    logger.info(
        "correlation_matrix: correlation computed",
        num_assets=len(corr),
        avg_correlation=average_correlation(corr),
    )

    return corr


def average_correlation(corr: pd.DataFrame) -> float:
    """Mean of the off-diagonal upper triangle; 1.0 for a single asset."""
    upper_vals = corr.values[np.triu_indices_from(corr.values, k=1)]
    return float(upper_vals.mean()) if len(upper_vals) > 0 else 1.0


def diversification_score(avg_corr: float) -> float:
    """100 * (1 - average correlation), clipped to [0, 100]."""
    return float(np.clip(100.0 * (1.0 - avg_corr), 0.0, 100.0))


def correlation_distance(corr: pd.DataFrame) -> np.ndarray:
    """Square distance matrix d = sqrt(2 * (1 - corr)) with a zero diagonal."""
    corr_values = np.clip(corr.values, -1.0, 1.0)
    distance = np.sqrt(2 * (1 - corr_values))
    np.fill_diagonal(distance, 0)
    return distance


def top_correlated_pairs(
    corr: pd.DataFrame,
    n: int = 20,
) -> List[CorrelatedPair]:
    """Find top N most correlated pairs (excluding self-correlation).

    Includes both highly positive and highly negative correlations.

    Returns:
        Pairs sorted by |correlation| descending
    """
    if corr.empty:
        raise ValueError("Cannot find pairs from empty correlation matrix")

    rows, cols = np.triu_indices_from(corr.values, k=1)

    pairs = [
        CorrelatedPair(
            ticker_a=corr.index[i],
            ticker_b=corr.columns[j],
            correlation=float(corr.iloc[i, j]),
        )
        for i, j in zip(rows, cols)
    ]
    pairs.sort(key=lambda p: abs(p.correlation), reverse=True)

    return pairs[:n]


def hierarchical_clusters(
    corr: pd.DataFrame,
    num_clusters: int,
    method: str = 'ward',
) -> Dict[str, int]:
    """Cut a hierarchical clustering of the correlation distance into clusters.

    Distance metric: d = sqrt(2 * (1 - corr))

    Args:
        corr: Correlation matrix (N x N DataFrame)
        num_clusters: Maximum number of clusters to create
        method: Linkage method ('ward', 'average', 'complete', 'single')

    Returns:
        Dict mapping symbol -> cluster_id (1-based)
    """
    if corr.empty:
        raise ValueError("Cannot cluster empty correlation matrix")

    if len(corr) < 2:
        return {corr.index[0]: 1}

    condensed_dist = squareform(correlation_distance(corr), checks=False)

    if np.isnan(condensed_dist).any() or np.isinf(condensed_dist).any():
        logger.error("hierarchical_clusters: invalid distances in matrix")
        raise ValueError("Invalid distances (NaN or Inf) in correlation distance matrix")

    Z = linkage(condensed_dist, method=method)

    # Use min to avoid more clusters than assets
    cluster_labels_array = fcluster(Z, min(num_clusters, len(corr)), criterion='maxclust')

    return {
        symbol: int(cluster_id)
        for symbol, cluster_id in zip(corr.index, cluster_labels_array)
    }


def select_cluster_count(
    corr: pd.DataFrame,
    min_clusters: int = MIN_CLUSTERS,
    max_clusters: int = MAX_CLUSTERS,
) -> Tuple[Dict[str, int], Optional[float]]:
    """Choose k in [min_clusters, min(max_clusters, n - 1)] by silhouette score.

    Silhouette is computed on the precomputed correlation distance. Ties go
    to the smaller k. Two assets are always split into two clusters and a
    single asset forms one cluster; no silhouette is reported for either.

    Returns:
        Tuple of (labels, best_silhouette)
    """
    n = len(corr)
    if n == 1:
        return {corr.index[0]: 1}, None
    if n == 2:
        return {corr.index[0]: 1, corr.index[1]: 2}, None

    distance = correlation_distance(corr)
    best_labels: Optional[Dict[str, int]] = None
    best_score: Optional[float] = None

    for k in range(min_clusters, min(max_clusters, n - 1) + 1):
        labels = hierarchical_clusters(corr, k)
        label_array = np.array([labels[s] for s in corr.index])
        n_found = len(np.unique(label_array))
        if n_found < 2 or n_found > n - 1:
            continue

        score = float(silhouette_score(distance, label_array, metric="precomputed"))
        logger.debug("select_cluster_count: candidate scored", k=k, silhouette=score)

        if best_score is None or score > best_score + 1e-12:
            best_labels, best_score = labels, score

    if best_labels is None:
        # Degenerate geometry (e.g. all distances equal); fall back to the minimum k
        best_labels = hierarchical_clusters(corr, min_clusters)

    return best_labels, best_score


def build_clusters(corr: pd.DataFrame, labels: Mapping[str, int]) -> List[Cluster]:
    """Group labels into clusters with their average intra-cluster correlation."""
    clusters = []
    for cluster_id in sorted(set(labels.values())):
        members = [s for s in corr.index if labels[s] == cluster_id]

        if len(members) > 1:
            cluster_corr = corr.loc[members, members].values
            upper_indices = np.triu_indices_from(cluster_corr, k=1)
            avg_intra_corr = float(cluster_corr[upper_indices].mean())
        else:
            avg_intra_corr = 1.0

        clusters.append(Cluster(
            cluster_id=int(cluster_id),
            members=members,
            intra_correlation=avg_intra_corr,
            size=len(members),
        ))

    # Sort by cluster size descending
    clusters.sort(key=lambda c: c.size, reverse=True)
    return clusters


def cluster_exposures(
    cluster_labels: Mapping[str, int],
    weights: Mapping[str, float],
) -> List[ClusterExposure]:
    """Compute gross and net exposure per cluster.

    Args:
        cluster_labels: Dict mapping symbol -> cluster_id
        weights: Dict mapping symbol -> weight (decimals or dollar amounts)

    Returns:
        Exposures sorted by gross exposure descending
    """
    total_gross = float(sum(abs(w) for s, w in weights.items() if s in cluster_labels))

    if total_gross == 0:
        logger.warning("cluster_exposures: zero gross exposure")
        return []

    cluster_data: Dict[int, Dict[str, list]] = {}
    for symbol, weight in weights.items():
        cluster_id = cluster_labels.get(symbol)
        if cluster_id is None:
            logger.warning(
                "cluster_exposures: symbol not in cluster_labels",
                symbol=symbol
            )
            continue

        data = cluster_data.setdefault(cluster_id, {'members': [], 'weights': []})
        data['members'].append(symbol)
        data['weights'].append(weight)

    exposures = []
    for cluster_id, data in cluster_data.items():
        cluster_weights = np.array(data['weights'], dtype=float)
        exposures.append(ClusterExposure(
            cluster_id=cluster_id,
            members=data['members'],
            gross_exposure_pct=float(np.sum(np.abs(cluster_weights)) / total_gross * 100),
            net_exposure_pct=float(np.sum(cluster_weights) / total_gross * 100),
        ))

    exposures.sort(key=lambda e: e.gross_exposure_pct, reverse=True)
    return exposures


def cluster_correlations(
    series: Mapping[str, ReturnSeries],
    min_overlap: int = DEFAULT_MIN_OVERLAP,
    weights: Optional[Mapping[str, float]] = None,
    top_pairs: int = 10,
) -> ClusterResult:
    """Correlate and cluster a set of return series.

    Tickers with fewer than ``min_overlap`` common observations, or with no
    return variance over the common window, are excluded and reported in
    ``excluded_tickers`` with a reason. The remaining tickers are
    partitioned into clusters; every included ticker has exactly one label.

    Args:
        series: Ticker -> return series
        min_overlap: Minimum number of common dates required
        weights: Optional ticker -> weight for cluster exposures
        top_pairs: Number of most correlated pairs to report

    Returns:
        ClusterResult
    """
    frame, excluded = build_aligned_returns(dict(series), min_overlap=min_overlap)

    if not frame.empty:
        flat = [c for c in frame.columns if frame[c].std() < 1e-12]
        for ticker in flat:
            excluded[ticker] = "zero_variance"
        frame = frame.drop(columns=flat)

    if frame.empty or len(frame.columns) == 0:
        logger.warning("cluster_correlations: no tickers left to cluster", excluded=excluded)
        return ClusterResult(
            tickers=[],
            correlation={},
            clusters=[],
            labels={},
            n_clusters=0,
            silhouette=None,
            average_correlation=0.0,
            diversification_score=0.0,
            excluded_tickers=excluded,
        )

    frame = frame[sorted(frame.columns)]
    corr = correlation_matrix(frame)
    labels, silhouette = select_cluster_count(corr)
    clusters = build_clusters(corr, labels)
    avg_corr = average_correlation(corr)

    result = ClusterResult(
        tickers=list(corr.index),
        correlation={a: {b: float(corr.loc[a, b]) for b in corr.columns} for a in corr.index},
        clusters=clusters,
        labels=labels,
        n_clusters=len(clusters),
        silhouette=silhouette,
        average_correlation=avg_corr,
        diversification_score=diversification_score(avg_corr),
        excluded_tickers=excluded,
        top_pairs=top_correlated_pairs(corr, top_pairs) if len(corr) > 1 else [],
        exposures=cluster_exposures(labels, weights) if weights else [],
    )

    logger.info(
        "cluster_correlations: clustering complete",
        num_tickers=len(result.tickers),
        num_clusters=result.n_clusters,
        silhouette=silhouette,
        diversification_score=result.diversification_score,
        excluded=len(excluded),
    )

    return result
