"""
Agglomerative clustering of portfolio solutions.

The merge loop uses Lance-Williams distance updates so that ties in merge
height can be broken deterministically: among all pairs within tie_tolerance
of the smallest height, the pair with the lowest sum of the clusters' lowest
original solution indices merges first, then the pair containing the lowest
single index. The result is a scipy-compatible linkage matrix, so the scipy
hierarchy tools (to_tree, leaves_list, fcluster, cophenet) apply unchanged.

Lance-Williams updates for cluster k after merging i and j:
    single    min(d_ik, d_jk)
    complete  max(d_ik, d_jk)
    average   (n_i·d_ik + n_j·d_jk) / (n_i + n_j)
    weighted  (d_ik + d_jk) / 2
    ward      sqrt(((n_i+n_k)·d_ik² + (n_j+n_k)·d_jk² − n_k·d_ij²) / (n_i+n_j+n_k))
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.cluster import hierarchy
from scipy.spatial.distance import squareform

from Marxan_Portfolio.analytics.distance import validate_distance_matrix
from Marxan_Portfolio.config_types import LINKAGE_METHODS, AppConfig, normalize_config
from Marxan_Portfolio.exceptions import DegenerateInputError, ValidationError

logger = logging.getLogger("MXP.Analytics")


@dataclass(frozen=True, eq=False)
class Dendrogram:
    """Hierarchical clustering result.

    Attributes:
        linkage_matrix: (n-1) x 4 scipy linkage matrix [a, b, height, size].
        labels: Leaf labels (replicate indices) in input order.
        method: Linkage method used.
    """

    linkage_matrix: np.ndarray
    labels: Tuple[Any, ...]
    method: str

    @property
    def n_leaves(self) -> int:
        return len(self.labels)

    @property
    def heights(self) -> np.ndarray:
        return self.linkage_matrix[:, 2].copy()

    def to_tree(self) -> hierarchy.ClusterNode:
        return hierarchy.to_tree(self.linkage_matrix)

    def leaves_list(self) -> List[Any]:
        """Leaf labels in dendrogram order."""
        return [self.labels[i] for i in hierarchy.leaves_list(self.linkage_matrix)]

    def cut(self, k: int) -> pd.Series:
        """Flat clustering into at most k clusters, labelled 1..k."""
        if not 1 <= k <= self.n_leaves:
            raise ValidationError(f"k must be in [1, {self.n_leaves}], got {k}")
        assignment = hierarchy.fcluster(self.linkage_matrix, t=k, criterion="maxclust")
        return pd.Series(
            assignment.astype(int),
            index=pd.Index(self.labels, name="replicate"),
            name="cluster",
        )

    def cophenetic(self) -> pd.DataFrame:
        """Cophenetic distance between every pair of leaves."""
        values = squareform(hierarchy.cophenet(self.linkage_matrix))
        return pd.DataFrame(values, index=list(self.labels), columns=list(self.labels))

    def merges(self) -> pd.DataFrame:
        """Linkage matrix as a DataFrame, one merge per row."""
        return pd.DataFrame(
            {
                "left": self.linkage_matrix[:, 0].astype(int),
                "right": self.linkage_matrix[:, 1].astype(int),
                "height": self.linkage_matrix[:, 2],
                "size": self.linkage_matrix[:, 3].astype(int),
            }
        )


def _lance_williams(
    method: str, d_ik: float, d_jk: float, d_ij: float, n_i: int, n_j: int, n_k: int
) -> float:
    if method == "single":
        return min(d_ik, d_jk)
    if method == "complete":
        return max(d_ik, d_jk)
    if method == "average":
        return (n_i * d_ik + n_j * d_jk) / (n_i + n_j)
    if method == "weighted":
        return (d_ik + d_jk) / 2.0
    if method == "ward":
        value = (
            (n_i + n_k) * d_ik**2 + (n_j + n_k) * d_jk**2 - n_k * d_ij**2
        ) / (n_i + n_j + n_k)
        return float(np.sqrt(max(value, 0.0)))
    raise ValidationError(f"linkage must be one of {LINKAGE_METHODS}, got {method!r}")


def agglomerate(values: np.ndarray, method: str, tie_tolerance: float = 1e-12) -> np.ndarray:
    """
    Build a linkage matrix from a validated square distance matrix.

    Cluster ids follow scipy: leaves are 0..n-1, the cluster formed at merge
    step s is n+s.
    """
    n = values.shape[0]
    # cluster id -> (size, lowest member index)
    clusters: Dict[int, Tuple[int, int]] = {i: (1, i) for i in range(n)}
    dist: Dict[Tuple[int, int], float] = {
        (i, j): float(values[i, j]) for i in range(n) for j in range(i + 1, n)
    }
    linkage = np.zeros((n - 1, 4))

    for step in range(n - 1):
        best_height = min(dist.values())
        candidates = [pair for pair, d in dist.items() if d <= best_height + tie_tolerance]
        a, b = min(
            candidates,
            key=lambda p: (
                clusters[p[0]][1] + clusters[p[1]][1],
                min(clusters[p[0]][1], clusters[p[1]][1]),
            ),
        )
        height = dist[(a, b)]
        n_a, low_a = clusters.pop(a)
        n_b, low_b = clusters.pop(b)
        new_id = n + step
        linkage[step] = [min(a, b), max(a, b), height, n_a + n_b]

        del dist[(a, b)]
        for k, (n_k, _) in clusters.items():
            d_ak = dist.pop((min(a, k), max(a, k)))
            d_bk = dist.pop((min(b, k), max(b, k)))
            dist[(k, new_id)] = _lance_williams(method, d_ak, d_bk, height, n_a, n_b, n_k)
        clusters[new_id] = (n_a + n_b, min(low_a, low_b))

    return linkage


def cluster(
    distance_matrix: Union[pd.DataFrame, np.ndarray],
    linkage: Optional[str] = None,
    config: Union[Dict[str, Any], AppConfig, None] = None,
) -> Dendrogram:
    """
    Agglomerative hierarchical clustering of solutions.

    Args:
        distance_matrix: Square symmetric DataFrame (e.g. from distance()) or array.
        linkage: single | complete | average | weighted | ward (default from config).
        config: CONFIG dict or AppConfig.

    Returns:
        Dendrogram with a scipy-compatible linkage matrix.

    Raises:
        ValidationError: Non-square/asymmetric matrix or unknown linkage.
        DegenerateInputError: Fewer than two solutions.
    """
    analytics = normalize_config(config).analytics
    method = linkage or analytics.linkage
    if method not in LINKAGE_METHODS:
        raise ValidationError(f"linkage must be one of {LINKAGE_METHODS}, got {method!r}")
    values, labels = validate_distance_matrix(distance_matrix)
    if values.shape[0] < 2:
        raise DegenerateInputError(
            f"Clustering needs at least 2 solutions, got {values.shape[0]}"
        )
    matrix = agglomerate(values, method, analytics.tie_tolerance)
    logger.info(
        f"🌳 Clustered {values.shape[0]} solutions ({method} linkage), "
        f"max height {matrix[-1, 2]:.4f}"
    )
    return Dendrogram(linkage_matrix=matrix, labels=tuple(labels), method=method)
