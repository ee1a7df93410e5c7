"""
Ordination of portfolio solutions into low-dimensional coordinates.

PCA:  eigendecomposition of the covariance of the centred solutions x
      variables matrix. When there are fewer solutions than variables the
      equivalent Gram-matrix eigenproblem is solved instead. Each axis is
      oriented so that its largest-magnitude loading is positive.
MDS:  metric SMACOF stress minimisation (scikit-learn) over a distance
      matrix, initialised from classical (Torgerson) scaling. The start is
      deterministic, so repeated calls on identical input return identical
      coordinates. Axes are centred and oriented so that the largest-magnitude
      coordinate on each axis is positive.
"""

import logging
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.manifold import smacof

from Marxan_Portfolio.analytics.distance import distance, subject_matrix, validate_distance_matrix
from Marxan_Portfolio.config_types import AppConfig, normalize_config
from Marxan_Portfolio.exceptions import DegenerateInputError, ValidationError
from Marxan_Portfolio.models.portfolio import Portfolio

logger = logging.getLogger("MXP.Analytics")

# Eigenvalues below this fraction of the largest are treated as zero
RANK_TOLERANCE = 1e-10

ORDINATION_METHODS = ("pca", "mds")


def _orient(axes: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Flip each column so the largest-magnitude entry of reference is positive."""
    signs = np.ones(reference.shape[1])
    for c in range(reference.shape[1]):
        column = reference[:, c]
        if column.size and np.abs(column).max() > 0:
            signs[c] = 1.0 if column[np.argmax(np.abs(column))] >= 0 else -1.0
    return axes * signs


def pca_coordinates(values: np.ndarray, n_components: int) -> Tuple[np.ndarray, np.ndarray]:
    """Return (scores, explained variance ratio) for a solutions x variables matrix."""
    n, p = values.shape
    if n < 2:
        raise DegenerateInputError(f"PCA needs at least 2 solutions, got {n}")
    centred = values - values.mean(axis=0)
    if np.allclose(centred, 0.0):
        raise DegenerateInputError("PCA undefined: all solutions are identical (zero variance)")

    k = min(n_components, p, n)
    if p <= n:
        covariance = centred.T @ centred / (n - 1)
        eigvals, eigvecs = np.linalg.eigh(covariance)
        order = np.argsort(eigvals)[::-1]
        eigvals = np.clip(eigvals[order], 0.0, None)
        loadings = eigvecs[:, order][:, :k]
    else:
        gram = centred @ centred.T
        eigvals, eigvecs = np.linalg.eigh(gram)
        order = np.argsort(eigvals)[::-1]
        eigvals = np.clip(eigvals[order], 0.0, None)
        u = eigvecs[:, order][:, :k]
        lam = eigvals[:k]
        positive = lam > RANK_TOLERANCE * eigvals[0]
        loadings = np.zeros((p, k))
        loadings[:, positive] = centred.T @ u[:, positive] / np.sqrt(lam[positive])
        eigvals = eigvals / (n - 1)

    loadings = _orient(loadings, loadings)
    scores = centred @ loadings
    total = eigvals.sum()
    ratio = eigvals[:k] / total if total > 0 else np.zeros(k)
    return scores, ratio


def classical_scaling(values: np.ndarray, n_components: int) -> np.ndarray:
    """Torgerson scaling of a distance matrix (columns padded with zeros)."""
    n = values.shape[0]
    centring = np.eye(n) - np.ones((n, n)) / n
    b = -0.5 * centring @ (values**2) @ centring
    eigvals, eigvecs = np.linalg.eigh((b + b.T) / 2.0)
    order = np.argsort(eigvals)[::-1]
    eigvals, eigvecs = eigvals[order], eigvecs[:, order]
    if eigvals[0] <= 0:
        raise DegenerateInputError("MDS undefined: distance matrix has no positive spectrum")
    coords = np.zeros((n, n_components))
    for c in range(min(n_components, n)):
        if eigvals[c] > RANK_TOLERANCE * eigvals[0]:
            coords[:, c] = eigvecs[:, c] * np.sqrt(eigvals[c])
    return _orient(coords, coords)


def mds_coordinates(
    values: np.ndarray,
    n_components: int,
    seed: int,
    max_iter: int,
    eps: float,
) -> Tuple[np.ndarray, float]:
    """Return (coordinates, stress) for a validated distance matrix."""
    n = values.shape[0]
    if n < 2:
        raise DegenerateInputError(f"MDS needs at least 2 solutions, got {n}")
    if np.allclose(values, 0.0):
        raise DegenerateInputError("MDS undefined: zero-rank distance matrix")
    init = classical_scaling(values, n_components)
    coords, stress = smacof(
        values,
        n_components=n_components,
        init=init,
        n_init=1,
        max_iter=max_iter,
        eps=eps,
        random_state=seed,
    )
    coords = np.asarray(coords, dtype=float)
    coords = coords - coords.mean(axis=0)
    return _orient(coords, coords), float(stress)


def ordinate(
    matrix: Union[Portfolio, pd.DataFrame, np.ndarray],
    method: str = "pca",
    n_components: Optional[int] = None,
    seed: Optional[int] = None,
    subject: Optional[str] = None,
    config: Union[Dict[str, Any], AppConfig, None] = None,
) -> pd.DataFrame:
    """
    Low-dimensional coordinates for each solution.

    Args:
        matrix: For "pca", a Portfolio or solutions x variables matrix. For
            "mds", a Portfolio (its distance() is used) or a square distance
            matrix.
        method: "pca" or "mds".
        n_components: Output dimensionality (default from config).
        seed: SMACOF seed for "mds" (default from config).
        subject: "selection" or "amount" when a Portfolio is given.
        config: CONFIG dict or AppConfig.

    Returns:
        DataFrame indexed by replicate with columns PC1.. or MDS1..;
        attrs["explained_variance_ratio"] (PCA) or attrs["stress"] (MDS).

    Raises:
        DegenerateInputError: Fewer than 2 solutions, zero variance (PCA) or a
            zero-rank distance matrix (MDS).
        ValidationError: Unknown method or malformed distance matrix.
    """
    analytics = normalize_config(config).analytics
    n_components = n_components or analytics.n_components
    seed = analytics.mds_seed if seed is None else seed
    subject = subject or analytics.distance_subject
    if method not in ORDINATION_METHODS:
        raise ValidationError(f"method must be one of {ORDINATION_METHODS}, got {method!r}")
    if n_components < 1:
        raise ValidationError(f"n_components must be >= 1, got {n_components}")

    if method == "pca":
        if isinstance(matrix, Portfolio):
            frame = subject_matrix(matrix, subject)
        elif isinstance(matrix, pd.DataFrame):
            frame = matrix.astype(float)
        else:
            frame = pd.DataFrame(np.asarray(matrix, dtype=float))
        scores, ratio = pca_coordinates(frame.to_numpy(dtype=float), n_components)
        result = pd.DataFrame(
            scores,
            index=frame.index.copy(),
            columns=[f"PC{i + 1}" for i in range(scores.shape[1])],
        )
        result.attrs["explained_variance_ratio"] = [float(r) for r in ratio]
        logger.info(
            f"🧭 PCA of {len(result)} solutions: explained variance "
            f"{[round(float(r), 3) for r in ratio]}"
        )
        return result

    if isinstance(matrix, Portfolio):
        matrix = distance(matrix, subject=subject, config=config)
    values, labels = validate_distance_matrix(matrix)
    coords, stress = mds_coordinates(
        values, n_components, seed, analytics.mds_max_iter, analytics.mds_eps
    )
    result = pd.DataFrame(
        coords,
        index=pd.Index(labels, name=getattr(getattr(matrix, "index", None), "name", None)),
        columns=[f"MDS{i + 1}" for i in range(coords.shape[1])],
    )
    result.attrs["stress"] = stress
    logger.info(f"🧭 MDS of {len(result)} solutions: stress {stress:.4g}")
    return result
