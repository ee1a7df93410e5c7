"""
Pairwise solution dissimilarity.

Distances are computed with scipy.spatial.distance over either the selection
vectors (subject="selection") or the per-feature amounts held
(subject="amount"). Pairs of identical vectors are defined to be 0, which
removes the 0/0 NaN that Bray-Curtis produces for two empty selections.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform

from Marxan_Portfolio.config_types import DISTANCE_SUBJECTS, AppConfig, normalize_config
from Marxan_Portfolio.exceptions import DegenerateInputError, ValidationError
from Marxan_Portfolio.models.portfolio import Portfolio

logger = logging.getLogger("MXP.Analytics")

MatrixLike = Union[Portfolio, pd.DataFrame, np.ndarray]


def subject_matrix(portfolio: Portfolio, subject: str) -> pd.DataFrame:
    """Rows = solutions; columns = units (selection) or features (amount)."""
    if subject == "selection":
        return portfolio.selection_matrix().astype(float)
    if subject == "amount":
        return portfolio.amount_held_matrix()
    raise ValidationError(f"subject must be one of {DISTANCE_SUBJECTS}, got {subject!r}")


def _as_labelled_frame(matrix: MatrixLike, subject: str) -> pd.DataFrame:
    if isinstance(matrix, Portfolio):
        return subject_matrix(matrix, subject)
    if isinstance(matrix, pd.DataFrame):
        return matrix.astype(float)
    arr = np.asarray(matrix, dtype=float)
    if arr.ndim != 2:
        raise ValidationError(f"Expected a 2-D matrix, got shape {arr.shape}")
    return pd.DataFrame(arr)


def pairwise_distances(frame: pd.DataFrame, method: str) -> pd.DataFrame:
    """Symmetric row-by-row distance matrix with identical rows at 0."""
    values = frame.to_numpy(dtype=float)
    n = values.shape[0]
    if n == 0:
        raise DegenerateInputError("Cannot compute distances for zero solutions")
    if n == 1:
        result = np.zeros((1, 1))
    else:
        try:
            with np.errstate(invalid="ignore", divide="ignore"):
                condensed = pdist(values, metric=method)
        except ValueError as e:
            raise ValidationError(f"Unsupported distance method {method!r}: {e}") from e
        result = squareform(condensed, checks=False)
        np.fill_diagonal(result, 0.0)

        _, group = np.unique(values, axis=0, return_inverse=True)
        group = np.asarray(group).ravel()
        result[group[:, None] == group[None, :]] = 0.0

        if np.isnan(result).any():
            bad = np.argwhere(np.isnan(result))[0]
            raise DegenerateInputError(
                f"Distance '{method}' undefined between rows {bad[0]} and {bad[1]}"
            )
    return pd.DataFrame(result, index=frame.index.copy(), columns=frame.index.copy())


def distance(
    portfolio: MatrixLike,
    method: Optional[str] = None,
    subject: Optional[str] = None,
    config: Union[Dict[str, Any], AppConfig, None] = None,
) -> pd.DataFrame:
    """
    Pairwise dissimilarity between the solutions of a portfolio.

    Args:
        portfolio: Portfolio, or a solutions x variables DataFrame/array.
        method: scipy.spatial.distance metric (default from config, braycurtis).
        subject: "selection" or "amount" when a Portfolio is given.
        config: CONFIG dict or AppConfig.

    Returns:
        Symmetric DataFrame labelled by replicate index.

    Raises:
        DegenerateInputError: No solutions, or the metric is undefined for a
            pair of distinct vectors.
    """
    analytics = normalize_config(config).analytics
    method = method or analytics.distance_method
    subject = subject or analytics.distance_subject
    frame = _as_labelled_frame(portfolio, subject)
    result = pairwise_distances(frame, method)
    logger.debug(f"   📏 {method} distances over {subject}: {result.shape[0]} solutions")
    return result


def validate_distance_matrix(
    matrix: Union[pd.DataFrame, np.ndarray], tolerance: float = 1e-9
) -> Tuple[np.ndarray, List[Any]]:
    """
    Check a distance matrix and return (values, labels).

    Raises:
        ValidationError: Not square, asymmetric, negative, non-finite or with
            a nonzero diagonal.
    """
    if isinstance(matrix, pd.DataFrame):
        labels = list(matrix.index)
        values = matrix.to_numpy(dtype=float)
    else:
        values = np.asarray(matrix, dtype=float)
        labels = list(range(values.shape[0])) if values.ndim == 2 else []
    if values.ndim != 2 or values.shape[0] != values.shape[1]:
        raise ValidationError(f"Distance matrix must be square, got shape {values.shape}")
    if not np.isfinite(values).all():
        raise ValidationError("Distance matrix contains NaN or infinite values")
    if not np.allclose(values, values.T, atol=tolerance):
        raise ValidationError("Distance matrix is not symmetric")
    if (values < -tolerance).any():
        raise ValidationError("Distance matrix contains negative values")
    if np.abs(np.diag(values)).max(initial=0.0) > tolerance:
        raise ValidationError("Distance matrix has a nonzero diagonal")
    values = (values + values.T) / 2.0
    np.fill_diagonal(values, 0.0)
    return np.maximum(values, 0.0), labels
