"""
Utility functions for input validation, missing values, errors and logging.

Everything here is plain NumPy; the engine modules import their checks,
exception types and log helpers from this one place.
"""

from __future__ import annotations

import math
from typing import Any, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np


# =============================================================================
# Type Aliases
# =============================================================================

ArrayLike = Union[np.ndarray, List[Any], Tuple[Any, ...]]


class Row(NamedTuple):
    """
    One input row as delivered by the data-access layer.

    Attributes
    ----------
    cat_features : sequence of int or None
        Ordinal categorical level codes. ``None`` or a negative code is missing.
    con_features : sequence of float or None
        Continuous values. ``None`` or NaN is missing.
    response : float
        Regression response, or the label index for classification.
    weight : float
        Non-negative row weight.
    """
    cat_features: Sequence[Any]
    con_features: Sequence[Any]
    response: float
    weight: float = 1.0


# =============================================================================
# Custom Exceptions
# =============================================================================

class TreeInvariantError(RuntimeError):
    """
    Raised when a tree operation meets a state that can only come from a bug.

    Examples are routing a row through a node that was never allocated, or
    asking for the majority branch of a leaf.
    """
    pass


class AccumulationTerminatedError(RuntimeError):
    """
    Raised when a terminated accumulator is used to grow a tree.

    A terminated accumulator saw a bad row or an incompatible merge, so its
    statistics cannot be trusted.
    """

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        message = "Accumulation was terminated"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InconsistentStateError(ValueError):
    """Raised when an accumulator and a tree disagree about their shapes."""
    pass


class NotFittedError(ValueError):
    """
    Exception raised when an estimator is used before fitting.

    This exception is raised when calling predict, score, or similar
    methods before calling fit.
    """
    pass


# =============================================================================
# Missing Values
# =============================================================================

def is_missing(value: Any, is_categorical: bool) -> bool:
    """
    Check whether a single feature value is missing.

    Categorical codes are missing when ``None``, NaN or negative; continuous
    values are missing when ``None`` or NaN.
    """
    if value is None:
        return True
    if is_categorical:
        return bool(value != value or value < 0)
    return math.isnan(value)


def cat_values_array(cat_features: Sequence[Any]) -> np.ndarray:
    """Convert categorical codes to an int array with ``-1`` for missing."""
    return np.array(
        [-1 if (v is None or v != v) else int(v) for v in cat_features],
        dtype=np.int64,
    ).reshape(-1)


def con_values_array(con_features: Sequence[Any]) -> np.ndarray:
    """Convert continuous values to a float array with NaN for missing."""
    return np.array(
        [np.nan if v is None else float(v) for v in con_features], dtype=float
    ).reshape(-1)


# =============================================================================
# Input Validation Functions
# =============================================================================

def check_con_splits(
    con_splits: Optional[ArrayLike],
    n_con_features: int,
    n_bins: Optional[int] = None,
) -> np.ndarray:
    """
    Validate the pre-binned continuous split matrix.

    Parameters
    ----------
    con_splits : array-like of shape (n_con_features, n_bins) or None
        Candidate thresholds per continuous feature. ``None`` is accepted
        only when there are no continuous features.
    n_con_features : int
        Expected number of continuous features.
    n_bins : int or None
        Expected number of bins. Not checked when None.

    Returns
    -------
    con_splits : np.ndarray of shape (n_con_features, n_bins)
        Validated matrix.

    Raises
    ------
    ValueError
        If the matrix has the wrong shape or holds non-finite values.
    """
    if con_splits is None:
        if n_con_features != 0:
            raise ValueError(
                f"con_splits is required for {n_con_features} continuous features"
            )
        return np.zeros((0, n_bins or 0), dtype=float)

    splits = np.asarray(con_splits, dtype=float)
    if splits.ndim == 1 and n_con_features == 0 and splits.size == 0:
        splits = splits.reshape(0, n_bins or 0)
    if splits.ndim != 2:
        raise ValueError(f"con_splits must be 2D, got {splits.ndim}D array")
    if splits.shape[0] != n_con_features:
        raise ValueError(
            f"con_splits has {splits.shape[0]} rows, "
            f"expected {n_con_features} continuous features"
        )
    if n_bins is not None and splits.shape[1] != n_bins:
        raise ValueError(
            f"con_splits has {splits.shape[1]} bins, expected {n_bins}"
        )
    if not np.all(np.isfinite(splits)):
        raise ValueError("con_splits contains non-finite thresholds.")
    return splits


def check_cat_levels(cat_levels: Optional[ArrayLike]) -> np.ndarray:
    """
    Validate the per-feature categorical level counts.

    Returns
    -------
    cat_levels : np.ndarray of int
        One non-negative level count per categorical feature.
    """
    if cat_levels is None:
        return np.zeros(0, dtype=np.int64)
    levels = np.asarray(cat_levels, dtype=np.int64).reshape(-1)
    if np.any(levels < 0):
        raise ValueError("cat_levels must contain non-negative level counts.")
    return levels


def check_sample_weight(
    sample_weight: Optional[ArrayLike],
    n_samples: int,
) -> np.ndarray:
    """
    Validate sample weights, defaulting to ones.

    Raises
    ------
    ValueError
        If sample_weight has incorrect shape or contains invalid values.
    """
    if sample_weight is None:
        return np.ones(n_samples, dtype=float)

    sample_weight = np.asarray(sample_weight, dtype=float)
    if sample_weight.ndim != 1:
        raise ValueError(
            f"sample_weight must be 1D, got shape {sample_weight.shape}"
        )
    if len(sample_weight) != n_samples:
        raise ValueError(
            f"sample_weight has {len(sample_weight)} elements, "
            f"expected {n_samples}."
        )
    if not np.all(np.isfinite(sample_weight)) or np.any(sample_weight < 0):
        raise ValueError("sample_weight must contain finite non-negative values.")
    return sample_weight


def check_feature_matrix(
    X: Optional[ArrayLike],
    n_samples: int,
    *,
    dtype: type = float,
    name: str = "X",
) -> np.ndarray:
    """
    Validate one feature block for the estimators.

    ``None`` becomes an empty ``(n_samples, 0)`` block.
    """
    if X is None:
        return np.zeros((n_samples, 0), dtype=dtype)
    X_out = np.asarray(X, dtype=dtype)
    if X_out.ndim == 1:
        X_out = X_out.reshape(-1, 1)
    if X_out.ndim != 2:
        raise ValueError(f"Expected 2D array for {name}, got {X_out.ndim}D array.")
    if X_out.shape[0] != n_samples:
        raise ValueError(
            f"Found input variables with inconsistent numbers of samples: "
            f"{name} has {X_out.shape[0]} samples, expected {n_samples}."
        )
    if dtype is float and np.any(np.isinf(X_out)):
        raise ValueError(f"{name} contains infinite values.")
    return X_out


def check_is_fitted(estimator: Any, attributes: Optional[List[str]] = None) -> None:
    """
    Check if an estimator is fitted by verifying required attributes.

    Raises
    ------
    NotFittedError
        If the estimator is not fitted.
    """
    if attributes is None:
        attributes = ['tree_']

    for attr in attributes:
        if getattr(estimator, attr, None) is None:
            raise NotFittedError(
                f"This {type(estimator).__name__} instance is not fitted yet. "
                "Call 'fit' with appropriate arguments before using this estimator."
            )


# =============================================================================
# Logging Utilities
# =============================================================================

def log_message(message: str, *, verbose: int = 0) -> None:
    """
    Print a log message if verbose level is sufficient.

    Parameters
    ----------
    message : str
        Message to print.
    verbose : int, default=0
        Verbosity level. Message is printed if verbose >= 1.
    """
    if verbose >= 1:
        print(f"[leveltree] {message}")


def log_level_progress(
    level: int,
    max_levels: int,
    n_splits: int,
    n_rows: int,
    *,
    verbose: int = 0,
) -> None:
    """
    Log the outcome of one tree level.

    Parameters
    ----------
    level : int
        Level just expanded (root is level 0).
    max_levels : int
        Deepest level allowed by ``max_depth``.
    n_splits : int
        Number of frontier leaves that were split.
    n_rows : int
        Rows accumulated for this level across all partitions.
    verbose : int, default=0
        Verbosity level.
    """
    if verbose >= 1:
        print(
            f"[leveltree] Level {level}/{max_levels} "
            f"- rows: {n_rows} - splits: {n_splits}"
        )


__all__ = [
    'Row',
    'TreeInvariantError',
    'AccumulationTerminatedError',
    'InconsistentStateError',
    'NotFittedError',
    'is_missing',
    'cat_values_array',
    'con_values_array',
    'check_con_splits',
    'check_cat_levels',
    'check_sample_weight',
    'check_feature_matrix',
    'check_is_fitted',
    'log_message',
    'log_level_progress',
]
