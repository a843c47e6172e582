"""
Impurity functions and sufficient-statistics helpers.

A statistics vector summarises every row routed to a node or to one branch
of a candidate split:

- regression: ``[sum w, sum w*y, sum w*y^2, n]``
- classification: ``[w_label_0, ..., w_label_{K-1}, n]``

where ``n`` is the unweighted row count. All functions accept a single
vector or any array whose last axis is a statistics vector, so the expansion
engine can score every candidate split of a leaf in one call.
"""

from __future__ import annotations

from typing import Callable, Optional, Union

import numpy as np


REGRESS_N_STATS = 4

GINI = "gini"
ENTROPY = "entropy"
MISCLASS = "misclassification"

PURITY_EPSILON = 1e-5

# Rounding noise floors. Regression values are relative to the parent's
# E[y^2], since E[y^2] - E[y]^2 loses that much precision to cancellation.
REGRESS_ROUNDING_TOL = 1e-9
CLASSIF_ROUNDING_TOL = 1e-12

FloatOrArray = Union[float, np.ndarray]


def _as_result(values: np.ndarray) -> FloatOrArray:
    """Return a Python float for 0-d results, the array otherwise."""
    values = np.asarray(values)
    if values.ndim == 0:
        return float(values)
    return values


# =============================================================================
# Classification impurity metrics (over label proportions)
# =============================================================================

def gini_impurity(proportions: np.ndarray) -> np.ndarray:
    """Gini index ``1 - sum(p^2)``."""
    return 1.0 - np.sum(proportions * proportions, axis=-1)


def entropy_impurity(proportions: np.ndarray) -> np.ndarray:
    """Entropy ``sum(-p * log2(p))`` with ``0 * log2(0) = 0``."""
    positive = proportions > 0
    safe = np.where(positive, proportions, 1.0)
    return np.sum(np.where(positive, -proportions * np.log2(safe), 0.0), axis=-1)


def misclassification_impurity(proportions: np.ndarray) -> np.ndarray:
    """Misclassification error ``1 - max(p)``."""
    return 1.0 - np.max(proportions, axis=-1)


def get_impurity_function(
    metric: str,
) -> Callable[[np.ndarray], np.ndarray]:
    """
    Factory function to look up a classification impurity by name.

    Parameters
    ----------
    metric : str
        Supported: 'gini', 'entropy' (alias 'cross_entropy'),
        'misclassification' (alias 'misclass').

    Returns
    -------
    impurity_fn : callable
        Function mapping label proportions to impurity.

    Raises
    ------
    ValueError
        If the metric name is not recognized.
    """
    return _IMPURITY_FUNCTIONS[normalize_impurity_name(metric)]


def normalize_impurity_name(metric: str) -> str:
    """Map an impurity name or alias to its canonical spelling."""
    key = str(metric).lower().replace('-', '_')
    aliases = {
        'gini': GINI,
        'entropy': ENTROPY,
        'cross_entropy': ENTROPY,
        'misclassification': MISCLASS,
        'misclass': MISCLASS,
    }
    if key not in aliases:
        raise ValueError(
            f"Unknown impurity metric '{metric}'. "
            f"Supported: {sorted(set(aliases.values()))}"
        )
    return aliases[key]


_IMPURITY_FUNCTIONS = {
    GINI: gini_impurity,
    ENTROPY: entropy_impurity,
    MISCLASS: misclassification_impurity,
}


# =============================================================================
# Statistics vector accessors
# =============================================================================

def stat_weighted_count(stats: np.ndarray, is_regression: bool) -> FloatOrArray:
    """Sum of weights accounted in a statistics vector."""
    stats = np.asarray(stats, dtype=float)
    if is_regression:
        return _as_result(stats[..., 0])
    return _as_result(np.sum(stats[..., :-1], axis=-1))


def stat_count(stats: np.ndarray) -> FloatOrArray:
    """Number of rows accounted in a statistics vector (last element)."""
    stats = np.asarray(stats, dtype=float)
    return _as_result(stats[..., -1])


def stat_predict(stats: np.ndarray, is_regression: bool) -> np.ndarray:
    """
    Prediction encoded by a statistics vector.

    Returns
    -------
    prediction : np.ndarray
        Regression: a length-1 array holding the weighted mean response.
        Classification: weighted label proportions.
    """
    stats = np.asarray(stats, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        if is_regression:
            return stats[..., 1:2] / stats[..., 0:1]
        labels = stats[..., :-1]
        return labels / np.sum(labels, axis=-1, keepdims=True)


# =============================================================================
# Impurity and gain
# =============================================================================

def impurity(
    stats: np.ndarray,
    is_regression: bool,
    metric: Optional[str] = None,
) -> FloatOrArray:
    """
    Impurity of a statistics vector.

    Regression uses the weighted variance ``E[y^2] - E[y]^2``, with
    cancellation noise (variance within ``REGRESS_ROUNDING_TOL * E[y^2]``
    of zero, or negative) flushed to 0.
    Classification applies ``metric`` to the label proportions.

    Raises
    ------
    ValueError
        If no metric is given for a classification statistics vector.
    """
    stats = np.asarray(stats, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        if is_regression:
            weight = stats[..., 0]
            mean_sq = stats[..., 2] / weight
            variance = mean_sq - (stats[..., 1] / weight) ** 2
            return _as_result(
                np.where(variance <= REGRESS_ROUNDING_TOL * mean_sq, 0.0, variance)
            )
        if metric is None:
            raise ValueError("No impurity function set for a classification tree")
        impurity_fn = get_impurity_function(metric)
        return _as_result(impurity_fn(stat_predict(stats, is_regression=False)))


def impurity_gain(
    combined_stats: np.ndarray,
    stats_per_split: int,
    is_regression: bool,
    metric: Optional[str] = None,
) -> FloatOrArray:
    """
    Impurity decrease of a candidate split.

    Parameters
    ----------
    combined_stats : np.ndarray of shape (..., 2 * stats_per_split)
        True-branch statistics followed by false-branch statistics.
    stats_per_split : int
        Length of one statistics vector.
    is_regression : bool
        Whether the statistics are regression statistics.
    metric : str or None
        Classification impurity metric.

    Returns
    -------
    gain : float or np.ndarray
        ``impurity(parent) - w_true * impurity(true) - w_false * impurity(false)``,
        never negative. Exactly 0 where either branch has zero weighted
        count, and where the decrease is within rounding noise of zero.
    """
    combined_stats = np.asarray(combined_stats, dtype=float)
    sps = stats_per_split
    true_stats = combined_stats[..., :sps]
    false_stats = combined_stats[..., sps:2 * sps]

    true_count = np.asarray(stat_weighted_count(true_stats, is_regression))
    false_count = np.asarray(stat_weighted_count(false_stats, is_regression))
    total_count = true_count + false_count
    empty_side = (true_count == 0) | (false_count == 0)

    parent_stats = true_stats + false_stats
    with np.errstate(divide='ignore', invalid='ignore'):
        true_weight = true_count / total_count
        false_weight = false_count / total_count
        gain = (
            np.asarray(impurity(parent_stats, is_regression, metric))
            - true_weight * np.asarray(impurity(true_stats, is_regression, metric))
            - false_weight * np.asarray(impurity(false_stats, is_regression, metric))
        )
        if is_regression:
            noise_floor = REGRESS_ROUNDING_TOL * parent_stats[..., 2] / parent_stats[..., 0]
        else:
            noise_floor = CLASSIF_ROUNDING_TOL
    # all rows on one side, or a decrease lost in rounding: no gain
    return _as_result(np.where(empty_side | (gain <= noise_floor), 0.0, gain))


def is_child_pure(stats: np.ndarray, is_regression: bool) -> bool:
    """
    Whether a child's responses are too similar to be worth splitting.

    Regression: variance at most ``epsilon * mean^2``. Classification: the
    weight outside the dominant label is below ``100 * epsilon`` of the total.
    Empty statistics are never pure.
    """
    stats = np.asarray(stats, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        if is_regression:
            mean = stats[1] / stats[0]
            variance = stats[2] / stats[0] - mean ** 2
            return bool(variance <= PURITY_EPSILON * mean * mean)
        labels = stats[:-1]
        total_count = np.sum(labels)
        non_max_vals = total_count - np.max(labels)
        return bool(non_max_vals / total_count < 100 * PURITY_EPSILON)


def stats_per_split_for(is_regression: bool, n_y_labels: int) -> int:
    """Length of a statistics vector for the given task."""
    return REGRESS_N_STATS if is_regression else n_y_labels + 1


__all__ = [
    'REGRESS_N_STATS',
    'GINI',
    'ENTROPY',
    'MISCLASS',
    'PURITY_EPSILON',
    'REGRESS_ROUNDING_TOL',
    'CLASSIF_ROUNDING_TOL',
    'gini_impurity',
    'entropy_impurity',
    'misclassification_impurity',
    'get_impurity_function',
    'normalize_impurity_name',
    'stat_weighted_count',
    'stat_count',
    'stat_predict',
    'impurity',
    'impurity_gain',
    'is_child_pure',
    'stats_per_split_for',
]
