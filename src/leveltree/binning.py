"""
Feature preparation for the level-wise trainer.

The accumulator works on a fixed ``(n_con_features, n_bins)`` matrix of
candidate thresholds and on ordinal categorical level codes. This module
computes both from in-memory training data.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import numpy as np


def _is_missing_raw(value: Any) -> bool:
    """Missing raw categorical value: None or a float NaN."""
    return value is None or (isinstance(value, float) and value != value)


class QuantileBinner:
    """
    Computes pre-binned split thresholds for continuous features.

    Columns with at most ``n_bins`` distinct values get the midpoints between
    consecutive values, padded with the column maximum. Other columns get
    ``n_bins`` evenly spaced interior quantiles. NaN values are ignored.

    Parameters
    ----------
    n_bins : int, default=20
        Number of thresholds per feature.

    Attributes
    ----------
    con_splits_ : np.ndarray of shape (n_con_features, n_bins)
        Candidate thresholds, non-decreasing along each row.
    n_features_ : int
        Number of continuous features.
    """

    def __init__(self, n_bins: int = 20):
        if n_bins < 1:
            raise ValueError(f"n_bins must be >= 1, got {n_bins}")

        self.n_bins = n_bins

        # State
        self.con_splits_: Optional[np.ndarray] = None
        self.n_features_: Optional[int] = None

    def fit(self, X: np.ndarray) -> "QuantileBinner":
        """
        Compute thresholds from the training data.

        Parameters
        ----------
        X : np.ndarray of shape (n_samples, n_con_features)
            Continuous training features.

        Returns
        -------
        self : QuantileBinner
            Fitted binner.
        """
        X = np.asarray(X, dtype=float)
        if X.ndim != 2:
            raise ValueError(f"Expected 2D array, got {X.ndim}D array.")
        n_features = X.shape[1]
        self.n_features_ = n_features
        self.con_splits_ = np.zeros((n_features, self.n_bins), dtype=float)

        for feature_idx in range(n_features):
            feature_values = X[:, feature_idx]
            valid_values = feature_values[~np.isnan(feature_values)]

            if len(valid_values) == 0:
                # All NaN - thresholds are never compared against
                continue

            unique_values = np.unique(valid_values)
            if len(unique_values) <= self.n_bins:
                midpoints = (unique_values[:-1] + unique_values[1:]) / 2
                splits = np.full(self.n_bins, unique_values[-1], dtype=float)
                splits[:len(midpoints)] = midpoints
            else:
                percentiles = np.linspace(0, 100, self.n_bins + 2)[1:-1]
                splits = np.percentile(valid_values, percentiles)

            self.con_splits_[feature_idx] = splits

        return self


class CategoricalEncoder:
    """
    Maps raw categorical values to ordinal level codes.

    Levels of each feature are ordered by the mean encoded response of the
    training rows that carry them (stable on first appearance), so that the
    ``code <= level`` splits of the accumulator separate low-response levels
    from high-response ones. For classification the response is the label
    index, so binary tasks order by the positive-class proportion.

    Missing (None / NaN) and unseen values encode to ``-1``.

    Attributes
    ----------
    levels_ : list of list
        Raw values of each feature in code order.
    cat_levels_ : np.ndarray of int
        Number of levels of each feature.
    """

    def __init__(self):
        self.levels_: Optional[List[List[Any]]] = None
        self.cat_levels_: Optional[np.ndarray] = None
        self._maps: List[Dict[Any, int]] = []

    def fit(self, X: np.ndarray, y: np.ndarray) -> "CategoricalEncoder":
        """
        Learn the level order of every column.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_cat_features)
            Raw categorical values.
        y : array-like of shape (n_samples,)
            Encoded response used to order the levels.
        """
        X = np.asarray(X, dtype=object)
        y = np.asarray(y, dtype=float)
        if X.ndim != 2:
            raise ValueError(f"Expected 2D array, got {X.ndim}D array.")

        self.levels_ = []
        for feature_idx in range(X.shape[1]):
            sums: Dict[Any, float] = {}
            counts: Dict[Any, int] = {}
            for value, response in zip(X[:, feature_idx], y):
                if _is_missing_raw(value):
                    continue
                sums[value] = sums.get(value, 0.0) + response
                counts[value] = counts.get(value, 0) + 1
            # dicts keep first-appearance order and sorted() is stable
            ordered = sorted(sums, key=lambda v: sums[v] / counts[v])
            self.levels_.append(ordered)

        self._build_maps()
        return self

    def _build_maps(self) -> None:
        self._maps = [
            {value: code for code, value in enumerate(levels)}
            for levels in self.levels_
        ]
        self.cat_levels_ = np.array([len(levels) for levels in self.levels_], dtype=np.int64)

    def transform(self, X: np.ndarray) -> np.ndarray:
        """
        Encode raw values.

        Returns
        -------
        codes : np.ndarray of shape (n_samples, n_cat_features)
            Level codes, ``-1`` for missing or unseen values.
        """
        if self.levels_ is None:
            raise RuntimeError("CategoricalEncoder has not been fitted yet.")
        X = np.asarray(X, dtype=object)
        if X.ndim != 2 or X.shape[1] != len(self.levels_):
            raise ValueError(
                f"Expected {len(self.levels_)} categorical columns, got shape {X.shape}."
            )

        codes = np.full(X.shape, -1, dtype=np.int64)
        for feature_idx, mapping in enumerate(self._maps):
            for i, value in enumerate(X[:, feature_idx]):
                if not _is_missing_raw(value):
                    codes[i, feature_idx] = mapping.get(value, -1)
        return codes

    def fit_transform(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        """Fit and transform in one step."""
        return self.fit(X, y).transform(X)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the level order to a JSON-compatible dictionary."""
        return {
            'levels': [
                [value.item() if isinstance(value, np.generic) else value for value in levels]
                for levels in self.levels_
            ]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategoricalEncoder":
        """Rebuild an encoder from :meth:`to_dict` output."""
        encoder = cls()
        encoder.levels_ = [list(levels) for levels in data['levels']]
        encoder._build_maps()
        return encoder


__all__ = [
    'QuantileBinner',
    'CategoricalEncoder',
]
