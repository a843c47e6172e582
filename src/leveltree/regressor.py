"""
Level-wise decision tree regressor.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from .base import BaseLevelwiseEstimator
from .trainer import TreeTrainer
from .utils import check_is_fitted, log_message


class LevelwiseTreeRegressor(BaseLevelwiseEstimator):
    """
    Decision tree regressor grown one level per pass over the data.

    Splits minimise the weighted variance of the response. Takes the same
    parameters as :class:`~leveltree.classifier.LevelwiseTreeClassifier`;
    ``impurity`` is ignored.

    Attributes
    ----------
    tree_ : DecisionTree
        Fitted tree.
    n_levels_ : int
        Number of levels the trainer ran.
    history_ : list of dict
        Per-level training record.
    """

    _is_regression = True

    def fit(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
        y: np.ndarray,
        *,
        sample_weight: Optional[np.ndarray] = None,
    ) -> "LevelwiseTreeRegressor":
        """
        Fit the regressor.

        Parameters
        ----------
        X_cat : array-like of shape (n_samples, n_cat_features) or None
            Raw categorical features.
        X_con : array-like of shape (n_samples, n_con_features) or None
            Continuous features; NaN is missing.
        y : array-like of shape (n_samples,)
            Finite target values.
        sample_weight : array-like of shape (n_samples,) or None
            Row weights.

        Returns
        -------
        self : LevelwiseTreeRegressor
            Fitted regressor.
        """
        self._validate_params()
        y = np.asarray(y, dtype=float)
        if y.ndim != 1:
            raise ValueError(f"y must be 1D, got shape {y.shape}")
        if not np.all(np.isfinite(y)):
            raise ValueError("y contains NaN or infinite values.")

        partitions = self._prepare_fit(X_cat, X_con, y, sample_weight)
        log_message(f"Fitting regressor: {len(y)} samples", verbose=self.verbose)

        trainer = TreeTrainer(self.params)
        self.tree_ = trainer.fit_partitions(
            partitions, self.con_splits_, self.cat_encoder_.cat_levels_,
        )
        self.n_levels_ = trainer.n_levels_
        self.history_ = trainer.history_
        self.is_fitted_ = True
        return self

    def predict(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
    ) -> np.ndarray:
        """
        Predict the weighted mean response of each row's leaf.

        Returns
        -------
        predictions : np.ndarray of shape (n_samples,)
        """
        leaves = self._leaf_indices(X_cat, X_con)
        stats = self.tree_.predictions[leaves]
        return stats[:, 1] / stats[:, 0]

    def score(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
        y: np.ndarray,
    ) -> float:
        """Coefficient of determination R^2 on the given data."""
        check_is_fitted(self)
        y = np.asarray(y, dtype=float)
        residual = np.sum((y - self.predict(X_cat, X_con)) ** 2)
        total = np.sum((y - np.mean(y)) ** 2)
        if total == 0:
            return 0.0
        return float(1.0 - residual / total)


__all__ = [
    'LevelwiseTreeRegressor',
]
