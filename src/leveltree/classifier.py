"""
Level-wise decision tree classifier.

Wraps :class:`~leveltree.trainer.TreeTrainer` with numpy array inputs:
labels are encoded to indices, continuous features are pre-binned and
categorical features are level-encoded before training.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import numpy as np

from .base import BaseLevelwiseEstimator
from .impurity import stat_predict
from .trainer import TreeTrainer
from .utils import check_is_fitted, log_message


class LevelwiseTreeClassifier(BaseLevelwiseEstimator):
    """
    Decision tree classifier grown one level per pass over the data.

    Parameters
    ----------
    max_depth : int, default=7
        Maximum tree depth, root at depth 0.
    min_split : int, default=20
        Minimum rows in a node for a split to be attempted.
    min_bucket : int or None, default=None
        Minimum rows per child; None means ``max(min_split // 3, 1)``.
    n_bins : int, default=20
        Candidate thresholds per continuous feature.
    max_surrogates : int, default=0
        Surrogate splits per node for rows with a missing split value.
    impurity : str, default='gini'
        'gini', 'entropy' or 'misclassification'.
    n_random_features : int or None, default=None
        Features sampled per node (random-forest style).
    weights_as_rows : bool, default=False
        Count integer weights as duplicated rows.
    settle_rule : str, default='either'
        When a new child is considered unsplittable.
    finalize_settled : bool, default=False
        Finish settled children without another pass.
    n_partitions : int, default=1
        Number of partitions the training rows are split into.
    verbose : int, default=0
        Verbosity level (0=silent, 1=progress).
    random_state : int or None, default=None
        Random seed for the random-feature mode.

    Attributes
    ----------
    tree_ : DecisionTree
        Fitted tree.
    classes_ : np.ndarray
        Unique class labels.
    n_classes_ : int
        Number of classes.
    n_levels_ : int
        Number of levels the trainer ran.
    history_ : list of dict
        Per-level training record.

    Examples
    --------
    >>> from leveltree import LevelwiseTreeClassifier
    >>> import numpy as np
    >>> X_con = np.random.randn(200, 3)
    >>> y = (X_con[:, 0] > 0).astype(int)
    >>> model = LevelwiseTreeClassifier(max_depth=3, min_split=10)
    >>> model.fit(None, X_con, y)
    >>> predictions = model.predict(None, X_con)
    """

    _is_regression = False

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.classes_: Optional[np.ndarray] = None
        self.n_classes_: int = 0

    def _encode_labels(self, y: np.ndarray) -> np.ndarray:
        """Encode labels to 0, 1, ..., n_classes-1."""
        self.classes_, y_encoded = np.unique(y, return_inverse=True)
        self.n_classes_ = len(self.classes_)
        return y_encoded.reshape(-1)

    def fit(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
        y: np.ndarray,
        *,
        sample_weight: Optional[np.ndarray] = None,
    ) -> "LevelwiseTreeClassifier":
        """
        Fit the classifier.

        Parameters
        ----------
        X_cat : array-like of shape (n_samples, n_cat_features) or None
            Raw categorical features.
        X_con : array-like of shape (n_samples, n_con_features) or None
            Continuous features; NaN is missing.
        y : array-like of shape (n_samples,)
            Class labels.
        sample_weight : array-like of shape (n_samples,) or None
            Row weights.

        Returns
        -------
        self : LevelwiseTreeClassifier
            Fitted classifier.
        """
        self._validate_params()
        y = np.asarray(y)
        if y.ndim != 1:
            raise ValueError(f"y must be 1D, got shape {y.shape}")
        y_encoded = self._encode_labels(y)

        partitions = self._prepare_fit(X_cat, X_con, y_encoded, sample_weight)
        log_message(
            f"Fitting classifier: {len(y)} samples, {self.n_classes_} classes",
            verbose=self.verbose,
        )

        trainer = TreeTrainer(self.params)
        self.tree_ = trainer.fit_partitions(
            partitions, self.con_splits_, self.cat_encoder_.cat_levels_,
            n_y_labels=self.n_classes_,
        )
        self.n_levels_ = trainer.n_levels_
        self.history_ = trainer.history_
        self.is_fitted_ = True
        return self

    def predict_proba(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
    ) -> np.ndarray:
        """
        Class proportions of the leaf each row lands on.

        Returns
        -------
        proba : np.ndarray of shape (n_samples, n_classes)
        """
        leaves = self._leaf_indices(X_cat, X_con)
        return stat_predict(self.tree_.predictions[leaves], is_regression=False)

    def predict(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
    ) -> np.ndarray:
        """
        Predict class labels.

        Returns
        -------
        labels : np.ndarray of shape (n_samples,)
        """
        proba = self.predict_proba(X_cat, X_con)
        return self.classes_[np.argmax(proba, axis=1)]

    def score(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
        y: np.ndarray,
    ) -> float:
        """Mean accuracy on the given data."""
        check_is_fitted(self)
        return float(np.mean(self.predict(X_cat, X_con) == np.asarray(y)))

    def _get_extra_save_data(self) -> Dict[str, Any]:
        return {"classes_": self.classes_.tolist()}

    def _load_extra_save_data(self, model_data: Dict[str, Any]) -> None:
        self.classes_ = np.asarray(model_data["classes_"])
        self.n_classes_ = len(self.classes_)


__all__ = [
    'LevelwiseTreeClassifier',
]
