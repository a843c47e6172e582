"""
Parameters and base estimator for level-wise decision trees.

This module provides the parameter dataclass shared by the trainer and the
estimators, and the abstract estimator that turns numpy arrays into row
partitions, binning and encoding them on the way.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import numpy as np

from .binning import CategoricalEncoder, QuantileBinner
from .impurity import normalize_impurity_name
from .tree import SETTLE_BOTH, SETTLE_EITHER, DecisionTree
from .utils import (
    Row,
    check_feature_matrix,
    check_is_fitted,
    check_sample_weight,
)


# =============================================================================
# Tree Parameters Dataclass
# =============================================================================

@dataclass
class TreeParams:
    """
    Dataclass containing all tree-growing hyperparameters.

    Parameters
    ----------
    max_depth : int
        Maximum depth of the tree, root at depth 0.
    min_split : int
        Minimum number of rows in a node for a split to be attempted.
    min_bucket : int or None
        Minimum number of rows in each child. None means
        ``max(min_split // 3, 1)``.
    n_bins : int
        Number of pre-binned thresholds per continuous feature.
    max_surrogates : int
        Surrogate splits kept per node (0 disables the surrogate pass).
    impurity : str
        Classification impurity: 'gini', 'entropy' or 'misclassification'.
    is_regression : bool
        Whether the response is continuous.
    n_random_features : int or None
        Features sampled per leaf; None evaluates every feature.
    weights_as_rows : bool
        Treat an integer row weight as that many duplicate rows in the
        unweighted counts.
    settle_rule : str
        'either' or 'both'; when a new child is considered unsplittable.
    finalize_settled : bool
        Finish settled children right away.
    n_partitions : int
        Number of independent partitions the estimators split the data into.
    verbose : int
        Verbosity level (0=silent, 1=per-level progress).
    random_state : int or None
        Random seed for the random-feature mode.
    """
    max_depth: int = 7
    min_split: int = 20
    min_bucket: Optional[int] = None
    n_bins: int = 20
    max_surrogates: int = 0
    impurity: str = "gini"
    is_regression: bool = False
    n_random_features: Optional[int] = None
    weights_as_rows: bool = False
    settle_rule: str = SETTLE_EITHER
    finalize_settled: bool = False
    n_partitions: int = 1
    verbose: int = 0
    random_state: Optional[int] = None

    @property
    def resolved_min_bucket(self) -> int:
        """``min_bucket``, or ``max(min_split // 3, 1)`` when unset."""
        if self.min_bucket is None:
            return max(self.min_split // 3, 1)
        return max(self.min_bucket, 1)

    def to_dict(self) -> Dict[str, Any]:
        """Convert parameters to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "TreeParams":
        """Create TreeParams from dictionary, ignoring unknown keys."""
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in params.items() if k in valid_keys}
        return cls(**filtered)

    def validate(self) -> None:
        """
        Validate all parameters.

        Raises
        ------
        ValueError
            If any parameter is invalid.
        """
        if self.max_depth < 0:
            raise ValueError(f"max_depth must be non-negative, got {self.max_depth}")
        if self.min_split < 1:
            raise ValueError(f"min_split must be >= 1, got {self.min_split}")
        if self.min_bucket is not None and self.min_bucket < 0:
            raise ValueError(
                f"min_bucket must be non-negative, got {self.min_bucket}"
            )
        if self.n_bins < 1:
            raise ValueError(f"n_bins must be >= 1, got {self.n_bins}")
        if self.max_surrogates < 0:
            raise ValueError(
                f"max_surrogates must be non-negative, got {self.max_surrogates}"
            )
        if not self.is_regression:
            normalize_impurity_name(self.impurity)
        if self.n_random_features is not None and self.n_random_features < 1:
            raise ValueError(
                f"n_random_features must be >= 1 or None, got {self.n_random_features}"
            )
        if self.settle_rule not in (SETTLE_EITHER, SETTLE_BOTH):
            raise ValueError(
                f"settle_rule must be '{SETTLE_EITHER}' or '{SETTLE_BOTH}', "
                f"got {self.settle_rule!r}"
            )
        if self.n_partitions < 1:
            raise ValueError(f"n_partitions must be >= 1, got {self.n_partitions}")
        if self.verbose < 0:
            raise ValueError(f"verbose must be non-negative, got {self.verbose}")


# =============================================================================
# Base Estimator Abstract Class
# =============================================================================

class BaseLevelwiseEstimator(ABC):
    """
    Abstract base class for the level-wise tree estimators.

    Subclasses supply the response encoding and the prediction; this class
    handles parameters, feature preparation, partitioning and persistence.
    """

    _is_regression = False

    def __init__(
        self,
        max_depth: int = 7,
        min_split: int = 20,
        min_bucket: Optional[int] = None,
        n_bins: int = 20,
        max_surrogates: int = 0,
        impurity: str = "gini",
        n_random_features: Optional[int] = None,
        weights_as_rows: bool = False,
        settle_rule: str = SETTLE_EITHER,
        finalize_settled: bool = False,
        n_partitions: int = 1,
        verbose: int = 0,
        random_state: Optional[int] = None,
    ):
        self.params = TreeParams(
            max_depth=max_depth,
            min_split=min_split,
            min_bucket=min_bucket,
            n_bins=n_bins,
            max_surrogates=max_surrogates,
            impurity=impurity,
            is_regression=self._is_regression,
            n_random_features=n_random_features,
            weights_as_rows=weights_as_rows,
            settle_rule=settle_rule,
            finalize_settled=finalize_settled,
            n_partitions=n_partitions,
            verbose=verbose,
            random_state=random_state,
        )

        # Fitted state
        self.tree_: Optional[DecisionTree] = None
        self.con_splits_: Optional[np.ndarray] = None
        self.cat_encoder_: Optional[CategoricalEncoder] = None
        self.n_cat_features_: Optional[int] = None
        self.n_con_features_: Optional[int] = None
        self.n_levels_: int = 0
        self.history_: List[Dict[str, Any]] = []
        self.is_fitted_: bool = False

    # -------------------------------------------------------------------------
    # Property accessors for common hyperparameters
    # -------------------------------------------------------------------------

    @property
    def max_depth(self) -> int:
        return self.params.max_depth

    @property
    def min_split(self) -> int:
        return self.params.min_split

    @property
    def verbose(self) -> int:
        return self.params.verbose

    @property
    def random_state(self) -> Optional[int]:
        return self.params.random_state

    # -------------------------------------------------------------------------
    # Abstract methods to be implemented by subclasses
    # -------------------------------------------------------------------------

    @abstractmethod
    def fit(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
        y: np.ndarray,
        *,
        sample_weight: Optional[np.ndarray] = None,
    ) -> "BaseLevelwiseEstimator":
        """
        Fit the tree to training data.

        Parameters
        ----------
        X_cat : array-like of shape (n_samples, n_cat_features) or None
            Raw categorical features. None or NaN is missing.
        X_con : array-like of shape (n_samples, n_con_features) or None
            Continuous features. NaN is missing.
        y : array-like of shape (n_samples,)
            Training targets.
        sample_weight : array-like of shape (n_samples,) or None
            Non-negative row weights.

        Returns
        -------
        self : BaseLevelwiseEstimator
            Fitted estimator.
        """
        pass

    @abstractmethod
    def predict(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
    ) -> np.ndarray:
        """
        Make predictions on new data.

        Returns
        -------
        predictions : np.ndarray of shape (n_samples,)
            Predicted values.
        """
        pass

    # -------------------------------------------------------------------------
    # Feature preparation
    # -------------------------------------------------------------------------

    def _prepare_fit(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
        y_encoded: np.ndarray,
        sample_weight: Optional[np.ndarray],
    ) -> List[List[Row]]:
        """Fit binning and encoding, then split the rows into partitions."""
        n_samples = len(y_encoded)
        if n_samples == 0:
            raise ValueError("Cannot fit a tree on 0 samples.")
        sample_weight = check_sample_weight(sample_weight, n_samples)
        X_cat = check_feature_matrix(X_cat, n_samples, dtype=object, name="X_cat")
        X_con = check_feature_matrix(X_con, n_samples, dtype=float, name="X_con")

        self.n_cat_features_ = X_cat.shape[1]
        self.n_con_features_ = X_con.shape[1]
        self.cat_encoder_ = CategoricalEncoder().fit(X_cat, y_encoded)
        self.con_splits_ = QuantileBinner(n_bins=self.params.n_bins).fit(X_con).con_splits_

        codes = self.cat_encoder_.transform(X_cat)
        rows = [
            Row(codes[i].tolist(), X_con[i].tolist(), float(y_encoded[i]), float(sample_weight[i]))
            for i in range(n_samples)
        ]
        return [
            [rows[i] for i in part]
            for part in np.array_split(np.arange(n_samples), self.params.n_partitions)
        ]

    def _prepare_predict(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
    ):
        """Encoded categorical codes and continuous values for routing."""
        check_is_fitted(self)
        n_samples = None
        for X in (X_cat, X_con):
            if X is not None:
                n_samples = len(X)
                break
        if n_samples is None:
            raise ValueError("At least one of X_cat and X_con must be given.")

        X_cat = check_feature_matrix(X_cat, n_samples, dtype=object, name="X_cat")
        X_con = check_feature_matrix(X_con, n_samples, dtype=float, name="X_con")
        if X_cat.shape[1] != self.n_cat_features_:
            raise ValueError(
                f"X_cat has {X_cat.shape[1]} features, "
                f"expected {self.n_cat_features_}."
            )
        if X_con.shape[1] != self.n_con_features_:
            raise ValueError(
                f"X_con has {X_con.shape[1]} features, "
                f"expected {self.n_con_features_}."
            )
        return self.cat_encoder_.transform(X_cat), X_con

    def _leaf_indices(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
    ) -> np.ndarray:
        codes, X_con = self._prepare_predict(X_cat, X_con)
        return np.array(
            [self.tree_.search(codes[i], X_con[i]) for i in range(len(X_con))],
            dtype=np.int64,
        )

    def apply(
        self,
        X_cat: Optional[np.ndarray],
        X_con: Optional[np.ndarray],
    ) -> np.ndarray:
        """Index of the leaf each row lands on."""
        return self._leaf_indices(X_cat, X_con)

    # -------------------------------------------------------------------------
    # Common methods
    # -------------------------------------------------------------------------

    def get_params(self) -> Dict[str, Any]:
        """
        Get estimator parameters.

        Returns
        -------
        params : dict
            Dictionary of parameter names to values.
        """
        return self.params.to_dict()

    def set_params(self, **params: Any) -> "BaseLevelwiseEstimator":
        """
        Set estimator parameters.

        Returns
        -------
        self : BaseLevelwiseEstimator
            The estimator instance.
        """
        for key, value in params.items():
            if key == 'is_regression':
                raise ValueError("is_regression is fixed by the estimator class")
            if hasattr(self.params, key):
                setattr(self.params, key, value)
            else:
                raise ValueError(f"Invalid parameter: {key}")
        return self

    def save_model(self, path: str) -> None:
        """
        Save the model to a JSON file.

        Parameters
        ----------
        path : str
            File path to save the model.
        """
        check_is_fitted(self)

        model_data = {
            "params": self.params.to_dict(),
            "tree_": self.tree_.to_dict(),
            "con_splits_": self.con_splits_.tolist(),
            "cat_encoder_": self.cat_encoder_.to_dict(),
            "n_cat_features_": self.n_cat_features_,
            "n_con_features_": self.n_con_features_,
            "n_levels_": self.n_levels_,
            "history_": self.history_,
        }
        model_data.update(self._get_extra_save_data())

        with open(path, 'w') as f:
            json.dump(model_data, f, indent=2)

    def load_model(self, path: str) -> "BaseLevelwiseEstimator":
        """
        Load a model from a JSON file.

        Parameters
        ----------
        path : str
            File path to load the model from.

        Returns
        -------
        self : BaseLevelwiseEstimator
            The loaded model.
        """
        with open(path, 'r') as f:
            model_data = json.load(f)

        self.params = TreeParams.from_dict(model_data["params"])
        self.tree_ = DecisionTree.from_dict(model_data["tree_"])
        self.n_cat_features_ = model_data["n_cat_features_"]
        self.n_con_features_ = model_data["n_con_features_"]
        self.con_splits_ = np.asarray(model_data["con_splits_"], dtype=float).reshape(
            self.n_con_features_, -1
        ) if self.n_con_features_ else np.zeros((0, self.params.n_bins))
        self.cat_encoder_ = CategoricalEncoder.from_dict(model_data["cat_encoder_"])
        self.n_levels_ = model_data.get("n_levels_", 0)
        self.history_ = model_data.get("history_", [])
        self.is_fitted_ = True

        self._load_extra_save_data(model_data)
        return self

    def _get_extra_save_data(self) -> Dict[str, Any]:
        """
        Get subclass-specific data for saving.

        Override in subclasses to add additional data.
        """
        return {}

    def _load_extra_save_data(self, model_data: Dict[str, Any]) -> None:
        """
        Load subclass-specific data.

        Override in subclasses to load additional data.
        """
        pass

    def _validate_params(self) -> None:
        """Validate all hyperparameters."""
        self.params.validate()

    def __repr__(self) -> str:
        """Return string representation of the estimator."""
        class_name = self.__class__.__name__
        defaults = TreeParams()
        params_str = ", ".join(
            f"{k}={v!r}"
            for k, v in self.get_params().items()
            if k != 'is_regression' and v != getattr(defaults, k)
        )
        return f"{class_name}({params_str})"


__all__ = [
    'TreeParams',
    'BaseLevelwiseEstimator',
]
