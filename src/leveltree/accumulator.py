"""
Sufficient-statistics accumulator for one pass over the training rows.

For every leaf on the tree's frontier the accumulator keeps:

- ``node_stats``: statistics of all rows reaching the leaf,
- ``cat_stats``: for every categorical feature and level, the statistics of
  the rows that would go true (``code <= level``) and false,
- ``con_stats``: the same for every continuous feature and pre-binned
  threshold.

Accumulators built over disjoint partitions of the data are combined with
:meth:`TreeAccumulator.merge`, which is pointwise addition and therefore
associative and commutative.
"""

from __future__ import annotations

import math
import warnings
from functools import reduce
from typing import Any, Iterable, Optional, Sequence

import numpy as np

from .tree import FINISHED_LEAF, NODE_NON_EXISTING, DecisionTree
from .utils import (
    AccumulationTerminatedError,
    ArrayLike,
    InconsistentStateError,
    Row,
    cat_values_array,
    check_cat_levels,
    con_values_array,
)


TRUE_BRANCH = 0
FALSE_BRANCH = 1


class TreeAccumulator:
    """
    Per-leaf split statistics gathered from one pass over the data.

    Parameters
    ----------
    n_bins : int
        Number of pre-binned thresholds per continuous feature.
    cat_levels : array-like of int
        Number of ordinal levels of each categorical feature.
    n_con_features : int
        Number of continuous features.
    n_leaf_nodes : int, default=1
        Number of frontier slots (``2**(tree_depth - 1)``).
    stats_per_split : int, default=3
        Length of one statistics vector.
    is_regression : bool, default=False
        Whether responses are continuous.
    weights_as_rows : bool, default=False
        Count ``int(weight)`` rows per input row in the unweighted count.

    Attributes
    ----------
    node_stats : np.ndarray of shape (n_leaf_nodes, stats_per_split)
    cat_stats : np.ndarray of shape (n_leaf_nodes, total_n_cat_levels, 2, stats_per_split)
    con_stats : np.ndarray of shape (n_leaf_nodes, n_con_features, n_bins, 2, stats_per_split)
    n_rows : int
        Number of valid rows seen.
    terminated : bool
        Set once a bad row or an incompatible merge was seen. No further
        rows are accumulated afterwards.
    termination_reason : str or None
        Why the accumulator was terminated.
    """

    def __init__(
        self,
        n_bins: int,
        cat_levels: Optional[ArrayLike],
        n_con_features: int,
        n_leaf_nodes: int = 1,
        stats_per_split: int = 3,
        is_regression: bool = False,
        weights_as_rows: bool = False,
    ):
        if n_bins < 0 or n_con_features < 0 or n_leaf_nodes < 1:
            raise ValueError(
                "n_bins and n_con_features must be non-negative "
                "and n_leaf_nodes positive"
            )
        self.n_bins = int(n_bins)
        self.cat_levels = check_cat_levels(cat_levels)
        self.n_cat_features = len(self.cat_levels)
        self.n_con_features = int(n_con_features)
        self.total_n_cat_levels = int(np.sum(self.cat_levels))
        self.cat_levels_cumsum = np.cumsum(self.cat_levels)
        self.n_leaf_nodes = int(n_leaf_nodes)
        self.stats_per_split = int(stats_per_split)
        self.is_regression = bool(is_regression)
        self.weights_as_rows = bool(weights_as_rows)

        # feature id and level code of every flattened categorical level slot
        self._level_feature = np.repeat(
            np.arange(self.n_cat_features), self.cat_levels
        )
        self._level_value = (
            np.concatenate([np.arange(n) for n in self.cat_levels])
            if self.n_cat_features else np.zeros(0, dtype=np.int64)
        )

        sps = self.stats_per_split
        self.node_stats = np.zeros((self.n_leaf_nodes, sps), dtype=float)
        self.cat_stats = np.zeros(
            (self.n_leaf_nodes, self.total_n_cat_levels, 2, sps), dtype=float
        )
        self.con_stats = np.zeros(
            (self.n_leaf_nodes, self.n_con_features, self.n_bins, 2, sps), dtype=float
        )
        self.n_rows = 0
        self.terminated = False
        self.termination_reason: Optional[str] = None

    @classmethod
    def for_tree(
        cls,
        tree: DecisionTree,
        n_bins: int,
        cat_levels: Optional[ArrayLike],
        n_con_features: int,
        weights_as_rows: bool = False,
    ) -> "TreeAccumulator":
        """Empty accumulator sized for the tree's current frontier."""
        return cls(
            n_bins=n_bins,
            cat_levels=cat_levels,
            n_con_features=n_con_features,
            n_leaf_nodes=tree.n_frontier_nodes,
            stats_per_split=tree.stats_per_split,
            is_regression=tree.is_regression,
            weights_as_rows=weights_as_rows,
        )

    # -------------------------------------------------------------------------
    # Indexing helpers
    # -------------------------------------------------------------------------

    @property
    def n_y_labels(self) -> int:
        return self.stats_per_split if self.is_regression else self.stats_per_split - 1

    def cat_offset(self, feature_index: int) -> int:
        """Position of a categorical feature's first level in ``cat_stats``."""
        return 0 if feature_index == 0 else int(self.cat_levels_cumsum[feature_index - 1])

    def n_levels(self, feature_index: int) -> int:
        return int(self.cat_levels[feature_index])

    def _shape_key(self) -> tuple:
        return (
            type(self),
            self.n_bins,
            self.n_cat_features,
            self.n_con_features,
            tuple(self.cat_levels.tolist()),
            self.n_leaf_nodes,
            self.stats_per_split,
            self.is_regression,
        )

    def _shape_mismatch(self, other: "TreeAccumulator") -> Optional[str]:
        if type(self) is not type(other):
            return f"cannot merge {type(self).__name__} with {type(other).__name__}"
        if (self.n_bins, self.n_cat_features, self.n_con_features) != (
                other.n_bins, other.n_cat_features, other.n_con_features):
            return (
                f"(n_bins, n_cat_features, n_con_features) "
                f"{(self.n_bins, self.n_cat_features, self.n_con_features)} != "
                f"{(other.n_bins, other.n_cat_features, other.n_con_features)}"
            )
        if self._shape_key() != other._shape_key():
            return "categorical levels, frontier size or statistics layout differ"
        return None

    # -------------------------------------------------------------------------
    # Termination
    # -------------------------------------------------------------------------

    def _terminate(self, reason: str) -> None:
        if not self.terminated:
            warnings.warn(reason, RuntimeWarning, stacklevel=3)
            self.terminated = True
            self.termination_reason = reason

    def raise_if_terminated(self) -> None:
        """
        Raises
        ------
        AccumulationTerminatedError
            If this accumulator has been terminated.
        """
        if self.terminated:
            raise AccumulationTerminatedError(self.termination_reason)

    # -------------------------------------------------------------------------
    # Row checks
    # -------------------------------------------------------------------------

    def _check_features(
        self,
        cat_features: Sequence[Any],
        con_features: Sequence[Any],
        con_splits: Optional[np.ndarray],
    ) -> Optional[str]:
        if len(cat_features) != self.n_cat_features:
            return "Inconsistent numbers of categorical independent variables."
        if len(con_features) != self.n_con_features:
            return "Inconsistent numbers of continuous independent variables."
        if con_splits is None:
            return (
                f"con_splits is required to bin {self.n_con_features} continuous "
                f"features into {self.n_bins} bins."
            )
        if con_splits.shape != (self.n_con_features, self.n_bins):
            return (
                f"con_splits has shape {con_splits.shape}, expected "
                f"{(self.n_con_features, self.n_bins)}."
            )
        return None

    def _check_row(self, row: Row, con_splits: Optional[np.ndarray]) -> Optional[str]:
        if not math.isfinite(row.response):
            return "Decision tree response variable values are not finite."
        if not math.isfinite(row.weight) or row.weight < 0:
            return "Row weights must be finite and non-negative."
        if not self.is_regression:
            label = row.response
            if label != int(label) or not 0 <= label < self.n_y_labels:
                return (
                    f"Classification response {label} is not a label index "
                    f"in [0, {self.n_y_labels})."
                )
        return self._check_features(row.cat_features, row.con_features, con_splits)

    def _row_count(self, weight: float) -> int:
        return int(weight) if self.weights_as_rows else 1

    def _row_stats(self, response: float, weight: float) -> np.ndarray:
        stats = np.zeros(self.stats_per_split, dtype=float)
        if self.is_regression:
            w_response = weight * response
            stats[:3] = (weight, w_response, w_response * response)
        else:
            stats[int(response)] = weight
        stats[-1] = self._row_count(weight)
        return stats

    def _frontier_row(self, tree: DecisionTree, node_index: int) -> int:
        row_index = node_index - (self.n_leaf_nodes - 1)
        if not 0 <= row_index < self.n_leaf_nodes:
            raise InconsistentStateError(
                f"Node {node_index} is not on a frontier of {self.n_leaf_nodes} "
                f"slots; accumulator and tree (depth {tree.tree_depth}) are out of step"
            )
        return row_index

    # -------------------------------------------------------------------------
    # Accumulation
    # -------------------------------------------------------------------------

    def accumulate(
        self,
        tree: DecisionTree,
        row: Row,
        con_splits: Optional[ArrayLike] = None,
    ) -> bool:
        """
        Add one row to the statistics of the frontier leaf it reaches.

        Parameters
        ----------
        tree : DecisionTree
            Current tree, used to route the row.
        row : Row
            The input row.
        con_splits : array-like of shape (n_con_features, n_bins)
            Pre-binned thresholds of the continuous features.

        Returns
        -------
        accepted : bool
            Whether the row contributed statistics. Rows reaching a finished
            leaf are skipped; a bad row terminates the accumulator.
        """
        if self.terminated:
            return False
        con_splits = self._splits_array(con_splits)
        reason = self._check_row(row, con_splits)
        if reason is not None:
            self._terminate(reason)
            return False

        self.n_rows += 1
        leaf = tree.search(row.cat_features, row.con_features)
        if tree.feature_indices[leaf] in (FINISHED_LEAF, NODE_NON_EXISTING):
            # row belongs to an already decided subtree
            return False
        r = self._frontier_row(tree, leaf)

        stats = self._row_stats(row.response, row.weight)
        self.node_stats[r] += stats

        if self.n_cat_features:
            codes = cat_values_array(row.cat_features)[self._level_feature]
            positions = np.flatnonzero(codes >= 0)
            direction = np.where(
                codes[positions] <= self._level_value[positions],
                TRUE_BRANCH, FALSE_BRANCH,
            )
            self.cat_stats[r, positions, direction] += stats

        if self.n_con_features and self.n_bins:
            features, bins, direction = self._con_directions(row.con_features, con_splits)
            self.con_stats[r, features, bins, direction] += stats
        return True

    def accumulate_rows(
        self,
        tree: DecisionTree,
        rows: Iterable[Row],
        con_splits: Optional[ArrayLike] = None,
    ) -> "TreeAccumulator":
        """Accumulate every row of an iterable; returns ``self``."""
        con_splits = self._splits_array(con_splits)
        for row in rows:
            if self.terminated:
                break
            self.accumulate(tree, row, con_splits)
        return self

    def _splits_array(self, con_splits: Optional[ArrayLike]) -> Optional[np.ndarray]:
        if con_splits is None:
            if self.n_con_features and self.n_bins:
                return None
            return np.zeros((self.n_con_features, self.n_bins), dtype=float)
        return np.asarray(con_splits, dtype=float)

    def _con_directions(
        self,
        con_features: Sequence[Any],
        con_splits: np.ndarray,
        skip_feature: Optional[int] = None,
    ):
        """Flattened (feature, bin, direction) triples for present values."""
        values = con_values_array(con_features)
        present = ~np.isnan(values)
        if skip_feature is not None:
            present[skip_feature] = False
        features = np.flatnonzero(present)
        goes_true = values[features, None] <= con_splits[features]
        direction = np.where(goes_true, TRUE_BRANCH, FALSE_BRANCH).ravel()
        return (
            np.repeat(features, self.n_bins),
            np.tile(np.arange(self.n_bins), len(features)),
            direction,
        )

    # -------------------------------------------------------------------------
    # Merge
    # -------------------------------------------------------------------------

    def copy(self) -> "TreeAccumulator":
        """Deep copy of the accumulator."""
        clone = self.__class__.__new__(self.__class__)
        clone.__dict__.update(self.__dict__)
        clone.node_stats = self.node_stats.copy()
        clone.cat_stats = self.cat_stats.copy()
        clone.con_stats = self.con_stats.copy()
        return clone

    def merge(self, other: "TreeAccumulator") -> "TreeAccumulator":
        """
        Combine two accumulators into a new one.

        Shapes must match; otherwise the result is terminated and keeps
        this accumulator's statistics. Neither input is modified.
        """
        if not isinstance(other, TreeAccumulator):
            raise TypeError(
                f"Cannot merge {type(self).__name__} with {type(other).__name__}"
            )
        merged = self.copy()
        merged.n_rows += other.n_rows
        mismatch = self._shape_mismatch(other)
        if mismatch is not None:
            merged._terminate(f"Inconsistent states during merge: {mismatch}")
            return merged

        merged.node_stats += other.node_stats
        merged.cat_stats += other.cat_stats
        merged.con_stats += other.con_stats
        if other.terminated and not merged.terminated:
            merged.terminated = True
            merged.termination_reason = other.termination_reason
        return merged

    def __add__(self, other: "TreeAccumulator") -> "TreeAccumulator":
        return self.merge(other)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(leaves={self.n_leaf_nodes}, "
            f"cat={self.n_cat_features}, con={self.n_con_features}, "
            f"bins={self.n_bins}, rows={self.n_rows}, terminated={self.terminated})"
        )


def merge_all(accumulators: Iterable[TreeAccumulator]) -> TreeAccumulator:
    """
    Fold any number of accumulators with :meth:`TreeAccumulator.merge`.

    Raises
    ------
    ValueError
        If no accumulator is given.
    """
    accumulators = list(accumulators)
    if not accumulators:
        raise ValueError("merge_all needs at least one accumulator")
    return reduce(lambda left, right: left.merge(right), accumulators)


def build_accumulator(
    tree: DecisionTree,
    rows: Iterable[Row],
    con_splits: Optional[ArrayLike],
    cat_levels: Optional[ArrayLike],
    weights_as_rows: bool = False,
) -> TreeAccumulator:
    """Run one accumulation pass over a partition of rows."""
    splits = np.asarray(con_splits, dtype=float) if con_splits is not None else None
    n_con = splits.shape[0] if splits is not None else 0
    n_bins = splits.shape[1] if splits is not None and splits.ndim == 2 else 0
    state = TreeAccumulator.for_tree(
        tree, n_bins, cat_levels, n_con, weights_as_rows=weights_as_rows
    )
    return state.accumulate_rows(tree, rows, splits)


__all__ = [
    'TRUE_BRANCH',
    'FALSE_BRANCH',
    'TreeAccumulator',
    'merge_all',
    'build_accumulator',
]
