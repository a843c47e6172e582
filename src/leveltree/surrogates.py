"""
Surrogate split training.

After a level has been expanded, a second pass over the data trains
surrogates for the split nodes of the layer just above the new frontier (the
"parent layer"). For every row with a non-missing primary value the pass
records, per alternative feature and threshold, whether the alternative would
have sent the row the same way as the primary split. :func:`pick_surrogates`
then keeps the alternatives that agree more often than always following the
majority branch.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from .accumulator import FALSE_BRANCH, TRUE_BRANCH, TreeAccumulator
from .tree import SURR_NON_EXISTING, DecisionTree
from .utils import (
    ArrayLike,
    InconsistentStateError,
    Row,
    cat_values_array,
    check_con_splits,
    is_missing,
)


AGREE = 0
DISAGREE = 1

SURR_CATEGORICAL = 1
SURR_CONTINUOUS = 2


class SurrogateAccumulator(TreeAccumulator):
    """
    Agreement counts for the split nodes of the parent layer.

    Same layout as :class:`~leveltree.accumulator.TreeAccumulator` with
    ``stats_per_split = 2``: each (feature, threshold, direction) cell holds
    ``[agree, disagree]`` duplicate counts, and there is one row per
    parent-layer node. ``node_stats`` is unused.

    Parameters
    ----------
    n_bins : int
        Number of pre-binned thresholds per continuous feature.
    cat_levels : array-like of int
        Number of levels of each categorical feature.
    n_con_features : int
        Number of continuous features.
    n_leaf_nodes : int, default=1
        Number of parent-layer nodes (``2**(tree_depth - 2)``).
    weights_as_rows : bool, default=False
        Default duplicate count is ``int(weight)`` instead of 1.
    """

    def __init__(
        self,
        n_bins: int,
        cat_levels: Optional[ArrayLike],
        n_con_features: int,
        n_leaf_nodes: int = 1,
        weights_as_rows: bool = False,
    ):
        super().__init__(
            n_bins=n_bins,
            cat_levels=cat_levels,
            n_con_features=n_con_features,
            n_leaf_nodes=n_leaf_nodes,
            stats_per_split=2,
            is_regression=False,
            weights_as_rows=weights_as_rows,
        )

    @classmethod
    def for_tree(
        cls,
        tree: DecisionTree,
        n_bins: int,
        cat_levels: Optional[ArrayLike],
        n_con_features: int,
        weights_as_rows: bool = False,
    ) -> "SurrogateAccumulator":
        """Empty accumulator for the parent layer of the tree's frontier."""
        if tree.tree_depth < 2:
            raise ValueError(
                "Surrogates need a tree with at least one split level, "
                f"got tree_depth={tree.tree_depth}"
            )
        return cls(
            n_bins=n_bins,
            cat_levels=cat_levels,
            n_con_features=n_con_features,
            n_leaf_nodes=2 ** (tree.tree_depth - 2),
            weights_as_rows=weights_as_rows,
        )

    def _parent_row(self, tree: DecisionTree, parent: int) -> Optional[int]:
        offset = self.n_leaf_nodes - 1
        if parent < offset:
            return None
        row_index = parent - offset
        if row_index >= self.n_leaf_nodes:
            raise InconsistentStateError(
                f"Node {parent} is below a parent layer of {self.n_leaf_nodes} "
                f"slots; accumulator and tree (depth {tree.tree_depth}) are out of step"
            )
        return row_index

    def accumulate(
        self,
        tree: DecisionTree,
        row: Row,
        con_splits: Optional[ArrayLike] = None,
        dup_count: Optional[int] = None,
    ) -> bool:
        """
        Add one row's agreement counts.

        Parameters
        ----------
        tree : DecisionTree
            Tree whose parent-layer splits are being explained.
        row : Row
            The input row. Its response is not used.
        con_splits : array-like of shape (n_con_features, n_bins)
            Pre-binned thresholds of the continuous features.
        dup_count : int or None
            Weight of the row in the counts. Defaults to ``int(row.weight)``
            when ``weights_as_rows`` is set, 1 otherwise.

        Returns
        -------
        accepted : bool
            False for rows that do not end in the last layer, rows whose
            primary value is missing, and bad rows (which terminate the
            accumulator).
        """
        if self.terminated:
            return False
        con_splits = self._splits_array(con_splits)
        reason = self._check_features(row.cat_features, row.con_features, con_splits)
        if reason is not None:
            self._terminate(reason)
            return False

        leaf = tree.search(row.cat_features, row.con_features)
        if leaf == 0:
            return False
        parent = tree.parent_index(leaf)
        r = self._parent_row(tree, parent)
        primary = int(tree.feature_indices[parent])
        if r is None or primary < 0:
            return False

        primary_is_cat = bool(tree.is_categorical[parent])
        primary_value = (
            row.cat_features[primary] if primary_is_cat else row.con_features[primary]
        )
        if is_missing(primary_value, primary_is_cat):
            return False
        primary_true = bool(primary_value <= tree.feature_thresholds[parent])

        if dup_count is None:
            dup_count = self._row_count(row.weight)

        if self.n_cat_features:
            codes = cat_values_array(row.cat_features)
            if primary_is_cat:
                codes[primary] = -1
            codes = codes[self._level_feature]
            positions = np.flatnonzero(codes >= 0)
            surr_true = codes[positions] <= self._level_value[positions]
            direction = np.where(surr_true, TRUE_BRANCH, FALSE_BRANCH)
            agreement = np.where(surr_true == primary_true, AGREE, DISAGREE)
            np.add.at(self.cat_stats, (r, positions, direction, agreement), dup_count)

        if self.n_con_features and self.n_bins:
            features, bins, direction = self._con_directions(
                row.con_features, con_splits,
                skip_feature=None if primary_is_cat else primary,
            )
            surr_true = direction == TRUE_BRANCH
            agreement = np.where(surr_true == primary_true, AGREE, DISAGREE)
            np.add.at(self.con_stats, (r, features, bins, direction, agreement), dup_count)

        self.n_rows += 1
        return True

    def agreement_counts(self, row_index: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Forward and reverse agreement per candidate threshold.

        Returns
        -------
        cat_counts : np.ndarray of shape (total_n_cat_levels, 2)
        con_counts : np.ndarray of shape (n_con_features, n_bins, 2)
            Column 0 counts rows where ``<=`` matched the primary true branch,
            column 1 rows where ``>`` did.
        """
        # summing over the surrogate direction axis gives [forward, reverse]
        return (
            self.cat_stats[row_index].sum(axis=-2),
            self.con_stats[row_index].sum(axis=-2),
        )


def _best_threshold(counts: np.ndarray) -> Tuple[int, float, bool]:
    """Arg-max over interleaved forward/reverse counts; first maximum wins."""
    flat = counts.reshape(-1)
    max_label = int(np.argmax(flat))
    return max_label // 2, float(flat[max_label]), bool(max_label % 2)


def _candidate_surrogates(
    state: SurrogateAccumulator,
    row_index: int,
    con_splits: np.ndarray,
    primary: int,
    primary_is_cat: bool,
) -> List[Tuple[float, int, float, int]]:
    """(agreement, feature, threshold, status) of each usable feature, in feature order."""
    cat_counts, con_counts = state.agreement_counts(row_index)
    candidates = []
    for feature in range(state.n_cat_features):
        n_levels = state.n_levels(feature)
        if n_levels == 0 or (primary_is_cat and feature == primary):
            continue
        start = state.cat_offset(feature)
        level, count, reverse = _best_threshold(cat_counts[start:start + n_levels])
        status = -SURR_CATEGORICAL if reverse else SURR_CATEGORICAL
        candidates.append((count, feature, float(level), status))

    if state.n_bins:
        for feature in range(state.n_con_features):
            if not primary_is_cat and feature == primary:
                continue
            bin_index, count, reverse = _best_threshold(con_counts[feature])
            status = -SURR_CONTINUOUS if reverse else SURR_CONTINUOUS
            candidates.append(
                (count, feature, float(con_splits[feature, bin_index]), status)
            )
    return candidates


def pick_surrogates(
    tree: DecisionTree,
    state: SurrogateAccumulator,
    con_splits: Optional[ArrayLike],
) -> None:
    """
    Store the best surrogates of every parent-layer split node.

    For each candidate feature the threshold and direction with the highest
    agreement is taken. Candidates are ranked by agreement, descending, with
    ties kept in feature order (categorical features first). At most
    ``tree.max_n_surr`` are stored; ranking stops at the first candidate that
    agrees less often than the node's majority-branch count.

    Parameters
    ----------
    tree : DecisionTree
        Tree to update in place.
    state : SurrogateAccumulator
        Merged agreement counts.
    con_splits : array-like of shape (n_con_features, n_bins)
        Pre-binned thresholds used during accumulation.

    Raises
    ------
    AccumulationTerminatedError
        If ``state`` was terminated.
    InconsistentStateError
        If ``state`` is not sized for the tree's parent layer.
    """
    state.raise_if_terminated()
    if tree.tree_depth < 2 or state.n_leaf_nodes != 2 ** (tree.tree_depth - 2):
        raise InconsistentStateError(
            f"Surrogate accumulator for {state.n_leaf_nodes} nodes does not match "
            f"the parent layer of a tree of depth {tree.tree_depth}"
        )
    if tree.max_n_surr == 0:
        return
    con_splits = check_con_splits(con_splits, state.n_con_features, state.n_bins)

    offset = state.n_leaf_nodes - 1
    for i in range(state.n_leaf_nodes):
        node = offset + i
        primary = int(tree.feature_indices[node])
        if primary < 0:
            continue

        candidates = _candidate_surrogates(
            state, i, con_splits, primary, bool(tree.is_categorical[node])
        )
        # sorted() is stable, so equal agreements keep feature order
        ranked = sorted(candidates, key=lambda c: c[0], reverse=True)
        majority_count = tree.get_majority_count(node)

        tree.surr_indices[node] = SURR_NON_EXISTING
        tree.surr_thresholds[node] = 0.0
        tree.surr_status[node] = 0
        tree.surr_agreement[node] = 0
        for slot, (count, feature, threshold, status) in enumerate(
                ranked[:tree.max_n_surr]):
            if count < majority_count:
                break
            tree.surr_indices[node, slot] = feature
            tree.surr_thresholds[node, slot] = threshold
            tree.surr_status[node, slot] = status
            tree.surr_agreement[node, slot] = int(count)


def build_surrogate_accumulator(
    tree: DecisionTree,
    rows: Sequence[Row],
    con_splits: Optional[ArrayLike],
    cat_levels: Optional[ArrayLike],
    weights_as_rows: bool = False,
    dup_counts: Optional[Sequence[Any]] = None,
) -> SurrogateAccumulator:
    """Run one surrogate pass over a partition of rows."""
    splits = np.asarray(con_splits, dtype=float) if con_splits is not None else None
    n_con = splits.shape[0] if splits is not None else 0
    n_bins = splits.shape[1] if splits is not None and splits.ndim == 2 else 0
    state = SurrogateAccumulator.for_tree(
        tree, n_bins, cat_levels, n_con, weights_as_rows=weights_as_rows
    )
    for k, row in enumerate(rows):
        if state.terminated:
            break
        dup_count = None if dup_counts is None else dup_counts[k]
        state.accumulate(tree, row, splits, dup_count=dup_count)
    return state


__all__ = [
    'AGREE',
    'DISAGREE',
    'SurrogateAccumulator',
    'pick_surrogates',
    'build_surrogate_accumulator',
]
