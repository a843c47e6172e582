"""
Split selection and level-wise node expansion.

Given a merged :class:`~leveltree.accumulator.TreeAccumulator` for the current
frontier, every in-process leaf gets its prediction statistics, the candidate
split with the largest impurity gain is chosen, and the tree grows by one
level if at least one leaf was split.

Candidates are scored in a fixed order: all categorical (feature, level)
pairs, then all continuous (feature, bin) pairs. The first maximum wins, so
ties go to the earliest candidate. In sampling mode the order is the random
feature permutation drawn for the leaf.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Union

import numpy as np

from .accumulator import TreeAccumulator
from .impurity import impurity_gain, stat_count, stat_weighted_count
from .tree import (
    FINISHED_LEAF,
    IN_PROCESS_LEAF,
    SETTLE_EITHER,
    DecisionTree,
    child_wont_split,
)
from .utils import ArrayLike, InconsistentStateError, check_con_splits


RandomState = Union[None, int, np.random.Generator]


@dataclass
class SplitCandidate:
    """
    Best split found for one frontier leaf.

    Attributes
    ----------
    gain : float
        Impurity gain of the split.
    feature_index : int
        Feature index within its own (categorical or continuous) space.
    bin_index : int
        Level code (categorical) or pre-bin index (continuous).
    is_categorical : bool
        Which feature space ``feature_index`` refers to.
    stats : np.ndarray of shape (2 * stats_per_split,)
        True-branch then false-branch statistics.
    """
    gain: float
    feature_index: int
    bin_index: int
    is_categorical: bool
    stats: np.ndarray


# =============================================================================
# Split policy
# =============================================================================

def should_split(
    combined_stats: np.ndarray,
    min_split: int,
    min_bucket: int,
    stats_per_split: int,
    tree_depth: int,
    max_depth: int,
) -> bool:
    """
    Whether a candidate split passes the row-count and depth limits.

    Parameters
    ----------
    combined_stats : np.ndarray of shape (2 * stats_per_split,)
        True-branch then false-branch statistics.
    min_split : int
        Minimum rows in the node being split.
    min_bucket : int
        Minimum rows in each branch (at least 1).
    stats_per_split : int
        Length of one statistics vector.
    tree_depth : int
        Current tree depth (root-only tree has depth 1).
    max_depth : int
        Maximum depth with the root at depth 0.
    """
    thresh_min_bucket = max(min_bucket, 1)
    true_count = stat_count(combined_stats[:stats_per_split])
    false_count = stat_count(combined_stats[stats_per_split:2 * stats_per_split])
    return bool(
        true_count + false_count >= min_split
        and true_count >= thresh_min_bucket
        and false_count >= thresh_min_bucket
        and tree_depth <= max_depth
    )


def should_split_weights(
    combined_stats: np.ndarray,
    min_split: float,
    min_bucket: float,
    stats_per_split: int,
    is_regression: bool,
) -> bool:
    """Weighted-count variant of :func:`should_split`, without the depth check."""
    thresh_min_bucket = max(min_bucket, 1)
    true_count = stat_weighted_count(combined_stats[:stats_per_split], is_regression)
    false_count = stat_weighted_count(
        combined_stats[stats_per_split:2 * stats_per_split], is_regression
    )
    return bool(
        true_count + false_count >= min_split
        and true_count >= thresh_min_bucket
        and false_count >= thresh_min_bucket
    )


# =============================================================================
# Candidate scoring
# =============================================================================

def _leaf_candidates(state: TreeAccumulator, leaf_row: int) -> np.ndarray:
    """All candidate splits of one leaf as rows of ``2 * stats_per_split``."""
    width = 2 * state.stats_per_split
    cat = state.cat_stats[leaf_row].reshape(-1, width)
    con = state.con_stats[leaf_row].reshape(-1, width)
    return np.concatenate([cat, con], axis=0)


def _feature_positions(state: TreeAccumulator, feature: int) -> np.ndarray:
    """Candidate rows of one feature in the combined categorical+continuous space."""
    if feature < state.n_cat_features:
        start = state.cat_offset(feature)
        return np.arange(start, start + state.n_levels(feature))
    start = state.total_n_cat_levels + (feature - state.n_cat_features) * state.n_bins
    return np.arange(start, start + state.n_bins)


def _decode_candidate(state: TreeAccumulator, position: int):
    if position < state.total_n_cat_levels:
        feature = int(state._level_feature[position])
        return feature, int(state._level_value[position]), True
    feature, bin_index = divmod(position - state.total_n_cat_levels, state.n_bins)
    return int(feature), int(bin_index), False


def best_split(
    tree: DecisionTree,
    state: TreeAccumulator,
    leaf_row: int,
    positions: Optional[np.ndarray] = None,
) -> Optional[SplitCandidate]:
    """
    Highest-gain candidate split of one frontier leaf.

    Parameters
    ----------
    tree : DecisionTree
        Tree providing the task type and impurity metric.
    state : TreeAccumulator
        Merged statistics of the current pass.
    leaf_row : int
        Frontier slot (row of the accumulator).
    positions : np.ndarray or None
        Candidate rows to evaluate, in tie-breaking order. All candidates
        in natural order when None.

    Returns
    -------
    candidate : SplitCandidate or None
        None when the leaf has no candidate splits at all.
    """
    combined = _leaf_candidates(state, leaf_row)
    if positions is None:
        positions = np.arange(combined.shape[0])
    if len(positions) == 0:
        return None

    gains = np.atleast_1d(impurity_gain(
        combined[positions], state.stats_per_split,
        tree.is_regression, tree.impurity_type,
    ))
    best = int(np.argmax(gains))
    position = int(positions[best])
    feature, bin_index, is_cat = _decode_candidate(state, position)
    return SplitCandidate(
        gain=float(gains[best]),
        feature_index=feature,
        bin_index=bin_index,
        is_categorical=is_cat,
        stats=combined[position].copy(),
    )


# =============================================================================
# Expansion
# =============================================================================

def _expand(
    tree: DecisionTree,
    state: TreeAccumulator,
    con_splits: Optional[ArrayLike],
    min_split: int,
    min_bucket: int,
    max_depth: int,
    settle_rule: str,
    finalize_settled: bool,
    candidate_positions: Callable[[int], Optional[np.ndarray]],
) -> bool:
    state.raise_if_terminated()
    if (state.n_leaf_nodes != tree.n_frontier_nodes
            or state.stats_per_split != tree.stats_per_split
            or state.is_regression != tree.is_regression):
        raise InconsistentStateError(
            f"Accumulator for {state.n_leaf_nodes} leaves with {state.stats_per_split} "
            f"stats does not match tree of depth {tree.tree_depth} "
            f"with {tree.stats_per_split} stats"
        )
    con_splits = check_con_splits(con_splits, state.n_con_features, state.n_bins)

    sps = state.stats_per_split
    depth = tree.tree_depth
    offset = state.n_leaf_nodes - 1
    children_not_allocated = True
    children_wont_split = True

    for i in range(state.n_leaf_nodes):
        current = offset + i
        if tree.feature_indices[current] != IN_PROCESS_LEAF:
            continue

        # 1. prediction from all rows reaching the leaf
        tree.predictions[current] = state.node_stats[i]

        # 2. best candidate split
        split = best_split(tree, state, i, candidate_positions(i))

        # 3. commit it or close the leaf
        if (split is not None and split.gain > 0
                and should_split(split.stats, min_split, min_bucket, sps, depth, max_depth)):
            if split.is_categorical:
                threshold = float(split.bin_index)
            else:
                threshold = float(con_splits[split.feature_index, split.bin_index])

            if children_not_allocated:
                tree.increment_in_place()
                children_not_allocated = False

            true_stats = split.stats[:sps]
            false_stats = split.stats[sps:]
            settled = tree.update_primary_split(
                current, split.feature_index, threshold, split.is_categorical,
                min_split, true_stats, false_stats, settle_rule=settle_rule,
            )
            children_wont_split &= settled

            if finalize_settled:
                for child, child_stats in (
                    (tree.true_child(current), true_stats),
                    (tree.false_child(current), false_stats),
                ):
                    if child_wont_split(child_stats, tree.is_regression, min_split, settle_rule):
                        tree.feature_indices[child] = FINISHED_LEAF
        else:
            tree.feature_indices[current] = FINISHED_LEAF

    # tree_depth counts layers from 1 while max_depth counts the root as 0
    training_finished = (
        children_not_allocated
        or tree.tree_depth >= max_depth + 1
        or children_wont_split
        or not np.any(tree.feature_indices == IN_PROCESS_LEAF)
    )
    if training_finished:
        tree.finalize()
    return training_finished


def expand(
    tree: DecisionTree,
    state: TreeAccumulator,
    con_splits: Optional[ArrayLike],
    min_split: int,
    min_bucket: int,
    max_depth: int,
    *,
    settle_rule: str = SETTLE_EITHER,
    finalize_settled: bool = False,
) -> bool:
    """
    Split every frontier leaf by its best candidate and grow one level.

    Parameters
    ----------
    tree : DecisionTree
        Tree to expand in place.
    state : TreeAccumulator
        Merged statistics for the tree's frontier.
    con_splits : array-like of shape (n_con_features, n_bins)
        Pre-binned thresholds used during accumulation.
    min_split : int
        Minimum rows in a node for it to be split.
    min_bucket : int
        Minimum rows in each child (at least 1).
    max_depth : int
        Maximum depth, root at depth 0.
    settle_rule : str, default='either'
        When a new child counts as not splitting again; see
        :func:`leveltree.tree.child_wont_split`.
    finalize_settled : bool, default=False
        Mark settled children as finished right away instead of waiting for
        another pass.

    Returns
    -------
    training_finished : bool
        True when no leaf was split, the depth limit was reached, or every
        new child is settled. All in-process leaves are finished then.

    Raises
    ------
    AccumulationTerminatedError
        If ``state`` was terminated.
    InconsistentStateError
        If ``state`` does not match the tree's frontier.
    """
    return _expand(
        tree, state, con_splits, min_split, min_bucket, max_depth,
        settle_rule, finalize_settled, lambda leaf_row: None,
    )


def expand_by_sampling(
    tree: DecisionTree,
    state: TreeAccumulator,
    con_splits: Optional[ArrayLike],
    min_split: int,
    min_bucket: int,
    max_depth: int,
    n_random_features: int,
    *,
    random_state: RandomState = None,
    settle_rule: str = SETTLE_EITHER,
    finalize_settled: bool = False,
) -> bool:
    """
    Random-forest style :func:`expand`.

    For each frontier leaf a fresh permutation of the combined
    categorical+continuous feature indices is drawn and only the first
    ``n_random_features`` features are evaluated, in permutation order.

    Parameters
    ----------
    n_random_features : int
        Features sampled per leaf (capped at the number of features).
    random_state : int, np.random.Generator or None
        Seed or generator for the permutations.

    Other parameters and return value are as in :func:`expand`.
    """
    if n_random_features < 1:
        raise ValueError(
            f"n_random_features must be >= 1, got {n_random_features}"
        )
    rng = (
        random_state if isinstance(random_state, np.random.Generator)
        else np.random.default_rng(random_state)
    )
    n_features = state.n_cat_features + state.n_con_features
    n_sampled = min(n_random_features, n_features)

    def sampled_positions(leaf_row: int) -> np.ndarray:
        features = rng.permutation(n_features)[:n_sampled]
        if len(features) == 0:
            return np.zeros(0, dtype=np.int64)
        return np.concatenate([_feature_positions(state, int(f)) for f in features])

    return _expand(
        tree, state, con_splits, min_split, min_bucket, max_depth,
        settle_rule, finalize_settled, sampled_positions,
    )


__all__ = [
    'SplitCandidate',
    'should_split',
    'should_split_weights',
    'best_split',
    'expand',
    'expand_by_sampling',
]
