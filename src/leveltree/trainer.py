"""
Level-by-level training driver.

One level costs one accumulation pass per partition, a merge, an expansion
and, when surrogates are enabled, one more pass per partition to train the
surrogates of the layer that was just split. Partitions only need to be
re-iterable; they are never materialized together.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from .accumulator import build_accumulator, merge_all
from .base import TreeParams
from .expansion import expand, expand_by_sampling
from .surrogates import build_surrogate_accumulator, pick_surrogates
from .tree import DecisionTree
from .utils import (
    ArrayLike,
    Row,
    check_cat_levels,
    check_con_splits,
    log_level_progress,
    log_message,
)


class TreeTrainer:
    """
    Grows a :class:`~leveltree.tree.DecisionTree` from row partitions.

    Parameters
    ----------
    params : TreeParams or None
        Training parameters. Defaults to ``TreeParams()``.

    Attributes
    ----------
    tree_ : DecisionTree
        The most recently trained tree.
    n_levels_ : int
        Number of expansion rounds the last fit ran.
    history_ : list of dict
        One record per level with keys ``level``, ``n_rows``, ``n_splits``,
        ``n_surrogate_rows`` and ``tree_depth``.
    """

    def __init__(self, params: Optional[TreeParams] = None):
        self.params = params if params is not None else TreeParams()
        self.tree_: Optional[DecisionTree] = None
        self.n_levels_: int = 0
        self.history_: List[Dict[str, Any]] = []

    def _expand_level(self, tree, state, con_splits, rng) -> bool:
        p = self.params
        common = dict(
            settle_rule=p.settle_rule,
            finalize_settled=p.finalize_settled,
        )
        if p.n_random_features is not None:
            return expand_by_sampling(
                tree, state, con_splits, p.min_split, p.resolved_min_bucket,
                p.max_depth, p.n_random_features, random_state=rng, **common,
            )
        return expand(
            tree, state, con_splits, p.min_split, p.resolved_min_bucket,
            p.max_depth, **common,
        )

    def _train_surrogates(
        self,
        tree: DecisionTree,
        partitions: Sequence[Iterable[Row]],
        con_splits: np.ndarray,
        cat_levels: np.ndarray,
    ) -> int:
        states = [
            build_surrogate_accumulator(
                tree, part, con_splits, cat_levels,
                weights_as_rows=self.params.weights_as_rows,
            )
            for part in partitions
        ]
        state = merge_all(states)
        pick_surrogates(tree, state, con_splits)
        return state.n_rows

    def fit_partitions(
        self,
        partitions: Sequence[Iterable[Row]],
        con_splits: Optional[ArrayLike],
        cat_levels: Optional[ArrayLike],
        n_y_labels: int = 2,
    ) -> DecisionTree:
        """
        Train a tree over independent row partitions.

        Parameters
        ----------
        partitions : sequence of iterables of Row
            Disjoint partitions of the training rows. Each is iterated once
            per level (twice with surrogates).
        con_splits : array-like of shape (n_con_features, n_bins)
            Pre-binned continuous thresholds.
        cat_levels : array-like of int
            Level count of each categorical feature.
        n_y_labels : int, default=2
            Number of class labels (ignored for regression).

        Returns
        -------
        tree : DecisionTree
            The trained tree; every leaf is finished.

        Raises
        ------
        AccumulationTerminatedError
            If a partition held a bad row or the partitions disagree about
            the feature layout.
        """
        p = self.params
        p.validate()
        if len(partitions) == 0:
            raise ValueError("fit_partitions needs at least one partition")

        cat_levels = check_cat_levels(cat_levels)
        n_con_features = 0 if con_splits is None else np.asarray(con_splits).shape[0]
        con_splits = check_con_splits(con_splits, n_con_features)

        tree = DecisionTree(
            n_y_labels=n_y_labels,
            max_n_surr=p.max_surrogates,
            is_regression=p.is_regression,
            impurity=p.impurity,
        )
        rng = np.random.default_rng(p.random_state)
        self.history_ = []

        log_message(
            f"Training on {len(partitions)} partition(s): "
            f"{len(cat_levels)} categorical, {n_con_features} continuous features",
            verbose=p.verbose,
        )

        level = 0
        training_finished = False
        while not training_finished:
            state = merge_all(
                build_accumulator(
                    tree, part, con_splits, cat_levels,
                    weights_as_rows=p.weights_as_rows,
                )
                for part in partitions
            )

            n_split_before = int(np.sum(tree.feature_indices >= 0))
            training_finished = self._expand_level(tree, state, con_splits, rng)
            n_splits = int(np.sum(tree.feature_indices >= 0)) - n_split_before

            n_surrogate_rows = 0
            if p.max_surrogates > 0 and n_splits > 0:
                n_surrogate_rows = self._train_surrogates(
                    tree, partitions, con_splits, cat_levels
                )

            self.history_.append({
                'level': level,
                'n_rows': state.n_rows,
                'n_splits': n_splits,
                'n_surrogate_rows': n_surrogate_rows,
                'tree_depth': tree.tree_depth,
            })
            log_level_progress(
                level, p.max_depth, n_splits, state.n_rows, verbose=p.verbose
            )
            level += 1

        self.tree_ = tree
        self.n_levels_ = level
        log_message(
            f"Finished after {level} level(s): depth {tree.recompute_tree_depth()}, "
            f"{len(tree.leaf_indices())} leaves",
            verbose=p.verbose,
        )
        return tree


__all__ = [
    'TreeTrainer',
]
