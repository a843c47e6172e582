"""
Array-backed decision tree grown one level at a time.

The tree is a complete binary array: node ``i`` has its true child at
``2i + 1`` and its false child at ``2i + 2``, so a tree of depth ``d`` always
holds ``2**d - 1`` slots. Node state is encoded in ``feature_indices``:
non-negative values are split features, negative values are one of the
sentinels below. ``DecisionTree.node`` decodes a slot into a small frozen
dataclass for callers that prefer not to deal with sentinels.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .impurity import (
    REGRESS_N_STATS,
    is_child_pure,
    normalize_impurity_name,
    stat_count,
    stat_predict,
    stat_weighted_count,
    stats_per_split_for,
)
from .utils import TreeInvariantError, is_missing


# Node states stored in feature_indices
FINISHED_LEAF = -1
IN_PROCESS_LEAF = -2
NODE_NON_EXISTING = -3

SURR_NON_EXISTING = -1

# Rules deciding when a freshly created child will not split again
SETTLE_EITHER = "either"
SETTLE_BOTH = "both"

_ARRAY_FIELDS = (
    'feature_indices',
    'feature_thresholds',
    'is_categorical',
    'nonnull_split_count',
    'surr_indices',
    'surr_thresholds',
    'surr_status',
    'surr_agreement',
    'predictions',
)


# =============================================================================
# Node views
# =============================================================================

@dataclass(frozen=True)
class Surrogate:
    """
    A surrogate split stored on a node.

    Attributes
    ----------
    feature_index : int
        Feature used by the surrogate.
    threshold : float
        Surrogate threshold (level index for categorical features).
    status : int
        ``+-1`` categorical, ``+-2`` continuous; negative means the
        surrogate's ``<=`` side maps to the primary false branch.
    agreement : int
        Number of training rows on which it agreed with the primary split.
    """
    feature_index: int
    threshold: float
    status: int
    agreement: int

    @property
    def is_categorical(self) -> bool:
        return abs(self.status) == 1

    @property
    def is_reverse(self) -> bool:
        return self.status < 0


@dataclass(frozen=True)
class NonExistentNode:
    index: int


@dataclass(frozen=True)
class InProcessLeaf:
    index: int
    stats: np.ndarray


@dataclass(frozen=True)
class FinishedLeaf:
    index: int
    stats: np.ndarray


@dataclass(frozen=True)
class SplitNode:
    index: int
    feature_index: int
    threshold: float
    is_categorical: bool
    true_child: int
    false_child: int
    stats: np.ndarray
    surrogates: Tuple[Surrogate, ...] = ()


NodeView = Union[NonExistentNode, InProcessLeaf, FinishedLeaf, SplitNode]


def child_wont_split(
    stats: np.ndarray,
    is_regression: bool,
    min_split: int,
    settle_rule: str = SETTLE_EITHER,
) -> bool:
    """
    Whether a child with these statistics will not be split again.

    ``"either"`` settles a child that is pure or holds fewer than
    ``min_split`` rows; ``"both"`` requires both conditions.
    """
    pure = is_child_pure(stats, is_regression)
    too_small = stat_count(stats) < min_split
    if settle_rule == SETTLE_EITHER:
        return pure or too_small
    if settle_rule == SETTLE_BOTH:
        return pure and too_small
    raise ValueError(
        f"settle_rule must be '{SETTLE_EITHER}' or '{SETTLE_BOTH}', got {settle_rule!r}"
    )


# =============================================================================
# Decision Tree
# =============================================================================

class DecisionTree:
    """
    Level-wise decision tree stored as flat node arrays.

    Parameters
    ----------
    n_y_labels : int, default=2
        Number of class labels. Ignored for regression, where the statistics
        vector always has ``REGRESS_N_STATS`` entries.
    max_n_surr : int, default=0
        Surrogate slots per node.
    is_regression : bool, default=False
        Whether the tree predicts a continuous response.
    impurity : str or None, default='gini'
        Classification impurity metric. Unused for regression.

    Attributes
    ----------
    tree_depth : int
        Number of allocated layers; a root-only tree has depth 1.
    feature_indices : np.ndarray of shape (n_nodes,)
        Split feature per node, or a node-state sentinel.
    feature_thresholds : np.ndarray of shape (n_nodes,)
        Split threshold per node (``value <= threshold`` goes true).
    is_categorical : np.ndarray of shape (n_nodes,)
        1 when the split feature is categorical.
    nonnull_split_count : np.ndarray of shape (n_nodes, 2)
        Rows with a non-missing primary value sent true / false.
    surr_indices, surr_thresholds, surr_status, surr_agreement : np.ndarray
        Surrogate records, shape ``(n_nodes, max_n_surr)``.
    predictions : np.ndarray of shape (n_nodes, stats_per_split)
        Statistics of the rows that reached each node.
    """

    def __init__(
        self,
        n_y_labels: int = 2,
        max_n_surr: int = 0,
        is_regression: bool = False,
        impurity: Optional[str] = "gini",
    ):
        if max_n_surr < 0:
            raise ValueError(f"max_n_surr must be non-negative, got {max_n_surr}")
        if not is_regression and n_y_labels < 1:
            raise ValueError(f"n_y_labels must be >= 1, got {n_y_labels}")

        self.is_regression = bool(is_regression)
        self.n_y_labels = REGRESS_N_STATS if self.is_regression else int(n_y_labels)
        self.max_n_surr = int(max_n_surr)
        self.impurity_type = (
            None if (self.is_regression or impurity is None)
            else normalize_impurity_name(impurity)
        )

        self.tree_depth = 1
        for name, array in self._empty_arrays(1).items():
            setattr(self, name, array)
        self.feature_indices[0] = IN_PROCESS_LEAF

    # -------------------------------------------------------------------------
    # Shape helpers
    # -------------------------------------------------------------------------

    @property
    def stats_per_split(self) -> int:
        return stats_per_split_for(self.is_regression, self.n_y_labels)

    @property
    def n_nodes(self) -> int:
        return 2 ** self.tree_depth - 1

    @property
    def n_frontier_nodes(self) -> int:
        """Number of slots in the deepest allocated layer."""
        return 2 ** (self.tree_depth - 1)

    @property
    def frontier_offset(self) -> int:
        """Index of the first slot in the deepest allocated layer."""
        return self.n_frontier_nodes - 1

    @staticmethod
    def true_child(node_index: int) -> int:
        return 2 * node_index + 1

    @staticmethod
    def false_child(node_index: int) -> int:
        return 2 * node_index + 2

    @staticmethod
    def parent_index(node_index: int) -> int:
        if node_index <= 0:
            raise TreeInvariantError("The root node has no parent")
        return (node_index - 1) // 2

    def _empty_arrays(self, tree_depth: int) -> Dict[str, np.ndarray]:
        """Arrays for a tree of the given depth with every slot non-existing."""
        n_nodes = 2 ** tree_depth - 1
        n_surr = self.max_n_surr
        return {
            'feature_indices': np.full(n_nodes, NODE_NON_EXISTING, dtype=np.int64),
            'feature_thresholds': np.zeros(n_nodes, dtype=float),
            'is_categorical': np.zeros(n_nodes, dtype=np.int8),
            'nonnull_split_count': np.zeros((n_nodes, 2), dtype=np.int64),
            'surr_indices': np.full((n_nodes, n_surr), SURR_NON_EXISTING, dtype=np.int64),
            'surr_thresholds': np.zeros((n_nodes, n_surr), dtype=float),
            'surr_status': np.zeros((n_nodes, n_surr), dtype=np.int64),
            'surr_agreement': np.zeros((n_nodes, n_surr), dtype=np.int64),
            'predictions': np.zeros((n_nodes, self.stats_per_split), dtype=float),
        }

    def _blank_like(self) -> "DecisionTree":
        """A tree sharing this tree's configuration but none of its arrays."""
        return DecisionTree(
            n_y_labels=self.n_y_labels,
            max_n_surr=self.max_n_surr,
            is_regression=self.is_regression,
            impurity=self.impurity_type,
        )

    def copy(self) -> "DecisionTree":
        """Deep copy of the tree."""
        tree = self._blank_like()
        tree.tree_depth = self.tree_depth
        for name in _ARRAY_FIELDS:
            setattr(tree, name, getattr(self, name).copy())
        return tree

    # -------------------------------------------------------------------------
    # Growth
    # -------------------------------------------------------------------------

    def increment_in_place(self) -> "DecisionTree":
        """
        Grow the tree by one level.

        The grown arrays are built completely by :func:`grow` before any
        attribute of this tree is replaced.
        """
        grown = grow(self)
        self.tree_depth = grown.tree_depth
        for name in _ARRAY_FIELDS:
            setattr(self, name, getattr(grown, name))
        return self

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def get_majority_count(self, node_index: int) -> int:
        """Larger of the non-missing row counts sent to the two branches."""
        self._require_split(node_index)
        true_count, false_count = self.nonnull_split_count[node_index]
        return int(max(true_count, false_count))

    def get_majority_split(self, node_index: int) -> bool:
        """Branch that received more non-missing rows; ties go true."""
        self._require_split(node_index)
        true_count, false_count = self.nonnull_split_count[node_index]
        return bool(true_count >= false_count)

    def _require_split(self, node_index: int) -> None:
        if self.feature_indices[node_index] < 0:
            raise TreeInvariantError(
                f"Requested count for a leaf/non-existing node {node_index}"
            )

    def get_surr_split(
        self,
        node_index: int,
        cat_features: Sequence[Any],
        con_features: Sequence[Any],
    ) -> bool:
        """
        Route a row whose primary split value is missing.

        The first surrogate, in stored order, whose feature is present decides
        the branch. When every surrogate feature is missing too, the row
        follows the majority branch.
        """
        for slot in range(self.max_n_surr):
            surr_feature = self.surr_indices[node_index, slot]
            if surr_feature < 0:
                break
            status = self.surr_status[node_index, slot]
            if abs(status) == 1:
                value = cat_features[surr_feature]
                if is_missing(value, True):
                    continue
            else:
                value = con_features[surr_feature]
                if is_missing(value, False):
                    continue
            split_response = bool(value <= self.surr_thresholds[node_index, slot])
            # negative status is a reverse split (> relation)
            return split_response if status > 0 else not split_response
        return self.get_majority_split(node_index)

    def search(
        self,
        cat_features: Sequence[Any],
        con_features: Sequence[Any],
    ) -> int:
        """
        Route a row from the root down to the leaf it belongs to.

        Parameters
        ----------
        cat_features : sequence
            Categorical level codes (missing: None or negative).
        con_features : sequence
            Continuous values (missing: None or NaN).

        Returns
        -------
        leaf_index : int
            First node on the path that is an in-process or finished leaf.

        Raises
        ------
        TreeInvariantError
            If the path enters a node that was never allocated.
        """
        current = 0
        feature_index = self.feature_indices[current]
        while feature_index != IN_PROCESS_LEAF and feature_index != FINISHED_LEAF:
            if feature_index == NODE_NON_EXISTING:
                raise TreeInvariantError(
                    f"Row was routed to non-existing node {current}"
                )
            if self.is_categorical[current]:
                value = cat_features[feature_index]
                missing = is_missing(value, True)
            else:
                value = con_features[feature_index]
                missing = is_missing(value, False)

            if missing:
                is_split_true = self.get_surr_split(current, cat_features, con_features)
            else:
                is_split_true = bool(value <= self.feature_thresholds[current])

            current = self.true_child(current) if is_split_true else self.false_child(current)
            if current >= self.n_nodes:
                raise TreeInvariantError(
                    f"Split node {(current - 1) // 2} has no allocated children"
                )
            feature_index = self.feature_indices[current]
        return int(current)

    # -------------------------------------------------------------------------
    # Prediction
    # -------------------------------------------------------------------------

    def predict(
        self,
        cat_features: Sequence[Any],
        con_features: Sequence[Any],
    ) -> np.ndarray:
        """
        Statistics-derived prediction at the row's leaf.

        Returns
        -------
        prediction : np.ndarray
            Mean response (length 1) for regression, label proportions
            for classification.
        """
        leaf_index = self.search(cat_features, con_features)
        return stat_predict(self.predictions[leaf_index], self.is_regression)

    def predict_response(
        self,
        cat_features: Sequence[Any],
        con_features: Sequence[Any],
    ) -> float:
        """Mean response (regression) or arg-max label index (classification)."""
        return self.predict_response_at(self.search(cat_features, con_features))

    def predict_response_at(self, node_index: int) -> float:
        """Mean response or arg-max label index stored at a node."""
        prediction = stat_predict(self.predictions[node_index], self.is_regression)
        if self.is_regression:
            return float(prediction[0])
        return float(np.argmax(prediction))

    # -------------------------------------------------------------------------
    # Mutation by the expansion engine
    # -------------------------------------------------------------------------

    def update_primary_split(
        self,
        node_index: int,
        feature_index: int,
        threshold: float,
        is_categorical: bool,
        min_split: int,
        true_stats: np.ndarray,
        false_stats: np.ndarray,
        settle_rule: str = SETTLE_EITHER,
    ) -> bool:
        """
        Commit a primary split and seed both children.

        Parameters
        ----------
        node_index : int
            Node being split.
        feature_index : int
            Split feature (categorical or continuous index space).
        threshold : float
            ``value <= threshold`` routes true.
        is_categorical : bool
            Whether ``feature_index`` refers to a categorical feature.
        min_split : int
            Minimum rows for a child to be considered splittable.
        true_stats, false_stats : np.ndarray
            Statistics of the rows with a non-missing split value on each side.
        settle_rule : str, default='either'
            See :func:`child_wont_split`.

        Returns
        -------
        children_wont_split : bool
            True when neither child will be split again.
        """
        true_index = self.true_child(node_index)
        false_index = self.false_child(node_index)
        if feature_index < 0:
            raise TreeInvariantError(f"Invalid split feature {feature_index}")
        if false_index >= self.n_nodes:
            raise TreeInvariantError(
                f"Children of node {node_index} are not allocated; grow the tree first"
            )

        self.feature_indices[node_index] = feature_index
        self.is_categorical[node_index] = 1 if is_categorical else 0
        self.feature_thresholds[node_index] = threshold

        self.feature_indices[true_index] = IN_PROCESS_LEAF
        self.predictions[true_index] = true_stats
        self.feature_indices[false_index] = IN_PROCESS_LEAF
        self.predictions[false_index] = false_stats

        # only rows with a non-missing primary value are in these stats;
        # their counts define the majority branch
        self.nonnull_split_count[node_index] = (
            int(stat_count(true_stats)),
            int(stat_count(false_stats)),
        )

        return (
            child_wont_split(true_stats, self.is_regression, min_split, settle_rule)
            and child_wont_split(false_stats, self.is_regression, min_split, settle_rule)
        )

    def finalize(self) -> None:
        """Turn every in-process leaf into a finished leaf."""
        self.feature_indices[self.feature_indices == IN_PROCESS_LEAF] = FINISHED_LEAF

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def is_leaf(self, node_index: int) -> bool:
        return self.feature_indices[node_index] in (IN_PROCESS_LEAF, FINISHED_LEAF)

    def leaf_indices(self) -> List[int]:
        """Indices of all in-process and finished leaves."""
        mask = np.isin(self.feature_indices, (IN_PROCESS_LEAF, FINISHED_LEAF))
        return [int(i) for i in np.flatnonzero(mask)]

    def surrogates(self, node_index: int) -> Tuple[Surrogate, ...]:
        """Stored surrogates of a node, best first."""
        found = []
        for slot in range(self.max_n_surr):
            feature = int(self.surr_indices[node_index, slot])
            if feature < 0:
                break
            found.append(Surrogate(
                feature_index=feature,
                threshold=float(self.surr_thresholds[node_index, slot]),
                status=int(self.surr_status[node_index, slot]),
                agreement=int(self.surr_agreement[node_index, slot]),
            ))
        return tuple(found)

    def node(self, node_index: int) -> NodeView:
        """Decode one slot into a node view."""
        feature = int(self.feature_indices[node_index])
        stats = self.predictions[node_index].copy()
        if feature == NODE_NON_EXISTING:
            return NonExistentNode(node_index)
        if feature == IN_PROCESS_LEAF:
            return InProcessLeaf(node_index, stats)
        if feature == FINISHED_LEAF:
            return FinishedLeaf(node_index, stats)
        return SplitNode(
            index=node_index,
            feature_index=feature,
            threshold=float(self.feature_thresholds[node_index]),
            is_categorical=bool(self.is_categorical[node_index]),
            true_child=self.true_child(node_index),
            false_child=self.false_child(node_index),
            stats=stats,
            surrogates=self.surrogates(node_index),
        )

    def node_count(self, node_index: int) -> int:
        """Number of rows that landed on a node."""
        return int(stat_count(self.predictions[node_index]))

    def node_weighted_count(self, node_index: int) -> float:
        """Sum of weights of the rows that landed on a node."""
        return float(stat_weighted_count(self.predictions[node_index], self.is_regression))

    def compute_misclassification(self, node_index: int) -> float:
        """Weight not belonging to the predicted label; 0 for regression."""
        if self.is_regression:
            return 0.0
        labels = self.predictions[node_index, :-1]
        return float(np.sum(labels) - np.max(labels))

    def compute_risk(self, node_index: int) -> float:
        """
        Risk of a node.

        Regression: weighted sum of squared deviations from the node mean.
        Classification: misclassified weight.
        """
        if not self.is_regression:
            return self.compute_misclassification(node_index)
        weight, weighted_sum, weighted_sum_sq = self.predictions[node_index, :3]
        if weight <= 0:
            return 0.0
        return float(weighted_sum_sq - weighted_sum * weighted_sum / weight)

    def recompute_tree_depth(self) -> int:
        """Depth ignoring trailing layers whose slots are all non-existing."""
        if self.tree_depth <= 1:
            return self.tree_depth
        for depth in range(2, self.tree_depth + 1):
            start = 2 ** (depth - 1) - 1
            layer = self.feature_indices[start:2 * start + 1]
            if np.all(layer == NODE_NON_EXISTING):
                return depth - 1
        return self.tree_depth

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize tree to dictionary."""
        data: Dict[str, Any] = {
            'tree_depth': self.tree_depth,
            'n_y_labels': self.n_y_labels,
            'max_n_surr': self.max_n_surr,
            'is_regression': self.is_regression,
            'impurity_type': self.impurity_type,
        }
        for name in _ARRAY_FIELDS:
            data[name] = getattr(self, name).tolist()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionTree":
        """Deserialize tree from dictionary."""
        tree = cls(
            n_y_labels=data['n_y_labels'],
            max_n_surr=data['max_n_surr'],
            is_regression=data['is_regression'],
            impurity=data.get('impurity_type'),
        )
        tree.tree_depth = int(data['tree_depth'])
        template = tree._empty_arrays(tree.tree_depth)
        for name in _ARRAY_FIELDS:
            array = np.asarray(data[name], dtype=template[name].dtype)
            if array.size == 0:
                array = array.reshape(template[name].shape)
            if array.shape != template[name].shape:
                raise ValueError(
                    f"Field '{name}' has shape {array.shape}, "
                    f"expected {template[name].shape}"
                )
            setattr(tree, name, array)
        return tree

    def save(self, path: str) -> None:
        """Save the tree to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "DecisionTree":
        """Load a tree from a JSON file."""
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

    def __repr__(self) -> str:
        kind = "regression" if self.is_regression else f"{self.n_y_labels} labels"
        return (
            f"DecisionTree(depth={self.tree_depth}, nodes={self.n_nodes}, "
            f"leaves={len(self.leaf_indices())}, {kind})"
        )


def grow(tree: DecisionTree) -> DecisionTree:
    """
    Return a copy of ``tree`` with one more level allocated.

    Existing slots keep all their fields; the new deepest layer is
    non-existing with zeroed fields. ``tree`` itself is not modified.
    """
    grown = tree._blank_like()
    grown.tree_depth = tree.tree_depth + 1
    arrays = grown._empty_arrays(grown.tree_depth)
    n_orig = tree.n_nodes
    for name in _ARRAY_FIELDS:
        arrays[name][:n_orig] = getattr(tree, name)
        setattr(grown, name, arrays[name])
    return grown


__all__ = [
    'FINISHED_LEAF',
    'IN_PROCESS_LEAF',
    'NODE_NON_EXISTING',
    'SURR_NON_EXISTING',
    'SETTLE_EITHER',
    'SETTLE_BOTH',
    'Surrogate',
    'NonExistentNode',
    'InProcessLeaf',
    'FinishedLeaf',
    'SplitNode',
    'DecisionTree',
    'child_wont_split',
    'grow',
]
