"""
Test suite for the array-backed DecisionTree.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

_repo_root = Path(__file__).resolve().parents[1]
src_path = str(_repo_root / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from leveltree.tree import (
    FINISHED_LEAF,
    IN_PROCESS_LEAF,
    NODE_NON_EXISTING,
    SURR_NON_EXISTING,
    DecisionTree,
    FinishedLeaf,
    InProcessLeaf,
    NonExistentNode,
    SplitNode,
    grow,
)
from leveltree.utils import TreeInvariantError


NAN = float("nan")


def _split_root(tree, true_stats=(6.0, 0.0, 6.0), false_stats=(1.0, 3.0, 4.0),
                feature=0, threshold=3.0, is_categorical=False, min_split=2):
    """Grow the tree and split the root; returns the settled flag."""
    tree.increment_in_place()
    return tree.update_primary_split(
        0, feature, threshold, is_categorical, min_split,
        np.array(true_stats), np.array(false_stats),
    )


# =============================================================================
# Shape and growth
# =============================================================================

class TestShape:

    def test_new_tree_is_single_in_process_root(self):
        tree = DecisionTree(n_y_labels=2)
        assert tree.tree_depth == 1
        assert tree.n_nodes == 1
        assert tree.feature_indices[0] == IN_PROCESS_LEAF
        assert tree.predictions.shape == (1, 3)

    def test_regression_stats_layout(self):
        tree = DecisionTree(is_regression=True)
        assert tree.stats_per_split == 4
        assert tree.impurity_type is None

    @pytest.mark.parametrize("depth", [1, 2, 3, 5])
    def test_node_count_matches_depth(self, depth):
        tree = DecisionTree(max_n_surr=2)
        for _ in range(depth - 1):
            tree.increment_in_place()
        assert tree.n_nodes == 2 ** depth - 1
        assert len(tree.feature_indices) == tree.n_nodes
        assert tree.surr_indices.shape == (tree.n_nodes, 2)
        assert tree.nonnull_split_count.shape == (tree.n_nodes, 2)

    def test_child_and_parent_indices(self):
        assert DecisionTree.true_child(0) == 1
        assert DecisionTree.false_child(0) == 2
        assert DecisionTree.true_child(2) == 5
        assert DecisionTree.parent_index(1) == 0
        assert DecisionTree.parent_index(2) == 0
        assert DecisionTree.parent_index(5) == 2

    def test_root_has_no_parent(self):
        with pytest.raises(TreeInvariantError):
            DecisionTree.parent_index(0)

    def test_grow_preserves_content(self):
        tree = DecisionTree(max_n_surr=1)
        _split_root(tree)
        tree.surr_indices[0, 0] = 1
        tree.surr_thresholds[0, 0] = 5.0
        tree.surr_status[0, 0] = 2
        tree.surr_agreement[0, 0] = 9

        grown = grow(tree)

        assert tree.tree_depth == 2
        assert grown.tree_depth == 3
        for name in ('feature_indices', 'feature_thresholds', 'is_categorical',
                     'nonnull_split_count', 'surr_indices', 'surr_thresholds',
                     'surr_status', 'surr_agreement', 'predictions'):
            np.testing.assert_array_equal(getattr(grown, name)[:3], getattr(tree, name))

        assert np.all(grown.feature_indices[3:] == NODE_NON_EXISTING)
        assert np.all(grown.surr_indices[3:] == SURR_NON_EXISTING)
        assert np.all(grown.predictions[3:] == 0)
        assert np.all(grown.feature_thresholds[3:] == 0)
        assert np.all(grown.nonnull_split_count[3:] == 0)

    def test_increment_in_place_replaces_arrays(self):
        tree = DecisionTree()
        before = tree.feature_indices
        tree.increment_in_place()
        assert tree.feature_indices is not before
        assert before[0] == IN_PROCESS_LEAF
        assert tree.feature_indices[0] == IN_PROCESS_LEAF


# =============================================================================
# Splits
# =============================================================================

class TestUpdatePrimarySplit:

    def test_children_seeded(self):
        tree = DecisionTree()
        _split_root(tree)
        assert tree.feature_indices[0] == 0
        assert tree.feature_thresholds[0] == 3.0
        assert tree.feature_indices[1] == IN_PROCESS_LEAF
        assert tree.feature_indices[2] == IN_PROCESS_LEAF
        np.testing.assert_array_equal(tree.predictions[1], [6.0, 0.0, 6.0])
        np.testing.assert_array_equal(tree.nonnull_split_count[0], [6, 4])

    def test_pure_children_settle(self):
        tree = DecisionTree()
        assert _split_root(tree, false_stats=(0.0, 4.0, 4.0))

    def test_impure_child_keeps_splitting(self):
        tree = DecisionTree()
        assert not _split_root(tree, false_stats=(1.0, 3.0, 4.0))

    def test_small_children_settle(self):
        tree = DecisionTree()
        assert _split_root(tree, true_stats=(1.0, 1.0, 2.0),
                           false_stats=(1.0, 2.0, 3.0), min_split=5)

    def test_settle_both_requires_pure_and_small(self):
        tree = DecisionTree()
        tree.increment_in_place()
        settled = tree.update_primary_split(
            0, 0, 3.0, False, 2,
            np.array([6.0, 0.0, 6.0]), np.array([0.0, 4.0, 4.0]),
            settle_rule="both",
        )
        assert not settled

    def test_split_before_growth_fails(self):
        tree = DecisionTree()
        with pytest.raises(TreeInvariantError):
            tree.update_primary_split(
                0, 0, 3.0, False, 2, np.zeros(3), np.zeros(3)
            )

    def test_finalize(self):
        tree = DecisionTree()
        _split_root(tree)
        tree.finalize()
        assert tree.feature_indices[1] == FINISHED_LEAF
        assert tree.feature_indices[2] == FINISHED_LEAF
        assert tree.feature_indices[0] == 0


# =============================================================================
# Routing
# =============================================================================

class TestSearch:

    def test_routes_by_threshold(self):
        tree = DecisionTree()
        _split_root(tree)
        assert tree.search([], [2.0]) == 1
        assert tree.search([], [3.0]) == 1
        assert tree.search([], [4.0]) == 2

    def test_deterministic(self):
        tree = DecisionTree()
        _split_root(tree)
        row = ([], [2.5])
        assert tree.search(*row) == tree.search(*row)

    def test_categorical_split(self):
        tree = DecisionTree()
        _split_root(tree, threshold=1.0, is_categorical=True)
        assert tree.search([0], []) == 1
        assert tree.search([1], []) == 1
        assert tree.search([2], []) == 2

    def test_missing_goes_to_majority(self):
        tree = DecisionTree()
        _split_root(tree, true_stats=(6.0, 0.0, 6.0), false_stats=(1.0, 3.0, 4.0))
        assert tree.get_majority_split(0)
        assert tree.get_majority_count(0) == 6
        assert tree.search([], [NAN]) == 1
        assert tree.search([], [None]) == 1

    def test_missing_majority_false(self):
        tree = DecisionTree()
        _split_root(tree, true_stats=(1.0, 1.0, 2.0), false_stats=(1.0, 3.0, 4.0))
        assert not tree.get_majority_split(0)
        assert tree.search([], [NAN]) == 2

    def test_majority_tie_goes_true(self):
        tree = DecisionTree()
        _split_root(tree, true_stats=(2.0, 0.0, 2.0), false_stats=(0.0, 2.0, 2.0))
        assert tree.get_majority_split(0)

    def test_missing_categorical_code(self):
        tree = DecisionTree()
        _split_root(tree, true_stats=(1.0, 0.0, 1.0), false_stats=(0.0, 3.0, 3.0),
                    threshold=0.0, is_categorical=True)
        assert tree.search([-1], []) == 2
        assert tree.search([None], []) == 2

    def test_surrogate_forward(self):
        tree = DecisionTree(max_n_surr=2)
        _split_root(tree, true_stats=(1.0, 1.0, 2.0), false_stats=(1.0, 3.0, 4.0))
        tree.surr_indices[0, 0] = 1
        tree.surr_thresholds[0, 0] = 5.0
        tree.surr_status[0, 0] = 2
        assert tree.search([], [NAN, 2.0]) == 1
        assert tree.search([], [NAN, 6.0]) == 2

    def test_surrogate_reverse(self):
        tree = DecisionTree(max_n_surr=1)
        _split_root(tree)
        tree.surr_indices[0, 0] = 1
        tree.surr_thresholds[0, 0] = 5.0
        tree.surr_status[0, 0] = -2
        assert tree.search([], [NAN, 2.0]) == 2
        assert tree.search([], [NAN, 6.0]) == 1

    def test_fallback_chain(self):
        tree = DecisionTree(max_n_surr=2)
        _split_root(tree, true_stats=(1.0, 1.0, 2.0), false_stats=(1.0, 3.0, 4.0))
        # first surrogate: categorical feature 0, second: continuous feature 1
        tree.surr_indices[0] = [0, 1]
        tree.surr_thresholds[0] = [0.0, 5.0]
        tree.surr_status[0] = [1, 2]

        assert tree.search([0], [NAN, 9.0]) == 1
        assert tree.search([-1], [NAN, 2.0]) == 1
        # every surrogate missing: majority (false)
        assert tree.search([-1], [NAN, NAN]) == 2
        assert tree.get_surr_split(0, [-1], [NAN, NAN]) == tree.get_majority_split(0)

    def test_non_existing_node_fails(self):
        tree = DecisionTree()
        tree.feature_indices[0] = NODE_NON_EXISTING
        with pytest.raises(TreeInvariantError):
            tree.search([], [1.0])

    def test_split_without_children_fails(self):
        tree = DecisionTree()
        tree.feature_indices[0] = 0
        with pytest.raises(TreeInvariantError):
            tree.search([], [1.0])

    def test_majority_of_leaf_fails(self):
        tree = DecisionTree()
        with pytest.raises(TreeInvariantError):
            tree.get_majority_split(0)
        with pytest.raises(TreeInvariantError):
            tree.get_majority_count(0)


# =============================================================================
# Prediction and introspection
# =============================================================================

class TestIntrospection:

    def test_predict_classification(self):
        tree = DecisionTree()
        _split_root(tree, true_stats=(6.0, 0.0, 6.0), false_stats=(1.0, 3.0, 4.0))
        np.testing.assert_allclose(tree.predict([], [1.0]), [1.0, 0.0])
        assert tree.predict_response([], [1.0]) == 0.0
        assert tree.predict_response([], [5.0]) == 1.0

    def test_predict_regression(self):
        tree = DecisionTree(is_regression=True)
        _split_root(tree, true_stats=(2.0, 2.0, 2.0, 2.0),
                    false_stats=(2.0, 10.0, 50.0, 2.0))
        assert tree.predict_response([], [1.0]) == pytest.approx(1.0)
        assert tree.predict_response([], [9.0]) == pytest.approx(5.0)

    def test_node_views(self):
        tree = DecisionTree()
        _split_root(tree)
        tree.increment_in_place()
        tree.feature_indices[2] = FINISHED_LEAF

        root = tree.node(0)
        assert isinstance(root, SplitNode)
        assert (root.true_child, root.false_child) == (1, 2)
        assert root.threshold == 3.0
        assert isinstance(tree.node(1), InProcessLeaf)
        assert isinstance(tree.node(2), FinishedLeaf)
        assert isinstance(tree.node(3), NonExistentNode)
        assert tree.leaf_indices() == [1, 2]

    def test_risk(self):
        tree = DecisionTree(is_regression=True)
        tree.predictions[0] = [2.0, 4.0, 10.0, 2.0]
        assert tree.compute_risk(0) == pytest.approx(2.0)

        clf = DecisionTree()
        clf.predictions[0] = [6.0, 2.0, 8.0]
        assert clf.compute_misclassification(0) == pytest.approx(2.0)
        assert clf.compute_risk(0) == pytest.approx(2.0)
        assert clf.node_count(0) == 8
        assert clf.node_weighted_count(0) == pytest.approx(8.0)

    def test_recompute_tree_depth_ignores_empty_layers(self):
        tree = DecisionTree()
        _split_root(tree)
        tree.increment_in_place()
        assert tree.tree_depth == 3
        assert tree.recompute_tree_depth() == 2

    def test_surrogate_views(self):
        tree = DecisionTree(max_n_surr=2)
        _split_root(tree)
        tree.surr_indices[0, 0] = 3
        tree.surr_thresholds[0, 0] = 1.0
        tree.surr_status[0, 0] = -1
        tree.surr_agreement[0, 0] = 7
        surrogates = tree.surrogates(0)
        assert len(surrogates) == 1
        assert surrogates[0].is_categorical
        assert surrogates[0].is_reverse
        assert surrogates[0].agreement == 7


# =============================================================================
# Serialization
# =============================================================================

class TestSerialization:

    def test_dict_round_trip(self):
        tree = DecisionTree(n_y_labels=3, max_n_surr=1, impurity="entropy")
        _split_root(tree, true_stats=(2.0, 0.0, 1.0, 3.0),
                    false_stats=(0.0, 4.0, 1.0, 5.0))
        restored = DecisionTree.from_dict(tree.to_dict())
        assert restored.tree_depth == tree.tree_depth
        assert restored.impurity_type == "entropy"
        np.testing.assert_array_equal(restored.feature_indices, tree.feature_indices)
        np.testing.assert_array_equal(restored.predictions, tree.predictions)

    def test_save_and_load(self, tmp_path):
        tree = DecisionTree(max_n_surr=1)
        _split_root(tree)
        path = tmp_path / "tree.json"
        tree.save(str(path))
        loaded = DecisionTree.load(str(path))
        assert loaded.search([], [NAN]) == tree.search([], [NAN])
        np.testing.assert_array_equal(loaded.nonnull_split_count, tree.nonnull_split_count)

    def test_copy_is_independent(self):
        tree = DecisionTree()
        clone = tree.copy()
        clone.feature_indices[0] = FINISHED_LEAF
        assert tree.feature_indices[0] == IN_PROCESS_LEAF
