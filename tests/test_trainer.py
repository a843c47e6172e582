"""
Test suite for the level-by-level training driver.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

_repo_root = Path(__file__).resolve().parents[1]
src_path = str(_repo_root / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from leveltree.base import TreeParams
from leveltree.tree import IN_PROCESS_LEAF
from leveltree.trainer import TreeTrainer
from leveltree.utils import AccumulationTerminatedError, Row


CON_SPLITS = np.array([[2.5, 5.5, 8.5]])
CAT_LEVELS = [2]


def _rows():
    """Label 1 when the continuous value is above 5.5 or the code is 1."""
    rows = []
    for value in range(1, 11):
        for code in (0, 1):
            label = 1 if (value > 5.5 or code == 1) else 0
            rows.append(Row([code], [float(value)], label, 1.0))
    return rows


def _partitions(rows, n_parts):
    return [
        [rows[i] for i in part]
        for part in np.array_split(np.arange(len(rows)), n_parts)
    ]


# =============================================================================
# Training loop
# =============================================================================

class TestTreeTrainer:

    def test_fits_two_levels(self):
        trainer = TreeTrainer(TreeParams(max_depth=4, min_split=2))
        tree = trainer.fit_partitions(_partitions(_rows(), 1), CON_SPLITS, CAT_LEVELS)

        assert not np.any(tree.feature_indices == IN_PROCESS_LEAF)
        assert trainer.tree_ is tree
        for leaf in tree.leaf_indices():
            stats = tree.predictions[leaf]
            assert min(stats[0], stats[1]) == 0.0
        for value in range(1, 11):
            for code in (0, 1):
                expected = 1 if (value > 5.5 or code == 1) else 0
                assert tree.predict_response([code], [float(value)]) == expected

    def test_history(self):
        trainer = TreeTrainer(TreeParams(max_depth=4, min_split=2))
        trainer.fit_partitions(_partitions(_rows(), 2), CON_SPLITS, CAT_LEVELS)

        assert len(trainer.history_) == trainer.n_levels_
        assert [record["level"] for record in trainer.history_] == list(
            range(trainer.n_levels_)
        )
        assert trainer.history_[0]["n_rows"] == 20
        assert trainer.history_[0]["n_splits"] == 1
        assert trainer.history_[0]["tree_depth"] == 2
        n_split_nodes = int(np.sum(trainer.tree_.feature_indices >= 0))
        assert sum(record["n_splits"] for record in trainer.history_) == n_split_nodes

    def test_partition_count_does_not_change_tree(self):
        params = TreeParams(max_depth=4, min_split=2, max_surrogates=1)
        single = TreeTrainer(params).fit_partitions(
            _partitions(_rows(), 1), CON_SPLITS, CAT_LEVELS
        )
        split = TreeTrainer(params).fit_partitions(
            _partitions(_rows(), 4), CON_SPLITS, CAT_LEVELS
        )
        for name in ("feature_indices", "feature_thresholds", "is_categorical",
                     "surr_indices", "surr_status", "surr_agreement", "predictions"):
            np.testing.assert_array_equal(getattr(single, name), getattr(split, name))

    def test_empty_partitions_are_fine(self):
        rows = _rows()
        tree = TreeTrainer(TreeParams(max_depth=4, min_split=2)).fit_partitions(
            [rows, []], CON_SPLITS, CAT_LEVELS
        )
        assert tree.predict_response([0], [9.0]) == 1

    def test_depth_limit(self):
        trainer = TreeTrainer(TreeParams(max_depth=1, min_split=2))
        tree = trainer.fit_partitions(_partitions(_rows(), 1), CON_SPLITS, CAT_LEVELS)
        assert tree.tree_depth == 2
        assert trainer.n_levels_ == 1

    def test_regression(self):
        rows = [Row([], [float(v)], float(v > 5), 1.0) for v in range(1, 11)]
        params = TreeParams(max_depth=3, min_split=2, is_regression=True)
        tree = TreeTrainer(params).fit_partitions([rows], CON_SPLITS, None)
        assert tree.is_regression
        assert tree.feature_thresholds[0] == 5.5
        assert tree.predict_response([], [2.0]) == pytest.approx(0.0)
        assert tree.predict_response([], [7.0]) == pytest.approx(1.0)

    def test_random_features_reproducible(self):
        params = TreeParams(max_depth=4, min_split=2, n_random_features=1, random_state=7)
        first = TreeTrainer(params).fit_partitions([_rows()], CON_SPLITS, CAT_LEVELS)
        second = TreeTrainer(params).fit_partitions([_rows()], CON_SPLITS, CAT_LEVELS)
        np.testing.assert_array_equal(first.feature_indices, second.feature_indices)
        np.testing.assert_array_equal(first.feature_thresholds, second.feature_thresholds)

    def test_logs_each_level(self, capsys):
        trainer = TreeTrainer(TreeParams(max_depth=4, min_split=2, verbose=1))
        trainer.fit_partitions([_rows()], CON_SPLITS, CAT_LEVELS)
        out = capsys.readouterr().out
        assert out.count("[leveltree] Level") == trainer.n_levels_
        assert "Finished after" in out


# =============================================================================
# Failures
# =============================================================================

class TestTreeTrainerErrors:

    def test_bad_row_aborts_training(self):
        rows = _rows() + [Row([0], [1.0], float("nan"), 1.0)]
        trainer = TreeTrainer(TreeParams(max_depth=4, min_split=2))
        with pytest.warns(RuntimeWarning, match="not finite"):
            with pytest.raises(AccumulationTerminatedError):
                trainer.fit_partitions(_partitions(rows, 3), CON_SPLITS, CAT_LEVELS)

    def test_feature_layout_mismatch_aborts_training(self):
        rows = _rows() + [Row([0, 1], [1.0], 0, 1.0)]
        trainer = TreeTrainer(TreeParams(max_depth=4, min_split=2))
        with pytest.warns(RuntimeWarning, match="categorical"):
            with pytest.raises(AccumulationTerminatedError):
                trainer.fit_partitions([rows], CON_SPLITS, CAT_LEVELS)

    def test_no_partitions(self):
        with pytest.raises(ValueError, match="at least one partition"):
            TreeTrainer().fit_partitions([], CON_SPLITS, CAT_LEVELS)

    def test_invalid_params(self):
        with pytest.raises(ValueError, match="min_split"):
            TreeTrainer(TreeParams(min_split=0)).fit_partitions(
                [_rows()], CON_SPLITS, CAT_LEVELS
            )
