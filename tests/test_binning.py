"""
Test suite for continuous pre-binning and categorical level encoding.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

_repo_root = Path(__file__).resolve().parents[1]
src_path = str(_repo_root / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from leveltree.binning import CategoricalEncoder, QuantileBinner


# =============================================================================
# QuantileBinner
# =============================================================================

def test_binner_shape_and_order():
    """Thresholds are one row per feature and non-decreasing."""
    X = np.random.default_rng(0).standard_normal((200, 3))
    binner = QuantileBinner(n_bins=10).fit(X)
    assert binner.con_splits_.shape == (3, 10)
    assert binner.n_features_ == 3
    assert np.all(np.diff(binner.con_splits_, axis=1) >= 0)


def test_binner_interior_quantiles():
    X = np.arange(100, dtype=float).reshape(-1, 1)
    binner = QuantileBinner(n_bins=3).fit(X)
    np.testing.assert_allclose(binner.con_splits_[0], [24.75, 49.5, 74.25])


def test_binner_few_values_use_midpoints():
    X = np.array([[1.0], [2.0], [3.0], [1.0]])
    binner = QuantileBinner(n_bins=4).fit(X)
    np.testing.assert_allclose(binner.con_splits_[0], [1.5, 2.5, 3.0, 3.0])


def test_binner_ignores_nan():
    X = np.array([[1.0], [np.nan], [3.0]])
    binner = QuantileBinner(n_bins=2).fit(X)
    np.testing.assert_allclose(binner.con_splits_[0], [2.0, 3.0])


def test_binner_all_nan_column():
    X = np.array([[np.nan, 1.0], [np.nan, 2.0]])
    binner = QuantileBinner(n_bins=2).fit(X)
    np.testing.assert_array_equal(binner.con_splits_[0], [0.0, 0.0])


def test_binner_constant_feature():
    """A constant column has no separating threshold."""
    X = np.full((5, 1), 7.0)
    binner = QuantileBinner(n_bins=3).fit(X)
    np.testing.assert_array_equal(binner.con_splits_[0], [7.0, 7.0, 7.0])


def test_binner_rejects_bad_input():
    with pytest.raises(ValueError):
        QuantileBinner(n_bins=0)
    with pytest.raises(ValueError, match="2D"):
        QuantileBinner().fit(np.arange(5.0))


# =============================================================================
# CategoricalEncoder
# =============================================================================

def test_encoder_orders_levels_by_mean_response():
    X = np.array([["a"], ["b"], ["c"], ["a"], ["b"]], dtype=object)
    y = np.array([1.0, 0.0, 1.0, 1.0, 0.0])
    encoder = CategoricalEncoder().fit(X, y)
    # ties keep first appearance: a before c
    assert encoder.levels_ == [["b", "a", "c"]]
    np.testing.assert_array_equal(encoder.cat_levels_, [3])
    np.testing.assert_array_equal(encoder.transform(X)[:, 0], [1, 0, 2, 1, 0])


def test_encoder_missing_and_unseen_values():
    X = np.array([["a"], ["b"]], dtype=object)
    encoder = CategoricalEncoder().fit(X, np.array([0.0, 1.0]))
    codes = encoder.transform(np.array([["z"], [None], [float("nan")], ["b"]], dtype=object))
    np.testing.assert_array_equal(codes[:, 0], [-1, -1, -1, 1])


def test_encoder_missing_values_do_not_create_levels():
    X = np.array([[None], ["a"], [float("nan")]], dtype=object)
    encoder = CategoricalEncoder().fit(X, np.zeros(3))
    assert encoder.levels_ == [["a"]]


def test_encoder_fit_transform_matches_transform():
    X = np.array([["x", 1], ["y", 2], ["x", 2]], dtype=object)
    y = np.array([0.0, 1.0, 0.5])
    ft = CategoricalEncoder().fit_transform(X, y)
    tr = CategoricalEncoder().fit(X, y).transform(X)
    assert np.array_equal(ft, tr)


def test_encoder_dict_round_trip():
    X = np.array([["x", 1], ["y", 2], ["x", 3]], dtype=object)
    y = np.array([0.0, 1.0, 0.5])
    encoder = CategoricalEncoder().fit(X, y)
    restored = CategoricalEncoder.from_dict(encoder.to_dict())
    np.testing.assert_array_equal(restored.transform(X), encoder.transform(X))
    np.testing.assert_array_equal(restored.cat_levels_, encoder.cat_levels_)


def test_encoder_errors():
    with pytest.raises(RuntimeError, match="not been fitted"):
        CategoricalEncoder().transform(np.array([["a"]], dtype=object))
    encoder = CategoricalEncoder().fit(np.array([["a"]], dtype=object), np.zeros(1))
    with pytest.raises(ValueError, match="categorical columns"):
        encoder.transform(np.array([["a", "b"]], dtype=object))
