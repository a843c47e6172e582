"""
Test suite for LevelwiseTreeRegressor.

Tests the level-wise regressor on synthetic data.
"""

import os
import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest

_repo_root = Path(__file__).resolve().parents[1]
src_path = str(_repo_root / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from leveltree import LevelwiseTreeRegressor
from leveltree.utils import NotFittedError


def _synthetic_regression(seed: int = 42):
    """Generate synthetic regression data."""
    rng = np.random.default_rng(seed)
    X = rng.uniform(0.0, 10.0, size=(300, 2))
    noise = rng.normal(scale=0.2, size=300)
    y = 2.0 * X[:, 0] + noise
    return X, y


def test_regressor_beats_mean_baseline():
    """Test that regressor explains most of the variance."""
    X, y = _synthetic_regression()
    model = LevelwiseTreeRegressor(max_depth=6, min_split=5)
    model.fit(None, X, y)
    assert model.score(None, X, y) > 0.9


def test_predict_shape_matches_input():
    """Test that predict returns correct shape."""
    X, y = _synthetic_regression()
    model = LevelwiseTreeRegressor(max_depth=3, min_split=10)
    model.fit(None, X, y)
    preds = model.predict(None, X[:15])
    assert preds.shape == (15,)


def test_root_prediction_is_weighted_mean():
    X = np.zeros((2, 1))
    y = np.array([1.0, 3.0])
    model = LevelwiseTreeRegressor(max_depth=3, min_split=2)
    model.fit(None, X, y, sample_weight=np.array([1.0, 3.0]))
    assert model.tree_.tree_depth == 1
    assert model.predict(None, X[:1])[0] == pytest.approx(2.5)


def test_categorical_levels_fit_exactly():
    levels = np.array(["a", "b", "c"] * 30, dtype=object)
    y = np.select([levels == "a", levels == "b"], [0.0, 5.0], default=10.0)
    model = LevelwiseTreeRegressor(max_depth=3, min_split=2)
    model.fit(levels.reshape(-1, 1), None, y)

    assert model.tree_.is_categorical[0] == 1
    assert model.score(levels.reshape(-1, 1), None, y) == pytest.approx(1.0)
    preds = model.predict(np.array([["a"], ["b"], ["c"]], dtype=object), None)
    np.testing.assert_allclose(preds, [0.0, 5.0, 10.0])


def test_weights_as_rows_changes_counts():
    X = np.array([[1.0], [2.0], [3.0], [4.0]])
    y = np.array([0.0, 0.0, 10.0, 10.0])
    weights = np.full(4, 2.0)

    counted = LevelwiseTreeRegressor(max_depth=3, min_split=8, weights_as_rows=True)
    counted.fit(None, X, y, sample_weight=weights)
    assert counted.tree_.tree_depth == 2
    assert counted.tree_.feature_thresholds[0] == pytest.approx(2.5)
    assert counted.tree_.node_count(1) == 4

    plain = LevelwiseTreeRegressor(max_depth=3, min_split=8)
    plain.fit(None, X, y, sample_weight=weights)
    assert plain.tree_.tree_depth == 1


def test_leaf_risk_is_zero_for_exact_fit():
    X = np.array([[1.0], [2.0], [3.0], [4.0]])
    y = np.array([0.0, 0.0, 10.0, 10.0])
    model = LevelwiseTreeRegressor(max_depth=2, min_split=2, min_bucket=1)
    model.fit(None, X, y)
    assert model.tree_.compute_risk(0) == pytest.approx(100.0)
    for leaf in model.tree_.leaf_indices():
        assert model.tree_.compute_risk(leaf) == pytest.approx(0.0)


def test_reproducibility():
    """Test reproducibility with same random_state."""
    X, y = _synthetic_regression()

    model1 = LevelwiseTreeRegressor(max_depth=4, n_random_features=1, random_state=42)
    model1.fit(None, X, y)
    preds1 = model1.predict(None, X)

    model2 = LevelwiseTreeRegressor(max_depth=4, n_random_features=1, random_state=42)
    model2.fit(None, X, y)
    preds2 = model2.predict(None, X)

    assert np.allclose(preds1, preds2)


def test_nan_features_are_routed():
    """NaN feature values are missing, not errors."""
    rng = np.random.default_rng(42)
    X = rng.normal(size=(50, 3))
    X[0, 0] = np.nan
    y = rng.normal(size=50)
    model = LevelwiseTreeRegressor(max_depth=3, min_split=5, max_surrogates=1)
    model.fit(None, X, y)
    preds = model.predict(None, X)
    assert preds.shape == (50,)
    assert np.all(np.isfinite(preds))


def test_nan_target_raises():
    X, y = _synthetic_regression()
    y[3] = np.nan
    with pytest.raises(ValueError, match="NaN"):
        LevelwiseTreeRegressor().fit(None, X, y)


def test_constant_target_scores_zero():
    X, _ = _synthetic_regression()
    y = np.full(len(X), 4.0)
    model = LevelwiseTreeRegressor(max_depth=3)
    model.fit(None, X, y)
    assert model.tree_.tree_depth == 1
    assert model.score(None, X, y) == 0.0


def test_constant_decimal_target_is_not_split():
    """A constant target that is not exactly representable stays a single leaf."""
    X = np.arange(40, dtype=float).reshape(-1, 1)
    y = np.full(40, 0.1)
    model = LevelwiseTreeRegressor(max_depth=3, min_split=2, min_bucket=1)
    model.fit(None, X, y)
    assert model.tree_.feature_indices[0] < 0
    assert model.n_levels_ == 1
    np.testing.assert_allclose(model.predict(None, X), 0.1)


def test_unfitted_predict_raises():
    with pytest.raises(NotFittedError):
        LevelwiseTreeRegressor().predict(None, np.zeros((2, 2)))


def test_save_and_load_model():
    X, y = _synthetic_regression()
    model = LevelwiseTreeRegressor(max_depth=4, min_split=10)
    model.fit(None, X, y)

    with tempfile.NamedTemporaryFile(delete=False, suffix='.json') as f:
        temp_path = f.name
    try:
        model.save_model(temp_path)
        loaded = LevelwiseTreeRegressor().load_model(temp_path)
        np.testing.assert_allclose(loaded.predict(None, X), model.predict(None, X))
        assert loaded.tree_.is_regression
    finally:
        os.unlink(temp_path)


def test_set_params_rejects_task_switch():
    model = LevelwiseTreeRegressor()
    with pytest.raises(ValueError):
        model.set_params(is_regression=False)
    model.set_params(max_depth=2)
    assert model.max_depth == 2
