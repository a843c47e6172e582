"""
leveltree - Level-wise decision tree induction over mergeable data passes.

Trees are grown breadth-first: every level costs one pass over the data,
which may arrive as any number of independent partitions. Each partition
produces a sufficient-statistics accumulator, accumulators are merged, and
the merged statistics decide the splits of the whole frontier at once.

Features:
- Classification (gini, entropy, misclassification) and regression
- Categorical features and pre-binned continuous features
- Surrogate splits for rows with missing split values
- Random-feature-subset mode (random-forest style node splitting)
- Array-backed tree with JSON serialization

Example usage:
    >>> from leveltree import LevelwiseTreeClassifier, LevelwiseTreeRegressor
    >>> import numpy as np
    >>>
    >>> X_con = np.random.randn(300, 4)
    >>> X_cat = np.random.choice(["a", "b", "c"], size=(300, 1))
    >>>
    >>> # Classification
    >>> y_class = (X_con[:, 0] > 0).astype(int)
    >>> classifier = LevelwiseTreeClassifier(max_depth=4, max_surrogates=2)
    >>> classifier.fit(X_cat, X_con, y_class)
    >>> labels = classifier.predict(X_cat, X_con)
    >>>
    >>> # Regression
    >>> y = 2 * X_con[:, 1] + np.random.randn(300) * 0.1
    >>> regressor = LevelwiseTreeRegressor(max_depth=5)
    >>> regressor.fit(None, X_con, y)
    >>> predictions = regressor.predict(None, X_con)
"""

__version__ = "1.0.0"
__author__ = "leveltree Contributors"

# Core estimators
from .classifier import LevelwiseTreeClassifier
from .regressor import LevelwiseTreeRegressor

# Training engine
from .trainer import TreeTrainer
from .tree import (
    DecisionTree,
    FINISHED_LEAF,
    IN_PROCESS_LEAF,
    NODE_NON_EXISTING,
    SURR_NON_EXISTING,
    Surrogate,
    SplitNode,
    FinishedLeaf,
    InProcessLeaf,
    NonExistentNode,
)
from .accumulator import TreeAccumulator, build_accumulator, merge_all
from .expansion import expand, expand_by_sampling, should_split
from .surrogates import SurrogateAccumulator, pick_surrogates

# Impurity functions
from .impurity import impurity, impurity_gain, is_child_pure

# Base classes and preprocessing
from .base import BaseLevelwiseEstimator, TreeParams
from .binning import CategoricalEncoder, QuantileBinner

# Utility functions
from .utils import (
    Row,
    TreeInvariantError,
    AccumulationTerminatedError,
    InconsistentStateError,
    NotFittedError,
    log_message,
)

__all__ = [
    # Version
    "__version__",
    # Estimators
    "LevelwiseTreeClassifier",
    "LevelwiseTreeRegressor",
    # Engine
    "TreeTrainer",
    "DecisionTree",
    "FINISHED_LEAF",
    "IN_PROCESS_LEAF",
    "NODE_NON_EXISTING",
    "SURR_NON_EXISTING",
    "Surrogate",
    "SplitNode",
    "FinishedLeaf",
    "InProcessLeaf",
    "NonExistentNode",
    "TreeAccumulator",
    "build_accumulator",
    "merge_all",
    "expand",
    "expand_by_sampling",
    "should_split",
    "SurrogateAccumulator",
    "pick_surrogates",
    # Impurity
    "impurity",
    "impurity_gain",
    "is_child_pure",
    # Base / preprocessing
    "BaseLevelwiseEstimator",
    "TreeParams",
    "CategoricalEncoder",
    "QuantileBinner",
    # Utils
    "Row",
    "TreeInvariantError",
    "AccumulationTerminatedError",
    "InconsistentStateError",
    "NotFittedError",
    "log_message",
]
