from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

import numpy as np
import pandas as pd

from sklearn.datasets import load_breast_cancer, load_diabetes, load_wine
from sklearn.metrics import accuracy_score, mean_absolute_error, r2_score
from sklearn.model_selection import train_test_split
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
from leveltree import LevelwiseTreeClassifier, LevelwiseTreeRegressor  # type: ignore


def parse_args():
    p = argparse.ArgumentParser(
        description="Compare level-wise trees with scikit-learn's CART trees"
    )
    p.add_argument("--test-size", type=float, default=0.3)
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--max-depth", type=int, default=6)
    p.add_argument("--partitions", type=int, default=4, help="Row partitions per pass")
    p.add_argument("--missing-rate", type=float, default=0.2,
                   help="Share of test values blanked for the surrogate run")
    p.add_argument("--verbose", type=int, default=0)
    return p.parse_args()


# -------------------------------------------------------
# DATASETS
# -------------------------------------------------------

def make_mixed_dataset(n_samples: int = 2000, seed: int = 42):
    """Synthetic data with one categorical and three continuous columns."""
    rng = np.random.default_rng(seed)
    df = pd.DataFrame({
        "region": rng.choice(["north", "south", "east", "west"], size=n_samples),
        "income": rng.lognormal(10.0, 0.5, size=n_samples),
        "age": rng.integers(18, 80, size=n_samples).astype(float),
        "noise": rng.standard_normal(n_samples),
    })
    score = (
        (df["region"].isin(["north", "east"])).astype(float)
        + (df["income"] > 25000).astype(float)
        + (df["age"] > 45).astype(float)
    )
    target = pd.Series((score >= 2).astype(int), name="target")
    return df, target


def load_all_benchmarks(seed=42):
    """(name, task, frame, target, categorical columns) of each benchmark."""
    datasets = []

    bc = load_breast_cancer(as_frame=True)
    datasets.append(("BreastCancer", "classification", bc.data, bc.target, []))

    wine = load_wine(as_frame=True)
    datasets.append(("Wine", "classification", wine.data, wine.target, []))

    diab = load_diabetes(as_frame=True)
    datasets.append(("Diabetes", "regression", diab.data, diab.target, []))

    mixed, mixed_target = make_mixed_dataset(seed=seed)
    datasets.append(("MixedSynthetic", "classification", mixed, mixed_target, ["region"]))

    return datasets


def split_blocks(df: pd.DataFrame, cat_columns):
    """Categorical block as objects, continuous block as floats."""
    con_columns = [c for c in df.columns if c not in cat_columns]
    X_cat = df[cat_columns].to_numpy(dtype=object) if cat_columns else None
    X_con = df[con_columns].to_numpy(dtype=float) if con_columns else None
    return X_cat, X_con


def blank_values(X: np.ndarray, rate: float, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    X = X.copy()
    X[rng.random(X.shape) < rate] = np.nan
    return X


# -------------------------------------------------------
# BENCHMARK RUNNER
# -------------------------------------------------------

def score(task, y_true, y_pred):
    if task == "classification":
        return {"Accuracy": round(accuracy_score(y_true, y_pred), 4)}
    return {
        "R2": round(r2_score(y_true, y_pred), 4),
        "MAE": round(mean_absolute_error(y_true, y_pred), 4),
    }


def run_dataset(name, task, df, target, cat_columns, args):
    rows = []
    train_df, test_df, y_train, y_test = train_test_split(
        df, target, test_size=args.test_size, random_state=args.seed
    )
    y_train = y_train.to_numpy()
    y_test = y_test.to_numpy()
    X_cat_train, X_con_train = split_blocks(train_df, cat_columns)
    X_cat_test, X_con_test = split_blocks(test_df, cat_columns)

    estimator = LevelwiseTreeClassifier if task == "classification" else LevelwiseTreeRegressor
    common = dict(
        max_depth=args.max_depth,
        min_split=20,
        n_bins=32,
        n_partitions=args.partitions,
        verbose=args.verbose,
        random_state=args.seed,
    )
    variants = [
        ("Levelwise", estimator(**common)),
        ("Levelwise+surrogates", estimator(max_surrogates=3, **common)),
        ("Levelwise-random", estimator(n_random_features=max(1, df.shape[1] // 2), **common)),
    ]
    for label, model in variants:
        start = time.perf_counter()
        model.fit(X_cat_train, X_con_train, y_train)
        elapsed = time.perf_counter() - start
        rows.append({
            "Dataset": name, "Model": label, "Missing": False,
            "Levels": model.n_levels_, "FitSeconds": round(elapsed, 3),
            **score(task, y_test, model.predict(X_cat_test, X_con_test)),
        })
        if X_con_test is not None and args.missing_rate > 0:
            X_blank = blank_values(X_con_test, args.missing_rate, args.seed)
            rows.append({
                "Dataset": name, "Model": label, "Missing": True,
                "Levels": model.n_levels_, "FitSeconds": round(elapsed, 3),
                **score(task, y_test, model.predict(X_cat_test, X_blank)),
            })

    # scikit-learn needs numeric, complete inputs
    encoded_train = pd.get_dummies(train_df, columns=cat_columns)
    encoded_test = pd.get_dummies(test_df, columns=cat_columns).reindex(
        columns=encoded_train.columns, fill_value=0
    )
    reference_cls = DecisionTreeClassifier if task == "classification" else DecisionTreeRegressor
    reference = reference_cls(max_depth=args.max_depth, min_samples_split=20,
                              random_state=args.seed)
    start = time.perf_counter()
    reference.fit(encoded_train, y_train)
    elapsed = time.perf_counter() - start
    rows.append({
        "Dataset": name, "Model": "sklearn-CART", "Missing": False,
        "Levels": reference.get_depth() + 1, "FitSeconds": round(elapsed, 3),
        **score(task, y_test, reference.predict(encoded_test)),
    })
    return rows


def main():
    args = parse_args()
    results = []
    for name, task, df, target, cat_columns in load_all_benchmarks(seed=args.seed):
        print(f"\n=== {name} ({task}, {len(df)} rows) ===")
        results.extend(run_dataset(name, task, df, target, cat_columns, args))

    table = pd.DataFrame(results)
    pd.set_option("display.width", 120)
    print("\n=== RESULTS ===")
    print(table.to_string(index=False))


if __name__ == "__main__":
    main()
