"""
Death/hospice classifiers by virus
==================================
1. Logistic regression on a per-virus predictor panel, with a transfer
   matrix: each virus's model is scored on every virus's held-out test split.
2. Gradient boosting on the full static panel. Hyperparameters come from a
   maximum-entropy design scored by out-of-bag AUROC on bootstrap resamples
   of the training split; the best configuration is refit on the whole
   training split and validated by bootstrap of the virus's own test split.

Missing predictor values are median-imputed inside each pipeline, using the
training data only.
"""

from __future__ import annotations

from functools import partial

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.ensemble import GradientBoostingClassifier
from sklearn.impute import SimpleImputer
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import roc_auc_score, roc_curve
from sklearn.model_selection import train_test_split
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from tqdm import tqdm

from bootstrap import percentile_ci, replicate_generators, run_bootstrap
from definitions_source_of_truth import (
    CLASSIFIER_PANELS,
    CLASSIFIER_TEST_FRACTION,
    GBM_GRID_SIZE,
    GBM_N_ESTIMATORS,
    GBM_TUNING_RESAMPLES,
    N_BOOT_AUROC,
    N_JOBS,
    OUTCOME_DEATH_OR_HOSPICE,
    RANDOM_SEED,
)
from pipeline_errors import SchemaError
from space_filling import gbm_parameter_grid

INTEGER_PARAMS = ("max_depth", "min_samples_leaf")


# ============================================================
# SPLITS AND PIPELINES
# ============================================================

def split_by_virus(
    encounters: pd.DataFrame,
    outcome: str = OUTCOME_DEATH_OR_HOSPICE,
    test_size: float = CLASSIFIER_TEST_FRACTION,
    seed: int = RANDOM_SEED,
    group_col: str = "virus",
) -> dict[str, tuple[pd.DataFrame, pd.DataFrame]]:
    """Stratified train/test split within each virus."""
    if outcome not in encounters.columns:
        raise SchemaError("classifier split", [outcome])
    splits = {}
    for virus, grp in encounters.dropna(subset=[outcome]).groupby(group_col):
        train, test = train_test_split(
            grp, test_size=test_size, random_state=seed, stratify=grp[outcome]
        )
        splits[virus] = (train.reset_index(drop=True), test.reset_index(drop=True))
        print(f"  {virus}: train n={len(train):,} ({int(train[outcome].sum())} events), "
              f"test n={len(test):,} ({int(test[outcome].sum())} events)")
    return splits


def logistic_pipeline() -> Pipeline:
    return Pipeline([
        ("impute", SimpleImputer(strategy="median")),
        ("scale", StandardScaler()),
        ("model", LogisticRegression(penalty=None, max_iter=1000)),
    ])


def gbm_pipeline(params: dict, seed: int = RANDOM_SEED) -> Pipeline:
    params = {k: (int(v) if k in INTEGER_PARAMS else float(v)) for k, v in params.items()}
    return Pipeline([
        ("impute", SimpleImputer(strategy="median")),
        ("model", GradientBoostingClassifier(
            n_estimators=GBM_N_ESTIMATORS, random_state=seed, **params
        )),
    ])


def _present(features: list[str], data: pd.DataFrame, label: str) -> list[str]:
    missing = [f for f in features if f not in data.columns]
    if missing:
        raise SchemaError(label, missing)
    return list(features)


def auroc(model: Pipeline, data: pd.DataFrame, features: list[str], outcome: str) -> float:
    """Held-out AUROC; raises ValueError when `data` has a single outcome class."""
    return float(roc_auc_score(data[outcome], model.predict_proba(data[features])[:, 1]))


def roc_points(model: Pipeline, data: pd.DataFrame, features: list[str], outcome: str) -> pd.DataFrame:
    fpr, tpr, _ = roc_curve(data[outcome], model.predict_proba(data[features])[:, 1])
    return pd.DataFrame({"fpr": fpr, "tpr": tpr})


# ============================================================
# LOGISTIC REGRESSION AND TRANSFER
# ============================================================

def fit_logistic_panels(
    splits: dict[str, tuple[pd.DataFrame, pd.DataFrame]],
    outcome: str = OUTCOME_DEATH_OR_HOSPICE,
    panels: dict[str, list[str]] | None = None,
) -> dict[str, Pipeline]:
    """Fit each virus's logistic model on its own training split and panel."""
    panels = CLASSIFIER_PANELS if panels is None else panels
    models = {}
    for virus, (train, _) in splits.items():
        features = _present(panels[virus], train, f"logistic panel ({virus})")
        models[virus] = logistic_pipeline().fit(train[features], train[outcome])
    return models


def transfer_auroc_matrix(
    models: dict[str, Pipeline],
    splits: dict[str, tuple[pd.DataFrame, pd.DataFrame]],
    outcome: str = OUTCOME_DEATH_OR_HOSPICE,
    panels: dict[str, list[str]] | None = None,
) -> pd.DataFrame:
    """AUROC of every (training virus, evaluation virus) pair on held-out data."""
    panels = CLASSIFIER_PANELS if panels is None else panels
    rows = []
    for train_virus, model in models.items():
        features = panels[train_virus]
        for eval_virus, (_, test) in splits.items():
            rows.append({
                "train_virus": train_virus,
                "eval_virus": eval_virus,
                "panel": train_virus,
                "n_test": int(len(test)),
                "n_events": int(test[outcome].sum()),
                "auroc": auroc(model, test, _present(features, test, "transfer evaluation"), outcome),
            })
    return pd.DataFrame(rows)


# ============================================================
# GRADIENT BOOSTING
# ============================================================

def _oob_auroc(
    params: dict,
    train: pd.DataFrame,
    features: list[str],
    outcome: str,
    rng: np.random.Generator,
) -> float:
    n = len(train)
    idx = rng.integers(0, n, size=n)
    oob = np.setdiff1d(np.arange(n), idx)
    in_bag, out_bag = train.iloc[idx], train.iloc[oob]
    if in_bag[outcome].nunique() < 2 or out_bag[outcome].nunique() < 2:
        return np.nan
    model = gbm_pipeline(params, seed=int(rng.integers(0, 2**31 - 1)))
    model.fit(in_bag[features], in_bag[outcome])
    return auroc(model, out_bag, features, outcome)


def tune_gbm(
    train: pd.DataFrame,
    features: list[str],
    outcome: str = OUTCOME_DEATH_OR_HOSPICE,
    grid: pd.DataFrame | None = None,
    n_resamples: int = GBM_TUNING_RESAMPLES,
    seed: int = RANDOM_SEED,
    n_jobs: int = N_JOBS,
) -> pd.DataFrame:
    """Out-of-bag AUROC of every configuration over bootstrap resamples.

    Every configuration sees the same resamples. Returns one row per
    configuration, sorted best first.
    """
    features = _present(features, train, "gradient boosting features")
    grid = gbm_parameter_grid(GBM_GRID_SIZE, seed=seed) if grid is None else grid
    configs = grid.drop(columns="config_id").to_dict("records")
    resample_seeds = [int(g.integers(0, 2**31 - 1)) for g in replicate_generators(seed, n_resamples)]

    tasks = [(c, r) for c in range(len(configs)) for r in range(n_resamples)]
    scores = Parallel(n_jobs=n_jobs, backend="loky")(
        delayed(_oob_auroc)(configs[c], train, features, outcome,
                            np.random.default_rng(resample_seeds[r]))
        for c, r in tqdm(tasks, desc="GBM tuning", leave=False)
    )
    by_config = np.asarray(scores, dtype=float).reshape(len(configs), n_resamples)

    tuning = grid.copy()
    tuning["mean_oob_auroc"] = np.nanmean(by_config, axis=1)
    tuning["sd_oob_auroc"] = np.nanstd(by_config, axis=1)
    tuning["n_resamples_valid"] = np.isfinite(by_config).sum(axis=1)
    return tuning.sort_values("mean_oob_auroc", ascending=False).reset_index(drop=True)


def validate_auroc(
    model: Pipeline,
    test: pd.DataFrame,
    features: list[str],
    outcome: str = OUTCOME_DEATH_OR_HOSPICE,
    n_boot: int = N_BOOT_AUROC,
    seed: int = RANDOM_SEED,
    n_jobs: int = N_JOBS,
) -> dict:
    """AUROC on the test split with a bootstrap percentile 95% CI.

    Resampling is stratified by outcome so every replicate has both classes.
    """
    point = auroc(model, test, features, outcome)
    statistic = partial(auroc, model, features=features, outcome=outcome)
    boot = run_bootstrap(statistic, test, n_boot=n_boot, seed=seed, n_jobs=n_jobs,
                         strata=outcome, desc="AUROC bootstrap")
    low, high = percentile_ci(boot[:, 0])
    return {
        "auroc": round(point, 4),
        "auroc_boot_mean": round(float(np.nanmean(boot[:, 0])), 4),
        "auroc_lower_95": round(low, 4),
        "auroc_upper_95": round(high, 4),
        "n_boot": int(n_boot),
        "n_boot_valid": int(np.isfinite(boot[:, 0]).sum()),
    }


def run_gbm(
    splits: dict[str, tuple[pd.DataFrame, pd.DataFrame]],
    features: list[str],
    outcome: str = OUTCOME_DEATH_OR_HOSPICE,
    grid_size: int = GBM_GRID_SIZE,
    n_resamples: int = GBM_TUNING_RESAMPLES,
    n_boot: int = N_BOOT_AUROC,
    seed: int = RANDOM_SEED,
    n_jobs: int = N_JOBS,
) -> tuple[pd.DataFrame, pd.DataFrame, dict[str, Pipeline]]:
    """Tune, refit and validate one gradient-boosting model per virus.

    Returns (validation table, tuning table, fitted models by virus).
    """
    grid = gbm_parameter_grid(grid_size, seed=seed)
    validation, tuning, models = [], [], {}
    for virus, (train, test) in splits.items():
        print(f"  {virus}: tuning {len(grid)} configurations x {n_resamples} resamples")
        tuned = tune_gbm(train, features, outcome, grid=grid, n_resamples=n_resamples,
                         seed=seed, n_jobs=n_jobs)
        tuned.insert(0, "virus", virus)
        tuning.append(tuned)

        best = tuned.iloc[0]
        params = {k: best[k] for k in grid.columns if k != "config_id"}
        model = gbm_pipeline(params, seed=seed).fit(train[features], train[outcome])
        models[virus] = model

        metrics = validate_auroc(model, test, features, outcome, n_boot=n_boot, seed=seed, n_jobs=n_jobs)
        validation.append({
            "virus": virus,
            "config_id": int(best["config_id"]),
            **{k: best[k] for k in params},
            "mean_oob_auroc": round(float(best["mean_oob_auroc"]), 4),
            "n_train": int(len(train)),
            "n_test": int(len(test)),
            **metrics,
        })
        print(f"  {virus}: test AUROC {metrics['auroc']:.3f} "
              f"(95% CI {metrics['auroc_lower_95']:.3f}-{metrics['auroc_upper_95']:.3f})")
    return pd.DataFrame(validation), pd.concat(tuning, ignore_index=True), models
