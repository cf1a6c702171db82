"""
04_mortality_classifiers.py
===========================
Prediction of death or discharge to hospice, by virus.

1. Stratified 75/25 train/test split within each virus (fixed seed)
2. Logistic regression on each virus's predictor panel; transfer AUROC
   matrix (model trained on one virus, scored on each virus's test split)
3. Gradient boosting: maximum-entropy hyperparameter design scored by
   out-of-bag AUROC on bootstrap resamples of the training split, refit of
   the best configuration, bootstrap AUROC CI on the virus's own test split

Outputs:
- classifier_transfer_auroc.csv, classifier_transfer_auroc.png
- classifier_gbm_tuning.csv, classifier_gbm_validation.csv
- classifier_gbm_roc.png

Usage:
    python 04_mortality_classifiers.py --input ../data/encounter_windows.csv \
                                       --output-dir ../output/final --n-boot 1000
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), os.pardir, "utils"))

import argparse
import warnings

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from classifiers import (
    fit_logistic_panels,
    roc_points,
    run_gbm,
    split_by_virus,
    transfer_auroc_matrix,
)
from definitions_source_of_truth import (
    GBM_FEATURES,
    GBM_GRID_SIZE,
    GBM_TUNING_RESAMPLES,
    N_BOOT_AUROC,
    N_JOBS,
    OUTCOME_DEATH_OR_HOSPICE,
    RANDOM_SEED,
)
from input_schema import load_encounters

warnings.filterwarnings("ignore")

# JAMA Style
plt.rcParams.update({
    "font.family": "sans-serif",
    "font.size": 9,
    "axes.titlesize": 11,
    "axes.titleweight": "bold",
    "axes.labelsize": 9,
    "xtick.labelsize": 8,
    "ytick.labelsize": 8,
    "legend.fontsize": 8,
    "figure.dpi": 300,
})


# ============================================================
# FIGURES
# ============================================================

def plot_transfer_matrix(transfer, output_path):
    matrix = transfer.pivot(index="train_virus", columns="eval_virus", values="auroc")
    fig, ax = plt.subplots(figsize=(4.5, 3.5))
    sns.heatmap(
        matrix,
        annot=True,
        fmt=".3f",
        cmap="Blues",
        vmin=0.5,
        vmax=1.0,
        cbar_kws={"label": "AUROC"},
        ax=ax,
    )
    ax.set_xlabel("Evaluated on (test split)")
    ax.set_ylabel("Trained on")
    ax.set_title("Logistic model transfer")
    fig.savefig(output_path, bbox_inches="tight", dpi=300)
    plt.close(fig)
    print(f"Transfer matrix saved to {output_path}")


def plot_roc_curves(models, splits, features, outcome, validation, output_path):
    curves = []
    for virus, model in models.items():
        _, test = splits[virus]
        auc = validation.set_index("virus").loc[virus, "auroc"]
        pts = roc_points(model, test, features, outcome)
        pts["model"] = f"{virus} (AUROC {auc:.3f})"
        curves.append(pts)
    fig, ax = plt.subplots(figsize=(4.5, 4.5))
    sns.lineplot(
        data=pd.concat(curves, ignore_index=True),
        x="fpr", y="tpr", hue="model", estimator=None, sort=False, ax=ax,
    )
    ax.plot([0, 1], [0, 1], linestyle="--", color="grey", linewidth=0.8)
    ax.set_xlabel("1 - Specificity")
    ax.set_ylabel("Sensitivity")
    ax.set_title("Gradient boosting, held-out test split")
    ax.legend(title=None, frameon=False, loc="lower right")
    fig.savefig(output_path, bbox_inches="tight", dpi=300)
    plt.close(fig)
    print(f"ROC curves saved to {output_path}")


# ============================================================
# MAIN
# ============================================================

def run_classifiers(input_file, output_dir, n_boot=N_BOOT_AUROC, n_jobs=N_JOBS, seed=RANDOM_SEED,
                    grid_size=GBM_GRID_SIZE, n_resamples=GBM_TUNING_RESAMPLES):
    os.makedirs(output_dir, exist_ok=True)
    outcome = OUTCOME_DEATH_OR_HOSPICE
    encounters = load_encounters(input_file)

    print(f"\n{'='*60}")
    print(f"Classifiers for {outcome}")
    print(f"{'='*60}")
    splits = split_by_virus(encounters, outcome, seed=seed)

    print("\n--- Logistic regression transfer ---")
    logistic_models = fit_logistic_panels(splits, outcome)
    transfer = transfer_auroc_matrix(logistic_models, splits, outcome)
    print(transfer.to_string(index=False))
    transfer.to_csv(os.path.join(output_dir, "classifier_transfer_auroc.csv"), index=False)
    plot_transfer_matrix(transfer, os.path.join(output_dir, "classifier_transfer_auroc.png"))

    print("\n--- Gradient boosting ---")
    validation, tuning, gbm_models = run_gbm(
        splits, GBM_FEATURES, outcome,
        grid_size=grid_size, n_resamples=n_resamples, n_boot=n_boot, seed=seed, n_jobs=n_jobs,
    )
    tuning.to_csv(os.path.join(output_dir, "classifier_gbm_tuning.csv"), index=False)
    val_path = os.path.join(output_dir, "classifier_gbm_validation.csv")
    validation.to_csv(val_path, index=False)
    print(f"Validation saved to {val_path}")
    plot_roc_curves(gbm_models, splits, GBM_FEATURES, outcome, validation,
                    os.path.join(output_dir, "classifier_gbm_roc.png"))
    return transfer, validation


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Death/hospice classifiers by virus")
    parser.add_argument("--input", default="../data/encounter_windows.csv")
    parser.add_argument("--output-dir", default="../output/final")
    parser.add_argument("--n-boot", type=int, default=N_BOOT_AUROC)
    parser.add_argument("--n-jobs", type=int, default=N_JOBS)
    parser.add_argument("--seed", type=int, default=RANDOM_SEED)
    parser.add_argument("--grid-size", type=int, default=GBM_GRID_SIZE)
    parser.add_argument("--n-resamples", type=int, default=GBM_TUNING_RESAMPLES)
    args = parser.parse_args()
    run_classifiers(args.input, args.output_dir, args.n_boot, args.n_jobs, args.seed,
                    args.grid_size, args.n_resamples)
