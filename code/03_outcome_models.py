"""
03_outcome_models.py
====================
Associations between virus (SARS-CoV-2 vs influenza, reference = influenza)
and hospital outcomes.

Models:
1. Death or discharge to hospice: mixed-effects logistic regression,
   random intercept per hospital
2. Invasive mechanical ventilation: mixed-effects logistic regression,
   random intercept per hospital
3. Time to discharge alive by day 28: Fine-Gray subdistribution hazard with
   death as the competing event; covariates chosen by backward stepwise AIC
   (virus always kept); Aalen-Johansen CIF by virus; cause-specific Cox as
   sensitivity analysis
4. Ventilator-free days to day 28: zero-inflated negative binomial, same
   covariates in the count and zero-inflation parts, bootstrap percentile
   and BCa intervals

A model that fails to converge is recorded in the summary with its
diagnostic and the remaining models still run. Virus-effect p-values are
adjusted across models with Benjamini-Hochberg.

Usage:
    python 03_outcome_models.py --input ../data/encounter_windows.csv \
                                --output-dir ../output/final --n-boot 2000
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), os.pardir, "utils"))

import argparse
import warnings
from dataclasses import asdict

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from competing_risks import (
    aalen_johansen_cif,
    fit_cause_specific_cox,
    fit_fine_gray,
    summarize_discharge_outcomes,
)
from definitions_source_of_truth import (
    FINE_GRAY_CANDIDATE_COVARIATES,
    MIXED_MODEL_COVARIATES,
    MIXED_MODEL_OUTCOMES,
    N_BOOT_VFD,
    N_JOBS,
    RANDOM_SEED,
    VFD_COVARIATES,
)
from input_schema import load_encounters
from mixed_models import fit_mixed_logistic
from pipeline_errors import ModelConvergenceError, StepwiseSelectionError
from vfd_models import fit_zinb_vfd

warnings.filterwarnings("ignore")


# ============================================================
# UTILITIES
# ============================================================

def _failure_row(model_name, exc):
    """Results row for a model that could not be fit."""
    return {
        "model": model_name,
        "error_type": type(exc).__name__,
        "error": str(exc),
    }


def apply_multiplicity_correction(results_df, p_col="p_value", method="fdr_bh"):
    """Benjamini-Hochberg (default) adjustment of the virus-effect p-values.

    Rows without a p-value (failed fits) are left unadjusted.

    Returns
    -------
    pd.DataFrame with additional 'p_adjusted' and 'significant_adjusted' columns
    """
    df = results_df.copy()
    valid = df[p_col].notna()
    pvals = df.loc[valid, p_col].astype(float).values

    df["p_adjusted"] = np.nan
    df["significant_adjusted"] = False
    if len(pvals) == 0:
        return df

    reject, p_adj, _, _ = multipletests(pvals, alpha=0.05, method=method)
    df.loc[valid, "p_adjusted"] = p_adj
    df.loc[valid, "significant_adjusted"] = reject

    print(f"Multiplicity correction ({method}): {len(pvals)} tests, "
          f"{int((pvals < 0.05).sum())} significant raw -> {int(reject.sum())} significant adjusted")
    return df


# ============================================================
# MODEL STAGES
# ============================================================

def run_mixed_models(encounters, results, coefficients):
    for outcome in MIXED_MODEL_OUTCOMES:
        print(f"\n--- Mixed logistic: {outcome} ---")
        try:
            summary, coef = fit_mixed_logistic(encounters, outcome, MIXED_MODEL_COVARIATES)
        except ModelConvergenceError as e:
            print(f"  {e}")
            results.append(_failure_row(e.model, e))
            continue
        results.append(asdict(summary))
        coefficients.append(coef)
        print(f"  OR {summary.odds_ratio} ({summary.or_lower_95}-{summary.or_upper_95}), "
              f"p={summary.p_value:.4g}, hospitals={summary.n_hospitals}")


def run_competing_risks(encounters, results, coefficients, output_dir):
    print("\n--- Competing risks: discharge alive vs death ---")
    cif = aalen_johansen_cif(encounters)
    cif_path = os.path.join(output_dir, "discharge_cif.csv")
    cif.to_csv(cif_path, index=False)
    print(f"  CIF saved to {cif_path}")
    summarize_discharge_outcomes(encounters).to_csv(
        os.path.join(output_dir, "discharge_outcomes_by_virus.csv"), index=False
    )

    try:
        fg_result, fg_coef = fit_fine_gray(encounters, FINE_GRAY_CANDIDATE_COVARIATES)
    except StepwiseSelectionError as e:
        print(f"  Stepwise selection failed, competing-risks models skipped: {e}")
        results.append(_failure_row("Fine-Gray - discharge alive by day 28", e))
        return
    except ModelConvergenceError as e:
        print(f"  {e}")
        results.append(_failure_row(e.model, e))
    else:
        results.append(fg_result)
        coefficients.append(fg_coef)
        print(f"  SHR {fg_result['shr']} ({fg_result['shr_lower_95']}-{fg_result['shr_upper_95']}), "
              f"selected: {fg_result['selected_covariates'] or 'none'}")

    try:
        cox = fit_cause_specific_cox(encounters, FINE_GRAY_CANDIDATE_COVARIATES)
    except ModelConvergenceError as e:
        print(f"  {e}")
        results.append(_failure_row(e.model, e))
    else:
        results.append(cox)
        print(f"  Cause-specific HR {cox['hr']} ({cox['hr_lower_95']}-{cox['hr_upper_95']})")


def run_vfd_model(encounters, results, coefficients, n_boot, n_jobs, seed):
    print("\n--- Ventilator-free days: ZINB ---")
    try:
        summary, coef = fit_zinb_vfd(
            encounters, VFD_COVARIATES, n_boot=n_boot, seed=seed, n_jobs=n_jobs
        )
    except ModelConvergenceError as e:
        print(f"  {e}")
        results.append(_failure_row(e.model, e))
        return
    results.append(asdict(summary))
    coefficients.append(coef)
    print(f"  IRR {summary.irr} ({summary.irr_lower_95}-{summary.irr_upper_95}, BCa), "
          f"zero-inflation OR {summary.inflation_or}")


# ============================================================
# MAIN
# ============================================================

def run_all_models(input_file, output_dir, n_boot=N_BOOT_VFD, n_jobs=N_JOBS, seed=RANDOM_SEED):
    """Run every outcome model and write the summary and coefficient tables."""
    os.makedirs(output_dir, exist_ok=True)
    encounters = load_encounters(input_file)
    print(f"\n{'='*60}")
    print(f"Outcome models (n={len(encounters):,} encounters)")
    print(f"{'='*60}")

    results, coefficients = [], []
    run_mixed_models(encounters, results, coefficients)
    run_competing_risks(encounters, results, coefficients, output_dir)
    run_vfd_model(encounters, results, coefficients, n_boot, n_jobs, seed)

    results_df = pd.DataFrame(results)
    if "p_value" in results_df.columns:
        results_df = apply_multiplicity_correction(results_df, p_col="p_value")

    summary_path = os.path.join(output_dir, "outcome_models_summary.csv")
    results_df.to_csv(summary_path, index=False)
    print(f"\nModel summaries saved to {summary_path}")

    if coefficients:
        coef_path = os.path.join(output_dir, "outcome_models_coefficients.csv")
        pd.concat(coefficients, ignore_index=True).to_csv(coef_path, index=False)
        print(f"Coefficients saved to {coef_path}")
    return results_df


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Virus vs outcome regression models")
    parser.add_argument("--input", default="../data/encounter_windows.csv")
    parser.add_argument("--output-dir", default="../output/final")
    parser.add_argument("--n-boot", type=int, default=N_BOOT_VFD)
    parser.add_argument("--n-jobs", type=int, default=N_JOBS)
    parser.add_argument("--seed", type=int, default=RANDOM_SEED)
    args = parser.parse_args()
    run_all_models(args.input, args.output_dir, args.n_boot, args.n_jobs, args.seed)
