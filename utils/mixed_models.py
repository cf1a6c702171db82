"""Mixed-effects logistic regression with a random intercept per hospital.

Fit by variational Bayes (statsmodels BinomialBayesMixedGLM). Fixed effects
are reported on the log-odds scale with Wald 95% intervals from the posterior
mean and SD, and as odds ratios.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.stats import norm
from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM

from definitions_source_of_truth import HOSPITAL_KEY, VIRUS_INDICATOR
from pipeline_errors import SchemaError, checked_fit

Z_95 = 1.96


@dataclass(frozen=True)
class MixedModelSummary:
    model: str
    outcome: str
    exposure: str
    odds_ratio: float | None
    or_lower_95: float | None
    or_upper_95: float | None
    p_value: float | None
    n_encounters: int
    n_hospitals: int
    n_events: int
    hospital_re_sd: float | None
    note: str | None = None


def prepare_model_frame(
    df: pd.DataFrame,
    outcome: str,
    covariates: list[str],
    group_col: str = HOSPITAL_KEY,
) -> tuple[pd.DataFrame, list[str]]:
    """Complete-case frame; covariates absent or constant in the data are dropped."""
    missing = [c for c in [outcome, group_col] if c not in df.columns]
    if missing:
        raise SchemaError(f"mixed logistic model ({outcome})", missing)
    absent = [c for c in covariates if c not in df.columns]
    if absent:
        print(f"  {outcome}: covariates not in data, skipped: {absent}")
    present = [c for c in covariates if c in df.columns]

    frame = df[[outcome, group_col] + present].dropna().copy()
    constant = [c for c in present if frame[c].nunique() < 2]
    if constant:
        print(f"  {outcome}: constant covariates dropped: {constant}")
    kept = [c for c in present if c not in constant]
    frame[outcome] = frame[outcome].astype(int)
    frame[group_col] = frame[group_col].astype(str)
    return frame, kept


def fit_mixed_logistic(
    df: pd.DataFrame,
    outcome: str,
    covariates: list[str],
    group_col: str = HOSPITAL_KEY,
    exposure: str = VIRUS_INDICATOR,
) -> tuple[MixedModelSummary, pd.DataFrame]:
    """Fit outcome ~ exposure + covariates + (1 | hospital).

    Returns
    -------
    summary : MixedModelSummary for the exposure term
    coefficients : one row per fixed effect with estimate, se, Wald CI,
        odds ratio with CI and two-sided p-value

    Raises ModelConvergenceError when the variational fit does not converge.
    """
    model_name = f"Mixed logistic - {outcome}"
    rhs = [exposure] + [c for c in covariates if c != exposure]
    frame, terms = prepare_model_frame(df, outcome, rhs, group_col)
    if exposure not in terms:
        raise SchemaError(model_name, [exposure])

    model = BinomialBayesMixedGLM.from_formula(
        f"{outcome} ~ {' + '.join(terms)}",
        {"hospital_re": f"0 + C({group_col})"},
        frame,
    )
    result = checked_fit(model_name, lambda: model.fit_vb(scale_fe=True))

    est = np.asarray(result.fe_mean, dtype=float)
    se = np.asarray(result.fe_sd, dtype=float)
    coef = pd.DataFrame({
        "model": model_name,
        "outcome": outcome,
        "term": list(result.model.fep_names),
        "estimate": est,
        "se": se,
        "ci_lower": est - Z_95 * se,
        "ci_upper": est + Z_95 * se,
    })
    coef["odds_ratio"] = np.exp(coef["estimate"])
    coef["or_lower_95"] = np.exp(coef["ci_lower"])
    coef["or_upper_95"] = np.exp(coef["ci_upper"])
    coef["p_value"] = 2 * norm.sf(np.abs(est / se))

    # vcp is on the log(SD) scale
    re_sd = None
    for name, val in zip(result.model.vcp_names, result.vcp_mean):
        if "hospital_re" in str(name):
            re_sd = float(np.exp(val))

    row = coef.set_index("term").loc[exposure]
    summary = MixedModelSummary(
        model=model_name,
        outcome=outcome,
        exposure=exposure,
        odds_ratio=round(float(row["odds_ratio"]), 4),
        or_lower_95=round(float(row["or_lower_95"]), 4),
        or_upper_95=round(float(row["or_upper_95"]), 4),
        p_value=float(row["p_value"]),
        n_encounters=int(len(frame)),
        n_hospitals=int(frame[group_col].nunique()),
        n_events=int(frame[outcome].sum()),
        hospital_re_sd=round(re_sd, 4) if re_sd is not None else None,
    )
    return summary, coef
