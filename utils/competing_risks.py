"""Competing-risk utilities for the time-to-discharge analysis.

Discharge alive is the event of interest and in-hospital death the competing
event. The Fine-Gray subdistribution model is fit as a discrete-time cloglog
regression on person-day data in which encounters that die stay in the risk
set through the horizon. Aalen-Johansen cumulative incidence curves and a
cause-specific Cox model are provided alongside.

Status coding (cmprsk convention):
    1 = discharged alive, 2 = died, 0 = still hospitalized at the horizon
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
import statsmodels.api as sm
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError as CoxConvergenceError
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from definitions_source_of_truth import (
    DISCHARGE_HORIZON_DAYS,
    ENCOUNTER_KEY,
    FG_STATUS_CENSORED,
    FG_STATUS_DEATH,
    FG_STATUS_DISCHARGE,
    FINE_GRAY_CANDIDATE_COVARIATES,
    HOSPITAL_KEY,
    HOURS_PER_DAY,
    LOS_HOURS,
    MORTALITY_FLAG,
    VIRUS_INDICATOR,
)
from pipeline_errors import (
    ModelConvergenceError,
    SchemaError,
    StepwiseSelectionError,
    checked_fit,
)

Z_95 = 1.96


@dataclass(frozen=True)
class CompetingRiskSummary:
    model: str
    estimator: str
    exposure_col: str
    shr: float | None
    shr_lower_95: float | None
    shr_upper_95: float | None
    p_value: float | None
    n_encounters: int
    n_discharged: int
    n_died: int
    n_censored: int
    selected_covariates: str
    note: str | None = None


def build_discharge_dataset(
    encounters: pd.DataFrame,
    horizon: int = DISCHARGE_HORIZON_DAYS,
) -> pd.DataFrame:
    """Add time (whole hospital days, 1..horizon) and competing-risk status."""
    needed = [ENCOUNTER_KEY, MORTALITY_FLAG, LOS_HOURS]
    missing = [c for c in needed if c not in encounters.columns]
    if missing:
        raise SchemaError("competing-risks dataset", missing)

    df = encounters.copy()
    los_days = np.ceil(pd.to_numeric(df[LOS_HOURS], errors="coerce") / HOURS_PER_DAY)
    within = los_days <= horizon
    df["status"] = np.select(
        [within & (df[MORTALITY_FLAG] == 1), within & (df[MORTALITY_FLAG] == 0)],
        [FG_STATUS_DEATH, FG_STATUS_DISCHARGE],
        default=FG_STATUS_CENSORED,
    )
    df["time"] = los_days.clip(lower=1, upper=horizon).fillna(horizon).astype(int)
    df["discharged"] = (df["status"] == FG_STATUS_DISCHARGE).astype(int)
    return df


def hospital_indicators(df: pd.DataFrame, group_col: str = HOSPITAL_KEY) -> tuple[pd.DataFrame, list[str]]:
    """One-hot hospital columns (first hospital as reference)."""
    if group_col not in df.columns:
        return df, []
    dummies = pd.get_dummies(df[group_col].astype(str), prefix="hospital", drop_first=True, dtype=int)
    return pd.concat([df, dummies], axis=1), list(dummies.columns)


def backward_stepwise_aic(
    df: pd.DataFrame,
    outcome: str,
    candidates: list[str],
    forced: list[str],
) -> list[str]:
    """Backward elimination on a logistic model of `outcome` by AIC.

    Terms in `forced` are never removed. Any failed fit raises
    StepwiseSelectionError.
    """
    selected = list(dict.fromkeys(forced + candidates))
    y = df[outcome].astype(int)

    def _aic(cols: list[str]) -> float:
        X = sm.add_constant(df[cols].astype(float), has_constant="add")
        try:
            fit = checked_fit(
                f"stepwise logistic ({outcome})",
                lambda: sm.Logit(y, X).fit(disp=False, maxiter=200),
            )
        except (ModelConvergenceError, PerfectSeparationError, np.linalg.LinAlgError) as exc:
            raise StepwiseSelectionError(f"Backward selection failed with terms {cols}: {exc}") from exc
        return float(fit.aic)

    current = _aic(selected)
    while True:
        removable = [c for c in selected if c not in forced]
        if not removable:
            break
        trials = {c: _aic([s for s in selected if s != c]) for c in removable}
        drop, aic = min(trials.items(), key=lambda kv: kv[1])
        if aic >= current:
            break
        selected.remove(drop)
        current = aic
        print(f"    stepwise: dropped {drop} (AIC {aic:.1f})")
    return selected


def _build_subdistribution_person_period(
    df: pd.DataFrame,
    covariates: list[str],
    horizon: int,
) -> pd.DataFrame:
    """Person-day rows for the subdistribution risk set.

    Discharged and censored encounters contribute days 1..time; encounters
    that died stay in the risk set through the horizon with no event.
    """
    n_days = np.where(df["status"] == FG_STATUS_DEATH, horizon, df["time"]).astype(int)
    base = df[[ENCOUNTER_KEY, "time", "status"] + covariates].reset_index(drop=True)
    period = base.loc[base.index.repeat(n_days)].reset_index(drop=True)
    period["day"] = period.groupby(ENCOUNTER_KEY).cumcount() + 1
    period["log_time"] = np.log(period["day"].astype(float))
    period["event_interest"] = (
        (period["status"] == FG_STATUS_DISCHARGE) & (period["day"] == period["time"])
    ).astype(int)
    return period


def _status_counts(df: pd.DataFrame) -> dict[str, int]:
    return {
        "n_encounters": int(len(df)),
        "n_discharged": int((df["status"] == FG_STATUS_DISCHARGE).sum()),
        "n_died": int((df["status"] == FG_STATUS_DEATH).sum()),
        "n_censored": int((df["status"] == FG_STATUS_CENSORED).sum()),
    }


def fit_fine_gray(
    encounters: pd.DataFrame,
    candidates: list[str] | None = None,
    exposure_col: str = VIRUS_INDICATOR,
    horizon: int = DISCHARGE_HORIZON_DAYS,
) -> tuple[dict[str, Any], pd.DataFrame]:
    """Fine-Gray model of discharge alive with death as the competing risk.

    Covariates (virus indicator, hospital indicators, candidate comorbidities
    and demographics) are first reduced by backward stepwise AIC on a logistic
    model of discharge, keeping the virus indicator. The subdistribution
    model is then fit with encounter-clustered standard errors.

    Returns
    -------
    result_dict, coefficients_df

    Raises StepwiseSelectionError if selection fails and
    ModelConvergenceError if the final fit does not converge.
    """
    model_name = "Fine-Gray - discharge alive by day 28 (death competing)"
    candidates = FINE_GRAY_CANDIDATE_COVARIATES if candidates is None else candidates
    df = build_discharge_dataset(encounters, horizon=horizon)
    df, hospital_cols = hospital_indicators(df)
    if exposure_col not in df.columns:
        raise SchemaError(model_name, [exposure_col])

    pool = [c for c in candidates if c in df.columns] + hospital_cols
    df = df.dropna(subset=[exposure_col] + pool)
    pool = [c for c in pool if df[c].nunique() > 1]

    print(f"  Stepwise selection over {len(pool)} candidates (n={len(df):,})")
    selected = backward_stepwise_aic(df, "discharged", pool, forced=[exposure_col])
    covariates = [c for c in selected if c != exposure_col]

    period = _build_subdistribution_person_period(df, [exposure_col] + covariates, horizon)
    model_covs = [exposure_col] + covariates + ["log_time"]
    X = sm.add_constant(period[model_covs].astype(float), has_constant="add")
    y = period["event_interest"]
    glm = sm.GLM(y, X, family=sm.families.Binomial(link=sm.families.links.CLogLog()))
    fit = checked_fit(
        model_name,
        lambda: glm.fit(cov_type="cluster", cov_kwds={"groups": period[ENCOUNTER_KEY].astype("category").cat.codes}),
    )

    coef = pd.DataFrame({
        "model": model_name,
        "outcome": "discharge_alive",
        "term": fit.params.index,
        "estimate": fit.params.values,
        "se": fit.bse.values,
        "p_value": fit.pvalues.values,
    })
    coef["ci_lower"] = coef["estimate"] - Z_95 * coef["se"]
    coef["ci_upper"] = coef["estimate"] + Z_95 * coef["se"]
    coef["shr"] = np.exp(coef["estimate"])
    coef["shr_lower_95"] = np.exp(coef["ci_lower"])
    coef["shr_upper_95"] = np.exp(coef["ci_upper"])

    row = coef.set_index("term").loc[exposure_col]
    result = CompetingRiskSummary(
        model=model_name,
        estimator="discrete_time_subdistribution_cloglog",
        exposure_col=exposure_col,
        shr=round(float(row["shr"]), 4),
        shr_lower_95=round(float(row["shr_lower_95"]), 4),
        shr_upper_95=round(float(row["shr_upper_95"]), 4),
        p_value=float(row["p_value"]),
        selected_covariates=";".join(covariates),
        **_status_counts(df),
    )
    return result.__dict__, coef


def fit_cause_specific_cox(
    encounters: pd.DataFrame,
    covariates: list[str] | None = None,
    exposure_col: str = VIRUS_INDICATOR,
    horizon: int = DISCHARGE_HORIZON_DAYS,
) -> dict[str, Any]:
    """Cause-specific Cox model of discharge (death censored), sensitivity analysis."""
    model_name = "Cause-specific Cox - discharge alive (death censored)"
    covariates = FINE_GRAY_CANDIDATE_COVARIATES if covariates is None else covariates
    df = build_discharge_dataset(encounters, horizon=horizon)
    cols = [exposure_col] + [c for c in covariates if c in df.columns and c != exposure_col]
    model_df = df[["time", "discharged"] + cols].dropna()
    model_df = model_df[["time", "discharged"] + [c for c in cols if model_df[c].nunique() > 1]]

    cph = CoxPHFitter()
    try:
        checked_fit(model_name, lambda: cph.fit(model_df, duration_col="time", event_col="discharged"))
    except CoxConvergenceError as exc:
        raise ModelConvergenceError(model_name, str(exc)) from exc

    row = cph.summary.loc[exposure_col]
    return {
        "model": model_name,
        "estimator": "cox_ph_cause_specific",
        "exposure_col": exposure_col,
        "hr": round(float(np.exp(row["coef"])), 4),
        "hr_lower_95": round(float(np.exp(row["coef"] - Z_95 * row["se(coef)"])), 4),
        "hr_upper_95": round(float(np.exp(row["coef"] + Z_95 * row["se(coef)"])), 4),
        "p_value": float(row["p"]),
        **_status_counts(df),
    }


def aalen_johansen_cif(
    encounters: pd.DataFrame,
    group_col: str = "virus",
    horizon: int = DISCHARGE_HORIZON_DAYS,
) -> pd.DataFrame:
    """Discrete-time Aalen-Johansen CIF of discharge and death per group."""
    df = encounters if "status" in encounters.columns else build_discharge_dataset(encounters, horizon)
    records: list[dict[str, Any]] = []

    for group, grp in df.groupby(group_col):
        times = grp["time"].astype(int)
        status = grp["status"].astype(int)
        surv = 1.0
        cif_discharge = 0.0
        cif_death = 0.0

        for t in range(1, horizon + 1):
            at_risk = int((times >= t).sum())
            d1 = int(((times == t) & (status == FG_STATUS_DISCHARGE)).sum())
            d2 = int(((times == t) & (status == FG_STATUS_DEATH)).sum())
            h1 = d1 / at_risk if at_risk else 0.0
            h2 = d2 / at_risk if at_risk else 0.0

            cif_discharge += surv * h1
            cif_death += surv * h2
            surv *= 1.0 - h1 - h2

            records.append({
                group_col: group,
                "time_day": t,
                "n_total": int(len(grp)),
                "n_at_risk": at_risk,
                "n_discharged": d1,
                "n_died": d2,
                "cif_discharge_alive": round(cif_discharge, 6),
                "cif_death": round(cif_death, 6),
                "still_hospitalized": round(surv, 6),
            })

    return pd.DataFrame(records)


def summarize_discharge_outcomes(
    encounters: pd.DataFrame,
    group_col: str = "virus",
    horizon: int = DISCHARGE_HORIZON_DAYS,
) -> pd.DataFrame:
    """Counts and proportions of each competing-risk status by group."""
    df = encounters if "status" in encounters.columns else build_discharge_dataset(encounters, horizon)
    records = []
    for group, grp in df.groupby(group_col):
        counts = _status_counts(grp)
        n = counts["n_encounters"]
        records.append({
            group_col: group,
            **counts,
            "discharged_prop": round(counts["n_discharged"] / n, 6),
            "died_prop": round(counts["n_died"] / n, 6),
            "censored_prop": round(counts["n_censored"] / n, 6),
            "median_time_days": float(grp["time"].median()),
            "analysis_horizon_days": int(horizon),
        })
    return pd.DataFrame(records)
