"""Cohort table stratified by virus.

summarize_cohort returns a tidy long table (one row per variable, level and
stratum) for downstream formatting; build_tableone renders the publication
Table 1. Missing values are counted, never imputed.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
from scipy.stats import chi2_contingency, kruskal, ttest_ind
from tableone import TableOne

from definitions_source_of_truth import COHORT_TABLE_VARIABLES, VIRUS_LABELS

OVERALL = "Overall"

TIDY_COLUMNS = [
    "variable", "kind", "level", "stratum", "n", "missing",
    "count", "percent", "mean", "sd", "median", "q1", "q3",
    "test", "p_value",
]


def _compare_groups(values: pd.Series, groups: pd.Series, kind: str) -> tuple[str, float]:
    """Test and p-value comparing the strata; NaN when a stratum is too small."""
    present = values.notna()
    if kind == "categorical":
        table = pd.crosstab(values[present], groups[present])
        if table.shape[0] < 2 or table.shape[1] < 2:
            return "chi-square", np.nan
        return "chi-square", float(chi2_contingency(table)[1])

    samples = [pd.to_numeric(values[present & (groups == g)], errors="coerce").dropna()
               for g in pd.unique(groups[present])]
    samples = [s for s in samples if len(s) > 0]
    if len(samples) < 2 or any(len(s) < 2 for s in samples):
        return ("kruskal-wallis" if kind == "nonnormal" else "welch t-test"), np.nan
    if kind == "nonnormal":
        if pd.concat(samples).nunique() == 1:
            return "kruskal-wallis", np.nan
        return "kruskal-wallis", float(kruskal(*samples).pvalue)
    return "welch t-test", float(ttest_ind(samples[0], samples[1], equal_var=False).pvalue)


def _summarize_stratum(values: pd.Series, variable: str, kind: str, stratum: str) -> list[dict]:
    missing = int(values.isna().sum())
    observed = values.dropna()
    base = {"variable": variable, "kind": kind, "stratum": stratum,
            "n": int(len(observed)), "missing": missing}
    if kind == "categorical":
        counts = observed.value_counts().sort_index()
        return [
            {**base, "level": level, "count": int(count),
             "percent": round(100 * count / len(observed), 2) if len(observed) else np.nan}
            for level, count in counts.items()
        ] or [{**base, "level": None, "count": 0, "percent": np.nan}]

    numeric = pd.to_numeric(observed, errors="coerce").dropna()
    row = {**base, "level": None}
    if kind == "nonnormal":
        row.update(median=numeric.median(), q1=numeric.quantile(0.25), q3=numeric.quantile(0.75))
    else:
        row.update(mean=numeric.mean(), sd=numeric.std())
    return [row]


def summarize_cohort(
    encounters: pd.DataFrame,
    variables: dict[str, str] | None = None,
    group_col: str = "virus",
) -> pd.DataFrame:
    """Per-covariate summaries for each virus and overall.

    Variables absent from `encounters` are skipped with a printed note.
    """
    variables = COHORT_TABLE_VARIABLES if variables is None else variables
    absent = [v for v in variables if v not in encounters.columns]
    if absent:
        print(f"  Cohort table: skipping {len(absent)} variables not in data: {absent}")

    groups = encounters[group_col]
    strata = [g for g in VIRUS_LABELS if g in set(groups.dropna())]
    strata += [g for g in pd.unique(groups.dropna()) if g not in strata]

    rows: list[dict] = []
    for variable, kind in variables.items():
        if variable not in encounters.columns:
            continue
        values = encounters[variable]
        test, p_value = _compare_groups(values, groups, kind)
        var_rows = _summarize_stratum(values, variable, kind, OVERALL)
        for stratum in strata:
            var_rows += _summarize_stratum(values[groups == stratum], variable, kind, stratum)
        for r in var_rows:
            r.update(test=test, p_value=p_value)
        rows += var_rows

    return pd.DataFrame(rows).reindex(columns=TIDY_COLUMNS)


def build_tableone(
    encounters: pd.DataFrame,
    variables: dict[str, str] | None = None,
    group_col: str = "virus",
) -> TableOne:
    """Publication Table 1 grouped by virus with p-values and missingness."""
    variables = COHORT_TABLE_VARIABLES if variables is None else variables
    columns = [v for v in variables if v in encounters.columns]
    categorical = [v for v in columns if variables[v] == "categorical"]
    nonnormal = [v for v in columns if variables[v] == "nonnormal"]
    return TableOne(
        encounters,
        columns=columns,
        categorical=categorical,
        nonnormal=nonnormal,
        groupby=group_col,
        pval=True,
        missing=True,
    )
