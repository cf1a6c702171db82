"""Zero-inflated negative binomial model of ventilator-free days.

The count part (log link) and the zero-inflation part (logit link) share the
same covariates. Coefficient uncertainty is reported three ways: model-based
Wald intervals, bootstrap percentile intervals and bootstrap BCa intervals.
Bootstrap intervals are computed on the log scale and exponentiated.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from functools import partial

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.special import expit
from scipy.stats import chi2
from statsmodels.discrete.count_model import ZeroInflatedNegativeBinomialP
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from bootstrap import jackknife_values, run_bootstrap, summarize_bootstrap
from definitions_source_of_truth import (
    MAX_JACKKNIFE_FITS,
    N_BOOT_VFD,
    N_JOBS,
    OUTCOME_VFD,
    RANDOM_SEED,
    VFD_COVARIATES,
    VIRUS_INDICATOR,
)
from pipeline_errors import SchemaError, checked_fit

Z_95 = 1.96
INFLATE_PREFIX = "inflate_"
MAX_ITER = 1000
NM_MAX_ITER = 5000
NEWTON_MAX_ITER = 100


@dataclass(frozen=True)
class ZinbSummary:
    model: str
    outcome: str
    exposure: str
    irr: float | None
    irr_lower_95: float | None
    irr_upper_95: float | None
    p_value: float | None
    inflation_or: float | None
    inflation_or_lower_95: float | None
    inflation_or_upper_95: float | None
    lr_vs_null_stat: float
    lr_vs_null_df: int
    lr_vs_null_p: float
    lr_vs_nb_stat: float
    lr_vs_nb_df: int
    lr_vs_nb_p: float
    pearson_dispersion: float
    alpha: float
    n_encounters: int
    n_zero: int
    n_boot: int


def _design(data: pd.DataFrame, covariates: list[str]) -> pd.DataFrame:
    return sm.add_constant(data[covariates].astype(float), has_constant="add")


def _start_params(y: pd.Series, X: pd.DataFrame) -> np.ndarray:
    """Zeros for the inflation part, NB2 estimates for the count part and alpha."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        nb = sm.NegativeBinomial(y, X, loglike_method="nb2").fit(disp=False, maxiter=MAX_ITER)
    return np.concatenate([np.zeros(X.shape[1]), nb.params.to_numpy()])


def _fit_zinb(y: pd.Series, X: pd.DataFrame, name: str = "ZINB"):
    """Nelder-Mead from NB2 start values, then Newton from the simplex optimum.

    Only the Newton step is checked for convergence.
    """
    model = ZeroInflatedNegativeBinomialP(y, X, exog_infl=X, inflation="logit", p=2)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        coarse = model.fit(
            start_params=_start_params(y, X), method="nm", maxiter=NM_MAX_ITER, disp=False
        )
    return checked_fit(
        name,
        lambda: model.fit(
            start_params=coarse.params.to_numpy(), method="newton", maxiter=NEWTON_MAX_ITER, disp=False
        ),
    )


def _zinb_params(data: pd.DataFrame, outcome: str, covariates: list[str]) -> np.ndarray:
    """Full ZINB parameter vector; used as the bootstrap statistic."""
    return _fit_zinb(data[outcome], _design(data, covariates)).params.to_numpy()


def pearson_dispersion(result, y: pd.Series, X: pd.DataFrame) -> float:
    """Pearson chi-square over residual degrees of freedom.

    ZINB mean (1 - pi) * mu and variance (1 - pi) * mu * (1 + mu * (pi + alpha)).
    Values near 1 indicate adequate dispersion.
    """
    params = result.params
    beta = params[X.columns].to_numpy()
    gamma = params[[INFLATE_PREFIX + c for c in X.columns]].to_numpy()
    alpha = float(params["alpha"])
    mu = np.exp(X.to_numpy() @ beta)
    pi = expit(X.to_numpy() @ gamma)
    mean = (1 - pi) * mu
    var = (1 - pi) * mu * (1 + mu * (pi + alpha))
    pearson = float(np.sum((y.to_numpy() - mean) ** 2 / var))
    return pearson / (len(y) - len(params))


def likelihood_ratio(llf_full: float, llf_reduced: float, df: int) -> tuple[float, float]:
    stat = max(0.0, 2.0 * (llf_full - llf_reduced))
    return stat, float(chi2.sf(stat, df))


def fit_zinb_vfd(
    encounters: pd.DataFrame,
    covariates: list[str] | None = None,
    outcome: str = OUTCOME_VFD,
    exposure: str = VIRUS_INDICATOR,
    n_boot: int = N_BOOT_VFD,
    seed: int = RANDOM_SEED,
    n_jobs: int = N_JOBS,
    max_jackknife: int = MAX_JACKKNIFE_FITS,
) -> tuple[ZinbSummary, pd.DataFrame]:
    """Fit the ZINB model and bootstrap its coefficients.

    Returns
    -------
    summary : ZinbSummary for the exposure in both parts
    coefficients : one row per parameter with Wald, percentile and BCa
        intervals on the log scale and exponentiated

    Raises ModelConvergenceError when the full-data fit does not converge.
    Replicates that do not converge are dropped from the intervals.
    """
    model_name = "ZINB - ventilator-free days"
    covariates = VFD_COVARIATES if covariates is None else covariates
    missing = [c for c in [outcome, exposure] if c not in encounters.columns]
    if missing:
        raise SchemaError(model_name, missing)

    terms = [exposure] + [c for c in covariates if c in encounters.columns and c != exposure]
    data = encounters[[outcome] + terms].dropna().reset_index(drop=True)
    terms = [exposure] + [c for c in terms[1:] if data[c].nunique() > 1]
    data = data[[outcome] + terms]
    data[outcome] = data[outcome].astype(int)

    y = data[outcome]
    X = _design(data, terms)
    result = _fit_zinb(y, X, model_name)

    # Nested comparisons
    X_null = X[["const"]]
    null_fit = _fit_zinb(y, X_null, model_name + " (intercept only)")
    nb_fit = checked_fit(
        model_name + " (NB2)",
        lambda: sm.NegativeBinomial(y, X, loglike_method="nb2").fit(
            maxiter=MAX_ITER, disp=False
        ),
    )
    lr_null_df = 2 * len(terms)
    lr_null, p_null = likelihood_ratio(result.llf, null_fit.llf, lr_null_df)
    lr_nb_df = X.shape[1]
    lr_nb, p_nb = likelihood_ratio(result.llf, nb_fit.llf, lr_nb_df)
    dispersion = pearson_dispersion(result, y, X)

    print(f"  {model_name}: n={len(data):,}, zeros={int((y == 0).sum()):,}, "
          f"LR vs null={lr_null:.2f} (p={p_null:.3g}), LR vs NB={lr_nb:.2f} (p={p_nb:.3g}), "
          f"Pearson dispersion={dispersion:.3f}")

    statistic = partial(_zinb_params, outcome=outcome, covariates=terms)
    n_params = len(result.params)
    boot = run_bootstrap(statistic, data, n_boot=n_boot, seed=seed, n_jobs=n_jobs,
                         desc="ZINB bootstrap", width=n_params)
    jack = jackknife_values(statistic, data, max_fits=max_jackknife, n_jobs=n_jobs, width=n_params)

    names = list(result.params.index)
    coef = summarize_bootstrap(names, result.params.to_numpy(), boot, jack)
    coef.insert(0, "model", model_name)
    coef.insert(1, "part", np.select(
        [coef["term"].str.startswith(INFLATE_PREFIX), coef["term"] == "alpha"],
        ["zero_inflation", "dispersion"],
        default="count",
    ))
    coef["se"] = result.bse.to_numpy()
    coef["p_value"] = result.pvalues.to_numpy()
    coef["ci_lower"] = coef["estimate"] - Z_95 * coef["se"]
    coef["ci_upper"] = coef["estimate"] + Z_95 * coef["se"]
    is_ratio = coef["part"] != "dispersion"
    for col in ["estimate", "ci_lower", "ci_upper", "ci_low_percentile",
                "ci_high_percentile", "ci_low_bca", "ci_high_bca"]:
        coef["exp_" + col] = np.where(is_ratio, np.exp(coef[col]), np.nan)

    count_row = coef.set_index("term").loc[exposure]
    infl_row = coef.set_index("term").loc[INFLATE_PREFIX + exposure]
    summary = ZinbSummary(
        model=model_name,
        outcome=outcome,
        exposure=exposure,
        irr=round(float(count_row["exp_estimate"]), 4),
        irr_lower_95=round(float(count_row["exp_ci_low_bca"]), 4),
        irr_upper_95=round(float(count_row["exp_ci_high_bca"]), 4),
        p_value=float(count_row["p_value"]),
        inflation_or=round(float(infl_row["exp_estimate"]), 4),
        inflation_or_lower_95=round(float(infl_row["exp_ci_low_bca"]), 4),
        inflation_or_upper_95=round(float(infl_row["exp_ci_high_bca"]), 4),
        lr_vs_null_stat=round(lr_null, 4),
        lr_vs_null_df=int(lr_null_df),
        lr_vs_null_p=p_null,
        lr_vs_nb_stat=round(lr_nb, 4),
        lr_vs_nb_df=int(lr_nb_df),
        lr_vs_nb_p=p_nb,
        pearson_dispersion=round(dispersion, 4),
        alpha=round(float(result.params["alpha"]), 4),
        n_encounters=int(len(data)),
        n_zero=int((y == 0).sum()),
        n_boot=int(n_boot),
    )
    return summary, coef
