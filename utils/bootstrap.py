"""
Bootstrap Confidence Intervals
==============================
Parallel nonparametric bootstrap with percentile and bias-corrected and
accelerated (BCa) intervals.

Replicates are an embarrassingly parallel map over replicate indices. Each
replicate gets its own generator spawned from one SeedSequence, so results do
not depend on n_jobs or scheduling order. Replicates that fail to fit are
recorded as NaN and counted; intervals use the finite replicates only.

Usage:
    from bootstrap import run_bootstrap, jackknife_values, bca_ci, summarize_bootstrap
"""

from __future__ import annotations

from typing import Callable, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.stats import norm
from tqdm import tqdm

from definitions_source_of_truth import MAX_JACKKNIFE_FITS, N_JOBS, RANDOM_SEED
from pipeline_errors import ModelConvergenceError

# Failures that void a single replicate rather than the whole bootstrap
REPLICATE_FAILURES = (ModelConvergenceError, ValueError, np.linalg.LinAlgError)


def replicate_generators(seed: int, n: int) -> list[np.random.Generator]:
    """Independent generators for n replicates from one root seed."""
    return [np.random.default_rng(s) for s in np.random.SeedSequence(seed).spawn(n)]


def _as_vector(value) -> np.ndarray:
    return np.atleast_1d(np.asarray(value, dtype=float))


def _stack(results: list[np.ndarray | None], width: int | None) -> np.ndarray:
    """Rows of replicate results; failed replicates become rows of NaN."""
    if width is None:
        width = max((len(r) for r in results if r is not None), default=1)
    out = np.full((len(results), width), np.nan)
    for i, r in enumerate(results):
        if r is not None:
            out[i] = r
    return out


def _one_replicate(
    statistic: Callable[[pd.DataFrame], Sequence[float] | float],
    data: pd.DataFrame,
    rng: np.random.Generator,
    strata: np.ndarray | None,
) -> np.ndarray | None:
    if strata is None:
        idx = rng.integers(0, len(data), size=len(data))
    else:
        # Resample within each stratum, keeping stratum sizes fixed
        idx = np.concatenate([
            rng.choice(np.flatnonzero(strata == level), size=int((strata == level).sum()), replace=True)
            for level in np.unique(strata)
        ])
    try:
        return _as_vector(statistic(data.iloc[idx]))
    except REPLICATE_FAILURES:
        return None


def run_bootstrap(
    statistic: Callable[[pd.DataFrame], Sequence[float] | float],
    data: pd.DataFrame,
    n_boot: int,
    seed: int = RANDOM_SEED,
    n_jobs: int = N_JOBS,
    strata: str | None = None,
    desc: str = "Bootstrap",
    width: int | None = None,
) -> np.ndarray:
    """Evaluate `statistic` on n_boot row resamples of `data`.

    Parameters
    ----------
    statistic : callable
        Maps a DataFrame to a scalar or a fixed-length vector.
    strata : str, optional
        Column to resample within (e.g. the outcome for AUROC).
    width : int, optional
        Length of the statistic. Needed when every replicate may fail;
        otherwise taken from the first successful replicate.

    Returns
    -------
    ndarray of shape (n_boot, k). Failed replicates are rows of NaN.
    """
    strata_values = data[strata].to_numpy() if strata is not None else None
    generators = replicate_generators(seed, n_boot)
    results = Parallel(n_jobs=n_jobs, backend="loky")(
        delayed(_one_replicate)(statistic, data, rng, strata_values)
        for rng in tqdm(generators, desc=desc, leave=False)
    )

    boot = _stack(results, width)
    n_failed = int(np.sum([r is None for r in results]))
    if n_failed:
        print(f"  {desc}: {n_failed}/{n_boot} replicates failed and were recorded as NaN")
    return boot


def jackknife_values(
    statistic: Callable[[pd.DataFrame], Sequence[float] | float],
    data: pd.DataFrame,
    max_fits: int = MAX_JACKKNIFE_FITS,
    n_jobs: int = N_JOBS,
    width: int | None = None,
) -> np.ndarray:
    """Leave-one-out estimates for the BCa acceleration constant.

    Row-level jackknife is expensive for model fits; when the data has more
    than `max_fits` rows a deterministic evenly spaced subsample of rows is
    left out instead.
    """
    n_jack = min(len(data), max_fits)
    drop_idx = np.linspace(0, len(data) - 1, n_jack, dtype=int)

    def _leave_out(i: int) -> np.ndarray | None:
        try:
            return _as_vector(statistic(data.drop(data.index[i])))
        except REPLICATE_FAILURES:
            return None

    results = Parallel(n_jobs=n_jobs, backend="loky")(
        delayed(_leave_out)(int(i)) for i in drop_idx
    )
    return _stack(results, width)


def percentile_ci(boot_vals: np.ndarray, alpha: float = 0.05) -> tuple[float, float]:
    clean = np.asarray(boot_vals, dtype=float)
    clean = clean[np.isfinite(clean)]
    if clean.size == 0:
        return np.nan, np.nan
    return (
        float(np.percentile(clean, 100 * alpha / 2)),
        float(np.percentile(clean, 100 * (1 - alpha / 2))),
    )


def bca_ci(
    point_est: float,
    boot_vals: np.ndarray,
    jack_vals: np.ndarray | None,
    alpha: float = 0.05,
) -> tuple[float, float]:
    """Bias-corrected and accelerated (BCa) CI.

    Falls back to the percentile interval when fewer than 10 finite
    replicates or fewer than 3 finite jackknife values are available.
    """
    clean_boot = np.asarray(boot_vals, dtype=float)
    clean_boot = clean_boot[np.isfinite(clean_boot)]
    pctl_low, pctl_high = percentile_ci(clean_boot, alpha)

    if clean_boot.size < 10 or not np.isfinite(point_est):
        return pctl_low, pctl_high
    if jack_vals is None:
        return pctl_low, pctl_high
    clean_jack = np.asarray(jack_vals, dtype=float)
    clean_jack = clean_jack[np.isfinite(clean_jack)]
    if clean_jack.size < 3:
        return pctl_low, pctl_high

    prop_less = np.mean(clean_boot < point_est)
    prop_less = float(np.clip(prop_less, 1e-6, 1 - 1e-6))
    z0 = float(norm.ppf(prop_less))

    jack_mean = float(clean_jack.mean())
    diffs = jack_mean - clean_jack
    num = float(np.sum(diffs**3))
    den = float(6.0 * (np.sum(diffs**2) ** 1.5))
    accel = num / den if den > 0 else 0.0

    z_low = float(norm.ppf(alpha / 2))
    z_high = float(norm.ppf(1 - alpha / 2))
    adj_low = norm.cdf(z0 + (z0 + z_low) / (1 - accel * (z0 + z_low)))
    adj_high = norm.cdf(z0 + (z0 + z_high) / (1 - accel * (z0 + z_high)))
    adj_low = float(np.clip(adj_low, 0.0, 1.0))
    adj_high = float(np.clip(adj_high, 0.0, 1.0))

    return float(np.quantile(clean_boot, adj_low)), float(np.quantile(clean_boot, adj_high))


def _pad_columns(values: np.ndarray, width: int) -> np.ndarray:
    values = np.asarray(values, dtype=float).reshape(len(values), -1)
    if values.shape[1] >= width:
        return values
    pad = np.full((len(values), width - values.shape[1]), np.nan)
    return np.hstack([values, pad])


def summarize_bootstrap(
    names: Sequence[str],
    point: Sequence[float],
    boot: np.ndarray,
    jack: np.ndarray | None = None,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """One row per statistic: estimate, percentile CI, BCa CI, replicates used.

    Statistics with no column in `boot` or `jack` (every replicate failed)
    get NaN intervals.
    """
    boot = _pad_columns(boot, len(names))
    jack = None if jack is None else _pad_columns(jack, len(names))
    rows = []
    for j, name in enumerate(names):
        pct_low, pct_high = percentile_ci(boot[:, j], alpha)
        jk = None if jack is None else jack[:, j]
        bca_low, bca_high = bca_ci(point[j], boot[:, j], jk, alpha)
        rows.append({
            "term": name,
            "estimate": float(point[j]),
            "ci_low_percentile": pct_low,
            "ci_high_percentile": pct_high,
            "ci_low_bca": bca_low,
            "ci_high_bca": bca_high,
            "n_boot_valid": int(np.isfinite(boot[:, j]).sum()),
        })
    return pd.DataFrame(rows)
