"""Maximum-entropy space-filling design for hyperparameter search.

Points are chosen greedily from a Latin hypercube candidate pool on the unit
cube so that the determinant of their Gaussian correlation matrix is as large
as possible (maximum entropy under a Gaussian-process prior). Unit-cube
coordinates are then mapped onto each parameter's range and scale.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist
from scipy.stats import qmc

from definitions_source_of_truth import GBM_PARAM_SPACE, RANDOM_SEED

CANDIDATES_PER_POINT = 50


def _correlation(points: np.ndarray, length_scale: float) -> np.ndarray:
    return np.exp(-cdist(points, points, "sqeuclidean") / (2 * length_scale ** 2))


def max_entropy_design(
    size: int,
    n_dims: int,
    seed: int = RANDOM_SEED,
    n_candidates: int | None = None,
    length_scale: float = 0.2,
) -> np.ndarray:
    """Greedy maximum-entropy design of `size` points in [0, 1]^n_dims."""
    if size < 1:
        raise ValueError("Design size must be at least 1")
    n_candidates = n_candidates or max(size * CANDIDATES_PER_POINT, 200)
    pool = qmc.LatinHypercube(d=n_dims, seed=seed).random(n_candidates)

    # Start from the candidate closest to the centre of the cube
    chosen = [int(np.argmin(np.sum((pool - 0.5) ** 2, axis=1)))]
    while len(chosen) < min(size, n_candidates):
        best, best_logdet = None, -np.inf
        for i in range(n_candidates):
            if i in chosen:
                continue
            sign, logdet = np.linalg.slogdet(_correlation(pool[chosen + [i]], length_scale))
            if sign > 0 and logdet > best_logdet:
                best, best_logdet = i, logdet
        if best is None:
            break
        chosen.append(best)
    return pool[chosen]


def scale_design(unit: np.ndarray, space: dict[str, tuple[float, float, str]]) -> pd.DataFrame:
    """Map unit-cube points onto parameter values.

    space maps name -> (low, high, scale) with scale "linear", "int" or
    "log10" (low/high are exponents).
    """
    columns = {}
    for j, (name, (low, high, scale)) in enumerate(space.items()):
        values = low + unit[:, j] * (high - low)
        if scale == "int":
            columns[name] = np.rint(values).astype(int)
        elif scale == "log10":
            columns[name] = 10.0 ** values
        elif scale == "linear":
            columns[name] = values
        else:
            raise ValueError(f"Unknown scale {scale!r} for parameter {name}")
    return pd.DataFrame(columns)


def gbm_parameter_grid(size: int, seed: int = RANDOM_SEED, space=GBM_PARAM_SPACE) -> pd.DataFrame:
    """Gradient-boosting configurations from a maximum-entropy design."""
    grid = scale_design(max_entropy_design(size, len(space), seed=seed), space)
    grid.insert(0, "config_id", range(len(grid)))
    return grid
