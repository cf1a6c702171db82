"""Error taxonomy shared by the analysis stages, plus the convergence check
used by every model fit."""

from __future__ import annotations

import warnings
from typing import Any, Callable

from statsmodels.tools.sm_exceptions import ConvergenceWarning


class SchemaError(KeyError):
    """Required input columns are missing; the stage cannot run."""

    def __init__(self, stage: str, missing: list[str]):
        self.stage = stage
        self.missing = list(missing)
        super().__init__(f"{stage}: missing required columns {self.missing}")

    def __str__(self) -> str:
        return self.args[0]


class EncounterConsistencyError(ValueError):
    """Encounter-level attributes disagree across rows of one encounter."""


class ModelConvergenceError(RuntimeError):
    """A model fit did not converge. Fatal for that fit only."""

    def __init__(self, model: str, diagnostic: str):
        self.model = model
        self.diagnostic = diagnostic
        super().__init__(f"{model} did not converge: {diagnostic}")


class StepwiseSelectionError(RuntimeError):
    """Backward selection failed; the competing-risks stage halts."""


def _solver_converged(result) -> bool | None:
    flag = getattr(result, "converged", None)
    if flag is None:
        flag = (getattr(result, "mle_retvals", None) or {}).get("converged")
    return None if flag is None else bool(flag)


def checked_fit(model: str, fit: Callable[[], Any]):
    """Run a model fit and raise ModelConvergenceError if the solver gave up.

    Non-convergence is detected from ConvergenceWarning (or any warning that
    mentions convergence) raised during the fit, and from the result's
    `converged` / `mle_retvals["converged"]` flag when it has one.
    """
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = fit()
    messages = [
        str(w.message) for w in caught
        if issubclass(w.category, ConvergenceWarning) or "converge" in str(w.message).lower()
    ]
    if _solver_converged(result) is False:
        messages.append("solver reported converged=False")
    if messages:
        raise ModelConvergenceError(model, "; ".join(dict.fromkeys(messages)))
    return result
