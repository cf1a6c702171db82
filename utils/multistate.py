"""Multistate trajectory utilities for the oxygen-support alluvial analysis.

Daily highest-support states are carried forward over the 28-day window,
sampled at fixed checkpoint days and reconciled against each encounter's
recorded outcome:

    daily states -> wide (day 0..28) -> forward fill -> checkpoint days
    -> reconcile with length of stay -> ordered long table

A checkpoint after the encounter's last day of stay must show the encounter's
terminal outcome. Rows that do not are flagged "prob" and overwritten with
Dead/Discharged from the mortality flag.
"""

from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from definitions_source_of_truth import (
    CHECKPOINT_DAYS,
    DEFAULT_UNRESOLVED_STATE,
    ENCOUNTER_KEY,
    HOURS_PER_DAY,
    LOS_HOURS,
    MORTALITY_FLAG,
    RECON_GOOD,
    RECON_PROBLEM,
    RECON_STILL_IN,
    STATE_DEAD,
    STATE_DISCHARGED,
    TERMINAL_STATES,
    TRAJECTORY_HORIZON_DAYS,
)
from oxygen_support import STATE_ACUITY_ORDER, apply_terminal_override, derive_daily_states
from pipeline_errors import SchemaError


def pivot_daily_states(
    daily: pd.DataFrame,
    horizon: int = TRAJECTORY_HORIZON_DAYS,
    encounter_ids: Iterable | None = None,
) -> pd.DataFrame:
    """One row per encounter, one column per hospital day 0..horizon."""
    in_window = daily[(daily["hospital_day"] >= 0) & (daily["hospital_day"] <= horizon)]
    wide = in_window.pivot(index=ENCOUNTER_KEY, columns="hospital_day", values="daily_state")
    wide.columns = [int(c) for c in wide.columns]
    wide = wide.reindex(columns=range(horizon + 1))
    if encounter_ids is not None:
        wide = wide.reindex(pd.Index(pd.unique(pd.Series(list(encounter_ids))), name=ENCOUNTER_KEY))
    wide.index.name = ENCOUNTER_KEY
    return wide.astype("object")


def forward_fill_days(wide: pd.DataFrame) -> pd.DataFrame:
    """Carry each day's state forward until the next recorded day."""
    day_cols = sorted(wide.columns)
    filled = wide[day_cols].astype("object").ffill(axis=1)
    return filled.astype("object")


def checkpoint_long(
    wide: pd.DataFrame,
    checkpoints: Sequence[int] = CHECKPOINT_DAYS,
) -> pd.DataFrame:
    """Restrict to checkpoint days and melt to one row per encounter-day."""
    long = (
        wide[list(checkpoints)]
        .reset_index()
        .melt(id_vars=ENCOUNTER_KEY, var_name="checkpoint_day", value_name="state")
    )
    long["checkpoint_day"] = long["checkpoint_day"].astype(int)
    long = long.sort_values([ENCOUNTER_KEY, "checkpoint_day"]).reset_index(drop=True)
    long["state"] = long.groupby([ENCOUNTER_KEY, "checkpoint_day"])["state"].transform(
        lambda s: s.ffill().bfill()
    )
    return long


def reconcile_trajectories(long: pd.DataFrame, encounters: pd.DataFrame) -> pd.DataFrame:
    """Check checkpoint states against length of stay and recorded outcome.

    Adds
    ----
    los_day        : floor(los_hours / 24)
    reconciliation : "still in" (checkpoint within the stay), "good" (past the
                     stay and already the matching terminal state) or "prob"
    state_imputed  : True where no state could be resolved and room air was assumed
    """
    missing = [c for c in [ENCOUNTER_KEY, MORTALITY_FLAG, LOS_HOURS] if c not in encounters.columns]
    if missing:
        raise SchemaError("trajectory reconciliation", missing)

    out = long.merge(
        encounters[[ENCOUNTER_KEY, MORTALITY_FLAG, LOS_HOURS]].drop_duplicates(ENCOUNTER_KEY),
        on=ENCOUNTER_KEY,
        how="left",
    )
    out["los_day"] = np.floor(pd.to_numeric(out[LOS_HOURS], errors="coerce") / HOURS_PER_DAY)
    outcome_state = pd.Series(
        np.where(out[MORTALITY_FLAG] == 1, STATE_DEAD, STATE_DISCHARGED), index=out.index
    )
    after_stay = out["checkpoint_day"] > out["los_day"]
    matches_outcome = out["state"].fillna("").astype(str) == outcome_state

    out["reconciliation"] = np.select(
        [~after_stay, matches_outcome],
        [RECON_STILL_IN, RECON_GOOD],
        default=RECON_PROBLEM,
    )
    problems = out["reconciliation"] == RECON_PROBLEM
    if problems.any():
        n_enc = out.loc[problems, ENCOUNTER_KEY].nunique()
        print(
            f"  Reconciliation: {int(problems.sum()):,} checkpoint states past the recorded "
            f"stay in {n_enc:,} encounters set to the recorded outcome"
        )
    out["state"] = out["state"].where(~problems, outcome_state)

    out["state_imputed"] = out["state"].isna()
    if out["state_imputed"].any():
        print(
            f"  {int(out['state_imputed'].sum()):,} unresolved checkpoint states "
            f"assumed '{DEFAULT_UNRESOLVED_STATE}' (flagged state_imputed)"
        )
    out["state"] = out["state"].fillna(DEFAULT_UNRESOLVED_STATE)
    return out.drop(columns=[MORTALITY_FLAG, LOS_HOURS])


def order_trajectories(long: pd.DataFrame, checkpoints: Sequence[int] = CHECKPOINT_DAYS) -> pd.DataFrame:
    """Acuity-ordered states and chronological checkpoint days for plotting."""
    out = long.copy()
    out["state"] = pd.Categorical(out["state"], categories=STATE_ACUITY_ORDER, ordered=True)
    out["checkpoint_day"] = pd.Categorical(
        out["checkpoint_day"], categories=list(checkpoints), ordered=True
    )
    return out.sort_values([ENCOUNTER_KEY, "checkpoint_day"]).reset_index(drop=True)


def build_trajectories(
    observations: pd.DataFrame,
    encounters: pd.DataFrame,
    horizon: int = TRAJECTORY_HORIZON_DAYS,
    checkpoints: Sequence[int] = CHECKPOINT_DAYS,
) -> pd.DataFrame:
    """Observation windows -> reconciled checkpoint trajectories.

    Returns one row per encounter and checkpoint day with columns
    encounter_id, virus (when available), checkpoint_day, state, los_day,
    reconciliation, state_imputed.
    """
    daily = derive_daily_states(observations)
    daily = apply_terminal_override(daily, encounters)
    wide = pivot_daily_states(daily, horizon=horizon, encounter_ids=encounters[ENCOUNTER_KEY])
    wide = forward_fill_days(wide)
    long = checkpoint_long(wide, checkpoints=checkpoints)
    long = reconcile_trajectories(long, encounters)
    if "virus" in encounters.columns:
        long = long.merge(encounters[[ENCOUNTER_KEY, "virus"]], on=ENCOUNTER_KEY, how="left")
    cols = [ENCOUNTER_KEY] + (["virus"] if "virus" in long.columns else []) + [
        "checkpoint_day", "state", "los_day", "reconciliation", "state_imputed",
    ]
    return order_trajectories(long[cols], checkpoints=checkpoints)


def trajectory_for_encounter(
    intervals: Sequence[tuple[float, str]],
    died: int,
    los_hours: float,
    encounter_id: str = "encounter",
) -> pd.DataFrame:
    """Checkpoint trajectory of a single encounter.

    intervals is a sequence of (hours_since_admission, device_label) pairs.
    Runs the same code path as build_trajectories on one encounter.
    """
    observations = pd.DataFrame(
        [(encounter_id, hours, device) for hours, device in intervals],
        columns=[ENCOUNTER_KEY, "hours_since_admission", "o2_device"],
    )
    encounters = pd.DataFrame(
        {ENCOUNTER_KEY: [encounter_id], MORTALITY_FLAG: [int(died)], LOS_HOURS: [float(los_hours)]}
    )
    return build_trajectories(observations, encounters)


def trajectories_wide(trajectories: pd.DataFrame) -> pd.DataFrame:
    """One row per encounter with one state column per checkpoint day."""
    index_cols = [ENCOUNTER_KEY] + (["virus"] if "virus" in trajectories.columns else [])
    flat = trajectories.assign(
        checkpoint_day=trajectories["checkpoint_day"].astype(int),
        state=trajectories["state"].astype(str),
    )
    wide = flat.pivot(index=index_cols, columns="checkpoint_day", values="state")
    wide = wide[sorted(wide.columns)]
    wide.columns = [f"day_{int(c)}" for c in wide.columns]
    return wide.reset_index()


def state_occupancy(trajectories: pd.DataFrame) -> pd.DataFrame:
    """Proportion of encounters in each state per virus and checkpoint day."""
    group_cols = (["virus"] if "virus" in trajectories.columns else []) + ["checkpoint_day"]
    counts = (
        trajectories.groupby(group_cols + ["state"], observed=False)
        .size()
        .rename("n")
        .reset_index()
    )
    totals = counts.groupby(group_cols, observed=True)["n"].transform("sum")
    counts["proportion"] = np.where(totals > 0, counts["n"] / totals, np.nan)
    return counts


def state_transition_counts(trajectories: pd.DataFrame) -> pd.DataFrame:
    """Counts of (from_state, to_state) between consecutive checkpoint days."""
    rows: list[pd.DataFrame] = []
    days = list(trajectories["checkpoint_day"].cat.categories) if hasattr(
        trajectories["checkpoint_day"], "cat"
    ) else sorted(trajectories["checkpoint_day"].unique())
    by_virus = trajectories.groupby("virus", observed=True) if "virus" in trajectories.columns else [
        (None, trajectories)
    ]
    for virus, grp in by_virus:
        wide = grp.pivot(index=ENCOUNTER_KEY, columns="checkpoint_day", values="state")
        for day_from, day_to in zip(days[:-1], days[1:]):
            pairs = (
                pd.DataFrame({"from_state": wide[day_from], "to_state": wide[day_to]})
                .value_counts()
                .rename("n")
                .reset_index()
            )
            pairs = pairs[pairs["n"] > 0].copy()
            pairs.insert(0, "day_to", int(day_to))
            pairs.insert(0, "day_from", int(day_from))
            if virus is not None:
                pairs.insert(0, "virus", virus)
            rows.append(pairs)
    if not rows:
        return pd.DataFrame(columns=["virus", "day_from", "day_to", "from_state", "to_state", "n"])
    out = pd.concat(rows, ignore_index=True)
    out["from_state"] = out["from_state"].astype(str)
    out["to_state"] = out["to_state"].astype(str)
    return out


def terminal_consistency_violations(trajectories: pd.DataFrame) -> pd.DataFrame:
    """Rows past the recorded stay whose state is not the recorded outcome.

    Empty after reconcile_trajectories; kept as an audit check for exports.
    """
    past = trajectories["checkpoint_day"].astype(int) > trajectories["los_day"]
    terminal = trajectories["state"].astype(str).isin(TERMINAL_STATES)
    return trajectories[past & ~terminal]
