"""
Input Schema for the Encounter Observation File
===============================================
The pipeline reads one deidentified CSV with one row per encounter per
12-hour observation window. Encounter-level attributes repeat on every row
and collapse to one row per encounter for the modeling stages.

Usage:
    from input_schema import load_observation_file, collapse_to_encounters
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from definitions_source_of_truth import (
    DEATH_OR_HOSPICE_DISPOSITIONS,
    ENCOUNTER_KEY,
    HOURS_PER_DAY,
    LOS_HOURS,
    MORTALITY_FLAG,
    OUTCOME_DEATH_OR_HOSPICE,
    OUTCOME_INVASIVE_VENTILATION,
    OUTCOME_VFD,
    PATIENT_KEY,
    VFD_MAX_DAYS,
    VIRUS_INDICATOR,
    VIRUS_LABELS,
    VIRUS_SARS_COV_2,
)
from oxygen_support import derive_daily_states, ventilation_days
from pipeline_errors import EncounterConsistencyError, SchemaError

# ============================================================
# OBSERVATION FILE SCHEMA (one row per encounter x 12-hour window)
# ============================================================

OBSERVATION_COLUMNS = {
    ENCOUNTER_KEY: str,
    PATIENT_KEY: str,
    "virus": str,
    MORTALITY_FLAG: int,
    LOS_HOURS: float,
    "hours_since_admission": float,
    "o2_device": str,
}

# Window-level columns dropped when collapsing to encounters
WINDOW_COLUMNS = ["hours_since_admission", "o2_device"]

# Must be constant within an encounter
ENCOUNTER_INVARIANT_COLUMNS = [PATIENT_KEY, "virus", MORTALITY_FLAG, LOS_HOURS]

# ============================================================
# VALIDATION
# ============================================================

def validate_columns(df: pd.DataFrame, required) -> list[str]:
    """Return error messages for missing required columns (empty = valid)."""
    return [f"Missing required column: {col}" for col in required if col not in df.columns]


def require_columns(df: pd.DataFrame, required, stage: str) -> None:
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise SchemaError(stage, missing)


def validate_observation_file(df: pd.DataFrame) -> list[str]:
    """Validate the observation file against the schema.
    Returns list of error messages (empty = valid)."""
    errors = validate_columns(df, OBSERVATION_COLUMNS)
    if errors:
        return errors
    unknown_virus = sorted(set(df["virus"].dropna().astype(str)) - set(VIRUS_LABELS))
    if unknown_virus:
        errors.append(f"Unexpected virus labels: {unknown_virus}")
    if df["virus"].isna().any():
        errors.append(f"{int(df['virus'].isna().sum())} rows with missing virus label")
    flags = pd.to_numeric(df[MORTALITY_FLAG], errors="coerce")
    if not flags.dropna().isin([0, 1]).all() or flags.isna().any():
        errors.append(f"Column {MORTALITY_FLAG} must be 0/1 on every row")
    los = pd.to_numeric(df[LOS_HOURS], errors="coerce")
    if los.isna().any():
        errors.append(f"{int(los.isna().sum())} rows with missing or non-numeric {LOS_HOURS}")
    if (los.dropna() < 0).any():
        errors.append(f"Negative values in {LOS_HOURS}")
    return errors


def load_observation_file(filepath: str) -> pd.DataFrame:
    """Load the observation CSV and enforce the schema.

    Missing columns raise SchemaError; other schema violations raise
    ValueError listing every problem found.
    """
    df = pd.read_csv(filepath, low_memory=False)
    require_columns(df, OBSERVATION_COLUMNS, "observation file")
    errors = validate_observation_file(df)
    if errors:
        raise ValueError("Observation file failed validation:\n  " + "\n  ".join(errors))
    df[ENCOUNTER_KEY] = df[ENCOUNTER_KEY].astype(str)
    df[PATIENT_KEY] = df[PATIENT_KEY].astype(str)
    df[MORTALITY_FLAG] = df[MORTALITY_FLAG].astype(int)
    df[LOS_HOURS] = pd.to_numeric(df[LOS_HOURS], errors="coerce")
    print(
        f"Loaded {len(df):,} observation windows for "
        f"{df[ENCOUNTER_KEY].nunique():,} encounters from {filepath}"
    )
    return df


# ============================================================
# ENCOUNTER COLLAPSE
# ============================================================

def check_encounter_invariants(df: pd.DataFrame) -> pd.DataFrame:
    """Encounters whose invariant columns take more than one value."""
    cols = [c for c in ENCOUNTER_INVARIANT_COLUMNS if c in df.columns]
    n_values = df.groupby(ENCOUNTER_KEY)[cols].nunique(dropna=False)
    return n_values[(n_values > 1).any(axis=1)]


def collapse_to_encounters(df: pd.DataFrame) -> pd.DataFrame:
    """Collapse the observation file to exactly one row per encounter.

    Raises EncounterConsistencyError when an encounter maps to more than one
    patient, virus, mortality flag or length of stay.
    """
    require_columns(df, [ENCOUNTER_KEY] + ENCOUNTER_INVARIANT_COLUMNS, "encounter collapse")
    conflicts = check_encounter_invariants(df)
    if not conflicts.empty:
        examples = list(conflicts.index[:5])
        raise EncounterConsistencyError(
            f"{len(conflicts)} encounters have conflicting values in "
            f"{list(conflicts.columns[(conflicts > 1).any()])}; e.g. {examples}"
        )

    n_before = df[ENCOUNTER_KEY].nunique()
    static_cols = [c for c in df.columns if c not in WINDOW_COLUMNS]
    encounters = (
        df[static_cols]
        .groupby(ENCOUNTER_KEY, sort=True, as_index=False)
        .first()
    )
    if len(encounters) != n_before:
        raise EncounterConsistencyError(
            f"Encounter collapse changed the encounter count: {n_before} -> {len(encounters)}"
        )

    encounters[VIRUS_INDICATOR] = (encounters["virus"] == VIRUS_SARS_COV_2).astype(int)
    encounters["los_days"] = encounters[LOS_HOURS] / HOURS_PER_DAY
    return encounters


def derive_encounter_outcomes(encounters: pd.DataFrame, observations: pd.DataFrame) -> pd.DataFrame:
    """Fill in outcome columns the observation file does not carry.

    - invasive_ventilation: any IMV window during the stay
    - ventilator_free_days: 0 if died, else 28 minus IMV days in days 0-27
    - death_or_hospice: from discharge_disposition when present
    """
    out = encounters.copy()
    needs_vent = OUTCOME_INVASIVE_VENTILATION not in out.columns or OUTCOME_VFD not in out.columns
    if needs_vent:
        daily = derive_daily_states(observations)
        vent = ventilation_days(daily, horizon=VFD_MAX_DAYS).rename(
            columns={"invasive_ventilation": "any_imv"}
        )
        out = out.merge(vent, on=ENCOUNTER_KEY, how="left")
        out["imv_days"] = out["imv_days"].fillna(0).astype(int)
        if OUTCOME_INVASIVE_VENTILATION not in encounters.columns:
            out[OUTCOME_INVASIVE_VENTILATION] = out["any_imv"].fillna(0).astype(int)
        if OUTCOME_VFD not in encounters.columns:
            out[OUTCOME_VFD] = np.where(
                out[MORTALITY_FLAG] == 1,
                0,
                np.maximum(0, VFD_MAX_DAYS - out["imv_days"]),
            ).astype(int)
        out = out.drop(columns=["any_imv", "imv_days"])

    if OUTCOME_DEATH_OR_HOSPICE not in out.columns:
        if "discharge_disposition" not in out.columns:
            raise SchemaError(
                "encounter outcomes", [OUTCOME_DEATH_OR_HOSPICE + " or discharge_disposition"]
            )
        disposition = out["discharge_disposition"].astype(str).str.strip().str.lower()
        out[OUTCOME_DEATH_OR_HOSPICE] = (
            disposition.str.contains("|".join(DEATH_OR_HOSPICE_DISPOSITIONS), na=False)
            | (out[MORTALITY_FLAG] == 1)
        ).astype(int)
    return out


def load_encounters(filepath: str) -> pd.DataFrame:
    """Observation file -> one row per encounter with derived outcomes."""
    observations = load_observation_file(filepath)
    encounters = collapse_to_encounters(observations)
    encounters = derive_encounter_outcomes(encounters, observations)
    print(
        f"Collapsed to {len(encounters):,} encounters "
        f"({encounters['virus'].value_counts().to_dict()})"
    )
    return encounters
