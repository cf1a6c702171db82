"""Ordinal oxygen-support scale and daily-state derivation.

Each 12-hour observation window records the highest oxygen device in use.
Devices are mapped onto a totally ordered scale so that the daily state is the
ordinal maximum across the windows of a hospital day:

    Admission < Room Air < 1-6 LPM < 7-15 LPM < High-Flow < NIV < IMV

Raw labels that match no level are kept as missing. They are counted and
reported, never coerced to a level.
"""

from __future__ import annotations

from enum import IntEnum

import numpy as np
import pandas as pd

from definitions_source_of_truth import (
    ENCOUNTER_KEY,
    HOURS_PER_DAY,
    STATE_DEAD,
    STATE_DISCHARGED,
)
from pipeline_errors import SchemaError


class OxygenSupport(IntEnum):
    ADMISSION = 0
    ROOM_AIR = 1
    LOW_FLOW = 2
    MID_FLOW = 3
    HIGH_FLOW = 4
    NIV = 5
    IMV = 6

    @property
    def label(self) -> str:
        return _CANONICAL_LABELS[self]

    @property
    def is_measured(self) -> bool:
        """False for the admission placeholder, which carries no support level."""
        return self is not OxygenSupport.ADMISSION

    @classmethod
    def from_label(cls, label: str) -> "OxygenSupport":
        for level, name in _CANONICAL_LABELS.items():
            if name == label:
                return level
        raise ValueError(f"Not a canonical oxygen-support label: {label!r}")


_CANONICAL_LABELS = {
    OxygenSupport.ADMISSION: "Admission",
    OxygenSupport.ROOM_AIR: "Room Air",
    OxygenSupport.LOW_FLOW: "1-6 LPM",
    OxygenSupport.MID_FLOW: "7-15 LPM",
    OxygenSupport.HIGH_FLOW: "High-Flow",
    OxygenSupport.NIV: "NIV",
    OxygenSupport.IMV: "IMV",
}

# Normalized raw label -> level. Keys are lower-case with collapsed whitespace.
_DEVICE_ALIASES = {
    "admission": OxygenSupport.ADMISSION,
    "room air": OxygenSupport.ROOM_AIR,
    "ra": OxygenSupport.ROOM_AIR,
    "1-6 lpm": OxygenSupport.LOW_FLOW,
    "1–6 lpm": OxygenSupport.LOW_FLOW,
    "nasal cannula 1-6 lpm": OxygenSupport.LOW_FLOW,
    "low flow": OxygenSupport.LOW_FLOW,
    "7-15 lpm": OxygenSupport.MID_FLOW,
    "7–15 lpm": OxygenSupport.MID_FLOW,
    "face mask 7-15 lpm": OxygenSupport.MID_FLOW,
    "non-rebreather": OxygenSupport.MID_FLOW,
    "high-flow": OxygenSupport.HIGH_FLOW,
    "high flow": OxygenSupport.HIGH_FLOW,
    "hfnc": OxygenSupport.HIGH_FLOW,
    "high flow nasal cannula": OxygenSupport.HIGH_FLOW,
    "niv": OxygenSupport.NIV,
    "nippv": OxygenSupport.NIV,
    "bipap": OxygenSupport.NIV,
    "cpap": OxygenSupport.NIV,
    "non-invasive ventilation": OxygenSupport.NIV,
    "noninvasive ventilation": OxygenSupport.NIV,
    "imv": OxygenSupport.IMV,
    "invasive mechanical ventilation": OxygenSupport.IMV,
    "mechanical ventilation": OxygenSupport.IMV,
    "invasive-ventilation": OxygenSupport.IMV,
}

# Terminal and support-level labels from most to least acute, for plotting
STATE_ACUITY_ORDER = [
    STATE_DEAD,
    STATE_DISCHARGED,
    OxygenSupport.IMV.label,
    OxygenSupport.NIV.label,
    OxygenSupport.HIGH_FLOW.label,
    OxygenSupport.MID_FLOW.label,
    OxygenSupport.LOW_FLOW.label,
    OxygenSupport.ROOM_AIR.label,
]


def parse_device(raw) -> OxygenSupport | None:
    """Map a raw device label to its level; None when unrecognized or missing."""
    if raw is None or (isinstance(raw, float) and np.isnan(raw)) or raw is pd.NA:
        return None
    key = " ".join(str(raw).strip().lower().split())
    return _DEVICE_ALIASES.get(key)


def encode_devices(devices: pd.Series) -> pd.Series:
    """Vectorised parse_device returning a nullable integer series of levels."""
    codes = {}
    for raw in devices.dropna().unique():
        level = parse_device(raw)
        codes[raw] = int(level) if level is not None else pd.NA
    levels = [codes[v] if pd.notna(v) else pd.NA for v in devices]
    return pd.Series(pd.array(levels, dtype="Int64"), index=devices.index)


def label_for_level(level) -> object:
    """Trajectory label for an ordinal level. Admission and missing give <NA>."""
    if level is None or level is pd.NA or (isinstance(level, float) and np.isnan(level)):
        return pd.NA
    support = OxygenSupport(int(level))
    return support.label if support.is_measured else pd.NA


def derive_daily_states(
    intervals: pd.DataFrame,
    device_col: str = "o2_device",
    hours_col: str = "hours_since_admission",
) -> pd.DataFrame:
    """Collapse 12-hour windows to one highest-support state per hospital day.

    Returns
    -------
    DataFrame with encounter_id, hospital_day, support_level (nullable int,
    the ordinal max over the day's recognized windows) and daily_state.
    A day with no recognized window has a missing level and state.
    """
    missing = [c for c in [ENCOUNTER_KEY, device_col, hours_col] if c not in intervals.columns]
    if missing:
        raise SchemaError("daily state derivation", missing)

    df = intervals[[ENCOUNTER_KEY, hours_col, device_col]].copy()
    df["hospital_day"] = np.floor(
        pd.to_numeric(df[hours_col], errors="coerce") / HOURS_PER_DAY
    ).astype("Int64")
    df["support_level"] = encode_devices(df[device_col])

    unrecognized = df[df[device_col].notna() & df["support_level"].isna()]
    if not unrecognized.empty:
        labels = sorted(unrecognized[device_col].astype(str).unique())
        print(
            f"  WARNING: {len(unrecognized):,} observation windows with unrecognized "
            f"device labels kept as missing: {labels}"
        )

    df = df[df["hospital_day"].notna()]
    daily = (
        df.groupby([ENCOUNTER_KEY, "hospital_day"])["support_level"]
        .max()
        .reset_index()
    )
    daily["support_level"] = daily["support_level"].astype("Int64")
    daily["daily_state"] = daily["support_level"].map(label_for_level).astype("object")
    return daily.sort_values([ENCOUNTER_KEY, "hospital_day"]).reset_index(drop=True)


def apply_terminal_override(
    daily: pd.DataFrame,
    encounters: pd.DataFrame,
    died_col: str = "died",
    los_col: str = "los_hours",
) -> pd.DataFrame:
    """Label the final recorded day as Dead/Discharged.

    The override applies only when the final recorded day is the encounter's
    last day of stay (floor(los_hours / 24)); a record that stops earlier is
    left to trajectory reconciliation.
    """
    out = daily.merge(
        encounters[[ENCOUNTER_KEY, died_col, los_col]].drop_duplicates(ENCOUNTER_KEY),
        on=ENCOUNTER_KEY,
        how="left",
    )
    day = out["hospital_day"].astype(float)
    last_day = day.groupby(out[ENCOUNTER_KEY]).transform("max")
    los_day = np.floor(pd.to_numeric(out[los_col], errors="coerce") / HOURS_PER_DAY)
    is_final = (day == last_day) & (day == los_day)
    terminal = np.where(out[died_col] == 1, STATE_DEAD, STATE_DISCHARGED)
    out["daily_state"] = out["daily_state"].where(~is_final, pd.Series(terminal, index=out.index))
    return out.drop(columns=[died_col, los_col])


def ventilation_days(daily: pd.DataFrame, horizon: int) -> pd.DataFrame:
    """Per encounter: any IMV and number of IMV days before `horizon`."""
    is_imv = daily["support_level"].fillna(-1).astype(int) == int(OxygenSupport.IMV)
    within = daily["hospital_day"] < horizon
    flags = daily.assign(
        _imv=is_imv.astype(int),
        _imv_in_window=(is_imv & within).astype(int),
    )
    return (
        flags.groupby(ENCOUNTER_KEY)
        .agg(invasive_ventilation=("_imv", "max"), imv_days=("_imv_in_window", "sum"))
        .reset_index()
    )
