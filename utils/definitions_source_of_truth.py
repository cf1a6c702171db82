"""
Single Source of Truth: Study Definitions and Analysis Parameters
=================================================================
All cohort definitions, covariate panels, trajectory parameters and model
settings are defined here. All analysis scripts must import from this module.

Cohort: adults hospitalized with laboratory-confirmed SARS-CoV-2 or
influenza. Input is one deidentified CSV with one row per encounter per
12-hour observation window.

Conventions:
- encounter_id is the primary key for every encounter-level table
- virus is exactly one of VIRUS_LABELS
- hospital_day = floor(hours_since_admission / 24), day 0 = admission day
- Covariate panels are declared here, never inline in model code
"""

# ============================================================
# COHORT
# ============================================================

VIRUS_SARS_COV_2 = "SARS-CoV-2"
VIRUS_INFLUENZA = "Influenza"
VIRUS_LABELS = (VIRUS_SARS_COV_2, VIRUS_INFLUENZA)

# Indicator used as the exposure in all regression models (reference = Influenza)
VIRUS_INDICATOR = "sars_cov_2"

ENCOUNTER_KEY = "encounter_id"
PATIENT_KEY = "patient_id"
HOSPITAL_KEY = "hospital_id"

# ============================================================
# OBSERVATION WINDOWS AND TRAJECTORIES
# ============================================================

HOURS_PER_DAY = 24

# Trajectories are followed through hospital day 28
TRAJECTORY_HORIZON_DAYS = 28

# Fixed reporting days for the alluvial diagram
CHECKPOINT_DAYS = (1, 3, 7, 14, 21, 28)

STATE_DEAD = "Dead"
STATE_DISCHARGED = "Discharged"
TERMINAL_STATES = (STATE_DEAD, STATE_DISCHARGED)

# Unresolved checkpoint states after reconciliation are assumed room air.
# This is an approximation, flagged in the output as state_imputed.
DEFAULT_UNRESOLVED_STATE = "Room Air"

# Reconciliation labels
RECON_STILL_IN = "still in"
RECON_GOOD = "good"
RECON_PROBLEM = "prob"

# ============================================================
# OUTCOME DEFINITIONS
# ============================================================

MORTALITY_FLAG = "died"
LOS_HOURS = "los_hours"
OUTCOME_DEATH_OR_HOSPICE = "death_or_hospice"
OUTCOME_INVASIVE_VENTILATION = "invasive_ventilation"
OUTCOME_VFD = "ventilator_free_days"

# Ventilator-free days: up to day 28
VFD_MAX_DAYS = 28

# discharge_disposition values counted as death/hospice
DEATH_OR_HOSPICE_DISPOSITIONS = ("expired", "dead", "died", "deceased", "hospice")

# Fine-Gray status coding (cmprsk convention)
FG_STATUS_CENSORED = 0
FG_STATUS_DISCHARGE = 1
FG_STATUS_DEATH = 2

# Time-to-discharge follow-up; still hospitalized past this is censored
DISCHARGE_HORIZON_DAYS = 28

# ============================================================
# COVARIATES
# ============================================================

DEMOGRAPHICS = [
    "age",
    "sex_male",
    "race_black",
    "ethnicity_hispanic",
]

COMORBIDITIES = [
    "chf",
    "copd",
    "asthma",
    "diabetes",
    "ckd",
    "cirrhosis",
    "malignancy",
    "immunosuppressed",
    "obesity",
    "hypertension",
]

# Lab extremes over the first 24 hours
LAB_EXTREMES = [
    "wbc_max",
    "lymphocytes_min",
    "platelets_min",
    "creatinine_max",
    "bilirubin_max",
    "albumin_min",
    "lactate_max",
    "crp_max",
    "ddimer_max",
    "troponin_max",
]

VITAL_EXTREMES = [
    "heart_rate_max",
    "resp_rate_max",
    "sbp_min",
    "spo2_min",
    "temperature_max",
]

# Fixed-effect set for the mixed-effects logistic models
MIXED_MODEL_COVARIATES = DEMOGRAPHICS + COMORBIDITIES

MIXED_MODEL_OUTCOMES = [
    OUTCOME_DEATH_OR_HOSPICE,
    OUTCOME_INVASIVE_VENTILATION,
]

# Candidate set for stepwise selection before the Fine-Gray fit;
# hospital one-hot columns are appended at run time
FINE_GRAY_CANDIDATE_COVARIATES = DEMOGRAPHICS + COMORBIDITIES

# ZINB count and zero-inflation parts share this set
VFD_COVARIATES = DEMOGRAPHICS + COMORBIDITIES

# Logistic classifier panels per virus (domain-chosen predictors)
CLASSIFIER_PANELS = {
    VIRUS_SARS_COV_2: [
        "age",
        "sex_male",
        "chf",
        "ckd",
        "diabetes",
        "immunosuppressed",
        "lymphocytes_min",
        "ddimer_max",
        "crp_max",
        "creatinine_max",
        "spo2_min",
        "resp_rate_max",
    ],
    VIRUS_INFLUENZA: [
        "age",
        "sex_male",
        "chf",
        "copd",
        "asthma",
        "malignancy",
        "wbc_max",
        "platelets_min",
        "bilirubin_max",
        "lactate_max",
        "sbp_min",
        "heart_rate_max",
    ],
}

# Gradient boosting uses the full static panel for both viruses
GBM_FEATURES = DEMOGRAPHICS + COMORBIDITIES + LAB_EXTREMES + VITAL_EXTREMES

# ============================================================
# COHORT TABLE
# ============================================================

# variable -> "categorical" | "nonnormal" | "normal"
COHORT_TABLE_VARIABLES = {
    "age": "nonnormal",
    "sex_male": "categorical",
    "race_black": "categorical",
    "ethnicity_hispanic": "categorical",
    **{c: "categorical" for c in COMORBIDITIES},
    "wbc_max": "nonnormal",
    "lymphocytes_min": "nonnormal",
    "platelets_min": "normal",
    "creatinine_max": "nonnormal",
    "bilirubin_max": "nonnormal",
    "albumin_min": "normal",
    "lactate_max": "nonnormal",
    "crp_max": "nonnormal",
    "ddimer_max": "nonnormal",
    "troponin_max": "nonnormal",
    "heart_rate_max": "normal",
    "resp_rate_max": "nonnormal",
    "sbp_min": "normal",
    "spo2_min": "nonnormal",
    "temperature_max": "normal",
    OUTCOME_INVASIVE_VENTILATION: "categorical",
    OUTCOME_DEATH_OR_HOSPICE: "categorical",
    MORTALITY_FLAG: "categorical",
    OUTCOME_VFD: "nonnormal",
    "los_days": "nonnormal",
}

# ============================================================
# BOOTSTRAP AND CLASSIFIER SETTINGS
# ============================================================

RANDOM_SEED = 42
N_BOOT_VFD = 2000
N_BOOT_AUROC = 1000
N_JOBS = -1

# BCa acceleration uses at most this many jackknife leave-one-out fits
MAX_JACKKNIFE_FITS = 200

CLASSIFIER_TEST_FRACTION = 0.25

GBM_N_ESTIMATORS = 200
GBM_GRID_SIZE = 30
GBM_TUNING_RESAMPLES = 25

# name -> (low, high, scale); "int" rounds, "log10" samples on the log scale
GBM_PARAM_SPACE = {
    "max_depth": (1, 15, "int"),
    "min_samples_leaf": (2, 40, "int"),
    "min_impurity_decrease": (-10.0, -1.0, "log10"),
    "subsample": (0.1, 1.0, "linear"),
    "max_features": (0.1, 1.0, "linear"),
    "learning_rate": (-3.0, -0.5, "log10"),
}
