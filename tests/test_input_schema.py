import sys
import tempfile
import unittest
from pathlib import Path

import pandas as pd


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "utils"))

import input_schema  # noqa: E402
from pipeline_errors import EncounterConsistencyError, SchemaError  # noqa: E402


def _observation_rows():
    rows = []
    # e1: alive, IMV on days 0-1
    for hours, device in [(0, "IMV"), (12, "IMV"), (24, "IMV"), (36, "NIV"), (48, "Room Air")]:
        rows.append(("e1", "p1", "SARS-CoV-2", 0, 60.0, hours, device, "H1", "Home"))
    # e2: died on day 1
    for hours, device in [(0, "High-Flow"), (12, "IMV"), (24, "IMV")]:
        rows.append(("e2", "p2", "Influenza", 1, 30.0, hours, device, "H1", "Expired"))
    # e3: alive, never ventilated, discharged to hospice
    for hours, device in [(0, "Room Air"), (12, "1-6 LPM")]:
        rows.append(("e3", "p3", "Influenza", 0, 20.0, hours, device, "H2", "Hospice - home"))
    return pd.DataFrame(rows, columns=[
        "encounter_id", "patient_id", "virus", "died", "los_hours",
        "hours_since_admission", "o2_device", "hospital_id", "discharge_disposition",
    ])


class InputSchemaTests(unittest.TestCase):
    def test_collapse_keeps_every_encounter_once(self) -> None:
        obs = _observation_rows()
        encounters = input_schema.collapse_to_encounters(obs)
        self.assertEqual(len(encounters), obs["encounter_id"].nunique())
        self.assertFalse(encounters["encounter_id"].duplicated().any())
        self.assertNotIn("o2_device", encounters.columns)
        self.assertEqual(
            encounters.set_index("encounter_id")["sars_cov_2"].to_dict(),
            {"e1": 1, "e2": 0, "e3": 0},
        )

    def test_conflicting_encounter_attributes_raise(self) -> None:
        obs = _observation_rows()
        obs.loc[obs.index[1], "died"] = 1
        with self.assertRaises(EncounterConsistencyError):
            input_schema.collapse_to_encounters(obs)

    def test_missing_required_column_raises_schema_error(self) -> None:
        obs = _observation_rows().drop(columns=["los_hours"])
        with self.assertRaises(SchemaError) as ctx:
            input_schema.collapse_to_encounters(obs)
        self.assertIn("los_hours", ctx.exception.missing)

    def test_load_observation_file_checks_columns(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "windows.csv"
            _observation_rows().drop(columns=["o2_device"]).to_csv(path, index=False)
            with self.assertRaises(SchemaError):
                input_schema.load_observation_file(str(path))

    def test_validation_reports_unknown_virus_labels(self) -> None:
        obs = _observation_rows()
        obs.loc[0, "virus"] = "RSV"
        errors = input_schema.validate_observation_file(obs)
        self.assertTrue(any("RSV" in e for e in errors))

    def test_validation_reports_missing_length_of_stay(self) -> None:
        obs = _observation_rows()
        obs["los_hours"] = obs["los_hours"].astype(float)
        obs.loc[obs["encounter_id"] == "e3", "los_hours"] = float("nan")
        errors = input_schema.validate_observation_file(obs)
        self.assertTrue(any("missing or non-numeric los_hours" in e for e in errors))

    def test_load_rejects_missing_length_of_stay(self) -> None:
        obs = _observation_rows()
        obs.loc[obs["encounter_id"] == "e1", "los_hours"] = None
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "windows.csv"
            obs.to_csv(path, index=False)
            with self.assertRaises(ValueError):
                input_schema.load_observation_file(str(path))

    def test_blank_device_cells_load_and_count_as_missing(self) -> None:
        obs = _observation_rows()
        obs.loc[obs["hours_since_admission"] == 48, "o2_device"] = None
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "windows.csv"
            obs.to_csv(path, index=False)
            encounters = input_schema.load_encounters(str(path)).set_index("encounter_id")
        self.assertEqual(encounters.loc["e1", "ventilator_free_days"], 26)
        self.assertEqual(encounters.loc["e2", "invasive_ventilation"], 1)

    def test_derived_outcomes(self) -> None:
        obs = _observation_rows()
        encounters = input_schema.derive_encounter_outcomes(
            input_schema.collapse_to_encounters(obs), obs
        ).set_index("encounter_id")

        self.assertEqual(encounters.loc["e1", "invasive_ventilation"], 1)
        self.assertEqual(encounters.loc["e1", "ventilator_free_days"], 26)
        self.assertEqual(encounters.loc["e2", "ventilator_free_days"], 0)
        self.assertEqual(encounters.loc["e3", "invasive_ventilation"], 0)
        self.assertEqual(encounters.loc["e3", "ventilator_free_days"], 28)
        self.assertEqual(encounters["death_or_hospice"].to_dict(), {"e1": 0, "e2": 1, "e3": 1})

    def test_load_encounters_round_trip_from_csv(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "windows.csv"
            _observation_rows().to_csv(path, index=False)
            encounters = input_schema.load_encounters(str(path))
        self.assertEqual(len(encounters), 3)
        self.assertIn("ventilator_free_days", encounters.columns)


if __name__ == "__main__":
    unittest.main()
