import sys
import unittest
from pathlib import Path

import pandas as pd


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "utils"))

import oxygen_support  # noqa: E402
from oxygen_support import OxygenSupport  # noqa: E402
from pipeline_errors import SchemaError  # noqa: E402


def _windows(rows):
    return pd.DataFrame(rows, columns=["encounter_id", "hours_since_admission", "o2_device"])


class OxygenSupportScaleTests(unittest.TestCase):
    def test_levels_are_totally_ordered(self) -> None:
        ordered = [
            OxygenSupport.ADMISSION,
            OxygenSupport.ROOM_AIR,
            OxygenSupport.LOW_FLOW,
            OxygenSupport.MID_FLOW,
            OxygenSupport.HIGH_FLOW,
            OxygenSupport.NIV,
            OxygenSupport.IMV,
        ]
        self.assertEqual(sorted(ordered), ordered)
        self.assertEqual(max(OxygenSupport.ROOM_AIR, OxygenSupport.NIV), OxygenSupport.NIV)

    def test_parse_device_is_case_and_whitespace_insensitive(self) -> None:
        self.assertIs(oxygen_support.parse_device("  room   AIR "), OxygenSupport.ROOM_AIR)
        self.assertIs(oxygen_support.parse_device("BiPAP"), OxygenSupport.NIV)
        self.assertIs(oxygen_support.parse_device("IMV"), OxygenSupport.IMV)

    def test_unrecognized_and_missing_labels_parse_to_none(self) -> None:
        self.assertIsNone(oxygen_support.parse_device("ECMO-ish"))
        self.assertIsNone(oxygen_support.parse_device(None))
        self.assertIsNone(oxygen_support.parse_device(float("nan")))

    def test_label_round_trip_for_canonical_labels(self) -> None:
        for level in OxygenSupport:
            self.assertIs(OxygenSupport.from_label(level.label), level)
        with self.assertRaises(ValueError):
            OxygenSupport.from_label("Helmet")


class DailyStateTests(unittest.TestCase):
    def test_daily_state_is_ordinal_max_of_the_day(self) -> None:
        daily = oxygen_support.derive_daily_states(
            _windows([("e1", 0, "Room Air"), ("e1", 12, "NIV"), ("e1", 24, "1-6 LPM")])
        )
        by_day = daily.set_index("hospital_day")["daily_state"]
        self.assertEqual(by_day.loc[0], "NIV")
        self.assertEqual(by_day.loc[1], "1-6 LPM")

    def test_unrecognized_label_stays_missing(self) -> None:
        daily = oxygen_support.derive_daily_states(
            _windows([("e1", 0, "Room Air"), ("e1", 24, "Mystery Device"), ("e1", 36, "Mystery Device")])
        )
        day1 = daily[daily["hospital_day"] == 1].iloc[0]
        self.assertTrue(pd.isna(day1["support_level"]))
        self.assertTrue(pd.isna(day1["daily_state"]))

    def test_unrecognized_label_does_not_lower_a_recognized_window(self) -> None:
        daily = oxygen_support.derive_daily_states(
            _windows([("e1", 0, "Mystery Device"), ("e1", 12, "High-Flow")])
        )
        self.assertEqual(daily.iloc[0]["daily_state"], "High-Flow")

    def test_missing_device_cell_is_ignored_within_the_day(self) -> None:
        daily = oxygen_support.derive_daily_states(
            _windows([("e1", 0, "NIV"), ("e1", 12, None), ("e1", 24, None)])
        )
        by_day = daily.set_index("hospital_day")
        self.assertEqual(by_day.loc[0, "daily_state"], "NIV")
        self.assertEqual(int(by_day.loc[0, "support_level"]), int(OxygenSupport.NIV))
        self.assertTrue(pd.isna(by_day.loc[1, "support_level"]))
        self.assertTrue(pd.isna(by_day.loc[1, "daily_state"]))

    def test_encode_devices_returns_nullable_levels(self) -> None:
        codes = oxygen_support.encode_devices(
            pd.Series(["Room Air", "Helmet CPAP", None, float("nan"), "IMV"])
        )
        self.assertEqual(str(codes.dtype), "Int64")
        self.assertEqual(int(codes.iloc[0]), int(OxygenSupport.ROOM_AIR))
        self.assertTrue(codes.iloc[1:4].isna().all())
        self.assertEqual(int(codes.iloc[4]), int(OxygenSupport.IMV))

    def test_admission_only_day_has_no_trajectory_label(self) -> None:
        daily = oxygen_support.derive_daily_states(_windows([("e1", 0, "Admission")]))
        self.assertEqual(int(daily.iloc[0]["support_level"]), int(OxygenSupport.ADMISSION))
        self.assertTrue(pd.isna(daily.iloc[0]["daily_state"]))

    def test_missing_column_raises_schema_error(self) -> None:
        with self.assertRaises(SchemaError):
            oxygen_support.derive_daily_states(
                pd.DataFrame({"encounter_id": ["e1"], "o2_device": ["Room Air"]})
            )

    def test_terminal_override_applies_on_last_day_of_stay(self) -> None:
        daily = oxygen_support.derive_daily_states(
            _windows([
                ("e1", 0, "Room Air"), ("e1", 24, "NIV"),
                ("e2", 0, "Room Air"),
            ])
        )
        encounters = pd.DataFrame({
            "encounter_id": ["e1", "e2"],
            "died": [1, 0],
            "los_hours": [40.0, 60.0],
        })
        out = oxygen_support.apply_terminal_override(daily, encounters)
        e1 = out[out["encounter_id"] == "e1"].set_index("hospital_day")["daily_state"]
        self.assertEqual(e1.loc[0], "Room Air")
        self.assertEqual(e1.loc[1], "Dead")
        # e2's record stops before its last day of stay
        e2 = out[out["encounter_id"] == "e2"].set_index("hospital_day")["daily_state"]
        self.assertEqual(e2.loc[0], "Room Air")

    def test_ventilation_days_counts_imv_days_before_horizon(self) -> None:
        daily = oxygen_support.derive_daily_states(
            _windows([
                ("e1", 0, "IMV"), ("e1", 12, "IMV"), ("e1", 24, "IMV"), ("e1", 48, "Room Air"),
                ("e2", 0, "Room Air"),
            ])
        )
        vent = oxygen_support.ventilation_days(daily, horizon=28).set_index("encounter_id")
        self.assertEqual(int(vent.loc["e1", "imv_days"]), 2)
        self.assertEqual(int(vent.loc["e1", "invasive_ventilation"]), 1)
        self.assertEqual(int(vent.loc["e2", "imv_days"]), 0)
        self.assertEqual(int(vent.loc["e2", "invasive_ventilation"]), 0)


if __name__ == "__main__":
    unittest.main()
