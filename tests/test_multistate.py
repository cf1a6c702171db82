import sys
import unittest
from pathlib import Path

import numpy as np
import pandas as pd


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "utils"))

import multistate  # noqa: E402
from oxygen_support import derive_daily_states  # noqa: E402
from pipeline_errors import SchemaError  # noqa: E402

DEVICES = ["Room Air", "1-6 LPM", "7-15 LPM", "High-Flow", "NIV", "IMV"]


def _random_cohort(n_encounters: int = 40, seed: int = 7):
    rng = np.random.default_rng(seed)
    windows, encounters = [], []
    for i in range(n_encounters):
        enc = f"e{i}"
        los_hours = float(rng.integers(12, 40 * 24))
        n_windows = int(rng.integers(1, int(los_hours // 12) + 2))
        for w in range(n_windows):
            device = DEVICES[int(rng.integers(0, len(DEVICES)))]
            windows.append((enc, 12.0 * w, device))
        encounters.append({
            "encounter_id": enc,
            "virus": "SARS-CoV-2" if i % 2 else "Influenza",
            "died": int(rng.random() < 0.3),
            "los_hours": los_hours,
        })
    observations = pd.DataFrame(windows, columns=["encounter_id", "hours_since_admission", "o2_device"])
    return observations, pd.DataFrame(encounters)


class TrajectoryTests(unittest.TestCase):
    def test_worked_example_death_after_short_stay(self) -> None:
        traj = multistate.trajectory_for_encounter([(0, "Room Air")], died=1, los_hours=36)
        by_day = traj.set_index(traj["checkpoint_day"].astype(int))

        self.assertEqual(by_day.loc[1, "state"], "Room Air")
        self.assertEqual(by_day.loc[1, "reconciliation"], "still in")
        self.assertEqual(by_day.loc[3, "state"], "Dead")
        self.assertEqual(by_day.loc[3, "reconciliation"], "prob")
        for day in [7, 14, 21, 28]:
            self.assertEqual(by_day.loc[day, "state"], "Dead")

    def test_final_day_override_is_already_consistent(self) -> None:
        traj = multistate.trajectory_for_encounter(
            [(0, "Room Air"), (24, "NIV"), (48, "Room Air")], died=0, los_hours=60
        )
        by_day = traj.set_index(traj["checkpoint_day"].astype(int))
        self.assertEqual(by_day.loc[1, "state"], "NIV")
        self.assertEqual(by_day.loc[3, "state"], "Discharged")
        self.assertEqual(by_day.loc[3, "reconciliation"], "good")

    def test_one_row_per_encounter_and_checkpoint(self) -> None:
        observations, encounters = _random_cohort()
        traj = multistate.build_trajectories(observations, encounters)
        self.assertEqual(len(traj), len(encounters) * 6)
        self.assertFalse(traj.duplicated(["encounter_id", "checkpoint_day"]).any())
        self.assertEqual(
            list(traj["checkpoint_day"].cat.categories), [1, 3, 7, 14, 21, 28]
        )

    def test_states_past_stay_match_recorded_outcome(self) -> None:
        observations, encounters = _random_cohort()
        traj = multistate.build_trajectories(observations, encounters)
        merged = traj.merge(encounters[["encounter_id", "died"]], on="encounter_id")
        past = merged["checkpoint_day"].astype(int) > merged["los_day"]
        expected = np.where(merged["died"] == 1, "Dead", "Discharged")
        self.assertTrue(past.any())
        self.assertTrue((merged.loc[past, "state"].astype(str) == expected[past.to_numpy()]).all())
        self.assertTrue(multistate.terminal_consistency_violations(traj).empty)

    def test_forward_fill_is_idempotent(self) -> None:
        observations, encounters = _random_cohort()
        daily = derive_daily_states(observations)
        wide = multistate.pivot_daily_states(daily, encounter_ids=encounters["encounter_id"])
        once = multistate.forward_fill_days(wide)
        twice = multistate.forward_fill_days(once)
        pd.testing.assert_frame_equal(once, twice)

    def test_pivot_keeps_every_day_and_encounter(self) -> None:
        daily = derive_daily_states(pd.DataFrame({
            "encounter_id": ["e1"],
            "hours_since_admission": [0.0],
            "o2_device": ["NIV"],
        }))
        wide = multistate.pivot_daily_states(daily, encounter_ids=["e1", "e2"])
        self.assertEqual(list(wide.columns), list(range(29)))
        self.assertEqual(list(wide.index), ["e1", "e2"])
        self.assertTrue(wide.loc["e2"].isna().all())

    def test_unrecognized_device_does_not_break_the_trajectory(self) -> None:
        traj = multistate.trajectory_for_encounter(
            [(0, "Room Air"), (12, "Helmet CPAP")], died=0, los_hours=100
        )
        by_day = traj.set_index(traj["checkpoint_day"].astype(int))
        self.assertEqual(by_day.loc[1, "state"], "Room Air")
        self.assertEqual(by_day.loc[3, "state"], "Room Air")
        self.assertEqual(by_day.loc[3, "reconciliation"], "still in")
        self.assertFalse(by_day.loc[3, "state_imputed"])
        for day in [7, 14, 21, 28]:
            self.assertEqual(by_day.loc[day, "state"], "Discharged")

    def test_wide_export_has_one_column_per_checkpoint(self) -> None:
        observations, encounters = _random_cohort()
        traj = multistate.build_trajectories(observations, encounters)
        wide = multistate.trajectories_wide(traj)
        self.assertEqual(len(wide), len(encounters))
        self.assertEqual(
            list(wide.columns),
            ["encounter_id", "virus", "day_1", "day_3", "day_7", "day_14", "day_21", "day_28"],
        )
        long_day_3 = traj[traj["checkpoint_day"].astype(int) == 3].set_index("encounter_id")["state"]
        wide_day_3 = wide.set_index("encounter_id")["day_3"]
        self.assertEqual(wide_day_3.astype(str).to_dict(), long_day_3.astype(str).to_dict())

    def test_unresolved_states_are_flagged_as_imputed(self) -> None:
        traj = multistate.trajectory_for_encounter([(0, "Unknown device")], died=0, los_hours=30 * 24)
        self.assertTrue(traj["state_imputed"].all())
        self.assertTrue((traj["state"].astype(str) == "Room Air").all())

    def test_reconcile_requires_outcome_columns(self) -> None:
        long = pd.DataFrame({"encounter_id": ["e1"], "checkpoint_day": [1], "state": ["NIV"]})
        with self.assertRaises(SchemaError):
            multistate.reconcile_trajectories(long, pd.DataFrame({"encounter_id": ["e1"]}))

    def test_transition_counts_cover_every_encounter(self) -> None:
        observations, encounters = _random_cohort()
        traj = multistate.build_trajectories(observations, encounters)
        transitions = multistate.state_transition_counts(traj)
        per_step = transitions.groupby(["virus", "day_from"])["n"].sum()
        n_by_virus = encounters["virus"].value_counts()
        for (virus, _), n in per_step.items():
            self.assertEqual(n, n_by_virus[virus])

    def test_occupancy_proportions_sum_to_one(self) -> None:
        observations, encounters = _random_cohort()
        traj = multistate.build_trajectories(observations, encounters)
        occupancy = multistate.state_occupancy(traj)
        totals = occupancy.groupby(["virus", "checkpoint_day"], observed=True)["proportion"].sum()
        np.testing.assert_allclose(totals.to_numpy(), 1.0)


if __name__ == "__main__":
    unittest.main()
