"""
01_multistate_trajectories.py
=============================
Oxygen-support trajectories over the first 28 hospital days, SARS-CoV-2 vs
influenza.

Steps:
1. Map each 12-hour window's device to the ordinal support scale
2. Daily state = highest support across the day's windows; final day of
   stay labelled Dead/Discharged
3. Carry states forward over days 0-28 and sample checkpoint days
   1, 3, 7, 14, 21, 28
4. Reconcile checkpoints past the length of stay with the recorded outcome
5. Export the long trajectory table and the alluvial diagram

Usage:
    python 01_multistate_trajectories.py --input ../data/encounter_windows.csv \
                                         --output-dir ../output/final
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), os.pardir, "utils"))

import argparse
import warnings
from datetime import date

from alluvial import plot_alluvial
from definitions_source_of_truth import RECON_PROBLEM
from input_schema import collapse_to_encounters, load_observation_file
from multistate import (
    build_trajectories,
    state_occupancy,
    state_transition_counts,
    terminal_consistency_violations,
    trajectories_wide,
)

warnings.filterwarnings("ignore")


def run_trajectories(input_file, output_dir):
    os.makedirs(output_dir, exist_ok=True)
    stamp = date.today().isoformat()

    print(f"{'='*60}")
    print("Multistate oxygen-support trajectories")
    print(f"{'='*60}")
    observations = load_observation_file(input_file)
    encounters = collapse_to_encounters(observations)

    trajectories = build_trajectories(observations, encounters)
    n_prob = int((trajectories["reconciliation"] == RECON_PROBLEM).sum())
    print(f"  Trajectory rows: {len(trajectories):,} "
          f"({trajectories['encounter_id'].nunique():,} encounters, {n_prob:,} reconciled)")

    violations = terminal_consistency_violations(trajectories)
    if not violations.empty:
        raise RuntimeError(f"{len(violations)} checkpoint states past the stay are not terminal")

    out = trajectories.copy()
    out["checkpoint_day"] = out["checkpoint_day"].astype(int)
    out["state"] = out["state"].astype(str)
    traj_path = os.path.join(output_dir, f"multistate_trajectories_{stamp}.csv")
    out.to_csv(traj_path, index=False)
    print(f"Trajectories saved to {traj_path}")
    trajectories_wide(trajectories).to_csv(
        os.path.join(output_dir, f"multistate_trajectories_wide_{stamp}.csv"), index=False
    )

    occupancy = state_occupancy(trajectories)
    occupancy.to_csv(os.path.join(output_dir, f"multistate_occupancy_{stamp}.csv"), index=False)
    state_transition_counts(trajectories).to_csv(
        os.path.join(output_dir, f"multistate_transitions_{stamp}.csv"), index=False
    )

    plot_alluvial(trajectories, os.path.join(output_dir, f"multistate_alluvial_{stamp}.svg"))
    return trajectories


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Oxygen-support trajectories and alluvial diagram")
    parser.add_argument("--input", default="../data/encounter_windows.csv")
    parser.add_argument("--output-dir", default="../output/final")
    args = parser.parse_args()
    run_trajectories(args.input, args.output_dir)
