"""
02_cohort_table.py
==================
Baseline characteristics and outcomes by virus.

Outputs:
- cohort_table_long.csv : one row per variable, level and stratum
  (n, missing, counts or summary statistics, test and p-value)
- table1_by_virus.csv   : formatted Table 1 (tableone)

Usage:
    python 02_cohort_table.py --input ../data/encounter_windows.csv \
                              --output-dir ../output/final
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), os.pardir, "utils"))

import argparse
import warnings

from cohort_table import build_tableone, summarize_cohort
from input_schema import load_encounters

warnings.filterwarnings("ignore")


def run_cohort_table(input_file, output_dir):
    os.makedirs(output_dir, exist_ok=True)
    print(f"{'='*60}")
    print("Cohort table by virus")
    print(f"{'='*60}")
    encounters = load_encounters(input_file)

    long_table = summarize_cohort(encounters)
    long_path = os.path.join(output_dir, "cohort_table_long.csv")
    long_table.to_csv(long_path, index=False)
    print(f"Long cohort table saved to {long_path} ({long_table['variable'].nunique()} variables)")

    table1 = build_tableone(encounters)
    table1_path = os.path.join(output_dir, "table1_by_virus.csv")
    table1.to_csv(table1_path)
    print(table1)
    print(f"Table 1 saved to {table1_path}")
    return long_table


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Cohort table stratified by virus")
    parser.add_argument("--input", default="../data/encounter_windows.csv")
    parser.add_argument("--output-dir", default="../output/final")
    args = parser.parse_args()
    run_cohort_table(args.input, args.output_dir)
