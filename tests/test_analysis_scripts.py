import py_compile
import unittest
from pathlib import Path


CODE_DIR = Path(__file__).resolve().parents[1] / "code"
EXPECTED_SCRIPTS = [
    "01_multistate_trajectories.py",
    "02_cohort_table.py",
    "03_outcome_models.py",
    "04_mortality_classifiers.py",
]


class AnalysisScriptTests(unittest.TestCase):
    def test_numbered_scripts_present(self) -> None:
        found = sorted(p.name for p in CODE_DIR.glob("0[0-9]_*.py"))
        self.assertEqual(found, EXPECTED_SCRIPTS)

    def test_numbered_scripts_compile(self) -> None:
        for py_file in sorted(CODE_DIR.glob("0[0-9]_*.py")):
            py_compile.compile(str(py_file), doraise=True)


if __name__ == "__main__":
    unittest.main()
