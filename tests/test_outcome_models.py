import importlib.util
import sys
import unittest
from pathlib import Path
from unittest import mock

import numpy as np
import pandas as pd
from scipy.special import expit


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "utils"))

import competing_risks  # noqa: E402
import mixed_models  # noqa: E402
import vfd_models  # noqa: E402
from pipeline_errors import ModelConvergenceError, SchemaError, StepwiseSelectionError  # noqa: E402

OUTCOME_MODELS_PATH = REPO_ROOT / "code" / "03_outcome_models.py"
spec = importlib.util.spec_from_file_location("outcome_models", OUTCOME_MODELS_PATH)
outcome_models = importlib.util.module_from_spec(spec)
assert spec and spec.loader
spec.loader.exec_module(outcome_models)


def _synthetic_encounters(n: int = 600, seed: int = 21) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    virus = rng.integers(0, 2, n)
    age = rng.normal(0.0, 1.0, n)
    sex_male = rng.integers(0, 2, n)
    chf = (rng.random(n) < 0.2).astype(int)
    hospitals = np.array(["H1", "H2", "H3", "H4", "H5"])
    hospital = hospitals[rng.integers(0, 5, n)]
    hospital_effect = pd.Series([-0.3, -0.1, 0.0, 0.2, 0.3], index=hospitals)[hospital].to_numpy()

    died = (rng.random(n) < expit(-1.2 + 0.8 * virus + 0.5 * age + 0.6 * chf + hospital_effect)).astype(int)
    imv = (rng.random(n) < expit(-1.5 + 0.6 * virus + 0.3 * age + hospital_effect)).astype(int)
    los_days = rng.gamma(2.0, 4.0 + 2.0 * virus) + 0.5

    # zero-inflated negative binomial ventilator-free days
    mu = np.exp(2.5 - 0.2 * virus + 0.1 * age)
    alpha = 0.2
    counts = rng.negative_binomial(1.0 / alpha, 1.0 / (1.0 + alpha * mu))
    structural_zero = rng.random(n) < expit(-1.0 + 0.7 * virus)
    vfd = np.where(structural_zero, 0, counts)

    return pd.DataFrame({
        "encounter_id": [f"e{i}" for i in range(n)],
        "virus": np.where(virus == 1, "SARS-CoV-2", "Influenza"),
        "sars_cov_2": virus,
        "hospital_id": hospital,
        "age": age,
        "sex_male": sex_male,
        "chf": chf,
        "died": died,
        "death_or_hospice": died,
        "invasive_ventilation": imv,
        "los_hours": los_days * 24.0,
        "ventilator_free_days": vfd,
    })


class MixedModelTests(unittest.TestCase):
    def test_mixed_logistic_recovers_virus_effect_direction(self) -> None:
        df = _synthetic_encounters()
        summary, coef = mixed_models.fit_mixed_logistic(
            df, "death_or_hospice", ["age", "sex_male", "chf", "not_in_data"]
        )
        self.assertGreater(summary.odds_ratio, 1.0)
        self.assertLess(summary.or_lower_95, summary.odds_ratio)
        self.assertEqual(summary.n_hospitals, 5)
        self.assertEqual(summary.n_encounters, len(df))
        self.assertIn("sars_cov_2", set(coef["term"]))
        np.testing.assert_allclose(coef["odds_ratio"], np.exp(coef["estimate"]))

    def test_missing_exposure_raises_schema_error(self) -> None:
        df = _synthetic_encounters(n=100).drop(columns=["sars_cov_2"])
        with self.assertRaises(SchemaError):
            mixed_models.fit_mixed_logistic(df, "death_or_hospice", ["age"])


class CompetingRiskTests(unittest.TestCase):
    def test_status_coding(self) -> None:
        df = pd.DataFrame({
            "encounter_id": ["a", "b", "c", "d"],
            "died": [1, 0, 0, 1],
            "los_hours": [50.0, 30.0, 40 * 24.0, 40 * 24.0],
        })
        out = competing_risks.build_discharge_dataset(df, horizon=28).set_index("encounter_id")
        self.assertEqual(out["status"].to_dict(), {"a": 2, "b": 1, "c": 0, "d": 0})
        self.assertEqual(out["time"].to_dict(), {"a": 3, "b": 2, "c": 28, "d": 28})

    def test_deaths_stay_in_subdistribution_risk_set(self) -> None:
        df = competing_risks.build_discharge_dataset(pd.DataFrame({
            "encounter_id": ["a", "b"],
            "died": [1, 0],
            "los_hours": [50.0, 30.0],
        }), horizon=10)
        period = competing_risks._build_subdistribution_person_period(df, [], horizon=10)
        rows = period.groupby("encounter_id").size().to_dict()
        self.assertEqual(rows, {"a": 10, "b": 2})
        self.assertEqual(int(period.loc[period["encounter_id"] == "a", "event_interest"].sum()), 0)
        events = period[period["event_interest"] == 1]
        self.assertEqual(events[["encounter_id", "day"]].values.tolist(), [["b", 2]])

    def test_stepwise_keeps_forced_term(self) -> None:
        df = competing_risks.build_discharge_dataset(_synthetic_encounters())
        selected = competing_risks.backward_stepwise_aic(
            df, "discharged", ["age", "sex_male", "chf"], forced=["sars_cov_2"]
        )
        self.assertEqual(selected[0], "sars_cov_2")
        self.assertTrue(set(selected) <= {"sars_cov_2", "age", "sex_male", "chf"})

    def test_stepwise_failure_raises(self) -> None:
        df = competing_risks.build_discharge_dataset(_synthetic_encounters(n=100))
        with mock.patch.object(
            competing_risks.sm, "Logit", side_effect=np.linalg.LinAlgError("Singular matrix")
        ):
            with self.assertRaises(StepwiseSelectionError):
                competing_risks.backward_stepwise_aic(df, "discharged", ["age"], forced=["sars_cov_2"])

    def test_fine_gray_outputs(self) -> None:
        df = _synthetic_encounters()
        result, coef = competing_risks.fit_fine_gray(df, ["age", "sex_male", "chf"])
        self.assertGreater(result["shr"], 0.0)
        self.assertLessEqual(result["shr_lower_95"], result["shr"])
        self.assertGreaterEqual(result["shr_upper_95"], result["shr"])
        self.assertEqual(
            result["n_discharged"] + result["n_died"] + result["n_censored"], result["n_encounters"]
        )
        self.assertIn("sars_cov_2", set(coef["term"]))
        self.assertIn("log_time", set(coef["term"]))

    def test_cif_components_sum_to_one(self) -> None:
        cif = competing_risks.aalen_johansen_cif(_synthetic_encounters())
        total = cif["cif_discharge_alive"] + cif["cif_death"] + cif["still_hospitalized"]
        np.testing.assert_allclose(total, 1.0, atol=1e-5)
        self.assertEqual(set(cif["virus"]), {"SARS-CoV-2", "Influenza"})
        for _, grp in cif.groupby("virus"):
            self.assertTrue(grp["cif_discharge_alive"].is_monotonic_increasing)

    def test_cause_specific_cox(self) -> None:
        result = competing_risks.fit_cause_specific_cox(_synthetic_encounters(), ["age", "chf"])
        self.assertGreater(result["hr"], 0.0)
        self.assertTrue(0.0 <= result["p_value"] <= 1.0)


class ZinbTests(unittest.TestCase):
    def test_zinb_fit_and_bootstrap(self) -> None:
        df = _synthetic_encounters()
        summary, coef = vfd_models.fit_zinb_vfd(
            df, ["age"], n_boot=30, seed=3, n_jobs=1, max_jackknife=20
        )
        self.assertEqual(set(coef["part"]), {"count", "zero_inflation", "dispersion"})
        self.assertIn("inflate_sars_cov_2", set(coef["term"]))
        self.assertGreater(summary.irr, 0.0)
        self.assertGreater(summary.inflation_or, 0.0)
        self.assertTrue(0.0 <= summary.lr_vs_null_p <= 1.0)
        self.assertEqual(summary.lr_vs_null_df, 4)
        self.assertTrue(0.5 < summary.pearson_dispersion < 2.0)
        self.assertEqual(summary.n_boot, 30)
        self.assertGreater(int(coef["n_boot_valid"].min()), 15)
        self.assertTrue(np.isfinite(summary.irr_lower_95))

    def test_zinb_point_fit_converges_and_recovers_effects(self) -> None:
        df = _synthetic_encounters()
        y = df["ventilator_free_days"]
        X = vfd_models._design(df, ["sars_cov_2", "age"])
        result = vfd_models._fit_zinb(y, X)

        self.assertTrue(result.mle_retvals["converged"])
        self.assertTrue(np.isfinite(result.llf))
        self.assertTrue(-0.45 < result.params["sars_cov_2"] < 0.05)
        self.assertGreater(result.params["inflate_sars_cov_2"], 0.0)
        self.assertTrue(0.05 < result.params["alpha"] < 0.5)

    def test_missing_outcome_raises_schema_error(self) -> None:
        df = _synthetic_encounters(n=50).drop(columns=["ventilator_free_days"])
        with self.assertRaises(SchemaError):
            vfd_models.fit_zinb_vfd(df, ["age"], n_boot=5, n_jobs=1)


class OutcomeStageTests(unittest.TestCase):
    def test_vfd_stage_reports_a_row_when_every_replicate_fails(self) -> None:
        df = _synthetic_encounters()
        results, coefficients = [], []
        with mock.patch.object(
            vfd_models, "_zinb_params",
            side_effect=ModelConvergenceError("ZINB", "iteration limit reached"),
        ):
            outcome_models.run_vfd_model(df, results, coefficients, n_boot=5, n_jobs=1, seed=0)

        self.assertEqual(len(results), 1)
        self.assertNotIn("error_type", results[0])
        self.assertGreater(results[0]["irr"], 0.0)
        self.assertTrue(np.isnan(results[0]["irr_lower_95"]))
        self.assertTrue((coefficients[0]["n_boot_valid"] == 0).all())


class MultiplicityTests(unittest.TestCase):
    def test_failed_models_are_left_unadjusted(self) -> None:
        results = pd.DataFrame({
            "model": ["a", "b", "c"],
            "p_value": [0.01, np.nan, 0.04],
        })
        adjusted = outcome_models.apply_multiplicity_correction(results)
        self.assertTrue(np.isnan(adjusted.loc[1, "p_adjusted"]))
        self.assertFalse(adjusted.loc[1, "significant_adjusted"])
        self.assertTrue((adjusted.loc[[0, 2], "p_adjusted"] >= adjusted.loc[[0, 2], "p_value"]).all())


if __name__ == "__main__":
    unittest.main()
