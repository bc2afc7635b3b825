"""
TRIAGE Unit and Integration Tests

Run with: pytest test_triage.py -v
"""

import json
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from sklearn.metrics import roc_auc_score

sys.path.insert(0, str(Path(__file__).parent))

from TRIAGE import (
    OUTCOMES,
    RANDOM_STATE,
    SUBMODEL_ORDER,
    AuditLog,
    ReportInputError,
    SyntheticTriageData,
    WeightConfigError,
    age_quartiles,
    apply_inclusion_criteria,
    bootstrap_auc_ci,
    bootstrap_ci,
    build_composite_score,
    build_grouping_columns,
    build_predictor_table,
    calibration_by_group,
    calibration_summary_table,
    compute_auc_table,
    derive_call_type,
    describe_cohort,
    evaluate_roc,
    fit_calibration,
    load_model_properties,
    main,
    mean_absolute_calibration_error,
    mean_absolute_error_statistic,
    most_common_partition,
    multiple_imputation_auc,
    normalize_binary_label,
    pivot_calibration_table,
    resolve_settings,
    roc_points,
    run_triage_report,
    select_model,
    somers_dxy,
    validate_alignment,
    weight_sensitivity_sweep,
)


class TestBootstrapEstimator:
    """Tests for the percentile bootstrap."""

    def test_point_estimate_is_statistic_on_original_data(self):
        """The estimate is computed on the non-resampled data."""
        rng = np.random.RandomState(0)
        y = rng.binomial(1, 0.4, 300)
        p = np.clip(y * 0.3 + rng.uniform(0, 0.7, 300), 0, 1)

        res = bootstrap_ci(y, p, n_bootstrap=200)

        assert res["estimate"] == pytest.approx(roc_auc_score(y, p))
        assert res["ci_low"] <= res["estimate"] <= res["ci_high"]
        assert res["n"] == 300
        assert res["n_valid"] == 200

    def test_reproducible_under_fixed_seed(self):
        """Same seed, same interval."""
        rng = np.random.RandomState(1)
        y = rng.binomial(1, 0.5, 150)
        p = rng.uniform(0, 1, 150)

        a = bootstrap_ci(y, p, n_bootstrap=100, rng=np.random.RandomState(7))
        b = bootstrap_ci(y, p, n_bootstrap=100, rng=np.random.RandomState(7))

        assert a == b

    def test_too_few_rows_returns_nan(self):
        res = bootstrap_ci([1], [0.5])
        assert np.isnan(res["estimate"])
        assert np.isnan(res["ci_low"])
        assert np.isnan(res["ci_high"])

    def test_zero_variance_labels_return_nan(self):
        """Undefined AUC does not raise."""
        res = bootstrap_ci(np.ones(50), np.linspace(0, 1, 50))
        assert np.isnan(res["estimate"])
        assert res["n_valid"] == 0

    def test_missing_pairs_are_dropped(self):
        y = np.array([0, 1, np.nan, 0, 1, 1, 0, 1])
        p = np.array([0.1, 0.9, 0.5, np.nan, 0.8, 0.7, 0.3, 0.6])
        res = bootstrap_ci(y, p, n_bootstrap=50)
        assert res["n"] == 6

    def test_length_mismatch_is_input_error(self):
        with pytest.raises(ReportInputError):
            bootstrap_ci([0, 1, 0], [0.1, 0.2])

    def test_coverage_with_known_ground_truth(self):
        """Percentile CI covers the true error rate in about 95% of trials."""
        truth = 0.3
        covered = 0
        n_trials = 200
        for trial in range(n_trials):
            rng = np.random.RandomState(1000 + trial)
            y = rng.binomial(1, truth, 200).astype(float)
            res = bootstrap_ci(
                y,
                np.zeros(200),
                statistic=mean_absolute_error_statistic,
                n_bootstrap=400,
                rng=rng,
            )
            covered += res["ci_low"] <= truth <= res["ci_high"]
        assert covered / n_trials >= 0.89

    def test_auc_wrapper(self):
        np.random.seed(42)
        y_true = np.random.choice([0, 1], size=200)
        y_prob = y_true * 0.6 + np.random.uniform(0, 0.4, 200)
        ci_low, ci_high = bootstrap_auc_ci(y_true, y_prob, n_bootstrap=100)
        assert ci_low < ci_high
        assert 0 <= ci_low <= 1
        assert 0 <= ci_high <= 1


class TestROCEngine:
    """Tests for ROC curves and AUC."""

    def test_perfect_separator_auc_is_one(self):
        y = np.array([0, 1] * 50)
        res = evaluate_roc(y, y.astype(float), n_bootstrap=50)
        assert res["auc"] == pytest.approx(1.0)
        assert res["ci_low"] == pytest.approx(1.0)
        assert res["informative"]

    def test_curve_is_monotonic_in_threshold(self):
        rng = np.random.RandomState(3)
        y = rng.binomial(1, 0.3, 400)
        score = rng.normal(y, 1.0)

        curve = roc_points(y, score)

        assert curve["threshold"].is_monotonic_increasing
        assert (np.diff(curve["sensitivity"]) <= 0).all()
        assert (np.diff(curve["specificity"]) >= 0).all()
        assert curve["sensitivity"].iloc[0] == 1.0
        assert curve["specificity"].iloc[0] == 0.0

    def test_tied_scores_share_a_threshold(self):
        y = np.array([0, 1, 0, 1, 1])
        score = np.array([0.2, 0.2, 0.5, 0.5, 0.9])
        curve = roc_points(y, score)
        assert curve["threshold"].tolist() == [0.2, 0.5, 0.9]

    def test_single_category_predictor_is_non_informative(self):
        y = np.array([0, 1, 0, 1, 0, 1])
        res = evaluate_roc(y, np.full(6, 3.0), n_bootstrap=20)
        assert res is not None
        assert not res["informative"]
        assert len(res["curve"]) == 1
        assert res["auc"] == pytest.approx(0.5)

    def test_auto_direction_flips_priority(self):
        """Priority 1 is the most urgent, so it is negated before ranking."""
        rng = np.random.RandomState(5)
        y = rng.binomial(1, 0.4, 500)
        priority = np.where(y == 1, rng.choice([1, 2], 500), rng.choice([2, 3, 4], 500))

        res = evaluate_roc(y, priority, direction="auto", n_bootstrap=50)

        assert res["flipped"]
        assert res["auc"] > 0.8

    def test_undefined_pair_is_omitted_from_table(self, tmp_path):
        labels = pd.DataFrame({"admission": [0, 1] * 20, "critical_care": [0] * 40})
        predictors = {"score": np.linspace(0, 1, 40)}
        audit = AuditLog(tmp_path / "log.jsonl")

        table, curves = compute_auc_table(
            labels,
            predictors,
            outcomes=["admission", "critical_care"],
            n_bootstrap=20,
            audit=audit,
        )

        assert table["outcome"].tolist() == ["admission"]
        assert ("admission", "score") in curves
        assert "AUC_PAIR_SKIPPED" in (tmp_path / "log.jsonl").read_text()

    def test_true_score_beats_noise(self):
        """1000 synthetic encounters: CIs of true score and noise do not overlap."""
        _, labels, props = SyntheticTriageData.generate(n_samples=1000)
        y = labels["admission"].to_numpy()
        true_score = np.asarray(props["submodels"]["admission"])
        noise = np.random.RandomState(11).uniform(0, 1, len(y))

        rng = np.random.RandomState(RANDOM_STATE)
        true_res = evaluate_roc(y, true_score, n_bootstrap=300, rng=rng)
        noise_res = evaluate_roc(y, noise, n_bootstrap=300, rng=rng)

        assert true_res["ci_low"] > noise_res["ci_high"]


class TestCalibration:
    """Tests for logistic calibration and grouped summaries."""

    def test_perfect_calibration_has_small_error(self):
        rng = np.random.RandomState(42)
        p = rng.uniform(0.05, 0.95, 5000)
        y = (rng.random_sample(5000) < p).astype(int)

        fit = fit_calibration(p, y)

        assert fit is not None
        assert abs(fit["slope"] - 1.0) < 0.2
        assert abs(fit["intercept"]) < 0.2
        assert mean_absolute_calibration_error(fit) < 0.04

    def test_overestimating_model_has_large_error(self):
        rng = np.random.RandomState(42)
        p = rng.uniform(0.05, 0.95, 5000)
        y = (rng.random_sample(5000) < p / 2).astype(int)

        fit = fit_calibration(p, y)

        assert mean_absolute_calibration_error(fit) > 0.1

    def test_constant_predictions_cannot_be_fitted(self):
        assert fit_calibration(np.full(100, 0.3), np.array([0, 1] * 50)) is None

    def test_small_groups_are_dropped(self):
        rng = np.random.RandomState(8)
        p = rng.uniform(0.1, 0.9, 420)
        y = (rng.random_sample(420) < p).astype(int)
        groups = np.array(["A"] * 400 + ["B"] * 20)

        summaries = calibration_by_group(p, y, groups, min_group_n=50)

        assert [s["group"] for s in summaries] == ["A"]
        assert summaries[0]["n"] == 400

    def test_single_class_group_is_dropped(self):
        rng = np.random.RandomState(9)
        p = rng.uniform(0.1, 0.9, 200)
        observed = (rng.random_sample(100) < p[:100]).astype(int)
        y = np.concatenate([observed, np.zeros(100)])
        groups = np.array(["mixed"] * 100 + ["all_zero"] * 100)

        summaries = calibration_by_group(p, y, groups, min_group_n=50)

        assert [s["group"] for s in summaries] == ["mixed"]

    def test_no_grouping_gives_single_summary(self):
        rng = np.random.RandomState(10)
        p = rng.uniform(0.1, 0.9, 300)
        y = (rng.random_sample(300) < p).astype(int)

        summaries = calibration_by_group(p, y)

        assert len(summaries) == 1
        assert summaries[0]["group"] == "All"
        assert len(summaries[0]["grid"]) == len(summaries[0]["curve"])
        assert -1.0 <= summaries[0]["dxy"] <= 1.0

    def test_somers_dxy_perfect_ranking(self):
        y = np.array([0, 0, 1, 1])
        assert somers_dxy(y, np.array([0.1, 0.2, 0.8, 0.9])) == pytest.approx(1.0)


class TestGrouping:
    """Tests for derived grouping variables."""

    def test_most_common_partition(self):
        counts = pd.Series({"a": 10, "b": 5, "c": 1, "d": 0})
        rule = most_common_partition(counts, top_k=2)
        assert rule == {"a": "a", "b": "b", "c": "Other", "d": "Other"}

    def test_derive_call_type(self):
        samples = pd.DataFrame(
            {
                "calltype_x": [1, 1, 1, 0, 0, 1, 0, 0],
                "calltype_y": [0, 0, 0, 1, 1, 1, 0, 0],
                "calltype_z": [0, 0, 0, 0, 0, 0, 1, 0],
            }
        )
        call_type = derive_call_type(samples, top_k=2)
        assert call_type.tolist() == ["x", "x", "x", "y", "y", "x", "Other", "Other"]

    def test_derive_call_type_without_flags(self):
        samples = pd.DataFrame({"age": [30, 40]})
        assert derive_call_type(samples).tolist() == ["Other", "Other"]

    def test_age_quartiles(self):
        groups = age_quartiles(pd.Series(np.arange(1, 101)))
        assert groups.nunique() == 4
        assert groups.iloc[0].startswith("Q1")
        assert groups.iloc[-1].startswith("Q4")

    def test_age_quartiles_keep_missing(self):
        groups = age_quartiles(pd.Series([20, 30, np.nan, 40, 50, 60]))
        assert pd.isna(groups.iloc[2])

    def test_build_grouping_columns(self, synthetic_inputs):
        samples, _, _ = synthetic_inputs
        groupings = build_grouping_columns(samples)
        expected = ["age_group", "gender", "priority", "call_type"]
        assert list(groupings.columns) == expected
        assert len(groupings) == len(samples)
        assert groupings["call_type"].nunique() <= 6


class TestCompositeScore:
    """Tests for composite score construction."""

    submodels = [
        np.array([0.2, 0.4, 0.9]),
        np.array([0.4, 0.8, 0.1]),
        np.array([0.6, 0.0, 0.5]),
    ]

    def test_single_weight_returns_first_submodel(self):
        for use_min in (False, True):
            out = build_composite_score(self.submodels, (1, 0, 0), use_min=use_min)
            assert np.array_equal(out, self.submodels[0])

    def test_all_zero_weights_rejected(self):
        for use_min in (False, True):
            with pytest.raises(WeightConfigError):
                build_composite_score(self.submodels, (0, 0, 0), use_min=use_min)

    def test_length_mismatch_rejected(self):
        with pytest.raises(WeightConfigError):
            build_composite_score(self.submodels, (1, 1))

    def test_negative_weight_rejected(self):
        with pytest.raises(WeightConfigError):
            build_composite_score(self.submodels, (1, -1, 1))

    def test_weighted_average(self):
        out = build_composite_score(self.submodels, (1, 1, 2))
        assert out.tolist() == pytest.approx([0.45, 0.3, 0.5])

    def test_weighted_minimum(self):
        out = build_composite_score(self.submodels, (1, 1, 0.5), use_min=True)
        assert out.tolist() == pytest.approx([0.2, 0.0, 0.1])

    def test_mapping_follows_submodel_order(self):
        mapping = dict(zip(reversed(SUBMODEL_ORDER), reversed(self.submodels)))
        out = build_composite_score(mapping, (0, 0, 1))
        assert np.array_equal(out, self.submodels[2])

    def test_unequal_lengths_are_input_error(self):
        with pytest.raises(ReportInputError):
            build_composite_score([np.zeros(3), np.zeros(4)], (1, 1))


class TestReportTables:
    """Tests for the report-level tables."""

    def test_weight_sweep_skips_invalid_scheme(self, synthetic_inputs):
        _, labels, props = synthetic_inputs
        schemes = [
            {"name": "equal", "weights": (1, 1, 1), "use_min": False},
            {"name": "broken", "weights": (1, 1), "use_min": False},
            {"name": "zeros", "weights": (0, 0, 0), "use_min": True},
        ]
        table = weight_sensitivity_sweep(
            labels, {"full": props["submodels"]}, schemes, n_bootstrap=30
        )
        assert set(table["scheme"]) == {"equal"}
        assert set(table["outcome"]) == set(OUTCOMES)
        assert (table["ci_low"] <= table["ci_high"]).all()

    def test_calibration_table_and_pivot(self, synthetic_inputs):
        samples, labels, props = synthetic_inputs
        predictors = build_predictor_table(samples, select_model(_arrays(props), False))
        groupings = build_grouping_columns(samples)

        long_table, curves = calibration_summary_table(
            predictors, labels, groupings, grouping_vars=("overall", "gender")
        )
        wide = pivot_calibration_table(long_table)

        assert set(long_table["grouping"]) == {"overall", "gender"}
        assert (long_table["n"] >= 50).all()
        assert list(wide.columns[:3]) == ["predictor", "grouping", "group"]
        assert set(OUTCOMES).issubset(wide.columns)
        assert ("overall", "score", "admission") in curves

    def test_non_probability_predictor_not_calibrated(self, synthetic_inputs):
        samples, labels, props = synthetic_inputs
        predictors = build_predictor_table(samples, select_model(_arrays(props), False))
        long_table, _ = calibration_summary_table(
            predictors,
            labels,
            build_grouping_columns(samples),
            pairs=[("priority", "admission")],
        )
        assert long_table.empty
        assert pivot_calibration_table(long_table).empty

    def test_predictor_without_data_is_skipped(self, tmp_path):
        labels = pd.DataFrame({"admission": [0.0, 1.0] * 50})
        groupings = pd.DataFrame({"gender": ["Female", "Male"] * 50})
        audit = AuditLog(tmp_path / "log.jsonl")

        long_table, curves = calibration_summary_table(
            {"score": np.full(100, np.nan)},
            labels,
            groupings,
            pairs=[("score", "admission")],
            grouping_vars=("overall", "gender"),
            audit=audit,
        )

        assert long_table.empty
        assert curves == {}
        assert '"no_data"' in (tmp_path / "log.jsonl").read_text()

    def test_describe_cohort(self, synthetic_inputs):
        samples, labels, _ = synthetic_inputs
        table = describe_cohort(samples, labels)
        assert table.columns[0] == "characteristic"
        assert "All" in table.columns
        n_row = table[table["characteristic"] == "N"]
        assert n_row["All"].iloc[0] == str(len(samples))


class TestMultipleImputation:
    """Tests for the missing-outcome sensitivity analysis."""

    def test_skipped_without_missing_outcomes(self, synthetic_inputs):
        _, labels, props = synthetic_inputs
        res = multiple_imputation_auc(labels, props["score"], "admission")
        assert res["skipped"]
        assert res["reason"] == "no_missing_outcome"

    def test_pooled_estimate(self):
        samples, labels, props = SyntheticTriageData.generate(
            n_samples=800, missing_label_rate=0.1
        )
        res = multiple_imputation_auc(
            labels,
            props["score"],
            "admission",
            features=samples[["age", "priority"]],
            n_imputations=5,
        )
        assert not res["skipped"]
        assert res["n_missing"] > 0
        assert 0.5 < res["pooled_auc"] < 1.0
        assert res["ci_low"] < res["pooled_auc"] < res["ci_high"]

    def test_imputation_follows_seed(self):
        samples, labels, props = SyntheticTriageData.generate(
            n_samples=600, missing_label_rate=0.15
        )
        kwargs = dict(features=samples[["age", "priority"]], n_imputations=3)

        def pooled(seed):
            res = multiple_imputation_auc(
                labels, props["score"], "admission", seed=seed, **kwargs
            )
            return res["pooled_auc"]

        assert pooled(1) == pooled(1)
        assert pooled(1) != pooled(2)


class TestInputs:
    """Tests for loading, validation and configuration."""

    def test_normalize_text_labels(self):
        y = pd.Series(["No", "Yes", None, "Yes"], name="admission")
        out = normalize_binary_label(y)
        assert out.iloc[0] == 0.0
        assert out.iloc[1] == 1.0
        assert np.isnan(out.iloc[2])

    def test_non_binary_labels_rejected(self):
        with pytest.raises(ReportInputError):
            normalize_binary_label(pd.Series([0, 1, 2], name="admission"))

    def test_row_count_mismatch_is_fatal(self, synthetic_inputs):
        samples, labels, props = synthetic_inputs
        with pytest.raises(ReportInputError, match="Row count mismatch"):
            validate_alignment(samples, labels.iloc[:-1], _arrays(props))

    def test_short_prediction_vector_is_fatal(self, synthetic_inputs):
        samples, labels, props = synthetic_inputs
        arrays = _arrays(props)
        arrays["submodels"]["mortality_2d"] = arrays["submodels"]["mortality_2d"][:-5]
        with pytest.raises(ReportInputError, match="mortality_2d"):
            validate_alignment(samples, labels, arrays)

    def test_load_properties_and_public_switch(self, tmp_path):
        doc = {"score": [0.1, 0.2], "submodels": {"admission": [0.3, 0.4]}}
        path = tmp_path / "props.json"
        path.write_text(json.dumps(doc))

        props = load_model_properties(path)

        assert props["public"] is None
        assert select_model(props, False)["score"].tolist() == [0.1, 0.2]
        with pytest.raises(ReportInputError):
            select_model(props, True)

    def test_inclusion_criteria(self, synthetic_inputs):
        samples, labels, props = synthetic_inputs
        kept_s, kept_l, kept_p = apply_inclusion_criteria(
            samples, labels, _arrays(props), min_age=18
        )
        assert (kept_s["age"] >= 18).all()
        assert len(kept_s) == len(kept_l) == len(kept_p["score"])
        assert len(kept_p["public"]["submodels"]["admission"]) == len(kept_s)

    def test_scalar_score_is_input_error(self, tmp_path):
        path = tmp_path / "props.json"
        path.write_text(json.dumps({"score": 0.5, "submodels": {"admission": [0.3]}}))
        with pytest.raises(ReportInputError, match="numeric vector"):
            load_model_properties(path)

    def test_text_prediction_is_input_error(self, tmp_path):
        doc = {"score": ["high", 0.2], "submodels": {"admission": [0.3, 0.4]}}
        path = tmp_path / "props.json"
        path.write_text(json.dumps(doc))
        with pytest.raises(ReportInputError, match="numeric vector"):
            load_model_properties(path)

    def test_nested_submodel_is_input_error(self, tmp_path):
        doc = {"score": [0.1, 0.2], "submodels": {"admission": [[0.3], [0.4]]}}
        path = tmp_path / "props.json"
        path.write_text(json.dumps(doc))
        with pytest.raises(ReportInputError, match="admission"):
            load_model_properties(path)

    def test_inclusion_uses_reported_model_score(self, synthetic_inputs):
        """Encounters without a public score are excluded from the public run."""
        samples, labels, props = synthetic_inputs
        arrays = _arrays(props)
        arrays["public"]["score"][:10] = np.nan

        _, _, kept_public = apply_inclusion_criteria(
            samples, labels, arrays, min_age=0, public_model=True
        )
        _, _, kept_full = apply_inclusion_criteria(
            samples, labels, arrays, min_age=0, public_model=False
        )

        public_score = select_model(kept_public, True)["score"]
        assert not np.isnan(public_score).any()
        assert len(public_score) == len(samples) - 10
        assert len(kept_full["score"]) == len(samples)

    def test_numeric_settings_are_coerced(self):
        settings = resolve_settings({"n_bootstrap": "25", "seed": "3", "ci": "0.9"})
        assert settings["n_bootstrap"] == 25
        assert settings["seed"] == 3
        assert settings["ci"] == pytest.approx(0.9)

    def test_bad_numeric_setting_rejected(self):
        with pytest.raises(ReportInputError, match="n_bootstrap"):
            resolve_settings({"n_bootstrap": "many"})

    def test_settings_precedence(self, monkeypatch):
        monkeypatch.setenv("TRIAGE_N_BOOTSTRAP", "123")
        monkeypatch.setenv("TRIAGE_PUBLIC_MODEL", "1")
        settings = resolve_settings({"n_bootstrap": 7})
        assert settings["n_bootstrap"] == 7
        assert settings["public_model"] is True

    def test_unknown_setting_rejected(self):
        with pytest.raises(ReportInputError):
            resolve_settings({"bootstraps": 10})


class TestAuditLog:
    """Tests for the run log."""

    def test_log_and_finalize(self, tmp_path):
        log_path = tmp_path / "run.jsonl"
        audit = AuditLog(log_path)
        audit.log("TEST_EVENT", {"key": "value"})
        summary = audit.finalize_session()

        lines = log_path.read_text().splitlines()
        assert json.loads(lines[1])["event"] == "TEST_EVENT"
        assert json.loads(lines[-1])["event"] == "SESSION_FINALIZED"
        assert len(summary["integrity_hash"]) == 64
        assert len(audit.get_verification_key()) == 16


class TestIntegration:
    """End-to-end report runs."""

    @pytest.mark.slow
    def test_full_report_synthetic(self, tmp_path):
        samples, labels, props = SyntheticTriageData.generate(
            n_samples=1500, missing_label_rate=0.05
        )
        paths = SyntheticTriageData.save(samples, labels, props, tmp_path / "in")

        result = run_triage_report(
            paths["samples"],
            paths["labels"],
            paths["properties"],
            tmp_path / "out",
            lookup_path=paths["lookup"],
            session_config={"n_bootstrap": 50, "n_imputations": 3},
        )

        out_dir = Path(result["output_dir"])
        assert result["status"] == "success"
        assert (out_dir / "Tables" / "AUC_Table.csv").exists()
        assert (out_dir / "Tables" / "Calibration_MACE_Wide.csv").exists()
        assert (out_dir / "Tables" / "Weight_Sensitivity.csv").exists()
        assert (out_dir / "Charts" / "ROC_Curves.png").exists()
        assert (out_dir / "TRIAGE_RUN_LOG.jsonl").exists()
        assert not result["tables"]["AUC_Table"].empty
        assert set(result["tables"]["Weight_Sensitivity"]["predictor_set"]) == {
            "full",
            "public",
        }

    @pytest.mark.slow
    def test_rerun_is_reproducible(self, tmp_path):
        samples, labels, props = SyntheticTriageData.generate(n_samples=600)
        paths = SyntheticTriageData.save(samples, labels, props, tmp_path / "in")
        config = {"n_bootstrap": 40, "make_plots": False, "make_pdf": False}

        first = run_triage_report(
            paths["samples"], paths["labels"], paths["properties"],
            tmp_path / "a", session_config=config,
        )
        second = run_triage_report(
            paths["samples"], paths["labels"], paths["properties"],
            tmp_path / "b", session_config=config,
        )

        pd.testing.assert_frame_equal(
            first["tables"]["AUC_Table"], second["tables"]["AUC_Table"]
        )
        pd.testing.assert_frame_equal(
            first["tables"]["Weight_Sensitivity"],
            second["tables"]["Weight_Sensitivity"],
        )

    def test_misaligned_inputs_abort(self, tmp_path):
        samples, labels, props = SyntheticTriageData.generate(n_samples=200)
        paths = SyntheticTriageData.save(
            samples, labels.iloc[:150], props, tmp_path / "in"
        )
        with pytest.raises(ReportInputError):
            run_triage_report(
                paths["samples"],
                paths["labels"],
                paths["properties"],
                tmp_path / "out",
                session_config={"make_plots": False, "make_pdf": False},
            )
        log = next((tmp_path / "out").glob("*_Report/TRIAGE_RUN_LOG.jsonl"))
        assert "RUN_ABORTED" in log.read_text()

    def test_cli_help(self):
        assert main(["--help"]) == 0

    def test_cli_bad_bootstrap_count(self, tmp_path):
        assert main(["--n-bootstrap=abc", f"--output={tmp_path}"]) == 1

    def test_all_encounters_excluded(self, tmp_path):
        """A cohort emptied by the inclusion criteria stops cleanly."""
        samples, labels, props = SyntheticTriageData.generate(n_samples=200)
        samples["age"] = 10.0
        paths = SyntheticTriageData.save(samples, labels, props, tmp_path / "in")

        result = run_triage_report(
            paths["samples"],
            paths["labels"],
            paths["properties"],
            tmp_path / "out",
            session_config={"make_plots": False, "make_pdf": False},
        )

        assert result["status"] == "no_eligible_encounters"
        assert result["n_samples"] == 0
        log = (Path(result["output_dir"]) / "TRIAGE_RUN_LOG.jsonl").read_text()
        assert "NO_ELIGIBLE_ENCOUNTERS" in log
        assert "SESSION_FINALIZED" in log

    def test_malformed_properties_abort(self, tmp_path):
        samples, labels, props = SyntheticTriageData.generate(n_samples=100)
        props["score"] = 0.5
        paths = SyntheticTriageData.save(samples, labels, props, tmp_path / "in")
        args = [
            f"--samples={paths['samples']}",
            f"--labels={paths['labels']}",
            f"--properties={paths['properties']}",
            f"--output={tmp_path / 'out'}",
            "--n-bootstrap=10",
        ]

        assert main(args) == 1
        log = next((tmp_path / "out").glob("*_Report/TRIAGE_RUN_LOG.jsonl"))
        text = log.read_text()
        assert "RUN_ABORTED" in text
        assert "SESSION_FINALIZED" in text

    def test_empty_labels_file_abort(self, tmp_path):
        samples, labels, props = SyntheticTriageData.generate(n_samples=100)
        paths = SyntheticTriageData.save(samples, labels, props, tmp_path / "in")
        paths["labels"].write_text("")
        with pytest.raises(ReportInputError, match="labels"):
            run_triage_report(
                paths["samples"],
                paths["labels"],
                paths["properties"],
                tmp_path / "out",
                session_config={"make_plots": False, "make_pdf": False},
            )


def _arrays(props):
    """Model-properties document with vectors as arrays, as the loader returns."""
    def section(s):
        return {
            "score": np.asarray(s["score"], dtype=float),
            "submodels": {
                k: np.asarray(v, dtype=float) for k, v in s["submodels"].items()
            },
        }

    out = section(props)
    out["public"] = section(props["public"]) if props.get("public") else None
    return out


# Fixtures for shared test data
@pytest.fixture
def synthetic_inputs():
    """Synthetic samples, labels and model properties (1200 encounters)."""
    return SyntheticTriageData.generate(n_samples=1200, random_state=RANDOM_STATE)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
