import pandas as pd
import pytest
from click.testing import CliRunner

from lizard_wl_analysis.__main__ import main
from lizard_wl_analysis.config import load_config
from lizard_wl_analysis.data.export import read_exported_table
from lizard_wl_analysis.exceptions import ParseError, ReconciliationError
from lizard_wl_analysis.pipeline import (
    ReferenceTables,
    ingest,
    run_measurement,
    run_pipeline,
)


def _row(df, subject, day):
    hit = df.loc[(df["subject_id"] == subject) & (df["date"] == pd.Timestamp(day))]
    assert len(hit) == 1
    return hit.iloc[0]


def test_pipeline_end_to_end(experiment_dir):
    config = load_config(experiment_dir / "experiment.yaml")
    results = run_pipeline(config)

    osmo = results["osmolality"]
    assert set(osmo.aggregated["subject_id"]) == {"L1", "L2", "L10"}
    assert len(osmo.aggregated) == 6
    # Heat-wave correction nulls the value but keeps the observation.
    assert pd.isna(_row(osmo.aggregated, "L2", "2023-06-02")["osmolality"])
    assert osmo.correction_log["previous_value"].tolist() == [461.0]

    ewl = results["ewl"]
    moved = ewl.reconciliation_log.loc[ewl.reconciliation_log["action"] == "reassigned"]
    assert moved[["from_subject", "to_subject"]].values.tolist() == [["L1", "L2"]]
    assert len(ewl.outliers) == 1
    assert ewl.outliers["ewl"].iloc[0] == 40.0

    l2 = _row(ewl.aggregated, "L2", "2023-06-01")
    assert l2["ewl"] == pytest.approx(15.0125)
    assert l2["n_replicates"] == 4
    assert l2["n_outliers"] == 1
    assert l2["osmolality"] == pytest.approx(331.0)
    assert l2["treatment"] == "dehydrated"
    assert pd.isna(_row(ewl.aggregated, "L2", "2023-06-02")["osmolality"])
    assert _row(ewl.aggregated, "L1", "2023-06-01")["ewl"] == pytest.approx(12.08)

    output = experiment_dir / "output"
    exported = read_exported_table(output / "ewl_aggregated.csv")
    assert len(exported) == 6
    assert exported["subject_id"].tolist()[:3] == ["L1", "L2", "L10"]
    for name in ["reconciliation_log", "outliers", "replicates", "group_summary"]:
        assert (output / f"ewl_{name}.csv").exists()
    replicates = pd.read_csv(output / "ewl_replicates.csv")
    assert replicates["is_outlier"].sum() == 1


def test_rerun_produces_identical_output(experiment_dir):
    config = load_config(experiment_dir / "experiment.yaml")
    run_pipeline(config)
    first = (experiment_dir / "output" / "ewl_aggregated.csv").read_bytes()
    run_pipeline(config)
    assert (experiment_dir / "output" / "ewl_aggregated.csv").read_bytes() == first


def test_only_runs_requested_measurement_and_its_sources(experiment_dir):
    config = load_config(experiment_dir / "experiment.yaml")
    results = run_pipeline(config, write=False, only=["osmolality"])
    assert list(results) == ["osmolality"]
    results = run_pipeline(config, write=False, only=["ewl"])
    assert list(results) == ["osmolality", "ewl"]
    assert not (experiment_dir / "output").exists()


def test_empty_input_folder_is_a_parse_error(experiment_dir):
    config = load_config(experiment_dir / "experiment.yaml")
    mconfig = config.measurement("ewl")
    mconfig.input_dir = experiment_dir / "nowhere"
    with pytest.raises(ParseError):
        run_measurement(mconfig, ReferenceTables.from_config(config), {})


def test_layout_error_names_the_measurement(experiment_dir):
    bad = experiment_dir / "data" / "vapometer" / "ewl_day2.csv"
    bad.write_text(
        bad.read_text().replace("TEWL", "Reading"), encoding="utf-8"
    )
    config = load_config(experiment_dir / "experiment.yaml")
    with pytest.raises(ParseError) as excinfo:
        ingest(config.measurement("ewl"))
    assert excinfo.value.context["measurement"] == "ewl"
    assert excinfo.value.context["file"] == "ewl_day2.csv"


def test_failed_report_leaves_no_aggregated_table(experiment_dir, monkeypatch):
    def broken(**kwargs):
        raise RuntimeError("renderer crashed")

    monkeypatch.setattr("lizard_wl_analysis.pipeline.build_qc_report_pdf", broken)
    config = load_config(experiment_dir / "experiment.yaml")
    with pytest.raises(RuntimeError):
        run_pipeline(config, report=True)
    assert not (experiment_dir / "output" / "osmolality_aggregated.csv").exists()


def _break_ewl_count(experiment_dir):
    path = experiment_dir / "experiment.yaml"
    path.write_text(
        path.read_text().replace("expected_count: 5", "expected_count: 4"),
        encoding="utf-8",
    )
    return path


def test_unexplained_groups_stop_the_run_after_earlier_outputs(experiment_dir):
    config = load_config(_break_ewl_count(experiment_dir))
    with pytest.raises(ReconciliationError) as excinfo:
        run_pipeline(config)
    assert not excinfo.value.groups.empty
    output = experiment_dir / "output"
    assert (output / "osmolality_aggregated.csv").exists()
    assert not (output / "ewl_aggregated.csv").exists()


def test_cli_run_with_report(experiment_dir):
    runner = CliRunner()
    result = runner.invoke(
        main, ["run", str(experiment_dir / "experiment.yaml"), "--report"]
    )
    assert result.exit_code == 0, result.output
    assert "ewl: 6 observations, 1 outliers removed, 1 records reassigned" in result.output
    pdf = experiment_dir / "output" / "ewl_qc_report.pdf"
    assert pdf.read_bytes().startswith(b"%PDF")


def test_cli_output_dir_override(experiment_dir, tmp_path):
    runner = CliRunner()
    out = tmp_path / "elsewhere"
    result = runner.invoke(
        main, ["run", str(experiment_dir / "experiment.yaml"), "-o", str(out)]
    )
    assert result.exit_code == 0, result.output
    assert (out / "ewl_aggregated.csv").exists()


def test_cli_check_writes_nothing(experiment_dir):
    runner = CliRunner()
    result = runner.invoke(main, ["check", str(experiment_dir / "experiment.yaml")])
    assert result.exit_code == 0, result.output
    assert "ewl: OK (6 observations)" in result.output
    assert not (experiment_dir / "output").exists()


def test_cli_reports_reconciliation_failure(experiment_dir):
    runner = CliRunner()
    result = runner.invoke(main, ["check", str(_break_ewl_count(experiment_dir))])
    assert result.exit_code == 1
    assert "Error:" in result.output


def test_cli_reports_missing_reference_table(experiment_dir):
    (experiment_dir / "data" / "reference" / "treatments.csv").unlink()
    runner = CliRunner()
    result = runner.invoke(main, ["check", str(experiment_dir / "experiment.yaml")])
    assert result.exit_code == 1
    assert "treatments" in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)
