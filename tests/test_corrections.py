import numpy as np
import pandas as pd
import pytest

from lizard_wl_analysis.exceptions import ConfigError
from lizard_wl_analysis.processing.corrections import (
    Correction,
    apply_corrections,
    correction_from_dict,
    subject_correction,
    threshold_correction,
    window_correction,
)


@pytest.fixture
def aggregated():
    return pd.DataFrame(
        {
            "subject_id": ["L1", "L2", "L10", "L1", "L2", "L10"],
            "date": pd.to_datetime(["2023-06-01"] * 3 + ["2023-06-14"] * 3),
            "ewl": [12.0, 15.0, 9.0, 12.5, 15.5, 9.5],
            "osmolality": [320.0, 330.0, 340.0, 324.0, 461.0, 345.0],
        }
    )


def test_threshold_set_missing_keeps_row(aggregated):
    corr = threshold_correction("osmolality", above=450, reason="dehydration")
    out, log = apply_corrections(aggregated, [corr])
    assert len(out) == len(aggregated)
    assert out["osmolality"].isna().sum() == 1
    assert out.loc[out["osmolality"].isna(), "ewl"].tolist() == [15.5]
    assert log["previous_value"].tolist() == [461.0]
    assert log["reason"].tolist() == ["dehydration"]


def test_threshold_drop_row(aggregated):
    corr = threshold_correction("ewl", below=10, action="drop_row")
    out, log = apply_corrections(aggregated, [corr])
    assert "L10" not in set(out["subject_id"])
    assert len(log) == 2
    assert set(log["action"]) == {"drop_row"}


def test_inclusive_threshold_is_named_by_its_operator(aggregated):
    corr = threshold_correction("osmolality", above=461, inclusive=True)
    assert corr.name == "osmolality >= 461"
    _, log = apply_corrections(aggregated, [corr])
    assert log["correction"].tolist() == ["osmolality >= 461"]
    assert threshold_correction("ewl", below=10).name == "ewl < 10"


def test_window_correction_limits_to_dates_and_subjects(aggregated):
    corr = window_correction(["ewl"], "2023-06-14", "2023-06-15", subjects=["l2"])
    out, log = apply_corrections(aggregated, [corr])
    assert out["ewl"].isna().sum() == 1
    assert log["subject_id"].tolist() == ["L2"]


def test_subject_correction_drops_by_default(aggregated):
    out, _ = apply_corrections(
        aggregated, [subject_correction(["L1"], dates=["2023-06-01"])]
    )
    assert len(out) == 5


def test_corrections_apply_in_order(aggregated):
    first = threshold_correction("osmolality", above=450)
    second = Correction(
        name="drop missing osmolality",
        predicate=lambda df: df["osmolality"].isna(),
        action="drop_row",
    )
    out, log = apply_corrections(aggregated, [first, second])
    assert len(out) == 5
    assert log["action"].tolist() == ["set_missing", "drop_row"]


def test_already_missing_values_are_not_logged(aggregated):
    aggregated.loc[0, "osmolality"] = np.nan
    corr = subject_correction(["L1"], columns=["osmolality"], action="set_missing")
    _, log = apply_corrections(aggregated, [corr])
    assert log["previous_value"].tolist() == [324.0]


def test_from_dict_builds_each_type():
    assert correction_from_dict(
        {"type": "threshold", "column": "osmolality", "above": 450}
    ).action == "set_missing"
    assert correction_from_dict(
        {"type": "window", "column": "ewl", "start": "2023-06-14", "end": "2023-06-15"}
    ).columns == ("ewl",)
    assert correction_from_dict({"type": "subject", "subjects": ["L1"]}).action == "drop_row"


@pytest.mark.parametrize(
    "entry",
    [
        {"type": "typo", "column": "ewl"},
        {"type": "threshold", "above": 1},
        {"type": "threshold", "column": "ewl"},
        {"type": "threshold", "column": "ewl", "above": 1, "action": "impute"},
        {"type": "window", "columns": [], "column": "ewl", "start": "2023-06-01"},
    ],
)
def test_invalid_corrections_raise_config_error(entry):
    with pytest.raises(ConfigError):
        correction_from_dict(entry)


def test_unknown_column_is_rejected(aggregated):
    with pytest.raises(ValueError, match="missing columns"):
        apply_corrections(aggregated, [threshold_correction("hematocrit", above=1)])
