import pandas as pd
import pytest

from lizard_wl_analysis.exceptions import ReconciliationError
from lizard_wl_analysis.processing.reconciliation import (
    apply_reassignments,
    check_group_cardinality,
    drop_excluded_subjects,
    match_corroborating_timestamp,
    measurement_order,
    neighbors,
    propose_reassignments,
    reconcile_replicates,
)

from conftest import DAY1, DAY2, make_records, ts


def _counts(table):
    return table.groupby("subject_id").size().to_dict()


def test_match_picks_nearest_corroborating_timestamp():
    match = match_corroborating_timestamp(
        ts(DAY1, "10:02:00"),
        {"A": ts(DAY1, "10:00:00"), "B": ts(DAY1, "10:30:00")},
    )
    assert match.subject_id == "A"
    assert match.distance == pd.Timedelta(minutes=2)
    assert match.runner_up == "B"
    assert not match.ambiguous


def test_match_within_tie_margin_is_ambiguous():
    match = match_corroborating_timestamp(
        ts(DAY1, "10:15:00"),
        {"A": ts(DAY1, "10:00:00"), "B": ts(DAY1, "10:30:20")},
        tie_margin=pd.Timedelta(seconds=60),
    )
    assert match.subject_id == "A"
    assert match.ambiguous


def test_match_without_candidates():
    match = match_corroborating_timestamp(ts(DAY1, "10:00:00"), {"A": pd.NaT})
    assert match.subject_id is None
    assert match.ambiguous


def test_measurement_order_and_neighbors(corroborating):
    order = measurement_order(corroborating, pd.Timestamp(DAY1))
    assert order == ["A", "B", "C"]
    assert neighbors("B", order, 1) == ["A", "B", "C"]
    assert neighbors("A", order, 1) == ["A", "B"]
    assert neighbors("Z", order, 1) == []


def test_surplus_records_move_to_undercounted_neighbour(misattributed_records, corroborating):
    result = reconcile_replicates(
        misattributed_records, corroborating, expected_count=(5, 5)
    )
    assert _counts(result.table) == {"A": 5, "B": 5, "C": 5}

    moved = result.log.loc[result.log["action"] == "reassigned"]
    assert moved["from_subject"].tolist() == ["B", "B"]
    assert moved["to_subject"].tolist() == ["A", "A"]
    assert sorted(moved["timestamp"].dt.strftime("%H:%M").tolist()) == ["09:59", "10:01"]

    a = result.table.loc[result.table["subject_id"] == "A"]
    assert a["replicate"].tolist() == [1, 2, 3, 4, 5]
    assert a["timestamp"].is_monotonic_increasing
    assert (result.counts["explained_by"] == "expected").all()


def test_reassignment_is_keyed_by_record_not_position(misattributed_records, corroborating):
    shuffled = misattributed_records.sample(frac=1.0, random_state=3)
    a = reconcile_replicates(misattributed_records, corroborating, expected_count=(5, 5))
    b = reconcile_replicates(shuffled, corroborating, expected_count=(5, 5))
    pd.testing.assert_frame_equal(a.table, b.table)


def test_ambiguous_match_is_rejected_and_reported(corroborating):
    records = make_records(
        [("A", DAY1, f"09:5{i}:00", 1.0) for i in range(5)]
        + [("B", DAY1, f"10:2{i}:00", 2.0) for i in range(5)]
        # Halfway between A (10:00) and B (10:30), typed as B.
        + [("B", DAY1, "10:15:00", 2.0)]
    )
    log = propose_reassignments(records, corroborating, expected_count=(5, 5))
    assert "reassigned" not in set(log["action"])
    assert "rejected_ambiguous" in set(log["action"])

    with pytest.raises(ReconciliationError) as excinfo:
        reconcile_replicates(records, corroborating, expected_count=(5, 5))
    groups = excinfo.value.groups
    assert groups["subject_id"].tolist() == ["B"]
    assert groups["count"].tolist() == [6]
    assert "10:15:00" in groups["timestamps"].iloc[0]


def test_documented_exception_explains_count(corroborating):
    records = make_records(
        [("A", DAY1, f"09:5{i}:00", 1.0) for i in range(4)]
        + [("B", DAY1, f"10:2{i}:00", 2.0) for i in range(5)]
    )
    exceptions = pd.DataFrame(
        {
            "subject_id": ["A"],
            "date": [pd.NaT],
            "actual_count": [4],
            "reason": ["shed skin, fourth reading only"],
        }
    )
    result = reconcile_replicates(
        records, corroborating, expected_count=(5, 5), exceptions=exceptions
    )
    explained = result.counts.set_index("subject_id")["explained_by"]
    assert explained["A"] == "shed skin, fourth reading only"
    assert explained["B"] == "expected"


def test_exception_for_other_count_does_not_apply():
    records = make_records([("A", DAY1, f"09:5{i}:00", 1.0) for i in range(3)])
    exceptions = pd.DataFrame(
        {
            "subject_id": ["A"],
            "date": [pd.Timestamp(DAY1)],
            "actual_count": [4],
            "reason": ["four only"],
        }
    )
    with pytest.raises(ReconciliationError):
        check_group_cardinality(records, expected_count=(5, 5), exceptions=exceptions)


def test_fully_excluded_subject_disappears_on_every_date():
    records = make_records(
        [("A", DAY1, "10:00:00", 1.0), ("A", DAY2, "10:00:00", 1.0),
         ("B", DAY1, "10:30:00", 2.0), ("B", DAY2, "10:30:00", 2.0)]
    )
    exclusions = pd.DataFrame(
        {"subject_id": ["A", "B"], "date": [pd.NaT, pd.Timestamp(DAY2)], "reason": ["", ""]}
    )
    out = drop_excluded_subjects(records, exclusions)
    assert out["subject_id"].tolist() == ["B"]
    assert out["date"].tolist() == [pd.Timestamp(DAY1)]


def test_excluded_subject_is_not_counted(corroborating):
    records = make_records(
        [("A", DAY1, f"09:5{i}:00", 1.0) for i in range(5)]
        + [("C", DAY1, "10:58:00", 3.0)]
    )
    exclusions = pd.DataFrame({"subject_id": ["C"], "date": [pd.NaT], "reason": ["escaped"]})
    result = reconcile_replicates(
        records, corroborating, expected_count=(5, 5), exclusions=exclusions
    )
    assert set(result.table["subject_id"]) == {"A"}


def test_range_expected_count_accepts_both_sizes(corroborating):
    records = make_records(
        [("A", DAY1, f"09:5{i}:00", 1.0) for i in range(2)]
        + [("B", DAY1, f"10:2{i}:00", 2.0) for i in range(3)]
    )
    result = reconcile_replicates(records, corroborating, expected_count=(2, 3))
    assert result.log.empty
    assert set(result.counts["explained_by"]) == {"expected"}


def test_no_expected_count_skips_checks(corroborating):
    records = make_records([("A", DAY1, "09:50:00", 1.0)])
    result = reconcile_replicates(records, corroborating, expected_count=None)
    assert result.counts["explained_by"].tolist() == ["not checked"]


def test_apply_reassignments_rejects_unknown_record():
    records = make_records([("A", DAY1, "10:00:00", 1.0)])
    log = pd.DataFrame(
        {
            "date": [pd.Timestamp(DAY1)],
            "timestamp": [ts(DAY1, "11:11:00")],
            "from_subject": ["A"],
            "to_subject": ["B"],
            "action": ["reassigned"],
        }
    )
    with pytest.raises(ReconciliationError):
        apply_reassignments(records, log)
