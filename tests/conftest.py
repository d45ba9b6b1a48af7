import matplotlib

matplotlib.use("Agg")

import pandas as pd
import pytest

from lizard_wl_analysis.config import MeasurementSchema


DAY1 = "2023-06-01"
DAY2 = "2023-06-02"


def ts(day: str, hms: str) -> pd.Timestamp:
    return pd.Timestamp(f"{day} {hms}")


def make_records(rows, value_col="ewl") -> pd.DataFrame:
    """Records from (subject, day, "HH:MM:SS", value) tuples."""
    return pd.DataFrame(
        {
            "subject_id": [r[0] for r in rows],
            "date": pd.to_datetime([r[1] for r in rows]),
            "timestamp": [ts(r[1], r[2]) for r in rows],
            value_col: [float(r[3]) for r in rows],
        }
    )


@pytest.fixture
def ewl_schema() -> MeasurementSchema:
    return MeasurementSchema(
        value_col="ewl",
        column_map={"lizard_id": "subject_id", "tewl": "ewl"},
        companion_cols=["chamber_temp"],
    )


@pytest.fixture
def corroborating() -> pd.DataFrame:
    """Blood draws: A at 10:00, B at 10:30, C at 11:00 on day 1."""
    return pd.DataFrame(
        {
            "subject_id": ["A", "B", "C"],
            "date": pd.to_datetime([DAY1] * 3),
            "timestamp": [ts(DAY1, "10:00:00"), ts(DAY1, "10:30:00"), ts(DAY1, "11:00:00")],
        }
    )


@pytest.fixture
def misattributed_records() -> pd.DataFrame:
    """A has 3 records and B has 7; two of B's were taken right after A's run."""
    return make_records(
        [
            ("A", DAY1, "09:56:00", 10.0),
            ("A", DAY1, "09:57:00", 10.2),
            ("A", DAY1, "09:58:00", 9.9),
            ("B", DAY1, "09:59:00", 10.1),
            ("B", DAY1, "10:01:00", 10.0),
            ("B", DAY1, "10:26:00", 12.0),
            ("B", DAY1, "10:27:00", 12.1),
            ("B", DAY1, "10:28:00", 11.9),
            ("B", DAY1, "10:29:00", 12.2),
            ("B", DAY1, "10:30:00", 12.0),
            ("C", DAY1, "10:56:00", 8.0),
            ("C", DAY1, "10:57:00", 8.1),
            ("C", DAY1, "10:58:00", 7.9),
            ("C", DAY1, "10:59:00", 8.2),
            ("C", DAY1, "11:00:00", 8.0),
        ]
    )


def write_csv(path, text: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text.strip() + "\n", encoding="utf-8")
    return path


@pytest.fixture
def experiment_dir(tmp_path):
    """
    Small experiment on disk: osmolality (2 per group) and EWL (5 per group)
    for subjects L1, L2 and L10 over two days, with one misattributed EWL
    record, one failed reading, one outlier and one excluded subject.
    """
    data = tmp_path / "data"

    write_csv(
        data / "osmometer" / "osmo_day1.csv",
        """
Lizard ID,Date,Osmolality
L1,2023-06-01,320
L1,2023-06-01,322
L2,2023-06-01,330
L2,2023-06-01,332
L10,2023-06-01,340
L10,2023-06-01,342
X9,2023-06-01,300
X9,2023-06-01,301
""",
    )
    write_csv(
        data / "osmometer" / "osmo_day2.csv",
        """
Lizard ID,Date,Osmolality
L1,2023-06-02,324
L1,2023-06-02,326
L2,2023-06-02,460
L2,2023-06-02,462
L10,2023-06-02,344
L10,2023-06-02,346
""",
    )

    ewl_rows = ["Lizard ID,Date,Time,TEWL,Chamber Temp,Status"]
    day1 = {
        "L1": ("10:0", [12.0, 12.2, 11.8, 12.1, 12.3]),
        "L2": ("10:3", [15.0, 15.1, 14.9, 40.0]),
        "L10": ("11:0", [9.0, 9.1, 8.9, 9.2, 9.0]),
    }
    for subject, (prefix, values) in day1.items():
        for i, v in enumerate(values):
            ewl_rows.append(f"{subject},2023-06-01,{prefix}{i}:00,{v},30.0,OK")
    # Typed in as L1 but measured at L2's blood draw; L2 is one short.
    ewl_rows.append("L1,2023-06-01,10:35:00,15.05,30.0,OK")
    # Failed reading, dropped at ingestion.
    ewl_rows.append("L10,2023-06-01,11:09:00,99.0,30.0,ERROR")
    write_csv(data / "vapometer" / "ewl_day1.csv", "\n".join(ewl_rows))

    day2_rows = ["Lizard ID,Date,Time,TEWL,Chamber Temp,Status"]
    day2 = {
        "L1": ("10:0", [12.5, 12.4, 12.6, 12.5, 12.7]),
        "L2": ("10:3", [15.5, 15.4, 15.6, 15.3, 15.5]),
        "L10": ("11:0", [9.5, 9.4, 9.6, 9.3, 9.5]),
    }
    for subject, (prefix, values) in day2.items():
        for i, v in enumerate(values):
            day2_rows.append(f"{subject},2023-06-02,{prefix}{i}:00,{v},31.0,ok")
    write_csv(data / "vapometer" / "ewl_day2.csv", "\n".join(day2_rows))

    write_csv(
        data / "reference" / "blood_draw_times.csv",
        """
subject_id,date,timestamp
L1,2023-06-01,2023-06-01 10:05:00
L2,2023-06-01,2023-06-01 10:35:00
L10,2023-06-01,2023-06-01 11:05:00
L1,2023-06-02,2023-06-02 10:05:00
L2,2023-06-02,2023-06-02 10:35:00
L10,2023-06-02,2023-06-02 11:05:00
""",
    )
    write_csv(
        data / "reference" / "exclusions.csv",
        """
subject_id,date,reason
X9,,escaped enclosure
""",
    )
    write_csv(
        data / "reference" / "exceptions.csv",
        """
subject_id,date,actual_count,reason
""",
    )
    write_csv(
        data / "reference" / "treatments.csv",
        """
subject_id,treatment
L1,control
L2,dehydrated
L10,control
""",
    )

    config = tmp_path / "experiment.yaml"
    config.write_text(
        """
data_dir: data
output_dir: output
references:
  exclusions: reference/exclusions.csv
  exceptions: reference/exceptions.csv
  corroborating: reference/blood_draw_times.csv
  treatments: reference/treatments.csv
measurements:
  - name: osmolality
    input_dir: osmometer
    value_col: osmolality
    column_map:
      lizard_id: subject_id
    status_col: null
    require_timestamp: false
    expected_count: 2
    corrections:
      - type: threshold
        name: heat-wave dehydration
        column: osmolality
        above: 450
        reason: dehydration confound
  - name: ewl
    input_dir: vapometer
    value_col: ewl
    companion_cols: [chamber_temp]
    column_map:
      lizard_id: subject_id
      tewl: ewl
    expected_count: 5
    min_retained: 3
    cv_review_threshold: 10
    auxiliary:
      - measurement: osmolality
        columns: [osmolality]
        required: false
""",
        encoding="utf-8",
    )
    return tmp_path
