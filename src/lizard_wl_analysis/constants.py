"""
Shared constants for lizard water-loss replicate QC.
"""

import pandas as pd

# Canonical column names used by every pipeline stage
SUBJECT_COL = "subject_id"
DATE_COL = "date"
TIMESTAMP_COL = "timestamp"
REPLICATE_COL = "replicate"
STATUS_COL = "status"
SOURCE_FILE_COL = "source_file"
TIME_COL = "time"

GROUP_COLS = [SUBJECT_COL, DATE_COL]

# QC metadata written alongside every aggregated observation
N_REPLICATES_COL = "n_replicates"
N_OUTLIERS_COL = "n_outliers"
CV_COL = "cv_percent"
QUALITY_FLAG_COL = "data_quality_flag"
REVIEW_FLAG_COL = "needs_review"

QC_COLUMNS = [
    N_REPLICATES_COL,
    N_OUTLIERS_COL,
    CV_COL,
    QUALITY_FLAG_COL,
    REVIEW_FLAG_COL,
]

DEFAULT_SUCCESS_VALUES = ["ok", "success", "pass", "good"]
DEFAULT_PATTERN = "*.csv"

# Boxplot whisker rule and retention policy for replicate groups
DEFAULT_IQR_WHIS = 1.5
DEFAULT_MIN_GROUP_SIZE = 3
DEFAULT_MIN_RETAINED = 2

# Identity reconciliation
DEFAULT_NEIGHBOR_WINDOW = 1
DEFAULT_TIE_MARGIN = pd.Timedelta(seconds=60)

DATE_FORMAT = "%Y-%m-%d"
