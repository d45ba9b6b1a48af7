"""
Pipeline configuration loaded from YAML.

One YAML file describes the experiment: where the raw exports and reference
tables live, and for each measurement type its column layout, expected
replicate count, QC thresholds, auxiliary joins and ad hoc corrections.
Every human-judgement threshold is an explicit value here so a run is
auditable from its config alone.

Example:
    >>> config = load_config("experiment.yaml")
    >>> [m.name for m in config.measurements]
    ['osmolality', 'ewl', 'climate']
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd
import yaml

from lizard_wl_analysis.constants import (
    DEFAULT_IQR_WHIS,
    DEFAULT_MIN_GROUP_SIZE,
    DEFAULT_MIN_RETAINED,
    DEFAULT_NEIGHBOR_WINDOW,
    DEFAULT_PATTERN,
    DEFAULT_SUCCESS_VALUES,
    DEFAULT_TIE_MARGIN,
    STATUS_COL,
)
from lizard_wl_analysis.exceptions import ConfigError
from lizard_wl_analysis.utils.labels import normalize_column_name

logger = logging.getLogger(__name__)

ExpectedCount = Optional[tuple[int, int]]


@dataclass
class MeasurementSchema:
    """Column layout of one instrument's CSV exports."""

    value_col: str
    column_map: dict[str, str] = field(default_factory=dict)
    companion_cols: list[str] = field(default_factory=list)
    status_col: Optional[str] = STATUS_COL
    success_values: list[str] = field(
        default_factory=lambda: list(DEFAULT_SUCCESS_VALUES)
    )
    date_format: Optional[str] = None
    timestamp_format: Optional[str] = None
    require_timestamp: bool = True


@dataclass
class AuxiliaryJoin:
    """Join columns of an earlier measurement's aggregated table."""

    measurement: str
    columns: list[str]
    required: bool = True


@dataclass
class MeasurementConfig:
    name: str
    input_dir: Path
    schema: MeasurementSchema
    pattern: str = DEFAULT_PATTERN
    expected_count: ExpectedCount = None
    outlier_filter: bool = True
    iqr_whis: float = DEFAULT_IQR_WHIS
    min_group_size: int = DEFAULT_MIN_GROUP_SIZE
    min_retained: int = DEFAULT_MIN_RETAINED
    cv_review_threshold: Optional[float] = None
    neighbor_window: int = DEFAULT_NEIGHBOR_WINDOW
    tie_margin: pd.Timedelta = DEFAULT_TIE_MARGIN
    auxiliary: list[AuxiliaryJoin] = field(default_factory=list)
    corrections: list[dict[str, Any]] = field(default_factory=list)
    group_summary_by: Optional[str] = "treatment"

    @property
    def output_name(self) -> str:
        return f"{self.name}_aggregated.csv"


@dataclass
class PipelineConfig:
    data_dir: Path
    output_dir: Path
    measurements: list[MeasurementConfig]
    exclusions_path: Optional[Path] = None
    exceptions_path: Optional[Path] = None
    corroborating_path: Optional[Path] = None
    treatments_path: Optional[Path] = None
    report: bool = False

    def measurement(self, name: str) -> MeasurementConfig:
        for m in self.measurements:
            if m.name == name:
                return m
        raise KeyError(name)


def parse_expected_count(value: Any) -> ExpectedCount:
    """
    Normalize an expected replicate count to inclusive (min, max) bounds.

    Accepts None (no cardinality check), an int, or a two-element [min, max].
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"expected_count must be an int or [min, max], got {value!r}")
    if isinstance(value, int):
        if value < 1:
            raise ConfigError(f"expected_count must be >= 1, got {value}")
        return (value, value)
    if isinstance(value, (list, tuple)) and len(value) == 2:
        lo, hi = (int(v) for v in value)
        if lo < 1 or hi < lo:
            raise ConfigError(f"expected_count range invalid: {list(value)}")
        return (lo, hi)
    raise ConfigError(f"expected_count must be an int or [min, max], got {value!r}")


def _resolve(base_dir: Path, value: Optional[str]) -> Optional[Path]:
    if value is None or value == "":
        return None
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_dir / path


def _parse_schema(name: str, raw: dict[str, Any]) -> MeasurementSchema:
    if not raw.get("value_col"):
        raise ConfigError(f"Measurement '{name}' is missing 'value_col'")
    column_map = {
        normalize_column_name(k): str(v)
        for k, v in (raw.get("column_map") or {}).items()
    }
    success = raw.get("success_values", DEFAULT_SUCCESS_VALUES)
    return MeasurementSchema(
        value_col=str(raw["value_col"]),
        column_map=column_map,
        companion_cols=[str(c) for c in raw.get("companion_cols") or []],
        status_col=raw.get("status_col", STATUS_COL),
        success_values=[str(v).strip().lower() for v in success],
        date_format=raw.get("date_format"),
        timestamp_format=raw.get("timestamp_format"),
        require_timestamp=bool(raw.get("require_timestamp", True)),
    )


def _parse_measurement(
    raw: dict[str, Any], data_dir: Path, known: list[str]
) -> MeasurementConfig:
    name = raw.get("name")
    if not name:
        raise ConfigError("Every measurement needs a 'name'")
    if name in known:
        raise ConfigError(f"Duplicate measurement name '{name}'")

    auxiliary = []
    for aux in raw.get("auxiliary") or []:
        source = aux.get("measurement")
        if source not in known:
            raise ConfigError(
                f"Measurement '{name}' joins '{source}', which must be "
                f"configured before it. Configured so far: {known}"
            )
        auxiliary.append(
            AuxiliaryJoin(
                measurement=source,
                columns=[str(c) for c in aux.get("columns") or []],
                required=bool(aux.get("required", True)),
            )
        )

    tie_margin = raw.get("tie_margin_seconds")
    return MeasurementConfig(
        name=str(name),
        input_dir=_resolve(data_dir, raw.get("input_dir", name)),
        schema=_parse_schema(name, raw),
        pattern=raw.get("pattern", DEFAULT_PATTERN),
        expected_count=parse_expected_count(raw.get("expected_count")),
        outlier_filter=bool(raw.get("outlier_filter", True)),
        iqr_whis=float(raw.get("iqr_whis", DEFAULT_IQR_WHIS)),
        min_group_size=int(raw.get("min_group_size", DEFAULT_MIN_GROUP_SIZE)),
        min_retained=int(raw.get("min_retained", DEFAULT_MIN_RETAINED)),
        cv_review_threshold=raw.get("cv_review_threshold"),
        neighbor_window=int(raw.get("neighbor_window", DEFAULT_NEIGHBOR_WINDOW)),
        tie_margin=(
            DEFAULT_TIE_MARGIN
            if tie_margin is None
            else pd.Timedelta(seconds=float(tie_margin))
        ),
        auxiliary=auxiliary,
        corrections=list(raw.get("corrections") or []),
        group_summary_by=raw.get("group_summary_by", "treatment"),
    )


def load_config(
    config_path_or_dict: Union[str, Path, dict[str, Any]],
    *,
    base_dir: Optional[Union[str, Path]] = None,
    data_dir: Optional[Union[str, Path]] = None,
    output_dir: Optional[Union[str, Path]] = None,
) -> PipelineConfig:
    """
    Load a pipeline configuration from a YAML file or an equivalent dict.

    Relative paths are resolved against ``base_dir`` (default: the config
    file's folder, or the working directory for dicts). ``input_dir`` of
    each measurement and the reference tables are resolved against
    ``data_dir``. ``data_dir`` and ``output_dir`` arguments override the
    values in the file.

    Raises:
        ConfigError: If the file or a reference table is missing, the file is
            not a mapping, or an entry is invalid.
    """
    if isinstance(config_path_or_dict, dict):
        raw = config_path_or_dict
        root = Path(base_dir) if base_dir is not None else Path.cwd()
    else:
        path = Path(config_path_or_dict)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        root = Path(base_dir) if base_dir is not None else path.parent
        logger.debug("Loaded configuration from %s", path)

    if not isinstance(raw, dict):
        raise ConfigError("Configuration must be a mapping")

    if data_dir is not None:
        data_dir = Path(data_dir)
    else:
        data_dir = _resolve(root, raw.get("data_dir", ".")) or root
    if output_dir is not None:
        output_dir = Path(output_dir)
    else:
        output_dir = _resolve(root, raw.get("output_dir", "output")) or root / "output"
    references = {
        kind: _resolve(data_dir, (raw.get("references") or {}).get(kind))
        for kind in ("exclusions", "exceptions", "corroborating", "treatments")
    }
    for kind, path in references.items():
        if path is not None and not path.exists():
            raise ConfigError(f"Reference table '{kind}' not found: {path}")

    measurements: list[MeasurementConfig] = []
    for m in raw.get("measurements") or []:
        measurements.append(
            _parse_measurement(m, data_dir, [x.name for x in measurements])
        )
    if not measurements:
        raise ConfigError("Configuration defines no measurements")

    return PipelineConfig(
        data_dir=data_dir,
        output_dir=output_dir,
        measurements=measurements,
        exclusions_path=references["exclusions"],
        exceptions_path=references["exceptions"],
        corroborating_path=references["corroborating"],
        treatments_path=references["treatments"],
        report=bool(raw.get("report", False)),
    )
