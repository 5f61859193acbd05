"""homebuyer_cohorts.transforms

Source-to-prepared transformations for the cohort pipeline.

This module converts a raw program table (DPA or HOP), exactly as handed over
by ingestion, into the shared prepared schema used by reconciliation.

Key behaviors:
- Column selection is driven by an allow-list (the source's
  `column_mapping`); deny-listed PII columns and anything unmapped are dropped.
  A mapped raw column that is absent is a schema mismatch and fails the run.
- Derived fields (`race_multiple`, `mortgage_notes`) are read from the RAW
  labels before the primary labels are canonicalized, because canonicalization
  loses the information they preserve.
- Malformed numeric/date cells become NULL. They are counted per field and
  reported through the run summary, never dropped from the row count.
- Rows missing a required anchor (e.g. DPA closing date) are not program
  records and are filtered out, with the dropped count recorded.
- Each prepared row gets a source-prefixed, zero-padded sequential ID in input
  order. IDs are stable within a run, not across runs with reordered input.

Every function returns a new DataFrame; the raw table is never modified.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pyspark.sql import DataFrame
from pyspark.sql import functions as F
from pyspark.sql.window import Window

from . import config
from .config import (
    AMI_BANDS,
    DERIVED_FIELDS,
    PIPELINE_CONFIG,
    SHARED_FIELDS,
    log_message,
)
from .errors import PipelineConfigError, SchemaMismatchError
from .normalizer import (
    band_column,
    catch_all_column,
    coercion_failed_column,
    field_spec,
    has_rules,
    normalize_column,
)
from .summary import RunSummary

SPARK_TYPES = {"category": "string", "decimal": "double", "integer": "int", "date": "date"}

_NUMERIC_DTYPES = ("tinyint", "smallint", "int", "bigint", "float", "double")
_DATE_DTYPES = ("date", "timestamp", "timestamp_ntz")


def _quoted(name: str):
    return F.col(f"`{name}`")


def _input_type(dtype: str) -> str:
    if dtype in _NUMERIC_DTYPES or dtype.startswith("decimal"):
        return "numeric"
    if dtype in _DATE_DTYPES:
        return "date"
    return "string"


def field_type(field_name: str) -> str:
    """Return the Spark SQL type of a prepared field."""
    if field_name in ("source_id", "ami_band"):
        return "string"
    return SPARK_TYPES[field_spec(field_name)["type"]]


def validate_column_mapping(column_mapping: Dict[str, str]) -> None:
    """Ensure the raw->prepared mapping is one-to-one.

    Raises:
        PipelineConfigError: if two raw columns map to the same prepared name.
    """
    targets = list(column_mapping.values())
    duplicates = sorted({name for name in targets if targets.count(name) > 1})
    if duplicates:
        raise PipelineConfigError(f"Column mapping is not one-to-one; repeated targets: {duplicates}")


def validate_and_select_columns(raw_df: DataFrame, source_type: str, source_config: Dict[str, Any]) -> DataFrame:
    """Keep only mapped raw columns, renamed to the shared schema.

    Raw headers are matched after trimming surrounding whitespace. Values are
    left untouched; normalization happens later.

    Raises:
        SchemaMismatchError: listing every mapped raw column that is absent.
    """
    column_mapping = source_config["column_mapping"]
    validate_column_mapping(column_mapping)

    available = {name.strip(): name for name in raw_df.columns}
    missing = [raw_name for raw_name in column_mapping if raw_name not in available]
    if missing:
        raise SchemaMismatchError(f"{source_type} raw table is missing expected column(s): {missing}")

    denied = [name for name in source_config.get("drop_columns", []) if name in available]
    if denied:
        log_message(f"Dropping {len(denied)} PII column(s) from {source_type}: {denied}", level="DEBUG", depth=2)

    unmapped = [name for name in available if name not in column_mapping and name not in denied]
    if unmapped:
        log_message(f"Ignoring {len(unmapped)} unmapped {source_type} column(s): {unmapped}", depth=2)

    return raw_df.select(
        *[_quoted(available[raw_name]).alias(target) for raw_name, target in column_mapping.items()]
    )


def build_derived_columns(selected_df: DataFrame, source_type: str) -> DataFrame:
    """Add derived fields computed from the raw labels they split out of.

    Must run before `normalize_columns`, while primary labels are still raw.
    """
    derived_df = selected_df
    for derived_field, base_field in DERIVED_FIELDS.items():
        if base_field in selected_df.columns:
            derived_df = derived_df.withColumn(
                derived_field, normalize_column(derived_field, F.col(base_field), source_type)
            )
    return derived_df


def normalize_columns(
    derived_df: DataFrame,
    source_type: str,
    input_types: Optional[Dict[str, str]] = None,
    summary: Optional[RunSummary] = None,
) -> DataFrame:
    """Normalize every field that has a rule set, then derive `ami_band`.

    Args:
        derived_df: Output of `build_derived_columns`.
        source_type: Source code used to pick per-source override rules.
        input_types: Per-field raw input kind ("string", "numeric", "date").
        summary: When given, coercion and catch-all counts are recorded.

    Returns:
        DataFrame with canonical values; row count is unchanged.
    """
    input_types = input_types or {}
    to_normalize = [c for c in derived_df.columns if has_rules(c) and c not in DERIVED_FIELDS]

    expressions = {
        name: normalize_column(name, F.col(name), source_type, input_types.get(name, "string")) for name in to_normalize
    }

    if summary is not None and to_normalize:
        _record_quality_counts(derived_df, source_type, expressions, summary)

    normalized_df = derived_df.select(
        *[expressions[c].alias(c) if c in expressions else F.col(c) for c in derived_df.columns]
    )
    if "ami_ratio" in normalized_df.columns:
        normalized_df = normalized_df.withColumn("ami_band", band_column(F.col("ami_ratio"), AMI_BANDS))
    return normalized_df


def _record_quality_counts(
    derived_df: DataFrame, source_type: str, expressions: Dict[str, Any], summary: RunSummary
) -> None:
    """Count coercion failures and catch-all absorptions in a single pass."""
    aggregations = []
    for name, expression in expressions.items():
        aggregations.append(
            F.sum(F.when(coercion_failed_column(name, F.col(name), expression), 1).otherwise(0)).alias(f"coerce__{name}")
        )
        aggregations.append(
            F.sum(F.when(catch_all_column(name, F.col(name), source_type), 1).otherwise(0)).alias(f"catchall__{name}")
        )

    counts = derived_df.agg(*aggregations).first().asDict()
    for key, value in counts.items():
        kind, name = key.split("__", 1)
        value = int(value or 0)
        if kind == "coerce":
            summary.record_coercions(source_type, name, value)
        elif value:
            summary.catch_all_counts[f"{source_type}.{name}"] = value


def filter_required_anchors(normalized_df: DataFrame, required_fields: List[str]) -> DataFrame:
    """Drop rows lacking any required anchor field."""
    condition = F.lit(True)
    for name in required_fields:
        condition = condition & F.col(name).isNotNull()
    return normalized_df.filter(condition)


def assign_source_ids(filtered_df: DataFrame, id_prefix: str, id_width: int = 5) -> DataFrame:
    """Prepend a sequential, zero-padded, source-prefixed `source_id`.

    Numbering follows the current row order of `filtered_df`.
    """
    ordering = Window.orderBy("_input_order")
    return (
        filtered_df.withColumn("_input_order", F.monotonically_increasing_id())
        .withColumn("source_id", F.format_string(f"{id_prefix}%0{id_width}d", F.row_number().over(ordering)))
        .drop("_input_order")
    )


def standardize_prepared_columns(identified_df: DataFrame) -> DataFrame:
    """Project onto the shared schema: all shared fields first, then program fields.

    Shared fields a source does not carry are filled with typed NULLs so both
    prepared tables expose the same shared columns.
    """
    shared = [
        F.col(name) if name in identified_df.columns else F.lit(None).cast(field_type(name)).alias(name)
        for name in SHARED_FIELDS
    ]
    program_specific = [F.col(name) for name in identified_df.columns if name not in SHARED_FIELDS]
    return identified_df.select(*shared, *program_specific)


def prepare_source(
    raw_df: DataFrame,
    source_type: str,
    summary: Optional[RunSummary] = None,
    source_config: Optional[Dict[str, Any]] = None,
) -> DataFrame:
    """Turn one raw program table into prepared records.

    Args:
        raw_df: Raw table for the source, one row per raw record.
        source_type: `SOURCE_TYPE_DPA` or `SOURCE_TYPE_HOP`.
        summary: Run summary receiving row and data-quality counts.
        source_config: Preparation config; defaults to `PIPELINE_CONFIG[source_type]`.

    Returns:
        Cached DataFrame in the prepared schema.

    Raises:
        SchemaMismatchError: if a mapped raw column is absent.
        PipelineConfigError: if the column mapping is not one-to-one.
    """
    source_config = source_config or PIPELINE_CONFIG[source_type]
    log_message(f"Preparing {source_type} source...", level="DEBUG", depth=1)

    selected_df = validate_and_select_columns(raw_df, source_type, source_config)
    dtypes = dict(raw_df.dtypes)
    input_types = {
        target: _input_type(dtypes[next(c for c in raw_df.columns if c.strip() == raw_name)])
        for raw_name, target in source_config["column_mapping"].items()
    }

    derived_df = build_derived_columns(selected_df, source_type)
    normalized_df = normalize_columns(derived_df, source_type, input_types, summary)
    filtered_df = filter_required_anchors(normalized_df, source_config.get("required_fields", []))
    identified_df = assign_source_ids(filtered_df, source_config["id_prefix"], source_config.get("id_width", 5))
    prepared_df = standardize_prepared_columns(identified_df).cache()

    raw_count = raw_df.count()
    prepared_count = prepared_df.count()
    if summary is not None:
        summary.raw_rows[source_type] = raw_count
        summary.prepared_rows[source_type] = prepared_count
        summary.dropped_missing_anchor[source_type] = raw_count - prepared_count

    if raw_count > prepared_count:
        log_message(
            f"{source_type}: dropped {raw_count - prepared_count:,} of {raw_count:,} row(s) missing "
            f"{source_config.get('required_fields', [])}",
            level="WARN",
            depth=2,
        )
    if config.LOGGING_VERBOSE:
        log_message(f"{source_type}: prepared {prepared_count:,} record(s)", level="DEBUG", depth=2)

    return prepared_df
