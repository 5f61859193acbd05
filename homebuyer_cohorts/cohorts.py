"""homebuyer_cohorts.cohorts

Time-bucketed cohort metrics over the unified household table.

Steps performed by `aggregate_cohorts`:
1) Resolve one authoritative date per household. Suffixed columns are
   coalesced in source precedence order (DPA before HOP), so a matched
   household uses its DPA date even when HOP disagrees. Disagreements are
   counted, not reconciled.
2) Exclude households with no resolvable date from the time series (they stay
   in non-temporal outputs such as category shares) and record the count.
3) Truncate dates to the start of their month or year.
4) Build the full (group x period) grid over the observed period range so
   that empty periods appear with count 0.
5) Count per (group, period) and compute a running sum per group.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from pyspark.sql import Column, DataFrame
from pyspark.sql import functions as F
from pyspark.sql.types import DateType, LongType, StringType, StructField, StructType
from pyspark.sql.window import Window

from .config import BUCKETS, MISSING_GROUP_LABEL, SOURCE_PRECEDENCE, log_message
from .errors import PipelineConfigError, SchemaMismatchError
from .summary import RunSummary

COHORT_METRIC_SCHEMA = StructType(
    [
        StructField("group", StringType(), False),
        StructField("period", DateType(), False),
        StructField("count", LongType(), False),
        StructField("cumulative_count", LongType(), False),
    ]
)

_BUCKET_STEPS = {"month": "interval 1 month", "year": "interval 1 year"}


def candidate_columns(unified_df: DataFrame, field_name: str, precedence: Sequence[str] = SOURCE_PRECEDENCE) -> List[str]:
    """Return the columns holding `field_name`, highest precedence first.

    An unsuffixed column (program-specific or already coalesced) is used on
    its own.
    """
    if field_name in unified_df.columns:
        return [field_name]
    return [f"{field_name}_{source}" for source in precedence if f"{field_name}_{source}" in unified_df.columns]


def resolve_field(unified_df: DataFrame, field_name: str, precedence: Sequence[str] = SOURCE_PRECEDENCE) -> Column:
    """Return one value per row for a possibly source-suffixed field.

    Raises:
        SchemaMismatchError: if no column carries the field.
    """
    columns = candidate_columns(unified_df, field_name, precedence)
    if not columns:
        raise SchemaMismatchError(f"Unified table has no column for field '{field_name}'")
    if len(columns) == 1:
        return F.col(columns[0])
    return F.coalesce(*[F.col(name) for name in columns])


def count_conflicts(unified_df: DataFrame, field_name: str, precedence: Sequence[str] = SOURCE_PRECEDENCE) -> int:
    """Count rows where two or more sources carry different non-null values."""
    columns = candidate_columns(unified_df, field_name, precedence)
    if len(columns) < 2:
        return 0

    primary = F.col(columns[0])
    condition = F.lit(False)
    for other in columns[1:]:
        condition = condition | (primary.isNotNull() & F.col(other).isNotNull() & (primary != F.col(other)))
    return unified_df.filter(condition).count()


def _empty_metrics(unified_df: DataFrame) -> DataFrame:
    return unified_df.sparkSession.createDataFrame([], COHORT_METRIC_SCHEMA)


def aggregate_cohorts(
    unified_df: DataFrame,
    summary: Optional[RunSummary] = None,
    event_date_field: str = "event_date",
    bucket: str = "month",
    group_by: str = "membership",
    precedence: Sequence[str] = SOURCE_PRECEDENCE,
) -> DataFrame:
    """Build gap-filled per-group counts and cumulative counts by period.

    Args:
        unified_df: Output of `reconcile.reconcile`.
        summary: Receives excluded-record and date-conflict counts.
        event_date_field: Date field to bucket (suffixes resolved by precedence).
        bucket: "month" or "year".
        group_by: Grouping field; missing labels are reported as `Not Reported`.
        precedence: Source order used to resolve suffixed fields.

    Returns:
        DataFrame with `group`, `period`, `count`, `cumulative_count`, ordered
        by group then period.

    Raises:
        PipelineConfigError: for an unknown bucket.
        SchemaMismatchError: if either field is absent from the unified table.
    """
    if bucket not in BUCKETS:
        raise PipelineConfigError(f"Unknown bucket '{bucket}'; expected one of {BUCKETS}")

    metric_name = f"{event_date_field} by {group_by} ({bucket})"
    log_message(f"Aggregating {metric_name}...", level="DEBUG", depth=1)

    resolved_df = unified_df.select(
        F.coalesce(resolve_field(unified_df, group_by, precedence).cast("string"), F.lit(MISSING_GROUP_LABEL)).alias(
            "group"
        ),
        resolve_field(unified_df, event_date_field, precedence).cast("date").alias("event_date"),
    )

    dated_df = resolved_df.filter(F.col("event_date").isNotNull()).withColumn(
        "period", F.trunc("event_date", bucket)
    ).cache()
    total_count = resolved_df.count()
    dated_count = dated_df.count()
    excluded_count = total_count - dated_count

    if summary is not None:
        summary.excluded_from_time_series[metric_name] = excluded_count
        summary.date_conflicts[event_date_field] = count_conflicts(unified_df, event_date_field, precedence)
    if excluded_count:
        log_message(f"{excluded_count:,} record(s) have no {event_date_field}; excluded from {metric_name}", depth=2)

    if dated_count == 0:
        dated_df.unpersist()
        return _empty_metrics(unified_df)

    bounds = dated_df.agg(F.min("period").alias("first"), F.max("period").alias("last")).first()
    periods_df = unified_df.sparkSession.range(1).select(
        F.explode(F.sequence(F.lit(bounds["first"]), F.lit(bounds["last"]), F.expr(_BUCKET_STEPS[bucket]))).alias(
            "period"
        )
    )
    grid_df = dated_df.select("group").distinct().crossJoin(periods_df)

    counts_df = dated_df.groupBy("group", "period").count()
    running = Window.partitionBy("group").orderBy("period").rowsBetween(Window.unboundedPreceding, Window.currentRow)

    metrics_df = (
        grid_df.join(counts_df, ["group", "period"], "left")
        .withColumn("count", F.coalesce(F.col("count"), F.lit(0)).cast("long"))
        .withColumn("cumulative_count", F.sum("count").over(running).cast("long"))
        .select("group", "period", "count", "cumulative_count")
        .orderBy("group", "period")
    )

    dated_df.unpersist()
    return metrics_df


def summarize_numeric(
    unified_df: DataFrame,
    fields: Sequence[str],
    group_by: str = "membership",
    precedence: Sequence[str] = SOURCE_PRECEDENCE,
) -> DataFrame:
    """Per-group count, mean and approximate median of numeric fields.

    Returns:
        DataFrame with `group`, `field`, `count`, `mean`, `median`.
    """
    if not fields:
        raise PipelineConfigError("summarize_numeric needs at least one field")

    group_column = F.coalesce(resolve_field(unified_df, group_by, precedence).cast("string"), F.lit(MISSING_GROUP_LABEL))

    summaries = []
    for field_name in fields:
        value = resolve_field(unified_df, field_name, precedence).cast("double")
        summaries.append(
            unified_df.select(group_column.alias("group"), value.alias("value"))
            .groupBy("group")
            .agg(
                F.count("value").alias("count"),
                F.avg("value").alias("mean"),
                F.percentile_approx("value", 0.5).alias("median"),
            )
            .select("group", F.lit(field_name).alias("field"), "count", "mean", "median")
        )

    result = summaries[0]
    for other in summaries[1:]:
        result = result.unionByName(other)
    return result.orderBy("field", "group")
