"""homebuyer_cohorts.reference

Demographic composition of the unified population and its comparison with an
externally supplied reference distribution (e.g. census shares).

Share semantics:
- A share is `count / total` within one `(source, category)`.
- Records with a missing label (or a label listed in `exclude_labels`) are
  left out of both numerator and denominator, so shares always sum to 1.
- Shares are non-temporal: households without an event date are included.

Label vocabularies must already be harmonized by the caller. `compare` checks
this instead of guessing: a program label unknown to the reference for the same
category is a schema mismatch.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Set

from pyspark.sql import DataFrame
from pyspark.sql import functions as F
from pyspark.sql.types import DoubleType, LongType, StringType, StructField, StructType
from pyspark.sql.window import Window

from .cohorts import resolve_field
from .config import SOURCE_PRECEDENCE, log_message
from .errors import PipelineConfigError, SchemaMismatchError

CATEGORY_SHARE_SCHEMA = StructType(
    [
        StructField("source", StringType(), False),
        StructField("category", StringType(), False),
        StructField("label", StringType(), False),
        StructField("count", LongType(), False),
        StructField("share", DoubleType(), False),
    ]
)

REFERENCE_COLUMNS = ["category", "label", "value", "percentage"]


def _with_shares(counted_df: DataFrame) -> DataFrame:
    """Add `share` = count / total per (source, category)."""
    per_category = Window.partitionBy("source", "category")
    return counted_df.withColumn("share", F.col("count") / F.sum("count").over(per_category)).select(
        "source",
        "category",
        "label",
        F.col("count").cast("long").alias("count"),
        F.col("share").cast("double").alias("share"),
    )


def category_shares(
    unified_df: DataFrame,
    categories: Sequence[str],
    source_label: str = "Program",
    precedence: Sequence[str] = SOURCE_PRECEDENCE,
    exclude_labels: Sequence[str] = (),
) -> DataFrame:
    """Count households and compute shares per label for each category.

    Args:
        unified_df: Unified household table.
        categories: Demographic fields (suffixes resolved by `precedence`).
        source_label: Value written to the `source` column.
        precedence: Source order used to resolve suffixed fields.
        exclude_labels: Labels treated as missing (e.g. "Unknown").

    Returns:
        DataFrame in the CategoryShare shape.
    """
    if not categories:
        raise PipelineConfigError("category_shares needs at least one category")

    counted = []
    for category in categories:
        label = resolve_field(unified_df, category, precedence).cast("string")
        counted.append(
            unified_df.select(label.alias("label"))
            .filter(F.col("label").isNotNull() & ~F.col("label").isin(list(exclude_labels)))
            .groupBy("label")
            .count()
            .select(F.lit(source_label).alias("source"), F.lit(category).alias("category"), "label", "count")
        )

    result = counted[0]
    for other in counted[1:]:
        result = result.unionByName(other)
    return _with_shares(result).orderBy("category", "label")


def reference_shares(reference_df: DataFrame, source_label: str = "Reference") -> DataFrame:
    """Reshape a `{category, label, value, percentage}` table into CategoryShare rows.

    The share is recomputed from `value` within each category; the supplied
    `percentage` is not trusted to sum to 100.

    Raises:
        SchemaMismatchError: if a reference column is absent.
    """
    missing = [name for name in REFERENCE_COLUMNS if name not in reference_df.columns]
    if missing:
        raise SchemaMismatchError(f"Reference table is missing column(s): {missing}")

    counted = reference_df.filter(F.col("label").isNotNull() & F.col("value").isNotNull()).select(
        F.lit(source_label).alias("source"),
        F.col("category").cast("string").alias("category"),
        F.col("label").cast("string").alias("label"),
        F.col("value").alias("count"),
    )
    return _with_shares(counted).orderBy("category", "label")


def _labels_by_category(shares_df: DataFrame) -> Dict[str, Set[str]]:
    labels: Dict[str, Set[str]] = {}
    for row in shares_df.select("category", "label").distinct().collect():
        labels.setdefault(row["category"], set()).add(row["label"])
    return labels


def compare(program_shares: DataFrame, reference_shares_df: DataFrame) -> DataFrame:
    """Stack program and reference shares for side-by-side comparison.

    For each category present in both inputs:
    - a program label missing from the reference vocabulary raises
      `SchemaMismatchError`;
    - a reference label with no program households is added to the program
      side with count 0 and share 0.

    Returns:
        Stacked CategoryShare rows ordered by category, label, source.
    """
    program_labels = _labels_by_category(program_shares)
    reference_labels = _labels_by_category(reference_shares_df)
    program_sources = [row["source"] for row in program_shares.select("source").distinct().collect()]

    filler: List[tuple] = []
    mismatches: Dict[str, List[str]] = {}
    for category in sorted(set(program_labels) & set(reference_labels)):
        unexpected = program_labels[category] - reference_labels[category]
        if unexpected:
            mismatches[category] = sorted(unexpected)
        for label in sorted(reference_labels[category] - program_labels[category]):
            filler.extend((source, category, label, 0, 0.0) for source in program_sources)

    if mismatches:
        raise SchemaMismatchError(f"Program labels not present in reference vocabulary: {mismatches}")

    only_one_side = sorted(set(program_labels) ^ set(reference_labels))
    if only_one_side:
        log_message(f"Categories without a counterpart (not compared): {only_one_side}", level="WARN", depth=2)

    stacked = program_shares.unionByName(reference_shares_df)
    if filler:
        stacked = stacked.unionByName(program_shares.sparkSession.createDataFrame(filler, CATEGORY_SHARE_SCHEMA))
    return stacked.orderBy("category", "label", "source")


def side_by_side(compared_df: DataFrame, sources: Optional[Sequence[str]] = None) -> DataFrame:
    """Pivot stacked shares to one row per (category, label), one share column per source."""
    pivoted = compared_df.groupBy("category", "label")
    pivoted = pivoted.pivot("source", list(sources)) if sources else pivoted.pivot("source")
    return pivoted.agg(F.first("share")).orderBy("category", "label")
