"""homebuyer_cohorts.reconcile

Household reconciliation across the two prepared program tables.

High-level concept:
- Both programs record the household's application number, which is the only
  identifier they share. It is a weak key: not always populated and not
  guaranteed unique within a source.
- The two prepared tables are full-outer joined on that key (an equi-join, so
  Spark plans a hash or sort-merge join, never a nested loop). NULL keys never
  match each other, so missing identifiers cannot mass-merge households.
- Columns present in both tables keep both values under source suffixes
  (`event_date_DPA`, `event_date_HOP`). Conflicting values are NOT reconciled;
  consumers pick a precedence (see `cohorts.resolve_field`).

Duplicate handling:
- A weak key repeated inside one source is a join ambiguity. The
  `duplicate_key_policy` decides what happens:
    - "reject" (or no policy): fail with `JoinAmbiguityError`.
    - "first_match" / "last_match": only the first / last row by `source_id` number
      is eligible to match; the other rows stay in the unified table
      unmatched. Their count goes to the run summary.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from pyspark.sql import Column, DataFrame
from pyspark.sql import functions as F
from pyspark.sql.window import Window

from . import config
from .config import (
    DUPLICATE_KEY_POLICIES,
    MEMBERSHIP_BOTH,
    REPORT_CONFIG,
    SHARED_FIELDS,
    SOURCE_PRECEDENCE,
    UNIFIED_LEADING_COLUMNS,
    log_message,
)
from .errors import JoinAmbiguityError, PipelineConfigError
from .summary import RunSummary

JOIN_KEY_COLUMN = "_join_key"


def source_sequence(source_id: Column) -> Column:
    """Numeric suffix of a `source_id`, so `DPA-100000` sorts after `DPA-99999`."""
    digits = F.regexp_extract(source_id, r"(\d+)$", 1)
    return F.when(digits != "", digits.cast("long"))


def find_duplicate_keys(prepared_df: DataFrame) -> DataFrame:
    """Return weak keys that appear more than once, with their row count."""
    return prepared_df.filter(F.col("weak_key").isNotNull()).groupBy("weak_key").count().filter(F.col("count") > 1)


def apply_duplicate_key_policy(
    prepared_df: DataFrame,
    source_type: str,
    policy: Optional[str],
    summary: Optional[RunSummary] = None,
) -> DataFrame:
    """Add the `_join_key` column used for matching, resolving duplicate keys.

    Args:
        prepared_df: Prepared records of one source.
        source_type: Source code, used in messages and summary keys.
        policy: One of `DUPLICATE_KEY_POLICIES`, or None.
        summary: Receives the number of duplicate rows left unmatched.

    Returns:
        `prepared_df` plus `_join_key`. Rows that may not match carry NULL.

    Raises:
        PipelineConfigError: for an unknown policy.
        JoinAmbiguityError: if duplicates exist and the policy does not resolve them.
    """
    if policy is not None and policy not in DUPLICATE_KEY_POLICIES:
        raise PipelineConfigError(f"Unknown duplicate_key_policy '{policy}'; expected one of {DUPLICATE_KEY_POLICIES}")

    duplicates = find_duplicate_keys(prepared_df).cache()
    duplicate_key_count = duplicates.count()

    if duplicate_key_count == 0:
        duplicates.unpersist()
        return prepared_df.withColumn(JOIN_KEY_COLUMN, F.col("weak_key"))

    if policy in (None, "reject"):
        examples = [row["weak_key"] for row in duplicates.orderBy("weak_key").limit(5).collect()]
        duplicates.unpersist()
        reason = "no duplicate_key_policy is configured" if policy is None else "duplicate_key_policy is 'reject'"
        raise JoinAmbiguityError(
            f"{source_type} repeats {duplicate_key_count:,} weak key(s) (e.g. {examples}) and {reason}"
        )

    duplicate_rows = duplicates.agg(F.sum("count")).first()[0]
    unmatched_rows = int(duplicate_rows) - duplicate_key_count
    duplicates.unpersist()

    if summary is not None:
        summary.duplicate_keys[source_type] = unmatched_rows
    log_message(
        f"{source_type}: {duplicate_key_count:,} weak key(s) repeated; {unmatched_rows:,} row(s) left unmatched ({policy})",
        level="WARN",
        depth=2,
    )

    sequence = source_sequence(F.col("source_id"))
    order = sequence.asc() if policy == "first_match" else sequence.desc()
    window_spec = Window.partitionBy("weak_key").orderBy(order)
    return (
        prepared_df.withColumn("_key_rank", F.row_number().over(window_spec))
        .withColumn(JOIN_KEY_COLUMN, F.when(F.col("_key_rank") == 1, F.col("weak_key")))
        .drop("_key_rank")
    )


def suffix_shared_columns(keyed_df: DataFrame, source_type: str, shared_columns: Sequence[str]) -> DataFrame:
    """Rename shared columns to `<name>_<source>`; program-specific columns keep their name."""
    return keyed_df.select(
        *[
            F.col(name).alias(f"{name}_{source_type}") if name in shared_columns else F.col(name)
            for name in keyed_df.columns
        ]
    )


def order_unified_columns(
    unified_df: DataFrame,
    source_types: Sequence[str] = SOURCE_PRECEDENCE,
    shared_fields: Sequence[str] = SHARED_FIELDS,
) -> DataFrame:
    """Reorder columns by name so paired source columns sit side by side.

    Presentation only: values and row set are unchanged.
    """
    ordered: List[str] = [name for name in UNIFIED_LEADING_COLUMNS if name in unified_df.columns]
    for field_name in shared_fields:
        for source_type in source_types:
            suffixed = f"{field_name}_{source_type}"
            if suffixed in unified_df.columns and suffixed not in ordered:
                ordered.append(suffixed)
    ordered += [name for name in unified_df.columns if name not in ordered]
    return unified_df.select(*ordered)


def reconcile(
    prepared_a: DataFrame,
    prepared_b: DataFrame,
    summary: Optional[RunSummary] = None,
    report_config: Optional[Dict[str, Any]] = None,
    source_types: Sequence[str] = SOURCE_PRECEDENCE,
) -> DataFrame:
    """Join two prepared tables into one unified household table.

    Args:
        prepared_a: Prepared records of the first source (`source_types[0]`).
        prepared_b: Prepared records of the second source (`source_types[1]`).
        summary: Run summary for duplicate-key counts.
        report_config: Supplies `duplicate_key_policy`, `unified_id_prefix`
            and `unified_id_width`; defaults to `REPORT_CONFIG`.
        source_types: Source codes for suffixes and membership labels.

    Returns:
        Unified DataFrame with `unified_id`, `membership`, `weak_key`, suffixed
        shared columns and program-specific columns.
    """
    report_config = report_config or REPORT_CONFIG
    source_a, source_b = source_types
    policy = report_config.get("duplicate_key_policy")
    log_message(f"Reconciling {source_a} and {source_b} households on weak key...", depth=1)

    keyed_a = apply_duplicate_key_policy(prepared_a, source_a, policy, summary)
    keyed_b = apply_duplicate_key_policy(prepared_b, source_b, policy, summary)

    shared_columns = [name for name in keyed_a.columns if name in keyed_b.columns and name != JOIN_KEY_COLUMN]
    joined_df = suffix_shared_columns(keyed_a, source_a, shared_columns).join(
        suffix_shared_columns(keyed_b, source_b, shared_columns), on=JOIN_KEY_COLUMN, how="full_outer"
    )

    id_a = F.col(f"source_id_{source_a}")
    id_b = F.col(f"source_id_{source_b}")
    membership = (
        F.when(id_a.isNotNull() & id_b.isNotNull(), MEMBERSHIP_BOTH).when(id_a.isNotNull(), source_a).otherwise(source_b)
    )

    id_order = Window.orderBy(source_sequence(id_a).asc_nulls_last(), source_sequence(id_b).asc_nulls_last())
    unified_df = (
        joined_df.drop(JOIN_KEY_COLUMN)
        .withColumn("membership", membership)
        .withColumn("weak_key", F.coalesce(F.col(f"weak_key_{source_a}"), F.col(f"weak_key_{source_b}")))
        .withColumn(
            "unified_id",
            F.format_string(
                f"{report_config.get('unified_id_prefix', 'HH-')}%0{report_config.get('unified_id_width', 5)}d",
                F.row_number().over(id_order),
            ),
        )
    )

    unified_df = order_unified_columns(unified_df, source_types)

    if config.LOGGING_VERBOSE:
        counts = {row["membership"]: row["count"] for row in unified_df.groupBy("membership").count().collect()}
        log_message(f"Membership counts: {counts}", level="DEBUG", depth=2)

    return unified_df
