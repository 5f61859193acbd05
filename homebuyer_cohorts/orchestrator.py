"""homebuyer_cohorts.orchestrator

Homebuyer Program Cohort Pipeline

This module is the primary entrypoint that wires the pipeline together:
- source preparation (DPA + HOP raw tables -> prepared records)
- household reconciliation on the application number
- cohort time series (configured bucket plus an annual series)
- demographic shares and, optionally, comparison with a reference distribution
- numeric summaries per membership group

Execution environment
--------------------
- Any Spark session works; `config.get_spark_session()` builds a local one with
  the session timezone pinned to UTC.
- The pipeline never reads or writes files or tables. Ingestion hands it raw
  DataFrames; rendering consumes the DataFrames in `ReportOutputs`.

BUSINESS CONTEXT
================
The organization runs two homebuyer-assistance programs whose enrollment
records are kept in separate spreadsheets by separate teams. Reporting needs a
household-level view: how many households each program served over time, how
many used both programs, and how the served population compares with the area's
demographics.

ABBREVIATIONS
=============
- DPA: Down Payment Assistance program (source A)
- HOP: Homeownership Opportunity Program, counseling and purchase support (source B)
- AMI: Area Median Income; `ami_ratio` is household income / AMI
- Weak key: the application number shared by the programs; neither populated
  nor unique reliably

KEY BUSINESS RULES (high level)
===============================
1) Application number matching only:
     Households are matched across programs on the application number alone.
     There is no fuzzy matching; an unmatched household stays single-program.

2) DPA date precedence:
     When both programs hold a purchase/closing date for a household, DPA's is
     used for time series. The disagreement is counted, not corrected.

3) Nothing disappears silently:
     Rows dropped for a missing anchor, values coerced to missing, values
     absorbed by a catch-all label and records left out of time series are all
     counted in the run summary and logged.

DATA FLOW (conceptual)
======================
raw DPA --> prepare --+
                       +--> reconcile --> unified --+--> cohort metrics
raw HOP --> prepare --+                             +--> category shares --> comparison
                                                    +--> numeric summary
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from pyspark.sql import DataFrame

from . import config
from .cohorts import aggregate_cohorts, summarize_numeric
from .config import (
    PIPELINE_CONFIG,
    REPORT_CONFIG,
    log_message,
)
from .errors import PipelineConfigError
from .reconcile import reconcile
from .reference import category_shares, compare, reference_shares
from .summary import RunSummary
from .transforms import prepare_source


@dataclass
class ReportOutputs:
    """Everything one run hands to the rendering layer."""

    unified: DataFrame
    cohort_metrics: Dict[str, DataFrame]
    category_shares: DataFrame
    comparison: Optional[DataFrame]
    numeric_summary: DataFrame
    summary: RunSummary


def _validate_report_config(report_config: Dict[str, Any], raw_tables: Dict[str, DataFrame]) -> None:
    precedence = report_config["date_precedence"]
    if len(precedence) != 2:
        raise PipelineConfigError(f"date_precedence must name exactly two sources, got {precedence}")
    missing = [source for source in precedence if source not in raw_tables]
    if missing:
        raise PipelineConfigError(f"No raw table supplied for source(s): {missing}")


def run_report(
    raw_tables: Dict[str, DataFrame],
    reference_df: Optional[DataFrame] = None,
    report_config: Optional[Dict[str, Any]] = None,
    source_configs: Optional[Dict[str, Any]] = None,
    verbose_logging: bool = False,
) -> ReportOutputs:
    """Run the full pipeline for one snapshot of the two program tables.

    Args:
        raw_tables: Raw DataFrames keyed by source code (`DPA`, `HOP`).
        reference_df: Optional `{category, label, value, percentage}` table.
        report_config: Report options; defaults to `REPORT_CONFIG`.
        source_configs: Per-source preparation config; defaults to `PIPELINE_CONFIG`.
        verbose_logging: Enables DEBUG logging and extra counts.

    Returns:
        `ReportOutputs` with the unified table, cohort metrics keyed by
        "<bucket>" ("month"/"year"), category shares, the optional reference
        comparison, the numeric summary and the run summary.

    Raises:
        SchemaMismatchError: on absent columns or diverging label vocabularies.
        JoinAmbiguityError: on unresolved duplicate weak keys.
        PipelineConfigError: on invalid configuration.
    """
    config.LOGGING_VERBOSE = verbose_logging
    report_config = {**REPORT_CONFIG, **(report_config or {})}
    source_configs = source_configs or PIPELINE_CONFIG
    _validate_report_config(report_config, raw_tables)

    source_a, source_b = report_config["date_precedence"]
    summary = RunSummary()
    pipeline_timer = config.Stopwatch()
    log_message(f"Starting cohort pipeline for {source_a} + {source_b}")

    try:
        stage_timer = config.Stopwatch()
        prepared_a = prepare_source(raw_tables[source_a], source_a, summary, source_configs[source_a])
        prepared_b = prepare_source(raw_tables[source_b], source_b, summary, source_configs[source_b])
        log_message(f"Prepared both sources in {stage_timer.format()}.", depth=1)

        stage_timer = config.Stopwatch()
        unified_df = reconcile(prepared_a, prepared_b, summary, report_config, (source_a, source_b)).cache()
        log_message(f"Reconciled {unified_df.count():,} household(s) in {stage_timer.format()}.", depth=1)

        stage_timer = config.Stopwatch()
        buckets = [report_config["bucket"]] + [b for b in ("year",) if b != report_config["bucket"]]
        cohort_metrics = {
            bucket: aggregate_cohorts(
                unified_df,
                summary,
                event_date_field=report_config["event_date_field"],
                bucket=bucket,
                group_by=report_config["group_by"],
                precedence=(source_a, source_b),
            )
            for bucket in buckets
        }
        log_message(f"Built cohort metrics {list(cohort_metrics)} in {stage_timer.format()}.", depth=1)

        shares_df = category_shares(
            unified_df,
            report_config["share_categories"],
            source_label=report_config["program_label"],
            precedence=(source_a, source_b),
            exclude_labels=report_config["share_exclude_labels"],
        )

        comparison_df = None
        if reference_df is not None:
            comparison_df = compare(shares_df, reference_shares(reference_df, report_config["reference_label"]))
        else:
            log_message("No reference distribution supplied. Skipping comparison.", level="DEBUG", depth=1)

        numeric_df = summarize_numeric(
            unified_df,
            report_config["numeric_summary_fields"],
            group_by=report_config["group_by"],
            precedence=(source_a, source_b),
        )

        summary.log()
        return ReportOutputs(
            unified=unified_df,
            cohort_metrics=cohort_metrics,
            category_shares=shares_df,
            comparison=comparison_df,
            numeric_summary=numeric_df,
            summary=summary,
        )

    except Exception as e:
        log_message(f"An error occurred during the cohort pipeline: {e}", level="ERROR")
        raise

    finally:
        log_message(f"Cohort pipeline finished in {pipeline_timer.format()}.")
