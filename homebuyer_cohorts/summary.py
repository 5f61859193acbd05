"""homebuyer_cohorts.summary

Per-run accounting of data-quality events.

Why this file exists
--------------------
Nothing in the pipeline drops data silently. Every module that degrades a value
to missing, or leaves a record out of an output, records it here:

- `transforms.py` records type coercions, catch-all absorptions and rows
  dropped for a missing required anchor.
- `reconcile.py` records duplicate weak keys resolved by policy.
- `cohorts.py` records records excluded from time series and date conflicts.

Important notes
---------------
- A `RunSummary` is created by the caller and passed explicitly; it lives for a
  single run and is never shared between runs.
- It only holds plain Python counters, never DataFrames.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .config import log_message


@dataclass(frozen=True)
class CoercionWarning:
    """Values of one field that failed type coercion and became missing."""

    source: str
    field: str
    count: int

    def describe(self) -> str:
        return f"{self.source}.{self.field}: {self.count:,} value(s) could not be coerced and were set to missing"


@dataclass
class RunSummary:
    """Counters collected over one pipeline run."""

    raw_rows: Dict[str, int] = field(default_factory=dict)
    prepared_rows: Dict[str, int] = field(default_factory=dict)
    dropped_missing_anchor: Dict[str, int] = field(default_factory=dict)
    coercion_warnings: List[CoercionWarning] = field(default_factory=list)
    catch_all_counts: Dict[str, int] = field(default_factory=dict)
    duplicate_keys: Dict[str, int] = field(default_factory=dict)
    excluded_from_time_series: Dict[str, int] = field(default_factory=dict)
    date_conflicts: Dict[str, int] = field(default_factory=dict)

    def record_coercions(self, source: str, field_name: str, count: int) -> None:
        if count > 0:
            self.coercion_warnings.append(CoercionWarning(source, field_name, count))

    def coercion_counts(self) -> Dict[str, int]:
        """Return coercion counts keyed by `<source>.<field>`."""
        totals: Dict[str, int] = {}
        for warning in self.coercion_warnings:
            key = f"{warning.source}.{warning.field}"
            totals[key] = totals.get(key, 0) + warning.count
        return totals

    def as_dict(self) -> Dict[str, Any]:
        return {
            "raw_rows": dict(self.raw_rows),
            "prepared_rows": dict(self.prepared_rows),
            "dropped_missing_anchor": dict(self.dropped_missing_anchor),
            "coercions": self.coercion_counts(),
            "catch_all_counts": dict(self.catch_all_counts),
            "duplicate_keys": dict(self.duplicate_keys),
            "excluded_from_time_series": dict(self.excluded_from_time_series),
            "date_conflicts": dict(self.date_conflicts),
        }

    def log(self) -> None:
        """Write the run summary through `log_message`."""
        log_message("Run summary:")
        for source, count in self.raw_rows.items():
            log_message(
                f"{source}: {count:,} raw row(s), {self.prepared_rows.get(source, 0):,} prepared, "
                f"{self.dropped_missing_anchor.get(source, 0):,} dropped for missing anchor",
                depth=1,
            )
        for warning in self.coercion_warnings:
            log_message(warning.describe(), level="WARN", depth=1)
        for key, count in self.catch_all_counts.items():
            if count:
                log_message(f"{key}: {count:,} value(s) absorbed by the catch-all label", level="WARN", depth=1)
        for source, count in self.duplicate_keys.items():
            if count:
                log_message(f"{source}: {count:,} duplicate weak key row(s) left unmatched", level="WARN", depth=1)
        for metric, count in self.excluded_from_time_series.items():
            if count:
                log_message(f"{metric}: {count:,} record(s) without a date excluded from time series", level="WARN", depth=1)
        for metric, count in self.date_conflicts.items():
            if count:
                log_message(f"{metric}: {count:,} matched record(s) with disagreeing dates", depth=1)
