"""Homebuyer program cohort pipeline package (PySpark).

Overview
--------
This package reconciles the enrollment records of two homebuyer-assistance
programs run by one organization and derives longitudinal cohort metrics from
the combined household population.

At a high level the pipeline:
1) Prepares each raw program table: keeps allow-listed columns under a shared
   schema, drops PII, derives split fields, normalizes categorical and numeric
   values against one data-driven rule table, filters rows without a required
   anchor and assigns source-prefixed IDs.
2) Reconciles the two prepared tables with a full outer join on the
   application number (a weak key), keeping both sources' values under
   suffixed column names and classifying each household's membership.
3) Aggregates gap-filled monthly/annual participation counts with running
   totals per group.
4) Computes demographic shares and compares them with an external reference
   distribution.

Runtime assumptions
-------------------
- Tables are Spark DataFrames; no component reads files or persists state.
- Configuration is passed explicitly; defaults live in `config.py`.

Public entrypoint
-----------------
`run_report(raw_tables, reference_df=None, report_config=None, source_configs=None, verbose_logging=False) -> ReportOutputs`
"""

from .normalizer import normalize
from .orchestrator import ReportOutputs, run_report

__all__ = ["ReportOutputs", "normalize", "run_report"]
