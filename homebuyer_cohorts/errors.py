"""homebuyer_cohorts.errors

Exception hierarchy for the cohort pipeline.

Structural problems are fatal and raised immediately; data-quality problems are
never raised, they are counted in `summary.RunSummary` instead.
"""

from __future__ import annotations


class CohortPipelineError(Exception):
    """Base exception for all cohort pipeline failures."""


class PipelineConfigError(CohortPipelineError):
    """Raised for invalid call-time configuration (unknown bucket, policy, mapping)."""


class SchemaMismatchError(CohortPipelineError):
    """Raised when an expected column is absent or label vocabularies diverge."""


class JoinAmbiguityError(CohortPipelineError):
    """Raised when a source repeats a weak key and no resolving policy applies."""
