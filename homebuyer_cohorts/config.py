from __future__ import annotations

"""Central configuration for the homebuyer cohort pipeline.

Why this file exists
--------------------
This module is the single source of truth for:
- Source codes and the per-source preparation rules (column mappings, PII deny
  lists, required anchors, derived fields)
- The shared, data-driven normalization rule table and per-source overrides
- AMI banding, unified column ordering and report defaults
- Logging helpers shared by every module

Maintenance rules
-----------------
1) Prefer changing values here rather than scattering constants across modules.
2) Treat `PIPELINE_CONFIG`, `FIELD_RULES` and `REPORT_CONFIG` as "contracts" with
   other modules: `normalizer.py`, `transforms.py`, `reconcile.py` and
   `cohorts.py` read these keys.
3) Rules for both sources live in ONE table. A source only gets an entry in
   `SOURCE_RULE_OVERRIDES` when its raw vocabulary genuinely differs; never copy
   a shared rule into an override.

Runtime assumptions
-------------------
Every public function receives the DataFrames it works on explicitly. The only
module-level mutable value is `LOGGING_VERBOSE`.
"""

import inspect
import time
from datetime import datetime
from typing import Any, Dict, List

from pyspark.sql import SparkSession

# =====================================================================================
# LOGGING CONFIGURATION
# =====================================================================================
LOGGING_VERBOSE = False

# =====================================================================================
# SOURCE TYPE CONSTANTS
# =====================================================================================
SOURCE_TYPE_DPA = "DPA"
SOURCE_TYPE_HOP = "HOP"
MEMBERSHIP_BOTH = "Both"

# Order matters: the first source wins when both carry a value for a field.
SOURCE_PRECEDENCE = [SOURCE_TYPE_DPA, SOURCE_TYPE_HOP]


def log_message(message: str, level: str = "INFO", depth: int = 0) -> None:
    """Print a structured, readable log line.

    This helper provides consistent formatting across modules and supports a
    simple verbosity toggle via `LOGGING_VERBOSE`.

    Args:
        message: Human-readable message.
        level: One of "INFO", "DEBUG", "WARN", "ERROR".
        depth: Indentation level (each level adds two leading spaces).
    """
    if level in ("INFO", "WARN", "ERROR") or (level == "DEBUG" and LOGGING_VERBOSE):
        timestamp = datetime.now().strftime(PY_DATETIME_FORMAT)
        caller = inspect.stack()[1].function
        indent = "  " * depth
        caller_str = "" if caller == "<module>" else caller
        if caller_str:
            print(f"[{level:5}] | {timestamp} | {caller_str:40} | {indent}{message}")
        else:
            print(f"[{level:5}] | {timestamp} | {indent}{message}")


class Stopwatch:
    """Wall-clock timer used to report stage durations."""

    def __init__(self) -> None:
        self.start = time.time()

    def elapsed(self) -> float:
        return time.time() - self.start

    def format(self) -> str:
        seconds = self.elapsed()
        if seconds < 60:
            return f"{seconds:.2f} seconds"
        return f"{seconds / 60:.2f} minutes"


def get_spark_session(app_name: str = "homebuyer_cohorts") -> SparkSession:
    """Return the active Spark session, creating a local one if needed.

    Notes:
        The session timezone is pinned to UTC so month/year truncation does
        not depend on the driver OS timezone. ANSI mode is disabled so that a
        malformed cell degrades to NULL (and is counted) instead of failing
        the whole run.
    """
    return (
        SparkSession.builder.appName(app_name)
        .config("spark.sql.session.timeZone", "UTC")
        .config("spark.sql.ansi.enabled", "false")
        .config("spark.sql.legacy.timeParserPolicy", "CORRECTED")
        .getOrCreate()
    )


# =====================================================================================
# DATE FORMAT CONSTANTS
# =====================================================================================
PY_DATE_FORMAT = "%Y-%m-%d"
PY_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# (spark pattern, python pattern, guard regex). The guard regex is applied
# before parsing so that Spark never sees a string it cannot parse.
DATE_INPUT_FORMATS = [
    ("yyyy-M-d", "%Y-%m-%d", r"^\d{4}-\d{1,2}-\d{1,2}$"),
    ("M/d/yyyy", "%m/%d/%Y", r"^\d{1,2}/\d{1,2}/\d{4}$"),
    ("M-d-yyyy", "%m-%d-%Y", r"^\d{1,2}-\d{1,2}-\d{4}$"),
]

# =====================================================================================
# NORMALIZATION RULE TABLE
# =====================================================================================
# Each field entry:
#   "type":      "category" | "decimal" | "integer" | "date"
#   "sentinels": literal (trimmed, lower-cased) values meaning "unknown" -> missing
#   "rules":     ordered (kind, pattern, label) tuples; kind is "exact",
#                "contains" or "regex"; first match wins; label None -> missing
#   "default":   label for unmatched values. When the key is absent the value
#                passes through unchanged (trimmed).
#   "missing_label": value emitted instead of NULL for fields that are never null
#   "percent_threshold": decimals above this are percentages and divided by 100
#   "min_value": inclusive lower bound; smaller values are invalid
#   "max_value": exclusive upper bound after rescaling; larger values are invalid

UNKNOWN_SENTINELS = [
    "",
    "unknown",
    "unk",
    "n/a",
    "na",
    "none",
    "null",
    "-",
    "--",
    "not applicable",
    "not available",
    "tbd",
]

NUMERIC_CLEANUP_PATTERN = r"[$,%\s]"
NUMERIC_PATTERN = r"^[-+]?(\d+\.?\d*|\.\d+)$"

CATCH_ALL_RACE_LABEL = "Some Other Race"
MISSING_GROUP_LABEL = "Not Reported"

FIELD_RULES: Dict[str, Dict[str, Any]] = {
    "race": {
        "type": "category",
        "sentinels": UNKNOWN_SENTINELS + ["not provided", "not reported", "no answer"],
        "rules": [
            ("regex", r"decline|prefer not|refuse", None),
            ("regex", r"multi|two or more|more than one|,|;|\+", "Multiracial"),
            ("contains", "black", "Black or African American"),
            ("contains", "african", "Black or African American"),
            ("regex", r"\basian", "Asian"),
            ("regex", r"american indian|alaska", "American Indian or Alaska Native"),
            ("regex", r"hawaiian|pacific", "Native Hawaiian or Other Pacific Islander"),
            ("regex", r"white|caucasian", "White"),
        ],
        # Catch-all: any unseen race label is absorbed here and counted per run.
        "default": CATCH_ALL_RACE_LABEL,
    },
    "race_multiple": {
        "type": "category",
        "sentinels": UNKNOWN_SENTINELS + ["not provided", "not reported", "no answer"],
        "rules": [
            ("exact", "yes", "Yes"),
            ("exact", "no", "No"),
            ("regex", r"decline|prefer not|refuse", None),
            ("regex", r"multi|two or more|more than one|,|;|\+", "Yes"),
        ],
        "default": "No",
    },
    "ethnicity": {
        "type": "category",
        "sentinels": UNKNOWN_SENTINELS + ["not provided", "not reported"],
        "rules": [
            ("regex", r"decline|prefer not|refuse", None),
            ("regex", r"\bnot\b|\bnon", "Not Hispanic or Latino"),
            ("exact", "n", "Not Hispanic or Latino"),
            ("exact", "no", "Not Hispanic or Latino"),
            ("exact", "y", "Hispanic or Latino"),
            ("exact", "yes", "Hispanic or Latino"),
            ("regex", r"hispanic|latin", "Hispanic or Latino"),
        ],
    },
    "rural_status": {
        "type": "category",
        "sentinels": UNKNOWN_SENTINELS,
        "rules": [
            ("regex", r"^(n|no|false|0|urban)$|non-?rural|not rural", "Non-Rural"),
            ("regex", r"^(y|yes|true|1)$|rural", "Rural"),
        ],
        "default": "Unknown",
        "missing_label": "Unknown",
    },
    "english_proficiency": {
        "type": "category",
        "sentinels": UNKNOWN_SENTINELS,
        "rules": [
            # Raw flag is "Limited English Proficiency? Y/N".
            ("regex", r"^(y|yes|true|1)$|limited", "Limited"),
            ("regex", r"^(n|no|false|0)$|proficient|fluent", "Proficient"),
        ],
        "default": "Unknown",
        "missing_label": "Unknown",
    },
    "mortgage_product": {
        "type": "category",
        "sentinels": UNKNOWN_SENTINELS,
        "rules": [
            ("contains", "fha", "FHA"),
            ("regex", r"usda|rural development|\brd\b|section 502", "USDA"),
            ("regex", r"\bva\b|veteran", "VA"),
            ("regex", r"conventional|\bconv\b|fannie|freddie|homeready|home possible", "Conventional"),
        ],
        "default": "Other",
    },
    "mortgage_notes": {
        "type": "category",
        "sentinels": UNKNOWN_SENTINELS,
        "rules": [
            ("contains", "homeready", "HomeReady"),
            ("contains", "home possible", "Home Possible"),
            ("regex", r"203\s*\(?k\)?", "203(k) Rehab"),
            ("regex", r"\barm\b|adjustable", "Adjustable Rate"),
            ("regex", r"bond|mrb|housing finance", "Bond Program"),
        ],
        "default": None,
    },
    "lending_institution": {
        "type": "category",
        "sentinels": UNKNOWN_SENTINELS,
        "rules": [
            ("contains", "wells", "Wells Fargo"),
            ("contains", "chase", "JPMorgan Chase"),
            ("regex", r"bank of america|\bboa\b|\bbofa\b", "Bank of America"),
            ("regex", r"^us bank|u\.s\. bank|usbank", "U.S. Bank"),
            ("contains", "guild", "Guild Mortgage"),
            ("regex", r"rocket|quicken", "Rocket Mortgage"),
            ("contains", "fairway", "Fairway Independent Mortgage"),
        ],
    },
    "household_income": {"type": "decimal", "sentinels": UNKNOWN_SENTINELS},
    "mortgage_amount": {"type": "decimal", "sentinels": UNKNOWN_SENTINELS},
    "assistance_amount": {"type": "decimal", "sentinels": UNKNOWN_SENTINELS},
    "counseling_hours": {"type": "decimal", "sentinels": UNKNOWN_SENTINELS},
    "interest_rate": {
        "type": "decimal",
        "sentinels": UNKNOWN_SENTINELS,
        "percent_threshold": 1.0,
        "min_value": 0.0,
        "max_value": 1.0,
    },
    # AMI ratios above 1 are real (e.g. 1.2 = 120% AMI); only values that can
    # only be percentages are rescaled.
    "ami_ratio": {
        "type": "decimal",
        "sentinels": UNKNOWN_SENTINELS,
        "percent_threshold": 5.0,
        "min_value": 0.0,
        "max_value": 5.0,
    },
    "household_size": {"type": "integer", "sentinels": UNKNOWN_SENTINELS},
    "event_date": {"type": "date", "sentinels": UNKNOWN_SENTINELS},
    "enrollment_date": {"type": "date", "sentinels": UNKNOWN_SENTINELS},
    "weak_key": {
        "type": "category",
        "sentinels": UNKNOWN_SENTINELS + ["0", "pending"],
        "rules": [],
    },
}

# Prepended to the shared rules for the given source only.
SOURCE_RULE_OVERRIDES: Dict[str, Dict[str, List[tuple]]] = {
    SOURCE_TYPE_HOP: {
        # HOP records proficiency as a label, where "Not Proficient" must not be
        # read as proficient.
        "english_proficiency": [
            ("regex", r"not proficient|limited|non-proficient", "Limited"),
        ],
        # HOP's "Rural Area" column carries USDA county designations; "Nonmetro"
        # must be tested before "metro".
        "rural_status": [
            ("regex", r"non-?metro", "Rural"),
            ("regex", r"metro|urban", "Non-Rural"),
        ],
    },
}

AMI_BANDS = [
    (0.5, "0-50% AMI"),
    (0.8, "51-80% AMI"),
    (1.2, "81-120% AMI"),
    (None, "Above 120% AMI"),
]

# =====================================================================================
# SOURCE PREPARATION CONFIGURATION
# =====================================================================================
# Shared columns present in both prepared schemas, in presentation order. The
# reconciler suffixes every one of these with the source code.
SHARED_FIELDS = [
    "source_id",
    "weak_key",
    "event_date",
    "household_income",
    "ami_ratio",
    "ami_band",
    "household_size",
    "race",
    "race_multiple",
    "ethnicity",
    "rural_status",
    "english_proficiency",
    "mortgage_product",
    "mortgage_notes",
    "mortgage_amount",
    "interest_rate",
    "lending_institution",
]

# derived field -> prepared field whose RAW value it is built from
DERIVED_FIELDS = {
    "race_multiple": "race",
    "mortgage_notes": "mortgage_product",
}

PIPELINE_CONFIG: Dict[str, Any] = {
    SOURCE_TYPE_DPA: {
        "id_prefix": "DPA-",
        "id_width": 5,
        "column_mapping": {
            "Application Number": "weak_key",
            "Closing Date": "event_date",
            "Household Income": "household_income",
            "AMI %": "ami_ratio",
            "Household Size": "household_size",
            "Race": "race",
            "Ethnicity": "ethnicity",
            "Rural": "rural_status",
            "Limited English Proficiency": "english_proficiency",
            "First Mortgage Product": "mortgage_product",
            "First Mortgage Amount": "mortgage_amount",
            "Interest Rate": "interest_rate",
            "Lender": "lending_institution",
            "DPA Amount": "assistance_amount",
        },
        "drop_columns": [
            "Borrower Name",
            "Co-Borrower Name",
            "SSN",
            "Property Address",
            "Phone",
            "Email",
            "Loan Officer",
        ],
        "required_fields": ["event_date"],
    },
    SOURCE_TYPE_HOP: {
        "id_prefix": "HOP-",
        "id_width": 5,
        "column_mapping": {
            "App #": "weak_key",
            "Enrollment Date": "enrollment_date",
            "Purchase Date": "event_date",
            "Annual Income": "household_income",
            "AMI Percent": "ami_ratio",
            "HH Size": "household_size",
            "Race": "race",
            "Hispanic/Latino": "ethnicity",
            "Rural Area": "rural_status",
            "English Proficiency": "english_proficiency",
            "Loan Type": "mortgage_product",
            "Loan Amount": "mortgage_amount",
            "Rate": "interest_rate",
            "Lending Institution": "lending_institution",
            "Counseling Hours": "counseling_hours",
        },
        "drop_columns": [
            "Client Name",
            "Email",
            "Phone",
            "Mailing Address",
            "Date of Birth",
            "Counselor",
        ],
        # HOP enrolls households before they buy; purchase date is optional.
        "required_fields": ["enrollment_date"],
    },
}

# =====================================================================================
# RECONCILIATION / REPORT CONFIGURATION
# =====================================================================================
DUPLICATE_KEY_POLICIES = ["reject", "first_match", "last_match"]
BUCKETS = ["month", "year"]

UNIFIED_LEADING_COLUMNS = ["unified_id", "membership", "weak_key"]

REPORT_CONFIG: Dict[str, Any] = {
    "duplicate_key_policy": "first_match",
    "unified_id_prefix": "HH-",
    "unified_id_width": 5,
    "event_date_field": "event_date",
    "bucket": "month",
    "group_by": "membership",
    "date_precedence": SOURCE_PRECEDENCE,
    "share_categories": ["race", "ethnicity", "rural_status", "english_proficiency", "ami_band"],
    "share_exclude_labels": ["Unknown"],
    "numeric_summary_fields": ["household_income", "ami_ratio", "mortgage_amount", "interest_rate"],
    "program_label": "Program",
    "reference_label": "Reference",
}
