"""End-to-end tests for `run_report`."""

from __future__ import annotations

import warnings
from pathlib import Path

import pytest

from homebuyer_cohorts import orchestrator, run_report
from homebuyer_cohorts.config import SOURCE_TYPE_DPA, SOURCE_TYPE_HOP
from homebuyer_cohorts.errors import JoinAmbiguityError, PipelineConfigError
from tests.raw_tables import dpa_row, hop_row, raw_dpa, raw_hop


@pytest.fixture
def raw_tables(spark):
    return {
        SOURCE_TYPE_DPA: raw_dpa(
            spark,
            [
                dpa_row("D-1", "2019-01-15"),
                dpa_row("D-2", None),
                dpa_row("SHARED", "2019-03-15"),
            ],
        ),
        SOURCE_TYPE_HOP: raw_hop(
            spark,
            [
                hop_row("H-1", "2019-05-01", overrides={"Rural Area": "county"}),
                hop_row("SHARED", "2019-04-01"),
            ],
        ),
    }


@pytest.fixture
def reference_table(spark):
    return spark.createDataFrame(
        [
            ("race", "White", 700, 70.0),
            ("race", "Black or African American", 200, 20.0),
            ("race", "Asian", 100, 10.0),
        ],
        "category string, label string, value long, percentage double",
    )


def test_run_report_produces_every_output(raw_tables, reference_table) -> None:
    outputs = run_report(raw_tables, reference_table)

    assert outputs.unified.count() == 3
    assert sorted(outputs.cohort_metrics) == ["month", "year"]
    assert outputs.cohort_metrics["month"].agg({"count": "sum"}).first()[0] == 3
    assert {row["category"] for row in outputs.category_shares.collect()} == {
        "race",
        "ethnicity",
        "rural_status",
        "english_proficiency",
        "ami_band",
    }
    assert {row["field"] for row in outputs.numeric_summary.collect()} == {
        "household_income",
        "ami_ratio",
        "mortgage_amount",
        "interest_rate",
    }

    race = outputs.comparison.filter("category = 'race'").collect()
    assert {(row["source"], row["label"]) for row in race} == {
        (source, label)
        for source in ("Program", "Reference")
        for label in ("White", "Black or African American", "Asian")
    }


def test_run_report_summary_accounts_for_dropped_data(raw_tables) -> None:
    summary = run_report(raw_tables).summary

    assert summary.raw_rows == {SOURCE_TYPE_DPA: 3, SOURCE_TYPE_HOP: 2}
    assert summary.dropped_missing_anchor == {SOURCE_TYPE_DPA: 1, SOURCE_TYPE_HOP: 0}
    assert summary.catch_all_counts == {"HOP.rural_status": 1}
    assert summary.date_conflicts == {"event_date": 1}
    assert summary.as_dict()["excluded_from_time_series"] == {
        "event_date by membership (month)": 0,
        "event_date by membership (year)": 0,
    }


def test_unknown_labels_are_left_out_of_shares(raw_tables) -> None:
    shares = run_report(raw_tables).category_shares.filter("category = 'rural_status'").collect()

    assert {row["label"] for row in shares} == {"Non-Rural"}


def test_comparison_is_optional(raw_tables) -> None:
    assert run_report(raw_tables).comparison is None


def test_report_config_overrides_defaults(raw_tables) -> None:
    outputs = run_report(raw_tables, report_config={"bucket": "year", "group_by": "mortgage_product"})

    assert list(outputs.cohort_metrics) == ["year"]
    groups = {row["group"] for row in outputs.cohort_metrics["year"].collect()}
    assert groups == {"FHA", "Conventional"}


def test_missing_raw_table_is_a_config_error(raw_tables) -> None:
    with pytest.raises(PipelineConfigError):
        run_report({SOURCE_TYPE_DPA: raw_tables[SOURCE_TYPE_DPA]})


def test_structural_errors_propagate(spark) -> None:
    tables = {
        SOURCE_TYPE_DPA: raw_dpa(spark, [dpa_row("K", "2019-01-15"), dpa_row("K", "2019-02-15")]),
        SOURCE_TYPE_HOP: raw_hop(spark, [hop_row("K", "2019-04-01")]),
    }

    with pytest.raises(JoinAmbiguityError):
        run_report(tables, report_config={"duplicate_key_policy": "reject"})


def test_module_source_compiles_without_escape_warnings() -> None:
    """The data-flow diagram in the module docstring must not contain escape sequences."""
    source = Path(orchestrator.__file__).read_text()

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(source, orchestrator.__file__, "exec")

    assert "\\" not in orchestrator.__doc__
