"""Tests for household reconciliation across the two programs."""

from __future__ import annotations

import pytest

from homebuyer_cohorts.config import PIPELINE_CONFIG, SOURCE_TYPE_DPA, SOURCE_TYPE_HOP
from homebuyer_cohorts.errors import JoinAmbiguityError, PipelineConfigError
from homebuyer_cohorts.reconcile import apply_duplicate_key_policy, find_duplicate_keys, reconcile
from homebuyer_cohorts.transforms import prepare_source
from tests.raw_tables import dpa_row, hop_row, raw_dpa, raw_hop


def _prepare(spark, dpa_rows, hop_rows, summary=None):
    return (
        prepare_source(raw_dpa(spark, dpa_rows), SOURCE_TYPE_DPA, summary),
        prepare_source(raw_hop(spark, hop_rows), SOURCE_TYPE_HOP, summary),
    )


@pytest.fixture
def three_and_four(spark):
    """Three DPA households and four HOP households, one shared application number."""
    return _prepare(
        spark,
        [
            dpa_row("D-1", "2019-01-15"),
            dpa_row("D-2", "2019-02-15"),
            dpa_row("SHARED", "2019-03-15"),
        ],
        [
            hop_row("H-1", "2019-05-01"),
            hop_row("H-2", "2019-06-01"),
            hop_row("H-3", None),
            hop_row("SHARED", "2019-04-01", overrides={"Rate": "85"}),
        ],
    )


def test_full_outer_join_keeps_every_household(three_and_four) -> None:
    """Unified rows = |DPA| + |HOP| - |Both|, each household appears once."""
    prepared_dpa, prepared_hop = three_and_four

    unified = reconcile(prepared_dpa, prepared_hop)
    memberships = {row["membership"]: row["count"] for row in unified.groupBy("membership").count().collect()}

    assert unified.count() == 6
    assert memberships == {"Both": 1, "DPA": 2, "HOP": 3}
    assert memberships["Both"] + memberships["DPA"] == prepared_dpa.count()
    assert memberships["Both"] + memberships["HOP"] == prepared_hop.count()


def test_matched_household_keeps_both_source_values(three_and_four) -> None:
    """Shared fields are kept per source; conflicting values are not merged."""
    unified = reconcile(*three_and_four)

    both = unified.filter("membership = 'Both'").first()

    assert both["weak_key"] == "SHARED"
    assert both["source_id_DPA"] == "DPA-00003"
    assert both["source_id_HOP"] == "HOP-00004"
    assert both["interest_rate_DPA"] == 0.065
    assert both["interest_rate_HOP"] == 0.85
    assert str(both["event_date_DPA"]) == "2019-03-15"
    assert str(both["event_date_HOP"]) == "2019-04-01"


def test_unified_ids_follow_source_ids(three_and_four) -> None:
    """DPA-ordered households first, then HOP-only ones."""
    unified = reconcile(*three_and_four)

    rows = unified.orderBy("unified_id").collect()

    assert [row["unified_id"] for row in rows] == [f"HH-{n:05d}" for n in range(1, 7)]
    assert [row["weak_key"] for row in rows] == ["D-1", "D-2", "SHARED", "H-1", "H-2", "H-3"]


def test_membership_matches_source_ids(three_and_four) -> None:
    """Both <=> both IDs present; single-program rows carry exactly one ID."""
    for row in reconcile(*three_and_four).collect():
        has_dpa = row["source_id_DPA"] is not None
        has_hop = row["source_id_HOP"] is not None
        expected = "Both" if has_dpa and has_hop else "DPA" if has_dpa else "HOP"
        assert row["membership"] == expected


def test_unified_column_order(three_and_four) -> None:
    unified = reconcile(*three_and_four)

    assert unified.columns[:9] == [
        "unified_id",
        "membership",
        "weak_key",
        "source_id_DPA",
        "source_id_HOP",
        "weak_key_DPA",
        "weak_key_HOP",
        "event_date_DPA",
        "event_date_HOP",
    ]
    assert {"assistance_amount", "enrollment_date", "counseling_hours"} <= set(unified.columns)
    assert "_join_key" not in unified.columns


def test_missing_keys_never_match(spark) -> None:
    """Households without an application number stay single-program."""
    prepared_dpa, prepared_hop = _prepare(
        spark,
        [dpa_row(None, "2019-01-15"), dpa_row("Unknown", "2019-02-15")],
        [hop_row(None, "2019-05-01")],
    )

    unified = reconcile(prepared_dpa, prepared_hop)

    assert unified.count() == 3
    assert unified.filter("membership = 'Both'").count() == 0


def test_duplicate_keys_are_rejected_by_default_policy(spark) -> None:
    prepared_dpa, prepared_hop = _prepare(
        spark,
        [dpa_row("K", "2019-01-15"), dpa_row("K", "2019-02-15"), dpa_row("X", "2019-03-15")],
        [hop_row("K", "2019-05-01")],
    )

    with pytest.raises(JoinAmbiguityError, match="DPA"):
        reconcile(prepared_dpa, prepared_hop, report_config={"duplicate_key_policy": "reject"})
    with pytest.raises(JoinAmbiguityError):
        reconcile(prepared_dpa, prepared_hop, report_config={"duplicate_key_policy": None})


@pytest.mark.parametrize(("policy", "matched_id"), [("first_match", "DPA-00001"), ("last_match", "DPA-00002")])
def test_duplicate_key_policies_pick_one_row(spark, summary, policy, matched_id) -> None:
    """Only one duplicate may match; the rest stay unmatched and are counted."""
    prepared_dpa, prepared_hop = _prepare(
        spark,
        [dpa_row("K", "2019-01-15"), dpa_row("K", "2019-02-15"), dpa_row("X", "2019-03-15")],
        [hop_row("K", "2019-05-01")],
    )

    unified = reconcile(prepared_dpa, prepared_hop, summary, {"duplicate_key_policy": policy})
    both = unified.filter("membership = 'Both'").collect()

    assert unified.count() == 3
    assert [row["source_id_DPA"] for row in both] == [matched_id]
    assert summary.duplicate_keys == {SOURCE_TYPE_DPA: 1}
    assert unified.filter("weak_key = 'K'").count() == 2


def test_unknown_policy_is_a_config_error(spark) -> None:
    prepared_dpa, _ = _prepare(spark, [dpa_row("K", "2019-01-15")], [])

    with pytest.raises(PipelineConfigError):
        apply_duplicate_key_policy(prepared_dpa, SOURCE_TYPE_DPA, "expand")


def test_find_duplicate_keys_ignores_missing_keys(spark) -> None:
    prepared_dpa, _ = _prepare(
        spark,
        [dpa_row(None, "2019-01-15"), dpa_row(None, "2019-02-15"), dpa_row("K", "2019-03-15"), dpa_row("K", "2019-04-15")],
        [],
    )

    rows = find_duplicate_keys(prepared_dpa).collect()

    assert [(row["weak_key"], row["count"]) for row in rows] == [("K", 2)]


@pytest.mark.parametrize(("policy", "matched_id"), [("first_match", "DPA-9"), ("last_match", "DPA-10")])
def test_duplicate_policies_order_ids_numerically(spark, policy, matched_id) -> None:
    """DPA-10 comes after DPA-9 even though it sorts before it as text."""
    prepared = spark.createDataFrame([("K", "DPA-10"), ("K", "DPA-9")], "weak_key string, source_id string")

    keyed = apply_duplicate_key_policy(prepared, SOURCE_TYPE_DPA, policy)

    assert [row["source_id"] for row in keyed.filter("_join_key IS NOT NULL").collect()] == [matched_id]


def test_unified_ids_follow_numeric_source_order(spark) -> None:
    """Unified IDs keep input order once source IDs outgrow their padding."""
    source_config = {**PIPELINE_CONFIG[SOURCE_TYPE_DPA], "id_width": 1}
    prepared_dpa = prepare_source(
        raw_dpa(spark, [dpa_row(f"D-{n}", "2019-01-15") for n in range(1, 12)]),
        SOURCE_TYPE_DPA,
        source_config=source_config,
    )
    prepared_hop = prepare_source(raw_hop(spark, []), SOURCE_TYPE_HOP)

    rows = reconcile(prepared_dpa, prepared_hop).orderBy("unified_id").collect()

    assert [row["source_id_DPA"] for row in rows] == [f"DPA-{n}" for n in range(1, 12)]
    assert rows[9]["unified_id"] == "HH-00010"
