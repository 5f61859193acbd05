"""Pytest configuration: one local Spark session for the whole test run."""

from __future__ import annotations

import pytest
from pyspark.sql import SparkSession

from homebuyer_cohorts.summary import RunSummary


@pytest.fixture(scope="session")
def spark() -> SparkSession:
    """Local single-core session with the same settings as `config.get_spark_session`."""
    session = (
        SparkSession.builder.master("local[1]")
        .appName("homebuyer_cohorts_tests")
        .config("spark.sql.shuffle.partitions", "1")
        .config("spark.ui.enabled", "false")
        .config("spark.sql.session.timeZone", "UTC")
        .config("spark.sql.ansi.enabled", "false")
        .config("spark.sql.legacy.timeParserPolicy", "CORRECTED")
        .getOrCreate()
    )
    yield session
    session.stop()


@pytest.fixture
def summary() -> RunSummary:
    return RunSummary()


@pytest.fixture
def ansi_mode(spark):
    """Run a test with ANSI SQL mode on, as Spark 4 sessions do by default."""
    previous = spark.conf.get("spark.sql.ansi.enabled")
    spark.conf.set("spark.sql.ansi.enabled", "true")
    try:
        yield spark
    finally:
        spark.conf.set("spark.sql.ansi.enabled", previous)
