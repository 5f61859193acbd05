"""Tests for the logging and session helpers in config."""

from __future__ import annotations

from homebuyer_cohorts import config
from homebuyer_cohorts.config import Stopwatch, get_spark_session, log_message


def test_log_message_hides_debug_unless_verbose(capsys, monkeypatch) -> None:
    monkeypatch.setattr(config, "LOGGING_VERBOSE", False)
    log_message("hidden", level="DEBUG")
    log_message("shown", level="WARN", depth=2)

    output = capsys.readouterr().out
    assert "hidden" not in output
    assert "[WARN ]" in output
    assert "|     shown" in output

    monkeypatch.setattr(config, "LOGGING_VERBOSE", True)
    log_message("now visible", level="DEBUG")
    assert "now visible" in capsys.readouterr().out


def test_stopwatch_formats_seconds() -> None:
    assert Stopwatch().format().endswith("seconds")


def test_spark_session_is_pinned_to_utc(spark) -> None:
    session = get_spark_session()

    assert session.conf.get("spark.sql.session.timeZone") == "UTC"
    assert session.conf.get("spark.sql.ansi.enabled") == "false"
