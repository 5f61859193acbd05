"""homebuyer_cohorts.normalizer

Field normalization against the shared rule table in `config.FIELD_RULES`.

The same rule table is interpreted two ways:
- `normalize(field_name, raw_value, source)` normalizes a single Python value.
  It is pure, deterministic and idempotent, and is the reference behaviour.
- `normalize_column(field_name, column, source)` compiles the rules into a
  Spark `CASE WHEN` expression so preparation runs inside Spark.

Rule evaluation:
- Values are trimmed and lower-cased before matching.
- Sentinel literals (e.g. "unknown", "n/a") mean missing, never zero.
- Rules are evaluated in order and the first match wins. Per-source overrides
  from `config.SOURCE_RULE_OVERRIDES` are evaluated before the shared rules.
- Unmatched values take the field's explicit `default`, or pass through
  unchanged when the field declares none.

Numeric fields strip `$`, `,`, `%` and whitespace. A decimal above the field's
`percent_threshold` is read as a percentage and divided by 100; a value still
at or above `max_value` afterwards, or below `min_value`, is invalid and
becomes missing. Integers outside the 32-bit range are invalid too.

The Spark expressions never raise on bad input, so a malformed cell is counted
as a coercion even when the session runs with `spark.sql.ansi.enabled=true`
(the default from Spark 4).
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pyspark.sql import Column
from pyspark.sql import functions as F

from .config import (
    DATE_INPUT_FORMATS,
    FIELD_RULES,
    NUMERIC_CLEANUP_PATTERN,
    NUMERIC_PATTERN,
    SOURCE_RULE_OVERRIDES,
)
from .errors import PipelineConfigError

NUMERIC_TYPES = ("decimal", "integer")
COERCED_TYPES = ("decimal", "integer", "date")

_ISO_TIMESTAMP_PREFIX = r"^(\d{4}-\d{1,2}-\d{1,2})[ T]"
_INT_MAX = 2147483647


def field_spec(field_name: str) -> Dict[str, Any]:
    """Return the rule-table entry for a field.

    Raises:
        PipelineConfigError: if the field has no rule set.
    """
    try:
        return FIELD_RULES[field_name]
    except KeyError:
        raise PipelineConfigError(f"No normalization rules configured for field '{field_name}'") from None


def has_rules(field_name: str) -> bool:
    return field_name in FIELD_RULES


def resolve_rules(field_name: str, source: Optional[str] = None) -> List[Tuple[str, str, Optional[str]]]:
    """Return the ordered rule list for a field, source overrides first."""
    shared = list(field_spec(field_name).get("rules", []))
    overrides = SOURCE_RULE_OVERRIDES.get(source, {}).get(field_name, []) if source else []
    return list(overrides) + shared


def _missing_value(spec: Dict[str, Any]) -> Optional[str]:
    return spec.get("missing_label")


def _rule_matches(kind: str, pattern: str, value: str) -> bool:
    if kind == "exact":
        return value == pattern
    if kind == "contains":
        return pattern in value
    if kind == "regex":
        return re.search(pattern, value) is not None
    raise PipelineConfigError(f"Unknown rule kind '{kind}'")


def _is_missing_scalar(raw_value: Any) -> bool:
    return raw_value is None or (isinstance(raw_value, float) and math.isnan(raw_value))


# =====================================================================================
# PYTHON INTERPRETER
# =====================================================================================


def normalize(field_name: str, raw_value: Any, source: Optional[str] = None) -> Any:
    """Normalize one raw value to its canonical form.

    Args:
        field_name: Prepared field name (a key of `config.FIELD_RULES`).
        raw_value: Raw cell value (string, number, date or None).
        source: Optional source code selecting per-source override rules.

    Returns:
        The canonical value, or None when the value is missing, a sentinel, or
        fails coercion.
    """
    spec = field_spec(field_name)
    field_type = spec["type"]

    if field_type == "category":
        return _normalize_category(spec, resolve_rules(field_name, source), raw_value)
    if field_type == "decimal":
        return _normalize_decimal(spec, raw_value)
    if field_type == "integer":
        return _normalize_integer(spec, raw_value)
    if field_type == "date":
        return _normalize_date(spec, raw_value)
    raise PipelineConfigError(f"Unknown field type '{field_type}' for field '{field_name}'")


def _normalize_category(spec: Dict[str, Any], rules: Sequence[tuple], raw_value: Any) -> Optional[str]:
    if _is_missing_scalar(raw_value):
        return _missing_value(spec)

    stripped = str(raw_value).strip()
    lowered = stripped.lower()
    if lowered in spec.get("sentinels", []):
        return _missing_value(spec)

    for kind, pattern, label in rules:
        if _rule_matches(kind, pattern, lowered):
            return label if label is not None else _missing_value(spec)

    if "default" in spec:
        return spec["default"] if spec["default"] is not None else _missing_value(spec)
    return stripped


def _parse_number(spec: Dict[str, Any], raw_value: Any) -> Optional[float]:
    if _is_missing_scalar(raw_value) or isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, (int, float, Decimal)):
        return float(raw_value)

    lowered = str(raw_value).strip().lower()
    if lowered in spec.get("sentinels", []):
        return None
    cleaned = re.sub(NUMERIC_CLEANUP_PATTERN, "", lowered)
    if not re.match(NUMERIC_PATTERN, cleaned):
        return None
    return float(cleaned)


def _normalize_decimal(spec: Dict[str, Any], raw_value: Any) -> Optional[float]:
    number = _parse_number(spec, raw_value)
    if number is None:
        return None

    threshold = spec.get("percent_threshold")
    if threshold is not None and number > threshold:
        number = number / 100

    min_value = spec.get("min_value")
    if min_value is not None and number < min_value:
        return None
    max_value = spec.get("max_value")
    if max_value is not None and number >= max_value:
        return None
    return number


def _normalize_integer(spec: Dict[str, Any], raw_value: Any) -> Optional[int]:
    number = _parse_number(spec, raw_value)
    if number is None or not number.is_integer() or abs(number) > _INT_MAX:
        return None
    return int(number)


def _normalize_date(spec: Dict[str, Any], raw_value: Any) -> Optional[date]:
    if _is_missing_scalar(raw_value):
        return None
    if isinstance(raw_value, datetime):
        return raw_value.date()
    if isinstance(raw_value, date):
        return raw_value

    text = str(raw_value).strip()
    if text.lower() in spec.get("sentinels", []):
        return None
    prefix = re.match(_ISO_TIMESTAMP_PREFIX, text)
    if prefix:
        text = prefix.group(1)

    for _, python_format, guard in DATE_INPUT_FORMATS:
        if re.match(guard, text):
            try:
                return datetime.strptime(text, python_format).date()
            except ValueError:
                return None
    return None


def band_value(value: Optional[float], bands: Sequence[Tuple[Optional[float], str]]) -> Optional[str]:
    """Return the label of the first band whose inclusive upper bound holds `value`."""
    if value is None:
        return None
    for upper, label in bands:
        if upper is None or value <= upper:
            return label
    return None


# =====================================================================================
# SPARK INTERPRETER
# =====================================================================================


def _lowered(column: Column) -> Column:
    return F.lower(F.trim(column.cast("string")))


def _string_literal(value: Optional[str]) -> Column:
    return F.lit(value).cast("string")


def _rule_condition(kind: str, pattern: str, lowered: Column) -> Column:
    if kind == "exact":
        return lowered == F.lit(pattern)
    if kind == "contains":
        return lowered.contains(pattern)
    if kind == "regex":
        return lowered.rlike(pattern)
    raise PipelineConfigError(f"Unknown rule kind '{kind}'")


def _raw_present(spec: Dict[str, Any], column: Column) -> Column:
    lowered = _lowered(column)
    return lowered.isNotNull() & ~lowered.isin(spec.get("sentinels", []))


def normalize_column(
    field_name: str,
    column: Column,
    source: Optional[str] = None,
    input_type: str = "string",
) -> Column:
    """Compile a field's rules into a Spark expression over `column`.

    Args:
        field_name: Prepared field name (a key of `config.FIELD_RULES`).
        column: Raw column expression.
        source: Optional source code selecting per-source override rules.
        input_type: "string" for text cells, "numeric" for columns Spark already
            holds as numbers, "date" for DateType/TimestampType columns.

    Returns:
        A Column expression producing the canonical value.
    """
    spec = field_spec(field_name)
    field_type = spec["type"]

    if field_type == "category":
        return _category_expression(spec, resolve_rules(field_name, source), column)
    if field_type == "decimal":
        return _decimal_expression(spec, column, input_type)
    if field_type == "integer":
        number = _number_expression(spec, column, input_type)
        in_range = (number == F.floor(number)) & (F.abs(number) <= F.lit(_INT_MAX))
        return F.when(in_range, number.cast("int"))
    if field_type == "date":
        return _date_expression(spec, column, input_type)
    raise PipelineConfigError(f"Unknown field type '{field_type}' for field '{field_name}'")


def _category_expression(spec: Dict[str, Any], rules: Sequence[tuple], column: Column) -> Column:
    lowered = _lowered(column)
    missing = _string_literal(_missing_value(spec))

    expression = F.when(lowered.isNull() | lowered.isin(spec.get("sentinels", [])), missing)
    for kind, pattern, label in rules:
        target = _string_literal(label) if label is not None else missing
        expression = expression.when(_rule_condition(kind, pattern, lowered), target)

    if "default" in spec:
        default = spec["default"]
        return expression.otherwise(_string_literal(default) if default is not None else missing)
    return expression.otherwise(F.trim(column.cast("string")))


def _number_expression(spec: Dict[str, Any], column: Column, input_type: str) -> Column:
    if input_type == "numeric":
        return column.cast("double")

    lowered = _lowered(column)
    cleaned = F.regexp_replace(lowered, NUMERIC_CLEANUP_PATTERN, "")
    return F.when(lowered.isNull() | lowered.isin(spec.get("sentinels", [])), F.lit(None).cast("double")).when(
        cleaned.rlike(NUMERIC_PATTERN), cleaned.cast("double")
    )


def _decimal_expression(spec: Dict[str, Any], column: Column, input_type: str) -> Column:
    number = _number_expression(spec, column, input_type)

    threshold = spec.get("percent_threshold")
    if threshold is not None:
        number = F.when(number > F.lit(threshold), number / 100).otherwise(number)

    min_value = spec.get("min_value")
    if min_value is not None:
        number = F.when(number >= F.lit(min_value), number)
    max_value = spec.get("max_value")
    if max_value is not None:
        number = F.when(number < F.lit(max_value), number)
    return number


def _date_expression(spec: Dict[str, Any], column: Column, input_type: str) -> Column:
    if input_type == "date":
        return column.cast("date")

    text = F.trim(column.cast("string"))
    text = F.when(text.rlike(_ISO_TIMESTAMP_PREFIX), F.regexp_extract(text, _ISO_TIMESTAMP_PREFIX, 1)).otherwise(text)
    # try_to_timestamp yields NULL for impossible dates such as 2019-02-30.
    parsed = [
        F.when(text.rlike(guard), F.try_to_timestamp(text, F.lit(spark_format)).cast("date"))
        for spark_format, _, guard in DATE_INPUT_FORMATS
    ]
    return F.when(_raw_present(spec, column), F.coalesce(*parsed))


def coercion_failed_column(field_name: str, raw_column: Column, normalized_column: Column) -> Column:
    """Flag rows where a present, non-sentinel value failed type coercion.

    Category fields never coerce, so this is always False for them.
    """
    spec = field_spec(field_name)
    if spec["type"] not in COERCED_TYPES:
        return F.lit(False)
    return _raw_present(spec, raw_column) & normalized_column.isNull()


def catch_all_column(field_name: str, raw_column: Column, source: Optional[str] = None) -> Column:
    """Flag rows whose value matched no rule and was absorbed by the default label."""
    spec = field_spec(field_name)
    if spec["type"] != "category" or spec.get("default") is None:
        return F.lit(False)

    lowered = _lowered(raw_column)
    matched = F.lit(False)
    for kind, pattern, _ in resolve_rules(field_name, source):
        matched = matched | _rule_condition(kind, pattern, lowered)
    return _raw_present(spec, raw_column) & ~matched


def band_column(column: Column, bands: Sequence[Tuple[Optional[float], str]]) -> Column:
    """Spark counterpart of `band_value`."""
    expression = None
    for upper, label in bands:
        condition = column.isNotNull() if upper is None else column <= F.lit(upper)
        expression = F.when(condition, label) if expression is None else expression.when(condition, label)
    return expression
