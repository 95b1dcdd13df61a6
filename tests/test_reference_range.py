"""Tests for reference expression parsing and range checks – no database required."""

import pytest

from labexam.models.catalog import FieldType
from labexam.services.reference_range import (
    RangeRule,
    WarningCode,
    check_value,
    parse_number,
    parse_reference,
)


def _in_range(expression, value, value_type=FieldType.NUMBER):
    return check_value(value_type, expression, value).in_range


@pytest.mark.parametrize("value,expected", [(10, True), (50, True), (9.99, False), (50.01, False)])
def test_range_bounds_are_inclusive(value, expected):
    assert _in_range("10-50", value) is expected


def test_range_is_whitespace_tolerant():
    reference = parse_reference("  10.5 -  20.3 mg/dL")
    assert reference.rule == RangeRule.BETWEEN
    assert (reference.low, reference.high) == (10.5, 20.3)
    assert _in_range("10.5 - 20.3", "15")


def test_at_least_includes_bound():
    assert _in_range(">=5", 5)
    assert not _in_range(">=5", 4.999)


def test_at_least_is_tried_before_greater_than():
    """'>=5' must not be read as '>5', which would reject the bound."""
    assert parse_reference(">= 5").rule == RangeRule.AT_LEAST
    assert parse_reference("<= 5").rule == RangeRule.AT_MOST


def test_strict_comparisons():
    assert _in_range("> 5", 5.01)
    assert not _in_range("> 5", 5)
    assert _in_range("<100", 99.9)
    assert not _in_range("<100", 100)
    assert _in_range("<=100", 100)
    assert not _in_range("<=100", 100.5)


def test_negative_bounds():
    assert _in_range("-5 - 5", -3)
    assert not _in_range("-5 - 5", -6)


def test_range_embedded_in_text():
    assert parse_reference("Adults: 4-10 x10^3/uL").rule == RangeRule.BETWEEN
    assert not _in_range("Adults: 4-10 x10^3/uL", 12)


def test_empty_expression_fails_open_silently():
    check = check_value(FieldType.NUMBER, "", 1e6)
    assert check.in_range
    assert check.warning is None
    assert check_value(FieldType.NUMBER, None, -1).in_range


@pytest.mark.parametrize("expression", ["Negative", "see note", "50-10"])
def test_unrecognized_expression_fails_open_with_warning(expression):
    check = check_value(FieldType.NUMBER, expression, 1000)
    assert check.in_range
    assert check.warning.code == WarningCode.MALFORMED_REFERENCE


@pytest.mark.parametrize("value", ["abc", "7,5", "", "nan", "inf", None])
def test_unparseable_value_fails_closed(value):
    check = check_value(FieldType.NUMBER, "4-10", value)
    assert check.out_of_range
    assert check.warning.code == WarningCode.UNPARSEABLE_VALUE


@pytest.mark.parametrize("value_type", ["text", "select", "boolean", "long-text"])
def test_non_numeric_types_are_always_in_range(value_type):
    assert _in_range("4-10", "anything", value_type)


def test_parse_number():
    assert parse_number(" 7 ") == 7.0
    assert parse_number("-0.5") == -0.5
    assert parse_number(True) is None
    assert parse_number("1e3") == 1000.0
