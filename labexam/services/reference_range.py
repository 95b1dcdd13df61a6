"""
Reference range parsing and out-of-range evaluation.

A reference expression is free text authored by catalog administrators. The
recognized grammar is tried in a fixed priority order and the first match
wins:

    1. "<num> - <num>"   inclusive range
    2. ">= <num>"
    3. "<= <num>"
    4. "> <num>"
    5. "< <num>"

Anything else (including an empty expression) fails open: the value is
considered in range and a warning is returned alongside the result. The
module never logs; callers decide what to do with the diagnostics.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from labexam.models.catalog import FieldType

_NUM = r"[-+]?\d+(?:\.\d+)?"


class RangeRule(str, Enum):
    BETWEEN = "between"
    AT_LEAST = "at_least"
    AT_MOST = "at_most"
    ABOVE = "above"
    BELOW = "below"


class WarningCode(str, Enum):
    MALFORMED_REFERENCE = "malformed_reference"
    UNPARSEABLE_VALUE = "unparseable_value"


# Order matters: ">=" must be tried before ">" and "<=" before "<".
_GRAMMAR: list[tuple[RangeRule, re.Pattern[str]]] = [
    (RangeRule.BETWEEN, re.compile(rf"(?<![\d.])({_NUM})\s*-\s*({_NUM})")),
    (RangeRule.AT_LEAST, re.compile(rf">=\s*({_NUM})")),
    (RangeRule.AT_MOST, re.compile(rf"<=\s*({_NUM})")),
    (RangeRule.ABOVE, re.compile(rf">\s*({_NUM})")),
    (RangeRule.BELOW, re.compile(rf"<\s*({_NUM})")),
]


@dataclass(frozen=True)
class ReferenceRange:
    """A parsed reference expression."""

    rule: RangeRule
    low: float | None = None
    high: float | None = None

    def contains(self, value: float) -> bool:
        if self.rule == RangeRule.BETWEEN:
            return self.low <= value <= self.high
        if self.rule == RangeRule.AT_LEAST:
            return value >= self.low
        if self.rule == RangeRule.AT_MOST:
            return value <= self.high
        if self.rule == RangeRule.ABOVE:
            return value > self.low
        if self.rule == RangeRule.BELOW:
            return value < self.high
        raise ValueError(f"Unhandled range rule: {self.rule}")


@dataclass(frozen=True)
class RangeWarning:
    code: WarningCode
    message: str


@dataclass(frozen=True)
class RangeCheck:
    """Outcome of checking one value: the verdict plus any diagnostic."""

    in_range: bool
    reference: ReferenceRange | None = None
    warning: RangeWarning | None = None

    @property
    def out_of_range(self) -> bool:
        return not self.in_range


def parse_reference(expression: str | None) -> ReferenceRange | None:
    """Parse a reference expression, returning None when no shape matches."""
    text = (expression or "").strip()
    if not text:
        return None

    for rule, pattern in _GRAMMAR:
        match = pattern.search(text)
        if not match:
            continue
        if rule == RangeRule.BETWEEN:
            low, high = float(match.group(1)), float(match.group(2))
            if low > high:
                return None
            return ReferenceRange(rule, low=low, high=high)
        bound = float(match.group(1))
        if rule in (RangeRule.AT_LEAST, RangeRule.ABOVE):
            return ReferenceRange(rule, low=bound)
        return ReferenceRange(rule, high=bound)
    return None


def parse_number(value: Any) -> float | None:
    """Parse a recorded value as a finite float, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return number


def check_value(
    value_type: FieldType | str,
    expression: str | None,
    value: Any,
) -> RangeCheck:
    """
    Decide whether ``value`` satisfies ``expression`` for a field of
    ``value_type``.

    Non-numeric field types are always in range. A numeric field with an
    unparseable value is out of range (fail-closed); an expression that
    cannot be parsed leaves the value in range (fail-open).
    """
    if FieldType(value_type) != FieldType.NUMBER:
        return RangeCheck(in_range=True)

    number = parse_number(value)
    if number is None:
        return RangeCheck(
            in_range=False,
            warning=RangeWarning(
                WarningCode.UNPARSEABLE_VALUE,
                f"Value {value!r} is not numeric",
            ),
        )

    if not (expression or "").strip():
        return RangeCheck(in_range=True)

    reference = parse_reference(expression)
    if reference is None:
        return RangeCheck(
            in_range=True,
            warning=RangeWarning(
                WarningCode.MALFORMED_REFERENCE,
                f"Reference expression {expression!r} not recognized",
            ),
        )
    return RangeCheck(in_range=reference.contains(number), reference=reference)
