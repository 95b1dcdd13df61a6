"""
Result Value Store and the result-entry boundary.

There is exactly one ResultValue per (instance, field). Every write goes
through a single INSERT ... ON CONFLICT DO UPDATE so concurrent submissions
for the same pair resolve last-write-wins, and ``out_of_range`` is always
derived from the value being written, using the field's own reference
expression at write time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from labexam.errors import (
    InstanceNotWritable,
    InvalidValue,
    LabExamError,
    RecordNotFound,
    UnknownField,
)
from labexam.models.catalog import FieldDefinition, FieldType
from labexam.models.results import InstanceStatus, RequestExamInstance, ResultValue
from labexam.services import aggregator
from labexam.services.audit import log_action
from labexam.services.fields import get_field
from labexam.services.reference_range import RangeCheck, check_value, parse_number

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass
class SubmissionResult:
    field_id: int
    accepted: bool
    out_of_range: bool = False
    error: str | None = None


@dataclass
class RecordedValue:
    field: aggregator.AggregatedField
    result: ResultValue


@dataclass
class ValueSection:
    name: str
    values: list[RecordedValue]


@dataclass
class RangeReport:
    """Reference check of a value that is not stored."""

    field_id: int
    value: Any
    in_range: bool
    field_name: str | None = None
    reference_range: str | None = None
    unit: str | None = None
    value_type: str | None = None
    warning: str | None = None


def _normalize(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def evaluate(field: FieldDefinition, value: str | None) -> RangeCheck:
    """Range check for a stored value; empty values are never flagged."""
    if not value:
        return RangeCheck(in_range=True)
    check = check_value(field.value_type, field.reference_range, value)
    if check.warning is not None:
        logger.warning(
            "Data quality: field %s '%s' (ref %r, value %r): %s",
            field.id, field.name, field.reference_range, value, check.warning.message,
        )
    return check


def get_instance(db: Session, instance_id: int) -> RequestExamInstance:
    instance = db.get(RequestExamInstance, instance_id)
    if instance is None:
        raise RecordNotFound(f"Request exam instance {instance_id} not found")
    return instance


def get_value(db: Session, instance_id: int, field_id: int) -> ResultValue | None:
    return (
        db.query(ResultValue)
        .filter(ResultValue.instance_id == instance_id, ResultValue.field_id == field_id)
        .populate_existing()
        .first()
    )


def upsert(
    db: Session,
    instance_id: int,
    field_id: int,
    value: Any,
    observation: str | None = None,
) -> ResultValue:
    """Write or replace the single value for (instance, field)."""
    field = get_field(db, field_id)
    text = _normalize(value)
    check = evaluate(field, text)
    now = datetime.now(timezone.utc)
    row = {
        "instance_id": instance_id,
        "field_id": field.id,
        "value": text,
        "observation": observation,
        "out_of_range": check.out_of_range,
        "recorded_at": now,
        "updated_at": now,
    }

    insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if insert is not None:
        stmt = insert(ResultValue).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["instance_id", "field_id"],
            set_={
                "value": stmt.excluded.value,
                "observation": stmt.excluded.observation,
                "out_of_range": stmt.excluded.out_of_range,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        db.execute(stmt)
    else:
        existing = get_value(db, instance_id, field.id)
        if existing is None:
            db.add(ResultValue(**row))
        else:
            existing.value = text
            existing.observation = observation
            existing.out_of_range = check.out_of_range
            existing.updated_at = now
        db.flush()

    if check.out_of_range:
        logger.info(
            "Out-of-range value on instance %s field '%s': %r (ref %r)",
            instance_id, field.name, text, field.reference_range,
        )
    return get_value(db, instance_id, field.id)


def _ensure_writable(instance: RequestExamInstance) -> None:
    if instance.status == InstanceStatus.CANCELLED:
        raise InstanceNotWritable(f"Instance {instance.id} is cancelled")


def _resolve_field(db: Session, instance: RequestExamInstance, field_id: int) -> FieldDefinition:
    """
    A field is writable on an instance if it is active and owned by an exam in
    the instance's lineage, or if it already holds a value for this instance.
    """
    field = db.get(FieldDefinition, field_id)
    if field is None:
        raise UnknownField(f"Field {field_id} does not exist")
    if field.active and field.exam_id in aggregator.lineage_exam_ids(db, instance.exam):
        return field
    if get_value(db, instance.id, field.id) is not None:
        return field
    raise UnknownField(
        f"Field {field_id} does not belong to exam '{instance.exam.name}'"
    )


def submit_value(
    db: Session,
    instance_id: int,
    field_id: int,
    value: Any,
    observation: str | None = None,
    *,
    actor: str | None = None,
) -> SubmissionResult:
    """Validate and record one value for an instance."""
    instance = get_instance(db, instance_id)
    _ensure_writable(instance)
    field = _resolve_field(db, instance, field_id)

    text = _normalize(value)
    if field.value_type == FieldType.NUMBER and text and parse_number(text) is None:
        raise InvalidValue(f"Field '{field.name}' expects a number, got {value!r}")

    result = upsert(db, instance.id, field.id, text, observation)
    if actor:
        instance.recorded_by = actor
        db.flush()
    log_action(
        db,
        actor=actor,
        action="submit_value",
        resource_type="RequestExamInstance",
        resource_id=instance.id,
        detail={"field": field.id, "out_of_range": result.out_of_range},
    )
    return SubmissionResult(field.id, accepted=True, out_of_range=result.out_of_range)


def submit_values_batch(
    db: Session,
    instance_id: int,
    items: list[dict[str, Any]],
    *,
    actor: str | None = None,
) -> list[SubmissionResult]:
    """
    Record several values; each item is validated on its own so one bad
    field does not block the others.
    """
    instance = get_instance(db, instance_id)
    _ensure_writable(instance)

    results: list[SubmissionResult] = []
    for item in items:
        field_id = item["field_id"]
        try:
            results.append(
                submit_value(
                    db,
                    instance.id,
                    field_id,
                    item.get("value"),
                    item.get("observation"),
                    actor=actor,
                )
            )
        except LabExamError as exc:
            logger.warning("Batch item for field %s rejected: %s", field_id, exc)
            results.append(SubmissionResult(field_id, accepted=False, error=str(exc)))

    accepted = sum(1 for r in results if r.accepted)
    logger.info("Batch on instance %s: %d/%d accepted", instance.id, accepted, len(results))
    return results


def values_for_instance(db: Session, instance_id: int) -> list[ValueSection]:
    """
    Recorded values grouped by section, including values attached to retired
    field definitions.
    """
    instance = get_instance(db, instance_id)
    recorded = {
        row.field_id: row
        for row in db.query(ResultValue).filter(ResultValue.instance_id == instance.id)
    }
    visible = aggregator.visible_fields_for_instance(db, instance)
    sections = []
    for section in aggregator.group_by_section(visible):
        values = [
            RecordedValue(item, recorded[item.id])
            for item in section.fields
            if item.id in recorded
        ]
        if values:
            sections.append(ValueSection(section.name, values))
    return sections


def record_legacy_result(
    db: Session, instance_id: int, text: str, *, actor: str | None = None
) -> RequestExamInstance:
    """Store the single free-text result used by exams without formal fields."""
    instance = get_instance(db, instance_id)
    _ensure_writable(instance)
    instance.legacy_result = text
    if actor:
        instance.recorded_by = actor
    db.flush()
    log_action(
        db,
        actor=actor,
        action="record_legacy_result",
        resource_type="RequestExamInstance",
        resource_id=instance.id,
    )
    return instance


def check_values(db: Session, items: list[dict[str, Any]]) -> list[RangeReport]:
    """Evaluate values against their fields' reference ranges without storing them."""
    reports = []
    for item in items:
        field_id = item["field_id"]
        value = _normalize(item.get("value"))
        field = db.get(FieldDefinition, field_id)
        if field is None:
            reports.append(
                RangeReport(field_id, value, in_range=False, warning=f"Field {field_id} not found")
            )
            continue
        check = evaluate(field, value)
        reports.append(
            RangeReport(
                field_id=field.id,
                value=value,
                in_range=check.in_range,
                field_name=field.name,
                reference_range=field.reference_range,
                unit=field.unit,
                value_type=field.value_type.value,
                warning=check.warning.message if check.warning else None,
            )
        )
    return reports
