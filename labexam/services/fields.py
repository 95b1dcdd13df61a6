"""
Field Definition Store.

Field definitions are versioned per logical "slot": every version of the
same field shares a ``slot_id`` and at most one version per slot is active.
Superseded versions are never deleted so result values recorded against them
stay resolvable.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from labexam.config import settings
from labexam.errors import (
    FieldVersionConflict,
    InvalidKindForOperation,
    RecordNotFound,
)
from labexam.models.catalog import FieldDefinition, FieldType
from labexam.models.results import ResultValue
from labexam.services.audit import log_action
from labexam.services.catalog import get_exam
from labexam.services.validation import validate_field_attributes

logger = logging.getLogger(__name__)

# Attributes that travel from one version to the next unless overridden
VERSIONED_ATTRIBUTES = (
    "name",
    "value_type",
    "unit",
    "reference_range",
    "options",
    "required",
    "display_order",
    "section",
    "description",
)


def _plain(attributes: dict[str, Any]) -> dict[str, Any]:
    """Unwrap enums so the payload is JSON-schema friendly."""
    plain = {}
    for key, value in attributes.items():
        if key == "value_type" and value is not None:
            value = FieldType(value).value
        plain[key] = value
    return plain


def _current_attributes(field: FieldDefinition) -> dict[str, Any]:
    return _plain({name: getattr(field, name) for name in VERSIONED_ATTRIBUTES})


def get_field(db: Session, field_id: int) -> FieldDefinition:
    field = db.get(FieldDefinition, field_id)
    if field is None:
        raise RecordNotFound(f"Field {field_id} not found")
    return field


def has_results(db: Session, field_id: int) -> bool:
    return (
        db.query(ResultValue.id).filter(ResultValue.field_id == field_id).first()
        is not None
    )


def create_field(
    db: Session, exam_id: int, attributes: dict[str, Any], *, actor: str | None = None
) -> FieldDefinition:
    """Create version 1 of a new field on ``exam_id``."""
    exam = get_exam(db, exam_id)
    if not exam.kind.allows_own_fields:
        raise InvalidKindForOperation(
            f"Exam '{exam.name}' is {exam.kind.value} and cannot own fields"
        )

    payload = _plain(attributes)
    validate_field_attributes(payload)
    payload["value_type"] = FieldType(payload["value_type"])

    field = FieldDefinition(exam_id=exam.id, version=1, active=True, **payload)
    db.add(field)
    db.flush()
    log_action(
        db,
        actor=actor,
        action="create",
        resource_type="FieldDefinition",
        resource_id=field.id,
        detail={"exam": exam.id, "name": field.name},
    )
    return field


def list_active(db: Session, exam_id: int) -> list[FieldDefinition]:
    """Active field definitions of an exam in display order."""
    return (
        db.query(FieldDefinition)
        .filter(FieldDefinition.exam_id == exam_id, FieldDefinition.active.is_(True))
        .order_by(FieldDefinition.display_order, FieldDefinition.id)
        .all()
    )


def list_visible_for_instance(
    db: Session, exam_id: int, instance_id: int
) -> list[FieldDefinition]:
    """
    Active definitions plus retired ones that already hold a value for
    ``instance_id``, so historical results stay displayable.
    """
    recorded_ids = {
        field_id
        for (field_id,) in db.query(ResultValue.field_id).filter(
            ResultValue.instance_id == instance_id
        )
    }
    candidates = (
        db.query(FieldDefinition)
        .filter(FieldDefinition.exam_id == exam_id)
        .order_by(FieldDefinition.display_order, FieldDefinition.id)
        .all()
    )
    return [f for f in candidates if f.active or f.id in recorded_ids]


def version_chain(db: Session, slot_id) -> list[FieldDefinition]:
    """Every version of a field slot, oldest first."""
    return (
        db.query(FieldDefinition)
        .filter(FieldDefinition.slot_id == slot_id)
        .order_by(FieldDefinition.version)
        .all()
    )


def retire(
    db: Session, field_id: int, reason: str | None = None, *, actor: str | None = None
) -> FieldDefinition:
    """Mark a field inactive. Retiring an already retired field is a no-op."""
    field = get_field(db, field_id)
    if not field.active:
        return field

    field.active = False
    field.retired_at = datetime.now(timezone.utc)
    field.retirement_reason = reason
    db.flush()
    logger.info("Retired field %s '%s' v%d: %s", field.id, field.name, field.version, reason)
    log_action(
        db,
        actor=actor,
        action="retire",
        resource_type="FieldDefinition",
        resource_id=field.id,
        detail={"reason": reason, "version": field.version},
    )
    return field


def revise(
    db: Session,
    field_id: int,
    new_attributes: dict[str, Any],
    reason: str | None = None,
    *,
    actor: str | None = None,
) -> FieldDefinition:
    """
    Retire the head version of a slot and insert ``version + 1`` carrying the
    old attributes overlaid with ``new_attributes``. Returns the new record.
    """
    field = get_field(db, field_id)
    head = version_chain(db, field.slot_id)[-1]
    if head.id != field.id:
        raise FieldVersionConflict(
            f"Field {field.id} is version {field.version}; "
            f"the current version of this field is {head.id} (v{head.version})"
        )

    payload = _current_attributes(field)
    payload.update(_plain(new_attributes))
    validate_field_attributes(payload)
    payload["value_type"] = FieldType(payload["value_type"])

    retire(db, field.id, reason, actor=actor)
    successor = FieldDefinition(
        exam_id=field.exam_id,
        slot_id=field.slot_id,
        version=field.version + 1,
        active=True,
        **payload,
    )
    db.add(successor)
    db.flush()
    log_action(
        db,
        actor=actor,
        action="revise",
        resource_type="FieldDefinition",
        resource_id=successor.id,
        detail={"previous": field.id, "version": successor.version, "reason": reason},
    )
    return successor


def update_definition(
    db: Session,
    field_id: int,
    new_attributes: dict[str, Any],
    reason: str | None = None,
    *,
    actor: str | None = None,
) -> tuple[FieldDefinition, bool]:
    """
    Edit a field. Fields without recorded values are updated in place;
    otherwise a new version is created. Returns ``(field, versioned)``.
    """
    field = get_field(db, field_id)
    if has_results(db, field.id):
        return revise(db, field.id, new_attributes, reason, actor=actor), True

    payload = _current_attributes(field)
    payload.update(_plain(new_attributes))
    validate_field_attributes(payload)
    payload["value_type"] = FieldType(payload["value_type"])
    for name, value in payload.items():
        setattr(field, name, value)
    db.flush()
    log_action(
        db,
        actor=actor,
        action="update",
        resource_type="FieldDefinition",
        resource_id=field.id,
        detail={"changed": sorted(_plain(new_attributes))},
    )
    return field, False


def reactivate(db: Session, field_id: int, *, actor: str | None = None) -> FieldDefinition:
    """Bring a retired version back, provided no other version of its slot is active."""
    field = get_field(db, field_id)
    if field.active:
        return field

    active_sibling = (
        db.query(FieldDefinition)
        .filter(
            FieldDefinition.slot_id == field.slot_id,
            FieldDefinition.active.is_(True),
        )
        .first()
    )
    if active_sibling is not None:
        raise FieldVersionConflict(
            f"Version {active_sibling.version} of this field is already active"
        )

    field.active = True
    field.retired_at = None
    field.retirement_reason = None
    db.flush()
    log_action(
        db,
        actor=actor,
        action="reactivate",
        resource_type="FieldDefinition",
        resource_id=field.id,
    )
    return field


def reorder(db: Session, exam_id: int, orders: dict[int, int]) -> list[FieldDefinition]:
    """Set display order for fields of ``exam_id``, keyed by field id."""
    fields = {
        f.id: f
        for f in db.query(FieldDefinition).filter(
            FieldDefinition.exam_id == exam_id,
            FieldDefinition.id.in_(list(orders)),
        )
    }
    missing = set(orders) - set(fields)
    if missing:
        raise RecordNotFound(f"Field(s) {sorted(missing)} do not belong to exam {exam_id}")
    for field_id, order in orders.items():
        fields[field_id].display_order = order
    db.flush()
    return list_active(db, exam_id)


def section_of(field: FieldDefinition) -> str:
    return field.section or settings.DEFAULT_SECTION
