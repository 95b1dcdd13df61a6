"""
Completion Evaluator.

``is_complete`` is a pure predicate recomputed from current data on every
call; nothing is cached on the instance. Moving an instance to ``completed``
is a separate, caller-driven step (see ``labexam.services.workflow``).
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from labexam.models.results import InstanceStatus, RequestExamInstance, ResultValue
from labexam.services import aggregator
from labexam.services.results import get_instance


def _filled(value: str | None) -> bool:
    return bool(value and value.strip())


def missing_required_fields(
    db: Session, instance: RequestExamInstance
) -> list[aggregator.AggregatedField]:
    """Required aggregated fields that do not yet hold a non-empty value."""
    required = [f for f in aggregator.all_fields_for(db, instance.exam) if f.required]
    if not required:
        return []
    filled_ids = {
        field_id
        for field_id, value in db.query(ResultValue.field_id, ResultValue.value).filter(
            ResultValue.instance_id == instance.id,
            ResultValue.field_id.in_([f.id for f in required]),
        )
        if _filled(value)
    }
    return [f for f in required if f.id not in filled_ids]


def is_complete(db: Session, instance: RequestExamInstance) -> bool:
    # Exams without formal fields complete through the legacy free-text result
    if not aggregator.all_fields_for(db, instance.exam):
        return _filled(instance.legacy_result)
    return not missing_required_fields(db, instance)


def is_instance_complete(db: Session, instance_id: int) -> bool:
    return is_complete(db, get_instance(db, instance_id))


def suggest_status(db: Session, instance: RequestExamInstance) -> InstanceStatus:
    """
    Status the recorded data supports: completed when the predicate holds,
    in_process once anything has been recorded, pending otherwise. Terminal
    statuses are returned unchanged.
    """
    if instance.status in (InstanceStatus.COMPLETED, InstanceStatus.CANCELLED):
        return instance.status
    if is_complete(db, instance):
        return InstanceStatus.COMPLETED
    has_values = (
        db.query(ResultValue.id).filter(ResultValue.instance_id == instance.id).first()
        is not None
    )
    if has_values or _filled(instance.legacy_result):
        return InstanceStatus.IN_PROCESS
    return InstanceStatus.PENDING
