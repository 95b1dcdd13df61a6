"""
Request and instance status workflow.

Instance state machine::

    pending -> in_process -> completed
       \            \
        +------------+--> cancelled

Completion is gated on the Completion Evaluator but never triggered by it;
callers decide when an instance is signed off. Request status is rolled up
from the statuses of its instances.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from labexam.errors import IncompleteResults, InvalidStatusTransition, RecordNotFound
from labexam.models.results import InstanceStatus, LabRequest, RequestExamInstance
from labexam.services.audit import log_action
from labexam.services.catalog import get_exam
from labexam.services.completion import is_complete, missing_required_fields
from labexam.services.results import get_instance

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[InstanceStatus, set[InstanceStatus]] = {
    InstanceStatus.PENDING: {InstanceStatus.IN_PROCESS, InstanceStatus.CANCELLED},
    InstanceStatus.IN_PROCESS: {InstanceStatus.COMPLETED, InstanceStatus.CANCELLED},
    InstanceStatus.COMPLETED: set(),
    InstanceStatus.CANCELLED: set(),
}


def create_request(db: Session, patient_ref: str, exam_ids: list[int]) -> LabRequest:
    """Place a request: one pending instance per ordered exam."""
    request = LabRequest(patient_ref=patient_ref, status=InstanceStatus.PENDING)
    for exam_id in exam_ids:
        exam = get_exam(db, exam_id)
        request.instances.append(
            RequestExamInstance(exam=exam, status=InstanceStatus.PENDING)
        )
    db.add(request)
    db.flush()
    logger.info("Placed request %s with %d exam(s)", request.id, len(exam_ids))
    return request


def transition(
    db: Session,
    instance: RequestExamInstance,
    new_status: InstanceStatus,
    *,
    actor: str | None = None,
) -> RequestExamInstance:
    new_status = InstanceStatus(new_status)
    if new_status not in _TRANSITIONS[instance.status]:
        raise InvalidStatusTransition(
            f"Instance {instance.id} cannot move from "
            f"{instance.status.value} to {new_status.value}"
        )

    previous = instance.status
    instance.status = new_status
    if new_status == InstanceStatus.COMPLETED:
        instance.completed_at = datetime.now(timezone.utc)
    db.flush()
    log_action(
        db,
        actor=actor,
        action="transition",
        resource_type="RequestExamInstance",
        resource_id=instance.id,
        detail={"from": previous.value, "to": new_status.value},
    )
    if instance.request_id is not None:
        refresh_request_status(db, instance.request_id)
    return instance


def start(db: Session, instance_id: int, *, actor: str | None = None) -> RequestExamInstance:
    """Move a pending instance to in_process; other statuses are left alone."""
    instance = get_instance(db, instance_id)
    if instance.status == InstanceStatus.PENDING:
        transition(db, instance, InstanceStatus.IN_PROCESS, actor=actor)
    return instance


def complete(db: Session, instance_id: int, *, actor: str | None = None) -> RequestExamInstance:
    """Sign off an instance, provided every required value is present."""
    instance = get_instance(db, instance_id)
    if instance.status == InstanceStatus.COMPLETED:
        return instance
    if not is_complete(db, instance):
        missing = [f.field.name for f in missing_required_fields(db, instance)]
        detail = f": missing {', '.join(missing)}" if missing else ""
        raise IncompleteResults(f"Instance {instance.id} is not complete{detail}")

    if instance.status == InstanceStatus.PENDING:
        transition(db, instance, InstanceStatus.IN_PROCESS, actor=actor)
    if actor:
        instance.recorded_by = actor
    return transition(db, instance, InstanceStatus.COMPLETED, actor=actor)


def cancel(db: Session, instance_id: int, *, actor: str | None = None) -> RequestExamInstance:
    instance = get_instance(db, instance_id)
    return transition(db, instance, InstanceStatus.CANCELLED, actor=actor)


def rollup_status(statuses: list[InstanceStatus]) -> InstanceStatus:
    """Request status implied by the statuses of its instances."""
    live = [s for s in statuses if s != InstanceStatus.CANCELLED]
    if statuses and not live:
        return InstanceStatus.CANCELLED
    if live and all(s == InstanceStatus.COMPLETED for s in live):
        return InstanceStatus.COMPLETED
    if any(s in (InstanceStatus.IN_PROCESS, InstanceStatus.COMPLETED) for s in live):
        return InstanceStatus.IN_PROCESS
    return InstanceStatus.PENDING


def refresh_request_status(db: Session, request_id: int) -> LabRequest:
    request = db.get(LabRequest, request_id)
    if request is None:
        raise RecordNotFound(f"Request {request_id} not found")

    statuses = [
        status
        for (status,) in db.query(RequestExamInstance.status).filter(
            RequestExamInstance.request_id == request.id
        )
    ]
    new_status = rollup_status(statuses)
    if new_status != request.status:
        logger.info(
            "Request %s status %s -> %s",
            request.id, request.status.value, new_status.value,
        )
        request.status = new_status
        db.flush()
    return request
