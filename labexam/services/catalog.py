"""Exam catalog lookups and administration."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from labexam.errors import DuplicateExamCode, InvalidKindForOperation, RecordNotFound
from labexam.models.catalog import CompositionLink, Exam, ExamKind, FieldDefinition
from labexam.services.audit import log_action

logger = logging.getLogger(__name__)


def get_exam(db: Session, exam_id: int) -> Exam:
    exam = db.get(Exam, exam_id)
    if exam is None:
        raise RecordNotFound(f"Exam {exam_id} not found")
    return exam


def list_exams(
    db: Session,
    *,
    kind: ExamKind | None = None,
    category_id: int | None = None,
    include_inactive: bool = False,
) -> list[Exam]:
    query = db.query(Exam)
    if kind is not None:
        query = query.filter(Exam.kind == ExamKind(kind))
    if category_id is not None:
        query = query.filter(Exam.category_id == category_id)
    if not include_inactive:
        query = query.filter(Exam.active.is_(True))
    return query.order_by(Exam.name, Exam.id).all()


def list_building_blocks(db: Session) -> list[Exam]:
    """Active, non-profile simple exams that can be used as components."""
    return (
        db.query(Exam)
        .filter(
            Exam.kind == ExamKind.SIMPLE,
            Exam.is_profile.is_(False),
            Exam.active.is_(True),
        )
        .order_by(Exam.name, Exam.id)
        .all()
    )


def create_exam(
    db: Session,
    *,
    code: str,
    name: str,
    kind: ExamKind = ExamKind.SIMPLE,
    category_id: int | None = None,
    is_profile: bool = False,
    sampling_instructions: str | None = None,
    method: str | None = None,
) -> Exam:
    if db.query(Exam.id).filter(Exam.code == code).first() is not None:
        raise DuplicateExamCode(f"Exam code '{code}' is already in use")

    exam = Exam(
        code=code,
        name=name,
        kind=ExamKind(kind),
        category_id=category_id,
        is_profile=is_profile,
        sampling_instructions=sampling_instructions,
        method=method,
    )
    db.add(exam)
    db.flush()
    logger.info("Created %s exam '%s' (%s)", exam.kind.value, exam.name, exam.code)
    return exam


def change_kind(
    db: Session, exam_id: int, kind: ExamKind, *, actor: str | None = None
) -> Exam:
    """
    Change an exam's kind, refusing when existing catalog data would
    contradict the new kind.
    """
    exam = get_exam(db, exam_id)
    kind = ExamKind(kind)
    if kind == exam.kind:
        return exam

    if not kind.allows_own_fields:
        own_fields = (
            db.query(FieldDefinition)
            .filter(FieldDefinition.exam_id == exam.id, FieldDefinition.active.is_(True))
            .count()
        )
        if own_fields:
            raise InvalidKindForOperation(
                f"Exam '{exam.name}' has {own_fields} active own field(s); "
                f"a {kind.value} exam cannot own fields"
            )
        parents = (
            db.query(CompositionLink)
            .filter(
                CompositionLink.child_exam_id == exam.id,
                CompositionLink.active.is_(True),
            )
            .count()
        )
        if parents:
            raise InvalidKindForOperation(
                f"Exam '{exam.name}' is a component of {parents} exam(s); "
                f"a {kind.value} exam cannot be a component"
            )
    if not kind.allows_components:
        components = (
            db.query(CompositionLink)
            .filter(
                CompositionLink.parent_exam_id == exam.id,
                CompositionLink.active.is_(True),
            )
            .count()
        )
        if components:
            raise InvalidKindForOperation(
                f"Exam '{exam.name}' has {components} active component(s); "
                f"a {kind.value} exam cannot have components"
            )

    previous = exam.kind
    exam.kind = kind
    db.flush()
    log_action(
        db,
        actor=actor,
        action="change_kind",
        resource_type="Exam",
        resource_id=exam.id,
        detail={"from": previous.value, "to": kind.value},
    )
    return exam


def deactivate_exam(db: Session, exam_id: int, *, actor: str | None = None) -> Exam:
    """Soft-deactivate an exam; history that references it stays intact."""
    exam = get_exam(db, exam_id)
    if exam.active:
        exam.active = False
        db.flush()
        log_action(db, actor=actor, action="deactivate", resource_type="Exam", resource_id=exam.id)
    return exam
