"""
FastAPI routes – the HTTP adapter over the exam engine.

The engine services flush; the routes own the transaction and commit once
the whole operation succeeded. Engine errors are translated into HTTP
errors here and nowhere else.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from labexam.config import settings
from labexam.errors import (
    DuplicateExamCode,
    FieldVersionConflict,
    IncompleteResults,
    InstanceNotWritable,
    InvalidStatusTransition,
    LabExamError,
    RecordNotFound,
)
from labexam.models.catalog import ExamKind
from labexam.models.database import get_db
from labexam.models.results import LabRequest
from labexam.schemas.api import (
    AggregatedFieldResponse,
    BatchSubmission,
    CompletionResponse,
    ComponentCreate,
    ComponentResponse,
    ExamCreate,
    ExamResponse,
    FieldCreate,
    FieldResponse,
    FieldUpdate,
    FieldUpdateResponse,
    HealthResponse,
    InstanceResponse,
    KindChange,
    LabRequestResponse,
    LegacyResult,
    OrderItem,
    RangeCheckRequest,
    RangeCheckResponse,
    RecordedValueResponse,
    RequestCreate,
    RetireRequest,
    SectionResponse,
    SubmissionResponse,
    ValueSectionResponse,
    ValueSubmission,
)
from labexam.services import (
    aggregator,
    catalog,
    completion,
    composition,
    fields,
    results,
    workflow,
)

logger = logging.getLogger(__name__)

router = APIRouter()

_STATUS_CODES: list[tuple[type[LabExamError], int]] = [
    (RecordNotFound, 404),
    (DuplicateExamCode, 409),
    (FieldVersionConflict, 409),
    (InvalidStatusTransition, 409),
    (IncompleteResults, 409),
    (InstanceNotWritable, 409),
]


@contextmanager
def engine_errors():
    """Translate engine errors raised inside the block into HTTPException."""
    try:
        yield
    except LabExamError as exc:
        status_code = next(
            (code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 422
        )
        logger.info("%s: %s", type(exc).__name__, exc)
        raise HTTPException(status_code=status_code, detail=str(exc)) from exc


def _field_item(item: aggregator.AggregatedField) -> AggregatedFieldResponse:
    definition = item.field
    return AggregatedFieldResponse(
        field_id=definition.id,
        name=definition.name,
        type=definition.value_type,
        unit=definition.unit,
        reference_expression=definition.reference_range,
        required=item.required,
        options=definition.options,
        is_own_field=item.is_own_field,
        origin_exam_name=item.origin_exam_name,
        historical=item.historical,
    )


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


# ---------------------------------------------------------------------------
# Exam catalog
# ---------------------------------------------------------------------------

@router.get("/exams", response_model=list[ExamResponse])
def list_exams(
    kind: ExamKind | None = None,
    category_id: int | None = None,
    db: Session = Depends(get_db),
):
    return catalog.list_exams(db, kind=kind, category_id=category_id)


@router.get("/exams/building-blocks", response_model=list[ExamResponse])
def list_building_blocks(db: Session = Depends(get_db)):
    """Non-profile simple exams usable as components."""
    return catalog.list_building_blocks(db)


@router.post("/exams", response_model=ExamResponse, status_code=201)
def create_exam(payload: ExamCreate, db: Session = Depends(get_db)):
    with engine_errors():
        exam = catalog.create_exam(db, **payload.model_dump())
    db.commit()
    return exam


@router.get("/exams/{exam_id}", response_model=ExamResponse)
def get_exam(exam_id: int, db: Session = Depends(get_db)):
    with engine_errors():
        return catalog.get_exam(db, exam_id)


@router.put("/exams/{exam_id}/kind", response_model=ExamResponse)
def change_kind(
    exam_id: int,
    payload: KindChange,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    with composition.graph_mutation():
        with engine_errors():
            exam = catalog.change_kind(db, exam_id, payload.kind, actor=actor)
        db.commit()
    return exam


@router.delete("/exams/{exam_id}", response_model=ExamResponse)
def deactivate_exam(
    exam_id: int,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    """Soft delete; the exam stays resolvable for existing requests."""
    with composition.graph_mutation():
        with engine_errors():
            exam = catalog.deactivate_exam(db, exam_id, actor=actor)
        db.commit()
    return exam


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------

@router.get("/exams/{exam_id}/components", response_model=list[ExamResponse])
def list_components(exam_id: int, db: Session = Depends(get_db)):
    with engine_errors():
        catalog.get_exam(db, exam_id)
        return composition.list_active_children(db, exam_id)


@router.post(
    "/exams/{exam_id}/components", response_model=ComponentResponse, status_code=201
)
def add_component(
    exam_id: int,
    payload: ComponentCreate,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    with composition.graph_mutation():
        with engine_errors():
            link = composition.add_link(
                db, exam_id, payload.child_exam_id, payload.order, actor=actor
            )
        db.commit()
    return link


@router.delete("/exams/{exam_id}/components/{child_id}", response_model=ComponentResponse)
def remove_component(
    exam_id: int,
    child_id: int,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    """Deactivates the link; the row is kept for history."""
    with composition.graph_mutation():
        with engine_errors():
            link = composition.deactivate_link(db, exam_id, child_id, actor=actor)
        db.commit()
    return link


@router.put("/exams/{exam_id}/components/order", response_model=list[ComponentResponse])
def reorder_components(
    exam_id: int, payload: list[OrderItem], db: Session = Depends(get_db)
):
    with composition.graph_mutation():
        with engine_errors():
            links = composition.reorder_links(
                db, exam_id, {item.id: item.order for item in payload}
            )
        db.commit()
    return links


# ---------------------------------------------------------------------------
# Field definitions
# ---------------------------------------------------------------------------

@router.get("/exams/{exam_id}/fields", response_model=list[SectionResponse])
def get_fields_for_exam(exam_id: int, db: Session = Depends(get_db)):
    """Aggregated, section-grouped field layout of an exam."""
    with engine_errors():
        sections = aggregator.fields_for_exam(db, exam_id)
    return [
        SectionResponse(
            section_name=section.name,
            fields=[_field_item(item) for item in section.fields],
        )
        for section in sections
    ]


@router.get("/exams/{exam_id}/fields/visible", response_model=list[FieldResponse])
def list_visible_fields(exam_id: int, instance_id: int, db: Session = Depends(get_db)):
    """Own fields of an exam as shown for one instance, historical ones included."""
    with engine_errors():
        catalog.get_exam(db, exam_id)
        return fields.list_visible_for_instance(db, exam_id, instance_id)


@router.post("/exams/{exam_id}/fields", response_model=FieldResponse, status_code=201)
def create_field(
    exam_id: int,
    payload: FieldCreate,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    with engine_errors():
        field = fields.create_field(
            db, exam_id, payload.model_dump(exclude_none=True), actor=actor
        )
    db.commit()
    return field


@router.put("/exams/{exam_id}/fields/order", response_model=list[FieldResponse])
def reorder_fields(exam_id: int, payload: list[OrderItem], db: Session = Depends(get_db)):
    with engine_errors():
        ordered = fields.reorder(db, exam_id, {item.id: item.order for item in payload})
    db.commit()
    return ordered


@router.put("/fields/{field_id}", response_model=FieldUpdateResponse)
def update_field(
    field_id: int,
    payload: FieldUpdate,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    """Updates in place, or creates a new version when values already exist."""
    attributes = payload.model_dump(exclude_unset=True)
    reason = attributes.pop("reason", None)
    with engine_errors():
        field, versioned = fields.update_definition(
            db, field_id, attributes, reason, actor=actor
        )
    db.commit()
    return FieldUpdateResponse(field=FieldResponse.model_validate(field), versioned=versioned)


@router.post("/fields/{field_id}/revise", response_model=FieldResponse, status_code=201)
def revise_field(
    field_id: int,
    payload: FieldUpdate,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    attributes = payload.model_dump(exclude_unset=True)
    reason = attributes.pop("reason", None)
    with engine_errors():
        field = fields.revise(db, field_id, attributes, reason, actor=actor)
    db.commit()
    return field


@router.post("/fields/{field_id}/retire", response_model=FieldResponse)
def retire_field(
    field_id: int,
    payload: RetireRequest,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    with engine_errors():
        field = fields.retire(db, field_id, payload.reason, actor=actor)
    db.commit()
    return field


@router.post("/fields/{field_id}/reactivate", response_model=FieldResponse)
def reactivate_field(
    field_id: int,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    with engine_errors():
        field = fields.reactivate(db, field_id, actor=actor)
    db.commit()
    return field


@router.get("/fields/{field_id}/versions", response_model=list[FieldResponse])
def list_versions(field_id: int, db: Session = Depends(get_db)):
    with engine_errors():
        field = fields.get_field(db, field_id)
    return fields.version_chain(db, field.slot_id)


# ---------------------------------------------------------------------------
# Requests and instances
# ---------------------------------------------------------------------------

@router.post("/requests", response_model=LabRequestResponse, status_code=201)
def create_request(payload: RequestCreate, db: Session = Depends(get_db)):
    with engine_errors():
        request = workflow.create_request(db, payload.patient_ref, payload.exam_ids)
    db.commit()
    return request


@router.get("/requests/{request_id}", response_model=LabRequestResponse)
def get_request(request_id: int, db: Session = Depends(get_db)):
    request = db.get(LabRequest, request_id)
    if request is None:
        raise HTTPException(status_code=404, detail="Request not found")
    return request


@router.get("/instances/{instance_id}/values", response_model=list[ValueSectionResponse])
def get_values_for_instance(instance_id: int, db: Session = Depends(get_db)):
    """Recorded values grouped by section, including retired field versions."""
    with engine_errors():
        sections = results.values_for_instance(db, instance_id)
    return [
        ValueSectionResponse(
            section_name=section.name,
            values=[
                RecordedValueResponse(
                    field_id=recorded.field.id,
                    name=recorded.field.field.name,
                    unit=recorded.field.field.unit,
                    reference_expression=recorded.field.field.reference_range,
                    value=recorded.result.value,
                    observation=recorded.result.observation,
                    out_of_range=recorded.result.out_of_range,
                    origin_exam_name=recorded.field.origin_exam_name,
                    historical=recorded.field.historical,
                    version=recorded.field.field.version,
                )
                for recorded in section.values
            ],
        )
        for section in sections
    ]


@router.post("/instances/{instance_id}/values", response_model=SubmissionResponse)
def submit_value(
    instance_id: int,
    payload: ValueSubmission,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    with engine_errors():
        result = results.submit_value(
            db, instance_id, payload.field_id, payload.value, payload.observation,
            actor=actor,
        )
        workflow.start(db, instance_id, actor=actor)
    db.commit()
    return SubmissionResponse(**vars(result))


@router.post(
    "/instances/{instance_id}/values/batch", response_model=list[SubmissionResponse]
)
def submit_values_batch(
    instance_id: int,
    payload: BatchSubmission,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    """Partial success: rejected items are reported, accepted ones are kept."""
    with engine_errors():
        outcome = results.submit_values_batch(
            db, instance_id, [item.model_dump() for item in payload.values], actor=actor
        )
        if any(item.accepted for item in outcome):
            workflow.start(db, instance_id, actor=actor)
    db.commit()
    return [SubmissionResponse(**vars(item)) for item in outcome]


@router.put("/instances/{instance_id}/legacy-result", response_model=InstanceResponse)
def record_legacy_result(
    instance_id: int,
    payload: LegacyResult,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    with engine_errors():
        instance = results.record_legacy_result(db, instance_id, payload.result, actor=actor)
        workflow.start(db, instance_id, actor=actor)
    db.commit()
    return instance


@router.get("/instances/{instance_id}/completion", response_model=CompletionResponse)
def get_completion(instance_id: int, db: Session = Depends(get_db)):
    """Recomputed on every call; nothing is cached on the instance."""
    with engine_errors():
        instance = results.get_instance(db, instance_id)
        missing = completion.missing_required_fields(db, instance)
        return CompletionResponse(
            instance_id=instance.id,
            complete=completion.is_complete(db, instance),
            status=instance.status,
            suggested_status=completion.suggest_status(db, instance),
            missing_fields=[item.field.name for item in missing],
        )


@router.post("/instances/{instance_id}/complete", response_model=InstanceResponse)
def complete_instance(
    instance_id: int,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    with engine_errors():
        instance = workflow.complete(db, instance_id, actor=actor)
    db.commit()
    return instance


@router.post("/instances/{instance_id}/cancel", response_model=InstanceResponse)
def cancel_instance(
    instance_id: int,
    db: Session = Depends(get_db),
    actor: str | None = Header(None, alias="X-Actor"),
):
    with engine_errors():
        instance = workflow.cancel(db, instance_id, actor=actor)
    db.commit()
    return instance


# ---------------------------------------------------------------------------
# Reference checks
# ---------------------------------------------------------------------------

@router.post("/reference-checks", response_model=list[RangeCheckResponse])
def check_reference_ranges(payload: RangeCheckRequest, db: Session = Depends(get_db)):
    """Evaluate values against their reference ranges without storing them."""
    reports = results.check_values(db, [item.model_dump() for item in payload.values])
    return [RangeCheckResponse(**vars(report)) for report in reports]
