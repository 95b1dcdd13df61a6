"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from labexam.models.catalog import ExamKind, FieldType
from labexam.models.results import InstanceStatus


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class ExamCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    name: str = Field(..., min_length=1, max_length=255)
    kind: ExamKind = ExamKind.SIMPLE
    category_id: int | None = None
    is_profile: bool = False
    sampling_instructions: str | None = None
    method: str | None = None


class ExamResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    kind: ExamKind
    category_id: int | None
    is_profile: bool
    active: bool
    sampling_instructions: str | None
    method: str | None


class KindChange(BaseModel):
    kind: ExamKind


class ComponentCreate(BaseModel):
    child_exam_id: int
    order: int = Field(0, ge=0)


class ComponentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    parent_exam_id: int
    child_exam_id: int
    display_order: int
    active: bool


class OrderItem(BaseModel):
    id: int
    order: int = Field(..., ge=0)


# ---------------------------------------------------------------------------
# Field definitions
# ---------------------------------------------------------------------------

class FieldCreate(BaseModel):
    """Validated again against FIELD_DEFINITION_SCHEMA inside the store."""
    name: str
    value_type: FieldType
    unit: str | None = None
    reference_range: str | None = None
    options: list[str] | None = None
    required: bool = False
    display_order: int = 0
    section: str | None = None
    description: str | None = None


class FieldUpdate(BaseModel):
    name: str | None = None
    value_type: FieldType | None = None
    unit: str | None = None
    reference_range: str | None = None
    options: list[str] | None = None
    required: bool | None = None
    display_order: int | None = None
    section: str | None = None
    description: str | None = None
    reason: str | None = None


class RetireRequest(BaseModel):
    reason: str | None = None


class FieldResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    exam_id: int
    slot_id: UUID
    name: str
    value_type: FieldType
    unit: str | None
    reference_range: str | None
    options: list[str] | None
    required: bool
    display_order: int
    section: str | None
    active: bool
    version: int
    retired_at: datetime | None
    retirement_reason: str | None


class FieldUpdateResponse(BaseModel):
    field: FieldResponse
    versioned: bool


class AggregatedFieldResponse(BaseModel):
    field_id: int
    name: str
    type: FieldType
    unit: str | None
    reference_expression: str | None
    required: bool
    options: list[str] | None
    is_own_field: bool
    origin_exam_name: str
    historical: bool = False


class SectionResponse(BaseModel):
    section_name: str
    fields: list[AggregatedFieldResponse]


# ---------------------------------------------------------------------------
# Requests and result values
# ---------------------------------------------------------------------------

class RequestCreate(BaseModel):
    patient_ref: str = Field(..., min_length=1)
    exam_ids: list[int] = Field(..., min_length=1)


class InstanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_id: int | None
    exam_id: int
    status: InstanceStatus
    legacy_result: str | None
    completed_at: datetime | None
    recorded_by: str | None


class LabRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_ref: str
    status: InstanceStatus
    instances: list[InstanceResponse]


class ValueSubmission(BaseModel):
    field_id: int
    value: str | float | int | bool | None = None
    observation: str | None = None


class BatchSubmission(BaseModel):
    values: list[ValueSubmission] = Field(..., min_length=1, max_length=500)


class SubmissionResponse(BaseModel):
    field_id: int
    accepted: bool
    out_of_range: bool = False
    error: str | None = None


class LegacyResult(BaseModel):
    result: str = Field(..., min_length=1)


class RecordedValueResponse(BaseModel):
    field_id: int
    name: str
    unit: str | None
    reference_expression: str | None
    value: str | None
    observation: str | None
    out_of_range: bool
    origin_exam_name: str
    historical: bool
    version: int


class ValueSectionResponse(BaseModel):
    section_name: str
    values: list[RecordedValueResponse]


class CompletionResponse(BaseModel):
    instance_id: int
    complete: bool
    status: InstanceStatus
    suggested_status: InstanceStatus
    missing_fields: list[str] = []


class RangeCheckRequest(BaseModel):
    values: list[ValueSubmission] = Field(..., min_length=1)


class RangeCheckResponse(BaseModel):
    field_id: int
    value: str | None
    in_range: bool
    field_name: str | None = None
    reference_range: str | None = None
    unit: str | None = None
    value_type: str | None = None
    warning: str | None = None


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
