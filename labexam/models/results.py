"""
Request-side data models: what was ordered and what was recorded.

- LabRequest – a patient request grouping ordered exams
- RequestExamInstance – one exam ordered within a request ("detail")
- ResultValue – one recorded answer per (instance, field)
- AuditLog – immutable trail of catalog and result mutations
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import relationship

from labexam.models.database import Base, JSONType


class InstanceStatus(str, Enum):
    PENDING = "pending"
    IN_PROCESS = "in_process"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def _now():
    return datetime.now(timezone.utc)


def _status_column(name: str):
    return Column(
        SAEnum(
            InstanceStatus,
            name=name,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        default=InstanceStatus.PENDING,
        nullable=False,
    )


# ---------------------------------------------------------------------------
# Lab Request – status is rolled up from its instances
# ---------------------------------------------------------------------------
class LabRequest(Base):
    __tablename__ = "lab_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_ref = Column(String(128), nullable=False, comment="External patient identifier")
    status = _status_column("request_status_enum")
    created_at = Column(DateTime, default=_now, nullable=False)

    instances = relationship(
        "RequestExamInstance", back_populates="request", order_by="RequestExamInstance.id"
    )


# ---------------------------------------------------------------------------
# Request Exam Instance – unit of status tracking and completion
# ---------------------------------------------------------------------------
class RequestExamInstance(Base):
    __tablename__ = "request_exam_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("lab_requests.id"), nullable=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False)
    status = _status_column("instance_status_enum")
    legacy_result = Column(Text, comment="Single free-text result for exams without fields")
    observation = Column(Text)
    completed_at = Column(DateTime, nullable=True)
    recorded_by = Column(String(128))
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    request = relationship("LabRequest", back_populates="instances")
    exam = relationship("Exam")

    __table_args__ = (Index("ix_instance_request", "request_id"),)


# ---------------------------------------------------------------------------
# Result Value – upserted, never appended
# ---------------------------------------------------------------------------
class ResultValue(Base):
    __tablename__ = "result_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Integer, ForeignKey("request_exam_instances.id"), nullable=False)
    field_id = Column(Integer, ForeignKey("field_definitions.id"), nullable=False)
    value = Column(Text)
    observation = Column(Text)
    out_of_range = Column(Boolean, default=False, nullable=False)
    recorded_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, nullable=False)

    field = relationship("FieldDefinition")

    __table_args__ = (
        UniqueConstraint("instance_id", "field_id", name="uq_result_instance_field"),
        Index("ix_result_field", "field_id"),
    )


# ---------------------------------------------------------------------------
# Audit Log – immutable compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False, comment="e.g. retire | revise | submit")
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(64), nullable=False)
    detail = Column(JSONType, comment="Diff or context for the action")
    timestamp = Column(DateTime, default=_now, nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)
