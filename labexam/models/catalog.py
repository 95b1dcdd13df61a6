"""
Exam catalog data models.

Records are normalized and keyed by id; services traverse them with explicit
queries instead of live object graphs, so cycle checks and field versioning
stay simple lookups:
- Category / Exam – catalog reference data
- FieldDefinition – versioned parameters owned by an exam
- CompositionLink – parent -> child edges between exams
"""

import uuid
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
    Uuid,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import relationship

from labexam.models.database import Base, JSONType


class ExamKind(str, Enum):
    SIMPLE = "simple"
    COMPOSITE = "composite"
    HYBRID = "hybrid"

    @property
    def allows_own_fields(self) -> bool:
        return _CAPABILITIES[self][0]

    @property
    def allows_components(self) -> bool:
        return _CAPABILITIES[self][1]


# kind -> (own fields, components); every kind must be listed here
_CAPABILITIES: dict[ExamKind, tuple[bool, bool]] = {
    ExamKind.SIMPLE: (True, False),
    ExamKind.COMPOSITE: (False, True),
    ExamKind.HYBRID: (True, True),
}


class FieldType(str, Enum):
    NUMBER = "number"
    TEXT = "text"
    SELECT = "select"
    BOOLEAN = "boolean"
    LONG_TEXT = "long-text"


def _values(enum_cls):
    return [member.value for member in enum_cls]


def _now():
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Category – grouping for the catalog
# ---------------------------------------------------------------------------
class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), unique=True, nullable=False)
    active = Column(Boolean, default=True, nullable=False)


# ---------------------------------------------------------------------------
# Exam – catalog entry, never hard-deleted once referenced
# ---------------------------------------------------------------------------
class Exam(Base):
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(32), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    kind = Column(
        SAEnum(ExamKind, name="exam_kind_enum", values_callable=_values),
        default=ExamKind.SIMPLE,
        nullable=False,
    )
    is_profile = Column(Boolean, default=False, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    sampling_instructions = Column(Text)
    method = Column(String(255))
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    category = relationship("Category")

    __table_args__ = (Index("ix_exams_kind", "kind"),)


# ---------------------------------------------------------------------------
# Field Definition – one version of a logical field slot
# ---------------------------------------------------------------------------
class FieldDefinition(Base):
    __tablename__ = "field_definitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False)
    slot_id = Column(
        Uuid, nullable=False, default=uuid.uuid4,
        comment="Shared by every version of the same logical field",
    )
    name = Column(String(255), nullable=False)
    value_type = Column(
        SAEnum(FieldType, name="field_type_enum", values_callable=_values),
        default=FieldType.TEXT,
        nullable=False,
    )
    unit = Column(String(64))
    reference_range = Column(Text, comment="Free-text reference expression")
    options = Column(JSONType, comment="Allowed choices for select fields")
    required = Column(Boolean, default=False, nullable=False)
    display_order = Column(Integer, default=0, nullable=False)
    section = Column(String(255))
    description = Column(Text)
    active = Column(Boolean, default=True, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    retired_at = Column(DateTime, nullable=True)
    retirement_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    exam = relationship("Exam")

    __table_args__ = (
        UniqueConstraint("slot_id", "version", name="uq_field_slot_version"),
        Index("ix_field_exam_active", "exam_id", "active"),
    )


# ---------------------------------------------------------------------------
# Composition Link – parent exam includes child exam as a component
# ---------------------------------------------------------------------------
class CompositionLink(Base):
    __tablename__ = "composition_links"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parent_exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False)
    child_exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False)
    display_order = Column(Integer, default=0, nullable=False)
    active = Column(Boolean, default=True, nullable=False)

    child = relationship("Exam", foreign_keys=[child_exam_id])

    __table_args__ = (
        UniqueConstraint("parent_exam_id", "child_exam_id", name="uq_composition_pair"),
    )
