"""
Field Aggregator.

Computes the complete, ordered list of fields that apply to an exam:
- simple / hybrid exams contribute their own active fields
- composite / hybrid exams contribute the directly owned active fields of
  each active component (composition is one level deep)

Each field is tagged with its originating exam, then the list is stable-sorted
by display order and grouped into sections for presentation. Catalog data may
be edited out of band, so an exam whose kind contradicts its data (a simple
exam with components, a composite exam with own fields) is tolerated: the
side its kind does not allow is ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field as dc_field

from sqlalchemy.orm import Session

from labexam.models.catalog import Exam, FieldDefinition
from labexam.models.results import RequestExamInstance, ResultValue
from labexam.services import composition, fields
from labexam.services.catalog import get_exam

logger = logging.getLogger(__name__)


@dataclass
class AggregatedField:
    """A field definition as seen from one exam."""

    field: FieldDefinition
    origin_exam_name: str
    is_own_field: bool
    historical: bool = False

    @property
    def id(self) -> int:
        return self.field.id

    @property
    def order(self) -> int:
        return self.field.display_order

    @property
    def section(self) -> str:
        return fields.section_of(self.field)

    @property
    def required(self) -> bool:
        return bool(self.field.required)


@dataclass
class FieldSection:
    name: str
    fields: list[AggregatedField] = dc_field(default_factory=list)


def all_fields_for(db: Session, exam: Exam) -> list[AggregatedField]:
    """Own and inherited active fields of ``exam``, sorted by display order."""
    collected: list[AggregatedField] = []

    if exam.kind.allows_own_fields:
        for definition in fields.list_active(db, exam.id):
            collected.append(AggregatedField(definition, exam.name, is_own_field=True))

    links = composition.list_active_links(db, exam.id)
    if exam.kind.allows_components:
        for link in links:
            child = link.child
            for definition in fields.list_active(db, child.id):
                collected.append(AggregatedField(definition, child.name, is_own_field=False))
    elif links:
        logger.debug(
            "Ignoring %d component link(s) on %s exam %s",
            len(links), exam.kind.value, exam.id,
        )

    # sorted() is stable: ties keep own-then-component insertion order
    return sorted(collected, key=lambda f: f.order)


def group_by_section(aggregated: list[AggregatedField]) -> list[FieldSection]:
    """Group fields by section, keeping the order sections are first seen."""
    sections: dict[str, FieldSection] = {}
    for item in aggregated:
        sections.setdefault(item.section, FieldSection(item.section)).fields.append(item)
    return list(sections.values())


def fields_for_exam(db: Session, exam_id: int) -> list[FieldSection]:
    """Section-grouped field layout for an exam."""
    return group_by_section(all_fields_for(db, get_exam(db, exam_id)))


def lineage_exam_ids(db: Session, exam: Exam) -> set[int]:
    """Exams whose own fields can legitimately appear on ``exam``."""
    ids: set[int] = set()
    if exam.kind.allows_own_fields:
        ids.add(exam.id)
    if exam.kind.allows_components:
        ids.update(link.child_exam_id for link in composition.list_active_links(db, exam.id))
    return ids


def visible_fields_for_instance(
    db: Session, instance: RequestExamInstance
) -> list[AggregatedField]:
    """
    The aggregated fields of the instance's exam plus retired definitions that
    already hold a value for this instance, tagged historical.
    """
    exam = instance.exam
    aggregated = all_fields_for(db, exam)
    seen = {item.id for item in aggregated}

    historical = (
        db.query(FieldDefinition)
        .join(ResultValue, ResultValue.field_id == FieldDefinition.id)
        .filter(ResultValue.instance_id == instance.id)
        .order_by(FieldDefinition.display_order, FieldDefinition.id)
        .all()
    )
    for definition in historical:
        if definition.id in seen:
            continue
        aggregated.append(
            AggregatedField(
                definition,
                definition.exam.name,
                is_own_field=definition.exam_id == exam.id,
                historical=not definition.active,
            )
        )
    return sorted(aggregated, key=lambda f: f.order)
