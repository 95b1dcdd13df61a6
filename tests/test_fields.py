"""Tests for the versioned Field Definition Store."""

import pytest

from labexam.errors import (
    FieldVersionConflict,
    InvalidFieldDefinition,
    InvalidKindForOperation,
)
from labexam.models.catalog import ExamKind, FieldType
from labexam.models.results import AuditLog, ResultValue
from labexam.services import fields, results


def test_create_field_starts_active_at_version_one(db, make_exam):
    exam = make_exam("Glucose")
    field = fields.create_field(
        db, exam.id, {"name": "Glucose", "value_type": FieldType.NUMBER, "unit": "mg/dL"}
    )
    assert field.active is True
    assert field.version == 1
    assert field.slot_id is not None
    assert field.value_type == FieldType.NUMBER


def test_composite_exam_cannot_own_fields(db, make_exam):
    panel = make_exam("Lipid panel", kind=ExamKind.COMPOSITE)
    with pytest.raises(InvalidKindForOperation):
        fields.create_field(db, panel.id, {"name": "Total", "value_type": "number"})


def test_invalid_attributes_rejected(db, make_exam):
    exam = make_exam("Urinalysis")
    with pytest.raises(InvalidFieldDefinition):
        fields.create_field(db, exam.id, {"name": "Aspect", "value_type": "select"})


def test_list_active_is_ordered_and_skips_retired(db, make_exam, make_field):
    exam = make_exam("Urinalysis")
    ph = make_field(exam, "pH", "number", display_order=2)
    color = make_field(exam, "Color", display_order=1)
    density = make_field(exam, "Density", "number", display_order=3)
    fields.retire(db, density.id, "duplicate")

    assert fields.list_active(db, exam.id) == [color, ph]


def test_retire_is_idempotent(db, make_exam, make_field):
    field = make_field(make_exam(), "Color")
    fields.retire(db, field.id, "renamed")
    first_stamp = field.retired_at

    again = fields.retire(db, field.id, "second attempt")
    assert again.active is False
    assert again.retired_at == first_stamp
    assert again.retirement_reason == "renamed"


def test_revise_creates_new_version_in_same_slot(db, make_exam, make_field):
    exam = make_exam("Glucose")
    old = make_field(
        exam, "Glucose", "number", unit="mg/dL", reference_range="70-110",
        required=True, display_order=4, section="Chemistry",
    )

    new = fields.revise(db, old.id, {"reference_range": "70-100"}, "new guideline")

    assert new.id != old.id
    assert new.version == 2
    assert new.slot_id == old.slot_id
    assert new.active is True
    assert new.reference_range == "70-100"
    # carried forward
    assert (new.unit, new.required, new.display_order, new.section) == (
        "mg/dL", True, 4, "Chemistry",
    )
    assert old.active is False
    assert old.retirement_reason == "new guideline"
    assert old.retired_at is not None
    assert [f.version for f in fields.version_chain(db, old.slot_id)] == [1, 2]


def test_revising_superseded_version_conflicts(db, make_exam, make_field):
    old = make_field(make_exam(), "Color")
    fields.revise(db, old.id, {"name": "Colour"}, "spelling")

    with pytest.raises(FieldVersionConflict):
        fields.revise(db, old.id, {"name": "Hue"}, "again")


def test_revise_leaves_result_values_on_old_version(db, make_exam, make_field, make_instance):
    exam = make_exam("Glucose")
    old = make_field(exam, "Glucose", "number", reference_range="70-110")
    instance = make_instance(exam)
    results.submit_value(db, instance.id, old.id, "95")

    new = fields.revise(db, old.id, {"reference_range": "70-90"}, "new guideline")

    rows = db.query(ResultValue).filter(ResultValue.instance_id == instance.id).all()
    assert [(r.field_id, r.value, r.out_of_range) for r in rows] == [(old.id, "95", False)]
    assert new.id not in {r.field_id for r in rows}


def test_visible_for_instance_includes_retired_fields_with_values(
    db, make_exam, make_field, make_instance
):
    exam = make_exam("Urinalysis")
    color = make_field(exam, "Color", display_order=1)
    aspect = make_field(exam, "Aspect", display_order=2)
    odor = make_field(exam, "Odor", display_order=3)
    mine = make_instance(exam)
    other = make_instance(exam)
    results.submit_value(db, mine.id, color.id, "yellow")
    results.submit_value(db, other.id, odor.id, "none")

    fields.retire(db, color.id, "renamed")
    fields.retire(db, odor.id, "dropped")

    assert fields.list_visible_for_instance(db, exam.id, mine.id) == [color, aspect]
    assert fields.list_visible_for_instance(db, exam.id, other.id) == [aspect, odor]


def test_update_in_place_without_results(db, make_exam, make_field):
    field = make_field(make_exam(), "Colr")
    updated, versioned = fields.update_definition(db, field.id, {"name": "Color"})

    assert versioned is False
    assert updated.id == field.id
    assert updated.name == "Color"
    assert updated.version == 1


def test_update_with_results_creates_version(db, make_exam, make_field, make_instance):
    exam = make_exam()
    field = make_field(exam, "Color")
    results.submit_value(db, make_instance(exam).id, field.id, "yellow")

    updated, versioned = fields.update_definition(db, field.id, {"name": "Colour"}, "spelling")

    assert versioned is True
    assert updated.id != field.id
    assert updated.version == 2
    assert field.name == "Color"


def test_reactivate_requires_no_active_sibling(db, make_exam, make_field):
    old = make_field(make_exam(), "Color")
    new = fields.revise(db, old.id, {"name": "Colour"}, "spelling")

    with pytest.raises(FieldVersionConflict):
        fields.reactivate(db, old.id)

    fields.retire(db, new.id, "rollback")
    restored = fields.reactivate(db, old.id)
    assert restored.active is True
    assert restored.retired_at is None
    assert restored.retirement_reason is None


def test_reorder(db, make_exam, make_field):
    exam = make_exam()
    a = make_field(exam, "A", display_order=1)
    b = make_field(exam, "B", display_order=2)

    assert fields.reorder(db, exam.id, {a.id: 5, b.id: 0}) == [b, a]


def test_version_operations_are_audited(db, make_exam, make_field):
    field = make_field(make_exam(), "Color")
    fields.revise(db, field.id, {"name": "Colour"}, "spelling", actor="admin")

    actions = [
        (entry.action, entry.actor)
        for entry in db.query(AuditLog).order_by(AuditLog.id).all()
    ]
    assert ("retire", "admin") in actions
    assert ("revise", "admin") in actions
