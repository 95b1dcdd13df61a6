"""Tests for the exam composition graph."""

import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from labexam.errors import InvalidCompositionLink, InvalidKindForOperation, RecordNotFound
from labexam.models.catalog import CompositionLink, ExamKind
from labexam.models.database import Base
from labexam.services import catalog, composition


def test_self_reference_rejected(db, make_exam):
    panel = make_exam(kind=ExamKind.COMPOSITE)
    with pytest.raises(InvalidCompositionLink):
        composition.add_link(db, panel.id, panel.id)


def test_direct_cycle_rejected(db, make_exam):
    a = make_exam("A", kind=ExamKind.HYBRID)
    b = make_exam("B", kind=ExamKind.HYBRID)
    composition.add_link(db, a.id, b.id)

    with pytest.raises(InvalidCompositionLink):
        composition.add_link(db, b.id, a.id)


def test_transitive_cycle_rejected(db, make_exam):
    a = make_exam("A", kind=ExamKind.HYBRID)
    b = make_exam("B", kind=ExamKind.HYBRID)
    c = make_exam("C", kind=ExamKind.HYBRID)
    composition.add_link(db, a.id, b.id)
    composition.add_link(db, b.id, c.id)

    with pytest.raises(InvalidCompositionLink):
        composition.add_link(db, c.id, a.id)
    assert db.query(CompositionLink).count() == 2


def test_parent_must_allow_components(db, make_exam):
    simple = make_exam("Glucose")
    other = make_exam("Urea")
    with pytest.raises(InvalidKindForOperation):
        composition.add_link(db, simple.id, other.id)


def test_composite_child_rejected(db, make_exam):
    panel = make_exam("Panel", kind=ExamKind.COMPOSITE)
    inner = make_exam("Inner panel", kind=ExamKind.COMPOSITE)

    with pytest.raises(InvalidKindForOperation, match="no fields to contribute"):
        composition.add_link(db, panel.id, inner.id)
    assert composition.list_active_children(db, panel.id) == []


def test_inactive_child_rejected(db, make_exam):
    exam = make_exam("Hemogram", kind=ExamKind.HYBRID)
    retired = make_exam("Retired exam")
    catalog.deactivate_exam(db, retired.id)

    with pytest.raises(InvalidKindForOperation, match="inactive"):
        composition.add_link(db, exam.id, retired.id)
    assert composition.list_active_children(db, exam.id) == []


def test_unknown_child(db, make_exam):
    panel = make_exam(kind=ExamKind.COMPOSITE)
    with pytest.raises(RecordNotFound):
        composition.add_link(db, panel.id, 999)


def test_children_are_ordered_and_exclude_inactive_links(db, make_exam):
    panel = make_exam("Panel", kind=ExamKind.COMPOSITE)
    hdl = make_exam("HDL")
    ldl = make_exam("LDL")
    tg = make_exam("Triglycerides")
    composition.add_link(db, panel.id, ldl.id, order=2)
    composition.add_link(db, panel.id, hdl.id, order=1)
    composition.add_link(db, panel.id, tg.id, order=3)
    composition.deactivate_link(db, panel.id, tg.id)

    assert composition.list_active_children(db, panel.id) == [hdl, ldl]


def test_readding_deactivated_link_reactivates_it(db, make_exam):
    panel = make_exam(kind=ExamKind.COMPOSITE)
    part = make_exam()
    link = composition.add_link(db, panel.id, part.id, order=1)
    composition.deactivate_link(db, panel.id, part.id)

    again = composition.add_link(db, panel.id, part.id, order=4)
    assert again.id == link.id
    assert again.active is True
    assert again.display_order == 4


def test_inactive_links_do_not_block_new_links(db, make_exam):
    a = make_exam("A", kind=ExamKind.HYBRID)
    b = make_exam("B", kind=ExamKind.HYBRID)
    composition.add_link(db, a.id, b.id)
    composition.deactivate_link(db, a.id, b.id)

    link = composition.add_link(db, b.id, a.id)
    assert link.active is True


def test_deactivate_missing_link(db, make_exam):
    panel = make_exam(kind=ExamKind.COMPOSITE)
    with pytest.raises(RecordNotFound):
        composition.deactivate_link(db, panel.id, 42)


def test_reorder_links(db, make_exam):
    panel = make_exam(kind=ExamKind.COMPOSITE)
    first = make_exam("First")
    second = make_exam("Second")
    composition.add_link(db, panel.id, first.id, order=1)
    composition.add_link(db, panel.id, second.id, order=2)

    links = composition.reorder_links(db, panel.id, {first.id: 9})
    assert [link.child_exam_id for link in links] == [second.id, first.id]


def test_check_acyclic_topological_order(db, make_exam):
    a = make_exam("A", kind=ExamKind.COMPOSITE)
    b = make_exam("B", kind=ExamKind.HYBRID)
    c = make_exam("C")
    composition.add_link(db, a.id, b.id)
    composition.add_link(db, b.id, c.id)

    assert composition.check_acyclic(db) == [a.id, b.id, c.id]


def test_check_acyclic_detects_out_of_band_cycle(db, make_exam):
    """Links written directly to the table bypass add_link's checks."""
    a = make_exam("A", kind=ExamKind.HYBRID)
    b = make_exam("B", kind=ExamKind.HYBRID)
    db.add_all([
        CompositionLink(parent_exam_id=a.id, child_exam_id=b.id, display_order=0, active=True),
        CompositionLink(parent_exam_id=b.id, child_exam_id=a.id, display_order=0, active=True),
    ])
    db.flush()

    with pytest.raises(InvalidCompositionLink, match="Cycle detected"):
        composition.check_acyclic(db)


def test_graph_reachability():
    graph = composition.CompositionGraph([(1, 2), (2, 3), (4, 3)])
    assert graph.reachable(1, 3)
    assert not graph.reachable(3, 1)
    assert not graph.reachable(4, 1)


def test_concurrent_links_cannot_close_a_cycle(tmp_path):
    """
    Two sessions on one file database: the reverse link waits for the first
    link to commit, then sees it and is rejected.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'graph.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    with Session() as setup:
        parent = catalog.create_exam(setup, code="P", name="Parent", kind=ExamKind.HYBRID)
        child = catalog.create_exam(setup, code="C", name="Child", kind=ExamKind.HYBRID)
        parent_id, child_id = parent.id, child.id
        setup.commit()

    rejected = []

    def add_reverse_link():
        with Session() as session:
            try:
                with composition.graph_mutation():
                    composition.add_link(session, child_id, parent_id)
                    session.commit()
            except InvalidCompositionLink as exc:
                rejected.append(exc)

    first = Session()
    with composition.graph_mutation():
        composition.add_link(first, parent_id, child_id)
        worker = threading.Thread(target=add_reverse_link)
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()
        first.commit()
    worker.join(timeout=5)
    first.close()

    assert not worker.is_alive()
    assert len(rejected) == 1
    with Session() as session:
        assert composition.check_acyclic(session) == [parent_id, child_id]
    engine.dispose()
