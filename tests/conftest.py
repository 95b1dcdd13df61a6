"""
Shared fixtures: an in-memory SQLite database, catalog factories, and an API
client wired to the same database.
"""

import itertools
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from labexam.main import app
from labexam.models.catalog import ExamKind
from labexam.models.database import Base, get_db
from labexam.models.results import InstanceStatus, RequestExamInstance
from labexam.services import catalog, composition, fields


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def client(engine):
    """API client whose get_db dependency points at the test database."""
    testing_session = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    def override_get_db():
        session = testing_session()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def make_exam(db):
    counter = itertools.count(1)

    def _make(name=None, kind=ExamKind.SIMPLE, **kwargs):
        n = next(counter)
        return catalog.create_exam(
            db,
            code=kwargs.pop("code", f"EX{n:03d}"),
            name=name or f"Exam {n}",
            kind=kind,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_field(db):
    def _make(exam, name, value_type="text", **attributes):
        return fields.create_field(
            db, exam.id, {"name": name, "value_type": value_type, **attributes}
        )

    return _make


@pytest.fixture
def make_instance(db):
    def _make(exam, status=InstanceStatus.PENDING, **kwargs):
        instance = RequestExamInstance(exam_id=exam.id, status=status, **kwargs)
        db.add(instance)
        db.flush()
        return instance

    return _make


@pytest.fixture
def hybrid(db, make_exam, make_field, make_instance):
    """
    Hybrid exam E owning F1 (number, required, ref "4-10") with one active
    component C owning F2 (text, required), plus an instance of E.
    """
    exam = make_exam("Hemogram", kind=ExamKind.HYBRID)
    component = make_exam("Smear review")
    f1 = make_field(
        exam, "Hemoglobin", "number", required=True, reference_range="4-10",
        unit="g/dL", display_order=1,
    )
    f2 = make_field(component, "Morphology", "text", required=True, display_order=2)
    composition.add_link(db, exam.id, component.id, order=1)
    instance = make_instance(exam)
    return SimpleNamespace(exam=exam, component=component, f1=f1, f2=f2, instance=instance)
