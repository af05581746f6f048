import os
import sys
from pathlib import Path
from types import SimpleNamespace

os.environ.setdefault("OBE_DATABASE_URL", "sqlite://")
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "backend"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from obe.db import (
    AssessmentScore,
    Base,
    Course,
    CourseLearningOutcome,
    CourseOffering,
    Degree,
    ProgramEducationalObjective,
    ProgramLearningOutcome,
    Survey,
    SurveyResponse,
    User,
)
from obe.models import Threshold, ThresholdType
from obe.storage import SqlStore


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(db):
    return SqlStore(db)


@pytest.fixture
def program(db):
    """
    Degree BSCS with PEOs/PLOs inserted out of display order, one offering of
    CS101 with two CLOs, and a second degree (BSEE) with its own PLO and
    offering for cross-scope checks.
    """
    cs = Degree(code="BSCS", name="BS Computer Science")
    ee = Degree(code="BSEE", name="BS Electrical Engineering")
    cs101 = Course(code="CS101", title="Programming Fundamentals")
    ee201 = Course(code="EE201", title="Circuits")
    db.add_all([cs, ee, cs101, ee201])
    db.flush()

    offering = CourseOffering(course_id=cs101.id, degree_id=cs.id, term_label="Fall 2025")
    ee_offering = CourseOffering(course_id=ee201.id, degree_id=ee.id, term_label="Fall 2025")
    db.add_all([offering, ee_offering])
    db.flush()

    peo2 = ProgramEducationalObjective(degree_id=cs.id, code="PEO2", description="Lifelong learning", sequence=2)
    peo1 = ProgramEducationalObjective(degree_id=cs.id, code="PEO1", description="Professional practice", sequence=1)
    plo10 = ProgramLearningOutcome(degree_id=cs.id, code="PLO10", description="Ethics", bloom_level=3)
    plo2 = ProgramLearningOutcome(degree_id=cs.id, code="PLO2", description="Problem analysis", bloom_level=4)
    plo1 = ProgramLearningOutcome(degree_id=cs.id, code="PLO1", description="Computing knowledge", bloom_level=2)
    ee_plo = ProgramLearningOutcome(degree_id=ee.id, code="PLO1", description="Circuit analysis", bloom_level=4)
    db.add_all([peo2, peo1, plo10, plo2, plo1, ee_plo])
    db.flush()

    clo1 = CourseLearningOutcome(course_offering_id=offering.id, code="CLO1", description="Write programs", bloom_level=3)
    clo2 = CourseLearningOutcome(course_offering_id=offering.id, code="CLO2", description="Trace algorithms", bloom_level=4)
    ee_clo = CourseLearningOutcome(course_offering_id=ee_offering.id, code="CLO1", description="Solve circuits", bloom_level=3)
    db.add_all([clo1, clo2, ee_clo])
    db.flush()

    ids = SimpleNamespace(
        degree_id=cs.id,
        other_degree_id=ee.id,
        course_id=cs101.id,
        offering_id=offering.id,
        other_offering_id=ee_offering.id,
        peo1=peo1.id,
        peo2=peo2.id,
        plo1=plo1.id,
        plo2=plo2.id,
        plo10=plo10.id,
        other_plo=ee_plo.id,
        clo1=clo1.id,
        clo2=clo2.id,
        other_clo=ee_clo.id,
    )
    db.commit()
    return ids


@pytest.fixture
def bands():
    """Example grading bands: 0-59 Not Met, 60-79 Met, 80-100 Exceeded."""

    def make(degree_id, threshold_type=ThresholdType.PLO):
        return [
            Threshold(degree_id, threshold_type, "Not Met", 0, 59, False),
            Threshold(degree_id, threshold_type, "Met", 60, 79, True),
            Threshold(degree_id, threshold_type, "Exceeded", 80, 100, True),
        ]

    return make


@pytest.fixture
def scores(db, program):
    for student, raw in [("S001", 8), ("S002", 6), ("S003", 10), ("S004", 4)]:
        db.add(AssessmentScore(clo_id=program.clo1, student_id=student, raw_score=raw, max_score=10))
    for student, raw in [("S001", 9), ("S002", 9)]:
        db.add(AssessmentScore(clo_id=program.clo2, student_id=student, raw_score=raw, max_score=10))
    db.commit()
    return program


@pytest.fixture
def surveys(db, program):
    current = Survey(degree_id=program.degree_id, title="Exit Survey 2025", survey_type="EXIT")
    previous = Survey(degree_id=program.degree_id, title="Exit Survey 2024", survey_type="EXIT")
    db.add_all([current, previous])
    db.flush()
    ids = SimpleNamespace(current=current.id, previous=previous.id, program=program)
    rows = [
        (current.id, "R1", "PLO", program.plo1, 4),
        (current.id, "R2", "PLO", program.plo1, 3),
        (current.id, "R1", "PLO", program.plo2, 2),
        (current.id, "R1", "CLO", program.clo1, 5),
        (previous.id, "R9", "PLO", program.plo1, 3),
        (previous.id, "R9", "PLO", program.plo2, 3),
    ]
    for survey_id, respondent, outcome_type, outcome_id, score in rows:
        db.add(
            SurveyResponse(
                survey_id=survey_id,
                respondent_id=respondent,
                outcome_type=outcome_type,
                outcome_id=outcome_id,
                score=score,
                scale=5,
            )
        )
    db.commit()
    return ids


@pytest.fixture
def api(session_factory, program):
    from obe import main

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    with session_factory() as session:
        admin = User(username="admin", password="secret", role=main.settings.auth.admin_role)
        viewer = User(username="viewer", password="secret", role="VIEWER")
        session.add_all([admin, viewer])
        session.commit()
        admin_token = main.serializer.dumps({"user_id": admin.id})
        viewer_token = main.serializer.dumps({"user_id": viewer.id})

    main.app.dependency_overrides[main.get_db] = override_get_db
    client = TestClient(main.app)
    yield SimpleNamespace(
        client=client,
        admin={"session_token": admin_token},
        viewer={"session_token": viewer_token},
        program=program,
        main=main,
    )
    main.app.dependency_overrides.clear()
