from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import StorageTimeoutError

logger = logging.getLogger(__name__)

TIMEOUT_MARKERS = ("database is locked", "timeout", "timed out", "canceling statement", "lock wait")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    username: Mapped[str] = mapped_column(String, unique=True, index=True)
    password: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="VIEWER")


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_user_id: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Degree(Base):
    __tablename__ = "degrees"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)


class Course(Base):
    __tablename__ = "courses"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String, unique=True, index=True)
    title: Mapped[str] = mapped_column(String)
    credit_hours: Mapped[float] = mapped_column(Float, default=3.0)


class CourseOffering(Base):
    __tablename__ = "course_offerings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(Integer, ForeignKey("courses.id"), index=True)
    degree_id: Mapped[int] = mapped_column(Integer, ForeignKey("degrees.id"), index=True)
    term_label: Mapped[str] = mapped_column(String)


class ProgramEducationalObjective(Base):
    __tablename__ = "peos"
    __table_args__ = (UniqueConstraint("degree_id", "code", name="uq_peo_degree_code"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    degree_id: Mapped[int] = mapped_column(Integer, ForeignKey("degrees.id"), index=True)
    code: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    sequence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class ProgramLearningOutcome(Base):
    __tablename__ = "plos"
    __table_args__ = (UniqueConstraint("degree_id", "code", name="uq_plo_degree_code"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    degree_id: Mapped[int] = mapped_column(Integer, ForeignKey("degrees.id"), index=True)
    code: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    bloom_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class CourseLearningOutcome(Base):
    __tablename__ = "clos"
    __table_args__ = (UniqueConstraint("course_offering_id", "code", name="uq_clo_offering_code"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_offering_id: Mapped[int] = mapped_column(Integer, ForeignKey("course_offerings.id"), index=True)
    code: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    bloom_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class PeoPloMapping(Base):
    __tablename__ = "peo_plo_mapping"
    __table_args__ = (UniqueConstraint("peo_id", "plo_id", name="uq_peo_plo"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    peo_id: Mapped[int] = mapped_column(Integer, ForeignKey("peos.id"), index=True)
    plo_id: Mapped[int] = mapped_column(Integer, ForeignKey("plos.id"), index=True)
    level: Mapped[int] = mapped_column(Integer, default=2)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class PloCloMapping(Base):
    __tablename__ = "plo_clo_mapping"
    __table_args__ = (UniqueConstraint("plo_id", "clo_id", name="uq_plo_clo"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plo_id: Mapped[int] = mapped_column(Integer, ForeignKey("plos.id"), index=True)
    clo_id: Mapped[int] = mapped_column(Integer, ForeignKey("clos.id"), index=True)
    level: Mapped[int] = mapped_column(Integer, default=2)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ThresholdGroup(Base):
    __tablename__ = "threshold_groups"
    __table_args__ = (UniqueConstraint("degree_id", "threshold_type", name="uq_threshold_group"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    degree_id: Mapped[int] = mapped_column(Integer, ForeignKey("degrees.id"), index=True)
    threshold_type: Mapped[str] = mapped_column(String)
    version: Mapped[int] = mapped_column(Integer, default=0)


class AttainmentThreshold(Base):
    __tablename__ = "attainment_thresholds"
    __table_args__ = (UniqueConstraint("degree_id", "threshold_type", "level_name", name="uq_threshold_level"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    degree_id: Mapped[int] = mapped_column(Integer, ForeignKey("degrees.id"), index=True)
    threshold_type: Mapped[str] = mapped_column(String, index=True)
    level_name: Mapped[str] = mapped_column(String)
    min_percentage: Mapped[float] = mapped_column(Float)
    max_percentage: Mapped[float] = mapped_column(Float)
    is_attained: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AssessmentScore(Base):
    __tablename__ = "assessment_scores"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    clo_id: Mapped[int] = mapped_column(Integer, ForeignKey("clos.id"), index=True)
    student_id: Mapped[str] = mapped_column(String, index=True)
    raw_score: Mapped[float] = mapped_column(Float)
    max_score: Mapped[float] = mapped_column(Float)


class Survey(Base):
    __tablename__ = "surveys"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    degree_id: Mapped[int] = mapped_column(Integer, ForeignKey("degrees.id"), index=True)
    title: Mapped[str] = mapped_column(String)
    survey_type: Mapped[str] = mapped_column(String, default="EXIT")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class SurveyResponse(Base):
    __tablename__ = "survey_responses"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    survey_id: Mapped[int] = mapped_column(Integer, ForeignKey("surveys.id"), index=True)
    respondent_id: Mapped[str] = mapped_column(String)
    outcome_type: Mapped[str] = mapped_column(String)
    outcome_id: Mapped[int] = mapped_column(Integer, index=True)
    score: Mapped[float] = mapped_column(Float)
    scale: Mapped[float] = mapped_column(Float, default=5.0)


def make_engine(url: str, timeout_seconds: float):
    if url.startswith("sqlite"):
        # sqlite waits on locks for `timeout` seconds, then raises "database is locked"
        return create_engine(url, future=True, connect_args={"timeout": timeout_seconds, "check_same_thread": False})
    connect_args: dict = {}
    if url.startswith("postgresql"):
        connect_args = {"options": f"-c statement_timeout={int(timeout_seconds * 1000)}"}
    return create_engine(url, future=True, connect_args=connect_args, pool_timeout=timeout_seconds)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def is_timeout(exc: OperationalError) -> bool:
    text = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in text for marker in TIMEOUT_MARKERS)


@contextmanager
def storage_call(operation: str):
    """Translate driver lock/statement timeouts into StorageTimeoutError."""
    try:
        yield
    except OperationalError as exc:
        if is_timeout(exc):
            logger.warning("storage call %s timed out: %s", operation, exc.orig)
            raise StorageTimeoutError(f"Storage call '{operation}' exceeded its time limit", operation=operation) from exc
        raise
