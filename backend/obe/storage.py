"""
Storage contracts consumed by the engine and their SQLAlchemy implementation.

The engine components only talk to ``OutcomeStore``, ``ThresholdStore`` and
``ScoreStore``; ``SqlStore`` satisfies all three over one request-scoped
``Session``. Mutations happen inside ``atomic()``: commit on success, rollback
on any error. Reads that hit a storage timeout outside a transaction are
retried once; writes never are.
"""

from __future__ import annotations

import functools
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import (
    AssessmentScore,
    AttainmentThreshold,
    Course,
    CourseLearningOutcome,
    CourseOffering,
    Degree,
    PeoPloMapping,
    PloCloMapping,
    ProgramEducationalObjective,
    ProgramLearningOutcome,
    Survey as SurveyRow,
    SurveyResponse,
    ThresholdGroup,
    storage_call,
)
from .errors import ConcurrentUpdateError, NotFoundError, StorageTimeoutError
from .models import (
    CourseRef,
    Mapping,
    Outcome,
    ResponseRecord,
    ScoreRecord,
    Survey,
    Threshold,
    ThresholdType,
    Tier,
)

logger = logging.getLogger(__name__)


class OutcomeStore(ABC):
    @abstractmethod
    def scope_exists(self, tier: Tier, scope_id: int) -> bool: ...

    @abstractmethod
    def load_outcomes(self, tier: Tier, scope_id: int) -> list[Outcome]: ...

    @abstractmethod
    def find_outcome(self, tier: Tier, outcome_id: int) -> Optional[Outcome]: ...

    @abstractmethod
    def load_courses(self, degree_id: int) -> list[CourseRef]: ...

    @abstractmethod
    def load_offerings(self, degree_id: int) -> list[int]: ...

    @abstractmethod
    def offering_degree(self, offering_id: int) -> Optional[int]: ...

    @abstractmethod
    def load_mapping(self, upper: Tier, lower: Tier, scope_id: int) -> list[Mapping]: ...

    @abstractmethod
    def find_mapping(self, upper: Tier, lower: Tier, source_id: int, target_id: int) -> Optional[Mapping]: ...

    @abstractmethod
    def save_mapping(self, mapping: Mapping, active: bool) -> None: ...

    @abstractmethod
    def update_mapping_level(self, mapping: Mapping) -> None: ...

    @abstractmethod
    def atomic(self): ...


class ThresholdStore(ABC):
    @abstractmethod
    def degree_exists(self, degree_id: int) -> bool: ...

    @abstractmethod
    def load_thresholds(self, degree_id: int, threshold_type: ThresholdType) -> list[Threshold]: ...

    @abstractmethod
    def get_threshold(self, threshold_id: int) -> Optional[Threshold]: ...

    @abstractmethod
    def save_threshold(self, threshold: Threshold) -> Threshold: ...

    @abstractmethod
    def delete_threshold(self, threshold_id: int) -> bool: ...

    @abstractmethod
    def group_version(self, degree_id: int, threshold_type: ThresholdType) -> int: ...

    @abstractmethod
    def bump_group_version(self, degree_id: int, threshold_type: ThresholdType, expected: int) -> bool: ...

    @abstractmethod
    def atomic(self): ...


class ScoreStore(ABC):
    @abstractmethod
    def load_scores(self, outcome_id: int) -> list[ScoreRecord]: ...

    @abstractmethod
    def load_survey_responses(self, survey_id: int, outcome_type: ThresholdType) -> list[ResponseRecord]: ...

    @abstractmethod
    def find_survey(self, survey_id: int) -> Optional[Survey]: ...


MAPPING_TABLES = {
    (Tier.PEO, Tier.PLO): (PeoPloMapping, "peo_id", "plo_id"),
    (Tier.PLO, Tier.CLO): (PloCloMapping, "plo_id", "clo_id"),
}


def idempotent_read(fn):
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            with storage_call(fn.__name__):
                return fn(self, *args, **kwargs)
        except StorageTimeoutError:
            if self._depth:
                raise
            logger.warning("retrying read %s after storage timeout", fn.__name__)
            self.db.rollback()
            with storage_call(fn.__name__):
                return fn(self, *args, **kwargs)

    return wrapper


def _outcome_from_peo(row: ProgramEducationalObjective) -> Outcome:
    return Outcome(id=row.id, tier=Tier.PEO, scope_id=row.degree_id, code=row.code, description=row.description or "", ordinal=row.sequence)


def _outcome_from_plo(row: ProgramLearningOutcome) -> Outcome:
    return Outcome(id=row.id, tier=Tier.PLO, scope_id=row.degree_id, code=row.code, description=row.description or "", ordinal=row.bloom_level)


def _outcome_from_clo(row: CourseLearningOutcome, course_id: Optional[int]) -> Outcome:
    return Outcome(
        id=row.id,
        tier=Tier.CLO,
        scope_id=row.course_offering_id,
        code=row.code,
        description=row.description or "",
        ordinal=row.bloom_level,
        course_id=course_id,
    )


def _threshold_from_row(row: AttainmentThreshold) -> Threshold:
    return Threshold(
        id=row.id,
        degree_id=row.degree_id,
        threshold_type=ThresholdType(row.threshold_type),
        level_name=row.level_name,
        min_percentage=float(row.min_percentage),
        max_percentage=float(row.max_percentage),
        is_attained=bool(row.is_attained),
    )


class SqlStore(OutcomeStore, ThresholdStore, ScoreStore):
    def __init__(self, db: Session):
        self.db = db
        self._depth = 0

    @contextmanager
    def atomic(self) -> Iterator[None]:
        self._depth += 1
        try:
            with storage_call("transaction"):
                yield
                if self._depth == 1:
                    self.db.commit()
        except BaseException:
            if self._depth == 1:
                self.db.rollback()
            raise
        finally:
            self._depth -= 1

    # outcomes

    @idempotent_read
    def scope_exists(self, tier: Tier, scope_id: int) -> bool:
        if tier == Tier.CLO:
            return self.db.get(CourseOffering, scope_id) is not None
        return self.db.get(Degree, scope_id) is not None

    @idempotent_read
    def load_outcomes(self, tier: Tier, scope_id: int) -> list[Outcome]:
        if tier == Tier.PEO:
            rows = self.db.scalars(select(ProgramEducationalObjective).where(ProgramEducationalObjective.degree_id == scope_id)).all()
            return [_outcome_from_peo(r) for r in rows]
        if tier == Tier.PLO:
            rows = self.db.scalars(select(ProgramLearningOutcome).where(ProgramLearningOutcome.degree_id == scope_id)).all()
            return [_outcome_from_plo(r) for r in rows]
        if tier == Tier.CLO:
            offering = self.db.get(CourseOffering, scope_id)
            if not offering:
                return []
            rows = self.db.scalars(select(CourseLearningOutcome).where(CourseLearningOutcome.course_offering_id == scope_id)).all()
            return [_outcome_from_clo(r, offering.course_id) for r in rows]
        return []

    @idempotent_read
    def find_outcome(self, tier: Tier, outcome_id: int) -> Optional[Outcome]:
        if tier == Tier.PEO:
            row = self.db.get(ProgramEducationalObjective, outcome_id)
            return _outcome_from_peo(row) if row else None
        if tier == Tier.PLO:
            row = self.db.get(ProgramLearningOutcome, outcome_id)
            return _outcome_from_plo(row) if row else None
        if tier == Tier.CLO:
            row = self.db.get(CourseLearningOutcome, outcome_id)
            if not row:
                return None
            offering = self.db.get(CourseOffering, row.course_offering_id)
            return _outcome_from_clo(row, offering.course_id if offering else None)
        return None

    @idempotent_read
    def load_courses(self, degree_id: int) -> list[CourseRef]:
        rows = self.db.scalars(
            select(Course).join(CourseOffering, CourseOffering.course_id == Course.id).where(CourseOffering.degree_id == degree_id).distinct()
        ).all()
        return [CourseRef(id=c.id, code=c.code, title=c.title) for c in rows]

    @idempotent_read
    def load_offerings(self, degree_id: int) -> list[int]:
        return list(
            self.db.scalars(select(CourseOffering.id).where(CourseOffering.degree_id == degree_id).order_by(CourseOffering.id.asc())).all()
        )

    @idempotent_read
    def offering_degree(self, offering_id: int) -> Optional[int]:
        offering = self.db.get(CourseOffering, offering_id)
        return offering.degree_id if offering else None

    @idempotent_read
    def load_mapping(self, upper: Tier, lower: Tier, scope_id: int) -> list[Mapping]:
        model, source_col, target_col = MAPPING_TABLES[(upper, lower)]
        stmt = select(model)
        if (upper, lower) == (Tier.PEO, Tier.PLO):
            stmt = stmt.join(ProgramEducationalObjective, ProgramEducationalObjective.id == model.peo_id).where(
                ProgramEducationalObjective.degree_id == scope_id
            )
        else:
            stmt = stmt.join(CourseLearningOutcome, CourseLearningOutcome.id == model.clo_id).where(
                CourseLearningOutcome.course_offering_id == scope_id
            )
        return [
            Mapping(upper, getattr(row, source_col), lower, getattr(row, target_col), level=row.level)
            for row in self.db.scalars(stmt).all()
        ]

    @idempotent_read
    def find_mapping(self, upper: Tier, lower: Tier, source_id: int, target_id: int) -> Optional[Mapping]:
        model, source_col, target_col = MAPPING_TABLES[(upper, lower)]
        row = self.db.scalar(select(model).where(getattr(model, source_col) == source_id, getattr(model, target_col) == target_id))
        if not row:
            return None
        return Mapping(upper, source_id, lower, target_id, level=row.level)

    def save_mapping(self, mapping: Mapping, active: bool) -> None:
        model, source_col, target_col = MAPPING_TABLES[(mapping.source_tier, mapping.target_tier)]
        with storage_call("save_mapping"):
            if active:
                self.db.add(model(**{source_col: mapping.source_id, target_col: mapping.target_id, "level": int(mapping.level)}))
                try:
                    self.db.flush()
                except IntegrityError as exc:
                    logger.warning("duplicate insert for mapping %s:%s -> %s:%s", mapping.source_tier.value, mapping.source_id, mapping.target_tier.value, mapping.target_id)
                    raise ConcurrentUpdateError("Mapping was created by a concurrent request; reload and retry") from exc
                return
            result = self.db.execute(
                delete(model).where(getattr(model, source_col) == mapping.source_id, getattr(model, target_col) == mapping.target_id)
            )
            if result.rowcount == 0:
                logger.warning("mapping %s:%s -> %s:%s already removed", mapping.source_tier.value, mapping.source_id, mapping.target_tier.value, mapping.target_id)
                raise ConcurrentUpdateError("Mapping was removed by a concurrent request; reload and retry")

    def update_mapping_level(self, mapping: Mapping) -> None:
        model, source_col, target_col = MAPPING_TABLES[(mapping.source_tier, mapping.target_tier)]
        with storage_call("update_mapping_level"):
            result = self.db.execute(
                update(model)
                .where(getattr(model, source_col) == mapping.source_id, getattr(model, target_col) == mapping.target_id)
                .values(level=int(mapping.level))
            )
            if result.rowcount == 0:
                raise NotFoundError("Mapping not found")

    # thresholds

    @idempotent_read
    def degree_exists(self, degree_id: int) -> bool:
        return self.db.get(Degree, degree_id) is not None

    @idempotent_read
    def load_thresholds(self, degree_id: int, threshold_type: ThresholdType) -> list[Threshold]:
        rows = self.db.scalars(
            select(AttainmentThreshold)
            .where(AttainmentThreshold.degree_id == degree_id, AttainmentThreshold.threshold_type == threshold_type.value)
            .order_by(AttainmentThreshold.min_percentage.asc(), AttainmentThreshold.id.asc())
        ).all()
        return [_threshold_from_row(r) for r in rows]

    @idempotent_read
    def get_threshold(self, threshold_id: int) -> Optional[Threshold]:
        row = self.db.get(AttainmentThreshold, threshold_id)
        return _threshold_from_row(row) if row else None

    def save_threshold(self, threshold: Threshold) -> Threshold:
        with storage_call("save_threshold"):
            if threshold.id is None:
                row = AttainmentThreshold(degree_id=threshold.degree_id)
                self.db.add(row)
            else:
                row = self.db.get(AttainmentThreshold, threshold.id)
                if not row:
                    raise NotFoundError("Attainment threshold not found", threshold_id=threshold.id)
            row.degree_id = threshold.degree_id
            row.threshold_type = threshold.threshold_type.value
            row.level_name = threshold.level_name
            row.min_percentage = threshold.min_percentage
            row.max_percentage = threshold.max_percentage
            row.is_attained = threshold.is_attained
            self.db.flush()
            return _threshold_from_row(row)

    def delete_threshold(self, threshold_id: int) -> bool:
        with storage_call("delete_threshold"):
            row = self.db.get(AttainmentThreshold, threshold_id)
            if not row:
                return False
            self.db.delete(row)
            self.db.flush()
            return True

    def group_version(self, degree_id: int, threshold_type: ThresholdType) -> int:
        with storage_call("group_version"):
            version = self.db.scalar(
                select(ThresholdGroup.version).where(
                    ThresholdGroup.degree_id == degree_id, ThresholdGroup.threshold_type == threshold_type.value
                )
            )
            if version is None:
                self.db.add(ThresholdGroup(degree_id=degree_id, threshold_type=threshold_type.value, version=0))
                try:
                    self.db.flush()
                except IntegrityError as exc:
                    raise ConcurrentUpdateError("Threshold group was initialised by a concurrent request; retry") from exc
                version = 0
            return version

    def bump_group_version(self, degree_id: int, threshold_type: ThresholdType, expected: int) -> bool:
        with storage_call("bump_group_version"):
            result = self.db.execute(
                update(ThresholdGroup)
                .where(
                    ThresholdGroup.degree_id == degree_id,
                    ThresholdGroup.threshold_type == threshold_type.value,
                    ThresholdGroup.version == expected,
                )
                .values(version=expected + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # scores

    @idempotent_read
    def load_scores(self, outcome_id: int) -> list[ScoreRecord]:
        rows = self.db.scalars(select(AssessmentScore).where(AssessmentScore.clo_id == outcome_id).order_by(AssessmentScore.id.asc())).all()
        return [ScoreRecord(student_id=r.student_id, raw_score=r.raw_score, max_score=r.max_score) for r in rows]

    @idempotent_read
    def load_survey_responses(self, survey_id: int, outcome_type: ThresholdType) -> list[ResponseRecord]:
        rows = self.db.scalars(
            select(SurveyResponse)
            .where(SurveyResponse.survey_id == survey_id, SurveyResponse.outcome_type == outcome_type.value)
            .order_by(SurveyResponse.id.asc())
        ).all()
        return [ResponseRecord(respondent_id=r.respondent_id, outcome_id=r.outcome_id, score=r.score, scale=r.scale) for r in rows]

    @idempotent_read
    def find_survey(self, survey_id: int) -> Optional[Survey]:
        row = self.db.get(SurveyRow, survey_id)
        if not row:
            return None
        return Survey(id=row.id, degree_id=row.degree_id, title=row.title, survey_type=row.survey_type)
