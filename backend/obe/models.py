"""
Plain records passed between the storage layer and the engine components.
Nothing here touches the database.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from .errors import ValidationError


class Tier(str, Enum):
    PEO = "PEO"
    PLO = "PLO"
    CLO = "CLO"
    # Display-only axis of the CLO/Course matrix.
    COURSE = "COURSE"


class ThresholdType(str, Enum):
    CLO = "CLO"
    PLO = "PLO"
    PEO = "PEO"


class MappingLevel(int, Enum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3


def parse_tier(raw: str) -> Tier:
    if isinstance(raw, Tier):
        return raw
    try:
        return Tier(str(raw or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown tier '{raw}'", field="tier") from None


def parse_threshold_type(raw: str) -> ThresholdType:
    if isinstance(raw, ThresholdType):
        return raw
    try:
        return ThresholdType(str(raw or "").strip().upper())
    except ValueError:
        raise ValidationError("threshold_type must be one of CLO, PLO, PEO", field="threshold_type") from None


@dataclass(frozen=True)
class Outcome:
    id: int
    tier: Tier
    scope_id: int
    code: str
    description: str = ""
    ordinal: Optional[int] = None
    course_id: Optional[int] = None

    def as_record(self) -> dict:
        row = asdict(self)
        row["tier"] = self.tier.value
        return row


@dataclass(frozen=True)
class CourseRef:
    id: int
    code: str
    title: str = ""

    tier = Tier.COURSE

    def as_record(self) -> dict:
        return {"id": self.id, "tier": Tier.COURSE.value, "code": self.code, "title": self.title}


@dataclass(frozen=True)
class Mapping:
    """Edge between two adjacent tiers, always stored upper tier first."""

    source_tier: Tier
    source_id: int
    target_tier: Tier
    target_id: int
    level: int = field(default=MappingLevel.MEDIUM.value, compare=False)

    def as_record(self) -> dict:
        return {
            "source_tier": self.source_tier.value,
            "source_id": self.source_id,
            "target_tier": self.target_tier.value,
            "target_id": self.target_id,
            "level": int(self.level),
        }


@dataclass(frozen=True)
class Threshold:
    degree_id: int
    threshold_type: ThresholdType
    level_name: str
    min_percentage: float
    max_percentage: float
    is_attained: bool = True
    id: Optional[int] = None

    def contains(self, score: float) -> bool:
        return self.min_percentage <= score <= self.max_percentage

    def as_record(self) -> dict:
        row = asdict(self)
        row["threshold_type"] = self.threshold_type.value
        return row


@dataclass(frozen=True)
class ScoreRecord:
    student_id: str
    raw_score: float
    max_score: float


@dataclass(frozen=True)
class ResponseRecord:
    respondent_id: str
    outcome_id: int
    score: float
    scale: float


@dataclass(frozen=True)
class Survey:
    id: int
    degree_id: int
    title: str
    survey_type: str = "EXIT"


@dataclass(frozen=True)
class IndirectAttainment:
    outcome_id: int
    response_count: int
    average_score: float
    attainment_percentage: float


@dataclass(frozen=True)
class AttainmentResult:
    outcome_id: int
    outcome_type: ThresholdType
    source_id: Optional[int]
    attainment_percentage: Optional[float]
    matched_threshold_level: Optional[str] = None
    is_attained: Optional[bool] = None
    response_count: Optional[int] = None
    average_score: Optional[float] = None
    trend: Optional[str] = None
    trend_value: Optional[float] = None

    def as_record(self) -> dict:
        row = asdict(self)
        row["outcome_type"] = self.outcome_type.value
        return row
