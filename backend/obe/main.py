from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from itsdangerous import BadSignature, URLSafeSerializer
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.orm import Session

from .attainment import AttainmentAggregator
from .coverage import CoverageAnalyzer
from .db import (
    AssessmentScore,
    AttainmentThreshold,
    AuditLog,
    Base,
    Course,
    CourseLearningOutcome,
    CourseOffering,
    Degree,
    PeoPloMapping,
    PloCloMapping,
    ProgramEducationalObjective,
    ProgramLearningOutcome,
    Survey,
    SurveyResponse,
    User,
    make_engine,
    make_session_factory,
)
from .errors import ObeError
from .mapping_matrix import MappingMatrixService
from .models import Threshold, parse_threshold_type, parse_tier
from .outcome_graph import OutcomeGraph
from .settings import load_settings
from .storage import SqlStore
from .thresholds import ThresholdRegistry

settings = load_settings()
logging.basicConfig(level=settings.logging.level, format=settings.logging.format)
logger = logging.getLogger(__name__)

serializer = URLSafeSerializer(settings.auth.session_secret, salt="obe")
engine = make_engine(settings.db.url, settings.db.timeout_seconds)
SessionLocal = make_session_factory(engine)
app = FastAPI(title=settings.app.name)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])


class CamelIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginIn(BaseModel):
    username: str
    password: str


class MappingCellIn(CamelIn):
    tier_a: str
    tier_b: str
    scope: int
    row_id: int
    column_id: int


class MappingLevelIn(MappingCellIn):
    level: int


class ThresholdIn(CamelIn):
    degree_id: int
    threshold_type: str = Field(validation_alias=AliasChoices("type", "thresholdType", "threshold_type"))
    level_name: str
    min_percentage: float = Field(validation_alias=AliasChoices("min", "minPercentage", "min_percentage"))
    max_percentage: float = Field(validation_alias=AliasChoices("max", "maxPercentage", "max_percentage"))
    is_attained: bool = True


class ThresholdPatchIn(CamelIn):
    degree_id: Optional[int] = None
    threshold_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("type", "thresholdType", "threshold_type"))
    level_name: Optional[str] = None
    min_percentage: Optional[float] = Field(default=None, validation_alias=AliasChoices("min", "minPercentage", "min_percentage"))
    max_percentage: Optional[float] = Field(default=None, validation_alias=AliasChoices("max", "maxPercentage", "max_percentage"))
    is_attained: Optional[bool] = None


class EvaluateIn(CamelIn):
    score: float
    degree_id: int
    threshold_type: str = Field(validation_alias=AliasChoices("type", "thresholdType", "threshold_type"))


class IndirectCalculateIn(CamelIn):
    survey_id: int
    outcome_type: str
    previous_survey_id: Optional[int] = None


def camelize(value: Any) -> Any:
    if isinstance(value, dict):
        return {to_camel(k) if isinstance(k, str) and "_" in k else k: camelize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [camelize(v) for v in value]
    return value


@app.exception_handler(ObeError)
async def obe_error_handler(request: Request, exc: ObeError):
    return JSONResponse(status_code=exc.status_code, content=camelize(exc.as_dict()))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(session_token: str = Query(...), db: Session = Depends(get_db)) -> User:
    try:
        payload = serializer.loads(session_token)
    except BadSignature as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    user = db.get(User, payload["user_id"])
    if not user:
        raise HTTPException(status_code=401, detail="Invalid user")
    return user


def require_admin(user: User = Depends(current_user)) -> User:
    if user.role != settings.auth.admin_role:
        raise HTTPException(status_code=403, detail=f"{settings.auth.admin_role} role required")
    return user


def write_audit(db: Session, user: User, action: str, entity: str, entity_id: str, payload: Optional[str] = None) -> None:
    db.add(AuditLog(actor_user_id=user.id, action=action, entity_type=entity, entity_id=entity_id, payload=payload))
    db.commit()


def get_store(db: Session = Depends(get_db)) -> SqlStore:
    return SqlStore(db)


def get_matrices(store: SqlStore = Depends(get_store)) -> MappingMatrixService:
    return MappingMatrixService(store, default_level=settings.attainment.default_mapping_level)


def get_registry(store: SqlStore = Depends(get_store)) -> ThresholdRegistry:
    return ThresholdRegistry(store, allow_touching=settings.thresholds.allow_touching_boundaries)


def get_analyzer(
    registry: ThresholdRegistry = Depends(get_registry), matrices: MappingMatrixService = Depends(get_matrices)
) -> CoverageAnalyzer:
    return CoverageAnalyzer(registry, matrices, contiguity_step=settings.thresholds.contiguity_step)


def get_aggregator(store: SqlStore = Depends(get_store), registry: ThresholdRegistry = Depends(get_registry)) -> AttainmentAggregator:
    cfg = settings.attainment
    return AttainmentAggregator(
        registry,
        store,
        store,
        direct_weight=cfg.direct_weight,
        indirect_weight=cfg.indirect_weight,
        default_mapping_level=cfg.default_mapping_level,
        unclassified_label=cfg.unclassified_label,
    )


def seed_demo_data(db: Session) -> dict:
    """One degree with a complete outcome chain. Re-running is a no-op."""
    degree = db.scalar(select(Degree).where(Degree.code == "BSSE"))
    if degree:
        return {"degree_id": degree.id, "created": False}

    degree = Degree(code="BSSE", name="BS Software Engineering")
    course = Course(code="SE-101", title="Introduction to Software Engineering", credit_hours=4.0)
    db.add_all([degree, course])
    db.flush()
    offering = CourseOffering(course_id=course.id, degree_id=degree.id, term_label="Fall 2025")
    db.add(offering)
    db.flush()

    peos = [
        ProgramEducationalObjective(degree_id=degree.id, code=f"PEO{i}", description=text, sequence=i)
        for i, text in enumerate(
            ["Practise computing professionally", "Pursue lifelong learning", "Lead multidisciplinary teams"], start=1
        )
    ]
    plos = [
        ProgramLearningOutcome(degree_id=degree.id, code=f"PLO{i}", description=text, bloom_level=lvl)
        for i, (text, lvl) in enumerate(
            [("Computing knowledge", 2), ("Problem analysis", 4), ("Design solutions", 5), ("Communication", 3)], start=1
        )
    ]
    clos = [
        CourseLearningOutcome(course_offering_id=offering.id, code=f"CLO{i}", description=text, bloom_level=lvl)
        for i, (text, lvl) in enumerate([("Write programs", 3), ("Trace algorithms", 4), ("Explain code", 2)], start=1)
    ]
    db.add_all(peos + plos + clos)
    db.flush()

    for peo, plo_idx, level in [(0, 0, 3), (0, 1, 2), (1, 3, 2), (2, 2, 3), (2, 3, 1)]:
        db.add(PeoPloMapping(peo_id=peos[peo].id, plo_id=plos[plo_idx].id, level=level))
    for plo_idx, clo_idx, level in [(0, 0, 3), (1, 1, 3), (2, 0, 2), (3, 2, 2)]:
        db.add(PloCloMapping(plo_id=plos[plo_idx].id, clo_id=clos[clo_idx].id, level=level))

    bands = [("Not Met", 0, 59, False), ("Met", 60, 79, True), ("Exceeded", 80, 100, True)]
    for threshold_type in ("CLO", "PLO"):
        for name, lo, hi, attained in bands:
            db.add(
                AttainmentThreshold(
                    degree_id=degree.id,
                    threshold_type=threshold_type,
                    level_name=name,
                    min_percentage=lo,
                    max_percentage=hi,
                    is_attained=attained,
                )
            )

    marks = {0: [18, 15, 12, 19], 1: [14, 9, 16, 11], 2: [17, 13, 20, 8]}
    for clo_idx, raw in marks.items():
        for n, value in enumerate(raw, start=1):
            db.add(AssessmentScore(clo_id=clos[clo_idx].id, student_id=f"S{n:03d}", raw_score=value, max_score=20))

    survey = Survey(degree_id=degree.id, title="Graduating Student Exit Survey 2025", survey_type="EXIT")
    db.add(survey)
    db.flush()
    for n, scores in enumerate([[4, 5, 3, 4], [3, 4, 4, 5], [5, 4, 3, 3]], start=1):
        for plo, score in zip(plos, scores):
            db.add(SurveyResponse(survey_id=survey.id, respondent_id=f"R{n:03d}", outcome_type="PLO", outcome_id=plo.id, score=score, scale=5))
    db.flush()
    return {
        "degree_id": degree.id,
        "course_offering_id": offering.id,
        "survey_id": survey.id,
        "peos": len(peos),
        "plos": len(plos),
        "clos": len(clos),
        "created": True,
    }


@app.on_event("startup")
def startup():
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        if not db.scalar(select(User).where(User.username == "obe_admin")):
            db.add(User(username="obe_admin", password="obe_admin", role=settings.auth.admin_role))
            db.add(User(username="obe_viewer", password="obe_viewer", role="VIEWER"))
            db.commit()
    logger.info("%s started (%s)", settings.app.name, settings.app.environment)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/demo/load-data")
def load_demo_data(db: Session = Depends(get_db), user: User = Depends(require_admin)):
    summary = seed_demo_data(db)
    db.commit()
    write_audit(db, user, "SEED_DEMO_DATA", "System", "demo", json.dumps(summary))
    return {"status": "ok", "summary": camelize(summary)}


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = db.scalar(select(User).where(User.username == payload.username))
    if not user or user.password != payload.password:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"session_token": serializer.dumps({"user_id": user.id}), "role": user.role}


@app.get("/outcomes/{tier}")
def list_outcomes(tier: str, scope: int, store: SqlStore = Depends(get_store), _: User = Depends(current_user)):
    return camelize([o.as_record() for o in OutcomeGraph(store).get_outcomes(parse_tier(tier), scope)])


@app.get("/mappings")
def get_matrix(
    tier_a: str = Query(..., alias="tierA"),
    tier_b: str = Query(..., alias="tierB"),
    scope: int = Query(...),
    matrices: MappingMatrixService = Depends(get_matrices),
    _: User = Depends(current_user),
):
    return camelize(matrices.build(parse_tier(tier_a), parse_tier(tier_b), scope).as_record())


@app.post("/mappings/toggle")
def toggle_mapping(
    payload: MappingCellIn,
    db: Session = Depends(get_db),
    matrices: MappingMatrixService = Depends(get_matrices),
    user: User = Depends(require_admin),
):
    tier_a, tier_b = parse_tier(payload.tier_a), parse_tier(payload.tier_b)
    active = matrices.toggle_mapping(tier_a, tier_b, payload.scope, payload.row_id, payload.column_id)
    write_audit(db, user, "MAP" if active else "UNMAP", f"{tier_a.value}-{tier_b.value}", f"{payload.row_id}:{payload.column_id}", str(payload.model_dump()))
    return {"active": active}


@app.put("/mappings/level")
def set_mapping_level(
    payload: MappingLevelIn,
    db: Session = Depends(get_db),
    matrices: MappingMatrixService = Depends(get_matrices),
    user: User = Depends(require_admin),
):
    tier_a, tier_b = parse_tier(payload.tier_a), parse_tier(payload.tier_b)
    mapping = matrices.set_mapping_level(tier_a, tier_b, payload.scope, payload.row_id, payload.column_id, payload.level)
    write_audit(db, user, "MAPPING_LEVEL", f"{tier_a.value}-{tier_b.value}", f"{payload.row_id}:{payload.column_id}", str(payload.level))
    return camelize(mapping.as_record())


@app.get("/mappings/coverage")
def mapping_coverage(
    tier_a: str = Query(..., alias="tierA"),
    tier_b: str = Query(..., alias="tierB"),
    scope: int = Query(...),
    analyzer: CoverageAnalyzer = Depends(get_analyzer),
    _: User = Depends(current_user),
):
    return camelize(analyzer.mapping_coverage_summary(parse_tier(tier_a), parse_tier(tier_b), scope))


@app.post("/thresholds", status_code=201)
def create_threshold(
    payload: ThresholdIn,
    db: Session = Depends(get_db),
    registry: ThresholdRegistry = Depends(get_registry),
    user: User = Depends(require_admin),
):
    created = registry.create(
        Threshold(
            degree_id=payload.degree_id,
            threshold_type=parse_threshold_type(payload.threshold_type),
            level_name=payload.level_name,
            min_percentage=payload.min_percentage,
            max_percentage=payload.max_percentage,
            is_attained=payload.is_attained,
        )
    )
    write_audit(db, user, "CREATE", "AttainmentThreshold", str(created.id), str(payload.model_dump()))
    return camelize(created.as_record())


@app.get("/thresholds")
def list_thresholds(
    degree_id: int = Query(..., alias="degreeId"),
    threshold_type: Optional[str] = Query(None, alias="type"),
    q: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    registry: ThresholdRegistry = Depends(get_registry),
    _: User = Depends(current_user),
):
    if threshold_type:
        rows = registry.list_by_group(degree_id, parse_threshold_type(threshold_type))
    else:
        rows = registry.list_by_degree(degree_id)
    if q:
        rows = [t for t in rows if q.lower() in t.level_name.lower()]
    return camelize([t.as_record() for t in rows[offset: offset + limit]])


@app.delete("/thresholds")
def delete_degree_thresholds(
    degree_id: int = Query(..., alias="degreeId"),
    threshold_type: Optional[str] = Query(None, alias="type"),
    db: Session = Depends(get_db),
    registry: ThresholdRegistry = Depends(get_registry),
    user: User = Depends(require_admin),
):
    parsed = parse_threshold_type(threshold_type) if threshold_type else None
    removed = registry.delete_by_degree(degree_id, parsed)
    write_audit(db, user, "DELETE_GROUP", "AttainmentThreshold", str(degree_id), parsed.value if parsed else "ALL")
    return {"degreeId": degree_id, "deletedCount": removed}


@app.post("/thresholds/evaluate")
def evaluate_threshold(payload: EvaluateIn, registry: ThresholdRegistry = Depends(get_registry), _: User = Depends(current_user)):
    return camelize(registry.evaluate(payload.score, payload.degree_id, parse_threshold_type(payload.threshold_type)))


@app.get("/thresholds/{threshold_id}")
def get_threshold(threshold_id: int, registry: ThresholdRegistry = Depends(get_registry), _: User = Depends(current_user)):
    return camelize(registry.get(threshold_id).as_record())


@app.put("/thresholds/{threshold_id}")
def update_threshold(
    threshold_id: int,
    payload: ThresholdPatchIn,
    db: Session = Depends(get_db),
    registry: ThresholdRegistry = Depends(get_registry),
    user: User = Depends(require_admin),
):
    patch = payload.model_dump(exclude_unset=True)
    updated = registry.update(threshold_id, patch)
    write_audit(db, user, "UPDATE", "AttainmentThreshold", str(threshold_id), str(patch))
    return camelize(updated.as_record())


@app.delete("/thresholds/{threshold_id}")
def delete_threshold(
    threshold_id: int,
    db: Session = Depends(get_db),
    registry: ThresholdRegistry = Depends(get_registry),
    user: User = Depends(require_admin),
):
    removed = registry.delete(threshold_id)
    write_audit(db, user, "DELETE", "AttainmentThreshold", str(threshold_id), removed.level_name)
    return {"status": "deleted"}


@app.post("/attainment/indirect/calculate")
def calculate_indirect(
    payload: IndirectCalculateIn,
    aggregator: AttainmentAggregator = Depends(get_aggregator),
    _: User = Depends(current_user),
):
    results = aggregator.calculate_indirect(payload.survey_id, payload.outcome_type, payload.previous_survey_id)
    return camelize([r.as_record() for r in results])


@app.get("/attainment/direct/{clo_id}")
def direct_attainment(clo_id: int, aggregator: AttainmentAggregator = Depends(get_aggregator), _: User = Depends(current_user)):
    return camelize(aggregator.direct_attainment(clo_id).as_record())


@app.get("/attainment/plo/rollup")
def plo_rollup(
    degree_id: int = Query(..., alias="degreeId"),
    aggregator: AttainmentAggregator = Depends(get_aggregator),
    _: User = Depends(current_user),
):
    return camelize([r.as_record() for r in aggregator.plo_rollup(degree_id)])


@app.get("/attainment/coverage/validate")
def validate_threshold_coverage(
    degree_id: int = Query(..., alias="degreeId"),
    threshold_type: str = Query(..., alias="type"),
    analyzer: CoverageAnalyzer = Depends(get_analyzer),
    _: User = Depends(current_user),
):
    return camelize(analyzer.validate_group(degree_id, parse_threshold_type(threshold_type)))


@app.get("/attainment/coverage/overlaps")
def threshold_overlaps(
    degree_id: int = Query(..., alias="degreeId"),
    threshold_type: str = Query(..., alias="type"),
    analyzer: CoverageAnalyzer = Depends(get_analyzer),
    _: User = Depends(current_user),
):
    return camelize(analyzer.overlaps_for_group(degree_id, parse_threshold_type(threshold_type)))


@app.get("/programs/{degree_id}/overview")
def program_overview(degree_id: int, analyzer: CoverageAnalyzer = Depends(get_analyzer), _: User = Depends(current_user)):
    return camelize(analyzer.program_overview(degree_id))
