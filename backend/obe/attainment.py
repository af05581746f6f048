"""
Direct and indirect attainment.

Direct attainment is the mean of raw/max over every assessment record of a
CLO. Indirect attainment groups survey responses per outcome and scales the
average response onto 0-100. An outcome with no records has no attainment
(``None``), which is not the same as 0%.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections import defaultdict
from typing import Iterable, Optional

from .errors import NotFoundError, ValidationError
from .models import (
    AttainmentResult,
    IndirectAttainment,
    ResponseRecord,
    ScoreRecord,
    Threshold,
    ThresholdType,
    Tier,
    parse_threshold_type,
)
from .outcome_graph import OutcomeGraph
from .storage import OutcomeStore, ScoreStore
from .thresholds import ThresholdRegistry, classify_score

logger = logging.getLogger(__name__)

INDIRECT_TYPES = (ThresholdType.PLO, ThresholdType.CLO)


def aggregate_direct(scores: Iterable[ScoreRecord]) -> Optional[float]:
    ratios = []
    for s in scores:
        if s.max_score is None or s.max_score <= 0:
            raise ValidationError(f"max_score must be positive (student {s.student_id})", field="max_score")
        ratios.append(s.raw_score / s.max_score)
    if not ratios:
        return None
    return math.fsum(ratios) / len(ratios) * 100


def aggregate_indirect(responses: Iterable[ResponseRecord]) -> list[IndirectAttainment]:
    grouped: dict[int, list[ResponseRecord]] = defaultdict(list)
    for r in responses:
        if r.scale is None or r.scale <= 0:
            raise ValidationError(f"scale must be positive (respondent {r.respondent_id})", field="scale")
        grouped[r.outcome_id].append(r)

    results = []
    for outcome_id in sorted(grouped):
        rows = grouped[outcome_id]
        n = len(rows)
        average = math.fsum(r.score for r in rows) / n
        scales = {r.scale for r in rows}
        if len(scales) == 1:
            pct = average / scales.pop() * 100
        else:
            # mixed scales: normalise each response before averaging
            pct = math.fsum(r.score / r.scale for r in rows) / n * 100
        results.append(IndirectAttainment(outcome_id=outcome_id, response_count=n, average_score=average, attainment_percentage=pct))
    return results


def trend(current: Optional[float], previous: Optional[float]) -> Optional[dict]:
    if current is None or previous is None:
        return None
    return {"trend": "up" if current >= previous else "down", "trend_value": current - previous}


def weighted_rollup(contributions: Iterable[tuple[Optional[float], float]]) -> Optional[float]:
    """sum(value * weight) / sum(weight) over contributions that carry a value."""
    pairs = [(v, w) for v, w in contributions if v is not None and w > 0]
    total_weight = math.fsum(w for _, w in pairs)
    if not pairs or total_weight <= 0:
        return None
    return math.fsum(v * w for v, w in pairs) / total_weight


class AttainmentAggregator:
    def __init__(
        self,
        registry: ThresholdRegistry,
        outcomes: OutcomeStore,
        scores: ScoreStore,
        direct_weight: float = 0.8,
        indirect_weight: float = 0.2,
        default_mapping_level: int = 2,
        unclassified_label: str = "Unclassified",
    ):
        self.registry = registry
        self.outcomes = outcomes
        self.scores = scores
        self.direct_weight = direct_weight
        self.indirect_weight = indirect_weight
        self.default_mapping_level = default_mapping_level
        self.unclassified_label = unclassified_label

    aggregate_direct = staticmethod(aggregate_direct)
    aggregate_indirect = staticmethod(aggregate_indirect)
    trend = staticmethod(trend)
    weighted_rollup = staticmethod(weighted_rollup)

    def combine(self, direct: Optional[float], indirect: Optional[float]) -> Optional[float]:
        if direct is None:
            return indirect
        if indirect is None:
            return direct
        return direct * self.direct_weight + indirect * self.indirect_weight

    def classify_and_annotate(self, result: AttainmentResult, degree_id: int, threshold_type: ThresholdType) -> AttainmentResult:
        return self._annotate(result, self.registry.list_by_group(degree_id, threshold_type))

    def direct_attainment(self, clo_id: int) -> AttainmentResult:
        clo = self.outcomes.find_outcome(Tier.CLO, clo_id)
        if clo is None:
            raise NotFoundError("CLO not found", clo_id=clo_id)
        degree_id = self.outcomes.offering_degree(clo.scope_id)
        records = self.scores.load_scores(clo_id)
        result = AttainmentResult(
            outcome_id=clo_id,
            outcome_type=ThresholdType.CLO,
            source_id=clo.scope_id,
            attainment_percentage=aggregate_direct(records),
            response_count=len(records),
        )
        return self.classify_and_annotate(result, degree_id, ThresholdType.CLO)

    def calculate_indirect(self, survey_id: int, outcome_type, previous_survey_id: Optional[int] = None) -> list[AttainmentResult]:
        outcome_type = parse_threshold_type(outcome_type)
        if outcome_type not in INDIRECT_TYPES:
            raise ValidationError("outcome_type must be PLO or CLO", field="outcome_type")
        survey = self.scores.find_survey(survey_id)
        if survey is None:
            raise NotFoundError("Survey not found", survey_id=survey_id)

        previous: dict[int, float] = {}
        if previous_survey_id is not None:
            if self.scores.find_survey(previous_survey_id) is None:
                raise NotFoundError("Previous survey not found", survey_id=previous_survey_id)
            previous = {
                r.outcome_id: r.attainment_percentage
                for r in aggregate_indirect(self.scores.load_survey_responses(previous_survey_id, outcome_type))
            }

        thresholds = self.registry.list_by_group(survey.degree_id, outcome_type)
        results = []
        for row in aggregate_indirect(self.scores.load_survey_responses(survey_id, outcome_type)):
            result = AttainmentResult(
                outcome_id=row.outcome_id,
                outcome_type=outcome_type,
                source_id=survey_id,
                attainment_percentage=row.attainment_percentage,
                response_count=row.response_count,
                average_score=row.average_score,
            )
            change = trend(row.attainment_percentage, previous.get(row.outcome_id))
            if change:
                result = dataclasses.replace(result, trend=change["trend"], trend_value=change["trend_value"])
            results.append(self._annotate(result, thresholds))
        logger.info("indirect attainment for survey %s (%s): %d outcome(s)", survey_id, outcome_type.value, len(results))
        return results

    def plo_rollup(self, degree_id: int) -> list[AttainmentResult]:
        plos = OutcomeGraph(self.outcomes).get_outcomes(Tier.PLO, degree_id)
        contributions: dict[int, list[tuple[Optional[float], float]]] = defaultdict(list)
        clo_cache: dict[int, Optional[float]] = {}
        for offering_id in self.outcomes.load_offerings(degree_id):
            for m in self.outcomes.load_mapping(Tier.PLO, Tier.CLO, offering_id):
                if m.target_id not in clo_cache:
                    clo_cache[m.target_id] = aggregate_direct(self.scores.load_scores(m.target_id))
                contributions[m.source_id].append((clo_cache[m.target_id], m.level or self.default_mapping_level))

        thresholds = self.registry.list_by_group(degree_id, ThresholdType.PLO)
        results = []
        for plo in plos:
            result = AttainmentResult(
                outcome_id=plo.id,
                outcome_type=ThresholdType.PLO,
                source_id=degree_id,
                attainment_percentage=weighted_rollup(contributions.get(plo.id, [])),
                response_count=sum(1 for v, _ in contributions.get(plo.id, []) if v is not None),
            )
            results.append(self._annotate(result, thresholds))
        return results

    def _annotate(self, result: AttainmentResult, thresholds: list[Threshold]) -> AttainmentResult:
        matched = classify_score(result.attainment_percentage, thresholds)
        if matched is None:
            return dataclasses.replace(result, matched_threshold_level=self.unclassified_label, is_attained=None)
        return dataclasses.replace(result, matched_threshold_level=matched.level_name, is_attained=matched.is_attained)
