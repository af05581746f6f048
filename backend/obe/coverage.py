from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .errors import NotFoundError
from .mapping_matrix import MappingMatrixService
from .models import Threshold, ThresholdType, Tier
from .thresholds import ThresholdRegistry, thresholds_overlap


@dataclass(frozen=True)
class Gap:
    start: float
    end: float

    @property
    def width(self) -> float:
        return self.end - self.start

    def as_record(self) -> dict:
        return {"start": self.start, "end": self.end}


def _ordered(thresholds: Iterable[Threshold]) -> list[Threshold]:
    return sorted(thresholds, key=lambda t: (t.min_percentage, t.max_percentage, t.id or 0))


def find_gaps(thresholds: Iterable[Threshold], step: float = 1.0) -> list[Gap]:
    """
    Uncovered stretches of [0, 100].

    Consecutive ranges are contiguous when the next one starts no more than
    `step` after the furthest maximum seen so far, so whole-percent bands such
    as 0-59 / 60-79 leave no gap. With step 0 any distance is a gap. An empty
    group is one gap spanning the whole scale.
    """
    ordered = _ordered(thresholds)
    if not ordered:
        return [Gap(0.0, 100.0)]
    gaps: list[Gap] = []
    if ordered[0].min_percentage > 0:
        gaps.append(Gap(0.0, ordered[0].min_percentage))
    reach = ordered[0].max_percentage
    for nxt in ordered[1:]:
        if nxt.min_percentage - reach > step:
            gaps.append(Gap(reach, nxt.min_percentage))
        reach = max(reach, nxt.max_percentage)
    if reach < 100:
        gaps.append(Gap(reach, 100.0))
    return gaps


def total_coverage(thresholds: Iterable[Threshold]) -> float:
    return min(sum(t.max_percentage - t.min_percentage for t in thresholds), 100.0)


def validate_coverage(thresholds: Iterable[Threshold], step: float = 1.0) -> dict:
    thresholds = list(thresholds)
    gaps = find_gaps(thresholds, step)
    return {
        "is_complete": not gaps,
        "gaps": [g.as_record() for g in gaps],
        "coverage": total_coverage(thresholds),
    }


def find_overlaps(thresholds: Iterable[Threshold], allow_touching: bool = True) -> list[tuple[Threshold, Threshold]]:
    ordered = _ordered(thresholds)
    pairs = []
    for i, a in enumerate(ordered):
        for b in ordered[i + 1:]:
            if thresholds_overlap(a, b, allow_touching):
                pairs.append((a, b))
    return pairs


class CoverageAnalyzer:
    def __init__(
        self,
        registry: ThresholdRegistry,
        matrices: MappingMatrixService,
        contiguity_step: float = 1.0,
    ):
        self.registry = registry
        self.matrices = matrices
        self.contiguity_step = contiguity_step

    def validate_group(self, degree_id: int, threshold_type: ThresholdType) -> dict:
        return validate_coverage(self.registry.list_by_group(degree_id, threshold_type), self.contiguity_step)

    def overlaps_for_group(self, degree_id: int, threshold_type: ThresholdType) -> list[dict]:
        pairs = find_overlaps(self.registry.list_by_group(degree_id, threshold_type), self.registry.allow_touching)
        return [{"first": a.as_record(), "second": b.as_record()} for a, b in pairs]

    def mapping_coverage_summary(self, tier_a: Tier, tier_b: Tier, scope_id: int) -> dict:
        matrix = self.matrices.build(tier_a, tier_b, scope_id)
        per_row = [
            {"id": r.id, "code": r.code, "count": matrix.row_coverage(r.id), "percentage": matrix.coverage_percentage(r.id, "row")}
            for r in matrix.rows
        ]
        per_column = [
            {
                "id": c.id,
                "code": c.code,
                "count": matrix.column_coverage(c.id),
                "percentage": matrix.coverage_percentage(c.id, "column"),
            }
            for c in matrix.columns
        ]
        return {
            "row_tier": matrix.row_tier.value,
            "column_tier": matrix.column_tier.value,
            "scope_id": scope_id,
            "total_rows": len(matrix.rows),
            "total_columns": len(matrix.columns),
            "total_mappings": matrix.total_mappings,
            "per_row_coverage": per_row,
            "per_column_coverage": per_column,
            "unmapped_rows": [r["id"] for r in per_row if r["count"] == 0],
            "unmapped_columns": [c["id"] for c in per_column if c["count"] == 0],
        }

    def program_overview(self, degree_id: int) -> dict:
        if not self.registry.store.degree_exists(degree_id):
            raise NotFoundError("Degree not found", degree_id=degree_id)
        thresholds = {}
        for threshold_type in ThresholdType:
            group = self.registry.list_by_group(degree_id, threshold_type)
            report = validate_coverage(group, self.contiguity_step)
            report["threshold_count"] = len(group)
            report["overlaps"] = [
                {"first": a.as_record(), "second": b.as_record()} for a, b in find_overlaps(group, self.registry.allow_touching)
            ]
            thresholds[threshold_type.value] = report
        return {
            "degree_id": degree_id,
            "thresholds": thresholds,
            "peo_plo_mapping": self.mapping_coverage_summary(Tier.PEO, Tier.PLO, degree_id),
        }
