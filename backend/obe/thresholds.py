"""
Attainment threshold ranges per (degree, outcome type) group.

Ranges are closed percentage intervals. Two ranges overlap when they share
more than a boundary point; a range ending at 80 and the next starting at 80
are touching, and the lower one owns 80 because classification takes the
first match by ascending minimum. ``allow_touching=False`` switches to the
strict closed-interval rule where a shared boundary is already an overlap.

Every write re-reads the group inside the transaction and advances the
group's version with a compare-and-set, so two writers racing on the same
group cannot both commit.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from typing import Iterable, Optional

from .errors import ConcurrentUpdateError, DuplicateLevelError, NotFoundError, OverlapError, ValidationError
from .models import Threshold, ThresholdType, parse_threshold_type
from .storage import ThresholdStore

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("degree_id", "threshold_type", "level_name", "min_percentage", "max_percentage", "is_attained")


def ranges_overlap(a_min: float, a_max: float, b_min: float, b_max: float, allow_touching: bool = True) -> bool:
    if allow_touching:
        if a_min == b_min and a_max == b_max:
            return True
        return a_min < b_max and b_min < a_max
    return a_min <= b_max and b_min <= a_max


def thresholds_overlap(a: Threshold, b: Threshold, allow_touching: bool = True) -> bool:
    return ranges_overlap(a.min_percentage, a.max_percentage, b.min_percentage, b.max_percentage, allow_touching)


def find_conflicts(candidate: Threshold, others: Iterable[Threshold], allow_touching: bool = True) -> list[Threshold]:
    return [
        t
        for t in sorted(others, key=lambda t: (t.min_percentage, t.id or 0))
        if (candidate.id is None or t.id != candidate.id) and thresholds_overlap(candidate, t, allow_touching)
    ]


def classify_score(score: Optional[float], thresholds: Iterable[Threshold]) -> Optional[Threshold]:
    """First threshold by ascending minimum whose closed range holds `score`."""
    if score is None:
        return None
    for t in sorted(thresholds, key=lambda t: (t.min_percentage, t.id or 0)):
        if t.contains(score):
            return t
    return None


def _percentage(value, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number", field=field)
    value = float(value)
    if math.isnan(value) or value < 0 or value > 100:
        raise ValidationError(f"{field} must be between 0 and 100", field=field)
    return value


def validate_threshold(threshold: Threshold) -> Threshold:
    if isinstance(threshold.degree_id, bool) or not isinstance(threshold.degree_id, int):
        raise ValidationError("degree_id must be an integer", field="degree_id")
    level_name = (threshold.level_name or "").strip() if isinstance(threshold.level_name, str) else ""
    if not level_name:
        raise ValidationError("level_name is required", field="level_name")
    if len(level_name) > 100:
        raise ValidationError("level_name must be at most 100 characters", field="level_name")
    min_pct = _percentage(threshold.min_percentage, "min_percentage")
    max_pct = _percentage(threshold.max_percentage, "max_percentage")
    if min_pct > max_pct:
        raise ValidationError("min_percentage must not exceed max_percentage", field="min_percentage")
    if not isinstance(threshold.is_attained, bool):
        raise ValidationError("is_attained must be a boolean", field="is_attained")
    return dataclasses.replace(
        threshold,
        threshold_type=parse_threshold_type(threshold.threshold_type),
        level_name=level_name,
        min_percentage=min_pct,
        max_percentage=max_pct,
    )


class ThresholdRegistry:
    def __init__(self, store: ThresholdStore, allow_touching: bool = True):
        self.store = store
        self.allow_touching = allow_touching

    def create(self, threshold: Threshold) -> Threshold:
        threshold = validate_threshold(dataclasses.replace(threshold, id=None))
        self._require_degree(threshold.degree_id)
        with self.store.atomic():
            version = self.store.group_version(threshold.degree_id, threshold.threshold_type)
            others = self.store.load_thresholds(threshold.degree_id, threshold.threshold_type)
            self._check_group(threshold, others)
            saved = self.store.save_threshold(threshold)
            self._advance(threshold.degree_id, threshold.threshold_type, version)
        logger.info(
            "threshold %s created: %s %s [%s, %s] degree %s",
            saved.id,
            saved.threshold_type.value,
            saved.level_name,
            saved.min_percentage,
            saved.max_percentage,
            saved.degree_id,
        )
        return saved

    def update(self, threshold_id: int, patch: dict) -> Threshold:
        unknown = sorted(set(patch) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown threshold field(s): {', '.join(unknown)}", field=unknown[0])
        current = self.get(threshold_id)
        changes = {k: v for k, v in patch.items() if v is not None}
        if "threshold_type" in changes:
            changes["threshold_type"] = parse_threshold_type(changes["threshold_type"])
        merged = validate_threshold(dataclasses.replace(current, **changes))
        if merged.degree_id != current.degree_id:
            self._require_degree(merged.degree_id)
        moved = (merged.degree_id, merged.threshold_type) != (current.degree_id, current.threshold_type)
        with self.store.atomic():
            version = self.store.group_version(merged.degree_id, merged.threshold_type)
            source_version = self.store.group_version(current.degree_id, current.threshold_type) if moved else None
            others = [t for t in self.store.load_thresholds(merged.degree_id, merged.threshold_type) if t.id != threshold_id]
            self._check_group(merged, others)
            saved = self.store.save_threshold(merged)
            self._advance(merged.degree_id, merged.threshold_type, version)
            if moved:
                self._advance(current.degree_id, current.threshold_type, source_version)
        logger.info("threshold %s updated: %s [%s, %s]", saved.id, saved.level_name, saved.min_percentage, saved.max_percentage)
        return saved

    def delete(self, threshold_id: int) -> Threshold:
        with self.store.atomic():
            current = self.store.get_threshold(threshold_id)
            if current is None:
                raise NotFoundError("Attainment threshold not found", threshold_id=threshold_id)
            version = self.store.group_version(current.degree_id, current.threshold_type)
            if not self.store.delete_threshold(threshold_id):
                raise NotFoundError("Attainment threshold not found", threshold_id=threshold_id)
            self._advance(current.degree_id, current.threshold_type, version)
        logger.info("threshold %s deleted (%s, degree %s)", threshold_id, current.level_name, current.degree_id)
        return current

    def get(self, threshold_id: int) -> Threshold:
        threshold = self.store.get_threshold(threshold_id)
        if threshold is None:
            raise NotFoundError("Attainment threshold not found", threshold_id=threshold_id)
        return threshold

    def delete_by_degree(self, degree_id: int, threshold_type: Optional[ThresholdType] = None) -> int:
        """Remove every threshold of a degree, or of one of its groups. Returns the number removed."""
        self._require_degree(degree_id)
        types = [parse_threshold_type(threshold_type)] if threshold_type is not None else list(ThresholdType)
        removed = 0
        with self.store.atomic():
            for t_type in types:
                version = self.store.group_version(degree_id, t_type)
                rows = self.store.load_thresholds(degree_id, t_type)
                for row in rows:
                    if not self.store.delete_threshold(row.id):
                        raise ConcurrentUpdateError("Thresholds for this group were changed by another request; reload and retry")
                if rows:
                    self._advance(degree_id, t_type, version)
                removed += len(rows)
        logger.info("%s threshold(s) deleted for degree %s", removed, degree_id)
        return removed

    def list_by_group(self, degree_id: int, threshold_type: ThresholdType) -> list[Threshold]:
        self._require_degree(degree_id)
        rows = self.store.load_thresholds(degree_id, parse_threshold_type(threshold_type))
        return sorted(rows, key=lambda t: (t.min_percentage, t.id or 0))

    def list_by_degree(self, degree_id: int) -> list[Threshold]:
        """All groups of a degree, CLO first, each group ordered by minimum."""
        rows: list[Threshold] = []
        for t_type in ThresholdType:
            rows.extend(self.list_by_group(degree_id, t_type))
        return rows

    def classify(self, score: Optional[float], degree_id: int, threshold_type: ThresholdType) -> Optional[Threshold]:
        return classify_score(score, self.list_by_group(degree_id, threshold_type))

    def evaluate(self, score, degree_id: int, threshold_type: ThresholdType) -> dict:
        value = _percentage(score, "score")
        matched = self.classify(value, degree_id, threshold_type)
        return {
            "score": value,
            "degree_id": degree_id,
            "threshold_type": parse_threshold_type(threshold_type).value,
            "level_name": matched.level_name if matched else None,
            "is_attained": matched.is_attained if matched else None,
            "threshold": matched.as_record() if matched else None,
        }

    def _check_group(self, candidate: Threshold, others: list[Threshold]) -> None:
        name = candidate.level_name.casefold()
        for t in others:
            if t.id != candidate.id and t.level_name.strip().casefold() == name:
                raise DuplicateLevelError(
                    f"Level '{candidate.level_name}' already exists for this degree and threshold type",
                    field="level_name",
                )
        conflicts = find_conflicts(candidate, others, self.allow_touching)
        if conflicts:
            logger.warning(
                "threshold [%s, %s] for degree %s %s rejected: overlaps %s",
                candidate.min_percentage,
                candidate.max_percentage,
                candidate.degree_id,
                candidate.threshold_type.value,
                ", ".join(t.level_name for t in conflicts),
            )
            raise OverlapError("Threshold range overlaps with existing threshold(s)", conflicts)

    def _advance(self, degree_id: int, threshold_type: ThresholdType, expected: int) -> None:
        if not self.store.bump_group_version(degree_id, threshold_type, expected):
            logger.warning("threshold group degree %s %s changed concurrently", degree_id, threshold_type.value)
            raise ConcurrentUpdateError("Thresholds for this group were changed by another request; reload and retry")

    def _require_degree(self, degree_id: int) -> None:
        if not self.store.degree_exists(degree_id):
            raise NotFoundError("Degree not found", degree_id=degree_id)
