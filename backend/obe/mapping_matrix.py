from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from .errors import InvalidReferenceError, NotFoundError, ValidationError
from .models import Mapping, MappingLevel, Tier
from .outcome_graph import Node, OutcomeGraph, canonical_pair, is_display_only, oriented
from .storage import OutcomeStore

logger = logging.getLogger(__name__)


def coverage_percentage(count: int, opposite_size: int) -> int:
    """count / opposite_size * 100, rounded half-up and clamped to [0, 100]; 0 for an empty axis."""
    if opposite_size <= 0:
        return 0
    pct = math.floor(count / opposite_size * 100 + 0.5)
    return max(0, min(100, pct))


@dataclass
class MappingMatrix:
    row_tier: Tier
    column_tier: Tier
    scope_id: int
    rows: list[Node]
    columns: list[Node]
    by_row: dict[int, set[int]] = field(default_factory=dict)
    by_column: dict[int, set[int]] = field(default_factory=dict)
    levels: dict[tuple[int, int], int] = field(default_factory=dict)
    display_only: bool = False

    @classmethod
    def from_edges(cls, row_tier, column_tier, scope_id, rows, columns, edges, display_only=False) -> "MappingMatrix":
        matrix = cls(
            row_tier=row_tier,
            column_tier=column_tier,
            scope_id=scope_id,
            rows=rows,
            columns=columns,
            by_row={r.id: set() for r in rows},
            by_column={c.id: set() for c in columns},
            display_only=display_only,
        )
        for m in edges:
            row_id, col_id = oriented(m, row_tier)
            matrix.by_row.setdefault(row_id, set()).add(col_id)
            matrix.by_column.setdefault(col_id, set()).add(row_id)
            matrix.levels[(row_id, col_id)] = int(m.level)
        return matrix

    def is_mapped(self, row_id: int, column_id: int) -> bool:
        return column_id in self.by_row.get(row_id, ())

    def row_coverage(self, row_id: int) -> int:
        return len(self.by_row.get(row_id, ()))

    def column_coverage(self, column_id: int) -> int:
        return len(self.by_column.get(column_id, ()))

    def coverage_percentage(self, member_id: int, axis: str = "row") -> int:
        if axis == "row":
            return coverage_percentage(self.row_coverage(member_id), len(self.columns))
        if axis == "column":
            return coverage_percentage(self.column_coverage(member_id), len(self.rows))
        raise ValidationError("axis must be 'row' or 'column'", field="axis")

    @property
    def total_mappings(self) -> int:
        return sum(len(cols) for cols in self.by_row.values())

    def as_record(self) -> dict:
        return {
            "row_tier": self.row_tier.value,
            "column_tier": self.column_tier.value,
            "scope_id": self.scope_id,
            "display_only": self.display_only,
            "rows": [r.as_record() for r in self.rows],
            "columns": [c.as_record() for c in self.columns],
            "edges": [
                {"row_id": row_id, "column_id": col_id, "level": level}
                for (row_id, col_id), level in sorted(self.levels.items())
            ],
            "row_coverage": [
                {"id": r.id, "count": self.row_coverage(r.id), "percentage": self.coverage_percentage(r.id, "row")}
                for r in self.rows
            ],
            "column_coverage": [
                {"id": c.id, "count": self.column_coverage(c.id), "percentage": self.coverage_percentage(c.id, "column")}
                for c in self.columns
            ],
        }


class MappingMatrixService:
    def __init__(self, store: OutcomeStore, default_level: int = MappingLevel.MEDIUM.value):
        self.store = store
        self.graph = OutcomeGraph(store)
        self.default_level = default_level

    def build(self, tier_a: Tier, tier_b: Tier, scope_id: int) -> MappingMatrix:
        rows, columns = self.graph.axes(tier_a, tier_b, scope_id)
        edges = self.graph.get_mappings(tier_a, tier_b, scope_id)
        return MappingMatrix.from_edges(
            Tier(tier_a), Tier(tier_b), scope_id, rows, columns, edges, display_only=is_display_only(tier_a, tier_b)
        )

    def toggle_mapping(self, tier_a: Tier, tier_b: Tier, scope_id: int, row_id: int, column_id: int) -> bool:
        upper, lower = self._editable_pair(tier_a, tier_b)
        with self.store.atomic():
            source_id, target_id = self._resolve_edge(tier_a, tier_b, upper, scope_id, row_id, column_id)
            existing = self.store.find_mapping(upper, lower, source_id, target_id)
            level = existing.level if existing else self.default_level
            active = existing is None
            self.store.save_mapping(Mapping(upper, source_id, lower, target_id, level=level), active)
        logger.info(
            "mapping %s:%s -> %s:%s %s (scope %s)",
            upper.value,
            source_id,
            lower.value,
            target_id,
            "added" if active else "removed",
            scope_id,
        )
        return active

    def set_mapping_level(self, tier_a: Tier, tier_b: Tier, scope_id: int, row_id: int, column_id: int, level: int) -> Mapping:
        if isinstance(level, bool) or not isinstance(level, int) or level not in {m.value for m in MappingLevel}:
            raise ValidationError("Mapping level must be 1 (Low), 2 (Medium) or 3 (High)", field="level")
        upper, lower = self._editable_pair(tier_a, tier_b)
        with self.store.atomic():
            source_id, target_id = self._resolve_edge(tier_a, tier_b, upper, scope_id, row_id, column_id)
            if self.store.find_mapping(upper, lower, source_id, target_id) is None:
                raise NotFoundError("Mapping not found", row_id=row_id, column_id=column_id)
            mapping = Mapping(upper, source_id, lower, target_id, level=level)
            self.store.update_mapping_level(mapping)
        logger.info("mapping %s:%s -> %s:%s level set to %s", upper.value, source_id, lower.value, target_id, level)
        return mapping

    def row_coverage(self, tier_a: Tier, tier_b: Tier, scope_id: int, row_id: int) -> int:
        return self.build(tier_a, tier_b, scope_id).row_coverage(row_id)

    def column_coverage(self, tier_a: Tier, tier_b: Tier, scope_id: int, column_id: int) -> int:
        return self.build(tier_a, tier_b, scope_id).column_coverage(column_id)

    def coverage_percentage(self, tier_a: Tier, tier_b: Tier, scope_id: int, member_id: int, axis: str = "row") -> int:
        return self.build(tier_a, tier_b, scope_id).coverage_percentage(member_id, axis)

    def _editable_pair(self, tier_a: Tier, tier_b: Tier) -> tuple[Tier, Tier]:
        upper, lower = canonical_pair(tier_a, tier_b)
        if is_display_only(upper, lower):
            raise InvalidReferenceError(
                f"{upper.value}/{lower.value} mappings are derived and cannot be edited",
                tier_a=Tier(tier_a).value,
                tier_b=Tier(tier_b).value,
            )
        return upper, lower

    def _resolve_edge(
        self, tier_a: Tier, tier_b: Tier, upper: Tier, scope_id: int, row_id: int, column_id: int
    ) -> tuple[int, int]:
        rows, columns = self.graph.axes(tier_a, tier_b, scope_id)
        missing: Optional[str] = None
        if row_id not in {r.id for r in rows}:
            missing = "row_id"
        elif column_id not in {c.id for c in columns}:
            missing = "column_id"
        if missing:
            raise InvalidReferenceError(
                f"{missing} does not belong to scope {scope_id}", row_id=row_id, column_id=column_id, field=missing
            )
        if Tier(tier_a) == upper:
            return row_id, column_id
        return column_id, row_id
