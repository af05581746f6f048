"""
Read-only projection of the PEO -> PLO -> CLO outcome graph.

Scopes per tier pair:

    PEO/PLO     degree id
    PLO/CLO     course offering id (PLOs of the offering's degree x its CLOs)
    CLO/COURSE  degree id, display only; edges derive from CLO ownership
"""

from __future__ import annotations

import re
from typing import Union

from .errors import InvalidReferenceError, NotFoundError
from .models import CourseRef, Mapping, Outcome, Tier
from .storage import OutcomeStore

TIER_RANK = {Tier.PEO: 0, Tier.PLO: 1, Tier.CLO: 2, Tier.COURSE: 3}
DISPLAY_ONLY_PAIRS = {(Tier.CLO, Tier.COURSE)}

Node = Union[Outcome, CourseRef]


def natural_key(code: str) -> tuple:
    """`PLO2` sorts before `PLO10`."""
    parts = re.split(r"(\d+)", (code or "").upper())
    return tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in parts if p)


def canonical_pair(tier_a: Tier, tier_b: Tier) -> tuple[Tier, Tier]:
    upper, lower = sorted((Tier(tier_a), Tier(tier_b)), key=TIER_RANK.__getitem__)
    if TIER_RANK[lower] - TIER_RANK[upper] != 1:
        raise InvalidReferenceError(
            f"Tiers {Tier(tier_a).value} and {Tier(tier_b).value} are not adjacent",
            tier_a=Tier(tier_a).value,
            tier_b=Tier(tier_b).value,
        )
    return upper, lower


def is_display_only(tier_a: Tier, tier_b: Tier) -> bool:
    return canonical_pair(tier_a, tier_b) in DISPLAY_ONLY_PAIRS


class OutcomeGraph:
    def __init__(self, store: OutcomeStore):
        self.store = store

    def get_outcomes(self, tier: Tier, scope_id: int) -> list[Node]:
        tier = Tier(tier)
        if tier == Tier.COURSE:
            self._require_scope(Tier.PLO, scope_id)
            return sorted(self.store.load_courses(scope_id), key=lambda c: (natural_key(c.code), c.id))
        self._require_scope(tier, scope_id)
        return self._sorted(self.store.load_outcomes(tier, scope_id))

    def axes(self, tier_a: Tier, tier_b: Tier, scope_id: int) -> tuple[list[Node], list[Node]]:
        """Row and column members for the pair, in the requested orientation."""
        upper, lower = canonical_pair(tier_a, tier_b)
        members = self._pair_members(upper, lower, scope_id)
        return members[Tier(tier_a)], members[Tier(tier_b)]

    def get_mappings(self, tier_a: Tier, tier_b: Tier, scope_id: int) -> frozenset[Mapping]:
        upper, lower = canonical_pair(tier_a, tier_b)
        if (upper, lower) == (Tier.CLO, Tier.COURSE):
            clos = self._degree_clos(scope_id)
            return frozenset(Mapping(Tier.CLO, c.id, Tier.COURSE, c.course_id) for c in clos if c.course_id is not None)
        self._require_pair_scope(upper, lower, scope_id)
        return frozenset(self.store.load_mapping(upper, lower, scope_id))

    def adjacency(self, tier_a: Tier, tier_b: Tier, scope_id: int) -> dict[int, set[int]]:
        rows, _ = self.axes(tier_a, tier_b, scope_id)
        adj: dict[int, set[int]] = {r.id: set() for r in rows}
        for m in self.get_mappings(tier_a, tier_b, scope_id):
            row_id, col_id = oriented(m, tier_a)
            adj.setdefault(row_id, set()).add(col_id)
        return adj

    def _pair_members(self, upper: Tier, lower: Tier, scope_id: int) -> dict[Tier, list[Node]]:
        if (upper, lower) == (Tier.PEO, Tier.PLO):
            self._require_scope(Tier.PEO, scope_id)
            return {
                Tier.PEO: self._sorted(self.store.load_outcomes(Tier.PEO, scope_id)),
                Tier.PLO: self._sorted(self.store.load_outcomes(Tier.PLO, scope_id)),
            }
        if (upper, lower) == (Tier.PLO, Tier.CLO):
            self._require_scope(Tier.CLO, scope_id)
            degree_id = self.store.offering_degree(scope_id)
            return {
                Tier.PLO: self._sorted(self.store.load_outcomes(Tier.PLO, degree_id)),
                Tier.CLO: self._sorted(self.store.load_outcomes(Tier.CLO, scope_id)),
            }
        return {
            Tier.CLO: self._degree_clos(scope_id),
            Tier.COURSE: sorted(self.store.load_courses(scope_id), key=lambda c: (natural_key(c.code), c.id)),
        }

    def _degree_clos(self, degree_id: int) -> list[Outcome]:
        self._require_scope(Tier.PLO, degree_id)
        clos: list[Outcome] = []
        for offering_id in self.store.load_offerings(degree_id):
            clos.extend(self.store.load_outcomes(Tier.CLO, offering_id))
        return self._sorted(clos)

    def _require_pair_scope(self, upper: Tier, lower: Tier, scope_id: int) -> None:
        self._require_scope(lower if (upper, lower) == (Tier.PLO, Tier.CLO) else upper, scope_id)

    def _require_scope(self, tier: Tier, scope_id: int) -> None:
        if not self.store.scope_exists(tier, scope_id):
            kind = "Course offering" if tier == Tier.CLO else "Degree"
            raise NotFoundError(f"{kind} not found", scope_id=scope_id)

    @staticmethod
    def _sorted(outcomes: list[Outcome]) -> list[Outcome]:
        def key(o: Outcome):
            if o.tier == Tier.PEO:
                seq = o.ordinal if o.ordinal is not None else float("inf")
                return (seq, natural_key(o.code), o.id)
            return (0, natural_key(o.code), o.id)

        return sorted(outcomes, key=key)


def oriented(mapping: Mapping, row_tier: Tier) -> tuple[int, int]:
    """(row_id, column_id) of a canonical edge for a matrix whose rows are `row_tier`."""
    if mapping.source_tier == Tier(row_tier):
        return mapping.source_id, mapping.target_id
    return mapping.target_id, mapping.source_id
