"""
Bulk-load PEOs, PLOs and CLOs for one degree, plus their upward mappings.

    python tools/import_outcomes_csv.py BSCS docs/outcomes.csv

CSV columns: tier, code, description, ordinal, course_code, term_label, maps_to.
CLO rows name their offering by course_code + term_label. maps_to lists
upper-tier codes separated by ';' (PEO codes for a PLO row, PLO codes for a
CLO row). Rows are upserted by code; existing mappings are left alone.
"""

from __future__ import annotations

import csv
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from sqlalchemy import select  # noqa: E402

from obe.db import (  # noqa: E402
    Course,
    CourseLearningOutcome,
    CourseOffering,
    Degree,
    ProgramEducationalObjective,
    ProgramLearningOutcome,
)
from obe.errors import ValidationError  # noqa: E402
from obe.main import SessionLocal, settings  # noqa: E402
from obe.models import Mapping, Tier, parse_tier  # noqa: E402
from obe.storage import SqlStore  # noqa: E402

OUTCOME_MODELS = {
    Tier.PEO: ProgramEducationalObjective,
    Tier.PLO: ProgramLearningOutcome,
    Tier.CLO: CourseLearningOutcome,
}


def parse_codes(raw: str) -> list[str]:
    return [x.strip().upper() for x in str(raw or "").split(";") if x.strip()]


def row_tier(row: dict):
    try:
        return parse_tier(row.get("tier"))
    except ValidationError:
        return None


def parse_ordinal(raw: str):
    raw = str(raw or "").strip()
    return int(raw) if raw.isdigit() else None


def main() -> None:
    if len(sys.argv) < 3:
        raise SystemExit("usage: import_outcomes_csv.py DEGREE_CODE CSV_PATH")
    degree_code = sys.argv[1].strip().upper()
    input_csv = Path(sys.argv[2])
    if not input_csv.is_absolute():
        input_csv = ROOT / input_csv
    if not input_csv.exists():
        raise SystemExit(f"Missing input CSV: {input_csv}")

    with input_csv.open("r", encoding="utf-8-sig", newline="") as f:
        rows = list(csv.DictReader(f))
    # parents first so maps_to can resolve within the same file
    rank = {Tier.PEO: 0, Tier.PLO: 1, Tier.CLO: 2}
    rows = sorted(enumerate(rows, start=2), key=lambda x: rank.get(row_tier(x[1]), 9))

    created = 0
    updated = 0
    mapped = 0
    skipped = []
    with SessionLocal() as db:
        degree = db.scalar(select(Degree).where(Degree.code == degree_code))
        if not degree:
            raise SystemExit(f"Degree not found: {degree_code}")
        store = SqlStore(db)
        offerings = {
            (course.code.upper(), offering.term_label.strip().upper()): offering.id
            for offering, course in db.execute(
                select(CourseOffering, Course).join(Course, Course.id == CourseOffering.course_id).where(CourseOffering.degree_id == degree.id)
            ).all()
        }
        ids: dict[tuple[Tier, str], int] = {}
        for o in store.load_outcomes(Tier.PEO, degree.id) + store.load_outcomes(Tier.PLO, degree.id):
            ids[(o.tier, o.code.upper())] = o.id

        with store.atomic():
            for line_no, row in rows:
                tier = row_tier(row)
                code = str(row.get("code") or "").strip().upper()
                if tier not in OUTCOME_MODELS or not code:
                    skipped.append({"line": line_no, "reason": "tier/code"})
                    continue
                model = OUTCOME_MODELS[tier]
                values = {"description": str(row.get("description") or "").strip()}
                ordinal = parse_ordinal(row.get("ordinal"))
                if tier == Tier.PEO:
                    values["sequence"] = ordinal
                else:
                    values["bloom_level"] = ordinal

                if tier == Tier.CLO:
                    key = (str(row.get("course_code") or "").strip().upper(), str(row.get("term_label") or "").strip().upper())
                    offering_id = offerings.get(key)
                    if offering_id is None:
                        skipped.append({"line": line_no, "reason": f"offering {key[0]} {key[1]} not in {degree_code}"})
                        continue
                    existing = db.scalar(select(model).where(model.course_offering_id == offering_id, model.code == code))
                    scope = {"course_offering_id": offering_id}
                else:
                    existing = db.scalar(select(model).where(model.degree_id == degree.id, model.code == code))
                    scope = {"degree_id": degree.id}

                if existing:
                    for k, v in values.items():
                        setattr(existing, k, v)
                    updated += 1
                    outcome = existing
                else:
                    outcome = model(code=code, **scope, **values)
                    db.add(outcome)
                    created += 1
                db.flush()
                ids[(tier, code)] = outcome.id

                upper = Tier.PEO if tier == Tier.PLO else Tier.PLO if tier == Tier.CLO else None
                for parent_code in parse_codes(row.get("maps_to")) if upper else []:
                    parent_id = ids.get((upper, parent_code))
                    if parent_id is None:
                        skipped.append({"line": line_no, "reason": f"unknown {upper.value} {parent_code}"})
                        continue
                    if store.find_mapping(upper, tier, parent_id, outcome.id) is None:
                        store.save_mapping(
                            Mapping(upper, parent_id, tier, outcome.id, level=settings.attainment.default_mapping_level), True
                        )
                        mapped += 1

    print(
        {
            "degree": degree_code,
            "created": created,
            "updated": updated,
            "mappings_added": mapped,
            "skipped": skipped,
        }
    )


if __name__ == "__main__":
    main()
