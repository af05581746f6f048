from __future__ import annotations

import csv
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
OUT_PATH = ROOT / "docs" / "threshold_coverage_qc_report.csv"
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from sqlalchemy import select  # noqa: E402

from obe.coverage import find_gaps, find_overlaps, total_coverage  # noqa: E402
from obe.db import Degree  # noqa: E402
from obe.main import SessionLocal, settings  # noqa: E402
from obe.models import ThresholdType  # noqa: E402
from obe.storage import SqlStore  # noqa: E402
from obe.thresholds import ThresholdRegistry  # noqa: E402


def main() -> None:
    out_path = Path(sys.argv[1]) if len(sys.argv) > 1 else OUT_PATH
    step = settings.thresholds.contiguity_step
    allow_touching = settings.thresholds.allow_touching_boundaries
    export_rows = []
    with SessionLocal() as db:
        registry = ThresholdRegistry(SqlStore(db), allow_touching=allow_touching)
        for degree in db.scalars(select(Degree).order_by(Degree.code.asc())).all():
            for threshold_type in ThresholdType:
                group = registry.list_by_group(degree.id, threshold_type)
                gaps = find_gaps(group, step)
                overlaps = find_overlaps(group, allow_touching)
                if not group:
                    status = "MISSING"
                elif overlaps:
                    status = "OVERLAP"
                elif gaps:
                    status = "GAPS"
                else:
                    status = "OK"
                export_rows.append(
                    {
                        "degree_code": degree.code,
                        "threshold_type": threshold_type.value,
                        "status": status,
                        "threshold_count": len(group),
                        "coverage": total_coverage(group),
                        "gaps": "; ".join(f"{g.start:g}-{g.end:g}" for g in gaps),
                        "overlaps": "; ".join(f"{a.level_name}/{b.level_name}" for a, b in overlaps),
                    }
                )
    status_rank = {"OVERLAP": 0, "GAPS": 1, "MISSING": 2, "OK": 3}
    export_rows.sort(key=lambda x: (status_rank[x["status"]], x["degree_code"], x["threshold_type"]))
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=list(export_rows[0].keys()) if export_rows else [])
        writer.writeheader()
        writer.writerows(export_rows)
    print(
        {
            "rows": len(export_rows),
            "flagged": sum(1 for r in export_rows if r["status"] != "OK"),
            "path": str(out_path),
        }
    )


if __name__ == "__main__":
    main()
