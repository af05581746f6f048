import pytest

from obe.coverage import CoverageAnalyzer, Gap, find_gaps, find_overlaps, total_coverage, validate_coverage
from obe.db import AttainmentThreshold
from obe.errors import NotFoundError
from obe.mapping_matrix import MappingMatrixService
from obe.models import Threshold, ThresholdType, Tier
from obe.thresholds import ThresholdRegistry


def band(lo, hi, name=None):
    return Threshold(1, ThresholdType.PLO, name or f"{lo}-{hi}", lo, hi)


@pytest.fixture
def analyzer(store):
    return CoverageAnalyzer(ThresholdRegistry(store), MappingMatrixService(store))


def test_whole_percent_bands_have_no_gaps(bands):
    assert find_gaps(bands(1)) == []


def test_zero_step_reports_unit_gaps(bands):
    assert find_gaps(bands(1), step=0) == [Gap(59, 60), Gap(79, 80)]


def test_leading_and_trailing_gaps():
    assert find_gaps([band(10, 50)]) == [Gap(0, 10), Gap(50, 100)]


def test_gap_between_distant_ranges_is_reported_in_input_order_independently():
    ranges = [band(70, 100), band(0, 40)]
    assert find_gaps(ranges) == [Gap(40, 70)]


def test_empty_group_is_one_full_gap():
    report = validate_coverage([])
    assert report == {"is_complete": False, "gaps": [{"start": 0.0, "end": 100.0}], "coverage": 0}


def test_nested_ranges_do_not_create_false_gaps():
    assert find_gaps([band(0, 100), band(20, 30), band(40, 50)]) == []


def test_total_coverage_is_capped():
    assert total_coverage([band(0, 80), band(20, 100)]) == 100
    assert total_coverage([band(0, 40), band(60, 70)]) == 50


@pytest.mark.parametrize(
    "ranges",
    [
        [(0, 40), (40, 70), (70, 100)],
        [(20, 40), (60, 100)],
        [(10, 30)],
        [(0, 100)],
    ],
)
def test_coverage_and_gaps_sum_to_full_scale(ranges):
    group = [band(lo, hi) for lo, hi in ranges]
    gaps = find_gaps(group, step=0)
    assert total_coverage(group) + sum(g.width for g in gaps) == 100


def test_validate_coverage_example_bands(bands):
    report = validate_coverage(bands(1))
    assert report["is_complete"] is True
    assert report["gaps"] == []
    assert report["coverage"] == 98


def test_find_overlaps_reports_pairs():
    pairs = find_overlaps([band(0, 50, "A"), band(50, 100, "B"), band(40, 60, "C")])
    assert [(a.level_name, b.level_name) for a, b in pairs] == [("A", "C"), ("C", "B")]
    strict = find_overlaps([band(0, 50, "A"), band(50, 100, "B")], allow_touching=False)
    assert len(strict) == 1


def test_group_reports_use_stored_data(analyzer, db, program):
    for name, lo, hi in [("Low", 0, 60), ("Mid", 55, 75)]:
        db.add(AttainmentThreshold(degree_id=program.degree_id, threshold_type="CLO", level_name=name, min_percentage=lo, max_percentage=hi))
    db.commit()
    report = analyzer.validate_group(program.degree_id, ThresholdType.CLO)
    assert report["gaps"] == [{"start": 75, "end": 100.0}]
    overlaps = analyzer.overlaps_for_group(program.degree_id, ThresholdType.CLO)
    assert [(o["first"]["level_name"], o["second"]["level_name"]) for o in overlaps] == [("Low", "Mid")]


def test_mapping_coverage_summary(analyzer, program):
    matrices = analyzer.matrices
    matrices.toggle_mapping(Tier.PEO, Tier.PLO, program.degree_id, program.peo1, program.plo1)
    matrices.toggle_mapping(Tier.PEO, Tier.PLO, program.degree_id, program.peo1, program.plo2)
    summary = analyzer.mapping_coverage_summary(Tier.PEO, Tier.PLO, program.degree_id)
    assert summary["total_rows"] == 2
    assert summary["total_columns"] == 3
    assert summary["total_mappings"] == 2
    assert summary["per_row_coverage"][0] == {"id": program.peo1, "code": "PEO1", "count": 2, "percentage": 67}
    assert summary["unmapped_rows"] == [program.peo2]
    assert summary["unmapped_columns"] == [program.plo10]


def test_program_overview(analyzer, program, bands):
    for t in bands(program.degree_id):
        analyzer.registry.create(t)
    overview = analyzer.program_overview(program.degree_id)
    assert overview["thresholds"]["PLO"]["is_complete"] is True
    assert overview["thresholds"]["PLO"]["threshold_count"] == 3
    assert overview["thresholds"]["CLO"]["is_complete"] is False
    assert overview["peo_plo_mapping"]["total_rows"] == 2
    with pytest.raises(NotFoundError):
        analyzer.program_overview(9999)


def test_group_reports_require_degree(analyzer, program):
    with pytest.raises(NotFoundError):
        analyzer.validate_group(9999, ThresholdType.PLO)
    with pytest.raises(NotFoundError):
        analyzer.overlaps_for_group(9999, ThresholdType.PLO)
