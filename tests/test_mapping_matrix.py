import pytest

from obe.errors import ConcurrentUpdateError, InvalidReferenceError, NotFoundError, ValidationError
from obe.mapping_matrix import MappingMatrixService, coverage_percentage
from obe.models import Mapping, Tier


@pytest.fixture
def matrices(store):
    return MappingMatrixService(store)


def test_toggle_on_and_off(matrices, program):
    scope = program.degree_id
    assert matrices.toggle_mapping(Tier.PEO, Tier.PLO, scope, program.peo1, program.plo2) is True
    assert matrices.row_coverage(Tier.PEO, Tier.PLO, scope, program.peo1) == 1
    assert matrices.toggle_mapping(Tier.PEO, Tier.PLO, scope, program.peo1, program.plo2) is False
    assert matrices.row_coverage(Tier.PEO, Tier.PLO, scope, program.peo1) == 0


def test_double_toggle_restores_matrix(matrices, program):
    scope = program.degree_id
    matrices.toggle_mapping(Tier.PEO, Tier.PLO, scope, program.peo2, program.plo1)
    before = matrices.build(Tier.PEO, Tier.PLO, scope)
    matrices.toggle_mapping(Tier.PEO, Tier.PLO, scope, program.peo1, program.plo10)
    matrices.toggle_mapping(Tier.PEO, Tier.PLO, scope, program.peo1, program.plo10)
    after = matrices.build(Tier.PEO, Tier.PLO, scope)
    assert after.by_row == before.by_row
    assert after.levels == before.levels


def test_reversed_orientation_writes_canonical_edge(matrices, store, program):
    scope = program.degree_id
    assert matrices.toggle_mapping(Tier.PLO, Tier.PEO, scope, program.plo2, program.peo1) is True
    assert store.find_mapping(Tier.PEO, Tier.PLO, program.peo1, program.plo2) is not None
    matrix = matrices.build(Tier.PEO, Tier.PLO, scope)
    assert matrix.is_mapped(program.peo1, program.plo2)
    assert matrix.column_coverage(program.plo2) == 1


def test_toggle_rejects_member_outside_scope(matrices, store, program):
    with pytest.raises(InvalidReferenceError):
        matrices.toggle_mapping(Tier.PEO, Tier.PLO, program.degree_id, program.peo1, program.other_plo)
    assert store.find_mapping(Tier.PEO, Tier.PLO, program.peo1, program.other_plo) is None


def test_toggle_plo_clo_in_offering(matrices, program):
    scope = program.offering_id
    assert matrices.toggle_mapping(Tier.PLO, Tier.CLO, scope, program.plo1, program.clo1) is True
    with pytest.raises(InvalidReferenceError):
        matrices.toggle_mapping(Tier.PLO, Tier.CLO, scope, program.plo1, program.other_clo)
    assert matrices.column_coverage(Tier.PLO, Tier.CLO, scope, program.clo1) == 1


def test_display_only_pair_cannot_be_toggled(matrices, program):
    with pytest.raises(InvalidReferenceError):
        matrices.toggle_mapping(Tier.CLO, Tier.COURSE, program.degree_id, program.clo1, program.course_id)


def test_new_edges_use_default_level(store, program):
    service = MappingMatrixService(store, default_level=3)
    service.toggle_mapping(Tier.PEO, Tier.PLO, program.degree_id, program.peo1, program.plo1)
    assert store.find_mapping(Tier.PEO, Tier.PLO, program.peo1, program.plo1).level == 3


def test_set_mapping_level(matrices, program):
    scope = program.degree_id
    matrices.toggle_mapping(Tier.PEO, Tier.PLO, scope, program.peo1, program.plo1)
    matrices.set_mapping_level(Tier.PEO, Tier.PLO, scope, program.peo1, program.plo1, 1)
    assert matrices.build(Tier.PEO, Tier.PLO, scope).levels[(program.peo1, program.plo1)] == 1


@pytest.mark.parametrize("level", [0, 4, True, 2.5])
def test_set_mapping_level_rejects_bad_levels(matrices, program, level):
    with pytest.raises(ValidationError):
        matrices.set_mapping_level(Tier.PEO, Tier.PLO, program.degree_id, program.peo1, program.plo1, level)


def test_set_mapping_level_requires_edge(matrices, program):
    with pytest.raises(NotFoundError):
        matrices.set_mapping_level(Tier.PEO, Tier.PLO, program.degree_id, program.peo1, program.plo1, 3)


@pytest.mark.parametrize(
    "count,size,expected",
    [(1, 3, 33), (2, 3, 67), (1, 2, 50), (1, 8, 13), (0, 5, 0), (3, 3, 100), (4, 3, 100), (2, 0, 0)],
)
def test_coverage_percentage(count, size, expected):
    assert coverage_percentage(count, size) == expected


def test_coverage_is_zero_for_empty_opposite_axis(matrices, program):
    # BSEE has PLOs but no PEOs
    matrix = matrices.build(Tier.PLO, Tier.PEO, program.other_degree_id)
    assert matrix.columns == []
    assert matrix.coverage_percentage(program.other_plo, "row") == 0


def test_coverage_bounds_hold_for_every_member(matrices, program):
    scope = program.degree_id
    for peo in (program.peo1, program.peo2):
        for plo in (program.plo1, program.plo2):
            matrices.toggle_mapping(Tier.PEO, Tier.PLO, scope, peo, plo)
    matrix = matrices.build(Tier.PEO, Tier.PLO, scope)
    for r in matrix.rows:
        assert 0 <= matrix.coverage_percentage(r.id, "row") <= 100
    for c in matrix.columns:
        assert 0 <= matrix.coverage_percentage(c.id, "column") <= 100
    assert matrix.coverage_percentage(program.peo1, "row") == 67
    assert matrix.coverage_percentage(program.plo1, "column") == 100
    assert matrix.coverage_percentage(program.plo10, "column") == 0


def test_unknown_axis_is_rejected(matrices, program):
    with pytest.raises(ValidationError):
        matrices.build(Tier.PEO, Tier.PLO, program.degree_id).coverage_percentage(program.peo1, "diagonal")


def test_duplicate_insert_is_a_concurrent_update(store, db, program):
    edge = Mapping(Tier.PEO, program.peo1, Tier.PLO, program.plo1)
    store.save_mapping(edge, True)
    db.commit()
    with pytest.raises(ConcurrentUpdateError):
        store.save_mapping(edge, True)
    db.rollback()


def test_removing_missing_edge_is_a_concurrent_update(store, program):
    with pytest.raises(ConcurrentUpdateError):
        store.save_mapping(Mapping(Tier.PEO, program.peo1, Tier.PLO, program.plo1), False)


def test_failed_toggle_leaves_nothing_behind(matrices, store, program, monkeypatch):
    def fail(mapping, active):
        raise ConcurrentUpdateError("lost race")

    monkeypatch.setattr(store, "save_mapping", fail)
    with pytest.raises(ConcurrentUpdateError):
        matrices.toggle_mapping(Tier.PEO, Tier.PLO, program.degree_id, program.peo1, program.plo1)
    monkeypatch.undo()
    assert store.find_mapping(Tier.PEO, Tier.PLO, program.peo1, program.plo1) is None
