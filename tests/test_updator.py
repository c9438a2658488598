import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from dtseg_reco.geometry import DRIFT_VELOCITY, CellSide, build_chamber
from dtseg_reco.hit_pool import HitPool
from dtseg_reco.segment import AssPoint, SegmentCandidate
from dtseg_reco.updator import FitModel, SegmentUpdator
from dtseg_reco.utils import hits_on_line, truth_sides


@pytest.fixture
def sl():
    return build_chamber()[1]


def _candidate(sl, x0=1.0, slope=0.1, t0_shift=0.0, layers=(1, 2, 3, 4), flip=False):
    pairs = hits_on_line(sl, x0, slope, layers, t0_shift=t0_shift)
    sides = truth_sides(sl, pairs, x0, slope)
    if flip:
        sides = [CellSide.LEFT if s is CellSide.RIGHT else CellSide.RIGHT for s in sides]
    pool = HitPool(sl, pairs)
    return SegmentCandidate.from_points([AssPoint(h, s) for h, s in zip(pool.hits, sides)], sl)


def test_fit_model_parse():
    assert FitModel.parse("LINEAR_T0") is FitModel.LINEAR_T0
    assert FitModel.parse(FitModel.LINEAR) is FitModel.LINEAR
    with pytest.raises(ValueError):
        FitModel.parse("helix")


def test_fit_exact_line_with_t0(sl):
    seg = _candidate(sl)
    assert SegmentUpdator().fit(seg, FitModel.LINEAR_T0)
    assert seg.fitted_t0
    assert seg.ndof == 1
    assert seg.t0 == pytest.approx(0.0, abs=1e-6)
    assert seg.slope == pytest.approx(0.1)
    assert seg.position == pytest.approx(1.0)
    assert seg.chi2 == pytest.approx(0.0, abs=1e-9)
    assert seg.good()


def test_fit_recovers_time_offset(sl):
    seg = _candidate(sl, t0_shift=15.0)
    upd = SegmentUpdator()
    assert upd.fit(seg, FitModel.LINEAR_T0)
    assert seg.t0 == pytest.approx(15.0, abs=1e-6)
    assert seg.position == pytest.approx(1.0)

    # the plain line model cannot absorb the shift
    seg_lin = _candidate(sl, t0_shift=15.0)
    assert upd.fit(seg_lin, FitModel.LINEAR)
    assert not seg_lin.fitted_t0
    assert seg_lin.t0 == 0.0
    assert seg_lin.chi2 > seg.chi2 + 1.0


def test_mirror_solution_rejected(sl):
    # the mirrored hypothesis needs every hit to cross its wire
    seg = _candidate(sl, flip=True)
    assert not SegmentUpdator().fit(seg, FitModel.LINEAR_T0)
    assert seg.chi2 == -1.0


def test_no_time_fit_with_three_hits(sl):
    seg = _candidate(sl, layers=(1, 2, 3), t0_shift=10.0)
    assert SegmentUpdator().fit(seg, FitModel.LINEAR_T0)
    assert not seg.fitted_t0
    assert seg.ndof == 1


def test_in_time_cut_keeps_line_fit(sl):
    seg = _candidate(sl, t0_shift=10.0)
    assert SegmentUpdator(in_time_cut=20.0).fit(seg, FitModel.LINEAR_T0)
    assert not seg.fitted_t0
    assert seg.t0 == 0.0


def test_update_builds_segment(sl):
    seg = _candidate(sl, t0_shift=12.0)
    out = SegmentUpdator().update(seg, FitModel.LINEAR_T0)
    assert out.superlayer == 1
    assert out.n_hits == 4
    assert out.ndof == 1
    assert out.t0 == pytest.approx(12.0, abs=1e-6)
    assert out.angle == pytest.approx(np.arctan(0.1))
    assert np.linalg.norm(out.local_direction) == pytest.approx(1.0)
    assert np.linalg.norm(out.global_direction) == pytest.approx(1.0)
    assert np.allclose(out.global_position, sl.to_global(out.local_position))
    for rh in out.hits:
        # t0-corrected hits sit on the line
        z = rh.local_position[2]
        assert rh.local_position[0] == pytest.approx(1.0 + 0.1 * z, abs=1e-6)
        assert rh.drift_distance == pytest.approx(rh.hit.drift_distance - 12.0 * DRIFT_VELOCITY)


def test_update_falls_back_to_line_fit(sl):
    seg = _candidate(sl, flip=True)
    out = SegmentUpdator().update(seg, FitModel.LINEAR_T0)
    assert out.t0 == 0.0
    assert out.chi2 >= 0.0
