import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import logging
from types import SimpleNamespace

import numpy as np
import pytest

from dtseg_reco.geometry import CellSide, WireId, build_chamber
from dtseg_reco.hit_pool import HitPool, RecHit1DPair
import dtseg_reco.hit_pool as dt_hit_pool
from dtseg_reco.pattern_reco import MeantimerPatternReco, _SearchState, check_double_candidates
from dtseg_reco.segment import AssPoint, SegmentCandidate
from dtseg_reco.updator import FitModel, SegmentUpdator
from dtseg_reco.utils import hits_on_line, truth_sides


@pytest.fixture
def chamber():
    return build_chamber()


@pytest.fixture
def reco():
    return MeantimerPatternReco()


def _sides(seg):
    return [h.side for h in sorted(seg.hits, key=lambda h: h.hit.id.layer)]


def test_straight_track_gives_one_segment(chamber, reco):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1)
    segs = reco.reconstruct(sl, pairs)
    assert len(segs) == 1
    seg = segs[0]
    assert seg.n_hits == 4
    assert _sides(seg) == truth_sides(sl, pairs, 1.0, 0.1)
    assert _sides(seg) == [CellSide.RIGHT, CellSide.LEFT, CellSide.RIGHT, CellSide.LEFT]
    assert seg.local_position[0] == pytest.approx(1.0, abs=1e-6)
    assert seg.slope == pytest.approx(0.1, abs=1e-6)
    assert seg.t0 == pytest.approx(0.0, abs=1e-3)
    assert seg.chi2 == pytest.approx(0.0, abs=1e-6)


def test_hit_order_does_not_matter(chamber, reco):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1, layers=(4, 2, 1, 3))
    segs = reco.reconstruct(sl, pairs)
    assert len(segs) == 1
    assert segs[0].n_hits == 4
    assert segs[0].slope == pytest.approx(0.1, abs=1e-6)


def test_delayed_track_recovers_t0(chamber, reco):
    sl = chamber[3]
    pairs = hits_on_line(sl, 11.0, -0.3, t0_shift=15.0)
    segs = reco.reconstruct(sl, pairs)
    assert len(segs) == 1
    assert segs[0].n_hits == 4
    assert segs[0].t0 == pytest.approx(15.0, abs=1e-6)
    assert segs[0].local_position[0] == pytest.approx(11.0, abs=1e-6)


def test_theta_superlayer_rejects_tracks_not_pointing_to_ip(chamber, reco):
    # a 45 degree track is fine in a phi superlayer ...
    phi_sl = chamber[1]
    assert len(reco.reconstruct(phi_sl, hits_on_line(phi_sl, 1.0, 1.0))) == 1

    # ... but not in the theta view, where segments must point to the IP
    theta_sl = chamber[2]
    assert reco.reconstruct(theta_sl, hits_on_line(theta_sl, 1.0, 1.0)) == []

    segs = reco.reconstruct(theta_sl, hits_on_line(theta_sl, 1.0, 0.0))
    assert len(segs) == 1
    assert segs[0].superlayer == 2


def test_hits_in_far_apart_layers_give_no_segment(chamber, reco, caplog):
    sl = chamber[1]
    pairs = [
        RecHit1DPair(WireId(1, 1, 1), 0.8),
        RecHit1DPair(WireId(1, 2, 2), 1.1),
        RecHit1DPair(WireId(1, 6, 1), 0.8),
        RecHit1DPair(WireId(1, 7, 1), 0.8),
    ]
    with caplog.at_level(logging.WARNING):
        segs = reco.reconstruct(sl, pairs)
    assert segs == []
    assert "differ by more than 3" in caplog.text


def test_too_many_hits_skips_search(chamber, monkeypatch, caplog):
    sl = chamber[1]
    reco = MeantimerPatternReco(max_allowed_hits=3)

    def _fail(*args, **kwargs):
        raise AssertionError("search must not run")

    monkeypatch.setattr(reco, "_add_hits", _fail)
    with caplog.at_level(logging.WARNING):
        segs = reco.reconstruct(sl, hits_on_line(sl, 1.0, 0.1))
    assert segs == []
    assert "too many hits" in caplog.text


def test_too_many_hits_never_builds_the_pool(chamber, monkeypatch, caplog):
    sl = chamber[1]
    reco = MeantimerPatternReco(max_allowed_hits=10)
    # layers 1 and 5 would give one anomaly warning per ordered pair
    pairs = [RecHit1DPair(WireId(1, 1 if k % 2 else 5, k + 1), 0.5) for k in range(40)]

    def _fail(*args, **kwargs):
        raise AssertionError("compatibility matrix must not be built")

    monkeypatch.setattr(dt_hit_pool, "compatibility_codes", _fail)
    with caplog.at_level(logging.WARNING):
        segs = reco.reconstruct(sl, pairs)
    assert segs == []
    assert "too many hits" in caplog.text
    assert "differ by more than 3" not in caplog.text


def test_best_of_two_hits_in_same_layer_is_kept(chamber, reco):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1)
    exact = pairs[3]
    # same wire, wrong drift distance
    pairs.append(RecHit1DPair(exact.wire_id, 0.3))
    segs = reco.reconstruct(sl, pairs)
    assert len(segs) == 1
    assert segs[0].n_hits == 4
    used = [h.hit.pair for h in segs[0].hits]
    assert exact in used
    assert pairs[4] not in used


def test_noise_does_not_spoil_the_track(chamber, reco):
    sl = chamber[1]
    pairs = [RecHit1DPair(WireId(1, 1, 30), 0.7), RecHit1DPair(WireId(1, 3, 40), 1.2)]
    pairs += hits_on_line(sl, 1.0, 0.1)
    segs = reco.reconstruct(sl, pairs)
    assert len(segs) == 1
    assert segs[0].n_hits == 4


def test_two_tracks(chamber, reco):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1) + hits_on_line(sl, 41.0, -0.2)
    segs = reco.reconstruct(sl, pairs)
    assert len(segs) == 2
    assert sorted(round(s.local_position[0], 4) for s in segs) == [1.0, 41.0]


def test_reconstruction_is_repeatable(chamber, reco):
    sl = chamber[1]
    rng = np.random.default_rng(7)
    pairs = hits_on_line(sl, 5.0, 0.25, smear=0.01, rng=rng)
    first = reco.reconstruct(sl, pairs)
    second = reco.reconstruct(sl, pairs)
    assert len(first) == len(second)
    for a, b in zip(first, second):
        assert a.chi2 == b.chi2
        assert a.t0 == b.t0
        assert [h.hit.pair for h in a.hits] == [h.hit.pair for h in b.hits]


def test_fewer_than_three_hits(chamber, reco):
    sl = chamber[1]
    assert reco.reconstruct(sl, []) == []
    assert reco.reconstruct(sl, hits_on_line(sl, 1.0, 0.1, layers=(1, 2))) == []


def test_fit_gate(chamber, reco):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1)
    pool = HitPool(sl, pairs)
    sides = truth_sides(sl, pairs, 1.0, 0.1)
    points = [AssPoint(h, s) for h, s in zip(pool.hits, sides)]
    before = list(points)

    assert reco.fit_with_t0(sl, points) is not None
    assert points == before

    # three points are always accepted, whatever the chi2
    flipped = [AssPoint(p.hit, CellSide.LEFT if p.side is CellSide.RIGHT else CellSide.RIGHT) for p in points]
    seg = reco.fit_with_t0(sl, flipped[:3])
    assert seg is not None
    assert seg.chi2 / seg.ndof > reco.max_chi2
    # the mirrored 4-hit solution would put every hit across its wire
    assert reco.fit_with_t0(sl, flipped) is None


def test_fit_gate_without_t0_uses_loose_cut(chamber, reco):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1)
    last = pairs[3]
    pairs[3] = RecHit1DPair(last.wire_id, last.drift_distance + 0.2)
    pool = HitPool(sl, pairs)
    sides = truth_sides(sl, hits_on_line(sl, 1.0, 0.1), 1.0, 0.1)
    points = [AssPoint(h, s) for h, s in zip(pool.hits, sides)]

    line_only = reco.fit_with_t0(sl, points, FitModel.LINEAR)
    assert line_only is not None
    assert 8.0 < line_only.chi2 < 200.0
    assert reco.fit_with_t0(sl, points, FitModel.LINEAR_T0) is None

    # no time offset and chi2 above the loose cut
    pairs[3] = RecHit1DPair(last.wire_id, last.drift_distance + 0.6)
    pool = HitPool(sl, pairs)
    points = [AssPoint(h, s) for h, s in zip(pool.hits, sides)]
    seg = SegmentCandidate.from_points(points, sl)
    SegmentUpdator().fit(seg, FitModel.LINEAR)
    assert seg.chi2 >= 200.0
    assert reco.fit_with_t0(sl, points, FitModel.LINEAR) is None


def test_check_double_candidates(chamber):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1) + hits_on_line(sl, 30.0, 0.1)
    pool = HitPool(sl, pairs)
    sides = truth_sides(sl, pairs[:4], 1.0, 0.1) + truth_sides(sl, pairs[4:], 30.0, 0.1)
    pts = [AssPoint(h, s) for h, s in zip(pool.hits, sides)]
    upd = SegmentUpdator()

    def cand(points):
        seg = SegmentCandidate.from_points(points, sl)
        upd.fit(seg, FitModel.LINEAR_T0)
        return seg

    best = cand(pts[:4])
    best.chi2 = 0.5
    accepted = [best]

    assert not check_double_candidates(accepted, cand(pts[:4]))

    subset = cand(pts[:3])
    subset.chi2 = 1.0
    assert not check_double_candidates(accepted, subset)
    # a better-fitting subset is new
    subset.chi2 = 0.1
    assert check_double_candidates(accepted, subset)

    # sharing only two hits out of four is allowed
    mixed = cand(pts[:2] + pts[6:8])
    mixed.chi2 = 3.0
    assert check_double_candidates(accepted, mixed)

    assert check_double_candidates([], best)


def test_print_pattern():
    sl = build_chamber()[1]
    pairs = hits_on_line(sl, 1.0, 0.1)
    pool = HitPool(sl, pairs)
    points = [AssPoint(h, s) for h, s in zip(pool.hits[:3], truth_sides(sl, pairs[:3], 1.0, 0.1))]
    text = MeantimerPatternReco.print_pattern(points, pool.hits[3])
    top, bottom = text.splitlines()
    assert top.split() == ["R", "L", "R", "*"]
    assert bottom.split() == ["1", "2", "1", "2"]


def test_debug_mode_logs_candidates(chamber, caplog):
    sl = chamber[1]
    reco = MeantimerPatternReco(debug=True)
    with caplog.at_level(logging.DEBUG, logger="dtseg_reco"):
        segs = reco.reconstruct(sl, hits_on_line(sl, 1.0, 0.1))
    assert len(segs) == 1
    assert "before cleaning" in caplog.text
    assert "after cleaning" in caplog.text


def test_better_of_two_overlapping_lines_is_kept(chamber, reco):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1)
    exact = pairs[3]
    # a second valid 4-hit line sharing three hits, with a worse chi2
    shifted = RecHit1DPair(exact.wire_id, exact.drift_distance + 0.08)
    pairs.append(shifted)

    pool = HitPool(sl, pairs)
    sides = truth_sides(sl, pairs, 1.0, 0.1)
    alt = reco.fit_with_t0(sl, [AssPoint(h, s) for h, s in zip(pool.hits[:3] + [pool.hits[4]], sides[:3] + sides[4:])])
    assert alt is not None and alt.chi2 > 1.0

    segs = reco.reconstruct(sl, pairs)
    assert len(segs) == 1
    used = [h.hit.pair for h in segs[0].hits]
    assert exact in used and shifted not in used
    assert segs[0].chi2 == pytest.approx(0.0, abs=1e-6)


class _KeepAll:
    def clean(self, candidates):
        return list(candidates)


def test_search_never_stores_equal_candidates(chamber):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1)
    pairs.append(RecHit1DPair(pairs[3].wire_id, pairs[3].drift_distance + 0.08))
    pairs += hits_on_line(sl, 1.0, 0.1, layers=(2, 3))
    reco = MeantimerPatternReco(cleaner=_KeepAll())
    cands = reco.build_segments(sl, reco.init_hits(sl, pairs))
    assert cands
    assert len({c.key for c in cands}) == len(cands)
    assert all(c.good() for c in cands)


def _true_points(sl, pairs, x0, slope):
    pool = HitPool(sl, pairs)
    return pool, [AssPoint(h, s) for h, s in zip(pool.hits, truth_sides(sl, pairs, x0, slope))]


def _explored_sides(reco, sl, pool, ass_hits, remaining, chi2_by_side, monkeypatch):
    """Run one search step with stubbed fits and record the side of every branch entered."""
    entered = []

    def fake_fit(sl_, points, model=FitModel.LINEAR_T0, debug=False):
        return SimpleNamespace(chi2=chi2_by_side[points[-1].side])

    def record(sl_, pool_, points, remaining_, result, state):
        entered.append(points[-1].side)

    monkeypatch.setattr(reco, "fit_with_t0", fake_fit)
    monkeypatch.setattr(reco, "_add_hits", record)
    MeantimerPatternReco._add_hits(reco, sl, pool, list(ass_hits), remaining, [], _SearchState())
    return entered


def test_clearly_better_side_is_the_only_branch(chamber, monkeypatch):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1) + [RecHit1DPair(WireId(1, 2, 2), 0.5)]
    _, truth = _true_points(sl, pairs[:4], 1.0, 0.1)
    pool = HitPool(sl, pairs)
    points = [AssPoint(pool.hits[k], p.side) for k, p in enumerate(truth)]
    reco = MeantimerPatternReco(lr_chi2_margin=0.1)

    sides = _explored_sides(reco, sl, pool, points, [4], {CellSide.LEFT: 1.0, CellSide.RIGHT: 5.0}, monkeypatch)
    assert sides == [CellSide.LEFT]

    sides = _explored_sides(reco, sl, pool, points, [4], {CellSide.LEFT: 5.0, CellSide.RIGHT: 1.0}, monkeypatch)
    assert sides == [CellSide.RIGHT]


def test_both_sides_explored_within_margin(chamber, monkeypatch):
    sl = chamber[1]
    pairs = hits_on_line(sl, 1.0, 0.1) + [RecHit1DPair(WireId(1, 2, 2), 0.5)]
    _, truth = _true_points(sl, pairs[:4], 1.0, 0.1)
    pool = HitPool(sl, pairs)
    points = [AssPoint(pool.hits[k], p.side) for k, p in enumerate(truth)]
    reco = MeantimerPatternReco(lr_chi2_margin=0.1)

    sides = _explored_sides(reco, sl, pool, points, [4], {CellSide.LEFT: 1.0, CellSide.RIGHT: 1.05}, monkeypatch)
    assert sides == [CellSide.LEFT, CellSide.RIGHT]

    # a three-hit candidate always tries both sides of the next hit
    sides = _explored_sides(reco, sl, pool, points[:3], [3], {CellSide.LEFT: 1.0, CellSide.RIGHT: 50.0}, monkeypatch)
    assert sides == [CellSide.LEFT, CellSide.RIGHT]


def test_shorter_leaf_not_stored_after_longer_candidate(chamber):
    sl = chamber[1]
    pool, points = _true_points(sl, hits_on_line(sl, 1.0, 0.1), 1.0, 0.1)
    reco = MeantimerPatternReco(cleaner=_KeepAll())

    # alone, a clean three-hit leaf is a valid candidate
    result = []
    reco._add_hits(sl, pool, points[:3], [], result, _SearchState())
    assert len(result) == 1 and result[0].n_hits == 3

    state = _SearchState()
    result = []
    reco._add_hits(sl, pool, list(points), [], result, state)
    assert len(result) == 1
    assert state.maxfound == 4

    reco._add_hits(sl, pool, points[:3], [], result, state)
    assert len(result) == 1
    assert result[0].n_hits == 4


def test_branch_that_cannot_reach_watermark_is_not_fitted(chamber, monkeypatch):
    sl = chamber[1]
    pool, points = _true_points(sl, hits_on_line(sl, 1.0, 0.1), 1.0, 0.1)
    reco = MeantimerPatternReco()

    def _fail(*args, **kwargs):
        raise AssertionError("pruned branch must not be fitted")

    monkeypatch.setattr(reco, "fit_with_t0", _fail)
    result = []
    reco._add_hits(sl, pool, [points[0], points[3]], [1], result, _SearchState(maxfound=4))
    assert result == []
