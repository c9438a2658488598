from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from dtseg_reco.cleaner import SegmentCleaner
from dtseg_reco.geometry import SIDES, CellSide, SuperLayerGeometry, polar_angle
from dtseg_reco.geometry_filter import DEFAULT_WINDOW, GeometryWindow
from dtseg_reco.hit_pool import HitPairForFit, HitPool, RecHit1DPair
from dtseg_reco.segment import AssPoint, Segment2D, SegmentCandidate
from dtseg_reco.updator import FitModel, SegmentUpdator

logger = logging.getLogger(__name__)

# minimum credible segment size; the search watermark starts here for every seed
MIN_SEGMENT_HITS = 3


@dataclass
class _SearchState:
    """Mutable state of the search over one seed: the best candidate size found so far."""
    maxfound: int = MIN_SEGMENT_HITS


class MeantimerPatternReco:
    r"""
    2D segment pattern recognition in one drift-tube super-layer.

    Pipeline
    --------
    1. Wrap the raw hit pairs in a :class:`~dtseg_reco.hit_pool.HitPool`
       (skip the super-layer if it holds more than ``max_allowed_hits``).
    2. Enumerate ordered seed pairs ``(first, last)`` of geometry-compatible
       hits and, for each of the four left/right combinations, apply a
       pointing cut

       .. math::

           \bigl|\theta(\mathbf{g}_\text{last}-\mathbf{g}_\text{first})
                - \theta(\mathbf{g}_\text{last}-\mathbf{g}_\text{IP})\bigr|
           \le \alpha_\text{max},

       with :math:`\alpha_\text{max}` = ``alpha_max_theta`` in the theta
       super-layer and ``alpha_max_phi`` otherwise.
    3. Extend each seed by depth-first search over the intermediate hits,
       branching on the side ambiguity, with a branch-and-bound watermark on
       the candidate size (:meth:`_add_hits`).
    4. Clean the accumulated candidates (:class:`~dtseg_reco.cleaner.SegmentCleaner`)
       and refine each survivor into a :class:`~dtseg_reco.segment.Segment2D`.

    Candidate acceptance
    --------------------
    Every candidate, partial or final, goes through :meth:`fit_with_t0`. For
    :math:`n` points with fit :math:`(\chi^2, t_0)`:

    - :math:`\chi^2 = -1` (failed fit): reject;
    - :math:`n = 3`: accept;
    - :math:`t_0 = 0`: accept iff :math:`\chi^2 <` ``chi2_no_t0``;
    - otherwise accept iff :math:`\chi^2/(n-3) <` ``max_chi2``.

    Parameters
    ----------
    max_allowed_hits : int, optional
        Hit-count ceiling per super-layer.
    alpha_max_theta, alpha_max_phi : float, optional
        Pointing windows (rad).
    max_chi2 : float, optional
        :math:`\chi^2/\text{ndof}` cut of the acceptance gate.
    debug : bool, optional
        Log candidate lists and hit patterns at ``DEBUG`` level.
    lr_chi2_margin : float, optional
        Hysteresis on the left/right :math:`\chi^2` arbitration.
    chi2_no_t0 : float, optional
        Loose :math:`\chi^2` cut for candidates without a fitted time offset.
    search_fit_model, final_fit_model : FitModel or str, optional
        Fit models used while extending candidates and on the final candidate.
    update_fit_model : FitModel or str, optional
        Fit model of the final refinement of the surviving candidates.
    window : GeometryWindow, optional
        Wire-distance admission window of the geometry filter.
    ip : array_like, shape (3,), optional
        Nominal interaction point (global, cm).
    updator : SegmentUpdator, optional
    cleaner : SegmentCleaner, optional
    """

    algo_name = "DTMeantimerPatternReco"

    def __init__(
        self,
        max_allowed_hits: int = 100,
        alpha_max_theta: float = 0.1,
        alpha_max_phi: float = 1.0,
        max_chi2: float = 8.0,
        debug: bool = False,
        *,
        lr_chi2_margin: float = 0.1,
        chi2_no_t0: float = 200.0,
        search_fit_model: FitModel | str = FitModel.LINEAR_T0,
        final_fit_model: FitModel | str = FitModel.LINEAR_T0,
        update_fit_model: FitModel | str = FitModel.LINEAR_T0,
        window: GeometryWindow = DEFAULT_WINDOW,
        ip: Sequence[float] = (0.0, 0.0, 0.0),
        updator: Optional[SegmentUpdator] = None,
        cleaner: Optional[SegmentCleaner] = None,
    ) -> None:
        if int(max_allowed_hits) < 0:
            raise ValueError("max_allowed_hits must be non-negative.")
        self.max_allowed_hits = int(max_allowed_hits)
        self.alpha_max_theta = float(alpha_max_theta)
        self.alpha_max_phi = float(alpha_max_phi)
        self.max_chi2 = float(max_chi2)
        self.debug = bool(debug)
        self.lr_chi2_margin = float(lr_chi2_margin)
        self.chi2_no_t0 = float(chi2_no_t0)
        self.search_fit_model = FitModel.parse(search_fit_model)
        self.final_fit_model = FitModel.parse(final_fit_model)
        self.update_fit_model = FitModel.parse(update_fit_model)
        self.window = window
        self.ip = np.asarray(ip, dtype=np.float64).reshape(3)
        self.updator = updator or SegmentUpdator()
        self.cleaner = cleaner or SegmentCleaner(self.updator)

    # ------------------------------------------------------------------
    # Top level
    # ------------------------------------------------------------------

    def reconstruct(self, sl: SuperLayerGeometry, pairs: Sequence[RecHit1DPair]) -> List[Segment2D]:
        r"""
        Reconstruct the 2D segments of one super-layer.

        Parameters
        ----------
        sl : SuperLayerGeometry
            Geometry context of the super-layer.
        pairs : sequence of RecHit1DPair
            Raw hits of this super-layer.

        Returns
        -------
        list[Segment2D]
            One finished segment per surviving candidate, in candidate order.
            Empty when the super-layer has more than ``max_allowed_hits`` hits,
            in which case the hit pool is never built.
        """
        if self._too_many_hits(sl, len(pairs)):
            return []
        pool = self.init_hits(sl, pairs)
        candidates = self.build_segments(sl, pool)

        result: List[Segment2D] = []
        for cand in candidates:
            segment = self.updator.update(cand, self.update_fit_model)
            if self.debug:
                logger.debug("Reconstructed 2D segment %s", segment)
            result.append(segment)
        return result

    def init_hits(self, sl: SuperLayerGeometry, pairs: Sequence[RecHit1DPair]) -> HitPool:
        return HitPool(sl, pairs, self.window)

    def _too_many_hits(self, sl: SuperLayerGeometry, n_hits: int) -> bool:
        if n_hits <= self.max_allowed_hits:
            return False
        logger.warning(
            "SuperLayer %d has too many hits: %d, max allowed is %d; skipping segment reconstruction",
            sl.index, n_hits, self.max_allowed_hits,
        )
        return True

    def build_segments(self, sl: SuperLayerGeometry, pool: HitPool) -> List[SegmentCandidate]:
        r"""
        Seed enumeration, recursive extension and cleaning.

        Seeds are ordered pairs ``(i, j)`` with ``i < j`` in hit order: the
        outer loop runs over ``i`` ascending, the inner one over ``j``
        descending. The extension pool of a seed holds the hits strictly
        between ``i`` and ``j`` that are compatible with both.

        Returns
        -------
        list[SegmentCandidate]
            Candidates surviving the cleaner; empty when the super-layer has
            more than ``max_allowed_hits`` hits.
        """
        hits = pool.hits
        result: List[SegmentCandidate] = []

        if self.debug:
            logger.debug("buildSegments: SL%d nHits %d", sl.index, len(hits))
            for h in hits:
                logger.debug("  %s wire: %s DigiTime: %.2f", h, h.id, h.digi_time)

        if self._too_many_hits(sl, len(hits)):
            return result

        d_alpha_max = self.alpha_max_theta if sl.is_theta else self.alpha_max_phi

        # global positions of both side hypotheses, computed once per hit
        gpos = [
            {side: sl.to_global(h.local_position(side)) for side in SIDES}
            for h in hits
        ]

        state = _SearchState()
        n = len(hits)
        for i in range(n):
            for j in range(n - 1, i, -1):
                if not pool.compatible(i, j):
                    continue

                between = [k for k in range(i + 1, j) if pool.compatible(k, j) and pool.compatible(k, i)]

                for first_side in SIDES:
                    for last_side in SIDES:
                        g_first = gpos[i][first_side]
                        g_last = gpos[j][last_side]
                        d_alpha = abs(polar_angle(g_last - g_first) - polar_angle(g_last - self.ip))
                        if d_alpha > d_alpha_max:
                            continue

                        ass_hits = [AssPoint(hits[i], first_side), AssPoint(hits[j], last_side)]
                        state.maxfound = MIN_SEGMENT_HITS
                        self._add_hits(sl, pool, ass_hits, between, result, state)

        if self.debug:
            logger.debug("Result (before cleaning): %d", len(result))
            for c in result:
                logger.debug("  %s", c)

        result = self.cleaner.clean(result)

        if self.debug:
            logger.debug("Result (after cleaning): %d", len(result))
            for c in result:
                logger.debug("  %s", c)
        return result

    # ------------------------------------------------------------------
    # Recursive search
    # ------------------------------------------------------------------

    def _add_hits(
        self,
        sl: SuperLayerGeometry,
        pool: HitPool,
        ass_hits: List[AssPoint],
        remaining: Sequence[int],
        result: List[SegmentCandidate],
        state: _SearchState,
    ) -> None:
        r"""
        Depth-first extension of ``ass_hits`` with the hits in ``remaining``.

        ``ass_hits`` is modified in place (push before recursing, pop after),
        so it is unchanged when the call returns. ``remaining`` holds pool
        indices. ``state.maxfound`` is raised whenever a larger candidate is
        stored, pruning every branch that can no longer reach that size.
        """
        if len(ass_hits) + len(remaining) < state.maxfound:
            return

        found_something = False
        for pos, k in enumerate(remaining):
            hit = pool[k]

            ass_hits.append(AssPoint(hit, CellSide.LEFT))
            left_seg = self.fit_with_t0(sl, ass_hits, self.search_fit_model)
            ass_hits.pop()

            ass_hits.append(AssPoint(hit, CellSide.RIGHT))
            right_seg = self.fit_with_t0(sl, ass_hits, self.search_fit_model)
            ass_hits.pop()

            left_ok = left_seg is not None
            right_ok = right_seg is not None
            if not left_ok and not right_ok:
                continue

            found_something = True

            # next search starts from the other end
            next_pool = [t for t in remaining[pos + 1:] if pool.compatible(t, k)]
            next_pool.reverse()

            # choose only one side when the fit clearly prefers it
            if len(ass_hits) > 3 and left_ok and right_ok:
                if left_seg.chi2 < right_seg.chi2 - self.lr_chi2_margin:
                    right_ok = False
                elif right_seg.chi2 < left_seg.chi2 - self.lr_chi2_margin:
                    left_ok = False

            if left_ok:
                ass_hits.append(AssPoint(hit, CellSide.LEFT))
                self._add_hits(sl, pool, ass_hits, next_pool, result, state)
                ass_hits.pop()
            if right_ok:
                ass_hits.append(AssPoint(hit, CellSide.RIGHT))
                self._add_hits(sl, pool, ass_hits, next_pool, result, state)
                ass_hits.pop()

        if found_something:
            return

        # leaf: nothing could be added, check and store the candidate
        if len(ass_hits) < state.maxfound:
            return

        seg = self.fit_with_t0(sl, ass_hits, self.final_fit_model, self.debug)
        if seg is None or not seg.good():
            return

        if len(ass_hits) > state.maxfound:
            state.maxfound = len(ass_hits)
        if self.debug:
            logger.debug("   Seg t0= %.3f %s", seg.t0, seg)
            logger.debug("%s", self.print_pattern(ass_hits))

        if check_double_candidates(result, seg):
            result.append(seg)
            if self.debug:
                logger.debug("   Result is now %d", len(result))
        elif self.debug:
            logger.debug("   Exists - skipping")

    # ------------------------------------------------------------------
    # Fit gate
    # ------------------------------------------------------------------

    def fit_with_t0(
        self,
        sl: SuperLayerGeometry,
        ass_hits: Sequence[AssPoint],
        model: FitModel = FitModel.LINEAR_T0,
        debug: bool = False,
    ) -> Optional[SegmentCandidate]:
        """
        Fit a trial candidate built from ``ass_hits`` and apply the acceptance policy.

        Returns the fitted candidate, or ``None`` when it is rejected.
        ``ass_hits`` is never modified.
        """
        seg = SegmentCandidate.from_points(ass_hits, sl)
        self.updator.fit(seg, model, debug)

        # failed fits include 3-parameter solutions pushing hits across the wire or the cell wall
        if seg.chi2 == -1.0:
            return None
        n = seg.n_hits
        if n == 3:
            return seg
        # no t0 information: looser chi2 cut
        if seg.t0 == 0.0:
            return seg if seg.chi2 < self.chi2_no_t0 else None
        return seg if seg.chi2 / (n - 3) < self.max_chi2 else None

    # ------------------------------------------------------------------
    # Debug helpers
    # ------------------------------------------------------------------

    @staticmethod
    def print_pattern(ass_hits: Sequence[AssPoint], hit: Optional[HitPairForFit] = None, n_layers: int = 4) -> str:
        """
        Two-line textual picture of a candidate: one mark per layer
        (``L``/``R``, ``*`` for ``hit``) and the wire numbers below.
        """
        marks = ["."] * n_layers
        wires = [0] * n_layers
        for p in ass_hits:
            lay = p.hit.id.layer - 1
            if 0 <= lay < n_layers:
                wires[lay] = p.hit.id.wire
                marks[lay] = p.side.mark
        if hit is not None and 0 <= hit.id.layer - 1 < n_layers:
            wires[hit.id.layer - 1] = hit.id.wire
            marks[hit.id.layer - 1] = "*"
        top = "   " + " ".join(f"{m:>3}" for m in marks)
        bottom = "   " + " ".join(f"{w:>3}" if w else "   " for w in wires)
        return top + "\n" + bottom


def check_double_candidates(cands: Sequence[SegmentCandidate], seg: SegmentCandidate) -> bool:
    r"""
    Whether ``seg`` is new with respect to the already accepted ``cands``.

    ``seg`` is rejected if an accepted candidate has the same side-resolved
    hits, or if one has at least as many hits, a strictly lower
    :math:`\chi^2/\text{ndof}` and more than ``seg.n_hits - 2`` hits in
    common with it.
    """
    for cand in cands:
        if cand == seg:
            return False
        if cand.n_hits >= seg.n_hits and cand.chi2ndof < seg.chi2ndof:
            if cand.n_shared_hit_pairs(seg) > seg.n_hits - 2:
                return False
    return True
