from __future__ import annotations

import logging
from typing import List, Sequence

from dtseg_reco.segment import SegmentCandidate
from dtseg_reco.updator import FitModel, SegmentUpdator

logger = logging.getLogger(__name__)

# chi2 difference below which two candidates are considered equivalent
_CHI2_TIE = 0.1


class SegmentCleaner:
    r"""
    Ghost removal over the full candidate list of one super-layer.

    Two passes are applied:

    1. **Conflict solving.** Two candidates using the same hit with opposite
       sides conflict; the worse one (fewer hits, then higher :math:`\chi^2`)
       drops the conflicting hits and is refit. Candidates that are no longer
       :meth:`~dtseg_reco.segment.SegmentCandidate.good` are removed.
    2. **Ghost busting.** For each pair of candidates sharing
       :math:`n_s` hits, the worse one is a ghost if
       :math:`n_s \ge` ``n_shared_hits_max`` or
       :math:`\min(n_1, n_2) - n_s <` ``n_unshared_hits_min``.

    Parameters
    ----------
    updator : SegmentUpdator
        Used to refit candidates that lost hits.
    n_shared_hits_max : int, optional
        Maximum number of hits two surviving candidates may share.
    n_unshared_hits_min : int, optional
        Minimum number of own hits of the smaller of two surviving candidates.
    segm_cleaner_mode : {1, 2, 3}, optional
        ``1``: standard. ``2``: keep exact left/right mirror pairs (all hits
        conflicting, equal hit count, :math:`\chi^2` within 0.1) in the
        conflict pass. ``3``: do not bust candidates using exactly the same
        hits with :math:`\chi^2` within 0.1.
    fit_model : FitModel or str, optional
        Model used for refits.
    """

    def __init__(
        self,
        updator: SegmentUpdator,
        n_shared_hits_max: int = 2,
        n_unshared_hits_min: int = 2,
        segm_cleaner_mode: int = 1,
        fit_model: FitModel | str = FitModel.LINEAR_T0,
    ) -> None:
        if segm_cleaner_mode not in (1, 2, 3):
            raise ValueError(f"segm_cleaner_mode must be 1, 2 or 3, got {segm_cleaner_mode}")
        self.updator = updator
        self.n_shared_hits_max = int(n_shared_hits_max)
        self.n_unshared_hits_min = int(n_unshared_hits_min)
        self.segm_cleaner_mode = int(segm_cleaner_mode)
        self.fit_model = FitModel.parse(fit_model)

    def clean(self, candidates: Sequence[SegmentCandidate]) -> List[SegmentCandidate]:
        if len(candidates) <= 1:
            return list(candidates)
        result = self.solve_conflicts(candidates)
        return self.ghost_buster(result)

    def solve_conflicts(self, candidates: Sequence[SegmentCandidate]) -> List[SegmentCandidate]:
        cands = list(candidates)
        for i in range(len(cands)):
            for j in range(i + 1, len(cands)):
                a, b = cands[i], cands[j]
                conflicts = a.conflicting_hit_pairs(b)
                if not conflicts:
                    continue
                if (
                    self.segm_cleaner_mode == 2
                    and len(conflicts) == a.n_hits == b.n_hits
                    and abs(a.chi2 - b.chi2) < _CHI2_TIE
                ):
                    continue
                if b.better_than(a):
                    cands[i] = self._strip(a, conflicts)
                else:
                    cands[j] = self._strip(b, b.conflicting_hit_pairs(a))

        out = [c for c in cands if c.good()]
        if len(out) != len(cands):
            logger.debug("Conflict solving dropped %d candidate(s)", len(cands) - len(out))
        return out

    def _strip(self, cand: SegmentCandidate, drop) -> SegmentCandidate:
        stripped = cand.without(drop)
        if stripped.n_hits >= 2:
            self.updator.fit(stripped, self.fit_model)
        return stripped

    def ghost_buster(self, candidates: Sequence[SegmentCandidate]) -> List[SegmentCandidate]:
        ghosts = set()
        for i in range(len(candidates)):
            for j in range(i + 1, len(candidates)):
                a, b = candidates[i], candidates[j]
                n_shared = a.n_shared_hit_pairs(b)
                if (
                    self.segm_cleaner_mode == 3
                    and n_shared == a.n_hits == b.n_hits
                    and abs(a.chi2 - b.chi2) < _CHI2_TIE
                ):
                    continue
                worse = i if b.better_than(a) else j
                if n_shared >= self.n_shared_hits_max:
                    ghosts.add(worse)
                    continue
                if min(a.n_hits, b.n_hits) - n_shared < self.n_unshared_hits_min:
                    ghosts.add(worse)

        if ghosts:
            logger.debug("Ghost buster removed %d of %d candidate(s)", len(ghosts), len(candidates))
        return [c for k, c in enumerate(candidates) if k not in ghosts]
