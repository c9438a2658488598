from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional

import numpy as np

import dtseg_reco.linear_fit as dt_fit
from dtseg_reco.geometry import DRIFT_VELOCITY
from dtseg_reco.segment import RecHit1D, Segment2D, SegmentCandidate

logger = logging.getLogger(__name__)

# tolerance (cm) on t0-corrected drift distances at the wire and at the cell wall
_DRIFT_TOL = 1e-6


class FitModel(Enum):
    """Physical model of a segment fit."""
    LINEAR = "linear"        # position + angle
    LINEAR_T0 = "linear_t0"  # position + angle + common time offset

    @classmethod
    def parse(cls, value: "FitModel | str") -> "FitModel":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            raise ValueError(f"Unknown fit model {value!r}; expected one of {[m.value for m in cls]}") from e


class SegmentUpdator:
    r"""
    Fit and refine segment candidates.

    Two models are supported (see :class:`FitModel`):

    - ``LINEAR``: :math:`x_i = x_0 + b\,z_i`,
    - ``LINEAR_T0``: :math:`x_i = x_0 + b\,z_i + s_i\,c`, where :math:`s_i=\pm1`
      is the side sign and :math:`c` a drift-distance offset common to all
      hits. The time offset is :math:`t_0 = -c / v_\text{drift}`.

    The 3-parameter fit is only attempted with more than three hits and at
    least one hit on each side (otherwise :math:`c` is not constrained).

    Parameters
    ----------
    drift_velocity : float, optional
        Drift velocity (cm/ns).
    in_time_cut : float or None, optional
        If set, a fitted :math:`|t_0|` below this value (ns) is considered
        compatible with zero and the 2-parameter result is kept.
    debug : bool, optional
        Log every fit at ``DEBUG`` level.
    """

    def __init__(
        self,
        drift_velocity: float = DRIFT_VELOCITY,
        in_time_cut: Optional[float] = None,
        debug: bool = False,
    ) -> None:
        self.drift_velocity = float(drift_velocity)
        self.in_time_cut = None if in_time_cut is None else float(in_time_cut)
        self.debug = bool(debug)

    def fit(self, seg: SegmentCandidate, model: FitModel = FitModel.LINEAR_T0, debug: bool = False) -> bool:
        r"""
        Fit ``seg`` in place.

        Sets ``chi2``, ``position``, ``slope``, ``covariance``, ``t0`` and
        ``fitted_t0`` on the candidate.

        Returns
        -------
        bool
            ``False`` when the fit failed; ``seg.chi2`` is then ``-1``.

        Notes
        -----
        A 3-parameter solution fails when any t0-corrected drift distance
        :math:`d_i + c` is negative (the hit would cross its wire) or larger
        than half a cell (the hit would leave its cell).
        """
        pts = seg.points
        z = np.array([p.position[2] for p in pts], dtype=np.float64)
        x = np.array([p.position[0] for p in pts], dtype=np.float64)
        sigma = np.array([p.hit.sigma for p in pts], dtype=np.float64)
        sides = np.array([p.side.sign for p in pts], dtype=np.int64)
        drift = np.array([p.hit.drift_distance for p in pts], dtype=np.float64)

        seg.fitted_t0 = False
        seg.t0 = 0.0

        lf = dt_fit.fit(z, x, sigma)
        if not lf.ok:
            seg.chi2 = -1.0
            return False
        seg.chi2, seg.position, seg.slope, seg.covariance = lf.chi2, lf.intercept, lf.slope, lf.covariance

        n_left = int((sides > 0).sum())
        n_right = len(pts) - n_left
        if model is FitModel.LINEAR_T0 and n_left and n_right and len(pts) > 3:
            f3 = dt_fit.fit3par(z, x, sides, sigma)
            if not f3.ok:
                seg.chi2 = -1.0
                return False
            corrected = drift + f3.offset
            half_cell = seg.superlayer.half_cell
            if (corrected < -_DRIFT_TOL).any() or (corrected > half_cell + _DRIFT_TOL).any():
                seg.chi2 = -1.0
                return False
            t0 = -f3.offset / self.drift_velocity
            if self.in_time_cut is None or abs(t0) >= self.in_time_cut:
                seg.chi2 = f3.chi2
                seg.position = f3.intercept
                seg.slope = f3.slope
                seg.covariance = np.asarray(f3.covariance[:2, :2], dtype=np.float64)
                seg.t0 = float(t0)
                seg.fitted_t0 = True

        if debug or self.debug:
            logger.debug("  fit %s: chi2=%.4g/%d t0=%.3f", model.value, seg.chi2, len(pts), seg.t0)
        return True

    def update(self, seg: SegmentCandidate, model: FitModel = FitModel.LINEAR_T0) -> Segment2D:
        r"""
        Final refit of a surviving candidate and promotion to :class:`Segment2D`.

        Hit positions are corrected for the fitted time offset,
        :math:`x_i' = x_{w,i} - s_i\,(d_i + c)` with :math:`c = -v_\text{drift}\,t_0`.
        If the refit with ``model`` fails, the candidate is refit with
        :attr:`FitModel.LINEAR`.
        """
        if not self.fit(seg, model):
            logger.debug("Refit with %s failed for %s; falling back to linear fit", model.value, seg)
            self.fit(seg, FitModel.LINEAR)

        offset = -seg.t0 * self.drift_velocity
        hits: List[RecHit1D] = []
        for p in seg.points:
            d = p.hit.drift_distance + offset
            pos = p.hit.wire_position.copy()
            pos[0] -= p.side.sign * d
            hits.append(RecHit1D(p.hit, p.side, pos, float(d)))

        sl = seg.superlayer
        local_pos = np.array([seg.position, 0.0, 0.0], dtype=np.float64)
        local_dir = np.array([seg.slope, 0.0, 1.0], dtype=np.float64)
        local_dir /= np.linalg.norm(local_dir)
        return Segment2D(
            superlayer=sl.index,
            local_position=local_pos,
            local_direction=local_dir,
            slope=float(seg.slope),
            angle=float(np.arctan(seg.slope)),
            t0=float(seg.t0),
            chi2=float(seg.chi2),
            ndof=int(seg.ndof),
            hits=hits,
            covariance=np.array(seg.covariance, dtype=np.float64, copy=True),
            global_position=sl.to_global(local_pos),
            global_direction=sl.vector_to_global(local_dir),
        )
