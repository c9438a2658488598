from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, NamedTuple, Optional, Tuple

import numpy as np

from dtseg_reco.geometry import CellSide, SuperLayerGeometry
from dtseg_reco.hit_pool import HitPairForFit

# chi2/ndof ceiling of a "good" candidate
CHI2_MAX = 20.0
N_HITS_MIN = 3


class AssPoint(NamedTuple):
    """A hit together with the side it contributes to a candidate."""
    hit: HitPairForFit
    side: CellSide

    @property
    def position(self) -> np.ndarray:
        return self.hit.local_position(self.side)


def _point_order(p: AssPoint) -> Tuple[int, float]:
    return p.hit.id.layer, float(p.hit.wire_position[0])


@dataclass(slots=True, eq=False)
class SegmentCandidate:
    r"""
    A set of side-resolved hits plus the result of its latest straight-line fit.

    Points are unique by **hit identity**: inserting a second point on the
    same hit is ignored (first wins), whatever its side. Points are kept
    sorted by layer, then wire position.

    Fit convention (super-layer frame)
    ----------------------------------
    The trajectory is :math:`x(z) = x_0 + b\,z`, with ``position`` = :math:`x_0`
    and ``slope`` = :math:`b`. ``chi2 == -1`` flags a failed (or missing) fit.
    When a time offset was fitted, ``t0`` holds it in ns and ``fitted_t0`` is set.

    Attributes
    ----------
    points : tuple[AssPoint, ...]
        Side-resolved hits.
    superlayer : SuperLayerGeometry
        Geometry context.
    chi2, t0, position, slope : float
        Fit results.
    covariance : (2, 2) ndarray
        Covariance of ``(slope, position)``.
    fitted_t0 : bool
        Whether the 3-parameter fit was used.
    """
    points: Tuple[AssPoint, ...]
    superlayer: SuperLayerGeometry
    chi2: float = -1.0
    t0: float = 0.0
    position: float = 0.0
    slope: float = 0.0
    covariance: np.ndarray = field(default_factory=lambda: np.zeros((2, 2)))
    fitted_t0: bool = False

    @classmethod
    def from_points(cls, points: Iterable[AssPoint], superlayer: SuperLayerGeometry) -> "SegmentCandidate":
        seen = set()
        unique: List[AssPoint] = []
        for p in points:
            key = id(p.hit)
            if key in seen:
                continue
            seen.add(key)
            unique.append(AssPoint(p.hit, p.side))
        unique.sort(key=_point_order)
        return cls(tuple(unique), superlayer)

    # ---- derived quantities -------------------------------------------------

    @property
    def n_hits(self) -> int:
        return len(self.points)

    @property
    def ndof(self) -> int:
        return self.n_hits - (3 if self.fitted_t0 else 2)

    @property
    def chi2ndof(self) -> float:
        n = self.ndof
        return self.chi2 / n if n > 0 else float("inf")

    @property
    def key(self) -> frozenset:
        return frozenset((id(p.hit), p.side) for p in self.points)

    def hits(self) -> List[HitPairForFit]:
        return [p.hit for p in self.points]

    def good(self) -> bool:
        r"""
        Quality requirement on a fitted candidate.

        A candidate is good when it has at least three hits, a positive number
        of degrees of freedom and :math:`\chi^2/\text{ndof} <` :data:`CHI2_MAX`;
        a minimal (three-hit) candidate must also use three distinct layers.
        """
        if self.n_hits < N_HITS_MIN or self.ndof <= 0 or self.chi2 < 0:
            return False
        if self.chi2ndof >= CHI2_MAX:
            return False
        if self.n_hits == N_HITS_MIN and self.hits_share_layer():
            return False
        return True

    def hits_share_layer(self) -> bool:
        layers = [p.hit.id.layer for p in self.points]
        return len(set(layers)) != len(layers)

    def n_shared_hit_pairs(self, other: "SegmentCandidate") -> int:
        """Number of hits used by both candidates, whatever the side."""
        mine = {id(p.hit) for p in self.points}
        return sum(1 for p in other.points if id(p.hit) in mine)

    def conflicting_hit_pairs(self, other: "SegmentCandidate") -> List[AssPoint]:
        """Points of ``self`` whose hit is used by ``other`` with the opposite side."""
        theirs = {id(p.hit): p.side for p in other.points}
        return [p for p in self.points if id(p.hit) in theirs and theirs[id(p.hit)] is not p.side]

    def without(self, drop: Iterable[AssPoint]) -> "SegmentCandidate":
        """A new, unfitted candidate without the hits of ``drop``."""
        gone = {id(p.hit) for p in drop}
        return SegmentCandidate.from_points((p for p in self.points if id(p.hit) not in gone), self.superlayer)

    def better_than(self, other: "SegmentCandidate") -> bool:
        """More hits wins; at equal hit count the lower chi2 wins."""
        if self.n_hits == other.n_hits:
            mine = self.chi2 if self.chi2 >= 0 else float("inf")
            theirs = other.chi2 if other.chi2 >= 0 else float("inf")
            return mine < theirs
        return self.n_hits > other.n_hits

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SegmentCandidate):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def pattern(self) -> str:
        """One-line hit pattern, e.g. ``L1:w12R L2:w12L L3:w13R``."""
        return " ".join(f"L{p.hit.id.layer}:w{p.hit.id.wire}{p.side.mark}" for p in self.points)

    def __str__(self) -> str:
        return (
            f"SegmentCandidate(SL{self.superlayer.index} nHits={self.n_hits} "
            f"chi2={self.chi2:.4g} t0={self.t0:.2f} x0={self.position:.4f} slope={self.slope:.4f} "
            f"[{self.pattern()}])"
        )


@dataclass(slots=True)
class RecHit1D:
    """A hit with its side resolved and its t0-corrected local position."""
    hit: HitPairForFit
    side: CellSide
    local_position: np.ndarray
    drift_distance: float


@dataclass(slots=True)
class Segment2D:
    r"""
    Finished, fit-refined 2D segment in one super-layer.

    Attributes
    ----------
    superlayer : int
        Super-layer index.
    local_position : (3,) ndarray
        Point of the segment at :math:`z=0` in the super-layer frame.
    local_direction : (3,) ndarray
        Unit direction :math:`\propto(b, 0, 1)`, pointing away from the IP.
    slope : float
        :math:`dx/dz`.
    angle : float
        :math:`\arctan b` (rad).
    t0 : float
        Fitted time offset (ns), ``0`` when not fitted.
    chi2 : float
    ndof : int
    hits : list[RecHit1D]
    covariance : (2, 2) ndarray
        Covariance of ``(slope, position)``.
    global_position, global_direction : (3,) ndarray
    """
    superlayer: int
    local_position: np.ndarray
    local_direction: np.ndarray
    slope: float
    angle: float
    t0: float
    chi2: float
    ndof: int
    hits: List[RecHit1D]
    covariance: np.ndarray
    global_position: np.ndarray
    global_direction: np.ndarray

    @property
    def n_hits(self) -> int:
        return len(self.hits)

    @property
    def chi2ndof(self) -> Optional[float]:
        return self.chi2 / self.ndof if self.ndof > 0 else None

    def __str__(self) -> str:
        pattern = " ".join(f"L{h.hit.id.layer}:w{h.hit.id.wire}{h.side.mark}" for h in self.hits)
        return (
            f"Segment2D(SL{self.superlayer} nHits={self.n_hits} chi2={self.chi2:.4g}/{self.ndof} "
            f"t0={self.t0:.2f} x0={self.local_position[0]:.4f} angle={self.angle:.4f} [{pattern}])"
        )
