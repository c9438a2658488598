from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List

import numpy as np

from dtseg_reco.geometry import DRIFT_VELOCITY, CellSide, SuperLayerGeometry, WireId
from dtseg_reco.geometry_filter import (
    ANOMALY,
    COMPATIBLE,
    DEFAULT_WINDOW,
    GeometryWindow,
    compatibility_codes,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecHit1DPair:
    r"""
    Raw drift-tube measurement: one wire and a drift distance, ambiguous in side.

    Attributes
    ----------
    wire_id : WireId
        ``(superlayer, layer, wire)`` of the fired cell.
    drift_distance : float
        Distance of the track from the wire (cm), :math:`d\ge 0`.
    digi_time : float
        Raw TDC time of the digi (ns).
    sigma : float
        Position resolution (cm).
    """
    wire_id: WireId
    drift_distance: float
    digi_time: float = 0.0
    sigma: float = 0.02

    @classmethod
    def from_drift_time(
        cls,
        wire_id: WireId,
        drift_time: float,
        *,
        digi_time: float | None = None,
        sigma: float = 0.02,
        drift_velocity: float = DRIFT_VELOCITY,
    ) -> "RecHit1DPair":
        r"""
        Build a pair from a drift time with a constant drift velocity,
        :math:`d = v_\text{drift}\,t`.
        """
        return cls(
            WireId(*wire_id),
            float(drift_velocity * drift_time),
            float(drift_time if digi_time is None else digi_time),
            float(sigma),
        )


class HitPairForFit:
    r"""
    A raw hit pair resolved in the super-layer frame, for both side hypotheses.

    Instances are immutable and compared **by identity**: the same physical
    hit referenced by several segment candidates is the same object.

    Parameters
    ----------
    pair : RecHit1DPair
        Raw measurement.
    superlayer : SuperLayerGeometry
        Geometry context used to place the wire.

    Notes
    -----
    For side sign :math:`s` (``+1`` left, ``-1`` right) the local position is

    .. math::

        \bigl(x_w - s\,d,\; 0,\; z_\ell\bigr).
    """

    __slots__ = ("_pair", "_wire_pos", "_left", "_right")

    def __init__(self, pair: RecHit1DPair, superlayer: SuperLayerGeometry) -> None:
        wid = pair.wire_id
        xw = superlayer.wire_x(wid.layer, wid.wire)
        z = superlayer.layer_z(wid.layer)
        d = float(pair.drift_distance)
        self._pair = pair
        self._wire_pos = np.array([xw, 0.0, z], dtype=np.float64)
        self._left = np.array([xw - d, 0.0, z], dtype=np.float64)
        self._right = np.array([xw + d, 0.0, z], dtype=np.float64)
        for a in (self._wire_pos, self._left, self._right):
            a.flags.writeable = False

    @property
    def id(self) -> WireId:
        return self._pair.wire_id

    @property
    def pair(self) -> RecHit1DPair:
        return self._pair

    @property
    def drift_distance(self) -> float:
        return float(self._pair.drift_distance)

    @property
    def sigma(self) -> float:
        return float(self._pair.sigma)

    @property
    def digi_time(self) -> float:
        return float(self._pair.digi_time)

    @property
    def wire_position(self) -> np.ndarray:
        return self._wire_pos

    def local_position(self, side: CellSide) -> np.ndarray:
        return self._left if side is CellSide.LEFT else self._right

    def __repr__(self) -> str:
        return f"HitPairForFit({self.id}, d={self.drift_distance:.4f}, t={self.digi_time:.1f})"


class HitPool:
    r"""
    Hits of one super-layer, wrapped for fitting, with a cached compatibility matrix.

    The pool keeps the input order of the raw pairs (the pattern recognition
    enumerates seed pairs in that order) and evaluates the geometry filter
    for every ordered pair once, through the compiled kernel of
    :mod:`dtseg_reco.geometry_filter`.

    Parameters
    ----------
    superlayer : SuperLayerGeometry
        Geometry context shared by all hits.
    pairs : iterable of RecHit1DPair
        Raw measurements.
    window : GeometryWindow, optional
        Wire-distance admission window.

    Attributes
    ----------
    hits : list[HitPairForFit]
        Wrapped hits in input order.
    codes : ndarray, shape (N, N), int8
        ``codes[i, j]`` is the compatibility of ``(hits[i], hits[j])`` in that order.

    Notes
    -----
    Layer anomalies (layer distance above 3) are logged once per ordered pair
    when the pool is built.
    """

    __slots__ = ("superlayer", "window", "hits", "codes", "_index")

    def __init__(
        self,
        superlayer: SuperLayerGeometry,
        pairs: Iterable[RecHit1DPair],
        window: GeometryWindow = DEFAULT_WINDOW,
    ) -> None:
        self.superlayer = superlayer
        self.window = window
        self.hits: List[HitPairForFit] = [HitPairForFit(p, superlayer) for p in pairs]
        self._index = {id(h): i for i, h in enumerate(self.hits)}
        self.codes = compatibility_codes([h.id for h in self.hits], window)

        bad_i, bad_j = np.nonzero(self.codes == ANOMALY)
        for i, j in zip(bad_i.tolist(), bad_j.tolist()):
            logger.warning(
                "DT layer numbers differ by more than 3 for hits %s and %s",
                self.hits[i].id, self.hits[j].id,
            )

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self) -> Iterator[HitPairForFit]:
        return iter(self.hits)

    def __getitem__(self, i: int) -> HitPairForFit:
        return self.hits[i]

    def index_of(self, hit: HitPairForFit) -> int:
        return self._index[id(hit)]

    def compatible(self, i: int, j: int) -> bool:
        return bool(self.codes[i, j] == COMPATIBLE)

    def compatible_hits(self, first: HitPairForFit, second: HitPairForFit) -> bool:
        return self.compatible(self.index_of(first), self.index_of(second))
