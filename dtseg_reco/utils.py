from __future__ import annotations

from typing import Iterable, List, Optional

import numpy as np

from dtseg_reco.geometry import DRIFT_VELOCITY, CellSide, SuperLayerGeometry, WireId
from dtseg_reco.hit_pool import RecHit1DPair


def hits_on_line(
    geometry: SuperLayerGeometry,
    x0: float,
    slope: float,
    layers: Iterable[int] = (1, 2, 3, 4),
    *,
    t0_shift: float = 0.0,
    smear: float = 0.0,
    sigma: float = 0.02,
    rng: Optional[np.random.Generator] = None,
    drift_velocity: float = DRIFT_VELOCITY,
) -> List[RecHit1DPair]:
    r"""
    Raw hits left by a straight track :math:`x(z) = x_0 + b\,z` in one super-layer.

    For each layer :math:`\ell` the fired wire is the one whose cell contains
    :math:`x(z_\ell)`, and the drift distance is

    .. math::

        d_\ell = |x(z_\ell) - x_{\ell,w}| + v_\text{drift}\,t_0 + \varepsilon_\ell,
        \qquad \varepsilon_\ell \sim \mathcal{N}(0, \text{smear}^2),

    where a positive ``t0_shift`` (ns) mimics a late trigger. Distances are
    clipped at zero.

    Parameters
    ----------
    geometry : SuperLayerGeometry
        Super-layer crossed by the track.
    x0, slope : float
        Track position at :math:`z=0` (cm) and :math:`dx/dz`.
    layers : iterable of int, optional
        Layers that fire, in the emitted order.
    t0_shift : float, optional
        Common time offset (ns) added to every drift time.
    smear : float, optional
        Gaussian smearing of the drift distances (cm).
    sigma : float, optional
        Resolution stored on the hits (cm).
    rng : numpy.random.Generator, optional
        Randomness for the smearing.
    drift_velocity : float, optional
        Drift velocity (cm/ns).

    Returns
    -------
    list[RecHit1DPair]
    """
    rng = rng or np.random.default_rng()
    out: List[RecHit1DPair] = []
    for layer in layers:
        z = geometry.layer_z(layer)
        x = x0 + slope * z
        wire = geometry.nearest_wire(layer, x)
        d = abs(x - geometry.wire_x(layer, wire)) + drift_velocity * t0_shift
        if smear > 0.0:
            d += rng.normal(0.0, smear)
        d = max(d, 0.0)
        out.append(RecHit1DPair(WireId(geometry.index, layer, wire), float(d), float(d / drift_velocity), float(sigma)))
    return out


def truth_sides(geometry: SuperLayerGeometry, pairs: Iterable[RecHit1DPair], x0: float, slope: float) -> List[CellSide]:
    r"""Side of each wire on which the line :math:`x = x_0 + b\,z` passes."""
    out = []
    for p in pairs:
        lay = p.wire_id.layer
        x = x0 + slope * geometry.layer_z(lay)
        out.append(CellSide.RIGHT if x > geometry.wire_x(lay, p.wire_id.wire) else CellSide.LEFT)
    return out


def noise_hits(
    geometry: SuperLayerGeometry,
    n: int,
    *,
    n_wires: int = 50,
    sigma: float = 0.02,
    rng: Optional[np.random.Generator] = None,
    drift_velocity: float = DRIFT_VELOCITY,
) -> List[RecHit1DPair]:
    """Uniformly distributed random hits (layer, wire, drift distance) in one super-layer."""
    rng = rng or np.random.default_rng()
    layers = rng.integers(1, geometry.n_layers + 1, size=n)
    wires = rng.integers(1, n_wires + 1, size=n)
    dists = rng.uniform(0.0, geometry.half_cell, size=n)
    return [
        RecHit1DPair(WireId(geometry.index, int(l), int(w)), float(d), float(d / drift_velocity), float(sigma))
        for l, w, d in zip(layers, wires, dists)
    ]


def simulate_event(
    chamber: dict,
    rng: np.random.Generator,
    *,
    n_tracks: int = 1,
    n_noise: int = 2,
    max_slope: float = 0.5,
    max_t0: float = 0.0,
    smear: float = 0.0,
    n_wires: int = 50,
) -> List[RecHit1DPair]:
    r"""
    Hits of a toy event over all super-layers of ``chamber``.

    Each track gets a random position over the first ``n_wires`` cells, a
    slope in :math:`[-b_\text{max}, b_\text{max}]` (phi super-layers) or pointing
    to the beam line within 0.02 (theta super-layer), and a common random
    :math:`t_0 \in [0, t_{0,\text{max}}]`.
    """
    pairs: List[RecHit1DPair] = []
    for _ in range(n_tracks):
        t0 = float(rng.uniform(0.0, max_t0)) if max_t0 > 0 else 0.0
        for sl in chamber.values():
            span = (n_wires - 2) * sl.cell_width
            x0 = sl.x0 + sl.cell_width + float(rng.uniform(0.0, span))
            if sl.is_theta:
                # local x runs along the beam axis
                pointing = (sl.to_global([x0, 0.0, 0.0])[2]) / float(np.hypot(sl.origin[0], sl.origin[1]))
                slope = pointing + float(rng.uniform(-0.02, 0.02))
            else:
                slope = float(rng.uniform(-max_slope, max_slope))
            pairs.extend(hits_on_line(sl, x0, slope, t0_shift=t0, smear=smear, rng=rng))
    for sl in chamber.values():
        pairs.extend(noise_hits(sl, n_noise, n_wires=n_wires, rng=rng))
    return pairs
