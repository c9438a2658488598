from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Tuple

import numpy as np
from numba import njit

from dtseg_reco.geometry import WireId

logger = logging.getLogger(__name__)

__all__ = [
    "GeometryWindow",
    "DEFAULT_WINDOW",
    "WIDE_WINDOW",
    "COMPATIBLE",
    "INCOMPATIBLE",
    "ANOMALY",
    "geometry_filter",
    "compatibility_codes",
]

# pair codes returned by the kernels
COMPATIBLE = 1
INCOMPATIBLE = 0
ANOMALY = -1


@dataclass(frozen=True)
class GeometryWindow:
    r"""
    Admission window on the signed wire distance, indexed by layer distance.

    A pair of hits with layer distance :math:`d\in\{1,2,3\}` and signed wire
    distance :math:`\Delta w` is compatible iff

    .. math::

        \text{lower}[d] < \Delta w < \text{upper}[d].

    Index ``0`` is unused (same-layer pairs are always rejected).
    """
    lower: Tuple[int, int, int, int] = (0, -1, -2, -2)
    upper: Tuple[int, int, int, int] = (0, 2, 2, 3)
    _arrays: Tuple[np.ndarray, np.ndarray] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if len(self.lower) != 4 or len(self.upper) != 4:
            raise ValueError("GeometryWindow bounds need exactly 4 entries (index 0 unused).")
        lo = np.asarray(self.lower, dtype=np.int64)
        up = np.asarray(self.upper, dtype=np.int64)
        object.__setattr__(self, "_arrays", (lo, up))

    @property
    def arrays(self) -> Tuple[np.ndarray, np.ndarray]:
        return self._arrays


DEFAULT_WINDOW = GeometryWindow()
WIDE_WINDOW = GeometryWindow(lower=(0, -2, -4, -5), upper=(0, 3, 4, 6))


@njit(cache=True)
def _pair_code(sl1, l1, w1, sl2, l2, w2, lower, upper):
    # hits in different super-layers are not judged here
    if sl1 != sl2:
        return 1
    d_layer = abs(l1 - l2)
    if d_layer == 0:
        return 0
    if d_layer > 3:
        return -1
    d_wire = w1 - w2
    # odd/even layers are staggered by half a cell
    if l2 % 2 == 0:
        d_wire = -d_wire
    if d_wire <= lower[d_layer] or d_wire >= upper[d_layer]:
        return 0
    return 1


@njit(cache=True)
def _pair_code_matrix(sl, layer, wire, lower, upper):
    n = sl.shape[0]
    out = np.zeros((n, n), dtype=np.int8)
    for i in range(n):
        for j in range(n):
            if i != j:
                out[i, j] = np.int8(_pair_code(sl[i], layer[i], wire[i], sl[j], layer[j], wire[j], lower, upper))
    return out


def geometry_filter(first: WireId, second: WireId, window: GeometryWindow = DEFAULT_WINDOW) -> bool:
    r"""
    Decide whether two wires can be crossed by the same straight segment.

    Parameters
    ----------
    first, second : WireId
        Wire identifiers of the two hits. The order matters: the half-cell
        stagger sign flip is keyed to the parity of ``second.layer``.
    window : GeometryWindow, optional
        Admission bounds per layer distance.

    Returns
    -------
    bool
        ``True`` for hits in different super-layers; ``False`` for hits in
        the same layer, for layer distances above 3 (a warning is logged) and
        for wire distances outside the window.
    """
    lower, upper = window.arrays
    code = _pair_code(
        first.superlayer, first.layer, first.wire,
        second.superlayer, second.layer, second.wire,
        lower, upper,
    )
    if code == ANOMALY:
        logger.warning("DT layer numbers differ by more than 3 for hits %s and %s", first, second)
        return False
    return code == COMPATIBLE


def compatibility_codes(wire_ids, window: GeometryWindow = DEFAULT_WINDOW) -> np.ndarray:
    r"""
    Pairwise compatibility codes for a list of wires.

    Parameters
    ----------
    wire_ids : sequence of WireId
        Wires in hit order.
    window : GeometryWindow, optional
        Admission bounds per layer distance.

    Returns
    -------
    ndarray, shape (N, N), dtype int8
        ``codes[i, j]`` is :data:`COMPATIBLE`, :data:`INCOMPATIBLE` or
        :data:`ANOMALY` for ``geometry_filter(wire_ids[i], wire_ids[j])``.
        The diagonal is :data:`INCOMPATIBLE`.

    Notes
    -----
    The matrix is filled by a compiled kernel using the same scalar rule as
    :func:`geometry_filter`; anomalies are **not** logged here.
    """
    n = len(wire_ids)
    if n == 0:
        return np.zeros((0, 0), dtype=np.int8)
    arr = np.asarray([tuple(w) for w in wire_ids], dtype=np.int64).reshape(n, 3)
    lower, upper = window.arrays
    return _pair_code_matrix(
        np.ascontiguousarray(arr[:, 0]),
        np.ascontiguousarray(arr[:, 1]),
        np.ascontiguousarray(arr[:, 2]),
        lower, upper,
    )
