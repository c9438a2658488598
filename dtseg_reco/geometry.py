from __future__ import annotations

from enum import Enum
from typing import Dict, NamedTuple, Optional, Sequence

import numpy as np

# Drift velocity in cm/ns (converts a fitted drift offset into a time offset).
DRIFT_VELOCITY = 0.00543

THETA_SUPERLAYER = 2


class CellSide(Enum):
    """Left/right ambiguity resolution of a drift-tube hit."""
    LEFT = 1
    RIGHT = 2

    @property
    def sign(self) -> int:
        r"""
        Side sign :math:`s` used by the fits: ``+1`` for left, ``-1`` for right.

        A hit at drift distance :math:`d` from a wire at :math:`x_w` sits at
        :math:`x = x_w - s\,d`.
        """
        return 1 if self is CellSide.LEFT else -1

    @property
    def mark(self) -> str:
        return "L" if self is CellSide.LEFT else "R"


SIDES = (CellSide.LEFT, CellSide.RIGHT)


class WireId(NamedTuple):
    """Composite wire key ``(superlayer, layer, wire)``."""
    superlayer: int
    layer: int
    wire: int

    def __str__(self) -> str:
        return f"SL{self.superlayer}/L{self.layer}/W{self.wire}"


class SuperLayerGeometry:
    r"""
    Read-only geometry of one drift-tube super-layer.

    Local frame
    -----------
    - :math:`x` : measurement direction (across the wires),
    - :math:`y` : along the wires,
    - :math:`z` : stacking direction of the layers (pointing away from the IP).

    Layer :math:`\ell` (1-based) sits at

    .. math::

        z_\ell = \bigl(\ell - \tfrac{n_\text{layers}+1}{2}\bigr)\,h,

    and wire :math:`w` of layer :math:`\ell` at

    .. math::

        x_{\ell,w} = x_0 + (w-1)\,c - \tfrac{c}{2}\,[\ell \text{ even}],

    i.e. even layers are staggered by half a cell with respect to odd ones.
    Here :math:`c` is the cell width and :math:`h` the cell height.

    Parameters
    ----------
    index : int
        Super-layer number inside the chamber (``2`` is the theta view).
    origin : array_like, shape (3,)
        Global position of the local origin (cm).
    rotation : array_like, shape (3, 3)
        Columns are the local axes expressed in global coordinates.
    cell_width, cell_height : float, optional
        Cell pitch along :math:`x` and layer spacing along :math:`z` (cm).
    n_layers : int, optional
        Number of layers (4 in a CMS-like super-layer).
    x0 : float, optional
        Local :math:`x` of wire 1 in the odd layers.
    """

    __slots__ = ("index", "origin", "rotation", "cell_width", "cell_height", "n_layers", "x0")

    def __init__(
        self,
        index: int,
        origin: Sequence[float] = (0.0, 0.0, 0.0),
        rotation: Optional[np.ndarray] = None,
        cell_width: float = 4.2,
        cell_height: float = 1.3,
        n_layers: int = 4,
        x0: float = 0.0,
    ) -> None:
        self.index = int(index)
        self.origin = np.asarray(origin, dtype=np.float64).reshape(3)
        self.rotation = (
            np.eye(3, dtype=np.float64) if rotation is None
            else np.asarray(rotation, dtype=np.float64).reshape(3, 3)
        )
        self.cell_width = float(cell_width)
        self.cell_height = float(cell_height)
        self.n_layers = int(n_layers)
        self.x0 = float(x0)

    @property
    def is_theta(self) -> bool:
        return self.index == THETA_SUPERLAYER

    @property
    def half_cell(self) -> float:
        """Maximum drift distance (cm)."""
        return 0.5 * self.cell_width

    def layer_z(self, layer: int) -> float:
        return (layer - 0.5 * (self.n_layers + 1)) * self.cell_height

    def wire_x(self, layer: int, wire: int) -> float:
        stagger = 0.5 * self.cell_width if layer % 2 == 0 else 0.0
        return self.x0 + (wire - 1) * self.cell_width - stagger

    def nearest_wire(self, layer: int, x: float) -> int:
        """Wire of ``layer`` whose cell contains local coordinate ``x``."""
        stagger = 0.5 * self.cell_width if layer % 2 == 0 else 0.0
        return int(np.floor((x - self.x0 + stagger) / self.cell_width + 0.5)) + 1

    def to_global(self, local: np.ndarray) -> np.ndarray:
        return self.origin + self.rotation @ np.asarray(local, dtype=np.float64)

    def vector_to_global(self, local: np.ndarray) -> np.ndarray:
        return self.rotation @ np.asarray(local, dtype=np.float64)

    def to_local(self, point: np.ndarray) -> np.ndarray:
        return self.rotation.T @ (np.asarray(point, dtype=np.float64) - self.origin)

    def __repr__(self) -> str:
        return f"SuperLayerGeometry(index={self.index}, origin={self.origin.tolist()})"


def polar_angle(v: np.ndarray) -> float:
    r"""Polar angle :math:`\theta = \operatorname{atan2}(\sqrt{v_x^2+v_y^2}, v_z)`."""
    return float(np.arctan2(np.hypot(v[0], v[1]), v[2]))


def build_chamber(
    radius: float = 400.0,
    phi: float = 0.0,
    z: float = 0.0,
    *,
    sl_spacing: float = 11.8,
    cell_width: float = 4.2,
    cell_height: float = 1.3,
    n_layers: int = 4,
    x0: float = 0.0,
) -> Dict[int, SuperLayerGeometry]:
    r"""
    Build the three super-layers of one barrel chamber.

    The chamber sits at transverse distance ``radius`` and azimuth ``phi`` from
    the beam line, with the local :math:`z` axes of all super-layers pointing
    radially outward :math:`\hat r = (\cos\phi, \sin\phi, 0)`.

    - SL1 and SL3 (phi view) measure along :math:`\hat\phi = (-\sin\phi, \cos\phi, 0)`,
      wires run along the beam axis.
    - SL2 (theta view) measures along the beam axis :math:`\hat z`.

    SL1, SL2 and SL3 are placed at radii ``radius - sl_spacing``, ``radius``
    and ``radius + sl_spacing`` respectively.

    Returns
    -------
    dict[int, SuperLayerGeometry]
        Keyed by super-layer index ``1..3``.
    """
    c, s = np.cos(phi), np.sin(phi)
    r_hat = np.array([c, s, 0.0])
    phi_hat = np.array([-s, c, 0.0])
    z_hat = np.array([0.0, 0.0, 1.0])

    # columns: local x, local y, local z (right-handed)
    rot_phi = np.column_stack((phi_hat, z_hat, r_hat))
    rot_theta = np.column_stack((z_hat, np.cross(r_hat, z_hat), r_hat))

    out: Dict[int, SuperLayerGeometry] = {}
    for index, dr, rot in ((1, -sl_spacing, rot_phi), (2, 0.0, rot_theta), (3, sl_spacing, rot_phi)):
        origin = (radius + dr) * r_hat + z * z_hat
        out[index] = SuperLayerGeometry(
            index, origin, rot,
            cell_width=cell_width, cell_height=cell_height, n_layers=n_layers, x0=x0,
        )
    return out
