from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import scipy.linalg

__all__ = ["LineFit", "Line3ParFit", "fit", "fit3par"]

# minimal determinant of the normal equations before a fit is declared degenerate
_DET_EPS = 1e-12


@dataclass(frozen=True, slots=True)
class LineFit:
    r"""
    Result of a weighted straight-line fit :math:`y = b\,x + a`.

    ``chi2 == -1`` marks a degenerate system (no solution).
    """
    slope: float
    intercept: float
    chi2: float
    cov_ss: float = 0.0
    cov_ii: float = 0.0
    cov_si: float = 0.0

    @property
    def ok(self) -> bool:
        return self.chi2 != -1.0

    @property
    def covariance(self) -> np.ndarray:
        return np.array([[self.cov_ss, self.cov_si], [self.cov_si, self.cov_ii]], dtype=np.float64)


@dataclass(frozen=True, slots=True)
class Line3ParFit:
    r"""
    Result of the 3-parameter fit :math:`y_i = b\,x_i + a + s_i\,c`.

    ``offset`` is :math:`c`, a drift-distance offset common to all hits and
    signed by the side :math:`s_i`.
    """
    slope: float
    intercept: float
    offset: float
    chi2: float
    covariance: np.ndarray

    @property
    def ok(self) -> bool:
        return self.chi2 != -1.0


_FAILED = LineFit(0.0, 0.0, -1.0)


def _as_arrays(*cols: Sequence[float]):
    return [np.asarray(c, dtype=np.float64) for c in cols]


def fit(x: Sequence[float], y: Sequence[float], sigma: Sequence[float]) -> LineFit:
    r"""
    Weighted least-squares straight line through :math:`(x_i, y_i)`.

    With weights :math:`w_i = 1/\sigma_i^2` and sums
    :math:`S=\sum w_i`, :math:`S_x=\sum w_i x_i`, :math:`S_y=\sum w_i y_i`,
    :math:`S_{xx}=\sum w_i x_i^2`, :math:`S_{xy}=\sum w_i x_i y_i`,

    .. math::

        \Delta = S\,S_{xx} - S_x^2,\qquad
        b = \frac{S\,S_{xy} - S_x S_y}{\Delta},\qquad
        a = \frac{S_{xx} S_y - S_x S_{xy}}{\Delta},

    and :math:`\chi^2=\sum w_i (y_i - a - b x_i)^2`.

    Parameters
    ----------
    x, y : sequence of float
        Abscissae (layer :math:`z`) and measured positions.
    sigma : sequence of float
        Per-point uncertainties on ``y``.

    Returns
    -------
    LineFit
        Fit parameters, covariance terms and :math:`\chi^2`; ``chi2 == -1``
        if fewer than two distinct abscissae are given.
    """
    x, y, sigma = _as_arrays(x, y, sigma)
    if x.size < 2:
        return _FAILED
    w = 1.0 / (sigma * sigma)
    s = w.sum()
    sx = (w * x).sum()
    sy = (w * y).sum()
    sxx = (w * x * x).sum()
    sxy = (w * x * y).sum()
    delta = s * sxx - sx * sx
    if abs(delta) <= _DET_EPS * max(1.0, s * sxx):
        return _FAILED

    slope = (s * sxy - sx * sy) / delta
    intercept = (sxx * sy - sx * sxy) / delta
    res = y - intercept - slope * x
    chi2 = float((w * res * res).sum())
    return LineFit(
        slope=float(slope),
        intercept=float(intercept),
        chi2=chi2,
        cov_ss=float(s / delta),
        cov_ii=float(sxx / delta),
        cov_si=float(-sx / delta),
    )


def fit3par(
    x: Sequence[float],
    y: Sequence[float],
    sides: Sequence[int],
    sigma: Sequence[float],
) -> Line3ParFit:
    r"""
    Straight line plus a common side-signed offset.

    Solves the normal equations :math:`(A^\top W A)\,p = A^\top W y` for
    :math:`p = (b, a, c)` with design rows :math:`(x_i, 1, s_i)`, using a
    Cholesky-based :func:`scipy.linalg.solve`.

    Parameters
    ----------
    x, y : sequence of float
        Abscissae and measured positions.
    sides : sequence of int
        Side signs :math:`s_i\in\{+1,-1\}`.
    sigma : sequence of float
        Per-point uncertainties on ``y``.

    Returns
    -------
    Line3ParFit
        ``chi2 == -1`` when the system is singular (e.g. all hits on one side,
        or fewer than three points).
    """
    x, y, s, sigma = _as_arrays(x, y, sides, sigma)
    if x.size < 3:
        return Line3ParFit(0.0, 0.0, 0.0, -1.0, np.zeros((3, 3)))
    w = 1.0 / (sigma * sigma)
    A = np.column_stack((x, np.ones_like(x), s))
    N = A.T @ (w[:, None] * A)
    rhs = A.T @ (w * y)
    if abs(np.linalg.det(N)) <= _DET_EPS * max(1.0, float(np.abs(N).max()) ** 3):
        return Line3ParFit(0.0, 0.0, 0.0, -1.0, np.zeros((3, 3)))
    try:
        p = scipy.linalg.solve(N, rhs, assume_a="pos")
        cov = scipy.linalg.inv(N)
    except np.linalg.LinAlgError:
        return Line3ParFit(0.0, 0.0, 0.0, -1.0, np.zeros((3, 3)))

    res = y - A @ p
    chi2 = float((w * res * res).sum())
    return Line3ParFit(
        slope=float(p[0]),
        intercept=float(p[1]),
        offset=float(p[2]),
        chi2=chi2,
        covariance=cov,
    )
