import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import matplotlib.patches as patches

from dtseg_reco.geometry import SuperLayerGeometry
from dtseg_reco.hit_pool import RecHit1DPair
from dtseg_reco.segment import Segment2D

logger = logging.getLogger(__name__)


def _show_and_close(fig, *, do_show: bool = True, save_path: Optional[str] = None) -> None:
    r"""
    Show a Matplotlib figure (optionally), save it (optionally) and always close it.

    Safe in headless mode where ``plt.show()`` is patched to a no-op by the
    CLI plotting guard.
    """
    try:
        fig.tight_layout()
    except Exception:
        pass
    if save_path:
        fig.savefig(save_path, dpi=120)
        logger.info("Saved figure to %s", save_path)
    if do_show:
        plt.show()
    plt.close(fig)


def plot_superlayer(
    geometry: SuperLayerGeometry,
    hits: Sequence[RecHit1DPair],
    segments: Sequence[Segment2D] = (),
    *,
    title: Optional[str] = None,
    show: bool = True,
    save_path: Optional[str] = None,
    margin_cells: int = 2,
):
    r"""
    Event display of one super-layer in its local :math:`(x, z)` frame.

    Draws

    - the fired cells (rectangles of ``cell_width`` :math:`\times` ``cell_height``),
    - both side hypotheses of every hit (``x`` markers, wire as a dot),
    - every segment as the line :math:`x = x_0 + b\,z` across the layers, with
      the hits it uses highlighted on their resolved side.

    Parameters
    ----------
    geometry : SuperLayerGeometry
    hits : sequence of RecHit1DPair
        Raw hits of this super-layer.
    segments : sequence of Segment2D, optional
        Reconstructed segments of this super-layer.
    title : str, optional
    show : bool, optional
        Call ``plt.show()``; the figure is closed in any case.
    save_path : str, optional
        Write the figure to this path.
    margin_cells : int, optional
        Horizontal padding around the fired cells, in cells.

    Returns
    -------
    matplotlib.figure.Figure
        The (closed) figure, for callers that want to inspect it.
    """
    c, h = geometry.cell_width, geometry.cell_height
    fig, ax = plt.subplots(figsize=(9, 3.5))

    xs = []
    for p in hits:
        lay, wire = p.wire_id.layer, p.wire_id.wire
        xw = geometry.wire_x(lay, wire)
        z = geometry.layer_z(lay)
        xs.append(xw)
        ax.add_patch(patches.Rectangle((xw - c / 2, z - h / 2), c, h, fill=False, lw=0.8, ec="0.6"))
        ax.plot([xw], [z], ".", color="0.3", ms=3)
        ax.plot([xw - p.drift_distance, xw + p.drift_distance], [z, z], "x", color="tab:blue", ms=5)

    cmap = plt.get_cmap("tab10")
    z_lo = geometry.layer_z(1) - h / 2
    z_hi = geometry.layer_z(geometry.n_layers) + h / 2
    for k, seg in enumerate(segments):
        col = cmap(k % 10)
        zz = np.array([z_lo, z_hi])
        ax.plot(seg.local_position[0] + seg.slope * zz, zz, "-", color=col, lw=1.2,
                label=f"seg {k}: {seg.n_hits} hits, t0={seg.t0:.1f} ns")
        for rh in seg.hits:
            ax.plot([rh.local_position[0]], [rh.local_position[2]], "o", mfc="none", mec=col, ms=8)

    if xs:
        ax.set_xlim(min(xs) - margin_cells * c, max(xs) + margin_cells * c)
    ax.set_ylim(z_lo - h / 2, z_hi + h / 2)
    ax.set_xlabel("local x [cm]")
    ax.set_ylabel("local z [cm]")
    ax.set_aspect("equal", adjustable="datalim")
    ax.set_title(title or f"SL{geometry.index}: {len(hits)} hits, {len(segments)} segment(s)")
    if segments:
        ax.legend(fontsize=7, loc="upper right")
    _show_and_close(fig, do_show=show, save_path=save_path)
    return fig


def plot_segment_residuals(segments: pd.DataFrame, *, show: bool = True, save_path: Optional[str] = None):
    r"""
    Histograms of the fitted :math:`t_0` and of :math:`\chi^2/\text{ndof}` of a segment table.

    ``segments`` is the table of :func:`dtseg_reco.data.segments_to_frame`;
    rows with ``ndof <= 0`` are left out of the :math:`\chi^2/\text{ndof}` panel.
    """
    t0 = segments["t0"].to_numpy(dtype=np.float64)
    ndof = segments["ndof"].to_numpy(dtype=np.float64)
    ok = ndof > 0
    chi2ndof = segments["chi2"].to_numpy(dtype=np.float64)[ok] / ndof[ok]

    fig, axes = plt.subplots(1, 2, figsize=(9, 3.5))
    axes[0].hist(t0, bins=40, histtype="step")
    axes[0].set_xlabel("t0 [ns]")
    axes[1].hist(chi2ndof, bins=40, histtype="step")
    axes[1].set_xlabel("chi2 / ndof")
    for ax in axes:
        ax.set_ylabel("segments")
    _show_and_close(fig, do_show=show, save_path=save_path)
    return fig
