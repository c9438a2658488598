from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, List, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from dtseg_reco.geometry import DRIFT_VELOCITY, WireId
from dtseg_reco.hit_pool import RecHit1DPair
from dtseg_reco.segment import Segment2D

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: Tuple[str, ...] = ("event", "superlayer", "layer", "wire")
DRIFT_COLUMNS: Tuple[str, ...] = ("drift_distance", "drift_time")

SEGMENT_COLUMNS: Tuple[str, ...] = (
    "event", "superlayer", "n_hits", "position", "slope", "angle", "t0", "chi2", "ndof",
    "gx", "gy", "gz", "gdx", "gdy", "gdz", "pattern",
)


def load_hits(
    path: Union[str, Path],
    *,
    drift_velocity: float = DRIFT_VELOCITY,
    default_sigma: float = 0.02,
) -> pd.DataFrame:
    r"""
    Load a table of drift-tube hits.

    The file format is chosen from the suffix (``.parquet``/``.pq`` through
    :func:`pandas.read_parquet`, anything else through :func:`pandas.read_csv`).

    Required columns are ``event, superlayer, layer, wire`` plus either
    ``drift_distance`` (cm) or ``drift_time`` (ns). When only the drift time is
    given, the distance is derived as :math:`d = v_\text{drift}\,t` and the
    drift time is kept as ``digi_time``. Optional columns ``digi_time`` and
    ``sigma`` are filled with ``0`` and ``default_sigma`` when missing.

    Parameters
    ----------
    path : str or pathlib.Path
        Input file.
    drift_velocity : float, optional
        Drift velocity (cm/ns) used with ``drift_time``.
    default_sigma : float, optional
        Hit resolution (cm) used when the table has no ``sigma`` column.

    Returns
    -------
    pandas.DataFrame
        Columns ``event, superlayer, layer, wire, drift_distance, digi_time, sigma``.

    Raises
    ------
    KeyError
        If a required column is missing.
    ValueError
        If a drift distance is negative.
    """
    path = Path(path)
    if path.suffix.lower() in (".parquet", ".pq"):
        df = pd.read_parquet(path)
    else:
        df = pd.read_csv(path)

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise KeyError(f"{path}: missing required column(s) {missing}")
    if not any(c in df.columns for c in DRIFT_COLUMNS):
        raise KeyError(f"{path}: one of the columns {list(DRIFT_COLUMNS)} is required")

    df = df.copy()
    if "drift_distance" not in df.columns:
        df["drift_distance"] = df["drift_time"].astype("float64") * float(drift_velocity)
        if "digi_time" not in df.columns:
            df["digi_time"] = df["drift_time"].astype("float64")
    if "digi_time" not in df.columns:
        df["digi_time"] = 0.0
    if "sigma" not in df.columns:
        df["sigma"] = float(default_sigma)

    df = df.astype({
        "event": "int64", "superlayer": "int64", "layer": "int64", "wire": "int64",
        "drift_distance": "float64", "digi_time": "float64", "sigma": "float64",
    })
    if (df["drift_distance"] < 0).any():
        raise ValueError(f"{path}: negative drift distances found")

    out = df[["event", "superlayer", "layer", "wire", "drift_distance", "digi_time", "sigma"]]
    logger.info(
        "Loaded %d hits in %d event(s) from %s",
        len(out), out["event"].nunique(), path.name,
    )
    return out.reset_index(drop=True)


def hits_to_frame(event: int, pairs: Sequence[RecHit1DPair]) -> pd.DataFrame:
    """Inverse of :func:`iter_superlayer_hits` for one event (used by the simulation mode)."""
    rows = [
        (event, p.wire_id.superlayer, p.wire_id.layer, p.wire_id.wire, p.drift_distance, p.digi_time, p.sigma)
        for p in pairs
    ]
    return pd.DataFrame(
        rows, columns=["event", "superlayer", "layer", "wire", "drift_distance", "digi_time", "sigma"]
    )


def iter_superlayer_hits(df: pd.DataFrame) -> Iterator[Tuple[int, int, List[RecHit1DPair]]]:
    r"""
    Group a hit table by ``(event, superlayer)``.

    Groups come out in ascending ``(event, superlayer)`` order; inside a group
    the rows keep their file order (stable sort), which fixes the hit order
    seen by the pattern recognition.

    Yields
    ------
    tuple
        ``(event, superlayer, pairs)`` with ``pairs`` a list of
        :class:`~dtseg_reco.hit_pool.RecHit1DPair`.
    """
    ordered = df.sort_values(["event", "superlayer"], kind="mergesort")
    for (event, sl), grp in ordered.groupby(["event", "superlayer"], sort=False):
        pairs = [
            RecHit1DPair(WireId(int(s), int(l), int(w)), float(d), float(t), float(sg))
            for s, l, w, d, t, sg in zip(
                grp["superlayer"].to_numpy(), grp["layer"].to_numpy(), grp["wire"].to_numpy(),
                grp["drift_distance"].to_numpy(), grp["digi_time"].to_numpy(), grp["sigma"].to_numpy(),
            )
        ]
        yield int(event), int(sl), pairs


def segments_to_frame(event: int, segments: Sequence[Segment2D]) -> pd.DataFrame:
    """Flat table of reconstructed segments, one row per segment."""
    rows = []
    for seg in segments:
        gp, gd = seg.global_position, seg.global_direction
        rows.append((
            int(event), seg.superlayer, seg.n_hits,
            float(seg.local_position[0]), seg.slope, seg.angle, seg.t0, seg.chi2, seg.ndof,
            float(gp[0]), float(gp[1]), float(gp[2]),
            float(gd[0]), float(gd[1]), float(gd[2]),
            " ".join(f"L{h.hit.id.layer}:w{h.hit.id.wire}{h.side.mark}" for h in seg.hits),
        ))
    df = pd.DataFrame(rows, columns=list(SEGMENT_COLUMNS))
    return df.astype({"event": "int64", "superlayer": "int64", "n_hits": "int64", "ndof": "int64"})


def write_segments(df: pd.DataFrame, path: Union[str, Path]) -> None:
    path = Path(path)
    if path.suffix.lower() in (".parquet", ".pq"):
        df.to_parquet(path, index=False)
    else:
        df.to_csv(path, index=False, float_format="%.6g")
    logger.info("Wrote %d segment(s) to %s", len(df), path)


def concat_segments(frames: Sequence[pd.DataFrame]) -> pd.DataFrame:
    frames = [f for f in frames if len(f)]
    if not frames:
        return pd.DataFrame(columns=list(SEGMENT_COLUMNS))
    return pd.concat(frames, ignore_index=True)


def summary(df: pd.DataFrame) -> dict:
    """Per-table counters logged by the CLI."""
    if df.empty:
        return {"segments": 0, "events": 0, "mean_hits": 0.0, "mean_chi2ndof": 0.0}
    ndof = df["ndof"].to_numpy(dtype=np.float64)
    chi2 = df["chi2"].to_numpy(dtype=np.float64)
    ok = ndof > 0
    return {
        "segments": int(len(df)),
        "events": int(df["event"].nunique()),
        "mean_hits": float(df["n_hits"].mean()),
        "mean_chi2ndof": float(np.mean(chi2[ok] / ndof[ok])) if ok.any() else 0.0,
    }
