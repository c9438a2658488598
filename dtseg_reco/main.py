#!/usr/bin/env python3
r"""
Drift-tube segment reconstruction runner (headless-safe, orjson config).

Reads a table of drift-tube hits (or simulates toy events), reconstructs the
2D segments of every ``(event, super-layer)`` with
:class:`~dtseg_reco.pattern_reco.MeantimerPatternReco`, logs per-event
counters and writes the segment table.

Geometry
--------
All super-layers belong to one barrel chamber (:func:`dtseg_reco.geometry.build_chamber`)
whose parameters come from the ``"chamber"`` block of the configuration.
Super-layer ``2`` measures the theta view, ``1`` and ``3`` the phi view.

CLI overview
------------
See :func:`build_parser`. Typical usage:

.. code-block:: bash

   dtseg-reco -f hits.csv -o segments.csv
   dtseg-reco --simulate 100 --plot -v
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path
from typing import Dict, List, MutableMapping, Optional

import numpy as np
import orjson
import pandas as pd

import dtseg_reco.data as dt_data
from dtseg_reco.cleaner import SegmentCleaner
from dtseg_reco.geometry import SuperLayerGeometry, build_chamber
from dtseg_reco.geometry_filter import DEFAULT_WINDOW, WIDE_WINDOW, GeometryWindow
from dtseg_reco.pattern_reco import MeantimerPatternReco
from dtseg_reco.profiling import prof
from dtseg_reco.updator import SegmentUpdator
from dtseg_reco.utils import simulate_event

# configuration names accepted next to the constructor keyword names
_PARAM_ALIASES: Dict[str, str] = {
    "MaxAllowedHits": "max_allowed_hits",
    "AlphaMaxTheta": "alpha_max_theta",
    "AlphaMaxPhi": "alpha_max_phi",
    "MaxChi2": "max_chi2",
    "nSharedHitsMax": "n_shared_hits_max",
    "nUnSharedHitsMin": "n_unshared_hits_min",
    "segmCleanerMode": "segm_cleaner_mode",
}

_WINDOWS: Dict[str, GeometryWindow] = {"default": DEFAULT_WINDOW, "wide": WIDE_WINDOW}


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Notes
    -----
    Key options:

    - ``--file``: input hit table (CSV or Parquet), see :func:`dtseg_reco.data.load_hits`.
    - ``--simulate N``: ignore ``--file`` and reconstruct ``N`` toy events.
    - ``--output``: segment table (CSV or Parquet).
    - ``--plot``: event display of the first events and the t0 and chi2/ndof
      histograms of all segments (headless-safe otherwise).
    - ``--profile``: cProfile the reconstruction loop.
    """
    p = argparse.ArgumentParser(description="Reconstruct 2D drift-tube segments with the meantimer pattern recognition.")
    p.add_argument("-f", "--file", type=str, default=None,
                   help="Input hit table (.csv or .parquet).")
    p.add_argument("-o", "--output", type=str, default=None,
                   help="Output segment table (.csv or .parquet).")
    p.add_argument("--config", type=str, default="config.json",
                   help="Path to the JSON configuration.")
    p.add_argument("--simulate", type=int, default=0, metavar="N",
                   help="Reconstruct N simulated events instead of reading --file.")
    p.add_argument("--seed", type=int, default=None,
                   help="Random seed of the simulation.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show event displays.")
    p.add_argument("--plot-events", type=int, default=3,
                   help="Number of events to display with --plot.")
    p.add_argument("--profile", action="store_true", default=False,
                   help="Enable cProfile around the reconstruction.")
    p.add_argument("--profile-out", type=str, default=None,
                   help="Write the profile text to this file.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging: ``DEBUG`` if ``verbose`` else ``INFO``,
    format ``'%(asctime)s | %(levelname)-8s | %(message)s'``.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Force the non-interactive ``Agg`` backend and neutralize ``plt.show()``
    when plotting is disabled. Must run before :mod:`matplotlib.pyplot` is
    imported anywhere else.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as _plt
    _plt.ioff()
    _plt.show = lambda *a, **k: None  # type: ignore[assignment]


def load_config(config_path: Path) -> MutableMapping[str, dict]:
    r"""
    Load the JSON configuration with :mod:`orjson`.

    A missing file yields an empty configuration (all defaults).

    Raises
    ------
    ValueError
        If the file cannot be parsed or is not a JSON object.
    """
    if not config_path.exists():
        logging.warning("Config %s not found; using defaults", config_path)
        return {}
    try:
        cfg = orjson.loads(config_path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ValueError(f"Failed to parse {config_path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ValueError(f"{config_path}: top-level JSON value must be an object")
    return cfg


def _normalize_block(block: Optional[dict]) -> dict:
    """Translate alias names and drop ``_comment``-style keys."""
    out = {}
    for k, v in (block or {}).items():
        if k.startswith("_"):
            continue
        out[_PARAM_ALIASES.get(k, k)] = v
    return out


def _resolve_window(value) -> GeometryWindow:
    if isinstance(value, GeometryWindow):
        return value
    if isinstance(value, str):
        try:
            return _WINDOWS[value.lower()]
        except KeyError as e:
            raise ValueError(f"Unknown geometry window {value!r}; expected one of {sorted(_WINDOWS)}") from e
    if isinstance(value, dict):
        return GeometryWindow(tuple(value["lower"]), tuple(value["upper"]))
    raise ValueError(f"Invalid geometry window: {value!r}")


def build_reco(config: MutableMapping[str, dict]) -> MeantimerPatternReco:
    r"""
    Instantiate updator, cleaner and pattern recognition from the
    ``"updator"``, ``"cleaner"`` and ``"pattern_reco"`` blocks.

    Unknown keys raise :class:`TypeError` from the constructors.
    """
    upd_cfg = _normalize_block(config.get("updator"))
    cln_cfg = _normalize_block(config.get("cleaner"))
    pr_cfg = _normalize_block(config.get("pattern_reco"))

    updator = SegmentUpdator(**upd_cfg)
    cleaner = SegmentCleaner(updator, **cln_cfg)
    if "window" in pr_cfg:
        pr_cfg["window"] = _resolve_window(pr_cfg["window"])
    return MeantimerPatternReco(updator=updator, cleaner=cleaner, **pr_cfg)


def build_geometry(config: MutableMapping[str, dict]) -> Dict[int, SuperLayerGeometry]:
    return build_chamber(**_normalize_block(config.get("chamber")))


def _simulated_hits(n_events: int, chamber: Dict[int, SuperLayerGeometry], sim_cfg: dict, seed: Optional[int]) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    frames = [dt_data.hits_to_frame(ev, simulate_event(chamber, rng, **sim_cfg)) for ev in range(n_events)]
    df = pd.concat(frames, ignore_index=True)
    logging.info("Simulated %d hits in %d event(s)", len(df), n_events)
    return df


def reconstruct_all(
    reco: MeantimerPatternReco,
    chamber: Dict[int, SuperLayerGeometry],
    hits: pd.DataFrame,
    *,
    plot_events: int = 0,
) -> pd.DataFrame:
    r"""
    Run the pattern recognition on every ``(event, super-layer)`` of ``hits``.

    Super-layers missing from ``chamber`` are skipped with a warning.

    Returns
    -------
    pandas.DataFrame
        Concatenated :func:`dtseg_reco.data.segments_to_frame` tables.
    """
    frames: List[pd.DataFrame] = []
    n_per_event: Dict[int, int] = {}
    plotted = set()
    for event, sl_index, pairs in dt_data.iter_superlayer_hits(hits):
        sl = chamber.get(sl_index)
        if sl is None:
            logging.warning("Event %d: unknown super-layer %d (%d hits) skipped", event, sl_index, len(pairs))
            continue
        t0 = time.perf_counter()
        segments = reco.reconstruct(sl, pairs)
        dt = time.perf_counter() - t0
        logging.debug("Event %d SL%d: %d hits -> %d segment(s) in %.3f ms",
                      event, sl_index, len(pairs), len(segments), 1e3 * dt)
        n_per_event[event] = n_per_event.get(event, 0) + len(segments)
        frames.append(dt_data.segments_to_frame(event, segments))

        if plot_events and (event in plotted or len(plotted) < plot_events):
            plotted.add(event)
            from dtseg_reco.plotting import plot_superlayer
            plot_superlayer(sl, pairs, segments, title=f"Event {event} SL{sl_index}")

    for event, n in n_per_event.items():
        logging.info("Event %d: %d segment(s)", event, n)
    return dt_data.concat_segments(frames)


def main(argv: Optional[List[str]] = None) -> None:
    r"""
    End-to-end pipeline: **config → geometry → hits → reconstruct → write**.

    1. Parse CLI and set up logging.
    2. Enforce the headless plotting guard.
    3. Load the configuration (:func:`load_config`) and build the chamber
       geometry and the reconstruction chain (:func:`build_reco`).
    4. Load hits (:func:`dtseg_reco.data.load_hits`) or simulate them.
    5. Reconstruct every super-layer (:func:`reconstruct_all`), optionally
       under the profiler, log summary counters and write the output.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    cfg_path = Path(args.config)
    logging.info("Reading config from %s", cfg_path)
    config = load_config(cfg_path)

    chamber = build_geometry(config)
    reco = build_reco(config)

    if args.simulate > 0:
        hits = _simulated_hits(args.simulate, chamber, _normalize_block(config.get("simulation")), args.seed)
    elif args.file:
        hits = dt_data.load_hits(args.file)
    else:
        parser.error("either --file or --simulate is required")

    t0 = time.perf_counter()
    with prof(args.profile, out_path=args.profile_out, logger=logging.getLogger("dtseg_reco.profile")):
        segments = reconstruct_all(reco, chamber, hits, plot_events=args.plot_events if args.plot else 0)
    elapsed = time.perf_counter() - t0

    stats = dt_data.summary(segments)
    logging.info("Reconstruction statistics (%.2f s):", elapsed)
    for k, v in stats.items():
        logging.info("  %s: %s", k, v)

    if args.plot and not segments.empty:
        from dtseg_reco.plotting import plot_segment_residuals
        plot_segment_residuals(segments)

    if args.output:
        dt_data.write_segments(segments, args.output)


if __name__ == "__main__":
    main()
