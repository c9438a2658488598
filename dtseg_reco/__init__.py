__all__ = [
    "DRIFT_VELOCITY", "CellSide", "WireId", "SuperLayerGeometry", "build_chamber",
    "GeometryWindow", "DEFAULT_WINDOW", "WIDE_WINDOW", "geometry_filter",
    "RecHit1DPair", "HitPairForFit", "HitPool",
    "AssPoint", "SegmentCandidate", "Segment2D", "RecHit1D",
    "FitModel", "SegmentUpdator", "SegmentCleaner",
    "MeantimerPatternReco", "check_double_candidates",
    "load_hits", "iter_superlayer_hits", "segments_to_frame",
    "hits_on_line", "noise_hits", "simulate_event", "truth_sides",
]

# Geometry
from .geometry import DRIFT_VELOCITY, CellSide, WireId, SuperLayerGeometry, build_chamber
from .geometry_filter import GeometryWindow, DEFAULT_WINDOW, WIDE_WINDOW, geometry_filter

# Hits & candidates
from .hit_pool import RecHit1DPair, HitPairForFit, HitPool
from .segment import AssPoint, SegmentCandidate, Segment2D, RecHit1D

# Fitting & cleaning
from .updator import FitModel, SegmentUpdator
from .cleaner import SegmentCleaner

# Pattern recognition
from .pattern_reco import MeantimerPatternReco, check_double_candidates

# Data & toy generation
from .data import load_hits, iter_superlayer_hits, segments_to_frame
from .utils import hits_on_line, noise_hits, simulate_event, truth_sides
