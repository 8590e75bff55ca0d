"""
OpenTLD - Tracking-Learning-Detection for a single object

Tracks one user-selected object through a video stream and recovers it
after occlusion or after it leaves and re-enters the frame, while
learning its appearance online.

Features:
- Forward-backward Lucas-Kanade tracking with outlier rejection
- Cascaded detector: variance filter, random ferns, nearest neighbour
- Online learning driven by the fused track/detect result
- Reproducible runs through an injectable random source

Quick Start:
    from opentld import Tld, BoundingBox, DEFAULT_PARAMETERS

    tld = Tld(DEFAULT_PARAMETERS)
    result = tld.init(first_frame, BoundingBox(x, y, w, h))
    if not result:
        print(result.failure.message)

    prev = first_frame
    for frame in frames:
        state = tld.process_frame(prev, frame)
        if state.box is not None:
            draw(frame, state.box)
        prev = frame
"""

__version__ = "1.0.0"
__author__ = "OpenTLD Python Team"

# Geometry
from .geometry import BoundingBox
from .grid import Grid, EmptyGoodBoxesError, SCALES

# Classifiers
from .fern_classifier import Fern, FernEnsembleClassifier
from .nn_classifier import NNClassifier, NNConfidence

# Tracking stages
from .lk_tracker import LKTracker, TrackedPoints
from .variance_filter import VarianceFilter
from .patch_generator import PatchGenerator
from .clustering import Cluster, cluster_detections

# Configuration
from .parameters import TldParameters, ConfigurationError, DEFAULT_PARAMETERS

# Engine
from .tld_core import (
    Tld,
    TrackingStatus,
    InitResult,
    InitFailure,
    BoxTooSmall,
    NoCandidateBoxes,
    NoGoodBoxes,
    NotInitializedError,
    ProcessFrameResult,
    DetectionCandidate,
    DetectionContext,
)

from .utils import RandomSource, DefaultRandomSource

__all__ = [
    # Version
    "__version__",

    # Geometry
    "BoundingBox",
    "Grid",
    "EmptyGoodBoxesError",
    "SCALES",

    # Classifiers
    "Fern",
    "FernEnsembleClassifier",
    "NNClassifier",
    "NNConfidence",

    # Tracking stages
    "LKTracker",
    "TrackedPoints",
    "VarianceFilter",
    "PatchGenerator",
    "Cluster",
    "cluster_detections",

    # Configuration
    "TldParameters",
    "ConfigurationError",
    "DEFAULT_PARAMETERS",

    # Engine
    "Tld",
    "TrackingStatus",
    "InitResult",
    "InitFailure",
    "BoxTooSmall",
    "NoCandidateBoxes",
    "NoGoodBoxes",
    "NotInitializedError",
    "ProcessFrameResult",
    "DetectionCandidate",
    "DetectionContext",

    # Random
    "RandomSource",
    "DefaultRandomSource",
]
