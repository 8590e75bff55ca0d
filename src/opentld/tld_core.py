"""
OpenTLD Core - Tracking-Learning-Detection engine.

One process_frame call runs four stages over engine-owned state:
1. TRACK: forward-backward LK flow moves the last box
2. DETECT: variance filter -> fern ensemble -> NN classifier over the grid
3. INTEGRATE: tracker and detector results are fused into the new box
4. LEARN: the new box regenerates positive / negative training data

States: UNINITIALIZED -> TRACKING <-> LOST
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
import cv2

from .clustering import Cluster, cluster_detections
from .fern_classifier import FernEnsembleClassifier
from .geometry import BoundingBox
from .grid import Grid
from .lk_tracker import LKTracker, TrackedPoints
from .nn_classifier import NNClassifier, NNConfidence
from .parameters import TldParameters
from .patch_generator import PatchGenerator
from .utils import (
    DefaultRandomSource,
    RandomSource,
    keep_best_n,
    normalize_patch,
    round_half_up,
    shuffled,
    to_gray,
)
from .variance_filter import VarianceFilter


class TrackingStatus(Enum):
    """Engine state."""
    UNINITIALIZED = "uninitialized"
    TRACKING = "tracking"
    LOST = "lost"


class NotInitializedError(RuntimeError):
    """process_frame was called before a successful init."""


# ============================================================================
# INIT RESULT
# ============================================================================

@dataclass
class InitFailure:
    """Base for the reasons init can refuse a box."""
    box: BoundingBox

    @property
    def message(self) -> str:
        return f"Cannot initialise on {self.box}"


@dataclass
class BoxTooSmall(InitFailure):
    min_win: int = 0

    @property
    def message(self) -> str:
        return f"Provided box {self.box} is too small (min {self.min_win})"


@dataclass
class NoCandidateBoxes(InitFailure):

    @property
    def message(self) -> str:
        return f"No grid box fits the frame for {self.box}"


@dataclass
class NoGoodBoxes(InitFailure):

    @property
    def message(self) -> str:
        return f"No grid box overlaps {self.box} enough to train on"


@dataclass
class InitResult:
    """Outcome of Tld.init; truthy on success."""
    success: bool
    box: Optional[BoundingBox] = None
    failure: Optional[InitFailure] = None

    def __bool__(self) -> bool:
        return self.success


# ============================================================================
# PER-FRAME DATA
# ============================================================================

@dataclass
class TrackingResult:
    box: BoundingBox
    confidence: float
    points: TrackedPoints


@dataclass
class DetectionCandidate:
    """A grid box that passed the fern stage."""
    box: BoundingBox
    index: int
    codes: np.ndarray
    posterior: float
    pattern: np.ndarray
    nn: Optional[NNConfidence] = None


@dataclass
class DetectionContext:
    """Scratch data of one process_frame call, shared by detect and learn."""
    hash_codes: Dict[int, np.ndarray] = field(default_factory=dict)
    fern_detections: List[DetectionCandidate] = field(default_factory=list)
    nn_matches: List[DetectionCandidate] = field(default_factory=list)


@dataclass
class ProcessFrameResult:
    """Tracked point pairs (for display) and the current box, if any."""
    last_points: Optional[np.ndarray]
    current_points: Optional[np.ndarray]
    box: Optional[BoundingBox]
    status: TrackingStatus


# ============================================================================
# ENGINE
# ============================================================================

class Tld:
    """
    Single-object TLD tracker.

    Calls to init and process_frame are serialised by an internal lock.

    Usage:
        tld = Tld(DEFAULT_PARAMETERS)
        if tld.init(first_frame, BoundingBox(x, y, w, h)):
            result = tld.process_frame(first_frame, next_frame)
    """

    MAX_DETECTED = 100
    INIT_FERN_PASSES = 10
    UPDATE_FERN_PASSES = 2
    BLUR_KERNEL = (9, 9)
    BLUR_SIGMA = 1.5
    TRACKER_WEIGHT = 10
    CLUSTER_DISAGREE_OVERLAP = 0.5
    CLOSE_DETECTION_OVERLAP = 0.7
    MIN_LEARN_SIMILARITY = 0.5

    def __init__(self, parameters: Union[TldParameters, Mapping[str, Any]],
                 rng: Optional[RandomSource] = None):
        """
        Args:
            parameters: TldParameters or a name -> value mapping
            rng: Random source for ferns, shuffles and warps

        Raises:
            ConfigurationError: if a required parameter is missing
        """
        self.logger = logging.getLogger("Tld")

        if isinstance(parameters, TldParameters):
            self.params = parameters
        else:
            self.params = TldParameters.from_mapping(parameters)
        self.logger.debug(f"Parameters: {self.params.to_dict()}")

        self._rng: RandomSource = rng if rng is not None else DefaultRandomSource()
        self._lock = threading.Lock()

        p = self.params
        self._init_generator = PatchGenerator.from_ranges(p.noise_init, p.angle_init, p.scale_init, p.shift_init)
        self._update_generator = PatchGenerator.from_ranges(
            p.noise_update, p.angle_update, p.scale_update, p.shift_update
        )
        self._tracker = LKTracker()

        self._status = TrackingStatus.UNINITIALIZED
        self._grid: Optional[Grid] = None
        self._fern: Optional[FernEnsembleClassifier] = None
        self._nn: Optional[NNClassifier] = None
        self._variance_filter = VarianceFilter()
        self._variance_threshold = 0.0
        self._positive_example: Optional[np.ndarray] = None
        self._positive_fern_codes: List[np.ndarray] = []
        self._current_box: Optional[BoundingBox] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def status(self) -> TrackingStatus:
        return self._status

    @property
    def current_box(self) -> Optional[BoundingBox]:
        return self._current_box.copy() if self._current_box is not None else None

    @property
    def grid(self) -> Optional[Grid]:
        return self._grid

    @property
    def fern_classifier(self) -> Optional[FernEnsembleClassifier]:
        return self._fern

    @property
    def nn_classifier(self) -> Optional[NNClassifier]:
        return self._nn

    @property
    def variance_threshold(self) -> float:
        return self._variance_threshold

    @property
    def positive_example(self) -> Optional[np.ndarray]:
        return self._positive_example

    # ------------------------------------------------------------------
    # Init
    # ------------------------------------------------------------------

    def init(self, frame: np.ndarray,
             box: Union[BoundingBox, Tuple[int, int, int, int]]) -> InitResult:
        """
        Start a new tracking session on box.

        Nothing of a previous session is modified when init fails.

        Args:
            frame: First frame (gray or BGR)
            box: User-selected object box, or an (x, y, w, h) tuple

        Returns:
            InitResult carrying the corrected box or a typed failure
        """
        if not isinstance(box, BoundingBox):
            box = BoundingBox.from_tuple(box)
        with self._lock:
            return self._init(to_gray(frame), box)

    def _init(self, frame: np.ndarray, box: BoundingBox) -> InitResult:
        p = self.params

        if min(box.width, box.height) < p.min_win:
            failure = BoxTooSmall(box, p.min_win)
            self.logger.warning(failure.message)
            return InitResult(False, failure=failure)

        grid = Grid(frame.shape, box, p.min_win)
        if len(grid) == 0:
            failure = NoCandidateBoxes(box)
            self.logger.warning(failure.message)
            return InitResult(False, failure=failure)

        grid.update_good_bad_boxes(box, p.num_closest_init)
        if grid.best_box is None or len(grid.good_box_indices) == 0:
            failure = NoGoodBoxes(box)
            self.logger.warning(failure.message)
            return InitResult(False, failure=failure)

        fern = FernEnsembleClassifier(p.num_trees, p.num_features, p.pos_thr_fern, p.neg_thr_fern)
        fern.initialize(grid.scales, self._rng)
        nn = NNClassifier(p.valid, p.ncc_thesame, p.pos_thr_nn, p.pos_thr_nn_valid, p.neg_thr_nn)

        # Positive data
        positive_example, positive_codes = self._generate_positive_data(
            frame, grid, fern, p.num_warps_init, self._init_generator
        )

        # Variance threshold: half the variance of the best box
        best_box = grid.best_box
        _, stddev = cv2.meanStdDev(best_box.crop(frame))
        variance_threshold = float(stddev[0, 0]) ** 2 * 0.5
        variance_filter = VarianceFilter()
        variance_filter.update(frame)
        self.logger.info(
            f"Variance: {variance_threshold:.2f} / "
            f"integral check: {variance_filter.variance(best_box) * 0.5:.2f}"
        )

        # Negative data, split half test / half train
        negative_codes, negative_patterns = self._generate_negative_data(
            frame, grid, fern, variance_filter, variance_threshold
        )
        half = len(negative_codes) // 2
        negative_codes_test, negative_codes_train = negative_codes[:half], negative_codes[half:]
        half = len(negative_patterns) // 2
        negative_patterns_test, negative_patterns_train = negative_patterns[:half], negative_patterns[half:]

        fern_examples = [(codes, True) for codes in positive_codes]
        fern_examples += [(codes, False) for codes in negative_codes_train]
        fern_examples = shuffled(fern_examples, self._rng)

        self.logger.info(
            f"Init training with {len(fern_examples)} fern examples, "
            f"{len(negative_patterns_train)} NN negatives, {len(negative_codes_test)} fern tests, "
            f"{len(negative_patterns_test)} NN tests"
        )
        fern.train(fern_examples, self.INIT_FERN_PASSES)
        nn.train(positive_example, negative_patterns_train)
        fern.calibrate_threshold(negative_codes_test)
        nn.calibrate_threshold(negative_patterns_test)

        # Commit the new session
        self._grid = grid
        self._fern = fern
        self._nn = nn
        self._variance_filter = variance_filter
        self._variance_threshold = variance_threshold
        self._positive_example = positive_example
        self._positive_fern_codes = positive_codes
        self._current_box = best_box
        self._status = TrackingStatus.TRACKING

        self.logger.info(f"Initialised on {best_box} ({len(grid)} grid boxes)")
        return InitResult(True, box=best_box.copy())

    def _blur(self, frame: np.ndarray) -> np.ndarray:
        return cv2.GaussianBlur(frame, self.BLUR_KERNEL, self.BLUR_SIGMA)

    def _generate_positive_data(self, frame: np.ndarray, grid: Grid, fern: FernEnsembleClassifier,
                                num_warps: int, generator: PatchGenerator) -> Tuple[np.ndarray, List[np.ndarray]]:
        """
        Canonical NN example of the best box plus fern codes of the good boxes
        over num_warps warps of their hull.
        """
        pattern, _ = normalize_patch(grid.best_box.crop(frame), self.params.patch_size)

        blurred = self._blur(frame)
        hull = grid.bb_hull
        center = (hull.x + (hull.width - 1) * 0.5, hull.y + (hull.height - 1) * 0.5)
        good = grid.good_box_indices
        good_coords = grid.coords[good]
        good_scales = grid.scale_ids[good]

        codes: List[np.ndarray] = []
        for i in range(num_warps):
            if i > 0:
                hull.crop(blurred)[:] = generator.generate(frame, center, (hull.width, hull.height), self._rng)
            codes.extend(fern.hash_codes_for_boxes(blurred, good_coords, good_scales))

        self.logger.info(f"Positive examples generated: ferns {len(codes)}, NN 1")
        return pattern, codes

    def _generate_negative_data(self, frame: np.ndarray, grid: Grid, fern: FernEnsembleClassifier,
                                variance_filter: VarianceFilter,
                                variance_threshold: float) -> Tuple[List[np.ndarray], List[np.ndarray]]:
        """Fern codes of the high-variance bad boxes and NN patterns of the first few."""
        bad = np.array(shuffled(list(grid.bad_box_indices), self._rng), dtype=np.int64)
        if len(bad) == 0:
            return [], []

        coords = grid.coords[bad]
        high_variance = variance_filter.passes(coords, variance_threshold * 0.5)
        blurred = self._blur(frame)
        codes = list(fern.hash_codes_for_boxes(blurred, coords[high_variance], grid.scale_ids[bad][high_variance]))

        patterns = []
        for index in bad[:self.params.num_bad_patches]:
            pattern, _ = normalize_patch(grid[int(index)].crop(frame), self.params.patch_size)
            patterns.append(pattern)

        self.logger.info(f"Negative examples generated: ferns {len(codes)}, NN {len(patterns)}")
        return codes, patterns

    # ------------------------------------------------------------------
    # Process frame
    # ------------------------------------------------------------------

    def process_frame(self, prev_frame: np.ndarray, curr_frame: np.ndarray) -> ProcessFrameResult:
        """
        Run track -> detect -> integrate -> learn on a new frame.

        Raises:
            NotInitializedError: if init has not succeeded yet
        """
        with self._lock:
            if self._status is TrackingStatus.UNINITIALIZED:
                raise NotInitializedError("process_frame called before a successful init")

            prev_gray = to_gray(prev_frame)
            curr_gray = to_gray(curr_frame)

            # 1. TRACK
            tracking = None
            if self._current_box is not None:
                tracking = self._track(prev_gray, curr_gray, self._current_box)

            # 2. DETECT
            context = self._detect(curr_gray)

            # 3. INTEGRATE
            box, learn = self._integrate(tracking, context)
            self._current_box = box

            # 4. LEARN
            if learn:
                self._learn(curr_gray, box, context)
            else:
                self.logger.debug("Not learning")

            self._status = TrackingStatus.TRACKING if box is not None else TrackingStatus.LOST
            if box is None:
                self.logger.warning("Object lost")

            return ProcessFrameResult(
                last_points=tracking.points.before if tracking else None,
                current_points=tracking.points.after if tracking else None,
                box=box.copy() if box is not None else None,
                status=self._status,
            )

    def _track(self, prev_gray: np.ndarray, curr_gray: np.ndarray, box: BoundingBox) -> Optional[TrackingResult]:
        points = box.sample_points()
        if len(points) == 0:
            self.logger.warning(f"No points generated from {box}")
            return None

        tracked = self._tracker.track(prev_gray, curr_gray, points)
        if tracked is None:
            self.logger.warning("No points could be tracked")
            return None

        if self._tracker.fb_error_median > self.params.tracker_stability_FBerrMax:
            self.logger.warning(
                f"Tracker unstable: FB median error {self._tracker.fb_error_median:.2f} "
                f"> {self.params.tracker_stability_FBerrMax}"
            )
            if self.params.tracker_abort_on_instability:
                return None

        predicted = box.predict(tracked.before, tracked.after)
        rows, cols = curr_gray.shape[:2]
        if predicted.x > cols or predicted.y > rows or predicted.br[0] < 1 or predicted.br[1] < 1:
            self.logger.warning(f"Predicted box out of range: {predicted}")
            return None

        visible = predicted.intersect(curr_gray)
        if visible.width <= 0 or visible.height <= 0:
            self.logger.warning(f"Predicted box has no visible area: {predicted}")
            return None

        pattern, _ = normalize_patch(visible.crop(curr_gray), self.params.patch_size)
        confidence = self._nn.similarity(pattern).conservative
        self.logger.info(f"Tracked to {predicted}, confidence {confidence:.3f}")
        return TrackingResult(predicted, confidence, tracked)

    def _detect(self, frame: np.ndarray) -> DetectionContext:
        """Variance filter, fern ensemble and NN classifier over every grid box."""
        context = DetectionContext()
        grid = self._grid

        self._variance_filter.update(frame)
        blurred = self._blur(frame)

        indices = np.flatnonzero(self._variance_filter.passes(grid.coords, self._variance_threshold))
        codes = self._fern.hash_codes_for_boxes(blurred, grid.coords[indices], grid.scale_ids[indices])
        posteriors = self._fern.average_posteriors(codes)
        context.hash_codes = dict(zip(indices.tolist(), codes))

        accepted = np.flatnonzero(posteriors > self._fern.pos_threshold)
        self.logger.info(
            f"{len(indices)} boxes passed the variance filter, "
            f"{len(accepted)} the fern classifier"
        )
        if len(accepted) == 0:
            return context

        ranked = keep_best_n(accepted.tolist(), self.MAX_DETECTED, key=lambda k: posteriors[k])
        for k in ranked:
            index = int(indices[k])
            box = grid[index]
            pattern, _ = normalize_patch(box.crop(frame), self.params.patch_size)
            candidate = DetectionCandidate(box, index, codes[k], float(posteriors[k]), pattern)
            candidate.nn = self._nn.similarity(pattern)
            context.fern_detections.append(candidate)

            self.logger.debug(
                f"NN conf {candidate.nn.relative:.3f} / {candidate.nn.conservative:.3f} "
                f"threshold {self._nn.pos_threshold:.3f} for {box}"
            )
            if candidate.nn.relative > self._nn.pos_threshold:
                context.nn_matches.append(candidate)

        self.logger.info(f"{len(context.nn_matches)} NN matches")
        return context

    def _cluster(self, matches: List[DetectionCandidate]) -> List[Cluster]:
        clusters = cluster_detections([(c.box, c.nn.conservative) for c in matches])
        self.logger.info(f"Found {len(clusters)} clusters")
        return clusters

    def _integrate(self, tracking: Optional[TrackingResult],
                   context: DetectionContext) -> Tuple[Optional[BoundingBox], bool]:
        """Fuse tracker and detector into the new box and decide whether to learn."""
        if tracking is None:
            if context.nn_matches:
                clusters = self._cluster(context.nn_matches)
                if len(clusters) == 1:
                    self.logger.info(f"Not tracking, re-detected at {clusters[0].box}")
                    return clusters[0].box, False
            return None, False

        box = tracking.box
        learn = tracking.confidence > self._nn.pos_threshold_valid

        if not context.nn_matches:
            return box, learn

        confident = [
            cluster for cluster in self._cluster(context.nn_matches)
            if box.overlap_with(cluster.box) < self.CLUSTER_DISAGREE_OVERLAP
            and cluster.confidence > tracking.confidence
        ]

        if len(confident) == 1:
            self.logger.info(f"Detected better match {confident[0].box}, re-initialising tracker")
            return confident[0].box, False

        if len(confident) > 1:
            close = [
                c.box for c in context.nn_matches
                if box.overlap_with(c.box) > self.CLOSE_DETECTION_OVERLAP
            ]
            if close:
                weight = self.TRACKER_WEIGHT
                total = weight + len(close)
                box = BoundingBox(
                    round_half_up((weight * box.x + sum(b.x for b in close)) / total),
                    round_half_up((weight * box.y + sum(b.y for b in close)) / total),
                    round_half_up((weight * box.width + sum(b.width for b in close)) / total),
                    round_half_up((weight * box.height + sum(b.height for b in close)) / total),
                )
                self.logger.info(f"Averaged tracker with {len(close)} close detections: {box}")

        return box, learn

    def _learn(self, frame: np.ndarray, box: BoundingBox, context: DetectionContext) -> bool:
        """
        Retrain both classifiers around box.

        Every gating condition is checked before any classifier table changes.
        """
        visible = box.intersect(frame)
        if visible.width <= 0 or visible.height <= 0:
            self.logger.warning(f"Box {box} not visible, not learning")
            return False

        pattern, stddev = normalize_patch(visible.crop(frame), self.params.patch_size)
        confidence = self._nn.similarity(pattern)

        if confidence.relative < self.MIN_LEARN_SIMILARITY:
            self.logger.warning("Fast change, not learning")
            return False
        if stddev ** 2 < self._variance_threshold:
            self.logger.warning("Low variance, not learning")
            return False
        if confidence.in_negative:
            self.logger.warning("Patch in negative data, not learning")
            return False

        grid = self._grid
        grid.update_good_bad_boxes(box, self.params.num_closest_update)
        if len(grid.good_box_indices) == 0:
            self.logger.warning("No good boxes, not learning")
            return False

        self._positive_example, self._positive_fern_codes = self._generate_positive_data(
            frame, grid, self._fern, self.params.num_warps_update, self._update_generator
        )

        fern_examples = [(codes, True) for codes in self._positive_fern_codes]
        for index in grid.bad_box_indices.tolist():
            codes = context.hash_codes.get(index)
            if codes is not None:
                fern_examples.append((codes, False))

        nn_negatives = [
            candidate.pattern for candidate in context.fern_detections
            if box.overlap_with(candidate.box) < Grid.BAD_OVERLAP
        ]

        self._fern.train(fern_examples, self.UPDATE_FERN_PASSES)
        self._nn.train(self._positive_example, nn_negatives)
        self.logger.info(
            f"Learned from {len(fern_examples)} fern examples and {len(nn_negatives)} NN negatives"
        )
        return True


# ============================================================================
# SELF-TEST
# ============================================================================

if __name__ == "__main__":
    from .parameters import DEFAULT_PARAMETERS

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    print("=" * 60)
    print("OpenTLD - Synthetic Self-Test")
    print("=" * 60)

    def make_frame(x: int, y: int) -> np.ndarray:
        frame = np.full((120, 160), 60, dtype=np.uint8)
        texture = np.random.default_rng(7).integers(0, 255, (24, 24)).astype(np.uint8)
        frame[y:y + 24, x:x + 24] = texture
        return frame

    tld = Tld(DEFAULT_PARAMETERS, rng=DefaultRandomSource(seed=42))
    prev = make_frame(41, 41)
    result = tld.init(prev, BoundingBox(41, 41, 24, 24))
    print(f"Init: {result.success} {result.box}")

    for step in range(1, 11):
        curr = make_frame(41 + 2 * step, 41 + step)
        frame_result = tld.process_frame(prev, curr)
        print(f"Frame {step}: {frame_result.status.value} {frame_result.box}")
        prev = curr

    print("=" * 60)
