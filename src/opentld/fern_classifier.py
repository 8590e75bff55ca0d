"""
OpenTLD Fern Ensemble - Randomised fern classifier with online posteriors.

Each fern is a fixed set of binary pixel comparisons. The comparisons of
one fern fold into a hash code that indexes positive / negative counters;
the posterior of a code is positives / (positives + negatives). A patch is
scored by the mean posterior over all ferns.

Comparison points are drawn once per session as normalised coordinates and
scaled to every box size the grid produced.
"""

import logging
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from .utils import RandomSource


class Fern:
    """
    One weak classifier: K pixel comparisons and its posterior table.

    features has shape (num_scales, K, 4) with rows (x1, y1, x2, y2) in
    patch coordinates.
    """

    def __init__(self, features: np.ndarray):
        self.features = features
        self.num_features = features.shape[1]

        table_size = 2 ** self.num_features
        self.positives = np.zeros(table_size, dtype=np.int64)
        self.negatives = np.zeros(table_size, dtype=np.int64)
        self.posteriors = np.zeros(table_size, dtype=np.float64)

        self._weights = 2 ** np.arange(self.num_features - 1, -1, -1, dtype=np.int64)

    def hash_code(self, patch: np.ndarray, scale_idx: int) -> int:
        """Fold the comparisons on one patch into an integer code."""
        rows, cols = patch.shape[:2]
        code = 0
        for x1, y1, x2, y2 in self.features[scale_idx]:
            bit = 0
            # Out-of-bounds comparisons read as 0
            if x1 < cols and y1 < rows and x2 < cols and y2 < rows:
                bit = 1 if int(patch[y1, x1]) > int(patch[y2, x2]) else 0
            code = (code << 1) | bit
        return code

    def hash_codes_at(self, image: np.ndarray, xs: np.ndarray, ys: np.ndarray, scale_idx: int) -> np.ndarray:
        """
        Codes for many same-scale boxes whose top-left corners are (xs, ys).

        Returns:
            int64 array, one code per box
        """
        rows, cols = image.shape[:2]
        features = self.features[scale_idx]

        px1 = xs[:, None] + features[None, :, 0]
        py1 = ys[:, None] + features[None, :, 1]
        px2 = xs[:, None] + features[None, :, 2]
        py2 = ys[:, None] + features[None, :, 3]

        inside = (px1 < cols) & (py1 < rows) & (px2 < cols) & (py2 < rows)
        v1 = image[np.minimum(py1, rows - 1), np.minimum(px1, cols - 1)]
        v2 = image[np.minimum(py2, rows - 1), np.minimum(px2, cols - 1)]
        bits = (inside & (v1 > v2)).astype(np.int64)

        return bits @ self._weights

    def posterior(self, code: int) -> float:
        return float(self.posteriors[code])

    def update(self, code: int, positive: bool):
        if positive:
            self.positives[code] += 1
        else:
            self.negatives[code] += 1
        p = self.positives[code]
        n = self.negatives[code]
        self.posteriors[code] = p / float(p + n)


class FernEnsembleClassifier:
    """
    Ensemble of ferns sharing a raise-only positive acceptance threshold.

    Training examples are (codes, is_positive) pairs where codes holds one
    hash code per fern.
    """

    def __init__(self, num_ferns: int, num_features: int, pos_threshold: float, neg_threshold: float = 0.5):
        """
        Args:
            num_ferns: Number of ferns in the ensemble
            num_features: Pixel comparisons per fern
            pos_threshold: Average posterior a detection must exceed
            neg_threshold: Average posterior above which negatives are reinforced
        """
        self.logger = logging.getLogger("FernEnsembleClassifier")

        self.num_ferns = num_ferns
        self.num_features = num_features
        self.pos_threshold = pos_threshold
        self.neg_threshold = neg_threshold

        self.ferns: List[Fern] = []

    def initialize(self, scales: Sequence[Tuple[int, int]], rng: RandomSource):
        """
        Draw the comparison points for every fern and clear the tables.

        Args:
            scales: (width, height) of every grid scale
            rng: Random source; 4 floats are drawn per (feature, fern)
        """
        normalised = np.zeros((self.num_ferns, self.num_features, 4), dtype=np.float64)
        for i in range(self.num_features):
            for j in range(self.num_ferns):
                normalised[j, i] = [rng.next_float() for _ in range(4)]

        sizes = np.array(scales, dtype=np.float64).reshape(-1, 2)
        # (num_scales, 1, 1, 4) multipliers: x by width, y by height
        multipliers = np.stack([sizes[:, 0], sizes[:, 1], sizes[:, 0], sizes[:, 1]], axis=1)[:, None, None, :]
        features = (normalised[None, :, :, :] * multipliers).astype(np.int64)

        self.ferns = [Fern(np.ascontiguousarray(features[:, j])) for j in range(self.num_ferns)]

        self.logger.info(
            f"Initialised {self.num_ferns} ferns x {self.num_features} features over {len(sizes)} scales"
        )

    def hash_codes(self, patch: np.ndarray, scale_idx: int) -> np.ndarray:
        return np.array([fern.hash_code(patch, scale_idx) for fern in self.ferns], dtype=np.int64)

    def hash_codes_for_boxes(self, image: np.ndarray, coords: np.ndarray, scale_ids: np.ndarray) -> np.ndarray:
        """
        Codes for many grid boxes.

        Args:
            image: Single-channel image the boxes refer to
            coords: (N, 4) array of (x, y, w, h)
            scale_ids: (N,) grid scale index of each box

        Returns:
            (N, num_ferns) int64 array
        """
        result = np.zeros((len(coords), self.num_ferns), dtype=np.int64)
        if len(coords) == 0:
            return result

        for scale_idx in np.unique(scale_ids):
            rows = np.flatnonzero(scale_ids == scale_idx)
            xs = coords[rows, 0]
            ys = coords[rows, 1]
            for j, fern in enumerate(self.ferns):
                result[rows, j] = fern.hash_codes_at(image, xs, ys, int(scale_idx))
        return result

    def average_posterior(self, codes: Sequence[int]) -> float:
        if not self.ferns:
            return 0.0
        total = sum(fern.posterior(int(code)) for fern, code in zip(self.ferns, codes))
        return total / len(self.ferns)

    def average_posteriors(self, codes: np.ndarray) -> np.ndarray:
        """Mean posterior of every row of an (N, num_ferns) code matrix."""
        if len(codes) == 0 or not self.ferns:
            return np.zeros(len(codes), dtype=np.float64)
        lookups = np.stack([fern.posteriors[codes[:, j]] for j, fern in enumerate(self.ferns)], axis=1)
        return lookups.mean(axis=1)

    def update_posteriors(self, codes: Sequence[int], positive: bool):
        for fern, code in zip(self.ferns, codes):
            fern.update(int(code), positive)

    def train(self, examples: Iterable[Tuple[np.ndarray, bool]], passes: int):
        """
        Reinforce only the examples currently on the wrong side of a threshold.

        Args:
            examples: (codes, is_positive) pairs
            passes: Number of sweeps over the examples
        """
        examples = list(examples)
        updates = 0
        for _ in range(passes):
            for codes, positive in examples:
                posterior = self.average_posterior(codes)
                if positive:
                    if posterior <= self.pos_threshold:
                        self.update_posteriors(codes, True)
                        updates += 1
                elif posterior >= self.neg_threshold:
                    self.update_posteriors(codes, False)
                    updates += 1

        self.logger.debug(f"Trained on {len(examples)} examples x {passes} passes, {updates} updates")

    def calibrate_threshold(self, negative_codes: Iterable[Sequence[int]]):
        """Raise pos_threshold to the best score of held-out negatives."""
        for codes in negative_codes:
            posterior = self.average_posterior(codes)
            if posterior > self.pos_threshold:
                self.pos_threshold = posterior

        self.logger.info(f"Fern positive threshold: {self.pos_threshold:.4f}")
