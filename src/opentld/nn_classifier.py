"""
OpenTLD Nearest Neighbour Classifier - Template store scored by NCC.

Positive and negative examples are zero-mean patterns of a fixed size.
A query is scored against both sets with normalised cross-correlation:
- relative similarity uses every positive example
- conservative similarity only trusts the oldest (validated) fraction
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence

import numpy as np
import cv2


@dataclass
class NNConfidence:
    """Result of scoring one pattern against the template store."""
    relative: float
    conservative: float
    in_positive: bool = False
    positive_index: int = -1
    in_negative: bool = False


def ncc_similarity(template: np.ndarray, pattern: np.ndarray) -> float:
    """Normalised cross-correlation of two same-size patterns mapped to [0, 1]."""
    result = cv2.matchTemplate(
        np.asarray(template, dtype=np.float32),
        np.asarray(pattern, dtype=np.float32),
        cv2.TM_CCORR_NORMED,
    )
    return (float(result[0, 0]) + 1.0) * 0.5


class NNClassifier:
    """
    Ordered positive / negative pattern sequences.

    The positive sequence is cleared and restarted when a new positive does
    not match any stored one; the negative sequence only grows.
    """

    def __init__(
        self,
        valid: float,
        ncc_same: float,
        pos_threshold: float,
        pos_threshold_valid: float,
        neg_threshold: float = 0.5,
    ):
        """
        Args:
            valid: Fraction of the oldest positives used for conservative similarity
            ncc_same: Similarity above which two patterns count as the same
            pos_threshold: Relative similarity a detection must exceed
            pos_threshold_valid: Tracking confidence above which learning is enabled
            neg_threshold: Relative similarity above which a negative is stored
        """
        self.logger = logging.getLogger("NNClassifier")

        self.valid = valid
        self.ncc_same = ncc_same
        self.pos_threshold = pos_threshold
        self.pos_threshold_valid = pos_threshold_valid
        self.neg_threshold = neg_threshold

        self._positives: List[np.ndarray] = []
        self._negatives: List[np.ndarray] = []

    @property
    def positives(self) -> Sequence[np.ndarray]:
        return tuple(self._positives)

    @property
    def negatives(self) -> Sequence[np.ndarray]:
        return tuple(self._negatives)

    def add_positive(self, pattern: np.ndarray):
        self._positives.append(pattern)

    def add_negative(self, pattern: np.ndarray):
        self._negatives.append(pattern)

    def clear_positives(self):
        self._positives.clear()

    def similarity(self, pattern: np.ndarray) -> NNConfidence:
        """
        Score a pattern against the stored examples.

        Returns:
            NNConfidence; (0, 0) without positives, (1, 1) with positives
            but no negatives
        """
        if not self._positives:
            return NNConfidence(0.0, 0.0)
        if not self._negatives:
            return NNConfidence(1.0, 1.0)

        validated = int(math.ceil(len(self._positives) * self.valid))
        max_p = 0.0
        cs_max_p = 0.0
        max_p_idx = 0
        in_positive = False
        for i, example in enumerate(self._positives):
            ncc = ncc_similarity(example, pattern)
            if ncc > self.ncc_same:
                in_positive = True
            if ncc > max_p:
                max_p = ncc
                max_p_idx = i
                if i < validated:
                    cs_max_p = max_p

        max_n = 0.0
        in_negative = False
        for example in self._negatives:
            ncc = ncc_similarity(example, pattern)
            if ncc > self.ncc_same:
                in_negative = True
            if ncc > max_n:
                max_n = ncc

        d_n = 1.0 - max_n
        d_p_relative = 1.0 - max_p
        d_p_conservative = 1.0 - cs_max_p

        relative = d_n / (d_n + d_p_relative) if d_n + d_p_relative > 0 else 0.0
        conservative = d_n / (d_n + d_p_conservative) if d_n + d_p_conservative > 0 else 0.0

        return NNConfidence(
            relative=relative,
            conservative=conservative,
            in_positive=in_positive,
            positive_index=max_p_idx if in_positive else -1,
            in_negative=in_negative,
        )

    def train(self, positive: np.ndarray, negatives: Iterable[np.ndarray]):
        """
        Add the positive when it is not already confidently recognised, then
        keep only the hard negatives.
        """
        confidence = self.similarity(positive)
        if confidence.relative <= self.pos_threshold:
            if confidence.positive_index < 0:
                self.clear_positives()
            self.add_positive(positive)

        for negative in negatives:
            if self.similarity(negative).relative > self.neg_threshold:
                self.add_negative(negative)

        self.logger.info(
            f"Trained NN examples: {len(self._positives)} positive {len(self._negatives)} negative"
        )

    def calibrate_threshold(self, negatives: Iterable[np.ndarray]):
        """Raise pos_threshold over held-out negatives and carry it into the valid threshold."""
        for negative in negatives:
            relative = self.similarity(negative).relative
            if relative > self.pos_threshold:
                self.pos_threshold = relative
        if self.pos_threshold > self.pos_threshold_valid:
            self.pos_threshold_valid = self.pos_threshold

        self.logger.info(
            f"NN thresholds: positive {self.pos_threshold:.4f} valid {self.pos_threshold_valid:.4f}"
        )
