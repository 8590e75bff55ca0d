"""
OpenTLD Variance Filter - O(1) per-box variance from integral images.

First stage of the detection cascade: boxes whose grey-level variance is
below the calibrated threshold are rejected before any fern is evaluated.
"""

import numpy as np
import cv2

from .geometry import BoundingBox


class VarianceFilter:
    """Holds the sum / squared-sum integral images of the current frame."""

    def __init__(self):
        self.sum: np.ndarray = np.zeros((1, 1), dtype=np.float64)
        self.sqsum: np.ndarray = np.zeros((1, 1), dtype=np.float64)

    def update(self, frame: np.ndarray):
        """Recompute both integral images for a single-channel frame."""
        self.sum, self.sqsum = cv2.integral2(frame, sdepth=cv2.CV_64F, sqdepth=cv2.CV_64F)

    def variance(self, box: BoundingBox) -> float:
        x1, y1 = box.x, box.y
        x2, y2 = box.x + box.width, box.y + box.height
        area = float(box.area)

        s = self.sum[y2, x2] + self.sum[y1, x1] - self.sum[y1, x2] - self.sum[y2, x1]
        sq = self.sqsum[y2, x2] + self.sqsum[y1, x1] - self.sqsum[y1, x2] - self.sqsum[y2, x1]

        mean = s / area
        return float(sq / area - mean * mean)

    def variances(self, coords: np.ndarray) -> np.ndarray:
        """Variance of every (x, y, w, h) row at once."""
        if len(coords) == 0:
            return np.zeros(0, dtype=np.float64)

        x1, y1 = coords[:, 0], coords[:, 1]
        x2, y2 = x1 + coords[:, 2], y1 + coords[:, 3]
        area = (coords[:, 2] * coords[:, 3]).astype(np.float64)

        s = self.sum[y2, x2] + self.sum[y1, x1] - self.sum[y1, x2] - self.sum[y2, x1]
        sq = self.sqsum[y2, x2] + self.sqsum[y1, x1] - self.sqsum[y1, x2] - self.sqsum[y2, x1]

        mean = s / area
        return sq / area - mean * mean

    def passes(self, coords: np.ndarray, threshold: float) -> np.ndarray:
        """Boolean mask of rows whose variance is at least threshold."""
        return self.variances(coords) >= threshold
