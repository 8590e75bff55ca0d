"""
OpenTLD LK Tracker - Forward-backward pyramidal Lucas-Kanade point tracking.

Points are tracked prev -> curr and back curr -> prev. Two filters reject
unreliable points:
1. Patch similarity (TM_CCOEFF_NORMED of 10x10 neighbourhoods) above the median
2. Forward-backward error at or below the median of the survivors

The median forward-backward error of the survivors is kept as the
stability measure of the last call.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import cv2

from .utils import median


@dataclass
class TrackedPoints:
    """Filtered point correspondences, both (N, 2) float32."""
    before: np.ndarray
    after: np.ndarray

    def __len__(self) -> int:
        return len(self.before)


class LKTracker:
    """Forward-backward optical flow with similarity and error filtering."""

    WINDOW_SIZE = (4, 4)
    MAX_LEVEL = 5
    MAX_COUNT = 20
    EPSILON = 0.03
    MIN_EIG_THRESHOLD = 0.0
    CROSS_CORR_PATCH_SIZE = (10, 10)

    def __init__(self):
        self.logger = logging.getLogger("LKTracker")

        self.lk_params = dict(
            winSize=self.WINDOW_SIZE,
            maxLevel=self.MAX_LEVEL,
            criteria=(cv2.TERM_CRITERIA_COUNT | cv2.TERM_CRITERIA_EPS, self.MAX_COUNT, self.EPSILON),
            flags=0,
            minEigThreshold=self.MIN_EIG_THRESHOLD,
        )

        self.fb_error_median = 0.0

    def track(self, prev_gray: np.ndarray, curr_gray: np.ndarray, prev_points: np.ndarray) -> Optional[TrackedPoints]:
        """
        Track points from prev_gray to curr_gray.

        Args:
            prev_gray: Previous single-channel frame
            curr_gray: Current single-channel frame
            prev_points: (N, 2) point coordinates in prev_gray

        Returns:
            Filtered TrackedPoints, or None when no point survives
        """
        points = np.asarray(prev_points, dtype=np.float32).reshape(-1, 1, 2)
        if len(points) == 0:
            return None

        # === FORWARD FLOW: prev -> current ===
        next_points, status, _ = cv2.calcOpticalFlowPyrLK(
            prev_gray, curr_gray, points, None, **self.lk_params
        )
        if next_points is None:
            return None

        # === BACKWARD FLOW: current -> prev ===
        back_points, _, _ = cv2.calcOpticalFlowPyrLK(
            curr_gray, prev_gray, next_points, None, **self.lk_params
        )
        if back_points is None:
            return None

        points = points.reshape(-1, 2)
        next_points = next_points.reshape(-1, 2)
        back_points = back_points.reshape(-1, 2)
        status = status.ravel() == 1

        fb_error = np.linalg.norm(back_points - points, axis=1)
        similarity = self._norm_cross_correlation(prev_gray, curr_gray, points, next_points, status)

        return self._filter_points(points, next_points, similarity, fb_error, status)

    def _norm_cross_correlation(self, prev_gray, curr_gray, points, next_points, status) -> np.ndarray:
        similarity = np.zeros(len(points), dtype=np.float32)
        for i in np.flatnonzero(status):
            prev_patch = cv2.getRectSubPix(prev_gray, self.CROSS_CORR_PATCH_SIZE, tuple(map(float, points[i])))
            curr_patch = cv2.getRectSubPix(curr_gray, self.CROSS_CORR_PATCH_SIZE, tuple(map(float, next_points[i])))
            result = cv2.matchTemplate(prev_patch, curr_patch, cv2.TM_CCOEFF_NORMED)
            similarity[i] = result[0, 0]
        return similarity

    def _filter_points(self, points, next_points, similarity, fb_error, status) -> Optional[TrackedPoints]:
        similarity_median = median(similarity)
        keep = status & (similarity > similarity_median)

        if not np.any(keep):
            self.logger.debug(f"No point above median similarity {similarity_median:.3f}")
            return None

        self.fb_error_median = median(fb_error[keep])
        keep &= fb_error <= self.fb_error_median

        count = int(keep.sum())
        self.logger.debug(
            f"Filter points: median similarity {similarity_median:.3f}, "
            f"median FB error {self.fb_error_median:.3f}, kept {count}"
        )
        if count == 0:
            return None
        return TrackedPoints(points[keep].copy(), next_points[keep].copy())
