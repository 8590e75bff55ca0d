"""
OpenTLD Geometry - Bounding boxes and point-based box prediction.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Tuple

import numpy as np

from .utils import median, round_half_up


logger = logging.getLogger(__name__)


@dataclass
class BoundingBox:
    """
    Axis-aligned integer rectangle in image pixel coordinates.

    overlap is transient: the IoU with whatever reference box the owning
    Grid was last updated with. scale_idx indexes that Grid's scale table.
    """
    x: int
    y: int
    width: int
    height: int
    overlap: float = -1.0
    scale_idx: int = -1

    POINTS_MAX_COUNT = 10
    POINTS_MARGIN = 0

    @classmethod
    def from_tuple(cls, rect: Tuple[int, int, int, int]) -> "BoundingBox":
        x, y, w, h = rect
        return cls(int(x), int(y), int(w), int(h))

    def to_tuple(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.width, self.height

    def copy(self) -> "BoundingBox":
        return replace(self)

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def br(self) -> Tuple[int, int]:
        """Bottom-right corner (exclusive)."""
        return self.x + self.width, self.y + self.height

    def overlap_with(self, other: "BoundingBox") -> float:
        """Intersection over union. 0 for disjoint or edge-touching boxes."""
        if (self.x > other.x + other.width or self.y > other.y + other.height
                or self.x + self.width < other.x or self.y + self.height < other.y):
            return 0.0

        col_intersection = min(self.x + self.width, other.x + other.width) - max(self.x, other.x)
        row_intersection = min(self.y + self.height, other.y + other.height) - max(self.y, other.y)
        intersection = float(col_intersection * row_intersection)
        if intersection <= 0.0:
            return 0.0

        union = self.area + other.area - intersection
        return intersection / union

    def sample_points(self) -> np.ndarray:
        """
        Evenly spaced points inside the box, row-major, at most 10x10.

        Returns:
            float32 array of shape (N, 2) holding (x, y)
        """
        margin = self.POINTS_MARGIN
        step_x = max(1, math.ceil((self.width - 2 * margin) / self.POINTS_MAX_COUNT))
        step_y = max(1, math.ceil((self.height - 2 * margin) / self.POINTS_MAX_COUNT))

        points = [
            (float(i), float(j))
            for j in range(self.y + margin, self.y + self.height - margin, step_y)
            for i in range(self.x + margin, self.x + self.width - margin, step_x)
        ]
        logger.debug(f"Points in {self}: step=({step_x}, {step_y}) count={len(points)}")
        return np.array(points, dtype=np.float32).reshape(-1, 2)

    def predict(self, points_before: np.ndarray, points_after: np.ndarray) -> "BoundingBox":
        """
        Move and rescale the box following matched point pairs.

        Translation is the median displacement; scale is the median ratio of
        pairwise distances after/before.

        Raises:
            ValueError: if the two point sets have different lengths
        """
        before = np.asarray(points_before, dtype=np.float64).reshape(-1, 2)
        after = np.asarray(points_after, dtype=np.float64).reshape(-1, 2)
        if len(before) != len(after):
            raise ValueError(
                f"The 2 arrays of points must be of the same length ({len(before)}, {len(after)})"
            )
        if len(before) == 0:
            raise ValueError("Cannot predict a box from an empty set of points")

        offsets = after - before
        dx = median(offsets[:, 0])
        dy = median(offsets[:, 1])

        scale = 1.0
        if len(before) > 1:
            i, j = np.triu_indices(len(before), k=1)
            dist_before = np.linalg.norm(before[i] - before[j], axis=1)
            dist_after = np.linalg.norm(after[i] - after[j], axis=1)
            usable = dist_before > 0
            if np.any(usable):
                scale = median(dist_after[usable] / dist_before[usable])

        s1 = 0.5 * (scale - 1) * self.width
        s2 = 0.5 * (scale - 1) * self.height
        result = BoundingBox(
            round_half_up(self.x + dx - s1),
            round_half_up(self.y + dy - s2),
            round_half_up(self.width * scale),
            round_half_up(self.height * scale),
        )
        logger.debug(f"Current box: {self}, predicted box: {result}")
        return result

    def intersect(self, frame: np.ndarray) -> "BoundingBox":
        """Clamp the box to [0, cols) x [0, rows) of the frame."""
        rows, cols = frame.shape[:2]
        x1 = max(self.x, 0)
        y1 = max(self.y, 0)
        x2 = min(self.x + self.width, cols)
        y2 = min(self.y + self.height, rows)
        return BoundingBox(x1, y1, max(0, x2 - x1), max(0, y2 - y1))

    def crop(self, image: np.ndarray) -> np.ndarray:
        """View of the image under this box (no bounds clamping)."""
        return image[self.y:self.y + self.height, self.x:self.x + self.width]

    def __str__(self) -> str:
        return f"({self.x}, {self.y}, {self.width}, {self.height} / {self.overlap:.3f}, {self.scale_idx})"
