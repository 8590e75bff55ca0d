"""
OpenTLD Grid - Multi-scale candidate boxes around the tracked object.

The grid is generated once per session from the initial box:
- 21 log-spaced scales (ratio 1.2) of the reference box
- a dense raster per scale with a stride of 10% of the shorter side
- good / bad partitions and their hull recomputed per reference box

Coordinates are kept as numpy arrays so the detection stages can work on
every candidate at once; BoundingBox objects are only built on demand.
"""

import logging
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .geometry import BoundingBox
from .utils import round_half_up


SCALES: Tuple[float, ...] = (
    0.16151, 0.19381, 0.23257, 0.27908, 0.33490, 0.40188, 0.48225,
    0.57870, 0.69444, 0.83333, 1.0, 1.20000, 1.44000, 1.72800,
    2.07360, 2.48832, 2.98598, 3.58318, 4.29982, 5.15978, 6.19174,
)


class EmptyGoodBoxesError(RuntimeError):
    """Raised when the hull of an empty good-box set is requested."""


def overlaps(coords: np.ndarray, reference: BoundingBox) -> np.ndarray:
    """
    IoU of every (x, y, w, h) row against one reference box.

    Matches BoundingBox.overlap_with: disjoint and edge-touching rows give 0.
    """
    if len(coords) == 0:
        return np.zeros(0, dtype=np.float64)

    x, y, w, h = coords[:, 0], coords[:, 1], coords[:, 2], coords[:, 3]
    rx, ry, rw, rh = reference.x, reference.y, reference.width, reference.height

    inter_w = np.minimum(x + w, rx + rw) - np.maximum(x, rx)
    inter_h = np.minimum(y + h, ry + rh) - np.maximum(y, ry)
    intersection = (np.clip(inter_w, 0, None) * np.clip(inter_h, 0, None)).astype(np.float64)

    union = (w * h).astype(np.float64) + float(rw * rh) - intersection
    with np.errstate(divide="ignore", invalid="ignore"):
        result = np.where(intersection > 0, intersection / union, 0.0)
    return result


class Grid:
    """
    Candidate boxes for one reference box and minimum window.

    The candidate list is immutable; good_boxes, bad_boxes, best_box and
    bb_hull change each time update_good_bad_boxes runs.
    """

    GOOD_OVERLAP = 0.6
    BAD_OVERLAP = 0.2
    SHIFT = 0.1

    def __init__(self, frame_shape: Sequence[int], reference_box: BoundingBox, min_win: int):
        """
        Args:
            frame_shape: (rows, cols[, channels]) of the frames being tracked
            reference_box: initial object box
            min_win: minimum side length of a candidate box
        """
        self.logger = logging.getLogger("Grid")
        self.rows, self.cols = int(frame_shape[0]), int(frame_shape[1])

        self.scales: List[Tuple[int, int]] = []
        coords = []
        scale_ids = []

        for factor in SCALES:
            width = round_half_up(reference_box.width * factor)
            height = round_half_up(reference_box.height * factor)
            min_side = min(width, height)

            if min_side < min_win or width > self.cols or height > self.rows:
                continue

            self.scales.append((width, height))
            scale_idx = len(self.scales) - 1
            shift = max(1, round_half_up(self.SHIFT * min_side))

            rows = np.arange(1, self.rows - height, shift)
            cols = np.arange(1, self.cols - width, shift)
            if len(rows) == 0 or len(cols) == 0:
                continue

            ys, xs = np.meshgrid(rows, cols, indexing="ij")
            block = np.empty((ys.size, 4), dtype=np.int64)
            block[:, 0] = xs.ravel()
            block[:, 1] = ys.ravel()
            block[:, 2] = width
            block[:, 3] = height
            coords.append(block)
            scale_ids.append(np.full(ys.size, scale_idx, dtype=np.int64))

        if coords:
            self.coords = np.concatenate(coords)
            self.scale_ids = np.concatenate(scale_ids)
        else:
            self.coords = np.zeros((0, 4), dtype=np.int64)
            self.scale_ids = np.zeros(0, dtype=np.int64)

        self.overlaps = overlaps(self.coords, reference_box)

        self.good_box_indices = np.zeros(0, dtype=np.int64)
        self.bad_box_indices = np.zeros(0, dtype=np.int64)
        self.best_box_index: Optional[int] = None
        self._bb_hull: Optional[BoundingBox] = None

        self.logger.info(f"Created {len(self)} bounding boxes over {len(self.scales)} scales")

    def __len__(self) -> int:
        return len(self.coords)

    def __getitem__(self, index: int) -> BoundingBox:
        x, y, w, h = (int(v) for v in self.coords[index])
        return BoundingBox(x, y, w, h, float(self.overlaps[index]), int(self.scale_ids[index]))

    def __iter__(self) -> Iterator[BoundingBox]:
        for index in range(len(self)):
            yield self[index]

    def update_overlap(self, reference_box: BoundingBox):
        """Refresh overlaps against a new reference. Partitions are untouched."""
        self.overlaps = overlaps(self.coords, reference_box)

    def update_good_bad_boxes(self, reference_box: BoundingBox, max_good: int):
        """
        Recompute overlaps and rebuild the good / bad partitions.

        Args:
            reference_box: box the partitions are relative to
            max_good: cap on the number of good boxes (highest overlap kept)
        """
        self.update_overlap(reference_box)

        if len(self) > 0 and self.overlaps.max() > 0:
            self.best_box_index = int(np.argmax(self.overlaps))
        else:
            self.best_box_index = None

        good = np.flatnonzero(self.overlaps > self.GOOD_OVERLAP)
        order = np.argsort(-self.overlaps[good], kind="stable")
        self.good_box_indices = good[order][:max_good]
        self.bad_box_indices = np.flatnonzero(self.overlaps < self.BAD_OVERLAP)

        self._update_bb_hull()

        self.logger.info(
            f"Found {len(self.good_box_indices)} good boxes, "
            f"{len(self.bad_box_indices)} bad boxes. Best box: {self.best_box}"
        )

    def _update_bb_hull(self):
        if len(self.good_box_indices) == 0:
            self._bb_hull = None
            return

        good = self.coords[self.good_box_indices]
        x1 = int(good[:, 0].min())
        y1 = int(good[:, 1].min())
        x2 = int((good[:, 0] + good[:, 2]).max())
        y2 = int((good[:, 1] + good[:, 3]).max())
        self._bb_hull = BoundingBox(x1, y1, x2 - x1, y2 - y1)
        self.logger.debug(f"Bounding box hull {self._bb_hull}")

    @property
    def bb_hull(self) -> BoundingBox:
        """Union rectangle of the good boxes."""
        if self._bb_hull is None:
            raise EmptyGoodBoxesError("Can't calculate the hull without at least 1 good box")
        return self._bb_hull

    @property
    def best_box(self) -> Optional[BoundingBox]:
        if self.best_box_index is None:
            return None
        return self[self.best_box_index]

    @property
    def good_boxes(self) -> List[BoundingBox]:
        return [self[i] for i in self.good_box_indices]

    @property
    def bad_boxes(self) -> List[BoundingBox]:
        return [self[i] for i in self.bad_box_indices]
