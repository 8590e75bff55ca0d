"""
OpenTLD Utilities - Small numeric helpers shared by the tracking stages.

Contains:
- The injectable random source used by every randomised stage
- Median / keep-best-N helpers with the tracker's tie-breaking rules
- Patch normalisation (resize + zero mean) used by the NN classifier
"""

import math
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar

import numpy as np
import cv2


T = TypeVar("T")


class RandomSource(Protocol):
    """Minimal random interface so ensembles can be reproduced in tests."""

    def next_float(self) -> float:
        """Uniform float in [0, 1)."""
        ...

    def next_int(self) -> int:
        """Non-negative integer."""
        ...


class DefaultRandomSource:
    """RandomSource backed by a numpy Generator."""

    def __init__(self, seed: Optional[int] = None):
        self._rng = np.random.default_rng(seed)

    def next_float(self) -> float:
        return float(self._rng.random())

    def next_int(self) -> int:
        return int(self._rng.integers(0, 2**31 - 1))


def median(values: Iterable[float]) -> float:
    """
    Upper median: element at len // 2 of the sorted values.

    Raises:
        ValueError: on an empty sequence
    """
    if isinstance(values, np.ndarray):
        arr = values.astype(np.float64).ravel()
    else:
        arr = np.fromiter(values, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("median of an empty sequence")
    return float(np.sort(arr, kind="stable")[arr.size // 2])


def keep_best_n(items: Sequence[T], n: int, key) -> List[T]:
    """
    Return the n items with the highest key, best first.

    Ties keep their original (encounter) order.
    """
    ranked = sorted(items, key=key, reverse=True)
    return ranked[:n]


def shuffled(items: Sequence[T], rng: RandomSource) -> List[T]:
    """Fisher-Yates shuffle driven by the injectable random source."""
    result = list(items)
    for i in range(len(result) - 1, 0, -1):
        j = rng.next_int() % (i + 1)
        result[i], result[j] = result[j], result[i]
    return result


def to_gray(frame: np.ndarray) -> np.ndarray:
    """Return a single-channel uint8 view of the frame."""
    if frame.ndim == 3:
        if frame.shape[2] == 4:
            return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
        return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    if frame.dtype != np.uint8:
        return np.clip(frame, 0, 255).astype(np.uint8)
    return frame


def normalize_patch(patch: np.ndarray, patch_size: int) -> Tuple[np.ndarray, float]:
    """
    Resize a patch to patch_size x patch_size and subtract its mean.

    Returns:
        (zero-mean float32 pattern, standard deviation of the resized patch)
    """
    resized = cv2.resize(patch, (patch_size, patch_size))
    mean, stddev = cv2.meanStdDev(resized)
    pattern = resized.astype(np.float32) - np.float32(mean[0, 0])
    return pattern, float(stddev[0, 0])


def round_half_up(value: float) -> int:
    """Round the way the grid and box prediction expect (0.5 goes up)."""
    return int(math.floor(value + 0.5))
