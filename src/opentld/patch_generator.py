"""
OpenTLD Patch Generator - Random affine warps for synthetic positives.

A warp is A = T(patch centre) * R(theta) * R(phi)' * S(l1, l2) * R(phi) * T(-centre),
optionally followed by a random translation, a random Gaussian blur and
additive Gaussian noise.
"""

import math
from typing import Tuple

import numpy as np
import cv2

from .utils import RandomSource


class PatchGenerator:
    """Generates randomly warped copies of an image region."""

    def __init__(
        self,
        background_min: float,
        background_max: float,
        noise_range: float,
        random_blur: bool,
        lambda_min: float,
        lambda_max: float,
        theta_min: float,
        theta_max: float,
        phi_min: float,
        phi_max: float,
        shift_range: float = 0.0,
    ):
        self.background_min = background_min
        self.background_max = background_max
        self.noise_range = noise_range
        self.random_blur = random_blur
        self.lambda_min = lambda_min
        self.lambda_max = lambda_max
        self.theta_min = theta_min
        self.theta_max = theta_max
        self.phi_min = phi_min
        self.phi_max = phi_max
        self.shift_range = shift_range

    @classmethod
    def from_ranges(cls, noise: float, angle_degrees: float, scale: float, shift: float) -> "PatchGenerator":
        """Build the generator used for positive examples from +/- ranges."""
        angle = angle_degrees * math.pi / 180.0
        return cls(0, 0, noise, True, 1 - scale, 1 + scale, -angle, angle, -angle, angle, shift)

    @staticmethod
    def _uniform(rng: RandomSource, low: float, high: float) -> float:
        return low + (high - low) * rng.next_float()

    def random_transform(self, src_center: Tuple[float, float], dst_center: Tuple[float, float],
                         size: Tuple[int, int], rng: RandomSource) -> np.ndarray:
        """
        Draw a random 2x3 affine transform mapping src_center onto dst_center.

        Args:
            size: (width, height) of the output patch, used for the shift range
        """
        lambda1 = self._uniform(rng, self.lambda_min, self.lambda_max)
        lambda2 = self._uniform(rng, self.lambda_min, self.lambda_max)
        theta = self._uniform(rng, self.theta_min, self.theta_max)
        phi = self._uniform(rng, self.phi_min, self.phi_max)

        st, ct = math.sin(theta), math.cos(theta)
        sp, cp = math.sin(phi), math.cos(phi)
        c2p, s2p = cp * cp, sp * sp

        a = lambda1 * c2p + lambda2 * s2p
        b = (lambda2 - lambda1) * sp * cp
        c = lambda1 * s2p + lambda2 * c2p

        sx, sy = src_center
        dx, dy = dst_center
        ax_by = a * sx + b * sy
        bx_cy = b * sx + c * sy

        if self.shift_range > 0:
            dx += self._uniform(rng, -self.shift_range, self.shift_range) * size[0]
            dy += self._uniform(rng, -self.shift_range, self.shift_range) * size[1]

        return np.array([
            [a * ct - b * st, b * ct - c * st, -ct * ax_by + st * bx_cy + dx],
            [a * st + b * ct, b * st + c * ct, -st * ax_by - ct * bx_cy + dy],
        ], dtype=np.float64)

    def generate(self, image: np.ndarray, center: Tuple[float, float],
                 size: Tuple[int, int], rng: RandomSource) -> np.ndarray:
        """
        Warp the region of image around center into a new patch.

        Args:
            image: Single-channel uint8 source image
            center: Point of image mapped onto the patch centre
            size: (width, height) of the generated patch
            rng: Random source driving every random choice

        Returns:
            uint8 patch of shape (height, width)
        """
        width, height = size
        transform = self.random_transform(center, ((width - 1) * 0.5, (height - 1) * 0.5), size, rng)

        if self.background_min != self.background_max:
            noise_rng = np.random.default_rng(rng.next_int())
            patch = noise_rng.uniform(self.background_min, self.background_max, (height, width)).astype(image.dtype)
            cv2.warpAffine(image, transform, (width, height), dst=patch,
                           flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_TRANSPARENT)
        else:
            patch = cv2.warpAffine(image, transform, (width, height), flags=cv2.INTER_LINEAR,
                                   borderMode=cv2.BORDER_CONSTANT, borderValue=self.background_min)

        ksize = rng.next_int() % 9 - 5 if self.random_blur else 0
        if ksize > 0:
            ksize = ksize * 2 + 1
            patch = cv2.GaussianBlur(patch, (ksize, ksize), 0)

        if self.noise_range > 0:
            noise_rng = np.random.default_rng(rng.next_int())
            noise = noise_rng.normal(0.0, self.noise_range, patch.shape)
            patch = np.clip(patch.astype(np.float64) + noise, 0, 255).astype(np.uint8)

        return patch
