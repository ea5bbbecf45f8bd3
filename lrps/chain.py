"""
Particle chains.

A chain is the ordered, fixed-width curve being propagated. Particles that
failed to find a next position keep their last X/Y and carry the sentinel
z = -1; they stay in the chain so its width never changes.

Coordinate Convention:
- 3D points are in XYZ order [x, y, z] with 0=x, 1=y, 2=z
"""

from typing import Optional, Tuple

import numpy as np

from lrps.errors import ChainWidthMismatch


# z value of a particle that failed to find a position
SENTINEL_Z = -1.0


def is_sentinel(point) -> bool:
    return point[2] == SENTINEL_Z


def adjacent_valid(points: np.ndarray, index: int) -> Tuple[Optional[int], Optional[int]]:
    """Immediate left/right indices in a row of points, None where absent or sentinel."""
    left = index - 1 if index > 0 and not is_sentinel(points[index - 1]) else None
    right = index + 1 if index + 1 < len(points) and not is_sentinel(points[index + 1]) else None
    return left, right


class Chain:
    """Ordered particles of one cross-sectional curve."""

    def __init__(self, points):
        points = np.array(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"Expected chain points with shape [n, 3], got {points.shape}")
        self._points = points

    def __len__(self) -> int:
        return self._points.shape[0]

    @property
    def width(self) -> int:
        return self._points.shape[0]

    @property
    def positions(self) -> np.ndarray:
        """Copy of the particle positions, shape [width, 3]."""
        return self._points.copy()

    def __getitem__(self, index: int) -> np.ndarray:
        return self._points[index].copy()

    def valid_mask(self) -> np.ndarray:
        return self._points[:, 2] != SENTINEL_Z

    def is_valid(self, index: int) -> bool:
        return self._points[index, 2] != SENTINEL_Z

    def valid_count(self) -> int:
        return int(np.count_nonzero(self.valid_mask()))

    def mark_sentinel(self, index: int) -> None:
        self._points[index, 2] = SENTINEL_Z

    def update(self, points: np.ndarray) -> None:
        """Replace all positions; the width must not change."""
        points = np.asarray(points, dtype=np.float64)
        if points.shape != self._points.shape:
            raise ChainWidthMismatch(self.width, points.shape[0] if points.ndim else 0)
        self._points = points.copy()

    def z_level(self) -> int:
        """Z slice of the chain, taken from its first valid particle."""
        valid = np.nonzero(self.valid_mask())[0]
        if valid.size == 0:
            raise ValueError("Chain has no valid particles")
        return int(np.floor(self._points[valid[0], 2]))

    def _nearest_valid(self, index: int, direction: int) -> Optional[int]:
        i = index + direction
        while 0 <= i < self.width:
            if self.is_valid(i):
                return i
            i += direction
        return None

    def neighbors(self, index: int) -> Tuple[Optional[int], Optional[int]]:
        """Immediate left/right neighbours, None where absent or sentinel."""
        return adjacent_valid(self._points, index)

    def tangent(self, index: int) -> Optional[np.ndarray]:
        """
        Unit secant direction in the XY plane at a particle.

        Uses the nearest valid particle on each side (central difference),
        falling back to a one-sided difference at the ends. Returns None when
        no other valid particle exists or the secant is degenerate.
        """
        left = self._nearest_valid(index, -1)
        right = self._nearest_valid(index, 1)
        start = self._points[left] if left is not None else self._points[index]
        end = self._points[right] if right is not None else self._points[index]
        if left is None and right is None:
            return None

        secant = end - start
        secant[2] = 0.0
        norm = np.linalg.norm(secant)
        if norm < 1e-9:
            return None
        return secant / norm

    def normal(self, index: int) -> Optional[np.ndarray]:
        """In-plane normal: the tangent rotated by +90 degrees about Z."""
        tangent = self.tangent(index)
        if tangent is None:
            return None
        return np.array([-tangent[1], tangent[0], 0.0])

    def mean_spacing(self) -> float:
        """Mean distance between adjacent valid particles, 0 if none."""
        valid = self.valid_mask()
        pairs = valid[:-1] & valid[1:]
        if not pairs.any():
            return 0.0
        steps = np.diff(self._points, axis=0)[pairs]
        return float(np.mean(np.linalg.norm(steps, axis=1)))
