"""
Arbitrary-plane cross sections ("reslices") of a scalar volume.

Coordinate Convention:
- 3D points and axes are in XYZ order [x, y, z]
- Reslice images are indexed as image[row, col]; pixel (col, row) maps to
  origin + col * x_axis + row * y_axis
"""

from typing import Tuple

import numpy as np

from volumes.scalar_volume import VolumeProtocol


def _unit(vector) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(vector)
    if vector.shape != (3,) or not np.isfinite(norm) or norm < 1e-12:
        raise ValueError(f"Expected a non-zero 3D axis, got {vector}")
    return vector / norm


class Reslice:
    """A sampled cross section together with the plane that produced it."""

    def __init__(self, image: np.ndarray, origin: np.ndarray,
                 x_axis: np.ndarray, y_axis: np.ndarray, in_bounds: float):
        self.image = image
        self.origin = origin
        self.x_axis = x_axis
        self.y_axis = y_axis
        self.in_bounds = in_bounds

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]

    @property
    def center(self) -> Tuple[int, int]:
        """Center pixel as (col, row)."""
        return (self.width // 2, self.height // 2)

    def row(self, index: int) -> np.ndarray:
        return self.image[index]

    def slice_to_voxel(self, col: float, row: float) -> np.ndarray:
        """Map a reslice pixel to its XYZ voxel coordinate."""
        return self.origin + col * self.x_axis + row * self.y_axis


class ResliceSampler:
    """
    Extracts reslices by repeated trilinear sampling of a volume.

    Holds no state besides the volume, so identical inputs always produce
    identical images.
    """

    def __init__(self, volume: VolumeProtocol):
        self.volume = volume

    def reslice(self, origin, x_axis, y_axis, width: int = 64, height: int = 64) -> Reslice:
        """
        Sample the plane spanned by two axes.

        Args:
            origin: XYZ coordinate of pixel (0, 0)
            x_axis: Direction of increasing column (normalised here)
            y_axis: Direction of increasing row (normalised here)
            width: Number of columns
            height: Number of rows

        Returns:
            Reslice with a (height, width) float image
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Reslice size must be positive, got {width}x{height}")

        origin = np.asarray(origin, dtype=np.float64)
        x_axis = _unit(x_axis)
        y_axis = _unit(y_axis)

        cols, rows = np.meshgrid(np.arange(width), np.arange(height))
        coords = origin + cols[..., None] * x_axis + rows[..., None] * y_axis

        image = self.volume.sample_points(coords)
        in_bounds = float(np.mean(self.volume.contains_points(coords)))
        return Reslice(image, origin, x_axis, y_axis, in_bounds)

    def reslice_centered(self, center, x_axis, y_axis, width: int = 64, height: int = 64) -> Reslice:
        """Like :meth:`reslice`, with ``center`` landing on pixel (width//2, height//2)."""
        center = np.asarray(center, dtype=np.float64)
        origin = center - (width // 2) * _unit(x_axis) - (height // 2) * _unit(y_axis)
        return self.reslice(origin, x_axis, y_axis, width, height)
