"""OrderedPointSet: a fixed-width 2D grid of 3D points built up row by row."""

import os
import json
import pathlib
from typing import Any, Dict, Optional, Union

import numpy as np
from PIL import Image

from lrps.chain import SENTINEL_Z


class NumpyJSONEncoder(json.JSONEncoder):
    """JSON encoder that can handle NumPy types."""
    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        elif isinstance(obj, np.floating):
            return float(obj)
        elif isinstance(obj, np.ndarray):
            return obj.tolist()
        return super().default(obj)


class OrderedPointSet:
    """
    Rows of equally wide point sequences.

    Rows are propagation steps (increasing Z), columns are chain indices.

    Coordinate Convention:
    - Points are stored in XYZ order [x, y, z]
    - The grid is indexed as [row, column], shape [height, width, 3]
    - Invalid points carry z == -1 and keep their x/y
    """

    def __init__(self, width: int, points: Optional[np.ndarray] = None):
        """
        Initialize an OrderedPointSet.

        Args:
            width: Number of points per row
            points: Optional initial grid of shape [height, width, 3]
        """
        if width <= 0:
            raise ValueError(f"Width must be positive, got {width}")

        self._width = int(width)
        if points is None:
            self._points = np.zeros((0, self._width, 3), dtype=np.float64)
        else:
            points = np.array(points, dtype=np.float64)
            if points.ndim != 3 or points.shape[1:] != (self._width, 3):
                raise ValueError(f"Expected points with shape [h, {self._width}, 3], got {points.shape}")
            self._points = points
        self.meta: Dict[str, Any] = {}

    @classmethod
    def from_rows(cls, rows) -> "OrderedPointSet":
        grid = np.array(rows, dtype=np.float64)
        if grid.ndim != 3:
            raise ValueError(f"Expected rows with shape [h, w, 3], got {grid.shape}")
        return cls(grid.shape[1], grid)

    def __len__(self) -> int:
        return self.height

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._points.shape[0]

    @property
    def points(self) -> np.ndarray:
        """Copy of the full grid, shape [height, width, 3]."""
        return self._points.copy()

    def empty(self) -> bool:
        return self.height == 0

    def append_row(self, row) -> None:
        row = np.asarray(row, dtype=np.float64)
        if row.shape != (self._width, 3):
            raise ValueError(f"Row has shape {row.shape}, expected ({self._width}, 3)")
        self._points = np.concatenate([self._points, row[None]], axis=0)

    def get_row(self, index: int) -> np.ndarray:
        if not -self.height <= index < self.height:
            raise IndexError(f"Row {index} outside point set of height {self.height}")
        return self._points[index].copy()

    def copy_rows(self, start: int, end: int) -> "OrderedPointSet":
        """Rows [start, end) as a new point set."""
        if not 0 <= start <= end <= self.height:
            raise IndexError(f"Row range [{start}, {end}) outside point set of height {self.height}")
        return OrderedPointSet(self._width, self._points[start:end])

    def append(self, other: "OrderedPointSet") -> None:
        """Concatenate the rows of another point set of equal width."""
        if other.width != self._width:
            raise ValueError(f"Cannot append point set of width {other.width} to width {self._width}")
        self._points = np.concatenate([self._points, other._points], axis=0)

    def valid_mask(self) -> np.ndarray:
        """Boolean [height, width] mask of non-sentinel points."""
        return self._points[..., 2] != SENTINEL_Z

    def min_z(self) -> float:
        valid = self._points[self.valid_mask()]
        if valid.size == 0:
            raise ValueError("Point set has no valid points")
        return float(valid[:, 2].min())

    def max_z(self) -> float:
        valid = self._points[self.valid_mask()]
        if valid.size == 0:
            raise ValueError("Point set has no valid points")
        return float(valid[:, 2].max())

    def save(self, path: Union[str, pathlib.Path], uuid: Optional[str] = None) -> None:
        """
        Save the point set as a tifxyz directory.

        Args:
            path: Directory path to save the point set
            uuid: Optional identifier, defaults to the directory name
        """
        if isinstance(path, str):
            path = pathlib.Path(path)
        os.makedirs(path, exist_ok=True)

        # PIL needs at least one row to write an image
        grid = self._points if self.height > 0 else np.full((1, self._width, 3), SENTINEL_Z)
        Image.fromarray(grid[..., 0].astype(np.float32)).save(path / "x.tif")
        Image.fromarray(grid[..., 1].astype(np.float32)).save(path / "y.tif")
        Image.fromarray(grid[..., 2].astype(np.float32)).save(path / "z.tif")

        if uuid is None:
            uuid = path.name

        self.meta.update({
            "type": "seg",
            "uuid": uuid,
            "format": "tifxyz",
            "width": self._width,
            "height": self.height,
        })

        with open(path / "meta.json.tmp", 'w') as f:
            json.dump(self.meta, f, indent=4, cls=NumpyJSONEncoder)

        # Rename to make creation atomic
        os.rename(path / "meta.json.tmp", path / "meta.json")


def load_point_set(path: Union[str, pathlib.Path]) -> OrderedPointSet:
    """
    Load an OrderedPointSet from a tifxyz directory.

    Args:
        path: Path to the tifxyz directory

    Returns:
        OrderedPointSet with its metadata attached
    """
    if isinstance(path, str):
        path = pathlib.Path(path)

    with open(path / "meta.json", 'r') as f:
        metadata = json.load(f)

    x = np.array(Image.open(path / "x.tif"), dtype=np.float64)
    y = np.array(Image.open(path / "y.tif"), dtype=np.float64)
    z = np.array(Image.open(path / "z.tif"), dtype=np.float64)
    points = np.stack([x, y, z], axis=-1)

    height = metadata.get("height", points.shape[0])
    width = metadata.get("width", points.shape[1])
    if points.shape[1] != width or height > points.shape[0]:
        raise ValueError(f"tifxyz grid {points.shape[:2]} does not match metadata {height}x{width}")

    point_set = OrderedPointSet(width, points[:height])
    point_set.meta = metadata
    return point_set
