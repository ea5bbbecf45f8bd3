"""
Slice stores backing a ScalarVolume.

A slice store hands out decoded 2D planes by integer slice index. It is the
only place where a volume touches storage; caching is handled one level up
by ScalarVolume.

Coordinate Convention:
- Planes are indexed as plane[y, x]
- Slices are stacked along Z, so the whole store reads as volume[z, y, x]
"""

import json
import logging
import pathlib
from typing import List, Optional, Protocol, Union

import numpy as np
import zarr
from PIL import Image


logger = logging.getLogger(__name__)

TIFF_SUFFIXES = (".tif", ".tiff")


class SliceStore(Protocol):
    """Anything that can decode one slice plane at a time."""

    num_slices: int
    width: int
    height: int
    dtype: np.dtype

    def load_slice(self, index: int) -> np.ndarray:
        ...


class ArraySliceStore:
    """
    Slice store over an in-memory [z, y, x] array.

    Mostly used for synthetic volumes in tests and for small scans that
    already fit in memory.
    """

    def __init__(self, data: np.ndarray):
        data = np.asarray(data)
        if data.ndim != 3:
            raise ValueError(f"Expected 3D array, got {data.ndim}D")

        self.data = data
        self.num_slices, self.height, self.width = data.shape
        self.dtype = data.dtype

    def load_slice(self, index: int) -> np.ndarray:
        # Copy so cached planes never alias the caller's array
        return np.array(self.data[index])


class ZarrSliceStore:
    """Slice store over a 3D zarr array chunked along Z."""

    def __init__(self, dataset: zarr.Array):
        if dataset.ndim != 3:
            raise ValueError(f"Expected 3D array, got {dataset.ndim}D")

        self.dataset = dataset
        self.num_slices, self.height, self.width = dataset.shape
        self.dtype = np.dtype(dataset.dtype)

    def load_slice(self, index: int) -> np.ndarray:
        return np.asarray(self.dataset[index])


class TiffSliceStore:
    """
    Directory with one TIFF image per slice.

    Slice files are ordered by name, so they are expected to carry a
    zero-padded index (``0000.tif``, ``0001.tif``, ...).
    """

    def __init__(self, directory: Union[str, pathlib.Path]):
        self.directory = pathlib.Path(directory)
        self.paths: List[pathlib.Path] = sorted(
            p for p in self.directory.iterdir()
            if p.suffix.lower() in TIFF_SUFFIXES
        )
        if not self.paths:
            raise ValueError(f"No TIFF slices found in {self.directory}")

        with Image.open(self.paths[0]) as img:
            first = np.array(img)
        if first.ndim != 2:
            raise ValueError(f"Expected single-channel slices, got shape {first.shape}")

        self.num_slices = len(self.paths)
        self.height, self.width = first.shape
        self.dtype = first.dtype

    def load_slice(self, index: int) -> np.ndarray:
        with Image.open(self.paths[index]) as img:
            plane = np.array(img)

        if plane.shape != (self.height, self.width):
            raise ValueError(
                f"Slice {self.paths[index].name} has shape {plane.shape}, "
                f"expected {(self.height, self.width)}"
            )
        return plane


def _is_ome_zarr(zarr_path: pathlib.Path) -> bool:
    """Check for an OME-Zarr multiscale layout (.zattrs + level directories)."""
    zattrs_path = zarr_path / ".zattrs"
    if not zattrs_path.exists() or not (zarr_path / "0").exists():
        return False

    try:
        with open(zattrs_path, "r") as f:
            attrs = json.load(f)
    except (OSError, ValueError):
        return False
    return "multiscales" in attrs


def _find_first_array(group) -> Optional[zarr.Array]:
    """Recursively find the first 3D array in a zarr group."""
    for _, obj in group.arrays():
        if obj.ndim == 3:
            return obj
    for _, sub in group.groups():
        found = _find_first_array(sub)
        if found is not None:
            return found
    return None


def open_zarr_slices(
    path: Union[str, pathlib.Path],
    resolution_level: Optional[int] = None
) -> ZarrSliceStore:
    """
    Open a zarr volume as a slice store.

    OME-Zarr stores are opened at the requested resolution level (0 by
    default). Plain groups are searched for their first 3D array.

    Args:
        path: Path to the zarr directory
        resolution_level: Resolution level for OME-Zarr stores

    Returns:
        ZarrSliceStore over the selected array
    """
    path = pathlib.Path(path)

    if _is_ome_zarr(path):
        level = 0 if resolution_level is None else resolution_level
        level_path = path / str(level)
        if not level_path.exists():
            available = sorted(d.name for d in path.iterdir() if d.is_dir() and d.name.isdigit())
            raise ValueError(f"Resolution level {level} not found in {path}. Available levels: {available}")
        path = level_path

    z = zarr.open(str(path), mode="r")
    if isinstance(z, zarr.Array):
        dataset = z
    else:
        dataset = _find_first_array(z)
        if dataset is None:
            raise ValueError(f"No 3D array found in {path}")

    logger.info(f"Opened zarr slices at {path} with shape {dataset.shape}")
    return ZarrSliceStore(dataset)
