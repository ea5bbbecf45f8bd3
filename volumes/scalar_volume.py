"""
Out-of-core scalar volume with a byte-budgeted slice cache.

ScalarVolume exposes a CT scan as a trilinearly interpolated scalar field.
Decoded slice planes are kept in a SliceCache bounded by a memory budget;
planes referenced by an in-flight interpolation read are pinned and never
evicted until the read completes.

Coordinate Convention:
- 3D points are in XYZ order [x, y, z] with 0=x, 1=y, 2=z
- Slice planes are indexed as plane[y, x]
- Blocks returned by get_subvolume are indexed as block[z, y, x]
"""

import contextlib
import json
import logging
import math
import pathlib
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, Iterator, List, Protocol, Set, Tuple, Union

import numpy as np

from lrps.errors import CacheOverBudget, IndexOutOfRange
from volumes.slice_store import SliceStore, TiffSliceStore, open_zarr_slices


logger = logging.getLogger(__name__)

# Default memory ceiling for decoded planes
DEFAULT_CACHE_BUDGET = int(1e9)


class CacheEntry:
    """A decoded slice plane and its approximate resident size."""

    __slots__ = ("plane", "nbytes")

    def __init__(self, plane: np.ndarray):
        self.plane = plane
        self.nbytes = int(plane.nbytes)


class SliceCache:
    """
    LRU cache of decoded slice planes bounded by a byte budget.

    All bookkeeping is guarded by one condition variable. Loads happen outside
    the lock; an index that is mid-load is marked so concurrent readers wait
    for it instead of loading it twice. Pinned indices are skipped by
    eviction. A plane that cannot be admitted without evicting pinned data is
    handed to the caller uncached, which keeps resident bytes within budget.
    """

    def __init__(self, budget_bytes: int = DEFAULT_CACHE_BUDGET):
        if budget_bytes < 0:
            raise ValueError(f"Cache budget must be non-negative, got {budget_bytes}")

        self.budget_bytes = int(budget_bytes)
        self.resident_bytes = 0
        self._entries: "OrderedDict[int, CacheEntry]" = OrderedDict()
        self._pins: Dict[int, int] = {}
        self._loading: Set[int] = set()
        self._cond = threading.Condition()

        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.load_through = 0

    def __contains__(self, index: int) -> bool:
        with self._cond:
            return index in self._entries

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)

    def acquire(self, index: int, loader: Callable[[int], np.ndarray]) -> np.ndarray:
        """
        Return the plane for ``index`` and pin it.

        Every successful acquire must be paired with :meth:`release`.

        Args:
            index: Slice index
            loader: Called at most once per miss to decode the plane

        Returns:
            The decoded plane (read-only)
        """
        with self._cond:
            while True:
                entry = self._entries.get(index)
                if entry is not None:
                    self._entries.move_to_end(index)
                    self._pin(index)
                    self.hits += 1
                    return entry.plane
                if index not in self._loading:
                    break
                self._cond.wait()

            self._loading.add(index)
            self._pin(index)
            self.misses += 1

        try:
            plane = np.asarray(loader(index))
            plane.setflags(write=False)
        except BaseException:
            with self._cond:
                self._loading.discard(index)
                self._unpin(index)
                self._cond.notify_all()
            raise

        with self._cond:
            self._loading.discard(index)
            self._admit(index, plane)
            self._cond.notify_all()
        return plane

    def release(self, index: int) -> None:
        """Drop one pin on ``index``."""
        with self._cond:
            self._unpin(index)
            # A budget shrink may have been deferred by this pin
            if self.resident_bytes > self.budget_bytes:
                self._evict_until(self.budget_bytes)

    def set_budget(self, budget_bytes: int) -> None:
        """Change the byte budget, evicting unpinned planes as needed."""
        if budget_bytes < 0:
            raise ValueError(f"Cache budget must be non-negative, got {budget_bytes}")

        with self._cond:
            self.budget_bytes = int(budget_bytes)
            self._evict_until(self.budget_bytes)
            if self.resident_bytes > self.budget_bytes:
                logger.debug(
                    f"Cache over new budget by {self.resident_bytes - self.budget_bytes} bytes "
                    f"until {len(self._pins)} pinned slices are released"
                )

    def pinned_indices(self) -> List[int]:
        with self._cond:
            return sorted(self._pins)

    def clear(self) -> None:
        """Drop every unpinned plane and reset statistics."""
        with self._cond:
            self._evict_until(0)
            self.hits = 0
            self.misses = 0
            self.evictions = 0
            self.load_through = 0

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._cond:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "load_through": self.load_through,
                "size": len(self._entries),
                "resident_bytes": self.resident_bytes,
                "budget_bytes": self.budget_bytes,
                "hit_ratio": self.hits / total if total > 0 else 0,
            }

    # The helpers below expect the lock to be held

    def _pin(self, index: int) -> None:
        self._pins[index] = self._pins.get(index, 0) + 1

    def _unpin(self, index: int) -> None:
        count = self._pins.get(index, 0) - 1
        if count > 0:
            self._pins[index] = count
        else:
            self._pins.pop(index, None)

    def _admit(self, index: int, plane: np.ndarray) -> None:
        entry = CacheEntry(plane)
        pinned_bytes = sum(e.nbytes for i, e in self._entries.items() if i in self._pins)
        if pinned_bytes + entry.nbytes > self.budget_bytes:
            self.load_through += 1
            return

        self._evict_until(self.budget_bytes - entry.nbytes)

        self._entries[index] = entry
        self.resident_bytes += entry.nbytes
        if self.resident_bytes > self.budget_bytes:
            raise CacheOverBudget(
                f"Resident bytes {self.resident_bytes} exceed budget {self.budget_bytes}"
            )

    def _evict_until(self, target_bytes: int) -> None:
        # OrderedDict iteration runs least- to most-recently used
        for index in list(self._entries):
            if self.resident_bytes <= target_bytes:
                break
            if index in self._pins:
                continue
            entry = self._entries.pop(index)
            self.resident_bytes -= entry.nbytes
            self.evictions += 1


class VolumeProtocol(Protocol):
    """The slice of ScalarVolume the propagation engine depends on."""

    num_slices: int
    width: int
    height: int
    fill_value: float

    def sample(self, x: float, y: float, z: float) -> float:
        ...

    def sample_points(self, points: np.ndarray) -> np.ndarray:
        ...

    def get_slice(self, index: int) -> np.ndarray:
        ...

    def set_cache_budget(self, nbytes: int) -> None:
        ...

    def contains(self, x: float, y: float, z: float) -> bool:
        ...

    def contains_points(self, points: np.ndarray) -> np.ndarray:
        ...

    def get_subvolume(self, start_z: int, start_y: int, start_x: int,
                      size_z: int, size_y: int, size_x: int) -> np.ndarray:
        ...


class ScalarVolume:
    """
    Random-access, interpolated view of a scanned volume.

    Sampling outside ``[0, width) x [0, height) x [0, num_slices)`` returns
    ``fill_value``. Explicit slice fetches outside the volume raise
    IndexOutOfRange.
    """

    def __init__(
        self,
        store: SliceStore,
        voxel_size: float = 1.0,
        cache_budget: int = DEFAULT_CACHE_BUDGET,
        fill_value: float = 0.0,
        name: str = ""
    ):
        """
        Initialize a ScalarVolume.

        Args:
            store: Slice store providing decoded planes
            voxel_size: Physical size of one voxel (e.g. micrometres)
            cache_budget: Maximum bytes of decoded planes to keep resident
            fill_value: Value returned for samples outside the volume
            name: Optional display name
        """
        if voxel_size <= 0:
            raise ValueError(f"Voxel size must be positive, got {voxel_size}")

        self.store = store
        self.num_slices = int(store.num_slices)
        self.width = int(store.width)
        self.height = int(store.height)
        self.voxel_size = float(voxel_size)
        self.fill_value = float(fill_value)
        self.name = name
        self.cache = SliceCache(cache_budget)

    @classmethod
    def open(cls, path: Union[str, pathlib.Path], cache_budget: int = DEFAULT_CACHE_BUDGET) -> "ScalarVolume":
        """
        Open a volume directory described by ``meta.json``.

        The metadata carries ``slices``, ``width``, ``height`` and
        ``voxelsize``. Slices are read from the directory's TIFF files, or from
        a zarr store when ``format`` is ``"zarr"`` (path in ``zarr``, default
        ``volume.zarr``).

        Args:
            path: Volume directory
            cache_budget: Maximum bytes of decoded planes to keep resident

        Returns:
            The opened ScalarVolume
        """
        path = pathlib.Path(path)
        with open(path / "meta.json", "r") as f:
            meta = json.load(f)

        if meta.get("format", "tif") == "zarr":
            store = open_zarr_slices(path / meta.get("zarr", "volume.zarr"))
        else:
            store = TiffSliceStore(path)

        expected = (meta.get("slices"), meta.get("height"), meta.get("width"))
        actual = (store.num_slices, store.height, store.width)
        if any(e is not None and e != a for e, a in zip(expected, actual)):
            raise ValueError(f"Volume {path} metadata shape {expected} does not match slices {actual}")

        logger.info(f"Opened volume {path} with {store.num_slices} slices of {store.width}x{store.height}")
        return cls(
            store,
            voxel_size=meta.get("voxelsize", 1.0),
            cache_budget=cache_budget,
            name=meta.get("name", path.name),
        )

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Data shape in [z, y, x] order."""
        return (self.num_slices, self.height, self.width)

    def contains(self, x: float, y: float, z: float) -> bool:
        """Check whether a point lies inside the sampling domain."""
        return (
            0 <= x < self.width and
            0 <= y < self.height and
            0 <= z < self.num_slices
        )

    def contains_points(self, points: np.ndarray) -> np.ndarray:
        """Vectorised :meth:`contains` over an (..., 3) array."""
        points = np.asarray(points, dtype=np.float64)
        x, y, z = points[..., 0], points[..., 1], points[..., 2]
        return (
            (x >= 0) & (x < self.width) &
            (y >= 0) & (y < self.height) &
            (z >= 0) & (z < self.num_slices)
        )

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= self.num_slices:
            raise IndexOutOfRange(f"Slice index {index} outside [0, {self.num_slices})")

    @contextlib.contextmanager
    def pinned(self, indices: Iterable[int]) -> Iterator[List[np.ndarray]]:
        """
        Load and pin slice planes for the duration of a read.

        Pins are released on every exit path, including exceptions raised
        while loading a later index.

        Args:
            indices: Slice indices to hold resident

        Yields:
            Planes in the order of ``indices``
        """
        acquired: List[int] = []
        planes: List[np.ndarray] = []
        try:
            for index in indices:
                self._check_index(index)
                planes.append(self.cache.acquire(index, self.store.load_slice))
                acquired.append(index)
            yield planes
        finally:
            for index in acquired:
                self.cache.release(index)

    def get_slice(self, index: int) -> np.ndarray:
        """
        Get the decoded plane for a slice.

        Args:
            index: Slice index

        Returns:
            Read-only plane indexed as plane[y, x]
        """
        with self.pinned([index]) as planes:
            return planes[0]

    def set_cache_budget(self, nbytes: int) -> None:
        """Adjust the cache memory ceiling, evicting if over budget."""
        self.cache.set_budget(nbytes)
        logger.debug(f"Cache budget set to {nbytes} bytes")

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()

    def get_voxel(self, x: int, y: int, z: int) -> float:
        """Exact intensity at an integer voxel, ``fill_value`` outside."""
        if not self.contains(x, y, z):
            return self.fill_value
        with self.pinned([int(z)]) as planes:
            return float(planes[0][int(y), int(x)])

    def sample(self, x: float, y: float, z: float) -> float:
        """
        Trilinearly interpolated intensity at a real-valued point.

        The eight surrounding voxels are weighted by the product of distances;
        the upper corner is clamped to the last index along each axis so the
        whole half-open domain is valid.

        Args:
            x: X coordinate
            y: Y coordinate
            z: Z coordinate (slice)

        Returns:
            Interpolated intensity, or ``fill_value`` outside the volume
        """
        if not self.contains(x, y, z):
            return self.fill_value

        x0, y0, z0 = int(math.floor(x)), int(math.floor(y)), int(math.floor(z))
        x1 = min(x0 + 1, self.width - 1)
        y1 = min(y0 + 1, self.height - 1)
        z1 = min(z0 + 1, self.num_slices - 1)
        fx, fy, fz = x - x0, y - y0, z - z0

        indices = (z0,) if z1 == z0 else (z0, z1)
        with self.pinned(indices) as planes:
            p0, p1 = planes[0], planes[-1]

            c000 = float(p0[y0, x0])
            c001 = float(p0[y0, x1])
            c010 = float(p0[y1, x0])
            c011 = float(p0[y1, x1])
            c100 = float(p1[y0, x0])
            c101 = float(p1[y0, x1])
            c110 = float(p1[y1, x0])
            c111 = float(p1[y1, x1])

        c00 = c000 * (1 - fx) + c001 * fx
        c01 = c010 * (1 - fx) + c011 * fx
        c10 = c100 * (1 - fx) + c101 * fx
        c11 = c110 * (1 - fx) + c111 * fx

        c0 = c00 * (1 - fy) + c01 * fy
        c1 = c10 * (1 - fy) + c11 * fy

        return c0 * (1 - fz) + c1 * fz

    def sample_points(self, points: np.ndarray) -> np.ndarray:
        """
        Vectorised :meth:`sample` over an (..., 3) array of XYZ points.

        Points are grouped by their lower Z plane so at most two planes are
        pinned at any time.

        Args:
            points: Array of shape (..., 3)

        Returns:
            Array of shape (...) with interpolated intensities
        """
        points = np.asarray(points, dtype=np.float64)
        if points.shape[-1] != 3:
            raise ValueError(f"Expected points with shape [..., 3], got {points.shape}")

        out_shape = points.shape[:-1]
        flat = points.reshape(-1, 3)
        out = np.full(flat.shape[0], self.fill_value, dtype=np.float64)

        inside = np.nonzero(self.contains_points(flat))[0]
        if inside.size == 0:
            return out.reshape(out_shape)

        x, y, z = flat[inside, 0], flat[inside, 1], flat[inside, 2]
        x0 = np.floor(x).astype(np.int64)
        y0 = np.floor(y).astype(np.int64)
        z0 = np.floor(z).astype(np.int64)
        x1 = np.minimum(x0 + 1, self.width - 1)
        y1 = np.minimum(y0 + 1, self.height - 1)
        fx, fy, fz = x - x0, y - y0, z - z0

        for z_low in np.unique(z0):
            sel = z0 == z_low
            z_high = min(int(z_low) + 1, self.num_slices - 1)
            indices = (int(z_low),) if z_high == z_low else (int(z_low), z_high)

            sx0, sx1, sy0, sy1 = x0[sel], x1[sel], y0[sel], y1[sel]
            sfx, sfy, sfz = fx[sel], fy[sel], fz[sel]

            with self.pinned(indices) as planes:
                p0, p1 = planes[0], planes[-1]
                c000 = p0[sy0, sx0].astype(np.float64)
                c001 = p0[sy0, sx1].astype(np.float64)
                c010 = p0[sy1, sx0].astype(np.float64)
                c011 = p0[sy1, sx1].astype(np.float64)
                c100 = p1[sy0, sx0].astype(np.float64)
                c101 = p1[sy0, sx1].astype(np.float64)
                c110 = p1[sy1, sx0].astype(np.float64)
                c111 = p1[sy1, sx1].astype(np.float64)

            c00 = c000 * (1 - sfx) + c001 * sfx
            c01 = c010 * (1 - sfx) + c011 * sfx
            c10 = c100 * (1 - sfx) + c101 * sfx
            c11 = c110 * (1 - sfx) + c111 * sfx

            c0 = c00 * (1 - sfy) + c01 * sfy
            c1 = c10 * (1 - sfy) + c11 * sfy

            out[inside[sel]] = c0 * (1 - sfz) + c1 * sfz

        return out.reshape(out_shape)

    def get_subvolume(
        self,
        start_z: int,
        start_y: int,
        start_x: int,
        size_z: int,
        size_y: int,
        size_x: int
    ) -> np.ndarray:
        """
        Get a 3D block of raw voxels, padded with ``fill_value`` outside.

        Args:
            start_z: Start Z coordinate
            start_y: Start Y coordinate
            start_x: Start X coordinate
            size_z: Size in Z dimension
            size_y: Size in Y dimension
            size_x: Size in X dimension

        Returns:
            Float array indexed as block[z, y, x]
        """
        output = np.full((size_z, size_y, size_x), self.fill_value, dtype=np.float64)

        min_z, max_z = max(0, start_z), min(self.num_slices, start_z + size_z)
        min_y, max_y = max(0, start_y), min(self.height, start_y + size_y)
        min_x, max_x = max(0, start_x), min(self.width, start_x + size_x)
        if min_z >= max_z or min_y >= max_y or min_x >= max_x:
            return output

        for z in range(min_z, max_z):
            with self.pinned([z]) as planes:
                output[z - start_z, min_y - start_y:max_y - start_y, min_x - start_x:max_x - start_x] = \
                    planes[0][min_y:max_y, min_x:max_x]

        return output
