"""SegmentationStore class for reading and writing volume packages."""

import os
import json
import logging
import pathlib
from typing import Any, Dict, List, Optional, Union

from volumes.scalar_volume import DEFAULT_CACHE_BUDGET, ScalarVolume
from .ordered_point_set import NumpyJSONEncoder, OrderedPointSet, load_point_set


logger = logging.getLogger(__name__)


class SegmentationStore:
    """
    A volume package on disk.

    Layout::

        <root>/config.json          package metadata (materialthickness, voxelsize, ...)
        <root>/volumes/<id>/        one directory per volume, see ScalarVolume.open
        <root>/paths/<seg-id>/      one tifxyz point set per segmentation

    A segmentation's ``meta.json`` may name the volume it was traced on under
    the ``volume`` key.
    """

    def __init__(self, root: Union[str, pathlib.Path], cache_budget: int = DEFAULT_CACHE_BUDGET):
        """
        Open an existing volume package.

        Args:
            root: Package directory
            cache_budget: Slice cache budget for volumes opened from the package
        """
        self.root = pathlib.Path(root)
        config_path = self.root / "config.json"
        if not config_path.exists():
            raise FileNotFoundError(f"No config.json in volume package {self.root}")

        with open(config_path, 'r') as f:
            self.config: Dict[str, Any] = json.load(f)

        self.cache_budget = cache_budget
        self._volumes: Dict[str, ScalarVolume] = {}

    @classmethod
    def create(
        cls,
        root: Union[str, pathlib.Path],
        material_thickness: float,
        voxel_size: float = 1.0,
        name: Optional[str] = None
    ) -> "SegmentationStore":
        """Create an empty volume package and open it."""
        root = pathlib.Path(root)
        os.makedirs(root / "volumes", exist_ok=True)
        os.makedirs(root / "paths", exist_ok=True)

        config = {
            "name": name or root.name,
            "materialthickness": material_thickness,
            "voxelsize": voxel_size,
        }
        with open(root / "config.json", 'w') as f:
            json.dump(config, f, indent=4, cls=NumpyJSONEncoder)
        return cls(root)

    @property
    def material_thickness(self) -> Optional[float]:
        """Sheet thickness in physical units, if the package records one."""
        value = self.config.get("materialthickness")
        return float(value) if value is not None else None

    @property
    def voxel_size(self) -> float:
        return float(self.config.get("voxelsize", 1.0))

    def volume_ids(self) -> List[str]:
        volumes_dir = self.root / "volumes"
        if not volumes_dir.exists():
            return []
        return sorted(p.name for p in volumes_dir.iterdir() if (p / "meta.json").exists())

    def volume(self, volume_id: Optional[str] = None) -> ScalarVolume:
        """
        Open a volume of the package, the first one if no id is given.

        Volumes are opened once and shared between callers.
        """
        if volume_id is None:
            ids = self.volume_ids()
            if not ids:
                raise FileNotFoundError(f"Volume package {self.root} has no volumes")
            volume_id = ids[0]

        if volume_id not in self._volumes:
            path = self.root / "volumes" / volume_id
            if not (path / "meta.json").exists():
                raise FileNotFoundError(f"Volume '{volume_id}' not found in {self.root}")
            self._volumes[volume_id] = ScalarVolume.open(path, cache_budget=self.cache_budget)
        return self._volumes[volume_id]

    def segmentation_ids(self) -> List[str]:
        paths_dir = self.root / "paths"
        if not paths_dir.exists():
            return []
        return sorted(p.name for p in paths_dir.iterdir() if p.is_dir())

    def _segmentation_path(self, seg_id: str) -> pathlib.Path:
        return self.root / "paths" / seg_id

    def new_segmentation(self, seg_id: str, volume_id: Optional[str] = None) -> pathlib.Path:
        """Create the directory of a new, empty segmentation."""
        path = self._segmentation_path(seg_id)
        if path.exists():
            raise FileExistsError(f"Segmentation '{seg_id}' already exists in {self.root}")
        os.makedirs(path)

        meta = {"uuid": seg_id, "type": "seg"}
        if volume_id is not None:
            meta["volume"] = volume_id
        with open(path / "meta.json", 'w') as f:
            json.dump(meta, f, indent=4)
        return path

    def segmentation_volume_id(self, seg_id: str) -> Optional[str]:
        meta_path = self._segmentation_path(seg_id) / "meta.json"
        if not meta_path.exists():
            return None
        with open(meta_path, 'r') as f:
            return json.load(f).get("volume")

    def get_point_set(self, seg_id: str) -> OrderedPointSet:
        path = self._segmentation_path(seg_id)
        if not (path / "x.tif").exists():
            raise FileNotFoundError(f"Segmentation '{seg_id}' has no point set")
        return load_point_set(path)

    def set_point_set(self, seg_id: str, point_set: OrderedPointSet) -> None:
        """Write a segmentation's point set, keeping its existing metadata."""
        path = self._segmentation_path(seg_id)
        meta_path = path / "meta.json"
        if meta_path.exists():
            with open(meta_path, 'r') as f:
                existing = json.load(f)
            point_set.meta = {**existing, **point_set.meta}

        point_set.save(path, uuid=seg_id)
        logger.info(f"Saved segmentation '{seg_id}' with {point_set.height} rows of {point_set.width} points")
