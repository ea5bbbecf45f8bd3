"""Volume access for Volume Cartographer segmentation: slice stores, cached sampling, reslicing."""
from .slice_store import SliceStore, ArraySliceStore, ZarrSliceStore, TiffSliceStore, open_zarr_slices
from .scalar_volume import CacheEntry, SliceCache, ScalarVolume, VolumeProtocol, DEFAULT_CACHE_BUDGET
from .reslice import Reslice, ResliceSampler
from .structure_tensor import StructureEstimator, principal_directions
