"""Point sets, volume packages and debug plots for Volume Cartographer segmentation."""
from .ordered_point_set import OrderedPointSet, NumpyJSONEncoder, load_point_set, SENTINEL_Z
from .segmentation_store import SegmentationStore
from .visualization import visualize_reslice, visualize_profile, visualize_point_set, save_reslice_figure
