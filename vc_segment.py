#!/usr/bin/env python3
"""
Propagate a traced segmentation through a volume package.

The starting chain is the row of the segmentation's point set on the start
slice (default: its highest Z). Rows below the start slice are kept as they
are; the propagated rows replace everything from the start slice on.

Usage:
    vc_segment.py --volpkg <dir> --seg-id <id> (--end-index N | --stride N) [options]
"""

import os
import sys
import json
import math
import logging
import argparse
from pathlib import Path
from typing import List, Optional

import numpy as np
import matplotlib.pyplot as plt
from tqdm import tqdm

from lrps import PropagationConfig, PropagationError, ChainWidthMismatch
from lrps.engine import PropagationEngine, target_z_from
from surfaces import OrderedPointSet, SegmentationStore
from surfaces.visualization import save_reslice_figure, visualize_point_set

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DEFAULT_START_INDEX = -1
SIZE_SUFFIXES = {"K": 1 << 10, "M": 1 << 20, "G": 1 << 30, "T": 1 << 40}


def parse_size(value: str) -> int:
    """Parse a byte count such as ``1000000``, ``512M`` or ``2G``."""
    value = value.strip().upper()
    if value and value[-1] == "B":
        value = value[:-1]
    scale = 1
    if value and value[-1] in SIZE_SUFFIXES:
        scale = SIZE_SUFFIXES[value[-1]]
        value = value[:-1]
    try:
        return int(float(value) * scale)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid size: '{value}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Propagate a segmentation chain through a volume.")

    required = parser.add_argument_group("General")
    required.add_argument("--volpkg", "-v", required=True, help="VolumePkg path")
    required.add_argument("--seg-id", "-s", required=True, help="Segmentation ID")
    required.add_argument("--method", "-m", default="LRPS", help="Segmentation method: LRPS")
    required.add_argument("--volume", default=None,
                          help="Volume to segment. Default: the segmentation's volume or the first volume")
    required.add_argument("--start-index", type=int, default=DEFAULT_START_INDEX,
                          help="Starting slice index. Default: highest z-index in the segmentation")
    target = required.add_mutually_exclusive_group(required=True)
    target.add_argument("--end-index", type=int, help="Ending slice index. Mutually exclusive with --stride")
    target.add_argument("--stride", type=int,
                        help="Number of slices to propagate through relative to the starting slice index")
    required.add_argument("--step-size", type=int, default=None, help="Z distance travelled per iteration")
    required.add_argument("--cache-memory", type=parse_size, default=None,
                          help="Slice cache budget in bytes, suffixes K/M/G accepted")
    required.add_argument("--num-workers", type=int, default=None, help="Threads used within each step")
    required.add_argument("--params", type=Path, default=None,
                          help="JSON file with propagation parameters; command line options take precedence")

    lrps = parser.add_argument_group("Local Reslice Particle Sim Options")
    lrps.add_argument("--num-iters", "-n", type=int, default=None, help="Number of optimization iterations")
    lrps.add_argument("--reslice-size", "-r", type=int, default=None, help="Size of reslice window")
    lrps.add_argument("--alpha", "-a", type=float, default=None, help="Coefficient for internal energy metric")
    lrps.add_argument("--k1", type=float, default=None,
                      help="Coefficient for first derivative term in internal energy metric")
    lrps.add_argument("--k2", type=float, default=None,
                      help="Coefficient for second derivative term in internal energy metric")
    lrps.add_argument("--beta", "-b", type=float, default=None, help="Coefficient for curve tension energy metric")
    lrps.add_argument("--delta", "-d", type=float, default=None, help="Coefficient for curve curvature energy metric")
    lrps.add_argument("--distance-weight", type=float, default=None,
                      help="Weighting for distance vs maxima intensity")
    lrps.add_argument("--consider-previous", "-p", action="store_true", default=None,
                      help="Consider propagation of a point's previous XY position as a candidate")
    lrps.add_argument("--use-structure-tensor", action="store_true", default=None,
                      help="Steer reslices by the local structure tensor")
    lrps.add_argument("--visualize", action="store_true", help="Display the propagated surface when done")
    lrps.add_argument("--dump-vis", action="store_true",
                      help="Write every reslice with its candidates to the segmentation's vis/ directory")
    return parser


def starting_chain(master: OrderedPointSet, start_index: int):
    """
    Split a point set at the start slice.

    Returns:
        (immutable prefix, starting chain with sentinel points removed)
    """
    min_index = int(math.floor(master.min_z()))
    row_index = start_index - min_index
    if not 0 <= row_index < master.height:
        raise PropagationError(
            f"Start index {start_index} outside the segmentation's slices [{min_index}, {min_index + master.height})"
        )

    if row_index > 0:
        immutable = master.copy_rows(0, row_index)
    else:
        immutable = OrderedPointSet(master.width)

    row = master.get_row(row_index)
    chain = row[row[:, 2] != -1]
    if len(chain) != master.width:
        logger.error("Consider using a lower starting index value.")
        raise ChainWidthMismatch(master.width, len(chain))
    return immutable, chain


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    method = args.method.lower()
    logger.info(f"Segmentation method: {method}")
    if method != "lrps":
        logger.error("[error]: Unknown algorithm type. Must be one of ['LRPS']")
        return 1

    try:
        store = SegmentationStore(args.volpkg)
        volume_id = args.volume or store.segmentation_volume_id(args.seg_id)
        volume = store.volume(volume_id)
        master = store.get_point_set(args.seg_id)

        start_index = args.start_index
        if start_index == DEFAULT_START_INDEX:
            start_index = int(math.floor(master.max_z()))
            logger.info(f"No starting index given, defaulting to Highest-Z: {start_index}")

        target_z = target_z_from(start_index, args.end_index, args.stride)
        if target_z >= volume.num_slices:
            logger.warning(f"Target {target_z} is beyond the last slice {volume.num_slices - 1}")

        immutable, chain = starting_chain(master, start_index)

        params = {}
        if args.params is not None:
            with open(args.params, 'r') as f:
                params = json.load(f)

        config = PropagationConfig.from_dict(
            params,
            chain_width=master.width,
            step_size=args.step_size,
            optimization_iterations=args.num_iters,
            reslice_size=args.reslice_size,
            alpha=args.alpha,
            k1=args.k1,
            k2=args.k2,
            beta=args.beta,
            delta=args.delta,
            distance_weight_factor=args.distance_weight,
            consider_previous=args.consider_previous,
            use_structure_tensor=args.use_structure_tensor,
            material_thickness=params.get("material_thickness", store.material_thickness),
            cache_budget=args.cache_memory,
            num_workers=args.num_workers,
        )
    except (PropagationError, ValueError, FileNotFoundError) as e:
        logger.error(f"[error]: {e}")
        return 1

    reslice_callback = None
    if args.dump_vis:
        vis_dir = store.root / "paths" / args.seg_id / "vis"
        os.makedirs(vis_dir, exist_ok=True)

        def reslice_callback(z, particle, reslice, profile_row, candidates):
            center_col, _ = reslice.center
            columns = [offset + center_col for _, offset in candidates]
            save_reslice_figure(
                vis_dir / f"z{z:05d}_p{particle:04d}.png",
                reslice.image,
                profile_row,
                columns,
                title=f"z={z} particle={particle}",
            )

    try:
        with tqdm(total=math.ceil((target_z - start_index) / config.step_size), desc="Propagating") as pbar:
            engine = PropagationEngine(
                volume,
                config,
                np.asarray(chain),
                target_z,
                start_z=start_index,
                progress_callback=lambda step, total: pbar.update(1),
                reslice_callback=reslice_callback,
            )
            result = engine.compute()
    except PropagationError as e:
        logger.error(f"[error]: {e}")
        return 1

    if result.exhausted:
        logger.warning(f"Propagation stopped after {result.steps_taken} steps: no valid particles left")
    logger.info(f"Propagated {result.steps_taken} steps, {result.sentinel_count} particles lost")

    # Prefix rows stay untouched; the result starts with the seed row
    immutable.append(result.point_set)
    store.set_point_set(args.seg_id, immutable)

    if args.visualize:
        visualize_point_set(immutable, title=args.seg_id)
        plt.show()

    return 0


if __name__ == "__main__":
    sys.exit(main())
