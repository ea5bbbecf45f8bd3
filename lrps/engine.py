"""
Local reslice particle propagation.

A chain of particles traced on one slice is pushed through the following
slices one step at a time. For every particle a small reslice is cut through
the volume, spanned by the in-plane normal of the chain and the +Z axis; the
intensity maxima of the reslice row ``lookahead_depth`` pixels ahead are the
particle's candidate positions on the next Z level. A few rounds of Jacobi
relaxation then pick, per particle, the candidate with the lowest energy
given the frozen positions of its neighbours.

Coordinate Convention:
- 3D points are in XYZ order [x, y, z] with 0=x, 1=y, 2=z
- Propagation always runs towards increasing Z
"""

import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from lrps.chain import SENTINEL_Z, Chain, adjacent_valid
from lrps.config import PropagationConfig
from lrps.energy import total_energy
from lrps.errors import ChainWidthMismatch, InsufficientData, InvalidTarget, NoCandidateFound
from lrps.intensity_profile import find_maxima, rank_by_proximity
from surfaces.ordered_point_set import OrderedPointSet
from volumes.reslice import Reslice, ResliceSampler
from volumes.scalar_volume import VolumeProtocol
from volumes.structure_tensor import StructureEstimator


logger = logging.getLogger(__name__)

# Projected structure-tensor normals shorter than this are mostly along Z
MIN_PROJECTED_NORMAL = 0.5

Z_AXIS = np.array([0.0, 0.0, 1.0])

# (position, column offset from the reslice centre)
Candidate = Tuple[np.ndarray, int]


@dataclass
class PropagationResult:
    """
    Outcome of a propagation run.

    Attributes:
        point_set: Seed row followed by one row per completed step
        steps_taken: Number of completed steps
        cancelled: The run was cancelled between steps
        exhausted: Every particle became sentinel, so the run stopped early
        sentinel_count: Sentinel particles in the last row
    """

    point_set: OrderedPointSet
    steps_taken: int
    cancelled: bool = False
    exhausted: bool = False
    sentinel_count: int = 0


def target_z_from(start_index: int, end_index: Optional[int] = None, stride: Optional[int] = None) -> int:
    """
    Resolve the target slice from an end index or a stride.

    Args:
        start_index: Slice the propagation starts on
        end_index: Absolute target slice
        stride: Number of slices to advance

    Returns:
        Target slice

    Raises:
        ValueError: Neither or both of ``end_index`` and ``stride`` given
        InvalidTarget: Target is not after the start
    """
    if (end_index is None) == (stride is None):
        raise ValueError("Exactly one of end_index and stride is required")

    target = end_index if end_index is not None else start_index + stride
    if target <= start_index:
        raise InvalidTarget(f"Start index {start_index} is not before end index {target}")
    return int(target)


class PropagationEngine:
    """
    Step/round state machine propagating one chain towards ``target_z``.

    Preconditions are checked at construction, so a constructed engine is
    always able to take at least one step.
    """

    def __init__(
        self,
        volume: VolumeProtocol,
        config: PropagationConfig,
        chain: Union[Chain, np.ndarray, Sequence],
        target_z: int,
        start_z: Optional[int] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        reslice_callback: Optional[Callable[[int, int, Reslice, int, List[Candidate]], None]] = None,
        structure_estimator: Optional[StructureEstimator] = None
    ):
        """
        Initialize a PropagationEngine.

        Args:
            volume: Volume to sample
            config: Validated propagation parameters
            chain: Starting particles, XYZ, length ``config.chain_width``
            target_z: Slice to propagate to
            start_z: Starting slice; defaults to the chain's Z level
            progress_callback: Called as (steps_done, total_steps) after each step
            reslice_callback: Called as (z, particle, reslice, profile_row,
                candidates) for every reslice cut, for debugging output
            structure_estimator: Estimator to use when ``config.use_structure_tensor``
                is set; built from the volume if omitted

        Raises:
            ChainWidthMismatch: Chain length differs from ``config.chain_width``
            InsufficientData: Fewer than two valid particles, or nothing to
                propagate into from the start slice
            InvalidTarget: ``target_z`` is not after the start slice
        """
        if not isinstance(chain, Chain):
            chain = Chain(chain)
        if chain.width != config.chain_width:
            raise ChainWidthMismatch(config.chain_width, chain.width)
        if chain.valid_count() < 2:
            raise InsufficientData(f"Starting chain has {chain.valid_count()} valid particles, need at least 2")

        if start_z is None:
            start_z = chain.z_level()
        start_z = int(start_z)
        if not 0 <= start_z < volume.num_slices - 1:
            raise InsufficientData(
                f"Start slice {start_z} leaves nothing to propagate into a volume of {volume.num_slices} slices"
            )
        if target_z <= start_z:
            raise InvalidTarget(f"Start index {start_z} is not before target {target_z}")

        self.volume = volume
        self.config = config
        self.chain = chain
        self.start_z = start_z
        self.target_z = int(target_z)
        self.current_z = start_z
        self.progress_callback = progress_callback
        self.reslice_callback = reslice_callback

        if config.cache_budget is not None:
            volume.set_cache_budget(config.cache_budget)

        self.sampler = ResliceSampler(volume)
        self.estimator = None
        if config.use_structure_tensor:
            self.estimator = structure_estimator or StructureEstimator(volume)
        self._tensor_radius = config.tensor_radius(getattr(volume, "voxel_size", 1.0))

        self.accumulated_surface = OrderedPointSet(chain.width)
        self.accumulated_surface.append_row(chain.positions)

        self._normals: Dict[int, np.ndarray] = {}
        self._cancel_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self.steps_taken = 0

    def num_steps(self) -> int:
        """Total steps of a complete run."""
        return math.ceil((self.target_z - self.start_z) / self.config.step_size)

    def cancel(self) -> None:
        """Request the run to stop before its next step."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _map(self, func, items):
        # Results come back in input order either way
        if self._executor is None:
            return [func(item) for item in items]
        return list(self._executor.map(func, items))

    def _particle_normal(self, chain: Chain, index: int) -> np.ndarray:
        """In-plane unit normal of the chain at a particle, XYZ with z == 0."""
        secant_normal = chain.normal(index)
        normal = None

        if self.estimator is not None:
            x, y, z = chain[index]
            estimate = self.estimator.surface_normal(x, y, z, self._tensor_radius)
            if estimate is not None:
                projected = np.array([estimate[0], estimate[1], 0.0])
                length = np.linalg.norm(projected)
                if length > MIN_PROJECTED_NORMAL:
                    normal = projected / length
                    # Eigenvectors have no sign; keep the chain's orientation
                    reference = secant_normal if secant_normal is not None else self._normals.get(index)
                    if reference is not None and np.dot(normal, reference) < 0:
                        normal = -normal

        if normal is None:
            normal = secant_normal
        if normal is None:
            normal = self._normals.get(index)
        if normal is None:
            raise NoCandidateFound(index, "no in-plane direction available")
        return normal

    def _candidates(self, chain: Chain, index: int, new_z: int, depth: int) -> List[Candidate]:
        """
        Candidate positions of one particle on the next Z level.

        The profile is read ``depth`` reslice rows ahead of the particle.

        Raises:
            NoCandidateFound: The particle has nowhere valid to go
        """
        position = chain[index]
        normal = self._particle_normal(chain, index)
        self._normals[index] = normal

        size = self.config.reslice_size
        reslice = self.sampler.reslice_centered(position, normal, Z_AXIS, size, size)
        if reslice.in_bounds == 0.0:
            raise NoCandidateFound(index, "reslice lies outside the volume")

        center_col, center_row = reslice.center
        row = center_row + depth
        maxima = find_maxima(reslice.row(row), self.config.max_candidates)

        candidates: List[Candidate] = []
        for col, _ in rank_by_proximity(maxima, center_col):
            point = reslice.slice_to_voxel(col, row)
            point[2] = new_z
            if self.volume.contains(*point):
                candidates.append((point, col - center_col))

        if self.config.consider_previous:
            continuation = position.copy()
            continuation[2] = new_z
            if self.volume.contains(*continuation):
                candidates.append((continuation, 0))

        if self.reslice_callback is not None:
            self.reslice_callback(new_z, index, reslice, row, candidates)

        if not candidates:
            raise NoCandidateFound(index, "no intensity maxima ahead")
        return candidates

    def _safe_candidates(self, chain: Chain, index: int, new_z: int, depth: int) -> List[Candidate]:
        if not chain.is_valid(index):
            return []
        try:
            return self._candidates(chain, index, new_z, depth)
        except NoCandidateFound as e:
            logger.debug(f"z={new_z}: {e}")
            return []

    def _select(
        self,
        index: int,
        candidates: List[Candidate],
        positions: np.ndarray,
        rest_length: float
    ) -> int:
        """Index of the lowest-energy candidate; ties keep the better-ranked one."""
        left_index, right_index = adjacent_valid(positions, index)
        left = positions[left_index] if left_index is not None else None
        right = positions[right_index] if right_index is not None else None
        half_width = self.config.reslice_size / 2.0

        best, best_energy = 0, math.inf
        for i, (point, offset) in enumerate(candidates):
            energy = total_energy(point, left, right, offset, rest_length, half_width, self.config)
            if energy < best_energy:
                best, best_energy = i, energy
        return best

    def step(self) -> np.ndarray:
        """
        Advance the chain by one step.

        Returns:
            The row appended to the accumulated surface
        """
        step_size = self.config.step_size
        if self.current_z < self.target_z:
            # The last step stops on the target instead of overshooting it
            step_size = min(step_size, self.target_z - self.current_z)
        new_z = self.current_z + step_size
        depth = min(self.config.lookahead_depth, step_size)
        chain = self.chain
        rest_length = chain.mean_spacing()

        candidate_sets = self._map(lambda i: self._safe_candidates(chain, i, new_z, depth), range(chain.width))

        positions = chain.positions
        choice = np.zeros(chain.width, dtype=np.int64)
        for i, candidates in enumerate(candidate_sets):
            if candidates:
                positions[i] = candidates[0][0]
            else:
                # Failed particles keep x/y so the grid stays readable
                positions[i, 2] = SENTINEL_Z

        active = [i for i, candidates in enumerate(candidate_sets) if len(candidates) > 1]
        rounds = 0
        for rounds in range(1, self.config.optimization_iterations + 1):
            frozen = positions.copy()
            picks = self._map(lambda i: self._select(i, candidate_sets[i], frozen, rest_length), active)

            changed = False
            for i, pick in zip(active, picks):
                if pick != choice[i]:
                    choice[i] = pick
                    positions[i] = candidate_sets[i][pick][0]
                    changed = True
            if not changed:
                break

        chain.update(positions)
        self.accumulated_surface.append_row(positions)
        self.current_z = new_z
        self.steps_taken += 1

        sentinels = chain.width - chain.valid_count()
        logger.info(f"Step {self.steps_taken}/{self.num_steps()}: z={new_z}, {rounds} rounds, {sentinels} sentinel particles")
        return positions

    def compute(self) -> PropagationResult:
        """
        Run steps until the target slice is reached, the run is cancelled,
        or no valid particle is left.
        """
        total = self.num_steps()
        exhausted = False

        if self.config.num_workers > 1:
            self._executor = ThreadPoolExecutor(max_workers=self.config.num_workers)
        try:
            while self.current_z < self.target_z:
                if self.cancelled:
                    logger.info(f"Propagation cancelled at z={self.current_z} after {self.steps_taken} steps")
                    break
                self.step()
                if self.progress_callback is not None:
                    self.progress_callback(self.steps_taken, total)
                if self.chain.valid_count() == 0:
                    logger.warning(f"All particles lost at z={self.current_z}, stopping early")
                    exhausted = True
                    break
        finally:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

        return PropagationResult(
            point_set=OrderedPointSet(self.chain.width, self.accumulated_surface.points),
            steps_taken=self.steps_taken,
            cancelled=self.cancelled and self.current_z < self.target_z and not exhausted,
            exhausted=exhausted,
            sentinel_count=self.chain.width - self.chain.valid_count(),
        )

    def submit(self, executor: Optional[ThreadPoolExecutor] = None) -> Future:
        """
        Run :meth:`compute` on a background worker.

        Args:
            executor: Executor to use; a single-thread executor is created
                and shut down after the run if omitted

        Returns:
            Future resolving to the PropagationResult
        """
        if executor is not None:
            return executor.submit(self.compute)

        own_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="lrps")
        future = own_executor.submit(self.compute)
        own_executor.shutdown(wait=False)
        return future
