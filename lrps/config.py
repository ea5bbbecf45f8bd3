"""Configuration for local reslice particle propagation."""

import dataclasses
import json
import logging
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union


logger = logging.getLogger(__name__)

# Keys accepted in JSON params files besides the field names themselves
PARAM_ALIASES = {
    "num_iters": "optimization_iterations",
    "distance_weight": "distance_weight_factor",
    "peak_distance_weight": "distance_weight_factor",
    "cache_memory": "cache_budget",
    "cache_size": "cache_budget",
}

NON_NEGATIVE_FIELDS = ("alpha", "k1", "k2", "beta", "delta", "distance_weight_factor")


@dataclass
class PropagationConfig:
    """
    Parameters of one propagation run, validated at construction.

    Attributes:
        chain_width: Number of particles the starting chain must carry
        step_size: Slices advanced per step
        optimization_iterations: Maximum relaxation rounds per step
        alpha: Global weight of the internal (bending) energy
        k1: Weight of the first-derivative term inside the internal energy
        k2: Weight of the second-derivative term inside the internal energy
        beta: Weight of the inter-particle tension energy
        delta: Weight of the curvature energy
        distance_weight_factor: Weight of the distance-to-continuation penalty
        consider_previous: Offer each particle its unmoved position as a candidate
        reslice_size: Width and height of the per-particle reslice window
        lookahead_depth: Reslice rows ahead of the particle to read the
            profile from; defaults to ``step_size``
        max_candidates: Maxima kept per particle and step
        use_structure_tensor: Steer reslices by the local structure tensor
        structure_tensor_radius: Neighbourhood radius for the tensor;
            derived from ``material_thickness`` when unset
        material_thickness: Sheet thickness in physical units
        cache_budget: Slice cache ceiling in bytes, applied to the volume
        num_workers: Threads used for per-particle work within a step
    """

    chain_width: int
    step_size: int = 1
    optimization_iterations: int = 15
    alpha: float = 1.0 / 3.0
    k1: float = 0.5
    k2: float = 0.5
    beta: float = 1.0 / 3.0
    delta: float = 1.0 / 3.0
    distance_weight_factor: float = 50.0
    consider_previous: bool = False
    reslice_size: int = 32
    lookahead_depth: Optional[int] = None
    max_candidates: int = 4
    use_structure_tensor: bool = False
    structure_tensor_radius: Optional[int] = None
    material_thickness: Optional[float] = None
    cache_budget: Optional[int] = None
    num_workers: int = 1

    def __post_init__(self):
        if self.chain_width <= 0:
            raise ValueError(f"chain_width must be positive, got {self.chain_width}")
        if self.step_size <= 0:
            raise ValueError(f"step_size must be positive, got {self.step_size}")
        if self.optimization_iterations < 0:
            raise ValueError(f"optimization_iterations must be non-negative, got {self.optimization_iterations}")

        for name in NON_NEGATIVE_FIELDS:
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")

        if self.reslice_size < 3:
            raise ValueError(f"reslice_size must be at least 3, got {self.reslice_size}")

        if self.lookahead_depth is None:
            self.lookahead_depth = self.step_size
        rows_ahead = self.reslice_size - self.reslice_size // 2 - 1
        if not 0 < self.lookahead_depth <= rows_ahead:
            raise ValueError(
                f"lookahead_depth must be in [1, {rows_ahead}] for reslice_size "
                f"{self.reslice_size}, got {self.lookahead_depth}"
            )

        if self.max_candidates <= 0:
            raise ValueError(f"max_candidates must be positive, got {self.max_candidates}")
        if self.structure_tensor_radius is not None and self.structure_tensor_radius < 1:
            raise ValueError(f"structure_tensor_radius must be at least 1, got {self.structure_tensor_radius}")
        if self.material_thickness is not None and self.material_thickness <= 0:
            raise ValueError(f"material_thickness must be positive, got {self.material_thickness}")
        if self.cache_budget is not None and self.cache_budget < 0:
            raise ValueError(f"cache_budget must be non-negative, got {self.cache_budget}")
        if self.num_workers <= 0:
            raise ValueError(f"num_workers must be positive, got {self.num_workers}")

    def tensor_radius(self, voxel_size: float = 1.0) -> int:
        """
        Neighbourhood radius for structure tensors.

        Uses the explicit radius when set, otherwise half the material
        thickness in voxels (at least 1).
        """
        if self.structure_tensor_radius is not None:
            return self.structure_tensor_radius
        if self.material_thickness is None:
            return 1
        return max(1, int(round(self.material_thickness / voxel_size / 2)))

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, params: Dict[str, Any], **overrides) -> "PropagationConfig":
        """
        Build a config from a params dictionary.

        Aliases used by the command line (``num_iters``, ``distance_weight``,
        ...) are accepted; unknown keys are ignored with a warning. Keyword
        overrides whose value is None are skipped.
        """
        fields = {f.name for f in dataclasses.fields(cls)}
        values: Dict[str, Any] = {}

        for key, value in list(params.items()) + list(overrides.items()):
            if value is None:
                continue
            name = PARAM_ALIASES.get(key, key)
            if name not in fields:
                logger.warning(f"Ignoring unknown parameter '{key}'")
                continue
            values[name] = value

        if "chain_width" not in values:
            raise ValueError("chain_width is required")
        return cls(**values)

    @classmethod
    def from_json(cls, path: Union[str, pathlib.Path], **overrides) -> "PropagationConfig":
        with open(path, "r") as f:
            params = json.load(f)
        return cls.from_dict(params, **overrides)
