"""
Energy terms scored for each candidate position of a particle.

All terms are evaluated against frozen neighbour positions. A neighbour that
is missing (chain end) or sentinel is passed as None and simply drops out of
the terms that need it. Lengths are normalised by the rest spacing of the
previous row so the weights do not depend on the sampling density.

Coordinate Convention:
- 3D points are in XYZ order [x, y, z]
"""

from typing import Optional

import numpy as np

from lrps.config import PropagationConfig


def _rest(rest_length: float) -> float:
    return rest_length if rest_length > 1e-9 else 1.0


def first_derivative_energy(point: np.ndarray, left: Optional[np.ndarray],
                            right: Optional[np.ndarray], rest_length: float) -> float:
    """Mean squared distance to the neighbours (elasticity)."""
    neighbors = [n for n in (left, right) if n is not None]
    if not neighbors:
        return 0.0
    rest = _rest(rest_length)
    return float(np.mean([np.sum((point - n) ** 2) for n in neighbors])) / rest ** 2


def second_derivative_energy(point: np.ndarray, left: Optional[np.ndarray],
                             right: Optional[np.ndarray], rest_length: float) -> float:
    """Squared discrete second derivative (stiffness); needs both neighbours."""
    if left is None or right is None:
        return 0.0
    rest = _rest(rest_length)
    return float(np.sum((left - 2.0 * point + right) ** 2)) / rest ** 2


def tension_energy(point: np.ndarray, left: Optional[np.ndarray],
                   right: Optional[np.ndarray], rest_length: float) -> float:
    """Relative deviation of the neighbour spacing from the rest spacing."""
    neighbors = [n for n in (left, right) if n is not None]
    if not neighbors:
        return 0.0
    rest = _rest(rest_length)
    return float(np.mean([((np.linalg.norm(point - n) - rest) / rest) ** 2 for n in neighbors]))


def curvature_energy(point: np.ndarray, left: Optional[np.ndarray],
                     right: Optional[np.ndarray]) -> float:
    """One minus the cosine of the turning angle at the particle."""
    if left is None or right is None:
        return 0.0
    incoming = point - left
    outgoing = right - point
    norms = np.linalg.norm(incoming) * np.linalg.norm(outgoing)
    if norms < 1e-12:
        return 0.0
    return float(1.0 - np.clip(np.dot(incoming, outgoing) / norms, -1.0, 1.0))


def distance_energy(offset: float, half_width: float) -> float:
    """Squared in-plane offset from the straight continuation, in half reslice widths."""
    return (offset / half_width) ** 2


def total_energy(
    point: np.ndarray,
    left: Optional[np.ndarray],
    right: Optional[np.ndarray],
    offset: float,
    rest_length: float,
    half_width: float,
    config: PropagationConfig
) -> float:
    """
    Weighted sum of all terms for one candidate.

    Args:
        point: Candidate position
        left: Frozen left neighbour, or None
        right: Frozen right neighbour, or None
        offset: Candidate column minus the reslice centre column
        rest_length: Mean neighbour spacing of the previous row
        half_width: Half the reslice width
        config: Weights

    Returns:
        alpha*(k1*E1 + k2*E2) + beta*tension + delta*curvature + dwf*distance
    """
    internal = (
        config.k1 * first_derivative_energy(point, left, right, rest_length) +
        config.k2 * second_derivative_energy(point, left, right, rest_length)
    )
    return (
        config.alpha * internal +
        config.beta * tension_energy(point, left, right, rest_length) +
        config.delta * curvature_energy(point, left, right) +
        config.distance_weight_factor * distance_energy(offset, half_width)
    )
