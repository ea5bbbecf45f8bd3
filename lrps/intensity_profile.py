"""
1D intensity profile analysis.

Candidate positions for a particle are the local maxima of one reslice row.
"""

from typing import List, Sequence, Tuple

import numpy as np
from scipy.signal import find_peaks


Maximum = Tuple[int, float]


def find_maxima(profile: Sequence[float], n: int) -> List[Maximum]:
    """
    Find the ``n`` highest local maxima of a profile.

    Maxima are samples (or flat runs of samples) strictly higher than both
    neighbours, as found by ``scipy.signal.find_peaks``. A plateau counts
    once, at its leftmost index. Profile ends and flat profiles produce no
    maxima. NaN samples act as gaps: they are never maxima, and a sample
    next to one only needs to beat its other neighbour.

    Args:
        profile: 1D intensities
        n: Maximum number of maxima to return

    Returns:
        (index, value) pairs ordered by value descending, then index ascending
    """
    values = np.asarray(profile, dtype=np.float64)
    if values.ndim != 1:
        raise ValueError(f"Expected a 1D profile, got shape {values.shape}")
    if n <= 0 or values.size < 3:
        return []

    values = np.where(np.isnan(values), -np.inf, values)
    _, properties = find_peaks(values, plateau_size=1)

    maxima = [(int(i), float(values[i])) for i in properties["left_edges"]]
    maxima.sort(key=lambda m: (-m[1], m[0]))
    return maxima[:n]


def rank_by_proximity(candidates: Sequence[Maximum], reference_index: int) -> List[Maximum]:
    """
    Reorder candidates by 1D distance to a reference column.

    The sort is stable, so equally distant candidates keep their incoming
    (intensity) order.
    """
    return sorted(candidates, key=lambda m: abs(m[0] - reference_index))
