"""
Visualization utilities for propagation debugging.

Reslices are drawn with the propagation direction (+Z) pointing down the
image, the chain normal running left to right, and the particle at the
centre pixel.

Coordinate Convention:
- Points are in XYZ order [x, y, z]
- Reslice images are indexed as image[row, col]
"""

import pathlib
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
from mpl_toolkits.mplot3d import Axes3D  # noqa: F401  registers the 3d projection

from .ordered_point_set import OrderedPointSet


def visualize_reslice(image: np.ndarray, candidates: Optional[Sequence[int]] = None,
                      profile_row: Optional[int] = None, ax: Optional[plt.Axes] = None,
                      title: Optional[str] = None) -> plt.Axes:
    """
    Show a reslice with its centre, profile row and candidate columns.

    Args:
        image: Reslice image, shape (height, width)
        candidates: Candidate columns on the profile row
        profile_row: Row the intensity profile was read from
        ax: Optional axes to plot on
        title: Optional title for the plot

    Returns:
        The matplotlib Axes used for plotting
    """
    if image.ndim != 2:
        raise ValueError(f"Expected a 2D reslice image, got shape {image.shape}")

    if ax is None:
        fig = plt.figure(figsize=(6, 6))
        ax = fig.add_subplot(111)

    height, width = image.shape
    ax.imshow(image, cmap='gray', interpolation='nearest')
    ax.plot([width // 2], [height // 2], 'g+', markersize=12)

    if profile_row is not None:
        ax.axhline(profile_row, color='y', linewidth=0.8)
        if candidates:
            ax.plot(list(candidates), [profile_row] * len(candidates), 'ro', markersize=4)

    ax.set_xlabel('normal')
    ax.set_ylabel('+Z')
    if title:
        ax.set_title(title)
    return ax


def visualize_profile(profile: np.ndarray, maxima: Optional[Sequence[Tuple[int, float]]] = None,
                      ax: Optional[plt.Axes] = None, title: Optional[str] = None) -> plt.Axes:
    """Plot a 1D intensity profile and mark its maxima."""
    if ax is None:
        fig = plt.figure(figsize=(6, 3))
        ax = fig.add_subplot(111)

    ax.plot(np.arange(len(profile)), profile, 'b-')
    if maxima:
        cols, values = zip(*maxima)
        ax.plot(cols, values, 'rv')

    ax.set_xlabel('column')
    ax.set_ylabel('intensity')
    if title:
        ax.set_title(title)
    return ax


def visualize_point_set(point_set: Union[OrderedPointSet, np.ndarray], ax: Optional[plt.Axes] = None,
                        color: str = 'b', title: Optional[str] = None) -> plt.Axes:
    """
    Scatter the valid points of a point set in 3D, one line per row.

    Args:
        point_set: OrderedPointSet or array of shape (h, w, 3)
        ax: Optional 3D axes to plot on
        color: Color for the points
        title: Optional title for the plot

    Returns:
        The matplotlib Axes used for plotting
    """
    grid = point_set.points if isinstance(point_set, OrderedPointSet) else np.asarray(point_set)
    if grid.ndim != 3 or grid.shape[-1] != 3:
        raise ValueError(f"Expected points with shape [h, w, 3], got {grid.shape}")

    if ax is None:
        fig = plt.figure(figsize=(10, 8))
        ax = fig.add_subplot(111, projection='3d')

    for row in grid:
        valid = row[row[:, 2] != -1]
        if len(valid):
            ax.plot(valid[:, 0], valid[:, 1], valid[:, 2], color=color, linewidth=0.5)
            ax.scatter(valid[:, 0], valid[:, 1], valid[:, 2], c=color, s=4)

    ax.set_xlabel('X')
    ax.set_ylabel('Y')
    ax.set_zlabel('Z')
    if title:
        ax.set_title(title)
    return ax


def save_reslice_figure(path: Union[str, pathlib.Path], image: np.ndarray, profile_row: int,
                        candidates: List[int], title: Optional[str] = None) -> None:
    """
    Write a reslice and its profile to an image file.

    Builds the figure without pyplot so it can be called from worker threads.
    """
    fig = Figure(figsize=(6, 8))
    image_ax = fig.add_subplot(211)
    profile_ax = fig.add_subplot(212)

    visualize_reslice(image, candidates, profile_row, ax=image_ax, title=title)
    profile = image[profile_row]
    visualize_profile(profile, [(c, profile[c]) for c in candidates], ax=profile_ax)

    fig.tight_layout()
    fig.savefig(str(path), dpi=100)
