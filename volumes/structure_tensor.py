"""
Local structure tensor estimation.

The structure tensor is the mean outer product of intensity gradients over a
voxel neighbourhood. Its dominant eigenvector points across the sheet, i.e.
it approximates the local surface normal.

Gradients use Pavel Holoborodko's smoothed derivative kernels
(http://www.holoborodko.com/pavel/image-processing/edge-detection/), applied
with torch 3D convolutions.

Coordinate Convention:
- Query points, tensors and eigenvectors are in XYZ order [x, y, z]
- Raw blocks pulled from the volume are indexed as block[z, y, x]
"""

from typing import Optional, Tuple

import numpy as np
import torch
import torch.nn.functional as F

from volumes.scalar_volume import VolumeProtocol


# Half-width of the derivative kernel; blocks carry this much context
KERNEL_MARGIN = 4


class StructureEstimator:
    """Computes structure tensors and principal directions from a volume."""

    def __init__(self, volume: VolumeProtocol, device: str = "cpu"):
        self.volume = volume
        self.device = torch.device(device)

        dtype = torch.float32
        d = torch.tensor([2., 1., -16., -27., 0., 27., 16., -1., -2.], device=self.device, dtype=dtype)  # derivative kernel
        s = torch.tensor([1., 4., 6., 4., 1.], device=self.device, dtype=dtype)  # smoothing kernel

        # depth-derivative with y/x smoothing
        kz = (d.view(9, 1, 1) * s.view(1, 5, 1) * s.view(1, 1, 5)) / (96 * 16 * 16)
        # height-derivative with z/x smoothing
        ky = (s.view(5, 1, 1) * d.view(1, 9, 1) * s.view(1, 1, 5)) / (96 * 16 * 16)
        # width-derivative with z/y smoothing
        kx = (s.view(5, 1, 1) * s.view(1, 5, 1) * d.view(1, 1, 9)) / (96 * 16 * 16)

        self.kz = kz[None, None]
        self.ky = ky[None, None]
        self.kx = kx[None, None]

    def gradients(self, block: np.ndarray) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Smoothed (gx, gy, gz) of a [z, y, x] block, same shape as the block."""
        t = torch.as_tensor(np.ascontiguousarray(block), dtype=torch.float32, device=self.device)[None, None]
        with torch.no_grad():
            gz = F.conv3d(t, self.kz, padding=(4, 2, 2))
            gy = F.conv3d(t, self.ky, padding=(2, 4, 2))
            gx = F.conv3d(t, self.kx, padding=(2, 2, 4))
        return gx[0, 0], gy[0, 0], gz[0, 0]

    def structure_tensor(self, x: float, y: float, z: float, radius: int = 1) -> np.ndarray:
        """
        Structure tensor at a voxel.

        Args:
            x: X coordinate (rounded to the nearest voxel)
            y: Y coordinate (rounded to the nearest voxel)
            z: Z coordinate (rounded to the nearest voxel)
            radius: Neighbourhood radius; the tensor averages (2r+1)^3 voxels

        Returns:
            Symmetric 3x3 array in XYZ order
        """
        if radius < 0:
            raise ValueError(f"Radius must be non-negative, got {radius}")

        cx, cy, cz = int(round(x)), int(round(y)), int(round(z))
        n = 2 * radius + 1
        size = n + 2 * KERNEL_MARGIN
        offset = radius + KERNEL_MARGIN
        block = self.volume.get_subvolume(cz - offset, cy - offset, cx - offset, size, size, size)

        gx, gy, gz = self.gradients(block)
        inner = slice(KERNEL_MARGIN, KERNEL_MARGIN + n)
        g = torch.stack([
            gx[inner, inner, inner].reshape(-1),
            gy[inner, inner, inner].reshape(-1),
            gz[inner, inner, inner].reshape(-1),
        ], dim=1).double()

        tensor = g.T @ g / g.shape[0]
        return tensor.cpu().numpy()

    def surface_normal(self, x: float, y: float, z: float, radius: int = 1) -> Optional[np.ndarray]:
        """Dominant eigenvector at a voxel, or None where the neighbourhood is flat."""
        eigenvalues, eigenvectors = principal_directions(self.structure_tensor(x, y, z, radius))
        if eigenvalues[0] <= 1e-12:
            return None
        return eigenvectors[:, 0]


def principal_directions(tensor: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Eigen-decomposition of a structure tensor.

    Args:
        tensor: Symmetric 3x3 array

    Returns:
        (eigenvalues, eigenvectors): eigenvalues in descending order and the
        matching unit eigenvectors as columns
    """
    eigenvalues, eigenvectors = np.linalg.eigh(np.asarray(tensor, dtype=np.float64))
    order = np.argsort(eigenvalues)[::-1]
    return eigenvalues[order], eigenvectors[:, order]
