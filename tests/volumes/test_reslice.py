"""Tests for ResliceSampler."""

import numpy as np
import pytest

from volumes import ResliceSampler


def test_pixels_map_to_origin_plus_axes(ramp_volume):
    sampler = ResliceSampler(ramp_volume)
    reslice = sampler.reslice([1, 2, 3], [1, 0, 0], [0, 1, 0], width=4, height=3)

    assert reslice.image.shape == (3, 4)
    for j in range(3):
        for i in range(4):
            expected = (1 + i) + 10 * (2 + j) + 100 * 3
            assert reslice.image[j, i] == pytest.approx(expected)


def test_axes_are_normalised(ramp_volume):
    sampler = ResliceSampler(ramp_volume)
    a = sampler.reslice([1, 2, 3], [1, 0, 0], [0, 1, 0], width=4, height=3)
    b = sampler.reslice([1, 2, 3], [5, 0, 0], [0, 0.5, 0], width=4, height=3)
    np.testing.assert_array_equal(a.image, b.image)


def test_vertical_reslice(ramp_volume):
    sampler = ResliceSampler(ramp_volume)
    reslice = sampler.reslice([2, 1, 0], [0, 1, 0], [0, 0, 1], width=3, height=4)
    assert reslice.image[3, 2] == pytest.approx(2 + 10 * 3 + 100 * 3)
    np.testing.assert_allclose(reslice.slice_to_voxel(2, 3), [2, 3, 3])


def test_zero_axis_is_rejected(ramp_volume):
    sampler = ResliceSampler(ramp_volume)
    with pytest.raises(ValueError):
        sampler.reslice([0, 0, 0], [0, 0, 0], [0, 1, 0])
    with pytest.raises(ValueError):
        sampler.reslice([0, 0, 0], [1, 0, 0], [0, 1, 0], width=0, height=3)


def test_centered_reslice(ramp_volume):
    sampler = ResliceSampler(ramp_volume)
    center = np.array([4.0, 3.0, 2.0])
    reslice = sampler.reslice_centered(center, [0, 1, 0], [0, 0, 1], width=5, height=5)

    col, row = reslice.center
    assert (col, row) == (2, 2)
    np.testing.assert_allclose(reslice.slice_to_voxel(col, row), center)
    assert reslice.image[row, col] == pytest.approx(ramp_volume.sample(*center))


def test_in_bounds_fraction(ramp_volume):
    sampler = ResliceSampler(ramp_volume)
    inside = sampler.reslice([0, 0, 0], [1, 0, 0], [0, 1, 0], width=4, height=4)
    assert inside.in_bounds == 1.0

    # Columns 10..19 fall outside a volume 10 voxels wide
    half = sampler.reslice([0, 0, 0], [1, 0, 0], [0, 1, 0], width=20, height=2)
    assert half.in_bounds == pytest.approx(0.5)
    assert np.all(half.image[:, 10:] == ramp_volume.fill_value)

    outside = sampler.reslice([-50, -50, -50], [1, 0, 0], [0, 1, 0], width=4, height=4)
    assert outside.in_bounds == 0.0


def test_reslice_is_deterministic(ramp_volume):
    sampler = ResliceSampler(ramp_volume)
    args = ([3.3, 2.2, 1.1], [0.6, 0.8, 0], [0, 0, 1])
    np.testing.assert_array_equal(sampler.reslice(*args).image, sampler.reslice(*args).image)
