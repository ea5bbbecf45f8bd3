"""Tests for slice store backends."""

import numpy as np
import pytest
import zarr
from PIL import Image

from volumes import ArraySliceStore, TiffSliceStore, ZarrSliceStore, open_zarr_slices
from volumes.slice_store import _is_ome_zarr
from tests.synthetic import ramp_data


def test_array_store_copies_planes():
    data = ramp_data()
    store = ArraySliceStore(data)
    assert (store.num_slices, store.height, store.width) == data.shape

    plane = store.load_slice(1)
    plane[0, 0] = -1
    assert data[1, 0, 0] == 100


def test_array_store_rejects_2d():
    with pytest.raises(ValueError):
        ArraySliceStore(np.zeros((4, 4)))


def test_zarr_store(tmp_path):
    data = ramp_data(3, 4, 5)
    array = zarr.open(str(tmp_path / "vol.zarr"), mode="w", shape=data.shape, chunks=(1, 4, 5), dtype="f4")
    array[:] = data

    store = ZarrSliceStore(array)
    assert store.num_slices == 3
    np.testing.assert_array_equal(store.load_slice(2), data[2])

    reopened = open_zarr_slices(tmp_path / "vol.zarr")
    np.testing.assert_array_equal(reopened.load_slice(1), data[1])
    assert not _is_ome_zarr(tmp_path / "vol.zarr")


def test_tiff_store(tmp_path):
    data = ramp_data(4, 3, 6)
    for z in range(4):
        Image.fromarray(data[z]).save(tmp_path / f"{z:03d}.tif")
    (tmp_path / "notes.txt").write_text("not a slice")

    store = TiffSliceStore(tmp_path)
    assert (store.num_slices, store.height, store.width) == (4, 3, 6)
    for z in range(4):
        np.testing.assert_array_equal(store.load_slice(z), data[z])


def test_tiff_store_rejects_mismatched_slice(tmp_path):
    Image.fromarray(np.zeros((3, 6), dtype=np.float32)).save(tmp_path / "000.tif")
    Image.fromarray(np.zeros((4, 6), dtype=np.float32)).save(tmp_path / "001.tif")

    store = TiffSliceStore(tmp_path)
    with pytest.raises(ValueError):
        store.load_slice(1)


def test_tiff_store_needs_slices(tmp_path):
    with pytest.raises(ValueError):
        TiffSliceStore(tmp_path)
