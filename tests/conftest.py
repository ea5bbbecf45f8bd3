"""Shared fixtures."""

import pytest

from tests.synthetic import make_volume, ramp_data, sheet_data, straight_chain


@pytest.fixture
def ramp_volume():
    return make_volume(ramp_data())


@pytest.fixture
def sheet_volume():
    return make_volume(sheet_data())


@pytest.fixture
def seed_chain():
    return straight_chain()
