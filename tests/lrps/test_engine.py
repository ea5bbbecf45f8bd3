"""Tests for PropagationEngine."""

import math

import numpy as np
import pytest

from lrps import (
    ChainWidthMismatch, InsufficientData, InvalidTarget, PropagationConfig
)
from lrps.chain import SENTINEL_Z
from lrps.engine import PropagationEngine, target_z_from
from tests.synthetic import make_volume, sheet_data, straight_chain


def zero_weights(**kwargs):
    return PropagationConfig(
        chain_width=kwargs.pop("chain_width", 5),
        alpha=0.0, k1=0.0, k2=0.0, beta=0.0, delta=0.0, distance_weight_factor=0.0,
        **kwargs
    )


def wavy_volume():
    """Two curved sheets of different brightness, slowly drifting in Y."""
    z, y, x = np.mgrid[0:10, 0:40, 0:40].astype(np.float64)
    first = 16 + 2 * np.sin(x / 5.0) + 0.3 * z
    second = 23 + np.cos(x / 7.0)
    data = 100 * np.exp(-(y - first) ** 2 / 2.0) + 60 * np.exp(-(y - second) ** 2 / 2.0)
    return make_volume(data)


def wavy_chain():
    xs = np.arange(8, 30, 2, dtype=np.float64)
    return np.stack([xs, 16 + 2 * np.sin(xs / 5.0), np.zeros_like(xs)], axis=1)


class TestPropagation:
    """Propagation results."""

    def test_straight_chain_follows_sheet(self, sheet_volume, seed_chain):
        engine = PropagationEngine(sheet_volume, zero_weights(), seed_chain, target_z=2)
        result = engine.compute()

        points = result.point_set.points
        assert result.steps_taken == 2
        assert points.shape == (3, 5, 3)
        np.testing.assert_allclose(points[0], seed_chain)
        for row in (1, 2):
            np.testing.assert_allclose(points[row, :, 0], seed_chain[:, 0], atol=1e-6)
            np.testing.assert_allclose(points[row, :, 1], 16.0, atol=1e-6)
            np.testing.assert_allclose(points[row, :, 2], row)
        assert not result.cancelled
        assert not result.exhausted
        assert result.sentinel_count == 0

    def test_slanted_sheet_is_tracked(self, seed_chain):
        data = np.zeros((6, 32, 32), dtype=np.float32)
        for z in range(6):
            data[z, 16 + z, :] = 100.0
        engine = PropagationEngine(make_volume(data), zero_weights(), seed_chain, target_z=3)
        points = engine.compute().point_set.points

        for row in range(4):
            np.testing.assert_allclose(points[row, :, 1], 16.0 + row, atol=1e-6)

    def test_flat_volume_sentinels_every_particle(self, seed_chain):
        volume = make_volume(np.zeros((6, 32, 32)))
        engine = PropagationEngine(volume, PropagationConfig(chain_width=5), seed_chain, target_z=4)
        result = engine.compute()

        assert result.exhausted
        assert result.steps_taken == 1
        assert result.sentinel_count == 5
        points = result.point_set.points
        assert points.shape == (2, 5, 3)
        assert np.all(points[1, :, 2] == SENTINEL_Z)
        np.testing.assert_allclose(points[1, :, :2], seed_chain[:, :2])

    def test_consider_previous_keeps_particles_alive(self, seed_chain):
        volume = make_volume(np.zeros((6, 32, 32)))
        engine = PropagationEngine(volume, zero_weights(consider_previous=True), seed_chain, target_z=3)
        result = engine.compute()

        assert result.steps_taken == 3
        assert result.sentinel_count == 0
        np.testing.assert_allclose(result.point_set.get_row(3)[:, :2], seed_chain[:, :2])
        assert np.all(result.point_set.get_row(3)[:, 2] == 3)

    def test_sentinel_seed_particle_is_carried(self, sheet_volume):
        chain = straight_chain()
        chain[0, 2] = SENTINEL_Z
        result = PropagationEngine(sheet_volume, zero_weights(), chain, target_z=3).compute()

        points = result.point_set.points
        assert np.all(points[:, 0, 2] == SENTINEL_Z)
        np.testing.assert_allclose(points[3, 1:, 1], 16.0, atol=1e-6)
        assert result.sentinel_count == 1
        assert not result.exhausted

    def test_relaxation_overrides_proximity(self):
        data = sheet_data()
        data[1, 18, 12] = 200.0
        chain = straight_chain()
        chain[2, 1] = 17.0

        # The bright spot is as close as the sheet and brighter, so it ranks first
        ranked = PropagationEngine(make_volume(data), zero_weights(), chain, target_z=1).compute()
        assert ranked.point_set.get_row(1)[2, 1] == pytest.approx(18.0)

        config = zero_weights()
        config.alpha = 1.0
        config.k1 = 1.0
        relaxed = PropagationEngine(make_volume(data), config, chain, target_z=1).compute()
        assert relaxed.point_set.get_row(1)[2, 1] == pytest.approx(16.0)

    def test_structure_tensor_steering(self, sheet_volume, seed_chain):
        config = zero_weights(use_structure_tensor=True)
        points = PropagationEngine(sheet_volume, config, seed_chain, target_z=2).compute().point_set.points
        np.testing.assert_allclose(points[1:, :, 1], 16.0, atol=1e-6)

    def test_stops_at_volume_end(self, sheet_volume, seed_chain):
        result = PropagationEngine(sheet_volume, zero_weights(), seed_chain, target_z=20).compute()
        assert result.exhausted
        # The last slice is 7; the step onto z = 8 finds nothing
        assert result.steps_taken == 8
        np.testing.assert_allclose(result.point_set.get_row(7)[:, 2], 7)


class TestTermination:
    """Step counting, width invariant and preconditions."""

    @pytest.mark.parametrize("target, step", [(1, 1), (5, 1), (5, 2), (6, 3), (3, 2)])
    def test_number_of_steps(self, sheet_volume, seed_chain, target, step):
        progress = []
        engine = PropagationEngine(
            sheet_volume, zero_weights(step_size=step), seed_chain, target_z=target,
            progress_callback=lambda done, total: progress.append((done, total)),
        )
        expected = math.ceil(target / step)
        assert engine.num_steps() == expected

        result = engine.compute()
        assert result.steps_taken == expected
        assert result.point_set.height == expected + 1
        assert engine.current_z >= target
        assert progress == [(i, expected) for i in range(1, expected + 1)]

    def test_last_step_stops_on_target(self, sheet_volume, seed_chain):
        # 0 -> 3 -> 6 -> 7: the last step is shortened to land on the final slice
        rows = []
        engine = PropagationEngine(
            sheet_volume, PropagationConfig(chain_width=5, step_size=3), seed_chain, target_z=7,
            reslice_callback=lambda z, particle, reslice, row, candidates: rows.append((z, row - reslice.center[1])),
        )
        result = engine.compute()

        assert result.steps_taken == 3
        assert not result.exhausted
        assert result.sentinel_count == 0
        assert engine.current_z == 7
        points = result.point_set.points
        np.testing.assert_allclose(points[:, :, 2], np.array([0, 3, 6, 7])[:, None] * np.ones((1, 5)))
        np.testing.assert_allclose(points[:, :, 1], 16.0, atol=1e-6)
        assert {depth for z, depth in rows if z == 7} == {1}
        assert {depth for z, depth in rows if z < 7} == {3}

    def test_chain_width_is_preserved(self):
        volume = wavy_volume()
        chain = wavy_chain()
        engine = PropagationEngine(volume, PropagationConfig(chain_width=len(chain)), chain, target_z=5)
        while engine.current_z < engine.target_z:
            engine.step()
            assert engine.chain.width == len(chain)
        assert engine.accumulated_surface.width == len(chain)

    def test_width_mismatch(self, sheet_volume, seed_chain):
        with pytest.raises(ChainWidthMismatch) as info:
            PropagationEngine(sheet_volume, PropagationConfig(chain_width=6), seed_chain, target_z=2)
        assert info.value.kind == "ChainWidthMismatch"

    @pytest.mark.parametrize("target", [0, -3])
    def test_target_not_after_start(self, sheet_volume, seed_chain, target):
        with pytest.raises(InvalidTarget):
            PropagationEngine(sheet_volume, zero_weights(), seed_chain, target_z=target)

    def test_too_few_valid_particles(self, sheet_volume, seed_chain):
        seed_chain[1:, 2] = SENTINEL_Z
        with pytest.raises(InsufficientData):
            PropagationEngine(sheet_volume, zero_weights(), seed_chain, target_z=2)

    def test_start_on_last_slice(self, sheet_volume):
        chain = straight_chain(z=7.0)
        with pytest.raises(InsufficientData):
            PropagationEngine(sheet_volume, zero_weights(), chain, target_z=9)

    def test_start_outside_volume(self, sheet_volume, seed_chain):
        with pytest.raises(InsufficientData):
            PropagationEngine(sheet_volume, zero_weights(), seed_chain, target_z=30, start_z=20)

    def test_cache_budget_is_applied(self, sheet_volume, seed_chain):
        PropagationEngine(sheet_volume, zero_weights(cache_budget=12345), seed_chain, target_z=2)
        assert sheet_volume.cache_stats()["budget_bytes"] == 12345


class TestRunControl:
    """Cancellation, background runs and determinism."""

    def test_cancel_before_start(self, sheet_volume, seed_chain):
        engine = PropagationEngine(sheet_volume, zero_weights(), seed_chain, target_z=5)
        engine.cancel()
        result = engine.compute()

        assert result.cancelled
        assert result.steps_taken == 0
        assert result.point_set.height == 1

    def test_cancel_between_steps(self, sheet_volume, seed_chain):
        engines = []
        engine = PropagationEngine(
            sheet_volume, zero_weights(), seed_chain, target_z=5,
            progress_callback=lambda done, total: engines[0].cancel(),
        )
        engines.append(engine)
        result = engine.compute()

        assert result.cancelled
        assert result.steps_taken == 1
        assert result.point_set.height == 2
        np.testing.assert_allclose(result.point_set.get_row(1)[:, 2], 1)

    def test_submit(self, sheet_volume, seed_chain):
        engine = PropagationEngine(sheet_volume, zero_weights(), seed_chain, target_z=3)
        result = engine.submit().result(timeout=60)
        assert result.steps_taken == 3

    def test_runs_are_deterministic(self):
        chain = wavy_chain()
        config = PropagationConfig(chain_width=len(chain))
        first = PropagationEngine(wavy_volume(), config, chain, target_z=6).compute()
        second = PropagationEngine(wavy_volume(), config, chain, target_z=6).compute()
        np.testing.assert_array_equal(first.point_set.points, second.point_set.points)

    def test_worker_threads_match_serial(self):
        chain = wavy_chain()
        serial = PropagationEngine(
            wavy_volume(), PropagationConfig(chain_width=len(chain)), chain, target_z=6
        ).compute()
        threaded = PropagationEngine(
            wavy_volume(), PropagationConfig(chain_width=len(chain), num_workers=4), chain, target_z=6
        ).compute()
        np.testing.assert_array_equal(serial.point_set.points, threaded.point_set.points)

    def test_reslice_callback(self, sheet_volume, seed_chain):
        calls = []
        engine = PropagationEngine(
            sheet_volume, zero_weights(reslice_size=16), seed_chain, target_z=2,
            reslice_callback=lambda z, particle, reslice, row, candidates: calls.append((z, particle, reslice.image.shape, row)),
        )
        engine.compute()

        assert len(calls) == 10
        assert sorted(calls)[0] == (1, 0, (16, 16), 9)


class TestTargetResolution:
    """End index / stride handling."""

    def test_stride(self):
        assert target_z_from(10, stride=5) == 15

    def test_end_index(self):
        assert target_z_from(10, end_index=12) == 12

    def test_end_before_start_is_rejected(self):
        with pytest.raises(InvalidTarget):
            target_z_from(10, end_index=8)
        with pytest.raises(InvalidTarget):
            target_z_from(10, end_index=10)

    def test_exactly_one_of_end_and_stride(self):
        with pytest.raises(ValueError):
            target_z_from(10)
        with pytest.raises(ValueError):
            target_z_from(10, end_index=12, stride=2)
