"""Tests for maxima finding and proximity ranking."""

import numpy as np
import pytest

from lrps import find_maxima, rank_by_proximity


class TestFindMaxima:
    """Local maxima of 1D profiles."""

    def test_single_peak(self):
        assert find_maxima([0, 1, 5, 1, 0], 4) == [(2, 5.0)]

    def test_ordered_by_value(self):
        profile = [0, 3, 0, 7, 0, 5, 0]
        assert find_maxima(profile, 4) == [(3, 7.0), (5, 5.0), (1, 3.0)]

    def test_keeps_n_highest(self):
        profile = [0, 3, 0, 7, 0, 5, 0]
        assert find_maxima(profile, 2) == [(3, 7.0), (5, 5.0)]

    def test_equal_values_prefer_smaller_index(self):
        profile = [0, 4, 0, 4, 0, 4, 0]
        assert find_maxima(profile, 2) == [(1, 4.0), (3, 4.0)]

    def test_plateau_reports_leftmost_index(self):
        assert find_maxima([0, 2, 6, 6, 6, 2, 0], 4) == [(2, 6.0)]

    def test_shoulder_is_not_a_peak(self):
        # Flat run followed by a rise is not a maximum
        assert find_maxima([0, 3, 3, 5, 0], 4) == [(3, 5.0)]

    def test_endpoints_are_not_maxima(self):
        assert find_maxima([9, 1, 0, 1, 9], 4) == []
        assert find_maxima([0, 1, 2, 3], 4) == []

    def test_flat_profile(self):
        assert find_maxima(np.zeros(32), 4) == []

    def test_short_profiles(self):
        assert find_maxima([], 4) == []
        assert find_maxima([1, 2], 4) == []

    def test_zero_n(self):
        assert find_maxima([0, 1, 0], 0) == []

    def test_nan_is_never_a_maximum(self):
        maxima = find_maxima([0, 1, np.nan, 1, 0, 4, 0], 4)
        assert maxima == [(5, 4.0), (1, 1.0), (3, 1.0)]

    def test_all_nan_profile(self):
        assert find_maxima(np.full(8, np.nan), 4) == []

    def test_plateau_between_peaks(self):
        profile = [0, 5, 5, 0, 2, 9, 9, 9, 1]
        assert find_maxima(profile, 4) == [(5, 9.0), (1, 5.0)]

    def test_rejects_2d(self):
        with pytest.raises(ValueError):
            find_maxima(np.zeros((3, 3)), 2)


class TestRankByProximity:
    """Reordering candidates by distance to a reference column."""

    def test_nearest_first(self):
        candidates = [(3, 7.0), (15, 5.0), (10, 3.0)]
        assert rank_by_proximity(candidates, 12) == [(10, 3.0), (15, 5.0), (3, 7.0)]

    def test_equal_distance_keeps_intensity_order(self):
        candidates = [(14, 9.0), (10, 2.0)]
        assert rank_by_proximity(candidates, 12) == [(14, 9.0), (10, 2.0)]

    def test_empty(self):
        assert rank_by_proximity([], 5) == []
