"""Tests for parameter automation."""

import numpy as np
import pytest

from zentuner.dsp.params import AudioParam

SR = 1000.0


class TestAudioParam:
    def test_static_value(self):
        param = AudioParam('gain', 0.5)
        values = param.values(0.0, 10, SR)
        assert np.all(values == 0.5)
        assert param.is_settled(0.0)

    def test_clamps_to_range(self):
        param = AudioParam('gain', 0.5, 0.0, 1.0)
        param.set_value(3.0)
        assert param.value_at(0.0) == 1.0
        param.set_value_at_time(-2.0, 0.0)
        assert param.final_value() == 0.0

    def test_linear_ramp_from_hold(self):
        param = AudioParam('rate', 1.0)
        param.cancel_and_hold_at_time(0.0)
        param.linear_ramp_to_value_at_time(2.0, 0.1)

        values = param.values(0.0, 200, SR)
        assert values[0] == pytest.approx(1.0)
        assert values[50] == pytest.approx(1.5)
        assert values[100] == pytest.approx(2.0)
        assert values[-1] == pytest.approx(2.0)
        assert np.all(np.diff(values) >= -1e-12)

    def test_ramp_is_continuous_when_retargeted(self):
        param = AudioParam('rate', 1.0)
        param.cancel_and_hold_at_time(0.0)
        param.linear_ramp_to_value_at_time(2.0, 0.1)
        before = param.value_at(0.05)

        held = param.cancel_and_hold_at_time(0.05)
        param.linear_ramp_to_value_at_time(0.5, 0.15)

        assert held == pytest.approx(before)
        assert param.value_at(0.05) == pytest.approx(before)
        assert param.final_value() == pytest.approx(0.5)

    def test_target_approach(self):
        param = AudioParam('width', 0.0)
        param.cancel_and_hold_at_time(0.0)
        param.set_target_at_time(1.0, 0.0, 0.1)

        assert param.value_at(0.1) == pytest.approx(1.0 - np.exp(-1.0), rel=1e-6)
        assert param.final_value() == 1.0
        assert not param.is_settled(0.1)
        assert param.is_settled(1.0)

    def test_zero_time_constant_sets_instantly(self):
        param = AudioParam('width', 0.0)
        param.set_target_at_time(1.0, 0.0, 0.0)
        assert param.value_at(0.0) == 1.0

    def test_set_value_at_time_steps(self):
        param = AudioParam('makeup', 1.0)
        param.set_value_at_time(2.0, 0.05)
        values = param.values(0.0, 100, SR)
        assert values[49] == 1.0
        assert values[50] == 2.0

    def test_future_events_are_not_settled(self):
        param = AudioParam('gain', 0.0)
        param.set_value_at_time(1.0, 0.5)
        assert not param.is_settled(0.0)
        assert param.is_settled(0.5)

    def test_is_static(self):
        param = AudioParam('gain', 0.0)
        assert param.is_static(0.0, 1.0)
        param.cancel_and_hold_at_time(0.0)
        param.linear_ramp_to_value_at_time(1.0, 0.1)
        assert not param.is_static(0.0, 0.05)
        assert param.is_static(0.2, 0.3)

    def test_prune_collapses_finished_timeline(self):
        param = AudioParam('gain', 0.0)
        param.cancel_and_hold_at_time(0.0)
        param.linear_ramp_to_value_at_time(1.0, 0.1)
        param.prune(0.05)
        assert "events=2" in repr(param)
        param.prune(0.2)
        assert "events=0" in repr(param)
        assert param.value_at(5.0) == 1.0
