"""Tests for the tuning, bass, phase and hi-res estimators."""

import math

import numpy as np
import pytest

from conftest import make_source, sine
from zentuner.core.estimator import (
    REFERENCE_MAX_HZ,
    REFERENCE_MIN_HZ,
    added_time_seconds,
    analysis_windows,
    bass_band,
    detect_bass_root,
    detect_fundamental,
    detect_high_frequency_content,
    detect_phase_offset,
    detect_reference_pitch,
    inherent_a4,
    note_name,
    shift_percentage,
)


class TestReferencePitch:
    def test_period_of_100_samples_is_441hz(self):
        samples = sine(441.0, duration=0.5)
        assert detect_reference_pitch(samples, 44100) == pytest.approx(441.0, abs=0.5)

    def test_432_tuned_a(self):
        samples = sine(432.0, duration=0.5)
        assert detect_reference_pitch(samples, 44100) == pytest.approx(432.0, abs=0.5)

    def test_other_note_maps_to_its_a4(self):
        # E5 in a 432 Hz system
        e5 = 432.0 * 2 ** (7 / 12)
        samples = sine(e5, duration=0.5)
        assert detect_reference_pitch(samples, 44100) == pytest.approx(432.0, abs=1.0)

    def test_silence_returns_exactly_440(self):
        assert detect_reference_pitch(np.zeros(44100), 44100) == 440.0

    def test_quiet_input_returns_440(self):
        samples = sine(450.0, duration=0.5, amplitude=0.001)
        assert detect_reference_pitch(samples, 44100) == 440.0

    def test_empty_input_returns_440(self):
        assert detect_reference_pitch(np.array([]), 44100) == 440.0

    def test_result_is_clamped(self):
        for frequency in (200.0, 311.0, 523.0, 987.0):
            reference = detect_reference_pitch(sine(frequency, duration=0.5), 44100)
            assert REFERENCE_MIN_HZ <= reference <= REFERENCE_MAX_HZ

    def test_sensitivity_does_not_change_result(self):
        samples = sine(441.0, duration=0.5)
        assert detect_reference_pitch(samples, 44100, 0) == detect_reference_pitch(samples, 44100, 100)


class TestFundamental:
    def test_short_input_returns_zero(self):
        assert detect_fundamental(np.ones(10), 44100) == 0.0

    def test_shortest_lag_wins_ties(self):
        # 441 Hz repeats every 100 and every 200 samples
        assert detect_fundamental(sine(441.0, duration=0.5), 44100) == pytest.approx(441.0, abs=0.5)


class TestInherentA4:
    def test_exact_a4(self):
        assert inherent_a4(440.0) == pytest.approx(440.0)

    def test_octave_invariant(self):
        assert inherent_a4(216.0) == pytest.approx(432.0, abs=0.01)
        assert inherent_a4(864.0) == pytest.approx(432.0, abs=0.01)

    def test_clamps_quarter_tone(self):
        # A quarter tone sharp of A4 lands at the edge of the rounding
        assert REFERENCE_MIN_HZ <= inherent_a4(440.0 * 2 ** (0.49 / 12)) <= REFERENCE_MAX_HZ


class TestBassRoot:
    def test_detects_sine_bass(self):
        samples = sine(55.0, duration=2.0, amplitude=0.8)
        assert detect_bass_root(samples, 44100) == pytest.approx(55.0, abs=1.0)

    def test_silence_returns_zero(self):
        assert detect_bass_root(np.zeros(44100), 44100) == 0.0

    def test_short_input_returns_zero(self):
        assert detect_bass_root(sine(55.0, duration=0.1), 44100) == 0.0

    def test_high_sensitivity_widens_band(self):
        samples = sine(180.0, duration=2.0, amplitude=0.8)
        assert detect_bass_root(samples, 44100, sensitivity=100) == pytest.approx(180.0, abs=1.0)
        assert detect_bass_root(samples, 44100, sensitivity=50) < 160.0

    @pytest.mark.parametrize("sensitivity,band", [
        (50, (20.0, 150.0)),
        (0, (30.0, 100.0)),
        (100, (20.0, 200.0)),
        (25, (30.0, 125.0)),
    ])
    def test_bass_band(self, sensitivity, band):
        assert bass_band(sensitivity) == band


class TestPhaseOffset:
    @pytest.mark.parametrize("phase", [0.3, 1.2, 2.5, -1.0])
    def test_offset_lies_within_one_period(self, phase):
        frequency = 55.0
        samples = sine(frequency, duration=0.1, phase=phase)
        offset = detect_phase_offset(samples, 44100, frequency)
        assert 0.0 <= offset < 1.0 / frequency

    def test_offset_follows_phase(self):
        frequency = 55.0
        phase = 1.0
        samples = sine(frequency, duration=0.1, phase=phase)
        offset = detect_phase_offset(samples, 44100, frequency)
        # Single-bin phase of sin(wt + p) is p - pi/2
        expected = ((phase - math.pi / 2) / (2 * math.pi * frequency)) % (1.0 / frequency)
        assert offset == pytest.approx(expected, abs=0.0005)

    @pytest.mark.parametrize("frequency", [41.0, 55.0, 73.0, 110.0])
    def test_delaying_by_offset_brings_phase_to_zero(self, frequency):
        sample_rate = 44100
        period = 1.0 / frequency
        t = np.arange(4096) / sample_rate
        for phase in np.linspace(-math.pi, math.pi, 13):
            tone = 0.5 * np.cos(2 * np.pi * frequency * t + phase)
            offset = detect_phase_offset(tone, sample_rate, frequency)
            delayed = 0.5 * np.cos(2 * np.pi * frequency * (t - offset) + phase)
            residual = detect_phase_offset(delayed, sample_rate, frequency)
            # A residual just below one period is the same alignment
            residual = min(residual, period - residual)
            assert residual <= 0.01 / sample_rate

    def test_zero_frequency(self):
        assert detect_phase_offset(sine(55.0), 44100, 0.0) == 0.0

    def test_empty_samples(self):
        assert detect_phase_offset(np.array([]), 44100, 55.0) == 0.0


class TestHighFrequencyContent:
    def test_low_rate_is_never_hi_res(self):
        noise = np.random.default_rng(1).standard_normal(32000)
        assert detect_high_frequency_content(noise, 32000) is False

    def test_cd_rate_noise_passes_the_rate_gate(self):
        noise = np.random.default_rng(1).standard_normal(44100)
        assert detect_high_frequency_content(noise, 44100) is True

    def test_ultrasonic_tone_is_hi_res(self):
        samples = sine(22000.0, duration=1.5, sample_rate=96000, amplitude=0.1)
        assert detect_high_frequency_content(samples, 96000) is True

    def test_silent_hi_rate_source_is_not_hi_res(self):
        samples = np.zeros(96000 * 2)
        assert detect_high_frequency_content(samples, 96000) is False


class TestNoteName:
    def test_a4(self):
        assert note_name(440.0) == "A4 +0ct"

    def test_middle_c(self):
        assert note_name(261.63) == "C4 +0ct"

    def test_flat_a(self):
        assert note_name(432.0) == "A4 -32ct"

    def test_no_pitch(self):
        assert note_name(0.0) == "--"


class TestReportingHelpers:
    def test_added_time_when_lowering(self):
        assert added_time_seconds(440.0, 440.0, 432.0) == pytest.approx(440.0 * 440.0 / 432.0 - 440.0)

    def test_shift_percentage(self):
        assert shift_percentage(440.0, 432.0) == pytest.approx(-1.818, abs=0.001)


class TestAnalysisWindows:
    def test_window_positions(self):
        sr = 1000
        data = np.arange(60 * sr, dtype=np.float32) / (60 * sr)
        source = make_source(data, sample_rate=sr, stereo=False)
        windows = analysis_windows(source, phase_samples=100)

        assert len(windows.tuning) == 4 * sr
        assert windows.tuning[0] == pytest.approx(data[30 * sr])
        # Bass starts at min(60 * 0.2, 10) = 10 s
        assert windows.bass[0] == pytest.approx(data[10 * sr])
        assert len(windows.bass) == 6 * sr
        assert len(windows.phase) == 100

    def test_short_source(self):
        source = make_source(sine(441.0, duration=1.0))
        windows = analysis_windows(source)
        assert len(windows.tuning) == source.n_frames - source.n_frames // 2
        assert len(windows.bass) == source.n_frames - int(0.2 * source.sample_rate)
