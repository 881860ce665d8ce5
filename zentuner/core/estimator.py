"""
Spectral estimators for tuning reference, bass root and phase.

Every function here is pure: it only reads its arguments, so the
analysis coordinator can call them from its worker thread.
"""

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from zentuner.core.models import AudioSource
from zentuner.dsp.filters import HIGHPASS, BiquadFilter

SILENCE_RMS = 0.01
PITCH_MIN_HZ = 200.0
PITCH_MAX_HZ = 1000.0
PITCH_WINDOW = 2048
REFERENCE_MIN_HZ = 415.0
REFERENCE_MAX_HZ = 460.0

BASS_WINDOW = 8192
BASS_HOP = 2048
BASS_DECIMATION = 32
BASS_FFT_SIZE = 32768
BASS_SILENCE_ENERGY = 1.0

PHASE_WINDOW = 2048

HI_RES_MIN_RATE = 40000
HI_RES_CUTOFF_HZ = 20000.0
HI_RES_RMS = 1e-4

NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]

# Correlations this close (relative) count as a tie; the shorter lag wins
_TIE_TOLERANCE = 1e-9


def _lag_correlation(samples: np.ndarray, lag: int) -> float:
    limit = min(len(samples) - lag, PITCH_WINDOW)
    if limit <= 0:
        return 0.0
    return float(np.dot(samples[:limit], samples[lag:lag + limit]))


def inherent_a4(frequency: float) -> float:
    """
    Map a detected frequency onto the A4 reference of its tuning system.

    The fractional semitone deviation from the nearest equal-tempered
    note is applied to 440 Hz; the result is clamped to [415, 460].
    """
    semitones = 12.0 * math.log2(frequency / 440.0)
    deviation = semitones - round(semitones)
    a4 = 440.0 * 2.0 ** (deviation / 12.0)
    return max(REFERENCE_MIN_HZ, min(REFERENCE_MAX_HZ, a4))


def detect_fundamental(samples: np.ndarray, sample_rate: int) -> float:
    """
    Fundamental in Hz by autocorrelation over 200-1000 Hz periods.

    Returns 0.0 when the input is shorter than the longest candidate period.
    """
    samples = np.asarray(samples, dtype=np.float64)
    min_lag = int(math.floor(sample_rate / PITCH_MAX_HZ))
    max_lag = int(math.floor(sample_rate / PITCH_MIN_HZ))
    if len(samples) <= min_lag:
        return 0.0

    lags = range(min_lag, max_lag + 1)
    correlations = np.array([_lag_correlation(samples, lag) for lag in lags])
    peak = float(correlations.max())
    # First lag within tolerance of the peak
    index = int(np.argmax(correlations >= peak - _TIE_TOLERANCE * max(abs(peak), 1e-12)))
    best_lag = min_lag + index
    best_corr = float(correlations[index])

    shift = 0.0
    if min_lag < best_lag < max_lag:
        prev_corr = correlations[index - 1]
        next_corr = correlations[index + 1]
        denominator = prev_corr - 2.0 * best_corr + next_corr
        if denominator != 0.0:
            shift = 0.5 * (prev_corr - next_corr) / denominator

    period = best_lag + shift
    if period <= 0.0:
        return 0.0
    return sample_rate / period


def detect_reference_pitch(samples: np.ndarray, sample_rate: int, sensitivity: float = 50) -> float:
    """
    Estimate the tuning reference (A4 in Hz) of a recording.

    Args:
        samples: Mono samples, ideally a few seconds from a tonal passage
        sample_rate: Sample rate in Hz
        sensitivity: Accepted for symmetry with detect_bass_root; unused

    Returns:
        float: Reference in [415, 460], or exactly 440.0 for near-silence
    """
    samples = np.asarray(samples, dtype=np.float64)
    if samples.size == 0:
        return 440.0
    rms = math.sqrt(float(np.mean(samples * samples)))
    if rms < SILENCE_RMS:
        return 440.0

    fundamental = detect_fundamental(samples, sample_rate)
    if fundamental <= 0.0 or not math.isfinite(fundamental):
        return 440.0
    return inherent_a4(fundamental)


def bass_band(sensitivity: float) -> Tuple[float, float]:
    """Search band in Hz; sensitivity 0-100 narrows or widens it around 50."""
    if sensitivity < 50:
        return 30.0, 150.0 - (50.0 - sensitivity)
    return 20.0, 150.0 + (sensitivity - 50.0)


def _loudest_window(samples: np.ndarray) -> Tuple[int, float]:
    best_offset, max_energy = 0, 0.0
    decimated = np.abs(samples[::BASS_DECIMATION])
    per_window = BASS_WINDOW // BASS_DECIMATION
    for i in range(0, len(samples) - BASS_WINDOW, BASS_HOP):
        start = i // BASS_DECIMATION
        energy = float(np.sum(decimated[start:start + per_window]))
        if energy > max_energy:
            max_energy = energy
            best_offset = i
    return best_offset, max_energy


def dominant_frequency(signal: np.ndarray, sample_rate: int, min_hz: float, max_hz: float) -> float:
    """
    Strongest spectral peak between ``min_hz`` and ``max_hz``.

    The signal is Blackman windowed, centered in a 32768-point frame and
    the peak bin refined by quadratic interpolation.
    """
    length = min(len(signal), BASS_FFT_SIZE)
    if length < 2:
        return 0.0
    start = (BASS_FFT_SIZE - length) // 2
    frame = np.zeros(BASS_FFT_SIZE)
    n = np.arange(length)
    window = 0.42 - 0.5 * np.cos(2 * np.pi * n / (length - 1)) + 0.08 * np.cos(4 * np.pi * n / (length - 1))
    frame[start:start + length] = np.asarray(signal[:length], dtype=np.float64) * window

    magnitudes = np.abs(np.fft.rfft(frame))
    bin_width = sample_rate / BASS_FFT_SIZE
    min_bin = int(math.floor(min_hz / bin_width))
    max_bin = min(int(math.ceil(max_hz / bin_width)), len(magnitudes) - 1)
    if max_bin < min_bin:
        return 0.0

    band = magnitudes[min_bin:max_bin + 1]
    if band.max() <= 0.0:
        return 0.0
    peak = min_bin + int(np.argmax(band))

    if 0 < peak < len(magnitudes) - 1:
        alpha, beta, gamma = magnitudes[peak - 1], magnitudes[peak], magnitudes[peak + 1]
        denominator = alpha - 2.0 * beta + gamma
        if denominator != 0.0:
            return (peak + 0.5 * (alpha - gamma) / denominator) * bin_width
    return peak * bin_width


def detect_bass_root(samples: np.ndarray, sample_rate: int, sensitivity: float = 50) -> float:
    """
    Estimate the fundamental bass pitch in Hz.

    The loudest 8192-sample region (typically a kick or bass note) is
    located by a decimated energy scan, then its spectrum searched inside
    the sensitivity band. Returns exactly 0.0 for silence.
    """
    samples = np.asarray(samples, dtype=np.float64)
    if len(samples) <= BASS_WINDOW:
        return 0.0
    offset, energy = _loudest_window(samples)
    if energy < BASS_SILENCE_ENERGY:
        return 0.0
    min_hz, max_hz = bass_band(sensitivity)
    return dominant_frequency(samples[offset:offset + BASS_WINDOW], sample_rate, min_hz, max_hz)


def detect_phase_offset(samples: np.ndarray, sample_rate: int, frequency: float) -> float:
    """
    Delay in seconds that brings ``frequency`` to zero phase.

    The first 2048 samples are fitted by least squares with
    ``a * cos(wn) + b * sin(wn)``. Solving for both coefficients
    together removes the leakage a plain correlation picks up when the
    window does not hold a whole number of cycles. The phase of the fit
    is turned into a time shift normalized into [0, 1 / frequency).
    """
    if frequency <= 0:
        return 0.0
    samples = np.asarray(samples, dtype=np.float64)[:PHASE_WINDOW]
    if samples.size == 0:
        return 0.0
    omega = 2.0 * math.pi * frequency / sample_rate
    n = np.arange(len(samples))
    basis = np.column_stack([np.cos(omega * n), np.sin(omega * n)])
    (a, b), _, _, _ = np.linalg.lstsq(basis, samples, rcond=None)
    # a*cos(wn) + b*sin(wn) == A*cos(wn + phase)
    phase = math.atan2(-float(b), float(a))

    period = 1.0 / frequency
    shift = (phase / (2.0 * math.pi * frequency)) % period
    if shift >= period:
        shift -= period
    return shift


def detect_high_frequency_content(samples: np.ndarray, sample_rate: int) -> bool:
    """
    True when a one-second fragment carries real content above 20 kHz.

    Only meaningful for sources at 40 kHz or more; lower rates return
    False. The fragment starts 30% into the input.
    """
    if sample_rate < HI_RES_MIN_RATE:
        return False
    samples = np.asarray(samples, dtype=np.float64)
    start = int(len(samples) * 0.3)
    length = min(int(sample_rate), len(samples) - start)
    if length <= 0:
        return False
    highpass = BiquadFilter(HIGHPASS, sample_rate, channels=1, frequency=HI_RES_CUTOFF_HZ, q=1.0)
    filtered = highpass.process(samples[np.newaxis, start:start + length])[0]
    rms = math.sqrt(float(np.mean(filtered * filtered)))
    return rms > HI_RES_RMS


def note_name(frequency: float) -> str:
    """Nearest note with cent deviation, e.g. ``"A4 +0ct"``; ``"--"`` for no pitch."""
    if frequency <= 0:
        return "--"
    n = 12.0 * math.log2(frequency / 440.0) + 69.0
    note_index = int(math.floor(n + 0.5))
    octave = note_index // 12 - 1
    cents = int(math.floor((n - note_index) * 100.0 + 0.5))
    sign = "+" if cents >= 0 else ""
    return f"{NOTE_NAMES[note_index % 12]}{octave} {sign}{cents}ct"


def added_time_seconds(duration: float, reference_hz: float, target_hz: float) -> float:
    """Change in duration caused by retuning (positive when the track gets longer)."""
    return duration * (reference_hz / target_hz) - duration


def shift_percentage(reference_hz: float, target_hz: float) -> float:
    """Pitch shift in percent of the reference."""
    return (target_hz / reference_hz - 1.0) * 100.0


@dataclass(frozen=True)
class AnalysisWindows:
    """Sample ranges of channel 0 fed to each estimator."""

    tuning: np.ndarray
    bass: np.ndarray
    phase: np.ndarray


def analysis_windows(
    source: AudioSource,
    tuning_seconds: float = 4.0,
    bass_seconds: float = 6.0,
    bass_start_fraction: float = 0.2,
    bass_start_max_seconds: float = 10.0,
    phase_samples: int = 4096,
) -> AnalysisWindows:
    """
    Slices of the first channel used for analysis.

    Tuning reads up to ``tuning_seconds`` from the middle, bass scans
    ``bass_seconds`` starting at min(duration * 0.2, 10 s), phase uses the
    opening samples.
    """
    data = source.channel(0)
    sr = source.sample_rate
    n = source.n_frames

    tuning_start = n // 2
    tuning_len = min(int(tuning_seconds * sr), n - tuning_start)

    bass_start = int(min(source.duration * bass_start_fraction, bass_start_max_seconds) * sr)
    bass_len = min(int(bass_seconds * sr), max(n - bass_start, 0))

    return AnalysisWindows(
        tuning=data[tuning_start:tuning_start + tuning_len],
        bass=data[bass_start:bass_start + bass_len],
        phase=data[:phase_samples],
    )
