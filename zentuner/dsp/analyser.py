"""
Read-only spectral analysis tap and THD measurement.
"""

import math
import threading
import time
from typing import Optional

import numpy as np

MIN_DECIBELS = -100.0


def total_harmonic_distortion(spectrum_db: np.ndarray, sample_rate: float, fft_size: int) -> float:
    """
    THD in percent from a dB magnitude spectrum.

    The fundamental is the strongest bin between 20 Hz and 5 kHz that
    rises above -70 dB; each harmonic's energy is summed over +-2 bins up
    to Nyquist. Returns 0 when no usable fundamental exists.
    """
    bin_count = len(spectrum_db)
    bin_width = sample_rate / fft_size
    min_bin = int(math.floor(20.0 / bin_width))
    max_bin = int(math.floor(5000.0 / bin_width))

    linear = np.where(spectrum_db > -90.0, 10.0 ** (spectrum_db / 20.0), 0.0)

    def energy_around(center: int) -> float:
        lo, hi = max(center - 2, 0), min(center + 3, bin_count)
        return float(np.sum(linear[lo:hi] ** 2))

    window = spectrum_db[min_bin:max_bin]
    candidates = np.where(window > -70.0, linear[min_bin:max_bin], 0.0)
    if candidates.size == 0:
        return 0.0
    fund_bin = min_bin + int(np.argmax(candidates))
    if candidates.max() < 0.001 or fund_bin == 0:
        return 0.0

    fundamental = energy_around(fund_bin)
    if fundamental == 0.0:
        return 0.0

    harmonics = 0.0
    nyquist_bin = bin_count - 1
    order = 2
    while fund_bin * order < nyquist_bin:
        harmonics += energy_around(fund_bin * order)
        order += 1

    return math.sqrt(harmonics) / math.sqrt(fundamental) * 100.0


class AnalyserTap:
    """
    Keeps the latest ``fft_size`` output samples and serves spectra.

    Written from the audio thread (``push``) and read from UI or meter
    threads, so every access goes through a lock.
    """

    THD_MIN_INTERVAL = 0.1

    def __init__(self, sample_rate: float, fft_size: int = 8192, smoothing: float = 0.8):
        self.sample_rate = float(sample_rate)
        self._lock = threading.Lock()
        self._last_thd_time = 0.0
        self.configure(fft_size, smoothing)

    def configure(self, fft_size: int, smoothing: float) -> None:
        if fft_size & (fft_size - 1) or fft_size < 32:
            raise ValueError(f"fft_size must be a power of two >= 32, got {fft_size}")
        with self._lock:
            self.fft_size = int(fft_size)
            self.smoothing = float(min(max(smoothing, 0.0), 1.0))
            self._ring = np.zeros(self.fft_size)
            self._write = 0
            self._smoothed = np.zeros(self.fft_size // 2 + 1)
            self._window = np.blackman(self.fft_size)

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, block: np.ndarray) -> None:
        """Append the down-mix of a (channels, frames) block."""
        mono = block.mean(axis=0) if block.ndim == 2 else block
        with self._lock:
            n = len(mono)
            if n >= self.fft_size:
                self._ring[:] = mono[-self.fft_size:]
                self._write = 0
                return
            end = self._write + n
            if end <= self.fft_size:
                self._ring[self._write:end] = mono
            else:
                split = self.fft_size - self._write
                self._ring[self._write:] = mono[:split]
                self._ring[:n - split] = mono[split:]
            self._write = end % self.fft_size

    def get_float_time_domain_data(self) -> np.ndarray:
        with self._lock:
            return np.roll(self._ring, -self._write).astype(np.float32)

    def get_float_frequency_data(self) -> np.ndarray:
        """Smoothed magnitude spectrum in dB, ``frequency_bin_count`` bins."""
        with self._lock:
            frame = np.roll(self._ring, -self._write) * self._window
            magnitude = np.abs(np.fft.rfft(frame)) / self.fft_size
            self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitude
            smoothed = self._smoothed[:self.frequency_bin_count]
        with np.errstate(divide="ignore"):
            spectrum = 20.0 * np.log10(smoothed)
        return np.maximum(spectrum, MIN_DECIBELS).astype(np.float32)

    def calculate_thd(self) -> Optional[float]:
        """THD of the current output, or None when polled faster than every 100 ms."""
        now = time.monotonic()
        if now - self._last_thd_time < self.THD_MIN_INTERVAL:
            return None
        self._last_thd_time = now
        return total_harmonic_distortion(self.get_float_frequency_data(), self.sample_rate, self.fft_size)

    def reset(self) -> None:
        with self._lock:
            self._ring[:] = 0.0
            self._write = 0
            self._smoothed[:] = 0.0
