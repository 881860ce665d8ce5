"""
Biquad filters.

Coefficients follow the RBJ audio-EQ cookbook; filtering runs through
scipy.signal.sosfilt with per-channel state carried between blocks, so a
filter can be fed an arbitrary sequence of blocks and retuned between
them without clicks from state resets.
"""

import math
from typing import Optional, Tuple

import numpy as np
from scipy.signal import sosfilt

LOWPASS = "lowpass"
HIGHPASS = "highpass"
BANDPASS = "bandpass"
LOWSHELF = "lowshelf"
HIGHSHELF = "highshelf"
PEAKING = "peaking"

FILTER_TYPES = (LOWPASS, HIGHPASS, BANDPASS, LOWSHELF, HIGHSHELF, PEAKING)


def biquad_coefficients(
    filter_type: str,
    frequency: float,
    sample_rate: float,
    q: float = 0.7071,
    gain_db: float = 0.0,
) -> np.ndarray:
    """
    Design one second-order section.

    Args:
        filter_type: One of FILTER_TYPES
        frequency: Corner or center frequency in Hz (clamped to [0, Nyquist])
        sample_rate: Sample rate in Hz
        q: Quality factor (ignored by the shelves, which use slope 1)
        gain_db: Boost/cut for peaking and shelving types

    Returns:
        np.ndarray: Shape (1, 6) ``[b0, b1, b2, 1, a1, a2]``
    """
    if filter_type not in FILTER_TYPES:
        raise ValueError(f"Unknown filter type: {filter_type}")

    nyquist = sample_rate / 2.0
    frequency = min(max(frequency, 0.0), nyquist)
    q = max(q, 1e-4)
    w0 = 2.0 * math.pi * frequency / sample_rate
    cos_w0 = math.cos(w0)
    sin_w0 = math.sin(w0)
    A = 10.0 ** (gain_db / 40.0)

    if filter_type == LOWPASS:
        alpha = sin_w0 / (2.0 * q)
        b = ((1 - cos_w0) / 2, 1 - cos_w0, (1 - cos_w0) / 2)
        a = (1 + alpha, -2 * cos_w0, 1 - alpha)
    elif filter_type == HIGHPASS:
        alpha = sin_w0 / (2.0 * q)
        b = ((1 + cos_w0) / 2, -(1 + cos_w0), (1 + cos_w0) / 2)
        a = (1 + alpha, -2 * cos_w0, 1 - alpha)
    elif filter_type == BANDPASS:
        # Constant 0 dB peak gain
        alpha = sin_w0 / (2.0 * q)
        b = (alpha, 0.0, -alpha)
        a = (1 + alpha, -2 * cos_w0, 1 - alpha)
    elif filter_type == PEAKING:
        alpha = sin_w0 / (2.0 * q)
        b = (1 + alpha * A, -2 * cos_w0, 1 - alpha * A)
        a = (1 + alpha / A, -2 * cos_w0, 1 - alpha / A)
    else:
        alpha = sin_w0 / 2.0 * math.sqrt(2.0)
        sqrt_a = 2.0 * math.sqrt(A) * alpha
        if filter_type == LOWSHELF:
            b = (
                A * ((A + 1) - (A - 1) * cos_w0 + sqrt_a),
                2 * A * ((A - 1) - (A + 1) * cos_w0),
                A * ((A + 1) - (A - 1) * cos_w0 - sqrt_a),
            )
            a = (
                (A + 1) + (A - 1) * cos_w0 + sqrt_a,
                -2 * ((A - 1) + (A + 1) * cos_w0),
                (A + 1) + (A - 1) * cos_w0 - sqrt_a,
            )
        else:
            b = (
                A * ((A + 1) + (A - 1) * cos_w0 + sqrt_a),
                -2 * A * ((A - 1) + (A + 1) * cos_w0),
                A * ((A + 1) + (A - 1) * cos_w0 - sqrt_a),
            )
            a = (
                (A + 1) - (A - 1) * cos_w0 + sqrt_a,
                2 * ((A - 1) - (A + 1) * cos_w0),
                (A + 1) - (A - 1) * cos_w0 - sqrt_a,
            )

    a0 = a[0]
    if a0 == 0:
        return identity_section()
    return np.array(
        [[b[0] / a0, b[1] / a0, b[2] / a0, 1.0, a[1] / a0, a[2] / a0]],
        dtype=np.float64,
    )


def identity_section() -> np.ndarray:
    return np.array([[1.0, 0.0, 0.0, 1.0, 0.0, 0.0]], dtype=np.float64)


def magnitude_response_db(sos: np.ndarray, frequency: float, sample_rate: float) -> float:
    """Magnitude of ``sos`` at ``frequency`` in dB."""
    z = np.exp(-1j * 2.0 * math.pi * frequency / sample_rate)
    h = 1.0 + 0j
    for b0, b1, b2, a0, a1, a2 in sos:
        h *= (b0 + b1 * z + b2 * z * z) / (a0 + a1 * z + a2 * z * z)
    return float(20.0 * np.log10(max(abs(h), 1e-12)))


class BiquadFilter:
    """
    Stateful multichannel biquad.

    ``configure`` redesigns the section only when a parameter actually
    moved; ``process`` filters a (channels, frames) block in place of the
    previous one, keeping the delay-line state.
    """

    def __init__(
        self,
        filter_type: str,
        sample_rate: float,
        channels: int = 2,
        frequency: float = 350.0,
        q: float = 1.0,
        gain_db: float = 0.0,
    ):
        if filter_type not in FILTER_TYPES:
            raise ValueError(f"Unknown filter type: {filter_type}")
        self.filter_type = filter_type
        self.sample_rate = float(sample_rate)
        self.channels = int(channels)
        self._zi = np.zeros((1, self.channels, 2), dtype=np.float64)
        self._params: Optional[Tuple[float, float, float]] = None
        self.sos = identity_section()
        self.configure(frequency, q, gain_db)

    def configure(self, frequency: float, q: float, gain_db: float) -> None:
        params = (float(frequency), float(q), float(gain_db))
        if params == self._params:
            return
        self._params = params
        self.sos = biquad_coefficients(self.filter_type, params[0], self.sample_rate, params[1], params[2])

    def process(self, block: np.ndarray) -> np.ndarray:
        if block.shape[-1] == 0:
            return block
        out, self._zi = sosfilt(self.sos, block, axis=-1, zi=self._zi)
        return out

    def reset(self) -> None:
        self._zi = np.zeros_like(self._zi)
