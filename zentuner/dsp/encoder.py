"""
16-bit PCM encoding with noise-shaped TPDF dither.
"""

import io
from pathlib import Path
from typing import BinaryIO, Optional, Tuple, Union

import numpy as np
import soundfile as sf
from numba import njit

DITHER_SCALE = 0.5 / 32768.0
ERROR_FEEDBACK = 0.5


@njit(cache=True, nogil=True)
def _quantize_channel(
    samples: np.ndarray,
    dither: np.ndarray,
    error: float,
    feedback: float,
) -> Tuple[np.ndarray, float, float]:
    n_frames = samples.shape[0]
    out = np.empty(n_frames, dtype=np.int16)
    peak_error = 0.0
    for i in range(n_frames):
        shaped = samples[i] + dither[i] + error * feedback
        if shaped > 1.0:
            shaped = 1.0
        elif shaped < -1.0:
            shaped = -1.0
        if shaped < 0.0:
            value = np.rint(shaped * 32768.0)
        else:
            value = np.rint(shaped * 32767.0)
        if value < 0.0:
            error = shaped - value / 32768.0
        else:
            error = shaped - value / 32767.0
        if abs(error) > peak_error:
            peak_error = abs(error)
        out[i] = np.int16(value)
    return out, error, peak_error


def quantize_pcm16(
    channels: np.ndarray,
    rng: Optional[np.random.Generator] = None,
    initial_error: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Quantize float audio to int16 with first-order error feedback.

    Per sample: add triangular dither (difference of two uniform draws)
    plus half of the previous quantization error, clamp to [-1, 1], scale
    by 32768 below zero and 32767 above, round, and carry the new error
    forward on that channel. The per-sample loop is compiled with numba.

    Args:
        channels: Float audio shaped (n_channels, n_frames)
        rng: Random generator for the dither (seed it for reproducible output)
        initial_error: Error state per channel carried in from a previous call

    Returns:
        Tuple of (pcm shaped (n_frames, n_channels) int16,
                  final per-channel error, largest absolute error seen)
    """
    channels = np.atleast_2d(np.asarray(channels, dtype=np.float64))
    n_channels, n_frames = channels.shape
    rng = rng or np.random.default_rng()
    errors = np.zeros(n_channels) if initial_error is None else np.array(initial_error, dtype=np.float64)

    pcm = np.empty((n_frames, n_channels), dtype=np.int16)
    peak_error = 0.0
    for ch in range(n_channels):
        dither = (rng.random(n_frames) - rng.random(n_frames)) * DITHER_SCALE
        out, error, channel_peak = _quantize_channel(
            np.ascontiguousarray(channels[ch]), dither, float(errors[ch]), ERROR_FEEDBACK
        )
        pcm[:, ch] = out
        errors[ch] = error
        peak_error = max(peak_error, float(channel_peak))

    return pcm, errors, peak_error


def encode_wav(
    destination: Union[str, Path, BinaryIO],
    channels: np.ndarray,
    sample_rate: int,
    rng: Optional[np.random.Generator] = None,
) -> None:
    """Dither, quantize and write a 16-bit PCM WAV file."""
    pcm, _, _ = quantize_pcm16(channels, rng=rng)
    sf.write(destination, pcm, int(sample_rate), subtype='PCM_16', format='WAV')


def encode_wav_bytes(
    channels: np.ndarray,
    sample_rate: int,
    rng: Optional[np.random.Generator] = None,
) -> bytes:
    buffer = io.BytesIO()
    encode_wav(buffer, channels, sample_rate, rng=rng)
    return buffer.getvalue()
