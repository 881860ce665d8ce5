"""
Feed-forward soft-knee compressor.
"""

import math

import numpy as np


def compressor_curve_db(level_db: np.ndarray, threshold_db: float, knee_db: float, ratio: float) -> np.ndarray:
    """Static output level for input ``level_db`` (quadratic soft knee)."""
    level_db = np.asarray(level_db, dtype=np.float64)
    slope = 1.0 / ratio - 1.0
    over = level_db - threshold_db
    out = level_db.copy()

    half_knee = knee_db / 2.0
    if knee_db > 0:
        in_knee = np.abs(over) <= half_knee
        out[in_knee] = level_db[in_knee] + slope * (over[in_knee] + half_knee) ** 2 / (2.0 * knee_db)
    above = over > half_knee
    out[above] = threshold_db + over[above] / ratio
    return out


class Compressor:
    """
    Stereo-linked compressor.

    Gain reduction is computed from the peak of each 32-frame chunk,
    smoothed with separate attack and release time constants, and
    interpolated back to per-sample gains.
    """

    CHUNK = 32

    def __init__(
        self,
        sample_rate: float,
        threshold_db: float = -12.0,
        knee_db: float = 30.0,
        ratio: float = 1.5,
        attack: float = 0.03,
        release: float = 0.25,
    ):
        if ratio < 1.0:
            raise ValueError(f"ratio must be >= 1, got {ratio}")
        self.sample_rate = float(sample_rate)
        self.threshold_db = threshold_db
        self.knee_db = knee_db
        self.ratio = ratio
        chunk_seconds = self.CHUNK / self.sample_rate
        self._attack_coeff = math.exp(-chunk_seconds / attack)
        self._release_coeff = math.exp(-chunk_seconds / release)
        self._reduction_db = 0.0

    @property
    def reduction_db(self) -> float:
        """Current gain reduction (<= 0 dB)."""
        return self._reduction_db

    def process(self, block: np.ndarray) -> np.ndarray:
        n_frames = block.shape[-1]
        if n_frames == 0:
            return block

        n_chunks = -(-n_frames // self.CHUNK)
        padded = np.zeros((block.shape[0], n_chunks * self.CHUNK))
        padded[:, :n_frames] = np.abs(block)
        peaks = padded.reshape(block.shape[0], n_chunks, self.CHUNK).max(axis=(0, 2))
        level_db = 20.0 * np.log10(np.maximum(peaks, 1e-9))
        target_db = compressor_curve_db(level_db, self.threshold_db, self.knee_db, self.ratio) - level_db

        smoothed = np.empty(n_chunks)
        reduction = self._reduction_db
        for i, target in enumerate(target_db):
            coeff = self._attack_coeff if target < reduction else self._release_coeff
            reduction = coeff * reduction + (1.0 - coeff) * target
            smoothed[i] = reduction

        # Chunk values sit at chunk ends; ramp from the previous block's value
        positions = np.concatenate(([-1.0], np.arange(1, n_chunks + 1) * self.CHUNK - 1.0))
        values = np.concatenate(([self._reduction_db], smoothed))
        gains_db = np.interp(np.arange(n_frames, dtype=np.float64), positions, values)
        self._reduction_db = reduction
        return block * 10.0 ** (gains_db / 20.0)

    def reset(self) -> None:
        self._reduction_db = 0.0
