"""
Offline rendering through a non-real-time instance of the processing graph.
"""

import logging
import math
from typing import Callable, Optional

import numpy as np

from zentuner.core.models import AnalysisResult, AudioSource, ProcessingSettings
from zentuner.dsp.graph import ProcessingGraph, compute_tone_targets

logger = logging.getLogger('renderer')


class OfflineRenderer:
    """
    Renders a whole source with every parameter set instantly.

    The output length is exactly ``ceil(duration / ratio * sample_rate)``
    frames, since retuning is playback-rate resampling.
    """

    def __init__(self, block_size: int = 4096):
        if block_size <= 0:
            raise ValueError(f"block_size must be positive, got {block_size}")
        self.block_size = block_size

    @staticmethod
    def output_frames(source: AudioSource, analysis: AnalysisResult, settings: ProcessingSettings) -> int:
        ratio = compute_tone_targets(settings, analysis).rate
        return int(math.ceil(source.n_frames / ratio))

    def render(
        self,
        source: AudioSource,
        analysis: AnalysisResult,
        settings: ProcessingSettings,
        progress_callback: Optional[Callable[[float], None]] = None,
    ) -> np.ndarray:
        """
        Args:
            source: Decoded audio to render
            analysis: Reference pitch, bass root and phase offset to tune with
            settings: Processing settings
            progress_callback: Optional callable receiving progress in [0, 1]

        Returns:
            np.ndarray: Stereo float32 output shaped (2, n_frames)
        """
        graph = ProcessingGraph(source.sample_rate, settings, live=False)
        graph.load_source(source)
        graph.set_analysis(analysis, instant=True)
        graph.apply_settings(settings, instant=True)

        total = self.output_frames(source, analysis, settings)
        logger.info(
            f"Rendering {source.name}: {source.n_frames} -> {total} frames "
            f"({analysis.reference_pitch_hz:.2f} Hz -> {settings.target_hz:.2f} Hz)"
        )

        # Render the chain latency on top and drop it from the head
        latency = graph.latency_frames
        padded = total + latency
        out = np.empty((2, padded), dtype=np.float32)
        for offset in range(0, padded, self.block_size):
            n = min(self.block_size, padded - offset)
            out[:, offset:offset + n] = graph.process(n)
            if progress_callback:
                progress_callback((offset + n) / padded)
        return out[:, latency:]
