"""
Signal processing: automation, filters, shapers, dynamics, the processing
graph, offline rendering and PCM encoding.
"""

from zentuner.dsp.params import AudioParam
from zentuner.dsp.graph import (
    ProcessingGraph,
    PositionAccumulator,
    compute_tone_targets,
    harmonic_band_settings,
    geometric_eq_frequencies,
    mid_side_split,
    mid_side_merge,
)
from zentuner.dsp.render import OfflineRenderer
from zentuner.dsp.encoder import quantize_pcm16, encode_wav, encode_wav_bytes

__all__ = [
    "AudioParam",
    "ProcessingGraph",
    "PositionAccumulator",
    "compute_tone_targets",
    "harmonic_band_settings",
    "geometric_eq_frequencies",
    "mid_side_split",
    "mid_side_merge",
    "OfflineRenderer",
    "quantize_pcm16",
    "encode_wav",
    "encode_wav_bytes",
]
