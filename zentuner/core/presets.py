"""
Factory presets and preset ordering.
"""

import uuid
from typing import Iterable, List

from zentuner.core.models import Preset, ProcessingSettings, SaturationType, now_ms

FACTORY_PRESETS: List[Preset] = [
    Preset(
        id='factory_pure_zen',
        name='Pure Zen (432Hz)',
        is_factory=True,
        created_at=0,
        data=ProcessingSettings(
            target_hz=432.0,
            fft_size=8192,
            smoothing_time_constant=0.8,
            saturation_type=SaturationType.CLEAN,
            stereo_width=1.0,
            geometric_eq=True,
            rate_drift=True,
            phase_lock=True,
            binaural_mode=False,
            binaural_beat_hz=8.0,
            harmonic_warmth=0.0,
            harmonic_clarity=0.0,
            timbre_morph=1.0,
            sub_bass=0.0,
            reverb_wet=0.0,
            reverb_decay=0.5,
            breathing_enabled=False,
            breathing_intensity=0.0,
            auto_eq_enabled=True,
            auto_eq_intensity=0.5,
        ),
    ),
    Preset(
        id='factory_deep_meditation',
        name='Deep Meditation',
        is_factory=True,
        created_at=0,
        data=ProcessingSettings(
            target_hz=432.0,
            fft_size=8192,
            smoothing_time_constant=0.85,
            saturation_type=SaturationType.TAPE,
            stereo_width=1.2,
            geometric_eq=False,
            rate_drift=False,
            phase_lock=True,
            binaural_mode=True,
            binaural_beat_hz=8.0,
            harmonic_warmth=0.3,
            harmonic_clarity=0.0,
            timbre_morph=1.0,
            sub_bass=0.85,
            reverb_wet=0.3,
            reverb_decay=0.8,
            breathing_enabled=True,
            breathing_intensity=0.4,
            auto_eq_enabled=False,
            auto_eq_intensity=0.5,
        ),
    ),
    Preset(
        id='factory_solfeggio_528',
        name='Solfeggio 528',
        is_factory=True,
        created_at=0,
        data=ProcessingSettings(
            target_hz=528.0,
            fft_size=16384,
            smoothing_time_constant=0.7,
            saturation_type=SaturationType.CLEAN,
            bypass_body=True,
            stereo_width=1.1,
            geometric_eq=False,
            rate_drift=False,
            phase_lock=False,
            binaural_mode=False,
            binaural_beat_hz=8.0,
            harmonic_warmth=0.0,
            harmonic_clarity=0.6,
            timbre_morph=1.0,
            sub_bass=0.0,
            reverb_wet=0.1,
            reverb_decay=0.5,
            breathing_enabled=False,
            breathing_intensity=0.0,
            auto_eq_enabled=True,
            auto_eq_intensity=0.6,
        ),
    ),
]


def sort_presets(presets: Iterable[Preset]) -> List[Preset]:
    """Factory presets first, then user presets newest first."""
    return sorted(presets, key=lambda p: (not p.is_factory, -p.created_at))


def new_preset(name: str, settings: ProcessingSettings) -> Preset:
    """User preset with a fresh id."""
    name = name.strip()
    if not name:
        raise ValueError("Preset name must not be empty")
    return Preset(
        id=f"user_{uuid.uuid4().hex[:12]}",
        name=name,
        data=settings,
        is_factory=False,
        created_at=now_ms(),
    )
