"""
Core data models for ZenTuner.

Immutable domain models for decoded audio, analysis results, processing
settings and presets.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

# Golden ratio used by the geometric EQ, rate drift and phase-lock cycle
PHI = 1.61803398875

MAX_BASS_HISTORY = 20


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


class ProcessState(str, Enum):
    """Lifecycle of the session engine."""

    IDLE = "idle"
    DECODING = "decoding"
    ANALYZING = "analyzing"
    READY = "ready"
    RETUNING = "retuning"


class SaturationType(str, Enum):
    CLEAN = "clean"
    TAPE = "tape"
    TUBE = "tube"


class TuningPreset(float, Enum):
    """Available target references for A4 in Hz."""

    STANDARD_440 = 440.0
    NATURAL_432 = 432.0
    SOLFEGGIO_444 = 444.0
    TRANSFORMATION_528 = 528.0
    RECONNECTION_417 = 417.0

    @property
    def label(self) -> str:
        return TUNING_LABELS[self]


TUNING_LABELS = {
    TuningPreset.STANDARD_440: "Standard (440 Hz)",
    TuningPreset.NATURAL_432: "Natural (432 Hz)",
    TuningPreset.SOLFEGGIO_444: "Solfeggio (444 Hz)",
    TuningPreset.TRANSFORMATION_528: "Transformation (528 Hz)",
    TuningPreset.RECONNECTION_417: "Reconnection (417 Hz)",
}


@dataclass(frozen=True)
class AudioSource:
    """
    Immutable decoded recording.

    ``channels`` has shape (n_channels, n_frames) and dtype float32.
    Exactly one AudioSource is live in an engine at a time; loading a new
    file replaces it wholesale.
    """

    channels: np.ndarray
    sample_rate: int
    name: str = "untitled"
    file_size: int = 0

    def __post_init__(self) -> None:
        data = np.asarray(self.channels, dtype=np.float32)
        if data.ndim == 1:
            data = data[np.newaxis, :]
        if data.ndim != 2 or data.shape[0] < 1:
            raise ValueError(f"channels must be 1-D or (channels, frames), got shape {data.shape}")
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        data.setflags(write=False)
        object.__setattr__(self, 'channels', data)

    @property
    def n_channels(self) -> int:
        return int(self.channels.shape[0])

    @property
    def n_frames(self) -> int:
        return int(self.channels.shape[1])

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        return self.n_frames / float(self.sample_rate)

    @property
    def size_bytes(self) -> int:
        """Resident size of the decoded samples."""
        return int(self.channels.nbytes)

    def channel(self, index: int) -> np.ndarray:
        return self.channels[index]

    def stereo(self) -> np.ndarray:
        """Two-channel view; mono sources are duplicated, extra channels dropped."""
        if self.n_channels == 1:
            return np.vstack([self.channels[0], self.channels[0]])
        return self.channels[:2]


@dataclass(frozen=True)
class BassHistoryEntry:
    """One bass detection at a given sensitivity."""

    sensitivity: float
    frequency: float
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sensitivity': self.sensitivity,
            'frequency': self.frequency,
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BassHistoryEntry":
        return cls(
            sensitivity=float(data['sensitivity']),
            frequency=float(data['frequency']),
            timestamp=int(data.get('timestamp', 0)),
        )


def merge_bass_history(
    history: List[BassHistoryEntry],
    entry: BassHistoryEntry,
) -> Tuple[BassHistoryEntry, ...]:
    """Prepend ``entry``, keep newest first, cap at MAX_BASS_HISTORY."""
    merged = sorted([entry, *history], key=lambda e: e.timestamp, reverse=True)
    return tuple(merged[:MAX_BASS_HISTORY])


@dataclass(frozen=True)
class AnalysisResult:
    """Result of analysing one recording at a given sensitivity."""

    reference_pitch_hz: float = 440.0
    bass_root_hz: float = 0.0
    phase_offset_sec: float = 0.0
    is_hi_res: bool = False
    sensitivity: float = 50.0
    bass_sensitivity: float = 50.0
    bass_history: Tuple[BassHistoryEntry, ...] = ()
    from_cache: bool = False

    @classmethod
    def default(cls, sensitivity: float = 50.0) -> "AnalysisResult":
        """Fail-closed defaults: 440 Hz reference, no bass, not hi-res."""
        return cls(sensitivity=sensitivity, bass_sensitivity=sensitivity)

    @property
    def is_standard_tuning(self) -> bool:
        return abs(self.reference_pitch_hz - 440.0) < 1.0

    def tuning_ratio(self, target_hz: float) -> float:
        """Playback rate that moves the reference onto ``target_hz``."""
        return target_hz / self.reference_pitch_hz

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'reference_pitch_hz': self.reference_pitch_hz,
            'bass_root_hz': self.bass_root_hz,
            'phase_offset_sec': self.phase_offset_sec,
            'is_hi_res': self.is_hi_res,
            'sensitivity': self.sensitivity,
            'bass_sensitivity': self.bass_sensitivity,
            'bass_history': [e.to_dict() for e in self.bass_history],
            'from_cache': self.from_cache,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        return cls(
            reference_pitch_hz=float(data.get('reference_pitch_hz', 440.0)),
            bass_root_hz=float(data.get('bass_root_hz', 0.0)),
            phase_offset_sec=float(data.get('phase_offset_sec', 0.0)),
            is_hi_res=bool(data.get('is_hi_res', False)),
            sensitivity=float(data.get('sensitivity', 50.0)),
            bass_sensitivity=float(data.get('bass_sensitivity', data.get('sensitivity', 50.0))),
            bass_history=tuple(
                BassHistoryEntry.from_dict(e) for e in data.get('bass_history', [])
            ),
            from_cache=bool(data.get('from_cache', False)),
        )

    def to_json(self, indent: int = 2) -> str:
        """Export as JSON string."""
        return json.dumps(self.to_dict(), indent=indent)


# Allowed (min, max) for numeric settings
_SETTING_RANGES: Dict[str, Tuple[float, float]] = {
    'target_hz': (1.0, 20000.0),
    'smoothing_time_constant': (0.0, 1.0),
    'stereo_width': (0.0, 2.0),
    'binaural_beat_hz': (0.0, 100.0),
    'harmonic_warmth': (0.0, 1.0),
    'harmonic_clarity': (0.0, 1.0),
    'timbre_morph': (0.0, 2.0),
    'sub_bass': (0.0, 1.0),
    'reverb_wet': (0.0, 1.0),
    'reverb_decay': (0.0, 1.0),
    'breathing_intensity': (0.0, 1.0),
    'auto_eq_intensity': (0.0, 1.0),
    'volume': (0.0, 2.0),
}

_FFT_SIZES = (32, 64, 128, 256, 512, 1024, 2048, 4096, 8192, 16384, 32768)


@dataclass(frozen=True)
class ProcessingSettings:
    """
    Complete, always fully populated set of user-controllable parameters.

    Updates replace the whole structure (see ``with_changes``); there is no
    partial mutation.
    """

    target_hz: float = 432.0
    fft_size: int = 8192
    smoothing_time_constant: float = 0.8
    saturation_type: SaturationType = SaturationType.TUBE
    bypass_body: bool = False
    bypass_resonance: bool = False
    bypass_air: bool = False
    stereo_width: float = 1.0
    geometric_eq: bool = False
    rate_drift: bool = False
    phase_lock: bool = False
    binaural_mode: bool = False
    binaural_beat_hz: float = 8.0
    harmonic_warmth: float = 0.0
    harmonic_clarity: float = 0.0
    timbre_morph: float = 1.0
    sub_bass: float = 0.0
    reverb_wet: float = 0.0
    reverb_decay: float = 0.5
    breathing_enabled: bool = False
    breathing_intensity: float = 0.0
    auto_eq_enabled: bool = False
    auto_eq_intensity: float = 0.5
    volume: float = 1.0

    def __post_init__(self) -> None:
        """Validate and normalize fields."""
        if not isinstance(self.saturation_type, SaturationType):
            object.__setattr__(self, 'saturation_type', SaturationType(self.saturation_type))
        if self.fft_size not in _FFT_SIZES:
            raise ValueError(f"fft_size must be a power of two in {_FFT_SIZES}, got {self.fft_size}")
        for name, (low, high) in _SETTING_RANGES.items():
            value = getattr(self, name)
            if not low <= value <= high:
                raise ValueError(f"{name} must be in [{low}, {high}], got {value}")

    def with_changes(self, **changes: Any) -> "ProcessingSettings":
        """Return a new settings object with ``changes`` applied."""
        return replace(self, **changes)

    def diff(self, other: "ProcessingSettings") -> Dict[str, Tuple[Any, Any]]:
        """Fields whose value differs, as name -> (self value, other value)."""
        changed = {}
        for f in fields(self):
            old, new = getattr(self, f.name), getattr(other, f.name)
            if old != new:
                changed[f.name] = (old, new)
        return changed

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data['saturation_type'] = self.saturation_type.value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProcessingSettings":
        """Build settings from a partial dict; missing fields take defaults, unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass(frozen=True)
class Preset:
    """Named snapshot of processing settings."""

    id: str
    name: str
    data: ProcessingSettings = field(default_factory=ProcessingSettings)
    is_factory: bool = False
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'is_factory': self.is_factory,
            'created_at': self.created_at,
            'data': self.data.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Preset":
        return cls(
            id=str(data['id']),
            name=str(data['name']),
            data=ProcessingSettings.from_dict(data.get('data')),
            is_factory=bool(data.get('is_factory', False)),
            created_at=int(data.get('created_at', 0)),
        )
