"""Shared fixtures for ZenTuner tests."""

from concurrent.futures import Future
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pytest
import soundfile as sf

from zentuner.core.coordinator import RequestKind
from zentuner.core.models import AnalysisResult, AudioSource
from zentuner.utils.errors import AnalysisError


# ---------------------------------------------------------------------------
# Signal helpers
# ---------------------------------------------------------------------------


def sine(frequency: float, duration: float = 1.0, sample_rate: int = 44100,
         amplitude: float = 0.5, phase: float = 0.0) -> np.ndarray:
    """Mono float32 sine."""
    t = np.arange(int(duration * sample_rate)) / sample_rate
    return (amplitude * np.sin(2 * np.pi * frequency * t + phase)).astype(np.float32)


def make_source(data: Optional[np.ndarray] = None, sample_rate: int = 44100,
                name: str = "tone.wav", stereo: bool = True) -> AudioSource:
    """AudioSource from mono samples (a 441 Hz half-second tone by default)."""
    if data is None:
        data = sine(441.0, duration=0.5, sample_rate=sample_rate)
    channels = np.vstack([data, data]) if stereo else data[np.newaxis, :]
    return AudioSource(channels, sample_rate, name=name)


def write_wav(path: Path, data: np.ndarray, sample_rate: int = 44100) -> Path:
    """Write mono or (channels, frames) float data as a 16-bit WAV."""
    frames = data.T if data.ndim == 2 else data
    sf.write(str(path), frames, sample_rate, subtype='PCM_16')
    return path


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class ScriptedCoordinator:
    """
    Stand-in for AnalysisCoordinator.

    With ``auto=True`` every request resolves immediately from ``results``;
    otherwise requests stay pending until ``answer_all()``. A result that is
    an exception instance rejects the request.
    """

    def __init__(self, results: Optional[Dict[RequestKind, Any]] = None, auto: bool = True):
        self.results = {
            RequestKind.DETECT_TUNING: 432.0,
            RequestKind.DETECT_BASS: 55.0,
            RequestKind.DETECT_PHASE: 0.004,
            RequestKind.DETECT_HIRES: False,
        }
        self.results.update(results or {})
        self.auto = auto
        self.requests: List[Tuple[RequestKind, Dict[str, Any], Future]] = []
        self.shut_down = False

    def submit(self, kind: Any, payload: Dict[str, Any]) -> Future:
        kind = RequestKind(kind)
        future: Future = Future()
        self.requests.append((kind, payload, future))
        if self.auto:
            self._answer(kind, future)
        return future

    def _answer(self, kind: RequestKind, future: Future) -> None:
        value = self.results[kind]
        if isinstance(value, Exception):
            future.set_exception(value)
        else:
            future.set_result(value)

    def answer_all(self) -> None:
        for kind, _, future in self.requests:
            if not future.done():
                self._answer(kind, future)

    def kinds(self) -> List[RequestKind]:
        return [kind for kind, _, _ in self.requests]

    def shutdown(self, wait: bool = True) -> None:
        self.shut_down = True


class FakeOutput:
    """Playback output that records start/stop instead of opening a device."""

    instances: List["FakeOutput"] = []

    def __init__(self, graph, block_size=1024, device=None, on_finished=None):
        self.graph = graph
        self.block_size = block_size
        self.device = device
        self.on_finished = on_finished
        self.started = False
        self.stopped = False
        FakeOutput.instances.append(self)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def pull(self, n_blocks: int = 1) -> None:
        """Render blocks the way the device callback would."""
        for _ in range(n_blocks):
            self.graph.process(self.block_size)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def source():
    """Stereo 441 Hz tone, half a second at 44.1 kHz."""
    return make_source()


@pytest.fixture
def tone_wav(tmp_path):
    """Two-second stereo WAV of a 441 Hz tone."""
    data = sine(441.0, duration=2.0)
    return write_wav(tmp_path / "tone.wav", np.vstack([data, data]))


@pytest.fixture
def cache_path(tmp_path):
    """Location for a throwaway SQLite cache."""
    return tmp_path / "cache" / "zentuner.sqlite3"


@pytest.fixture
def coordinator():
    """ScriptedCoordinator answering 432 Hz reference, 55 Hz bass."""
    return ScriptedCoordinator()


@pytest.fixture
def fake_output():
    FakeOutput.instances = []
    return FakeOutput


@pytest.fixture
def analysis_432():
    """Analysis of a recording tuned to 432 Hz with a 55 Hz bass."""
    return AnalysisResult(reference_pitch_hz=432.0, bass_root_hz=55.0, phase_offset_sec=0.004)


@pytest.fixture
def failing_result():
    return AnalysisError("estimator crashed", request_kind="DETECT_TUNING")
