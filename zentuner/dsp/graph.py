"""
Block-based processing graph.

The same ProcessingGraph drives live playback (pulled from the audio
callback) and offline rendering. Topology is fixed:

    varispeed source -> phase delay -> pre-gain -> body shelf
    -> resonance peak -> 8-band harmonic bank (+ parallel sub-harmonic
    branch) -> mid/side width with air shelf on the side
    -> drive -> oversampled saturator -> compressor -> makeup -> analyser

Parameter changes are always scheduled as automation: the running value
is held at "now" and a linear ramp or time-constant approach moves it to
the new target, so nothing jumps mid-block.
"""

import logging
import math
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from zentuner.core.models import (
    PHI,
    AnalysisResult,
    AudioSource,
    ProcessingSettings,
)
from zentuner.dsp.analyser import AnalyserTap
from zentuner.dsp.dynamics import Compressor
from zentuner.dsp.filters import (
    BANDPASS,
    HIGHSHELF,
    LOWPASS,
    LOWSHELF,
    PEAKING,
    BiquadFilter,
)
from zentuner.dsp.params import AudioParam
from zentuner.dsp.shapers import OversampledShaper, saturation_curve, sub_harmonic_curve

logger = logging.getLogger('graph')

PRE_GAIN = 0.707
MAKEUP_GAIN = 1.4
BODY_GAIN_DB = 0.6
RESONANCE_GAIN_DB = 0.3
AIR_GAIN_DB = 0.5
TUNED_DRIVE = 0.95
DEFAULT_BODY_HZ = 60.0
DEFAULT_RESONANCE_HZ = 432.0
DEFAULT_AIR_HZ = 16000.0
RESONANCE_Q = 0.8
HARMONIC_Q = 4.0
HARMONIC_BANDS = 8
FALLBACK_ROOT_HZ = 60.0
SUB_LOWPASS_HZ = 90.0
SUB_BANDPASS_HZ = 180.0
SUB_BANDPASS_Q = 1.5
MAX_DELAY_SECONDS = 1.0

RAMP_TIME = 0.15
TONE_TIME_CONSTANT = 0.1
PHASE_TIME_CONSTANT = 0.2
BYPASS_TIME_CONSTANT = 0.05

PHASE_NUDGE_SECONDS = 0.002
PHASE_NUDGE_WINDOW = 0.1
DRIFT_DEPTH = 0.001
BINAURAL_LEVEL = 0.05
BINAURAL_FADE_SECONDS = 2.0

# Filter parameters are evaluated once per quantum while they move
K_RATE_QUANTUM = 128


def sanitize_reference(reference_hz: float) -> float:
    """Reject implausible references; anything outside (400, 480) Hz means 440."""
    if 400.0 < reference_hz < 480.0:
        return float(reference_hz)
    return 440.0


def harmonic_band_settings(
    root_hz: float,
    warmth: float,
    clarity: float,
    sample_rate: float,
) -> List[Tuple[float, float]]:
    """
    (frequency, gain_db) for the eight harmonic bands of ``root_hz``.

    Even orders follow the decaying warmth curve, odd orders above the
    fundamental get the flat clarity gain, and bands above Nyquist are
    silenced.
    """
    root = root_hz if root_hz > 20.0 else FALLBACK_ROOT_HZ
    nyquist = sample_rate / 2.0
    bands = []
    for index in range(HARMONIC_BANDS):
        order = index + 1
        frequency = root * order
        if frequency > nyquist:
            bands.append((nyquist, 0.0))
            continue
        if order % 2 == 0:
            gain = warmth * 9.0 * max(0.2, 1.0 - 0.1 * index)
        elif order > 1:
            gain = clarity * 8.0
        else:
            gain = 0.0
        bands.append((frequency, gain))
    return bands


def geometric_eq_frequencies(bass_hz: float, sample_rate: float, enabled: bool) -> Tuple[float, float, float]:
    """Body, resonance and air frequencies, golden-ratio anchored when enabled."""
    if not enabled or bass_hz < 20.0:
        return DEFAULT_BODY_HZ, DEFAULT_RESONANCE_HZ, DEFAULT_AIR_HZ
    max_freq = sample_rate / 2.0 * 0.95
    body = bass_hz
    resonance = min(bass_hz * PHI ** 3, max_freq)
    air = min(bass_hz * PHI ** 7, 20000.0, max_freq)
    return body, resonance, air


@dataclass(frozen=True)
class ToneTargets:
    """Automation targets derived from the settings and the analysis."""

    rate: float
    body_gain_db: float
    resonance_gain_db: float
    air_gain_db: float
    drive: float
    phase_delay: float

    @property
    def tuning_active(self) -> bool:
        return self.rate != 1.0


def compute_tone_targets(settings: ProcessingSettings, analysis: AnalysisResult) -> ToneTargets:
    """Retuning targets: rate = target / reference, coloration only while retuned."""
    reference = sanitize_reference(analysis.reference_pitch_hz)
    rate = settings.target_hz / reference
    active = rate != 1.0
    delay = analysis.phase_offset_sec if settings.phase_lock and active else 0.0
    return ToneTargets(
        rate=rate,
        body_gain_db=BODY_GAIN_DB if active and not settings.bypass_body else 0.0,
        resonance_gain_db=RESONANCE_GAIN_DB if active and not settings.bypass_resonance else 0.0,
        air_gain_db=AIR_GAIN_DB if active and not settings.bypass_air else 0.0,
        drive=TUNED_DRIVE if active else 1.0,
        phase_delay=min(max(delay, 0.0), MAX_DELAY_SECONDS),
    )


def mid_side_split(stereo: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """mid = (L + R) / 2, side = (L - R) / 2."""
    left, right = stereo[0], stereo[1]
    return (left + right) * 0.5, (left - right) * 0.5


def mid_side_merge(mid: np.ndarray, side: np.ndarray) -> np.ndarray:
    """L = mid + side, R = mid - side."""
    return np.vstack([mid + side, mid - side])


def phase_lock_nudge(position_seconds: float) -> float:
    """Delay nudge for the golden-ratio cycle: early after a boundary, late before one."""
    cycle_pos = position_seconds % PHI
    if cycle_pos < PHASE_NUDGE_WINDOW:
        return -PHASE_NUDGE_SECONDS
    if cycle_pos > PHI - PHASE_NUDGE_WINDOW:
        return PHASE_NUDGE_SECONDS
    return 0.0


class PositionAccumulator:
    """
    Playback position in source seconds.

    Advanced by the playback stage with the exact number of source frames
    consumed per block, so rate changes can never make it drift.
    """

    def __init__(self, sample_rate: float):
        self.sample_rate = float(sample_rate)
        self._frames = 0.0
        self._lock = threading.Lock()

    def advance(self, frames: float) -> None:
        with self._lock:
            self._frames += frames

    def seek(self, seconds: float) -> None:
        with self._lock:
            self._frames = max(0.0, seconds) * self.sample_rate

    def reset(self) -> None:
        self.seek(0.0)

    def current_frames(self) -> float:
        with self._lock:
            return self._frames

    def current_position_seconds(self) -> float:
        with self._lock:
            return self._frames / self.sample_rate


class PlaybackStage:
    """Varispeed reader: linear interpolation at a per-sample rate."""

    def __init__(self, source: AudioSource, position: PositionAccumulator):
        self.data = source.stereo().astype(np.float64)
        self.n_frames = self.data.shape[1]
        self.position = position

    @property
    def finished(self) -> bool:
        return self.position.current_frames() >= self.n_frames

    def read(self, rates: np.ndarray) -> np.ndarray:
        start = self.position.current_frames()
        offsets = np.concatenate(([0.0], np.cumsum(rates[:-1])))
        positions = start + offsets

        idx0 = np.floor(positions).astype(np.int64)
        frac = positions - idx0
        out = np.zeros((2, len(rates)))
        valid = (idx0 >= 0) & (idx0 < self.n_frames)
        if np.any(valid):
            i0 = idx0[valid]
            i1 = i0 + 1
            has_next = i1 < self.n_frames
            i1 = np.minimum(i1, self.n_frames - 1)
            f = frac[valid]
            a = self.data[:, i0]
            b = np.where(has_next, self.data[:, i1], 0.0)
            out[:, valid] = a + (b - a) * f

        self.position.advance(float(offsets[-1] + rates[-1]))
        return out


class DelayLine:
    """Fractional delay up to ``max_delay`` seconds with linear interpolation."""

    def __init__(self, sample_rate: float, max_delay: float = MAX_DELAY_SECONDS, channels: int = 2):
        self.sample_rate = float(sample_rate)
        self.max_frames = int(math.ceil(max_delay * self.sample_rate)) + 2
        self._history = np.zeros((channels, self.max_frames))

    def process(self, block: np.ndarray, delay_seconds: np.ndarray) -> np.ndarray:
        n_frames = block.shape[1]
        buffer = np.concatenate([self._history, block], axis=1)
        delay_frames = np.clip(delay_seconds * self.sample_rate, 0.0, self.max_frames - 2)
        read = self.max_frames + np.arange(n_frames) - delay_frames
        i0 = np.floor(read).astype(np.int64)
        frac = read - i0
        i1 = np.minimum(i0 + 1, buffer.shape[1] - 1)
        out = buffer[:, i0] * (1.0 - frac) + buffer[:, i1] * frac
        self._history = buffer[:, -self.max_frames:]
        return out

    def reset(self) -> None:
        self._history[:] = 0.0


class FixedDelay:
    """Whole-frame delay, used to line a dry path up with a filtered one."""

    def __init__(self, frames: int, channels: int = 2):
        self.frames = int(frames)
        self._history = np.zeros((channels, self.frames))

    def process(self, block: np.ndarray) -> np.ndarray:
        if self.frames == 0:
            return block
        buffer = np.concatenate([self._history, block], axis=1)
        self._history = buffer[:, -self.frames:]
        return buffer[:, :block.shape[1]]

    def reset(self) -> None:
        self._history[:] = 0.0


class BinauralPair:
    """Two sines, root on the left and root + beat on the right."""

    def __init__(self, sample_rate: float):
        self.sample_rate = float(sample_rate)
        self.left_hz = FALLBACK_ROOT_HZ
        self.right_hz = FALLBACK_ROOT_HZ + 8.0
        self._phase = np.zeros(2)

    def tune(self, bass_hz: float, beat_hz: float) -> None:
        root = bass_hz if bass_hz > 30.0 else FALLBACK_ROOT_HZ
        self.left_hz = root
        self.right_hz = root + beat_hz

    def render(self, n_frames: int) -> np.ndarray:
        increments = 2.0 * math.pi * np.array([self.left_hz, self.right_hz]) / self.sample_rate
        steps = np.arange(n_frames)
        phases = self._phase[:, np.newaxis] + increments[:, np.newaxis] * steps
        self._phase = (self._phase + increments * n_frames) % (2.0 * math.pi)
        return np.sin(phases)


class ProcessingGraph:
    """
    The retuning chain.

    Args:
        sample_rate: Rate of the source and of the output
        settings: Initial processing settings
        live: Live graphs add the binaural pair, rate drift and phase
              nudges; offline renders leave them out
    """

    def __init__(
        self,
        sample_rate: float,
        settings: Optional[ProcessingSettings] = None,
        live: bool = True,
    ):
        self.sample_rate = float(sample_rate)
        self.live = live
        self.settings = settings or ProcessingSettings()
        self.analysis = AnalysisResult.default()
        self.compare_mode = False
        self.position = PositionAccumulator(self.sample_rate)
        self._frames_rendered = 0
        self._lock = threading.RLock()
        self._playback: Optional[PlaybackStage] = None
        self._nudge = 0.0
        self._drift_start = 0.0

        nyquist = self.sample_rate / 2.0
        self.rate = AudioParam('rate', 1.0, 0.0, 16.0)
        self.phase_delay = AudioParam('phase_delay', 0.0, 0.0, MAX_DELAY_SECONDS)
        self.body_freq = AudioParam('body_freq', DEFAULT_BODY_HZ, 10.0, nyquist)
        self.body_gain = AudioParam('body_gain', 0.0, -40.0, 40.0)
        self.resonance_freq = AudioParam('resonance_freq', DEFAULT_RESONANCE_HZ, 10.0, nyquist)
        self.resonance_gain = AudioParam('resonance_gain', 0.0, -40.0, 40.0)
        self.air_freq = AudioParam('air_freq', min(DEFAULT_AIR_HZ, nyquist), 10.0, nyquist)
        self.air_gain = AudioParam('air_gain', 0.0, -40.0, 40.0)
        self.harmonic_freqs = [
            AudioParam(f'harmonic_{i + 1}_freq', FALLBACK_ROOT_HZ * (i + 1), 10.0, nyquist)
            for i in range(HARMONIC_BANDS)
        ]
        self.harmonic_gains = [
            AudioParam(f'harmonic_{i + 1}_gain', 0.0, -40.0, 40.0)
            for i in range(HARMONIC_BANDS)
        ]
        self.sub_gain = AudioParam('sub_gain', 0.0, 0.0, 2.0)
        self.width = AudioParam('width', 1.0, 0.0, 2.0)
        self.drive = AudioParam('drive', 1.0, 0.0, 4.0)
        self.makeup = AudioParam('makeup', MAKEUP_GAIN, 0.0, 4.0)
        self.binaural_gain = AudioParam('binaural_gain', 0.0, 0.0, 1.0)

        self._body = BiquadFilter(LOWSHELF, self.sample_rate, 2, DEFAULT_BODY_HZ)
        self._resonance = BiquadFilter(PEAKING, self.sample_rate, 2, DEFAULT_RESONANCE_HZ, RESONANCE_Q)
        self._harmonics = [
            BiquadFilter(PEAKING, self.sample_rate, 2, FALLBACK_ROOT_HZ * (i + 1), HARMONIC_Q)
            for i in range(HARMONIC_BANDS)
        ]
        self._sub_lowpass = BiquadFilter(LOWPASS, self.sample_rate, 2, SUB_LOWPASS_HZ, 0.7071)
        self._sub_shaper = OversampledShaper(sub_harmonic_curve(), channels=2)
        self._sub_bandpass = BiquadFilter(BANDPASS, self.sample_rate, 2, SUB_BANDPASS_HZ, SUB_BANDPASS_Q)
        self._dry_delay = FixedDelay(self._sub_shaper.latency_frames, channels=2)
        self._air = BiquadFilter(HIGHSHELF, self.sample_rate, 1, min(DEFAULT_AIR_HZ, nyquist))
        self._delay = DelayLine(self.sample_rate)
        self._saturator = OversampledShaper(saturation_curve(self.settings.saturation_type), channels=2)
        self._compressor = Compressor(self.sample_rate)
        self._binaural = BinauralPair(self.sample_rate)
        self.analyser = AnalyserTap(
            self.sample_rate, self.settings.fft_size, self.settings.smoothing_time_constant
        )

    # ------------------------------------------------------------------
    # Clock and source
    # ------------------------------------------------------------------

    @property
    def current_time(self) -> float:
        """Graph clock in seconds of rendered output."""
        return self._frames_rendered / self.sample_rate

    @property
    def latency_frames(self) -> int:
        """Frames between a source frame entering and leaving the chain."""
        return self._dry_delay.frames + self._saturator.latency_frames

    @property
    def all_params(self) -> List[AudioParam]:
        return [
            self.rate, self.phase_delay, self.body_freq, self.body_gain,
            self.resonance_freq, self.resonance_gain, self.air_freq, self.air_gain,
            *self.harmonic_freqs, *self.harmonic_gains,
            self.sub_gain, self.width, self.drive, self.makeup, self.binaural_gain,
        ]

    def load_source(self, source: AudioSource) -> None:
        if source.sample_rate != int(self.sample_rate):
            raise ValueError(
                f"Source rate {source.sample_rate} does not match graph rate {self.sample_rate}"
            )
        with self._lock:
            self.position.reset()
            self._playback = PlaybackStage(source, self.position)
            self._reset_state()

    @property
    def has_source(self) -> bool:
        return self._playback is not None

    @property
    def finished(self) -> bool:
        return self._playback is None or self._playback.finished

    def seek(self, seconds: float) -> None:
        with self._lock:
            self.position.seek(seconds)
            self._reset_state()

    def _reset_state(self) -> None:
        for stage in (
            self._body, self._resonance, *self._harmonics, self._sub_lowpass,
            self._sub_shaper, self._sub_bandpass, self._dry_delay, self._air, self._delay,
            self._saturator, self._compressor,
        ):
            stage.reset()
        self.analyser.reset()

    def is_settled(self) -> bool:
        """True when no automation is still moving."""
        with self._lock:
            now = self.current_time
            return all(p.is_settled(now) for p in self.all_params)

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------

    def _ramp(self, param: AudioParam, value: float, instant: bool) -> None:
        if instant:
            param.set_value(value)
            return
        now = self.current_time
        param.cancel_and_hold_at_time(now)
        param.linear_ramp_to_value_at_time(value, now + RAMP_TIME)

    def _approach(self, param: AudioParam, value: float, time_constant: float, instant: bool) -> None:
        if instant:
            param.set_value(value)
            return
        now = self.current_time
        param.cancel_and_hold_at_time(now)
        param.set_target_at_time(value, now, time_constant)

    def set_analysis(self, analysis: AnalysisResult, instant: bool = False) -> None:
        """Adopt a new analysis and re-derive every dependent target."""
        with self._lock:
            self.analysis = analysis
            self._binaural.tune(analysis.bass_root_hz, self.settings.binaural_beat_hz)
            self._apply_eq_frequencies(instant)
            self.apply_tuning(instant)

    def apply_tuning(self, instant: bool = False) -> None:
        """Schedule rate, coloration, drive and phase delay for the current target."""
        with self._lock:
            if self.compare_mode:
                return
            targets = compute_tone_targets(self.settings, self.analysis)
            self._ramp(self.rate, targets.rate, instant)
            self._ramp(self.body_gain, targets.body_gain_db, instant)
            self._ramp(self.resonance_gain, targets.resonance_gain_db, instant)
            self._ramp(self.air_gain, targets.air_gain_db, instant)
            self._ramp(self.drive, targets.drive, instant)
            self._nudge = 0.0
            self._approach(self.phase_delay, targets.phase_delay, PHASE_TIME_CONSTANT, instant)
            self._apply_harmonics(instant)
            self._approach(self.sub_gain, self.settings.sub_bass * 2.0, TONE_TIME_CONSTANT, instant)
            logger.debug(
                f"Tuning scheduled: rate={targets.rate:.5f} active={targets.tuning_active} "
                f"instant={instant}"
            )

    def _apply_harmonics(self, instant: bool) -> None:
        bands = harmonic_band_settings(
            self.analysis.bass_root_hz,
            self.settings.harmonic_warmth,
            self.settings.harmonic_clarity,
            self.sample_rate,
        )
        for (frequency, gain), freq_param, gain_param in zip(bands, self.harmonic_freqs, self.harmonic_gains):
            self._approach(freq_param, frequency, TONE_TIME_CONSTANT, instant)
            self._approach(gain_param, gain, TONE_TIME_CONSTANT, instant)

    def _apply_eq_frequencies(self, instant: bool) -> None:
        body, resonance, air = geometric_eq_frequencies(
            self.analysis.bass_root_hz, self.sample_rate, self.settings.geometric_eq
        )
        self._approach(self.body_freq, body, TONE_TIME_CONSTANT, instant)
        self._approach(self.resonance_freq, resonance, TONE_TIME_CONSTANT, instant)
        self._approach(self.air_freq, air, TONE_TIME_CONSTANT, instant)

    def apply_settings(self, settings: ProcessingSettings, instant: bool = False) -> None:
        """
        Replace the whole settings structure and automate what changed.

        With ``instant`` every parameter is set directly, which is only
        used when playback starts or for offline rendering.
        """
        with self._lock:
            old = self.settings
            self.settings = settings
            changed = old.diff(settings)

            if instant:
                self._saturator.set_curve(saturation_curve(settings.saturation_type))
                self.analyser.configure(settings.fft_size, settings.smoothing_time_constant)
                self._binaural.tune(self.analysis.bass_root_hz, settings.binaural_beat_hz)
                self._apply_eq_frequencies(True)
                self.width.set_value(settings.stereo_width)
                self.makeup.set_value(MAKEUP_GAIN * settings.volume)
                self.binaural_gain.set_value(0.0)
                if self.live and settings.binaural_mode:
                    self._start_binaural()
                self._drift_start = self.current_time
                if self.compare_mode:
                    self._enter_compare()
                else:
                    self.apply_tuning(True)
                return

            if not changed:
                return
            logger.debug(f"Settings changed: {sorted(changed)}")

            if 'saturation_type' in changed:
                self._saturator.set_curve(saturation_curve(settings.saturation_type))
            if 'fft_size' in changed or 'smoothing_time_constant' in changed:
                self.analyser.configure(settings.fft_size, settings.smoothing_time_constant)
            if 'geometric_eq' in changed:
                self._apply_eq_frequencies(False)
            if 'stereo_width' in changed:
                self._approach(self.width, settings.stereo_width, TONE_TIME_CONSTANT, False)
            if 'volume' in changed:
                now = self.current_time
                self.makeup.cancel_and_hold_at_time(now)
                self.makeup.set_value_at_time(MAKEUP_GAIN * settings.volume, now)
            if 'binaural_beat_hz' in changed:
                self._binaural.tune(self.analysis.bass_root_hz, settings.binaural_beat_hz)
            if 'binaural_mode' in changed and self.live:
                if settings.binaural_mode:
                    self._start_binaural()
                else:
                    self.binaural_gain.set_value(0.0)
            if 'rate_drift' in changed:
                self._drift_start = self.current_time

            if self.compare_mode:
                return
            if {'target_hz', 'bypass_body', 'bypass_resonance', 'bypass_air', 'phase_lock'} & set(changed):
                self.apply_tuning(False)
            else:
                if {'harmonic_warmth', 'harmonic_clarity'} & set(changed):
                    self._apply_harmonics(False)
                if 'sub_bass' in changed:
                    self._approach(self.sub_gain, settings.sub_bass * 2.0, TONE_TIME_CONSTANT, False)

    def _start_binaural(self) -> None:
        self._binaural.tune(self.analysis.bass_root_hz, self.settings.binaural_beat_hz)
        now = self.current_time
        self.binaural_gain.cancel_and_hold_at_time(now)
        self.binaural_gain.set_value_at_time(0.0, now)
        self.binaural_gain.linear_ramp_to_value_at_time(BINAURAL_LEVEL, now + BINAURAL_FADE_SECONDS)

    def set_compare(self, active: bool) -> None:
        """
        A/B against the untouched source.

        Entering forces rate 1 and fades every coloration stage out over a
        50 ms time constant; leaving re-applies the current tuning.
        """
        with self._lock:
            if active == self.compare_mode:
                return
            self.compare_mode = active
            if active:
                self._enter_compare()
            else:
                self.apply_tuning(False)

    def _enter_compare(self) -> None:
        now = self.current_time
        self.rate.cancel_and_hold_at_time(now)
        self.rate.set_value_at_time(1.0, now)
        for param in (self.body_gain, self.resonance_gain, self.air_gain, *self.harmonic_gains, self.sub_gain):
            self._approach(param, 0.0, BYPASS_TIME_CONSTANT, False)
        self._approach(self.drive, 1.0, BYPASS_TIME_CONSTANT, False)
        self._approach(self.phase_delay, 0.0, BYPASS_TIME_CONSTANT, False)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _update_phase_nudge(self) -> None:
        if not (self.live and self.settings.phase_lock) or self.compare_mode:
            return
        targets = compute_tone_targets(self.settings, self.analysis)
        if not targets.tuning_active:
            return
        nudge = phase_lock_nudge(self.position.current_position_seconds())
        if nudge != self._nudge:
            self._nudge = nudge
            self._approach(
                self.phase_delay,
                max(0.0, targets.phase_delay + nudge),
                PHASE_TIME_CONSTANT,
                False,
            )

    def _filter_params(self) -> List[AudioParam]:
        return [
            self.body_freq, self.body_gain, self.resonance_freq, self.resonance_gain,
            *self.harmonic_freqs, *self.harmonic_gains,
        ]

    def _configure_filters(self, time: float) -> None:
        self._body.configure(self.body_freq.value_at(time), 0.7071, self.body_gain.value_at(time))
        self._resonance.configure(
            self.resonance_freq.value_at(time), RESONANCE_Q, self.resonance_gain.value_at(time)
        )
        for band, freq_param, gain_param in zip(self._harmonics, self.harmonic_freqs, self.harmonic_gains):
            band.configure(freq_param.value_at(time), HARMONIC_Q, gain_param.value_at(time))

    def _run_filters(self, block: np.ndarray) -> np.ndarray:
        block = self._resonance.process(self._body.process(block))
        for band in self._harmonics:
            block = band.process(block)
        return block

    def _eq_stage(self, block: np.ndarray, start_time: float) -> np.ndarray:
        n_frames = block.shape[1]
        end_time = start_time + n_frames / self.sample_rate
        if all(p.is_static(start_time, end_time) for p in self._filter_params()):
            self._configure_filters(start_time)
            return self._run_filters(block)

        out = np.empty_like(block)
        for offset in range(0, n_frames, K_RATE_QUANTUM):
            stop = min(offset + K_RATE_QUANTUM, n_frames)
            self._configure_filters(start_time + offset / self.sample_rate)
            out[:, offset:stop] = self._run_filters(block[:, offset:stop])
        return out

    def _side_stage(self, side: np.ndarray, start_time: float) -> np.ndarray:
        n_frames = side.shape[0]
        end_time = start_time + n_frames / self.sample_rate
        side = side[np.newaxis, :]
        if self.air_freq.is_static(start_time, end_time) and self.air_gain.is_static(start_time, end_time):
            self._air.configure(self.air_freq.value_at(start_time), 0.7071, self.air_gain.value_at(start_time))
            return self._air.process(side)[0]

        out = np.empty_like(side)
        for offset in range(0, n_frames, K_RATE_QUANTUM):
            stop = min(offset + K_RATE_QUANTUM, n_frames)
            t = start_time + offset / self.sample_rate
            self._air.configure(self.air_freq.value_at(t), 0.7071, self.air_gain.value_at(t))
            out[:, offset:stop] = self._air.process(side[:, offset:stop])
        return out[0]

    def process(self, n_frames: int) -> np.ndarray:
        """Render the next ``n_frames`` of output as a (2, n_frames) float32 array."""
        with self._lock:
            if n_frames <= 0:
                return np.zeros((2, 0), dtype=np.float32)
            if self._playback is None:
                self._frames_rendered += n_frames
                return np.zeros((2, n_frames), dtype=np.float32)

            start = self.current_time
            sr = self.sample_rate
            self._update_phase_nudge()

            rates = self.rate.values(start, n_frames, sr)
            if self.live and self.settings.rate_drift and not self.compare_mode:
                t = start - self._drift_start + np.arange(n_frames) / sr
                rates = rates + DRIFT_DEPTH * np.sin(2.0 * math.pi * t / PHI)
            block = self._playback.read(np.maximum(rates, 0.0))

            block = self._delay.process(block, self.phase_delay.values(start, n_frames, sr))
            block = self._eq_stage(block * PRE_GAIN, start)

            sub = self._sub_bandpass.process(self._sub_shaper.process(self._sub_lowpass.process(block)))
            block = self._dry_delay.process(block) + sub * self.sub_gain.values(start, n_frames, sr)

            mid, side = mid_side_split(block)
            side = self._side_stage(side, start) * self.width.values(start, n_frames, sr)
            block = mid_side_merge(mid, side)

            block = self._saturator.process(block * self.drive.values(start, n_frames, sr))
            block = self._compressor.process(block)

            if self.live and self.settings.binaural_mode:
                block = block + self._binaural.render(n_frames) * self.binaural_gain.values(start, n_frames, sr)
            block = block * self.makeup.values(start, n_frames, sr)

            self.analyser.push(block)
            self._frames_rendered += n_frames
            now = self.current_time
            for param in self.all_params:
                param.prune(now)
            return block.astype(np.float32)
