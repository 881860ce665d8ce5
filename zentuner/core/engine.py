"""
Session engine for ZenTuner.

Owns the one live AudioSource, its processing graph, the analysis
state machine and the user's settings, and wires the loader, analysis
coordinator, cache and playback together.
"""

import asyncio
import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

import numpy as np

from zentuner.core.batch_processor import BatchExporter, BatchResult, create_batch_exporter
from zentuner.core.cache import CacheService, Fingerprinter, create_cache_service, create_fingerprinter
from zentuner.core.coordinator import AnalysisCoordinator, RequestKind
from zentuner.core.estimator import analysis_windows
from zentuner.core.loader import AsyncAudioLoader, AudioLoader, create_audio_loader
from zentuner.core.models import (
    AnalysisResult,
    AudioSource,
    Preset,
    ProcessingSettings,
    ProcessState,
)
from zentuner.core.presets import FACTORY_PRESETS, new_preset
from zentuner.core.queue_manager import ExportQueue
from zentuner.core.result_writer import WavExportWriter, export_filename
from zentuner.dsp.analyser import AnalyserTap
from zentuner.dsp.graph import ProcessingGraph
from zentuner.dsp.render import OfflineRenderer
from zentuner.utils.config import get_default_config
from zentuner.utils.errors import AnalysisError, AudioLoadError, InvalidStateError

# Allowed lifecycle moves; a new load may start from any state
TRANSITIONS: Dict[ProcessState, FrozenSet[ProcessState]] = {
    ProcessState.IDLE: frozenset({ProcessState.DECODING}),
    ProcessState.DECODING: frozenset({ProcessState.ANALYZING, ProcessState.READY, ProcessState.IDLE}),
    ProcessState.ANALYZING: frozenset({ProcessState.READY, ProcessState.IDLE}),
    ProcessState.READY: frozenset({ProcessState.RETUNING, ProcessState.ANALYZING, ProcessState.IDLE}),
    ProcessState.RETUNING: frozenset({ProcessState.READY, ProcessState.ANALYZING, ProcessState.IDLE}),
}

# Bass estimates at or below this are treated as "no bass" for phase alignment
PHASE_MIN_BASS_HZ = 20.0


class SoundDeviceOutput:
    """
    Pulls the processing graph from a sounddevice output stream.

    ``sounddevice`` is imported on ``start()`` so the rest of the engine
    works on machines without an audio device or PortAudio.
    """

    def __init__(
        self,
        graph: ProcessingGraph,
        block_size: int = 1024,
        device: Optional[Any] = None,
        on_finished: Optional[Callable[[], None]] = None,
    ):
        self.graph = graph
        self.block_size = block_size
        self.device = device
        self.on_finished = on_finished
        self._stream = None
        self.logger = logging.getLogger('playback')

    def start(self) -> None:
        import sounddevice as sd

        def callback(outdata, frames, time_info, status):
            if status:
                self.logger.debug(f"Stream status: {status}")
            block = self.graph.process(frames)
            outdata[:] = block.T[:, :outdata.shape[1]]
            if self.graph.finished:
                raise sd.CallbackStop()

        self._stream = sd.OutputStream(
            samplerate=self.graph.sample_rate,
            blocksize=self.block_size,
            device=self.device,
            channels=2,
            dtype='float32',
            callback=callback,
            finished_callback=self._finished,
        )
        self._stream.start()

    def _finished(self) -> None:
        if self.graph.finished and self.on_finished:
            self.on_finished()

    def stop(self) -> None:
        if self._stream is not None:
            stream, self._stream = self._stream, None
            stream.stop()
            stream.close()

    @property
    def active(self) -> bool:
        return self._stream is not None and self._stream.active


class MeterPoller:
    """
    Polls THD from the analyser tap on a background thread.

    Readings are exponentially smoothed; the value drops to 0 when the
    poller stops.
    """

    def __init__(
        self,
        analyser_source: Callable[[], Optional[AnalyserTap]],
        interval: float = 0.15,
        smoothing: float = 0.2,
        on_tick: Optional[Callable[[], None]] = None,
    ):
        self._analyser_source = analyser_source
        self.interval = interval
        self.smoothing = smoothing
        self.on_tick = on_tick
        self.thd = 0.0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="meter", daemon=True)
        self._thread.start()

    def poll(self) -> None:
        """Take one reading."""
        analyser = self._analyser_source()
        if analyser is not None:
            thd = analyser.calculate_thd()
            if thd is not None:
                self.thd += (thd - self.thd) * self.smoothing
        if self.on_tick:
            self.on_tick()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.poll()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None
        self.thd = 0.0


class ZenTunerEngine:
    """
    One listening/export session.

    Design:
    - Dependency Injection: loader, coordinator, cache and output are passed in
    - Epochs: every load bumps ``epoch``; analysis for an older epoch is discarded
    - Fail closed: analysis failures fall back to AnalysisResult.default()
    - Cache misses and storage failures look the same to the engine

    Example:
        engine = create_engine(config)
        await engine.load_file(Path("song.flac"))
        engine.set_target(432)
        await engine.export_current(Path("out"))
        await engine.aclose()
    """

    def __init__(
        self,
        loader: AudioLoader,
        coordinator: AnalysisCoordinator,
        cache: Optional[CacheService] = None,
        fingerprinter: Optional[Fingerprinter] = None,
        renderer: Optional[OfflineRenderer] = None,
        config: Optional[Dict[str, Any]] = None,
        output_factory: Optional[Callable[..., Any]] = None,
    ):
        self.config = config or get_default_config()
        self.loader = loader
        self.async_loader = AsyncAudioLoader(loader)
        self.coordinator = coordinator
        self.cache = cache
        self.fingerprinter = fingerprinter or create_fingerprinter(
            self.config.get('cache', {}).get('fingerprint', 'stat')
        )
        self.renderer = renderer or OfflineRenderer(self.config.get('export', {}).get('block_size', 4096))
        self.output_factory = output_factory or SoundDeviceOutput
        self.logger = logging.getLogger('engine')

        analysis_config = self.config.get('analysis', {})
        self.default_sensitivity = float(analysis_config.get('sensitivity', 50))
        self.default_bass_sensitivity = float(analysis_config.get('bass_sensitivity', 50))
        self.sensitivity = self.default_sensitivity
        self.bass_sensitivity = self.default_bass_sensitivity

        self._state = ProcessState.IDLE
        self._state_lock = threading.RLock()
        self.epoch = 0

        self.source: Optional[AudioSource] = None
        self.source_path: Optional[Path] = None
        self.fingerprint: Optional[str] = None
        self.buffer_from_cache = False
        self.analysis = AnalysisResult.default(self.sensitivity)
        self.graph: Optional[ProcessingGraph] = None
        self.batch_queue = ExportQueue()

        default_target = float(self.config.get('processing', {}).get('default_target_hz', 432.0))
        self._baseline = ProcessingSettings(target_hz=default_target)
        self.settings = self._baseline
        self.current_preset_id: Optional[str] = None
        self._presets: List[Preset] = list(FACTORY_PRESETS)

        self.is_playing = False
        self.compare_mode = False
        self._output = None
        metering = self.config.get('metering', {})
        self.meter = MeterPoller(
            lambda: self.analyser,
            interval=metering.get('interval', 0.15),
            smoothing=metering.get('smoothing', 0.2),
            on_tick=self._refresh_retuning,
        )
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        """Current lifecycle state; ``retuning`` clears itself once automation settles."""
        self._refresh_retuning()
        return self._state

    def _refresh_retuning(self) -> None:
        with self._state_lock:
            if self._state == ProcessState.RETUNING and (self.graph is None or self.graph.is_settled()):
                self._state = ProcessState.READY
                self.logger.debug("Retuning settled")

    def _transition(self, new_state: ProcessState) -> None:
        with self._state_lock:
            if new_state == self._state:
                return
            if new_state not in TRANSITIONS[self._state]:
                raise InvalidStateError(
                    f"Cannot move from {self._state.value} to {new_state.value}",
                    state=self._state.value,
                )
            self.logger.debug(f"State {self._state.value} -> {new_state.value}")
            self._state = new_state

    def _require_source(self, action: str) -> AudioSource:
        state = self.state
        if self.source is None or state not in (ProcessState.READY, ProcessState.RETUNING):
            raise InvalidStateError(f"Cannot {action} while {state.value}", state=state.value)
        return self.source

    def _mark_retuning(self) -> None:
        with self._state_lock:
            if self._state == ProcessState.READY and self.graph is not None and not self.graph.is_settled():
                self._state = ProcessState.RETUNING

    @property
    def analyser(self) -> Optional[AnalyserTap]:
        """Visualizer tap of the live graph."""
        return self.graph.analyser if self.graph is not None else None

    @property
    def duration(self) -> float:
        return self.source.duration if self.source is not None else 0.0

    # ------------------------------------------------------------------
    # Loading and analysis
    # ------------------------------------------------------------------

    async def load_files(self, paths: List[Path]) -> Optional[AnalysisResult]:
        """Queue ``paths`` for batch export and preview the first one."""
        if not paths:
            return None
        self.batch_queue.clear()
        self.batch_queue.add_many(paths)
        return await self.load_file(Path(paths[0]), keep_queue=True)

    async def load_file(self, path: Path, keep_queue: bool = False) -> Optional[AnalysisResult]:
        """
        Decode ``path``, make it the live source and analyze it.

        Returns:
            The adopted AnalysisResult, or None when a newer load superseded
            this one before it finished

        Raises:
            AudioLoadError, FileNotFoundError: Decoding failed (engine goes idle)
        """
        path = Path(path)
        epoch = self._begin_load()
        if not keep_queue:
            self.batch_queue.clear()
            self.batch_queue.add(path)
        loop = asyncio.get_running_loop()

        try:
            fingerprint = await loop.run_in_executor(None, self.fingerprinter.fingerprint, path)
            source = None
            if self.cache is not None:
                source = await self.cache.get_buffer(fingerprint, name=path.name)
            from_cache = source is not None
            if source is None:
                source = await self.async_loader.load(path)
        except (AudioLoadError, OSError) as e:
            if epoch == self.epoch:
                self._reset_to_idle()
            self.logger.error(f"Could not load {path}: {e}")
            raise

        if epoch != self.epoch:
            self.logger.info(f"Discarding stale load of {path.name}")
            return None

        if not from_cache and self.cache is not None:
            self._spawn(self.cache.save_buffer(fingerprint, source))

        self.source_path = path
        self.fingerprint = fingerprint
        self.buffer_from_cache = from_cache
        self._install_source(source)

        cached = None
        if self.cache is not None:
            cached = await self.cache.get_analysis(fingerprint, self.sensitivity)
            if epoch != self.epoch:
                return None

        if cached is not None:
            self.logger.info(f"Analysis loaded from cache for {path.name}")
            self.bass_sensitivity = cached.bass_sensitivity
            self._adopt_analysis(cached)
            self._transition(ProcessState.READY)
            return cached

        self._transition(ProcessState.ANALYZING)
        result = await self._analyze(
            epoch, source, self.sensitivity, self.bass_sensitivity, detect_hi_res=True
        )
        if result is None:
            return None
        result = await self._store_analysis(epoch, result)
        if result is None:
            return None
        self._adopt_analysis(result)
        self._transition(ProcessState.READY)
        return result

    async def load_source(self, source: AudioSource) -> Optional[AnalysisResult]:
        """Adopt already decoded audio (no caching, always analyzed)."""
        epoch = self._begin_load()
        self.source_path = None
        self.fingerprint = None
        self.buffer_from_cache = False
        self._install_source(source)
        self._transition(ProcessState.ANALYZING)
        result = await self._analyze(epoch, source, self.sensitivity, self.bass_sensitivity, detect_hi_res=True)
        if result is None:
            return None
        self._adopt_analysis(result)
        self._transition(ProcessState.READY)
        return result

    def _begin_load(self) -> int:
        self.stop()
        with self._state_lock:
            self.epoch += 1
            self._state = ProcessState.DECODING
        self.sensitivity = self.default_sensitivity
        self.bass_sensitivity = self.default_bass_sensitivity
        self.set_compare(False)
        self.logger.debug(f"Load epoch {self.epoch}")
        return self.epoch

    def _install_source(self, source: AudioSource) -> None:
        self.source = source
        self.analysis = AnalysisResult.default(self.sensitivity)
        self.graph = ProcessingGraph(source.sample_rate, self.settings, live=True)
        self.graph.load_source(source)
        self.graph.apply_settings(self.settings, instant=True)

    def _reset_to_idle(self) -> None:
        self.stop()
        with self._state_lock:
            self._state = ProcessState.IDLE
        self.source = None
        self.source_path = None
        self.fingerprint = None
        self.graph = None
        self.analysis = AnalysisResult.default(self.sensitivity)

    def reset(self) -> None:
        """Drop the live source and the batch queue."""
        with self._state_lock:
            self.epoch += 1
        self._reset_to_idle()
        self.batch_queue.clear()
        self.sensitivity = self.default_sensitivity
        self.bass_sensitivity = self.default_bass_sensitivity

    async def _estimate(self, kind: RequestKind, payload: Dict[str, Any], fallback: Any) -> Any:
        try:
            return await asyncio.wrap_future(self.coordinator.submit(kind, payload))
        except AnalysisError as e:
            self.logger.warning(f"{kind.value} failed, using {fallback}: {e}")
            return fallback

    async def _analyze(
        self,
        epoch: int,
        source: AudioSource,
        sensitivity: float,
        bass_sensitivity: float,
        detect_hi_res: bool,
    ) -> Optional[AnalysisResult]:
        """Run the estimators; None if the epoch moved on meanwhile."""
        analysis_config = self.config.get('analysis', {})
        windows = analysis_windows(
            source,
            tuning_seconds=analysis_config.get('tuning_window_seconds', 4.0),
            bass_seconds=analysis_config.get('bass_window_seconds', 6.0),
            bass_start_fraction=analysis_config.get('bass_start_fraction', 0.2),
            bass_start_max_seconds=analysis_config.get('bass_start_max_seconds', 10.0),
            phase_samples=analysis_config.get('phase_window_samples', 4096),
        )
        sr = source.sample_rate

        is_hi_res = self.analysis.is_hi_res
        if detect_hi_res:
            is_hi_res = await self._estimate(
                RequestKind.DETECT_HIRES, {'data': source.channel(0), 'sample_rate': sr}, False
            )
        reference = await self._estimate(
            RequestKind.DETECT_TUNING,
            {'data': windows.tuning, 'sample_rate': sr, 'sensitivity': sensitivity},
            440.0,
        )
        bass = await self._estimate(
            RequestKind.DETECT_BASS,
            {'data': windows.bass, 'sample_rate': sr, 'sensitivity': bass_sensitivity},
            0.0,
        )
        phase = 0.0
        if bass > PHASE_MIN_BASS_HZ:
            phase = await self._estimate(
                RequestKind.DETECT_PHASE,
                {'data': windows.phase, 'sample_rate': sr, 'frequency': bass},
                0.0,
            )

        if epoch != self.epoch:
            self.logger.info(f"Discarding analysis from stale epoch {epoch}")
            return None

        self.logger.info(
            f"Analysis: reference {reference:.2f} Hz, bass {bass:.2f} Hz, "
            f"phase {phase * 1000:.3f} ms, hi-res {is_hi_res}"
        )
        return AnalysisResult(
            reference_pitch_hz=reference,
            bass_root_hz=bass,
            phase_offset_sec=phase,
            is_hi_res=bool(is_hi_res),
            sensitivity=sensitivity,
            bass_sensitivity=bass_sensitivity,
            bass_history=self.analysis.bass_history,
        )

    async def _store_analysis(self, epoch: int, result: AnalysisResult) -> Optional[AnalysisResult]:
        if self.cache is None or self.fingerprint is None:
            return result
        history = await self.cache.save_analysis(self.fingerprint, result)
        if epoch != self.epoch:
            return None
        return replace(result, bass_history=history)

    def _adopt_analysis(self, result: AnalysisResult) -> None:
        self.analysis = result
        if self.graph is not None:
            self.graph.set_analysis(result, instant=not self.is_playing)
            self._mark_retuning()

    async def reanalyze(
        self,
        sensitivity: Optional[float] = None,
        bass_sensitivity: Optional[float] = None,
    ) -> Optional[AnalysisResult]:
        """
        Re-run tuning and bass detection at new sensitivities.

        Hi-res detection is not repeated. Returns None if a load
        superseded the run.
        """
        source = self._require_source("reanalyze")
        if sensitivity is not None:
            self.sensitivity = float(sensitivity)
        if bass_sensitivity is not None:
            self.bass_sensitivity = float(bass_sensitivity)

        epoch = self.epoch
        self._transition(ProcessState.ANALYZING)
        result = await self._analyze(
            epoch, source, self.sensitivity, self.bass_sensitivity, detect_hi_res=False
        )
        if result is None:
            return None
        result = await self._store_analysis(epoch, result)
        if result is None:
            return None
        self._transition(ProcessState.READY)
        self._adopt_analysis(result)
        return result

    # ------------------------------------------------------------------
    # Settings and presets
    # ------------------------------------------------------------------

    def update_settings(self, settings: ProcessingSettings) -> None:
        """Replace the whole settings structure."""
        if isinstance(settings, dict):
            settings = ProcessingSettings.from_dict(settings)
        self.settings = settings
        if self.graph is not None:
            self.graph.apply_settings(settings, instant=not self.is_playing)
            self._mark_retuning()

    def set_target(self, target_hz: float) -> None:
        if target_hz == self.settings.target_hz:
            return
        self.update_settings(self.settings.with_changes(target_hz=float(target_hz)))

    def is_modified(self) -> bool:
        """True when the settings differ from the loaded preset (or the defaults)."""
        baseline = self._baseline
        preset = self._find_preset(self.current_preset_id)
        if preset is not None:
            baseline = preset.data
        return bool(baseline.diff(self.settings))

    def _find_preset(self, preset_id: Optional[str]) -> Optional[Preset]:
        if preset_id is None:
            return None
        return next((p for p in self._presets if p.id == preset_id), None)

    @property
    def presets(self) -> List[Preset]:
        return list(self._presets)

    async def list_presets(self) -> List[Preset]:
        if self.cache is not None:
            self._presets = await self.cache.get_all_presets()
        return list(self._presets)

    async def load_preset(self, preset_id: str) -> Preset:
        preset = self._find_preset(preset_id)
        if preset is None:
            await self.list_presets()
            preset = self._find_preset(preset_id)
        if preset is None:
            raise KeyError(f"Unknown preset: {preset_id}")
        self.current_preset_id = preset.id
        self.update_settings(preset.data)
        self.logger.info(f"Preset loaded: {preset.name}")
        return preset

    async def save_preset(self, name: str) -> Preset:
        """Snapshot the current settings as a new user preset and select it."""
        preset = new_preset(name, self.settings)
        if self.cache is not None:
            await self.cache.save_preset(preset)
            await self.list_presets()
        if self._find_preset(preset.id) is None:
            self._presets.append(preset)
        self.current_preset_id = preset.id
        return preset

    async def delete_preset(self, preset_id: str) -> bool:
        """
        Delete a user preset.

        If it was selected, the first remaining preset is loaded.
        """
        preset = self._find_preset(preset_id)
        if preset is not None and preset.is_factory:
            return False
        deleted = await self.cache.delete_preset(preset_id) if self.cache is not None else preset is not None
        if self.cache is not None:
            await self.list_presets()
        else:
            self._presets = [p for p in self._presets if p.id != preset_id]
        if deleted and self.current_preset_id == preset_id:
            self.current_preset_id = None
            if self._presets:
                await self.load_preset(self._presets[0].id)
        return deleted

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    def play(self) -> None:
        self._require_source("play")
        if self.is_playing:
            return
        if self.graph.finished:
            self.graph.seek(0.0)
        playback = self.config.get('playback', {})
        self.is_playing = True
        self.graph.apply_settings(self.settings, instant=True)
        self._output = self.output_factory(
            self.graph,
            block_size=playback.get('block_size', 1024),
            device=playback.get('device'),
            on_finished=self._on_playback_finished,
        )
        try:
            self._output.start()
        except Exception:
            self.is_playing = False
            self._output = None
            raise
        self.meter.start()
        self.logger.info("Playback started")

    def _on_playback_finished(self) -> None:
        self.is_playing = False
        self.meter.stop()
        self._output = None
        self.logger.info("Playback finished")

    def pause(self) -> None:
        if self._output is not None:
            output, self._output = self._output, None
            output.stop()
        if self.is_playing:
            self.logger.info("Playback paused")
        self.is_playing = False
        self.meter.stop()

    def stop(self) -> None:
        self.pause()
        if self.graph is not None:
            self.graph.seek(0.0)

    def toggle_play(self) -> bool:
        if self.is_playing:
            self.pause()
        else:
            self.play()
        return self.is_playing

    def seek(self, seconds: float) -> None:
        if self.graph is not None:
            self.graph.seek(seconds)

    def set_compare(self, active: bool) -> None:
        """A/B: hear the untreated source while ``active``."""
        self.compare_mode = active
        if self.graph is not None:
            self.graph.set_compare(active)
            self._mark_retuning()

    @property
    def current_thd(self) -> float:
        return self.meter.thd

    @property
    def position_seconds(self) -> float:
        if self.graph is None:
            return 0.0
        return self.graph.position.current_position_seconds()

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def render_current(self, progress_callback: Optional[Callable[[float], None]] = None) -> np.ndarray:
        source = self._require_source("render")
        return self.renderer.render(source, self.analysis, self.settings, progress_callback)

    async def export_current(
        self,
        output_dir: Path,
        progress_callback: Optional[Callable[[float], None]] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> Path:
        """
        Render the live source and write ``{stem}_{target}Hz_ZenMaster.wav``.

        Raises:
            InvalidStateError: No source is ready
            ExportError: Writing failed
        """
        source = self._require_source("export")
        suffix = self.config.get('export', {}).get('single_suffix', 'ZenMaster')
        output_path = Path(output_dir) / export_filename(source.name, self.settings.target_hz, suffix)
        loop = asyncio.get_running_loop()
        rendered = await loop.run_in_executor(None, self.render_current, progress_callback)
        return await loop.run_in_executor(
            None, WavExportWriter(rng).write, rendered, source.sample_rate, output_path
        )

    def create_batch_exporter(
        self,
        progress_callback: Optional[Callable[[int, int, Path], None]] = None,
        analyze_missing: bool = False,
    ) -> BatchExporter:
        return create_batch_exporter(
            self.config,
            loader=self.loader,
            cache=self.cache,
            coordinator=self.coordinator,
            fingerprinter=self.fingerprinter,
            progress_callback=progress_callback,
            analyze_missing=analyze_missing,
        )

    async def export(
        self,
        output_dir: Path,
        progress_callback: Optional[Callable[[int, int, Path], None]] = None,
    ) -> Path:
        """Single WAV for one queued file, ZIP archive for a batch."""
        if self.batch_queue.is_batch():
            result = await self.export_batch(output_dir, progress_callback)
            return result.archive_path
        return await self.export_current(output_dir)

    async def export_batch(
        self,
        output_dir: Path,
        progress_callback: Optional[Callable[[int, int, Path], None]] = None,
    ) -> BatchResult:
        exporter = self.create_batch_exporter(progress_callback)
        return await exporter.export(
            self.batch_queue.list_files(),
            self.settings,
            output_dir,
            sensitivity=self.sensitivity,
            bass_sensitivity=self.bass_sensitivity,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def flush(self) -> None:
        """Wait for background cache writes."""
        if self._background:
            await asyncio.gather(*list(self._background))

    def shutdown(self) -> None:
        """Stop playback and the analysis worker."""
        self.logger.info("Shutting down engine")
        self.pause()
        self.coordinator.shutdown()
        self.async_loader.shutdown()

    async def aclose(self) -> None:
        await self.flush()
        self.shutdown()
        if self.cache is not None:
            await self.cache.close()

    async def __aenter__(self) -> "ZenTunerEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


def create_engine(
    config: Optional[Dict[str, Any]] = None,
    output_factory: Optional[Callable[..., Any]] = None,
) -> ZenTunerEngine:
    """
    Factory function to create a fully configured engine.

    Args:
        config: Configuration dict (defaults from get_default_config())
        output_factory: Playback output constructor (SoundDeviceOutput by default)

    Returns:
        ZenTunerEngine: Configured engine
    """
    if config is None:
        config = get_default_config()

    cache_config = config.get('cache', {})
    return ZenTunerEngine(
        loader=create_audio_loader(config.get('audio', {})),
        coordinator=AnalysisCoordinator(),
        cache=create_cache_service(cache_config),
        fingerprinter=create_fingerprinter(cache_config.get('fingerprint', 'stat')),
        renderer=OfflineRenderer(config.get('export', {}).get('block_size', 4096)),
        config=config,
        output_factory=output_factory,
    )
