"""
Batch export of several files into one ZIP archive.

Per queued file: decode, look up cached analysis at the current
sensitivity (or fall back to the 440 Hz / 0 Hz default), render offline
and add the encoded WAV to the archive. The archive only appears once
every file has succeeded.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import numpy as np

from zentuner.core.cache import CacheService, Fingerprinter, StatFingerprinter
from zentuner.core.coordinator import AnalysisCoordinator, RequestKind
from zentuner.core.estimator import analysis_windows
from zentuner.core.loader import AsyncAudioLoader, AudioLoader
from zentuner.core.models import AnalysisResult, AudioSource, ProcessingSettings
from zentuner.core.result_writer import ArchiveWriter, archive_filename, export_filename
from zentuner.dsp.render import OfflineRenderer
from zentuner.utils.errors import AnalysisError, ExportError, ZenTunerError

# Below this the bass estimate is treated as absent for phase alignment
PHASE_MIN_BASS_HZ = 20.0


@dataclass
class BatchResult:
    """Result of a batch export."""
    archive_path: Optional[Path] = None
    analyses: Dict[Path, AnalysisResult] = field(default_factory=dict)
    entries: List[str] = field(default_factory=list)
    total_files: int = 0
    total_time: float = 0.0

    @property
    def success_count(self) -> int:
        return len(self.entries)

    @property
    def cached_count(self) -> int:
        """Files whose analysis came from the cache."""
        return sum(1 for a in self.analyses.values() if a.from_cache)


class BatchExporter:
    """
    Renders queued files with one settings snapshot and archives them.

    Args:
        loader: Decoder for the queued files
        renderer: Offline renderer
        cache: Optional analysis cache
        coordinator: Runs phase (and, with ``analyze_missing``, full) analysis
        fingerprinter: Must match the one used when the analyses were cached
        suffix: Entry name suffix (``{stem}_{target}Hz_{suffix}.wav``)
        archive_prefix: Archive name prefix (``{prefix}_{target}Hz.zip``)
        analyze_missing: Analyze uncached files instead of using the default
        progress_callback: Optional callback(current, total, file_path)
    """

    def __init__(
        self,
        loader: AudioLoader,
        renderer: Optional[OfflineRenderer] = None,
        cache: Optional[CacheService] = None,
        coordinator: Optional[AnalysisCoordinator] = None,
        fingerprinter: Optional[Fingerprinter] = None,
        suffix: str = "ZenTuner",
        archive_prefix: str = "ZenTuner_Batch",
        analyze_missing: bool = False,
        rng: Optional[np.random.Generator] = None,
        progress_callback: Optional[Callable[[int, int, Path], None]] = None,
    ):
        self.loader = loader
        self.async_loader = AsyncAudioLoader(loader)
        self.renderer = renderer or OfflineRenderer()
        self.cache = cache
        self.coordinator = coordinator
        self.fingerprinter = fingerprinter or StatFingerprinter()
        self.suffix = suffix
        self.archive_prefix = archive_prefix
        self.analyze_missing = analyze_missing
        self.rng = rng
        self.progress_callback = progress_callback
        self.logger = logging.getLogger("batch_exporter")

    def output_path_for(self, output_dir: Path, target_hz: float) -> Path:
        return Path(output_dir) / archive_filename(self.archive_prefix, target_hz)

    async def export(
        self,
        files: Iterable[Path],
        settings: ProcessingSettings,
        output_dir: Path,
        sensitivity: float = 50,
        bass_sensitivity: float = 50,
    ) -> BatchResult:
        """
        Export every file into ``{output_dir}/{prefix}_{target}Hz.zip``.

        Raises:
            ExportError: On the first file that fails; no archive is left behind
        """
        start_time = time.time()
        files = [Path(f) for f in files]
        if not files:
            raise ExportError("Nothing to export: the batch queue is empty")

        output_path = self.output_path_for(output_dir, settings.target_hz)
        result = BatchResult(total_files=len(files))
        self.logger.info(f"Exporting {len(files)} files to {output_path}")

        loop = asyncio.get_running_loop()
        with ArchiveWriter(output_path, rng=self.rng) as archive:
            for index, file_path in enumerate(files, start=1):
                if self.progress_callback:
                    self.progress_callback(index, len(files), file_path)
                try:
                    source = await self.async_loader.load(file_path)
                    analysis = await self._analysis_for(
                        file_path, source, settings, sensitivity, bass_sensitivity
                    )
                    rendered = await loop.run_in_executor(
                        None, self.renderer.render, source, analysis, settings
                    )
                    entry = export_filename(file_path.name, settings.target_hz, self.suffix)
                    await loop.run_in_executor(
                        None, archive.add_wav, entry, rendered, source.sample_rate
                    )
                except ExportError:
                    raise
                except (ZenTunerError, OSError, ValueError, RuntimeError) as e:
                    self.logger.error(f"Batch export failed on {file_path}: {e}")
                    raise ExportError(
                        f"Failed to export {file_path.name}: {e}",
                        output_path=str(output_path),
                        source_name=file_path.name,
                    ) from e

                result.analyses[file_path] = analysis
                result.entries.append(entry)
                self.logger.debug(f"Added {entry}")

            result.archive_path = archive.commit()

        result.total_time = time.time() - start_time
        self.logger.info(
            f"Batch complete: {result.success_count} files "
            f"({result.cached_count} with cached analysis) in {result.total_time:.2f}s"
        )
        return result

    async def _analysis_for(
        self,
        file_path: Path,
        source: AudioSource,
        settings: ProcessingSettings,
        sensitivity: float,
        bass_sensitivity: float,
    ) -> AnalysisResult:
        analysis = None
        if self.cache is not None:
            fingerprint = self.fingerprinter.fingerprint(file_path)
            analysis = await self.cache.get_analysis(fingerprint, sensitivity)

        if analysis is None:
            if self.analyze_missing and self.coordinator is not None:
                analysis = await self._analyze(source, sensitivity, bass_sensitivity)
            else:
                analysis = AnalysisResult.default(sensitivity)

        if settings.phase_lock and analysis.bass_root_hz > PHASE_MIN_BASS_HZ and self.coordinator is not None:
            phase = await self._submit(RequestKind.DETECT_PHASE, {
                'data': source.channel(0)[:4096],
                'sample_rate': source.sample_rate,
                'frequency': analysis.bass_root_hz,
            }, 0.0)
            analysis = replace(analysis, phase_offset_sec=phase)
        return analysis

    async def _analyze(self, source: AudioSource, sensitivity: float, bass_sensitivity: float) -> AnalysisResult:
        windows = analysis_windows(source)
        reference = await self._submit(RequestKind.DETECT_TUNING, {
            'data': windows.tuning, 'sample_rate': source.sample_rate, 'sensitivity': sensitivity,
        }, 440.0)
        bass = await self._submit(RequestKind.DETECT_BASS, {
            'data': windows.bass, 'sample_rate': source.sample_rate, 'sensitivity': bass_sensitivity,
        }, 0.0)
        return AnalysisResult(
            reference_pitch_hz=reference,
            bass_root_hz=bass,
            sensitivity=sensitivity,
            bass_sensitivity=bass_sensitivity,
        )

    async def _submit(self, kind: RequestKind, payload: Dict[str, Any], fallback: Any) -> Any:
        try:
            return await asyncio.wrap_future(self.coordinator.submit(kind, payload))
        except AnalysisError as e:
            self.logger.warning(f"{kind.value} failed, using {fallback}: {e}")
            return fallback


def create_batch_exporter(
    config: Dict[str, Any],
    loader: AudioLoader,
    cache: Optional[CacheService] = None,
    coordinator: Optional[AnalysisCoordinator] = None,
    fingerprinter: Optional[Fingerprinter] = None,
    progress_callback: Optional[Callable[[int, int, Path], None]] = None,
    analyze_missing: bool = False,
) -> BatchExporter:
    """Factory function to create a BatchExporter from the full config."""
    export_config = config.get('export', {})
    return BatchExporter(
        loader=loader,
        renderer=OfflineRenderer(block_size=export_config.get('block_size', 4096)),
        cache=cache,
        coordinator=coordinator,
        fingerprinter=fingerprinter,
        suffix=export_config.get('batch_suffix', 'ZenTuner'),
        archive_prefix=export_config.get('archive_prefix', 'ZenTuner_Batch'),
        analyze_missing=analyze_missing,
        progress_callback=progress_callback,
    )
