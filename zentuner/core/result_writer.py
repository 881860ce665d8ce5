"""
Writers for rendered audio and analysis reports.

Audio writers never leave a half-written file behind: output goes to a
temporary file in the destination directory and is moved into place
only once complete.
"""

import json
import logging
import os
import tempfile
import zipfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from zentuner.core.estimator import added_time_seconds, note_name, shift_percentage
from zentuner.core.models import AnalysisResult
from zentuner.dsp.encoder import encode_wav, encode_wav_bytes
from zentuner.utils.errors import ExportError


def format_hz(target_hz: float) -> str:
    """``432.0`` -> ``"432"``, ``432.5`` -> ``"432.5"``."""
    return f"{target_hz:g}"


def export_filename(source_name: str, target_hz: float, suffix: str, extension: str = "wav") -> str:
    """``{stem}_{target}Hz_{suffix}.{extension}`` for an exported source."""
    stem = Path(source_name).stem or "untitled"
    return f"{stem}_{format_hz(target_hz)}Hz_{suffix}.{extension}"


def archive_filename(prefix: str, target_hz: float) -> str:
    return f"{prefix}_{format_hz(target_hz)}Hz.zip"


def _temp_path_beside(output_path: Path, suffix: str) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=f".{output_path.name}.", suffix=suffix, dir=output_path.parent)
    os.close(fd)
    return Path(name)


class WavExportWriter:
    """Writes one rendered buffer as a dithered 16-bit WAV file."""

    def __init__(self, rng: Optional[np.random.Generator] = None):
        self.rng = rng
        self.logger = logging.getLogger("result_writer.wav")

    def write(self, channels: np.ndarray, sample_rate: int, output_path: Path) -> Path:
        """
        Args:
            channels: Float audio shaped (n_channels, n_frames)
            sample_rate: Output sample rate
            output_path: Destination WAV path

        Returns:
            Path: The written file

        Raises:
            ExportError: If encoding or writing fails
        """
        output_path = Path(output_path)
        try:
            temp_path = _temp_path_beside(output_path, ".part")
        except OSError as e:
            raise ExportError(f"Cannot write to {output_path.parent}: {e}", output_path=str(output_path)) from e

        try:
            encode_wav(str(temp_path), channels, sample_rate, rng=self.rng)
            os.replace(temp_path, output_path)
        except (OSError, RuntimeError, ValueError) as e:
            temp_path.unlink(missing_ok=True)
            raise ExportError(f"Failed to write {output_path}: {e}", output_path=str(output_path)) from e

        self.logger.info(f"Exported: {output_path}")
        return output_path


class ArchiveWriter:
    """
    Collects encoded WAV entries into a ZIP archive.

    Entries are streamed into a temporary archive; ``commit()`` moves it to
    ``output_path``, ``abort()`` (or leaving the ``with`` block on an
    exception) deletes it, so a failed batch never leaves a partial
    archive.

    Example:
        with ArchiveWriter(Path("out/ZenTuner_Batch_432Hz.zip")) as archive:
            archive.add_wav("a_432Hz_ZenTuner.wav", channels, 44100)
    """

    def __init__(self, output_path: Path, rng: Optional[np.random.Generator] = None):
        self.output_path = Path(output_path)
        self.rng = rng
        self.entries: List[str] = []
        self.logger = logging.getLogger("result_writer.zip")
        try:
            self._temp_path = _temp_path_beside(self.output_path, ".part")
            self._zip: Optional[zipfile.ZipFile] = zipfile.ZipFile(
                self._temp_path, 'w', compression=zipfile.ZIP_DEFLATED
            )
        except OSError as e:
            raise ExportError(
                f"Cannot create archive {self.output_path}: {e}", output_path=str(self.output_path)
            ) from e

    def add_wav(self, entry_name: str, channels: np.ndarray, sample_rate: int) -> None:
        if self._zip is None:
            raise ExportError("Archive already closed", output_path=str(self.output_path))
        data = encode_wav_bytes(channels, sample_rate, rng=self.rng)
        self._zip.writestr(entry_name, data)
        self.entries.append(entry_name)

    def commit(self) -> Path:
        if self._zip is None:
            raise ExportError("Archive already closed", output_path=str(self.output_path))
        try:
            self._zip.close()
            self._zip = None
            os.replace(self._temp_path, self.output_path)
        except OSError as e:
            self.abort()
            raise ExportError(
                f"Failed to write archive {self.output_path}: {e}", output_path=str(self.output_path)
            ) from e
        self.logger.info(f"Archive written: {self.output_path} ({len(self.entries)} files)")
        return self.output_path

    def abort(self) -> None:
        if self._zip is not None:
            self._zip.close()
            self._zip = None
        self._temp_path.unlink(missing_ok=True)

    def __enter__(self) -> "ArchiveWriter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None or self._zip is not None:
            self.abort()


class ResultWriter(ABC):
    """Abstract base class for analysis report writers (Strategy Pattern)."""

    @abstractmethod
    def write(
        self,
        results: Dict[Path, AnalysisResult],
        output_path: Path,
        target_hz: Optional[float] = None,
    ) -> None:
        """Write results to the specified path."""
        pass


class TextResultWriter(ResultWriter):
    """Writes analysis results to a human-readable text file."""

    def __init__(self, include_timestamp: bool = True):
        self.include_timestamp = include_timestamp
        self.logger = logging.getLogger("result_writer.text")

    def write(
        self,
        results: Dict[Path, AnalysisResult],
        output_path: Path,
        target_hz: Optional[float] = None,
    ) -> None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            f.write("=" * 70 + "\n")
            f.write("ZENTUNER ANALYSIS REPORT\n")
            f.write("=" * 70 + "\n")
            if self.include_timestamp:
                f.write(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
            f.write(f"Total Files Analyzed: {len(results)}\n")
            f.write("=" * 70 + "\n\n")

            for file_path, result in results.items():
                f.write(format_analysis(Path(file_path).name, result, target_hz))
                f.write("\n")

        self.logger.info(f"Results written to: {output_path}")


class JSONResultWriter(ResultWriter):
    """Writes analysis results to a JSON file."""

    def __init__(self, indent: int = 2):
        self.indent = indent
        self.logger = logging.getLogger("result_writer.json")

    def write(
        self,
        results: Dict[Path, AnalysisResult],
        output_path: Path,
        target_hz: Optional[float] = None,
    ) -> None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        output_data = {
            "generated": datetime.now().isoformat(),
            "total_files": len(results),
            "target_hz": target_hz,
            "results": {
                str(path): dict(
                    result.to_dict(),
                    reference_note=note_name(result.reference_pitch_hz),
                    bass_note=note_name(result.bass_root_hz),
                )
                for path, result in results.items()
            }
        }

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(output_data, f, indent=self.indent, default=str)

        self.logger.info(f"Results written to: {output_path}")


def format_analysis(
    name: str,
    result: AnalysisResult,
    target_hz: Optional[float] = None,
    duration: Optional[float] = None,
) -> str:
    """Human-readable block describing one analysis."""
    lines = [
        "-" * 70,
        f"FILE: {name}",
        "-" * 70,
        f"Reference Pitch: {result.reference_pitch_hz:.2f} Hz ({note_name(result.reference_pitch_hz)})",
        f"Bass Root: {result.bass_root_hz:.2f} Hz ({note_name(result.bass_root_hz)})",
        f"Phase Offset: {result.phase_offset_sec * 1000:.3f} ms",
        f"Hi-Res Content: {'Yes' if result.is_hi_res else 'No'}",
        f"Sensitivity: {result.sensitivity:g} (bass {result.bass_sensitivity:g})",
        f"Cached: {'Yes' if result.from_cache else 'No'}",
    ]
    if target_hz:
        lines.append(
            f"Retune to {format_hz(target_hz)} Hz: "
            f"{shift_percentage(result.reference_pitch_hz, target_hz):+.2f}%"
        )
        if duration:
            lines.append(
                f"Duration Change: "
                f"{added_time_seconds(duration, result.reference_pitch_hz, target_hz):+.2f}s"
            )
    if result.bass_history:
        history = ", ".join(
            f"{e.frequency:.1f} Hz @ {e.sensitivity:g}" for e in result.bass_history[:5]
        )
        lines.append(f"Bass History: {history}")
    return "\n".join(lines) + "\n"


def create_result_writer(format: str = "text", **kwargs) -> ResultWriter:
    """
    Factory function to create appropriate result writer.

    Args:
        format: Output format ("text" or "json")
        **kwargs: Additional arguments for the writer

    Returns:
        Appropriate ResultWriter instance
    """
    writers = {
        "text": TextResultWriter,
        "txt": TextResultWriter,
        "json": JSONResultWriter,
    }

    writer_class = writers.get(format.lower())
    if writer_class is None:
        raise ValueError(f"Unknown format: {format}. Supported: {list(writers.keys())}")

    return writer_class(**kwargs)
