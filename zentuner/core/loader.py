"""
Audio intake for ZenTuner.

Decodes files or in-memory bytes into AudioSource at their native
sample rate, keeping every channel.
"""

import asyncio
import io
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set, Tuple

import librosa
import numpy as np
import soundfile as sf

from zentuner.core.models import AudioSource
from zentuner.utils.errors import AudioLoadError, FileTooLargeError, UnsupportedFormatError


# Constants
SUPPORTED_FORMATS: Dict[str, str] = {
    '.wav': 'soundfile',
    '.aif': 'soundfile',
    '.aiff': 'soundfile',
    '.flac': 'soundfile',
    '.ogg': 'soundfile',
    '.mp3': 'audioread',
}

MAX_FILE_SIZE: int = 524288000  # 500 MB

logger = logging.getLogger('loader')


class AudioLoader:
    """
    Loads audio files and creates AudioSource instances.

    Thread-safe and stateless - can be used concurrently.
    """

    def __init__(
        self,
        max_file_size: int = MAX_FILE_SIZE,
        supported_formats: Optional[Iterable[str]] = None,
    ):
        """
        Initialize loader with configuration.

        Args:
            max_file_size: Maximum file size in bytes
            supported_formats: File suffixes to accept (defaults to SUPPORTED_FORMATS)
        """
        self.max_file_size = max_file_size
        self.supported_suffixes: Set[str] = {
            s.lower() for s in (supported_formats or SUPPORTED_FORMATS.keys())
        }

    def load(self, file_path: Path) -> AudioSource:
        """
        Decode an audio file.

        Args:
            file_path: Path to audio file

        Returns:
            AudioSource: Decoded audio at its native rate

        Raises:
            FileNotFoundError: File doesn't exist
            UnsupportedFormatError: File format not supported
            FileTooLargeError: File exceeds size limit
            AudioLoadError: Audio data is invalid
        """
        file_path = Path(file_path)
        file_size = self._validate_file(file_path)

        if SUPPORTED_FORMATS.get(file_path.suffix.lower()) == 'soundfile':
            channels, sample_rate = self._decode_soundfile(str(file_path), file_path)
        else:
            channels, sample_rate = self._decode_librosa(file_path)

        channels = self._validate_audio_data(channels, file_path)
        logger.info(
            f"Loaded {file_path.name}: {sample_rate} Hz, {channels.shape[0]} ch, "
            f"{channels.shape[1] / sample_rate:.2f} s"
        )
        return AudioSource(channels, sample_rate, name=file_path.name, file_size=file_size)

    def load_bytes(self, data: bytes, name: str = "untitled") -> AudioSource:
        """
        Decode audio held in memory (any container soundfile understands).

        Raises:
            FileTooLargeError: Data exceeds size limit
            AudioLoadError: Data cannot be decoded
        """
        if len(data) > self.max_file_size:
            raise FileTooLargeError(
                f"Audio data too large: {len(data) / 1024 / 1024:.1f} MB",
                file_size=len(data),
                max_size=self.max_file_size
            )
        channels, sample_rate = self._decode_soundfile(io.BytesIO(data), Path(name))
        channels = self._validate_audio_data(channels, Path(name))
        return AudioSource(channels, sample_rate, name=name, file_size=len(data))

    def _validate_file(self, file_path: Path) -> int:
        """Validate file exists, has supported format, and is within size limit."""
        if not file_path.exists():
            raise FileNotFoundError(f"Audio file not found: {file_path}")

        suffix = file_path.suffix.lower()
        if suffix not in self.supported_suffixes:
            raise UnsupportedFormatError(
                f"Format {suffix} not supported. "
                f"Supported formats: {', '.join(sorted(self.supported_suffixes))}",
                format=suffix
            )

        file_size = file_path.stat().st_size
        if file_size > self.max_file_size:
            raise FileTooLargeError(
                f"File too large: {file_size / 1024 / 1024:.1f} MB. "
                f"Maximum: {self.max_file_size / 1024 / 1024:.1f} MB",
                file_size=file_size,
                max_size=self.max_file_size
            )
        return file_size

    def _decode_soundfile(self, source: Any, file_path: Path) -> Tuple[np.ndarray, int]:
        try:
            data, sample_rate = sf.read(source, dtype='float32', always_2d=True)
        except (RuntimeError, TypeError) as e:
            raise AudioLoadError(
                f"Failed to decode audio from {file_path}: {e}",
                file_path=str(file_path)
            ) from e
        return data.T, int(sample_rate)

    def _decode_librosa(self, file_path: Path) -> Tuple[np.ndarray, int]:
        """Fallback decoder for compressed formats soundfile may not read."""
        try:
            data, sample_rate = librosa.load(str(file_path), sr=None, mono=False, dtype=np.float32)
        except Exception as e:
            raise AudioLoadError(
                f"Failed to load audio data from {file_path}: {e}",
                file_path=str(file_path)
            ) from e
        return np.atleast_2d(data), int(sample_rate)

    def _validate_audio_data(self, audio_data: np.ndarray, file_path: Path) -> np.ndarray:
        """Validate audio data integrity."""
        if audio_data.size == 0:
            raise AudioLoadError(f"Audio file is empty: {file_path}", file_path=str(file_path))

        if not np.all(np.isfinite(audio_data)):
            logger.warning(f"Audio contains non-finite samples, zeroing them: {file_path}")
            audio_data = np.nan_to_num(audio_data, nan=0.0, posinf=0.0, neginf=0.0)

        rms = np.sqrt(np.mean(audio_data ** 2))
        if rms < 1e-6:
            logger.warning(f"Audio appears to be silent: {file_path}")

        return audio_data


class AsyncAudioLoader:
    """
    Async wrapper around AudioLoader for non-blocking I/O.

    Args:
        loader: Wrapped synchronous loader
        executor: Executor to decode on; None uses the event loop's default
                  executor, which the loop owns and shuts down itself
    """

    def __init__(
        self,
        loader: Optional[AudioLoader] = None,
        executor: Optional[ThreadPoolExecutor] = None
    ):
        self.loader = loader or AudioLoader()
        self.executor = executor

    async def load(self, file_path: Path) -> AudioSource:
        """Decode a file without blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self.loader.load, file_path)

    async def load_bytes(self, data: bytes, name: str = "untitled") -> AudioSource:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self.loader.load_bytes, data, name)

    def shutdown(self) -> None:
        """Shutdown an explicitly supplied executor."""
        if self.executor is not None:
            self.executor.shutdown(wait=True)


def create_audio_loader(config: Optional[Dict[str, Any]] = None) -> AudioLoader:
    """
    Factory function to create AudioLoader from the ``audio`` config section.

    Args:
        config: Optional configuration dict

    Returns:
        AudioLoader: Configured loader instance
    """
    if config is None:
        config = {}

    return AudioLoader(
        max_file_size=config.get('max_file_size', MAX_FILE_SIZE),
        supported_formats=config.get('supported_formats'),
    )
