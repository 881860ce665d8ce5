"""Tests for audio decoding."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from conftest import sine, write_wav
from zentuner.core.loader import AsyncAudioLoader, AudioLoader, create_audio_loader
from zentuner.utils.errors import AudioLoadError, FileTooLargeError, UnsupportedFormatError


class TestAudioLoader:
    def test_load_wav_keeps_native_rate_and_channels(self, tone_wav):
        source = AudioLoader().load(tone_wav)
        assert source.sample_rate == 44100
        assert source.channels.shape == (2, 88200)
        assert source.name == "tone.wav"
        assert source.file_size == tone_wav.stat().st_size

    def test_load_mono_and_other_rates(self, tmp_path):
        path = write_wav(tmp_path / "mono.wav", sine(440.0, duration=0.25, sample_rate=48000), 48000)
        source = AudioLoader().load(path)
        assert source.sample_rate == 48000
        assert source.channels.shape == (1, 12000)

    def test_samples_survive_16_bit_round_trip(self, tmp_path):
        data = sine(441.0, duration=0.1)
        source = AudioLoader().load(write_wav(tmp_path / "a.wav", data))
        np.testing.assert_allclose(source.channels[0], data, atol=1.0 / 16384)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            AudioLoader().load(tmp_path / "missing.wav")

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("not audio")
        with pytest.raises(UnsupportedFormatError) as exc_info:
            AudioLoader().load(path)
        assert exc_info.value.format == ".txt"

    def test_file_too_large(self, tone_wav):
        with pytest.raises(FileTooLargeError) as exc_info:
            AudioLoader(max_file_size=1024).load(tone_wav)
        assert exc_info.value.max_size == 1024

    def test_undecodable_file(self, tmp_path):
        path = tmp_path / "broken.wav"
        path.write_bytes(b"RIFF0000WAVEjunk" * 4)
        with pytest.raises(AudioLoadError):
            AudioLoader().load(path)

    def test_restricted_formats(self, tone_wav):
        with pytest.raises(UnsupportedFormatError):
            AudioLoader(supported_formats=[".flac"]).load(tone_wav)


class TestLoadBytes:
    def test_decodes_in_memory_wav(self, tone_wav):
        data = tone_wav.read_bytes()
        source = AudioLoader().load_bytes(data, name="dropped.wav")
        assert source.name == "dropped.wav"
        assert source.channels.shape == (2, 88200)
        assert source.file_size == len(data)

    def test_size_limit(self, tone_wav):
        with pytest.raises(FileTooLargeError):
            AudioLoader(max_file_size=10).load_bytes(tone_wav.read_bytes())

    def test_garbage(self):
        with pytest.raises(AudioLoadError):
            AudioLoader().load_bytes(b"\x00" * 64)


class TestAsyncAudioLoader:
    def test_load_on_default_executor(self, tone_wav):
        loader = AsyncAudioLoader()
        source = asyncio.run(loader.load(tone_wav))
        loader.shutdown()
        assert loader.executor is None
        assert source.sample_rate == 44100

    def test_load_on_supplied_executor(self, tone_wav):
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="decoder")
        loader = AsyncAudioLoader(executor=executor)
        try:
            source = asyncio.run(loader.load(tone_wav))
        finally:
            loader.shutdown()
        assert source.channels.shape == (2, 88200)
        with pytest.raises(RuntimeError):
            executor.submit(print)


class TestFactory:
    def test_defaults(self):
        loader = create_audio_loader()
        assert ".mp3" in loader.supported_suffixes
        assert ".wav" in loader.supported_suffixes

    def test_from_config(self):
        loader = create_audio_loader({'max_file_size': 2048, 'supported_formats': ['.WAV']})
        assert loader.max_file_size == 2048
        assert loader.supported_suffixes == {".wav"}
