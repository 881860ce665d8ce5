"""Tests for dithered 16-bit encoding and offline rendering."""

import io
import math

import numpy as np
import pytest
import soundfile as sf

from conftest import make_source, sine
from zentuner.core.models import AnalysisResult, ProcessingSettings
from zentuner.dsp.encoder import DITHER_SCALE, ERROR_FEEDBACK, encode_wav, encode_wav_bytes, quantize_pcm16
from zentuner.dsp.render import OfflineRenderer


class TestQuantize:
    def test_silence_stays_within_one_lsb(self):
        pcm, _, _ = quantize_pcm16(np.zeros((2, 4096)), rng=np.random.default_rng(0))
        assert pcm.dtype == np.int16
        assert pcm.shape == (4096, 2)
        assert np.max(np.abs(pcm.astype(np.int32))) <= 1

    def test_error_is_bounded(self):
        x = np.vstack([sine(441.0, duration=0.1, amplitude=0.9)] * 2)
        pcm, errors, peak_error = quantize_pcm16(x, rng=np.random.default_rng(1))
        assert peak_error <= 1.0 / 32767.0
        assert errors.shape == (2,)
        decoded = pcm[:, 0] / 32767.0
        assert np.max(np.abs(decoded - x[0])) < 3.0 / 32767.0

    def test_full_scale_clamps(self):
        pcm, _, _ = quantize_pcm16(np.array([[2.0, -2.0]]), rng=np.random.default_rng(2))
        assert pcm[:, 0].tolist() == [32767, -32768]

    def test_seeded_output_is_reproducible(self):
        x = np.vstack([sine(441.0, duration=0.05)] * 2)
        first, _, _ = quantize_pcm16(x, rng=np.random.default_rng(7))
        second, _, _ = quantize_pcm16(x, rng=np.random.default_rng(7))
        np.testing.assert_array_equal(first, second)

    def test_follows_the_per_sample_rule(self):
        x = sine(441.0, duration=0.005, amplitude=0.8)
        pcm, errors, _ = quantize_pcm16(x, rng=np.random.default_rng(9))

        rng = np.random.default_rng(9)
        dither = (rng.random(len(x)) - rng.random(len(x))) * DITHER_SCALE
        error = 0.0
        expected = []
        for sample, d in zip(x.astype(np.float64), dither):
            shaped = min(1.0, max(-1.0, sample + d + ERROR_FEEDBACK * error))
            value = round(shaped * (32768.0 if shaped < 0 else 32767.0))
            error = shaped - value / (32768.0 if value < 0 else 32767.0)
            expected.append(value)

        assert pcm[:, 0].tolist() == expected
        assert errors[0] == pytest.approx(error)

    def test_mono_input(self):
        pcm, _, _ = quantize_pcm16(sine(441.0, duration=0.01), rng=np.random.default_rng(0))
        assert pcm.shape == (441, 1)


class TestEncodeWav:
    def test_written_file_is_16_bit(self, tmp_path):
        x = np.vstack([sine(441.0, duration=0.1)] * 2)
        path = tmp_path / "out.wav"
        encode_wav(str(path), x, 44100, rng=np.random.default_rng(0))

        info = sf.info(str(path))
        assert info.subtype == 'PCM_16'
        assert info.channels == 2
        assert info.samplerate == 44100
        data, _ = sf.read(str(path), dtype='int16')
        assert data.shape == (4410, 2)

    def test_silent_buffer_decodes_within_one_lsb(self):
        silence = np.zeros((2, 44100 * 5))
        data = encode_wav_bytes(silence, 44100, rng=np.random.default_rng(4))
        decoded, _ = sf.read(io.BytesIO(data), dtype='int16')
        assert decoded.shape == (44100 * 5, 2)
        assert np.max(np.abs(decoded.astype(np.int32))) <= 1

    def test_feedback_error_stays_bounded_over_seconds(self):
        rng = np.random.default_rng(5)
        errors = None
        for _ in range(10):
            pcm, errors, peak_error = quantize_pcm16(np.zeros((2, 44100)), rng=rng, initial_error=errors)
            assert peak_error <= 1.0 / 32767.0
            assert np.all(np.abs(errors) <= 0.5 / 32767.0 + 1e-12)
            assert np.max(np.abs(pcm.astype(np.int32))) <= 1

    def test_bytes(self):
        data = encode_wav_bytes(np.zeros((2, 100)), 48000, rng=np.random.default_rng(0))
        assert data[:4] == b'RIFF'
        assert data[8:12] == b'WAVE'
        decoded, sr = sf.read(io.BytesIO(data), dtype='int16')
        assert sr == 48000
        assert decoded.shape == (100, 2)


class TestOfflineRenderer:
    def test_output_length_follows_ratio(self, source):
        settings = ProcessingSettings(target_hz=432.0)
        analysis = AnalysisResult(reference_pitch_hz=440.0)
        rendered = OfflineRenderer(block_size=1024).render(source, analysis, settings)

        expected = int(math.ceil(source.n_frames / (432.0 / 440.0)))
        assert rendered.shape == (2, expected)
        assert OfflineRenderer.output_frames(source, analysis, settings) == expected
        assert rendered.dtype == np.float32
        assert np.all(np.isfinite(rendered))
        assert np.max(np.abs(rendered)) > 0.05

    def test_unity_ratio_keeps_length(self, source):
        rendered = OfflineRenderer().render(
            source, AnalysisResult(reference_pitch_hz=440.0), ProcessingSettings(target_hz=440.0)
        )
        assert rendered.shape == (2, source.n_frames)

    def test_output_is_aligned_with_source(self):
        data = np.zeros(8000, dtype=np.float32)
        data[2000:2200] = np.random.default_rng(3).uniform(-0.3, 0.3, 200)
        rendered = OfflineRenderer(block_size=1024).render(
            make_source(data), AnalysisResult(reference_pitch_hz=440.0), ProcessingSettings(target_hz=440.0)
        )
        assert rendered.shape == (2, 8000)
        # Only the linear-phase pre-ring of the oversampling filters leads the burst
        assert np.max(np.abs(rendered[:, :1950])) < 1e-4
        assert np.max(np.abs(rendered[:, 2000:2016])) > 0.01

    def test_progress_reaches_one(self, source):
        progress = []
        OfflineRenderer(block_size=4096).render(
            source, AnalysisResult(), ProcessingSettings(), progress_callback=progress.append
        )
        assert progress[-1] == pytest.approx(1.0)
        assert progress == sorted(progress)

    def test_mono_source_renders_stereo(self):
        source = make_source(stereo=False)
        rendered = OfflineRenderer().render(source, AnalysisResult(), ProcessingSettings(target_hz=440.0))
        assert rendered.shape[0] == 2

    def test_block_size_must_be_positive(self):
        with pytest.raises(ValueError):
            OfflineRenderer(block_size=0)
