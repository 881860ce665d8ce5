"""Tests for audio and report writers."""

import json
import zipfile
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

from conftest import sine
from zentuner.core.models import AnalysisResult, BassHistoryEntry
from zentuner.core.result_writer import (
    ArchiveWriter,
    JSONResultWriter,
    TextResultWriter,
    WavExportWriter,
    archive_filename,
    create_result_writer,
    export_filename,
    format_analysis,
    format_hz,
)
from zentuner.utils.errors import ExportError


@pytest.fixture
def stereo():
    data = sine(441.0, duration=0.05)
    return np.vstack([data, data])


class TestNames:
    @pytest.mark.parametrize("target,expected", [(432.0, "432"), (432.5, "432.5"), (528, "528")])
    def test_format_hz(self, target, expected):
        assert format_hz(target) == expected

    def test_export_filename(self):
        assert export_filename("My Song.flac", 432.0, "ZenMaster") == "My Song_432Hz_ZenMaster.wav"
        assert export_filename("", 440.0, "ZenTuner") == "untitled_440Hz_ZenTuner.wav"

    def test_archive_filename(self):
        assert archive_filename("ZenTuner_Batch", 528.0) == "ZenTuner_Batch_528Hz.zip"


class TestWavExportWriter:
    def test_writes_and_creates_directory(self, stereo, tmp_path):
        path = tmp_path / "nested" / "out.wav"
        written = WavExportWriter(np.random.default_rng(0)).write(stereo, 44100, path)
        assert written == path
        assert sf.info(str(path)).subtype == 'PCM_16'
        assert [p.name for p in path.parent.iterdir()] == ["out.wav"]

    def test_unwritable_destination(self, stereo, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        with pytest.raises(ExportError):
            WavExportWriter().write(stereo, 44100, blocker / "out.wav")


class TestArchiveWriter:
    def test_commit(self, stereo, tmp_path):
        path = tmp_path / "batch.zip"
        with ArchiveWriter(path, rng=np.random.default_rng(0)) as archive:
            archive.add_wav("a.wav", stereo, 44100)
            archive.add_wav("b.wav", stereo, 44100)
            archive.commit()

        with zipfile.ZipFile(path) as zf:
            assert zf.namelist() == ["a.wav", "b.wav"]
        assert [p.name for p in tmp_path.iterdir()] == ["batch.zip"]

    def test_exception_aborts(self, stereo, tmp_path):
        path = tmp_path / "batch.zip"
        with pytest.raises(RuntimeError):
            with ArchiveWriter(path) as archive:
                archive.add_wav("a.wav", stereo, 44100)
                raise RuntimeError("render failed")
        assert list(tmp_path.iterdir()) == []

    def test_closed_archive_rejects_entries(self, stereo, tmp_path):
        archive = ArchiveWriter(tmp_path / "batch.zip")
        archive.commit()
        with pytest.raises(ExportError):
            archive.add_wav("late.wav", stereo, 44100)


class TestReports:
    @pytest.fixture
    def results(self):
        history = (BassHistoryEntry(70, 55.0, 2), BassHistoryEntry(50, 54.5, 1))
        return {
            Path("/music/song.wav"): AnalysisResult(
                reference_pitch_hz=432.0, bass_root_hz=55.0, phase_offset_sec=0.0042,
                bass_history=history,
            ),
        }

    def test_format_analysis(self, results):
        text = format_analysis("song.wav", results[Path("/music/song.wav")], target_hz=440.0, duration=60.0)
        assert "FILE: song.wav" in text
        assert "Reference Pitch: 432.00 Hz" in text
        assert "Phase Offset: 4.200 ms" in text
        assert "Retune to 440 Hz: +1.85%" in text
        assert "Duration Change: -1.09s" in text
        assert "Bass History: 55.0 Hz @ 70, 54.5 Hz @ 50" in text

    def test_text_writer(self, results, tmp_path):
        path = tmp_path / "report.txt"
        TextResultWriter(include_timestamp=False).write(results, path, target_hz=432.0)
        content = path.read_text()
        assert "ZENTUNER ANALYSIS REPORT" in content
        assert "Total Files Analyzed: 1" in content
        assert "Generated" not in content

    def test_json_writer(self, results, tmp_path):
        path = tmp_path / "report.json"
        JSONResultWriter().write(results, path, target_hz=432.0)
        data = json.loads(path.read_text())
        entry = data["results"][str(Path("/music/song.wav"))]
        assert data["total_files"] == 1
        assert data["target_hz"] == 432.0
        assert entry["reference_pitch_hz"] == 432.0
        assert entry["bass_note"] == "A1 +0ct"

    def test_factory(self):
        assert isinstance(create_result_writer("txt"), TextResultWriter)
        assert isinstance(create_result_writer("JSON", indent=4), JSONResultWriter)
        with pytest.raises(ValueError):
            create_result_writer("xml")
