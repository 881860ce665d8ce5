"""Tests for the zentuner command line."""

import json
import logging
import zipfile

import pytest
import soundfile as sf

from zentuner.cli import _apply_overrides, build_parser, main
from zentuner.core.models import ProcessingSettings, SaturationType


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "cache:\n"
        f"  path: \"{tmp_path / 'cache.sqlite3'}\"\n"
        "logging:\n"
        "  level: WARNING\n"
    )
    return str(path)


class TestParser:
    def test_export_options(self):
        args = build_parser().parse_args([
            "--no-cache", "export", "song.wav", "--target", "528", "--phase-lock", "--saturation", "tape",
        ])
        assert args.command == "export"
        assert args.no_cache
        assert args.target == 528.0
        assert args.phase_lock
        assert args.saturation == "tape"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_overrides(self):
        args = build_parser().parse_args([
            "play", "song.wav", "--target", "444", "--width", "1.5", "--saturation", "clean", "--binaural-mode",
        ])
        settings = _apply_overrides(ProcessingSettings(), args)
        assert settings.target_hz == 444.0
        assert settings.stereo_width == 1.5
        assert settings.saturation_type is SaturationType.CLEAN
        assert settings.binaural_mode
        assert not settings.rate_drift

    def test_no_overrides_keeps_settings(self):
        settings = ProcessingSettings(target_hz=528.0)
        args = build_parser().parse_args(["export", "song.wav"])
        assert _apply_overrides(settings, args) is settings


class TestCommands:
    def test_analyze(self, config_path, tone_wav, tmp_path, capsys):
        output = tmp_path / "analysis.json"
        code = main(["--config", config_path, "--no-cache", "analyze", str(tone_wav), "--output", str(output)])

        assert code == 0
        assert "ZENTUNER ANALYSIS" in capsys.readouterr().out
        data = json.loads(output.read_text())
        assert data["total_files"] == 1

    def test_analyze_missing_file(self, config_path, tmp_path, capsys):
        code = main(["--config", config_path, "--no-cache", "analyze", str(tmp_path / "missing.wav")])
        assert code == 1
        assert "Error:" in capsys.readouterr().out

    def test_export(self, config_path, tone_wav, tmp_path):
        out = tmp_path / "out"
        code = main([
            "--config", config_path, "--no-cache",
            "export", str(tone_wav), "--target", "440", "--output-dir", str(out),
        ])
        assert code == 0
        assert sf.info(str(out / "tone_440Hz_ZenMaster.wav")).subtype == 'PCM_16'

    def test_batch_directory(self, config_path, tone_wav, tmp_path, capsys):
        out = tmp_path / "out"
        code = main([
            "--config", config_path, "--no-cache",
            "batch", str(tone_wav.parent), "--target", "432", "--output-dir", str(out),
        ])
        assert code == 0
        with zipfile.ZipFile(out / "ZenTuner_Batch_432Hz.zip") as archive:
            assert archive.namelist() == ["tone_432Hz_ZenTuner.wav"]
        assert "BATCH EXPORT COMPLETE" in capsys.readouterr().out

    def test_batch_with_nothing_to_export(self, config_path, tmp_path, capsys):
        empty = tmp_path / "empty"
        empty.mkdir()
        assert main(["--config", config_path, "--no-cache", "batch", str(empty)]) == 1

    def test_presets_save_list_delete(self, config_path, capsys):
        assert main(["--config", config_path, "presets", "save", "--name", "Night", "--target", "444"]) == 0
        saved = capsys.readouterr().out
        assert "Saved preset: user_" in saved
        preset_id = saved.split("Saved preset: ")[1].split()[0]

        assert main(["--config", config_path, "presets"]) == 0
        assert "Night" in capsys.readouterr().out

        assert main(["--config", config_path, "presets", "delete", preset_id]) == 0
        assert main(["--config", config_path, "presets", "delete", "factory_pure_zen"]) == 1
