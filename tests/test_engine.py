"""Tests for the session engine: lifecycle, epochs, presets, playback and export."""

import asyncio
from unittest.mock import MagicMock

import numpy as np
import pytest
import soundfile as sf

from conftest import ScriptedCoordinator, make_source, sine, write_wav
from zentuner.core.cache import CacheService
from zentuner.core.coordinator import RequestKind
from zentuner.core.engine import TRANSITIONS, ZenTunerEngine, create_engine
from zentuner.core.loader import AudioLoader
from zentuner.core.models import ProcessState, ProcessingSettings
from zentuner.utils.config import get_default_config
from zentuner.utils.errors import InvalidStateError


def _config():
    config = get_default_config()
    # Keep the meter thread idle during tests
    config['metering']['interval'] = 60.0
    return config


def _engine(coordinator=None, cache=None, output_factory=None):
    return ZenTunerEngine(
        loader=AudioLoader(),
        coordinator=coordinator or ScriptedCoordinator(),
        cache=cache,
        config=_config(),
        output_factory=output_factory,
    )


def _ready_engine(coordinator=None, output_factory=None, source=None):
    engine = _engine(coordinator, output_factory=output_factory)
    asyncio.run(engine.load_source(source or make_source()))
    return engine


class TestStateMachine:
    def test_starts_idle(self):
        engine = _engine()
        assert engine.state == ProcessState.IDLE
        assert engine.epoch == 0
        assert engine.analysis.reference_pitch_hz == 440.0

    def test_load_source_reaches_ready(self, coordinator):
        engine = _engine(coordinator)
        result = asyncio.run(engine.load_source(make_source()))

        assert engine.state == ProcessState.READY
        assert engine.epoch == 1
        assert result.reference_pitch_hz == 432.0
        assert result.bass_root_hz == 55.0
        assert result.phase_offset_sec == 0.004
        assert engine.analysis is result
        assert coordinator.kinds() == [
            RequestKind.DETECT_HIRES,
            RequestKind.DETECT_TUNING,
            RequestKind.DETECT_BASS,
            RequestKind.DETECT_PHASE,
        ]

    def test_no_phase_request_without_bass(self):
        coordinator = ScriptedCoordinator({RequestKind.DETECT_BASS: 0.0})
        engine = _engine(coordinator)
        result = asyncio.run(engine.load_source(make_source()))
        assert RequestKind.DETECT_PHASE not in coordinator.kinds()
        assert result.phase_offset_sec == 0.0

    def test_transition_table(self):
        assert TRANSITIONS[ProcessState.IDLE] == frozenset({ProcessState.DECODING})
        assert ProcessState.RETUNING in TRANSITIONS[ProcessState.READY]
        assert ProcessState.RETUNING not in TRANSITIONS[ProcessState.ANALYZING]

    def test_invalid_transition_raises(self):
        engine = _engine()
        with pytest.raises(InvalidStateError) as exc_info:
            engine._transition(ProcessState.READY)
        assert exc_info.value.state == "idle"

    def test_operations_require_a_source(self, tmp_path):
        engine = _engine()
        with pytest.raises(InvalidStateError):
            engine.play()
        with pytest.raises(InvalidStateError):
            engine.render_current()
        with pytest.raises(InvalidStateError):
            asyncio.run(engine.export_current(tmp_path))
        with pytest.raises(InvalidStateError):
            asyncio.run(engine.reanalyze(80))

    def test_reset_returns_to_idle(self):
        engine = _ready_engine()
        engine.reset()
        assert engine.state == ProcessState.IDLE
        assert engine.source is None
        assert engine.graph is None
        assert engine.epoch == 2


class TestEpochs:
    def test_stale_analysis_is_discarded(self):
        coordinator = ScriptedCoordinator(auto=False)
        engine = _engine(coordinator)
        first_source = make_source(name="first.wav")
        second_source = make_source(name="second.wav")

        async def scenario():
            first = asyncio.ensure_future(engine.load_source(first_source))
            await asyncio.sleep(0)
            second = asyncio.ensure_future(engine.load_source(second_source))
            await asyncio.sleep(0)
            for _ in range(1000):
                if first.done() and second.done():
                    break
                coordinator.answer_all()
                await asyncio.sleep(0)
            return first.result(), second.result()

        first_result, second_result = asyncio.run(scenario())
        assert first_result is None
        assert second_result is not None
        assert engine.epoch == 2
        assert engine.source is second_source
        assert engine.analysis is second_result
        assert engine.state == ProcessState.READY

    def test_failed_estimate_falls_back_to_standard_tuning(self, failing_result):
        coordinator = ScriptedCoordinator({RequestKind.DETECT_TUNING: failing_result})
        engine = _engine(coordinator)
        result = asyncio.run(engine.load_source(make_source()))
        assert result.reference_pitch_hz == 440.0
        assert result.bass_root_hz == 55.0
        assert engine.state == ProcessState.READY

    def test_missing_file_leaves_engine_idle(self, tmp_path):
        engine = _engine()
        with pytest.raises(FileNotFoundError):
            asyncio.run(engine.load_file(tmp_path / "missing.wav"))
        assert engine.state == ProcessState.IDLE
        assert engine.source is None


class TestLoadFile:
    def test_second_load_uses_cache(self, tone_wav, cache_path):
        coordinator = ScriptedCoordinator()

        async def scenario():
            engine = _engine(coordinator, cache=CacheService(cache_path))
            async with engine:
                first = await engine.load_file(tone_wav)
                await engine.flush()
                requests_after_first = len(coordinator.requests)
                second = await engine.load_file(tone_wav)
                return first, second, requests_after_first, engine.buffer_from_cache

        first, second, requests_after_first, buffer_from_cache = asyncio.run(scenario())
        assert not first.from_cache
        assert second.from_cache
        assert second.reference_pitch_hz == 432.0
        assert len(second.bass_history) == 1
        assert len(coordinator.requests) == requests_after_first
        assert buffer_from_cache
        assert coordinator.shut_down

    def test_fresh_load_persists_analysis_alongside_buffer(self, tmp_path, cache_path):
        data = sine(441.0, duration=20.0)
        path = write_wav(tmp_path / "long.wav", np.vstack([data, data]))

        async def scenario():
            engine = _engine(ScriptedCoordinator(), cache=CacheService(cache_path))
            async with engine:
                await engine.load_file(path)
                await engine.flush()
                fingerprint = engine.fingerprint
            async with CacheService(cache_path) as cache:
                return (
                    await cache.get_analysis(fingerprint, 50),
                    await cache.get_buffer(fingerprint),
                )

        analysis, buffer = asyncio.run(scenario())
        assert analysis is not None
        assert analysis.reference_pitch_hz == 432.0
        assert buffer is not None

    def test_load_files_queues_batch(self, tmp_path):
        paths = [
            write_wav(tmp_path / f"{name}.wav", sine(441.0, duration=0.2))
            for name in ("a", "b")
        ]
        engine = _engine()
        asyncio.run(engine.load_files(paths))
        assert engine.batch_queue.is_batch()
        assert engine.batch_queue.list_files() == paths
        assert engine.source.name == "a.wav"

    def test_reanalyze_skips_hi_res_detection(self):
        coordinator = ScriptedCoordinator()
        engine = _ready_engine(coordinator)
        coordinator.requests.clear()
        coordinator.results[RequestKind.DETECT_BASS] = 110.0

        result = asyncio.run(engine.reanalyze(sensitivity=80, bass_sensitivity=30))
        assert RequestKind.DETECT_HIRES not in coordinator.kinds()
        assert result.sensitivity == 80
        assert result.bass_sensitivity == 30
        assert result.bass_root_hz == 110.0
        assert engine.state == ProcessState.READY


class TestSettingsAndPresets:
    def test_modified_tracks_baseline(self):
        engine = _engine()
        assert not engine.is_modified()
        engine.set_target(444.0)
        assert engine.is_modified()
        engine.set_target(432.0)
        assert not engine.is_modified()

    def test_update_settings_accepts_dict(self):
        engine = _engine()
        engine.update_settings({'target_hz': 528.0, 'stereo_width': 1.5})
        assert engine.settings.target_hz == 528.0
        assert engine.settings.stereo_width == 1.5

    def test_preset_lifecycle(self):
        engine = _engine()

        async def scenario():
            await engine.load_preset("factory_solfeggio_528")
            loaded_modified = engine.is_modified()
            engine.update_settings(engine.settings.with_changes(stereo_width=1.5))
            changed_modified = engine.is_modified()
            saved = await engine.save_preset("Wide")
            saved_modified = engine.is_modified()
            refused = await engine.delete_preset("factory_pure_zen")
            deleted = await engine.delete_preset(saved.id)
            return loaded_modified, changed_modified, saved, saved_modified, refused, deleted

        loaded_modified, changed_modified, saved, saved_modified, refused, deleted = asyncio.run(scenario())
        assert not loaded_modified
        assert changed_modified
        assert saved.data.target_hz == 528.0
        assert not saved_modified
        assert refused is False
        assert deleted is True
        assert engine.current_preset_id == "factory_pure_zen"
        assert saved.id not in [p.id for p in engine.presets]

    def test_unknown_preset(self):
        with pytest.raises(KeyError):
            asyncio.run(_engine().load_preset("nope"))

    def test_presets_persist_through_cache(self, cache_path):
        async def scenario():
            async with _engine(cache=CacheService(cache_path)) as engine:
                await engine.save_preset("Evening")
            async with _engine(cache=CacheService(cache_path)) as engine:
                return await engine.list_presets()

        names = [p.name for p in asyncio.run(scenario())]
        assert "Evening" in names
        assert names.index("Evening") == 3

    def test_settings_change_while_paused_is_instant(self):
        engine = _ready_engine()
        engine.set_target(444.0)
        assert engine.state == ProcessState.READY
        assert engine.graph.rate.value_at(engine.graph.current_time) == pytest.approx(444.0 / 432.0)


class TestPlayback:
    def test_play_and_pause(self, fake_output):
        engine = _ready_engine(output_factory=fake_output)
        engine.play()
        output = fake_output.instances[-1]
        assert output.started
        assert engine.is_playing
        assert engine.meter.running

        output.pull(4)
        assert engine.position_seconds > 0

        engine.pause()
        assert output.stopped
        assert not engine.is_playing
        assert not engine.meter.running
        assert engine.current_thd == 0.0

    def test_output_factory_receives_playback_config(self):
        factory = MagicMock()
        engine = _ready_engine(output_factory=factory)
        engine.play()

        factory.assert_called_once()
        _, kwargs = factory.call_args
        assert kwargs["block_size"] == 1024
        assert kwargs["device"] is None
        factory.return_value.start.assert_called_once()

        engine.pause()
        factory.return_value.stop.assert_called_once()

    def test_failed_output_start_is_not_playing(self):
        factory = MagicMock()
        factory.return_value.start.side_effect = RuntimeError("no audio device")
        engine = _ready_engine(output_factory=factory)
        with pytest.raises(RuntimeError):
            engine.play()
        assert not engine.is_playing

    def test_toggle_and_stop_rewinds(self, fake_output):
        engine = _ready_engine(output_factory=fake_output)
        assert engine.toggle_play() is True
        fake_output.instances[-1].pull(2)
        assert engine.toggle_play() is False
        engine.stop()
        assert engine.position_seconds == 0.0

    def test_live_target_change_retunes_then_settles(self, fake_output):
        engine = _ready_engine(output_factory=fake_output)
        engine.play()
        output = fake_output.instances[-1]

        engine.set_target(444.0)
        assert engine.state == ProcessState.RETUNING

        output.pull(12)
        assert engine.state == ProcessState.READY
        engine.pause()

    def test_playback_end_clears_playing(self, fake_output):
        engine = _ready_engine(output_factory=fake_output)
        engine.play()
        fake_output.instances[-1].on_finished()
        assert not engine.is_playing
        assert not engine.meter.running

    def test_compare_mode(self, fake_output):
        engine = _ready_engine(ScriptedCoordinator({RequestKind.DETECT_TUNING: 440.0}), output_factory=fake_output)
        engine.set_compare(True)
        assert engine.compare_mode
        assert engine.graph.rate.final_value() == 1.0
        engine.set_compare(False)
        assert not engine.compare_mode
        assert engine.graph.rate.final_value() == pytest.approx(432.0 / 440.0)


class TestExport:
    def test_export_current(self, tmp_path):
        engine = _ready_engine(ScriptedCoordinator({RequestKind.DETECT_TUNING: 440.0}))
        progress = []
        path = asyncio.run(engine.export_current(
            tmp_path / "out", progress_callback=progress.append, rng=np.random.default_rng(0)
        ))

        assert path == tmp_path / "out" / "tone_432Hz_ZenMaster.wav"
        info = sf.info(str(path))
        assert info.subtype == 'PCM_16'
        assert info.channels == 2
        assert info.frames == engine.render_current().shape[1]
        assert progress[-1] == pytest.approx(1.0)
        assert not any(p.name.endswith(".part") for p in path.parent.iterdir())

    def test_export_single_vs_batch(self, tmp_path):
        paths = [
            write_wav(tmp_path / f"{name}.wav", sine(441.0, duration=0.2))
            for name in ("a", "b")
        ]
        engine = _engine()

        single = asyncio.run(_load_then_export(engine, paths[:1], tmp_path / "single"))
        assert single.name == "a_432Hz_ZenMaster.wav"

        archive = asyncio.run(_load_then_export(engine, paths, tmp_path / "batch"))
        assert archive.name == "ZenTuner_Batch_432Hz.zip"


async def _load_then_export(engine, paths, output_dir):
    await engine.load_files(paths)
    return await engine.export(output_dir)


class TestFactory:
    def test_create_engine(self):
        config = _config()
        config['cache']['enabled'] = False
        config['processing']['default_target_hz'] = 528.0
        engine = create_engine(config)
        try:
            assert engine.cache is None
            assert engine.settings.target_hz == 528.0
            assert engine.state == ProcessState.IDLE
        finally:
            engine.shutdown()

    def test_decodes_through_async_loader(self, tone_wav):
        engine = _engine()
        engine.async_loader.load = MagicMock(wraps=engine.async_loader.load)
        asyncio.run(engine.load_file(tone_wav))
        engine.async_loader.load.assert_called_once_with(tone_wav)
        assert engine.async_loader.loader is engine.loader

    def test_settings_default_follows_config(self):
        assert _engine().settings == ProcessingSettings(target_hz=432.0)
