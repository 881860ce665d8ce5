"""
ZenTuner - command-line interface.

Installed as ``zentuner``.

Example usage:
    # Detect reference pitch and bass root
    zentuner analyze song.flac
    zentuner analyze --output analysis.json song.flac

    # Retune one file
    zentuner export --target 432 --output-dir out/ song.flac

    # Retune several files into one ZIP archive
    zentuner batch --target 432 --output-dir out/ a.wav b.wav c.flac

    # Presets
    zentuner presets list
    zentuner presets delete user_0123abcd

    # Listen (requires the "playback" extra)
    zentuner play --target 432 song.flac
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from zentuner import __version__
from zentuner.core.engine import ZenTunerEngine, create_engine
from zentuner.core.estimator import added_time_seconds, note_name, shift_percentage
from zentuner.core.models import AnalysisResult, Preset, ProcessingSettings, SaturationType, TuningPreset
from zentuner.core.queue_manager import ExportQueue
from zentuner.core.result_writer import create_result_writer, format_hz
from zentuner.utils.config import load_config
from zentuner.utils.errors import ZenTunerError
from zentuner.utils.logging import setup_logging


def print_analysis(name: str, result: AnalysisResult, duration: float, target_hz: float) -> None:
    """Print analysis results for a single file to console."""
    print("\n" + "=" * 60)
    print("ZENTUNER ANALYSIS")
    print("=" * 60)
    print(f"File: {name}")
    print(f"Duration: {duration:.2f}s")
    print("-" * 60)
    print(f"Reference Pitch: {result.reference_pitch_hz:.2f} Hz ({note_name(result.reference_pitch_hz)})")
    if result.is_standard_tuning:
        print("  Standard tuning (A4 = 440 Hz)")
    print(f"Bass Root: {result.bass_root_hz:.2f} Hz ({note_name(result.bass_root_hz)})")
    print(f"Phase Offset: {result.phase_offset_sec * 1000:.3f} ms")
    print(f"Hi-Res Content: {'Yes' if result.is_hi_res else 'No'}")
    print(f"From Cache: {'Yes' if result.from_cache else 'No'}")
    print("-" * 60)
    print(f"Retune to {format_hz(target_hz)} Hz:")
    print(f"  Pitch Shift: {shift_percentage(result.reference_pitch_hz, target_hz):+.2f}%")
    print(f"  Duration Change: {added_time_seconds(duration, result.reference_pitch_hz, target_hz):+.2f}s")
    if result.bass_history:
        print("\nBass History:")
        for entry in result.bass_history[:5]:
            print(f"  {entry.frequency:8.2f} Hz  (sensitivity {entry.sensitivity:g})")


def print_presets(presets: List[Preset], current_id: Optional[str] = None) -> None:
    print("\n" + "=" * 60)
    print("PRESETS")
    print("=" * 60)
    for preset in presets:
        marker = "*" if preset.id == current_id else " "
        kind = "factory" if preset.is_factory else "user"
        print(f"{marker} {preset.id:<28} {preset.name:<24} [{kind}] {format_hz(preset.data.target_hz)} Hz")


def _apply_overrides(settings: ProcessingSettings, args: argparse.Namespace) -> ProcessingSettings:
    """Layer command-line processing options over ``settings``."""
    changes: Dict[str, Any] = {}
    if getattr(args, 'target', None) is not None:
        changes['target_hz'] = float(args.target)
    if getattr(args, 'saturation', None):
        changes['saturation_type'] = SaturationType(args.saturation)
    if getattr(args, 'width', None) is not None:
        changes['stereo_width'] = args.width
    if getattr(args, 'warmth', None) is not None:
        changes['harmonic_warmth'] = args.warmth
    if getattr(args, 'clarity', None) is not None:
        changes['harmonic_clarity'] = args.clarity
    if getattr(args, 'sub_bass', None) is not None:
        changes['sub_bass'] = args.sub_bass
    if getattr(args, 'volume', None) is not None:
        changes['volume'] = args.volume
    for flag in ('phase_lock', 'geometric_eq', 'rate_drift', 'binaural_mode'):
        if getattr(args, flag, False):
            changes[flag] = True
    return settings.with_changes(**changes) if changes else settings


async def _prepare_settings(engine: ZenTunerEngine, args: argparse.Namespace) -> None:
    if getattr(args, 'preset', None):
        await engine.load_preset(args.preset)
    engine.update_settings(_apply_overrides(engine.settings, args))


async def run_analyze(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    engine = create_engine(config)
    try:
        await engine.load_file(args.file)
        if args.sensitivity is not None or args.bass_sensitivity is not None:
            await engine.reanalyze(args.sensitivity, args.bass_sensitivity)
        target = float(args.target) if args.target is not None else engine.settings.target_hz

        print_analysis(args.file.name, engine.analysis, engine.duration, target)

        if args.output:
            create_result_writer("json").write({args.file: engine.analysis}, args.output, target)
            print(f"\nJSON results saved to: {args.output}")
        if args.output_file:
            create_result_writer("text").write({args.file: engine.analysis}, args.output_file, target)
            print(f"Text results saved to: {args.output_file}")
        return 0
    finally:
        await engine.aclose()


async def run_export(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    engine = create_engine(config)
    try:
        await engine.load_file(args.file)
        await _prepare_settings(engine, args)
        print(
            f"Retuning {args.file.name}: {engine.analysis.reference_pitch_hz:.2f} Hz -> "
            f"{format_hz(engine.settings.target_hz)} Hz"
        )
        output_path = await engine.export_current(args.output_dir, progress_callback=_progress_bar)
        print(f"\nExported: {output_path}")
        return 0
    finally:
        await engine.aclose()


async def run_batch(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    queue = ExportQueue()
    for path in args.inputs:
        if path.is_dir():
            queue.add_directory(path, recursive=args.recursive)
        else:
            queue.add(path)
    if queue.is_empty():
        print("Error: no audio files to export")
        return 1

    def progress_callback(current: int, total: int, file_path: Path) -> None:
        print(f"[{current}/{total}] Rendering: {file_path.name}")

    engine = create_engine(config)
    try:
        await _prepare_settings(engine, args)
        exporter = engine.create_batch_exporter(progress_callback, analyze_missing=args.analyze)
        result = await exporter.export(
            queue.list_files(),
            engine.settings,
            args.output_dir,
            sensitivity=engine.sensitivity,
            bass_sensitivity=engine.bass_sensitivity,
        )

        print("\n" + "=" * 60)
        print("BATCH EXPORT COMPLETE")
        print("=" * 60)
        print(f"Total Files: {result.total_files}")
        print(f"Cached Analyses: {result.cached_count}")
        print(f"Total Time: {result.total_time:.2f}s")
        print(f"Archive: {result.archive_path}")

        if args.output_file:
            create_result_writer("text").write(result.analyses, args.output_file, engine.settings.target_hz)
            print(f"Text results saved to: {args.output_file}")
        return 0
    finally:
        await engine.aclose()


async def run_presets(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    engine = create_engine(config)
    try:
        if args.action == "delete":
            if not args.preset_id:
                print("Error: preset id required")
                return 1
            if not await engine.delete_preset(args.preset_id):
                print(f"Error: could not delete preset {args.preset_id} (factory or unknown)")
                return 1
            print(f"Deleted preset: {args.preset_id}")
        elif args.action == "save":
            if not args.name:
                print("Error: --name required")
                return 1
            engine.update_settings(_apply_overrides(engine.settings, args))
            preset = await engine.save_preset(args.name)
            print(f"Saved preset: {preset.id} ({preset.name})")
        print_presets(await engine.list_presets(), engine.current_preset_id)
        return 0
    finally:
        await engine.aclose()


async def run_play(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    engine = create_engine(config)
    try:
        await engine.load_file(args.file)
        await _prepare_settings(engine, args)
        if args.compare:
            engine.set_compare(True)
        print(f"Playing {args.file.name} at {format_hz(engine.settings.target_hz)} Hz (Ctrl+C to stop)")
        engine.play()
        try:
            while engine.is_playing:
                await asyncio.sleep(0.5)
                print(
                    f"\r{engine.position_seconds:7.1f}s  THD {engine.current_thd:6.2f}%  "
                    f"[{engine.state.value}]",
                    end="",
                    flush=True,
                )
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        finally:
            engine.stop()
        print()
        return 0
    finally:
        await engine.aclose()


def _progress_bar(progress: float) -> None:
    filled = int(progress * 30)
    print(f"\r[{'#' * filled}{'.' * (30 - filled)}] {progress * 100:5.1f}%", end="", flush=True)


def _add_processing_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--target", "-t",
        type=float,
        default=None,
        help="Target A4 in Hz (e.g. " + ", ".join(format_hz(p.value) for p in TuningPreset) + ")"
    )
    parser.add_argument("--preset", type=str, default=None, help="Start from a preset id")
    parser.add_argument("--saturation", choices=[s.value for s in SaturationType], default=None)
    parser.add_argument("--width", type=float, default=None, help="Stereo width 0-2")
    parser.add_argument("--warmth", type=float, default=None, help="Harmonic warmth 0-1")
    parser.add_argument("--clarity", type=float, default=None, help="Harmonic clarity 0-1")
    parser.add_argument("--sub-bass", type=float, default=None, help="Sub-bass amount 0-1")
    parser.add_argument("--volume", type=float, default=None, help="Output volume 0-2")
    parser.add_argument("--phase-lock", action="store_true", help="Align the bass root to zero phase")
    parser.add_argument("--geometric-eq", action="store_true", help="Golden-ratio EQ frequencies")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zentuner",
        description="Detect the tuning reference of a recording and retune it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to configuration file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    parser.add_argument("--no-cache", action="store_true", help="Disable the persistent cache")
    parser.add_argument("--version", action="version", version=f"ZenTuner {__version__}")

    commands = parser.add_subparsers(dest="command", required=True)

    analyze = commands.add_parser("analyze", help="Detect reference pitch and bass root")
    analyze.add_argument("file", type=Path)
    analyze.add_argument("--target", "-t", type=float, default=None)
    analyze.add_argument("--sensitivity", type=float, default=None, help="Tuning sensitivity 0-100")
    analyze.add_argument("--bass-sensitivity", type=float, default=None, help="Bass sensitivity 0-100")
    analyze.add_argument("--output", type=Path, default=None, help="Path to save JSON results")
    analyze.add_argument("--output-file", "-o", type=Path, default=None, help="Path to save text results")

    export = commands.add_parser("export", help="Retune one file to a 16-bit WAV")
    export.add_argument("file", type=Path)
    export.add_argument("--output-dir", type=Path, default=Path("."))
    _add_processing_options(export)

    batch = commands.add_parser("batch", help="Retune several files into one ZIP archive")
    batch.add_argument("inputs", type=Path, nargs="+", help="Audio files or directories")
    batch.add_argument("--output-dir", type=Path, default=Path("."))
    batch.add_argument("--recursive", "-r", action="store_true", help="Search directories recursively")
    batch.add_argument("--analyze", action="store_true", help="Analyze files without cached analysis")
    batch.add_argument("--output-file", "-o", type=Path, default=None, help="Path to save a text report")
    _add_processing_options(batch)

    presets = commands.add_parser("presets", help="List, save or delete presets")
    presets.add_argument("action", choices=["list", "save", "delete"], nargs="?", default="list")
    presets.add_argument("preset_id", nargs="?", default=None)
    presets.add_argument("--name", type=str, default=None, help="Name for a saved preset")
    _add_processing_options(presets)

    play = commands.add_parser("play", help="Play a file through the retuning chain")
    play.add_argument("file", type=Path)
    play.add_argument("--compare", action="store_true", help="Start in bypass (A/B) mode")
    play.add_argument("--rate-drift", action="store_true", help="Slow golden-ratio rate drift")
    play.add_argument("--binaural-mode", action="store_true", help="Add a binaural beat pair")
    _add_processing_options(play)

    return parser


COMMANDS = {
    "analyze": run_analyze,
    "export": run_export,
    "batch": run_batch,
    "presets": run_presets,
    "play": run_play,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the zentuner command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config_path = str(args.config) if args.config else None
    config = load_config(config_path)
    if args.no_cache:
        config.setdefault("cache", {})["enabled"] = False

    logging_config = config.get("logging", {})
    setup_logging(
        level="DEBUG" if args.verbose else logging_config.get("level", "INFO"),
        log_format=logging_config.get("format", "text"),
        log_file=logging_config.get("file"),
        colored=True,
        console_enabled=True,
        history_size=logging_config.get("history_size", 200),
    )

    start = time.time()
    try:
        exit_code = asyncio.run(COMMANDS[args.command](args, config))
    except KeyboardInterrupt:
        print("\nInterrupted")
        exit_code = 130
    except (ZenTunerError, FileNotFoundError, KeyError, ValueError) as e:
        print(f"Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        exit_code = 1

    if args.verbose:
        print(f"Finished in {time.time() - start:.2f}s")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
