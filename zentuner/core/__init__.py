"""
Core module containing data models, analysis, caching and the session engine.

Uses lazy imports for modules with heavy dependencies (librosa, scipy, aiosqlite).
"""

# Models are lightweight - import directly
from zentuner.core.models import (
    PHI,
    AudioSource,
    AnalysisResult,
    BassHistoryEntry,
    Preset,
    ProcessingSettings,
    ProcessState,
    SaturationType,
    TuningPreset,
    merge_bass_history,
)

__all__ = [
    # Models (always available)
    "PHI",
    "AudioSource",
    "AnalysisResult",
    "BassHistoryEntry",
    "Preset",
    "ProcessingSettings",
    "ProcessState",
    "SaturationType",
    "TuningPreset",
    "merge_bass_history",
    # Heavy modules (lazy loaded)
    "AudioLoader",
    "create_audio_loader",
    "AnalysisCoordinator",
    "RequestKind",
    "CacheService",
    "create_cache_service",
    "FACTORY_PRESETS",
    "ZenTunerEngine",
    "create_engine",
    "BatchExporter",
    "BatchResult",
    "ExportQueue",
    "ResultWriter",
    "TextResultWriter",
    "JSONResultWriter",
    "create_result_writer",
]

_LAZY = {
    "AudioLoader": "zentuner.core.loader",
    "create_audio_loader": "zentuner.core.loader",
    "AnalysisCoordinator": "zentuner.core.coordinator",
    "RequestKind": "zentuner.core.coordinator",
    "CacheService": "zentuner.core.cache",
    "create_cache_service": "zentuner.core.cache",
    "FACTORY_PRESETS": "zentuner.core.presets",
    "ZenTunerEngine": "zentuner.core.engine",
    "create_engine": "zentuner.core.engine",
    "BatchExporter": "zentuner.core.batch_processor",
    "BatchResult": "zentuner.core.batch_processor",
    "ExportQueue": "zentuner.core.queue_manager",
    "ResultWriter": "zentuner.core.result_writer",
    "TextResultWriter": "zentuner.core.result_writer",
    "JSONResultWriter": "zentuner.core.result_writer",
    "create_result_writer": "zentuner.core.result_writer",
}


def __getattr__(name: str):
    """Lazy load modules with heavy dependencies."""
    module_name = _LAZY.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    import importlib
    return getattr(importlib.import_module(module_name), name)
