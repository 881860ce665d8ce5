"""
Utility modules for configuration, logging, and error handling.
"""

from zentuner.utils.errors import (
    ZenTunerError,
    AudioLoadError,
    UnsupportedFormatError,
    FileTooLargeError,
    AnalysisError,
    ConfigurationError,
    CacheError,
    StorageUnavailableError,
    ExportError,
    InvalidStateError,
)
from zentuner.utils.logging import get_logger, setup_logging, JSONFormatter, LogHistoryHandler
from zentuner.utils.config import ConfigManager, load_config, get_default_config

__all__ = [
    "ZenTunerError",
    "AudioLoadError",
    "UnsupportedFormatError",
    "FileTooLargeError",
    "AnalysisError",
    "ConfigurationError",
    "CacheError",
    "StorageUnavailableError",
    "ExportError",
    "InvalidStateError",
    "get_logger",
    "setup_logging",
    "JSONFormatter",
    "LogHistoryHandler",
    "ConfigManager",
    "load_config",
    "get_default_config",
]
