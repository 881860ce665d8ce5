"""
Custom exceptions for ZenTuner.

This module defines a hierarchy of exceptions for handling the error
conditions of decoding, analysis, caching and export.
"""

from typing import Optional, Any


class ZenTunerError(Exception):
    """Base exception for all ZenTuner errors."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class AudioLoadError(ZenTunerError):
    """Raised when an audio file cannot be decoded."""

    def __init__(self, message: str, file_path: Optional[str] = None):
        super().__init__(message, details={"file_path": file_path})
        self.file_path = file_path


class UnsupportedFormatError(AudioLoadError):
    """Raised when the audio container is not supported."""

    def __init__(self, message: str, format: Optional[str] = None):
        super().__init__(message)
        self.format = format
        self.details = {"format": format}


class FileTooLargeError(AudioLoadError):
    """Raised when an audio file exceeds the configured size limit."""

    def __init__(
        self,
        message: str,
        file_size: Optional[int] = None,
        max_size: Optional[int] = None,
    ):
        super().__init__(message)
        self.file_size = file_size
        self.max_size = max_size
        self.details = {"file_size": file_size, "max_size": max_size}


class AnalysisError(ZenTunerError):
    """Raised when a spectral estimate cannot be computed."""

    def __init__(
        self,
        message: str,
        request_kind: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.request_kind = request_kind
        self.original_error = original_error
        self.details = {
            "request_kind": request_kind,
            "original_error": str(original_error) if original_error else None,
        }


class ConfigurationError(ZenTunerError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message)
        self.config_key = config_key
        self.details = {"config_key": config_key}


class CacheError(ZenTunerError):
    """Raised when cache operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        key: Optional[str] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.key = key
        self.details = {"operation": operation, "key": key}


class StorageUnavailableError(CacheError):
    """Raised when the backing database cannot be opened at all."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, operation="open")
        self.path = path
        self.details["path"] = path


class ExportError(ZenTunerError):
    """Raised when rendering or writing an export fails."""

    def __init__(
        self,
        message: str,
        output_path: Optional[str] = None,
        source_name: Optional[str] = None,
    ):
        super().__init__(message)
        self.output_path = output_path
        self.source_name = source_name
        self.details = {"output_path": output_path, "source_name": source_name}


class InvalidStateError(ZenTunerError):
    """Raised when an operation is not allowed in the current process state."""

    def __init__(self, message: str, state: Optional[str] = None):
        super().__init__(message, details={"state": state})
        self.state = state
