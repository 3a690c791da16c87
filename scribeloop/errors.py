"""
Error types for ScribeLoop.

Each error carries a user-facing message. Audio and transcription errors
surface to the caller; cloud errors are caught by the enhancer and turned
into a local fallback; learning errors are logged and dropped.
"""


class ScribeLoopError(Exception):
    """Base class for all ScribeLoop errors."""

    message = "Something went wrong"

    def __init__(self, message: str = ""):
        self.message = message or self.message
        super().__init__(self.message)


class ConfigError(ScribeLoopError):
    message = "Invalid configuration"


# Audio

class AudioError(ScribeLoopError):
    message = "Audio error"


class AlreadyCapturing(AudioError):
    message = "Recording is already in progress"


class NotCapturing(AudioError):
    message = "No recording is in progress"


class DeviceNotFound(AudioError):
    message = "Microphone not found. Check that it is connected and selected in settings"


class PermissionDenied(AudioError):
    message = "Microphone access denied. Grant access in system privacy settings"


class ConversionFailed(AudioError):
    message = "Could not convert audio to 16kHz mono PCM"


# Transcription

class TranscriptionError(ScribeLoopError):
    message = "Transcription error"


class ModelNotLoaded(TranscriptionError):
    message = "Model is not loaded"


class ModelLoadFailed(TranscriptionError):
    message = "Could not load the speech model. Check the model path"


class TranscriptionFailed(TranscriptionError):
    message = "Transcription failed"


# Classification

class ClassificationError(ScribeLoopError):
    message = "Classification error"


class EmptyText(ClassificationError):
    message = "Cannot classify empty text"


class InferenceFailed(ClassificationError):
    message = "Classifier produced no prediction"


# Learning

class LearningStoreError(ScribeLoopError):
    message = "Learning store error"


# Secrets

class SecretNotFound(ScribeLoopError):
    message = "API key not found"


# Cloud LLM

class LLMError(ScribeLoopError):
    message = "LLM request failed"


class LLMTimeout(LLMError):
    message = "LLM request timed out"


class LLMRateLimited(LLMError):
    message = "LLM rate limit exceeded"


class LLMAPIError(LLMError):
    message = "LLM API error"

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(message or f"LLM API error (HTTP {status_code})")


class LLMParseError(LLMError):
    message = "Could not parse LLM response"
