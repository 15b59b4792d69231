"""Custom Exceptions for the StreamSub application."""

class StreamSubError(Exception):
    """Base class for exceptions in this package."""
    pass

class ConfigurationError(StreamSubError):
    """Exception raised for errors in configuration loading."""
    pass

class FileSystemError(StreamSubError):
    """Exception raised for file system related errors (permissions, not found etc)."""
    pass

class ExtractionError(StreamSubError):
    """Exception raised when a time window of audio cannot be decoded to PCM."""
    pass

class EngineNotLoadedError(StreamSubError):
    """Exception raised when the speech model is missing or failed to load."""
    pass

class TranscriptionError(StreamSubError):
    """Exception raised for errors during transcription."""
    pass

class CompletionError(StreamSubError):
    """Exception raised when the completion endpoint gives no usable answer."""
    pass

class PersistenceError(StreamSubError):
    """Exception raised when a transcript cannot be written or removed."""
    pass

class ResponseParseError(StreamSubError):
    """Exception raised when a model response holds no recognisable data."""
    pass
