"""
Error taxonomy shared by the backup pipeline.

Errors fall in two groups:
- fatal for the affected operation and never retried
  (ConfigurationError, SourceValidationError, IntegrityError)
- transient and retried up to a bound (TransientIOError), ending in
  RetryExhaustedError once the bound is hit
"""


class BackupError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigurationError(BackupError):
    """Raised for missing or invalid configuration (e.g. empty password)."""
    pass


class SourceValidationError(BackupError):
    """Raised when a backup source path is absent or not a file/directory."""
    pass


class IntegrityError(BackupError):
    """Raised when a volume fails authentication or cannot be parsed."""
    pass


class UnsupportedVersionError(IntegrityError):
    """Raised when a volume header carries an unknown version byte."""
    pass


class TransientIOError(BackupError):
    """Raised for stream or network failures that may succeed on retry."""
    pass


class ChunkingNotSupportedError(BackupError):
    """Raised by storages whose provider has no chunked upload session."""

    def __init__(self, provider: str):
        super().__init__(f"{provider} does not support chunked upload")
        self.provider = provider


class RetryExhaustedError(BackupError):
    """
    Raised when an operation kept failing for every allowed attempt.

    Attributes:
        attempts: Number of attempts that were made
        last_error: The error raised by the final attempt
    """

    def __init__(self, message: str, attempts: int, last_error: Exception = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


NON_RETRYABLE_ERRORS = (ConfigurationError, SourceValidationError, IntegrityError)
