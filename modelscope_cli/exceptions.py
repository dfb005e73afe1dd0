"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class ModelScopeCliError(Exception):
    """Base exception for all application-specific errors."""


class NetworkError(ModelScopeCliError):
    """Raised when listing a repository directory or transferring a file fails."""


class FilesystemError(ModelScopeCliError):
    """
    Raised when a local directory cannot be created or a file cannot be written
    (permissions, disk full, invalid path).
    """


class LedgerError(ModelScopeCliError):
    """Raised when the persisted download ledger cannot be read or written."""


class DownloadCancelledError(ModelScopeCliError):
    """Raised when a download run is stopped through its cancellation signal."""


class ModelNotFoundError(ModelScopeCliError):
    """Raised when the repository root has no directory named after the model."""


class ConfigurationError(ModelScopeCliError):
    """Raised for issues related to configuration loading or validation."""
