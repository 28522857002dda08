"""
Custom exceptions for usage keeper.

Initialization failures (config, open, schema) propagate to the caller.
Write failures raised by the store are caught at the background write
boundary and logged there.
"""


class UsageKeeperError(Exception):
    """Base exception for all usage keeper errors."""
    pass


class ConfigError(UsageKeeperError, ValueError):
    """Raised when a path or configuration value is missing or invalid."""

    def __init__(self, message: str, config_key: str = None):
        """
        Initialize configuration error.

        Args:
            message: Error message
            config_key: Configuration key that caused the error
        """
        self.config_key = config_key

        if config_key:
            message = f"Configuration error ({config_key}): {message}"

        super().__init__(message)


class StoreError(UsageKeeperError):
    """Raised when the database cannot be opened or is not initialized."""
    pass


class SchemaError(StoreError):
    """Raised when the schema DDL fails."""
    pass


class WriteError(StoreError):
    """Raised when an insert or transaction fails for a non-duplicate reason."""
    pass


class ReadError(StoreError):
    """Raised when loading records fails at the query level."""
    pass
