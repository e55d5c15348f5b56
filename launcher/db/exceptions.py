"""Database and persisted-config exceptions for the launcher."""


class DatabaseError(Exception):
    """Base exception for database setup operations."""

    pass


class ProvisioningError(DatabaseError):
    """Raised when the application role, database or extensions cannot be created."""

    pass


class ConfigStoreError(Exception):
    """Raised when config.json cannot be written."""

    pass
