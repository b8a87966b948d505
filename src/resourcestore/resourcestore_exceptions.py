"""ResourceStore custom exception module."""


class ResourceStoreError(Exception):
    """Base class for every error raised by the FileStore, MetaStore and
    ResourceStore layers. Handler code can catch this to translate store errors
    into protocol-level responses."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class ConfigError(ResourceStoreError):
    """Custom exception thrown when the supplied store properties are invalid or
    conflict with the configuration already recorded at the store path."""


class IdentifierParseError(ResourceStoreError, ValueError):
    """Custom exception thrown when a string cannot be parsed as a canonical
    8-4-4-4-12 hex identifier."""


class FileStoreError(ResourceStoreError):
    """Custom exception thrown for FileStore failures that are not plain I/O
    errors."""


class QuotaExceeded(FileStoreError):
    """Custom exception thrown when storing a blob would push the store's total
    size over its configured quota. The partial spool file is removed and the
    recorded total size is left unchanged."""


class LockTimeout(FileStoreError):
    """Custom exception thrown when the lock for an identifier's path could not
    be acquired within the configured retry/timeout policy."""


class MetaStoreError(ResourceStoreError):
    """Custom exception thrown for MetaStore failures."""


class ReservedProperty(MetaStoreError):
    """Custom exception thrown when a caller names a property that is used by the
    system (checksum, extent, format, ...) through one of the safe MetaStore
    methods."""
