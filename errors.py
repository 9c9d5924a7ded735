class CatalogError(Exception):
    """Base class for catalog ingestion errors."""


class UpstreamError(CatalogError):
    """Transport, status or parse failure from an external provider."""


class NotFoundError(CatalogError):
    """An upstream lookup legitimately returned nothing."""


class ConflictError(CatalogError):
    """A unique index rejected a write because another writer got there first."""


class ValidationError(CatalogError):
    """A record would violate a catalog invariant if written."""


class ConfigurationError(CatalogError):
    """Required configuration is missing or malformed."""
