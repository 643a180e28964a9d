"""Provider collaborator contract and error taxonomy.

The engine never talks to a cloud vendor directly. Each resource type is
served by a provider offering four operations plus a declared set of
immutable fields:

    create(attrs)               -> (provider_id, outputs)
    read(provider_id)           -> outputs            (NotFoundError if gone)
    update(provider_id, attrs)  -> outputs
    delete(provider_id)         -> None

Providers are synchronous, like the vendor SDKs they wrap; the executor runs
them in worker threads.

ERROR CLASSIFICATION:
Providers should raise TransientProviderError / PermanentProviderError.
Providers built on Azure SDK clients may let ``azure.core`` exceptions
escape; classify_provider_error() maps them onto the taxonomy. Anything
unrecognised is treated as permanent so it is never retried blindly.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

from .resources import default_immutable_fields

logger = logging.getLogger(__name__)

# HTTP status codes that indicate throttling or eventual-consistency lag
TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


class ProviderError(Exception):
    """Base class for errors raised by provider operations."""

    def __init__(self, message: str, *, resource_type: str | None = None) -> None:
        super().__init__(message)
        self.resource_type = resource_type


class TransientProviderError(ProviderError):
    """Rate limiting or eventual-consistency lag. Retried with backoff."""

    pass


class PermanentProviderError(ProviderError):
    """Validation, permission or quota failure. Never retried."""

    pass


class NotFoundError(ProviderError):
    """The provider has no object with the requested id."""

    pass


class UnknownResourceTypeError(PermanentProviderError):
    """No provider is registered for a resource type."""

    pass


@runtime_checkable
class Provider(Protocol):
    """CRUD contract for one resource type."""

    immutable_fields: frozenset[str]

    def create(self, attributes: Mapping[str, Any]) -> tuple[str, dict[str, Any]]: ...

    def read(self, provider_id: str) -> dict[str, Any]: ...

    def update(self, provider_id: str, attributes: Mapping[str, Any]) -> dict[str, Any]: ...

    def delete(self, provider_id: str) -> None: ...


@runtime_checkable
class DataSource(Protocol):
    """Read-only lookup backing a ``data.<type>.<name>`` declaration."""

    def lookup(self, filters: Mapping[str, Any]) -> dict[str, Any]: ...


def classify_provider_error(error: BaseException, resource_type: str | None = None) -> ProviderError:
    """Map an arbitrary provider exception onto the engine's taxonomy.

    Args:
        error: Exception raised by a provider operation.
        resource_type: Resource type for error context.

    Returns:
        A ProviderError subclass instance (the original if already classified).
    """
    if isinstance(error, ProviderError):
        return error

    if isinstance(error, ResourceNotFoundError):
        classified: ProviderError = NotFoundError(str(error), resource_type=resource_type)
    elif isinstance(error, ClientAuthenticationError):
        classified = PermanentProviderError(
            f"Authentication failed: {error}", resource_type=resource_type
        )
    elif isinstance(error, HttpResponseError):
        status = error.status_code
        if status is not None and status in TRANSIENT_STATUS_CODES:
            classified = TransientProviderError(
                f"HTTP {status}: {error.message}", resource_type=resource_type
            )
        else:
            classified = PermanentProviderError(
                f"HTTP {status}: {error.message}", resource_type=resource_type
            )
    elif isinstance(error, (ServiceRequestError, ServiceResponseError, TimeoutError, ConnectionError)):
        classified = TransientProviderError(
            f"Transport error: {error}", resource_type=resource_type
        )
    else:
        classified = PermanentProviderError(
            f"{type(error).__name__}: {error}", resource_type=resource_type
        )

    classified.__cause__ = error
    return classified


class ProviderRegistry:
    """Maps resource types to providers and data types to data sources."""

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}
        self._data_sources: dict[str, DataSource] = {}

    def register(self, resource_type: str, provider: Provider) -> None:
        """Register the provider serving ``resource_type``."""
        if resource_type in self._providers:
            logger.warning(
                "Replacing registered provider",
                extra={"resource_type": resource_type},
            )
        self._providers[resource_type] = provider

    def register_data_source(self, data_type: str, source: DataSource) -> None:
        """Register the lookup serving ``data.<data_type>.*``."""
        self._data_sources[data_type] = source

    def get(self, resource_type: str) -> Provider:
        """Get the provider for a resource type.

        Raises:
            UnknownResourceTypeError: If none is registered.
        """
        provider = self._providers.get(resource_type)
        if provider is None:
            raise UnknownResourceTypeError(
                f"No provider registered for resource type '{resource_type}'",
                resource_type=resource_type,
            )
        return provider

    def get_data_source(self, data_type: str) -> DataSource:
        source = self._data_sources.get(data_type)
        if source is None:
            raise UnknownResourceTypeError(
                f"No data source registered for data type '{data_type}'",
                resource_type=data_type,
            )
        return source

    def immutable_fields(self, resource_type: str) -> frozenset[str]:
        """Immutable fields declared by the provider, or the catalog defaults."""
        provider = self._providers.get(resource_type)
        declared = getattr(provider, "immutable_fields", None) if provider else None
        if declared is None:
            return default_immutable_fields(resource_type)
        return frozenset(declared)

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._providers
