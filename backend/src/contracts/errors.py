from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from backend.src.contracts.models import ScrapeError


class PriceMonitorError(Exception):
    """Base class for every error raised by the price-monitoring core."""


class InvalidUrlError(PriceMonitorError):
    """URL does not parse, names an unsupported retailer, or carries no product id."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{reason}: {url}")
        self.url = url
        self.reason = reason


class NetworkError(PriceMonitorError):
    """Transport-level failure (timeout, DNS, refused connection, non-2xx)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BlockedError(NetworkError):
    """The retailer answered with a bot-check page instead of the product."""


class RenderError(PriceMonitorError):
    """The headless browser could not be started or crashed mid-session."""


class ScrapeFailedError(PriceMonitorError):
    """A scrape needed by a service operation did not succeed."""

    def __init__(self, error: ScrapeError) -> None:
        super().__init__(f"{error.code.value}: {error.message}")
        self.error = error


class ExtractionFailedError(ScrapeFailedError):
    """Page was fetched but essential fields could not be read.

    Never worth retrying: the same selectors fail the same way.
    """

    def __init__(self, error: ScrapeError) -> None:
        super().__init__(error)
        self.missing_fields: list[str] = list(error.details.get("missing_fields", []))


class NotFoundError(PriceMonitorError):
    def __init__(self, resource: str, resource_id: object) -> None:
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class PermissionDeniedError(PriceMonitorError):
    def __init__(self, resource: str, resource_id: object) -> None:
        super().__init__(f"You do not have permission to modify {resource} {resource_id}")
        self.resource = resource
        self.resource_id = resource_id


class DuplicateListingError(PriceMonitorError):
    """Another row already holds this (retailer, retailer_product_id) pair.

    Raised by the product repository on a unique-constraint race and handled
    inside the price service; never surfaced to callers.
    """

    def __init__(self, retailer: str, retailer_product_id: str) -> None:
        super().__init__(f"{retailer}/{retailer_product_id} already exists")
        self.retailer = retailer
        self.retailer_product_id = retailer_product_id
