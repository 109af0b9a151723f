from __future__ import annotations

import re
from urllib.parse import urlparse

from backend.src.contracts.errors import InvalidUrlError
from backend.src.contracts.models import ProductIdentity, Retailer

# Substring match so regional hosts (amazon.co.uk, smile.amazon.com) still resolve.
_RETAILER_DOMAINS: dict[str, Retailer] = {
    "amazon": Retailer.AMAZON,
    "walmart": Retailer.WALMART,
    "bestbuy": Retailer.BESTBUY,
}

_PRODUCT_ID_PATTERNS: dict[Retailer, re.Pattern[str]] = {
    # /dp/B0863TXGM3, /gp/product/B0863TXGM3, /gp/aw/d/B0863TXGM3
    Retailer.AMAZON: re.compile(r"/(?:dp|gp/product|gp/aw/d)/([A-Z0-9]{10})(?:[/?]|$)", re.IGNORECASE),
    # /ip/Some-Product-Name/123456789
    Retailer.WALMART: re.compile(r"^/ip/(?:.+/)?(\d+)/?$"),
    # /site/some-product-name/6418599.p
    Retailer.BESTBUY: re.compile(r"^/site/(?:.+/)?(\d+)\.p$"),
}


def extract_domain(url: str) -> str | None:
    """Return the lower-cased host of ``url`` without a leading ``www.``."""
    try:
        parsed = urlparse(url.strip())
        hostname = parsed.hostname
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not hostname:
        return None
    return hostname.lower().removeprefix("www.")


def identify_retailer(domain: str) -> Retailer | None:
    for needle, retailer in _RETAILER_DOMAINS.items():
        if needle in domain:
            return retailer
    return None


def extract_product_id(url: str, retailer: Retailer) -> str | None:
    path = urlparse(url.strip()).path
    match = _PRODUCT_ID_PATTERNS[retailer].search(path)
    if match is None:
        return None
    product_id = match.group(1)
    return product_id.upper() if retailer is Retailer.AMAZON else product_id


def identify(url: str) -> ProductIdentity:
    """Classify a product URL into a retailer and its retailer-local product id.

    Raises InvalidUrlError when the URL does not parse, the host belongs to no
    supported retailer, or the path carries no recognisable product id.
    Performs no network access.
    """
    domain = extract_domain(url)
    if domain is None:
        raise InvalidUrlError(url, "Invalid URL format")

    retailer = identify_retailer(domain)
    if retailer is None:
        raise InvalidUrlError(url, "Unsupported retailer")

    product_id = extract_product_id(url, retailer)
    if product_id is None:
        raise InvalidUrlError(url, "Could not extract product ID from URL")

    return ProductIdentity(retailer=retailer, retailer_product_id=product_id)


def is_supported_url(url: str) -> bool:
    try:
        identify(url)
    except InvalidUrlError:
        return False
    return True
