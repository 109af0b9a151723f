from __future__ import annotations

from bs4 import BeautifulSoup

from backend.src.contracts.models import Retailer
from backend.src.scraper.base import (
    FieldSpec,
    RawFields,
    RetailerStrategy,
    SelectorTable,
    select_all_text,
)

_IMAGE_ATTRS: tuple[str, ...] = ("src", "data-src", "data-old-hires")


class AmazonStrategy(RetailerStrategy):
    """amazon.* product pages (/dp/, /gp/product/)."""

    _SELECTORS = SelectorTable(
        title=FieldSpec(("#productTitle", "#title span", "h1#title")),
        price=FieldSpec(
            (
                "#corePrice_feature_div .a-price .a-offscreen",
                "#corePriceDisplay_desktop_feature_div .a-price .a-offscreen",
                "#priceblock_dealprice",
                "#priceblock_ourprice",
                ".a-price .a-offscreen",
            )
        ),
        original_price=FieldSpec(
            (
                ".basisPrice .a-text-price .a-offscreen",
                ".a-text-price .a-offscreen",
                "#listPrice",
            )
        ),
        image=FieldSpec(("#landingImage", "#imgBlkFront", "#ebooksImgBlkFront"), attrs=_IMAGE_ATTRS),
        description=FieldSpec(("#productDescription p", "#productDescription")),
        availability=FieldSpec(("#availability", "#outOfStock")),
        wait_selectors=("#productTitle", "#corePrice_feature_div", ".a-price .a-offscreen"),
    )

    @property
    def retailer(self) -> Retailer:
        return Retailer.AMAZON

    @property
    def selectors(self) -> SelectorTable:
        return self._SELECTORS

    def read_fields(self, soup: BeautifulSoup) -> RawFields:
        fields = super().read_fields(soup)
        if not fields.description:
            fields.description = select_all_text(soup, "#feature-bullets .a-list-item")
        return fields


class WalmartStrategy(RetailerStrategy):
    """walmart.com product pages (/ip/<slug>/<digits>)."""

    _SELECTORS = SelectorTable(
        title=FieldSpec(
            (
                '[data-testid="product-title"]',
                "h1.prod-ProductTitle",
                'h1[itemprop="name"]',
                '[data-automation-id="product-title"]',
                "h1.lh-copy",
                "h1",
            )
        ),
        price=FieldSpec(
            (
                '[data-testid="price-value"]',
                '[itemprop="price"]',
                '[data-automation-id="product-price"]',
                ".b.black.f1.ma0",
            )
        ),
        original_price=FieldSpec(
            ("span.strike-through-price", '[data-testid="was-price"]', "del", "s")
        ),
        image=FieldSpec(
            (
                'img[data-testid="main-image"]',
                "img.prod-hero-image",
                'img[itemprop="image"]',
                'img[data-automation-id="image-gallery-image"]',
                ".cc-picture img",
                ".high-res-image",
            ),
            attrs=_IMAGE_ATTRS,
        ),
        description=FieldSpec(
            (
                '[data-testid="product-description"]',
                ".about-product",
                '[itemprop="description"]',
                ".product-description-container",
                '[data-automation-id="product-description"]',
            )
        ),
        availability=FieldSpec(
            (
                '[data-testid="availability-message"]',
                ".prod-ProductOffer-oosMsg",
                '[data-automation-id="out-of-stock-message"]',
                ".availability-status",
            )
        ),
        wait_selectors=('[data-testid="product-title"]', '[data-testid="price-value"]', "h1"),
    )

    _ADD_TO_CART_SELECTOR = (
        '[data-automation-id="add-to-cart"], '
        '[data-tl-id="ProductPrimaryCTA-cta_add_to_cart"], '
        ".add-to-cart-btn"
    )

    @property
    def retailer(self) -> Retailer:
        return Retailer.WALMART

    @property
    def selectors(self) -> SelectorTable:
        return self._SELECTORS

    def read_fields(self, soup: BeautifulSoup) -> RawFields:
        fields = super().read_fields(soup)

        # Older templates split the price into dollars and cents spans.
        if not fields.price_text:
            characteristic = soup.select_one("span.price-characteristic")
            mantissa = soup.select_one("span.price-mantissa")
            if characteristic is not None and mantissa is not None:
                dollars = characteristic.get_text(strip=True)
                cents = mantissa.get_text(strip=True)
                if dollars and cents:
                    fields.price_text = f"${dollars}.{cents}"

        if not fields.availability_text:
            fields.available = soup.select_one(self._ADD_TO_CART_SELECTOR) is not None
        return fields


class BestBuyStrategy(RetailerStrategy):
    """bestbuy.com product pages (/site/<slug>/<digits>.p)."""

    _SELECTORS = SelectorTable(
        title=FieldSpec((".sku-title h1", 'h1[data-track="product-title"]', "h1.heading-5")),
        price=FieldSpec(
            (
                ".priceView-customer-price span",
                ".priceView-hero-price span",
                ".pricing-price__regular-price",
            )
        ),
        original_price=FieldSpec(
            (".pricing-price__was-price", ".pricing-price__regular-price")
        ),
        image=FieldSpec(
            ("img.primary-image", ".picture-wrapper img", "img.product-image"),
            attrs=_IMAGE_ATTRS,
        ),
        description=FieldSpec((".product-description", ".long-description", ".product-data-value")),
        availability=FieldSpec(
            (".fulfillment-add-to-cart-button", ".fulfillment-fulfillment-summary")
        ),
        wait_selectors=(".sku-title h1", 'h1[data-track="product-title"]', "h1.heading-5"),
    )

    @property
    def retailer(self) -> Retailer:
        return Retailer.BESTBUY

    @property
    def selectors(self) -> SelectorTable:
        return self._SELECTORS
