from __future__ import annotations

import pathlib
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from backend.src.config import Settings
from backend.src.contracts.errors import BlockedError, NetworkError, RenderError
from backend.src.contracts.models import (
    ExtractionStage,
    Retailer,
    ScrapeErrorCode,
    ScrapeOptions,
)
from backend.src.scraper.base import (
    RawFields,
    extract_currency,
    is_available,
    is_sufficient,
    missing_fields,
    normalize_snapshot,
    parse_price,
)
from backend.src.scraper.retailers import AmazonStrategy, BestBuyStrategy, WalmartStrategy

FIXTURES_DIR = pathlib.Path(__file__).parent / "fixtures"

AMAZON_URL = "https://www.amazon.com/dp/B0863TXGM3"
WALMART_URL = "https://www.walmart.com/ip/Great-Value-Whole-Bean-Coffee/123456789"
BESTBUY_URL = "https://www.bestbuy.com/site/apple-airpods-pro-2nd-generation-white/6447382.p"


def _load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        scrape_proxy_url=None,
    )


@pytest.fixture
def options() -> ScrapeOptions:
    return ScrapeOptions(use_proxy=False, timeout_ms=5000, max_retries=0)


def _renderer(html: str | None = None, exc: Exception | None = None) -> MagicMock:
    renderer = MagicMock()
    if exc is not None:
        renderer.render = AsyncMock(side_effect=exc)
    else:
        renderer.render = AsyncMock(return_value=html)
    return renderer


# ── Normalization helpers ─────────────────────────────────────────────────────


class TestParsePrice:
    def test_thousands_separator(self) -> None:
        assert parse_price("$1,299.00") == Decimal("1299.00")

    def test_prefix_words(self) -> None:
        assert parse_price("Now $24.88") == Decimal("24.88")

    def test_integer_price(self) -> None:
        assert parse_price("$15") == Decimal("15.00")

    def test_first_amount_of_range_wins(self) -> None:
        assert parse_price("$19.99 - $29.99") == Decimal("19.99")

    def test_whitespace_around(self) -> None:
        assert parse_price("  £349.99 \n") == Decimal("349.99")

    def test_empty_string(self) -> None:
        assert parse_price("") is None

    def test_none(self) -> None:
        assert parse_price(None) is None

    def test_no_digits(self) -> None:
        assert parse_price("Price unavailable") is None


class TestExtractCurrency:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("$1,299.00", "USD"),
            ("€49,99", "EUR"),
            ("£20.00", "GBP"),
            ("¥3000", "JPY"),
            ("1299.00", "USD"),
            ("", "USD"),
        ],
    )
    def test_symbols(self, text: str, expected: str) -> None:
        assert extract_currency(text) == expected


class TestIsAvailable:
    def test_in_stock(self) -> None:
        assert is_available("In Stock")

    def test_sold_out(self) -> None:
        assert not is_available("Sold Out")

    def test_unavailable_case_insensitive(self) -> None:
        assert not is_available("Currently UNAVAILABLE.")

    def test_out_of_stock(self) -> None:
        assert not is_available("Out of stock")

    def test_empty_text_means_available(self) -> None:
        assert is_available("")


class TestSufficiency:
    def test_title_and_price(self) -> None:
        assert is_sufficient(RawFields(title="Widget", price_text="$5.00"))

    def test_missing_title(self) -> None:
        fields = RawFields(title="  ", price_text="$5.00")
        assert not is_sufficient(fields)
        assert missing_fields(fields) == ["title"]

    def test_unparseable_price(self) -> None:
        fields = RawFields(title="Widget", price_text="See price in cart")
        assert missing_fields(fields) == ["current_price"]

    def test_nothing(self) -> None:
        assert missing_fields(RawFields()) == ["title", "current_price"]


class TestNormalizeSnapshot:
    def test_scenario_price(self) -> None:
        snapshot = normalize_snapshot(
            RawFields(title="Laptop", price_text="$1,299.00"),
            retailer=Retailer.BESTBUY,
            retailer_product_id="1",
            source_url=BESTBUY_URL,
            stage=ExtractionStage.STATIC,
        )
        assert snapshot.current_price == Decimal("1299.00")
        assert snapshot.currency == "USD"

    def test_drops_original_below_current(self) -> None:
        snapshot = normalize_snapshot(
            RawFields(title="Laptop", price_text="$100.00", original_price_text="$80.00"),
            retailer=Retailer.AMAZON,
            retailer_product_id="B0863TXGM3",
            source_url=AMAZON_URL,
            stage=ExtractionStage.STATIC,
        )
        assert snapshot.original_price is None

    def test_resolves_relative_image(self) -> None:
        snapshot = normalize_snapshot(
            RawFields(title="Laptop", price_text="$100.00", image_url="/img/a.jpg"),
            retailer=Retailer.BESTBUY,
            retailer_product_id="6447382",
            source_url=BESTBUY_URL,
            stage=ExtractionStage.RENDERED,
        )
        assert snapshot.image_url == "https://www.bestbuy.com/img/a.jpg"
        assert snapshot.stage is ExtractionStage.RENDERED

    def test_rejects_unparseable_price(self) -> None:
        with pytest.raises(ValueError):
            normalize_snapshot(
                RawFields(title="Laptop", price_text="call us"),
                retailer=Retailer.AMAZON,
                retailer_product_id="B0863TXGM3",
                source_url=AMAZON_URL,
                stage=ExtractionStage.STATIC,
            )


# ── Retailer selector tables ──────────────────────────────────────────────────


class TestAmazonParsing:
    def test_reads_product_page(self, settings: Settings) -> None:
        attempt = AmazonStrategy(settings=settings).parse_html(
            _load_fixture("amazon_product.html"), ExtractionStage.STATIC
        )
        assert attempt.sufficient
        fields = attempt.fields
        assert fields is not None
        assert fields.title == "Sony WH-1000XM4 Wireless Noise Canceling Overhead Headphones"
        assert parse_price(fields.price_text) == Decimal("278.00")
        assert parse_price(fields.original_price_text) == Decimal("349.99")
        assert fields.image_url.endswith("_AC_SX425_.jpg")
        assert fields.availability_text == "In Stock"

    def test_feature_bullets_fill_description(self, settings: Settings) -> None:
        attempt = AmazonStrategy(settings=settings).parse_html(
            _load_fixture("amazon_product.html"), ExtractionStage.STATIC
        )
        assert attempt.fields is not None
        assert attempt.fields.description.startswith("Industry-leading noise canceling")
        assert "30-hour battery life" in attempt.fields.description

    def test_captcha_page_is_blocked(self, settings: Settings) -> None:
        attempt = AmazonStrategy(settings=settings).parse_html(
            _load_fixture("amazon_captcha.html"), ExtractionStage.STATIC
        )
        assert attempt.error is not None
        assert attempt.error.code is ScrapeErrorCode.BLOCKED
        assert attempt.error.retryable

    def test_missing_price_is_extraction_failure(self, settings: Settings) -> None:
        attempt = AmazonStrategy(settings=settings).parse_html(
            _load_fixture("amazon_no_price.html"), ExtractionStage.STATIC
        )
        assert attempt.error is not None
        assert attempt.error.code is ScrapeErrorCode.EXTRACTION_FAILED
        assert not attempt.error.retryable
        assert attempt.error.details["missing_fields"] == ["current_price"]


class TestWalmartParsing:
    def test_reads_product_page(self, settings: Settings) -> None:
        attempt = WalmartStrategy(settings=settings).parse_html(
            _load_fixture("walmart_product.html"), ExtractionStage.STATIC
        )
        assert attempt.sufficient
        fields = attempt.fields
        assert fields is not None
        assert fields.title == "Great Value Whole Bean Coffee, Medium Roast, 32 oz"
        assert parse_price(fields.price_text) == Decimal("24.88")
        assert parse_price(fields.original_price_text) == Decimal("29.97")
        assert fields.description == "Smooth, well-balanced medium roast coffee beans."

    def test_add_to_cart_means_available(self, settings: Settings) -> None:
        attempt = WalmartStrategy(settings=settings).parse_html(
            _load_fixture("walmart_product.html"), ExtractionStage.STATIC
        )
        assert attempt.fields is not None
        assert attempt.fields.available is True

    def test_split_price(self, settings: Settings) -> None:
        attempt = WalmartStrategy(settings=settings).parse_html(
            _load_fixture("walmart_split_price.html"), ExtractionStage.STATIC
        )
        assert attempt.sufficient
        fields = attempt.fields
        assert fields is not None
        assert fields.title == "Mainstays 12-Cup Coffee Maker"
        assert parse_price(fields.price_text) == Decimal("19.97")
        assert not is_available(fields.availability_text)


class TestBestBuyParsing:
    def test_reads_product_page(self, settings: Settings) -> None:
        attempt = BestBuyStrategy(settings=settings).parse_html(
            _load_fixture("bestbuy_product.html"), ExtractionStage.STATIC
        )
        assert attempt.sufficient
        fields = attempt.fields
        assert fields is not None
        assert fields.title == "Apple - AirPods Pro (2nd generation) - White"
        assert fields.price_text == "$189.99"
        assert parse_price(fields.original_price_text) == Decimal("249.99")
        assert fields.availability_text == "Sold Out"


# ── Static then rendered pipeline ─────────────────────────────────────────────


class TestStaticThenRendered:
    @pytest.mark.asyncio
    async def test_static_success_skips_renderer(
        self, settings: Settings, options: ScrapeOptions
    ) -> None:
        renderer = _renderer("<html></html>")
        strategy = AmazonStrategy(renderer, settings)
        strategy._fetch_html = AsyncMock(return_value=_load_fixture("amazon_product.html"))  # type: ignore[method-assign]

        result = await strategy.extract(AMAZON_URL, options)

        assert result.success
        assert result.data is not None
        assert result.data.stage is ExtractionStage.STATIC
        assert result.data.retailer is Retailer.AMAZON
        assert result.data.retailer_product_id == "B0863TXGM3"
        assert result.data.current_price == Decimal("278.00")
        assert result.data.original_price == Decimal("349.99")
        assert result.data.availability is True
        renderer.render.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_app_shell_falls_back_to_rendered(
        self, settings: Settings, options: ScrapeOptions
    ) -> None:
        renderer = _renderer(_load_fixture("walmart_product.html"))
        strategy = WalmartStrategy(renderer, settings)
        strategy._fetch_html = AsyncMock(return_value=_load_fixture("app_shell.html"))  # type: ignore[method-assign]

        result = await strategy.extract(WALMART_URL, options)

        assert result.success
        assert result.data is not None
        assert result.data.stage is ExtractionStage.RENDERED
        assert result.data.current_price == Decimal("24.88")
        renderer.render.assert_awaited_once()
        _, _, wait_selectors = renderer.render.await_args.args
        assert '[data-testid="product-title"]' in wait_selectors

    @pytest.mark.asyncio
    async def test_static_network_error_falls_back_to_rendered(
        self, settings: Settings, options: ScrapeOptions
    ) -> None:
        renderer = _renderer(_load_fixture("bestbuy_product.html"))
        strategy = BestBuyStrategy(renderer, settings)
        strategy._fetch_html = AsyncMock(side_effect=NetworkError("HTTP 403", 403))  # type: ignore[method-assign]

        result = await strategy.extract(BESTBUY_URL, options)

        assert result.success
        assert result.data is not None
        assert result.data.availability is False
        assert result.data.image_url == "https://www.bestbuy.com/images/products/6447/6447382_sd.jpg"

    @pytest.mark.asyncio
    async def test_extraction_failure_outranks_render_failure(
        self, settings: Settings, options: ScrapeOptions
    ) -> None:
        renderer = _renderer(exc=RenderError("browser crashed"))
        strategy = AmazonStrategy(renderer, settings)
        strategy._fetch_html = AsyncMock(return_value=_load_fixture("amazon_no_price.html"))  # type: ignore[method-assign]

        result = await strategy.extract(AMAZON_URL, options)

        assert not result.success
        assert result.error is not None
        assert result.error.code is ScrapeErrorCode.EXTRACTION_FAILED
        assert not result.error.retryable
        assert result.error.details["missing_fields"] == ["current_price"]
        assert result.error.details["stages"] == {
            "static": "EXTRACTION_FAILED",
            "rendered": "RENDER_FAILED",
        }

    @pytest.mark.asyncio
    async def test_both_network_failures_are_retryable(
        self, settings: Settings, options: ScrapeOptions
    ) -> None:
        renderer = _renderer(exc=NetworkError("Timed out loading page in browser"))
        strategy = AmazonStrategy(renderer, settings)
        strategy._fetch_html = AsyncMock(side_effect=NetworkError("Timed out"))  # type: ignore[method-assign]

        result = await strategy.extract(AMAZON_URL, options)

        assert result.error is not None
        assert result.error.code is ScrapeErrorCode.NETWORK_ERROR
        assert result.error.retryable

    @pytest.mark.asyncio
    async def test_render_failure_after_network_error_stays_retryable(
        self, settings: Settings, options: ScrapeOptions
    ) -> None:
        renderer = _renderer(exc=RenderError("chromium missing"))
        strategy = AmazonStrategy(renderer, settings)
        strategy._fetch_html = AsyncMock(side_effect=NetworkError("Timed out"))  # type: ignore[method-assign]

        result = await strategy.extract(AMAZON_URL, options)

        assert result.error is not None
        assert result.error.code is ScrapeErrorCode.NETWORK_ERROR
        assert result.error.retryable
        assert result.error.details["stages"] == {
            "static": "NETWORK_ERROR",
            "rendered": "RENDER_FAILED",
        }

    @pytest.mark.asyncio
    async def test_blocked_static_page_is_retryable_without_renderer(
        self, settings: Settings, options: ScrapeOptions
    ) -> None:
        strategy = AmazonStrategy(None, settings)
        strategy._fetch_html = AsyncMock(return_value=_load_fixture("amazon_captcha.html"))  # type: ignore[method-assign]

        result = await strategy.extract(AMAZON_URL, options)

        assert result.error is not None
        assert result.error.code is ScrapeErrorCode.BLOCKED
        assert result.error.retryable

    @pytest.mark.asyncio
    async def test_url_without_product_id(
        self, settings: Settings, options: ScrapeOptions
    ) -> None:
        strategy = AmazonStrategy(None, settings)
        strategy._fetch_html = AsyncMock()  # type: ignore[method-assign]

        result = await strategy.extract("https://www.amazon.com/s?k=headphones", options)

        assert result.error is not None
        assert result.error.code is ScrapeErrorCode.INVALID_URL
        strategy._fetch_html.assert_not_awaited()


# ── Static fetch ──────────────────────────────────────────────────────────────


def _client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFetchHtml:
    @pytest.mark.asyncio
    async def test_client_uses_requested_user_agent(self, settings: Settings) -> None:
        strategy = AmazonStrategy(None, settings)
        async with strategy._build_client(
            ScrapeOptions(use_proxy=False, user_agent="TestAgent/1.0")
        ) as client:
            assert client.headers["User-Agent"] == "TestAgent/1.0"

    @pytest.mark.asyncio
    async def test_returns_body_on_success(self, settings: Settings, options: ScrapeOptions) -> None:
        strategy = AmazonStrategy(None, settings)
        strategy._build_client = MagicMock(  # type: ignore[method-assign]
            return_value=_client_for(lambda request: httpx.Response(200, text="<html>ok</html>"))
        )

        assert await strategy._fetch_html(AMAZON_URL, options) == "<html>ok</html>"

    @pytest.mark.asyncio
    async def test_non_2xx_is_network_error(self, settings: Settings, options: ScrapeOptions) -> None:
        strategy = AmazonStrategy(None, settings)
        strategy._build_client = MagicMock(  # type: ignore[method-assign]
            return_value=_client_for(lambda request: httpx.Response(500, text="oops"))
        )

        with pytest.raises(NetworkError) as exc_info:
            await strategy._fetch_html(AMAZON_URL, options)
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_503_captcha_is_blocked(self, settings: Settings, options: ScrapeOptions) -> None:
        strategy = AmazonStrategy(None, settings)
        strategy._build_client = MagicMock(  # type: ignore[method-assign]
            return_value=_client_for(
                lambda request: httpx.Response(503, text=_load_fixture("amazon_captcha.html"))
            )
        )

        with pytest.raises(BlockedError):
            await strategy._fetch_html(AMAZON_URL, options)

    @pytest.mark.asyncio
    async def test_connection_error_is_network_error(
        self, settings: Settings, options: ScrapeOptions
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        strategy = AmazonStrategy(None, settings)
        strategy._build_client = MagicMock(return_value=_client_for(handler))  # type: ignore[method-assign]

        with pytest.raises(NetworkError):
            await strategy._fetch_html(AMAZON_URL, options)

    def test_proxy_only_when_requested(self) -> None:
        proxied = Settings(
            database_url="sqlite+aiosqlite:///:memory:",
            scrape_proxy_url="http://proxy.internal:8080",
        )
        strategy = AmazonStrategy(None, proxied)
        with pytest.MonkeyPatch.context() as mp:
            created: list[dict] = []

            def fake_client(**kwargs):
                created.append(kwargs)
                return MagicMock()

            mp.setattr("backend.src.scraper.base.httpx.AsyncClient", fake_client)
            strategy._build_client(ScrapeOptions(use_proxy=True))
            strategy._build_client(ScrapeOptions(use_proxy=False))

        assert created[0]["proxy"] == "http://proxy.internal:8080"
        assert created[1]["proxy"] is None
