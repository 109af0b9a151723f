from __future__ import annotations

import abc
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from urllib.parse import urljoin

import httpx
import structlog
from bs4 import BeautifulSoup, Tag

from backend.src.config import DEFAULT_USER_AGENT, Settings, settings as default_settings
from backend.src.contracts.errors import BlockedError, NetworkError, RenderError
from backend.src.contracts.interfaces import IRenderer
from backend.src.contracts.models import (
    ExtractionStage,
    ProductSnapshot,
    Retailer,
    ScrapeError,
    ScrapeErrorCode,
    ScrapeOptions,
    ScrapeResult,
)
from backend.src.scraper.url_identifier import extract_product_id

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

USER_AGENT_POOL: list[str] = [
    DEFAULT_USER_AGENT,
    (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) "
        "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15"
    ),
    (
        "Mozilla/5.0 (X11; Linux x86_64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) "
        "Gecko/20100101 Firefox/121.0"
    ),
    (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14.2; rv:121.0) "
        "Gecko/20100101 Firefox/121.0"
    ),
]

_PRICE_TOKEN = re.compile(r"\d[\d,]*(?:\.\d+)?|\.\d+")

_CURRENCY_SYMBOLS: dict[str, str] = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
}

_UNAVAILABLE_KEYWORDS: tuple[str, ...] = (
    "out of stock",
    "sold out",
    "unavailable",
)

_BLOCK_MARKERS: tuple[str, ...] = (
    "captcha",
    "robot check",
    "are you a robot",
    "unusual activity",
    "press & hold",
)

_MAX_DESCRIPTION_LENGTH = 5000


def parse_price(text: str | None) -> Decimal | None:
    """Extract a non-negative price from text like '$1,299.00' or 'Now $24.88'.

    Every character other than digits and the decimal point is dropped; when
    the text holds several amounts (a range, "was/now"), the first one wins.
    """
    if not text:
        return None
    match = _PRICE_TOKEN.search(text)
    if match is None:
        return None
    numeric = match.group(0).replace(",", "")
    try:
        price = Decimal(numeric)
    except InvalidOperation:
        return None
    return price.quantize(Decimal("0.01"))


def extract_currency(text: str | None) -> str:
    if not text:
        return "USD"
    for symbol, code in _CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code
    return "USD"


def is_available(availability_text: str | None) -> bool:
    """Absence of a negative keyword means the listing is purchasable."""
    if not availability_text:
        return True
    lower = availability_text.lower()
    return not any(keyword in lower for keyword in _UNAVAILABLE_KEYWORDS)


def looks_blocked(html: str) -> bool:
    lower = html.lower()
    return any(marker in lower for marker in _BLOCK_MARKERS)


# ── Selector tables ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FieldSpec:
    """Ordered fallback selectors for one field; the first non-empty match wins.

    With ``attrs`` set, the value is read from the first non-empty attribute of
    the matched element instead of its text.
    """

    selectors: tuple[str, ...]
    attrs: tuple[str, ...] = ()


@dataclass(frozen=True)
class SelectorTable:
    title: FieldSpec
    price: FieldSpec
    original_price: FieldSpec
    image: FieldSpec
    description: FieldSpec
    availability: FieldSpec
    wait_selectors: tuple[str, ...] = ()


def _clean_text(element: Tag) -> str:
    return " ".join(element.get_text(" ", strip=True).split())


def select_value(soup: BeautifulSoup, spec: FieldSpec) -> str:
    for selector in spec.selectors:
        element = soup.select_one(selector)
        if element is None:
            continue
        if spec.attrs:
            for attr in spec.attrs:
                raw = element.get(attr)
                value = raw if isinstance(raw, str) else ""
                if value.strip() and not value.startswith("data:"):
                    return value.strip()
            continue
        text = _clean_text(element)
        if text:
            return text
    return ""


def select_all_text(soup: BeautifulSoup, selector: str) -> str:
    parts = [_clean_text(el) for el in soup.select(selector)]
    return " ".join(part for part in parts if part)


# ── Two-stage extraction values ──────────────────────────────────────────────


@dataclass
class RawFields:
    title: str = ""
    price_text: str = ""
    original_price_text: str = ""
    image_url: str = ""
    description: str = ""
    availability_text: str = ""
    available: bool | None = None


def missing_fields(fields: RawFields) -> list[str]:
    missing: list[str] = []
    if not fields.title.strip():
        missing.append("title")
    if parse_price(fields.price_text) is None:
        missing.append("current_price")
    return missing


def is_sufficient(fields: RawFields) -> bool:
    """True when the fields carry a non-empty title and a parseable price."""
    return not missing_fields(fields)


@dataclass(frozen=True)
class ExtractionAttempt:
    stage: ExtractionStage
    fields: RawFields | None = None
    error: ScrapeError | None = None

    @property
    def sufficient(self) -> bool:
        return self.error is None and self.fields is not None and is_sufficient(self.fields)


def normalize_snapshot(
    fields: RawFields,
    *,
    retailer: Retailer,
    retailer_product_id: str,
    source_url: str,
    stage: ExtractionStage,
) -> ProductSnapshot:
    """Turn raw retailer fields into the shared ProductSnapshot shape."""
    current_price = parse_price(fields.price_text)
    if current_price is None:
        raise ValueError("normalize_snapshot requires a parseable price")

    original_price = parse_price(fields.original_price_text)
    if original_price is not None and original_price <= current_price:
        original_price = None

    availability = (
        fields.available
        if fields.available is not None
        else is_available(fields.availability_text)
    )

    image_url = urljoin(source_url, fields.image_url) if fields.image_url else ""

    return ProductSnapshot(
        title=" ".join(fields.title.split()),
        current_price=current_price,
        original_price=original_price,
        currency=extract_currency(fields.price_text),
        image_url=image_url,
        description=fields.description[:_MAX_DESCRIPTION_LENGTH],
        availability=availability,
        retailer=retailer,
        retailer_product_id=retailer_product_id,
        source_url=source_url,
        stage=stage,
    )


def _error_from_exception(exc: Exception) -> ScrapeError:
    if isinstance(exc, BlockedError):
        return ScrapeError(
            code=ScrapeErrorCode.BLOCKED,
            message=str(exc),
            retryable=True,
        )
    if isinstance(exc, NetworkError):
        details = {"status_code": exc.status_code} if exc.status_code is not None else {}
        return ScrapeError(
            code=ScrapeErrorCode.NETWORK_ERROR,
            message=str(exc),
            retryable=True,
            details=details,
        )
    return ScrapeError(
        code=ScrapeErrorCode.RENDER_FAILED,
        message=str(exc),
        retryable=False,
    )


# ── Strategy base ────────────────────────────────────────────────────────────


class RetailerStrategy(abc.ABC):
    """Static-then-rendered product extraction for a single retailer."""

    def __init__(
        self,
        renderer: IRenderer | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._renderer = renderer
        self._settings = settings or default_settings

    @property
    @abc.abstractmethod
    def retailer(self) -> Retailer:
        ...

    @property
    @abc.abstractmethod
    def selectors(self) -> SelectorTable:
        ...

    def _build_client(self, options: ScrapeOptions) -> httpx.AsyncClient:
        proxy = (
            self._settings.scrape_proxy_url
            if options.use_proxy and self._settings.scrape_proxy_url
            else None
        )
        return httpx.AsyncClient(
            headers={
                "User-Agent": options.effective_user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
            follow_redirects=True,
            timeout=httpx.Timeout(options.timeout_ms / 1000),
            proxy=proxy,
        )

    async def _fetch_html(self, url: str, options: ScrapeOptions) -> str:
        """Single GET of the product page; transport failures become NetworkError."""
        log = logger.bind(url=url, retailer=self.retailer.value)
        try:
            async with self._build_client(options) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Timed out fetching {url}") from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            if status_code in (403, 503) and looks_blocked(exc.response.text):
                raise BlockedError(f"Blocked by {self.retailer.value} ({status_code})", status_code) from exc
            raise NetworkError(f"HTTP {status_code} fetching {url}", status_code) from exc
        except httpx.RequestError as exc:
            raise NetworkError(f"Request to {url} failed: {exc}") from exc

        log.debug("page_fetched", status_code=response.status_code, bytes=len(response.text))
        return response.text

    def read_fields(self, soup: BeautifulSoup) -> RawFields:
        table = self.selectors
        return RawFields(
            title=select_value(soup, table.title),
            price_text=select_value(soup, table.price),
            original_price_text=select_value(soup, table.original_price),
            image_url=select_value(soup, table.image),
            description=select_value(soup, table.description),
            availability_text=select_value(soup, table.availability),
        )

    def parse_html(self, html: str, stage: ExtractionStage) -> ExtractionAttempt:
        soup = BeautifulSoup(html, "lxml")
        fields = self.read_fields(soup)
        if is_sufficient(fields):
            return ExtractionAttempt(stage=stage, fields=fields)

        if looks_blocked(html):
            error = ScrapeError(
                code=ScrapeErrorCode.BLOCKED,
                message=f"{self.retailer.value} served a bot-check page",
                retryable=True,
            )
        else:
            missing = missing_fields(fields)
            error = ScrapeError(
                code=ScrapeErrorCode.EXTRACTION_FAILED,
                message="Failed to extract essential product data",
                retryable=False,
                details={"missing_fields": missing, "stage": stage.value},
            )
        return ExtractionAttempt(stage=stage, fields=fields, error=error)

    async def _static_attempt(self, url: str, options: ScrapeOptions) -> ExtractionAttempt:
        try:
            html = await self._fetch_html(url, options)
        except NetworkError as exc:
            return ExtractionAttempt(stage=ExtractionStage.STATIC, error=_error_from_exception(exc))
        return self.parse_html(html, ExtractionStage.STATIC)

    async def _rendered_attempt(self, url: str, options: ScrapeOptions) -> ExtractionAttempt:
        assert self._renderer is not None
        try:
            html = await self._renderer.render(
                url, options, list(self.selectors.wait_selectors)
            )
        except (NetworkError, RenderError) as exc:
            return ExtractionAttempt(stage=ExtractionStage.RENDERED, error=_error_from_exception(exc))
        return self.parse_html(html, ExtractionStage.RENDERED)

    @staticmethod
    def _final_error(attempts: list[ExtractionAttempt]) -> ScrapeError:
        """Pick the error that best describes a scrape where no stage succeeded.

        Precedence: a page that was fetched but lacked fields, then any
        retryable transport or bot-check error, then the last stage's error.
        A broken browser never hides a network failure from the retry policy.
        """
        errors = [a.error for a in reversed(attempts) if a.error is not None]
        stages = {a.stage.value: a.error.code.value for a in attempts if a.error is not None}
        chosen = next(
            (e for e in errors if e.code is ScrapeErrorCode.EXTRACTION_FAILED),
            next((e for e in errors if e.retryable), errors[0] if errors else None),
        )
        assert chosen is not None
        return chosen.model_copy(update={"details": {**chosen.details, "stages": stages}})

    async def extract(self, url: str, options: ScrapeOptions) -> ScrapeResult:
        log = logger.bind(url=url, retailer=self.retailer.value)

        retailer_product_id = extract_product_id(url, self.retailer)
        if retailer_product_id is None:
            return ScrapeResult.fail(
                ScrapeErrorCode.INVALID_URL,
                f"Invalid {self.retailer.value} product URL",
                details={"url": url},
            )

        static = await self._static_attempt(url, options)
        attempts = [static]
        if not static.sufficient and self._renderer is not None:
            log.info(
                "static_extraction_insufficient",
                code=static.error.code.value if static.error else None,
            )
            attempts.append(await self._rendered_attempt(url, options))

        final = attempts[-1]
        if final.sufficient:
            assert final.fields is not None
            snapshot = normalize_snapshot(
                final.fields,
                retailer=self.retailer,
                retailer_product_id=retailer_product_id,
                source_url=url,
                stage=final.stage,
            )
            log.info(
                "extraction_complete",
                stage=final.stage.value,
                price=str(snapshot.current_price),
                currency=snapshot.currency,
            )
            return ScrapeResult.ok(snapshot)

        error = self._final_error(attempts)
        log.warning("extraction_failed", code=error.code.value, details=error.details)
        return ScrapeResult(success=False, error=error)
