from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from backend.src.config import DEFAULT_USER_AGENT, Settings


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────────────


class Retailer(str, enum.Enum):
    AMAZON = "AMAZON"
    WALMART = "WALMART"
    BESTBUY = "BESTBUY"


class ExtractionStage(str, enum.Enum):
    STATIC = "static"
    RENDERED = "rendered"


class ScrapeErrorCode(str, enum.Enum):
    INVALID_URL = "INVALID_URL"
    NETWORK_ERROR = "NETWORK_ERROR"
    BLOCKED = "BLOCKED"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    RENDER_FAILED = "RENDER_FAILED"


class NotificationType(str, enum.Enum):
    PRICE_DROP = "PRICE_DROP"
    ALERT_TRIGGERED = "ALERT_TRIGGERED"


# ── Scraping schemas ──────────────────────────────────────────────────────────


class ProductIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    retailer: Retailer
    retailer_product_id: str


class ScrapeOptions(BaseModel):
    use_proxy: bool = True
    timeout_ms: int = Field(default=10000, gt=0)
    max_retries: int = Field(default=3, ge=0)
    user_agent: str | None = Field(
        default=None,
        description="Pin a User-Agent for every attempt; None uses the default and rotates on retry",
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> ScrapeOptions:
        return cls(
            use_proxy=settings.scrape_use_proxy,
            timeout_ms=settings.scrape_timeout_ms,
            max_retries=settings.scrape_max_retries,
        )

    @property
    def effective_user_agent(self) -> str:
        return self.user_agent or DEFAULT_USER_AGENT


class ProductSnapshot(BaseModel):
    title: str = Field(min_length=1)
    current_price: Decimal = Field(ge=0)
    original_price: Decimal | None = None
    currency: str = Field(default="USD", min_length=3, max_length=3)
    image_url: str = ""
    description: str = ""
    availability: bool = True
    retailer: Retailer
    retailer_product_id: str
    source_url: str
    captured_at: datetime = Field(default_factory=utcnow)
    stage: ExtractionStage = ExtractionStage.STATIC

    @model_validator(mode="after")
    def _original_not_below_current(self) -> ProductSnapshot:
        if self.original_price is not None and self.original_price < self.current_price:
            raise ValueError("original_price must be >= current_price")
        return self


class ScrapeError(BaseModel):
    code: ScrapeErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class ScrapeResult(BaseModel):
    success: bool
    data: ProductSnapshot | None = None
    error: ScrapeError | None = None
    response_time_ms: int = 0
    attempts: int = 1

    @model_validator(mode="after")
    def _data_xor_error(self) -> ScrapeResult:
        if self.success and self.data is None:
            raise ValueError("successful result requires data")
        if not self.success and self.error is None:
            raise ValueError("failed result requires error")
        return self

    @classmethod
    def ok(cls, data: ProductSnapshot) -> ScrapeResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        code: ScrapeErrorCode,
        message: str,
        *,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> ScrapeResult:
        return cls(
            success=False,
            error=ScrapeError(
                code=code,
                message=message,
                retryable=retryable,
                details=details or {},
            ),
        )


# ── Read schemas ──────────────────────────────────────────────────────────────


class UserRead(BaseModel):
    id: uuid.UUID
    email: EmailStr
    name: str | None = None
    email_notifications: bool = True
    price_drop_alerts: bool = True
    created_at: datetime


class ProductRead(BaseModel):
    id: uuid.UUID
    title: str
    description: str | None = None
    image_url: str | None = None
    url: str
    retailer: Retailer
    retailer_product_id: str
    current_price: Decimal
    currency: str
    created_at: datetime
    updated_at: datetime
    user_id: uuid.UUID


class PriceHistoryRead(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    price: Decimal
    currency: str
    timestamp: datetime


class PriceStats(BaseModel):
    lowest: Decimal | None = None
    highest: Decimal | None = None
    average: Decimal | None = None
    count: int = 0


class AlertRead(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    user_id: uuid.UUID
    target_price: Decimal
    is_triggered: bool
    created_at: datetime
    updated_at: datetime


# ── Request schemas ───────────────────────────────────────────────────────────


class ScrapeRequest(BaseModel):
    url: str
    options: ScrapeOptions | None = None


class ProductCreate(BaseModel):
    url: str


class AlertCreate(BaseModel):
    product_id: uuid.UUID
    target_price: Decimal = Field(gt=0)


class AlertUpdate(BaseModel):
    target_price: Decimal | None = Field(default=None, gt=0)


class CronCheckRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=1000)


# ── Notification events ───────────────────────────────────────────────────────


class PriceDropEvent(BaseModel):
    type: Literal[NotificationType.PRICE_DROP] = NotificationType.PRICE_DROP
    product: ProductRead
    old_price: Decimal
    new_price: Decimal

    @property
    def user_id(self) -> uuid.UUID:
        return self.product.user_id

    @property
    def product_id(self) -> uuid.UUID:
        return self.product.id


class AlertTriggeredEvent(BaseModel):
    type: Literal[NotificationType.ALERT_TRIGGERED] = NotificationType.ALERT_TRIGGERED
    alert: AlertRead
    product: ProductRead

    @property
    def user_id(self) -> uuid.UUID:
        return self.alert.user_id

    @property
    def product_id(self) -> uuid.UUID:
        return self.product.id


NotificationEvent = Annotated[
    Union[PriceDropEvent, AlertTriggeredEvent],
    Field(discriminator="type"),
]


def user_channel(user_id: uuid.UUID) -> str:
    return f"user:{user_id}"


def product_channel(product_id: uuid.UUID) -> str:
    return f"product:{product_id}"


# ── SQLAlchemy ORM ─────────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    price_drop_alerts: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    products: Mapped[list["Product"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    def to_schema(self) -> UserRead:
        return UserRead(
            id=self.id,
            email=self.email,
            name=self.name,
            email_notifications=self.email_notifications,
            price_drop_alerts=self.price_drop_alerts,
            created_at=self.created_at,
        )


class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(1000), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    retailer: Mapped[str] = mapped_column(String(20), nullable=False)
    retailer_product_id: Mapped[str] = mapped_column(String(200), nullable=False)
    current_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="products")
    price_history: Mapped[list["PriceHistory"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", passive_deletes=True
    )
    alerts: Mapped[list["Alert"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("retailer", "retailer_product_id", name="uq_products_listing"),
        Index("ix_products_user_id", "user_id"),
        Index("ix_products_url", "url"),
        Index("ix_products_updated_at", "updated_at"),
    )

    def to_schema(self) -> ProductRead:
        return ProductRead(
            id=self.id,
            title=self.title,
            description=self.description,
            image_url=self.image_url,
            url=self.url,
            retailer=Retailer(self.retailer),
            retailer_product_id=self.retailer_product_id,
            current_price=self.current_price,
            currency=self.currency,
            created_at=self.created_at,
            updated_at=self.updated_at,
            user_id=self.user_id,
        )


class PriceHistory(Base):
    __tablename__ = "price_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    product: Mapped["Product"] = relationship(back_populates="price_history")

    __table_args__ = (
        Index("ix_price_history_product_timestamp", "product_id", "timestamp"),
    )

    def to_schema(self) -> PriceHistoryRead:
        return PriceHistoryRead(
            id=self.id,
            product_id=self.product_id,
            price=self.price,
            currency=self.currency,
            timestamp=self.timestamp,
        )


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    target_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_triggered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    product: Mapped["Product"] = relationship(back_populates="alerts")

    __table_args__ = (
        Index("ix_alerts_product_id", "product_id"),
        Index("ix_alerts_user_id", "user_id"),
        Index("ix_alerts_is_triggered", "is_triggered"),
    )

    def to_schema(self) -> AlertRead:
        return AlertRead(
            id=self.id,
            product_id=self.product_id,
            user_id=self.user_id,
            target_price=self.target_price,
            is_triggered=self.is_triggered,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
