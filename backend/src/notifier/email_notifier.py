from __future__ import annotations

import asyncio
from decimal import Decimal
from html import escape

import resend
import structlog

from backend.src.config import Settings
from backend.src.contracts.models import (
    AlertTriggeredEvent,
    NotificationEvent,
    NotificationType,
    PriceDropEvent,
    ProductRead,
    UserRead,
)

logger = structlog.get_logger(__name__)

_MAX_RETRIES = 3
_BASE_DELAY = 1.0

_CURRENCY_PREFIX: dict[str, str] = {"USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥"}


def format_price(amount: Decimal, currency: str) -> str:
    prefix = _CURRENCY_PREFIX.get(currency)
    if prefix is None:
        return f"{amount:,.2f} {currency}"
    return f"{prefix}{amount:,.2f}"


def wants_email(event: NotificationEvent, user: UserRead) -> bool:
    """Per-user opt-outs: a global email switch plus one for price drops."""
    if not user.email_notifications:
        return False
    if event.type is NotificationType.PRICE_DROP and not user.price_drop_alerts:
        return False
    return True


def build_subject(event: NotificationEvent) -> str:
    title = event.product.title
    if len(title) > 60:
        title = title[:57] + "..."
    if isinstance(event, PriceDropEvent):
        return f"Price drop: {title}"
    return f"Price alert: {title} hit your target"


def _headline(event: NotificationEvent) -> str:
    product = event.product
    if isinstance(event, PriceDropEvent):
        old = format_price(event.old_price, product.currency)
        new = format_price(event.new_price, product.currency)
        return f"The price dropped from {old} to {new}."
    assert isinstance(event, AlertTriggeredEvent)
    target = format_price(event.alert.target_price, product.currency)
    current = format_price(product.current_price, product.currency)
    return f"Now {current}, at or below your target of {target}."


def _badge(notification_type: NotificationType) -> str:
    return {
        NotificationType.PRICE_DROP: "Price Drop",
        NotificationType.ALERT_TRIGGERED: "Target Reached",
    }[notification_type]


def render_email_html(event: NotificationEvent, frontend_url: str) -> str:
    product: ProductRead = event.product
    dashboard_url = f"{frontend_url}/products/{product.id}"
    settings_url = f"{frontend_url}/settings/notifications"
    image_row = ""
    if product.image_url:
        image_row = (
            f'<tr><td style="padding:0;"><img src="{escape(product.image_url)}" '
            f'alt="{escape(product.title)}" width="600" '
            'style="display:block;width:100%;height:auto;"></td></tr>'
        )

    return f"""\
<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width,initial-scale=1"></head>
<body style="margin:0;padding:0;background:#f4f4f5;font-family:Arial,Helvetica,sans-serif;">
<table width="100%" cellpadding="0" cellspacing="0" style="background:#f4f4f5;padding:24px 0;">
<tr><td align="center">
<table width="600" cellpadding="0" cellspacing="0" style="background:#ffffff;border-radius:8px;overflow:hidden;">
  <tr><td style="background:#0f172a;padding:20px 24px;color:#ffffff;font-size:20px;font-weight:bold;">PriceWatch</td></tr>
  {image_row}
  <tr><td style="padding:24px;">
    <span style="display:inline-block;background:#dcfce7;color:#15803d;font-size:12px;font-weight:600;padding:4px 10px;border-radius:4px;">{_badge(event.type)}</span>
    <h1 style="margin:12px 0 8px;font-size:22px;color:#0f172a;">{escape(product.title)}</h1>
    <p style="margin:0 0 16px;font-size:18px;color:#16a34a;">{_headline(event)}</p>
    <a href="{escape(product.url)}" style="display:inline-block;background:#0f172a;color:#ffffff;text-decoration:none;padding:12px 32px;border-radius:6px;font-size:16px;font-weight:600;">View on {product.retailer.value.title()}</a>
    <p style="margin:16px 0 0;font-size:13px;"><a href="{dashboard_url}" style="color:#2563eb;">Price history</a></p>
  </td></tr>
  <tr><td style="padding:16px 24px;background:#f9fafb;border-top:1px solid #e5e7eb;font-size:12px;color:#9ca3af;text-align:center;">
    You received this because you track this product on PriceWatch.<br>
    <a href="{settings_url}" style="color:#6b7280;">Notification settings</a>
  </td></tr>
</table>
</td></tr>
</table>
</body>
</html>"""


class EmailNotifier:
    """INotifier implementation that sends notification emails via the Resend API."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        resend.api_key = settings.resend_api_key

    async def send(self, event: NotificationEvent, user: UserRead) -> bool:
        log = logger.bind(
            user_id=str(user.id),
            product_id=str(event.product.id),
            template=event.type.value,
            channel="email",
        )

        if not self._settings.email_enabled:
            log.debug("email_disabled")
            return False
        if not wants_email(event, user):
            log.info("email_opted_out")
            return False

        payload = {
            "from": self._settings.resend_from_email,
            "to": [user.email],
            "subject": build_subject(event),
            "html": render_email_html(event, self._settings.frontend_url),
            "tags": [{"name": "template", "value": event.type.value}],
        }

        last_exc: Exception | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                await asyncio.to_thread(resend.Emails.send, payload)
                log.info("email_sent", attempt=attempt + 1)
                return True
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                delay = _BASE_DELAY * (2**attempt)
                log.warning(
                    "email_send_failed",
                    attempt=attempt + 1,
                    error=str(exc),
                    retry_in=delay,
                )
                if attempt < _MAX_RETRIES - 1:
                    await asyncio.sleep(delay)

        log.error("email_send_exhausted", error=str(last_exc))
        return False
