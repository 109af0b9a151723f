from __future__ import annotations

import uuid
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.alerts.repository import AlertRepository
from backend.src.contracts.errors import NotFoundError, PermissionDeniedError
from backend.src.contracts.interfaces import IDispatcher
from backend.src.contracts.models import Alert, AlertRead, AlertTriggeredEvent, utcnow
from backend.src.products.repository import ProductRepository

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class AlertEngine:
    """Threshold evaluation plus owner-checked alert management.

    An alert fires when it is armed and ``target_price >= current_price``.
    Firing is a conditional update, so each alert fires at most once until its
    owner resets it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: IDispatcher,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher

    async def evaluate(self, product_id: uuid.UUID, current_price: Decimal) -> list[AlertRead]:
        log = logger.bind(product_id=str(product_id), price=str(current_price))

        async with self._session_factory.begin() as session:
            product = await ProductRepository(session).get_by_id(product_id)
            if product is None:
                raise NotFoundError("Product", product_id)

            alerts = AlertRepository(session)
            fired: list[AlertRead] = []
            for alert in await alerts.find_to_trigger(product_id, current_price):
                triggered_at = utcnow()
                if await alerts.mark_triggered(alert.id, triggered_at):
                    fired.append(
                        alert.to_schema().model_copy(
                            update={"is_triggered": True, "updated_at": triggered_at}
                        )
                    )
                else:
                    log.info("alert_already_claimed", alert_id=str(alert.id))
            product_read = product.to_schema()

        # Notify only after the trigger flags are committed.
        for alert_read in fired:
            log.info(
                "alert_triggered",
                alert_id=str(alert_read.id),
                user_id=str(alert_read.user_id),
                target_price=str(alert_read.target_price),
            )
            event = AlertTriggeredEvent(alert=alert_read, product=product_read)
            try:
                await self._dispatcher.dispatch(event)
            except Exception as exc:
                log.error("alert_dispatch_failed", alert_id=str(alert_read.id), error=str(exc))

        return fired

    # ── Owner operations ──────────────────────────────────────────────────────

    @staticmethod
    async def _owned_alert(
        repo: AlertRepository, alert_id: uuid.UUID, user_id: uuid.UUID
    ) -> Alert:
        alert = await repo.get_by_id(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id)
        if alert.user_id != user_id:
            raise PermissionDeniedError("Alert", alert_id)
        return alert

    async def create_alert(
        self, user_id: uuid.UUID, product_id: uuid.UUID, target_price: Decimal
    ) -> AlertRead:
        async with self._session_factory.begin() as session:
            product = await ProductRepository(session).get_by_id(product_id)
            if product is None:
                raise NotFoundError("Product", product_id)
            if product.user_id != user_id:
                raise PermissionDeniedError("Product", product_id)
            alert = await AlertRepository(session).create(
                product_id=product_id, user_id=user_id, target_price=target_price
            )
            logger.info(
                "alert_created",
                alert_id=str(alert.id),
                product_id=str(product_id),
                target_price=str(target_price),
            )
            return alert.to_schema()

    async def update_alert(
        self, user_id: uuid.UUID, alert_id: uuid.UUID, target_price: Decimal
    ) -> AlertRead:
        async with self._session_factory.begin() as session:
            repo = AlertRepository(session)
            alert = await self._owned_alert(repo, alert_id, user_id)
            await repo.update_target(alert, target_price)
            return alert.to_schema()

    async def reset_alert(self, user_id: uuid.UUID, alert_id: uuid.UUID) -> AlertRead:
        """Re-arm a triggered alert so a later crossing fires it again."""
        async with self._session_factory.begin() as session:
            repo = AlertRepository(session)
            alert = await self._owned_alert(repo, alert_id, user_id)
            await repo.reset(alert)
            logger.info("alert_reset", alert_id=str(alert_id))
            return alert.to_schema()

    async def delete_alert(self, user_id: uuid.UUID, alert_id: uuid.UUID) -> None:
        async with self._session_factory.begin() as session:
            repo = AlertRepository(session)
            await self._owned_alert(repo, alert_id, user_id)
            await repo.delete(alert_id)

    async def list_alerts(
        self, user_id: uuid.UUID, *, triggered: bool | None = None
    ) -> list[AlertRead]:
        async with self._session_factory() as session:
            alerts = await AlertRepository(session).list_for_user(user_id)
        return [
            a.to_schema() for a in alerts if triggered is None or a.is_triggered == triggered
        ]

    async def list_product_alerts(
        self, user_id: uuid.UUID, product_id: uuid.UUID
    ) -> list[AlertRead]:
        async with self._session_factory() as session:
            product = await ProductRepository(session).get_by_id(product_id)
            if product is None:
                raise NotFoundError("Product", product_id)
            if product.user_id != user_id:
                raise PermissionDeniedError("Product", product_id)
            alerts = await AlertRepository(session).list_for_product(product_id)
        return [a.to_schema() for a in alerts]
