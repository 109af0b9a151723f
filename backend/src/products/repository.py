from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.errors import DuplicateListingError
from backend.src.contracts.models import Product, ProductSnapshot, Retailer, utcnow


class ProductRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, product_id: uuid.UUID) -> Product | None:
        return await self._session.get(Product, product_id)

    async def find_by_listing(
        self, retailer: Retailer, retailer_product_id: str
    ) -> Product | None:
        stmt = select(Product).where(
            Product.retailer == retailer.value,
            Product.retailer_product_id == retailer_product_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: uuid.UUID) -> list[Product]:
        stmt = (
            select(Product)
            .where(Product.user_id == user_id)
            .order_by(Product.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_due_for_check(self, limit: int) -> list[Product]:
        """Least recently updated products first."""
        stmt = select(Product).order_by(Product.updated_at.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        *,
        user_id: uuid.UUID,
        retailer_product_id: str,
        snapshot: ProductSnapshot,
        url: str | None = None,
    ) -> Product:
        """Insert a product row from a snapshot.

        Raises DuplicateListingError when the (retailer, retailer_product_id)
        pair is already taken. The session must be rolled back before reuse.
        """
        now = utcnow()
        product = Product(
            id=uuid.uuid4(),
            title=snapshot.title,
            description=snapshot.description or None,
            image_url=snapshot.image_url or None,
            url=url or snapshot.source_url,
            retailer=snapshot.retailer.value,
            retailer_product_id=retailer_product_id,
            current_price=snapshot.current_price,
            currency=snapshot.currency,
            created_at=now,
            updated_at=now,
            user_id=user_id,
        )
        self._session.add(product)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise DuplicateListingError(snapshot.retailer.value, retailer_product_id) from exc
        return product

    async def update_price(
        self, product: Product, price: Decimal, currency: str
    ) -> Product:
        product.current_price = price
        product.currency = currency
        product.updated_at = utcnow()
        await self._session.flush()
        return product

    async def delete(self, product_id: uuid.UUID) -> bool:
        result = await self._session.execute(delete(Product).where(Product.id == product_id))
        return result.rowcount > 0
