import asyncio
import secrets
import uuid
from collections.abc import AsyncIterator
from typing import Any

import structlog
from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.api.auth import decode_access_token, get_current_user
from backend.src.api.database import get_db
from backend.src.container import Services
from backend.src.contracts.errors import (
    ExtractionFailedError,
    InvalidUrlError,
    NotFoundError,
    PermissionDeniedError,
    ScrapeFailedError,
)
from backend.src.contracts.models import (
    AlertCreate,
    AlertRead,
    AlertUpdate,
    CronCheckRequest,
    PriceHistoryRead,
    PriceStats,
    ProductCreate,
    ProductRead,
    ScrapeErrorCode,
    ScrapeRequest,
    ScrapeResult,
    User,
    product_channel,
    user_channel,
)

logger = structlog.get_logger(__name__)

limiter = Limiter(key_func=get_remote_address)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


# ── Response schemas ──────────────────────────────────────────────────────────


class PriceHistoryResponse(BaseModel):
    product_id: uuid.UUID
    history: list[PriceHistoryRead]
    stats: PriceStats


class CronFailure(BaseModel):
    product_id: uuid.UUID
    error: str


class CronCheckResponse(BaseModel):
    checked: int
    updated: int
    failed: int
    products: list[ProductRead]
    failures: list[CronFailure]


class HealthResponse(BaseModel):
    status: str
    db: str
    realtime: str


# ── Error mapping ─────────────────────────────────────────────────────────────


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidUrlError)
    async def _invalid_url(request: Request, exc: InvalidUrlError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": exc.reason, "code": ScrapeErrorCode.INVALID_URL.value},
        )

    @app.exception_handler(ScrapeFailedError)
    async def _scrape_failed(request: Request, exc: ScrapeFailedError) -> JSONResponse:
        content = {
            "detail": exc.error.message,
            "code": exc.error.code.value,
            "retryable": exc.error.retryable,
        }
        if isinstance(exc, ExtractionFailedError):
            content["missing_fields"] = exc.missing_fields
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=content)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(PermissionDeniedError)
    async def _forbidden(request: Request, exc: PermissionDeniedError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


# ── Scrape preview ────────────────────────────────────────────────────────────


@router.post("/api/scrape")
@limiter.limit("20/minute")
async def scrape_preview(
    request: Request,
    body: ScrapeRequest,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    result: ScrapeResult = await services.scraper.scrape(body.url, body.options)
    if result.success:
        status_code = status.HTTP_200_OK
    elif result.error is not None and result.error.code is ScrapeErrorCode.INVALID_URL:
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_502_BAD_GATEWAY
    return JSONResponse(content=result.model_dump(mode="json"), status_code=status_code)


# ── Products ──────────────────────────────────────────────────────────────────


@router.get("/api/products")
async def list_products(
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> list[ProductRead]:
    return await services.price_service.list_products(current_user.id)


@router.post("/api/products", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def add_product(
    request: Request,
    body: ProductCreate,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> ProductRead:
    return await services.price_service.add_product_from_url(body.url, current_user.id)


@router.get("/api/products/{product_id}")
async def get_product(
    product_id: uuid.UUID,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> ProductRead:
    return await services.price_service.get_product(product_id, current_user.id)


@router.delete("/api/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_product(
    product_id: uuid.UUID,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> Response:
    await services.price_service.delete_product(product_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/api/products/{product_id}/recheck")
async def recheck_product(
    product_id: uuid.UUID,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> ProductRead:
    await services.price_service.get_product(product_id, current_user.id)
    return await services.price_service.recheck_price(product_id)


@router.get("/api/products/{product_id}/price-history")
async def get_price_history(
    product_id: uuid.UUID,
    limit: int | None = Query(default=None, ge=1, le=1000),
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> PriceHistoryResponse:
    history = await services.price_service.get_price_history(
        product_id, limit=limit, user_id=current_user.id
    )
    stats = await services.price_service.get_price_stats(product_id, user_id=current_user.id)
    return PriceHistoryResponse(product_id=product_id, history=history, stats=stats)


# ── Alerts ────────────────────────────────────────────────────────────────────


@router.get("/api/alerts")
async def list_alerts(
    product_id: uuid.UUID | None = None,
    triggered: bool | None = None,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> list[AlertRead]:
    engine = services.alert_engine
    if product_id is not None:
        alerts = await engine.list_product_alerts(current_user.id, product_id)
        return [a for a in alerts if triggered is None or a.is_triggered == triggered]
    return await engine.list_alerts(current_user.id, triggered=triggered)


@router.post("/api/alerts", status_code=status.HTTP_201_CREATED)
async def create_alert(
    body: AlertCreate,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> AlertRead:
    return await services.alert_engine.create_alert(
        current_user.id, body.product_id, body.target_price
    )


@router.patch("/api/alerts/{alert_id}")
async def update_alert(
    alert_id: uuid.UUID,
    body: AlertUpdate,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> AlertRead:
    if body.target_price is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Nothing to update",
        )
    return await services.alert_engine.update_alert(current_user.id, alert_id, body.target_price)


@router.delete("/api/alerts/{alert_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_alert(
    alert_id: uuid.UUID,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> Response:
    await services.alert_engine.delete_alert(current_user.id, alert_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/api/alerts/{alert_id}/reset")
async def reset_alert(
    alert_id: uuid.UUID,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
) -> AlertRead:
    return await services.alert_engine.reset_alert(current_user.id, alert_id)


# ── Cron ──────────────────────────────────────────────────────────────────────


@router.post("/api/cron/check-prices")
async def cron_check_prices(
    body: CronCheckRequest | None = None,
    x_cron_secret: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> CronCheckResponse:
    expected = services.settings.cron_secret
    if x_cron_secret is None or not secrets.compare_digest(x_cron_secret, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )

    limit = (body or CronCheckRequest()).limit
    result = await services.price_service.check_due_products(limit)
    return CronCheckResponse(
        checked=result.checked,
        updated=len(result),
        failed=len(result.failures),
        products=list(result),
        failures=[CronFailure(product_id=f.product_id, error=f.error) for f in result.failures],
    )


# ── Health ────────────────────────────────────────────────────────────────────


@router.get("/health")
async def health_check(
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> HealthResponse:
    db_status = "ok"
    realtime_status = "ok"

    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    try:
        await services.broker.publish("health", {"type": "ping"})
    except Exception:
        realtime_status = "error"

    overall = "ok" if db_status == "ok" and realtime_status == "ok" else "degraded"

    return HealthResponse(
        status=overall,
        db=db_status,
        realtime=realtime_status,
    )


# ── Realtime ──────────────────────────────────────────────────────────────────


async def _forward(websocket: WebSocket, messages: AsyncIterator[dict[str, Any]]) -> None:
    async for message in messages:
        await websocket.send_json(message)


@router.websocket("/api/ws")
async def realtime_updates(
    websocket: WebSocket,
    token: str | None = None,
    product_id: list[uuid.UUID] = Query(default=[]),
) -> None:
    """Push notification events for the caller and, optionally, some of their products."""
    token = token or websocket.cookies.get("access_token")
    user_id: uuid.UUID | None = None
    if token:
        try:
            user_id = decode_access_token(token)
        except HTTPException:
            user_id = None
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    services: Services = websocket.app.state.services
    channels = [user_channel(user_id)]
    for pid in product_id:
        try:
            await services.price_service.get_product(pid, user_id)
        except (NotFoundError, PermissionDeniedError):
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        channels.append(product_channel(pid))

    await websocket.accept()
    log = logger.bind(user_id=str(user_id), channels=channels)
    log.info("realtime_connected")

    async with services.broker.subscribe(*channels) as messages:
        forwarder = asyncio.create_task(_forward(websocket, messages))
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            log.info("realtime_disconnected")
        finally:
            forwarder.cancel()
            await asyncio.gather(forwarder, return_exceptions=True)
