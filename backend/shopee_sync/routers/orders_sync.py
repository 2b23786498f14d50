from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from shopee_sync.models_sqlalchemy import get_db
from shopee_sync.services.orders_sync.escrow import escrow_stats
from shopee_sync.services.orders_sync.orders import (
    ClientFactory,
    continue_month_sync,
    get_status,
    list_orders,
    sync_date_range_chunk,
    sync_escrow,
    sync_month_chunk,
    sync_orders,
)
from shopee_sync.services.shopee_client import ShopeeApiError
from shopee_sync.services.shopee_token_provider import (
    ShopeeCredentialsError,
    get_shopee_client,
    refresh_shop_token,
)
from shopee_sync.utils.logger import logger


router = APIRouter(prefix="/shopee", tags=["shopee_orders_sync"])

ClientFactoryBuilder = Callable[[Session, int], ClientFactory]


class OrdersSyncRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: str
    shop_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("shop_id", "account_id"))

    # sync
    force_initial: bool = False

    # sync-month / continue-month-sync
    month: Optional[str] = None
    chunk_end: Optional[int] = None

    # sync-date-range
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    chunk_index: Optional[int] = None

    # sync-escrow / sync-all-escrow
    order_sn_list: Optional[List[str]] = None
    batch_size: Optional[int] = None
    offset: Optional[int] = None
    force: bool = False

    # get-orders
    status: Optional[str] = None
    search: Optional[str] = None
    limit: Optional[int] = None


def get_client_factory_builder() -> ClientFactoryBuilder:
    """Dependency returning how to build a Shopee client for a shop (overridden in tests)."""

    def build(db: Session, shop_id: int) -> ClientFactory:
        async def factory():
            return await get_shopee_client(db, shop_id)

        return factory

    return build


def _error(message: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "error": message, **extra}


async def _handle_sync(req: OrdersSyncRequest, db: Session, factory: ClientFactory) -> Dict[str, Any]:
    return await sync_orders(db, req.shop_id, factory, force_initial=req.force_initial)


async def _handle_sync_month(req: OrdersSyncRequest, db: Session, factory: ClientFactory) -> Dict[str, Any]:
    if not req.month:
        return _error("month is required (YYYY-MM)")
    return await sync_month_chunk(db, req.shop_id, factory, req.month, req.chunk_end)


async def _handle_continue_month(req: OrdersSyncRequest, db: Session, factory: ClientFactory) -> Dict[str, Any]:
    return await continue_month_sync(db, req.shop_id, factory)


async def _handle_date_range(req: OrdersSyncRequest, db: Session, factory: ClientFactory) -> Dict[str, Any]:
    if not req.start_date or not req.end_date:
        return _error("start_date and end_date are required (YYYY-MM-DD)")
    return await sync_date_range_chunk(db, req.shop_id, factory, req.start_date, req.end_date, req.chunk_index)


async def _handle_status(req: OrdersSyncRequest, db: Session, factory: ClientFactory) -> Dict[str, Any]:
    return get_status(db, req.shop_id)


async def _handle_escrow(req: OrdersSyncRequest, db: Session, factory: ClientFactory) -> Dict[str, Any]:
    return await sync_escrow(
        db,
        req.shop_id,
        factory,
        order_sns=req.order_sn_list,
        offset=req.offset,
        batch_size=req.batch_size,
        force=req.force,
        action=req.action,
    )


async def _handle_all_escrow(req: OrdersSyncRequest, db: Session, factory: ClientFactory) -> Dict[str, Any]:
    return await sync_escrow(
        db,
        req.shop_id,
        factory,
        offset=req.offset,
        batch_size=req.batch_size,
        force=req.force,
        action=req.action,
    )


async def _handle_escrow_stats(req: OrdersSyncRequest, db: Session, factory: ClientFactory) -> Dict[str, Any]:
    return {"success": True, "stats": escrow_stats(db, req.shop_id, req.month)}


async def _handle_get_orders(req: OrdersSyncRequest, db: Session, factory: ClientFactory) -> Dict[str, Any]:
    return list_orders(
        db,
        req.shop_id,
        order_status=req.status,
        month=req.month,
        search=req.search,
        limit=req.limit,
        offset=req.offset or 0,
    )


async def _handle_refresh_token(req: OrdersSyncRequest, db: Session, factory: ClientFactory) -> Dict[str, Any]:
    shop = await refresh_shop_token(db, req.shop_id)
    return {
        "success": True,
        "shop_id": shop.shop_id,
        "expire_in": shop.expire_in,
        "expired_at": shop.expired_at,
    }


Handler = Callable[[OrdersSyncRequest, Session, ClientFactory], Awaitable[Dict[str, Any]]]

ACTIONS: Dict[str, Handler] = {
    "sync": _handle_sync,
    "sync-month": _handle_sync_month,
    "continue-month-sync": _handle_continue_month,
    "sync-date-range": _handle_date_range,
    "status": _handle_status,
    "sync-escrow": _handle_escrow,
    "sync-all-escrow": _handle_all_escrow,
    "finance-stats": _handle_escrow_stats,
    "escrow-stats": _handle_escrow_stats,
    "get-orders": _handle_get_orders,
    "refresh-token": _handle_refresh_token,
}


@router.post("/orders-sync")
async def orders_sync(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    build_client_factory: ClientFactoryBuilder = Depends(get_client_factory_builder),
) -> Dict[str, Any]:
    """Single action-dispatch endpoint for the order sync engine.

    Always answers 200 with a JSON object carrying ``success``; failures are
    reported in ``error`` rather than through the HTTP status.
    """

    try:
        req = OrdersSyncRequest.model_validate(payload)
    except ValidationError as exc:
        return _error("Invalid request", details=exc.errors(include_url=False, include_context=False))

    handler = ACTIONS.get(req.action)
    if handler is None:
        return _error(f"Unknown action: {req.action}", available_actions=sorted(ACTIONS))
    if req.shop_id is None:
        return _error("shop_id is required")

    logger.info(f"[orders-sync] action={req.action} shop_id={req.shop_id}")
    try:
        return await handler(req, db, build_client_factory(db, req.shop_id))
    except ValueError as exc:
        return _error(str(exc))
    except (ShopeeApiError, ShopeeCredentialsError) as exc:
        logger.warning(f"[orders-sync] action={req.action} shop_id={req.shop_id} failed: {exc}")
        return _error(str(exc), error_code=getattr(exc, "error", None))
    except Exception as exc:
        logger.exception(f"[orders-sync] action={req.action} shop_id={req.shop_id} crashed")
        return _error(f"Internal error: {exc}")
