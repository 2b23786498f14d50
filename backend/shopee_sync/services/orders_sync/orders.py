"""Order sync entry points.

Every entry point that talks to Shopee runs under the per-shop lease
(``state.acquire_lease``): a second invocation for the same shop fails fast
with ``success: False`` instead of waiting. Within the lease:

* the cursor is pointed at the window being worked on before any remote call,
  so a crash or remote failure leaves it on that same window;
* orders are fetched and written through ``fetcher.fetch_window``;
* the cursor advances only when the window was consumed completely. A budget
  stop keeps it on the same window and reports ``has_more``.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.orm import Session

from shopee_sync.models_sqlalchemy.models import ShopeeOrder
from shopee_sync.models_sqlalchemy.sync_workers import ShopeeOrdersSyncStatus
from shopee_sync.services.orders_sync.budget import ExecutionBudget
from shopee_sync.services.orders_sync.chunks import (
    InvalidSyncInput,
    TimeWindow,
    available_months,
    date_range_windows,
    make_range_id,
    month_bounds,
    month_chunk,
    next_month_chunk_end,
)
from shopee_sync.services.orders_sync.escrow import (
    clamp_batch_size,
    sync_escrow_batch,
    sync_escrow_for_orders,
)
from shopee_sync.services.orders_sync.fetcher import WindowFetchResult, fetch_window
from shopee_sync.services.orders_sync.logger import log_done, log_error, log_start
from shopee_sync.services.orders_sync.state import (
    IdleCursor,
    MonthCursor,
    RangeCursor,
    SyncAlreadyRunningError,
    acquire_lease,
    complete_lease,
    fail_lease,
    get_cursor,
    get_sync_status,
    release_lease_if_held,
    set_cursor,
    status_to_dict,
)
from shopee_sync.services.shopee_client import ShopeeClient
from shopee_sync.utils.logger import logger


QUICK_SYNC_DAYS = 7
PERIODIC_MAX_DAYS = 7
PERIODIC_OVERLAP_SECONDS = 3600
DAY_SECONDS = 24 * 60 * 60

DEFAULT_ORDERS_PAGE_LIMIT = 50
MAX_ORDERS_PAGE_LIMIT = 500

ClientFactory = Callable[[], Awaitable[ShopeeClient]]
Work = Callable[[ShopeeClient, ShopeeOrdersSyncStatus, str], Awaitable[Dict[str, Any]]]


def _update_progress(status: ShopeeOrdersSyncStatus, key: str, value: Dict[str, Any]) -> None:
    # Reassign so the JSON column is flagged dirty.
    progress = dict(status.progress or {})
    progress[key] = value
    status.progress = progress


def _counts(fetch: WindowFetchResult) -> Dict[str, Any]:
    return {
        "synced_count": fetch.upsert.total,
        "new_orders": fetch.upsert.inserted,
        "updated_orders": fetch.upsert.updated,
        "skipped": fetch.skipped,
        "listed": fetch.listed,
        "stopped_reason": fetch.stopped_reason,
    }


def _record_counts(status: ShopeeOrdersSyncStatus, fetch: WindowFetchResult) -> None:
    status.total_synced = (status.total_synced or 0) + fetch.upsert.total
    status.new_orders = fetch.upsert.inserted
    status.updated_orders = fetch.upsert.updated


async def _run_leased(
    db: Session,
    shop_id: int,
    *,
    action: str,
    pipeline: str,
    get_client: ClientFactory,
    work: Work,
) -> Dict[str, Any]:
    run_id = str(uuid4())
    started = time.monotonic()

    try:
        status = acquire_lease(db, shop_id, action=action, run_id=run_id)
    except SyncAlreadyRunningError as exc:
        return {"success": False, "error": str(exc), "is_syncing": True, "action": action}

    log_start(db, run_id=run_id, shop_id=shop_id, pipeline=pipeline, action=action)

    try:
        client = await get_client()
        result = await work(client, status, run_id)
        complete_lease(db, status, run_id)
    except Exception as exc:
        message = str(exc) or exc.__class__.__name__
        logger.error(f"[orders-sync] {action} failed shop_id={shop_id} run_id={run_id}: {message}", exc_info=True)
        fail_lease(db, shop_id, run_id, error=message)
        log_error(db, run_id=run_id, shop_id=shop_id, pipeline=pipeline, message=message, stage=action)
        return {"success": False, "error": message, "action": action, "run_id": run_id}
    finally:
        release_lease_if_held(db, shop_id, run_id)

    duration_ms = int((time.monotonic() - started) * 1000)
    log_done(db, run_id=run_id, shop_id=shop_id, pipeline=pipeline, summary=result, duration_ms=duration_ms)
    logger.info(f"[orders-sync] {action} done shop_id={shop_id} run_id={run_id} duration_ms={duration_ms}")
    return {"success": True, "action": action, "run_id": run_id, **result}


def _start_window(db: Session, status: ShopeeOrdersSyncStatus, action: str, window: TimeWindow) -> None:
    _update_progress(status, "orders", {"action": action, "state": "running", "window": window.to_dict()})
    db.commit()


# ----------------------------------------------------------------------
# Quick / periodic
# ----------------------------------------------------------------------


def plan_auto_window(status: ShopeeOrdersSyncStatus, now_ts: int, *, force_initial: bool = False) -> tuple:
    """Return ``(mode, window)`` for an auto sync."""

    if force_initial or not status.is_initial_sync_done:
        return "quick", TimeWindow(now_ts - QUICK_SYNC_DAYS * DAY_SECONDS, now_ts)

    last = status.last_sync_update_time or now_ts
    time_from = max(last - PERIODIC_OVERLAP_SECONDS, now_ts - PERIODIC_MAX_DAYS * DAY_SECONDS)
    return "periodic", TimeWindow(min(time_from, now_ts), now_ts)


def next_watermark(previous: Optional[int], latest_seen: Optional[int], window: TimeWindow) -> int:
    """Newest remote ``update_time`` written so far.

    Falls back to ``previous`` when nothing changed, and to the window end on a
    first sync that found nothing.
    """

    candidates = [ts for ts in (previous, latest_seen) if ts]
    return max(candidates) if candidates else window.time_to


async def sync_orders(
    db: Session,
    shop_id: int,
    get_client: ClientFactory,
    *,
    force_initial: bool = False,
    budget: Optional[ExecutionBudget] = None,
    now_ts: Optional[int] = None,
) -> Dict[str, Any]:
    """Quick sync (last 7 days) until the first one completes, then periodic sync."""

    budget = budget or ExecutionBudget.from_settings()

    async def work(client: ShopeeClient, status: ShopeeOrdersSyncStatus, run_id: str) -> Dict[str, Any]:
        now = now_ts if now_ts is not None else int(time.time())
        mode, window = plan_auto_window(status, now, force_initial=force_initial)
        _start_window(db, status, "sync", window)

        fetch = await fetch_window(db, client, shop_id, window, budget, run_id=run_id)

        _record_counts(status, fetch)
        if fetch.complete:
            status.is_initial_sync_done = True
            status.last_sync_update_time = next_watermark(
                status.last_sync_update_time if mode == "periodic" else None,
                fetch.latest_update_time,
                window,
            )

        result = {
            "mode": mode,
            "window": window.to_dict(),
            "has_more": not fetch.complete,
            **_counts(fetch),
        }
        _update_progress(status, "orders", {"action": "sync", "state": "done", **result})
        return result

    return await _run_leased(db, shop_id, action="sync", pipeline="orders", get_client=get_client, work=work)


# ----------------------------------------------------------------------
# Month walk
# ----------------------------------------------------------------------


async def sync_month_chunk(
    db: Session,
    shop_id: int,
    get_client: ClientFactory,
    month: str,
    chunk_end: Optional[int] = None,
    *,
    budget: Optional[ExecutionBudget] = None,
    action: str = "sync-month",
) -> Dict[str, Any]:
    """Sync one window of ``month``, newest first.

    ``chunk_end`` defaults to the month's last second. The response carries
    ``next_chunk_end`` to pass on the next call (or use continue-month-sync).
    """

    window = month_chunk(month, chunk_end)
    budget = budget or ExecutionBudget.from_settings()

    async def work(client: ShopeeClient, status: ShopeeOrdersSyncStatus, run_id: str) -> Dict[str, Any]:
        set_cursor(status, MonthCursor(month=month, chunk_end=window.time_to))
        _start_window(db, status, action, window)

        fetch = await fetch_window(db, client, shop_id, window, budget, run_id=run_id)

        _record_counts(status, fetch)
        month_completed = False
        if fetch.complete:
            next_end = next_month_chunk_end(month, window)
            if next_end is None:
                month_completed = True
                set_cursor(status, IdleCursor())
                synced_months = list(status.synced_months or [])
                if month not in synced_months:
                    synced_months.append(month)
                status.synced_months = synced_months
            else:
                set_cursor(status, MonthCursor(month=month, chunk_end=next_end))
        else:
            next_end = window.time_to

        result = {
            "month": month,
            "chunk": window.to_dict(),
            "has_more": next_end is not None,
            "next_chunk_end": next_end,
            "month_completed": month_completed,
            **_counts(fetch),
        }
        _update_progress(status, "orders", {"action": action, "state": "done", **result})
        return result

    return await _run_leased(db, shop_id, action=action, pipeline="orders", get_client=get_client, work=work)


async def continue_month_sync(
    db: Session,
    shop_id: int,
    get_client: ClientFactory,
    *,
    budget: Optional[ExecutionBudget] = None,
) -> Dict[str, Any]:
    cursor = get_cursor(get_sync_status(db, shop_id))
    if not isinstance(cursor, MonthCursor):
        return {
            "success": True,
            "action": "continue-month-sync",
            "has_more": False,
            "message": "No month sync in progress",
        }
    return await sync_month_chunk(
        db,
        shop_id,
        get_client,
        cursor.month,
        cursor.chunk_end,
        budget=budget,
        action="continue-month-sync",
    )


# ----------------------------------------------------------------------
# Date range walk
# ----------------------------------------------------------------------


async def sync_date_range_chunk(
    db: Session,
    shop_id: int,
    get_client: ClientFactory,
    start_date: str,
    end_date: str,
    chunk_index: Optional[int] = None,
    *,
    budget: Optional[ExecutionBudget] = None,
) -> Dict[str, Any]:
    """Sync window ``chunk_index`` of the range (0 is the newest window).

    Without ``chunk_index`` the stored range cursor is resumed when it belongs
    to the same range; otherwise the walk starts at 0.
    """

    windows = date_range_windows(start_date, end_date)
    range_id = make_range_id(start_date, end_date)
    total = len(windows)

    if chunk_index is None:
        cursor = get_cursor(get_sync_status(db, shop_id))
        index = cursor.chunk_index if isinstance(cursor, RangeCursor) and cursor.range_id == range_id else 0
    else:
        index = int(chunk_index)
    if not 0 <= index < total:
        raise InvalidSyncInput(f"chunk_index {index} out of range 0..{total - 1}")

    window = windows[index]
    budget = budget or ExecutionBudget.from_settings()

    async def work(client: ShopeeClient, status: ShopeeOrdersSyncStatus, run_id: str) -> Dict[str, Any]:
        set_cursor(status, RangeCursor(range_id, start_date, end_date, index, total))
        _start_window(db, status, "sync-date-range", window)

        fetch = await fetch_window(db, client, shop_id, window, budget, run_id=run_id)

        _record_counts(status, fetch)
        next_index = index + 1 if fetch.complete else index
        range_completed = next_index >= total
        if range_completed:
            set_cursor(status, IdleCursor())
            synced_ranges = list(status.synced_ranges or [])
            if range_id not in synced_ranges:
                synced_ranges.append(range_id)
            status.synced_ranges = synced_ranges
        else:
            set_cursor(status, RangeCursor(range_id, start_date, end_date, next_index, total))

        result = {
            "range_id": range_id,
            "chunk": window.to_dict(),
            "chunk_index": index,
            "next_chunk_index": None if range_completed else next_index,
            "total_chunks": total,
            "has_more": not range_completed,
            "range_completed": range_completed,
            "progress_percent": round(next_index * 100.0 / total, 1),
            **_counts(fetch),
        }
        _update_progress(status, "orders", {"action": "sync-date-range", "state": "done", **result})
        return result

    return await _run_leased(db, shop_id, action="sync-date-range", pipeline="orders", get_client=get_client, work=work)


# ----------------------------------------------------------------------
# Escrow
# ----------------------------------------------------------------------


async def sync_escrow(
    db: Session,
    shop_id: int,
    get_client: ClientFactory,
    *,
    order_sns: Optional[Sequence[str]] = None,
    offset: Optional[int] = None,
    batch_size: Optional[int] = None,
    force: bool = False,
    budget: Optional[ExecutionBudget] = None,
    action: str = "sync-escrow",
) -> Dict[str, Any]:
    """Backfill escrow for an explicit order list, or one page of eligible orders.

    Without an explicit ``offset`` the page walk resumes from the stored
    escrow progress when the previous page reported ``has_more``.
    """

    batch_size = clamp_batch_size(batch_size)
    budget = budget or ExecutionBudget.from_settings()

    async def work(client: ShopeeClient, status: ShopeeOrdersSyncStatus, run_id: str) -> Dict[str, Any]:
        if order_sns:
            result = await sync_escrow_for_orders(db, client, shop_id, order_sns, force=force, budget=budget)
            return result.to_dict()

        start = offset
        if start is None:
            previous = (status.progress or {}).get("escrow") or {}
            start = previous.get("next_offset", 0) if previous.get("has_more") else 0

        result = await sync_escrow_batch(
            db,
            client,
            shop_id,
            offset=start,
            batch_size=batch_size,
            force=force,
            budget=budget,
        )
        payload = result.to_dict()
        _update_progress(
            status,
            "escrow",
            {key: payload[key] for key in ("offset", "next_offset", "has_more", "percent", "total")},
        )
        return payload

    return await _run_leased(db, shop_id, action=action, pipeline="escrow", get_client=get_client, work=work)


# ----------------------------------------------------------------------
# Read-only views
# ----------------------------------------------------------------------


def get_status(db: Session, shop_id: int) -> Dict[str, Any]:
    status = get_sync_status(db, shop_id)
    return {
        "success": True,
        "status": status_to_dict(status),
        "available_months": available_months(),
    }


def order_to_dict(order: ShopeeOrder) -> Dict[str, Any]:
    return {
        "order_sn": order.order_sn,
        "order_status": order.order_status,
        "currency": order.currency,
        "total_amount": float(order.total_amount) if order.total_amount is not None else None,
        "create_time": order.create_time,
        "update_time": order.update_time,
        "pay_time": order.pay_time,
        "buyer_username": order.buyer_username,
        "shipping_carrier": order.shipping_carrier,
        "payment_method": order.payment_method,
        "item_list": order.item_list,
        "escrow_fetched": bool(order.escrow_fetched),
        "synced_at": order.synced_at.isoformat() if order.synced_at else None,
    }


def list_orders(
    db: Session,
    shop_id: int,
    *,
    order_status: Optional[str] = None,
    month: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> Dict[str, Any]:
    """Stored orders for one shop, newest ``create_time`` first."""

    limit = min(max(int(limit or DEFAULT_ORDERS_PAGE_LIMIT), 1), MAX_ORDERS_PAGE_LIMIT)
    offset = max(int(offset or 0), 0)

    query = db.query(ShopeeOrder).filter(ShopeeOrder.shop_id == shop_id)
    if order_status and order_status.upper() != "ALL":
        query = query.filter(ShopeeOrder.order_status == order_status)
    if month:
        bounds = month_bounds(month)
        query = query.filter(ShopeeOrder.create_time >= bounds.time_from, ShopeeOrder.create_time <= bounds.time_to)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(ShopeeOrder.order_sn.ilike(pattern), ShopeeOrder.buyer_username.ilike(pattern)))

    total = query.count()
    rows: List[ShopeeOrder] = (
        query.order_by(ShopeeOrder.create_time.desc(), ShopeeOrder.order_sn)
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {
        "success": True,
        "orders": [order_to_dict(row) for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
