"""Change-aware listing and detail fetching for one time window.

``get_order_list`` returns lightweight ``(order_sn, order_status)`` pairs.
Only orders that are new locally, or whose status differs from the stored
one, are detail-fetched, in sub-batches of at most 50. Each sub-batch is
written immediately, so work already fetched survives a budget stop or a
later remote failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from shopee_sync.services.orders_sync.budget import ExecutionBudget
from shopee_sync.services.orders_sync.chunks import TimeWindow
from shopee_sync.services.orders_sync.logger import log_page
from shopee_sync.services.orders_sync.writer import UpsertResult, upsert_orders
from shopee_sync.services.shopee_client import ORDER_DETAIL_BATCH_SIZE, ShopeeClient
from shopee_sync.models_sqlalchemy.models import ShopeeOrder
from shopee_sync.utils.logger import logger


DETAIL_BATCH_DELAY_SECONDS = 0.2
LIST_PAGE_DELAY_SECONDS = 0.3


@dataclass
class WindowFetchResult:
    window: TimeWindow
    pages: int = 0
    listed: int = 0
    skipped: int = 0
    fetched: int = 0
    complete: bool = False
    stopped_reason: Optional[str] = None
    latest_update_time: Optional[int] = None
    upsert: UpsertResult = field(default_factory=UpsertResult)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window": self.window.to_dict(),
            "pages": self.pages,
            "listed": self.listed,
            "skipped": self.skipped,
            "fetched": self.fetched,
            "inserted": self.upsert.inserted,
            "updated": self.upsert.updated,
            "complete": self.complete,
            "stopped_reason": self.stopped_reason,
        }


def load_stored_statuses(db: Session, shop_id: int, order_sns: Sequence[str]) -> Dict[str, str]:
    if not order_sns:
        return {}
    rows = (
        db.query(ShopeeOrder.order_sn, ShopeeOrder.order_status)
        .filter(ShopeeOrder.shop_id == shop_id, ShopeeOrder.order_sn.in_(list(order_sns)))
        .all()
    )
    return {order_sn: order_status for order_sn, order_status in rows}


def select_changed(candidates: Sequence[Dict[str, Any]], stored: Dict[str, str]) -> List[str]:
    """order_sn values that are new, or whose listed status differs from the stored one."""

    changed: List[str] = []
    seen = set()
    for entry in candidates:
        order_sn = entry.get("order_sn")
        if not order_sn or order_sn in seen:
            continue
        seen.add(order_sn)
        if order_sn not in stored or stored[order_sn] != entry.get("order_status"):
            changed.append(order_sn)
    return changed


async def fetch_window(
    db: Session,
    client: ShopeeClient,
    shop_id: int,
    window: TimeWindow,
    budget: ExecutionBudget,
    *,
    run_id: Optional[str] = None,
) -> WindowFetchResult:
    """Walk every list page of ``window`` and store changed orders.

    ``complete`` is True only when the last page was consumed without the
    budget tripping. Remote errors propagate; sub-batches written before the
    error stay written.
    """

    result = WindowFetchResult(window=window)
    cursor = ""

    while True:
        if not budget.check():
            result.stopped_reason = budget.reason
            break

        page = await client.get_order_list(window.time_from, window.time_to, cursor)
        result.pages += 1
        result.listed += len(page.orders)

        stored = load_stored_statuses(db, shop_id, [o.get("order_sn") for o in page.orders if o.get("order_sn")])
        changed = select_changed(page.orders, stored)
        result.skipped += len(page.orders) - len(changed)
        page_stored = 0

        position = 0
        while position < len(changed):
            if not budget.check():
                result.stopped_reason = budget.reason
                break
            remaining = budget.remaining_records()
            size = ORDER_DETAIL_BATCH_SIZE if remaining is None else min(ORDER_DETAIL_BATCH_SIZE, remaining)
            batch = changed[position:position + size]
            position += len(batch)

            details = await client.get_order_detail(batch)
            budget.add_records(len(batch))
            result.fetched += len(details)
            for order in details:
                update_time = order.get("update_time")
                if update_time and (result.latest_update_time is None or update_time > result.latest_update_time):
                    result.latest_update_time = update_time

            written = upsert_orders(db, shop_id, details)
            result.upsert.add(written)
            page_stored += written.total

            if position < len(changed):
                await client.limiter.pause(DETAIL_BATCH_DELAY_SECONDS)

        if run_id:
            log_page(
                db,
                run_id=run_id,
                shop_id=shop_id,
                pipeline="orders",
                page=result.pages,
                listed=len(page.orders),
                changed=len(changed),
                stored=page_stored,
            )

        if result.stopped_reason:
            break

        if not page.more or not page.next_cursor:
            result.complete = True
            break

        cursor = page.next_cursor
        await client.limiter.pause(LIST_PAGE_DELAY_SECONDS)

    logger.info(
        f"[orders-fetch] shop_id={shop_id} window={window.time_from}-{window.time_to} "
        f"pages={result.pages} listed={result.listed} skipped={result.skipped} "
        f"fetched={result.fetched} complete={result.complete} stopped={result.stopped_reason}"
    )
    return result
