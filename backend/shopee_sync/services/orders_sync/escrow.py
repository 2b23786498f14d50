"""Escrow (settlement) backfill for settled orders.

Eligible orders (COMPLETED, TO_CONFIRM_RECEIVE, TO_RETURN) are walked in a
stable order (``create_time`` desc, then ``order_sn``) one page at a time.
Each order's escrow detail is fetched sequentially. A per-order remote error
is a soft failure: it is reported and the batch continues; only auth errors
abort the batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import exists, func
from sqlalchemy.orm import Query, Session

from shopee_sync.models_sqlalchemy.models import ShopeeOrder, ShopeeOrderEscrow
from shopee_sync.services.orders_sync.budget import ExecutionBudget
from shopee_sync.services.orders_sync.chunks import month_bounds
from shopee_sync.services.orders_sync.writer import upsert_escrow
from shopee_sync.services.shopee_client import ShopeeApiError, ShopeeAuthError, ShopeeClient
from shopee_sync.utils.logger import logger


ESCROW_ELIGIBLE_STATUSES = ("COMPLETED", "TO_CONFIRM_RECEIVE", "TO_RETURN")
DEFAULT_ESCROW_BATCH_SIZE = 50
MAX_ESCROW_BATCH_SIZE = 200
ESCROW_CALL_DELAY_SECONDS = 0.1


@dataclass
class EscrowBatchResult:
    offset: int = 0
    next_offset: Optional[int] = 0
    has_more: bool = False
    total: int = 0
    processed: int = 0
    synced_count: int = 0
    skipped: int = 0
    failed: int = 0
    failed_orders: List[Dict[str, Any]] = field(default_factory=list)
    stopped_reason: Optional[str] = None
    # Explicit order lists only: orders left unattempted by a budget stop.
    remaining: int = 0

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0
        done = self.next_offset if self.next_offset is not None else self.total - self.remaining
        return round(min(done, self.total) * 100.0 / self.total, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offset": self.offset,
            "next_offset": self.next_offset,
            "has_more": self.has_more,
            "total": self.total,
            "percent": self.percent,
            "processed": self.processed,
            "synced_count": self.synced_count,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_orders": self.failed_orders,
            "stopped_reason": self.stopped_reason,
        }


def clamp_batch_size(batch_size: Optional[int]) -> int:
    if not batch_size or batch_size <= 0:
        return DEFAULT_ESCROW_BATCH_SIZE
    return min(int(batch_size), MAX_ESCROW_BATCH_SIZE)


def eligible_orders_query(db: Session, shop_id: int, month: Optional[str] = None) -> Query:
    query = db.query(ShopeeOrder).filter(
        ShopeeOrder.shop_id == shop_id,
        ShopeeOrder.order_status.in_(ESCROW_ELIGIBLE_STATUSES),
    )
    if month:
        bounds = month_bounds(month)
        query = query.filter(
            ShopeeOrder.create_time >= bounds.time_from,
            ShopeeOrder.create_time <= bounds.time_to,
        )
    return query


def _escrow_exists(shop_id: int):
    return exists().where(
        ShopeeOrderEscrow.shop_id == shop_id,
        ShopeeOrderEscrow.order_sn == ShopeeOrder.order_sn,
    )


def escrow_stats(db: Session, shop_id: int, month: Optional[str] = None) -> Dict[str, Any]:
    """Coverage of escrow records over eligible orders (optionally one month by create_time)."""

    base = eligible_orders_query(db, shop_id, month)
    total = base.with_entities(func.count(ShopeeOrder.id)).scalar() or 0
    synced = base.filter(_escrow_exists(shop_id)).with_entities(func.count(ShopeeOrder.id)).scalar() or 0
    missing = total - synced
    return {
        "shop_id": shop_id,
        "month": month,
        "total_eligible": total,
        "synced": synced,
        "missing": missing,
        "percent": round(synced * 100.0 / total, 1) if total else 100.0,
    }


def _stored_escrow_order_sns(db: Session, shop_id: int, order_sns: Sequence[str]) -> set:
    if not order_sns:
        return set()
    rows = (
        db.query(ShopeeOrderEscrow.order_sn)
        .filter(ShopeeOrderEscrow.shop_id == shop_id, ShopeeOrderEscrow.order_sn.in_(list(order_sns)))
        .all()
    )
    return {row[0] for row in rows}


async def _fetch_escrows(
    db: Session,
    client: ShopeeClient,
    shop_id: int,
    order_sns: Sequence[str],
    budget: ExecutionBudget,
    result: EscrowBatchResult,
) -> int:
    """Fetch escrow for ``order_sns`` in order; returns how many were attempted."""

    payloads: List[Dict[str, Any]] = []
    attempted = 0
    try:
        for order_sn in order_sns:
            if not budget.check():
                result.stopped_reason = budget.reason
                break
            if attempted:
                await client.limiter.pause(ESCROW_CALL_DELAY_SECONDS)
            attempted += 1
            try:
                payload = await client.get_escrow_detail(order_sn)
            except ShopeeAuthError:
                raise
            except ShopeeApiError as exc:
                result.failed += 1
                result.failed_orders.append({"order_sn": order_sn, "error": exc.error or str(exc)})
                logger.warning(f"[escrow-sync] Escrow fetch failed shop_id={shop_id} order_sn={order_sn}: {exc}")
                continue
            payload.setdefault("order_sn", order_sn)
            payloads.append(payload)
            budget.add_records(1)
    finally:
        # Keep what succeeded even when an auth error aborts the batch.
        if payloads:
            result.synced_count += upsert_escrow(db, shop_id, payloads)
    result.processed += attempted
    return attempted


async def sync_escrow_batch(
    db: Session,
    client: ShopeeClient,
    shop_id: int,
    *,
    offset: int = 0,
    batch_size: Optional[int] = None,
    force: bool = False,
    budget: ExecutionBudget,
) -> EscrowBatchResult:
    """Process one page of eligible orders starting at ``offset``.

    Orders whose ``escrow_fetched`` flag is set and which already have an
    escrow record are skipped unless ``force`` is True.
    """

    batch_size = clamp_batch_size(batch_size)
    offset = max(int(offset or 0), 0)
    base = eligible_orders_query(db, shop_id)
    result = EscrowBatchResult(offset=offset, total=base.count())

    page = (
        base.with_entities(ShopeeOrder.order_sn, ShopeeOrder.escrow_fetched)
        .order_by(ShopeeOrder.create_time.desc(), ShopeeOrder.order_sn)
        .offset(offset)
        .limit(batch_size)
        .all()
    )

    have_escrow = _stored_escrow_order_sns(db, shop_id, [row[0] for row in page])
    page_sns = [row[0] for row in page]
    todo: List[str] = []
    todo_positions: List[int] = []
    for position, (order_sn, escrow_fetched) in enumerate(page):
        if not force and escrow_fetched and order_sn in have_escrow:
            result.skipped += 1
            continue
        todo.append(order_sn)
        todo_positions.append(position)

    attempted = await _fetch_escrows(db, client, shop_id, todo, budget, result)

    if result.stopped_reason and attempted < len(todo):
        # Resume at the first order not attempted so nothing is skipped.
        consumed = todo_positions[attempted]
    else:
        consumed = len(page_sns)

    result.next_offset = offset + consumed
    result.has_more = result.next_offset < result.total
    logger.info(
        f"[escrow-sync] shop_id={shop_id} offset={offset} next_offset={result.next_offset} "
        f"total={result.total} synced={result.synced_count} skipped={result.skipped} failed={result.failed}"
    )
    return result


async def sync_escrow_for_orders(
    db: Session,
    client: ShopeeClient,
    shop_id: int,
    order_sns: Sequence[str],
    *,
    force: bool = False,
    budget: ExecutionBudget,
) -> EscrowBatchResult:
    """Fetch escrow for an explicit list of order numbers (no pagination).

    Order numbers not present in the local mirror are reported as failed with
    ``order_not_found`` and never fetched. ``next_offset`` is ``None``: an
    explicit list is resumed by sending it again.
    """

    order_sns = list(dict.fromkeys(sn for sn in order_sns if sn))
    result = EscrowBatchResult(total=len(order_sns), next_offset=None)

    stored_flags: Dict[str, bool] = {}
    if order_sns:
        stored_flags = dict(
            db.query(ShopeeOrder.order_sn, ShopeeOrder.escrow_fetched)
            .filter(ShopeeOrder.shop_id == shop_id, ShopeeOrder.order_sn.in_(order_sns))
            .all()
        )
    for order_sn in order_sns:
        if order_sn not in stored_flags:
            result.failed += 1
            result.failed_orders.append({"order_sn": order_sn, "error": "order_not_found"})
    if result.failed:
        logger.warning(f"[escrow-sync] {result.failed} requested orders not stored shop_id={shop_id}")

    todo = [sn for sn in order_sns if sn in stored_flags]
    if not force:
        have_escrow = _stored_escrow_order_sns(db, shop_id, todo)
        candidates = len(todo)
        todo = [sn for sn in todo if not (stored_flags[sn] and sn in have_escrow)]
        result.skipped = candidates - len(todo)

    attempted = await _fetch_escrows(db, client, shop_id, todo, budget, result)
    result.remaining = len(todo) - attempted
    result.has_more = result.remaining > 0
    return result
