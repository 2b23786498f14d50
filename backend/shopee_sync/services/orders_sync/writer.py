"""Idempotent upserts for orders and escrow records.

Rows are keyed by ``(shop_id, order_sn)`` and written with a native
``INSERT .. ON CONFLICT DO UPDATE`` (Postgres, or SQLite for local runs).

``escrow_fetched`` rule: a newly inserted order, or an existing order whose
status changes into COMPLETED from anything else, is written with
``escrow_fetched = False``. Every other update leaves the stored flag alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from shopee_sync.models_sqlalchemy.models import ShopeeOrder, ShopeeOrderEscrow
from shopee_sync.utils.logger import logger


UPSERT_BATCH_SIZE = 100
LOOKUP_BATCH_SIZE = 400
COMPLETED_STATUS = "COMPLETED"

# Columns owned by the insert; never overwritten on conflict.
_INSERT_ONLY_COLUMNS = {"id", "shop_id", "order_sn", "created_at"}


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    escrow_reset: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated

    def add(self, other: "UpsertResult") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.escrow_reset += other.escrow_reset


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"[orders-writer] Unparseable amount {value!r}")
        return None


def _int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect {dialect}")
    return insert


def needs_escrow_reset(existing_status: Optional[str], new_status: Optional[str]) -> bool:
    """True when the write must (re)set ``escrow_fetched`` to False."""

    if existing_status is None:
        return True
    return new_status == COMPLETED_STATUS and existing_status != COMPLETED_STATUS


def normalize_order(shop_id: int, order: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Map a get_order_detail entry to ``shopee_orders`` columns (without escrow_fetched)."""

    return {
        "shop_id": shop_id,
        "order_sn": order["order_sn"],
        "booking_sn": order.get("booking_sn") or None,
        "order_status": order.get("order_status") or "UNKNOWN",
        "pending_terms": order.get("pending_terms"),
        "currency": order.get("currency"),
        "cod": order.get("cod"),
        "total_amount": _decimal(order.get("total_amount")),
        "estimated_shipping_fee": _decimal(order.get("estimated_shipping_fee")),
        "actual_shipping_fee": _decimal(order.get("actual_shipping_fee")),
        "reverse_shipping_fee": _decimal(order.get("reverse_shipping_fee")),
        "create_time": _int(order.get("create_time")) or 0,
        "update_time": _int(order.get("update_time")) or 0,
        "pay_time": _int(order.get("pay_time")),
        "ship_by_date": _int(order.get("ship_by_date")),
        "pickup_done_time": _int(order.get("pickup_done_time")),
        "buyer_user_id": _int(order.get("buyer_user_id")),
        "buyer_username": order.get("buyer_username"),
        "region": order.get("region"),
        "recipient_address": order.get("recipient_address"),
        "shipping_carrier": order.get("shipping_carrier"),
        "checkout_shipping_carrier": order.get("checkout_shipping_carrier"),
        "days_to_ship": _int(order.get("days_to_ship")),
        "fulfillment_flag": order.get("fulfillment_flag"),
        "payment_method": order.get("payment_method"),
        "payment_info": order.get("payment_info"),
        "item_list": order.get("item_list"),
        "package_list": order.get("package_list"),
        "cancel_by": order.get("cancel_by"),
        "cancel_reason": order.get("cancel_reason"),
        "buyer_cancel_reason": order.get("buyer_cancel_reason"),
        "message_to_seller": order.get("message_to_seller"),
        "note": order.get("note"),
        "invoice_data": order.get("invoice_data"),
        "raw_response": order,
        "synced_at": now,
        "updated_at": now,
    }


def load_existing_orders(
    db: Session,
    shop_id: int,
    order_sns: Iterable[str],
) -> Dict[str, Tuple[int, str]]:
    """Return ``{order_sn: (update_time, order_status)}`` for stored orders."""

    order_sns = list(dict.fromkeys(order_sns))
    existing: Dict[str, Tuple[int, str]] = {}
    for batch in _chunks(order_sns, LOOKUP_BATCH_SIZE):
        rows = (
            db.query(ShopeeOrder.order_sn, ShopeeOrder.update_time, ShopeeOrder.order_status)
            .filter(ShopeeOrder.shop_id == shop_id, ShopeeOrder.order_sn.in_(batch))
            .all()
        )
        for order_sn, update_time, order_status in rows:
            existing[order_sn] = (update_time, order_status)
    return existing


def _execute_order_upsert(db: Session, rows: List[Dict[str, Any]], *, with_escrow_flag: bool) -> None:
    insert = _insert_for(db)
    stmt = insert(ShopeeOrder).values(rows)
    update_columns = [c for c in rows[0].keys() if c not in _INSERT_ONLY_COLUMNS]
    if not with_escrow_flag and "escrow_fetched" in update_columns:
        update_columns.remove("escrow_fetched")
    stmt = stmt.on_conflict_do_update(
        index_elements=[ShopeeOrder.shop_id, ShopeeOrder.order_sn],
        set_={c: stmt.excluded[c] for c in update_columns},
    )
    db.execute(stmt)


def upsert_orders(db: Session, shop_id: int, orders: Sequence[Dict[str, Any]]) -> UpsertResult:
    """Insert-or-update ``orders`` (get_order_detail entries) for ``shop_id``.

    Duplicate ``order_sn`` values in one call collapse to the entry with the
    newest ``update_time``. Commits once all batches are written.
    """

    result = UpsertResult()
    if not orders:
        return result

    latest: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        order_sn = order.get("order_sn")
        if not order_sn:
            logger.warning(f"[orders-writer] Skipping order without order_sn shop_id={shop_id}")
            continue
        current = latest.get(order_sn)
        if current is None or (_int(order.get("update_time")) or 0) >= (_int(current.get("update_time")) or 0):
            latest[order_sn] = order

    existing = load_existing_orders(db, shop_id, latest.keys())
    now = _now_utc()

    reset_rows: List[Dict[str, Any]] = []
    keep_rows: List[Dict[str, Any]] = []
    for order_sn, order in latest.items():
        row = normalize_order(shop_id, order, now)
        row["id"] = str(uuid4())
        stored = existing.get(order_sn)
        stored_status = stored[1] if stored else None

        if stored is None:
            result.inserted += 1
        else:
            result.updated += 1
            if row["update_time"] < (stored[0] or 0):
                logger.info(
                    f"[orders-writer] update_time moved backwards order_sn={order_sn} "
                    f"stored={stored[0]} incoming={row['update_time']}"
                )

        if needs_escrow_reset(stored_status, row["order_status"]):
            row["escrow_fetched"] = False
            reset_rows.append(row)
            if stored is not None:
                result.escrow_reset += 1
        else:
            keep_rows.append(row)

    for batch in _chunks(reset_rows, UPSERT_BATCH_SIZE):
        _execute_order_upsert(db, list(batch), with_escrow_flag=True)
    for batch in _chunks(keep_rows, UPSERT_BATCH_SIZE):
        _execute_order_upsert(db, list(batch), with_escrow_flag=False)
    db.commit()

    logger.info(
        f"[orders-writer] Upserted shop_id={shop_id} inserted={result.inserted} "
        f"updated={result.updated} escrow_reset={result.escrow_reset}"
    )
    return result


# ----------------------------------------------------------------------
# Escrow
# ----------------------------------------------------------------------


def normalize_escrow(shop_id: int, payload: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Map a get_escrow_detail ``response`` to ``shopee_order_escrow`` columns."""

    income = payload.get("order_income") or {}
    return {
        "shop_id": shop_id,
        "order_sn": payload["order_sn"],
        "buyer_user_name": payload.get("buyer_user_name"),
        "return_order_sn_list": payload.get("return_order_sn_list"),
        "escrow_amount": _decimal(income.get("escrow_amount")),
        "escrow_amount_after_adjustment": _decimal(income.get("escrow_amount_after_adjustment")),
        "buyer_total_amount": _decimal(income.get("buyer_total_amount")),
        "order_selling_price": _decimal(income.get("order_selling_price")),
        "commission_fee": _decimal(income.get("commission_fee")),
        "service_fee": _decimal(income.get("service_fee")),
        "seller_transaction_fee": _decimal(income.get("seller_transaction_fee")),
        "escrow_tax": _decimal(income.get("escrow_tax")),
        "total_adjustment_amount": _decimal(income.get("total_adjustment_amount")),
        "order_income": income,
        "buyer_payment_info": payload.get("buyer_payment_info"),
        "items": income.get("items"),
        "order_adjustment": income.get("order_adjustment"),
        "raw_response": payload,
        "fetched_at": now,
        "updated_at": now,
    }


def upsert_escrow(db: Session, shop_id: int, payloads: Sequence[Dict[str, Any]]) -> int:
    """Write escrow records and set ``escrow_fetched`` on their orders."""

    if not payloads:
        return 0

    now = _now_utc()
    rows: Dict[str, Dict[str, Any]] = {}
    for payload in payloads:
        row = normalize_escrow(shop_id, payload, now)
        row["id"] = str(uuid4())
        rows[row["order_sn"]] = row
    row_list = list(rows.values())

    insert = _insert_for(db)
    for batch in _chunks(row_list, UPSERT_BATCH_SIZE):
        stmt = insert(ShopeeOrderEscrow).values(list(batch))
        stmt = stmt.on_conflict_do_update(
            index_elements=[ShopeeOrderEscrow.shop_id, ShopeeOrderEscrow.order_sn],
            set_={c: stmt.excluded[c] for c in batch[0].keys() if c not in _INSERT_ONLY_COLUMNS},
        )
        db.execute(stmt)

    order_sns = list(rows.keys())
    for batch in _chunks(order_sns, LOOKUP_BATCH_SIZE):
        (
            db.query(ShopeeOrder)
            .filter(ShopeeOrder.shop_id == shop_id, ShopeeOrder.order_sn.in_(batch))
            .update({ShopeeOrder.escrow_fetched: True, ShopeeOrder.updated_at: now}, synchronize_session=False)
        )
    db.commit()

    logger.info(f"[orders-writer] Upserted escrow shop_id={shop_id} count={len(row_list)}")
    return len(row_list)
