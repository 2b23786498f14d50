from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shopee_sync.config import settings
from shopee_sync.models_sqlalchemy.sync_workers import ShopeeOrdersSyncStatus
from shopee_sync.utils.logger import logger


SYNC_IN_PROGRESS_ERROR = "Sync is already in progress"


class SyncAlreadyRunningError(Exception):
    """Another invocation holds the lease for this shop."""

    def __init__(self, shop_id: int, action: Optional[str] = None):
        super().__init__(SYNC_IN_PROGRESS_ERROR)
        self.shop_id = shop_id
        self.action = action


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Cursor: Idle | InMonth | InRange, persisted as cursor_type + cursor_value
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class IdleCursor:
    kind = "idle"


@dataclass(frozen=True)
class MonthCursor:
    month: str
    chunk_end: int

    kind = "month"


@dataclass(frozen=True)
class RangeCursor:
    range_id: str
    start_date: str
    end_date: str
    chunk_index: int
    total_chunks: int

    kind = "range"


SyncCursor = Union[IdleCursor, MonthCursor, RangeCursor]


def cursor_from_record(cursor_type: Optional[str], value: Optional[Dict[str, Any]]) -> SyncCursor:
    value = value or {}
    try:
        if cursor_type == MonthCursor.kind:
            return MonthCursor(month=str(value["month"]), chunk_end=int(value["chunk_end"]))
        if cursor_type == RangeCursor.kind:
            return RangeCursor(
                range_id=str(value["range_id"]),
                start_date=str(value["start_date"]),
                end_date=str(value["end_date"]),
                chunk_index=int(value["chunk_index"]),
                total_chunks=int(value["total_chunks"]),
            )
    except (KeyError, TypeError, ValueError):
        logger.warning(f"[orders-sync] Ignoring malformed cursor type={cursor_type} value={value}")
    return IdleCursor()


def set_cursor(status: ShopeeOrdersSyncStatus, cursor: SyncCursor) -> None:
    status.cursor_type = cursor.kind
    status.cursor_value = None if isinstance(cursor, IdleCursor) else asdict(cursor)


def get_cursor(status: Optional[ShopeeOrdersSyncStatus]) -> SyncCursor:
    if status is None:
        return IdleCursor()
    return cursor_from_record(status.cursor_type, status.cursor_value)


# ----------------------------------------------------------------------
# Status row + lease
# ----------------------------------------------------------------------


def get_sync_status(db: Session, shop_id: int) -> Optional[ShopeeOrdersSyncStatus]:
    return (
        db.query(ShopeeOrdersSyncStatus)
        .filter(ShopeeOrdersSyncStatus.shop_id == shop_id)
        .first()
    )


def get_or_create_sync_status(db: Session, shop_id: int) -> ShopeeOrdersSyncStatus:
    status = get_sync_status(db, shop_id)
    if status:
        return status

    status = ShopeeOrdersSyncStatus(
        id=str(uuid4()),
        shop_id=shop_id,
        is_syncing=False,
        is_initial_sync_done=False,
        total_synced=0,
        new_orders=0,
        updated_orders=0,
        error_count=0,
        cursor_type=IdleCursor.kind,
        cursor_value=None,
        synced_months=[],
        synced_ranges=[],
    )
    db.add(status)
    try:
        db.commit()
    except IntegrityError:
        # Another invocation created the row first.
        db.rollback()
        return get_sync_status(db, shop_id)
    db.refresh(status)
    return status


def acquire_lease(
    db: Session,
    shop_id: int,
    *,
    action: str,
    run_id: str,
    now: Optional[datetime] = None,
) -> ShopeeOrdersSyncStatus:
    """Set ``is_syncing`` for ``shop_id`` with a conditional write.

    The UPDATE only matches when the flag is clear, or when the lease holder
    started more than ``ORDERS_SYNC_LEASE_TTL_MINUTES`` ago (crashed run).
    Raises :class:`SyncAlreadyRunningError` when another invocation holds it.
    """

    now = now or _now_utc()
    status = get_or_create_sync_status(db, shop_id)
    stale_cutoff = now - timedelta(minutes=settings.ORDERS_SYNC_LEASE_TTL_MINUTES)
    was_stale = bool(status.is_syncing)

    result = db.execute(
        update(ShopeeOrdersSyncStatus)
        .where(ShopeeOrdersSyncStatus.shop_id == shop_id)
        .where(
            or_(
                ShopeeOrdersSyncStatus.is_syncing.is_(False),
                ShopeeOrdersSyncStatus.sync_started_at.is_(None),
                ShopeeOrdersSyncStatus.sync_started_at < stale_cutoff,
            )
        )
        .values(
            is_syncing=True,
            sync_started_at=now,
            sync_run_id=run_id,
            sync_action=action,
            last_error=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount != 1:
        db.refresh(status)
        logger.info(
            f"[orders-sync] Lease busy shop_id={shop_id} held_by_run={status.sync_run_id} "
            f"action={status.sync_action} requested={action}"
        )
        raise SyncAlreadyRunningError(shop_id, action)

    if was_stale:
        logger.warning(f"[orders-sync] Reclaimed stale lease shop_id={shop_id} run_id={run_id}")

    db.refresh(status)
    logger.info(f"[orders-sync] Lease acquired shop_id={shop_id} action={action} run_id={run_id}")
    return status


class SyncLeaseLostError(Exception):
    """The lease was reclaimed by another invocation before this run finished."""

    def __init__(self, shop_id: int, run_id: str):
        super().__init__(f"Sync lease for shop {shop_id} was taken over by another run")
        self.shop_id = shop_id
        self.run_id = run_id


def complete_lease(db: Session, status: ShopeeOrdersSyncStatus, run_id: str) -> None:
    """Release the lease after a successful invocation, persisting pending changes.

    The release is a conditional UPDATE on ``sync_run_id``. When another
    invocation reclaimed the lease in the meantime, pending changes are rolled
    back and :class:`SyncLeaseLostError` is raised.
    """

    now = _now_utc()
    values = dict(
        is_syncing=False,
        sync_started_at=None,
        sync_run_id=None,
        sync_action=None,
        last_error=None,
        error_count=0,
        last_sync_at=now,
        updated_at=now,
    )
    result = db.execute(
        update(ShopeeOrdersSyncStatus)
        .where(ShopeeOrdersSyncStatus.shop_id == status.shop_id)
        .where(ShopeeOrdersSyncStatus.is_syncing.is_(True))
        .where(ShopeeOrdersSyncStatus.sync_run_id == run_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning(f"[orders-sync] Lease lost before completion shop_id={status.shop_id} run_id={run_id}")
        raise SyncLeaseLostError(status.shop_id, run_id)

    for key, value in values.items():
        setattr(status, key, value)
    db.commit()


def fail_lease(db: Session, shop_id: int, run_id: str, *, error: str) -> None:
    """Release the lease after a failure.

    Uncommitted status changes are discarded first so the cursor stays on the
    window that failed.
    """

    db.rollback()
    status = get_sync_status(db, shop_id)
    if status is None:
        return
    if status.sync_run_id not in (None, run_id):
        # Lease was reclaimed by another invocation after ours went stale.
        logger.warning(f"[orders-sync] Not releasing lease shop_id={shop_id}: now held by {status.sync_run_id}")
        return
    status.is_syncing = False
    status.sync_started_at = None
    status.sync_run_id = None
    status.sync_action = None
    status.last_error = error
    status.error_count = (status.error_count or 0) + 1
    status.updated_at = _now_utc()
    db.commit()


def release_lease_if_held(db: Session, shop_id: int, run_id: str) -> None:
    """Last-resort release used from ``finally`` blocks."""

    status = get_sync_status(db, shop_id)
    if status is not None and status.is_syncing and status.sync_run_id == run_id:
        logger.warning(f"[orders-sync] Releasing lease left held by run_id={run_id} shop_id={shop_id}")
        fail_lease(db, shop_id, run_id, error="Sync interrupted")


def status_to_dict(status: Optional[ShopeeOrdersSyncStatus]) -> Optional[Dict[str, Any]]:
    if status is None:
        return None

    def _iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    cursor = get_cursor(status)
    cursor_dict: Dict[str, Any] = {"type": cursor.kind}
    if not isinstance(cursor, IdleCursor):
        cursor_dict.update(asdict(cursor))

    return {
        "shop_id": status.shop_id,
        "is_syncing": bool(status.is_syncing),
        "sync_started_at": _iso(status.sync_started_at),
        "sync_action": status.sync_action,
        "is_initial_sync_done": bool(status.is_initial_sync_done),
        "last_sync_at": _iso(status.last_sync_at),
        "last_sync_update_time": status.last_sync_update_time,
        "total_synced": status.total_synced or 0,
        "new_orders": status.new_orders or 0,
        "updated_orders": status.updated_orders or 0,
        "last_error": status.last_error,
        "error_count": status.error_count or 0,
        "cursor": cursor_dict,
        "current_sync_month": cursor.month if isinstance(cursor, MonthCursor) else None,
        "current_chunk_end": cursor.chunk_end if isinstance(cursor, MonthCursor) else None,
        "current_range_id": cursor.range_id if isinstance(cursor, RangeCursor) else None,
        "current_chunk_index": cursor.chunk_index if isinstance(cursor, RangeCursor) else None,
        "synced_months": list(status.synced_months or []),
        "synced_ranges": list(status.synced_ranges or []),
        "progress": status.progress,
        "updated_at": _iso(status.updated_at),
    }
