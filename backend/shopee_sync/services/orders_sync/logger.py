from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shopee_sync.models_sqlalchemy.sync_workers import ShopeeSyncRunLog
from shopee_sync.utils.logger import logger


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def log_event(
    db: Session,
    *,
    run_id: str,
    shop_id: int,
    pipeline: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
) -> Optional[ShopeeSyncRunLog]:
    entry = ShopeeSyncRunLog(
        id=str(uuid4()),
        run_id=run_id,
        shop_id=shop_id,
        pipeline=pipeline,
        event_type=event_type,
        timestamp=_now_utc(),
        details_json=details or {},
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as exc:
        # Run history is best-effort; a failed insert must not fail the sync.
        db.rollback()
        logger.warning(f"[orders-sync] Failed to write run log event={event_type} run_id={run_id}: {exc}")
        return None
    return entry


def log_start(
    db: Session,
    *,
    run_id: str,
    shop_id: int,
    pipeline: str,
    action: str,
    window: Optional[Dict[str, Any]] = None,
) -> None:
    log_event(
        db,
        run_id=run_id,
        shop_id=shop_id,
        pipeline=pipeline,
        event_type="start",
        details={"action": action, "window": window},
    )


def log_page(
    db: Session,
    *,
    run_id: str,
    shop_id: int,
    pipeline: str,
    page: int,
    listed: int,
    changed: int,
    stored: int,
) -> None:
    log_event(
        db,
        run_id=run_id,
        shop_id=shop_id,
        pipeline=pipeline,
        event_type="page",
        details={
            "page": page,
            "listed": listed,
            "changed": changed,
            "stored": stored,
        },
    )


def log_done(
    db: Session,
    *,
    run_id: str,
    shop_id: int,
    pipeline: str,
    summary: Dict[str, Any],
    duration_ms: int,
) -> None:
    log_event(
        db,
        run_id=run_id,
        shop_id=shop_id,
        pipeline=pipeline,
        event_type="done",
        details={**summary, "duration_ms": duration_ms},
    )


def log_error(
    db: Session,
    *,
    run_id: str,
    shop_id: int,
    pipeline: str,
    message: str,
    stage: Optional[str] = None,
) -> None:
    log_event(
        db,
        run_id=run_id,
        shop_id=shop_id,
        pipeline=pipeline,
        event_type="error",
        details={
            "message": message,
            "stage": stage,
        },
    )
