from sqlalchemy import Column, String, Boolean, DateTime, Integer, BigInteger, Text
from sqlalchemy.sql import func

from shopee_sync.models_sqlalchemy import Base
from shopee_sync.models_sqlalchemy.models import JSONType


class ShopeeOrdersSyncStatus(Base):
    """Per-shop sync status, lease and resumable cursor.

    ``is_syncing`` is the lease flag shared by every long-running action
    (order sync in all modes and the escrow backfill). ``sync_started_at``
    lets a later invocation reclaim a lease left behind by a crashed run.

    ``cursor_type`` / ``cursor_value`` hold the window cursor as a tagged
    record (see ``services.orders_sync.state.SyncCursor``).
    """

    __tablename__ = "shopee_orders_sync_status"

    id = Column(String(36), primary_key=True)
    shop_id = Column(BigInteger, nullable=False, unique=True, index=True)

    is_syncing = Column(Boolean, nullable=False, default=False, server_default="false")
    sync_started_at = Column(DateTime(timezone=True), nullable=True)
    sync_run_id = Column(String(36), nullable=True)
    sync_action = Column(String(32), nullable=True)

    is_initial_sync_done = Column(Boolean, nullable=False, default=False, server_default="false")
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    # update_time of the newest order seen by a completed quick/periodic sync
    last_sync_update_time = Column(BigInteger, nullable=True)

    total_synced = Column(Integer, nullable=False, default=0, server_default="0")
    new_orders = Column(Integer, nullable=False, default=0, server_default="0")
    updated_orders = Column(Integer, nullable=False, default=0, server_default="0")

    last_error = Column(Text, nullable=True)
    error_count = Column(Integer, nullable=False, default=0, server_default="0")

    cursor_type = Column(String(16), nullable=False, default="idle", server_default="idle")  # idle, month, range
    cursor_value = Column(JSONType, nullable=True)
    synced_months = Column(JSONType, nullable=True)  # ["2025-03", ...]
    synced_ranges = Column(JSONType, nullable=True)  # ["2025-03-01..2025-03-20", ...]

    progress = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class ShopeeSyncRunLog(Base):
    """Structured log entries for sync invocations, for the run-history UI."""

    __tablename__ = "shopee_sync_run_log"

    id = Column(String(36), primary_key=True)
    run_id = Column(String(36), nullable=False, index=True)
    shop_id = Column(BigInteger, nullable=False, index=True)
    pipeline = Column(String(16), nullable=False, index=True)  # orders, escrow

    event_type = Column(String(32), nullable=False, index=True)  # start, page, chunk, done, error
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    details_json = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
