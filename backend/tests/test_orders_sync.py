from datetime import datetime, timezone

import pytest

from shopee_sync.models_sqlalchemy.models import ShopeeOrder
from shopee_sync.models_sqlalchemy.sync_workers import ShopeeSyncRunLog
from shopee_sync.services.orders_sync.budget import ExecutionBudget
from shopee_sync.services.orders_sync.chunks import InvalidSyncInput, date_range_windows, month_bounds, month_windows
from shopee_sync.services.orders_sync.orders import (
    continue_month_sync,
    get_status,
    list_orders,
    sync_date_range_chunk,
    sync_month_chunk,
    sync_orders,
)
from shopee_sync.services.orders_sync.state import (
    IdleCursor,
    MonthCursor,
    RangeCursor,
    acquire_lease,
    get_cursor,
    get_sync_status,
)


SHOP_ID = 4242
NOW = int(datetime(2025, 4, 10, 12, 0, tzinfo=timezone.utc).timestamp())
HOUR = 3600
DAY = 24 * HOUR


def _unbounded():
    return ExecutionBudget(None, None)


def _ts(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


def _stored(db):
    db.expire_all()
    return {o.order_sn: o for o in db.query(ShopeeOrder).filter_by(shop_id=SHOP_ID).all()}


# ----------------------------------------------------------------------
# Quick / periodic
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_sync_is_quick_and_marks_initial_done(db, fake_shopee, client_factory):
    fake_shopee.add_order("Q1", "READY_TO_SHIP", NOW - 2 * DAY)
    fake_shopee.add_order("Q2", "COMPLETED", NOW - 30 * 60)
    fake_shopee.add_order("OLD", "COMPLETED", NOW - 20 * DAY)

    result = await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=NOW)

    assert result["success"] is True
    assert result["mode"] == "quick"
    assert result["new_orders"] == 2
    assert result["has_more"] is False
    assert set(_stored(db)) == {"Q1", "Q2"}
    assert fake_shopee.list_calls[0]["time_from"] == NOW - 7 * DAY

    status = get_sync_status(db, SHOP_ID)
    assert status.is_initial_sync_done is True
    # Watermark is the newest remote update_time written.
    assert status.last_sync_update_time == NOW - 30 * 60
    assert status.is_syncing is False
    assert status.total_synced == 2


@pytest.mark.asyncio
async def test_periodic_sync_is_idempotent_and_change_aware(db, fake_shopee, client_factory):
    fake_shopee.add_order("P1", "READY_TO_SHIP", NOW - 20 * 60)
    fake_shopee.add_order("P2", "SHIPPED", NOW - 10 * 60)
    await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=NOW)
    detail_calls_after_first = len(fake_shopee.detail_calls)

    # Nothing changed remotely: the listing is read but no detail is fetched.
    result = await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=NOW + 600)
    assert result["mode"] == "periodic"
    assert result["synced_count"] == 0
    assert result["skipped"] == 2
    assert len(fake_shopee.detail_calls) == detail_calls_after_first
    assert fake_shopee.list_calls[-1]["time_from"] == NOW - 10 * 60 - HOUR
    assert get_sync_status(db, SHOP_ID).last_sync_update_time == NOW - 10 * 60

    # One status change: only that order is fetched, exactly once.
    fake_shopee.set_status("P1", "SHIPPED", NOW + 700)
    result = await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=NOW + 900)
    assert result["updated_orders"] == 1
    assert result["new_orders"] == 0
    assert fake_shopee.detail_calls[-1] == ["P1"]
    assert len(fake_shopee.detail_calls) == detail_calls_after_first + 1
    assert _stored(db)["P1"].order_status == "SHIPPED"
    assert get_sync_status(db, SHOP_ID).last_sync_update_time == NOW + 700


@pytest.mark.asyncio
async def test_periodic_window_is_capped_at_seven_days(db, fake_shopee, client_factory):
    await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=NOW)
    later = NOW + 30 * DAY
    await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=later)
    assert fake_shopee.list_calls[-1]["time_from"] == later - 7 * DAY


@pytest.mark.asyncio
async def test_quick_sync_budget_stop_keeps_initial_pending(db, fake_shopee, client_factory):
    for i in range(5):
        fake_shopee.add_order(f"B{i}", "SHIPPED", NOW - i * HOUR)

    result = await sync_orders(db, SHOP_ID, client_factory, budget=ExecutionBudget(None, 3), now_ts=NOW)

    assert result["success"] is True
    assert result["has_more"] is True
    assert result["stopped_reason"] == "record_cap"
    assert result["synced_count"] == 3
    status = get_sync_status(db, SHOP_ID)
    assert status.is_initial_sync_done is False
    assert status.last_sync_update_time is None

    result = await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=NOW + 60)
    assert result["mode"] == "quick"
    assert result["synced_count"] == 2
    assert len(_stored(db)) == 5
    assert get_sync_status(db, SHOP_ID).is_initial_sync_done is True


@pytest.mark.asyncio
async def test_periodic_budget_stop_does_not_advance_watermark(db, fake_shopee, client_factory):
    await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=NOW)
    fake_shopee.add_order("N1", "UNPAID", NOW + 100)

    result = await sync_orders(db, SHOP_ID, client_factory, budget=ExecutionBudget(0, None), now_ts=NOW + 600)

    assert result["has_more"] is True
    assert result["stopped_reason"] == "time_budget"
    assert get_sync_status(db, SHOP_ID).last_sync_update_time == NOW


# ----------------------------------------------------------------------
# Month walk
# ----------------------------------------------------------------------


def _seed_march(fake_shopee):
    for window_no, window in enumerate(month_windows("2025-03")):
        for i in range(3):
            fake_shopee.add_order(f"M{window_no}-{i}", "COMPLETED", window.time_from + 60 * (i + 1))


@pytest.mark.asyncio
async def test_month_walk_covers_every_window_once(db, fake_shopee, client_factory):
    _seed_march(fake_shopee)
    windows = month_windows("2025-03")

    result = await sync_month_chunk(db, SHOP_ID, client_factory, "2025-03", budget=_unbounded())
    invocations = 1
    assert result["chunk"]["time_to"] == month_bounds("2025-03").time_to
    while result["has_more"]:
        result = await continue_month_sync(db, SHOP_ID, client_factory, budget=_unbounded())
        invocations += 1

    assert invocations == len(windows) == 5
    assert result["month_completed"] is True
    assert len(_stored(db)) == 15
    assert [(c["time_from"], c["time_to"]) for c in fake_shopee.list_calls] == [
        (w.time_from, w.time_to) for w in windows
    ]

    status = get_sync_status(db, SHOP_ID)
    assert status.synced_months == ["2025-03"]
    assert isinstance(get_cursor(status), IdleCursor)

    # Re-running the month does not duplicate the completion record or the rows.
    result = await sync_month_chunk(db, SHOP_ID, client_factory, "2025-03", budget=_unbounded())
    while result["has_more"]:
        result = await continue_month_sync(db, SHOP_ID, client_factory, budget=_unbounded())
    assert get_sync_status(db, SHOP_ID).synced_months == ["2025-03"]
    assert len(_stored(db)) == 15
    assert len(fake_shopee.detail_fetched) == 15


@pytest.mark.asyncio
async def test_month_chunk_response_points_at_next_window(db, fake_shopee, client_factory):
    windows = month_windows("2025-03")
    result = await sync_month_chunk(db, SHOP_ID, client_factory, "2025-03", budget=_unbounded())

    assert result["next_chunk_end"] == windows[1].time_to
    assert get_cursor(get_sync_status(db, SHOP_ID)) == MonthCursor("2025-03", windows[1].time_to)

    result = await sync_month_chunk(
        db, SHOP_ID, client_factory, "2025-03", windows[-1].time_to, budget=_unbounded()
    )
    assert result["has_more"] is False
    assert result["next_chunk_end"] is None


@pytest.mark.asyncio
async def test_budget_stop_resumes_same_window_without_duplicates(db, fake_shopee, client_factory):
    first_window = month_windows("2025-03")[0]
    for i in range(120):
        fake_shopee.add_order(f"R{i:03d}", "SHIPPED", first_window.time_from + i)

    result = await sync_month_chunk(db, SHOP_ID, client_factory, "2025-03", budget=ExecutionBudget(None, 50))
    assert result["has_more"] is True
    assert result["stopped_reason"] == "record_cap"
    assert result["next_chunk_end"] == first_window.time_to
    assert result["synced_count"] == 50
    assert get_cursor(get_sync_status(db, SHOP_ID)) == MonthCursor("2025-03", first_window.time_to)

    for _ in range(2):
        result = await continue_month_sync(db, SHOP_ID, client_factory, budget=ExecutionBudget(None, 50))
        assert result["chunk"]["time_to"] == first_window.time_to

    assert result["next_chunk_end"] == first_window.time_from - 1
    assert len(_stored(db)) == 120
    fetched = fake_shopee.detail_fetched
    assert len(fetched) == len(set(fetched)) == 120
    assert all(len(batch) <= 50 for batch in fake_shopee.detail_calls)


@pytest.mark.asyncio
async def test_time_budget_stops_before_first_page(db, fake_shopee, client_factory):
    _seed_march(fake_shopee)
    result = await sync_month_chunk(db, SHOP_ID, client_factory, "2025-03", budget=ExecutionBudget(0, None))

    assert result["success"] is True
    assert result["has_more"] is True
    assert result["synced_count"] == 0
    assert fake_shopee.list_calls == []


@pytest.mark.asyncio
async def test_remote_failure_keeps_cursor_and_records_error(db, fake_shopee, client_factory):
    _seed_march(fake_shopee)
    windows = month_windows("2025-03")
    await sync_month_chunk(db, SHOP_ID, client_factory, "2025-03", budget=_unbounded())

    fake_shopee.fail_detail_after = len(fake_shopee.detail_calls)
    result = await continue_month_sync(db, SHOP_ID, client_factory, budget=_unbounded())

    assert result["success"] is False
    assert "Shopee is down" in result["error"]
    status = get_sync_status(db, SHOP_ID)
    assert status.is_syncing is False
    assert status.error_count == 1
    assert "Shopee is down" in status.last_error
    assert get_cursor(status) == MonthCursor("2025-03", windows[1].time_to)

    fake_shopee.fail_detail_after = None
    result = await continue_month_sync(db, SHOP_ID, client_factory, budget=_unbounded())
    assert result["success"] is True
    assert result["chunk"]["time_to"] == windows[1].time_to
    status = get_sync_status(db, SHOP_ID)
    assert status.error_count == 0
    assert status.last_error is None


@pytest.mark.asyncio
async def test_continue_without_month_cursor(db, client_factory):
    result = await continue_month_sync(db, SHOP_ID, client_factory, budget=_unbounded())
    assert result["success"] is True
    assert result["has_more"] is False


@pytest.mark.asyncio
async def test_invalid_month_rejected_before_any_remote_call(db, fake_shopee, client_factory):
    with pytest.raises(InvalidSyncInput):
        await sync_month_chunk(db, SHOP_ID, client_factory, "2025-13")
    assert fake_shopee.list_calls == []
    assert get_sync_status(db, SHOP_ID) is None


# ----------------------------------------------------------------------
# Lease
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_invocation_fails_fast(db, fake_shopee, client_factory):
    acquire_lease(db, SHOP_ID, action="sync-month", run_id="other-run")

    result = await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=NOW)

    assert result["success"] is False
    assert result["error"] == "Sync is already in progress"
    assert fake_shopee.list_calls == []
    assert get_sync_status(db, SHOP_ID).sync_run_id == "other-run"


@pytest.mark.asyncio
async def test_client_build_failure_releases_lease(db):
    async def broken_factory():
        raise RuntimeError("Token not found")

    result = await sync_orders(db, SHOP_ID, broken_factory, budget=_unbounded(), now_ts=NOW)

    assert result["success"] is False
    status = get_sync_status(db, SHOP_ID)
    assert status.is_syncing is False
    assert status.last_error == "Token not found"


@pytest.mark.asyncio
async def test_run_log_records_start_pages_and_done(db, fake_shopee, client_factory):
    fake_shopee.add_order("L1", "SHIPPED", NOW - HOUR)
    result = await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=NOW)

    events = [e.event_type for e in db.query(ShopeeSyncRunLog).filter_by(run_id=result["run_id"])]
    assert events.count("start") == 1
    assert events.count("page") == 1
    assert events.count("done") == 1


# ----------------------------------------------------------------------
# Date range walk
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_date_range_walk_resumes_from_cursor(db, fake_shopee, client_factory):
    windows = date_range_windows("2025-03-01", "2025-03-20")
    for index, window in enumerate(windows):
        fake_shopee.add_order(f"D{index}", "SHIPPED", window.time_from + 10)

    result = await sync_date_range_chunk(db, SHOP_ID, client_factory, "2025-03-01", "2025-03-20", budget=_unbounded())
    assert result["chunk_index"] == 0
    assert result["next_chunk_index"] == 1
    assert result["total_chunks"] == 3
    assert get_cursor(get_sync_status(db, SHOP_ID)) == RangeCursor(
        "2025-03-01..2025-03-20", "2025-03-01", "2025-03-20", 1, 3
    )

    result = await sync_date_range_chunk(db, SHOP_ID, client_factory, "2025-03-01", "2025-03-20", budget=_unbounded())
    assert result["chunk_index"] == 1
    result = await sync_date_range_chunk(db, SHOP_ID, client_factory, "2025-03-01", "2025-03-20", budget=_unbounded())
    assert result["chunk_index"] == 2
    assert result["range_completed"] is True
    assert result["has_more"] is False
    assert result["progress_percent"] == 100.0

    status = get_sync_status(db, SHOP_ID)
    assert status.synced_ranges == ["2025-03-01..2025-03-20"]
    assert isinstance(get_cursor(status), IdleCursor)
    assert set(_stored(db)) == {"D0", "D1", "D2"}


@pytest.mark.asyncio
async def test_date_range_cursor_ignored_for_other_range(db, client_factory):
    await sync_date_range_chunk(db, SHOP_ID, client_factory, "2025-03-01", "2025-03-20", budget=_unbounded())
    result = await sync_date_range_chunk(db, SHOP_ID, client_factory, "2025-02-01", "2025-02-20", budget=_unbounded())
    assert result["chunk_index"] == 0
    assert result["range_id"] == "2025-02-01..2025-02-20"


@pytest.mark.asyncio
async def test_date_range_explicit_index_validation(db, client_factory):
    with pytest.raises(InvalidSyncInput):
        await sync_date_range_chunk(db, SHOP_ID, client_factory, "2025-03-01", "2025-03-20", 3)

    result = await sync_date_range_chunk(
        db, SHOP_ID, client_factory, "2025-03-01", "2025-03-20", 2, budget=_unbounded()
    )
    assert result["range_completed"] is True


# ----------------------------------------------------------------------
# Read-only views
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_status_and_order_listing(db, fake_shopee, client_factory):
    fake_shopee.add_order("V1", "SHIPPED", NOW - HOUR, create_time=_ts(2025, 4, 9), buyer_username="alice")
    fake_shopee.add_order("V2", "COMPLETED", NOW - 2 * HOUR, create_time=_ts(2025, 3, 30))
    await sync_orders(db, SHOP_ID, client_factory, budget=_unbounded(), now_ts=NOW)

    status = get_status(db, SHOP_ID)
    assert status["status"]["is_initial_sync_done"] is True
    assert len(status["available_months"]) == 12

    listing = list_orders(db, SHOP_ID)
    assert listing["total"] == 2
    assert [o["order_sn"] for o in listing["orders"]] == ["V1", "V2"]

    assert [o["order_sn"] for o in list_orders(db, SHOP_ID, order_status="COMPLETED")["orders"]] == ["V2"]
    assert [o["order_sn"] for o in list_orders(db, SHOP_ID, month="2025-03")["orders"]] == ["V2"]
    assert list_orders(db, SHOP_ID, search="V1")["total"] == 1
    assert list_orders(db, SHOP_ID, order_status="ALL")["total"] == 2
    assert [o["order_sn"] for o in list_orders(db, SHOP_ID, search="ALI")["orders"]] == ["V1"]
