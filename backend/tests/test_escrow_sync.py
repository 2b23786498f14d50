import pytest

from shopee_sync.models_sqlalchemy.models import ShopeeOrder, ShopeeOrderEscrow
from shopee_sync.services.orders_sync.budget import ExecutionBudget
from shopee_sync.services.orders_sync.escrow import (
    MAX_ESCROW_BATCH_SIZE,
    clamp_batch_size,
    escrow_stats,
)
from shopee_sync.services.orders_sync.orders import sync_escrow
from shopee_sync.services.orders_sync.state import acquire_lease, get_sync_status
from shopee_sync.services.orders_sync.writer import upsert_orders
from shopee_sync.services.shopee_client import ShopeeAuthError


SHOP_ID = 3131
MARCH_10 = 1741564800  # 2025-03-10T00:00:00Z
APRIL_10 = 1744243200  # 2025-04-10T00:00:00Z


def _unbounded():
    return ExecutionBudget(None, None)


def _seed(db, fake_shopee, rows):
    """rows: (order_sn, status, create_time, has_escrow)"""
    orders = []
    for order_sn, status, create_time, has_escrow in rows:
        orders.append({
            "order_sn": order_sn,
            "order_status": status,
            "create_time": create_time,
            "update_time": create_time + 100,
        })
        if has_escrow:
            fake_shopee.add_escrow(order_sn)
    upsert_orders(db, SHOP_ID, orders)


def _flag(db, order_sn):
    db.expire_all()
    return db.query(ShopeeOrder).filter_by(shop_id=SHOP_ID, order_sn=order_sn).one().escrow_fetched


def test_batch_size_clamped():
    assert clamp_batch_size(None) == 50
    assert clamp_batch_size(0) == 50
    assert clamp_batch_size(10) == 10
    assert clamp_batch_size(5000) == MAX_ESCROW_BATCH_SIZE


@pytest.mark.asyncio
async def test_batch_fetches_only_eligible_and_counts_soft_failures(db, fake_shopee, client_factory):
    _seed(db, fake_shopee, [
        ("E1", "COMPLETED", MARCH_10 + 3, True),
        ("E2", "TO_CONFIRM_RECEIVE", MARCH_10 + 2, False),   # escrow not computed yet
        ("E3", "TO_RETURN", MARCH_10 + 1, True),
        ("X1", "SHIPPED", MARCH_10 + 4, True),                # not eligible
    ])

    result = await sync_escrow(db, SHOP_ID, client_factory, action="sync-all-escrow", budget=_unbounded())

    assert result["success"] is True
    assert result["synced_count"] == 2
    assert result["failed"] == 1
    assert result["failed_orders"][0]["order_sn"] == "E2"
    assert result["total"] == 3
    assert result["has_more"] is False
    assert result["percent"] == 100.0
    assert fake_shopee.escrow_calls == ["E1", "E2", "E3"]
    assert _flag(db, "E1") is True
    assert _flag(db, "E2") is False
    assert db.query(ShopeeOrderEscrow).count() == 2
    assert fake_shopee.sleep.calls == [0.1, 0.1]


@pytest.mark.asyncio
async def test_already_fetched_orders_skipped_unless_forced(db, fake_shopee, client_factory):
    _seed(db, fake_shopee, [("E1", "COMPLETED", MARCH_10, True)])
    await sync_escrow(db, SHOP_ID, client_factory, budget=_unbounded())

    result = await sync_escrow(db, SHOP_ID, client_factory, offset=0, budget=_unbounded())
    assert result["skipped"] == 1
    assert fake_shopee.escrow_calls == ["E1"]

    result = await sync_escrow(db, SHOP_ID, client_factory, offset=0, force=True, budget=_unbounded())
    assert result["synced_count"] == 1
    assert fake_shopee.escrow_calls == ["E1", "E1"]


@pytest.mark.asyncio
async def test_completion_transition_makes_order_eligible_again(db, fake_shopee, client_factory):
    _seed(db, fake_shopee, [("E1", "TO_CONFIRM_RECEIVE", MARCH_10, True)])
    await sync_escrow(db, SHOP_ID, client_factory, budget=_unbounded())
    assert _flag(db, "E1") is True

    upsert_orders(db, SHOP_ID, [{"order_sn": "E1", "order_status": "COMPLETED", "create_time": MARCH_10, "update_time": MARCH_10 + 500}])
    assert _flag(db, "E1") is False

    result = await sync_escrow(db, SHOP_ID, client_factory, offset=0, budget=_unbounded())
    assert result["synced_count"] == 1
    assert _flag(db, "E1") is True


@pytest.mark.asyncio
async def test_pagination_progress_and_resume(db, fake_shopee, client_factory):
    _seed(db, fake_shopee, [(f"E{i:02d}", "COMPLETED", MARCH_10 + i, True) for i in range(5)])

    first = await sync_escrow(db, SHOP_ID, client_factory, batch_size=2, action="sync-all-escrow", budget=_unbounded())
    assert (first["offset"], first["next_offset"], first["has_more"]) == (0, 2, True)
    assert first["percent"] == 40.0
    # Newest create_time first.
    assert fake_shopee.escrow_calls == ["E04", "E03"]

    progress = get_sync_status(db, SHOP_ID).progress["escrow"]
    assert progress["next_offset"] == 2 and progress["has_more"] is True

    second = await sync_escrow(db, SHOP_ID, client_factory, batch_size=2, action="sync-all-escrow", budget=_unbounded())
    third = await sync_escrow(db, SHOP_ID, client_factory, batch_size=2, action="sync-all-escrow", budget=_unbounded())
    assert second["offset"] == 2
    assert (third["offset"], third["next_offset"], third["has_more"]) == (4, 5, False)
    assert fake_shopee.escrow_calls == ["E04", "E03", "E02", "E01", "E00"]

    # Finished walk starts over from the top.
    fourth = await sync_escrow(db, SHOP_ID, client_factory, batch_size=2, action="sync-all-escrow", budget=_unbounded())
    assert fourth["offset"] == 0
    assert fourth["skipped"] == 2


@pytest.mark.asyncio
async def test_budget_stop_resumes_at_first_unattempted_order(db, fake_shopee, client_factory):
    _seed(db, fake_shopee, [(f"E{i:02d}", "COMPLETED", MARCH_10 + i, True) for i in range(4)])

    result = await sync_escrow(db, SHOP_ID, client_factory, batch_size=4, budget=ExecutionBudget(None, 3))
    assert result["synced_count"] == 3
    assert result["stopped_reason"] == "record_cap"
    assert result["next_offset"] == 3
    assert result["has_more"] is True

    result = await sync_escrow(db, SHOP_ID, client_factory, batch_size=4, budget=_unbounded())
    assert result["offset"] == 3
    assert fake_shopee.escrow_calls == ["E03", "E02", "E01", "E00"]


@pytest.mark.asyncio
async def test_explicit_order_list_bypasses_pagination(db, fake_shopee, client_factory):
    _seed(db, fake_shopee, [
        ("E1", "COMPLETED", MARCH_10, True),
        ("E2", "COMPLETED", MARCH_10 + 1, True),
    ])

    result = await sync_escrow(db, SHOP_ID, client_factory, order_sns=["E1", "E1"], budget=_unbounded())

    assert result["synced_count"] == 1
    assert result["total"] == 1
    assert fake_shopee.escrow_calls == ["E1"]
    assert result["next_offset"] is None
    assert result["has_more"] is False
    assert result["percent"] == 100.0


@pytest.mark.asyncio
async def test_auth_error_aborts_batch_but_keeps_fetched(db, fake_shopee, client_factory):
    _seed(db, fake_shopee, [
        ("E1", "COMPLETED", MARCH_10 + 2, True),
        ("E2", "COMPLETED", MARCH_10 + 1, True),
    ])
    fake_shopee.escrow_errors["E2"] = ShopeeAuthError("Invalid access_token", error="error_auth")

    result = await sync_escrow(db, SHOP_ID, client_factory, budget=_unbounded())

    assert result["success"] is False
    assert _flag(db, "E1") is True
    status = get_sync_status(db, SHOP_ID)
    assert status.is_syncing is False
    assert status.error_count == 1


@pytest.mark.asyncio
async def test_escrow_shares_the_sync_lease(db, fake_shopee, client_factory):
    acquire_lease(db, SHOP_ID, action="sync-month", run_id="orders-run")
    result = await sync_escrow(db, SHOP_ID, client_factory, budget=_unbounded())
    assert result["success"] is False
    assert result["is_syncing"] is True
    assert fake_shopee.escrow_calls == []


@pytest.mark.asyncio
async def test_stats_by_month(db, fake_shopee, client_factory):
    _seed(db, fake_shopee, [
        ("M1", "COMPLETED", MARCH_10, True),
        ("M2", "COMPLETED", MARCH_10 + 1, False),
        ("A1", "TO_RETURN", APRIL_10, True),
        ("S1", "SHIPPED", MARCH_10, False),
    ])
    await sync_escrow(db, SHOP_ID, client_factory, budget=_unbounded())

    overall = escrow_stats(db, SHOP_ID)
    assert (overall["total_eligible"], overall["synced"], overall["missing"]) == (3, 2, 1)

    march = escrow_stats(db, SHOP_ID, "2025-03")
    assert (march["total_eligible"], march["synced"], march["missing"]) == (2, 1, 1)
    assert march["percent"] == 50.0

    empty = escrow_stats(db, SHOP_ID, "2024-01")
    assert empty["total_eligible"] == 0
    assert empty["percent"] == 100.0


@pytest.mark.asyncio
async def test_explicit_order_list_never_writes_escrow_without_order(db, fake_shopee, client_factory):
    _seed(db, fake_shopee, [("E1", "COMPLETED", MARCH_10, True)])
    fake_shopee.add_escrow("GHOST")

    result = await sync_escrow(db, SHOP_ID, client_factory, order_sns=["E1", "GHOST"], budget=_unbounded())

    assert result["synced_count"] == 1
    assert result["failed"] == 1
    assert result["failed_orders"] == [{"order_sn": "GHOST", "error": "order_not_found"}]
    assert fake_shopee.escrow_calls == ["E1"]
    assert db.query(ShopeeOrderEscrow).filter_by(shop_id=SHOP_ID, order_sn="GHOST").count() == 0


@pytest.mark.asyncio
async def test_explicit_order_list_budget_stop_reports_remaining(db, fake_shopee, client_factory):
    _seed(db, fake_shopee, [(f"E{i}", "COMPLETED", MARCH_10 + i, True) for i in range(4)])

    result = await sync_escrow(
        db, SHOP_ID, client_factory, order_sns=["E0", "E1", "E2", "E3"], budget=ExecutionBudget(None, 1)
    )

    assert result["synced_count"] == 1
    assert result["stopped_reason"] == "record_cap"
    assert result["has_more"] is True
    assert result["next_offset"] is None
    assert result["percent"] == 25.0
