import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shopee_sync.models_sqlalchemy import Base
from shopee_sync.models_sqlalchemy import models, sync_workers  # noqa: F401
from shopee_sync.services.shopee_client import (
    ORDER_DETAIL_BATCH_SIZE,
    ORDER_LIST_PAGE_SIZE,
    OrderListPage,
    RateLimiter,
    ShopeeApiError,
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class RecordingSleep:
    """Async sleep replacement that records requested delays instead of waiting."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeShopee:
    """In-memory stand-in for the Shopee order/payment endpoints.

    Orders live in ``self.orders`` keyed by order_sn. ``get_order_list``
    filters by update_time and pages with a numeric cursor, like the real API.
    """

    def __init__(self, page_size: int = ORDER_LIST_PAGE_SIZE):
        self.page_size = page_size
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.escrow: Dict[str, Dict[str, Any]] = {}
        self.list_calls: List[Dict[str, Any]] = []
        self.detail_calls: List[List[str]] = []
        self.escrow_calls: List[str] = []
        self.fail_detail_after: Optional[int] = None
        self.escrow_errors: Dict[str, ShopeeApiError] = {}
        self.sleep = RecordingSleep()
        self.limiter = RateLimiter(0.0, sleep=self.sleep)

    def add_order(self, order_sn: str, status: str, update_time: int, create_time: Optional[int] = None, **extra):
        self.orders[order_sn] = {
            "order_sn": order_sn,
            "order_status": status,
            "update_time": update_time,
            "create_time": create_time if create_time is not None else update_time,
            "currency": "VND",
            "total_amount": 150000,
            "item_list": [{"item_id": 1, "model_quantity_purchased": 1}],
            **extra,
        }

    def set_status(self, order_sn: str, status: str, update_time: int):
        self.orders[order_sn]["order_status"] = status
        self.orders[order_sn]["update_time"] = update_time

    def add_escrow(self, order_sn: str, escrow_amount: float = 120000):
        self.escrow[order_sn] = {
            "order_sn": order_sn,
            "buyer_user_name": "buyer",
            "return_order_sn_list": [],
            "order_income": {
                "escrow_amount": escrow_amount,
                "buyer_total_amount": 150000,
                "commission_fee": 5000,
                "service_fee": 3000,
                "items": [{"item_id": 1}],
            },
            "buyer_payment_info": {"buyer_total_amount": 150000},
        }

    @property
    def detail_fetched(self) -> List[str]:
        return [sn for batch in self.detail_calls for sn in batch]

    async def get_order_list(self, time_from: int, time_to: int, cursor: str = "", page_size: int = 0):
        self.list_calls.append({"time_from": time_from, "time_to": time_to, "cursor": cursor})
        matching = sorted(
            (o for o in self.orders.values() if time_from <= o["update_time"] <= time_to),
            key=lambda o: (o["update_time"], o["order_sn"]),
        )
        start = int(cursor or 0)
        page = matching[start:start + self.page_size]
        more = start + self.page_size < len(matching)
        return OrderListPage(
            orders=[{"order_sn": o["order_sn"], "order_status": o["order_status"]} for o in page],
            more=more,
            next_cursor=str(start + self.page_size) if more else "",
        )

    async def get_order_detail(self, order_sns: List[str]):
        assert len(order_sns) <= ORDER_DETAIL_BATCH_SIZE
        if self.fail_detail_after is not None and len(self.detail_calls) >= self.fail_detail_after:
            raise ShopeeApiError("Shopee is down", error="error_server")
        self.detail_calls.append(list(order_sns))
        return [dict(self.orders[sn]) for sn in order_sns if sn in self.orders]

    async def get_escrow_detail(self, order_sn: str):
        self.escrow_calls.append(order_sn)
        if order_sn in self.escrow_errors:
            raise self.escrow_errors[order_sn]
        if order_sn not in self.escrow:
            raise ShopeeApiError(f"Escrow detail not available yet for {order_sn}", error="escrow_not_ready")
        return dict(self.escrow[order_sn])


@pytest.fixture
def fake_shopee():
    return FakeShopee()


@pytest.fixture
def client_factory(fake_shopee):
    async def factory():
        return fake_shopee

    return factory
