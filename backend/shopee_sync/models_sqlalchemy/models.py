from datetime import datetime

from sqlalchemy import (
    Column, String, Boolean, DateTime, Integer, BigInteger, Numeric, Text, JSON,
    Index, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from shopee_sync.models_sqlalchemy import Base


# JSONB on Postgres, plain JSON on SQLite (local runs / tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class ShopeeShop(Base):
    """A connected Shopee shop and its OAuth token pair.

    ``partner_id`` / ``partner_key`` are optional per-shop overrides of the
    process-wide partner credentials. Tokens are stored encrypted; always go
    through the ``access_token`` / ``refresh_token`` properties.
    """

    __tablename__ = "shopee_shops"

    id = Column(String(36), primary_key=True)
    shop_id = Column(BigInteger, nullable=False, unique=True, index=True)
    shop_name = Column(Text, nullable=True)

    partner_id = Column(BigInteger, nullable=True)
    partner_key = Column(Text, nullable=True)
    merchant_id = Column(BigInteger, nullable=True)

    _access_token = Column("access_token", Text, nullable=True)
    _refresh_token = Column("refresh_token", Text, nullable=True)
    expire_in = Column(Integer, nullable=True)  # seconds, as returned by Shopee
    expired_at = Column(BigInteger, nullable=True)  # epoch milliseconds
    token_updated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def access_token(self) -> str | None:
        from shopee_sync.utils import crypto

        raw = self._access_token
        if raw is None:
            return None
        return crypto.decrypt(raw)

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        from shopee_sync.utils import crypto

        if value is None or value == "":
            self._access_token = None
        else:
            self._access_token = crypto.encrypt(value)

    @property
    def refresh_token(self) -> str | None:
        from shopee_sync.utils import crypto

        raw = self._refresh_token
        if raw is None:
            return None
        return crypto.decrypt(raw)

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        from shopee_sync.utils import crypto

        if value is None or value == "":
            self._refresh_token = None
        else:
            self._refresh_token = crypto.encrypt(value)


class ShopeeOrder(Base):
    """Local mirror of one Shopee order.

    Natural key is ``(shop_id, order_sn)``. Rows are written only through the
    upsert writer in ``services.orders_sync.writer`` and never deleted.
    ``create_time`` / ``update_time`` are Shopee's epoch-second timestamps.
    """

    __tablename__ = "shopee_orders"

    id = Column(String(36), primary_key=True)
    shop_id = Column(BigInteger, nullable=False)
    order_sn = Column(String(64), nullable=False)
    booking_sn = Column(String(64), nullable=True)

    order_status = Column(String(32), nullable=False)
    pending_terms = Column(JSONType, nullable=True)

    currency = Column(String(8), nullable=True)
    cod = Column(Boolean, nullable=True)
    total_amount = Column(Numeric(15, 2), nullable=True)
    estimated_shipping_fee = Column(Numeric(15, 2), nullable=True)
    actual_shipping_fee = Column(Numeric(15, 2), nullable=True)
    reverse_shipping_fee = Column(Numeric(15, 2), nullable=True)

    create_time = Column(BigInteger, nullable=False)
    update_time = Column(BigInteger, nullable=False)
    pay_time = Column(BigInteger, nullable=True)
    ship_by_date = Column(BigInteger, nullable=True)
    pickup_done_time = Column(BigInteger, nullable=True)

    buyer_user_id = Column(BigInteger, nullable=True)
    buyer_username = Column(Text, nullable=True)
    region = Column(String(8), nullable=True)
    recipient_address = Column(JSONType, nullable=True)

    shipping_carrier = Column(Text, nullable=True)
    checkout_shipping_carrier = Column(Text, nullable=True)
    days_to_ship = Column(Integer, nullable=True)
    fulfillment_flag = Column(String(64), nullable=True)
    payment_method = Column(Text, nullable=True)
    payment_info = Column(JSONType, nullable=True)

    item_list = Column(JSONType, nullable=True)
    package_list = Column(JSONType, nullable=True)

    cancel_by = Column(Text, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    buyer_cancel_reason = Column(Text, nullable=True)
    message_to_seller = Column(Text, nullable=True)
    note = Column(Text, nullable=True)
    invoice_data = Column(JSONType, nullable=True)

    # False when the order is new or has just become COMPLETED; the escrow
    # backfill flips it to True after a successful settlement fetch.
    escrow_fetched = Column(Boolean, nullable=False, default=False, server_default="false")

    raw_response = Column(JSONType, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("shop_id", "order_sn", name="uq_shopee_orders_shop_order_sn"),
        Index("idx_shopee_orders_shop_status", "shop_id", "order_status"),
        Index("idx_shopee_orders_shop_create_time", "shop_id", "create_time"),
        Index("idx_shopee_orders_update_time", "update_time"),
    )


class ShopeeOrderEscrow(Base):
    """Settlement (escrow) detail for one order, from payment/get_escrow_detail.

    Headline amounts are copied into columns for filtering; the full
    ``order_income`` breakdown (per-item discounts, adjustments, taxes) is kept
    as JSON.
    """

    __tablename__ = "shopee_order_escrow"

    id = Column(String(36), primary_key=True)
    shop_id = Column(BigInteger, nullable=False)
    order_sn = Column(String(64), nullable=False)

    buyer_user_name = Column(Text, nullable=True)
    return_order_sn_list = Column(JSONType, nullable=True)

    escrow_amount = Column(Numeric(15, 2), nullable=True)
    escrow_amount_after_adjustment = Column(Numeric(15, 2), nullable=True)
    buyer_total_amount = Column(Numeric(15, 2), nullable=True)
    order_selling_price = Column(Numeric(15, 2), nullable=True)
    commission_fee = Column(Numeric(15, 2), nullable=True)
    service_fee = Column(Numeric(15, 2), nullable=True)
    seller_transaction_fee = Column(Numeric(15, 2), nullable=True)
    escrow_tax = Column(Numeric(15, 2), nullable=True)
    total_adjustment_amount = Column(Numeric(15, 2), nullable=True)

    order_income = Column(JSONType, nullable=True)
    buyer_payment_info = Column(JSONType, nullable=True)
    items = Column(JSONType, nullable=True)
    order_adjustment = Column(JSONType, nullable=True)

    raw_response = Column(JSONType, nullable=True)
    fetched_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("shop_id", "order_sn", name="uq_shopee_order_escrow_shop_order_sn"),
    )
