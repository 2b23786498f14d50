"""Per-shop Shopee credentials and tokens.

Single place the sync engine goes through to obtain:

- the partner credentials used for signing (per-shop override, falling back
  to the process-wide ``SHOPEE_PARTNER_ID`` / ``SHOPEE_PARTNER_KEY``),
- the shop's current token pair, refreshed proactively when it is close to
  expiry,
- a ready-to-use :class:`ShopeeClient` wired to persist tokens refreshed
  mid-run.

Raw tokens are never logged; only ``token_fingerprint`` hashes are.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx
from sqlalchemy.orm import Session

from shopee_sync.config import settings
from shopee_sync.models_sqlalchemy.models import ShopeeShop
from shopee_sync.services.shopee_client import (
    PartnerCredentials,
    RateLimiter,
    ShopeeApiError,
    ShopeeClient,
    ShopToken,
    refresh_access_token,
)
from shopee_sync.utils.logger import logger, token_fingerprint


class ShopeeCredentialsError(Exception):
    """No partner credentials are configured for the shop or the process."""


class ShopeeTokenNotFoundError(ShopeeApiError):
    """The shop has never been authorised (no access token stored)."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def get_shop(db: Session, shop_id: int) -> Optional[ShopeeShop]:
    return db.query(ShopeeShop).filter(ShopeeShop.shop_id == shop_id).first()


def get_partner_credentials(db: Session, shop_id: int) -> PartnerCredentials:
    shop = get_shop(db, shop_id)
    if shop is not None and shop.partner_id and shop.partner_key:
        return PartnerCredentials(partner_id=int(shop.partner_id), partner_key=shop.partner_key)

    partner_id, partner_key = settings.shopee_partner_credentials
    if not partner_id or not partner_key:
        raise ShopeeCredentialsError(
            f"No Shopee partner credentials for shop {shop_id} and no SHOPEE_PARTNER_ID/SHOPEE_PARTNER_KEY configured"
        )
    return PartnerCredentials(partner_id=int(partner_id), partner_key=partner_key)


def get_shop_token(db: Session, shop_id: int) -> ShopToken:
    shop = get_shop(db, shop_id)
    access_token = shop.access_token if shop is not None else None
    if not access_token:
        raise ShopeeTokenNotFoundError(
            "Token not found. Please authenticate first.",
            error="no_token",
        )
    return ShopToken(
        access_token=access_token,
        refresh_token=shop.refresh_token,
        expired_at=shop.expired_at,
    )


def save_token(db: Session, shop_id: int, payload: Dict[str, Any]) -> ShopeeShop:
    """Persist a token pair returned by ``auth/access_token/get``.

    Committed immediately so later calls (and concurrent invocations) pick up
    the new pair even if the surrounding sync fails afterwards.
    """

    shop = get_shop(db, shop_id)
    if shop is None:
        shop = ShopeeShop(id=str(uuid4()), shop_id=shop_id)
        db.add(shop)

    expire_in = int(payload.get("expire_in") or 0)
    shop.access_token = payload.get("access_token")
    if payload.get("refresh_token"):
        shop.refresh_token = payload["refresh_token"]
    shop.expire_in = expire_in
    shop.expired_at = _now_ms() + expire_in * 1000
    shop.token_updated_at = datetime.now(timezone.utc)
    db.commit()

    logger.info(
        f"[token-provider] Saved refreshed token shop_id={shop_id} "
        f"token_hash={token_fingerprint(payload.get('access_token'))} expire_in={expire_in}"
    )
    return shop


def token_needs_refresh(token: ShopToken, *, now_ms: Optional[int] = None) -> bool:
    if token.expired_at is None:
        # Unknown expiry: rely on the reactive refresh in ShopeeClient.call.
        return False
    now_ms = _now_ms() if now_ms is None else now_ms
    threshold_ms = settings.SHOPEE_TOKEN_REFRESH_THRESHOLD_HOURS * 3600 * 1000
    return token.expired_at - now_ms < threshold_ms


async def refresh_shop_token(
    db: Session,
    shop_id: int,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ShopeeShop:
    credentials = get_partner_credentials(db, shop_id)
    token = get_shop_token(db, shop_id)
    shop = get_shop(db, shop_id)
    payload = await refresh_access_token(
        credentials,
        token.refresh_token or "",
        shop_id,
        merchant_id=shop.merchant_id if shop is not None else None,
        transport=transport,
    )
    return save_token(db, shop_id, payload)


async def get_shopee_client(
    db: Session,
    shop_id: int,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    limiter: Optional[RateLimiter] = None,
) -> ShopeeClient:
    """Build a client for ``shop_id`` with a token that is not about to expire."""

    credentials = get_partner_credentials(db, shop_id)
    token = get_shop_token(db, shop_id)

    if token_needs_refresh(token):
        logger.info(f"[token-provider] Token near expiry, refreshing proactively shop_id={shop_id}")
        try:
            shop = await refresh_shop_token(db, shop_id, transport=transport)
            token = ShopToken(
                access_token=shop.access_token,
                refresh_token=shop.refresh_token,
                expired_at=shop.expired_at,
            )
        except ShopeeApiError as exc:
            # Keep the stored token; ShopeeClient retries once on auth errors.
            logger.warning(f"[token-provider] Proactive refresh failed shop_id={shop_id}: {exc}")

    shop = get_shop(db, shop_id)

    def _persist(payload: Dict[str, Any]) -> None:
        save_token(db, shop_id, payload)

    return ShopeeClient(
        credentials,
        shop_id,
        token,
        on_token_refreshed=_persist,
        limiter=limiter,
        transport=transport,
        merchant_id=shop.merchant_id if shop is not None else None,
    )
