"""Signed HTTP client for the Shopee Open Platform v2 API.

Every shop-level call is signed with HMAC-SHA256 over
``partner_id + path + timestamp + access_token + shop_id`` using the partner
key. When Shopee answers with an auth error the client refreshes the token
pair exactly once, hands the new pair to ``on_token_refreshed`` so it is
persisted immediately, and replays the original call once. A failing refresh
surfaces the original auth error.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from shopee_sync.config import settings
from shopee_sync.utils.logger import logger, sanitize_params, token_fingerprint


ORDER_LIST_PATH = "/api/v2/order/get_order_list"
ORDER_DETAIL_PATH = "/api/v2/order/get_order_detail"
ESCROW_DETAIL_PATH = "/api/v2/payment/get_escrow_detail"
TOKEN_REFRESH_PATH = "/api/v2/auth/access_token/get"

ORDER_LIST_PAGE_SIZE = 100      # get_order_list max page_size
ORDER_DETAIL_BATCH_SIZE = 50    # get_order_detail max order_sn_list length

AUTH_ERROR_CODES = {"error_auth", "invalid_access_token", "invalid_acceess_token"}

ORDER_DETAIL_OPTIONAL_FIELDS = ",".join([
    "buyer_user_id", "buyer_username", "estimated_shipping_fee",
    "recipient_address", "actual_shipping_fee", "goods_to_declare",
    "note", "note_update_time", "item_list", "pay_time",
    "dropshipper", "dropshipper_phone", "split_up",
    "buyer_cancel_reason", "cancel_by", "cancel_reason",
    "actual_shipping_fee_confirmed", "buyer_cpf_id",
    "fulfillment_flag", "pickup_done_time", "package_list",
    "shipping_carrier", "payment_method", "total_amount",
    "invoice_data", "order_chargeable_weight_gram",
    "return_request_due_date", "edt", "payment_info",
])


class ShopeeApiError(Exception):
    """Shopee returned an error payload, a non-2xx status, or the call failed."""

    def __init__(
        self,
        message: str,
        *,
        error: Optional[str] = None,
        path: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error = error
        self.path = path
        self.status_code = status_code
        self.request_id = request_id

    def __str__(self) -> str:
        if self.error and self.error not in self.message:
            return f"{self.error}: {self.message}"
        return self.message


class ShopeeAuthError(ShopeeApiError):
    """The access token was rejected (expired or revoked)."""


@dataclass
class PartnerCredentials:
    partner_id: int
    partner_key: str


@dataclass
class ShopToken:
    access_token: str
    refresh_token: Optional[str] = None
    expired_at: Optional[int] = None  # epoch milliseconds


@dataclass
class OrderListPage:
    orders: List[Dict[str, Any]] = field(default_factory=list)
    more: bool = False
    next_cursor: str = ""


def create_signature(
    partner_key: str,
    partner_id: int,
    path: str,
    timestamp: int,
    access_token: str = "",
    shop_id: int = 0,
) -> str:
    base_string = f"{partner_id}{path}{timestamp}"
    if access_token:
        base_string += access_token
    if shop_id:
        base_string += str(shop_id)
    return hmac.new(partner_key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha256).hexdigest()


def is_auth_error(result: Dict[str, Any]) -> bool:
    error = result.get("error") or ""
    message = result.get("message") or ""
    return error in AUTH_ERROR_CODES or "invalid access_token" in str(message).lower()


class RateLimiter:
    """Fixed-interval limiter shared by all calls of one client.

    ``wait`` spaces consecutive requests at least ``min_interval`` seconds
    apart; ``pause`` is the deliberate delay between pages / batches.
    Both go through the injected ``sleep`` so tests can run without waiting.
    """

    def __init__(
        self,
        min_interval: float = 0.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None

    async def wait(self) -> None:
        if self.min_interval and self._last_call is not None:
            delay = self._last_call + self.min_interval - self._clock()
            if delay > 0:
                await self._sleep(delay)
        self._last_call = self._clock()

    async def pause(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)


def _build_url(path: str, params: Dict[str, Any]) -> str:
    target = str(httpx.URL(f"{settings.SHOPEE_BASE_URL.rstrip('/')}{path}", params=params))
    if settings.SHOPEE_PROXY_URL:
        return str(httpx.URL(settings.SHOPEE_PROXY_URL, params={"url": target}))
    return target


async def _send(
    method: str,
    path: str,
    params: Dict[str, Any],
    *,
    body: Optional[Dict[str, Any]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    url = _build_url(path, params)
    try:
        async with httpx.AsyncClient(timeout=settings.SHOPEE_HTTP_TIMEOUT_SECONDS, transport=transport) as client:
            response = await client.request(
                method,
                url,
                json=body,
                headers={"Content-Type": "application/json"},
            )
    except httpx.RequestError as exc:
        logger.error(f"[shopee-client] HTTP request failed path={path}: {exc}")
        raise ShopeeApiError(f"HTTP request failed: {exc}", error="request_failed", path=path) from exc

    try:
        data = response.json()
    except ValueError:
        data = None

    if not isinstance(data, dict):
        raise ShopeeApiError(
            f"Unexpected response from Shopee ({response.status_code}): {response.text[:300]}",
            error="invalid_response",
            path=path,
            status_code=response.status_code,
        )

    # Shopee reports most failures (including expired tokens, HTTP 403) with an
    # "error" field in the JSON body; keep those so callers can classify them.
    if response.status_code >= 400 and not data.get("error"):
        raise ShopeeApiError(
            f"Shopee returned HTTP {response.status_code}",
            error="http_error",
            path=path,
            status_code=response.status_code,
            request_id=data.get("request_id"),
        )
    data.setdefault("_status_code", response.status_code)
    return data


async def refresh_access_token(
    credentials: PartnerCredentials,
    refresh_token: str,
    shop_id: int,
    *,
    merchant_id: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Exchange a refresh token for a new token pair.

    Returns the raw Shopee payload (``access_token``, ``refresh_token``,
    ``expire_in``). Raises :class:`ShopeeApiError` when Shopee rejects it.
    """

    if not refresh_token:
        raise ShopeeApiError("No refresh token stored for shop", error="no_refresh_token", path=TOKEN_REFRESH_PATH)

    timestamp = int(time.time())
    sign = create_signature(credentials.partner_key, credentials.partner_id, TOKEN_REFRESH_PATH, timestamp)
    params = {"partner_id": credentials.partner_id, "timestamp": timestamp, "sign": sign}
    body: Dict[str, Any] = {
        "refresh_token": refresh_token,
        "partner_id": credentials.partner_id,
        "shop_id": shop_id,
    }
    if merchant_id:
        body["merchant_id"] = merchant_id

    logger.info(f"[shopee-client] Refreshing access token shop_id={shop_id}")
    result = await _send("POST", TOKEN_REFRESH_PATH, params, body=body, transport=transport)

    if result.get("error") or not result.get("access_token"):
        raise ShopeeApiError(
            result.get("message") or result.get("error") or "Token refresh returned no access_token",
            error=result.get("error") or "refresh_failed",
            path=TOKEN_REFRESH_PATH,
            request_id=result.get("request_id"),
        )
    return result


class ShopeeClient:
    """Shop-scoped Shopee API client with one transparent refresh-and-retry."""

    def __init__(
        self,
        credentials: PartnerCredentials,
        shop_id: int,
        token: ShopToken,
        *,
        on_token_refreshed: Optional[Callable[[Dict[str, Any]], None]] = None,
        limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        merchant_id: Optional[int] = None,
    ):
        self.credentials = credentials
        self.shop_id = shop_id
        self.token = token
        self.merchant_id = merchant_id
        self.limiter = limiter or RateLimiter(settings.SHOPEE_MIN_REQUEST_INTERVAL_SECONDS)
        self._on_token_refreshed = on_token_refreshed
        self._transport = transport

    async def _signed_request(
        self,
        path: str,
        access_token: str,
        params: Optional[Dict[str, Any]],
        method: str,
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        timestamp = int(time.time())
        query: Dict[str, Any] = {
            "partner_id": self.credentials.partner_id,
            "timestamp": timestamp,
            "access_token": access_token,
            "shop_id": self.shop_id,
            "sign": create_signature(
                self.credentials.partner_key,
                self.credentials.partner_id,
                path,
                timestamp,
                access_token,
                self.shop_id,
            ),
        }
        for key, value in (params or {}).items():
            if value is not None:
                query[key] = value

        await self.limiter.wait()
        logger.debug(f"[shopee-client] → {method} {path} params={sanitize_params(query)}")
        return await _send(method, path, query, body=body, transport=self._transport)

    def _error_from_result(self, path: str, result: Dict[str, Any]) -> Optional[ShopeeApiError]:
        if is_auth_error(result):
            return ShopeeAuthError(
                result.get("message") or "Invalid access_token",
                error=result.get("error") or "error_auth",
                path=path,
                status_code=result.get("_status_code"),
                request_id=result.get("request_id"),
            )
        if not result.get("error"):
            return None
        return ShopeeApiError(
            result.get("message") or result.get("error"),
            error=result.get("error"),
            path=path,
            status_code=result.get("_status_code"),
            request_id=result.get("request_id"),
        )

    async def call(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        result = await self._signed_request(path, self.token.access_token, params, method, body)
        if not is_auth_error(result):
            error = self._error_from_result(path, result)
            if error is not None:
                raise error
            return result

        logger.info(
            f"[shopee-client] Token rejected on {path}, refreshing shop_id={self.shop_id} "
            f"token_hash={token_fingerprint(self.token.access_token)}"
        )
        try:
            refreshed = await refresh_access_token(
                self.credentials,
                self.token.refresh_token or "",
                self.shop_id,
                merchant_id=self.merchant_id,
                transport=self._transport,
            )
        except ShopeeApiError as exc:
            # The caller sees the original auth failure, not the refresh failure.
            logger.warning(f"[shopee-client] Token refresh failed shop_id={self.shop_id}: {exc}")
            raise self._error_from_result(path, result) from exc

        self.token = ShopToken(
            access_token=refreshed["access_token"],
            refresh_token=refreshed.get("refresh_token") or self.token.refresh_token,
            expired_at=int(time.time() * 1000) + int(refreshed.get("expire_in") or 0) * 1000,
        )
        if self._on_token_refreshed is not None:
            self._on_token_refreshed(refreshed)

        result = await self._signed_request(path, self.token.access_token, params, method, body)
        error = self._error_from_result(path, result)
        if error is not None:
            raise error
        return result

    # ------------------------------------------------------------------
    # Endpoints used by the sync engine
    # ------------------------------------------------------------------

    async def get_order_list(
        self,
        time_from: int,
        time_to: int,
        cursor: str = "",
        page_size: int = ORDER_LIST_PAGE_SIZE,
    ) -> OrderListPage:
        params: Dict[str, Any] = {
            "time_range_field": "update_time",
            "time_from": time_from,
            "time_to": time_to,
            "page_size": page_size,
            "response_optional_fields": "order_status",
            "request_order_status_pending": "true",
        }
        if cursor:
            params["cursor"] = cursor

        result = await self.call(ORDER_LIST_PATH, params)
        response = result.get("response") or {}
        return OrderListPage(
            orders=response.get("order_list") or [],
            more=bool(response.get("more")),
            next_cursor=response.get("next_cursor") or "",
        )

    async def get_order_detail(self, order_sns: List[str]) -> List[Dict[str, Any]]:
        if not order_sns:
            return []
        if len(order_sns) > ORDER_DETAIL_BATCH_SIZE:
            raise ValueError(f"get_order_detail accepts at most {ORDER_DETAIL_BATCH_SIZE} order_sn values")

        result = await self.call(
            ORDER_DETAIL_PATH,
            {
                "order_sn_list": ",".join(order_sns),
                "response_optional_fields": ORDER_DETAIL_OPTIONAL_FIELDS,
                "request_order_status_pending": "true",
            },
        )
        return (result.get("response") or {}).get("order_list") or []

    async def get_escrow_detail(self, order_sn: str) -> Dict[str, Any]:
        result = await self.call(ESCROW_DETAIL_PATH, {"order_sn": order_sn})
        response = result.get("response") or {}
        if not response.get("order_income"):
            raise ShopeeApiError(
                f"Escrow detail not available yet for {order_sn}",
                error="escrow_not_ready",
                path=ESCROW_DETAIL_PATH,
                request_id=result.get("request_id"),
            )
        return response
