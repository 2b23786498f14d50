"""Shopee order/finance sync services.

Reconciles the local ``shopee_orders`` / ``shopee_order_escrow`` mirror with
the Shopee Open Platform.

Key responsibilities:
- One lease per shop so no two sync invocations overlap.
- Time-boxed runs that stop between units of work and persist a cursor the
  caller can continue from.
- Only fetch detail for orders whose remote status changed.
- Escrow backfill paginated over the local mirror.

Nothing is scheduled here; every run is triggered through
``shopee_sync.routers.orders_sync``.
"""

from .orders import (
    continue_month_sync,
    get_status,
    list_orders,
    sync_date_range_chunk,
    sync_escrow,
    sync_month_chunk,
    sync_orders,
)
