from __future__ import annotations

import time
from typing import Callable, Optional

from shopee_sync.config import settings


BUDGET_TIME = "time_budget"
BUDGET_RECORDS = "record_cap"


class ExecutionBudget:
    """Per-invocation guard on wall-clock time and detail-fetched records.

    Callers ask :meth:`check` before starting each unit of remote work (a list
    page or a detail sub-batch). Once it returns False it stays False and
    ``reason`` says which limit tripped.
    """

    def __init__(
        self,
        time_limit_seconds: Optional[float] = None,
        max_records: Optional[int] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.time_limit_seconds = time_limit_seconds
        self.max_records = max_records
        self._clock = clock
        self.started_at = clock()
        self.records = 0
        self.reason: Optional[str] = None

    @classmethod
    def from_settings(cls, *, clock: Callable[[], float] = time.monotonic) -> "ExecutionBudget":
        return cls(
            settings.ORDERS_SYNC_TIME_BUDGET_SECONDS,
            settings.ORDERS_SYNC_MAX_ORDERS_PER_CHUNK,
            clock=clock,
        )

    @property
    def elapsed(self) -> float:
        return self._clock() - self.started_at

    @property
    def exhausted(self) -> bool:
        return self.reason is not None

    def add_records(self, count: int) -> None:
        self.records += count

    def check(self) -> bool:
        if self.reason is not None:
            return False
        if self.time_limit_seconds is not None and self.elapsed >= self.time_limit_seconds:
            self.reason = BUDGET_TIME
        elif self.max_records is not None and self.records >= self.max_records:
            self.reason = BUDGET_RECORDS
        return self.reason is None

    def remaining_records(self) -> Optional[int]:
        if self.max_records is None:
            return None
        return max(self.max_records - self.records, 0)
