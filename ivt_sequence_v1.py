"""
InvoiceTrail (IVT) - Sequence Allocator
Version: 1.0.0

Globally unique, strictly increasing document numbers per
(numbering domain, period). Every number comes from the store's atomic
increment; nothing is derived from clocks or randomness and no "next value"
is cached in process memory.
"""

from typing import Optional
import time

from ivt_core_v1 import (
    DOMAIN_PREFIXES,
    MAX_ALLOCATION_RETRIES,
    RETRY_BACKOFF_SECONDS,
    SEQUENCE_WIDTH,
    AllocationConflict,
    StorageTimeout,
    logger,
)
from ivt_metrics import record_allocation, record_allocation_conflict, record_storage_timeout

def period_short_code(period: str) -> str:
    """'2025' -> '25'. Non-year periods are used verbatim."""
    if len(period) == 4 and period.isdigit():
        return period[-2:]
    return period

class SequenceAllocator:
    """Issues document numbers through the store's atomic counter."""

    def __init__(
        self,
        store,
        width: int = SEQUENCE_WIDTH,
        max_retries: int = MAX_ALLOCATION_RETRIES,
        backoff_seconds: float = RETRY_BACKOFF_SECONDS,
    ):
        if width < 1:
            raise ValueError(f"Sequence width must be positive: {width}")
        self.store = store
        self.width = width
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    @property
    def ceiling(self) -> int:
        return 10 ** self.width - 1

    def next_number(self, domain: str, period: str) -> int:
        """
        Allocate the next counter value for (domain, period).

        Contention that outlasts the retry budget raises AllocationConflict;
        a counter at its format ceiling raises SequenceExhausted. Neither
        case falls back to a non-monotonic value.
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                value = self.store.increment_counter(domain, period, self.ceiling)
            except StorageTimeout as e:
                last_error = e
                record_storage_timeout("increment_counter")
                logger.warning(
                    f"[SEQUENCE] Counter {domain}/{period} contended "
                    f"(attempt {attempt}/{self.max_retries})"
                )
                time.sleep(self.backoff_seconds * attempt)
                continue

            record_allocation(domain)
            logger.info(f"[SEQUENCE] Allocated {domain}/{period} #{value}")
            return value

        record_allocation_conflict(domain)
        logger.error(f"[SEQUENCE] Giving up on {domain}/{period} after {self.max_retries} attempts")
        raise AllocationConflict(
            f"Could not allocate a number for {domain}/{period} after "
            f"{self.max_retries} attempts"
        ) from last_error

    def format_identifier(self, domain: str, period: str, value: int) -> str:
        prefix = DOMAIN_PREFIXES.get(domain, "")
        return f"{prefix}{period_short_code(period)}-{value:0{self.width}d}"

    def next_identifier(self, domain: str, period: str) -> str:
        """Allocate and format, e.g. 'invoice', '2025' -> '25-0042'."""
        return self.format_identifier(domain, period, self.next_number(domain, period))
