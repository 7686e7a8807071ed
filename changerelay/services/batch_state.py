"""Batch lifecycle rules shared by the master and the shard coordinator.

Nothing here touches a database; callers persist the returned decisions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time
from enum import Enum
from typing import Optional

from changerelay.schemas import ChangeTrackingBatch, SyncBit

logger = logging.getLogger(__name__)


class UninitializedStateError(RuntimeError):
    """Raised when the relay has no batch to continue from and an operator must seed one."""


class BatchAction(str, Enum):
    CREATE = "create"
    EXTEND = "extend"
    RETRY = "retry"


@dataclass(frozen=True)
class BatchPlan:
    action: BatchAction
    start_version: int
    stop_version: int
    batch: Optional[ChangeTrackingBatch] = None


def initialize_next_batch(last: Optional[ChangeTrackingBatch], current_version: int) -> BatchPlan:
    if last is None:
        raise UninitializedStateError(
            "Unable to determine appropriate syncStartVersion - version table seems to be empty."
        )

    if last.has(SyncBit.UPLOAD_CHANGES):
        logger.debug("Last batch succeeded, creating a new one where that left off")
        return BatchPlan(BatchAction.CREATE, last.stop_version, current_version)

    if not last.has(SyncBit.CAPTURE_CHANGES):
        logger.debug(
            "CTID %s failed before creating change tables, moving its stop version to %s",
            last.ctid,
            current_version,
        )
        return BatchPlan(
            BatchAction.EXTEND,
            last.start_version,
            current_version,
            last.with_stop_version(current_version),
        )

    logger.debug("CTID %s created its change tables but did not finish, retrying it", last.ctid)
    return BatchPlan(BatchAction.RETRY, last.start_version, last.stop_version, last)


def in_ignore_window(window_start: Optional[time], window_end: Optional[time], now: datetime) -> bool:
    if window_start is None or window_end is None:
        return False
    current = now.time()
    if window_start > window_end:
        # The window wraps around midnight.
        return current > window_start or current <= window_end
    return window_start < current <= window_end


def resize_batch(
    start_version: int,
    stop_version: int,
    current_version: int,
    max_batch_size: Optional[int],
    window_start: Optional[time],
    window_end: Optional[time],
    now: datetime,
) -> int:
    """Return the stop version to capture up to, honouring ``max_batch_size`` outside the ignore window."""

    if not max_batch_size or stop_version - start_version <= max_batch_size:
        return stop_version
    if in_ignore_window(window_start, window_end, now):
        logger.debug("Inside the batch size ignore window, capturing up to %s", current_version)
        return current_version
    return start_version + max_batch_size
