"""Bounded per-table fan-out used by every agent phase."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Callable, Optional, Sequence, TypeVar

from changerelay.schemas import TableConf

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TableFailuresError(RuntimeError):
    """Raised after a phase when one or more stop-on-error tables failed."""

    def __init__(self, label: str, failures: dict[str, BaseException]) -> None:
        self.label = label
        self.failures = dict(failures)
        details = "; ".join(f"{name}: {exc}" for name, exc in self.failures.items())
        super().__init__(f"{label} failed for {len(self.failures)} table(s): {details}")


def run_per_table(
    tables: Sequence[TableConf],
    fn: Callable[[TableConf], T],
    *,
    max_threads: Optional[int] = None,
    label: str = "table operation",
    default: Optional[T] = None,
) -> dict[str, Optional[T]]:
    """Run ``fn`` for every table on a bounded thread pool and collect results by table name.

    A failing table that is not ``stop_on_error`` is logged and contributes ``default``.
    Failures of stop-on-error tables are raised together as :class:`TableFailuresError`
    once every worker has finished.
    """

    results: dict[str, Optional[T]] = {}
    failures: dict[str, BaseException] = {}
    lock = Lock()
    if not tables:
        return results

    def _run(table: TableConf) -> None:
        try:
            value = fn(table)
        except Exception as exc:  # noqa: B902
            if table.stop_on_error:
                logger.error("%s failed for %s: %s", label, table.full_name, exc)
                with lock:
                    failures[table.name] = exc
                    results[table.name] = default
                return
            logger.exception("%s failed for %s, continuing without it", label, table.full_name)
            value = default
        with lock:
            results[table.name] = value

    workers = max_threads or len(tables)
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(tables))), thread_name_prefix="changerelay") as executor:
        for future in [executor.submit(_run, table) for table in tables]:
            future.result()

    if failures:
        raise TableFailuresError(label, failures)
    return results
