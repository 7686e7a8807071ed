from __future__ import annotations

import threading

import pytest

from changerelay.schemas import TableConf
from changerelay.services.workers import TableFailuresError, run_per_table


def test_run_per_table_collects_results_by_name() -> None:
    tables = [TableConf(name="Orders"), TableConf(name="Customers"), TableConf(name="Invoices")]

    results = run_per_table(tables, lambda table: len(table.name), max_threads=2)

    assert results == {"Orders": 6, "Customers": 9, "Invoices": 8}


def test_run_per_table_with_no_tables() -> None:
    assert run_per_table([], lambda table: 1) == {}


def test_failing_table_contributes_default() -> None:
    def _work(table: TableConf) -> int:
        if table.name == "Customers":
            raise RuntimeError("timeout")
        return 1

    results = run_per_table([TableConf(name="Orders"), TableConf(name="Customers")], _work, default=0)

    assert results == {"Orders": 1, "Customers": 0}


def test_stop_on_error_failures_raise_after_all_tables_finish() -> None:
    finished = []
    lock = threading.Lock()

    def _work(table: TableConf) -> str:
        if table.name != "Orders":
            raise ValueError(f"{table.name} is broken")
        with lock:
            finished.append(table.name)
        return table.name

    tables = [
        TableConf(name="Customers", stop_on_error=True),
        TableConf(name="Orders"),
        TableConf(name="Invoices", stop_on_error=True),
    ]

    with pytest.raises(TableFailuresError) as excinfo:
        run_per_table(tables, _work, max_threads=1, label="Capture changes")

    assert finished == ["Orders"]
    assert sorted(excinfo.value.failures) == ["Customers", "Invoices"]
    assert str(excinfo.value).startswith("Capture changes failed for 2 table(s)")
