from __future__ import annotations

import pytest

from changerelay.schemas import TColumn, TableConf
from changerelay.store import build_capture_sql


def _orders(**kwargs) -> TableConf:
    columns = (TColumn("OrderId", True), TColumn("Notes"), TColumn("Amount"))
    return TableConf(name="Orders", **kwargs).with_columns(columns)


def test_capture_sql_takes_keys_from_change_table() -> None:
    sql = build_capture_sql(_orders(), "Sales", "SalesCT", "tblCTOrders_3")

    assert sql.startswith("SELECT CT.[OrderId],P.[Notes],P.[Amount], CT.SYS_CHANGE_VERSION, CT.SYS_CHANGE_OPERATION")
    assert "INTO [SalesCT].[dbo].[tblCTOrders_3]" in sql
    assert "CHANGETABLE(CHANGES [Sales].[dbo].[Orders], :start_version) CT" in sql
    assert "ON P.[OrderId] = CT.[OrderId]" in sql
    assert sql.endswith("AND (CT.SYS_CHANGE_OPERATION = 'D' OR P.[OrderId] IS NOT NULL)")


def test_capture_sql_applies_shorten_modifier() -> None:
    table = _orders(column_modifiers=[{"column_name": "notes", "length": 100}])

    sql = build_capture_sql(table, "Sales", "SalesCT", "tblCTOrders_3")

    assert "LEFT(CAST(P.[Notes] AS NVARCHAR(MAX)),100) as 'Notes'" in sql


def test_capture_sql_requires_primary_key() -> None:
    table = TableConf(name="Orders").with_columns([TColumn("Notes")])

    with pytest.raises(ValueError):
        build_capture_sql(table, "Sales", "SalesCT", "tblCTOrders_3")
