from __future__ import annotations

import pytest

from changerelay.schemas import TableConf
from changerelay.store.naming import ChangeTable, ctid_from_table_name


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("tblCTOrders_12", 12),
        ("tblCTOrder_Lines_3", 3),
        ("tblCTSchemaChange_7", 7),
        ("tblCTOrders_slave1", None),
        ("tblCTOrders_History", None),
        ("Orders", None),
        ("_5", None),
    ],
)
def test_ctid_from_table_name(name: str, expected) -> None:
    assert ctid_from_table_name(name) == expected


def test_change_table_names() -> None:
    table = TableConf(name="Orders", schema_name="sales")

    assert ChangeTable.for_batch(table, 4).name == "tblCTOrders_4"
    assert ChangeTable.consolidated(table, "reporting").name == "tblCTOrders_reporting"
    assert ChangeTable.consolidated(table, "reporting", ctid=4).consolidated_name == "tblCTOrders_reporting"
    assert ChangeTable.for_batch(table, 4).history_name == "tblCTOrders_History"
    assert ChangeTable.for_batch(table, 4).schema_name == "sales"


def test_change_table_without_ctid_needs_slave_identifier() -> None:
    with pytest.raises(ValueError):
        ChangeTable("Orders", "dbo").name
