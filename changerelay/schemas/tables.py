from __future__ import annotations

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from changerelay.schemas.batches import TColumn

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_$#@]*$")


class ColumnModifierType(str, Enum):
    SHORTEN_FIELD = "ShortenField"


class ColumnModifier(BaseModel):
    type: ColumnModifierType = ColumnModifierType.SHORTEN_FIELD
    column_name: str
    length: int = Field(..., ge=1)


class TableConf(BaseModel):
    """Static replication settings for one table, plus its live column list once resolved."""

    name: str
    schema_name: str = "dbo"
    stop_on_error: bool = False
    column_list: Optional[list[str]] = Field(
        default=None,
        description="Optional allow-list of replicated columns. When unset every column is replicated.",
    )
    column_modifiers: list[ColumnModifier] = Field(default_factory=list)
    record_history_table: bool = False
    columns: tuple[TColumn, ...] = ()

    @field_validator("name", "schema_name")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        if not _IDENTIFIER.match(value):
            raise ValueError(f"Invalid SQL identifier: {value!r}")
        return value

    @model_validator(mode="after")
    def _validate_modifiers(self) -> TableConf:
        seen: set[str] = set()
        for modifier in self.column_modifiers:
            key = modifier.column_name.lower()
            if key in seen:
                raise ValueError(f"{modifier.column_name} has multiple modifiers, which is not supported")
            seen.add(key)
        return self

    @property
    def full_name(self) -> str:
        return f"{self.schema_name}.{self.name}"

    @property
    def primary_keys(self) -> list[str]:
        return [column.name for column in self.columns if column.is_pk]

    def allows_column(self, column_name: str) -> bool:
        if self.column_list is None:
            return True
        lowered = column_name.lower()
        return any(item.lower() == lowered for item in self.column_list)

    def modifier_for(self, column_name: str) -> ColumnModifier | None:
        lowered = column_name.lower()
        for modifier in self.column_modifiers:
            if modifier.column_name.lower() == lowered:
                return modifier
        return None

    def with_columns(self, columns) -> TableConf:
        return self.model_copy(update={"columns": tuple(columns)})


def find_table(tables, name: str) -> TableConf | None:
    lowered = name.lower()
    for table in tables:
        if table.name.lower() == lowered:
            return table
    return None
