"""Change feed message model."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Table(str, Enum):
    SESSIONS = "chats"
    RUNS = "messages"
    CODERUN_EVENTS = "coderun_events"
    BROWSER_EVENTS = "browser_events"


class ChangeMessage(BaseModel):
    """One row change delivered by the feed (at-least-once, ordered per row id)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event_type: ChangeType = Field(validation_alias=AliasChoices("event_type", "eventType"))
    table: Table
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None

    @field_validator("event_type", mode="before")
    @classmethod
    def _upper(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    @property
    def row_id(self) -> str | None:
        for row in (self.new, self.old):
            if row and row.get("id") is not None:
                return str(row["id"])
        return None


def topic_for(table: Table, *, column: str | None = None, value: str | None = None) -> str:
    """Name a feed topic: a whole table, or the rows matching `column = value`."""

    if column is None:
        return table.value
    if value is None:
        raise ValueError("value is required when filtering on a column")
    return f"{table.value}:{column}=eq.{value}"
