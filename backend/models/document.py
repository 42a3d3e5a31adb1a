"""Document model: one JSON document per logical store key."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class Document(SQLModel, table=True):
    __tablename__ = "kv_document"

    key: str = Field(primary_key=True, max_length=128)  # e.g. "trading_config"
    value: Any = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
