from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _local_now() -> datetime:
    return datetime.now().astimezone()


class EventRecord(BaseModel):
    """
    One key/value data point destined for an ingestion bucket.

    When ``use_timestamp`` is false the wire form carries no timestamp and the
    service stamps the event with its receipt time.
    """

    model_config = ConfigDict(validate_assignment=True)

    key: str = Field("Status", min_length=1)
    value: str = ":beer:"
    timestamp: datetime = Field(default_factory=_local_now)
    use_timestamp: bool = False

    def __init__(
        self,
        key: str = "Status",
        value: Any = ":beer:",
        timestamp: Optional[datetime] = None,
        **data: Any,
    ) -> None:
        if timestamp is not None:
            data["timestamp"] = timestamp
        super().__init__(key=key, value=value, **data)

    @model_validator(mode="before")
    @classmethod
    def _flag_explicit_timestamp(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("timestamp") is not None:
            data.setdefault("use_timestamp", True)
        return data

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, v: Any) -> str:
        if v is None:
            raise ValueError("value must be representable as text")
        return v if isinstance(v, str) else str(v)

    @field_validator("timestamp")
    @classmethod
    def _localize(cls, v: datetime) -> datetime:
        # naive values are local wall-clock time
        return v.astimezone() if v.tzinfo is None else v

    @property
    def iso8601(self) -> str:
        return self.timestamp.isoformat(timespec="milliseconds")

    def to_wire(self) -> Dict[str, str]:
        """Return the ingestion API representation of this event."""
        doc = {"key": self.key, "value": self.value}
        if self.use_timestamp:
            doc["iso8601"] = self.iso8601
        return doc

    def to_json(self) -> str:
        return json.dumps(self.to_wire())

    def __str__(self) -> str:
        return f"Key: {self.key}, Value: {self.value}, Timestamp: {self.timestamp}"
