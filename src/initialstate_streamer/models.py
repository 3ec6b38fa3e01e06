from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from initialstate_common.logging import setup_logging

log = setup_logging("initialstate.streamer")

RATE_LIMIT_HEADER = "X-RateLimit-Limit"
RATE_LIMIT_REMAINING_HEADER = "X-RateLimit-Remaining"
RATE_LIMIT_RESET_HEADER = "X-RateLimit-Reset"


class CreateBucketStatus(str, Enum):
    """Outcome of a bucket creation request."""

    SUCCESS = "success"
    ALREADY_EXISTS = "already_exists"
    ERROR = "error"

    @classmethod
    def from_status_code(cls, status_code: int) -> "CreateBucketStatus":
        if status_code == httpx.codes.CREATED:
            return cls.SUCCESS
        if status_code == httpx.codes.NO_CONTENT:
            return cls.ALREADY_EXISTS
        return cls.ERROR

    @property
    def accepted(self) -> bool:
        return self is not CreateBucketStatus.ERROR


class BucketRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bucket_key: str = Field(..., min_length=1, alias="bucketKey")
    bucket_name: Optional[str] = Field(None, alias="bucketName")

    def as_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _header_int(headers: Mapping[str, str], name: str) -> Optional[int]:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        log.warning("rate_limit_header_malformed header=%s value=%r", name, raw)
        return None


def _epoch_to_local(seconds: int) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).astimezone()
    except (OverflowError, OSError, ValueError):
        log.warning("rate_limit_reset_out_of_range value=%s", seconds)
        return None


class StreamResponse(BaseModel):
    """Result of an events flush, including the rate-limit window."""

    success: bool
    status_code: int
    rate_limit: int = 0
    rate_limit_remaining: int = 0
    rate_limit_reset: Optional[datetime] = None
    events_sent: int = 0

    @classmethod
    def from_http(cls, response: httpx.Response, events_sent: int = 0) -> "StreamResponse":
        """
        Build a response descriptor from an events POST.

        Rate-limit headers are best-effort: absent or non-numeric values
        leave the matching field at its default instead of failing.
        """
        headers = response.headers
        reset_epoch = _header_int(headers, RATE_LIMIT_RESET_HEADER)
        return cls(
            success=response.status_code == httpx.codes.NO_CONTENT,
            status_code=response.status_code,
            rate_limit=_header_int(headers, RATE_LIMIT_HEADER) or 0,
            rate_limit_remaining=_header_int(headers, RATE_LIMIT_REMAINING_HEADER) or 0,
            rate_limit_reset=_epoch_to_local(reset_epoch) if reset_epoch is not None else None,
            events_sent=events_sent,
        )
