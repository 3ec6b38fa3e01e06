"""
Buffered event streaming to the Initial State ingestion API.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import httpx

from initialstate_common.logging import setup_logging
from initialstate_common.settings import DEFAULT_API_BASE_URL, Settings, get_settings
from initialstate_streamer.buffer import EventBuffer
from initialstate_streamer.errors import (
    FlushTimeoutError,
    InvalidCredentialsError,
    NotConnectedError,
    StreamerClosedError,
    TransportError,
)
from initialstate_streamer.events import EventRecord
from initialstate_streamer.models import BucketRequest, CreateBucketStatus, StreamResponse

log = setup_logging("initialstate.streamer")

DEFAULT_TIMEOUT_SECONDS = 30.0
CREATE_BUCKET_TIMEOUT_SECONDS = 5.0

BUCKETS_PATH = "buckets"
EVENTS_PATH = "events"

T = TypeVar("T")


def _run_to_completion(coro: Awaitable[T]) -> T:
    """Drive ``coro`` on a private loop, off-thread when one is already running."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


class BaseStreamer:
    """State and wire handling shared by the blocking and async streamers."""

    def __init__(
        self,
        api_base_url: str = DEFAULT_API_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.api_base_url = str(httpx.URL(api_base_url))
        self.timeout_seconds = timeout_seconds
        self.access_key: Optional[str] = None
        self.bucket_key: Optional[str] = None
        self.events = EventBuffer()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def log(self, key: str, value: Any, timestamp: Optional[datetime] = None) -> EventRecord:
        """Append an event to the buffer and return it."""
        event = EventRecord(key, value, timestamp)
        self.events.append(event)
        return event

    def _ensure_open(self) -> None:
        if self._closed:
            raise StreamerClosedError("streamer has been shut down")

    @staticmethod
    def _check_credentials(access_key: Any, bucket_key: Any) -> None:
        for name, value in (("access_key", access_key), ("bucket_key", bucket_key)):
            if not isinstance(value, str) or not value.strip():
                raise InvalidCredentialsError(f"{name} must be a non-empty string")

    def _session_headers(self, access_key: str, bucket_key: str) -> Dict[str, str]:
        return {
            "Accept-Version": "~0",
            "X-Is-AccessKey": access_key,
            "X-Is-BucketKey": bucket_key,
        }

    def _bucket_headers(self, access_key: str) -> Dict[str, str]:
        return {
            "Accept-Version": "~0",
            "X-IS-AccessKey": access_key,
        }

    def _events_payload(self) -> List[Dict[str, str]]:
        return [e.to_wire() for e in self.events]

    def _remember(self, access_key: str, bucket_key: str) -> None:
        self.access_key = access_key
        self.bucket_key = bucket_key

    def _forget(self) -> None:
        self.access_key = None
        self.bucket_key = None

    def _bucket_outcome(
        self, response: httpx.Response, bucket_key: str
    ) -> CreateBucketStatus:
        status = CreateBucketStatus.from_status_code(response.status_code)
        if status.accepted:
            log.info(f"bucket_ready bucket_key={bucket_key} status={status.value}")
        else:
            log.warning(
                "bucket_create_failed bucket_key=%s status=%s",
                bucket_key,
                response.status_code,
            )
        return status

    def _flush_outcome(self, response: httpx.Response, events_sent: int) -> StreamResponse:
        sr = StreamResponse.from_http(response, events_sent=events_sent)
        if sr.success:
            self.events.clear()
            log.debug(
                f"events_flushed count={events_sent} remaining_quota={sr.rate_limit_remaining}"
            )
        else:
            log.warning(
                "events_rejected status=%s buffered=%s", sr.status_code, len(self.events)
            )
        return sr


class Streamer(BaseStreamer):
    """
    Blocking streamer: buffer events, then flush them to a bucket.

    Calls made with a timeout run under a total deadline on a private event
    loop, so ``transport`` (when given) must also implement
    ``httpx.AsyncBaseTransport``; ``httpx.MockTransport`` does.

    Usage:
        with Streamer() as streamer:
            streamer.connect(access_key, bucket_key)
            streamer.log("temperature", 21.5)
            streamer.flush(timeout=10)
    """

    def __init__(
        self,
        api_base_url: str = DEFAULT_API_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(api_base_url, timeout_seconds)
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs: Any) -> "Streamer":
        """
        Build a streamer from settings and attach it to the configured bucket.

        When a bucket name is configured the bucket is created (or adopted)
        first; otherwise the streamer simply connects.
        """
        settings = settings or get_settings()
        streamer = cls(
            api_base_url=settings.api_base_url,
            timeout_seconds=settings.timeout_seconds,
            **kwargs,
        )
        if not settings.has_credentials:
            return streamer
        creds = settings.credentials
        if settings.bucket_name:
            streamer.create_bucket(
                creds.access_key,
                creds.bucket_key,
                settings.bucket_name,
                timeout=settings.create_bucket_timeout_seconds,
            )
        else:
            streamer.connect(creds.access_key, creds.bucket_key)
        return streamer

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _open_client(self, headers: Dict[str, str]) -> httpx.Client:
        self._close_client()
        self._client = httpx.Client(
            base_url=self.api_base_url,
            headers=headers,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )
        return self._client

    def _close_client(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _async_transport(self) -> Optional[httpx.AsyncBaseTransport]:
        if self._transport is None:
            return None
        if not isinstance(self._transport, httpx.AsyncBaseTransport):
            raise TypeError(
                "requests with a deadline need a transport that implements httpx.AsyncBaseTransport"
            )
        return self._transport

    async def _post_before_deadline(
        self, client: httpx.Client, path: str, body: Any, timeout: float
    ) -> httpx.Response:
        # the whole exchange is cancelled when the deadline passes
        async with httpx.AsyncClient(
            base_url=self.api_base_url,
            headers=client.headers,
            timeout=timeout,
            transport=self._async_transport(),
        ) as aclient:
            return await asyncio.wait_for(aclient.post(path, json=body), timeout)

    def connect(self, access_key: str, bucket_key: str) -> None:
        """Start a session bound to ``bucket_key``. No request is made."""
        self._ensure_open()
        self._check_credentials(access_key, bucket_key)
        self._remember(access_key, bucket_key)
        self._open_client(self._session_headers(access_key, bucket_key))
        log.info(f"connected bucket_key={bucket_key} base={self.api_base_url}")

    def create_bucket(
        self,
        access_key: str,
        bucket_key: str,
        bucket_name: Optional[str] = None,
        timeout: float = CREATE_BUCKET_TIMEOUT_SECONDS,
    ) -> CreateBucketStatus:
        """
        Create a bucket, or adopt it when this access key already owns it.

        The request is bounded by ``timeout`` seconds in total. On SUCCESS or
        ALREADY_EXISTS the streamer ends up connected to the bucket. On ERROR
        or a transport failure any previous session and its keys are dropped;
        transport failures raise ``TransportError``.
        """
        self._ensure_open()
        self._check_credentials(access_key, bucket_key)
        body = BucketRequest(bucket_key=bucket_key, bucket_name=bucket_name)
        client = self._open_client(self._bucket_headers(access_key))
        try:
            r = _run_to_completion(
                self._post_before_deadline(client, BUCKETS_PATH, body.as_json_dict(), timeout)
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            self._close_client()
            self._forget()
            log.error("bucket_create_transport_failed bucket_key=%s error=%s", bucket_key, e)
            raise TransportError(f"bucket request failed: {e!r}") from e

        status = self._bucket_outcome(r, bucket_key)
        if status.accepted:
            self.connect(access_key, bucket_key)
        else:
            self._close_client()
            self._forget()
        return status

    def flush(self, timeout: Optional[float] = None) -> Optional[StreamResponse]:
        """
        Send every buffered event in one request.

        Returns None without touching the network when the buffer is empty.
        The buffer is cleared only when the service answers 204. With a
        ``timeout`` (seconds) the request is aborted once that much time has
        passed, whatever phase it is in, and ``FlushTimeoutError`` is raised.
        """
        self._ensure_open()
        if self._client is None:
            raise NotConnectedError("cannot post events: streamer is not connected to a bucket")
        if not self.events:
            return None

        payload = self._events_payload()
        try:
            if timeout is None:
                r = self._client.post(EVENTS_PATH, json=payload)
            else:
                r = _run_to_completion(
                    self._post_before_deadline(self._client, EVENTS_PATH, payload, timeout)
                )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            log.warning("events_flush_timeout count=%s", len(payload))
            raise FlushTimeoutError(f"events request timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            log.error("events_flush_transport_failed count=%s error=%s", len(payload), e)
            raise TransportError(f"events request failed: {e}") from e

        return self._flush_outcome(r, len(payload))

    def close(self) -> None:
        """Drop the session and credentials. Safe to call repeatedly."""
        was_connected = self._client is not None
        self._close_client()
        self._forget()
        if was_connected:
            log.info("disconnected")

    def shutdown(self) -> None:
        """Close and release the buffer; the streamer cannot be reused."""
        if self._closed:
            return
        self.close()
        self.events.clear()
        self._closed = True

    def __enter__(self) -> "Streamer":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()
