from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import httpx

from initialstate_common.logging import setup_logging
from initialstate_common.settings import DEFAULT_API_BASE_URL, Settings, get_settings
from initialstate_streamer.errors import (
    FlushTimeoutError,
    NotConnectedError,
    TransportError,
)
from initialstate_streamer.models import BucketRequest, CreateBucketStatus, StreamResponse
from initialstate_streamer.streamer import (
    BUCKETS_PATH,
    CREATE_BUCKET_TIMEOUT_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    EVENTS_PATH,
    BaseStreamer,
)

log = setup_logging("initialstate.streamer")


class AsyncStreamer(BaseStreamer):
    """
    Asyncio flavour of ``Streamer``.

    ``flush(timeout)`` bounds the whole request; when the deadline passes the
    request task is cancelled and ``FlushTimeoutError`` is raised.
    """

    def __init__(
        self,
        api_base_url: str = DEFAULT_API_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(api_base_url, timeout_seconds)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    async def from_settings(
        cls, settings: Optional[Settings] = None, **kwargs: Any
    ) -> "AsyncStreamer":
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
            await streamer.create_bucket(
                creds.access_key,
                creds.bucket_key,
                settings.bucket_name,
                timeout=settings.create_bucket_timeout_seconds,
            )
        else:
            await streamer.connect(creds.access_key, creds.bucket_key)
        return streamer

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def _open_client(self, headers: Dict[str, str]) -> httpx.AsyncClient:
        await self._close_client()
        self._client = httpx.AsyncClient(
            base_url=self.api_base_url,
            headers=headers,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )
        return self._client

    async def _close_client(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

    async def connect(self, access_key: str, bucket_key: str) -> None:
        self._ensure_open()
        self._check_credentials(access_key, bucket_key)
        self._remember(access_key, bucket_key)
        await self._open_client(self._session_headers(access_key, bucket_key))
        log.info(f"connected bucket_key={bucket_key} base={self.api_base_url}")

    async def create_bucket(
        self,
        access_key: str,
        bucket_key: str,
        bucket_name: Optional[str] = None,
        timeout: float = CREATE_BUCKET_TIMEOUT_SECONDS,
    ) -> CreateBucketStatus:
        self._ensure_open()
        self._check_credentials(access_key, bucket_key)
        body = BucketRequest(bucket_key=bucket_key, bucket_name=bucket_name)
        client = await self._open_client(self._bucket_headers(access_key))
        try:
            r = await asyncio.wait_for(
                client.post(BUCKETS_PATH, json=body.as_json_dict(), timeout=timeout),
                timeout,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            await self._close_client()
            self._forget()
            log.error("bucket_create_transport_failed bucket_key=%s error=%s", bucket_key, e)
            raise TransportError(f"bucket request failed: {e!r}") from e

        status = self._bucket_outcome(r, bucket_key)
        if status.accepted:
            await self.connect(access_key, bucket_key)
        else:
            await self._close_client()
            self._forget()
        return status

    async def flush(self, timeout: Optional[float] = None) -> Optional[StreamResponse]:
        self._ensure_open()
        if self._client is None:
            raise NotConnectedError("cannot post events: streamer is not connected to a bucket")
        if not self.events:
            return None

        payload = self._events_payload()
        request = self._client.post(
            EVENTS_PATH,
            json=payload,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        try:
            r = await asyncio.wait_for(request, timeout)
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            log.warning("events_flush_timeout count=%s", len(payload))
            raise FlushTimeoutError(f"events request timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            log.error("events_flush_transport_failed count=%s error=%s", len(payload), e)
            raise TransportError(f"events request failed: {e}") from e

        return self._flush_outcome(r, len(payload))

    async def close(self) -> None:
        was_connected = self._client is not None
        await self._close_client()
        self._forget()
        if was_connected:
            log.info("disconnected")

    async def shutdown(self) -> None:
        if self._closed:
            return
        await self.close()
        self.events.clear()
        self._closed = True

    async def __aenter__(self) -> "AsyncStreamer":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()
