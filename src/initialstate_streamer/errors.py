from __future__ import annotations


class StreamerError(Exception):
    """Base exception for streamer errors."""


class InvalidEventError(StreamerError, ValueError):
    """An absent or non-event item was given to an event buffer."""


class EventIndexError(StreamerError, IndexError):
    """Event buffer index outside the valid range."""


class NotConnectedError(StreamerError, RuntimeError):
    """Operation requires an active bucket session."""


class StreamerClosedError(NotConnectedError):
    """The streamer was shut down and cannot be reused."""


class TransportError(StreamerError):
    """Network failure while talking to the ingestion API."""


class FlushTimeoutError(TransportError):
    """The events request did not complete before its deadline."""


class InvalidCredentialsError(StreamerError, ValueError):
    """Access key or bucket key is missing or empty."""
