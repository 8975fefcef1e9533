"""Relay transport session over an aiohttp websocket.

Decodes the NIP-01 message envelope only; event content is left to the
extractors. Connection failures surface as RelayConnectionError, mid-stream
failures as TransportError. No reconnection happens here.
"""

from __future__ import annotations

import asyncio
import json
import secrets
from dataclasses import dataclass
from typing import Any, Protocol, Union, runtime_checkable

import aiohttp
import bittensor as bt
from pydantic import ValidationError

from relayaudit.auditor.errors import MalformedFrame, RelayConnectionError, TransportError
from relayaudit.ledger.models import RawEvent, RelayFilter


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventFrame:
    subscription_id: str
    event: RawEvent


@dataclass(frozen=True)
class EndOfStoredEvents:
    subscription_id: str


@dataclass(frozen=True)
class Notice:
    text: str


@dataclass(frozen=True)
class ClosedFrame:
    """Relay closed a subscription on its side (NIP-01 CLOSED)."""

    subscription_id: str
    message: str = ""


@dataclass(frozen=True)
class UnknownFrame:
    label: str


Frame = Union[EventFrame, EndOfStoredEvents, Notice, ClosedFrame, UnknownFrame]


def decode_frame(text: str | bytes) -> Frame:
    """Decode one inbound relay message.

    Raises:
        MalformedFrame: payload is not JSON, not a labelled array, or an
            EVENT whose event object fails validation.
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedFrame(f"not json: {e}") from e

    if not isinstance(data, list) or not data or not isinstance(data[0], str):
        raise MalformedFrame("expected a labelled array")

    label = data[0]
    if label == "EVENT":
        if len(data) < 3 or not isinstance(data[1], str) or not isinstance(data[2], dict):
            raise MalformedFrame("EVENT needs a subscription id and an event object")
        try:
            event = RawEvent.model_validate(data[2])
        except ValidationError as e:
            raise MalformedFrame(f"invalid event: {e.error_count()} errors") from e
        return EventFrame(subscription_id=data[1], event=event)

    if label == "EOSE":
        if len(data) < 2 or not isinstance(data[1], str):
            raise MalformedFrame("EOSE needs a subscription id")
        return EndOfStoredEvents(subscription_id=data[1])

    if label == "NOTICE":
        return Notice(text=str(data[1]) if len(data) > 1 else "")

    if label == "CLOSED":
        if len(data) < 2 or not isinstance(data[1], str):
            raise MalformedFrame("CLOSED needs a subscription id")
        return ClosedFrame(
            subscription_id=data[1],
            message=str(data[2]) if len(data) > 2 else "",
        )

    return UnknownFrame(label=label)


def encode_req(subscription_id: str, relay_filter: RelayFilter) -> str:
    return json.dumps(["REQ", subscription_id, relay_filter.to_wire()])


def encode_close(subscription_id: str) -> str:
    return json.dumps(["CLOSE", subscription_id])


def new_subscription_id() -> str:
    return secrets.token_hex(8)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@runtime_checkable
class Session(Protocol):
    """What the pagination controller needs from a relay connection."""

    async def subscribe(self, relay_filter: RelayFilter) -> str:
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        ...

    async def next_frame(self) -> Frame:
        ...

    async def close(self) -> None:
        ...


class RelaySession:
    """One websocket connection to a relay endpoint."""

    def __init__(
        self,
        endpoint: str,
        http: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        receive_timeout: float | None = None,
    ):
        self.endpoint = endpoint
        self._http = http
        self._ws = ws
        self._receive_timeout = receive_timeout
        self._closed = False

    @classmethod
    async def open(
        cls,
        endpoint: str,
        connect_timeout: float = 10.0,
        receive_timeout: float | None = 30.0,
    ) -> RelaySession:
        """Connect to a relay.

        Raises:
            RelayConnectionError: endpoint unreachable or handshake failed.
        """
        http = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=connect_timeout),
        )
        try:
            ws = await asyncio.wait_for(
                http.ws_connect(endpoint, autoping=True, heartbeat=None),
                timeout=connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            await http.close()
            raise RelayConnectionError(f"cannot connect to {endpoint}: {e!r}") from e

        bt.logging.info({"relay_session": {"status": "connected", "endpoint": endpoint}})
        return cls(endpoint, http, ws, receive_timeout=receive_timeout)

    async def _send(self, payload: str) -> None:
        try:
            await self._ws.send_str(payload)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise TransportError(f"send failed: {e!r}") from e

    async def subscribe(self, relay_filter: RelayFilter) -> str:
        sub_id = new_subscription_id()
        payload = encode_req(sub_id, relay_filter)
        bt.logging.debug({"relay_session": {"send": payload}})
        await self._send(payload)
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        await self._send(encode_close(subscription_id))

    async def next_frame(self) -> Frame:
        """Wait for the next decodable message.

        Raises:
            TransportError: connection closed, errored, or timed out.
            MalformedFrame: message arrived but could not be decoded.
        """
        try:
            msg = await self._ws.receive(timeout=self._receive_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"no frame within {self._receive_timeout}s from {self.endpoint}"
            ) from e

        if msg.type == aiohttp.WSMsgType.TEXT:
            return decode_frame(msg.data)
        if msg.type == aiohttp.WSMsgType.BINARY:
            return decode_frame(msg.data)
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise TransportError(f"websocket error: {self._ws.exception()!r}")
        raise TransportError(f"connection closed by {self.endpoint} ({msg.type.name})")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        finally:
            await self._http.close()
        bt.logging.debug({"relay_session": {"status": "closed", "endpoint": self.endpoint}})


async def open_session(
    endpoint: str,
    connect_timeout: float = 10.0,
    receive_timeout: float | None = 30.0,
) -> Session:
    """Default session factory used by RelaySync."""
    return await RelaySession.open(
        endpoint, connect_timeout=connect_timeout, receive_timeout=receive_timeout,
    )


__all__ = [
    "ClosedFrame",
    "EndOfStoredEvents",
    "EventFrame",
    "Frame",
    "Notice",
    "RelaySession",
    "Session",
    "UnknownFrame",
    "decode_frame",
    "encode_close",
    "encode_req",
    "new_subscription_id",
    "open_session",
]
