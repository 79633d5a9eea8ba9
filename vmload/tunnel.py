"""
Port-forward tunnel integrity check.

A session opens the VM's port-forward WebSocket, writes one random payload,
hashes whatever comes back without buffering it, closes the connection once
the expected number of bytes arrived and then decides whether the echo was
byte-exact.
"""

from __future__ import annotations

import asyncio
import enum
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp
from aiohttp import WSMsgType

from .failures import (
    AbnormalClose,
    ByteCountMismatch,
    ConnectFailed,
    ConnectTimeout,
    DigestMismatch,
    FailureReason,
    IdleTimeout,
    TransportError,
)
from .payload import DEFAULT_PAYLOAD_BYTES, TunnelPayload, generate

LOGGER = logging.getLogger("vmload.tunnel")

NORMAL_CLOSURE = 1000
NO_STATUS_RECEIVED = 1005
ABNORMAL_CLOSURE = 1006
DEFAULT_PORT = 22
DEFAULT_WAIT_SECONDS = 60
CONNECT_GRACE_SECONDS = 5.0


class InvalidTransition(RuntimeError):
    """Raised when a session is asked to move backwards in its state machine."""


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    SENDING = "sending"
    RECEIVING = "receiving"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.ERRORED)


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CONNECTING: frozenset({SessionState.OPEN, SessionState.ERRORED}),
    SessionState.OPEN: frozenset(
        {
            SessionState.SENDING,
            SessionState.RECEIVING,
            SessionState.CLOSING,
            SessionState.ERRORED,
        }
    ),
    SessionState.SENDING: frozenset(
        {SessionState.RECEIVING, SessionState.CLOSING, SessionState.ERRORED}
    ),
    SessionState.RECEIVING: frozenset({SessionState.CLOSING, SessionState.ERRORED}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED, SessionState.ERRORED}),
    SessionState.CLOSED: frozenset(),
    SessionState.ERRORED: frozenset(),
}


@dataclass(frozen=True)
class TunnelResult:
    vm_name: str
    state: SessionState
    expected_bytes: int
    bytes_sent: int
    bytes_received: int
    close_code: Optional[int]
    sent_digest: Optional[str]
    received_digest: Optional[str]
    duration_s: float
    failure: Optional[FailureReason]

    @property
    def passed(self) -> bool:
        return self.failure is None and self.state is SessionState.CLOSED


class TunnelSession:
    """One send/echo/verify round trip over a port-forward WebSocket."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str,
        payload_size: int = DEFAULT_PAYLOAD_BYTES,
        vm_name: str = "",
        headers: Optional[dict[str, str]] = None,
        connect_timeout: float = DEFAULT_WAIT_SECONDS + CONNECT_GRACE_SECONDS,
        idle_timeout: Optional[float] = None,
    ) -> None:
        self._session = session
        self._headers = dict(headers or {})
        self._payload_size = payload_size
        self._connect_timeout = connect_timeout
        self._idle_timeout = idle_timeout
        self._digest = hashlib.sha256()

        self.url = url
        self.vm_name = vm_name
        self.state = SessionState.CONNECTING
        self.payload: Optional[TunnelPayload] = None
        self.bytes_sent = 0
        self.bytes_received = 0
        self.close_code: Optional[int] = None
        self.failure: Optional[FailureReason] = None

    async def run(self) -> TunnelResult:
        started = time.monotonic()
        LOGGER.debug("connecting to %s", self.url)

        ws = await self._connect()
        if ws is not None:
            try:
                await self._exchange(ws)
            finally:
                if not ws.closed:
                    await ws.close()
                if self.close_code is None:
                    self.close_code = ws.close_code

        return self._result(time.monotonic() - started)

    async def _open_websocket(self) -> aiohttp.ClientWebSocketResponse:
        return await self._session.ws_connect(
            self.url,
            headers=self._headers,
            autoclose=True,
            max_msg_size=0,
        )

    async def _connect(self) -> Optional[aiohttp.ClientWebSocketResponse]:
        try:
            ws = await asyncio.wait_for(self._open_websocket(), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            self._fail(ConnectTimeout(self._connect_timeout))
            return None
        except aiohttp.WSServerHandshakeError as exc:
            self._fail(ConnectFailed(f"HTTP {exc.status}: {exc.message}"))
            return None
        except (aiohttp.ClientError, OSError) as exc:
            self._fail(ConnectFailed(repr(exc)))
            return None

        self._transition(SessionState.OPEN)
        return ws

    async def _exchange(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        payload = generate(self._payload_size)
        self.payload = payload

        self._transition(SessionState.SENDING)
        try:
            await ws.send_bytes(payload.content)
        except (aiohttp.ClientError, ConnectionError) as exc:
            self._fail(TransportError(repr(exc)))
            return
        self.bytes_sent = payload.size

        while True:
            try:
                msg = await ws.receive(timeout=self._idle_timeout)
            except asyncio.TimeoutError:
                self._fail(IdleTimeout(self._idle_timeout or 0.0))
                return

            if msg.type == WSMsgType.BINARY:
                self._transition(SessionState.RECEIVING)
                self._digest.update(msg.data)
                self.bytes_received += len(msg.data)
                if self.bytes_received >= payload.size:
                    self._transition(SessionState.CLOSING)
                    await ws.close(code=NORMAL_CLOSURE)
                    self._finish(ws.close_code)
                    return
            elif msg.type == WSMsgType.CLOSE:
                # autoclose has already answered the peer's close frame
                self._transition(SessionState.CLOSING)
                # an empty close frame carries no code
                self._finish(msg.data or NO_STATUS_RECEIVED)
                return
            elif msg.type in (WSMsgType.CLOSING, WSMsgType.CLOSED):
                # the connection ended without a close frame
                self._transition(SessionState.CLOSING)
                self._finish(ABNORMAL_CLOSURE)
                return
            elif msg.type == WSMsgType.ERROR:
                self._fail(TransportError(repr(msg.data)))
                return

    def _finish(self, code: Optional[int]) -> None:
        self.close_code = code
        self._transition(SessionState.CLOSED)

        expected = self.payload.size if self.payload else self._payload_size
        if code != NORMAL_CLOSURE:
            self.failure = AbnormalClose(code)
        elif self.bytes_received != expected:
            self.failure = ByteCountMismatch(expected, self.bytes_received)
        elif self.payload is not None and self._digest.hexdigest() != self.payload.digest:
            self.failure = DigestMismatch(self.payload.digest, self._digest.hexdigest())

        LOGGER.debug(
            "tunnel to %s closed with code %s after %d/%d bytes",
            self.vm_name or self.url,
            code,
            self.bytes_received,
            expected,
        )

    def _fail(self, reason: FailureReason) -> None:
        self._transition(SessionState.ERRORED)
        self.failure = reason

    def _transition(self, new_state: SessionState) -> None:
        if new_state is self.state:
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        self.state = new_state

    def _result(self, duration_s: float) -> TunnelResult:
        return TunnelResult(
            vm_name=self.vm_name,
            state=self.state,
            expected_bytes=self._payload_size,
            bytes_sent=self.bytes_sent,
            bytes_received=self.bytes_received,
            close_code=self.close_code,
            sent_digest=self.payload.digest if self.payload else None,
            received_digest=self._digest.hexdigest() if self.bytes_received else None,
            duration_s=duration_s,
            failure=self.failure,
        )


__all__ = [
    "ABNORMAL_CLOSURE",
    "DEFAULT_PORT",
    "DEFAULT_WAIT_SECONDS",
    "CONNECT_GRACE_SECONDS",
    "NORMAL_CLOSURE",
    "NO_STATUS_RECEIVED",
    "InvalidTransition",
    "SessionState",
    "TunnelResult",
    "TunnelSession",
]
