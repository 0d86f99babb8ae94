from __future__ import annotations

import logging
import socket
import threading
import time
from collections.abc import Callable
from enum import StrEnum

from mctrl.errors import (
    AuthFailure,
    NotConnected,
    ProtocolError,
    RconConnectionError,
    RconError,
    RconTimeout,
)
from mctrl.rcon.codec import Packet, PacketReader, PacketType, encode

logger = logging.getLogger(__name__)

MAX_REQUEST_ID = 2**31 - 1
AUTH_FAILED_ID = -1
_RECV_SIZE = 8192

Connector = Callable[[tuple[str, int], float], socket.socket]


class ConnectionState(StrEnum):
    disconnected = "disconnected"
    connecting = "connecting"
    authenticating = "authenticating"
    ready = "ready"
    faulted = "faulted"


def _default_connector(address: tuple[str, int], timeout: float) -> socket.socket:
    return socket.create_connection(address, timeout=timeout)


class RconSession:
    """One authenticated RCON connection with a single in-flight command slot.

    Contract:
      - `execute` never queues: a call made while another command is running fails
        with `NotConnected(busy=True)` and the caller decides when to retry.
      - every response is terminated by an empty sentinel command sent right after
        the real one; fragments for the real request id are concatenated until the
        sentinel's echo arrives.
      - any socket error, framing error, or timeout leaves the session FAULTED with
        the socket closed. The next `connect`/`execute` starts over with a fresh
        request id sequence.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        password: str,
        connect_timeout: float = 5.0,
        connector: Connector | None = None,
    ) -> None:
        self.host = host
        self.port = int(port)
        self._password = password
        self.connect_timeout = connect_timeout
        self._connector = connector or _default_connector

        self._slot = threading.Lock()
        self._sock: socket.socket | None = None
        self._reader = PacketReader()
        self._state = ConnectionState.disconnected
        self._next_id = 1
        self._in_flight: int | None = None
        self._close_requested = False

    def __repr__(self) -> str:
        return f"RconSession(host={self.host!r}, port={self.port}, state={self._state.value})"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def address(self) -> tuple[str, int]:
        return (self.host, self.port)

    @property
    def in_flight(self) -> int | None:
        return self._in_flight

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.ready

    def connect(self) -> None:
        """(Re)open the connection and authenticate.

        Raises `AuthFailure` on a wrong password, `RconConnectionError` when the
        server can't be reached and `NotConnected(busy=True)` while a command runs.
        """

        if not self._slot.acquire(blocking=False):
            raise NotConnected("Cannot reconnect while a command is in flight", busy=True)
        try:
            self._connect_locked()
        finally:
            self._release()

    def execute(self, command: str, timeout: float) -> str:
        if not self._slot.acquire(blocking=False):
            raise NotConnected("Another RCON command is in flight", busy=True)
        try:
            if self._state is not ConnectionState.ready:
                self._connect_locked()
            return self._execute_locked(command, timeout)
        finally:
            self._release()

    def close(self) -> None:
        """Close the connection.

        While a command is in flight the socket belongs to it; the close happens
        as soon as that command returns.
        """

        if not self._slot.acquire(blocking=False):
            self._close_requested = True
            # The holder may have released between the two checks.
            if not self._slot.acquire(blocking=False):
                return
        try:
            self._close_locked()
        finally:
            self._slot.release()

    def __enter__(self) -> RconSession:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # --- internals ---------------------------------------------------------

    def _release(self) -> None:
        if self._close_requested:
            self._close_locked()
        self._slot.release()

    def _close_locked(self) -> None:
        self._close_requested = False
        self._close_socket()
        self._state = ConnectionState.disconnected

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise NotConnected("RCON session has no open connection")
        return self._sock

    def _allocate_id(self) -> int:
        request_id = self._next_id
        self._next_id = 1 if request_id >= MAX_REQUEST_ID else request_id + 1
        return request_id

    def _close_socket(self) -> None:
        sock, self._sock = self._sock, None
        self._reader = PacketReader()
        if sock is None:
            return
        try:
            sock.close()
        except OSError:
            # Nothing useful to do with a close failure on a connection we're dropping.
            pass

    def _fault(self, reason: object) -> None:
        logger.warning("RCON session %s:%s faulted: %s", self.host, self.port, reason)
        self._close_socket()
        self._state = ConnectionState.faulted

    def _read_packet(self, deadline: float) -> Packet:
        sock = self._require_socket()
        while True:
            packet = self._reader.next_packet()
            if packet is not None:
                return packet
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RconTimeout("Timed out waiting for the RCON response")
            sock.settimeout(remaining)
            chunk = sock.recv(_RECV_SIZE)
            if not chunk:
                raise RconConnectionError("Connection closed by the server")
            self._reader.feed(chunk)

    def _connect_locked(self) -> None:
        self._close_socket()
        self._next_id = 1
        self._state = ConnectionState.connecting

        try:
            sock = self._connector(self.address, self.connect_timeout)
        except OSError as e:
            self._state = ConnectionState.faulted
            raise RconConnectionError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        self._sock = sock
        self._state = ConnectionState.authenticating
        auth_id = self._allocate_id()
        deadline = time.monotonic() + self.connect_timeout

        try:
            sock.sendall(encode(self._password, auth_id, PacketType.AUTH))
            while True:
                packet = self._read_packet(deadline)
                if packet.request_id == AUTH_FAILED_ID:
                    raise AuthFailure()
                if packet.request_id == auth_id:
                    # Type 0 or 2 depending on the server. A Source-style second
                    # reply for the same id is dropped later as a stray packet.
                    break
                raise ProtocolError(
                    f"Expected auth response for request {auth_id}, got request id {packet.request_id}"
                )
        except AuthFailure:
            self._close_socket()
            self._state = ConnectionState.disconnected
            logger.error("RCON authentication to %s:%s failed", self.host, self.port)
            raise
        except RconError as e:
            self._fault(e)
            raise
        except TimeoutError as e:
            self._fault(e)
            raise RconTimeout("Timed out waiting for the RCON auth response") from e
        except OSError as e:
            self._fault(e)
            raise RconConnectionError(f"Lost connection during RCON auth: {e}") from e

        self._state = ConnectionState.ready
        logger.info("RCON session to %s:%s is ready", self.host, self.port)

    def _execute_locked(self, command: str, timeout: float) -> str:
        request_id = self._allocate_id()
        sentinel_id = self._allocate_id()
        # Encoding errors (oversized command) don't touch the connection.
        request = encode(command, request_id, PacketType.COMMAND)
        sentinel = encode("", sentinel_id, PacketType.COMMAND)

        sock = self._require_socket()
        self._in_flight = request_id
        deadline = time.monotonic() + timeout
        chunks: list[bytes] = []

        try:
            sock.sendall(request)
            sock.sendall(sentinel)
            while True:
                packet = self._read_packet(deadline)
                if packet.request_id == request_id:
                    if packet.type is not PacketType.RESPONSE_VALUE:
                        raise ProtocolError(
                            f"Expected a response packet for request {request_id}, got type {packet.type.name}"
                        )
                    chunks.append(packet.payload)
                elif packet.request_id == sentinel_id:
                    break
                elif packet.request_id == AUTH_FAILED_ID:
                    raise AuthFailure("Server rejected the command: session is not authenticated")
                else:
                    logger.debug("Dropping stray RCON packet with request id %s", packet.request_id)
        except RconError as e:
            self._fault(e)
            raise
        except TimeoutError as e:
            self._fault(e)
            raise RconTimeout(f"RCON command timed out after {timeout}s") from e
        except OSError as e:
            self._fault(e)
            raise RconConnectionError(f"Lost Minecraft server connection: {e}") from e
        finally:
            self._in_flight = None

        return b"".join(chunks).decode("utf-8", errors="replace")
