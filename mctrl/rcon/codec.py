"""RCON packet framing.

Wire format (all integers little-endian)::

    [length:i32][request_id:i32][type:i32][payload...][0x00][0x00]

`length` covers everything after itself. Pure functions, no I/O.
"""

from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass
from enum import IntEnum

from mctrl.errors import MalformedPacket, PayloadTooBig, ProtocolError


class PacketType(IntEnum):
    # Servers answer both commands and auth with code 0 or 2; which one it is
    # depends on the request it answers.
    RESPONSE_VALUE = 0
    COMMAND = 2
    AUTH = 3


AUTH_RESPONSE = PacketType.COMMAND

LENGTH_SIZE = 4
# request id + type + two terminators
PACKET_OVERHEAD = 10
MIN_PACKET_SIZE = PACKET_OVERHEAD
MAX_SERVER_PAYLOAD = 4096
MAX_PACKET_SIZE = MAX_SERVER_PAYLOAD + PACKET_OVERHEAD
MAX_CLIENT_PAYLOAD = 1446

_HEADER = struct.Struct("<iii")
_LENGTH = struct.Struct("<i")


@dataclass(frozen=True, slots=True)
class Packet:
    request_id: int
    type: PacketType
    payload: bytes = b""

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


def encode(command: str | bytes, request_id: int, kind: PacketType) -> bytes:
    payload = command.encode("utf-8") if isinstance(command, str) else bytes(command)
    if request_id < 0:
        raise ProtocolError(f"Expected request id to be at least 0, got: {request_id}")
    if len(payload) > MAX_CLIENT_PAYLOAD:
        raise PayloadTooBig(MAX_CLIENT_PAYLOAD, len(payload))
    length = PACKET_OVERHEAD + len(payload)
    return _HEADER.pack(length, request_id, int(kind)) + payload + b"\x00\x00"


def encode_packet(packet: Packet) -> bytes:
    return encode(packet.payload, packet.request_id, packet.type)


def decode(data: bytes | bytearray | memoryview) -> tuple[Packet, int] | None:
    """Decode one packet from the front of `data`.

    Returns `None` when more bytes are needed, otherwise the packet and the number
    of bytes it occupied. Raises `MalformedPacket` on framing the protocol can't
    produce.
    """

    if len(data) < LENGTH_SIZE:
        return None

    (length,) = _LENGTH.unpack_from(data, 0)
    if not MIN_PACKET_SIZE <= length <= MAX_PACKET_SIZE:
        raise MalformedPacket(
            f"A packet size must be between {MIN_PACKET_SIZE} and {MAX_PACKET_SIZE} bytes long, got: {length}"
        )

    total = LENGTH_SIZE + length
    if len(data) < total:
        return None

    _, request_id, type_code = _HEADER.unpack_from(data, 0)
    try:
        kind = PacketType(type_code)
    except ValueError as e:
        raise MalformedPacket(f"Unknown packet type: {type_code}") from e

    body = bytes(data[_HEADER.size : total])
    if body[-2:] != b"\x00\x00":
        raise MalformedPacket("Missing padding at the end of the packet")

    return Packet(request_id=request_id, type=kind, payload=body[:-2]), total


class PacketReader:
    """Accumulates socket reads and yields complete packets.

    Partial packets stay buffered across `feed` calls.
    """

    def __init__(self) -> None:
        self._buf = bytearray()

    def __len__(self) -> int:
        return len(self._buf)

    def feed(self, chunk: bytes) -> None:
        self._buf.extend(chunk)

    def packets(self) -> Iterator[Packet]:
        while True:
            decoded = decode(self._buf)
            if decoded is None:
                return
            packet, consumed = decoded
            del self._buf[:consumed]
            yield packet

    def next_packet(self) -> Packet | None:
        return next(self.packets(), None)

    def clear(self) -> None:
        self._buf.clear()
