# mcsupervisor/services/packet_codec.py
"""
Minecraft Status Protocol Codec

Handles:
- VarInt encoding/decoding (Server List Ping framing)
- Handshake and status-request packets
- Streaming accumulation of the status response
- RakNet Unconnected Ping / Pong packets (Bedrock)
"""

import struct
from dataclasses import dataclass
from typing import Optional

VARINT_MAX_BYTES = 5
UINT32_MAX = 0xFFFFFFFF

PACKET_ID_HANDSHAKE = 0x00
PACKET_ID_STATUS = 0x00
PROTOCOL_VERSION_ANY = -1
NEXT_STATE_STATUS = 1

UNCONNECTED_PING = 0x01
UNCONNECTED_PONG = 0x1C
RAKNET_MAGIC = bytes.fromhex("00ffff00fefefefefdfdfdfd12345678")

# Guard against absurd length prefixes from misbehaving peers
MAX_STATUS_PACKET_SIZE = 2 * 1024 * 1024


class ProtocolError(Exception):
    """Base class for wire decode failures."""


class MalformedVarInt(ProtocolError):
    pass


class IncompletePacket(ProtocolError):
    """Raised when the buffer holds fewer bytes than the frame declares."""


def encode_varint(value: int) -> bytes:
    """Encode an unsigned 32-bit integer, 7 bits per byte, low group first."""
    if value < 0:
        raise ValueError(f"VarInt value must be non-negative, got {value}")
    if value > UINT32_MAX:
        raise ValueError(f"VarInt value out of uint32 range: {value}")

    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode a VarInt at ``offset``. Returns ``(value, new_offset)``."""
    value = 0
    for i in range(VARINT_MAX_BYTES):
        pos = offset + i
        if pos >= len(data):
            raise IncompletePacket("Buffer ended inside a VarInt")
        byte = data[pos]
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return value & UINT32_MAX, pos + 1
    raise MalformedVarInt(f"VarInt longer than {VARINT_MAX_BYTES} bytes")


def encode_string(text: str) -> bytes:
    raw = text.encode("utf-8")
    return encode_varint(len(raw)) + raw


def _frame(payload: bytes) -> bytes:
    return encode_varint(len(payload)) + payload


def build_handshake_packet(host: str, port: int) -> bytes:
    """Handshake with next-state = status. Protocol -1 means 'any version'."""
    payload = (
        encode_varint(PACKET_ID_HANDSHAKE)
        + encode_varint(PROTOCOL_VERSION_ANY & UINT32_MAX)
        + encode_string(host)
        + struct.pack(">H", port)
        + encode_varint(NEXT_STATE_STATUS)
    )
    return _frame(payload)


def build_status_request_packet() -> bytes:
    return _frame(encode_varint(PACKET_ID_STATUS))


def decode_status_response(buffer: bytes) -> tuple[int, str, int]:
    """
    Decode one framed status response.

    Returns ``(packet_id, json_text, consumed_bytes)``. Raises
    IncompletePacket if the buffer does not yet hold the whole frame; the
    caller should keep reading and retry with the grown buffer.
    """
    length, offset = decode_varint(buffer, 0)
    if length > MAX_STATUS_PACKET_SIZE:
        raise ProtocolError(f"Status packet too large: {length} bytes")
    end = offset + length
    if len(buffer) < end:
        raise IncompletePacket(f"Need {end} bytes, have {len(buffer)}")

    packet_id, offset = decode_varint(buffer, offset)
    text_length, offset = decode_varint(buffer, offset)
    if offset + text_length > end:
        raise ProtocolError("Status JSON length exceeds packet length")
    json_text = buffer[offset:offset + text_length].decode("utf-8")
    return packet_id, json_text, end


class StatusResponseReader:
    """Accumulates streamed bytes until a full status packet is available."""

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> Optional[str]:
        """Append ``chunk``; return the JSON payload once complete, else None."""
        self._buffer.extend(chunk)
        try:
            packet_id, json_text, _ = decode_status_response(bytes(self._buffer))
        except IncompletePacket:
            return None
        if packet_id != PACKET_ID_STATUS:
            raise ProtocolError(f"Unexpected packet id 0x{packet_id:02x}")
        return json_text

    @property
    def buffered(self) -> int:
        return len(self._buffer)


# ------------------------------------------------------------------
# Bedrock (RakNet) unconnected ping
# ------------------------------------------------------------------

@dataclass
class UnconnectedPong:
    """Parsed Unconnected Pong reply"""
    ping_id: int
    server_guid: int
    edition: str = ""
    motd: str = ""
    protocol_version: Optional[int] = None
    version_name: str = ""
    players_online: int = 0
    players_max: int = 0
    raw: str = ""


def build_unconnected_ping(timestamp_ms: int, client_guid: int) -> bytes:
    return (
        struct.pack(">BQ", UNCONNECTED_PING, timestamp_ms & 0xFFFFFFFFFFFFFFFF)
        + RAKNET_MAGIC
        + struct.pack(">Q", client_guid & 0xFFFFFFFFFFFFFFFF)
    )


def _to_int(value: str, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_unconnected_pong(data: bytes) -> UnconnectedPong:
    """
    Parse an Unconnected Pong.

    Layout: id(1) ping_id(8) server_guid(8) magic(16) length(2) payload,
    where payload is ``edition;motd;protocol;version;online;max;...``.
    """
    if not data or data[0] != UNCONNECTED_PONG:
        raise ProtocolError("Not an Unconnected Pong")
    header_size = 1 + 8 + 8 + len(RAKNET_MAGIC) + 2
    if len(data) < header_size:
        raise IncompletePacket(f"Pong header needs {header_size} bytes, have {len(data)}")

    ping_id, server_guid = struct.unpack_from(">QQ", data, 1)
    if data[17:33] != RAKNET_MAGIC:
        raise ProtocolError("Pong magic mismatch")
    (length,) = struct.unpack_from(">H", data, 33)
    if len(data) < header_size + length:
        raise IncompletePacket("Pong payload truncated")
    raw = data[header_size:header_size + length].decode("utf-8", errors="replace")

    fields = raw.split(";")
    fields += [""] * (6 - len(fields))
    edition, motd, protocol, version_name, online, maximum = fields[:6]
    return UnconnectedPong(
        ping_id=ping_id,
        server_guid=server_guid,
        edition=edition,
        motd=motd,
        protocol_version=_to_int(protocol, default=None) if protocol else None,
        version_name=version_name,
        players_online=max(0, _to_int(online)),
        players_max=max(0, _to_int(maximum)),
        raw=raw,
    )
