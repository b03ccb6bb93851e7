"""
Transfer Protocol Codec

Design Decision: Wire Format
============================

Options Considered:
1. Pure JSON - Easy to debug, but binary chunk data needs base64 (+33%)
2. Protocol Buffers - Compact, typed, requires compilation
3. MessagePack - Compact, but one more dependency for seven messages
4. Length-prefixed JSON header + raw binary payload

Decision: JSON header with a 4-byte length prefix, payload appended raw
- Same framing idea as a stream protocol, but one message per datagram
- Chunk payloads travel without re-encoding
- Headers stay human readable in packet captures

Message Format (one datagram):
```
+--------------------+----------------+----------------+
| Header length (4B) | Header (JSON)  | Payload (bin)  |
+--------------------+----------------+----------------+

Header JSON:
{
    "type": "MANIFEST" | "NEGOTIATION_ACK" | "DATA_CHUNK" | ...,
    "version": 1,
    "transfer_id": "...",
    ...message fields...
}
```

The message set is closed: every datagram decodes to exactly one of the
dataclasses below or raises ProtocolError. Sessions dispatch on the
concrete class.
"""

import json
import logging
import struct
from dataclasses import MISSING, dataclass, fields
from enum import Enum
from typing import ClassVar, Dict, Type, Union

from ..errors import ProtocolError
from ..file.chunker import Chunk
from ..file.manifest import TransferManifest

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1

# Largest payload a UDP datagram can carry over IPv4
MAX_DATAGRAM_SIZE = 65507

_LENGTH = struct.Struct('>I')

OUTCOME_COMPLETED = 'completed'
OUTCOME_FAILED = 'failed'


class MessageType(Enum):
    """Transfer protocol message types."""
    # Negotiation
    MANIFEST = "MANIFEST"
    NEGOTIATION_ACK = "NEGOTIATION_ACK"

    # Data
    DATA_CHUNK = "DATA_CHUNK"
    CHUNK_ACK = "CHUNK_ACK"
    CHUNK_NACK = "CHUNK_NACK"

    # Control
    TRANSFER_DONE = "TRANSFER_DONE"
    CANCEL = "CANCEL"


@dataclass(frozen=True)
class Manifest:
    """Client -> server: begin or resume negotiation."""
    TYPE: ClassVar[MessageType] = MessageType.MANIFEST

    transfer_id: str
    file_name: str
    size: int
    chunk_size: int
    total_chunks: int
    file_hash: str
    algorithm: str = 'sha256'

    @classmethod
    def from_manifest(cls, manifest: TransferManifest) -> 'Manifest':
        return cls(**manifest.to_dict())

    def to_manifest(self) -> TransferManifest:
        return TransferManifest(
            transfer_id=self.transfer_id,
            file_name=self.file_name,
            size=self.size,
            chunk_size=self.chunk_size,
            total_chunks=self.total_chunks,
            file_hash=self.file_hash,
            algorithm=self.algorithm,
        )


@dataclass(frozen=True)
class NegotiationAck:
    """Server -> client: accept (with resume point) or reject."""
    TYPE: ClassVar[MessageType] = MessageType.NEGOTIATION_ACK

    transfer_id: str
    accepted: bool
    resume_cursor: int = 0
    reason: str = ""


@dataclass(frozen=True)
class DataChunk:
    """Client -> server: one chunk of file data."""
    TYPE: ClassVar[MessageType] = MessageType.DATA_CHUNK

    transfer_id: str
    index: int
    checksum: str
    payload: bytes = b''

    @classmethod
    def from_chunk(cls, transfer_id: str, chunk: Chunk) -> 'DataChunk':
        return cls(
            transfer_id=transfer_id,
            index=chunk.index,
            checksum=chunk.checksum,
            payload=chunk.payload,
        )

    def to_chunk(self) -> Chunk:
        return Chunk(index=self.index, payload=self.payload, checksum=self.checksum)


@dataclass(frozen=True)
class ChunkAck:
    """
    Server -> client: chunk ``index`` is durably written.

    ``cursor`` is the first index the receiver does not have yet, so every
    index below it counts as acknowledged even if its own ack was lost.
    """
    TYPE: ClassVar[MessageType] = MessageType.CHUNK_ACK

    transfer_id: str
    index: int
    cursor: int = 0


@dataclass(frozen=True)
class ChunkNack:
    """Server -> client: checksum mismatch, please resend."""
    TYPE: ClassVar[MessageType] = MessageType.CHUNK_NACK

    transfer_id: str
    index: int
    reason: str = ""


@dataclass(frozen=True)
class TransferDone:
    """Server -> client: final verification result."""
    TYPE: ClassVar[MessageType] = MessageType.TRANSFER_DONE

    transfer_id: str
    outcome: str
    reason: str = ""
    detail: str = ""

    @property
    def completed(self) -> bool:
        return self.outcome == OUTCOME_COMPLETED


@dataclass(frozen=True)
class Cancel:
    """Either direction: abort the transfer."""
    TYPE: ClassVar[MessageType] = MessageType.CANCEL

    transfer_id: str
    reason: str = ""


Message = Union[Manifest, NegotiationAck, DataChunk, ChunkAck, ChunkNack,
                TransferDone, Cancel]

MESSAGE_CLASSES: Dict[MessageType, Type] = {
    cls.TYPE: cls
    for cls in (Manifest, NegotiationAck, DataChunk, ChunkAck, ChunkNack,
                TransferDone, Cancel)
}


def encode_message(message: Message) -> bytes:
    """Serialize a message into one datagram."""
    header = {
        'type': message.TYPE.value,
        'version': PROTOCOL_VERSION,
    }
    payload = b''

    for f in fields(message):
        value = getattr(message, f.name)
        if f.type is bytes:
            payload = value
        else:
            header[f.name] = value

    header_bytes = json.dumps(header, separators=(',', ':')).encode('utf-8')
    data = _LENGTH.pack(len(header_bytes)) + header_bytes + payload

    if len(data) > MAX_DATAGRAM_SIZE:
        raise ProtocolError(
            f"{message.TYPE.value} message is {len(data)} bytes, "
            f"datagram limit is {MAX_DATAGRAM_SIZE}"
        )

    return data


def decode_message(data: bytes) -> Message:
    """
    Parse one datagram.

    Raises:
        ProtocolError: truncated, oversized, wrong version, unknown type,
            missing or mistyped fields
    """
    if len(data) > MAX_DATAGRAM_SIZE:
        raise ProtocolError(f"Datagram too large: {len(data)} bytes")
    if len(data) < _LENGTH.size:
        raise ProtocolError("Datagram too small to hold a header")

    header_length = _LENGTH.unpack_from(data)[0]
    header_end = _LENGTH.size + header_length
    if header_end > len(data):
        raise ProtocolError(f"Header length {header_length} exceeds datagram")

    try:
        header = json.loads(data[_LENGTH.size:header_end].decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Malformed header: {e}") from e

    if not isinstance(header, dict):
        raise ProtocolError("Header is not an object")

    version = header.get('version')
    if version != PROTOCOL_VERSION:
        raise ProtocolError(f"Version mismatch: expected {PROTOCOL_VERSION}, got {version}")

    try:
        msg_type = MessageType(header.get('type'))
    except ValueError:
        raise ProtocolError(f"Unknown message type: {header.get('type')!r}") from None

    cls = MESSAGE_CLASSES[msg_type]
    payload = data[header_end:]
    kwargs = {}
    carries_payload = False

    for f in fields(cls):
        if f.type is bytes:
            kwargs[f.name] = payload
            carries_payload = True
            continue

        if f.name not in header:
            if f.default is MISSING:
                raise ProtocolError(f"{msg_type.value} is missing field {f.name!r}")
            continue

        value = header[f.name]
        if not _matches(value, f.type):
            raise ProtocolError(
                f"{msg_type.value}.{f.name} must be {f.type.__name__}, got {value!r}"
            )
        kwargs[f.name] = value

    if payload and not carries_payload:
        raise ProtocolError(f"{msg_type.value} does not carry a payload")

    return cls(**kwargs)


def _matches(value, expected: type) -> bool:
    # bool is an int subclass; keep the two apart on the wire
    if expected is bool:
        return isinstance(value, bool)
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool) and value >= 0
    return isinstance(value, expected)
