"""
Transfer Errors

Every failure a session can end with has its own exception type. The
``kind`` string is what travels on the wire (``TransferDone.reason``) and what
ends up in a session outcome, so the receiving side can rebuild the same
exception with ``error_for_kind``.

Only ``ChunkCorrupt`` is recoverable: the flow controller answers it with a
retransmission. Everything else terminates the session.
"""

from typing import Dict, Optional, Type


class TransferError(Exception):
    """
    Base exception for all transfer failures.

    Attributes:
        message: Human-readable error description
        kind: Stable name of the failure, used as the outcome reason
        fatal: Whether the error ends the session
        index: Chunk index the error relates to, if any
    """
    kind = "TransferError"
    fatal = True

    def __init__(self, message: str = "", index: Optional[int] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.index = index

    def __str__(self) -> str:
        return self.message


class IOReadError(TransferError):
    """Source file is unreadable or changed since the manifest was computed."""
    kind = "IOReadError"


class IOWriteError(TransferError):
    """Staging artifact could not be written."""
    kind = "IOWriteError"


class ChunkCorrupt(TransferError):
    """Chunk payload does not match its checksum. Recovered by a resend."""
    kind = "ChunkCorrupt"
    fatal = False


class ChunkRetryExhausted(TransferError):
    """A chunk was retransmitted more times than the retry budget allows."""
    kind = "ChunkRetryExhausted"


class WholeFileIntegrityFailure(TransferError):
    """Assembled file hash does not match the manifest hash."""
    kind = "WholeFileIntegrityFailure"


class NegotiationRejected(TransferError):
    """Receiver refused the manifest."""
    kind = "NegotiationRejected"


class TransferTimeout(TransferError):
    """A wait that cannot be recovered by retransmission ran out."""
    kind = "Timeout"


class TransportUnavailable(TransferError):
    """The socket layer failed underneath the session."""
    kind = "TransportUnavailable"


class ProtocolError(TransferError, ValueError):
    """Malformed or unexpected protocol message."""
    kind = "ProtocolError"


_ERRORS_BY_KIND: Dict[str, Type[TransferError]] = {
    cls.kind: cls
    for cls in (
        IOReadError,
        IOWriteError,
        ChunkCorrupt,
        ChunkRetryExhausted,
        WholeFileIntegrityFailure,
        NegotiationRejected,
        TransferTimeout,
        TransportUnavailable,
        ProtocolError,
    )
}


def error_for_kind(kind: str, detail: str = "") -> TransferError:
    """Rebuild an exception from the reason string reported by a peer."""
    cls = _ERRORS_BY_KIND.get(kind, TransferError)
    return cls(detail or kind)
