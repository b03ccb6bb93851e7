"""
Datagram Transport

Design Decision: Transport
==========================

Options Considered:
1. TCP stream with framing - Ordered and reliable already, which
   hides the loss the flow controller exists to handle
2. UDP via asyncio.DatagramProtocol - One message per datagram, loss
   and reordering are visible to the session layer

Decision: UDP datagrams
- Message boundaries come for free
- Reliability lives in the sessions (acks, retransmission, resume)
- The endpoint only encodes, decodes and hands off; it never blocks

Undecodable datagrams are logged and dropped. They never reach a
session and never affect one.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .protocol import Message, decode_message, encode_message
from ..errors import ProtocolError, TransportUnavailable

logger = logging.getLogger(__name__)

Address = Tuple[str, int]
MessageHandler = Callable[[Message, Address], None]


@dataclass
class Impairment:
    """
    Simulated network loss on outbound datagrams.

    ``loss_rate`` drops a random fraction; ``drop`` is a predicate for
    deterministic drops in tests.
    """
    loss_rate: float = 0.0
    drop: Optional[Callable[[Message], bool]] = None
    dropped: int = 0

    def should_drop(self, message: Message) -> bool:
        if self.drop is not None and self.drop(message):
            self.dropped += 1
            return True
        if self.loss_rate > 0 and random.random() < self.loss_rate:
            self.dropped += 1
            return True
        return False


class DatagramEndpoint(asyncio.DatagramProtocol):
    """
    UDP protocol handler for transfer messages.

    Incoming datagrams are decoded and passed to ``on_message`` with the
    sender's address. The callback must not block.
    """

    def __init__(self, on_message: MessageHandler,
                 impairment: Optional[Impairment] = None):
        self.on_message = on_message
        self.impairment = impairment
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.closed = asyncio.Event()

        # Statistics
        self.datagrams_sent = 0
        self.datagrams_received = 0
        self.datagrams_rejected = 0

    @property
    def is_open(self) -> bool:
        return self.transport is not None and not self.transport.is_closing()

    @property
    def local_address(self) -> Optional[Address]:
        if self.transport is None:
            return None
        return self.transport.get_extra_info('sockname')[:2]

    def connection_made(self, transport: asyncio.DatagramTransport):
        """Called when the UDP socket is ready."""
        self.transport = transport
        logger.info(f"Transfer endpoint ready on {transport.get_extra_info('sockname')}")

    def connection_lost(self, exc):
        """Called when the socket is closed."""
        if exc:
            logger.warning(f"Transfer endpoint lost: {exc}")
        else:
            logger.debug("Transfer endpoint closed")
        self.closed.set()

    def datagram_received(self, data: bytes, addr: Address):
        try:
            message = decode_message(data)
        except ProtocolError as e:
            self.datagrams_rejected += 1
            logger.warning(f"Dropping datagram from {addr}: {e}")
            return

        self.datagrams_received += 1
        self.on_message(message, addr)

    def error_received(self, exc):
        """Called when a send or receive operation fails (e.g. ICMP unreachable)."""
        logger.debug(f"Transfer endpoint error: {exc}")

    def send(self, message: Message, addr: Address):
        """
        Send one message (fire and forget).

        Raises:
            TransportUnavailable: the socket is closed
            ProtocolError: the message does not fit in a datagram
        """
        if not self.is_open:
            raise TransportUnavailable("Transfer endpoint is closed")

        data = encode_message(message)
        if self.impairment is not None and self.impairment.should_drop(message):
            logger.debug(f"Impairment dropped {message.TYPE.value} to {addr}")
            return

        self.transport.sendto(data, addr)
        self.datagrams_sent += 1

    def close(self):
        if self.transport is not None:
            self.transport.close()


async def open_endpoint(on_message: MessageHandler, host: str = '0.0.0.0',
                        port: int = 0,
                        impairment: Optional[Impairment] = None) -> DatagramEndpoint:
    """
    Bind a UDP endpoint.

    Raises:
        TransportUnavailable: the address cannot be bound
    """
    loop = asyncio.get_running_loop()
    try:
        _, endpoint = await loop.create_datagram_endpoint(
            lambda: DatagramEndpoint(on_message, impairment),
            local_addr=(host, port),
        )
    except OSError as e:
        raise TransportUnavailable(f"Cannot bind {host}:{port}: {e}") from e
    return endpoint
