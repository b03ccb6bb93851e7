"""
Transfer Module - Sessions, Flow Control and Wire Protocol

Handles UDP-based chunked file transfers from clients to a server.
"""

from .protocol import (
    Cancel, ChunkAck, ChunkNack, DataChunk, Manifest, MessageType,
    NegotiationAck, TransferDone, decode_message, encode_message,
)
from .window import FlowController
from .session import Phase, ReceiverSession, SenderSession, TransferOutcome
from .registry import SessionRegistry
from .transport import DatagramEndpoint, Impairment, open_endpoint
from .server import TransferServer
from .client import TransferClient

__all__ = [
    'Cancel',
    'ChunkAck',
    'ChunkNack',
    'DataChunk',
    'Manifest',
    'MessageType',
    'NegotiationAck',
    'TransferDone',
    'decode_message',
    'encode_message',
    'FlowController',
    'Phase',
    'ReceiverSession',
    'SenderSession',
    'TransferOutcome',
    'SessionRegistry',
    'DatagramEndpoint',
    'Impairment',
    'open_endpoint',
    'TransferServer',
    'TransferClient',
]
