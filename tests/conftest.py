"""Pytest configuration and fixtures"""

import asyncio
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from chunkxfer.config import Config
from chunkxfer.transfer.protocol import Message, decode_message, encode_message


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def config(temp_dir):
    """Config with short timeouts so failure paths finish quickly"""
    return Config(
        host='127.0.0.1',
        port=0,
        data_dir=temp_dir / 'data',
        chunk_size=4096,
        window_size=4,
        retransmit_timeout=0.05,
        max_retries=5,
        negotiation_timeout=1.0,
        inactivity_timeout=2.0,
        grace_period=0.1,
    )


@pytest.fixture
def make_file(temp_dir):
    """Write a file of random bytes and return its path"""
    def _make(name: str = 'source.bin', size: int = 10_000) -> Path:
        path = temp_dir / 'outbox' / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(os.urandom(size))
        return path
    return _make


class Link:
    """
    In-memory datagram path between a sender and a receiver session.

    Every message goes through the wire codec. ``drop`` and ``mutate``
    see messages in both directions; ``delay`` holds a message back
    for the returned number of seconds.
    """

    def __init__(self, drop: Optional[Callable[[Message], bool]] = None,
                 mutate: Optional[Callable[[Message], Message]] = None,
                 delay: Optional[Callable[[Message], float]] = None,
                 duplicate: bool = False):
        self.drop = drop
        self.mutate = mutate
        self.delay = delay
        self.duplicate = duplicate
        self.sender = None
        self.receiver = None
        self.to_receiver_log: List[Message] = []
        self.to_sender_log: List[Message] = []

    def to_receiver(self, message: Message):
        self.to_receiver_log.append(message)
        self._deliver(message, self.receiver)

    def to_sender(self, message: Message):
        self.to_sender_log.append(message)
        self._deliver(message, self.sender)

    def _deliver(self, message: Message, session):
        if self.drop and self.drop(message):
            return
        if self.mutate:
            message = self.mutate(message)

        message = decode_message(encode_message(message))
        copies = 2 if self.duplicate else 1

        seconds = self.delay(message) if self.delay else 0
        for _ in range(copies):
            if seconds:
                asyncio.get_running_loop().call_later(seconds, session.deliver, message)
            else:
                session.deliver(message)


@pytest.fixture
def link_factory():
    return Link
