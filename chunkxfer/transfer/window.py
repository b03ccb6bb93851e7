"""
Sliding Window Flow Control

Design Decision: Retransmission Strategy
========================================

Options Considered:
1. Stop-and-wait - One chunk in flight, trivially correct, slow
2. Go-Back-N - Window of W, one timer, resend the whole window on loss
3. Selective repeat - Window of W, one timer per chunk, resend only
   what timed out

Decision: Selective repeat
- Acks may arrive in any order and are accepted individually
- A lost chunk costs one resend, not W
- Each outstanding chunk keeps its own send time and retry counter
- A resend reuses the chunk's existing window slot

Retry policy: fixed interval T by default. With backoff_factor > 1 the
n-th resend waits T * backoff_factor**n instead. A chunk that has been
resent max_retries times and times out again fails the session.

This module is pure bookkeeping: it never touches the network or the
disk, and takes its clock as a parameter so tests can drive time.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from ..errors import ChunkRetryExhausted

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class OutstandingChunk:
    """A chunk that was sent and is not acknowledged yet."""
    index: int
    sent_at: float
    retries: int = 0


class FlowController:
    """
    Bounds the number of unacknowledged chunks per session.

    Invariant: outstanding is a subset of (sent - acknowledged).
    """

    def __init__(self, total_chunks: int, window_size: int = 16,
                 retransmit_timeout: float = 0.5, max_retries: int = 5,
                 backoff_factor: float = 1.0, start: int = 0,
                 clock: Clock = time.monotonic):
        """
        Args:
            total_chunks: Number of chunks in the transfer
            window_size: Maximum chunks in flight (W)
            retransmit_timeout: Seconds before an unacked chunk is resent (T)
            max_retries: Resends allowed per chunk (R)
            backoff_factor: Multiplier applied per resend, 1.0 for fixed interval
            start: Resume cursor; chunks below it are already acknowledged
            clock: Monotonic time source
        """
        if window_size < 1:
            raise ValueError("window_size must be at least 1")

        self.total_chunks = total_chunks
        self.window_size = window_size
        self.retransmit_timeout = retransmit_timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self._clock = clock

        start = max(0, min(start, total_chunks))
        self.acknowledged: Set[int] = set(range(start))
        self.outstanding: Dict[int, OutstandingChunk] = {}
        self.highest_sent = start - 1
        self._next_index = start

        # Statistics
        self.chunks_sent = 0
        self.retransmits = 0
        self.last_progress = clock()

    # === State ===

    @property
    def is_complete(self) -> bool:
        return len(self.acknowledged) == self.total_chunks

    @property
    def in_flight(self) -> int:
        return len(self.outstanding)

    @property
    def has_capacity(self) -> bool:
        return len(self.outstanding) < self.window_size

    @property
    def cursor(self) -> int:
        """First index not acknowledged (highest contiguous + 1)."""
        cursor = 0
        while cursor in self.acknowledged:
            cursor += 1
        return cursor

    def timeout_for(self, retries: int) -> float:
        return self.retransmit_timeout * (self.backoff_factor ** retries)

    # === Sending ===

    def next_index(self) -> Optional[int]:
        """Next chunk to send for the first time, or None if the window is full."""
        if not self.has_capacity:
            return None

        while self._next_index < self.total_chunks:
            index = self._next_index
            if index not in self.acknowledged and index not in self.outstanding:
                return index
            self._next_index += 1

        return None

    def mark_sent(self, index: int):
        """Record the first transmission of a chunk."""
        if index in self.acknowledged or index in self.outstanding:
            return
        self.outstanding[index] = OutstandingChunk(index=index, sent_at=self._clock())
        self.highest_sent = max(self.highest_sent, index)
        self.chunks_sent += 1
        if index == self._next_index:
            self._next_index += 1

    # === Acknowledgments ===

    def acknowledge(self, index: int) -> bool:
        """
        Record an ack. Duplicate and out-of-order acks are fine.

        Returns:
            True if this ack was new
        """
        if index < 0 or index >= self.total_chunks or index in self.acknowledged:
            return False

        self.acknowledged.add(index)
        self.outstanding.pop(index, None)
        self.last_progress = self._clock()
        return True

    def acknowledge_through(self, cursor: int) -> int:
        """Acknowledge every index below ``cursor``. Returns how many were new."""
        new = 0
        for index in range(min(cursor, self.total_chunks)):
            if self.acknowledge(index):
                new += 1
        return new

    def negative_acknowledge(self, index: int) -> Optional[int]:
        """
        The receiver rejected a chunk; resend it now.

        Returns:
            The index to resend, or None if it is not outstanding

        Raises:
            ChunkRetryExhausted: the chunk has no retries left
        """
        entry = self.outstanding.get(index)
        if entry is None:
            return None
        self._charge_retry(entry)
        return index

    # === Timers ===

    def expired(self, now: Optional[float] = None) -> List[int]:
        """
        Collect chunks whose retransmission timer ran out.

        Each returned chunk is charged one retry and its timer restarted.

        Raises:
            ChunkRetryExhausted: a chunk ran out of retries
        """
        now = self._clock() if now is None else now
        due = [
            entry for entry in self.outstanding.values()
            if now - entry.sent_at >= self.timeout_for(entry.retries)
        ]

        for entry in sorted(due, key=lambda e: e.index):
            self._charge_retry(entry, now)

        return [entry.index for entry in sorted(due, key=lambda e: e.index)]

    def next_deadline(self) -> Optional[float]:
        """Earliest time an outstanding chunk will be due for resend."""
        if not self.outstanding:
            return None
        return min(
            entry.sent_at + self.timeout_for(entry.retries)
            for entry in self.outstanding.values()
        )

    def _charge_retry(self, entry: OutstandingChunk, now: Optional[float] = None):
        if entry.retries >= self.max_retries:
            raise ChunkRetryExhausted(
                f"Chunk {entry.index} unacknowledged after {entry.retries} retransmissions",
                index=entry.index,
            )
        entry.retries += 1
        entry.sent_at = self._clock() if now is None else now
        self.retransmits += 1
        logger.debug(f"Retransmitting chunk {entry.index} (attempt {entry.retries + 1})")
