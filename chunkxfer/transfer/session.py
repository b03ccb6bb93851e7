"""
Transfer Session State Machine

Design Decision: One Task per Session
=====================================

Options Considered:
1. Callbacks from the socket layer mutate session state directly
   - No queues, but state changes interleave across awaits
2. One worker thread per session
   - Isolation, but threads for what is mostly waiting
3. One asyncio task per session, fed by an inbox queue
   - Each session is a plain sequential coroutine
   - Suspension points are exactly "next message" and "next timer"

Decision: One task per session with an inbox queue
- The router (server or client) only decodes and enqueues
- No two transitions of one session ever run concurrently
- Sessions run in parallel with each other

Phases:
```
INIT -> NEGOTIATING -> TRANSFERRING -> VERIFYING -> COMPLETED
             |               |             |
             +---------------+-------------+--> FAILED
  (any non-terminal phase) ---------------------> CANCELLED
```

Sender: sends the manifest, streams chunks from the resume cursor
under the flow controller, waits for the receiver's verdict.
Receiver: admits the manifest, writes chunks through the reassembler,
verifies and promotes, then lingers for a grace period so late
duplicates get a consistent answer.
"""

import asyncio
import logging
import shutil
import sqlite3
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Set, TYPE_CHECKING

from .protocol import (
    Cancel, ChunkAck, ChunkNack, DataChunk, Manifest, Message,
    NegotiationAck, TransferDone, OUTCOME_COMPLETED, OUTCOME_FAILED,
)
from .window import FlowController
from ..config import Config
from ..errors import (
    ChunkCorrupt, IOWriteError, NegotiationRejected, ProtocolError,
    TransferError, TransferTimeout, TransportUnavailable,
    WholeFileIntegrityFailure, error_for_kind,
)
from ..file.chunker import FileChunker
from ..file.manifest import TransferManifest
from ..file.reassembler import Reassembler
from ..storage.database import (
    STATUS_CANCELLED, STATUS_COMPLETED, STATUS_FAILED, Database,
)

if TYPE_CHECKING:
    from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Session phases."""
    INIT = "init"
    NEGOTIATING = "negotiating"
    TRANSFERRING = "transferring"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED, Phase.CANCELLED})

_TRANSITIONS: Dict[Phase, Set[Phase]] = {
    Phase.INIT: {Phase.NEGOTIATING, Phase.FAILED, Phase.CANCELLED},
    Phase.NEGOTIATING: {Phase.TRANSFERRING, Phase.FAILED, Phase.CANCELLED},
    Phase.TRANSFERRING: {Phase.VERIFYING, Phase.FAILED, Phase.CANCELLED},
    Phase.VERIFYING: {Phase.COMPLETED, Phase.FAILED, Phase.CANCELLED},
}

# Wakes a session waiting on its inbox without delivering a message
_WAKE = object()

SendFunction = Callable[[Message], None]


@dataclass
class TransferOutcome:
    """What the caller that started a transfer gets back."""
    transfer_id: str
    file_name: str
    phase: Phase
    reason: str = ""
    detail: str = ""
    chunks_acknowledged: int = 0
    total_chunks: int = 0
    chunks_sent: int = 0
    retransmits: int = 0
    bytes_transferred: int = 0
    resume_cursor: int = 0
    duration_s: float = 0.0

    @property
    def completed(self) -> bool:
        return self.phase is Phase.COMPLETED

    def to_dict(self) -> dict:
        data = asdict(self)
        data['phase'] = self.phase.value
        return data


ProgressCallback = Callable[['TransferSession'], None]


class TransferSession:
    """
    State shared by both ends of a transfer.

    Subclasses implement ``run()``; everything that changes ``phase``
    goes through ``_transition`` so illegal transitions fail loudly.
    """
    role = "session"

    def __init__(self, manifest: TransferManifest, send: SendFunction,
                 config: Optional[Config] = None,
                 clock: Callable[[], float] = time.monotonic,
                 progress_callback: Optional[ProgressCallback] = None):
        self.manifest = manifest
        self.transfer_id = manifest.transfer_id
        self.config = config or Config()
        self.progress_callback = progress_callback
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.peer = None  # reply address, kept current by the router

        self.phase = Phase.INIT
        self.error: Optional[TransferError] = None
        self.reason = ""
        self.detail = ""
        self.resume_cursor = 0

        self._send_fn = send
        self._clock = clock
        self._cancel_reason: Optional[str] = None
        self.created_at = clock()
        self.finished_at: Optional[float] = None

    # === State ===

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def acknowledged_count(self) -> int:
        return 0

    @property
    def bytes_transferred(self) -> int:
        return 0

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.manifest.total_chunks == 0:
            return 1.0 if self.phase is Phase.COMPLETED else 0.0
        return self.acknowledged_count / self.manifest.total_chunks

    def outcome(self) -> TransferOutcome:
        end = self.finished_at if self.finished_at is not None else self._clock()
        return TransferOutcome(
            transfer_id=self.transfer_id,
            file_name=self.manifest.file_name,
            phase=self.phase,
            reason=self.reason,
            detail=self.detail,
            chunks_acknowledged=self.acknowledged_count,
            total_chunks=self.manifest.total_chunks,
            bytes_transferred=self.bytes_transferred,
            resume_cursor=self.resume_cursor,
            duration_s=max(0.0, end - self.created_at),
        )

    def to_dict(self) -> dict:
        """Status snapshot for the API and CLI."""
        return {
            'transfer_id': self.transfer_id,
            'role': self.role,
            'file_name': self.manifest.file_name,
            'size': self.manifest.size,
            'phase': self.phase.value,
            'chunks_acknowledged': self.acknowledged_count,
            'total_chunks': self.manifest.total_chunks,
            'progress_percent': self.progress * 100,
            'resume_cursor': self.resume_cursor,
            'reason': self.reason,
            'detail': self.detail,
        }

    # === Inputs ===

    def deliver(self, message: Message):
        """Queue a message for this session (called by the router)."""
        self.inbox.put_nowait(message)

    def cancel(self, reason: str = "cancelled"):
        """
        Request cancellation. Takes effect at the session's next check
        point: before the next send, on the next message or timer tick.
        """
        if self.is_terminal or self._cancel_reason is not None:
            return
        self._cancel_reason = reason
        self.inbox.put_nowait(_WAKE)

    async def _next_message(self, timeout: float) -> Optional[Message]:
        """Next inbox message, or None on timeout or wake-up."""
        try:
            item = self.inbox.get_nowait()
        except asyncio.QueueEmpty:
            try:
                item = await asyncio.wait_for(self.inbox.get(), timeout=max(0.0, timeout))
            except asyncio.TimeoutError:
                return None
        if item is _WAKE:
            return None
        return item

    # === Outputs ===

    def _send(self, message: Message):
        self._send_fn(message)

    def _send_quietly(self, message: Message):
        """Send where the session outcome no longer depends on it."""
        try:
            self._send(message)
        except TransportUnavailable as e:
            logger.warning(f"Could not send {type(message).__name__} for "
                           f"{self.transfer_id[:12]}: {e}")

    def _notify_progress(self):
        if self.progress_callback:
            self.progress_callback(self)

    # === Transitions ===

    def _transition(self, phase: Phase):
        allowed = _TRANSITIONS.get(self.phase, set())
        if phase not in allowed:
            raise RuntimeError(
                f"Illegal transition {self.phase.value} -> {phase.value} "
                f"for {self.transfer_id[:12]}"
            )

        logger.info(f"[{self.role} {self.transfer_id[:12]}] "
                    f"{self.phase.value} -> {phase.value}")
        self.phase = phase

        if phase in TERMINAL_PHASES:
            self.finished_at = self._clock()
        self._notify_progress()

    def _fail(self, error: TransferError):
        self.error = error
        self.reason = error.kind
        self.detail = str(error)
        logger.warning(f"[{self.role} {self.transfer_id[:12]}] failed: "
                       f"{error.kind}: {error}")
        self._transition(Phase.FAILED)

    def _cancelled(self, reason: str, notify: bool = True):
        """Move to CANCELLED, telling the peer unless it asked for it."""
        if notify:
            self._send_quietly(Cancel(transfer_id=self.transfer_id, reason=reason))

        self.reason = "cancelled"
        self.detail = reason
        self._transition(Phase.CANCELLED)

    def _check_cancel(self) -> bool:
        if self._cancel_reason is not None and not self.is_terminal:
            self._cancelled(self._cancel_reason)
        return self.is_terminal


class SenderSession(TransferSession):
    """
    Client side of one file transfer.

    ``run()`` drives the whole life cycle and returns the outcome; it
    never raises a TransferError.
    """
    role = "sender"

    def __init__(self, manifest: TransferManifest, source_path: Path,
                 send: SendFunction, config: Optional[Config] = None,
                 chunker: Optional[FileChunker] = None,
                 clock: Callable[[], float] = time.monotonic,
                 progress_callback: Optional[ProgressCallback] = None):
        super().__init__(manifest, send, config, clock, progress_callback)
        self.source_path = Path(source_path)
        self.chunker = chunker or FileChunker(manifest.chunk_size, manifest.algorithm)
        self.flow: Optional[FlowController] = None

        # Statistics
        self.bytes_sent = 0
        self.nacks_received = 0
        self._verdict_received = False

    @property
    def acknowledged_count(self) -> int:
        return len(self.flow.acknowledged) if self.flow else 0

    @property
    def bytes_transferred(self) -> int:
        return self.bytes_sent

    def outcome(self) -> TransferOutcome:
        result = super().outcome()
        if self.flow:
            result.chunks_sent = self.flow.chunks_sent
            result.retransmits = self.flow.retransmits
        return result

    async def run(self) -> TransferOutcome:
        try:
            await self._negotiate()
            if self.phase is Phase.TRANSFERRING:
                await self._transfer()
            if self.phase is Phase.VERIFYING:
                await self._await_verdict()
        except TransferError as e:
            if not self.is_terminal:
                # Receiver keeps its staging file for a later resume
                notify = (self.phase in (Phase.TRANSFERRING, Phase.VERIFYING)
                          and not self._verdict_received)
                self._fail(e)
                if notify:
                    self._send_quietly(Cancel(transfer_id=self.transfer_id,
                                              reason=f"sender failed: {e.kind}"))
        except asyncio.CancelledError:
            if not self.is_terminal:
                self._cancelled("sender task cancelled")
            raise

        return self.outcome()

    # === Negotiation ===

    async def _negotiate(self):
        self._transition(Phase.NEGOTIATING)

        request = Manifest.from_manifest(self.manifest)
        self._send(request)

        deadline = self._clock() + self.config.negotiation_timeout
        next_resend = self._clock() + self.config.retransmit_timeout

        while True:
            if self._check_cancel():
                return

            now = self._clock()
            if now >= deadline:
                raise TransferTimeout(
                    f"No negotiation response within {self.config.negotiation_timeout}s"
                )
            if now >= next_resend:
                logger.debug(f"Resending manifest for {self.transfer_id[:12]}")
                self._send(request)
                next_resend = now + self.config.retransmit_timeout

            reply = await self._next_message(min(deadline, next_resend) - now)
            if reply is None:
                continue

            if isinstance(reply, NegotiationAck):
                if not reply.accepted:
                    raise NegotiationRejected(reply.reason or "rejected by receiver")
                self._start_transfer(reply.resume_cursor)
                return
            elif isinstance(reply, Cancel):
                self._cancelled(reply.reason or "cancelled by receiver", notify=False)
                return
            else:
                logger.debug(f"Ignoring {type(reply).__name__} while negotiating")

    def _start_transfer(self, resume_cursor: int):
        self.resume_cursor = min(resume_cursor, self.manifest.total_chunks)
        self.flow = FlowController(
            total_chunks=self.manifest.total_chunks,
            window_size=self.config.window_size,
            retransmit_timeout=self.config.retransmit_timeout,
            max_retries=self.config.max_retries,
            backoff_factor=self.config.backoff_factor,
            start=self.resume_cursor,
            clock=self._clock,
        )

        if self.resume_cursor:
            logger.info(f"Resuming {self.manifest.file_name} at chunk "
                        f"{self.resume_cursor}/{self.manifest.total_chunks}")
        self._transition(Phase.TRANSFERRING)

    # === Data ===

    async def _transfer(self):
        flow = self.flow

        while True:
            if self._check_cancel():
                return

            await self._fill_window()

            if flow.is_complete:
                self._transition(Phase.VERIFYING)
                return

            now = self._clock()
            idle_deadline = flow.last_progress + self.config.inactivity_timeout
            if now >= idle_deadline:
                self._cancelled(f"no acknowledgment progress for "
                                f"{self.config.inactivity_timeout}s")
                return

            wake_at = idle_deadline
            resend_at = flow.next_deadline()
            if resend_at is not None:
                wake_at = min(wake_at, resend_at)

            message = await self._next_message(wake_at - now)
            if message is None:
                for index in flow.expired():
                    await self._send_chunk(index)
                continue

            await self._on_transfer_message(message)
            if self.is_terminal:
                return

    async def _fill_window(self):
        while True:
            index = self.flow.next_index()
            if index is None:
                return
            await self._send_chunk(index)
            self.flow.mark_sent(index)

    async def _send_chunk(self, index: int):
        # Read from disk every time; nothing is cached between sends
        chunk = await self.chunker.produce(self.source_path, index, self.manifest.size)
        self._send(DataChunk.from_chunk(self.transfer_id, chunk))
        self.bytes_sent += chunk.size

    async def _on_transfer_message(self, message: Message):
        flow = self.flow

        if isinstance(message, ChunkAck):
            new = int(flow.acknowledge(message.index))
            new += flow.acknowledge_through(message.cursor)
            if new:
                self._notify_progress()
        elif isinstance(message, ChunkNack):
            self.nacks_received += 1
            logger.info(f"Chunk {message.index} rejected by receiver: {message.reason}")
            index = flow.negative_acknowledge(message.index)
            if index is not None:
                await self._send_chunk(index)
        elif isinstance(message, TransferDone):
            self._on_verdict(message)
        elif isinstance(message, Cancel):
            self._cancelled(message.reason or "cancelled by receiver", notify=False)
        elif isinstance(message, (NegotiationAck, Manifest, DataChunk)):
            logger.debug(f"Ignoring {type(message).__name__} while transferring")
        else:
            raise ProtocolError(f"Unexpected message {message!r}")

    # === Verification ===

    async def _await_verdict(self):
        """Wait for TransferDone, re-probing the receiver on silence."""
        deadline = self._clock() + self.config.inactivity_timeout

        while True:
            if self._check_cancel():
                return

            now = self._clock()
            if now >= deadline:
                raise TransferTimeout("No verification result from receiver")

            message = await self._next_message(
                min(self.config.retransmit_timeout, deadline - now)
            )
            if message is None:
                if self._cancel_reason is None:
                    await self._probe()
                continue

            if isinstance(message, TransferDone):
                self._on_verdict(message)
                return
            elif isinstance(message, Cancel):
                self._cancelled(message.reason or "cancelled by receiver", notify=False)
                return
            else:
                logger.debug(f"Ignoring {type(message).__name__} while verifying")

    async def _probe(self):
        # A duplicate makes a finished receiver replay its verdict
        if self.manifest.total_chunks:
            await self._send_chunk(self.manifest.total_chunks - 1)
        else:
            self._send(Manifest.from_manifest(self.manifest))

    def _on_verdict(self, done: TransferDone):
        self._verdict_received = True
        if not done.completed:
            raise error_for_kind(done.reason, done.detail)

        if self.flow:
            self.flow.acknowledge_through(self.manifest.total_chunks)
        if self.phase is Phase.TRANSFERRING:
            self._transition(Phase.VERIFYING)
        self._transition(Phase.COMPLETED)


class ReceiverSession(TransferSession):
    """
    Server side of one file transfer.

    Created by the server when a manifest arrives; owns the staging
    artifact until it is promoted, discarded, or left for resumption.
    """
    role = "receiver"

    def __init__(self, manifest: TransferManifest, final_path: Path,
                 send: SendFunction, config: Optional[Config] = None,
                 registry: Optional['SessionRegistry'] = None,
                 clock: Callable[[], float] = time.monotonic,
                 progress_callback: Optional[ProgressCallback] = None):
        super().__init__(manifest, send, config, clock, progress_callback)
        self.final_path = Path(final_path)
        self.registry = registry
        self.database: Optional[Database] = registry.database if registry is not None else None
        self.reassembler: Optional[Reassembler] = None
        self.promoted_path: Optional[Path] = None

        self._verdict: Optional[TransferDone] = None
        self._recorded = False
        self._grace_over = False
        self._last_activity = clock()

        # Statistics
        self.bytes_received = 0
        self.duplicates = 0
        self.corrupt_chunks = 0

    @property
    def acknowledged_count(self) -> int:
        if self.phase is Phase.COMPLETED:
            return self.manifest.total_chunks
        return len(self.reassembler.acknowledged) if self.reassembler else 0

    @property
    def bytes_transferred(self) -> int:
        return self.bytes_received

    def end_grace(self):
        """Stop lingering after a terminal phase."""
        self._grace_over = True
        self.inbox.put_nowait(_WAKE)

    def abort(self, error: TransferError):
        """Fail after an unexpected error in run() and tell the sender."""
        if self.is_terminal:
            return

        negotiated = self.phase in (Phase.TRANSFERRING, Phase.VERIFYING)
        self._fail(error)
        if negotiated:
            self._verdict = TransferDone(
                transfer_id=self.transfer_id, outcome=OUTCOME_FAILED,
                reason=error.kind, detail=str(error),
            )
            self._send_quietly(self._verdict)
        else:
            self._send_quietly(NegotiationAck(
                transfer_id=self.transfer_id, accepted=False, reason=str(error),
            ))

    async def run(self) -> TransferOutcome:
        try:
            first = await self._next_message(self.config.negotiation_timeout)
            if isinstance(first, Manifest):
                await self._negotiate()
            elif not self._check_cancel():
                raise TransferTimeout("No manifest received")

            if self.phase is Phase.TRANSFERRING:
                await self._receive()
            if self.phase is Phase.VERIFYING:
                await self._finish()
        except TransferError as e:
            if not self.is_terminal:
                reported = self.phase in (Phase.TRANSFERRING, Phase.VERIFYING)
                self._fail(e)
                self._verdict = TransferDone(
                    transfer_id=self.transfer_id, outcome=OUTCOME_FAILED,
                    reason=e.kind, detail=str(e),
                )
                if reported:
                    self._send_quietly(self._verdict)
        except asyncio.CancelledError:
            if not self.is_terminal:
                self._cancelled("server shutting down")
            raise
        finally:
            if self.reassembler is not None and self.phase is not Phase.COMPLETED:
                await self.reassembler.close()

        await self._record_terminal()
        await self._linger()
        return self.outcome()

    # === Negotiation ===

    async def _negotiate(self):
        self._transition(Phase.NEGOTIATING)
        manifest = self.manifest

        problems = manifest.problems()
        if problems:
            self._reject("invalid manifest: " + "; ".join(problems))

        record = None
        if self.registry is not None:
            record = await self.registry.resume_record(self.transfer_id)

        acked = record['acked'] if record else []
        staging_path = Path(record['staging_path']) if record else None

        needed = manifest.size
        if staging_path is not None and staging_path.exists():
            needed = 0
        if not self._has_space(needed):
            self._reject("insufficient storage")

        self.reassembler = Reassembler(
            manifest, self.final_path,
            staging_path=staging_path,
            acknowledged=acked,
            backup_suffix=self.config.backup_suffix,
        )
        try:
            kept = await self.reassembler.open()
        except IOWriteError as e:
            self._reject(f"cannot create staging file: {e}")

        await self._db_call('upsert_transfer', manifest,
                            self.reassembler.staging_path, self.final_path)
        self._recorded = self.database is not None
        if not kept:
            await self._db_call('clear_acked_chunks', self.transfer_id)

        self.resume_cursor = self.reassembler.resume_cursor
        self._send(NegotiationAck(
            transfer_id=self.transfer_id, accepted=True,
            resume_cursor=self.resume_cursor,
        ))

        if self.resume_cursor:
            logger.info(f"Resuming {manifest.file_name} from chunk "
                        f"{self.resume_cursor}/{manifest.total_chunks}")
        self._transition(Phase.TRANSFERRING)

        if self.reassembler.is_complete:
            self._transition(Phase.VERIFYING)

    def _reject(self, reason: str):
        logger.info(f"Rejecting {self.manifest.file_name} "
                    f"({self.transfer_id[:12]}): {reason}")
        self._send(NegotiationAck(
            transfer_id=self.transfer_id, accepted=False, reason=reason,
        ))
        raise NegotiationRejected(reason)

    def _has_space(self, needed: int) -> bool:
        target = self.final_path.parent
        while not target.exists() and target != target.parent:
            target = target.parent
        try:
            free = shutil.disk_usage(target).free
        except OSError as e:
            logger.warning(f"Cannot check free space on {target}: {e}")
            return False
        return free >= needed + self.config.min_free_space

    # === Data ===

    async def _receive(self):
        while True:
            if self._check_cancel():
                return

            now = self._clock()
            idle_deadline = self._last_activity + self.config.inactivity_timeout
            if now >= idle_deadline:
                self._cancelled(f"no new chunks for {self.config.inactivity_timeout}s")
                return

            message = await self._next_message(idle_deadline - now)
            if message is None:
                continue

            if isinstance(message, DataChunk):
                await self._on_chunk(message)
                if self.reassembler.is_complete:
                    self._transition(Phase.VERIFYING)
                    return
            elif isinstance(message, Manifest):
                # Our NegotiationAck was lost; answer again
                self._last_activity = self._clock()
                self._send(NegotiationAck(
                    transfer_id=self.transfer_id, accepted=True,
                    resume_cursor=self.reassembler.resume_cursor,
                ))
            elif isinstance(message, Cancel):
                self._cancelled(message.reason or "cancelled by sender", notify=False)
                return
            elif isinstance(message, (NegotiationAck, ChunkAck, ChunkNack, TransferDone)):
                logger.debug(f"Ignoring {type(message).__name__} on receiver")
            else:
                raise ProtocolError(f"Unexpected message {message!r}")

    async def _on_chunk(self, message: DataChunk):
        chunk = message.to_chunk()

        try:
            written = await self.reassembler.accept(chunk)
        except ChunkCorrupt as e:
            self.corrupt_chunks += 1
            logger.info(f"Corrupt chunk {chunk.index} for {self.transfer_id[:12]}, "
                        f"requesting resend")
            self._send(ChunkNack(transfer_id=self.transfer_id, index=chunk.index,
                                 reason=str(e)))
            return
        except ProtocolError as e:
            logger.warning(f"Dropping chunk for {self.transfer_id[:12]}: {e}")
            return

        cursor = self.reassembler.resume_cursor
        if written:
            self.bytes_received += chunk.size
            self._last_activity = self._clock()
            await self._db_call('mark_chunk_acked',
                                self.transfer_id, chunk.index, cursor)
            self._notify_progress()
        else:
            self.duplicates += 1

        self._send(ChunkAck(transfer_id=self.transfer_id, index=chunk.index,
                            cursor=cursor))

    # === Verification ===

    async def _finish(self):
        await self.reassembler.verify()
        self.promoted_path = await self.reassembler.promote()

        logger.info(f"Received {self.manifest.file_name} "
                    f"({self.manifest.size:,} bytes) -> {self.promoted_path}")

        self._verdict = TransferDone(transfer_id=self.transfer_id,
                                     outcome=OUTCOME_COMPLETED)
        self._transition(Phase.COMPLETED)
        self._send_quietly(self._verdict)

    async def _record_terminal(self):
        if not self._recorded:
            return

        if self.phase is Phase.COMPLETED:
            await self._db_call('set_status', self.transfer_id,
                                STATUS_COMPLETED)
        elif isinstance(self.error, WholeFileIntegrityFailure):
            # Staging file is gone, nothing left to resume
            await self._db_call('delete_transfer', self.transfer_id)
        elif self.phase is Phase.FAILED:
            await self._db_call('set_status', self.transfer_id,
                                STATUS_FAILED, f"{self.reason}: {self.detail}")
        elif self.phase is Phase.CANCELLED:
            await self._db_call('set_status', self.transfer_id,
                                STATUS_CANCELLED, self.detail)

    # === Grace period ===

    async def _linger(self):
        """Answer late duplicates until the grace period is over."""
        deadline = self._clock() + self.config.grace_period

        while not self._grace_over:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            message = await self._next_message(remaining)
            if message is not None:
                self._answer_late(message)

    def _answer_late(self, message: Message):
        tid = self.transfer_id

        if self.phase is Phase.COMPLETED:
            total = self.manifest.total_chunks
            if isinstance(message, DataChunk):
                self._send_quietly(ChunkAck(transfer_id=tid, index=message.index, cursor=total))
            elif isinstance(message, Manifest):
                self._send_quietly(NegotiationAck(transfer_id=tid, accepted=True,
                                                  resume_cursor=total))
            else:
                return
            self._send_quietly(self._verdict)
        elif self.phase is Phase.FAILED:
            if isinstance(message, Manifest) and isinstance(self.error, NegotiationRejected):
                self._send_quietly(NegotiationAck(transfer_id=tid, accepted=False,
                                                  reason=str(self.error)))
            elif isinstance(message, (DataChunk, Manifest)) and self._verdict is not None:
                self._send_quietly(self._verdict)
        elif self.phase is Phase.CANCELLED:
            if isinstance(message, DataChunk):
                self._send_quietly(Cancel(transfer_id=tid, reason=self.detail))

    # === Helpers ===

    async def _db_call(self, method_name: str, *args):
        if self.database is None:
            return
        try:
            await getattr(self.database, method_name)(*args)
        except sqlite3.Error as e:
            raise IOWriteError(f"Resume store update failed: {e}") from e
