"""Test the sliding window flow controller"""

import pytest

from chunkxfer.errors import ChunkRetryExhausted
from chunkxfer.transfer.window import FlowController


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def fill(flow):
    sent = []
    while True:
        index = flow.next_index()
        if index is None:
            return sent
        flow.mark_sent(index)
        sent.append(index)


class TestWindow:
    """Test window bookkeeping"""

    def test_never_more_than_window_outstanding(self):
        flow = FlowController(total_chunks=10, window_size=3, clock=FakeClock())

        assert fill(flow) == [0, 1, 2]
        assert flow.in_flight == 3
        assert flow.next_index() is None

        flow.acknowledge(1)
        assert fill(flow) == [3]
        assert flow.in_flight == 3

    def test_out_of_order_and_duplicate_acks(self):
        flow = FlowController(total_chunks=4, window_size=4, clock=FakeClock())
        fill(flow)

        assert flow.acknowledge(3) is True
        assert flow.acknowledge(3) is False
        assert flow.cursor == 0
        assert flow.acknowledge(0) is True
        assert flow.cursor == 1
        assert flow.acknowledge(17) is False

    def test_acknowledge_through_cursor(self):
        flow = FlowController(total_chunks=5, window_size=5, clock=FakeClock())
        fill(flow)

        assert flow.acknowledge_through(3) == 3
        assert flow.acknowledge_through(3) == 0
        assert sorted(flow.outstanding) == [3, 4]

    def test_start_cursor_skips_prefix(self):
        flow = FlowController(total_chunks=6, window_size=10, start=4, clock=FakeClock())

        assert fill(flow) == [4, 5]
        assert flow.acknowledged == {0, 1, 2, 3}

    def test_complete(self):
        flow = FlowController(total_chunks=2, clock=FakeClock())
        fill(flow)
        flow.acknowledge(0)
        assert not flow.is_complete
        flow.acknowledge(1)
        assert flow.is_complete

    def test_empty_transfer_is_complete(self):
        flow = FlowController(total_chunks=0, clock=FakeClock())
        assert flow.is_complete
        assert flow.next_index() is None

    def test_rejects_zero_window(self):
        with pytest.raises(ValueError):
            FlowController(total_chunks=1, window_size=0)


class TestRetransmission:
    """Test timers and the retry budget"""

    def test_expired_chunks_are_resent(self):
        clock = FakeClock()
        flow = FlowController(total_chunks=3, window_size=3, retransmit_timeout=0.5,
                              clock=clock)
        fill(flow)
        flow.acknowledge(1)

        clock.advance(0.4)
        assert flow.expired() == []

        clock.advance(0.1)
        assert flow.expired() == [0, 2]
        assert flow.retransmits == 2
        assert flow.outstanding[0].retries == 1

    def test_next_deadline(self):
        clock = FakeClock()
        flow = FlowController(total_chunks=2, retransmit_timeout=0.5, clock=clock)
        assert flow.next_deadline() is None

        fill(flow)
        assert flow.next_deadline() == pytest.approx(0.5)

    def test_retry_budget_exhausted(self):
        clock = FakeClock()
        flow = FlowController(total_chunks=1, retransmit_timeout=1.0, max_retries=2,
                              clock=clock)
        fill(flow)

        for _ in range(2):
            clock.advance(1.0)
            assert flow.expired() == [0]

        clock.advance(1.0)
        with pytest.raises(ChunkRetryExhausted) as exc_info:
            flow.expired()
        assert exc_info.value.index == 0

    def test_backoff_stretches_timeouts(self):
        clock = FakeClock()
        flow = FlowController(total_chunks=1, retransmit_timeout=1.0, backoff_factor=2.0,
                              clock=clock)
        fill(flow)

        clock.advance(1.0)
        assert flow.expired() == [0]

        clock.advance(1.5)
        assert flow.expired() == []
        clock.advance(0.5)
        assert flow.expired() == [0]

    def test_nack_charges_a_retry(self):
        flow = FlowController(total_chunks=2, max_retries=1, clock=FakeClock())
        fill(flow)

        assert flow.negative_acknowledge(0) == 0
        assert flow.negative_acknowledge(5) is None
        with pytest.raises(ChunkRetryExhausted):
            flow.negative_acknowledge(0)

    def test_ack_clears_progress_timer(self):
        clock = FakeClock()
        flow = FlowController(total_chunks=2, clock=clock)
        fill(flow)

        clock.advance(3.0)
        flow.acknowledge(0)
        assert flow.last_progress == 3.0
