"""Tests for ReplayBuffer and InboundTracker."""

from __future__ import annotations

import pytest

from pocket_agent_core.protocol import AgentOutput, build_envelope
from pocket_agent_core.replay import InboundTracker, InboundVerdict, ReplayBuffer


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def envelope(msg_id: int):
    return build_envelope(AgentOutput(text=str(msg_id)), project_id="p1", msg_id=msg_id)


def fill(buffer: ReplayBuffer, count: int) -> None:
    for msg_id in range(buffer.last_id + 1, buffer.last_id + 1 + count):
        buffer.append(envelope(msg_id))


class TestReplayBuffer:
    """Tests for ReplayBuffer."""

    def test_replay_after(self):
        """Test everything strictly after the given id is returned in order."""
        buffer = ReplayBuffer()
        fill(buffer, 5)

        result = buffer.replay_after(2)

        assert not result.full_resync
        assert [env.id for env in result.envelopes] == [3, 4, 5]

    def test_replay_up_to_date(self):
        """Test a client at the last id gets nothing."""
        buffer = ReplayBuffer()
        fill(buffer, 3)

        result = buffer.replay_after(3)

        assert result.envelopes == ()
        assert not result.full_resync

    def test_no_history_needs_resync(self):
        """Test None means full resync."""
        assert ReplayBuffer().replay_after(None).full_resync

    def test_ahead_needs_resync(self):
        """Test an id beyond the last sent id means full resync."""
        buffer = ReplayBuffer()
        fill(buffer, 2)

        assert buffer.replay_after(5).full_resync

    def test_count_bound(self):
        """Test the oldest entries are evicted past max_messages."""
        buffer = ReplayBuffer(max_messages=3)
        fill(buffer, 6)

        assert len(buffer) == 3
        assert buffer.first_id == 4
        assert buffer.replay_after(2).full_resync
        assert [env.id for env in buffer.replay_after(3).envelopes] == [4, 5, 6]

    def test_age_bound(self):
        """Test entries older than max_age are evicted."""
        clock = FakeClock()
        buffer = ReplayBuffer(max_messages=None, max_age=10, clock=clock)
        fill(buffer, 2)
        clock.now = 5
        fill(buffer, 2)
        clock.now = 12

        assert buffer.first_id == 3
        assert buffer.replay_after(1).full_resync
        assert [env.id for env in buffer.replay_after(2).envelopes] == [3, 4]

    def test_ids_must_increase(self):
        """Test out-of-order appends are refused."""
        buffer = ReplayBuffer()
        fill(buffer, 2)

        with pytest.raises(ValueError):
            buffer.append(envelope(2))

    def test_clear_keeps_counter(self):
        """Test clear forgets entries but ids keep increasing."""
        buffer = ReplayBuffer()
        fill(buffer, 3)

        buffer.clear()

        assert len(buffer) == 0
        assert buffer.last_id == 3
        assert buffer.replay_after(1).full_resync
        assert buffer.replay_after(3).envelopes == ()

    @pytest.mark.parametrize("kwargs", [{"max_messages": 0}, {"max_age": -1}])
    def test_invalid_bounds(self, kwargs):
        """Test non-positive bounds are rejected."""
        with pytest.raises(ValueError):
            ReplayBuffer(**kwargs)


class TestInboundTracker:
    """Tests for InboundTracker."""

    def test_in_order(self):
        """Test consecutive ids advance the watermark."""
        tracker = InboundTracker()

        assert tracker.accept(1) is InboundVerdict.ACCEPT
        assert tracker.accept(2) is InboundVerdict.ACCEPT
        assert tracker.watermark == 2

    def test_duplicate(self):
        """Test ids at or below the watermark are duplicates."""
        tracker = InboundTracker(watermark=4)

        assert tracker.accept(4) is InboundVerdict.DUPLICATE
        assert tracker.accept(1) is InboundVerdict.DUPLICATE
        assert tracker.watermark == 4

    def test_gap(self):
        """Test a skipped id is a gap and does not move the watermark."""
        tracker = InboundTracker()
        tracker.accept(1)

        assert tracker.accept(3) is InboundVerdict.GAP
        assert tracker.watermark == 1
