"""Outbound replay buffer and inbound ordering for one Project.

Every sequenced outbound envelope is retained (bounded by count and age) so a
reconnecting client can present the last id it processed and receive
everything strictly after it. When that id has already fallen out of
retention the caller must fall back to a full-resync snapshot.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .protocol import Envelope

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplayResult:
    """Outcome of a replay lookup.

    Attributes:
        envelopes: Envelopes to resend, in id order.
        full_resync: True when partial replay is impossible and a fresh
            snapshot must be sent instead.
    """

    envelopes: tuple[Envelope, ...] = ()
    full_resync: bool = False


class ReplayBuffer:
    """Ordered, bounded buffer of outbound envelopes keyed by id.

    Retention is configurable by count (``max_messages``) and by age
    (``max_age`` seconds); either bound may be disabled with None.
    """

    def __init__(
        self,
        *,
        max_messages: int | None = 1000,
        max_age: float | None = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_messages is not None and max_messages <= 0:
            raise ValueError("max_messages must be positive")
        if max_age is not None and max_age <= 0:
            raise ValueError("max_age must be positive")
        self._max_messages = max_messages
        self._max_age = max_age
        self._clock = clock
        self._entries: deque[tuple[float, Envelope]] = deque()
        self._last_id = 0
        # Highest id no longer retained.
        self._floor = 0

    @property
    def last_id(self) -> int:
        return self._last_id

    @property
    def first_id(self) -> int | None:
        self.evict()
        return self._entries[0][1].id if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, envelope: Envelope) -> None:
        """Retain ``envelope``. Ids must be strictly increasing."""
        if envelope.id <= self._last_id:
            raise ValueError(
                f"Envelope id {envelope.id} not after last id {self._last_id}"
            )
        self._entries.append((self._clock(), envelope))
        self._last_id = envelope.id
        self.evict()

    def evict(self) -> int:
        """Drop entries outside retention. Returns the number dropped."""
        dropped = 0
        if self._max_messages is not None:
            while len(self._entries) > self._max_messages:
                self._drop_oldest()
                dropped += 1
        if self._max_age is not None:
            cutoff = self._clock() - self._max_age
            while self._entries and self._entries[0][0] < cutoff:
                self._drop_oldest()
                dropped += 1
        return dropped

    def _drop_oldest(self) -> None:
        _, envelope = self._entries.popleft()
        self._floor = envelope.id

    def replay_after(self, last_seen_id: int | None) -> ReplayResult:
        """Return everything strictly after ``last_seen_id``.

        A ``last_seen_id`` of None (client has no history), one ahead of the
        newest id, or one older than retention yields ``full_resync``.
        """
        self.evict()
        if last_seen_id is None:
            return ReplayResult(full_resync=True)
        if last_seen_id > self._last_id:
            _LOGGER.warning(
                "Client last_seen_id %d is ahead of last sent id %d",
                last_seen_id,
                self._last_id,
            )
            return ReplayResult(full_resync=True)
        if last_seen_id < self._floor:
            return ReplayResult(full_resync=True)
        return ReplayResult(
            envelopes=tuple(env for _, env in self._entries if env.id > last_seen_id)
        )

    def clear(self) -> None:
        """Forget all retained envelopes; ids keep increasing from ``last_id``."""
        self._entries.clear()
        self._floor = self._last_id


class InboundVerdict(Enum):
    """How an inbound sequenced envelope relates to the watermark."""

    ACCEPT = "accept"
    DUPLICATE = "duplicate"
    GAP = "gap"


class InboundTracker:
    """Watermark of the last inbound envelope id processed for a Project.

    Duplicates (id at or below the watermark) are ignored; an id beyond
    watermark + 1 is a gap and is not processed until the missing
    envelopes have been resent.
    """

    def __init__(self, watermark: int = 0) -> None:
        self._watermark = watermark

    @property
    def watermark(self) -> int:
        return self._watermark

    def check(self, msg_id: int) -> InboundVerdict:
        if msg_id <= self._watermark:
            return InboundVerdict.DUPLICATE
        if msg_id > self._watermark + 1:
            return InboundVerdict.GAP
        return InboundVerdict.ACCEPT

    def accept(self, msg_id: int) -> InboundVerdict:
        """Check ``msg_id`` and advance the watermark when it is next in line."""
        verdict = self.check(msg_id)
        if verdict is InboundVerdict.ACCEPT:
            self._watermark = msg_id
        return verdict
