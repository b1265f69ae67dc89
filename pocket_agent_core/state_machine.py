"""Per-Project connection state machine.

Transport events and user commands are both inputs to one transition
function. A transport drop alone never leads to ``SHUTDOWN``.

    DISCONNECTED --connect--> CONNECTING --connected--> CONNECTED
    CONNECTING --connect_failed--> DISCONNECTED
    CONNECTED --disconnect--> DISCONNECTING --transport_closed--> DISCONNECTED
    CONNECTED | CONNECTING --shutdown--> SHUTDOWN --terminated--> DISCONNECTED
    any --transport_lost--> DISCONNECTED   (except SHUTDOWN, see below)

A shutdown cannot be cancelled once accepted, so ``transport_lost`` while
in ``SHUTDOWN`` leaves the state alone; only ``terminated`` exits it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

from .errors import InvalidTransition
from .models import ConnectionState

_LOGGER = logging.getLogger(__name__)


class ConnectionEvent(Enum):
    """Inputs to the connection state machine."""

    CONNECT = "connect"
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    DISCONNECT = "disconnect"
    TRANSPORT_CLOSED = "transport_closed"
    SHUTDOWN = "shutdown"
    TERMINATED = "terminated"
    TRANSPORT_LOST = "transport_lost"


_S = ConnectionState
_E = ConnectionEvent

TRANSITIONS: dict[tuple[ConnectionState, ConnectionEvent], ConnectionState] = {
    (_S.DISCONNECTED, _E.CONNECT): _S.CONNECTING,
    (_S.CONNECTING, _E.CONNECTED): _S.CONNECTED,
    (_S.CONNECTING, _E.CONNECT_FAILED): _S.DISCONNECTED,
    (_S.CONNECTED, _E.DISCONNECT): _S.DISCONNECTING,
    (_S.DISCONNECTING, _E.TRANSPORT_CLOSED): _S.DISCONNECTED,
    (_S.CONNECTED, _E.SHUTDOWN): _S.SHUTDOWN,
    (_S.CONNECTING, _E.SHUTDOWN): _S.SHUTDOWN,
    (_S.SHUTDOWN, _E.TERMINATED): _S.DISCONNECTED,
    (_S.DISCONNECTED, _E.TRANSPORT_LOST): _S.DISCONNECTED,
    (_S.CONNECTING, _E.TRANSPORT_LOST): _S.DISCONNECTED,
    (_S.CONNECTED, _E.TRANSPORT_LOST): _S.DISCONNECTED,
    (_S.DISCONNECTING, _E.TRANSPORT_LOST): _S.DISCONNECTED,
    (_S.SHUTDOWN, _E.TRANSPORT_LOST): _S.SHUTDOWN,
}


def next_state(state: ConnectionState, event: ConnectionEvent) -> ConnectionState:
    """Pure transition function.

    Raises:
        InvalidTransition: If ``event`` is not accepted in ``state``.
    """
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(
            f"{event.value} not allowed in state {state.value}"
        ) from None


class ConnectionStateMachine:
    """Holds exactly one ConnectionState for a Project."""

    def __init__(
        self,
        project_id: str,
        initial: ConnectionState = ConnectionState.DISCONNECTED,
    ) -> None:
        self.project_id = project_id
        self._state = initial
        self._listeners: list[Callable[[ConnectionState, ConnectionState], None]] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    def can_apply(self, event: ConnectionEvent) -> bool:
        return (self._state, event) in TRANSITIONS

    def apply(self, event: ConnectionEvent) -> ConnectionState:
        """Apply ``event`` and return the new state.

        Raises:
            InvalidTransition: If the event is not accepted; state is unchanged.
        """
        try:
            new_state = next_state(self._state, event)
        except InvalidTransition as err:
            err.project_id = self.project_id
            raise
        old_state = self._state
        if new_state is not old_state:
            _LOGGER.debug(
                "[%s] State: %s → %s (%s)",
                self.project_id,
                old_state.value,
                new_state.value,
                event.value,
            )
            self._state = new_state
            for listener in list(self._listeners):
                listener(old_state, new_state)
        return new_state

    def on_change(
        self, callback: Callable[[ConnectionState, ConnectionState], None]
    ) -> None:
        """Register a callback receiving ``(old_state, new_state)``."""
        self._listeners.append(callback)
