"""Agent adapter boundary.

The adapter wraps the actual coding-agent process. The session core talks
to it only through this interface:

- commands and permission decisions flow OUT of the core to the adapter
- agent output, permission requests and progress events flow IN through
  registered callbacks

Adapters translate only; they never decide ordering, buffering or
permission policy, which stay in the core.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from .models import PermissionPolicy
from .protocol import AgentOutput, CloneProgress, PermissionRequestPayload, ProgressEvent

_LOGGER = logging.getLogger(__name__)

OutputCallback = Callable[[str, AgentOutput], Awaitable[None] | None]
PermissionCallback = Callable[[str, PermissionRequestPayload], Awaitable[None] | None]
ProgressCallback = Callable[[str, ProgressEvent], Awaitable[None] | None]
CloneProgressCallback = Callable[[CloneProgress], Awaitable[None] | None]


async def _invoke(callback: Callable[..., Awaitable[None] | None], *args: object) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class AgentAdapter(ABC):
    """Base class for agent adapters.

    Subclasses implement the outbound operations and call the ``_emit_*``
    helpers for inbound traffic, in the order the agent produced it.
    """

    def __init__(self) -> None:
        self._output_callbacks: list[OutputCallback] = []
        self._permission_callbacks: list[PermissionCallback] = []
        self._progress_callbacks: list[ProgressCallback] = []

    # -------------------------------------------------------------------------
    # Inbound registration
    # -------------------------------------------------------------------------

    def on_agent_output(self, callback: OutputCallback) -> None:
        """Register callback receiving ``(project_id, AgentOutput)``."""
        self._output_callbacks.append(callback)

    def on_permission_request(self, callback: PermissionCallback) -> None:
        """Register callback receiving ``(project_id, PermissionRequestPayload)``."""
        self._permission_callbacks.append(callback)

    def on_progress_event(self, callback: ProgressCallback) -> None:
        """Register callback receiving ``(project_id, ProgressEvent)``."""
        self._progress_callbacks.append(callback)

    async def _emit_output(self, project_id: str, output: AgentOutput) -> None:
        for callback in list(self._output_callbacks):
            try:
                await _invoke(callback, project_id, output)
            except Exception as err:
                _LOGGER.exception("[%s] Agent output callback error: %s", project_id, err)

    async def _emit_permission_request(
        self, project_id: str, request: PermissionRequestPayload
    ) -> None:
        for callback in list(self._permission_callbacks):
            try:
                await _invoke(callback, project_id, request)
            except Exception as err:
                _LOGGER.exception(
                    "[%s] Permission request callback error: %s", project_id, err
                )

    async def _emit_progress_event(self, project_id: str, event: ProgressEvent) -> None:
        for callback in list(self._progress_callbacks):
            try:
                await _invoke(callback, project_id, event)
            except Exception as err:
                _LOGGER.exception("[%s] Progress event callback error: %s", project_id, err)

    # -------------------------------------------------------------------------
    # Outbound operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def check_reachable(self, project_id: str) -> bool:
        """Return True when the agent for ``project_id`` can accept work."""

    @abstractmethod
    async def send_command(self, project_id: str, text: str) -> None:
        """Forward prompt text or a shell command to the agent.

        Raises:
            AgentUnreachable: If the agent cannot be reached.
        """

    @abstractmethod
    async def resolve_permission(
        self, project_id: str, request_id: str, decision: PermissionPolicy
    ) -> None:
        """Tell the agent how a permission request was resolved."""

    @abstractmethod
    async def terminate(self, project_id: str) -> None:
        """Stop the agent and its subordinate processes.

        Returns only once termination is confirmed.

        Raises:
            ShutdownFailed: If termination cannot be confirmed.
        """

    @abstractmethod
    async def init_project(
        self,
        project_id: str,
        path: str,
        repository_url: str | None,
        access_token: str | None,
        on_progress: CloneProgressCallback,
    ) -> str:
        """Prepare ``path`` (cloning ``repository_url`` when given) and start the agent.

        Returns:
            The agent session identifier used to resume context.

        Raises:
            InitFailed: If the clone or directory setup fails.
        """
