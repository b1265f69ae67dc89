"""Permission request correlation.

Tracks approval requests raised by the agent, matches client responses to
them and applies the request's default policy when its timeout elapses.
Exactly one of (response, timeout) resolves a request; resolution is
terminal and the loser of a race is a no-op.

The correlator itself is not locked. Callers serialize ``respond`` and
``expire`` per Project (the session manager holds the Project lock around
both), which is what makes the single-winner guarantee hold.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable

from .models import (
    PermissionPolicy,
    PermissionRequest,
    PermissionResolution,
    utcnow,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60_000

_DECISION_TO_RESOLUTION = {
    PermissionPolicy.ALLOW: PermissionResolution.ALLOWED,
    PermissionPolicy.DENY: PermissionResolution.DENIED,
}


class PermissionCorrelator:
    """Owns the PermissionRequests of one Project.

    Args:
        project_id: Owning Project (for logs).
        on_timeout: Coroutine function invoked with the request id when its
            timer fires. It is expected to serialize with other Project
            mutations and then call ``expire``. When omitted, ``expire`` is
            called directly.
        default_timeout_ms: Timeout used when a request does not carry one.
        default_policy: Policy used when a request does not carry one.
    """

    def __init__(
        self,
        project_id: str,
        *,
        on_timeout: Callable[[str], Awaitable[None]] | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        default_policy: PermissionPolicy = PermissionPolicy.DENY,
    ) -> None:
        self.project_id = project_id
        self._on_timeout = on_timeout
        self._default_timeout_ms = default_timeout_ms
        self._default_policy = default_policy
        self._requests: dict[str, PermissionRequest] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, request_id: str) -> PermissionRequest | None:
        return self._requests.get(request_id)

    def open_requests(self) -> list[PermissionRequest]:
        """Pending requests in issue order."""
        return [r for r in self._requests.values() if r.is_pending]

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def open(
        self,
        request_id: str,
        description: str,
        source_agent_id: str,
        *,
        timeout_ms: int | None = None,
        default_policy: PermissionPolicy | None = None,
    ) -> PermissionRequest:
        """Store a new pending request and start its timeout timer.

        Re-opening a known id returns the existing request unchanged.
        """
        existing = self._requests.get(request_id)
        if existing is not None:
            _LOGGER.warning(
                "[%s] Permission request %s already known (%s)",
                self.project_id,
                request_id,
                existing.resolution.value,
            )
            return existing

        request = PermissionRequest(
            id=request_id,
            description=description,
            source_agent_id=source_agent_id,
            timeout_ms=timeout_ms or self._default_timeout_ms,
            default_policy=default_policy or self._default_policy,
        )
        self._requests[request_id] = request
        self._timers[request_id] = asyncio.create_task(
            self._expire_after(request_id, request.timeout_ms / 1000)
        )
        _LOGGER.debug(
            "[%s] Permission request %s opened (timeout %dms, default %s)",
            self.project_id,
            request_id,
            request.timeout_ms,
            request.default_policy.value,
        )
        return request

    def respond(
        self, request_id: str, decision: PermissionPolicy
    ) -> PermissionRequest | None:
        """Resolve a pending request with the client's decision.

        Returns:
            The resolved request, or None when the id is unknown or the
            request was already resolved (a no-op, logged as a warning).
        """
        request = self._requests.get(request_id)
        if request is None:
            _LOGGER.warning(
                "[%s] Response for unknown permission request %s",
                self.project_id,
                request_id,
            )
            return None
        if not request.is_pending:
            _LOGGER.warning(
                "[%s] Permission request %s already resolved (%s), response ignored",
                self.project_id,
                request_id,
                request.resolution.value,
            )
            return None
        return self._resolve(request, _DECISION_TO_RESOLUTION[decision], decision)

    def expire(self, request_id: str) -> PermissionRequest | None:
        """Resolve a pending request to its default policy.

        Returns None when the request was already resolved.
        """
        request = self._requests.get(request_id)
        if request is None or not request.is_pending:
            return None
        _LOGGER.info(
            "[%s] Permission request %s timed out, applying %s",
            self.project_id,
            request_id,
            request.default_policy.value,
        )
        return self._resolve(
            request, PermissionResolution.TIMED_OUT, request.default_policy
        )

    def _resolve(
        self,
        request: PermissionRequest,
        resolution: PermissionResolution,
        decision: PermissionPolicy,
    ) -> PermissionRequest:
        resolved = dataclasses.replace(
            request, resolution=resolution, decision=decision, resolved_at=utcnow()
        )
        self._requests[request.id] = resolved
        timer = self._timers.pop(request.id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        return resolved

    async def _expire_after(self, request_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            if self._on_timeout is not None:
                await self._on_timeout(request_id)
            else:
                self.expire(request_id)
        except asyncio.CancelledError:
            pass
        except Exception as err:
            _LOGGER.exception(
                "[%s] Permission timeout handler error for %s: %s",
                self.project_id,
                request_id,
                err,
            )
        finally:
            if self._timers.get(request_id) is asyncio.current_task():
                del self._timers[request_id]

    async def close(self) -> None:
        """Cancel outstanding timers. Pending requests stay pending."""
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        for timer in timers:
            try:
                await timer
            except asyncio.CancelledError:
                pass

    def reset(self) -> None:
        """Forget every request. Timers must already be closed."""
        self._requests.clear()
