"""HTTP agent adapter for the agent wrapper service.

The wrapper runs next to the coding agent and exposes:

    GET  /api/health                                  reachability
    POST /api/projects                                init (NDJSON clone progress)
    POST /api/projects/{id}/commands                  prompt / shell command
    POST /api/projects/{id}/permissions/{request_id}  permission decision
    POST /api/projects/{id}/terminate                 stop agent and children
    GET  /api/projects/{id}/events                    NDJSON agent event stream

Streamed lines are JSON objects tagged with ``type``; event bodies use the
same field names as the wire payloads.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any

import aiohttp

from .adapter import AgentAdapter, CloneProgressCallback, _invoke
from .errors import AgentUnreachable, InitFailed, ProtocolViolation, ShutdownFailed
from .models import PermissionPolicy
from .protocol import (
    AgentOutput,
    CloneProgress,
    MessageType,
    PermissionRequestPayload,
    ProgressEvent,
)

_LOGGER = logging.getLogger(__name__)


class HttpAgentAdapter(AgentAdapter):
    """Agent adapter talking to the wrapper service over HTTP.

    A successful health check or init starts following the Project's event
    stream in the background; terminate stops it.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        *,
        secret: str | None = None,
        request_timeout: float = 10.0,
        terminate_timeout: float = 30.0,
    ) -> None:
        super().__init__()
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._secret = secret
        self._request_timeout = request_timeout
        self._terminate_timeout = terminate_timeout
        self._event_tasks: dict[str, asyncio.Task[None]] = {}

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _auth_headers(self) -> dict[str, str]:
        if not self._secret:
            return {}
        return {"Authorization": f"Bearer {self._secret}"}

    def _timeout(self, total: float | None = None) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=total or self._request_timeout)

    # -------------------------------------------------------------------------
    # Outbound operations
    # -------------------------------------------------------------------------

    async def check_reachable(self, project_id: str) -> bool:
        url = self._url("/api/health")
        try:
            async with self._session.get(
                url,
                headers=self._auth_headers(),
                timeout=aiohttp.ClientTimeout(total=5),
            ) as resp:
                if resp.status != 200:
                    _LOGGER.debug("[%s] Health check returned %d", project_id, resp.status)
                    return False
        except TimeoutError:
            _LOGGER.debug("[%s] Health check timed out", project_id)
            return False
        except aiohttp.ClientError as err:
            _LOGGER.debug("[%s] Health check failed: %s", project_id, err)
            return False
        self.start_events(project_id)
        return True

    async def send_command(self, project_id: str, text: str) -> None:
        url = self._url(f"/api/projects/{project_id}/commands")
        try:
            async with self._session.post(
                url,
                json={"text": text},
                headers=self._auth_headers(),
                timeout=self._timeout(),
            ) as resp:
                if resp.status not in (200, 202):
                    raise AgentUnreachable(
                        f"Command rejected with status {resp.status}",
                        project_id=project_id,
                        phase="command",
                    )
        except TimeoutError as err:
            raise AgentUnreachable(
                "Command request timed out", project_id=project_id, phase="command"
            ) from err
        except aiohttp.ClientError as err:
            raise AgentUnreachable(
                "Command request failed", project_id=project_id, phase="command"
            ) from err

    async def resolve_permission(
        self, project_id: str, request_id: str, decision: PermissionPolicy
    ) -> None:
        url = self._url(f"/api/projects/{project_id}/permissions/{request_id}")
        try:
            async with self._session.post(
                url,
                json={"decision": decision.value},
                headers=self._auth_headers(),
                timeout=self._timeout(),
            ) as resp:
                if resp.status not in (200, 204):
                    raise AgentUnreachable(
                        f"Permission decision rejected with status {resp.status}",
                        project_id=project_id,
                        phase="permission",
                        request_id=request_id,
                    )
        except TimeoutError as err:
            raise AgentUnreachable(
                "Permission decision timed out", project_id=project_id, phase="permission"
            ) from err
        except aiohttp.ClientError as err:
            raise AgentUnreachable(
                "Permission decision failed", project_id=project_id, phase="permission"
            ) from err

    async def terminate(self, project_id: str) -> None:
        await self.stop_events(project_id)
        url = self._url(f"/api/projects/{project_id}/terminate")
        try:
            async with self._session.post(
                url,
                headers=self._auth_headers(),
                timeout=self._timeout(self._terminate_timeout),
            ) as resp:
                if resp.status != 200:
                    raise ShutdownFailed(
                        f"Terminate returned status {resp.status}",
                        project_id=project_id,
                        phase="shutdown",
                    )
                data = await resp.json()
                if not data.get("terminated", False):
                    raise ShutdownFailed(
                        "Agent did not confirm termination",
                        project_id=project_id,
                        phase="shutdown",
                    )
        except TimeoutError as err:
            raise ShutdownFailed(
                "Terminate request timed out", project_id=project_id, phase="shutdown"
            ) from err
        except aiohttp.ClientError as err:
            raise ShutdownFailed(
                "Terminate request failed", project_id=project_id, phase="shutdown"
            ) from err

    async def init_project(
        self,
        project_id: str,
        path: str,
        repository_url: str | None,
        access_token: str | None,
        on_progress: CloneProgressCallback,
    ) -> str:
        url = self._url("/api/projects")
        body: dict[str, Any] = {"project_id": project_id, "path": path}
        if repository_url:
            body["repository_url"] = repository_url
        if access_token:
            body["access_token"] = access_token

        try:
            async with self._session.post(
                url,
                json=body,
                headers=self._auth_headers(),
                timeout=aiohttp.ClientTimeout(total=None, sock_read=self._request_timeout * 6),
            ) as resp:
                if resp.status != 200:
                    detail = await resp.text()
                    raise InitFailed(
                        f"Init rejected with status {resp.status}: {detail.strip()}",
                        project_id=project_id,
                        phase="init",
                    )
                async for item in _iter_ndjson(resp):
                    kind = item.get("type")
                    if kind == MessageType.CLONE_PROGRESS.value:
                        try:
                            progress = CloneProgress.from_body(item)
                        except ProtocolViolation as err:
                            raise InitFailed(
                                f"Malformed clone progress: {err}",
                                project_id=project_id,
                                phase="clone",
                            ) from err
                        await _invoke(on_progress, progress)
                    elif kind == "ready":
                        session_id = item.get("session_id")
                        if not isinstance(session_id, str) or not session_id:
                            raise InitFailed(
                                "Agent started without a session id",
                                project_id=project_id,
                                phase="init",
                            )
                        self.start_events(project_id)
                        return session_id
                    elif kind == "error":
                        raise InitFailed(
                            str(item.get("detail") or "Project setup failed"),
                            project_id=project_id,
                            phase="clone" if repository_url else "init",
                        )
        except TimeoutError as err:
            raise InitFailed("Init request timed out", project_id=project_id, phase="init") from err
        except aiohttp.ClientError as err:
            raise InitFailed("Init request failed", project_id=project_id, phase="init") from err

        raise InitFailed(
            "Init stream ended before the agent was ready",
            project_id=project_id,
            phase="init",
        )

    # -------------------------------------------------------------------------
    # Inbound event stream
    # -------------------------------------------------------------------------

    def start_events(self, project_id: str) -> None:
        """Follow the agent event stream of ``project_id`` in the background."""
        task = self._event_tasks.get(project_id)
        if task is not None and not task.done():
            return
        self._event_tasks[project_id] = asyncio.create_task(self._follow_events(project_id))

    async def stop_events(self, project_id: str) -> None:
        task = self._event_tasks.pop(project_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _follow_events(self, project_id: str) -> None:
        try:
            await self.stream_events(project_id)
        except AgentUnreachable as err:
            _LOGGER.warning("[%s] Agent event stream lost: %s", project_id, err)

    async def stream_events(self, project_id: str) -> None:
        """Read the event stream until it ends, dispatching to callbacks in order.

        Raises:
            AgentUnreachable: If the stream cannot be opened or breaks.
        """
        url = self._url(f"/api/projects/{project_id}/events")
        try:
            async with self._session.get(
                url,
                headers=self._auth_headers(),
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self._request_timeout),
            ) as resp:
                if resp.status != 200:
                    raise AgentUnreachable(
                        f"Event stream returned status {resp.status}",
                        project_id=project_id,
                        phase="events",
                    )
                async for item in _iter_ndjson(resp):
                    await self._dispatch_event(project_id, item)
        except TimeoutError as err:
            raise AgentUnreachable(
                "Event stream timed out", project_id=project_id, phase="events"
            ) from err
        except aiohttp.ClientError as err:
            raise AgentUnreachable(
                "Event stream failed", project_id=project_id, phase="events"
            ) from err

    async def _dispatch_event(self, project_id: str, item: Mapping[str, Any]) -> None:
        kind = item.get("type")
        body = item.get("body")
        if not isinstance(body, Mapping):
            body = {}
        try:
            if kind == MessageType.AGENT_OUTPUT.value:
                await self._emit_output(project_id, AgentOutput.from_body(body))
            elif kind == MessageType.PERMISSION_REQUEST.value:
                await self._emit_permission_request(
                    project_id, PermissionRequestPayload.from_body(body)
                )
            elif kind == MessageType.PROGRESS_EVENT.value:
                await self._emit_progress_event(project_id, ProgressEvent.from_body(body))
            else:
                _LOGGER.debug("[%s] Unknown agent event %s ignored", project_id, kind)
        except ProtocolViolation as err:
            _LOGGER.warning("[%s] Malformed agent event %s: %s", project_id, kind, err)

    async def close(self) -> None:
        """Stop every event stream. The aiohttp session belongs to the caller."""
        for project_id in list(self._event_tasks):
            await self.stop_events(project_id)


async def _iter_ndjson(resp: aiohttp.ClientResponse) -> AsyncIterator[dict[str, Any]]:
    async for raw in resp.content:
        line = raw.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except ValueError:
            _LOGGER.warning("Skipping malformed stream line")
            continue
        if isinstance(item, dict):
            yield item
