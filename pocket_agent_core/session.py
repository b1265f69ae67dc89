"""Per-Project session manager.

This module is the canonical API for the transport gateway and for the agent
adapter. For every Project it composes:
- the connection state machine
- the outbound replay buffer and per-client inbound ordering
- the permission correlator
- the progress aggregator

All mutations of one Project are serialized by that Project's lock; nothing
is shared between Projects except the read-only authorized keys held by the
handshake. The lock is never held across the handshake, the reachability
check or a repository clone, so those suspension points cannot stall other
work on the same Project.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .adapter import AgentAdapter
from .auth import AuthHandshake, SessionToken, build_auth_ok
from .config import SessionConfig
from .errors import (
    AgentUnreachable,
    AuthFailed,
    InitFailed,
    InvalidTransition,
    PocketAgentError,
    ProjectNotFound,
    ProtocolViolation,
    ShutdownFailed,
    TransportLost,
)
from .models import (
    ConnectionState,
    PermissionPolicy,
    PermissionRequest,
    Project,
    Session,
)
from .permissions import PermissionCorrelator
from .progress import ProgressAggregator
from .protocol import (
    UNSEQUENCED_TYPES,
    AgentOutput,
    CloneProgress,
    Command,
    Envelope,
    ErrorPayload,
    Heartbeat,
    MessageType,
    Payload,
    PermissionRequestPayload,
    PermissionResolved,
    PermissionResponse,
    ProgressEvent,
    ProjectInitComplete,
    ReplayRequest,
    SessionControl,
    StateChanged,
    StateSnapshot,
    build_envelope,
    decode_envelope,
    encode_envelope,
)
from .replay import InboundTracker, InboundVerdict, ReplayBuffer
from .state_machine import ConnectionEvent, ConnectionStateMachine

if TYPE_CHECKING:
    from .transport import FrameTransport

_LOGGER = logging.getLogger(__name__)

CLOSE_TIMEOUT = 2.0


class ProjectSession:
    """Everything the core owns for one Project.

    Only touched while ``lock`` is held.
    """

    def __init__(
        self,
        project: Project,
        config: SessionConfig,
        on_permission_timeout: Callable[[str, str], Any],
    ) -> None:
        self.project = project
        self.lock = asyncio.Lock()
        self.machine = ConnectionStateMachine(project.id, project.state)
        self.machine.on_change(self._sync_state)
        self.outbound = ReplayBuffer(
            max_messages=config.replay_max_messages,
            max_age=config.replay_max_age,
        )
        # Keyed by client id; survives reconnects so duplicates are still caught.
        self.inbound: dict[str, InboundTracker] = {}
        self.permissions = PermissionCorrelator(
            project.id,
            on_timeout=functools.partial(on_permission_timeout, project.id),
            default_timeout_ms=config.permission_timeout_ms,
            default_policy=config.permission_default_policy,
        )
        self.progress = ProgressAggregator(project.id)

        self.session: Session | None = None
        self.transport: FrameTransport | None = None
        self.connecting: FrameTransport | None = None
        self.heartbeat_task: asyncio.Task[None] | None = None
        self.shutdown_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self.machine.state

    @property
    def live(self) -> bool:
        """True when envelopes are delivered as well as buffered."""
        return self.transport is not None

    def _sync_state(self, old: ConnectionState, new: ConnectionState) -> None:
        self.project.state = new


class SessionManager:
    """Registry of Projects and the operations the outside world drives.

    Usage:
        manager = SessionManager(adapter, AuthHandshake.from_config(keys, config), config)
        manager.register_project(project)
        session = await manager.connect(project.id, transport, identity_id="laptop")
        await manager.on_receive(project.id, frame)
        await manager.disconnect(project.id)
    """

    def __init__(
        self,
        adapter: AgentAdapter,
        handshake: AuthHandshake,
        config: SessionConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapter = adapter
        self._handshake = handshake
        self._config = config or SessionConfig()
        self._clock = clock
        self._projects: dict[str, ProjectSession] = {}

        adapter.on_agent_output(self._handle_agent_output)
        adapter.on_permission_request(self._handle_permission_request)
        adapter.on_progress_event(self._handle_progress_event)

    @property
    def config(self) -> SessionConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def register_project(self, project: Project) -> ProjectSession:
        """Start tracking ``project``.

        Raises:
            ValueError: If a Project with the same id is already registered.
        """
        if project.id in self._projects:
            raise ValueError(f"Project already registered: {project.id}")
        ps = ProjectSession(project, self._config, self._on_permission_timeout)
        self._projects[project.id] = ps
        _LOGGER.debug("[%s] Project registered (%s)", project.id, project.path)
        return ps

    def get_project(self, project_id: str) -> Project | None:
        ps = self._projects.get(project_id)
        return ps.project if ps else None

    def projects(self) -> list[Project]:
        return [ps.project for ps in self._projects.values()]

    def state(self, project_id: str) -> ConnectionState:
        return self._get(project_id).state

    def project_session(self, project_id: str) -> ProjectSession:
        return self._get(project_id)

    def _get(self, project_id: str) -> ProjectSession:
        ps = self._projects.get(project_id)
        if ps is None:
            raise ProjectNotFound(f"Unknown project: {project_id}", project_id=project_id)
        return ps

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def connect(
        self,
        project_id: str,
        transport: FrameTransport,
        *,
        identity_id: str,
        last_seen_id: int | None = None,
        client_id: str | None = None,
    ) -> Session:
        """Authenticate ``transport`` and attach it to the Project.

        A newer connection supersedes an attached or still-connecting one.
        Everything the client missed after ``last_seen_id`` is replayed
        before live delivery resumes; ``None`` or an id outside retention
        gets a full-resync snapshot instead.

        Failures are reported on ``transport`` and it is closed before the
        error is raised. Cancellation before the handshake completes returns
        the Project to DISCONNECTED with nothing recorded.

        Raises:
            ProjectNotFound: Unknown project.
            InvalidTransition: Project is shutting down.
            AuthFailed: Challenge-response rejected.
            HandshakeTimeout: Client did not answer in time.
            AgentUnreachable: Agent did not confirm reachability.
            TransportLost: Transport dropped or the attempt was superseded.
        """
        ps = self._get(project_id)

        async with ps.lock:
            if ps.state in (ConnectionState.SHUTDOWN, ConnectionState.DISCONNECTING):
                err = InvalidTransition(
                    f"Cannot connect while {ps.state.value}",
                    project_id=project_id,
                    phase="connect",
                )
                await self._reject(transport, err, project_id)
                raise err
            if ps.transport is not None:
                _LOGGER.info("[%s] New connection supersedes attached transport", project_id)
                await self._drop_transport_locked(ps, "superseded")
            previous = ps.connecting
            if previous is not None:
                _LOGGER.info("[%s] New connection supersedes pending attempt", project_id)
                ps.connecting = None
                await self._close_transport(previous, code=4000, reason="superseded")
            if ps.state is not ConnectionState.CONNECTING:
                ps.machine.apply(ConnectionEvent.CONNECT)
            ps.connecting = transport

        _LOGGER.info(
            "[%s] Connecting identity %s (last seen id %s)",
            project_id,
            identity_id,
            last_seen_id,
        )
        token: SessionToken | None = None
        try:
            token = await self._handshake.authenticate(
                transport, identity_id, project_id=project_id
            )
            await self._confirm_reachable(project_id)
        except AgentUnreachable as err:
            await self._abort_connect(ps, transport, token, err)
            raise
        except (PocketAgentError, asyncio.CancelledError):
            # Handshake errors are already reported on the transport.
            await self._abort_connect(ps, transport, token, None)
            raise

        async with ps.lock:
            if ps.connecting is not transport or ps.state is not ConnectionState.CONNECTING:
                self._handshake.revoke(token.token)
                await self._close_transport(transport, code=4000, reason="superseded")
                raise TransportLost(
                    "Connection attempt superseded", project_id=project_id, phase="connect"
                )
            ps.connecting = None
            session = self._attach_locked(ps, transport, identity_id, client_id, token)
            ps.machine.apply(ConnectionEvent.CONNECTED)
            ps.project.touch()
            await self._replay_locked(ps, last_seen_id)
            await self._send_locked(ps, StateChanged(state=ConnectionState.CONNECTED.value))
            if ps.session is session:
                self._start_heartbeat(ps, session)
            _LOGGER.info(
                "[%s] Connected (session %s, outbound id %d)",
                project_id,
                session.session_id,
                session.outbound_start_id,
            )
            return session

    async def _confirm_reachable(self, project_id: str) -> None:
        try:
            reachable = await self._adapter.check_reachable(project_id)
        except OSError as err:
            raise AgentUnreachable(
                f"Reachability check failed: {err}", project_id=project_id, phase="connect"
            ) from err
        if not reachable:
            raise AgentUnreachable(
                "Agent did not confirm reachability", project_id=project_id, phase="connect"
            )

    async def _abort_connect(
        self,
        ps: ProjectSession,
        transport: FrameTransport,
        token: SessionToken | None,
        err: PocketAgentError | None,
    ) -> None:
        async with ps.lock:
            if ps.connecting is transport:
                ps.connecting = None
                if ps.machine.can_apply(ConnectionEvent.CONNECT_FAILED):
                    ps.machine.apply(ConnectionEvent.CONNECT_FAILED)
        if token is not None:
            self._handshake.revoke(token.token)
        if err is not None:
            _LOGGER.warning("[%s] Connect failed: %s", ps.project.id, err)
            await self._reject(transport, err, ps.project.id)
        else:
            await self._close_transport(transport)

    def _attach_locked(
        self,
        ps: ProjectSession,
        transport: FrameTransport,
        identity_id: str,
        client_id: str | None,
        token: SessionToken,
    ) -> Session:
        client = client_id or identity_id
        tracker = ps.inbound.setdefault(client, InboundTracker())
        session = Session(
            project_id=ps.project.id,
            identity_id=identity_id,
            client_id=client,
            token=token.token,
            expires_at=token.expires_at,
            inbound=tracker,
            outbound_start_id=ps.outbound.last_id,
            last_heartbeat=self._clock(),
        )
        ps.session = session
        ps.transport = transport
        return session

    async def disconnect(self, project_id: str) -> None:
        """Gracefully detach the client. The agent keeps running.

        Raises:
            InvalidTransition: If the Project is not connected.
        """
        ps = self._get(project_id)
        async with ps.lock:
            await self._disconnect_locked(ps)

    async def _disconnect_locked(self, ps: ProjectSession) -> None:
        ps.machine.apply(ConnectionEvent.DISCONNECT)
        await self._send_locked(ps, StateChanged(state=ConnectionState.DISCONNECTING.value))
        await self._detach_locked(ps, code=1000, reason="disconnect")
        ps.machine.apply(ConnectionEvent.TRANSPORT_CLOSED)
        _LOGGER.info("[%s] Disconnected by request", ps.project.id)

    async def shutdown(self, project_id: str) -> None:
        """Terminate the agent and end the session.

        Once accepted the shutdown cannot be cancelled: cancelling the caller
        leaves it running to completion. A failed shutdown leaves the Project
        in SHUTDOWN and may be retried by calling this again.

        Raises:
            InvalidTransition: Project is neither connected nor connecting.
            ShutdownFailed: Termination could not be confirmed.
        """
        task = self._ensure_shutdown_task(self._get(project_id))
        await asyncio.shield(task)

    def _ensure_shutdown_task(self, ps: ProjectSession) -> asyncio.Task[None]:
        if ps.shutdown_task is None or ps.shutdown_task.done():
            ps.shutdown_task = asyncio.create_task(self._run_shutdown(ps))
            ps.shutdown_task.add_done_callback(
                functools.partial(_log_shutdown_result, ps.project.id)
            )
        return ps.shutdown_task

    async def _run_shutdown(self, ps: ProjectSession) -> None:
        project_id = ps.project.id
        async with ps.lock:
            if ps.state is not ConnectionState.SHUTDOWN:
                ps.machine.apply(ConnectionEvent.SHUTDOWN)
                _LOGGER.info("[%s] Shutdown requested", project_id)
                await self._send_locked(ps, StateChanged(state=ConnectionState.SHUTDOWN.value))
            else:
                _LOGGER.info("[%s] Retrying shutdown", project_id)

            try:
                await asyncio.wait_for(
                    self._adapter.terminate(project_id),
                    timeout=self._config.shutdown_timeout,
                )
            except ShutdownFailed as err:
                if err.project_id is None:
                    err.project_id = project_id
                await self._send_error_locked(ps, err)
                raise
            except (TimeoutError, AgentUnreachable, OSError) as err:
                failure = ShutdownFailed(
                    f"Agent termination not confirmed: {str(err) or 'timed out'}",
                    project_id=project_id,
                    phase="shutdown",
                )
                await self._send_error_locked(ps, failure)
                raise failure from err

            await ps.permissions.close()
            ps.permissions.reset()
            ps.progress.reset()
            # Clients holding older ids must resync against the fresh state.
            ps.outbound.clear()
            ps.project.agent_session_id = None
            ps.machine.apply(ConnectionEvent.TERMINATED)
            await self._send_locked(ps, StateChanged(state=ConnectionState.DISCONNECTED.value))
            await self._detach_locked(ps, code=1000, reason="shutdown")
            if ps.connecting is not None:
                await self._close_transport(ps.connecting, code=1000, reason="shutdown")
                ps.connecting = None
            _LOGGER.info("[%s] Agent terminated", project_id)

    async def transport_lost(
        self, project_id: str, transport: FrameTransport, reason: str = ""
    ) -> None:
        """Report that ``transport`` dropped.

        Ignored unless it is the transport currently attached to the Project.
        Never leads to SHUTDOWN; all Project state is kept for replay.
        """
        ps = self._projects.get(project_id)
        if ps is None:
            return
        async with ps.lock:
            if ps.transport is not transport:
                _LOGGER.debug("[%s] Ignoring loss of stale transport", project_id)
                return
            await self._drop_transport_locked(ps, reason or "transport lost")

    async def _drop_transport_locked(self, ps: ProjectSession, reason: str) -> None:
        await self._detach_locked(ps, code=1001, reason=reason)
        ps.machine.apply(ConnectionEvent.TRANSPORT_LOST)
        _LOGGER.info(
            "[%s] Transport lost (%s), state kept for replay after id %d",
            ps.project.id,
            reason,
            ps.outbound.last_id,
        )

    async def _detach_locked(self, ps: ProjectSession, *, code: int, reason: str) -> None:
        self._stop_heartbeat(ps)
        transport, session = ps.transport, ps.session
        ps.transport = None
        ps.session = None
        if session is not None:
            self._handshake.revoke(session.token)
        if transport is not None:
            await self._close_transport(transport, code=code, reason=reason)

    async def _close_transport(
        self, transport: FrameTransport, *, code: int = 1000, reason: str = ""
    ) -> None:
        try:
            await asyncio.wait_for(transport.close(code=code, reason=reason), timeout=CLOSE_TIMEOUT)
        except TimeoutError:
            _LOGGER.warning("Transport close timed out (%s)", transport.peer)
        except TransportLost:
            pass

    # -------------------------------------------------------------------------
    # Public API: Project creation
    # -------------------------------------------------------------------------

    async def init_project(
        self,
        path: str,
        repository_url: str | None = None,
        access_token: str | None = None,
        *,
        transport: FrameTransport,
        identity_id: str,
        name: str | None = None,
        server_id: str = "local",
        client_id: str | None = None,
    ) -> Project:
        """Create a Project over a fresh transport, cloning when a URL is given.

        Streams ``clone_progress`` while the adapter prepares the directory,
        then ``project_init_complete``. On success the Project is CONNECTED.

        Raises:
            AuthFailed: Handshake rejected; no Project is kept.
            HandshakeTimeout: Handshake not answered; no Project is kept.
            InitFailed: Clone or setup failed; the Project stays DISCONNECTED.
        """
        project = Project(
            id=uuid4().hex,
            name=name or PurePosixPath(path).name or path,
            server_id=server_id,
            path=path,
        )
        ps = self.register_project(project)
        async with ps.lock:
            ps.machine.apply(ConnectionEvent.CONNECT)
            ps.connecting = transport

        _LOGGER.info(
            "[%s] Initialising project at %s%s",
            project.id,
            path,
            " from repository" if repository_url else "",
        )
        try:
            token = await self._handshake.authenticate(
                transport, identity_id, project_id=project.id
            )
        except (PocketAgentError, asyncio.CancelledError):
            self._projects.pop(project.id, None)
            await ps.permissions.close()
            await self._close_transport(transport)
            raise

        async with ps.lock:
            ps.connecting = None
            session = self._attach_locked(ps, transport, identity_id, client_id, token)

        async def on_progress(progress: CloneProgress) -> None:
            async with ps.lock:
                await self._send_locked(ps, progress)

        try:
            agent_session_id = await self._adapter.init_project(
                project.id, path, repository_url, access_token, on_progress
            )
        except (InitFailed, AgentUnreachable) as err:
            failure = (
                err
                if isinstance(err, InitFailed)
                else InitFailed(str(err), project_id=project.id, phase="init")
            )
            if failure.project_id is None:
                failure.project_id = project.id
            _LOGGER.error("[%s] Project init failed: %s", project.id, failure)
            async with ps.lock:
                await self._send_locked(
                    ps,
                    ProjectInitComplete(
                        success=False, session_id="", error=failure.to_body()["detail"]
                    ),
                )
                await self._detach_locked(ps, code=1011, reason="init failed")
                if ps.machine.can_apply(ConnectionEvent.CONNECT_FAILED):
                    ps.machine.apply(ConnectionEvent.CONNECT_FAILED)
            if failure is err:
                raise
            raise failure from err

        async with ps.lock:
            project.agent_session_id = agent_session_id
            await self._send_locked(
                ps, ProjectInitComplete(success=True, session_id=agent_session_id)
            )
            if ps.session is session and ps.state is ConnectionState.CONNECTING:
                ps.machine.apply(ConnectionEvent.CONNECTED)
                await self._send_locked(ps, StateChanged(state=ConnectionState.CONNECTED.value))
                if ps.session is session:
                    self._start_heartbeat(ps, session)
            project.touch()
        _LOGGER.info(
            "[%s] Project ready (agent session %s)", project.id, agent_session_id
        )
        return project

    # -------------------------------------------------------------------------
    # Public API: Messaging
    # -------------------------------------------------------------------------

    async def send(self, project_id: str, message: Payload | Envelope) -> Envelope:
        """Assign the next id to ``message``, retain it and deliver it if connected.

        Returns:
            The envelope as stamped.
        """
        ps = self._get(project_id)
        if isinstance(message, Envelope):
            if message.payload is None:
                raise ProtocolViolation(
                    f"Cannot send envelope of unknown type {message.type}",
                    project_id=project_id,
                )
            message = message.payload
        async with ps.lock:
            return await self._send_locked(ps, message)

    async def _send_locked(self, ps: ProjectSession, payload: Payload) -> Envelope:
        if payload.TYPE in UNSEQUENCED_TYPES:
            envelope = build_envelope(payload, project_id=ps.project.id)
        else:
            envelope = build_envelope(
                payload, project_id=ps.project.id, msg_id=ps.outbound.last_id + 1
            )
            ps.outbound.append(envelope)
        if ps.transport is not None:
            await self._deliver_locked(ps, envelope)
        return envelope

    async def _deliver_locked(self, ps: ProjectSession, envelope: Envelope) -> bool:
        transport = ps.transport
        if transport is None:
            return False
        try:
            await transport.send(encode_envelope(envelope))
        except TransportLost as err:
            _LOGGER.debug("[%s] Delivery of id %d failed: %s", ps.project.id, envelope.id, err)
            await self._drop_transport_locked(ps, "send failed")
            return False
        return True

    async def _send_error_locked(self, ps: ProjectSession, err: PocketAgentError) -> None:
        await self._send_locked(ps, _error_payload(err))

    async def _reject(
        self, transport: FrameTransport, err: PocketAgentError, project_id: str | None
    ) -> None:
        """Report ``err`` on a transport that is not attached, then close it."""
        try:
            await transport.send(
                encode_envelope(build_envelope(_error_payload(err), project_id=project_id))
            )
        except TransportLost:
            pass
        await self._close_transport(transport, code=4003, reason=err.kind)

    async def _replay_locked(self, ps: ProjectSession, last_seen_id: int | None) -> None:
        result = ps.outbound.replay_after(last_seen_id)
        if result.full_resync:
            _LOGGER.info(
                "[%s] Full resync for last seen id %s (retained from %s)",
                ps.project.id,
                last_seen_id,
                ps.outbound.first_id,
            )
            await self._send_locked(ps, self._snapshot_locked(ps, resync=True))
            return
        if result.envelopes:
            _LOGGER.info(
                "[%s] Replaying %d envelope(s) after id %d",
                ps.project.id,
                len(result.envelopes),
                last_seen_id,
            )
        for envelope in result.envelopes:
            if not await self._deliver_locked(ps, envelope):
                return

    async def on_receive(
        self,
        project_id: str,
        frame: str | bytes | Envelope,
        *,
        transport: FrameTransport | None = None,
    ) -> None:
        """Process one inbound frame from the Project's client.

        Duplicates are ignored. A gap is not processed; the client is asked to
        resend from the watermark instead.

        Raises:
            ProtocolViolation: When the Session exceeded its violation
                ceiling; the transport has been closed.
        """
        ps = self._get(project_id)
        async with ps.lock:
            if transport is not None and transport is not ps.transport:
                _LOGGER.debug("[%s] Frame from detached transport ignored", project_id)
                return
            session = ps.session
            if session is None:
                _LOGGER.debug("[%s] Frame while no session is attached ignored", project_id)
                return
            session.last_heartbeat = self._clock()

            envelope: Envelope | None = None
            invalid: ProtocolViolation | None = None
            if isinstance(frame, Envelope):
                envelope = frame
                msg_id = envelope.id if envelope.is_sequenced else 0
            else:
                try:
                    envelope = decode_envelope(frame)
                except ProtocolViolation as err:
                    err.project_id = project_id
                    err.phase = "receive"
                    invalid = err
                    msg_id = err.context.get("msg_id", 0)
                else:
                    msg_id = envelope.id if envelope.is_sequenced else 0

            if not msg_id:
                if invalid is not None:
                    await self._violation_locked(ps, session, invalid)
                return

            verdict = session.inbound.check(msg_id)
            if verdict is InboundVerdict.DUPLICATE:
                _LOGGER.debug("[%s] Duplicate inbound id %d ignored", project_id, msg_id)
                return
            if verdict is InboundVerdict.GAP:
                _LOGGER.warning(
                    "[%s] Inbound gap: got id %d, expected %d",
                    project_id,
                    msg_id,
                    session.inbound.watermark + 1,
                )
                await self._send_locked(ps, ReplayRequest(after_id=session.inbound.watermark))
                await self._violation_locked(
                    ps,
                    session,
                    ProtocolViolation(
                        f"Out-of-order id {msg_id}",
                        project_id=project_id,
                        phase="receive",
                    ),
                    report=False,
                )
                return

            # An envelope with an invalid body still consumes its id.
            session.inbound.accept(msg_id)
            if invalid is not None:
                await self._violation_locked(ps, session, invalid)
                return
            ps.project.touch()
            await self._dispatch_locked(ps, envelope)

    async def _violation_locked(
        self,
        ps: ProjectSession,
        session: Session,
        err: ProtocolViolation,
        *,
        report: bool = True,
    ) -> None:
        session.violations += 1
        _LOGGER.warning(
            "[%s] Protocol violation %d/%d: %s",
            ps.project.id,
            session.violations,
            self._config.max_protocol_violations,
            err,
        )
        if report:
            await self._send_error_locked(ps, err)
        if session.violations > self._config.max_protocol_violations:
            if ps.session is session:
                await self._drop_transport_locked(ps, "protocol violations")
            raise ProtocolViolation(
                "Too many protocol violations", project_id=ps.project.id, phase="receive"
            ) from err

    async def _dispatch_locked(self, ps: ProjectSession, envelope: Envelope) -> None:
        project_id = ps.project.id
        payload = envelope.payload
        msg_type = envelope.message_type

        if msg_type is MessageType.COMMAND and isinstance(payload, Command):
            try:
                await self._adapter.send_command(project_id, payload.text)
            except AgentUnreachable as err:
                if err.project_id is None:
                    err.project_id = project_id
                await self._send_error_locked(ps, err)
        elif msg_type is MessageType.PERMISSION_RESPONSE and isinstance(
            payload, PermissionResponse
        ):
            await self._permission_response_locked(ps, payload)
        elif msg_type is MessageType.SESSION_CONTROL and isinstance(payload, SessionControl):
            await self._session_control_locked(ps, payload)
        elif msg_type is MessageType.REPLAY_REQUEST and isinstance(payload, ReplayRequest):
            await self._replay_locked(ps, payload.after_id)
        elif msg_type is MessageType.ERROR and isinstance(payload, ErrorPayload):
            _LOGGER.warning(
                "[%s] Client reported %s: %s", project_id, payload.kind, payload.detail
            )
        elif msg_type is None:
            _LOGGER.debug("[%s] Unknown message type %s ignored", project_id, envelope.type)
        else:
            _LOGGER.warning(
                "[%s] Unexpected %s from client ignored", project_id, envelope.type
            )

    async def _permission_response_locked(
        self, ps: ProjectSession, response: PermissionResponse
    ) -> None:
        resolved = ps.permissions.respond(
            response.request_id, PermissionPolicy(response.decision)
        )
        if resolved is not None:
            await self._publish_resolution_locked(ps, resolved)
            return
        known = ps.permissions.get(response.request_id)
        await self._send_locked(
            ps,
            ErrorPayload(
                kind="PERMISSION_ALREADY_RESOLVED" if known else "UNKNOWN_PERMISSION_REQUEST",
                detail=f"Response for {response.request_id} ignored",
                context={"request_id": response.request_id},
            ),
        )

    async def _session_control_locked(
        self, ps: ProjectSession, control: SessionControl
    ) -> None:
        if control.action == "resume":
            await self._replay_locked(ps, control.last_seen_id)
        elif control.action == "disconnect":
            await self._disconnect_locked(ps)
        elif control.action == "shutdown":
            # Runs once this frame's lock is released.
            self._ensure_shutdown_task(ps)

    async def _publish_resolution_locked(
        self, ps: ProjectSession, request: PermissionRequest
    ) -> None:
        decision = request.decision or request.default_policy
        await self._send_locked(
            ps,
            PermissionResolved(
                request_id=request.id,
                resolution=request.resolution.value,
                decision=decision.value,
            ),
        )
        try:
            await self._adapter.resolve_permission(ps.project.id, request.id, decision)
        except (AgentUnreachable, OSError) as err:
            _LOGGER.error(
                "[%s] Could not deliver resolution of %s to agent: %s",
                ps.project.id,
                request.id,
                err,
            )

    # -------------------------------------------------------------------------
    # Agent adapter callbacks
    # -------------------------------------------------------------------------

    async def _handle_agent_output(self, project_id: str, output: AgentOutput) -> None:
        ps = self._projects.get(project_id)
        if ps is None:
            _LOGGER.warning("[%s] Agent output for unknown project dropped", project_id)
            return
        async with ps.lock:
            await self._send_locked(ps, output)

    async def _handle_permission_request(
        self, project_id: str, request: PermissionRequestPayload
    ) -> None:
        ps = self._projects.get(project_id)
        if ps is None:
            _LOGGER.warning("[%s] Permission request for unknown project dropped", project_id)
            return
        async with ps.lock:
            existing = ps.permissions.get(request.id)
            if existing is not None:
                _LOGGER.warning(
                    "[%s] Duplicate permission request %s ignored (%s)",
                    project_id,
                    request.id,
                    existing.resolution.value,
                )
                return
            opened = ps.permissions.open(
                request.id,
                request.description,
                request.source_agent_id,
                timeout_ms=request.timeout_ms,
                default_policy=PermissionPolicy(request.default_policy),
            )
            await self._send_locked(
                ps,
                PermissionRequestPayload(
                    id=opened.id,
                    description=opened.description,
                    source_agent_id=opened.source_agent_id,
                    timeout_ms=opened.timeout_ms,
                    default_policy=opened.default_policy.value,
                ),
            )

    async def _handle_progress_event(self, project_id: str, event: ProgressEvent) -> None:
        ps = self._projects.get(project_id)
        if ps is None:
            _LOGGER.warning("[%s] Progress event for unknown project dropped", project_id)
            return
        async with ps.lock:
            for node in ps.progress.apply(event):
                # Clients recreate placeholders from parent_id.
                if node.placeholder:
                    continue
                await self._send_locked(
                    ps,
                    ProgressEvent(
                        node_id=node.id,
                        parent_id=node.parent_id,
                        label=node.label,
                        status=node.status.value,
                        percentage=node.percentage,
                    ),
                )

    async def _on_permission_timeout(self, project_id: str, request_id: str) -> None:
        ps = self._projects.get(project_id)
        if ps is None:
            return
        async with ps.lock:
            resolved = ps.permissions.expire(request_id)
            if resolved is not None:
                await self._publish_resolution_locked(ps, resolved)

    # -------------------------------------------------------------------------
    # Heartbeat and token renewal
    # -------------------------------------------------------------------------

    def _start_heartbeat(self, ps: ProjectSession, session: Session) -> None:
        self._stop_heartbeat(ps)
        ps.heartbeat_task = asyncio.create_task(self._heartbeat_loop(ps, session))

    def _stop_heartbeat(self, ps: ProjectSession) -> None:
        task = ps.heartbeat_task
        ps.heartbeat_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self, ps: ProjectSession, session: Session) -> None:
        interval = self._config.heartbeat_interval
        silence_limit = interval + self._config.heartbeat_grace
        project_id = ps.project.id
        while True:
            await asyncio.sleep(interval)
            async with ps.lock:
                if ps.session is not session:
                    return
                silent_for = self._clock() - session.last_heartbeat
                if silent_for > silence_limit:
                    _LOGGER.warning(
                        "[%s] No inbound traffic for %.1fs, dropping transport",
                        project_id,
                        silent_for,
                    )
                    await self._drop_transport_locked(ps, "heartbeat timeout")
                    return

                if session.remaining().total_seconds() <= self._config.token_renew_margin:
                    try:
                        renewed = self._handshake.renew(session.token)
                    except AuthFailed as err:
                        err.project_id = project_id
                        _LOGGER.error("[%s] Session token not renewed: %s", project_id, err)
                        await self._drop_transport_locked(ps, "token expired")
                        return
                    session.token = renewed.token
                    session.expires_at = renewed.expires_at
                    _LOGGER.debug("[%s] Session token renewed", project_id)
                    if not await self._deliver_locked(ps, build_auth_ok(renewed, project_id)):
                        return

                await self._send_locked(ps, Heartbeat())
                if ps.session is not session:
                    return

    # -------------------------------------------------------------------------
    # Snapshots and status
    # -------------------------------------------------------------------------

    def snapshot(self, project_id: str, *, resync: bool = False) -> StateSnapshot:
        """Current state, open permission requests and progress tree of a Project."""
        return self._snapshot_locked(self._get(project_id), resync=resync)

    def _snapshot_locked(self, ps: ProjectSession, *, resync: bool) -> StateSnapshot:
        return StateSnapshot(
            state=ps.state.value,
            last_id=ps.outbound.last_id,
            permissions=[r.to_dict() for r in ps.permissions.open_requests()],
            progress=[n.to_dict() for n in ps.progress.snapshot()],
            resync=resync,
        )

    def stats(self) -> dict[str, Any]:
        states: dict[str, int] = {state.value: 0 for state in ConnectionState}
        for ps in self._projects.values():
            states[ps.state.value] += 1
        return {
            "projects": len(self._projects),
            "connected_sessions": sum(1 for ps in self._projects.values() if ps.live),
            "open_permission_requests": sum(
                len(ps.permissions.open_requests()) for ps in self._projects.values()
            ),
            "states": states,
        }

    async def close(self) -> None:
        """Detach every transport and stop timers. Projects stay registered."""
        for ps in list(self._projects.values()):
            async with ps.lock:
                if ps.transport is not None:
                    await self._drop_transport_locked(ps, "server closing")
                if ps.connecting is not None:
                    await self._close_transport(ps.connecting, code=1001)
                    ps.connecting = None
            await ps.permissions.close()


def _error_payload(err: PocketAgentError) -> ErrorPayload:
    body = err.to_body()
    return ErrorPayload(kind=body["kind"], detail=body["detail"], context=body.get("context"))


def _log_shutdown_result(project_id: str, task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    err = task.exception()
    if err is not None:
        _LOGGER.error("[%s] Shutdown failed: %s", project_id, err)
