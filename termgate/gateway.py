"""
Transport gateway: the WebSocket protocol in front of the session registry.

Each WebSocket attachment gets a Connection. A connection may only drive the
sessions it created or successfully reconnected to; anything else is logged
as an unauthorized-access attempt and rejected before the registry is
touched. Output for a session goes only to the one connection currently
bound to it.

Messages are JSON objects with a ``type`` field and camelCase payload keys.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from termgate.auth import AuthManager
from termgate.config import TerminalConfig
from termgate.pty_process import SpawnError
from termgate.sessions import (
    SessionExistsError,
    SessionLimitError,
    SessionNotFoundError,
    SessionRegistry,
    short_id,
)

logger = logging.getLogger(__name__)


# =============================================================================
# INBOUND MESSAGES
# =============================================================================


class SessionMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1, max_length=256)


class CreateSessionMessage(SessionMessage):
    cwd: Optional[str] = None


class InputMessage(SessionMessage):
    data: str


class ResizeMessage(SessionMessage):
    cols: int = Field(gt=0, le=1000)
    rows: int = Field(gt=0, le=1000)


# =============================================================================
# CONNECTIONS
# =============================================================================


@dataclass
class Connection:
    """
    One live WebSocket attachment.

    Outbound messages go through an unbounded FIFO queue drained by the
    endpoint's writer task, so per-session output order is preserved and
    the shell reader never waits on the network.
    """
    connection_id: str
    identity: str | None = None
    authorized_sessions: set[str] = field(default_factory=set)
    retired_sessions: set[str] = field(default_factory=set)  # Ended while we held them
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    closed: bool = False

    def send(self, message: dict) -> None:
        if self.closed:
            return
        self.outbox.put_nowait(message)

    def send_error(self, message: str, session_id: str | None = None, details: str | None = None) -> None:
        payload: dict[str, Any] = {"type": "error", "message": message}
        if session_id is not None:
            payload["sessionId"] = session_id
        if details:
            payload["details"] = details
        self.send(payload)

    def send_output(self, session_id: str, data: str) -> None:
        self.send({"type": "output", "sessionId": session_id, "data": data})

    def authorize(self, session_id: str) -> None:
        self.authorized_sessions.add(session_id)
        self.retired_sessions.discard(session_id)

    def revoke(self, session_id: str) -> None:
        """Another connection took the session over."""
        if session_id in self.authorized_sessions:
            self.authorized_sessions.discard(session_id)
            self.send_error("Session reconnected from another connection", session_id)

    def retire(self, session_id: str) -> None:
        self.authorized_sessions.discard(session_id)
        self.retired_sessions.add(session_id)

    def session_ended(self, session_id: str, reason: str) -> None:
        """Called by the registry when a session bound to us is destroyed."""
        self.retire(session_id)
        if reason == "destroyed":
            self.send({"type": "session-destroyed", "sessionId": session_id})
        else:
            self.send({"type": "session-closed", "sessionId": session_id, "reason": reason})


Handler = Callable[[Connection, dict], Awaitable[None]]


class TerminalGateway:
    """Translates protocol messages into session registry operations."""

    def __init__(
        self,
        registry: SessionRegistry,
        terminal_config: TerminalConfig,
        auth_manager: AuthManager | None = None,
    ):
        self.registry = registry
        self.terminal_config = terminal_config
        self.auth_manager = auth_manager
        self._connections: dict[str, Connection] = {}
        self._handlers: dict[str, Handler] = {
            "create-session": self._handle_create_session,
            "input": self._handle_input,
            "resize": self._handle_resize,
            "destroy-session": self._handle_destroy_session,
            "reconnect-session": self._handle_reconnect_session,
            "get-quick-access-dirs": self._handle_get_quick_access_dirs,
            "get-canned-commands": self._handle_get_canned_commands,
        }

    @property
    def auth_enabled(self) -> bool:
        return self.auth_manager is not None

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    def authenticate(self, credential: str | None) -> str | None:
        """
        Resolve the identity for a new attachment.

        Returns None when authentication is disabled.

        Raises:
            AuthError: authentication is enabled and the credential is
                missing or invalid.
        """
        if self.auth_manager is None:
            return None
        return self.auth_manager.verify(credential)

    def connect(self, identity: str | None = None) -> Connection:
        connection = Connection(connection_id=secrets.token_hex(8), identity=identity)
        self._connections[connection.connection_id] = connection
        who = f" as {identity}" if identity else ""
        logger.info(f"Client connected: {connection.connection_id}{who}")
        return connection

    def disconnect(self, connection: Connection) -> None:
        """Unbind every session the connection held; the shells keep running."""
        logger.info(f"Client disconnected: {connection.connection_id}")
        connection.closed = True
        for session_id in list(connection.authorized_sessions):
            self.registry.unbind(session_id, connection)
        connection.authorized_sessions.clear()
        connection.retired_sessions.clear()
        self._connections.pop(connection.connection_id, None)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_message(self, connection: Connection, message: Any) -> None:
        """Validate and dispatch one inbound message.

        Failures are reported to this connection only.
        """
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            connection.send_error("Invalid message")
            return

        message_type = message["type"]
        handler = self._handlers.get(message_type)
        if handler is None:
            logger.warning(f"Unknown message type from {connection.connection_id}: {message_type}")
            connection.send_error(f"Unknown message type: {message_type}")
            return

        try:
            await handler(connection, message)
        except ValidationError as e:
            session_id = message.get("sessionId")
            logger.warning(f"Invalid {message_type} message from {connection.connection_id}: {e.error_count()} error(s)")
            connection.send_error(
                f"Invalid {message_type} message",
                session_id if isinstance(session_id, str) else None,
                details=e.errors()[0]["msg"],
            )
        except Exception as e:
            logger.exception(f"Failed to handle {message_type} from {connection.connection_id}")
            connection.send_error(f"Failed to process {message_type}", details=str(e))

    def _check_authorized(self, connection: Connection, session_id: str, action: str) -> bool:
        if session_id in connection.authorized_sessions:
            return True
        logger.warning(
            f"Client {connection.connection_id} attempted to {action} "
            f"unauthorized session {short_id(session_id)}"
        )
        connection.send_error("Unauthorized session access", session_id)
        return False

    def _is_retired(self, connection: Connection, session_id: str) -> bool:
        return (
            session_id in connection.retired_sessions
            and session_id not in connection.authorized_sessions
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_create_session(self, connection: Connection, message: dict) -> None:
        msg = CreateSessionMessage.model_validate(message)
        session_id = msg.session_id

        if session_id in connection.authorized_sessions or self.registry.exists(session_id):
            logger.warning(f"Session {short_id(session_id)} already exists")
            connection.send_error("Session already exists", session_id)
            return

        try:
            await self.registry.create(
                session_id,
                cwd=msg.cwd,
                owner=connection.identity,
                connection=connection,
            )
        except SessionExistsError:
            logger.warning(f"Session {short_id(session_id)} already exists")
            connection.send_error("Session already exists", session_id)
            return
        except SessionLimitError as e:
            logger.warning(f"Refused session {short_id(session_id)}: {e}")
            connection.send_error("Maximum number of sessions reached", session_id, details=str(e))
            return
        except SpawnError as e:
            logger.error(f"Failed to create session {short_id(session_id)}: {e}")
            connection.send_error("Failed to create terminal session", session_id, details=str(e))
            return

        connection.authorize(session_id)
        connection.send({"type": "session-created", "sessionId": session_id})
        logger.info(f"Session {short_id(session_id)} created for client {connection.connection_id}")

    async def _handle_input(self, connection: Connection, message: dict) -> None:
        msg = InputMessage.model_validate(message)
        if self._is_retired(connection, msg.session_id):
            logger.debug(f"Ignoring input for ended session {short_id(msg.session_id)}")
            return
        if not self._check_authorized(connection, msg.session_id, "write to"):
            return
        await self.registry.write(msg.session_id, msg.data.encode("utf-8"))

    async def _handle_resize(self, connection: Connection, message: dict) -> None:
        msg = ResizeMessage.model_validate(message)
        if self._is_retired(connection, msg.session_id):
            return
        if not self._check_authorized(connection, msg.session_id, "resize"):
            return
        self.registry.resize(msg.session_id, msg.cols, msg.rows)

    async def _handle_destroy_session(self, connection: Connection, message: dict) -> None:
        msg = SessionMessage.model_validate(message)
        session_id = msg.session_id
        if self._is_retired(connection, session_id):
            connection.send({"type": "session-destroyed", "sessionId": session_id})
            return
        if not self._check_authorized(connection, session_id, "destroy"):
            return

        # The registry reports the destroy to the bound connection
        await self.registry.destroy(session_id)
        if session_id in connection.authorized_sessions:
            connection.retire(session_id)
            connection.send({"type": "session-destroyed", "sessionId": session_id})
        logger.info(f"Session {short_id(session_id)} destroyed by client {connection.connection_id}")

    async def _handle_reconnect_session(self, connection: Connection, message: dict) -> None:
        try:
            msg = SessionMessage.model_validate(message)
        except ValidationError:
            connection.send({"type": "reconnect-failed", "message": "Session ID is required"})
            return
        session_id = msg.session_id

        session = self.registry.get(session_id)
        if session is None:
            logger.warning(f"Session {short_id(session_id)} not found for reconnect")
            connection.send({
                "type": "reconnect-failed",
                "sessionId": session_id,
                "message": "Session not found or expired",
            })
            return

        if self.auth_enabled and session.owner != connection.identity:
            logger.warning(
                f"Client {connection.connection_id} ({connection.identity}) attempted to "
                f"reconnect to session {short_id(session_id)} owned by {session.owner}"
            )
            connection.send({
                "type": "reconnect-failed",
                "sessionId": session_id,
                "message": "Unauthorized session access",
            })
            return

        try:
            previous = self.registry.bind(session_id, connection)
        except SessionNotFoundError:
            connection.send({
                "type": "reconnect-failed",
                "sessionId": session_id,
                "message": "Session not found or expired",
            })
            return

        if previous is not None:
            previous.revoke(session_id)
        connection.authorize(session_id)
        connection.send({"type": "reconnect-success", "sessionId": session_id})
        logger.info(f"Client {connection.connection_id} reconnected to session {short_id(session_id)}")

    async def _handle_get_quick_access_dirs(self, connection: Connection, message: dict) -> None:
        dirs = list(self.terminal_config.folder_shortcuts)
        connection.send({"type": "quick-access-dirs", "list": dirs})
        logger.debug(f"Sent {len(dirs)} quick-access dirs to client {connection.connection_id}")

    async def _handle_get_canned_commands(self, connection: Connection, message: dict) -> None:
        commands = list(self.terminal_config.favorite_commands)
        connection.send({"type": "canned-commands", "list": commands})
        logger.debug(f"Sent {len(commands)} canned commands to client {connection.connection_id}")


async def pump_outbox(connection: Connection, send: Callable[[dict], Awaitable[None]]) -> None:
    """Drain a connection's outbox into the transport until cancelled."""
    while True:
        message = await connection.outbox.get()
        await send(message)

