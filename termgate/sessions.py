"""
Terminal session registry.

Owns the authoritative table of shell sessions. A session outlives the
connection that created it: disconnecting only unbinds the output stream,
and the session is destroyed explicitly, when its shell exits, or when the
expiry sweeper finds it untouched past its deadline.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from termgate.pty_process import PtyProcess, SpawnError

if TYPE_CHECKING:
    from termgate.gateway import Connection

logger = logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 24

Spawner = Callable[..., Awaitable[PtyProcess]]


def short_id(session_id: str) -> str:
    return session_id[:12]


# =============================================================================
# ERRORS
# =============================================================================


class SessionError(Exception):
    """Base class for session registry errors."""


class SessionExistsError(SessionError):
    """A session with this id already exists (or is being created)."""


class SessionNotFoundError(SessionError):
    """No live session with this id."""


class SessionLimitError(SessionError):
    """The concurrent session limit has been reached."""


# =============================================================================
# SESSION STATE MACHINE
# =============================================================================


class SessionState(Enum):
    """State machine for session lifecycle."""
    CREATING = auto()   # Placeholder reserved, shell being spawned
    ACTIVE = auto()     # Bound to a connection
    ORPHANED = auto()   # Shell alive, nobody attached
    DESTROYED = auto()  # Terminal


@dataclass
class Session:
    """
    A reconnectable shell session.

    State transitions:
        CREATING -> ACTIVE <-> ORPHANED -> DESTROYED
    Any live state may go straight to DESTROYED; nothing leaves it.
    """
    session_id: str
    cwd: str
    owner: str | None = None
    process: PtyProcess | None = None
    connection: Optional["Connection"] = None
    created_at: datetime = field(default_factory=datetime.now)
    last_accessed: datetime = field(default_factory=datetime.now)
    expires_at: datetime = field(default_factory=datetime.now)
    dropped_bytes: int = 0  # Output produced while orphaned (not replayed)

    _state: SessionState = SessionState.CREATING
    _decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._state in (SessionState.ACTIVE, SessionState.ORPHANED)

    def deliver(self, data: bytes) -> None:
        """Forward process output to the bound connection, if any.

        Decoding is incremental so multi-byte characters split across reads
        survive. Without a bound connection the bytes are dropped.
        """
        text = self._decoder.decode(data)
        if not text:
            return
        if self.connection is not None:
            self.connection.send_output(self.session_id, text)
        else:
            self.dropped_bytes += len(data)
            logger.debug(f"Dropped {len(data)} bytes for orphaned session {short_id(self.session_id)}")

    def to_dict(self) -> dict:
        return {
            "id": self.session_id,
            "state": self._state.name.lower(),
            "cwd": self.cwd,
            "created_at": self.created_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


def resolve_working_directory(requested: str | None, allowed_root: str) -> str:
    """Resolve the working directory for a new shell.

    The configured root falls back to the home directory when it does not
    exist. A requested path (absolute, ``~``-relative, or relative to the
    root) is used only if it is an existing directory inside the root;
    anything else falls back to the root.
    """
    root = Path(os.path.expanduser(allowed_root)).resolve()
    if not root.is_dir():
        logger.warning(f"Allowed path does not exist: {root}, using home directory")
        root = Path.home().resolve()

    if not requested:
        return str(root)

    candidate = Path(os.path.expanduser(requested))
    if not candidate.is_absolute():
        candidate = root / candidate
    candidate = candidate.resolve()

    if not candidate.is_dir():
        logger.warning(f"Requested cwd does not exist: {candidate}, using {root}")
        return str(root)
    if candidate != root and root not in candidate.parents:
        logger.warning(f"Requested cwd {candidate} is outside {root}, using {root}")
        return str(root)
    return str(candidate)


class SessionRegistry:
    """
    Manages sessions with proper concurrency control.

    A single asyncio lock guards the table. ``create`` reserves the id with a
    CREATING placeholder inside the lock and spawns outside it, so a
    concurrent duplicate create fails without spawning. Methods that never
    await (touch, bind, unbind, process-exit handling) are atomic with
    respect to every other registry operation on the event loop.
    """

    def __init__(
        self,
        shell: str,
        allowed_path: str,
        session_timeout: timedelta,
        max_sessions: int = 10,
        spawner: Spawner = PtyProcess.spawn,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.shell = shell
        self.allowed_path = allowed_path
        self.session_timeout = session_timeout
        self.max_sessions = max_sessions
        self._spawner = spawner
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._closing = False  # Set by shutdown(); no new sessions after that

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        """Get a live session by id (placeholders being spawned are excluded)."""
        session = self._sessions.get(session_id)
        if session is not None and session.is_live:
            return session
        return None

    def exists(self, session_id: str) -> bool:
        """True if the id is taken, including by a session still being created."""
        return session_id in self._sessions

    def list_sessions(self, owner: str | None = None) -> list[Session]:
        sessions = [s for s in self._sessions.values() if s.is_live]
        if owner is not None:
            sessions = [s for s in sessions if s.owner == owner]
        return sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _stamp(self, session: Session) -> None:
        now = self._clock()
        session.last_accessed = now
        session.expires_at = now + self.session_timeout

    async def create(
        self,
        session_id: str,
        cwd: str | None = None,
        owner: str | None = None,
        connection: Optional["Connection"] = None,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ) -> Session:
        """
        Create a session and spawn its shell.

        If ``connection`` is given it is bound before the shell starts, so
        the first prompt is not lost.

        Raises:
            SessionExistsError: the id is already taken.
            SessionLimitError: ``max_sessions`` sessions already exist.
            SpawnError: the shell failed to start, or the registry shut down
                while it was starting; no entry or process is left behind.
        """
        async with self._lock:
            if self._closing:
                raise SpawnError("Session manager is shutting down")
            if session_id in self._sessions:
                raise SessionExistsError(f"Session {session_id} already exists")
            if len(self._sessions) >= self.max_sessions:
                raise SessionLimitError(f"Maximum of {self.max_sessions} sessions reached")

            session = Session(
                session_id=session_id,
                cwd=resolve_working_directory(cwd, self.allowed_path),
                owner=owner,
                connection=connection,
                created_at=self._clock(),
            )
            self._stamp(session)
            self._sessions[session_id] = session

        logger.info(f"Creating session {short_id(session_id)} (shell={self.shell}, cwd={session.cwd})")

        # Spawn outside the lock; the placeholder keeps the id reserved
        try:
            process = await self._spawner(self.shell, session.cwd, cols=cols, rows=rows)
        except Exception:
            async with self._lock:
                if self._sessions.get(session_id) is session:
                    del self._sessions[session_id]
            session._state = SessionState.DESTROYED
            session.connection = None
            raise

        session.process = process
        process.on_data(session.deliver)
        process.on_exit(lambda code, sig: self._on_process_exit(session, code, sig))

        async with self._lock:
            registered = self._sessions.get(session_id) is session
            abandoned = self._closing or not registered
            if abandoned:
                if registered:
                    del self._sessions[session_id]
                session._state = SessionState.DESTROYED
                session.connection = None
            else:
                session._state = SessionState.ACTIVE if session.connection else SessionState.ORPHANED
                self._stamp(session)

        if abandoned:
            logger.warning(f"Session {short_id(session_id)} abandoned while spawning, killing pid {process.pid}")
            await process.kill()
            raise SpawnError(f"Session {session_id} was removed while its shell was starting")

        logger.info(f"Session {short_id(session_id)} created (pid={process.pid})")
        return session

    def touch(self, session_id: str) -> bool:
        """Push the session's deadline to now + timeout."""
        session = self.get(session_id)
        if session is None:
            return False
        self._stamp(session)
        return True

    def bind(self, session_id: str, connection: "Connection") -> Optional["Connection"]:
        """
        Make ``connection`` the sole receiver of the session's output.

        Returns the previously bound connection when it was a different one,
        so the caller can revoke its access.

        Raises:
            SessionNotFoundError: no live session with this id.
        """
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        previous = session.connection
        session.connection = connection
        session._state = SessionState.ACTIVE
        self._stamp(session)
        if previous is connection:
            return None
        return previous

    def unbind(self, session_id: str, connection: "Connection") -> None:
        """Detach ``connection`` if it is the bound one; the shell keeps running."""
        session = self.get(session_id)
        if session is None:
            return
        if session.connection is connection:
            session.connection = None
            session._state = SessionState.ORPHANED
            logger.info(f"Session {short_id(session_id)} orphaned, will persist until timeout")
        self._stamp(session)

    async def write(self, session_id: str, data: bytes) -> bool:
        """Send input to the session's shell. Returns False if it is gone."""
        session = self.get(session_id)
        if session is None:
            logger.warning(f"Attempted to write to non-existent session: {short_id(session_id)}")
            return False
        self._stamp(session)
        try:
            await session.process.write(data)
        except OSError as e:
            logger.warning(f"Failed to write to session {short_id(session_id)}: {e}")
            return False
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        session = self.get(session_id)
        if session is None:
            logger.warning(f"Attempted to resize non-existent session: {short_id(session_id)}")
            return False
        try:
            session.process.resize(cols, rows)
        except OSError as e:
            logger.warning(f"Failed to resize session {short_id(session_id)}: {e}")
            return False
        logger.debug(f"Resized session {short_id(session_id)} to {cols}x{rows}")
        return True

    async def _remove(
        self,
        session_id: str,
        reason: str,
        expired_before: datetime | None = None,
    ) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_live:
                return False
            if expired_before is not None and session.expires_at >= expired_before:
                return False
            session._state = SessionState.DESTROYED
            del self._sessions[session_id]
            connection = session.connection
            session.connection = None

        # Kill outside the lock
        await session.process.kill()
        logger.info(f"Session {short_id(session_id)} destroyed ({reason})")
        if connection is not None:
            connection.session_ended(session_id, reason)
        return True

    async def destroy(self, session_id: str, reason: str = "destroyed") -> bool:
        """
        Destroy a session: kill its shell and drop the entry.

        Idempotent: unknown, already-destroyed, or still-spawning ids return
        False. The bound connection (if any) is told why the session ended.
        """
        return await self._remove(session_id, reason)

    async def sweep_expired(self, now: datetime | None = None) -> list[str]:
        """Destroy every live session whose deadline is before ``now``."""
        now = now or self._clock()
        async with self._lock:
            candidates = [
                sid for sid, s in self._sessions.items()
                if s.is_live and s.expires_at < now
            ]

        destroyed = []
        for sid in candidates:
            # Re-checked under the lock: a reconnect may have touched it since
            if await self._remove(sid, "expired", expired_before=now):
                destroyed.append(sid)
        return destroyed

    def _on_process_exit(self, session: Session, exit_code: int | None, exit_signal: int | None) -> None:
        if session.state == SessionState.DESTROYED:
            return  # destroy() killed it and already reported
        logger.info(
            f"Session {short_id(session.session_id)} shell exited "
            f"(code={exit_code}, signal={exit_signal})"
        )
        session._state = SessionState.DESTROYED
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
        connection = session.connection
        session.connection = None
        if connection is not None:
            connection.session_ended(session.session_id, "exited")

    async def shutdown(self) -> None:
        """Destroy every session. Called when the manager stops."""
        logger.info("Cleaning up all terminal sessions")
        async with self._lock:
            self._closing = True
        # Placeholders still spawning are cleaned up by their create()
        for session_id in list(self._sessions.keys()):
            try:
                await self._remove(session_id, "shutdown")
            except Exception as e:
                logger.error(f"Error destroying session {short_id(session_id)}: {e}")
