"""Pseudo-terminal backed shell processes.

One PtyProcess per terminal session. The child runs as the leader of its own
session with the pty slave as controlling terminal, so job control and ^C
behave as in a local terminal. Output is read on the event loop thread and
handed to a single data callback in the exact order it was produced.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import signal
from typing import Callable, Optional

import ptyprocess

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
KILL_GRACE_SECONDS = 0.5  # Between SIGHUP and SIGKILL

DataCallback = Callable[[bytes], None]
ExitCallback = Callable[[Optional[int], Optional[int]], None]


class SpawnError(Exception):
    """The shell could not be started."""


class PtyStatus(enum.Enum):
    RUNNING = "running"
    KILLING = "killing"  # Kill requested, waiting for the child to be reaped
    EXITED = "exited"


class PtyProcess:
    """A running shell attached to a pseudo-terminal.

    Create instances with :meth:`spawn`. ``on_exit`` callbacks fire exactly
    once, whether the shell exits on its own or is killed; afterwards the
    handle rejects writes.
    """

    def __init__(self, proc: ptyprocess.PtyProcess, cols: int, rows: int) -> None:
        self._proc = proc
        self._fd = proc.fd
        self.pid: int = proc.pid
        self.cols = cols
        self.rows = rows
        self._status = PtyStatus.RUNNING
        self._loop: asyncio.AbstractEventLoop | None = None
        self._write_lock = asyncio.Lock()
        self._on_data: DataCallback | None = None
        self._on_exit: ExitCallback | None = None
        self._exit_task: asyncio.Task | None = None
        self._hung_up = asyncio.Event()  # Set once the pty reports EOF
        self.exit_code: int | None = None
        self.exit_signal: int | None = None

    @classmethod
    async def spawn(
        cls,
        shell: str,
        cwd: str,
        cols: int = 80,
        rows: int = 24,
        env: dict[str, str] | None = None,
    ) -> PtyProcess:
        """Start ``shell`` in ``cwd`` on a new pty of the given size.

        ``cwd`` must already be validated. Forking happens in a worker thread
        so a slow spawn does not stall other connections.

        Raises:
            SpawnError: the shell binary is missing, not executable, or the
                fork/exec failed.
        """
        full_env = {**os.environ, **(env or {})}
        full_env["TERM"] = "xterm-256color"
        full_env["COLORTERM"] = "truecolor"

        try:
            proc = await asyncio.to_thread(
                ptyprocess.PtyProcess.spawn,
                [shell],
                cwd=cwd,
                env=full_env,
                dimensions=(rows, cols),
            )
        except (OSError, ptyprocess.PtyProcessError) as e:
            raise SpawnError(f"Failed to start {shell}: {e}") from e

        process = cls(proc, cols, rows)
        process._start_reader(asyncio.get_running_loop())
        logger.info("Spawned %s (pid=%d, cwd=%s, %dx%d)", shell, proc.pid, cwd, cols, rows)
        return process

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on_data(self, callback: DataCallback | None) -> None:
        """Set the output callback. Chunks arrive in production order."""
        self._on_data = callback

    def on_exit(self, callback: ExitCallback | None) -> None:
        """Set the callback receiving ``(exit_code, signal)`` when the process ends."""
        self._on_exit = callback

    # ------------------------------------------------------------------
    # Reading / exit detection
    # ------------------------------------------------------------------

    def _start_reader(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        loop.add_reader(self._fd, self._read_ready)

    def _read_ready(self) -> None:
        try:
            data = os.read(self._fd, READ_CHUNK_SIZE)
        except OSError:
            # EIO once every slave-side descriptor is closed
            data = b""

        if not data:
            self._begin_exit()
            return

        if self._on_data is not None:
            try:
                self._on_data(data)
            except Exception:
                logger.exception("Error in data callback for pid %d", self.pid)

    def _begin_exit(self) -> None:
        if self._exit_task is not None:
            return
        self._hung_up.set()
        self._loop.remove_reader(self._fd)
        self._exit_task = self._loop.create_task(self._reap())

    def _wait_and_close(self) -> None:
        try:
            self._proc.wait()
        except ptyprocess.PtyProcessError as e:
            logger.warning("Could not reap pid %d: %s", self.pid, e)
        self._proc.close(force=True)

    async def _reap(self) -> None:
        await asyncio.to_thread(self._wait_and_close)
        self.exit_code = self._proc.exitstatus
        self.exit_signal = self._proc.signalstatus
        self._status = PtyStatus.EXITED
        logger.info(
            "Process %d exited (code=%s, signal=%s)", self.pid, self.exit_code, self.exit_signal
        )
        if self._on_exit is not None:
            try:
                self._on_exit(self.exit_code, self.exit_signal)
            except Exception:
                logger.exception("Error in exit callback for pid %d", self.pid)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self._fd, view)
            view = view[written:]

    async def write(self, data: bytes) -> None:
        """Write ``data`` to the terminal.

        Writes on one process are serialized; a single write is never
        interleaved with another.

        Raises:
            OSError: the process has exited or is being killed.
        """
        async with self._write_lock:
            if self._status != PtyStatus.RUNNING:
                raise OSError(f"Process {self.pid} is not running")
            await asyncio.to_thread(self._write_all, data)

    def resize(self, cols: int, rows: int) -> None:
        if self._status != PtyStatus.RUNNING:
            return
        self._proc.setwinsize(rows, cols)
        self.cols = cols
        self.rows = rows

    def _signal_group(self, sig: signal.Signals) -> None:
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self.pid)
        except OSError as e:
            logger.warning("Error sending %s to process group %d: %s", sig.name, self.pid, e)

    async def kill(self) -> None:
        """Hang up the process group, then SIGKILL whatever is left.

        Waits until the child is reaped.
        """
        if self._exit_task is None:
            self._status = PtyStatus.KILLING
            self._signal_group(signal.SIGHUP)
            try:
                await asyncio.wait_for(self._hung_up.wait(), KILL_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.debug("Process %d ignored SIGHUP, sending SIGKILL", self.pid)
                self._signal_group(signal.SIGKILL)
                self._begin_exit()
        await asyncio.shield(self._exit_task)

    @property
    def alive(self) -> bool:
        return self._status == PtyStatus.RUNNING

    @property
    def status(self) -> PtyStatus:
        return self._status
