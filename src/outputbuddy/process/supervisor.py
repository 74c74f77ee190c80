"""Process supervisor — runs one child with its output routed per the plan."""

from __future__ import annotations

import asyncio
import enum
import fcntl
import logging
import os
import signal
import subprocess
import sys
import termios
from dataclasses import dataclass, field
from typing import BinaryIO

from outputbuddy.config import BuddyConfig
from outputbuddy.errors import SIGNAL_EXIT_BASE, OutputBuddyError, SpawnError
from outputbuddy.mapping.plan import Channel, RedirectionPlan, Stream
from outputbuddy.pty.bridge import (
    PseudoTerminal,
    ResizeForwarder,
    StdinForwarder,
    acquire,
    inherit_window_size,
    terminal_fd,
)
from outputbuddy.session.wire import Wire
from outputbuddy.tee.multiplexer import StreamMultiplexer, close_sinks
from outputbuddy.tee.sink import FileSink, Sink, SinkFailure, TerminalSink

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05

# Signals that ask outputbuddy to stop; each is forwarded to the child.
FORWARDED_SIGNALS: tuple[signal.Signals, ...] = (
    signal.SIGINT,
    signal.SIGTERM,
    signal.SIGHUP,
)


def signal_name(signum: int) -> str:
    """``SIGTERM`` for known signals, ``signal 37`` for realtime ones."""
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


class RunState(enum.Enum):
    """Lifecycle of one invocation. ``EXITED`` is reached on every path."""

    PARSING = "parsing"
    SINKS_OPENING = "sinks_opening"
    CHILD_SPAWNING = "child_spawning"
    STREAMING = "streaming"
    DRAINING = "draining"
    EXITED = "exited"


@dataclass
class ExitOutcome:
    """What outputbuddy should exit with."""

    code: int
    signal: int | None = None
    degraded: list[SinkFailure] = field(default_factory=list)
    internal: bool = False

    @classmethod
    def from_returncode(
        cls, returncode: int, degraded: list[SinkFailure] | None = None
    ) -> ExitOutcome:
        """Popen reports death by signal N as ``-N``; shells report ``128 + N``."""
        degraded = degraded or []
        if returncode < 0:
            signum: int = -returncode
            try:
                signum = signal.Signals(signum)
            except ValueError:
                # Realtime signals have no enum member; keep the number.
                logger.debug("Child killed by unnamed signal %d", signum)
            return cls(code=SIGNAL_EXIT_BASE + signum, signal=signum, degraded=degraded)
        return cls(code=returncode, degraded=degraded)

    @classmethod
    def from_error(cls, error: OutputBuddyError) -> ExitOutcome:
        return cls(code=error.exit_code, internal=True)


@dataclass
class ChildProcess:
    """The spawned command, isolated in its own process group."""

    argv: list[str]
    proc: subprocess.Popen
    pid: int = field(init=False)
    pgid: int = field(init=False)

    def __post_init__(self) -> None:
        self.pid = self.proc.pid
        try:
            self.pgid = os.getpgid(self.pid)
        except ProcessLookupError:
            # Already gone; start_new_session made it a group leader.
            self.pgid = self.pid

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode

    def poll(self) -> int | None:
        return self.proc.poll()

    def signal_group(self, signum: int) -> bool:
        """Send ``signum`` to the child's whole process group."""
        try:
            os.killpg(self.pgid, signum)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self.pgid)
            return False
        return True

    def reap(self) -> int:
        return self.proc.wait()


@dataclass
class _Endpoint:
    """Where one channel's streams go in the child, and where we read them.

    ``read_fd`` is None for pure passthrough: the child inherits our own
    stdout/stderr directly.
    """

    channel: Channel
    child_fd: int | None = None
    read_fd: int | None = None
    terminal: PseudoTerminal | None = None
    _pipe_open: bool = False

    @classmethod
    def with_pty(cls, channel: Channel) -> _Endpoint:
        term = acquire()
        return cls(
            channel=channel,
            child_fd=term.slave_fd,
            read_fd=term.master_fd,
            terminal=term,
        )

    @classmethod
    def with_pipe(cls, channel: Channel) -> _Endpoint:
        read_fd, write_fd = os.pipe()
        return cls(channel=channel, child_fd=write_fd, read_fd=read_fd, _pipe_open=True)

    def close_child_side(self) -> None:
        if self.terminal is not None:
            self.terminal.close_slave()
        elif self._pipe_open and self.child_fd is not None:
            os.close(self.child_fd)
            self.child_fd = None

    def release(self) -> None:
        self.close_child_side()
        if self.terminal is not None:
            self.terminal.release()
        elif self._pipe_open and self.read_fd is not None:
            os.close(self.read_fd)
            self.read_fd = None
            self._pipe_open = False


class ProcessSupervisor:
    """Owns one child's lifecycle from opening sinks to reaping.

    Output is drained by the multiplexer on the same event loop, so waiting
    for exit never blocks on a slow sink and a slow sink never hides the
    exit. Signals received by outputbuddy arrive as messages on a queue and
    are handled in the wait loop: forward, wait ``shutdown_grace``, kill.
    """

    def __init__(
        self,
        config: BuddyConfig | None = None,
        wire: Wire | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        self.config = config or BuddyConfig()
        self._wire = wire
        self._stdout = stdout
        self._stderr = stderr
        self._state = RunState.PARSING
        self._cancel: asyncio.Queue[int] | None = None
        self._early_cancel: list[int] = []
        self.child: ChildProcess | None = None

    @property
    def state(self) -> RunState:
        return self._state

    def _cancel_queue(self) -> asyncio.Queue[int]:
        if self._cancel is None:
            raise RuntimeError("supervisor is not running")
        return self._cancel

    def _set_state(self, state: RunState) -> None:
        self._state = state
        logger.debug("State -> %s", state.value)
        if self._wire:
            self._wire.send_state(state.value)

    def cancel(self, signum: int = signal.SIGTERM) -> None:
        """Ask the supervisor to stop the child as if we received ``signum``."""
        if self._cancel is None:
            self._early_cancel.append(signum)
        else:
            self._cancel.put_nowait(signum)

    def run_sync(self, plan: RedirectionPlan, argv: list[str]) -> ExitOutcome:
        return asyncio.run(self.run(plan, argv))

    async def run(self, plan: RedirectionPlan, argv: list[str]) -> ExitOutcome:
        """Run ``argv`` with its output routed by ``plan``.

        Raises:
            SinkOpenError: a destination file could not be created.
            PtyAllocationError: no pseudo-terminal available.
            SpawnError: the program is missing or not executable.
        """
        loop = asyncio.get_running_loop()
        self._cancel = asyncio.Queue()
        for signum in self._early_cancel:
            self._cancel.put_nowait(signum)

        files: dict[str, FileSink] = {}
        endpoints: list[_Endpoint] = []
        mux = StreamMultiplexer(
            chunk_size=self.config.chunk_size,
            max_pending=self.config.max_pending,
            wire=self._wire,
        )
        resize: ResizeForwarder | None = None
        stdin_fwd: StdinForwarder | None = None
        installed: list[signal.Signals] = []

        try:
            self._set_state(RunState.SINKS_OPENING)
            for path in plan.destinations:
                files[path] = FileSink.open(path, strip_ansi=self.config.strip_ansi)

            self._set_state(RunState.CHILD_SPAWNING)
            channels = plan.channels()
            for channel in channels:
                endpoint = self._open_endpoint(channel)
                endpoints.append(endpoint)
                if endpoint.read_fd is not None:
                    mux.add_channel(
                        channel.name, endpoint.read_fd, self._sinks_for(channel, files)
                    )

            terminals = [e.terminal for e in endpoints if e.terminal is not None]
            source_fd = terminal_fd()
            if terminals:
                inherit_window_size(terminals, source_fd)

            stdin_fd = None
            if terminals and _stdin_is_tty():
                stdin_fd = terminals[0].slave_fd
            ctty_fd = _controlling_fd(endpoints, stdin_fd)

            installed = self._install_signal_handlers(loop)
            self.child = self._spawn(argv, endpoints, stdin_fd, ctty_fd)
            for endpoint in endpoints:
                endpoint.close_child_side()

            if terminals:
                resize = ResizeForwarder(terminals, source_fd, wire=self._wire)
                resize.attach(self.child.pgid)
                resize.install(loop)
                if stdin_fd is not None:
                    stdin_fwd = StdinForwarder(0, terminals[0])
                    stdin_fwd.install(loop)

            self._set_state(RunState.STREAMING)
            mux.start()
            returncode = await self._wait(self.child)

            self._set_state(RunState.DRAINING)
            if stdin_fwd is not None:
                stdin_fwd.remove()
            await mux.drain(self.config.drain_timeout)
            mux.close()

            outcome = ExitOutcome.from_returncode(returncode, mux.failures)
            logger.info(
                "Child %d exited (code=%d signal=%s)",
                self.child.pid,
                outcome.code,
                signal_name(outcome.signal) if outcome.signal else None,
            )
            if self._wire:
                self._wire.send_child_exit(
                    outcome.code, int(outcome.signal) if outcome.signal else None
                )
            return outcome
        finally:
            if stdin_fwd is not None:
                stdin_fwd.remove()
            if resize is not None:
                resize.remove()
            for signum in installed:
                loop.remove_signal_handler(signum)
            self._reap_if_running()
            mux.close()
            close_sinks(list(files.values()))
            for endpoint in endpoints:
                endpoint.release()
            self._set_state(RunState.EXITED)

    def _open_endpoint(self, channel: Channel) -> _Endpoint:
        if not channel.files:
            return _Endpoint(channel=channel)
        if self.config.use_pty:
            return _Endpoint.with_pty(channel)
        return _Endpoint.with_pipe(channel)

    def _sinks_for(self, channel: Channel, files: dict[str, FileSink]) -> list[Sink]:
        sinks: list[Sink] = [files[path] for path in channel.files]
        if channel.terminal:
            if Stream.STDOUT in channel.streams:
                sinks.append(TerminalSink("stdout", self._stdout or sys.stdout.buffer))
            else:
                sinks.append(TerminalSink("stderr", self._stderr or sys.stderr.buffer))
        return sinks

    def _spawn(
        self,
        argv: list[str],
        endpoints: list[_Endpoint],
        stdin_fd: int | None,
        ctty_fd: int | None = None,
    ) -> ChildProcess:
        fds: dict[Stream, int | None] = {Stream.STDOUT: None, Stream.STDERR: None}
        for endpoint in endpoints:
            for stream in endpoint.channel.streams:
                fds[stream] = endpoint.child_fd

        try:
            proc = subprocess.Popen(
                argv,
                stdin=stdin_fd,
                stdout=fds[Stream.STDOUT],
                stderr=fds[Stream.STDERR],
                start_new_session=True,
                preexec_fn=_take_terminal(ctty_fd) if ctty_fd is not None else None,
            )
        except FileNotFoundError as e:
            raise SpawnError(argv[0], "command not found") from e
        except PermissionError as e:
            raise SpawnError(argv[0], "permission denied") from e
        except OSError as e:
            raise SpawnError(argv[0], e.strerror or str(e)) from e
        except subprocess.SubprocessError as e:
            raise SpawnError(argv[0], str(e)) from e

        child = ChildProcess(argv=list(argv), proc=proc)
        logger.info(
            "Spawned pid=%d pgid=%d cmd=%s", child.pid, child.pgid, " ".join(argv)
        )
        if self._wire:
            self._wire.send_spawned(child.pid, child.argv)
        return child

    def _install_signal_handlers(
        self, loop: asyncio.AbstractEventLoop
    ) -> list[signal.Signals]:
        installed: list[signal.Signals] = []
        for signum in FORWARDED_SIGNALS:
            try:
                loop.add_signal_handler(signum, self.cancel, signum)
            except (RuntimeError, ValueError) as e:
                # Not the main thread: cancel() is still available.
                logger.debug("Cannot handle %s: %s", signum.name, e)
                continue
            installed.append(signum)
        return installed

    async def _wait(self, child: ChildProcess) -> int:
        """Poll for exit while listening for cancellation."""
        cancel = self._cancel_queue()
        while True:
            ret = child.poll()
            if ret is not None:
                return ret
            try:
                signum = await asyncio.wait_for(cancel.get(), POLL_INTERVAL)
            except asyncio.TimeoutError:
                continue
            return await self._shutdown(child, signum)

    async def _shutdown(self, child: ChildProcess, signum: int) -> int:
        """Forward ``signum``, give the child ``shutdown_grace`` seconds, then
        SIGKILL the group. A second signal skips the rest of the grace."""
        cancel = self._cancel_queue()
        logger.info("Forwarding %s to pgid %d", signal_name(signum), child.pgid)
        child.signal_group(signum)
        if self._wire:
            self._wire.send_signal(signum, "forwarded")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.shutdown_grace
        while loop.time() < deadline:
            ret = child.poll()
            if ret is not None:
                return ret
            remaining = deadline - loop.time()
            try:
                await asyncio.wait_for(
                    cancel.get(), min(POLL_INTERVAL, max(remaining, 0))
                )
            except asyncio.TimeoutError:
                continue
            logger.info("Second signal received, not waiting any longer")
            break

        ret = child.poll()
        if ret is not None:
            return ret

        logger.warning("Child %d did not exit, killing it", child.pid)
        child.signal_group(signal.SIGKILL)
        if self._wire:
            self._wire.send_signal(signal.SIGKILL, "killed")
        return await asyncio.to_thread(child.reap)

    def _reap_if_running(self) -> None:
        """Never leave the child behind when setup or waiting was cut short."""
        if self.child is None or self.child.poll() is not None:
            return
        logger.warning("Killing child %d during cleanup", self.child.pid)
        self.child.signal_group(signal.SIGKILL)
        try:
            self.child.proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            logger.error("Child %d could not be reaped", self.child.pid)


def _stdin_is_tty() -> bool:
    try:
        return os.isatty(0)
    except OSError:
        return False


def _controlling_fd(endpoints: list[_Endpoint], stdin_fd: int | None) -> int | None:
    """Which of the child's fds 0-2 is the slave of the first pty, if any."""
    if stdin_fd is not None:
        return 0
    for endpoint in endpoints:
        if endpoint.terminal is None:
            continue
        return 1 if Stream.STDOUT in endpoint.channel.streams else 2
    return None


def _take_terminal(fd: int):
    """Runs in the forked child, after setsid and the fd redirections."""

    def _acquire() -> None:
        try:
            fcntl.ioctl(fd, termios.TIOCSCTTY, 0)
        except OSError:
            # Best effort: the child still runs, just without /dev/tty.
            return

    return _acquire
