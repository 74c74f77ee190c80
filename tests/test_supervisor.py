"""Tests for outputbuddy.process.supervisor — real children, real ptys."""

from __future__ import annotations

import asyncio
import io
import os
import pty
import signal
from pathlib import Path

import pytest

from outputbuddy.config import BuddyConfig
from outputbuddy.errors import EXIT_SPAWN, SinkOpenError, SpawnError
from outputbuddy.mapping import parse_mapping
from outputbuddy.process import ExitOutcome, ProcessSupervisor, RunState, signal_name
from outputbuddy.session.wire import EventType, Wire
from outputbuddy.tee.sink import SinkFailure


def _pty_available() -> bool:
    try:
        master, slave = pty.openpty()
    except OSError:
        return False
    os.close(master)
    os.close(slave)
    return True


needs_pty = pytest.mark.skipif(not _pty_available(), reason="no pty available")

COLOR_IF_TTY = (
    'if [ -t 1 ]; then printf "\\033[31mred\\033[0m\\n"; else echo plain; fi'
)


def _supervisor(
    use_pty: bool = True, wire: Wire | None = None, **overrides: object
) -> tuple[ProcessSupervisor, io.BytesIO, io.BytesIO]:
    stdout, stderr = io.BytesIO(), io.BytesIO()
    config = BuddyConfig(use_pty=use_pty, **overrides)
    return ProcessSupervisor(config, wire=wire, stdout=stdout, stderr=stderr), stdout, stderr


# ---------------------------------------------------------------------------
# ExitOutcome
# ---------------------------------------------------------------------------


class TestExitOutcome:
    def test_normal_exit(self) -> None:
        outcome = ExitOutcome.from_returncode(3)
        assert outcome.code == 3
        assert outcome.signal is None
        assert not outcome.internal

    def test_signaled(self) -> None:
        outcome = ExitOutcome.from_returncode(-signal.SIGKILL)
        assert outcome.code == 137
        assert outcome.signal == signal.SIGKILL

    def test_unnamed_signal_kept_as_number(self) -> None:
        outcome = ExitOutcome.from_returncode(-37)
        assert outcome.code == 165
        assert outcome.signal == 37
        assert signal_name(outcome.signal) == "signal 37"

    def test_signal_name(self) -> None:
        assert signal_name(signal.SIGTERM) == "SIGTERM"
        assert signal_name(int(signal.SIGINT)) == "SIGINT"

    def test_degraded_carried(self) -> None:
        failure = SinkFailure(sink="a.log", error="disk full")
        outcome = ExitOutcome.from_returncode(0, [failure])
        assert outcome.degraded == [failure]

    def test_from_error(self) -> None:
        outcome = ExitOutcome.from_error(SpawnError("nope", "command not found"))
        assert outcome.code == EXIT_SPAWN
        assert outcome.internal


# ---------------------------------------------------------------------------
# Output routing through ptys
# ---------------------------------------------------------------------------


@needs_pty
class TestPtyRouting:
    async def test_combined_file_exact_bytes(self, tmp_path: Path) -> None:
        log = tmp_path / "out.log"
        supervisor, _, _ = _supervisor()
        outcome = await supervisor.run(
            parse_mapping([f"1+2={log}"]), ["sh", "-c", 'printf "a\\nb\\n"']
        )
        assert outcome.code == 0
        assert log.read_bytes() == b"a\nb\n"

    async def test_echo_to_combined_log(self, tmp_path: Path) -> None:
        log = tmp_path / "test.log"
        supervisor, _, _ = _supervisor()
        outcome = await supervisor.run(parse_mapping([f"2+1={log}"]), ["echo", "test"])
        assert outcome.code == 0
        assert log.exists()
        assert b"test" in log.read_bytes()

    async def test_separate_files_not_mixed(self, tmp_path: Path) -> None:
        out, err = tmp_path / "out.log", tmp_path / "err.log"
        supervisor, _, _ = _supervisor()
        await supervisor.run(
            parse_mapping([f"1={out}", f"2={err}"]),
            ["sh", "-c", "echo X; echo Y 1>&2"],
        )
        assert out.read_bytes() == b"X\n"
        assert err.read_bytes() == b"Y\n"

    async def test_colors_preserved(self, tmp_path: Path) -> None:
        log = tmp_path / "out.log"
        supervisor, _, _ = _supervisor()
        await supervisor.run(parse_mapping([f"1={log}"]), ["sh", "-c", COLOR_IF_TTY])
        assert log.read_bytes() == b"\x1b[31mred\x1b[0m\n"

    async def test_stderr_sees_terminal_too(self, tmp_path: Path) -> None:
        log = tmp_path / "err.log"
        supervisor, _, _ = _supervisor()
        await supervisor.run(
            parse_mapping([f"2={log}"]),
            ["sh", "-c", "if [ -t 2 ]; then echo tty >&2; else echo notty >&2; fi"],
        )
        assert log.read_bytes() == b"tty\n"

    async def test_echo_token_tees_to_terminal(self, tmp_path: Path) -> None:
        log = tmp_path / "out.log"
        supervisor, stdout, _ = _supervisor()
        await supervisor.run(parse_mapping([f"1={log}", "1"]), ["echo", "both"])
        assert log.read_bytes() == b"both\n"
        assert stdout.getvalue() == b"both\n"

    async def test_stderr_echo_goes_to_stderr(self, tmp_path: Path) -> None:
        log = tmp_path / "err.log"
        supervisor, stdout, stderr = _supervisor()
        await supervisor.run(
            parse_mapping([f"2={log}", "2"]), ["sh", "-c", "echo oops >&2"]
        )
        assert stderr.getvalue() == b"oops\n"
        assert stdout.getvalue() == b""

    async def test_large_output_not_truncated(self, tmp_path: Path) -> None:
        log = tmp_path / "out.log"
        script = 'i=0; while [ $i -lt 3000 ]; do echo "line $i"; i=$((i+1)); done'
        supervisor, _, _ = _supervisor()
        await supervisor.run(parse_mapping([f"1+2={log}"]), ["sh", "-c", script])
        expected = b"".join(f"line {i}\n".encode() for i in range(3000))
        assert log.read_bytes() == expected

    async def test_strip_ansi_config(self, tmp_path: Path) -> None:
        log = tmp_path / "out.log"
        supervisor, _, _ = _supervisor(strip_ansi=True)
        await supervisor.run(parse_mapping([f"1={log}"]), ["sh", "-c", COLOR_IF_TTY])
        assert log.read_bytes() == b"red\n"


# ---------------------------------------------------------------------------
# Output routing through pipes
# ---------------------------------------------------------------------------


class TestPipeRouting:
    async def test_separate_files(self, tmp_path: Path) -> None:
        out, err = tmp_path / "out.log", tmp_path / "err.log"
        supervisor, _, _ = _supervisor(use_pty=False)
        outcome = await supervisor.run(
            parse_mapping([f"1={out}", f"2={err}"]),
            ["sh", "-c", "echo X; echo Y 1>&2"],
        )
        assert outcome.code == 0
        assert out.read_bytes() == b"X\n"
        assert err.read_bytes() == b"Y\n"

    async def test_no_terminal_without_pty(self, tmp_path: Path) -> None:
        log = tmp_path / "out.log"
        supervisor, _, _ = _supervisor(use_pty=False)
        await supervisor.run(parse_mapping([f"1={log}"]), ["sh", "-c", COLOR_IF_TTY])
        assert log.read_bytes() == b"plain\n"


# ---------------------------------------------------------------------------
# Exit status
# ---------------------------------------------------------------------------


class TestExitStatus:
    async def test_exit_code_propagates(self, tmp_path: Path) -> None:
        supervisor, _, _ = _supervisor(use_pty=False)
        outcome = await supervisor.run(
            parse_mapping([f"1+2={tmp_path / 'x.log'}"]), ["sh", "-c", "exit 7"]
        )
        assert outcome.code == 7
        assert outcome.signal is None

    async def test_killed_by_signal(self, tmp_path: Path) -> None:
        supervisor, _, _ = _supervisor(use_pty=False)
        outcome = await supervisor.run(
            parse_mapping([f"1+2={tmp_path / 'x.log'}"]),
            ["sh", "-c", "kill -TERM $$"],
        )
        assert outcome.signal == signal.SIGTERM
        assert outcome.code == 128 + signal.SIGTERM

    @pytest.mark.skipif(not hasattr(signal, "SIGRTMIN"), reason="no realtime signals")
    async def test_killed_by_realtime_signal(self, tmp_path: Path) -> None:
        signum = int(signal.SIGRTMIN) + 3
        supervisor, _, _ = _supervisor(use_pty=False)
        outcome = await supervisor.run(
            parse_mapping([f"1+2={tmp_path / 'x.log'}"]),
            ["sh", "-c", f"kill -{signum} $$"],
        )
        assert outcome.signal == signum
        assert outcome.code == 128 + signum

    async def test_state_sequence(self, tmp_path: Path) -> None:
        wire = Wire()
        q = wire.subscribe()
        supervisor, _, _ = _supervisor(use_pty=False, wire=wire)
        await supervisor.run(parse_mapping([f"1+2={tmp_path / 'x.log'}"]), ["true"])
        assert supervisor.state == RunState.EXITED

        states = []
        exit_events = []
        while not q.empty():
            event = q.get_nowait()
            assert event is not None
            if event.type == EventType.STATE:
                states.append(event.data["state"])
            elif event.type == EventType.CHILD_EXIT:
                exit_events.append(event)
        assert states == [
            "sinks_opening",
            "child_spawning",
            "streaming",
            "draining",
            "exited",
        ]
        assert len(exit_events) == 1
        assert exit_events[0].data["exit_code"] == 0


# ---------------------------------------------------------------------------
# Setup failures
# ---------------------------------------------------------------------------


class TestSetupFailures:
    async def test_missing_executable(self, tmp_path: Path) -> None:
        log = tmp_path / "out.log"
        supervisor, _, _ = _supervisor()
        with pytest.raises(SpawnError) as exc_info:
            await supervisor.run(
                parse_mapping([f"1+2={log}"]), ["definitely-not-a-real-command-xyz"]
            )
        assert exc_info.value.exit_code == EXIT_SPAWN
        assert "definitely-not-a-real-command-xyz" in str(exc_info.value)
        assert supervisor.state == RunState.EXITED
        assert supervisor.child is None
        # Created before the spawn attempt, left in place but empty.
        assert log.read_bytes() == b""

    async def test_not_executable(self, tmp_path: Path) -> None:
        script = tmp_path / "script.sh"
        script.write_text("#!/bin/sh\necho hi\n")
        os.chmod(script, 0o644)
        supervisor, _, _ = _supervisor(use_pty=False)
        with pytest.raises(SpawnError, match="permission denied"):
            await supervisor.run(
                parse_mapping([f"1={tmp_path / 'out.log'}"]), [str(script)]
            )

    async def test_sink_open_failure_spawns_nothing(self, tmp_path: Path) -> None:
        good = tmp_path / "good.log"
        bad = tmp_path / "missing" / "bad.log"
        marker = tmp_path / "ran"
        supervisor, _, _ = _supervisor()
        with pytest.raises(SinkOpenError) as exc_info:
            await supervisor.run(
                parse_mapping([f"1={good}", f"2={bad}"]), ["touch", str(marker)]
            )
        assert exc_info.value.path == str(bad)
        assert supervisor.child is None
        assert supervisor.state == RunState.EXITED
        assert not marker.exists()
        assert good.exists()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_signal_forwarded(self, tmp_path: Path) -> None:
        wire = Wire()
        q = wire.subscribe()
        supervisor, _, _ = _supervisor(use_pty=False, wire=wire, shutdown_grace=5.0)
        asyncio.get_running_loop().call_later(0.3, supervisor.cancel, signal.SIGTERM)
        outcome = await supervisor.run(
            parse_mapping([f"1+2={tmp_path / 'x.log'}"]), ["sleep", "30"]
        )
        assert outcome.signal == signal.SIGTERM

        actions = []
        while not q.empty():
            event = q.get_nowait()
            if event is not None and event.type == EventType.SIGNAL:
                actions.append(event.data["action"])
        assert actions == ["forwarded"]

    async def test_stubborn_child_killed(self, tmp_path: Path) -> None:
        wire = Wire()
        q = wire.subscribe()
        supervisor, _, _ = _supervisor(use_pty=False, wire=wire, shutdown_grace=0.3)
        asyncio.get_running_loop().call_later(0.3, supervisor.cancel, signal.SIGTERM)
        outcome = await supervisor.run(
            parse_mapping([f"1+2={tmp_path / 'x.log'}"]),
            ["sh", "-c", 'trap "" TERM; sleep 30'],
        )
        assert outcome.signal == signal.SIGKILL
        assert outcome.code == 137

        actions = []
        while not q.empty():
            event = q.get_nowait()
            if event is not None and event.type == EventType.SIGNAL:
                actions.append(event.data["action"])
        assert actions == ["forwarded", "killed"]

    async def test_cancel_before_run(self, tmp_path: Path) -> None:
        supervisor, _, _ = _supervisor(use_pty=False, shutdown_grace=1.0)
        supervisor.cancel(signal.SIGTERM)
        outcome = await supervisor.run(
            parse_mapping([f"1+2={tmp_path / 'x.log'}"]), ["sleep", "30"]
        )
        assert outcome.signal == signal.SIGTERM

    async def test_cancel_queue_outside_run_rejected(self) -> None:
        supervisor, _, _ = _supervisor(use_pty=False)
        with pytest.raises(RuntimeError, match="not running"):
            supervisor._cancel_queue()


# ---------------------------------------------------------------------------
# Controlling terminal
# ---------------------------------------------------------------------------


@needs_pty
class TestControllingTerminal:
    async def test_child_can_open_dev_tty(self, tmp_path: Path) -> None:
        log = tmp_path / "out.log"
        supervisor, _, _ = _supervisor()
        outcome = await supervisor.run(
            parse_mapping([f"1={log}"]), ["sh", "-c", "echo hi > /dev/tty"]
        )
        assert outcome.code == 0
        assert log.read_bytes() == b"hi\n"

