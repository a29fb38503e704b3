"""Spawn, stream and reap one agent CLI invocation at a time."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
from collections.abc import Callable
from types import TracebackType

from attoloop.errors import NonZeroExitError, ProcessStateError, SpawnError, TerminationError
from attoloop.protocol.models import AgentResult, ChildProcessRecord, ProcessState

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str, str], None]

DEFAULT_GRACE_PERIOD_MS = 5000
_READ_CHUNK = 4096
# Grandchildren can inherit our pipes and keep them open after the agent exits.
_DRAIN_TIMEOUT_SECONDS = 2.0
_VERSION_TIMEOUT_SECONDS = 10.0
_REAP_TIMEOUT_SECONDS = 10.0

# Env vars that make a nested claude CLI refuse to start or misbehave.
_STRIP_ENV_VARS = {
    "CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
}


def clean_environment(extra: dict[str, str] | None = None) -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if k not in _STRIP_ENV_VARS}
    if extra:
        env.update(extra)
    return env


class AgentProcessHandle:
    """Owns the single agent child process of a session.

    ``run()`` spawns the CLI in non-interactive print mode and resolves when
    it exits. ``terminate()`` is idempotent and always reaps. Use as an async
    context manager so every exit path terminates a live child.
    """

    def __init__(
        self,
        command: str = "claude",
        args: list[str] | None = None,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS,
    ) -> None:
        self.command = command
        self.args = list(args or [])
        self.cwd = cwd
        self.grace_period_ms = grace_period_ms
        self._env = clean_environment(env)
        self._process: asyncio.subprocess.Process | None = None
        self._record = ChildProcessRecord()

    @property
    def record(self) -> ChildProcessRecord:
        return self._record

    def is_running(self) -> bool:
        return self._record.state in (ProcessState.SPAWNING, ProcessState.RUNNING, ProcessState.TERMINATING)

    def build_argv(self, prompt: str, system_context: str = "") -> list[str]:
        argv = [self.command, *self.args, "--print"]
        if system_context:
            argv += ["--append-system-prompt", system_context]
        argv.append(prompt)
        return argv

    async def run(
        self,
        prompt: str,
        system_context: str = "",
        on_output: OutputCallback | None = None,
    ) -> AgentResult:
        if self.is_running():
            raise ProcessStateError(
                f"run() called while agent pid={self._record.pid} is {self._record.state}"
            )
        argv = self.build_argv(prompt, system_context)
        self._record = ChildProcessRecord(state=ProcessState.SPAWNING)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self._env,
            )
        except asyncio.CancelledError:
            self._record.state = ProcessState.EXITED
            raise
        except FileNotFoundError as exc:
            self._record.state = ProcessState.EXITED
            raise SpawnError(f"Agent binary not found: {self.command}", command=self.command) from exc
        except PermissionError as exc:
            self._record.state = ProcessState.EXITED
            raise SpawnError(f"Permission denied launching {self.command}", command=self.command) from exc
        except OSError as exc:
            self._record.state = ProcessState.EXITED
            raise SpawnError(f"Failed to launch {self.command}: {exc}", command=self.command) from exc

        self._process = process
        self._record.pid = process.pid
        self._record.state = ProcessState.RUNNING
        logger.debug("Spawned agent pid=%s: %s", process.pid, self.command)

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        pumps = [
            asyncio.create_task(self._pump_stream(process.stdout, "stdout", stdout_parts, on_output)),
            asyncio.create_task(self._pump_stream(process.stderr, "stderr", stderr_parts, on_output)),
        ]
        try:
            await process.wait()
            _, pending = await asyncio.wait(pumps, timeout=_DRAIN_TIMEOUT_SECONDS)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        except asyncio.CancelledError:
            for task in pumps:
                task.cancel()
            await self.terminate()
            raise

        self._mark_exited(process.returncode)
        stdout = "".join(stdout_parts)
        stderr = "".join(stderr_parts)
        code = process.returncode if process.returncode is not None else -1
        if code != 0:
            sig = -code if code < 0 else None
            reason = f"killed by signal {sig}" if sig else f"exited with code {code}"
            raise NonZeroExitError(
                f"Agent {reason}",
                exit_code=code if code >= 0 else None,
                signal=sig,
                stdout=stdout,
                stderr=stderr,
            )
        return AgentResult(
            exit_code=code,
            stdout=stdout,
            stderr=stderr,
            duration_s=time.monotonic() - started,
        )

    async def terminate(self, grace_period_ms: int | None = None) -> None:
        """Interrupt, then kill after the grace period, then reap.

        Safe to call any number of times and when nothing is running.
        """
        process = self._process
        if process is None:
            return
        if process.returncode is not None:
            self._mark_exited(process.returncode)
            return

        grace = self.grace_period_ms if grace_period_ms is None else grace_period_ms
        self._record.state = ProcessState.TERMINATING
        logger.info("Terminating agent pid=%s (grace %sms)", process.pid, grace)
        if self._send(process, signal.SIGINT):
            try:
                await asyncio.wait_for(process.wait(), timeout=grace / 1000)
            except asyncio.TimeoutError:
                logger.warning("Agent pid=%s ignored SIGINT; sending SIGKILL", process.pid)
                self._send(process, signal.SIGKILL)
        try:
            await asyncio.wait_for(process.wait(), timeout=_REAP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("Agent pid=%s still not reaped after SIGKILL", process.pid)
        self._mark_exited(process.returncode)

    def kill(self) -> bool:
        """SIGKILL the live child without waiting; for exits that cannot await."""
        process = self._process
        if process is None or process.returncode is not None:
            return False
        logger.warning("Killing agent pid=%s", process.pid)
        return self._send(process, signal.SIGKILL)

    async def is_available(self) -> bool:
        """True when ``<command> --version`` runs and exits cleanly."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command,
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=self._env,
            )
        except OSError:
            return False
        try:
            return await asyncio.wait_for(proc.wait(), timeout=_VERSION_TIMEOUT_SECONDS) == 0
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False

    async def aclose(self) -> None:
        await self.terminate()

    async def __aenter__(self) -> AgentProcessHandle:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def _send(self, process: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
        """Deliver *sig*; False if the process is already gone."""
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            return False
        except OSError as exc:
            err = TerminationError(f"Failed to send {sig.name} to pid={process.pid}: {exc}", pid=process.pid)
            logger.warning("%s", err)
            # Fall through to the kill path rather than waiting on a signal that never arrived.
            if sig is signal.SIGINT:
                self._send(process, signal.SIGKILL)
            return False
        return True

    def _mark_exited(self, returncode: int | None) -> None:
        self._process = None
        self._record.state = ProcessState.EXITED
        if returncode is None:
            return
        if returncode < 0:
            self._record.signal = -returncode
            self._record.exit_code = None
        else:
            self._record.exit_code = returncode

    @staticmethod
    async def _pump_stream(
        stream: asyncio.StreamReader | None,
        stream_name: str,
        sink: list[str],
        on_output: OutputCallback | None,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                sink.append(text)
                if on_output is not None:
                    try:
                        on_output(stream_name, text)
                    except Exception:
                        logger.debug("Output callback failed", exc_info=True)
            if not chunk:
                break
