"""Iteration scheduler: run the agent until done, stopped or out of budget.

One agent invocation at a time. The status artifact is re-read after every
invocation; stop requests and stagnation are only evaluated between
iterations, so the work in flight always finishes. Completion takes
precedence over both stagnation and a concurrent stop request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from attoloop.config.schema import VerificationConfig
from attoloop.control.stop_signal import StopSignal
from attoloop.coordinator.event_bus import EventBus, LoopEvent
from attoloop.coordinator.stats import calculate_stats
from attoloop.coordinator.verification import Verifier, build_resume_instructions
from attoloop.errors import NonZeroExitError, SpawnError, VerificationExhaustedError, tail
from attoloop.process.agent_process import OutputCallback
from attoloop.prompts import PromptBuilder
from attoloop.protocol.models import (
    AgentResult,
    AutonomousStatus,
    ExecutionMode,
    ExecutionSession,
    IncrementalStatus,
    SessionOutcome,
    SessionPhase,
    StatusSnapshot,
    StopReason,
    StopSource,
    TerminalState,
    VerificationResult,
)
from attoloop.status.store import StatusStore, consistency_warnings
from attoloop.status.watcher import ChangeWatcher

log = logging.getLogger(__name__)

_TERMINAL_PHASE = {
    TerminalState.COMPLETED: SessionPhase.COMPLETED,
    TerminalState.STOPPED: SessionPhase.STOPPED,
    TerminalState.ERRORED: SessionPhase.ERRORED,
}


class AgentRunner(Protocol):
    async def run(
        self, prompt: str, system_context: str = "", on_output: OutputCallback | None = None
    ) -> AgentResult: ...

    async def terminate(self, grace_period_ms: int | None = None) -> None: ...


class IterationScheduler:
    """Drives one :class:`ExecutionSession` to a terminal state."""

    def __init__(
        self,
        session: ExecutionSession,
        *,
        agent: AgentRunner,
        store: StatusStore,
        stop_signal: StopSignal,
        prompts: PromptBuilder,
        instructions: str,
        verifier: Verifier | None = None,
        verification: VerificationConfig | None = None,
        watcher: ChangeWatcher | None = None,
        bus: EventBus | None = None,
        on_output: OutputCallback | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.session = session
        self.agent = agent
        self.store = store
        self.stop_signal = stop_signal
        self.prompts = prompts
        self.instructions = instructions
        self.verifier = verifier
        self.verification = verification or VerificationConfig()
        self.watcher = watcher
        self.bus = bus or EventBus()
        self.on_output = on_output
        self._sleep = sleep
        self._active_instructions = instructions
        self._last_verification: VerificationResult | None = None

    async def run(self) -> SessionOutcome:
        s = self.session
        self._emit(
            "session_start",
            message=f"{s.mode} mode, up to {s.max_iterations} iterations",
            mode=str(s.mode),
            max_iterations=s.max_iterations,
        )
        try:
            self.stop_signal.init()
            if self.watcher is not None:
                self.watcher.start()
            s.phase = SessionPhase.RUNNING
            await self._loop()
        except asyncio.CancelledError:
            self._finish(TerminalState.STOPPED, StopReason.INTERRUPTED)
            raise
        except Exception as exc:
            # Anything else escaping the loop is a programmer error.
            log.exception("Session aborted")
            s.last_error = f"{type(exc).__name__}: {exc}"
            self._finish(TerminalState.ERRORED, None)
            raise
        finally:
            await self._shutdown()
            self._emit(
                "session_end",
                message=str(s.reason or s.terminal_state),
                terminal_state=str(s.terminal_state),
                reason=str(s.reason) if s.reason else None,
            )
        return self.outcome()

    def outcome(self) -> SessionOutcome:
        s = self.session
        return SessionOutcome(
            terminal_state=s.terminal_state,
            reason=s.reason,
            iterations=s.iterations_run,
            verification=self._last_verification,
            needs_manual_review=s.needs_manual_review,
            error=s.last_error,
            last_output=s.last_output,
        )

    def check_cancellation(self) -> StopReason | None:
        """Safe-point check; only called between iterations."""
        state = self.stop_signal.get_state()
        if not state.requested:
            return None
        return StopReason.STOP_FILE if state.source is StopSource.FILE else StopReason.STOP_KEYBOARD

    async def _loop(self) -> None:
        s = self.session
        while True:
            if s.iteration_index >= s.max_iterations:
                self._finish(TerminalState.STOPPED, StopReason.MAX_ITERATIONS)
                return

            iteration = s.iteration_index + 1
            prompt = self.prompts.build_iteration_prompt(s.mode, s.iteration_index, self._active_instructions)
            self._emit("iteration_start", iteration=iteration, message=f"Iteration {iteration}/{s.max_iterations}")
            started = time.monotonic()
            try:
                result = await self.agent.run(prompt, self.prompts.system_prompt(s.mode), self.on_output)
                s.last_output = tail(result.stdout)
            except SpawnError as exc:
                s.last_error = str(exc)
                log.error("Iteration %d: %s", iteration, exc)
                self._emit("error", iteration=iteration, message=str(exc))
                self._finish(TerminalState.ERRORED, StopReason.SPAWN_FAILED)
                return
            except NonZeroExitError as exc:
                s.last_output = exc.output_tail
                log.warning("Iteration %d: %s\n%s", iteration, exc, exc.output_tail)
                self._emit("agent_error", iteration=iteration, message=str(exc), exit_code=exc.exit_code)
            s.iterations_run += 1
            s.durations.append(time.monotonic() - started)

            snapshot = self.store.read()
            s.status_reads += 1
            for warning in consistency_warnings(snapshot):
                log.warning("Status: %s", warning)
            self._iteration_complete(iteration, snapshot)

            stagnated = self._update_stagnation(snapshot)
            if snapshot.complete:
                if await self._complete_or_resume(iteration):
                    return
            elif stagnated:
                log.info("No work for %d consecutive iterations", s.stagnation_count)
                self._finish(TerminalState.STOPPED, StopReason.STAGNATION)
                return

            if reason := self.check_cancellation():
                self._finish(TerminalState.STOPPED, reason)
                return

            s.iteration_index += 1
            if s.iteration_index < s.max_iterations and s.inter_iteration_delay_seconds > 0:
                await self._sleep(s.inter_iteration_delay_seconds)

    def _update_stagnation(self, snapshot: StatusSnapshot) -> bool:
        s = self.session
        if s.mode is not ExecutionMode.AUTONOMOUS or s.stagnation_threshold <= 0:
            return False
        if isinstance(snapshot, AutonomousStatus) and snapshot.worked is False:
            s.stagnation_count += 1
        else:
            s.stagnation_count = 0
        return s.stagnation_count >= s.stagnation_threshold

    async def _complete_or_resume(self, iteration: int) -> bool:
        """Handle a claimed completion. Returns False when the loop resumes."""
        s = self.session
        if self.verifier is None or not self.verification.auto_verify:
            self._finish(TerminalState.COMPLETED, StopReason.COMPLETED)
            return True

        s.phase = SessionPhase.VERIFYING
        s.verification_attempts += 1
        self._emit("verification_start", iteration=iteration, attempt=s.verification_attempts)
        try:
            result = await self.verifier.verify(s.mode, self.on_output)
        except SpawnError as exc:
            s.last_error = str(exc)
            log.error("Verification: %s", exc)
            self._emit("error", iteration=iteration, message=str(exc))
            self._finish(TerminalState.ERRORED, StopReason.SPAWN_FAILED)
            return True
        self._last_verification = result
        self._emit(
            "verification_result",
            iteration=iteration,
            message=result.summary,
            status=result.status,
            issues=result.issue_count,
            attempt=s.verification_attempts,
        )

        if result.status == "pass":
            self._finish(TerminalState.COMPLETED, StopReason.COMPLETED)
            return True
        if result.status == "fail" and self.verification.resume_on_fail:
            if s.verification_attempts < self.verification.max_attempts:
                log.info(
                    "Verification found %d issue(s); resuming (attempt %d/%d)",
                    result.issue_count,
                    s.verification_attempts,
                    self.verification.max_attempts,
                )
                self._active_instructions = build_resume_instructions(self.instructions, result)
                s.phase = SessionPhase.RUNNING
                return False
            exhausted = VerificationExhaustedError(
                f"Verification still failing after {s.verification_attempts} attempt(s)",
                attempts=s.verification_attempts,
            )
            log.warning("%s; flagging for manual review", exhausted)

        s.needs_manual_review = True
        self._finish(TerminalState.COMPLETED, StopReason.COMPLETED)
        return True

    def _iteration_complete(self, iteration: int, snapshot: StatusSnapshot) -> None:
        s = self.session
        completed = total = None
        if isinstance(snapshot, IncrementalStatus) and snapshot.progress is not None:
            completed, total = snapshot.progress.completed, snapshot.progress.total
        state = self.stop_signal.get_state()
        stats = calculate_stats(
            current_iteration=iteration,
            max_iterations=s.max_iterations,
            durations=s.durations,
            started_at=s.started_at,
            mode=s.mode,
            tasks_completed=completed,
            tasks_total=total,
            stagnation_count=s.stagnation_count,
            stop_requested=state.requested,
            stop_source=state.source,
        )
        self._emit(
            "iteration_complete",
            iteration=iteration,
            message=snapshot.summary or "",
            stats=stats,
            complete=snapshot.complete,
            duration_s=s.durations[-1],
        )

    def _finish(self, state: TerminalState, reason: StopReason | None) -> None:
        s = self.session
        s.terminal_state = state
        s.reason = reason
        s.phase = _TERMINAL_PHASE[state]

    async def _shutdown(self) -> None:
        try:
            await self.agent.terminate()
        except Exception as exc:
            log.warning("Agent termination failed: %s", exc)
        if self.watcher is not None:
            try:
                self.watcher.stop()
            except Exception as exc:
                log.warning("Status watcher shutdown failed: %s", exc)
        try:
            self.stop_signal.cleanup(delete_file=True)
        except Exception as exc:
            log.warning("Stop signal cleanup failed: %s", exc)

    def _emit(self, event_type: str, *, iteration: int = 0, message: str = "", **data: Any) -> None:
        self.bus.emit(LoopEvent(event_type=event_type, iteration=iteration, message=message, data=data))
