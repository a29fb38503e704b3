"""Tests for the iteration scheduler's terminal-state decisions."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from attoloop.config.schema import VerificationConfig
from attoloop.coordinator.event_bus import EventBus
from attoloop.coordinator.scheduler import IterationScheduler
from attoloop.errors import NonZeroExitError, SpawnError
from attoloop.prompts import PromptBuilder
from attoloop.protocol.models import (
    ExecutionMode,
    ExecutionSession,
    SessionPhase,
    StopReason,
    StopSource,
    TerminalState,
    VerificationResult,
)
from attoloop.status.store import StatusStore
from tests.helpers.fakes import FakeAgent, FakeStop, FakeVerifier, blocks, raises, writes

INCOMPLETE = {"complete": False, "progress": {"completed": 0, "total": 3}}


def progress(done: int, total: int = 3) -> dict[str, Any]:
    return {"complete": done == total, "progress": {"completed": done, "total": total}}


class Harness:
    def __init__(self, tmp_path: Path, mode: ExecutionMode = ExecutionMode.INCREMENTAL) -> None:
        self.tmp_path = tmp_path
        self.mode = mode
        self.status_path = tmp_path / ".status.json"
        self.store = StatusStore(self.status_path, mode)
        self.stop = FakeStop()
        self.bus = EventBus()
        self.sleeps: list[float] = []

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def scheduler(
        self,
        agent: FakeAgent,
        *,
        max_iterations: int = 5,
        delay: float = 0,
        stagnation_threshold: int = 0,
        verifier: FakeVerifier | None = None,
        verification: VerificationConfig | None = None,
    ) -> IterationScheduler:
        session = ExecutionSession(
            mode=self.mode,
            max_iterations=max_iterations,
            inter_iteration_delay_seconds=delay,
            stagnation_threshold=stagnation_threshold,
        )
        return IterationScheduler(
            session,
            agent=agent,
            store=self.store,
            stop_signal=self.stop,  # type: ignore[arg-type]
            prompts=PromptBuilder(self.tmp_path, self.status_path),
            instructions="ORIGINAL INSTRUCTIONS",
            verifier=verifier,  # type: ignore[arg-type]
            verification=verification,
            bus=self.bus,
            sleep=self._sleep,
        )

    def status(self, data: dict[str, Any]):
        return writes(self.status_path, data)


@pytest.fixture
def h(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


@pytest.fixture
def auto(tmp_path: Path) -> Harness:
    return Harness(tmp_path, ExecutionMode.AUTONOMOUS)


class TestCompletion:
    @pytest.mark.asyncio
    async def test_completes_when_status_says_so(self, h: Harness) -> None:
        agent = FakeAgent(h.status(progress(1)), h.status(progress(2)), h.status(progress(3)))
        outcome = await h.scheduler(agent).run()
        assert outcome.terminal_state is TerminalState.COMPLETED
        assert outcome.reason is StopReason.COMPLETED
        assert outcome.iterations == 3
        assert outcome.exit_code == 0
        assert agent.calls == 3

    @pytest.mark.asyncio
    async def test_prompts_carry_iteration_number(self, h: Harness) -> None:
        agent = FakeAgent(h.status(progress(1)), h.status(progress(3)))
        await h.scheduler(agent).run()
        assert agent.prompts[0].startswith("# Iteration 1")
        assert agent.prompts[1].startswith("# Iteration 2")
        assert "ORIGINAL INSTRUCTIONS" in agent.prompts[1]
        assert '"progress"' in agent.system_prompts[0]

    @pytest.mark.asyncio
    async def test_status_read_once_per_iteration(self, h: Harness) -> None:
        agent = FakeAgent(h.status(progress(1)), h.status(progress(3)))
        scheduler = h.scheduler(agent)
        await scheduler.run()
        assert scheduler.session.status_reads == 2
        assert scheduler.session.phase is SessionPhase.COMPLETED


class TestBudget:
    @pytest.mark.asyncio
    async def test_budget_exhausted(self, h: Harness) -> None:
        agent = FakeAgent(h.status(INCOMPLETE))
        scheduler = h.scheduler(agent, max_iterations=3)
        outcome = await scheduler.run()
        assert outcome.terminal_state is TerminalState.STOPPED
        assert outcome.reason is StopReason.MAX_ITERATIONS
        assert outcome.iterations == 3
        assert agent.calls == 3
        assert outcome.exit_code == 0

    @pytest.mark.asyncio
    async def test_missing_status_counts_as_incomplete(self, h: Harness) -> None:
        outcome = await h.scheduler(FakeAgent(), max_iterations=2).run()
        assert outcome.reason is StopReason.MAX_ITERATIONS
        assert outcome.iterations == 2

    @pytest.mark.asyncio
    async def test_delay_only_between_iterations(self, h: Harness) -> None:
        await h.scheduler(FakeAgent(h.status(INCOMPLETE)), max_iterations=3, delay=1.5).run()
        assert h.sleeps == [1.5, 1.5]

    @pytest.mark.asyncio
    async def test_no_delay_after_completion(self, h: Harness) -> None:
        await h.scheduler(FakeAgent(h.status(progress(3))), max_iterations=3, delay=2).run()
        assert h.sleeps == []


class TestStagnation:
    @pytest.mark.asyncio
    async def test_stops_after_consecutive_no_work(self, auto: Harness) -> None:
        agent = FakeAgent(auto.status({"complete": False, "worked": False}))
        outcome = await auto.scheduler(agent, stagnation_threshold=2, max_iterations=10).run()
        assert outcome.terminal_state is TerminalState.STOPPED
        assert outcome.reason is StopReason.STAGNATION
        assert outcome.iterations == 2

    @pytest.mark.asyncio
    async def test_work_resets_the_count(self, auto: Harness) -> None:
        idle = auto.status({"complete": False, "worked": False})
        busy = auto.status({"complete": False, "worked": True})
        agent = FakeAgent(idle, busy, idle, idle)
        outcome = await auto.scheduler(agent, stagnation_threshold=2, max_iterations=10).run()
        assert outcome.reason is StopReason.STAGNATION
        assert outcome.iterations == 4

    @pytest.mark.asyncio
    async def test_missing_worked_flag_resets(self, auto: Harness) -> None:
        idle = auto.status({"complete": False, "worked": False})
        unknown = auto.status({"complete": False})
        agent = FakeAgent(idle, unknown, idle)
        outcome = await auto.scheduler(agent, stagnation_threshold=2, max_iterations=3).run()
        assert outcome.reason is StopReason.MAX_ITERATIONS

    @pytest.mark.asyncio
    async def test_disabled_with_zero_threshold(self, auto: Harness) -> None:
        agent = FakeAgent(auto.status({"complete": False, "worked": False}))
        outcome = await auto.scheduler(agent, stagnation_threshold=0, max_iterations=4).run()
        assert outcome.reason is StopReason.MAX_ITERATIONS

    @pytest.mark.asyncio
    async def test_not_applied_in_incremental_mode(self, h: Harness) -> None:
        agent = FakeAgent(h.status({"complete": False, "worked": False}))
        outcome = await h.scheduler(agent, stagnation_threshold=1, max_iterations=3).run()
        assert outcome.reason is StopReason.MAX_ITERATIONS

    @pytest.mark.asyncio
    async def test_completion_beats_stagnation(self, auto: Harness) -> None:
        idle = auto.status({"complete": False, "worked": False})
        done = auto.status({"complete": True, "worked": False})
        outcome = await auto.scheduler(FakeAgent(idle, done), stagnation_threshold=2).run()
        assert outcome.terminal_state is TerminalState.COMPLETED


class TestStopRequests:
    @pytest.mark.asyncio
    async def test_stop_honoured_after_iteration_in_flight(self, h: Harness) -> None:
        def second() -> None:
            h.stop.request(StopSource.KEYBOARD)
            writes(h.status_path, progress(2))()

        agent = FakeAgent(h.status(progress(1)), second)
        scheduler = h.scheduler(agent, max_iterations=10)
        outcome = await scheduler.run()
        assert outcome.terminal_state is TerminalState.STOPPED
        assert outcome.reason is StopReason.STOP_KEYBOARD
        assert outcome.iterations == 2
        assert agent.calls == 2

    @pytest.mark.asyncio
    async def test_file_stop_before_start_runs_one_iteration(self, h: Harness) -> None:
        h.stop.request(StopSource.FILE)
        agent = FakeAgent(h.status(progress(1)))
        outcome = await h.scheduler(agent).run()
        assert outcome.reason is StopReason.STOP_FILE
        assert outcome.iterations == 1

    @pytest.mark.asyncio
    async def test_completion_beats_stop(self, h: Harness) -> None:
        def finish() -> None:
            h.stop.request()
            writes(h.status_path, progress(3))()

        outcome = await h.scheduler(FakeAgent(finish)).run()
        assert outcome.terminal_state is TerminalState.COMPLETED

    @pytest.mark.asyncio
    async def test_check_cancellation(self, h: Harness) -> None:
        scheduler = h.scheduler(FakeAgent())
        assert scheduler.check_cancellation() is None
        h.stop.request(StopSource.FILE)
        assert scheduler.check_cancellation() is StopReason.STOP_FILE


class TestAgentFailures:
    @pytest.mark.asyncio
    async def test_spawn_error_is_fatal(self, h: Harness) -> None:
        agent = FakeAgent(raises(SpawnError("Agent binary not found: claude", command="claude")))
        scheduler = h.scheduler(agent)
        outcome = await scheduler.run()
        assert outcome.terminal_state is TerminalState.ERRORED
        assert outcome.reason is StopReason.SPAWN_FAILED
        assert outcome.iterations == 0
        assert outcome.exit_code == 1
        assert "not found" in (outcome.error or "")
        assert h.bus.of_type("error")
        assert scheduler.session.status_reads == 0

    @pytest.mark.asyncio
    async def test_non_zero_exit_continues(self, h: Harness) -> None:
        crash = raises(NonZeroExitError("Agent exited with code 1", exit_code=1, stderr="rate limited"))
        agent = FakeAgent(crash, h.status(progress(3)))
        outcome = await h.scheduler(agent).run()
        assert outcome.terminal_state is TerminalState.COMPLETED
        assert outcome.iterations == 2
        assert h.bus.of_type("agent_error")[0].data["exit_code"] == 1

    @pytest.mark.asyncio
    async def test_crash_after_claiming_completion_still_completes(self, h: Harness) -> None:
        def claim_then_crash() -> None:
            writes(h.status_path, progress(3))()
            raise NonZeroExitError("Agent exited with code 2", exit_code=2)

        outcome = await h.scheduler(FakeAgent(claim_then_crash)).run()
        assert outcome.terminal_state is TerminalState.COMPLETED
        assert outcome.iterations == 1


class TestInterruption:
    @pytest.mark.asyncio
    async def test_cancel_terminates_agent_and_cleans_up(self, h: Harness) -> None:
        agent = FakeAgent(blocks())
        scheduler = h.scheduler(agent)
        task = asyncio.create_task(scheduler.run())
        await asyncio.wait_for(agent.running.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        outcome = scheduler.outcome()
        assert outcome.terminal_state is TerminalState.STOPPED
        assert outcome.reason is StopReason.INTERRUPTED
        assert outcome.exit_code == 130
        assert agent.terminated == 1
        assert h.stop.cleanups == [True]
        assert h.bus.of_type("session_end")

    @pytest.mark.asyncio
    async def test_cleanup_on_normal_exit(self, h: Harness) -> None:
        agent = FakeAgent(h.status(progress(3)))
        await h.scheduler(agent).run()
        assert h.stop.initialized
        assert h.stop.cleanups == [True]
        assert agent.terminated == 1


class TestVerification:
    FAIL = VerificationResult(
        status="fail",
        summary="tests missing",
        report_path="/w/verification-report.md",
        issue_count=1,
        issues=["Unit tests"],
    )
    PASS = VerificationResult(status="pass", summary="all good")
    REVIEW = VerificationResult(status="needs_review", summary="no report")

    @pytest.mark.asyncio
    async def test_pass(self, h: Harness) -> None:
        verifier = FakeVerifier(self.PASS)
        outcome = await h.scheduler(FakeAgent(h.status(progress(3))), verifier=verifier).run()
        assert outcome.terminal_state is TerminalState.COMPLETED
        assert outcome.verification is self.PASS
        assert not outcome.needs_manual_review
        assert verifier.calls == 1

    @pytest.mark.asyncio
    async def test_fail_resumes_with_findings(self, h: Harness) -> None:
        verifier = FakeVerifier(self.FAIL, self.PASS)
        agent = FakeAgent(h.status(progress(3)))
        outcome = await h.scheduler(agent, verifier=verifier).run()
        assert outcome.terminal_state is TerminalState.COMPLETED
        assert outcome.verification is self.PASS
        assert agent.calls == 2
        assert "VERIFICATION FINDINGS" not in agent.prompts[0]
        assert "VERIFICATION FINDINGS" in agent.prompts[1]
        assert "1. Unit tests" in agent.prompts[1]
        assert "ORIGINAL INSTRUCTIONS" in agent.prompts[1]

    @pytest.mark.asyncio
    async def test_fail_exhausts_attempts(self, h: Harness) -> None:
        verifier = FakeVerifier(self.FAIL)
        agent = FakeAgent(h.status(progress(3)))
        outcome = await h.scheduler(
            agent, verifier=verifier, verification=VerificationConfig(max_attempts=2)
        ).run()
        assert outcome.terminal_state is TerminalState.COMPLETED
        assert outcome.needs_manual_review
        assert verifier.calls == 2
        assert outcome.exit_code == 1

    @pytest.mark.asyncio
    async def test_fail_without_resume(self, h: Harness) -> None:
        verifier = FakeVerifier(self.FAIL)
        outcome = await h.scheduler(
            FakeAgent(h.status(progress(3))),
            verifier=verifier,
            verification=VerificationConfig(resume_on_fail=False),
        ).run()
        assert outcome.needs_manual_review
        assert verifier.calls == 1

    @pytest.mark.asyncio
    async def test_needs_review_flags_manual_review(self, h: Harness) -> None:
        outcome = await h.scheduler(FakeAgent(h.status(progress(3))), verifier=FakeVerifier(self.REVIEW)).run()
        assert outcome.terminal_state is TerminalState.COMPLETED
        assert outcome.needs_manual_review
        assert outcome.exit_code == 0

    @pytest.mark.asyncio
    async def test_auto_verify_off(self, h: Harness) -> None:
        verifier = FakeVerifier(self.FAIL)
        outcome = await h.scheduler(
            FakeAgent(h.status(progress(3))),
            verifier=verifier,
            verification=VerificationConfig(auto_verify=False),
        ).run()
        assert outcome.terminal_state is TerminalState.COMPLETED
        assert verifier.calls == 0

    @pytest.mark.asyncio
    async def test_spawn_error_during_verification(self, h: Harness) -> None:
        verifier = FakeVerifier(SpawnError("Agent binary not found: claude"))
        outcome = await h.scheduler(FakeAgent(h.status(progress(3))), verifier=verifier).run()
        assert outcome.terminal_state is TerminalState.ERRORED

    @pytest.mark.asyncio
    async def test_resume_respects_budget(self, h: Harness) -> None:
        verifier = FakeVerifier(self.FAIL)
        agent = FakeAgent(h.status(progress(3)))
        outcome = await h.scheduler(
            agent, max_iterations=1, verifier=verifier, verification=VerificationConfig(max_attempts=3)
        ).run()
        assert outcome.terminal_state is TerminalState.STOPPED
        assert outcome.reason is StopReason.MAX_ITERATIONS
        assert agent.calls == 1


class TestEvents:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self, h: Harness) -> None:
        await h.scheduler(FakeAgent(h.status(progress(1)), h.status(progress(3)))).run()
        types = [e.event_type for e in h.bus.history]
        assert types[0] == "session_start"
        assert types[-1] == "session_end"
        assert types.count("iteration_start") == 2
        complete = h.bus.of_type("iteration_complete")
        assert complete[0].data["stats"].tasks_completed == 1
        assert complete[1].data["complete"] is True
        assert h.bus.history[-1].data["terminal_state"] == "completed"
