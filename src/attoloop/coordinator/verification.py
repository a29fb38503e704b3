"""Independent verification of a claimed completion.

A separate agent invocation inspects the deliverables and writes a markdown
report. Only a few fixed markers in that report are interpreted here.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from attoloop.errors import NonZeroExitError
from attoloop.process.agent_process import AgentProcessHandle, OutputCallback
from attoloop.prompts import PromptBuilder
from attoloop.protocol.io import read_text, remove_quietly
from attoloop.protocol.models import Confidence, ExecutionMode, VerificationResult, VerificationStatus

logger = logging.getLogger(__name__)

PASS_MARKERS = ("✅ VERIFIED COMPLETE", "✅ VERIFIED")
FAIL_MARKER = "❌ INCOMPLETE"

_SUMMARY_RE = re.compile(r"## Summary\n\n(.+?)(?=\n\n|\Z)", re.S)
_ISSUES_SECTION_RE = re.compile(r"### (?:Incomplete Requirements|Requirements Not Met)(.+?)(?=##|\Z)", re.S)
_NUMBERED_RE = re.compile(r"^\d+\.", re.M)
_ISSUE_RE = re.compile(r"^\d+\.\s*(?:\*\*)?(.+?)(?:\*\*)?:", re.M)
_CONFIDENCE_RE = re.compile(r"\*\*Confidence Level\*\*: (High|Medium|Low)")
_ACTION_RE = re.compile(r"\*\*Recommended Action\*\*: (.+)")


def parse_verification_report(report: str, report_path: str = "") -> VerificationResult:
    status: VerificationStatus = "needs_review"
    if any(marker in report for marker in PASS_MARKERS):
        status = "pass"
    elif FAIL_MARKER in report:
        status = "fail"

    summary_match = _SUMMARY_RE.search(report)
    summary = summary_match.group(1).strip() if summary_match else "See report for details"

    issues: list[str] = []
    issue_count = 0
    section = _ISSUES_SECTION_RE.search(report)
    if section:
        body = section.group(1)
        issue_count = len(_NUMBERED_RE.findall(body))
        issues = [m.group(1) for m in _ISSUE_RE.finditer(body) if m.group(1)]

    confidence: Confidence = "medium"
    if conf := _CONFIDENCE_RE.search(report):
        confidence = conf.group(1).lower()  # type: ignore[assignment]

    action = _ACTION_RE.search(report)
    return VerificationResult(
        status=status,
        summary=summary,
        full_report=report,
        report_path=report_path,
        issue_count=issue_count,
        issues=issues,
        confidence=confidence,
        recommended_action=action.group(1).strip() if action else "Manual review",
    )


def build_resume_instructions(instructions: str, result: VerificationResult) -> str:
    """Prefix the original instructions with the gaps verification found."""
    issues_list = "\n".join(f"{i}. {issue}" for i, issue in enumerate(result.issues, 1))
    return (
        "---\n"
        "**VERIFICATION FINDINGS** (Previous Run)\n\n"
        f"The previous run claimed completion but verification found {result.issue_count} issue(s).\n\n"
        f"**Verification Report**: {result.report_path}\n\n"
        "**Issues to Address**:\n"
        f"{issues_list or 'See report for details'}\n\n"
        "**Your Job This Iteration**:\n"
        f"1. Read the full verification report at: {result.report_path}\n"
        "2. Focus ONLY on the gaps identified above\n"
        "3. Complete the missing/partial work\n"
        "4. Update .status.json accurately when done\n\n"
        "**Do NOT**:\n"
        "- Rework items that were verified complete\n"
        "- Ignore the verification findings\n"
        "- Mark complete until ALL gaps are addressed\n\n"
        "---\n\n"
        f"{instructions}\n"
    )


class Verifier:
    """Runs one verification pass through the session's agent handle."""

    def __init__(
        self,
        agent: AgentProcessHandle,
        prompts: PromptBuilder,
        report_path: Path,
        *,
        depth: str = "standard",
    ) -> None:
        self.agent = agent
        self.prompts = prompts
        self.report_path = Path(report_path)
        self.depth = depth

    async def verify(self, mode: ExecutionMode, on_output: OutputCallback | None = None) -> VerificationResult:
        """Run the verification agent and parse its report.

        A failed run or a missing report yields ``needs_review``. Spawn
        failures propagate.
        """
        # A report left over from an earlier attempt must not be re-read.
        remove_quietly(self.report_path)
        self.report_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Running %s verification", self.depth)
        prompt = self.prompts.verification_prompt(mode, self.report_path, self.depth)
        output = ""
        try:
            result = await self.agent.run(prompt, self.prompts.system_prompt(mode), on_output)
            output = result.stdout
        except NonZeroExitError as exc:
            logger.warning("Verification agent failed: %s", exc)
            return VerificationResult(
                status="needs_review",
                summary=f"Verification run failed: {exc}",
                report_path=str(self.report_path),
                full_report=exc.output_tail,
            )

        report = read_text(self.report_path, default="")
        if not report:
            logger.warning("Verification report not generated at %s", self.report_path)
            return VerificationResult(
                status="needs_review",
                summary=f"Verification report not generated (expected {self.report_path})",
                report_path=str(self.report_path),
                full_report=output[-1000:],
            )
        return parse_verification_report(report, str(self.report_path))
