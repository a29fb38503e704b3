"""Prompt text sent to the agent for each iteration and for verification."""

from __future__ import annotations

from pathlib import Path

from attoloop.protocol.models import ExecutionMode

_DEPTH_NOTES = {
    "quick": (
        "**Verification Depth: Quick**\n"
        "Focus on file existence and basic count verification. Skip detailed quality checks."
    ),
    "standard": (
        "**Verification Depth: Standard**\n"
        "Balanced verification of key deliverables and basic quality checks."
    ),
    "deep": (
        "**Verification Depth: Deep**\n"
        "Perform comprehensive review including code quality, edge cases, and thorough testing analysis."
    ),
}


def _status_instructions(mode: ExecutionMode, status_path: Path) -> str:
    match mode:
        case ExecutionMode.INCREMENTAL:
            example = (
                '{"complete": false, "progress": {"completed": 3, "total": 10}, '
                '"summary": "...", "lastUpdated": "<ISO-8601>"}'
            )
            rules = (
                "- Set `progress.total` to the number of items in the task list and keep it stable.\n"
                "- Increase `progress.completed` only for items that are fully done.\n"
                "- Set `complete` to true only when `completed` equals `total`.\n"
            )
        case ExecutionMode.AUTONOMOUS:
            example = (
                '{"complete": false, "worked": true, "summary": "...", '
                '"lastUpdated": "<ISO-8601>"}'
            )
            rules = (
                "- Set `worked` to true if you changed anything this iteration, false otherwise.\n"
                "- Set `complete` to true only when every requirement is met.\n"
            )
    return (
        "## Status Reporting\n\n"
        f"Before you finish, overwrite `{status_path}` with valid JSON:\n\n"
        f"    {example}\n\n"
        f"{rules}"
        "- Optional fields: `phase`, `blockers` (list of strings), `notes`.\n"
    )


class PromptBuilder:
    """Builds mode-specific prompt text for one workspace."""

    def __init__(self, workspace: Path, status_path: Path) -> None:
        self.workspace = workspace
        self.status_path = status_path

    def system_prompt(self, mode: ExecutionMode) -> str:
        style = (
            "Work through the task list one item at a time."
            if mode is ExecutionMode.INCREMENTAL
            else "Decide what to do next on your own and make real progress toward the goal."
        )
        return (
            "You are running inside an automated loop. Each invocation is one iteration; "
            "you will be called again until the task is complete.\n\n"
            f"Workspace: {self.workspace}\n"
            f"Project root: {Path.cwd()}\n\n"
            f"{style} Do not ask questions; nobody is watching this session.\n\n"
            + _status_instructions(mode, self.status_path)
        )

    def build_iteration_prompt(self, mode: ExecutionMode, iteration_index: int, instructions: str) -> str:
        header = f"# Iteration {iteration_index + 1}\n\n"
        match mode:
            case ExecutionMode.INCREMENTAL:
                focus = (
                    "Read the status file to see what is already done, then complete the "
                    "next unfinished items. Update the status file before exiting."
                )
            case ExecutionMode.AUTONOMOUS:
                focus = (
                    "Review the current state of the work, pick the most valuable next step "
                    "and do it. Record whether you did any work in the status file."
                )
        return f"{header}{focus}\n\n## Instructions\n\n{instructions}\n"

    def verification_prompt(self, mode: ExecutionMode, report_path: Path, depth: str = "standard") -> str:
        unit = "every item in the task list" if mode is ExecutionMode.INCREMENTAL else "every requirement"
        return (
            "# Verify Completion\n\n"
            f"The agent working in {self.workspace} claims the task is complete. "
            f"Independently check {unit} in the instructions against the actual deliverables. "
            "Do not modify any deliverables.\n\n"
            f"Write a markdown report to `{report_path}` containing:\n\n"
            "- A verdict line: `✅ VERIFIED COMPLETE` or `❌ INCOMPLETE`\n"
            "- `## Summary` followed by one paragraph\n"
            "- `### Incomplete Requirements` with numbered items like `1. **Item**: details`\n"
            "- `**Confidence Level**: High|Medium|Low`\n"
            "- `**Recommended Action**: ...`\n\n"
            + _DEPTH_NOTES.get(depth, _DEPTH_NOTES["standard"])
        )
