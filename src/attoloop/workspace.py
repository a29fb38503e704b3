"""Well-known file locations inside a task workspace."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

INSTRUCTIONS_FILE = "INSTRUCTIONS.md"
STATUS_FILE = ".status.json"
STOP_FILE = ".stop"
LOG_DIR = "logs"


@dataclass(slots=True, frozen=True)
class WorkspacePaths:
    root: Path
    stop_filename: str = STOP_FILE
    report_filename: str = "verification-report.md"

    @property
    def instructions(self) -> Path:
        return self.root / INSTRUCTIONS_FILE

    @property
    def status(self) -> Path:
        return self.root / STATUS_FILE

    @property
    def stop_file(self) -> Path:
        return self.root / self.stop_filename

    @property
    def verification_report(self) -> Path:
        return self.root / self.report_filename

    @property
    def log_dir(self) -> Path:
        return self.root / LOG_DIR

    def read_instructions(self) -> str:
        if not self.instructions.exists():
            raise FileNotFoundError(f"No {INSTRUCTIONS_FILE} in {self.root}")
        return self.instructions.read_text(encoding="utf-8").strip()
