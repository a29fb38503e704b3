"""Read and validate the agent-written ``.status.json`` artifact."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, StrictBool, ValidationError

from attoloop.errors import StatusParseError
from attoloop.protocol.io import write_json_atomic
from attoloop.protocol.models import (
    AutonomousStatus,
    ExecutionMode,
    IncrementalStatus,
    Progress,
    StatusSnapshot,
    default_snapshot,
    utc_now,
)

logger = logging.getLogger(__name__)


class ProgressModel(BaseModel):
    model_config = {"extra": "ignore"}

    completed: int = Field(ge=0, strict=True)
    total: int = Field(ge=0, strict=True)


class StatusFileModel(BaseModel):
    """Schema of the status artifact as written by the agent (camelCase keys)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    complete: StrictBool
    progress: ProgressModel | None = None
    worked: StrictBool | None = None
    summary: str | None = None
    last_updated: str | None = Field(default=None, alias="lastUpdated")
    phase: str | None = None
    blockers: list[str] = Field(default_factory=list)
    notes: str | None = None


@dataclass(slots=True)
class StatusValidation:
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


def parse_timestamp(value: str | None) -> datetime | None:
    # An unparseable timestamp is cosmetic; keep the rest of the status.
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug("Ignoring unparseable lastUpdated %r", value)
        return None


def to_snapshot(model: StatusFileModel, mode: ExecutionMode) -> StatusSnapshot:
    common: dict[str, Any] = {
        "complete": model.complete,
        "summary": model.summary,
        "last_updated": parse_timestamp(model.last_updated),
        "phase": model.phase,
        "blockers": list(model.blockers),
        "notes": model.notes,
    }
    match mode:
        case ExecutionMode.INCREMENTAL:
            progress = (
                Progress(model.progress.completed, model.progress.total)
                if model.progress is not None
                else None
            )
            return IncrementalStatus(progress=progress, **common)
        case ExecutionMode.AUTONOMOUS:
            return AutonomousStatus(worked=model.worked, **common)


def consistency_warnings(snapshot: StatusSnapshot) -> list[str]:
    """Advisory checks; incremental snapshots with progress only."""
    warnings: list[str] = []
    if isinstance(snapshot, IncrementalStatus) and snapshot.progress is not None:
        p = snapshot.progress
        if p.completed > p.total:
            warnings.append(f"completed ({p.completed}) exceeds total ({p.total})")
        if snapshot.complete and p.completed != p.total:
            warnings.append(f"marked complete but progress is {p.completed}/{p.total}")
    return warnings


class StatusStore:
    """Reads the status artifact fresh on every call.

    Malformed or missing artifacts never raise; the mode's default snapshot
    is returned instead and the problem is logged.
    """

    def __init__(self, path: Path, mode: ExecutionMode) -> None:
        self.path = Path(path)
        self.mode = mode

    def read(self) -> StatusSnapshot:
        try:
            return self._load()
        except StatusParseError as exc:
            logger.warning("%s; using default status", exc)
            return default_snapshot(self.mode)

    def _load(self) -> StatusSnapshot:
        if not self.path.exists():
            raise StatusParseError(f"Status file not found: {self.path}", path=str(self.path))
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, RecursionError) as exc:
            raise StatusParseError(f"Unreadable status file {self.path}: {exc}", path=str(self.path)) from exc
        try:
            model = StatusFileModel.model_validate(raw)
        except ValidationError as exc:
            raise StatusParseError(
                f"Invalid status file {self.path}: {exc.error_count()} validation error(s)",
                path=str(self.path),
                details={"errors": exc.errors(include_url=False)},
            ) from exc
        return to_snapshot(model, self.mode)

    def is_complete(self) -> bool:
        return self.read().complete

    def compute_remaining(self) -> int | None:
        snapshot = self.read()
        if isinstance(snapshot, IncrementalStatus) and snapshot.progress is not None:
            return snapshot.progress.remaining
        return None

    def progress(self) -> tuple[int, int, int]:
        """Return ``(completed, total, percentage)``; zeros without progress."""
        snapshot = self.read()
        if isinstance(snapshot, IncrementalStatus) and snapshot.progress is not None:
            p = snapshot.progress
            return p.completed, p.total, p.percentage
        return 0, 0, 0

    def validate(self) -> StatusValidation:
        return StatusValidation(warnings=consistency_warnings(self.read()))

    def initialize(self, total: int = 0) -> None:
        """Write a fresh not-complete artifact for a new run."""
        data: dict[str, Any] = {"complete": False, "lastUpdated": utc_now().isoformat()}
        if self.mode is ExecutionMode.INCREMENTAL:
            data["progress"] = {"completed": 0, "total": total}
        else:
            data["worked"] = True
        write_json_atomic(self.path, data)
