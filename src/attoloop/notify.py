"""Push notifications to an ntfy-compatible HTTP endpoint."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from attoloop.config.schema import DEFAULT_NOTIFY_EVENTS
from attoloop.coordinator.event_bus import LoopEvent
from attoloop.protocol.models import ChangeEvent, IncrementalStatus

logger = logging.getLogger(__name__)

NOTIFY_EVENTS = (
    "execution_start",
    "iteration",
    "iteration_milestone",
    "completion",
    "error",
    "status_update",
    "all",
)
MILESTONE_EVERY = 10
_TAG = "attoloop"


def should_notify(event: str, enabled: list[str] | None) -> bool:
    events = enabled or DEFAULT_NOTIFY_EVENTS
    return "all" in events or event in events


def format_status_update(change: ChangeEvent) -> str:
    current, delta = change.current, change.delta
    parts: list[str] = []
    if isinstance(current, IncrementalStatus) and current.progress is not None:
        parts.append(f"{current.progress.completed}/{current.progress.total} items")
        if delta.completed_delta > 0:
            parts.append(f"(+{delta.completed_delta})")
    if current.summary:
        parts.append(current.summary)
    if current.complete:
        parts.append("✅ Complete!")
    return "STATUS UPDATE\n\n" + " - ".join(parts)


class Notifier:
    """Sends notifications from a single background worker thread.

    Callers never block on the network; failures are logged and dropped.
    """

    def __init__(
        self,
        url: str,
        *,
        workspace_name: str,
        events: list[str] | None = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self.workspace_name = workspace_name
        self.events = list(events or DEFAULT_NOTIFY_EVENTS)
        self.max_attempts = max_attempts
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="attoloop-notify")
        self._current_iteration = 0

    def enabled(self, event: str) -> bool:
        return should_notify(event, self.events)

    def send(
        self,
        message: str,
        *,
        title: str | None = None,
        priority: str | None = None,
        tags: list[str] | None = None,
    ) -> bool:
        """POST *message* synchronously; return False on any failure."""
        headers = {"Content-Type": "text/plain"}
        if title:
            headers["Title"] = title
        if priority:
            headers["Priority"] = priority
        if tags:
            headers["Tags"] = ",".join(tags)

        @retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        def _post() -> httpx.Response:
            return self._client.post(self.url, content=message.encode("utf-8"), headers=headers)

        try:
            response = _post()
        except httpx.HTTPError as exc:
            logger.warning("Notification error: %s", exc)
            return False
        if response.is_error:
            logger.warning("Notification failed: %s %s", response.status_code, response.reason_phrase)
            return False
        logger.debug("Notification sent: %s", title or message[:40])
        return True

    def post(self, message: str, **kwargs: Any) -> Future[bool] | None:
        try:
            return self._executor.submit(self.send, message, **kwargs)
        except RuntimeError:
            # Executor already shut down.
            return None

    def handle_event(self, event: LoopEvent) -> None:
        """Translate scheduler events into notifications."""
        name = self.workspace_name
        match event.event_type:
            case "session_start" if self.enabled("execution_start"):
                self.post(
                    f"EXECUTION STARTED\n\nWorkspace: {name}\nMax iterations: {event.data.get('max_iterations')}",
                    title="Execution Started",
                    tags=[_TAG, "execution"],
                )
            case "iteration_start":
                self._current_iteration = event.iteration
            case "iteration_complete":
                self._on_iteration(event)
            case "error" if self.enabled("error"):
                self.post(
                    f"ERROR ENCOUNTERED ⚠️\n\nWorkspace: {name}\nIteration: {event.iteration}\nError: {event.message}",
                    title="Execution Error",
                    priority="urgent",
                    tags=[_TAG, "error"],
                )
            case "session_end" if event.data.get("terminal_state") == "completed" and self.enabled("completion"):
                self.post(
                    f"TASK COMPLETE ✅\n\nWorkspace: {name}\nTotal iterations: {self._current_iteration}",
                    title="Task Complete",
                    priority="high",
                    tags=[_TAG, "completion"],
                )

    def handle_status_change(self, change: ChangeEvent) -> None:
        if not self.enabled("status_update"):
            return
        iteration = self._current_iteration
        self.post(
            format_status_update(change),
            title=f"[{self.workspace_name}] Progress Update (Iteration {iteration})",
            priority="high" if change.current.complete else "default",
            tags=[_TAG, "progress", f"iteration-{iteration}"],
        )

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        if self._owns_client:
            self._client.close()

    def _on_iteration(self, event: LoopEvent) -> None:
        stats = event.data.get("stats")
        remaining = "unknown"
        if stats is not None and stats.tasks_total is not None and stats.tasks_completed is not None:
            remaining = str(stats.tasks_total - stats.tasks_completed)
        max_iterations = stats.max_iterations if stats is not None else "?"
        if self.enabled("iteration"):
            self.post(
                f"ITERATION {event.iteration}/{max_iterations}\n\n"
                f"Workspace: {self.workspace_name}\nStatus: In progress\nRemaining: {remaining}",
                title=f"Iteration {event.iteration}",
                tags=[_TAG, "iteration"],
            )
        if event.iteration % MILESTONE_EVERY == 0 and self.enabled("iteration_milestone"):
            self.post(
                f"ITERATION MILESTONE\n\nWorkspace: {self.workspace_name}\n"
                f"Completed: {event.iteration} iterations\nRemaining: {remaining}",
                title="Milestone Reached",
                tags=[_TAG, "milestone"],
            )
