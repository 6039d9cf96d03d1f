"""Build and render the end-of-episode task summary."""

from __future__ import annotations

import re
from collections.abc import Sequence

from shellpilot.agent.models import AppStatus, StopReason, TaskStep, TaskSummary

RECENT_STEP_WINDOW = 3

SERVER_PATTERNS = re.compile(
    r"npm\s+(start|run\s+dev)|python.*main|node\s+|yarn\s+(start|dev)|flask\s+run|uvicorn|gunicorn",
    re.IGNORECASE,
)
_PORT_PATTERN = re.compile(
    r"(?:port|PORT|localhost:|127\.0\.0\.1:|0\.0\.0\.0:)\s*(\d{4,5})",
    re.IGNORECASE,
)

FINAL_MESSAGES: dict[StopReason, str] = {
    "complete": "Task completed successfully!",
    "limit": "Stopped: Maximum steps reached",
    "error": "Stopped due to errors",
    "user": "Stopped by user",
}


def extract_port(text: str) -> int | None:
    match = _PORT_PATTERN.search(text)
    return int(match.group(1)) if match else None


def build_task_summary(
    steps: Sequence[TaskStep],
    start_time: float | None,
    reason: StopReason,
    narrative: str | None = None,
    *,
    end_time: float,
) -> TaskSummary:
    """Aggregate an episode's steps into a :class:`TaskSummary`."""
    successful_steps = sum(1 for step in steps if step.exit_code == 0)
    failed_steps = len(steps) - successful_steps

    recent_steps = list(steps[-RECENT_STEP_WINDOW:])
    server_running = any(
        SERVER_PATTERNS.search(step.command) and step.exit_code == 0 for step in recent_steps
    )
    app_port = extract_port(" ".join(step.output or step.command for step in recent_steps))

    app_status: AppStatus
    if server_running:
        app_status = "running"
    elif failed_steps > successful_steps:
        app_status = "error"
    else:
        app_status = "stopped"

    return TaskSummary(
        total_steps=len(steps),
        successful_steps=successful_steps,
        failed_steps=failed_steps,
        steps=tuple(steps),
        start_time=start_time if start_time is not None else end_time,
        end_time=end_time,
        app_status=app_status,
        app_port=app_port,
        final_message=FINAL_MESSAGES[reason],
        reason=reason,
        narrative=narrative or None,
    )


def format_duration(seconds: float) -> str:
    millis = int(round(seconds * 1000))
    if millis < 1000:
        return f"{millis}ms"
    if millis < 60000:
        return f"{millis / 1000:.1f}s"
    minutes, remainder = divmod(millis, 60000)
    return f"{minutes}m {remainder // 1000}s"


def _overall_mark(summary: TaskSummary) -> str:
    rate = summary.successful_steps / summary.total_steps if summary.total_steps else 0.0
    if rate == 1 and summary.app_status == "running":
        return "[SUCCESS+APP]"
    if rate == 1:
        return "[SUCCESS]"
    if rate >= 0.7:
        return "[MOSTLY OK]"
    if rate >= 0.3:
        return "[PARTIAL]"
    return "[FAILED]"


def _app_status_label(status: AppStatus, port: int | None) -> str:
    if status == "running":
        return f"Running on port {port}" if port else "Running"
    if status == "stopped":
        return "Not running"
    if status == "error":
        return "Error state"
    return "Unknown"


def render_summary(summary: TaskSummary) -> str:
    """Render a plain-text report for terminals and logs."""
    success_rate = (
        round(summary.successful_steps / summary.total_steps * 100) if summary.total_steps else 0
    )
    lines = [
        f"=== Task Summary {_overall_mark(summary)} ===",
        summary.final_message,
        (
            f"Steps: {summary.total_steps} total, {summary.successful_steps} succeeded, "
            f"{summary.failed_steps} failed ({success_rate}%)"
        ),
        f"Duration: {format_duration(summary.end_time - summary.start_time)}",
        f"App: {_app_status_label(summary.app_status, summary.app_port)}",
    ]
    if summary.steps:
        lines.append("[steps]")
        for step in summary.steps:
            mark = "ok" if step.exit_code == 0 else f"exit {step.exit_code}"
            lines.append(f"  ({mark}) {step.command}")
    if summary.narrative:
        lines.append("[report]")
        lines.append(summary.narrative)
    return "\n".join(lines)
