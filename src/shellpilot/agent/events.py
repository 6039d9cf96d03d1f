"""Messages crossing the orchestrator boundary.

Inputs are fed to :func:`shellpilot.agent.machine.AutoRunMachine.step`; effects
are returned from it and carried out by the host, in order.
"""

from __future__ import annotations

from dataclasses import dataclass

from shellpilot.agent.models import Message, RiskLevel, TaskSummary
from shellpilot.agent.tools import ToolCall


# Inputs


@dataclass(frozen=True, slots=True)
class EnableAutoRun:
    """Start a fresh episode."""


@dataclass(frozen=True, slots=True)
class StopAutoRun:
    """User-initiated stop."""

    narrative: str | None = None


@dataclass(frozen=True, slots=True)
class UserMessage:
    """The user typed guidance into the session."""

    content: str


@dataclass(frozen=True, slots=True)
class ModelResponse:
    """Raw completion text from the model collaborator."""

    text: str


@dataclass(frozen=True, slots=True)
class ModelCallFailed:
    error: str


@dataclass(frozen=True, slots=True)
class CommandStarted:
    command_id: str
    command: str
    session_id: str


@dataclass(frozen=True, slots=True)
class CommandFinished:
    command: str
    output: str
    exit_code: int
    session_id: str


@dataclass(frozen=True, slots=True)
class SafetyDecision:
    approved: bool
    allow_all: bool = False


@dataclass(frozen=True, slots=True)
class RetryDue:
    """The stall-retry debounce elapsed."""


@dataclass(frozen=True, slots=True)
class PreviewDecision:
    """Run the previewed command now (``run=True``) or skip it.

    The host sends ``PreviewDecision(run=True)`` itself when the preview delay
    elapses without user action.
    """

    run: bool


@dataclass(frozen=True, slots=True)
class ResetPolicy:
    """Forget every "allow all" approval for the session."""


Event = (
    EnableAutoRun
    | StopAutoRun
    | UserMessage
    | ModelResponse
    | ModelCallFailed
    | CommandStarted
    | CommandFinished
    | SafetyDecision
    | RetryDue
    | PreviewDecision
    | ResetPolicy
)


# Effects


@dataclass(frozen=True, slots=True)
class RunCommand:
    command: str
    session_id: str


@dataclass(frozen=True, slots=True)
class CancelCommand:
    command_id: str
    session_id: str


@dataclass(frozen=True, slots=True)
class RunTool:
    """Carry out a file tool directive and append its outcome to the transcript."""

    call: ToolCall


@dataclass(frozen=True, slots=True)
class SafetyConfirmationRequest:
    command: str
    risk: RiskLevel
    impact: str
    session_id: str
    allow_all_option: bool


@dataclass(frozen=True, slots=True)
class NewTabRequest:
    pass


@dataclass(frozen=True, slots=True)
class ReportSummary:
    summary: TaskSummary


@dataclass(frozen=True, slots=True)
class AppendMessage:
    message: Message


@dataclass(frozen=True, slots=True)
class InvokeModel:
    """Ask the model for its next turn using the current transcript."""

    retry: bool = False


@dataclass(frozen=True, slots=True)
class ScheduleRetry:
    delay: float


@dataclass(frozen=True, slots=True)
class CancelRetry:
    pass


@dataclass(frozen=True, slots=True)
class PreviewCommand:
    command: str
    delay: float


@dataclass(frozen=True, slots=True)
class StatusChange:
    status: str | None


Effect = (
    RunCommand
    | CancelCommand
    | RunTool
    | SafetyConfirmationRequest
    | NewTabRequest
    | ReportSummary
    | AppendMessage
    | InvokeModel
    | ScheduleRetry
    | CancelRetry
    | PreviewCommand
    | StatusChange
)
