"""Data models shared by the auto-run orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, get_args

Role = Literal["user", "ai", "system"]
RiskLevel = Literal["low", "medium", "high", "critical"]
StopReason = Literal["user", "complete", "error", "limit"]
AppStatus = Literal["running", "stopped", "unknown", "error"]
RunState = Literal[
    "idle",
    "awaiting_model_response",
    "awaiting_safety_confirmation",
    "awaiting_preview",
    "awaiting_user_guidance",
    "stalled",
    "dispatched",
    "complete",
    "loop_detected",
]

RISK_LEVELS: tuple[RiskLevel, ...] = get_args(RiskLevel)
TERMINAL_STATES: frozenset[RunState] = frozenset({"complete", "loop_detected"})


@dataclass(frozen=True, slots=True)
class Message:
    """One transcript entry."""

    role: Role
    content: str


@dataclass(frozen=True, slots=True)
class TaskStep:
    """A dispatched command that reported completion."""

    command: str
    exit_code: int
    output: str
    timestamp: float
    error_pattern: str | None = None


@dataclass(frozen=True, slots=True)
class TaskSummary:
    """End-of-episode report."""

    total_steps: int
    successful_steps: int
    failed_steps: int
    steps: tuple[TaskStep, ...]
    start_time: float
    end_time: float
    app_status: AppStatus
    app_port: int | None
    final_message: str
    reason: StopReason
    narrative: str | None = None


@dataclass(frozen=True, slots=True)
class AutoRunCounters:
    """Per-session counters, reset whenever auto-run is enabled."""

    dispatched_steps: int = 0
    consecutive_stalls: int = 0
    running_command_id: str | None = None


@dataclass(frozen=True, slots=True)
class PendingSafetyCommand:
    """A command held back until the user decides on it."""

    command: str
    session_id: str
    impact: str
    risk: RiskLevel
    allow_all_option: bool = False


@dataclass(frozen=True, slots=True)
class SessionPolicy:
    """Risk tiers the user has blanket-approved for one session."""

    allowed_risks: frozenset[RiskLevel] = frozenset()

    def __post_init__(self) -> None:
        unknown = set(self.allowed_risks) - set(RISK_LEVELS)
        if unknown:
            msg = f"Unknown risk level(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)

    def allows(self, risk: RiskLevel) -> bool:
        return risk in self.allowed_risks

    def allow(self, risk: RiskLevel) -> SessionPolicy:
        return SessionPolicy(allowed_risks=self.allowed_risks | {risk})

    def reset(self) -> SessionPolicy:
        return SessionPolicy()


@dataclass(frozen=True, slots=True)
class EpisodeState:
    """Complete orchestrator state for one session."""

    session_id: str
    policy: SessionPolicy = field(default_factory=SessionPolicy)
    status: RunState = "idle"
    auto_run: bool = False
    counters: AutoRunCounters = field(default_factory=AutoRunCounters)
    steps: tuple[TaskStep, ...] = ()
    start_time: float | None = None
    pending_safety: PendingSafetyCommand | None = None
    pending_preview: str | None = None
    command_in_flight: str | None = None
    stuck_checkpoint: int = 0
    retry_pending: bool = False
    retry_in_flight: bool = False
    summary: TaskSummary | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES
