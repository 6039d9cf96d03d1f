"""Auto-run state machine.

:meth:`AutoRunMachine.step` is pure apart from reading the injected clock: it
takes the current :class:`EpisodeState`, one input event and the read-only
transcript, and returns the next state together with the effects the host must
carry out in order.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace

from shellpilot.agent.events import (
    AppendMessage,
    CancelCommand,
    CancelRetry,
    CommandFinished,
    CommandStarted,
    Effect,
    EnableAutoRun,
    Event,
    InvokeModel,
    ModelCallFailed,
    ModelResponse,
    NewTabRequest,
    PreviewCommand,
    PreviewDecision,
    ReportSummary,
    ResetPolicy,
    RetryDue,
    RunCommand,
    RunTool,
    SafetyConfirmationRequest,
    SafetyDecision,
    ScheduleRetry,
    StatusChange,
    StopAutoRun,
    UserMessage,
)
from shellpilot.agent.models import (
    AutoRunCounters,
    EpisodeState,
    Message,
    PendingSafetyCommand,
    RunState,
    SessionPolicy,
    StopReason,
    TaskStep,
)
from shellpilot.agent.safety import classify
from shellpilot.agent.signals import (
    CommandSignal,
    CompleteSignal,
    NeedsInputSignal,
    detect_response_loop,
    parse_response,
    wants_cancel,
    wants_new_tab,
)
from shellpilot.agent.stuck import detect_stuck, extract_error_pattern, render_help_request
from shellpilot.agent.summary import build_task_summary
from shellpilot.agent.tools import parse_tool_calls
from shellpilot.config import OrchestratorSettings

LOGGER = logging.getLogger(__name__)

AUTO_RECOVERY_TEXT = (
    "AUTO-RECOVERY INITIATED:\n"
    "1. Review your last plan.\n"
    "2. Identify which step failed.\n"
    "3. Backtrack to the state before this step.\n"
    "4. Propose a DIFFERENT command to achieve the same goal. Do NOT repeat the failed command."
)
APP_STARTED_TEXT = (
    "**APPLICATION STARTED SUCCESSFULLY** - The output shows the application is running and"
    " displaying a UI/menu. If this was the user's goal (to run/start the app), you should"
    ' output your Mission Report and say "Task Complete". Do NOT run additional commands'
    " unless the user asked for something beyond just starting the app."
)
STALL_GUIDANCE_TEXT = (
    "No executable command found in your response. Please either:\n"
    "1. Provide a specific command to run in a ```bash code block\n"
    "2. If the task is complete, say 'Task Complete'\n"
    "3. If you need help, say '[ASK_USER]' and explain what you need"
)
STALLED_TEXT = (
    "Auto-Run Stalled: No valid command found after multiple attempts."
    " Please provide guidance or try a different approach."
)
LOOP_DETECTED_TEXT = "Loop Detected: You are repeating the same command/response. Auto-Run stopped."
SAFETY_CANCELLED_TEXT = "Command cancelled by user safety check."
MODEL_ERROR_TEXT = "Error in auto-run loop."

APP_SUCCESS_INDICATORS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"please select",
        r"choose.*option",
        r"menu:",
        r"available.*options",
        r"welcome to",
        r"server.*running",
        r"listening on",
        r"started.*successfully",
        r"ready.*http",
        r"application.*started",
        r"press.*to.*exit",
        r"enter.*to.*continue",
        r"waiting for input",
        r"╔.*╗",
        r"═{3,}",
    )
]


@dataclass(frozen=True, slots=True)
class Transition:
    state: EpisodeState
    effects: tuple[Effect, ...] = ()


def format_output_message(
    command: str,
    output: str,
    exit_code: int,
    *,
    auto_run: bool,
    forward_chars: int = 1000,
    error_pattern: str | None = None,
) -> str:
    """Format a finished command for the transcript the model reads next."""
    truncated = output[:forward_chars] + ("..." if len(output) > forward_chars else "")
    message = f"> Executed: `{command}` (Exit: {exit_code})\n\nOutput:\n```\n{truncated}\n```"
    if auto_run and exit_code != 0:
        message += f"\n\nCommand Failed (Exit Code: {exit_code})."
        if error_pattern:
            message += f"\n\nError Type: {error_pattern}"
        message += f"\n\n{AUTO_RECOVERY_TEXT}"
    if auto_run and exit_code == 0 and any(p.search(output) for p in APP_SUCCESS_INDICATORS):
        message += f"\n\n{APP_STARTED_TEXT}"
    return message


def is_coding_command(command: str) -> bool:
    return command.startswith(("echo", "cat", "printf")) or ">" in command


def _system(content: str) -> AppendMessage:
    return AppendMessage(Message(role="system", content=content))


class AutoRunMachine:
    """Drives one session's auto-run episodes."""

    def __init__(
        self,
        settings: OrchestratorSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.clock = clock

    def initial_state(
        self, session_id: str, policy: SessionPolicy | None = None
    ) -> EpisodeState:
        return EpisodeState(session_id=session_id, policy=policy or SessionPolicy())

    def step(
        self,
        state: EpisodeState,
        event: Event,
        messages: Sequence[Message] = (),
    ) -> Transition:
        if isinstance(event, ModelResponse):
            return self._on_model_response(state, event, messages)
        if isinstance(event, CommandFinished):
            return self._on_command_finished(state, event)
        if isinstance(event, CommandStarted):
            if event.session_id != state.session_id:
                return Transition(state)
            counters = replace(state.counters, running_command_id=event.command_id)
            return Transition(replace(state, counters=counters))
        if isinstance(event, SafetyDecision):
            return self._on_safety_decision(state, event)
        if isinstance(event, PreviewDecision):
            return self._on_preview_decision(state, event)
        if isinstance(event, RetryDue):
            return self._on_retry_due(state)
        if isinstance(event, ModelCallFailed):
            return self._on_model_call_failed(state, event)
        if isinstance(event, UserMessage):
            return self._on_user_message(state)
        if isinstance(event, EnableAutoRun):
            return self._on_enable(state)
        if isinstance(event, StopAutoRun):
            if not state.auto_run:
                return Transition(state)
            return self._finish(state, "user", event.narrative, status="idle")
        if isinstance(event, ResetPolicy):
            return Transition(replace(state, policy=state.policy.reset()))
        msg = f"Unsupported event: {event!r}"
        raise TypeError(msg)

    def _on_enable(self, state: EpisodeState) -> Transition:
        fresh = replace(
            state,
            status="idle",
            auto_run=True,
            counters=AutoRunCounters(),
            steps=(),
            start_time=self.clock(),
            pending_safety=None,
            pending_preview=None,
            stuck_checkpoint=0,
            retry_pending=False,
            retry_in_flight=False,
            summary=None,
        )
        LOGGER.info("auto_run_enabled", extra={"session_id": state.session_id})
        return Transition(fresh, (CancelRetry(), StatusChange("Auto-run enabled")))

    def _on_user_message(self, state: EpisodeState) -> Transition:
        effects: list[Effect] = []
        if state.retry_pending:
            effects.append(CancelRetry())
        counters = replace(state.counters, consecutive_stalls=0)
        next_state = replace(
            state,
            status="awaiting_model_response",
            counters=counters,
            pending_safety=None,
            pending_preview=None,
            retry_pending=False,
            retry_in_flight=False,
        )
        effects += [InvokeModel(), StatusChange("Thinking...")]
        return Transition(next_state, tuple(effects))

    def _on_model_response(
        self,
        state: EpisodeState,
        event: ModelResponse,
        messages: Sequence[Message],
    ) -> Transition:
        state = replace(state, retry_in_flight=False)
        new_tab: tuple[Effect, ...] = (NewTabRequest(),) if wants_new_tab(event.text) else ()
        if not state.auto_run:
            return Transition(replace(state, status="idle"), new_tab)

        if detect_response_loop(messages):
            LOGGER.warning("auto_run_loop_detected", extra={"session_id": state.session_id})
            finished = self._finish(state, "error", None, status="loop_detected")
            return Transition(
                finished.state,
                (
                    _system(LOOP_DETECTED_TEXT),
                    *finished.effects,
                    StatusChange("Loop detected. Stopped."),
                ),
            )

        if state.counters.dispatched_steps >= self.settings.max_auto_steps:
            return self._limit_reached(state)

        signal = parse_response(event.text, max_command_length=self.settings.max_command_length)
        early: list[Effect] = []
        running_command_id = state.counters.running_command_id
        cancelled = running_command_id is not None and wants_cancel(event.text)
        if running_command_id is not None and cancelled:
            LOGGER.info(
                "auto_run_cancel_requested",
                extra={"session_id": state.session_id, "command_id": running_command_id},
            )
            early += [
                CancelCommand(command_id=running_command_id, session_id=state.session_id),
                StatusChange("Cancelling command..."),
            ]
            state = replace(state, counters=replace(state.counters, running_command_id=None))
        tool_calls = () if isinstance(signal, NeedsInputSignal) else parse_tool_calls(event.text)
        for call in tool_calls:
            early += [StatusChange(f"Executing Tool: {call.tool}..."), RunTool(call)]

        if isinstance(signal, CommandSignal):
            transition = self._on_command(state, signal.command)
        elif isinstance(signal, CompleteSignal):
            counters = replace(state.counters, consecutive_stalls=0)
            transition = self._finish(
                replace(state, counters=counters),
                "complete",
                signal.narrative,
                status="complete",
            )
        elif isinstance(signal, NeedsInputSignal):
            counters = replace(state.counters, consecutive_stalls=0)
            transition = Transition(
                replace(state, status="awaiting_user_guidance", counters=counters),
                (StatusChange("Waiting for your input..."),),
            )
        elif tool_calls:
            transition = self._on_tool_turn(state)
        elif cancelled:
            transition = Transition(replace(state, status="dispatched"))
        else:
            transition = self._on_stall(state)
        return Transition(transition.state, (*early, *transition.effects, *new_tab))

    def _on_tool_turn(self, state: EpisodeState) -> Transition:
        counters = replace(
            state.counters,
            dispatched_steps=state.counters.dispatched_steps + 1,
            consecutive_stalls=0,
        )
        effects: list[Effect] = []
        if state.retry_pending:
            effects.append(CancelRetry())
        effects += [InvokeModel(), StatusChange("Analyzing tool output...")]
        return Transition(
            replace(
                state,
                status="awaiting_model_response",
                counters=counters,
                retry_pending=False,
            ),
            tuple(effects),
        )

    def _on_command(self, state: EpisodeState, command: str) -> Transition:
        verdict = classify(command, state.policy)
        if verdict is not None:
            pending = PendingSafetyCommand(
                command=command,
                session_id=state.session_id,
                impact=verdict.description,
                risk=verdict.risk,
                allow_all_option=verdict.allow_all_option,
            )
            request = SafetyConfirmationRequest(
                command=command,
                risk=verdict.risk,
                impact=verdict.description,
                session_id=state.session_id,
                allow_all_option=verdict.allow_all_option,
            )
            return Transition(
                replace(state, status="awaiting_safety_confirmation", pending_safety=pending),
                (request, StatusChange("Waiting for safety confirmation...")),
            )
        if self.settings.preview_enabled:
            return Transition(
                replace(state, status="awaiting_preview", pending_preview=command),
                (
                    PreviewCommand(command=command, delay=self.settings.preview_delay),
                    StatusChange("Review command before execution..."),
                ),
            )
        return self._dispatch(state, command)

    def _dispatch(self, state: EpisodeState, command: str) -> Transition:
        running = state.command_in_flight
        if running is not None:
            LOGGER.warning(
                "auto_run_dispatch_refused",
                extra={"session_id": state.session_id, "running_command": running},
            )
            notices: list[Effect] = [CancelRetry()] if state.retry_pending else []
            notices += [
                _system(
                    f"Command not run: `{command}`. `{running}` is still running;"
                    " its result will follow."
                ),
                StatusChange(f"Waiting for `{running}` to finish..."),
            ]
            return Transition(
                replace(
                    state,
                    status="dispatched",
                    pending_safety=None,
                    pending_preview=None,
                    retry_pending=False,
                ),
                tuple(notices),
            )
        if state.counters.dispatched_steps >= self.settings.max_auto_steps:
            return self._limit_reached(state)
        counters = replace(
            state.counters,
            dispatched_steps=state.counters.dispatched_steps + 1,
            consecutive_stalls=0,
        )
        effects: list[Effect] = []
        if state.retry_pending:
            effects.append(CancelRetry())
        effects.append(RunCommand(command=command, session_id=state.session_id))
        label = "Coding" if is_coding_command(command) else "Terminal"
        effects.append(StatusChange(f"{label}: {command}"))
        LOGGER.info(
            "auto_run_dispatch",
            extra={
                "session_id": state.session_id,
                "step": counters.dispatched_steps,
                "max_steps": self.settings.max_auto_steps,
            },
        )
        next_state = replace(
            state,
            status="dispatched",
            counters=counters,
            pending_safety=None,
            pending_preview=None,
            command_in_flight=command,
            retry_pending=False,
        )
        return Transition(next_state, tuple(effects))

    def _on_stall(self, state: EpisodeState) -> Transition:
        stalls = state.counters.consecutive_stalls + 1
        counters = replace(state.counters, consecutive_stalls=stalls)
        LOGGER.info(
            "auto_run_stall",
            extra={"session_id": state.session_id, "consecutive_stalls": stalls},
        )
        if stalls >= self.settings.max_stalls_before_ask:
            return Transition(
                replace(state, status="stalled", counters=counters, retry_pending=False),
                (
                    CancelRetry(),
                    _system(STALLED_TEXT),
                    StatusChange("Stalled. Waiting for input..."),
                ),
            )
        return Transition(
            replace(
                state,
                status="awaiting_model_response",
                counters=counters,
                retry_pending=True,
            ),
            (
                _system(STALL_GUIDANCE_TEXT),
                ScheduleRetry(delay=self.settings.stall_retry_delay),
                StatusChange("Retrying with guidance..."),
            ),
        )

    def _on_retry_due(self, state: EpisodeState) -> Transition:
        if not state.retry_pending or not state.auto_run:
            return Transition(state)
        return Transition(
            replace(
                state,
                status="awaiting_model_response",
                retry_pending=False,
                retry_in_flight=True,
            ),
            (InvokeModel(retry=True), StatusChange("Retrying with guidance...")),
        )

    def _on_command_finished(self, state: EpisodeState, event: CommandFinished) -> Transition:
        if event.session_id != state.session_id:
            return Transition(state)
        settings = self.settings
        counters = replace(state.counters, running_command_id=None)
        active = state.auto_run and not state.is_terminal
        error_pattern = extract_error_pattern(event.output) if event.exit_code != 0 else None
        steps = state.steps
        if active:
            steps = steps + (
                TaskStep(
                    command=event.command,
                    exit_code=event.exit_code,
                    output=event.output[: settings.step_output_preview_chars],
                    timestamp=self.clock(),
                    error_pattern=error_pattern,
                ),
            )
        result_message = _system(
            format_output_message(
                event.command,
                event.output,
                event.exit_code,
                auto_run=active,
                forward_chars=settings.output_forward_chars,
                error_pattern=error_pattern,
            )
        )
        state = replace(state, counters=counters, steps=steps, command_in_flight=None)
        if not active:
            status: RunState = state.status if state.is_terminal else "idle"
            return Transition(replace(state, status=status), (result_message,))

        if counters.dispatched_steps >= settings.max_auto_steps:
            limited = self._limit_reached(state)
            return Transition(limited.state, (result_message, *limited.effects))

        report = detect_stuck(
            steps[state.stuck_checkpoint :],
            window=settings.stuck_window,
            max_failures=settings.max_failures_before_help,
            max_similar=settings.max_similar_commands,
        )
        if report is not None:
            LOGGER.warning(
                "auto_run_stuck",
                extra={"session_id": state.session_id, "reason": report.reason},
            )
            return Transition(
                replace(state, status="awaiting_user_guidance", stuck_checkpoint=len(steps)),
                (
                    result_message,
                    AppendMessage(Message(role="ai", content=render_help_request(report))),
                    StatusChange("Waiting for your input..."),
                ),
            )

        return Transition(
            replace(state, status="awaiting_model_response"),
            (result_message, InvokeModel(), StatusChange("Analyzing command output...")),
        )

    def _on_safety_decision(self, state: EpisodeState, event: SafetyDecision) -> Transition:
        pending = state.pending_safety
        if pending is None:
            return Transition(state)
        if not event.approved:
            LOGGER.info("safety_declined", extra={"session_id": state.session_id})
            return Transition(
                replace(state, status="awaiting_user_guidance", pending_safety=None),
                (_system(SAFETY_CANCELLED_TEXT), StatusChange("Command cancelled.")),
            )
        policy = state.policy
        if event.allow_all and pending.allow_all_option:
            policy = policy.allow(pending.risk)
            LOGGER.info(
                "safety_allow_all",
                extra={"session_id": state.session_id, "risk": pending.risk},
            )
        return self._dispatch(replace(state, policy=policy, pending_safety=None), pending.command)

    def _on_preview_decision(self, state: EpisodeState, event: PreviewDecision) -> Transition:
        command = state.pending_preview
        if command is None:
            return Transition(state)
        if event.run:
            return self._dispatch(state, command)
        return Transition(
            replace(state, status="awaiting_user_guidance", pending_preview=None),
            (
                _system(f"Skipped command: `{command}`\nPlease provide an alternative approach."),
                StatusChange("Command skipped. Waiting for guidance..."),
            ),
        )

    def _on_model_call_failed(self, state: EpisodeState, event: ModelCallFailed) -> Transition:
        LOGGER.error(
            "auto_run_model_call_failed",
            extra={"session_id": state.session_id, "error": event.error},
        )
        error_message = AppendMessage(Message(role="ai", content=MODEL_ERROR_TEXT))
        if state.retry_in_flight and state.auto_run:
            counters = replace(
                state.counters, consecutive_stalls=self.settings.max_stalls_before_ask
            )
            return Transition(
                replace(state, status="stalled", counters=counters, retry_in_flight=False),
                (error_message, StatusChange("Retry failed. Waiting for input...")),
            )
        return Transition(
            replace(state, status="idle", retry_in_flight=False),
            (error_message, StatusChange("Error encountered.")),
        )

    def _limit_reached(self, state: EpisodeState) -> Transition:
        limit = self.settings.max_auto_steps
        finished = self._finish(state, "limit", None, status="complete")
        return Transition(
            finished.state,
            (
                _system(f"Auto-Run limit reached ({limit} steps). Stopping for safety."),
                *finished.effects,
            ),
        )

    def _finish(
        self,
        state: EpisodeState,
        reason: StopReason,
        narrative: str | None,
        *,
        status: RunState,
    ) -> Transition:
        summary = build_task_summary(
            state.steps,
            state.start_time,
            reason,
            narrative,
            end_time=self.clock(),
        )
        effects: list[Effect] = [CancelRetry()]
        running_command_id = state.counters.running_command_id
        if running_command_id:
            effects.append(
                CancelCommand(command_id=running_command_id, session_id=state.session_id)
            )
        effects += [ReportSummary(summary), StatusChange(None)]
        LOGGER.info(
            "auto_run_finished",
            extra={
                "session_id": state.session_id,
                "reason": reason,
                "total_steps": summary.total_steps,
                "app_status": summary.app_status,
            },
        )
        next_state = replace(
            state,
            status=status,
            auto_run=False,
            counters=replace(state.counters, running_command_id=None),
            pending_safety=None,
            pending_preview=None,
            retry_pending=False,
            retry_in_flight=False,
            summary=summary,
        )
        return Transition(next_state, tuple(effects))
