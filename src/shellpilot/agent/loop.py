"""Host driver that feeds the auto-run machine and carries out its effects."""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

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
from shellpilot.agent.machine import AutoRunMachine
from shellpilot.agent.models import EpisodeState, Message, TaskSummary
from shellpilot.agent.scheduler import Scheduler
from shellpilot.agent.tools import run_tool
from shellpilot.llm.client import ChatClient, ModelCallError
from shellpilot.shell import CommandResult, ShellAdapter

LOGGER = logging.getLogger(__name__)

LOG_VERSION = 1

ConfirmSafety = Callable[[SafetyConfirmationRequest], SafetyDecision | None]
SummaryCallback = Callable[[TaskSummary], None]
StatusCallback = Callable[[str | None], None]
PreviewCallback = Callable[[str, float], None]


class AutoRunSession:
    """Owns one terminal session's transcript and auto-run episode.

    Every input goes through :meth:`dispatch`, which queues it and drains the
    queue one event at a time, so effects that produce new inputs (a finished
    command, a model reply) never re-enter the machine mid-transition. Blocking
    work (model calls, command execution) runs after the transition's other
    effects have been applied.
    """

    def __init__(
        self,
        *,
        session_id: str,
        machine: AutoRunMachine,
        client: ChatClient,
        shell: ShellAdapter,
        scheduler: Scheduler,
        system_prompt: str,
        log_dir: str | Path,
        working_directory: str | None = None,
        command_timeout: float | None = None,
        confirm_safety: ConfirmSafety | None = None,
        on_summary: SummaryCallback | None = None,
        on_status: StatusCallback | None = None,
        on_new_tab: Callable[[], None] | None = None,
        on_preview: PreviewCallback | None = None,
    ) -> None:
        self.session_id = session_id
        self.machine = machine
        self.client = client
        self.shell = shell
        self.scheduler = scheduler
        self.system_prompt = system_prompt
        self.log_dir = Path(log_dir)
        self.working_directory = working_directory
        self.command_timeout = command_timeout
        self.confirm_safety = confirm_safety
        self.on_summary = on_summary
        self.on_status = on_status
        self.on_new_tab = on_new_tab
        self.on_preview = on_preview

        self.messages: list[Message] = []
        self.state: EpisodeState = machine.initial_state(session_id)
        self.pending_safety_request: SafetyConfirmationRequest | None = None
        self._queue: deque[Event] = deque()
        self._deferred: list[Callable[[], None]] = []
        self._draining = False

    @property
    def retry_key(self) -> str:
        return self.session_id

    @property
    def preview_key(self) -> str:
        return f"{self.session_id}:preview"

    def enable(self) -> None:
        self.dispatch(EnableAutoRun())

    def stop(self, narrative: str | None = None) -> None:
        self.cancel_running()
        self.scheduler.cancel(self.preview_key)
        self.dispatch(StopAutoRun(narrative=narrative))

    def cancel_running(self) -> bool:
        """Terminate the command this session is waiting on, if any.

        Goes straight to the shell rather than through the queue, so it also
        works while :meth:`dispatch` is blocked on that command or from another
        thread.
        """
        running = self.state.counters.running_command_id
        if running is None:
            return False
        return self.shell.cancel(running)

    def send_user_message(self, text: str) -> None:
        self.messages.append(Message(role="user", content=text))
        self.dispatch(UserMessage(content=text))

    def resolve_safety(self, decision: SafetyDecision) -> None:
        self.pending_safety_request = None
        self.dispatch(decision)

    def preview_decision(self, run: bool) -> None:
        self.scheduler.cancel(self.preview_key)
        self.dispatch(PreviewDecision(run=run))

    def reset_policy(self) -> None:
        self.dispatch(ResetPolicy())

    def dispatch(self, event: Event) -> None:
        """Queue ``event`` and drain the queue unless a drain is already running."""
        self._queue.append(event)
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                current = self._queue.popleft()
                transition = self.machine.step(self.state, current, tuple(self.messages))
                self.state = transition.state
                for effect in transition.effects:
                    self._apply(effect)
                deferred, self._deferred = self._deferred, []
                for work in deferred:
                    work()
        finally:
            self._draining = False

    def _apply(self, effect: Effect) -> None:
        if isinstance(effect, AppendMessage):
            self.messages.append(effect.message)
        elif isinstance(effect, InvokeModel):
            self._deferred.append(lambda: self._invoke_model(retry=effect.retry))
        elif isinstance(effect, RunCommand):
            self._deferred.append(lambda: self._run_command(effect))
        elif isinstance(effect, CancelCommand):
            self.shell.cancel(effect.command_id)
        elif isinstance(effect, RunTool):
            self.messages.append(
                Message(role="system", content=run_tool(effect.call, cwd=self.working_directory))
            )
        elif isinstance(effect, SafetyConfirmationRequest):
            self._deferred.append(lambda: self._request_safety(effect))
        elif isinstance(effect, ScheduleRetry):
            self.scheduler.schedule(
                self.retry_key, effect.delay, lambda: self.dispatch(RetryDue())
            )
        elif isinstance(effect, CancelRetry):
            self.scheduler.cancel(self.retry_key)
        elif isinstance(effect, PreviewCommand):
            if self.on_preview:
                self.on_preview(effect.command, effect.delay)
            self.scheduler.schedule(
                self.preview_key,
                effect.delay,
                lambda: self.dispatch(PreviewDecision(run=True)),
            )
        elif isinstance(effect, ReportSummary):
            self._report_summary(effect.summary)
        elif isinstance(effect, StatusChange):
            if self.on_status:
                self.on_status(effect.status)
        elif isinstance(effect, NewTabRequest):
            LOGGER.info("new_tab_requested", extra={"session_id": self.session_id})
            if self.on_new_tab:
                self.on_new_tab()
        else:
            msg = f"Unsupported effect: {effect!r}"
            raise TypeError(msg)

    def _invoke_model(self, *, retry: bool) -> None:
        LOGGER.debug(
            "model_invoked",
            extra={"session_id": self.session_id, "retry": retry, "messages": len(self.messages)},
        )
        try:
            text = self.client.chat(self.system_prompt, tuple(self.messages))
        except ModelCallError as exc:
            self.dispatch(ModelCallFailed(error=str(exc)))
            return
        self.messages.append(Message(role="ai", content=text))
        self.dispatch(ModelResponse(text=text))

    def _run_command(self, effect: RunCommand) -> None:
        # the machine must see CommandStarted before execute blocks
        command_id = self.shell.new_command_id()
        self._queue.append(
            CommandStarted(
                command_id=command_id,
                command=effect.command,
                session_id=effect.session_id,
            )
        )
        self._deferred.append(lambda: self._execute(effect, command_id))

    def _execute(self, effect: RunCommand, command_id: str) -> None:
        result = self.shell.execute(
            effect.command,
            command_id=command_id,
            cwd=self.working_directory,
            timeout=self.command_timeout,
        )
        self._append_log("command_executed", **_result_fields(result))
        self.dispatch(
            CommandFinished(
                command=effect.command,
                output=result.output,
                exit_code=result.returncode,
                session_id=effect.session_id,
            )
        )

    def _request_safety(self, request: SafetyConfirmationRequest) -> None:
        self.pending_safety_request = request
        self._append_log(
            "safety_confirmation_requested",
            command=request.command,
            risk=request.risk,
            impact=request.impact,
        )
        if self.confirm_safety is None:
            return
        decision = self.confirm_safety(request)
        if decision is not None:
            self.pending_safety_request = None
            self._queue.append(decision)

    def _report_summary(self, summary: TaskSummary) -> None:
        fields = asdict(summary)
        fields.pop("steps")
        self._append_log("task_summary", **fields)
        if self.on_summary:
            self.on_summary(summary)

    def _append_log(self, event: str, **fields: object) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
        entry = {
            "log_version": LOG_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": self.session_id,
            "event": event,
            "model": getattr(self.client, "model", None),
            "shell": getattr(self.shell, "name", self.shell.__class__.__name__),
            "working_directory": self.working_directory,
            **fields,
        }
        with day_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry) + "\n")


def _result_fields(result: CommandResult) -> dict[str, object]:
    return {
        "command_id": result.command_id,
        "command": result.command,
        "returncode": result.returncode,
        "duration": round(result.duration_seconds, 4),
        "timed_out": result.timed_out,
        "executed": result.executed,
        "cancelled": result.cancelled,
        "output": result.output,
    }


class SessionRegistry:
    """Routes session-scoped inputs to the owning :class:`AutoRunSession`."""

    def __init__(self) -> None:
        self._sessions: dict[str, AutoRunSession] = {}

    def add(self, session: AutoRunSession) -> AutoRunSession:
        if session.session_id in self._sessions:
            msg = f"Session already registered: {session.session_id}"
            raise ValueError(msg)
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> AutoRunSession | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.scheduler.cancel(session.retry_key)
            session.scheduler.cancel(session.preview_key)

    def route(self, event: CommandStarted | CommandFinished) -> bool:
        """Deliver a command event to its session; return false for unknown sessions."""
        session = self._sessions.get(event.session_id)
        if session is None:
            LOGGER.debug("command_event_unrouted", extra={"session_id": event.session_id})
            return False
        session.dispatch(event)
        return True

    def __len__(self) -> int:
        return len(self._sessions)
