"""Command-line interface for shellpilot."""

from __future__ import annotations

import argparse
import logging
import os
import platform
import uuid
from pathlib import Path
from typing import cast

from .agent.events import SafetyConfirmationRequest, SafetyDecision
from .agent.loop import AutoRunSession
from .agent.machine import AutoRunMachine
from .agent.models import Message
from .agent.scheduler import Scheduler
from .agent.summary import render_summary
from .config import AppConfig
from .llm.client import ChatClient
from .shell import create_shell_adapter

LOGGER = logging.getLogger(__name__)

STOP_WORDS = {"q", "quit", "exit", "stop"}


class CLIArgs(argparse.Namespace):
    goal: str | None
    working_directory: str | None


def build_runtime_context(shell_name: str, working_directory: str | None) -> str:
    """Build startup orientation context for the model."""
    effective_cwd = working_directory or str(Path.cwd())
    return "\n".join(
        [
            "Runtime environment context:",
            f"- operating_system: {platform.system()} {platform.release()}",
            f"- architecture: {platform.machine()}",
            f"- os_name: {os.name}",
            f"- shell: {shell_name}",
            f"- starting_working_directory: {effective_cwd}",
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shellpilot", description="AI-assisted terminal auto-run"
    )
    parser.add_argument(
        "--cwd",
        dest="working_directory",
        help=(
            "Override the starting working directory for command execution. "
            "Takes precedence over config/env cwd values."
        ),
    )
    parser.add_argument("goal", nargs="?", help="Goal for the auto-run episode")
    return parser


def main() -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args())
    config = AppConfig.from_env()
    logging.basicConfig(level=config.log_level)
    adapter = create_shell_adapter(config.shell)
    LOGGER.debug("shell_adapter_selected", extra={"shell": adapter.name})

    goal = args.goal or input("Goal: ").strip()
    if not goal:
        print("No goal provided.")
        return 1

    configured_working_directory = (
        args.working_directory if args.working_directory is not None else config.working_directory
    )
    working_directory: str | None = None
    if configured_working_directory is not None:
        resolved_working_directory = Path(configured_working_directory).expanduser().resolve()
        if not resolved_working_directory.exists() or not resolved_working_directory.is_dir():
            print(f"Invalid configured cwd directory: {configured_working_directory}")
            return 1
        working_directory = str(resolved_working_directory)

    client = ChatClient(api_key=config.api_key, model=config.model, api_url=config.api_url)
    scheduler = Scheduler()
    session = AutoRunSession(
        session_id=uuid.uuid4().hex[:8],
        machine=AutoRunMachine(config.orchestrator),
        client=client,
        shell=adapter,
        scheduler=scheduler,
        system_prompt=(
            f"{config.system_prompt}\n\n"
            f"{build_runtime_context(adapter.name, working_directory)}"
        ),
        log_dir=config.log_dir,
        working_directory=working_directory,
        confirm_safety=_confirm_safety,
        on_summary=lambda summary: print(render_summary(summary)),
        on_status=_print_status,
        on_new_tab=lambda: print("[new tab requested]"),
        on_preview=_print_preview,
    )

    printed = 0
    try:
        session.enable()
        session.send_user_message(goal)
        while True:
            printed = _print_new_messages(session.messages, printed)
            if scheduler.next_deadline() is not None:
                scheduler.wait_and_run()
                continue
            if not session.state.auto_run:
                break
            guidance = input("Guidance (q to stop): ").strip()
            if not guidance or guidance.lower() in STOP_WORDS:
                session.stop()
                break
            session.send_user_message(guidance)
    except KeyboardInterrupt:
        print()
        session.stop()

    _print_new_messages(session.messages, printed)
    return 0


def _confirm_safety(request: SafetyConfirmationRequest) -> SafetyDecision:
    print("\n=== SAFETY CONFIRMATION ===")
    print(f"Command: {request.command}")
    print(f"Risk: {request.risk}")
    print(f"Impact: {request.impact}")
    print("===========================")
    if request.allow_all_option:
        prompt = f"Run this command? [y]es / [a]llow all {request.risk}-risk / [N]o: "
    else:
        prompt = "Run this command? [y/N]: "
    choice = input(prompt).strip().lower()
    if request.allow_all_option and choice in {"a", "all"}:
        return SafetyDecision(approved=True, allow_all=True)
    return SafetyDecision(approved=choice in {"y", "yes"})


def _print_status(status: str | None) -> None:
    if status:
        print(f"[status] {status}")


def _print_preview(command: str, delay: float) -> None:
    print(f"[preview] {command} (runs in {delay:.1f}s)")


def _render_message(message: Message) -> str:
    if message.role == "user":
        return f"> {message.content}"
    if message.role == "ai":
        return f"[model]\n{message.content}"
    return f"[terminal]\n{message.content}"


def _print_new_messages(messages: list[Message], start: int) -> int:
    for message in messages[start:]:
        if message.role != "user":
            print(_render_message(message))
    return len(messages)


if __name__ == "__main__":
    raise SystemExit(main())
