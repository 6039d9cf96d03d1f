"""Classify a model response into the signal that drives the auto-run loop."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from shellpilot.agent.extractor import MAX_COMMAND_LENGTH, extract_first_command
from shellpilot.agent.models import Message

COMPLETION_PHRASE = "task complete"
NEEDS_INPUT_TOKENS = ("[ASK_USER]", "[WAIT]", "[NEED_HELP]")
NEW_TAB_TOKEN = "[NEW_TAB]"
CANCEL_TOKEN = "[CANCEL]"

_COMPLETION_PATTERN = re.compile(re.escape(COMPLETION_PHRASE), re.IGNORECASE)
_MISSION_REPORT_PATTERN = re.compile(r"Mission Report:([\s\S]*?)Task Complete", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class CommandSignal:
    command: str


@dataclass(frozen=True, slots=True)
class CompleteSignal:
    narrative: str


@dataclass(frozen=True, slots=True)
class NeedsInputSignal:
    directive: str


@dataclass(frozen=True, slots=True)
class NoSignal:
    pass


ResponseSignal = CommandSignal | CompleteSignal | NeedsInputSignal | NoSignal


def parse_response(text: str, *, max_command_length: int = MAX_COMMAND_LENGTH) -> ResponseSignal:
    """Reduce a raw model response to exactly one signal.

    A command wins over a completion phrase, which wins over a pause directive.
    """
    command = extract_first_command(text, max_length=max_command_length)
    if command is not None:
        return CommandSignal(command=command)
    if _COMPLETION_PATTERN.search(text):
        return CompleteSignal(narrative=extract_narrative(text))
    for token in NEEDS_INPUT_TOKENS:
        if token in text:
            return NeedsInputSignal(directive=token)
    return NoSignal()


def extract_narrative(text: str) -> str:
    report = _MISSION_REPORT_PATTERN.search(text)
    if report:
        return report.group(1).strip()
    return _COMPLETION_PATTERN.sub("", text, count=1).strip()


def wants_new_tab(text: str) -> bool:
    return NEW_TAB_TOKEN in text


def wants_cancel(text: str) -> bool:
    return CANCEL_TOKEN in text


def detect_response_loop(messages: Sequence[Message]) -> bool:
    """Return true when the model just repeated its previous turn verbatim.

    Matches ``[..., ai: X, system: ..., ai: X]`` once the transcript holds more
    than four entries, so the first exchange after the goal never counts.
    """
    if len(messages) <= 4:
        return False
    latest, between, previous = messages[-1], messages[-2], messages[-3]
    return (
        latest.role == "ai"
        and between.role == "system"
        and previous.role == "ai"
        and latest.content == previous.content
    )
