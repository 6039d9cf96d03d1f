"""Spot an episode that keeps failing and turn it into a request for help."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass

from shellpilot.agent.models import TaskStep

ERROR_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"Address already in use",
        r"EADDRINUSE",
        r"Permission denied",
        r"command not found",
        r"No such file or directory",
        r"Connection refused",
        r"timeout",
        r"ModuleNotFoundError",
        r"ImportError",
        r"SyntaxError",
    )
]

_SUGGESTIONS: list[tuple[re.Pattern[str], tuple[str, ...]]] = [
    (
        re.compile(r"address.*in.*use|EADDRINUSE", re.IGNORECASE),
        (
            "A process is blocking the port. Would you like me to find and kill it?",
            "Should I try a different port number?",
        ),
    ),
    (
        re.compile(r"permission.*denied", re.IGNORECASE),
        (
            "This requires elevated permissions. Should I use sudo?",
            "Check if the file/directory permissions need to be changed",
        ),
    ),
    (
        re.compile(r"command.*not.*found", re.IGNORECASE),
        (
            "The required tool may not be installed. Should I install it?",
            "Check if the tool is in your PATH",
        ),
    ),
    (
        re.compile(r"module.*not.*found|import.*error", re.IGNORECASE),
        (
            "Missing Python dependency. Should I install it with pip?",
            "Are you in the correct virtual environment?",
        ),
    ),
    (
        re.compile(r"no.*such.*file", re.IGNORECASE),
        (
            "The file or directory doesn't exist. Should I create it?",
            "Verify the path is correct",
        ),
    ),
    (
        re.compile(r"connection.*refused", re.IGNORECASE),
        (
            "The service might not be running. Should I start it?",
            "Check if the service is configured correctly",
        ),
    ),
    (
        re.compile(r"timeout", re.IGNORECASE),
        (
            "The operation timed out. Should I try with a longer timeout?",
            "The service might be overloaded or unresponsive",
        ),
    ),
]

DEFAULT_SUGGESTIONS = (
    "Would you like to try a different approach?",
    "Can you provide more context about what you're trying to achieve?",
    "Should I investigate the environment setup?",
)
SIMILAR_COMMAND_SUGGESTIONS = (
    "Try a completely different approach",
    "Check if prerequisites are missing",
    "Verify the environment is correctly set up",
)


@dataclass(frozen=True, slots=True)
class StuckReport:
    reason: str
    failed_commands: tuple[str, ...]
    suggestions: tuple[str, ...]


def extract_error_pattern(output: str) -> str | None:
    """Name the first well-known failure found in ``output``."""
    for pattern in ERROR_PATTERNS:
        if pattern.search(output):
            return pattern.pattern
    return None


def generate_suggestions(error_patterns: Sequence[str]) -> tuple[str, ...]:
    suggestions: list[str] = []
    for error_pattern in error_patterns:
        for matcher, hints in _SUGGESTIONS:
            if matcher.search(error_pattern):
                suggestions.extend(hint for hint in hints if hint not in suggestions)
    return tuple(suggestions) or DEFAULT_SUGGESTIONS


def detect_stuck(
    steps: Sequence[TaskStep],
    *,
    window: int = 5,
    max_failures: int = 3,
    max_similar: int = 3,
) -> StuckReport | None:
    """Inspect the last ``window`` steps for repeated failure.

    Too many failures wins over repeated attempts at the same tool. A group of
    similar commands only counts when the latest of them failed.
    """
    recent = list(steps[-window:])
    if len(recent) < 2:
        return None

    failures = [step for step in recent if step.exit_code != 0]
    if len(failures) >= max_failures:
        patterns = [step.error_pattern for step in failures if step.error_pattern]
        counts = Counter(patterns)
        if counts and counts.most_common(1)[0][1] >= max_failures:
            repeated = counts.most_common(1)[0][0]
            return StuckReport(
                reason=f'Same error "{repeated}" occurring repeatedly',
                failed_commands=tuple(
                    step.command for step in failures if step.error_pattern == repeated
                ),
                suggestions=generate_suggestions([repeated]),
            )
        return StuckReport(
            reason=f"{len(failures)} command failures in the last {len(recent)} commands",
            failed_commands=tuple(step.command for step in failures),
            suggestions=generate_suggestions(list(dict.fromkeys(patterns))),
        )

    latest = recent[-1]
    if latest.exit_code != 0:
        base = _base_command(latest.command)
        similar = [step.command for step in recent if _base_command(step.command) == base]
        if len(similar) >= max_similar:
            return StuckReport(
                reason=f'Repeated attempts with similar "{base}" commands',
                failed_commands=tuple(similar),
                suggestions=SIMILAR_COMMAND_SUGGESTIONS,
            )
    return None


def render_help_request(report: StuckReport) -> str:
    failed = "\n".join(f"- `{command}`" for command in report.failed_commands)
    suggestions = "\n".join(
        f"{index}. {suggestion}" for index, suggestion in enumerate(report.suggestions, start=1)
    )
    return (
        "**I Need Your Help**\n\n"
        "I've been trying to complete this task but I'm running into repeated issues.\n\n"
        f"**Problem:** {report.reason}\n\n"
        f"**Failed Commands:**\n{failed}\n\n"
        f"**Possible Solutions:**\n{suggestions}\n\n"
        "**Please help me by:**\n"
        "- Telling me which approach to try\n"
        "- Providing additional context about your setup\n"
        "- Or manually running a command to fix the issue\n\n"
        "Once you respond, I'll continue with your guidance."
    )


def _base_command(command: str) -> str:
    parts = command.split()
    return parts[0] if parts else ""
