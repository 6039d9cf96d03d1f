"""Risk classification for model-proposed commands."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from shellpilot.agent.models import RiskLevel, SessionPolicy

LOGGER = logging.getLogger(__name__)

# tiers the user may approve for the rest of the session in one go
ALLOW_ALL_RISKS: frozenset[RiskLevel] = frozenset({"low"})

_CMD_START = r"(?:^|\s|;|&)"


@dataclass(frozen=True, slots=True)
class SafetyRule:
    pattern: re.Pattern[str]
    risk: RiskLevel
    description: str


@dataclass(frozen=True, slots=True)
class SafetyVerdict:
    """Outcome of a rule match for a command that needs confirmation."""

    risk: RiskLevel
    description: str

    @property
    def allow_all_option(self) -> bool:
        return self.risk in ALLOW_ALL_RISKS


def _rule(pattern: str, risk: RiskLevel, description: str) -> SafetyRule:
    return SafetyRule(pattern=re.compile(pattern), risk=risk, description=description)


# Order matters: the first matching rule wins, so the most dangerous variant of a
# command family is listed before its general form.
SAFETY_RULES: tuple[SafetyRule, ...] = (
    _rule(
        _CMD_START + r"rm\s+(?:-[a-zA-Z]*r[a-zA-Z]*\s+)?/",
        "critical",
        "CRITICAL: Recursively deletes from root. System destruction likely.",
    ),
    _rule(
        _CMD_START + r"rm\s+(?:-[a-zA-Z]*r[a-zA-Z]*\s+)?~",
        "critical",
        "CRITICAL: Recursively deletes home directory. Data loss likely.",
    ),
    _rule(
        _CMD_START + r"rm\s+-[a-zA-Z]*r[a-zA-Z]*\s+",
        "high",
        "Deletes files/directories recursively. Permanent data loss.",
    ),
    _rule(_CMD_START + r"rm\s+", "medium", "Deletes files permanently."),
    _rule(
        _CMD_START + r"mkfs",
        "critical",
        "Formats a filesystem. All data on target will be lost.",
    ),
    _rule(
        _CMD_START + r"dd\b",
        "high",
        "Low-level data copy. Can overwrite disks/partitions.",
    ),
    _rule(
        r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
        "critical",
        "Fork bomb. Will crash the system.",
    ),
    _rule(
        r">\s*/dev/(?:sda|hda|nvme)",
        "critical",
        "Writes directly to disk device. Data loss likely.",
    ),
    _rule(
        _CMD_START + r"(?:curl|wget)\b.*\|\s*(?:sudo\s+)?(?:sh|bash|zsh)\b",
        "high",
        "Downloads and executes remote script. Security risk.",
    ),
    _rule(
        _CMD_START + r"sudo\b",
        "medium",
        "Runs with superuser privileges. Can modify system files.",
    ),
    _rule(
        _CMD_START + r"chmod\s+(?:-R\s+)?777",
        "medium",
        "Sets overly permissive file permissions.",
    ),
    _rule(
        _CMD_START + r"(?:pip3?|pipx|uv\s+pip)\s+install\b",
        "low",
        "Installs Python packages into the active environment.",
    ),
    _rule(
        _CMD_START + r"(?:npm|pnpm|bun)\s+(?:install|i|add)\b",
        "low",
        "Installs Node.js packages.",
    ),
    _rule(_CMD_START + r"yarn\s+(?:add|install)\b", "low", "Installs Node.js packages."),
    _rule(_CMD_START + r"brew\s+install\b", "low", "Installs Homebrew packages."),
    _rule(
        _CMD_START + r"(?:apt|apt-get|dnf|yum)\s+install\b",
        "low",
        "Installs system packages.",
    ),
    _rule(
        _CMD_START + r"(?:gem|cargo|go)\s+install\b",
        "low",
        "Installs language toolchain packages.",
    ),
)


def check_command(
    command: str,
    *,
    rules: Sequence[SafetyRule] = SAFETY_RULES,
) -> SafetyVerdict | None:
    """Return the first matching rule's verdict, ignoring session approvals."""
    for rule in rules:
        if rule.pattern.search(command):
            return SafetyVerdict(risk=rule.risk, description=rule.description)
    return None


def classify(
    command: str,
    policy: SessionPolicy | None = None,
    *,
    rules: Sequence[SafetyRule] = SAFETY_RULES,
) -> SafetyVerdict | None:
    """Return a verdict when the command needs confirmation, else ``None``.

    A command whose matching tier is already in the session's allow-set is
    treated as approved.
    """
    verdict = check_command(command, rules=rules)
    if verdict is None:
        return None
    if policy is not None and policy.allows(verdict.risk):
        LOGGER.debug("safety_preapproved", extra={"risk": verdict.risk})
        return None
    LOGGER.info(
        "safety_block",
        extra={"risk": verdict.risk, "description": verdict.description},
    )
    return verdict

