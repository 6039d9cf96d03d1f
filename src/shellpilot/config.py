"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_SYSTEM_PROMPT = "\n".join(
    [
        "You are ShellPilot, an autonomous terminal assistant running in auto-run mode.",
        (
            "Work towards the user's goal one shell command at a time. Put exactly one"
            " command in a ```bash code block; it will be executed and its output sent"
            " back to you."
        ),
        "Prefer safe, reversible, and idempotent operations.",
        (
            "File tools: `[LIST_FILES: <dir>]`, `[READ_FILE: <path>]` and"
            " `[MKDIR: <dir>]`. To write a file, put a line `[WRITE_FILE: <path>]`"
            " directly before a code block holding the file content; that block is"
            " never executed. Tool results come back as [TOOL_OUTPUT] or [TOOL_ERROR]."
        ),
        "Reply with [CANCEL] to stop a command that is still running.",
        (
            "When the goal is reached, reply with `Mission Report:` followed by a short"
            " summary of what you did, and end with `Task Complete`."
        ),
        (
            "If you are blocked and need the user, say [ASK_USER] and explain what you"
            " need. Use [WAIT] to pause or [NEED_HELP] when stuck. Use [NEW_TAB] to ask"
            " for a new terminal tab."
        ),
        "If a command fails, do not repeat it; propose a different approach.",
    ]
)


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """Thresholds governing one auto-run episode.

    Delays are in seconds; the environment and config files take milliseconds.
    """

    max_auto_steps: int = 10
    max_stalls_before_ask: int = 2
    stall_retry_delay: float = 2.0
    preview_enabled: bool = False
    preview_delay: float = 2.0
    max_command_length: int = 500
    output_forward_chars: int = 1000
    step_output_preview_chars: int = 500
    stuck_window: int = 5
    max_failures_before_help: int = 3
    max_similar_commands: int = 3

    @classmethod
    def from_sources(
        cls, file_config: dict[str, object], env: dict[str, str] | None = None
    ) -> OrchestratorSettings:
        environ = os.environ if env is None else env
        section = file_config.get("orchestrator")
        values = section if isinstance(section, dict) else {}
        defaults = cls()
        return cls(
            max_auto_steps=_to_positive_int(
                environ.get("SHELLPILOT_MAX_AUTO_STEPS") or values.get("max_auto_steps"),
                default=defaults.max_auto_steps,
            ),
            max_stalls_before_ask=_to_positive_int(
                environ.get("SHELLPILOT_MAX_STALLS_BEFORE_ASK")
                or values.get("max_stalls_before_ask"),
                default=defaults.max_stalls_before_ask,
            ),
            stall_retry_delay=_millis_to_seconds(
                environ.get("SHELLPILOT_STALL_RETRY_DELAY_MS")
                or values.get("stall_retry_delay_ms"),
                default=defaults.stall_retry_delay,
            ),
            preview_enabled=_to_bool(
                environ.get("SHELLPILOT_PREVIEW_ENABLED"),
                default=bool(values.get("preview_enabled", defaults.preview_enabled)),
            ),
            preview_delay=_millis_to_seconds(
                environ.get("SHELLPILOT_PREVIEW_DELAY_MS") or values.get("preview_delay_ms"),
                default=defaults.preview_delay,
            ),
            max_command_length=_to_positive_int(
                environ.get("SHELLPILOT_MAX_COMMAND_LENGTH") or values.get("max_command_length"),
                default=defaults.max_command_length,
            ),
            output_forward_chars=_to_positive_int(
                environ.get("SHELLPILOT_OUTPUT_FORWARD_CHARS")
                or values.get("output_forward_chars"),
                default=defaults.output_forward_chars,
            ),
            step_output_preview_chars=_to_positive_int(
                values.get("step_output_preview_chars"),
                default=defaults.step_output_preview_chars,
            ),
            stuck_window=_to_positive_int(
                values.get("stuck_window"), default=defaults.stuck_window
            ),
            max_failures_before_help=_to_positive_int(
                values.get("max_failures_before_help"),
                default=defaults.max_failures_before_help,
            ),
            max_similar_commands=_to_positive_int(
                values.get("max_similar_commands"), default=defaults.max_similar_commands
            ),
        )


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables and config files."""

    api_key: str | None
    model: str
    api_url: str
    log_dir: str
    log_level: str
    system_prompt: str
    shell: str
    working_directory: str | None
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        openai_from_file = file_config.get("openai")
        openai_config = openai_from_file if isinstance(openai_from_file, dict) else {}

        return cls(
            api_key=(
                os.getenv("SHELLPILOT_OPENAI_API_KEY")
                or os.getenv("SHELLPILOT_API_KEY")
                or _to_optional_string(openai_config.get("api_key"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            model=(
                os.getenv("SHELLPILOT_MODEL")
                or _to_optional_string(file_config.get("model"))
                or "gpt-4.1-mini"
            ),
            api_url=(
                os.getenv("SHELLPILOT_API_URL")
                or _to_optional_string(openai_config.get("api_url"))
                or "https://api.openai.com/v1/chat/completions"
            ),
            log_dir=(
                os.getenv("SHELLPILOT_LOG_DIR")
                or _to_optional_string(file_config.get("log_dir"))
                or "logs"
            ),
            log_level=(
                os.getenv("SHELLPILOT_LOG_LEVEL")
                or _to_optional_string(file_config.get("log_level"))
                or "WARNING"
            ).upper(),
            system_prompt=(
                os.getenv("SHELLPILOT_SYSTEM_PROMPT")
                or _to_optional_string(file_config.get("system_prompt"))
                or DEFAULT_SYSTEM_PROMPT
            ),
            shell=_resolve_shell(
                os.getenv("SHELLPILOT_SHELL") or _to_optional_string(file_config.get("shell"))
            ),
            working_directory=(
                os.getenv("SHELLPILOT_CWD") or _to_optional_string(file_config.get("cwd"))
            ),
            orchestrator=OrchestratorSettings.from_sources(file_config),
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("SHELLPILOT_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("shellpilot.config.json")
    local_override = _load_file_config("shellpilot.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _resolve_shell(value: str | None) -> str:
    if value is None:
        return "bash"
    normalized = value.strip().lower()
    return normalized if normalized in {"bash", "sh", "zsh"} else "bash"


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _millis_to_seconds(value: object, *, default: float) -> float:
    millis = _to_positive_int(value, default=-1)
    return default if millis < 0 else millis / 1000
