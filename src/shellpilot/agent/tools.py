"""File tool directives embedded in model replies.

A reply may carry ``[READ_FILE: path]``, ``[LIST_FILES: path]``,
``[MKDIR: path]`` or ``[WRITE_FILE: path]``; the latter takes its content
from the next fenced block. Relative paths resolve against the session's
working directory.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

LOGGER = logging.getLogger(__name__)

ToolName = Literal["READ_FILE", "WRITE_FILE", "LIST_FILES", "MKDIR"]

TOOL_DIRECTIVE_PATTERN = re.compile(r"\[(READ_FILE|WRITE_FILE|LIST_FILES|MKDIR): (.*?)\]")
_CONTENT_BLOCK = re.compile(r"```(?:\w+)?\n([\s\S]*?)\n```")
MAX_READ_CHARS = 20000


@dataclass(frozen=True, slots=True)
class ToolCall:
    tool: ToolName
    path: str
    content: str | None = None


def parse_tool_calls(response: str) -> tuple[ToolCall, ...]:
    calls: list[ToolCall] = []
    for match in TOOL_DIRECTIVE_PATTERN.finditer(response):
        tool = match.group(1)
        content = None
        if tool == "WRITE_FILE":
            block = _CONTENT_BLOCK.search(response, match.end())
            content = block.group(1) if block else None
        calls.append(ToolCall(tool=tool, path=match.group(2).strip(), content=content))  # type: ignore[arg-type]
    return tuple(calls)


def run_tool(
    call: ToolCall, *, cwd: str | None = None, max_read_chars: int = MAX_READ_CHARS
) -> str:
    """Carry out ``call`` and return the transcript text describing the outcome."""
    target = Path(call.path).expanduser()
    if not target.is_absolute() and cwd:
        target = Path(cwd) / target
    LOGGER.info("tool_request", extra={"tool": call.tool, "path": str(target)})

    try:
        if call.tool == "READ_FILE":
            content = target.read_text(encoding="utf-8", errors="replace")
            if len(content) > max_read_chars:
                content = f"{content[:max_read_chars]}..."
            return f"[TOOL_OUTPUT]\nFile: {call.path}\nContent:\n```\n{content}\n```"
        if call.tool == "LIST_FILES":
            entries = sorted(target.iterdir(), key=lambda entry: entry.name)
            listing = "\n".join(
                f"{'[DIR]' if entry.is_dir() else '[FILE]'} {entry.name}" for entry in entries
            )
            return f"[TOOL_OUTPUT]\nDirectory: {call.path}\nFiles:\n{listing}"
        if call.tool == "MKDIR":
            target.mkdir(parents=True, exist_ok=True)
            return f"[TOOL_OUTPUT]\nDirectory created: {call.path}"
        if call.content is None:
            return f"[TOOL_ERROR]\nNo content block found for WRITE_FILE: {call.path}"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(call.content, encoding="utf-8")
        return f"[TOOL_OUTPUT]\nFile written: {call.path}"
    except OSError as exc:
        LOGGER.warning(
            "tool_failed",
            extra={"tool": call.tool, "path": str(target), "error": str(exc)},
        )
        return f"[TOOL_ERROR]\n{call.tool} failed: {exc}"
