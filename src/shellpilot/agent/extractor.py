"""Extract executable shell commands from model responses."""

from __future__ import annotations

import logging
import re

LOGGER = logging.getLogger(__name__)

MAX_COMMAND_LENGTH = 500
MAX_JOINED_LINES = 3

KNOWN_COMMANDS = frozenset(
    {
        # core shell
        "cd", "ls", "ll", "la", "pwd", "echo", "printf", "cat", "head", "tail", "less", "more",
        "cp", "mv", "rm", "mkdir", "rmdir", "touch", "chmod", "chown", "chgrp", "ln",
        "find", "locate", "which", "whereis", "type", "file", "stat",
        # text processing
        "grep", "egrep", "fgrep", "rg", "ag", "awk", "sed", "cut", "sort", "uniq", "wc", "tr",
        "diff", "patch", "tee", "xargs", "column",
        # network
        "curl", "wget", "ssh", "scp", "rsync", "ping", "netstat", "ss", "lsof", "nc", "nmap",
        "ifconfig", "ip", "nslookup", "dig", "host", "traceroute",
        # processes
        "ps", "top", "htop", "kill", "killall", "pkill", "pgrep", "nice", "nohup", "bg", "fg",
        "jobs",
        # system
        "sudo", "su", "whoami", "id", "groups", "uname", "hostname", "uptime", "date", "cal",
        "df", "du", "free", "vmstat", "dmesg", "journalctl", "systemctl", "service",
        # package managers
        "apt", "apt-get", "dpkg", "yum", "dnf", "pacman", "brew", "snap", "flatpak",
        "pip", "pip3", "pipx", "npm", "npx", "yarn", "pnpm", "bun", "deno",
        "cargo", "go", "gem", "bundle", "composer", "maven", "mvn", "gradle",
        # development
        "git", "gh", "docker", "docker-compose", "podman", "kubectl", "helm", "terraform",
        "make", "cmake", "gcc", "g++", "clang", "javac", "java", "python", "python3", "node",
        "ruby", "perl", "php", "tsc", "esbuild", "vite", "webpack", "rollup", "jest", "vitest",
        "pytest", "mocha",
        # misc
        "man", "info", "help", "clear", "reset", "history", "alias", "export", "source", "env",
        "set", "unset", "sleep", "watch", "time", "timeout", "yes", "true", "false", "test",
        "expr", "bc", "jq", "yq", "base64", "md5sum", "sha256sum", "openssl",
        # editors
        "nano", "vim", "vi", "nvim", "emacs", "code", "subl",
        # archives
        "tar", "zip", "unzip", "gzip", "gunzip", "bzip2", "xz", "7z",
        # macOS
        "open", "pbcopy", "pbpaste", "defaults", "launchctl", "sw_vers", "diskutil",
    }
)

_OUTPUT_PATTERNS = [
    re.compile(pattern, flags)
    for pattern, flags in (
        (r"^up to date", re.IGNORECASE),
        (r"^found \d+ vulnerabilities", re.IGNORECASE),
        (r"^npm warn", re.IGNORECASE),
        (r"^npm notice", re.IGNORECASE),
        (r"^npm err!", re.IGNORECASE),
        (r"^added \d+ packages", re.IGNORECASE),
        (r"^removed \d+ packages", re.IGNORECASE),
        (r"^audited \d+ packages", re.IGNORECASE),
        (r"^total \d+", re.IGNORECASE),
        (r"^drwx", 0),
        (r"^-rw", 0),
        (r"^├──", 0),
        (r"^└──", 0),
        (r"^│", 0),
        (r"^\s*\d+\s+\w+\s+\w+", 0),
        (r"^LISTEN\s", re.IGNORECASE),
        (r"^tcp\s", re.IGNORECASE),
        (r"^udp\s", re.IGNORECASE),
        (r"^Python version:", re.IGNORECASE),
        (r"^PySide6", re.IGNORECASE),
        (r"^✅", 0),
        (r"^❌", 0),
        (r"^Error:", re.IGNORECASE),
        (r"^Warning:", re.IGNORECASE),
        (r"^Traceback", re.IGNORECASE),
        (r'^File "', re.IGNORECASE),
        (r"^\s{4,}", 0),
        (r"^=+$", 0),
        (r"^-+$", 0),
        (r"^\[.*\]$", 0),
        (r"^Loading", re.IGNORECASE),
        (r"^Downloading", re.IGNORECASE),
        (r"^Installing", re.IGNORECASE),
        (r"^Compiling", re.IGNORECASE),
        (r"^Building", re.IGNORECASE),
        (r"^Running", re.IGNORECASE),
        (r"^Starting", re.IGNORECASE),
        (r"^Stopping", re.IGNORECASE),
        (r"^Waiting", re.IGNORECASE),
        (r"^Done\.?$", re.IGNORECASE),
        (r"^Finished", re.IGNORECASE),
        (r"^Complete", re.IGNORECASE),
        (r"^\d+%", 0),
    )
]

_EXPLANATORY_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^the\s+", r"^this\s+", r"^that\s+", r"^here\s+", r"^now\s+",
        r"^next\s+", r"^first\s+", r"^then\s+", r"^after\s+", r"^before\s+",
        r"^you\s+(can|should|need|must|will|may)",
        r"^we\s+(can|should|need|must|will|may)",
        r"^it\s+(will|should|can|is|was)",
        r"^let\s+me", r"^let's\s+",
        r"^i\s+(will|would|can|am|have|need)",
        r"^please\s+", r"^note:", r"^note\s+that", r"^remember",
        r"^important:", r"^warning:", r"^error:", r"^example:", r"^output:", r"^result:",
        r"^expected", r"^actually", r"^however", r"^although", r"^because",
        r"^since\s+", r"^when\s+", r"^if\s+you", r"^if\s+the", r"^if\s+this", r"^once\s+",
        r"^to\s+(do|fix|solve|run|start|install|create|make|build|test|check|verify)",
        r"^in\s+order\s+to", r"^make\s+sure", r"^be\s+sure",
        r"^don't\s+", r"^do\s+not", r"^try\s+to", r"^trying\s+to", r"^attempt",
        r"^failed", r"^success", r"^looks\s+like", r"^seems\s+like", r"^appears\s+",
        r"^based\s+on", r"^according\s+to", r"^\d+\.\s+",
        r"^step\s+\d", r"^option\s+\d", r"previous", r"following", r"above", r"below",
    )
]
# bullet lists only count as prose when the item starts with a capital letter
_BULLET_PATTERNS = [re.compile(r"^-\s+[A-Z]"), re.compile(r"^\*\s+[A-Z]")]

_MULTI_SENTENCE = re.compile(r"\.\s+[A-Z]")
_SHELL_METACHARACTERS = re.compile(r"[|><;&]")
_MARKDOWN_EMPHASIS = (re.compile(r"\*\*[^*]+\*\*"), re.compile(r"`[^`]+`"))

ERROR_INDICATORS = (
    "no such file or directory:",
    "command not found",
    "Permission denied",
)

_PLACEHOLDER_PATH = re.compile(r"/path/to/")
_ANGLE_PLACEHOLDER = re.compile(r"<[^>]+>")
_FIRST_TOKEN_SPLIT = re.compile(r"[\s;&|]")
_ENV_ASSIGNMENT = re.compile(r"^[A-Z_][A-Z0-9_]*=")

CODE_BLOCK_PATTERN = re.compile(r"```(?:bash|sh|shell|zsh)?\n([\s\S]*?)\n```")
_LINE_CONTINUATION = re.compile(r"\\\n\s*")


def looks_like_output(text: str) -> bool:
    """Return true when text resembles command output rather than a command."""
    return any(pattern.search(text) for pattern in _OUTPUT_PATTERNS)


def looks_like_explanatory_text(text: str) -> bool:
    """Return true when text reads like prose addressed to the user."""
    trimmed = text.strip()
    if any(pattern.search(trimmed) for pattern in _EXPLANATORY_PATTERNS):
        return True
    if any(pattern.search(trimmed) for pattern in _BULLET_PATTERNS):
        return True
    if _MULTI_SENTENCE.search(trimmed):
        return True
    if "?" in trimmed:
        return True
    if len(trimmed) > 100 and not _SHELL_METACHARACTERS.search(trimmed):
        return True
    return any(pattern.search(trimmed) for pattern in _MARKDOWN_EMPHASIS)


def extract_command_name(text: str) -> str:
    """Return the lower-cased executable name of a command line.

    The line is cut at the first whitespace or ``;``/``&``/``|`` before any
    ``sudo `` prefix is stripped, so ``sudo`` itself is what a privileged
    command resolves to. ``./``, ``~/`` and directory prefixes are dropped.
    """
    first_word = _FIRST_TOKEN_SPLIT.split(text.strip(), maxsplit=1)[0]
    first_word = re.sub(r"^sudo\s+", "", first_word)
    first_word = first_word.removeprefix("./").removeprefix("~/")
    return first_word.split("/")[-1].lower()


def is_valid_command(
    text: str,
    *,
    max_length: int = MAX_COMMAND_LENGTH,
    log_rejections: bool = True,
) -> bool:
    """Decide whether one line is an executable shell command.

    Checks run in a fixed order and the first match wins, so output-like or
    prose-like lines are rejected even when their first word is a known
    command.
    """
    if not text or not text.strip():
        return False
    trimmed = text.strip()

    if len(trimmed) > max_length:
        return _reject(trimmed, "too_long", log_rejections)
    if looks_like_output(trimmed):
        return _reject(trimmed, "looks_like_output", log_rejections)
    if looks_like_explanatory_text(trimmed):
        return _reject(trimmed, "looks_like_prose", log_rejections)
    if any(indicator in trimmed for indicator in ERROR_INDICATORS):
        return _reject(trimmed, "error_message", log_rejections)
    if _PLACEHOLDER_PATH.search(trimmed):
        return _reject(trimmed, "placeholder_path", log_rejections)
    if _ANGLE_PLACEHOLDER.search(trimmed) and not trimmed.startswith("cat"):
        return _reject(trimmed, "placeholder", log_rejections)

    if extract_command_name(trimmed) in KNOWN_COMMANDS:
        return True
    if trimmed.startswith(("./", "~/", "/", "$(")):
        return True
    if _ENV_ASSIGNMENT.match(trimmed):
        return True
    return _reject(trimmed, "unknown_command", log_rejections)


def _reject(text: str, reason: str, log_rejections: bool) -> bool:
    if log_rejections:
        LOGGER.debug("command_rejected", extra={"reason": reason, "preview": text[:50]})
    return False


def extract_single_command(
    block_content: str,
    *,
    max_length: int = MAX_COMMAND_LENGTH,
) -> str | None:
    """Turn one fenced block's content into a single command, or ``None``."""
    lines = [line.strip() for line in block_content.split("\n")]
    lines = [line for line in lines if line]
    if not lines:
        return None

    if len(lines) == 1:
        command = lines[0]
        return command if is_valid_command(command, max_length=max_length) else None

    if lines[0].startswith("#!"):
        return None

    if "\\\n" in block_content:
        joined = _LINE_CONTINUATION.sub(" ", block_content).strip()
        return joined if is_valid_command(joined, max_length=max_length) else None

    valid = [line for line in lines if is_valid_command(line, max_length=max_length)]
    if len(valid) == len(lines) and len(lines) <= MAX_JOINED_LINES:
        joined = " && ".join(lines)
        if is_valid_command(joined, max_length=max_length):
            return joined
    return valid[0] if valid else None


def extract_code_blocks(response: str) -> list[str]:
    """Return the contents of every shell-tagged or untagged fenced block."""
    return [match.group(1) for match in CODE_BLOCK_PATTERN.finditer(response)]


def is_write_file_block(response: str, block_index: int) -> bool:
    """Return true when the block at ``block_index`` follows a WRITE_FILE directive."""
    before_block = response[:block_index].strip()
    if not before_block.endswith("]"):
        return False
    last_bracket = before_block.rfind("[")
    if last_bracket == -1:
        return False
    return "WRITE_FILE" in before_block[last_bracket:]


def extract_first_command(
    response: str,
    *,
    max_length: int = MAX_COMMAND_LENGTH,
) -> str | None:
    """Return the first executable command in a response, skipping file payloads."""
    for match in CODE_BLOCK_PATTERN.finditer(response):
        if is_write_file_block(response, match.start()):
            continue
        command = extract_single_command(match.group(1), max_length=max_length)
        if command:
            return command
    return None
