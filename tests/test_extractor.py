from __future__ import annotations

import pytest

from shellpilot.agent.extractor import (
    extract_code_blocks,
    extract_command_name,
    extract_first_command,
    extract_single_command,
    is_valid_command,
    is_write_file_block,
    looks_like_explanatory_text,
    looks_like_output,
)


@pytest.mark.parametrize(
    "command",
    [
        "ls -la",
        "npm install",
        "git status",
        "cd myapp && npm start",
        "./run.sh --fast",
        "~/bin/tool sync",
        "/usr/bin/env python3 app.py",
        "$(which python3) -V",
        "NODE_ENV=production node server.js",
        "sudo apt-get update",
        "cat <<EOF > notes.txt",
    ],
)
def test_is_valid_command_accepts_commands(command: str) -> None:
    assert is_valid_command(command) is True


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   ",
        "added 120 packages in 3s",
        "drwxr-xr-x  5 user staff 160 Jan 1 app",
        "Traceback (most recent call last):",
        "The server is now running.",
        "Let me check the files first",
        "Run this. Then check the output",
        "ls what is here?",
        "- Install the dependencies",
        "**ls** the folder",
        "ls: cannot access: no such file or directory: x",
        "cp /path/to/file .",
        "cp <source> <dest>",
        "frobnicate --all",
        "1. npm install",
    ],
)
def test_is_valid_command_rejects_non_commands(text: str) -> None:
    assert is_valid_command(text) is False


def test_is_valid_command_enforces_max_length() -> None:
    command = "echo " + "a" * 20

    assert is_valid_command(command, max_length=10) is False
    assert is_valid_command(command, max_length=100) is True


def test_long_prose_without_shell_metacharacters_is_rejected() -> None:
    text = "echo " + "word " * 30

    assert len(text) > 100
    assert looks_like_explanatory_text(text) is True
    assert looks_like_explanatory_text("echo " + "word " * 30 + "| wc -l") is False


def test_bullet_prose_is_case_sensitive() -> None:
    assert looks_like_explanatory_text("- Install packages") is True
    assert looks_like_explanatory_text("- install packages") is False


def test_looks_like_output_matches_listing_lines() -> None:
    assert looks_like_output("-rw-r--r-- 1 user staff 0 file") is True
    assert looks_like_output("└── src") is True
    assert looks_like_output("git status") is False


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("ls -la", "ls"),
        ("./scripts/deploy.sh now", "deploy.sh"),
        ("~/bin/Tool", "tool"),
        ("/usr/local/bin/node app.js", "node"),
        ("git;rm", "git"),
        ("sudo rm -rf build", "sudo"),
    ],
)
def test_extract_command_name(command: str, expected: str) -> None:
    assert extract_command_name(command) == expected


def test_single_line_block_is_validated() -> None:
    assert extract_single_command("npm test\n") == "npm test"
    assert extract_single_command("This will run the tests") is None
    assert extract_single_command("\n\n") is None


def test_shebang_block_is_not_executed() -> None:
    assert extract_single_command("#!/bin/bash\necho hi") is None


def test_line_continuations_are_joined() -> None:
    block = "docker run\\\n  -p 8080:80\\\n  nginx"

    assert extract_single_command(block) == "docker run -p 8080:80 nginx"


def test_up_to_three_valid_lines_are_chained() -> None:
    block = "mkdir app\ncd app\nnpm init -y"

    assert extract_single_command(block) == "mkdir app && cd app && npm init -y"


def test_more_than_three_lines_returns_first_valid_line() -> None:
    block = "mkdir app\ncd app\nnpm init -y\nnpm install express"

    assert extract_single_command(block) == "mkdir app"


def test_mixed_block_returns_first_valid_line() -> None:
    block = "added 3 packages in 1s\nnpm test"

    assert extract_single_command(block) == "npm test"


def test_extract_code_blocks_accepts_shell_tags_and_untagged() -> None:
    response = "a\n```bash\nls\n```\nb\n```\npwd\n```\nc\n```python\nprint(1)\n```"

    assert extract_code_blocks(response) == ["ls", "pwd"]


def test_write_file_block_is_skipped() -> None:
    response = (
        "[WRITE_FILE: app.sh]\n```bash\necho hello\n```\n"
        "Then run it:\n```bash\n./app.sh\n```"
    )

    assert is_write_file_block(response, response.index("```")) is True
    assert extract_first_command(response) == "./app.sh"


def test_write_file_directive_only_applies_to_the_next_block() -> None:
    response = "[WRITE_FILE: a.txt] done.\n```bash\nls\n```"

    assert is_write_file_block(response, response.index("```")) is False
    assert extract_first_command(response) == "ls"


def test_extract_first_command_skips_blocks_without_commands() -> None:
    response = "```\nadded 3 packages\n```\nNow:\n```sh\ngit status\n```"

    assert extract_first_command(response) == "git status"


def test_extract_first_command_returns_none_without_blocks() -> None:
    assert extract_first_command("ls -la") is None


def test_extracted_command_is_itself_valid() -> None:
    response = "```bash\nmkdir app\ncd app\n```"

    command = extract_first_command(response)

    assert command == "mkdir app && cd app"
    assert is_valid_command(command) is True
    assert extract_single_command(command) == command


LONG_LINE = f"echo {'a' * 190} | cat"


@pytest.mark.parametrize(
    ("block", "expected"),
    [
        (f"{LONG_LINE}\n{LONG_LINE}\n{LONG_LINE}", LONG_LINE),
        ("echo <a\necho b>", "echo <a"),
        ("mkdir app\ncd app", "mkdir app && cd app"),
        ("npm install\nnpm test\nnpm run build", "npm install && npm test && npm run build"),
    ],
)
def test_chained_lines_fall_back_to_first_valid_line(block: str, expected: str) -> None:
    command = extract_single_command(block)

    assert command == expected
    assert is_valid_command(command) is True


@pytest.mark.parametrize(
    "block",
    [
        f"{LONG_LINE}\n{LONG_LINE}\n{LONG_LINE}",
        "echo <a\necho b>",
        "docker run \\\n  -p 8080:80 \\\n  nginx",
        "ls\nThe folder is empty.",
        "git status\ngit diff\ngit log\ngit show",
        "cat <name>",
    ],
)
def test_every_extracted_command_is_valid(block: str) -> None:
    command = extract_single_command(block)

    assert command is None or is_valid_command(command) is True
