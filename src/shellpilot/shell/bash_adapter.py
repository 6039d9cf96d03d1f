"""POSIX shell adapter implementation."""

from __future__ import annotations

import locale
import shutil
import subprocess

from .base import CommandResult, ShellAdapter


class BashAdapter(ShellAdapter):
    """Adapter for command execution via ``bash``, ``sh`` or ``zsh``."""

    def __init__(self, executable: str | None = None, *, fallback_to_sh: bool = True) -> None:
        super().__init__()
        self.executable = executable or _default_executable(fallback_to_sh=fallback_to_sh)

    @property
    def name(self) -> str:
        return self.executable.rsplit("/", 1)[-1]

    def execute(
        self,
        command: str,
        *,
        command_id: str | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        command_id = command_id or self.new_command_id()
        self.log_request(command, command_id=command_id, timeout=timeout)
        started = self.monotonic_now()
        try:
            process = subprocess.Popen(
                [self.executable, "-lc", command],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as exc:
            result = CommandResult(
                command_id=command_id,
                command=command,
                shell=self.name,
                returncode=127,
                stdout="",
                stderr=f"{self.name} executable could not be started: {exc}",
                executed=False,
                duration_seconds=self.monotonic_now() - started,
            )
            self.log_result(result)
            return result

        self._processes[command_id] = process
        timed_out = False
        try:
            try:
                stdout, stderr = process.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                process.kill()
                stdout, stderr = process.communicate()
                timed_out = True
        finally:
            self._processes.pop(command_id, None)
            # interrupted while waiting; never leave the child behind
            if process.poll() is None:
                process.kill()
                process.wait()

        cancelled = command_id in self._cancelled
        self._cancelled.discard(command_id)
        returncode = process.returncode
        if timed_out:
            returncode = 124
        elif returncode < 0:
            returncode = 128 - returncode

        result = CommandResult(
            command_id=command_id,
            command=command,
            shell=self.name,
            returncode=returncode,
            stdout=_normalize_output(stdout),
            stderr=_normalize_output(stderr),
            timed_out=timed_out,
            duration_seconds=self.monotonic_now() - started,
            cancelled=cancelled,
        )
        self.log_result(result)
        return result


def _default_executable(*, fallback_to_sh: bool) -> str:
    if shutil.which("bash"):
        return "bash"
    if fallback_to_sh and shutil.which("sh"):
        return "sh"
    return "bash"


def _normalize_output(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload

    for encoding in ("utf-8", "utf-8-sig", locale.getpreferredencoding(False)):
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")
