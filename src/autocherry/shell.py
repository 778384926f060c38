from __future__ import annotations

from pathlib import Path
import logging
import subprocess

from autocherry.observability import redact_secrets


class CommandError(RuntimeError):
    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class CommandTimeoutError(CommandError):
    pass


LOGGER = logging.getLogger("autocherry.shell")


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> str:
    safe_command = redact_secrets(" ".join(argv))
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            env=env,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        LOGGER.error(
            "event=command_timed_out command=%s timeout_seconds=%s",
            safe_command,
            timeout,
        )
        raise CommandTimeoutError(
            f"Command timed out after {timeout}s\ncmd: {safe_command}"
        ) from exc

    if check and proc.returncode != 0:
        stdout = redact_secrets(proc.stdout)
        stderr = redact_secrets(proc.stderr)
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            safe_command,
            proc.returncode,
            _preview(stderr),
            _preview(stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {safe_command}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}",
            output=f"{stdout}\n{stderr}",
        )
    return proc.stdout
