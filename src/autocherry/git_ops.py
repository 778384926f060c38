from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import tempfile

from autocherry.config import GitConfig
from autocherry.deadline import Deadline, DeadlineExceededError
from autocherry.labels import work_branch_name
from autocherry.models import RepoRef
from autocherry.observability import log_event, redact_secrets
from autocherry.shell import CommandError, CommandTimeoutError, run


LOGGER = logging.getLogger("autocherry.git_ops")

# Substrings git prints when a cherry-pick has nothing left to apply. This couples us to
# git's wording; extend the set if a git upgrade starts reporting empty picks differently.
NOOP_MARKERS: tuple[str, ...] = (
    "previous cherry-pick is now empty",
    "nothing to commit",
    "working tree clean",
)


class CherryPickError(RuntimeError):
    """Base class for classified Git Work Executor failures."""


class NoopCherryPickError(CherryPickError):
    """Commit already present on the target or the resulting diff is empty."""


class CherryPickFailedError(CherryPickError):
    """Conflict, push rejection, or any other git failure."""


def is_noop_output(text: str) -> bool:
    return any(marker in text for marker in NOOP_MARKERS)


@dataclass(frozen=True)
class _Workspace:
    path: Path
    env: dict[str, str]
    deadline: Deadline

    def git(self, *args: str) -> str:
        self.deadline.check()
        try:
            return run(
                ["git", *args],
                cwd=self.path,
                env=self.env,
                timeout=self.deadline.remaining(),
            )
        except CommandTimeoutError as exc:
            raise DeadlineExceededError(str(exc)) from exc


class CherryPickExecutor:
    """Clones into a throwaway directory, cherry-picks one commit onto a target, and pushes."""

    def __init__(self, git: GitConfig) -> None:
        self._git = git

    def pick(
        self,
        *,
        repo: RepoRef,
        token: str,
        target: str,
        sha: str,
        mainline: int | None,
        deadline: Deadline,
    ) -> str:
        work_branch = work_branch_name(target, sha)
        if self._git.work_dir is not None:
            self._git.work_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="cherry-", dir=self._git.work_dir) as tmp:
            workspace = _Workspace(path=Path(tmp), env=self._env(), deadline=deadline)
            log_event(
                LOGGER,
                "cherry_pick_started",
                repo_full_name=repo.full_name,
                target=target,
                sha=sha,
                mainline=mainline,
                work_branch=work_branch,
            )
            try:
                self._prepare(workspace, repo=repo, token=token, target=target, sha=sha)
                workspace.git("checkout", "-B", work_branch, f"refs/remotes/origin/{target}")
            except CommandError as exc:
                raise CherryPickFailedError(
                    f"preparing {target} for {sha} failed: {_detail(exc)}"
                ) from exc

            self._cherry_pick(workspace, target=target, sha=sha, mainline=mainline)

            try:
                workspace.git("push", "-u", "origin", work_branch)
            except CommandError as exc:
                log_event(
                    LOGGER,
                    "git_push_failed",
                    target=target,
                    work_branch=work_branch,
                    error_type=type(exc).__name__,
                )
                raise CherryPickFailedError(
                    f"pushing {work_branch} failed: {_detail(exc)}"
                ) from exc

        log_event(LOGGER, "cherry_pick_pushed", target=target, sha=sha, work_branch=work_branch)
        return work_branch

    def _prepare(
        self,
        workspace: _Workspace,
        *,
        repo: RepoRef,
        token: str,
        target: str,
        sha: str,
    ) -> None:
        remote_url = f"https://x-access-token:{token}@{self._git.host}/{repo.owner}/{repo.name}.git"
        workspace.git("-c", "protocol.version=2", "init", "--quiet")
        workspace.git("remote", "add", "origin", remote_url)
        workspace.git("config", "user.name", self._git.user_name)
        workspace.git("config", "user.email", self._git.user_email)
        workspace.git(
            "fetch",
            "--prune",
            "--no-tags",
            "--depth",
            str(self._git.fetch_depth),
            "--filter=blob:none",
            "origin",
            f"refs/heads/{target}:refs/remotes/origin/{target}",
            sha,
        )

    def _cherry_pick(
        self,
        workspace: _Workspace,
        *,
        target: str,
        sha: str,
        mainline: int | None,
    ) -> None:
        args = ["cherry-pick"]
        if mainline is not None:
            args.extend(["-m", str(mainline)])
        args.extend(["-x", sha])
        try:
            workspace.git(*args)
        except CommandError as exc:
            if is_noop_output(exc.output) or is_noop_output(str(exc)):
                log_event(LOGGER, "cherry_pick_noop", target=target, sha=sha)
                raise NoopCherryPickError(f"{sha} is already present on {target}") from exc
            log_event(
                LOGGER,
                "cherry_pick_failed",
                target=target,
                sha=sha,
                mainline=mainline,
            )
            suffix = f" (mainline {mainline})" if mainline is not None else ""
            raise CherryPickFailedError(
                f"conflict cherry-picking {sha} to {target}{suffix}: {_detail(exc)}"
            ) from exc

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_ASKPASS"] = "true"
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env


def _detail(exc: CommandError) -> str:
    text = redact_secrets(exc.output or str(exc)).strip()
    lines = [line for line in text.splitlines() if line.strip()]
    return " | ".join(lines[-6:]) if lines else type(exc).__name__
