from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


OutcomeKind = Literal[
    "opened",
    "noop",
    "already_open",
    "branch_exists_no_pr",
    "target_missing",
    "conflict",
    "create_failed",
]
OutcomeSeverity = Literal["success", "info", "warning"]
RouteStatus = Literal[202, 204, 400, 401]


@dataclass(frozen=True)
class RepoRef:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class PullRequestSummary:
    number: int
    html_url: str
    head_ref: str
    base_ref: str
    state: str


@dataclass(frozen=True)
class MergedPullRequest:
    number: int
    title: str
    merge_commit_sha: str
    labels: tuple[str, ...]
    merged: bool
    html_url: str = ""


@dataclass(frozen=True)
class IssueRef:
    number: int
    is_pull_request: bool
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class CherryPickOutcome:
    kind: OutcomeKind
    target: str
    pr_url: str | None = None
    detail: str | None = None
    work_branch: str | None = None

    @property
    def severity(self) -> OutcomeSeverity:
        if self.kind == "opened":
            return "success"
        if self.kind in {"noop", "already_open", "branch_exists_no_pr"}:
            return "info"
        return "warning"


@dataclass(frozen=True)
class RouteResult:
    status: RouteStatus
    reason: str
