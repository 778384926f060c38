from __future__ import annotations

from collections.abc import Sequence
import logging

from autocherry.deadline import Deadline, DeadlineExceededError
from autocherry.git_ops import CherryPickExecutor, CherryPickFailedError, NoopCherryPickError
from autocherry.github_gateway import GitHubApiError, GitHubGateway, GitHubNotFoundError
from autocherry.labels import parse_target_branches, short_sha, work_branch_name
from autocherry.models import CherryPickOutcome, MergedPullRequest, RepoRef
from autocherry.observability import log_event, log_warning_event, sanitize_for_log


LOGGER = logging.getLogger("autocherry.orchestrator")
MERGE_MAINLINE_PARENT = 1

SUCCESS_MARKER = "✅"
INFO_MARKER = "ℹ️"
WARNING_MARKER = "⚠️"


class CherryPickOrchestrator:
    """Runs one processing pass for a merged pull request against its target branches.

    Every target yields exactly one outcome and exactly one comment on the source pull
    request. Failures are reported per target and never raised to the caller.
    """

    def __init__(
        self,
        *,
        github: GitHubGateway,
        executor: CherryPickExecutor,
        token: str,
        delivery_id: str = "",
    ) -> None:
        self._github = github
        self._executor = executor
        self._token = token
        self._delivery_id = sanitize_for_log(delivery_id)
        self._repo = RepoRef(owner=github.owner, name=github.name)

    @property
    def github(self) -> GitHubGateway:
        return self._github

    def process_merged_pr(
        self,
        pr_number: int,
        *,
        targets_override: Sequence[str] = (),
        deadline: Deadline | None = None,
    ) -> list[CherryPickOutcome]:
        deadline = deadline or Deadline.unbounded()
        try:
            pr = self._github.get_pull_request(pr_number)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "pr_load_failed",
                delivery=self._delivery_id,
                repo_full_name=self._repo.full_name,
                pr_number=pr_number,
                error_type=type(exc).__name__,
                error=sanitize_for_log(str(exc)),
            )
            return []

        targets = list(targets_override) if targets_override else parse_target_branches(pr.labels)
        log_event(
            LOGGER,
            "pr_targets_resolved",
            delivery=self._delivery_id,
            pr_number=pr_number,
            targets=targets,
            overridden=bool(targets_override),
        )
        if not targets:
            return []

        merge_sha = self.resolve_merge_sha(pr)
        if not merge_sha:
            self._comment(
                pr_number,
                f"{WARNING_MARKER} Could not determine merged commit SHA for PR #{pr_number}; "
                "skipping auto cherry-pick.",
            )
            return []

        is_merge = self.is_merge_commit(merge_sha)
        mainline = MERGE_MAINLINE_PARENT if is_merge else None
        log_event(
            LOGGER,
            "pr_merge_sha_resolved",
            delivery=self._delivery_id,
            pr_number=pr_number,
            sha=merge_sha,
            is_merge=is_merge,
        )

        outcomes: list[CherryPickOutcome] = []
        for index, target in enumerate(targets):
            if deadline.expired():
                log_warning_event(
                    LOGGER,
                    "task_deadline_exceeded",
                    delivery=self._delivery_id,
                    pr_number=pr_number,
                    abandoned_targets=targets[index:],
                )
                break
            try:
                outcome = self._process_target(
                    pr, target=target, sha=merge_sha, mainline=mainline, deadline=deadline
                )
            except DeadlineExceededError:
                outcome = CherryPickOutcome(
                    kind="conflict",
                    target=target,
                    detail=f"timed out after {deadline.timeout_seconds:g}s",
                )
                self._report(pr.number, outcome, sha=merge_sha)
                outcomes.append(outcome)
                log_warning_event(
                    LOGGER,
                    "task_deadline_exceeded",
                    delivery=self._delivery_id,
                    pr_number=pr_number,
                    abandoned_targets=targets[index + 1 :],
                )
                break
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "cherry_pick_target_failed",
                    delivery=self._delivery_id,
                    pr_number=pr_number,
                    target=target,
                    error_type=type(exc).__name__,
                )
                # PR creation errors are classified inside _process_target.
                outcome = CherryPickOutcome(
                    kind="conflict",
                    target=target,
                    detail=f"{type(exc).__name__}: {exc}",
                )
            self._report(pr.number, outcome, sha=merge_sha)
            outcomes.append(outcome)
        return outcomes

    def resolve_merge_sha(self, pr: MergedPullRequest) -> str:
        if pr.merge_commit_sha:
            return pr.merge_commit_sha
        try:
            commits = self._github.list_pull_request_commits(pr.number)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "pr_commits_unavailable",
                delivery=self._delivery_id,
                pr_number=pr.number,
                error_type=type(exc).__name__,
            )
            return ""
        return commits[-1] if commits else ""

    def is_merge_commit(self, sha: str) -> bool:
        try:
            return len(self._github.get_commit_parents(sha)) > 1
        except Exception as exc:  # noqa: BLE001
            # Classification must not block processing; fall back to a plain pick.
            log_event(
                LOGGER,
                "commit_classification_failed",
                delivery=self._delivery_id,
                sha=sha,
                error_type=type(exc).__name__,
            )
            return False

    def reverse_label(self, pr_number: int, targets: Sequence[str]) -> None:
        """Undo earlier work for targets whose label was removed from a merged pull request."""
        if not targets:
            return
        try:
            pr = self._github.get_pull_request(pr_number)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "pr_load_failed",
                delivery=self._delivery_id,
                pr_number=pr_number,
                error_type=type(exc).__name__,
            )
            return
        merge_sha = self.resolve_merge_sha(pr)
        if not merge_sha:
            return

        for target in targets:
            work_branch = work_branch_name(target, merge_sha)
            try:
                self.cleanup_work_branch(target, work_branch)
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "unlabel_cleanup_failed",
                    delivery=self._delivery_id,
                    pr_number=pr_number,
                    target=target,
                    error_type=type(exc).__name__,
                    error=sanitize_for_log(str(exc)),
                )
                continue
            self._comment(
                pr_number,
                f"{INFO_MARKER} Removed label for `{target}`: closed any open "
                f"auto-cherry-pick PR and deleted work branch `{work_branch}`.",
            )

    def cleanup_work_branch(self, target: str, work_branch: str) -> None:
        """Close open pull requests for (work_branch -> target) and delete the work branch.

        A work branch that is already gone counts as clean.
        """
        for pull in self._github.list_pull_requests(state="open", head=work_branch, base=target):
            try:
                self._github.close_pull_request(pull.number)
            except GitHubApiError as exc:
                log_warning_event(
                    LOGGER,
                    "github_pr_close_failed",
                    pr_number=pull.number,
                    status_code=exc.status_code,
                )
        try:
            self._github.delete_ref(f"refs/heads/{work_branch}")
        except GitHubNotFoundError:
            log_event(LOGGER, "work_branch_already_absent", work_branch=work_branch)
        log_event(
            LOGGER,
            "unlabel_cleanup_done",
            delivery=self._delivery_id,
            target=target,
            work_branch=work_branch,
        )

    def comment(self, issue_number: int, body: str) -> None:
        self._comment(issue_number, body)

    def _process_target(
        self,
        pr: MergedPullRequest,
        *,
        target: str,
        sha: str,
        mainline: int | None,
        deadline: Deadline,
    ) -> CherryPickOutcome:
        if not self._ref_exists(f"refs/heads/{target}"):
            return CherryPickOutcome(kind="target_missing", target=target)

        work_branch = work_branch_name(target, sha)
        if self._ref_exists(f"refs/heads/{work_branch}"):
            existing = self._find_open_pull_request(head=work_branch, base=target)
            if existing is not None:
                return CherryPickOutcome(
                    kind="already_open",
                    target=target,
                    pr_url=existing,
                    work_branch=work_branch,
                )
            return CherryPickOutcome(
                kind="branch_exists_no_pr", target=target, work_branch=work_branch
            )

        log_event(
            LOGGER,
            "cherry_pick_dispatched",
            delivery=self._delivery_id,
            target=target,
            sha=sha,
            mainline=mainline,
        )
        try:
            pushed_branch = self._executor.pick(
                repo=self._repo,
                token=self._token,
                target=target,
                sha=sha,
                mainline=mainline,
                deadline=deadline,
            )
        except NoopCherryPickError:
            return CherryPickOutcome(kind="noop", target=target)
        except CherryPickFailedError as exc:
            return CherryPickOutcome(kind="conflict", target=target, detail=str(exc))

        try:
            created = self._github.create_pull_request(
                title=f"Auto cherry-pick: PR #{pr.number} {pr.title} into {target}",
                head=pushed_branch,
                base=target,
                body=(
                    f"Automated cherry-pick of PR #{pr.number} ({pr.title}) into `{target}`.\n\n"
                    f"Commit: `{sha}`"
                ),
            )
        except Exception as exc:  # noqa: BLE001
            # The pushed work branch stays in place for manual recovery.
            return CherryPickOutcome(
                kind="create_failed",
                target=target,
                detail=str(exc),
                work_branch=pushed_branch,
            )
        return CherryPickOutcome(
            kind="opened",
            target=target,
            pr_url=created.html_url,
            work_branch=pushed_branch,
        )

    def _ref_exists(self, ref: str) -> bool:
        try:
            self._github.get_ref(ref)
        except GitHubNotFoundError:
            return False
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "github_ref_lookup_failed",
                ref=ref,
                error_type=type(exc).__name__,
            )
            return False
        return True

    def _find_open_pull_request(self, *, head: str, base: str) -> str | None:
        try:
            pulls = self._github.list_pull_requests(state="open", head=head, base=base)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "github_pr_lookup_failed",
                head=head,
                base=base,
                error_type=type(exc).__name__,
            )
            return None
        if not pulls:
            return None
        return pulls[0].html_url

    def _report(self, pr_number: int, outcome: CherryPickOutcome, *, sha: str) -> None:
        log_event(
            LOGGER,
            "cherry_pick_outcome",
            delivery=self._delivery_id,
            pr_number=pr_number,
            target=outcome.target,
            kind=outcome.kind,
            pr_url=outcome.pr_url,
        )
        self._comment(pr_number, render_outcome_comment(outcome, sha=sha))

    def _comment(self, issue_number: int, body: str) -> None:
        try:
            self._github.post_issue_comment(issue_number, body)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "outcome_comment_failed",
                delivery=self._delivery_id,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )


def render_outcome_comment(outcome: CherryPickOutcome, *, sha: str) -> str:
    target = outcome.target
    if outcome.kind == "opened":
        return f"{SUCCESS_MARKER} Auto cherry-pick to `{target}` opened: {outcome.pr_url}"
    if outcome.kind == "noop":
        return (
            f"{INFO_MARKER} Auto cherry-pick to `{target}`: no changes needed on target "
            "(commit already present or empty diff). Skipping PR."
        )
    if outcome.kind == "already_open":
        return f"{INFO_MARKER} Auto cherry-pick to `{target}` is already open: {outcome.pr_url}"
    if outcome.kind == "branch_exists_no_pr":
        return (
            f"{INFO_MARKER} Work branch `{outcome.work_branch}` already exists for `{target}`; "
            "skipping duplicate cherry-pick."
        )
    if outcome.kind == "target_missing":
        return f"{WARNING_MARKER} Target branch `{target}` not found; skipping auto cherry-pick."
    if outcome.kind == "conflict":
        return (
            f"{WARNING_MARKER} Auto cherry-pick to `{target}` failed. Please create a patch "
            f"branch from `{target}` and cherry-pick `{sha}` ({short_sha(sha)}) manually.\n\n"
            f"Details: `{_inline_code(outcome.detail or 'unknown error')}`"
        )
    return (
        f"{WARNING_MARKER} Auto cherry-pick to `{target}`: failed to open PR: "
        f"`{_inline_code(outcome.detail or 'unknown error')}`"
    )


def _inline_code(text: str) -> str:
    return " ".join(text.replace("`", "'").split())
