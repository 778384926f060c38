from __future__ import annotations

from collections import defaultdict
import logging

from autocherry.deadline import Deadline
from autocherry.github_gateway import GitHubApiError, GitHubGateway, GitHubNotFoundError
from autocherry.labels import (
    ReleaseLabel,
    is_release_branch,
    normalize_branch,
    parse_release_label,
    release_label_for_branch,
    target_from_label,
    work_branch_name,
    work_branch_prefix,
)
from autocherry.observability import log_event, log_warning_event, sanitize_for_log
from autocherry.orchestrator import INFO_MARKER, CherryPickOrchestrator


LOGGER = logging.getLogger("autocherry.label_lifecycle")
RELEASE_LABEL_COLOR = "ededed"


class LabelLifecycleManager:
    """Keeps `cherry-pick to <team>-release/<n>` labels in step with release branches."""

    def __init__(
        self,
        *,
        github: GitHubGateway,
        orchestrator: CherryPickOrchestrator,
        retention_keep: int,
        deadline: Deadline | None = None,
        delivery_id: str = "",
    ) -> None:
        self._github = github
        self._orchestrator = orchestrator
        self._retention_keep = retention_keep
        self._deadline = deadline or Deadline.unbounded()
        self._delivery_id = sanitize_for_log(delivery_id)

    def handle_branch_created(self, ref: str) -> bool:
        branch = normalize_branch(ref)
        if not is_release_branch(branch):
            log_event(LOGGER, "create_ignored", delivery=self._delivery_id, ref=branch)
            return False

        label = release_label_for_branch(branch)
        try:
            self.ensure_label(label)
        except GitHubApiError as exc:
            log_warning_event(
                LOGGER,
                "label_ensure_failed",
                delivery=self._delivery_id,
                label=label,
                status_code=exc.status_code,
            )

        try:
            self.enforce_retention(self._retention_keep)
        except GitHubApiError as exc:
            log_warning_event(
                LOGGER,
                "label_retention_failed",
                delivery=self._delivery_id,
                status_code=exc.status_code,
            )
        return True

    def ensure_label(self, name: str) -> bool:
        """Create the label unless it already exists. Returns True when it was created."""
        if name in self._github.list_labels():
            log_event(LOGGER, "label_exists", delivery=self._delivery_id, label=name)
            return False
        try:
            self._github.create_label(name, RELEASE_LABEL_COLOR)
        except GitHubApiError as exc:
            # Lost a race with another delivery; GitHub answers 422 already_exists.
            if exc.status_code == 422 and "already_exists" in str(exc):
                log_event(LOGGER, "label_exists", delivery=self._delivery_id, label=name)
                return False
            raise
        log_event(LOGGER, "label_created", delivery=self._delivery_id, label=name)
        return True

    def enforce_retention(self, keep: int) -> list[str]:
        """Delete all but the newest `keep` release labels per team. Returns deleted names."""
        if keep <= 0:
            return []

        buckets: dict[str, list[ReleaseLabel]] = defaultdict(list)
        for name in self._github.list_labels():
            release_label = parse_release_label(name)
            if release_label is not None:
                buckets[release_label.team].append(release_label)

        deleted: list[str] = []
        for team in sorted(buckets):
            group = sorted(buckets[team], key=lambda item: item.number)
            if len(group) <= keep:
                continue
            for stale in group[: len(group) - keep]:
                self._deadline.check()
                try:
                    self.cleanup_for_label(stale.name)
                except GitHubApiError as exc:
                    log_warning_event(
                        LOGGER,
                        "label_pre_delete_cleanup_failed",
                        delivery=self._delivery_id,
                        label=stale.name,
                        status_code=exc.status_code,
                    )
                try:
                    self._github.delete_label(stale.name)
                except GitHubNotFoundError:
                    log_event(LOGGER, "label_already_absent", label=stale.name)
                except GitHubApiError as exc:
                    log_warning_event(
                        LOGGER,
                        "label_delete_failed",
                        delivery=self._delivery_id,
                        label=stale.name,
                        status_code=exc.status_code,
                    )
                    continue
                log_event(
                    LOGGER,
                    "label_retention_deleted",
                    delivery=self._delivery_id,
                    team=team,
                    label=stale.name,
                )
                deleted.append(stale.name)
        return deleted

    def cleanup_for_label(self, label: str) -> None:
        """Reverse auto cherry-picks of every merged pull request that carried `label`."""
        target = target_from_label(label)
        if not target:
            return

        for issue in self._github.list_issues(state="all", labels=(label,)):
            if not issue.is_pull_request:
                continue
            try:
                pr = self._github.get_pull_request(issue.number)
            except GitHubApiError:
                continue
            if not pr.merged:
                continue
            merge_sha = self._orchestrator.resolve_merge_sha(pr)
            if not merge_sha:
                continue

            work_branch = work_branch_name(target, merge_sha)
            try:
                self._orchestrator.cleanup_work_branch(target, work_branch)
            except GitHubApiError as exc:
                log_warning_event(
                    LOGGER,
                    "label_pre_delete_cleanup_failed",
                    delivery=self._delivery_id,
                    pr_number=pr.number,
                    target=target,
                    status_code=exc.status_code,
                )
                continue
            self._orchestrator.comment(
                pr.number,
                f"{INFO_MARKER} Repo label `{label}` is being removed; cleaned up auto "
                f"cherry-pick for `{target}` (closed PR and deleted `{work_branch}`).",
            )

    def handle_label_deleted(self, label: str) -> None:
        target = target_from_label(label)
        if not target:
            return
        try:
            self.remove_label_from_open_issues(label)
        except GitHubApiError as exc:
            log_warning_event(
                LOGGER,
                "label_detach_failed",
                delivery=self._delivery_id,
                label=label,
                status_code=exc.status_code,
            )
        try:
            closed = self.cleanup_open_work_for_target(target)
        except GitHubApiError as exc:
            log_warning_event(
                LOGGER,
                "label_cleanup_failed",
                delivery=self._delivery_id,
                label=label,
                status_code=exc.status_code,
            )
            return
        log_event(
            LOGGER,
            "label_cleanup_done",
            delivery=self._delivery_id,
            label=label,
            closed_count=closed,
        )

    def remove_label_from_open_issues(self, label: str) -> None:
        for issue in self._github.list_issues(state="open", labels=(label,)):
            try:
                self._github.remove_label_from_issue(issue.number, label)
            except GitHubNotFoundError:
                continue

    def cleanup_open_work_for_target(self, target: str) -> int:
        """Close open auto cherry-pick PRs into `target`, matched by work-branch prefix.

        Used once the label is gone and can no longer be searched by.
        """
        prefix = work_branch_prefix(target)
        closed = 0
        for pull in self._github.list_pull_requests(state="open", base=target):
            if not pull.head_ref.startswith(prefix):
                continue
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
                self._github.delete_ref(f"refs/heads/{pull.head_ref}")
            except GitHubApiError as exc:
                log_event(
                    LOGGER,
                    "work_branch_delete_skipped",
                    work_branch=pull.head_ref,
                    status_code=exc.status_code,
                )
            closed += 1
        return closed
