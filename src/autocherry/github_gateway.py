from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import os
from typing import Literal, cast
from urllib.parse import quote, urlencode

from autocherry.models import IssueRef, MergedPullRequest, PullRequest, PullRequestSummary
from autocherry.observability import log_event
from autocherry.shell import run


LOGGER = logging.getLogger("autocherry.github_gateway")
PullRequestState = Literal["open", "closed", "all"]
_PAGE_SIZE = 100
# GitHub caps the pull request commits listing at 250 entries.
_MAX_PR_COMMITS = 250


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubNotFoundError(GitHubApiError):
    pass


@dataclass(frozen=True)
class GitHubGateway:
    """Installation-scoped GitHub REST calls for one repository, issued through `gh api`."""

    owner: str
    name: str
    token: str = field(repr=False)
    hostname: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    # Pull requests

    def get_pull_request(self, pr_number: int) -> MergedPullRequest:
        payload = self._api_json("GET", f"{self._repo_path}/pulls/{pr_number}")
        payload_obj = _require_object(payload, what="pull request")
        snapshot = MergedPullRequest(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            merge_commit_sha=_as_string(payload_obj.get("merge_commit_sha")),
            labels=_label_names(payload_obj.get("labels")),
            merged=payload_obj.get("merged") is True,
            html_url=_as_string(payload_obj.get("html_url")),
        )
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=snapshot.number)
        return snapshot

    def list_pull_requests(
        self,
        *,
        state: PullRequestState = "open",
        head: str | None = None,
        base: str | None = None,
    ) -> list[PullRequestSummary]:
        query_items: dict[str, str] = {"state": state}
        if head is not None:
            query_items["head"] = f"{self.owner}:{head}"
        if base is not None:
            query_items["base"] = base

        pulls: list[PullRequestSummary] = []
        for item_obj in self._paginate(f"{self._repo_path}/pulls", query_items):
            head_obj = _as_object_dict(item_obj.get("head")) or {}
            base_obj = _as_object_dict(item_obj.get("base")) or {}
            pulls.append(
                PullRequestSummary(
                    number=_as_int(item_obj.get("number"), field="number"),
                    html_url=_as_string(item_obj.get("html_url")),
                    head_ref=_as_string(head_obj.get("ref")),
                    base_ref=_as_string(base_obj.get("ref")),
                    state=_as_string(item_obj.get("state")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_requests",
            state=state,
            head=head,
            base=base,
            count=len(pulls),
        )
        return pulls

    def list_pull_request_commits(self, pr_number: int) -> list[str]:
        shas: list[str] = []
        for item_obj in self._paginate(
            f"{self._repo_path}/pulls/{pr_number}/commits", {}, limit=_MAX_PR_COMMITS
        ):
            sha = _as_string(item_obj.get("sha"))
            if sha:
                shas.append(sha)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_commits",
            pr_number=pr_number,
            count=len(shas),
        )
        return shas

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        try:
            payload = self._api_json(
                "POST",
                f"{self._repo_path}/pulls",
                payload={"title": title, "head": head, "base": base, "body": body},
            )
            payload_obj = _require_object(payload, what="created pull request")
            number = _as_int(payload_obj.get("number"), field="number")
            html_url = _as_string(payload_obj.get("html_url"))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=number,
            pr_url=html_url,
            base=base,
            head=head,
        )
        return PullRequest(number=number, html_url=html_url)

    def close_pull_request(self, pr_number: int) -> None:
        self._api_json("PATCH", f"{self._repo_path}/pulls/{pr_number}", payload={"state": "closed"})
        log_event(LOGGER, "github_pr_closed", repo_full_name=self.full_name, pr_number=pr_number)

    # Issues and labels

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        try:
            self._api_json(
                "POST",
                f"{self._repo_path}/issues/{issue_number}/comments",
                payload={"body": body},
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def list_issues(self, *, state: PullRequestState, labels: tuple[str, ...]) -> list[IssueRef]:
        query_items = {"state": state, "labels": ",".join(labels)}
        issues: list[IssueRef] = []
        for item_obj in self._paginate(f"{self._repo_path}/issues", query_items):
            issues.append(
                IssueRef(
                    number=_as_int(item_obj.get("number"), field="number"),
                    # The issues endpoint also returns pull requests, flagged by this key.
                    is_pull_request="pull_request" in item_obj,
                    labels=_label_names(item_obj.get("labels")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="issues",
            state=state,
            labels=labels,
            count=len(issues),
        )
        return issues

    def remove_label_from_issue(self, issue_number: int, label: str) -> None:
        self._api_json(
            "DELETE",
            f"{self._repo_path}/issues/{issue_number}/labels/{_quote_segment(label)}",
        )
        log_event(LOGGER, "github_issue_label_removed", issue_number=issue_number, label=label)

    def list_labels(self) -> list[str]:
        names: list[str] = []
        for item_obj in self._paginate(f"{self._repo_path}/labels", {}):
            name = item_obj.get("name")
            if isinstance(name, str):
                names.append(name)
        log_event(LOGGER, "github_read", endpoint="labels", count=len(names))
        return names

    def create_label(self, name: str, color: str) -> None:
        self._api_json("POST", f"{self._repo_path}/labels", payload={"name": name, "color": color})
        log_event(LOGGER, "github_label_created", repo_full_name=self.full_name, label=name)

    def delete_label(self, name: str) -> None:
        self._api_json("DELETE", f"{self._repo_path}/labels/{_quote_segment(name)}")
        log_event(LOGGER, "github_label_deleted", repo_full_name=self.full_name, label=name)

    # Git data

    def get_ref(self, ref: str) -> str:
        """Return the object sha a fully qualified ref (refs/heads/...) points at."""
        payload = self._api_json("GET", f"{self._repo_path}/git/ref/{_ref_path(ref)}")
        payload_obj = _require_object(payload, what="git ref")
        object_obj = _as_object_dict(payload_obj.get("object")) or {}
        return _as_string(object_obj.get("sha"))

    def delete_ref(self, ref: str) -> None:
        self._api_json("DELETE", f"{self._repo_path}/git/refs/{_ref_path(ref)}")
        log_event(LOGGER, "github_ref_deleted", repo_full_name=self.full_name, ref=ref)

    def get_commit_parents(self, sha: str) -> tuple[str, ...]:
        payload = self._api_json("GET", f"{self._repo_path}/commits/{sha}")
        payload_obj = _require_object(payload, what="commit")
        parents_obj = payload_obj.get("parents")
        parents: list[str] = []
        if isinstance(parents_obj, list):
            for entry in parents_obj:
                entry_obj = _as_object_dict(entry)
                if entry_obj is not None:
                    parents.append(_as_string(entry_obj.get("sha")))
        log_event(LOGGER, "github_read", endpoint="commit", sha=sha, parent_count=len(parents))
        return tuple(parents)

    # Transport

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.name}"

    def _paginate(
        self,
        path: str,
        query_items: dict[str, str],
        *,
        limit: int | None = None,
    ) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            query = urlencode({**query_items, "per_page": str(_PAGE_SIZE), "page": str(page)})
            payload = self._api_json("GET", f"{path}?{query}")
            if not isinstance(payload, list):
                raise GitHubApiError(f"Unexpected GitHub response: expected list for {path}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                break
            if limit is not None and len(items) >= limit:
                break
            page += 1
        return items

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include"]
        if self.hostname:
            cmd.extend(["--hostname", self.hostname])
        cmd.append(path)
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)

        raw = run(cmd, input_text=stdin_payload, check=False, env=self._env())
        status_code, _headers, body = _parse_http_response(raw)
        if status_code < 200 or status_code >= 300:
            message = body.strip() or "<empty>"
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                status_code=status_code,
                body_preview=_preview_for_log(message),
            )
            error_type = GitHubNotFoundError if _is_not_found(status_code, message) else GitHubApiError
            raise error_type(
                f"GitHub API {method_upper} {path} failed with status {status_code}: {message}",
                status_code=status_code,
            )
        if not body.strip():
            return None
        return json.loads(body)

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["GH_TOKEN"] = self.token
        if self.hostname:
            env["GH_ENTERPRISE_TOKEN"] = self.token
        env["GH_PROMPT_DISABLED"] = "1"
        return env


def _is_not_found(status_code: int, message: str) -> bool:
    if status_code == 404:
        return True
    # Deleting a ref that is already gone answers 422 rather than 404.
    return status_code == 422 and "reference does not exist" in message.lower()


def _quote_segment(value: str) -> str:
    return quote(value, safe="")


def _ref_path(ref: str) -> str:
    normalized = ref[len("refs/") :] if ref.startswith("refs/") else ref
    return quote(normalized, safe="/")


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise GitHubApiError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _label_names(value: object) -> tuple[str, ...]:
    names: list[str] = []
    if isinstance(value, list):
        for entry in value:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            name = entry_obj.get("name")
            if isinstance(name, str):
                names.append(name)
    return tuple(names)


def _require_object(value: object, *, what: str) -> dict[str, object]:
    value_obj = _as_object_dict(value)
    if value_obj is None:
        raise GitHubApiError(f"Unexpected GitHub response: expected object for {what}")
    return value_obj


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")
