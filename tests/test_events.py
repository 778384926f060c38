from __future__ import annotations

import json
from typing import cast

import pytest

from autocherry.app_auth import InstallationTokenProvider
from autocherry.config import AppConfig, GitConfig, GitHubAppConfig, RuntimeConfig
from autocherry.deadline import Deadline, DeadlineExceededError
from autocherry.events import (
    BadPayloadError,
    BranchCreatedEvent,
    EventDispatcher,
    EventHandlers,
    EventRouter,
    LabelEvent,
    PullRequestEvent,
    RoutedTask,
    UnknownEventError,
    build_gateway,
    compute_signature,
    infer_event,
    parse_queue_message,
    verify_signature,
)
from autocherry.git_ops import CherryPickExecutor
from autocherry.github_gateway import GitHubGateway
from autocherry.models import MergedPullRequest, RepoRef, RouteResult
from autocherry.observability import configure_logging


SECRET = b"webhook-secret"
REPO = RepoRef(owner="acme", name="widgets")


def _config(*, host: str = "github.com") -> AppConfig:
    return AppConfig(
        github_app=GitHubAppConfig(app_id=1, private_key_pem=b"pem", webhook_secret=SECRET),
        git=GitConfig(host=host),
        runtime=RuntimeConfig(cherry_timeout_seconds=600, label_timeout_seconds=90),
    )


def _repo_payload() -> dict[str, object]:
    return {
        "repository": {"name": "widgets", "owner": {"login": "acme"}},
        "installation": {"id": 55},
    }


def _pr_payload(
    action: str = "closed", *, merged: bool = True, label: str | None = None
) -> dict[str, object]:
    payload: dict[str, object] = {
        "action": action,
        "pull_request": {"number": 7, "merged": merged},
        **_repo_payload(),
    }
    if label is not None:
        payload["label"] = {"name": label}
    return payload


def _body(payload: object) -> bytes:
    return json.dumps(payload).encode()


class FakeDispatcher:
    def __init__(self) -> None:
        self.tasks: list[RoutedTask] = []

    def submit(self, task: RoutedTask) -> None:
        self.tasks.append(task)


class FakeHandlers:
    def __init__(self) -> None:
        self.calls: list[tuple[str, object, dict[str, object]]] = []

    def merged_pr(self, event: PullRequestEvent, **kwargs: object) -> None:
        self.calls.append(("merged_pr", event, kwargs))

    def unlabeled(self, event: PullRequestEvent, **kwargs: object) -> None:
        self.calls.append(("unlabeled", event, kwargs))

    def branch_created(self, event: BranchCreatedEvent, **kwargs: object) -> None:
        self.calls.append(("branch_created", event, kwargs))

    def label_deleted(self, event: LabelEvent, **kwargs: object) -> None:
        self.calls.append(("label_deleted", event, kwargs))


def _router() -> tuple[EventRouter, FakeHandlers, FakeDispatcher]:
    handlers = FakeHandlers()
    dispatcher = FakeDispatcher()
    router = EventRouter(
        _config(),
        handlers=cast(EventHandlers, handlers),
        dispatcher=cast(EventDispatcher, dispatcher),
    )
    return router, handlers, dispatcher


def _route(router: EventRouter, event: str, payload: object) -> RouteResult:
    body = _body(payload)
    return router.route(event, "delivery-1", body, compute_signature(SECRET, body))


def test_verify_signature_accepts_only_matching_digest() -> None:
    body = b'{"a":1}'
    signature = compute_signature(SECRET, body)

    assert signature.startswith("sha256=")
    assert verify_signature(SECRET, body, signature)
    assert verify_signature(SECRET, body, f"  {signature.upper()} ")
    assert not verify_signature(SECRET, body + b" ", signature)
    assert not verify_signature(b"other", body, signature)
    assert not verify_signature(SECRET, body, None)
    assert not verify_signature(SECRET, body, "")
    assert not verify_signature(SECRET, body, "sha1=" + signature[len("sha256=") :])


def test_bad_signature_is_rejected_before_parsing(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")
    router, _, dispatcher = _router()

    result = router.route("pull_request", "d\n1", b"not json", "sha256=deadbeef")

    assert result == RouteResult(status=401, reason="signature mismatch")
    assert dispatcher.tasks == []
    stderr = capsys.readouterr().err
    assert "event=webhook_signature_mismatch delivery=d1" in stderr


def test_invalid_json_is_bad_payload() -> None:
    router, _, dispatcher = _router()
    body = b"{not json"

    result = router.route("pull_request", "d", body, compute_signature(SECRET, body))

    assert result == RouteResult(status=400, reason="bad payload")
    assert dispatcher.tasks == []


@pytest.mark.parametrize(
    "payload",
    [
        {"action": "closed", "pull_request": {"number": 7, "merged": True}},
        {"action": "closed", "pull_request": "x", **_repo_payload()},
        {"action": "closed", "pull_request": {"number": "7"}, **_repo_payload()},
        {
            "action": "closed",
            "pull_request": {"number": 7},
            "repository": {"name": "w", "owner": {"login": ""}},
        },
        [1, 2],
    ],
)
def test_malformed_pull_request_payloads(payload: object) -> None:
    router, _, _ = _router()

    assert _route(router, "pull_request", payload).status == 400


@pytest.mark.parametrize(
    ("event", "payload"),
    [
        ("push", {"ref": "refs/heads/main"}),
        ("pull_request", _pr_payload("closed", merged=False)),
        ("pull_request", _pr_payload("opened", merged=False)),
        ("pull_request", _pr_payload("synchronize")),
        ("pull_request", _pr_payload("unlabeled", label="bug")),
        ("pull_request", _pr_payload("unlabeled")),
        ("create", {"ref": "team-release/0042", "ref_type": "tag", **_repo_payload()}),
        ("create", {"ref": "feature/x", "ref_type": "branch", **_repo_payload()}),
        (
            "label",
            {
                "action": "created",
                "label": {"name": "cherry-pick to a-release/0001"},
                **_repo_payload(),
            },
        ),
        ("label", {"action": "deleted", "label": {"name": "bug"}, **_repo_payload()}),
    ],
)
def test_irrelevant_events_are_ignored(event: str, payload: object) -> None:
    router, _, dispatcher = _router()

    assert _route(router, event, payload) == RouteResult(status=204, reason="ignored")
    assert dispatcher.tasks == []


def test_merged_pull_request_dispatches_cherry_pick_task(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    router, handlers, dispatcher = _router()

    result = _route(router, "pull_request", _pr_payload("closed"))

    assert result == RouteResult(status=202, reason="accepted")
    assert "event=webhook_accepted delivery=delivery-1 task=merged_pr" in capsys.readouterr().err
    [task] = dispatcher.tasks
    assert task.name == "merged_pr"
    assert task.delivery == "delivery-1"
    assert task.timeout_seconds == 600
    assert handlers.calls == []

    deadline = Deadline.unbounded()
    task.run(deadline)

    [(name, event, kwargs)] = handlers.calls
    assert name == "merged_pr"
    assert event == PullRequestEvent(
        repo=REPO,
        installation_id=55,
        action="closed",
        pr_number=7,
        merged=True,
        label=None,
    )
    assert kwargs == {"delivery": "delivery-1", "targets_override": (), "deadline": deadline}


def test_late_label_on_merged_pull_request_targets_only_that_label() -> None:
    router, handlers, dispatcher = _router()

    _route(
        router,
        "pull_request",
        _pr_payload("labeled", label="cherry-pick to a-release/0001, b-release/0002"),
    )

    dispatcher.tasks[0].run(Deadline.unbounded())
    assert handlers.calls[0][2]["targets_override"] == ("a-release/0001", "b-release/0002")


def test_unrelated_label_on_merged_pull_request_reruns_full_pass() -> None:
    router, handlers, dispatcher = _router()

    result = _route(router, "pull_request", _pr_payload("labeled", label="bug"))

    assert result.status == 202
    [task] = dispatcher.tasks
    assert task.name == "merged_pr"
    task.run(Deadline.unbounded())
    [(name, event, kwargs)] = handlers.calls
    assert name == "merged_pr"
    assert event.label == "bug"
    assert kwargs["targets_override"] == ()


def test_unlabel_dispatches_reversal_task() -> None:
    router, handlers, dispatcher = _router()

    result = _route(
        router, "pull_request", _pr_payload("unlabeled", label="cherry-pick to a-release/0001")
    )

    assert result.status == 202
    [task] = dispatcher.tasks
    assert task.name == "unlabeled"
    assert task.timeout_seconds == 600
    task.run(Deadline.unbounded())
    assert handlers.calls[0][0] == "unlabeled"
    assert handlers.calls[0][2]["targets"] == ("a-release/0001",)


def test_release_branch_creation_dispatches_label_task() -> None:
    router, handlers, dispatcher = _router()

    result = _route(
        router,
        "create",
        {"ref": "team-release/0042", "ref_type": "branch", **_repo_payload()},
    )

    assert result.status == 202
    [task] = dispatcher.tasks
    assert task.name == "branch_created"
    assert task.timeout_seconds == 90
    task.run(Deadline.unbounded())
    assert handlers.calls[0][1] == BranchCreatedEvent(
        repo=REPO, installation_id=55, ref="team-release/0042", ref_type="branch"
    )


def test_label_deletion_dispatches_cleanup_task() -> None:
    router, handlers, dispatcher = _router()

    result = _route(
        router,
        "label",
        {
            "action": "deleted",
            "label": {"name": "cherry-pick to a-release/0001"},
            **_repo_payload(),
        },
    )

    assert result.status == 202
    [task] = dispatcher.tasks
    assert task.name == "label_deleted"
    assert task.timeout_seconds == 90
    task.run(Deadline.unbounded())
    assert handlers.calls[0][1] == LabelEvent(
        repo=REPO, installation_id=55, action="deleted", label="cherry-pick to a-release/0001"
    )


def test_parse_queue_message_envelope_with_string_body() -> None:
    body = _body(_pr_payload())
    message = json.dumps(
        {
            "headers": {
                "x-github-event": "pull_request",
                "X-GitHub-Delivery": " abc ",
                "X-Hub-Signature-256": "sha256=00",
                "X-Ignored": 3,
            },
            "body": body.decode(),
        }
    )

    inbound = parse_queue_message(message, {"X-GitHub-Delivery": "from-attributes"})

    assert inbound.event == "pull_request"
    assert inbound.delivery == "abc"
    assert inbound.signature == "sha256=00"
    assert inbound.body == body


def test_parse_queue_message_envelope_with_object_body_keeps_raw_bytes() -> None:
    payload = '{ "ref": "team-release/0001",\n  "ref_type": "branch", "sender": "José" }'
    message = (
        '{"headers": {"X-GitHub-Delivery": "q-2"}, "body": ' + payload + ', "body_extra": [1, 2]}'
    ).encode()

    inbound = parse_queue_message(message)

    assert inbound.body == payload.encode()
    assert inbound.event == "create"
    assert inbound.signature is None
    assert inbound.delivery == "q-2"


def test_route_queue_message_verifies_object_body_as_sent() -> None:
    router, _, dispatcher = _router()
    pr = _pr_payload()
    pr["pull_request"] = {"number": 7, "merged": True, "title": "Fix naïve café"}
    body = json.dumps(pr, ensure_ascii=False, separators=(",", ":")).encode()
    envelope = (
        b'{"headers": {"X-GitHub-Event": "pull_request", "X-Hub-Signature-256": "'
        + compute_signature(SECRET, body).encode()
        + b'"}, "body": '
        + body
        + b"}"
    )

    assert router.route_queue_message(envelope) == RouteResult(status=202, reason="accepted")
    assert dispatcher.tasks[0].name == "merged_pr"


def test_parse_queue_message_bare_payload_uses_attributes() -> None:
    body = _body(_pr_payload())

    inbound = parse_queue_message(
        body, {"X-GitHub-Event": "pull_request", "X-GitHub-Delivery": "d-9"}
    )

    assert inbound.body == body
    assert inbound.event == "pull_request"
    assert inbound.delivery == "d-9"


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"pull_request": {}}, "pull_request"),
        ({"ref_type": "branch"}, "create"),
        ({"action": "deleted", "label": {}}, "label"),
    ],
)
def test_infer_event(payload: object, expected: str) -> None:
    assert infer_event(_body(payload)) == expected


def test_infer_event_failures() -> None:
    with pytest.raises(UnknownEventError):
        infer_event(b'{"zen": "keep it logically awesome"}')
    with pytest.raises(BadPayloadError):
        infer_event(b"[]")
    with pytest.raises(BadPayloadError):
        parse_queue_message(b"  \n")


def test_route_queue_message_end_to_end() -> None:
    router, _, dispatcher = _router()
    body = _body(_pr_payload())
    message = json.dumps(
        {
            "headers": {
                "X-GitHub-Event": "pull_request",
                "X-GitHub-Delivery": "q-1",
                "X-Hub-Signature-256": compute_signature(SECRET, body),
            },
            "body": body.decode(),
        }
    )

    assert router.route_queue_message(message) == RouteResult(status=202, reason="accepted")
    assert dispatcher.tasks[0].delivery == "q-1"


def test_route_queue_message_outcomes() -> None:
    router, _, dispatcher = _router()

    assert router.route_queue_message(b'{"zen": "x"}') == RouteResult(
        status=204, reason="unknown event"
    )
    assert router.route_queue_message(b"") == RouteResult(status=400, reason="bad payload")
    assert router.route_queue_message(_body(_pr_payload())).status == 401
    assert dispatcher.tasks == []


def test_dispatcher_logs_task_results(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    dispatcher = EventDispatcher(2)
    seen: list[Deadline] = []

    def ok(deadline: Deadline) -> None:
        seen.append(deadline)

    def boom(deadline: Deadline) -> None:
        _ = deadline
        raise RuntimeError("exploded\nbadly")

    def late(deadline: Deadline) -> None:
        _ = deadline
        raise DeadlineExceededError("Deadline of 1s exceeded")

    try:
        for name, run in (("ok", ok), ("boom", boom), ("late", late)):
            fut = dispatcher.submit(
                RoutedTask(name=name, delivery=f"d-{name}", timeout_seconds=30, run=run)
            )
            assert fut.result(timeout=5) is None
    finally:
        dispatcher.shutdown(wait=True)

    assert seen[0].timeout_seconds == 30
    assert dispatcher.running_count() == 0
    stderr = capsys.readouterr().err
    assert "event=task_completed delivery=d-ok task=ok" in stderr
    assert "event=task_failed delivery=d-boom error=explodedbadly error_type=RuntimeError" in stderr
    assert "event=task_deadline_exceeded delivery=d-late task=late timeout_seconds=30" in stderr


class FakeTokens:
    def __init__(self) -> None:
        self.requested: list[int] = []

    def token_for(self, installation_id: int) -> str:
        self.requested.append(installation_id)
        return "ghs_installation"


class MinimalGitHub:
    owner = "acme"
    name = "widgets"

    def get_pull_request(self, pr_number: int) -> MergedPullRequest:
        return MergedPullRequest(
            number=pr_number, title="t", merge_commit_sha="abc", labels=("bug",), merged=True
        )


def _handlers(tokens: FakeTokens, factory_calls: list[tuple[RepoRef, str]]) -> EventHandlers:
    def factory(repo: RepoRef, token: str) -> GitHubGateway:
        factory_calls.append((repo, token))
        return cast(GitHubGateway, MinimalGitHub())

    return EventHandlers(
        _config(),
        tokens=cast(InstallationTokenProvider, tokens),
        executor=cast(CherryPickExecutor, object()),
        gateway_factory=factory,
    )


def test_handlers_mint_installation_token_per_event() -> None:
    tokens = FakeTokens()
    factory_calls: list[tuple[RepoRef, str]] = []
    handlers = _handlers(tokens, factory_calls)
    event = PullRequestEvent(
        repo=REPO, installation_id=55, action="closed", pr_number=7, merged=True, label=None
    )

    handlers.merged_pr(event, delivery="d", targets_override=(), deadline=Deadline.unbounded())

    assert tokens.requested == [55]
    assert factory_calls == [(REPO, "ghs_installation")]


def test_handlers_skip_events_without_installation(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    tokens = FakeTokens()
    factory_calls: list[tuple[RepoRef, str]] = []
    handlers = _handlers(tokens, factory_calls)

    handlers.label_deleted(
        LabelEvent(repo=REPO, installation_id=None, action="deleted", label="cherry-pick to x"),
        delivery="d-3",
        deadline=Deadline.unbounded(),
    )

    assert tokens.requested == []
    assert factory_calls == []
    assert "event=event_missing_installation delivery=d-3" in capsys.readouterr().err


def test_build_gateway_sets_hostname_for_enterprise() -> None:
    assert build_gateway(_config(), REPO, "t").hostname is None
    enterprise = build_gateway(_config(host="ghe.example.com"), REPO, "t")
    assert enterprise.hostname == "ghe.example.com"
    assert enterprise.full_name == "acme/widgets"
