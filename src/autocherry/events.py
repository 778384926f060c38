from __future__ import annotations

from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
import threading
from typing import cast

from autocherry.app_auth import InstallationTokenProvider
from autocherry.config import AppConfig
from autocherry.deadline import Deadline, DeadlineExceededError
from autocherry.git_ops import CherryPickExecutor
from autocherry.github_gateway import GitHubGateway
from autocherry.label_lifecycle import LabelLifecycleManager
from autocherry.labels import LABEL_PREFIX, is_release_branch, parse_target_branches
from autocherry.models import RepoRef, RouteResult
from autocherry.observability import log_event, log_warning_event, sanitize_for_log
from autocherry.orchestrator import CherryPickOrchestrator


LOGGER = logging.getLogger("autocherry.events")

EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"
SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="

_JSON_DECODER = json.JSONDecoder()
_JSON_WHITESPACE = " \t\n\r"

GatewayFactory = Callable[[RepoRef, str], GitHubGateway]


class SignatureMismatchError(ValueError):
    pass


class BadPayloadError(ValueError):
    pass


class UnknownEventError(ValueError):
    pass


def compute_signature(secret: bytes, body: bytes) -> str:
    return SIGNATURE_PREFIX + hmac.new(secret, body, hashlib.sha256).hexdigest()


def verify_signature(secret: bytes, body: bytes, header: str | None) -> bool:
    """Check an `X-Hub-Signature-256` value against the verbatim body."""
    if not header:
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(header.strip().lower().encode(), expected.encode())


@dataclass(frozen=True)
class InboundEvent:
    event: str
    delivery: str
    body: bytes
    signature: str | None


def parse_queue_message(
    message: bytes | str,
    attributes: Mapping[str, str] | None = None,
) -> InboundEvent:
    """Unwrap a queued webhook delivery.

    Accepts an envelope `{"headers": {...}, "body": "<json>" | {...}}` or a bare GitHub
    payload whose headers travel in `attributes`. The event name is inferred from the
    payload when no header carries it.
    """
    raw = message.encode() if isinstance(message, str) else message
    raw = raw.strip()
    if not raw:
        raise BadPayloadError("empty message body")

    headers = _string_headers(dict(attributes or {}))
    payload = raw
    decoded = _loads(raw)
    envelope = cast(dict[str, object], decoded) if isinstance(decoded, dict) else None
    if envelope is not None and ("headers" in envelope or "body" in envelope):
        headers.update(_string_headers(envelope.get("headers")))
        body_value = envelope.get("body")
        if isinstance(body_value, str):
            payload = body_value.encode()
        elif body_value is not None:
            payload = _raw_member(raw.decode("utf-8-sig"), "body").encode("utf-8")
        else:
            payload = b""

    event = _header(headers, EVENT_HEADER)
    if not event:
        event = infer_event(payload)
    return InboundEvent(
        event=event,
        delivery=_header(headers, DELIVERY_HEADER),
        body=payload,
        signature=_header(headers, SIGNATURE_HEADER) or None,
    )


def infer_event(payload: bytes) -> str:
    decoded = _loads(payload)
    if not isinstance(decoded, dict):
        raise BadPayloadError("payload must be a JSON object")
    if "pull_request" in decoded:
        return "pull_request"
    ref_type = decoded.get("ref_type")
    if isinstance(ref_type, str) and ref_type:
        return "create"
    if "label" in decoded and "action" in decoded:
        return "label"
    raise UnknownEventError("cannot determine event type from payload")


@dataclass(frozen=True)
class PullRequestEvent:
    repo: RepoRef
    installation_id: int | None
    action: str
    pr_number: int
    merged: bool
    label: str | None


@dataclass(frozen=True)
class BranchCreatedEvent:
    repo: RepoRef
    installation_id: int | None
    ref: str
    ref_type: str


@dataclass(frozen=True)
class LabelEvent:
    repo: RepoRef
    installation_id: int | None
    action: str
    label: str


@dataclass(frozen=True)
class RoutedTask:
    name: str
    delivery: str
    timeout_seconds: float
    run: Callable[[Deadline], None]


class EventDispatcher:
    """Runs routed tasks detached on a thread pool, each under its own deadline.

    Any exception a task raises is logged here and never reaches the transport.
    """

    def __init__(self, worker_count: int) -> None:
        self._pool = ThreadPoolExecutor(
            max_workers=worker_count, thread_name_prefix="autocherry-event"
        )
        self._running: set[Future[None]] = set()
        self._running_lock = threading.Lock()

    def submit(self, task: RoutedTask) -> Future[None]:
        fut = self._pool.submit(self._run_task, task)
        with self._running_lock:
            self._running.add(fut)
        fut.add_done_callback(self._forget)
        log_event(LOGGER, "task_submitted", task=task.name, delivery=task.delivery)
        return fut

    def running_count(self) -> int:
        with self._running_lock:
            return len(self._running)

    def shutdown(self, *, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _forget(self, fut: Future[None]) -> None:
        with self._running_lock:
            self._running.discard(fut)

    def _run_task(self, task: RoutedTask) -> None:
        deadline = Deadline.after(task.timeout_seconds)
        try:
            task.run(deadline)
        except DeadlineExceededError:
            log_warning_event(
                LOGGER,
                "task_deadline_exceeded",
                task=task.name,
                delivery=task.delivery,
                timeout_seconds=task.timeout_seconds,
            )
            return
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("task %s raised", task.name, exc_info=True)
            log_warning_event(
                LOGGER,
                "task_failed",
                task=task.name,
                delivery=task.delivery,
                error_type=type(exc).__name__,
                error=sanitize_for_log(str(exc)),
            )
            return
        log_event(LOGGER, "task_completed", task=task.name, delivery=task.delivery)


def build_gateway(config: AppConfig, repo: RepoRef, token: str) -> GitHubGateway:
    host = config.git.host
    return GitHubGateway(
        owner=repo.owner,
        name=repo.name,
        token=token,
        hostname=None if host == "github.com" else host,
    )


class EventHandlers:
    """Builds installation-scoped collaborators for one event and runs the matching flow."""

    def __init__(
        self,
        config: AppConfig,
        *,
        tokens: InstallationTokenProvider,
        executor: CherryPickExecutor,
        gateway_factory: GatewayFactory | None = None,
    ) -> None:
        self._config = config
        self._tokens = tokens
        self._executor = executor
        self._gateway_factory = gateway_factory or (
            lambda repo, token: build_gateway(config, repo, token)
        )

    def merged_pr(
        self,
        event: PullRequestEvent,
        *,
        delivery: str,
        targets_override: tuple[str, ...],
        deadline: Deadline,
    ) -> None:
        orchestrator = self._orchestrator_for(event.repo, event.installation_id, delivery)
        if orchestrator is None:
            return
        orchestrator.process_merged_pr(
            event.pr_number, targets_override=targets_override, deadline=deadline
        )

    def unlabeled(
        self,
        event: PullRequestEvent,
        *,
        delivery: str,
        targets: tuple[str, ...],
        deadline: Deadline,
    ) -> None:
        orchestrator = self._orchestrator_for(event.repo, event.installation_id, delivery)
        if orchestrator is None:
            return
        deadline.check()
        orchestrator.reverse_label(event.pr_number, targets)

    def branch_created(self, event: BranchCreatedEvent, *, delivery: str, deadline: Deadline) -> None:
        lifecycle = self._lifecycle_for(event.repo, event.installation_id, delivery, deadline)
        if lifecycle is not None:
            lifecycle.handle_branch_created(event.ref)

    def label_deleted(self, event: LabelEvent, *, delivery: str, deadline: Deadline) -> None:
        lifecycle = self._lifecycle_for(event.repo, event.installation_id, delivery, deadline)
        if lifecycle is not None:
            lifecycle.handle_label_deleted(event.label)

    def _orchestrator_for(
        self, repo: RepoRef, installation_id: int | None, delivery: str
    ) -> CherryPickOrchestrator | None:
        if installation_id is None:
            log_warning_event(
                LOGGER,
                "event_missing_installation",
                delivery=sanitize_for_log(delivery),
                repo_full_name=repo.full_name,
            )
            return None
        token = self._tokens.token_for(installation_id)
        return CherryPickOrchestrator(
            github=self._gateway_factory(repo, token),
            executor=self._executor,
            token=token,
            delivery_id=delivery,
        )

    def _lifecycle_for(
        self,
        repo: RepoRef,
        installation_id: int | None,
        delivery: str,
        deadline: Deadline,
    ) -> LabelLifecycleManager | None:
        orchestrator = self._orchestrator_for(repo, installation_id, delivery)
        if orchestrator is None:
            return None
        return LabelLifecycleManager(
            github=orchestrator.github,
            orchestrator=orchestrator,
            retention_keep=self._config.runtime.label_retention_keep,
            deadline=deadline,
            delivery_id=delivery,
        )


class EventRouter:
    """Verifies, classifies and dispatches one inbound webhook delivery."""

    def __init__(
        self,
        config: AppConfig,
        *,
        handlers: EventHandlers,
        dispatcher: EventDispatcher,
    ) -> None:
        self._secret = config.github_app.webhook_secret
        self._runtime = config.runtime
        self._handlers = handlers
        self._dispatcher = dispatcher

    def route(self, event: str, delivery: str, body: bytes, signature: str | None) -> RouteResult:
        safe_delivery = sanitize_for_log(delivery)
        try:
            task = self.classify(event, delivery, body, signature)
        except SignatureMismatchError:
            log_warning_event(
                LOGGER,
                "webhook_signature_mismatch",
                delivery=safe_delivery,
                event_name=sanitize_for_log(event),
            )
            return RouteResult(status=401, reason="signature mismatch")
        except BadPayloadError as exc:
            log_warning_event(
                LOGGER,
                "webhook_bad_payload",
                delivery=safe_delivery,
                event_name=sanitize_for_log(event),
                error=sanitize_for_log(str(exc)),
            )
            return RouteResult(status=400, reason="bad payload")

        if task is None:
            log_event(
                LOGGER,
                "webhook_ignored",
                delivery=safe_delivery,
                event_name=sanitize_for_log(event),
            )
            return RouteResult(status=204, reason="ignored")

        self._dispatcher.submit(task)
        log_event(LOGGER, "webhook_accepted", delivery=safe_delivery, task=task.name)
        return RouteResult(status=202, reason="accepted")

    def route_queue_message(
        self,
        message: bytes | str,
        attributes: Mapping[str, str] | None = None,
    ) -> RouteResult:
        try:
            inbound = parse_queue_message(message, attributes)
        except UnknownEventError:
            log_event(LOGGER, "queue_message_ignored", reason="unknown_event")
            return RouteResult(status=204, reason="unknown event")
        except BadPayloadError as exc:
            log_warning_event(LOGGER, "queue_message_bad_payload", error=sanitize_for_log(str(exc)))
            return RouteResult(status=400, reason="bad payload")
        return self.route(inbound.event, inbound.delivery, inbound.body, inbound.signature)

    def classify(
        self, event: str, delivery: str, body: bytes, signature: str | None
    ) -> RoutedTask | None:
        if not verify_signature(self._secret, body, signature):
            raise SignatureMismatchError("signature mismatch")
        delivery = sanitize_for_log(delivery)

        if event not in {"pull_request", "create", "label"}:
            return None
        payload = _loads(body)
        if not isinstance(payload, dict):
            raise BadPayloadError("payload must be a JSON object")
        payload_obj = cast(dict[str, object], payload)

        if event == "pull_request":
            return self._classify_pull_request(_parse_pull_request_event(payload_obj), delivery)
        if event == "create":
            return self._classify_create(_parse_create_event(payload_obj), delivery)
        return self._classify_label(_parse_label_event(payload_obj), delivery)

    def _classify_pull_request(self, event: PullRequestEvent, delivery: str) -> RoutedTask | None:
        log_event(
            LOGGER,
            "pull_request_event",
            delivery=sanitize_for_log(delivery),
            action=event.action,
            merged=event.merged,
            repo_full_name=event.repo.full_name,
            pr_number=event.pr_number,
        )
        if not event.merged:
            return None

        if event.action in {"closed", "labeled"}:
            override: tuple[str, ...] = ()
            if event.action == "labeled" and event.label is not None:
                override = tuple(parse_target_branches([event.label]))
            handlers = self._handlers

            def run_merged(deadline: Deadline) -> None:
                handlers.merged_pr(
                    event, delivery=delivery, targets_override=override, deadline=deadline
                )

            return RoutedTask(
                name="merged_pr",
                delivery=delivery,
                timeout_seconds=self._runtime.cherry_timeout_seconds,
                run=run_merged,
            )

        if event.action == "unlabeled" and event.label is not None:
            targets = tuple(parse_target_branches([event.label]))
            if not targets:
                return None
            handlers = self._handlers

            def run_unlabeled(deadline: Deadline) -> None:
                handlers.unlabeled(event, delivery=delivery, targets=targets, deadline=deadline)

            return RoutedTask(
                name="unlabeled",
                delivery=delivery,
                timeout_seconds=self._runtime.cherry_timeout_seconds,
                run=run_unlabeled,
            )
        return None

    def _classify_create(self, event: BranchCreatedEvent, delivery: str) -> RoutedTask | None:
        if event.ref_type != "branch" or not is_release_branch(event.ref):
            return None
        handlers = self._handlers

        def run_created(deadline: Deadline) -> None:
            handlers.branch_created(event, delivery=delivery, deadline=deadline)

        return RoutedTask(
            name="branch_created",
            delivery=delivery,
            timeout_seconds=self._runtime.label_timeout_seconds,
            run=run_created,
        )

    def _classify_label(self, event: LabelEvent, delivery: str) -> RoutedTask | None:
        if event.action != "deleted" or not event.label.startswith(LABEL_PREFIX):
            return None
        handlers = self._handlers

        def run_deleted(deadline: Deadline) -> None:
            handlers.label_deleted(event, delivery=delivery, deadline=deadline)

        return RoutedTask(
            name="label_deleted",
            delivery=delivery,
            timeout_seconds=self._runtime.label_timeout_seconds,
            run=run_deleted,
        )


def _parse_pull_request_event(payload: dict[str, object]) -> PullRequestEvent:
    pr_obj = _require_obj(payload, "pull_request")
    number = pr_obj.get("number")
    if not isinstance(number, int) or isinstance(number, bool):
        raise BadPayloadError("pull_request.number must be an integer")
    label_obj = payload.get("label")
    label: str | None = None
    if isinstance(label_obj, dict):
        name = label_obj.get("name")
        label = name if isinstance(name, str) else None
    return PullRequestEvent(
        repo=_parse_repo(payload),
        installation_id=_parse_installation(payload),
        action=_str_field(payload, "action"),
        pr_number=number,
        merged=pr_obj.get("merged") is True,
        label=label,
    )


def _parse_create_event(payload: dict[str, object]) -> BranchCreatedEvent:
    return BranchCreatedEvent(
        repo=_parse_repo(payload),
        installation_id=_parse_installation(payload),
        ref=_str_field(payload, "ref"),
        ref_type=_str_field(payload, "ref_type"),
    )


def _parse_label_event(payload: dict[str, object]) -> LabelEvent:
    label_obj = _require_obj(payload, "label")
    return LabelEvent(
        repo=_parse_repo(payload),
        installation_id=_parse_installation(payload),
        action=_str_field(payload, "action"),
        label=_str_field(label_obj, "name"),
    )


def _parse_repo(payload: dict[str, object]) -> RepoRef:
    repo_obj = _require_obj(payload, "repository")
    owner_obj = _require_obj(repo_obj, "owner")
    owner = _str_field(owner_obj, "login")
    name = _str_field(repo_obj, "name")
    if not owner or not name:
        raise BadPayloadError("repository.owner.login and repository.name are required")
    return RepoRef(owner=owner, name=name)


def _parse_installation(payload: dict[str, object]) -> int | None:
    inst_obj = payload.get("installation")
    if not isinstance(inst_obj, dict):
        return None
    inst_id = inst_obj.get("id")
    if not isinstance(inst_id, int) or isinstance(inst_id, bool):
        return None
    return inst_id


def _require_obj(payload: dict[str, object], key: str) -> dict[str, object]:
    value = payload.get(key)
    if not isinstance(value, dict):
        raise BadPayloadError(f"{key} must be a JSON object")
    return cast(dict[str, object], value)


def _str_field(payload: dict[str, object], key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise BadPayloadError(f"{key} must be a string")
    return value


def _loads(raw: bytes) -> object:
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BadPayloadError(f"invalid JSON: {exc}") from exc


def _string_headers(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): item for key, item in value.items() if isinstance(item, str)}


def _header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value.strip()
    return ""


def _raw_member(text: str, key: str) -> str:
    """Return the source text of a top-level member of a JSON object, byte for byte.

    The signature covers the exact bytes GitHub sent, so an object-valued body must
    not be re-serialized. The last occurrence wins, as with `json.loads`.
    """
    found: str | None = None
    pos = _skip_whitespace(text, 0)
    if text[pos : pos + 1] != "{":
        raise BadPayloadError("envelope must be a JSON object")
    pos = _skip_whitespace(text, pos + 1)
    if text[pos : pos + 1] == "}":
        raise BadPayloadError(f"envelope has no {key!r} member")
    while True:
        name, pos = _JSON_DECODER.raw_decode(text, pos)
        pos = _skip_whitespace(text, pos)
        if text[pos : pos + 1] != ":":
            raise BadPayloadError("malformed envelope")
        start = _skip_whitespace(text, pos + 1)
        _, pos = _JSON_DECODER.raw_decode(text, start)
        if name == key:
            found = text[start:pos]
        pos = _skip_whitespace(text, pos)
        separator = text[pos : pos + 1]
        if separator == ",":
            pos = _skip_whitespace(text, pos + 1)
            continue
        if separator == "}":
            break
        raise BadPayloadError("malformed envelope")
    if found is None:
        raise BadPayloadError(f"envelope has no {key!r} member")
    return found


def _skip_whitespace(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in _JSON_WHITESPACE:
        pos += 1
    return pos
