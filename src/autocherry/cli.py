from __future__ import annotations

import argparse
from pathlib import Path
import sys

from autocherry.app_auth import InstallationTokenProvider
from autocherry.config import AppConfig, load_config
from autocherry.deadline import Deadline
from autocherry.events import (
    EventDispatcher,
    EventHandlers,
    EventRouter,
    build_gateway,
    verify_signature,
)
from autocherry.git_ops import CherryPickExecutor
from autocherry.label_lifecycle import LabelLifecycleManager
from autocherry.models import RepoRef
from autocherry.observability import configure_logging
from autocherry.orchestrator import CherryPickOrchestrator
from autocherry.webhook_server import build_server


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autocherry")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Receive GitHub webhooks over HTTP")
    _add_common_arguments(serve_parser)

    process_parser = subparsers.add_parser(
        "process-pr", help="Run one cherry-pick pass for a merged pull request"
    )
    _add_common_arguments(process_parser)
    _add_repo_arguments(process_parser)
    process_parser.add_argument("--pr", type=int, required=True, help="Merged pull request number")
    process_parser.add_argument(
        "--target",
        action="append",
        help="Target branch to cherry-pick onto instead of the PR labels (repeatable)",
    )

    retention_parser = subparsers.add_parser(
        "retention", help="Prune old release labels and clean up their auto cherry-picks"
    )
    _add_common_arguments(retention_parser)
    _add_repo_arguments(retention_parser)
    retention_parser.add_argument(
        "--keep",
        type=int,
        help="Labels to keep per team (defaults to runtime.label_retention_keep)",
    )

    verify_parser = subparsers.add_parser(
        "verify-signature", help="Check an X-Hub-Signature-256 value against a payload file"
    )
    _add_common_arguments(verify_parser)
    verify_parser.add_argument("--payload", type=Path, required=True)
    verify_parser.add_argument("--signature", type=str, required=True)

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    configure_logging(args.verbose, log_dir=config.runtime.log_dir)

    if args.command == "serve":
        _cmd_serve(config)
        return
    if args.command == "process-pr":
        _cmd_process_pr(
            config,
            repo=args.repo,
            pr_number=args.pr,
            installation_id=args.installation_id,
            targets=tuple(args.target or ()),
        )
        return
    if args.command == "retention":
        _cmd_retention(
            config,
            repo=args.repo,
            installation_id=args.installation_id,
            keep=args.keep,
        )
        return
    if args.command == "verify-signature":
        _cmd_verify_signature(config, payload=args.payload, signature=args.signature)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_serve(config: AppConfig) -> None:
    dispatcher = EventDispatcher(config.runtime.worker_count)
    handlers = EventHandlers(
        config,
        tokens=InstallationTokenProvider(config.github_app),
        executor=CherryPickExecutor(config.git),
    )
    router = EventRouter(config, handlers=handlers, dispatcher=dispatcher)
    server = build_server(
        router, host=config.runtime.listen_host, port=config.runtime.listen_port
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
        dispatcher.shutdown(wait=True)


def _cmd_process_pr(
    config: AppConfig,
    *,
    repo: RepoRef,
    pr_number: int,
    installation_id: int,
    targets: tuple[str, ...],
) -> None:
    orchestrator = _build_orchestrator(config, repo=repo, installation_id=installation_id)
    outcomes = orchestrator.process_merged_pr(
        pr_number,
        targets_override=targets,
        deadline=Deadline.after(config.runtime.cherry_timeout_seconds),
    )
    if not outcomes:
        print(f"No cherry-pick targets processed for {repo.full_name}#{pr_number}")
        return
    for outcome in outcomes:
        print(f"{outcome.target}\t{outcome.kind}\t{outcome.pr_url or '-'}")


def _cmd_retention(
    config: AppConfig,
    *,
    repo: RepoRef,
    installation_id: int,
    keep: int | None,
) -> None:
    orchestrator = _build_orchestrator(config, repo=repo, installation_id=installation_id)
    effective_keep = keep if keep is not None else config.runtime.label_retention_keep
    lifecycle = LabelLifecycleManager(
        github=orchestrator.github,
        orchestrator=orchestrator,
        retention_keep=effective_keep,
        deadline=Deadline.after(config.runtime.label_timeout_seconds),
    )
    deleted = lifecycle.enforce_retention(effective_keep)
    if not deleted:
        print("No labels deleted.")
        return
    for name in deleted:
        print(f"deleted\t{name}")


def _cmd_verify_signature(config: AppConfig, *, payload: Path, signature: str) -> None:
    body = payload.read_bytes()
    if verify_signature(config.github_app.webhook_secret, body, signature):
        print("signature ok")
        return
    print("signature mismatch", file=sys.stderr)
    raise SystemExit(1)


def _build_orchestrator(
    config: AppConfig, *, repo: RepoRef, installation_id: int
) -> CherryPickOrchestrator:
    token = InstallationTokenProvider(config.github_app).token_for(installation_id)
    return CherryPickOrchestrator(
        github=build_gateway(config, repo, token),
        executor=CherryPickExecutor(config.git),
        token=token,
    )


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("autocherry.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="low",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low by default, or high)",
    )


def _add_repo_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--repo", type=_repo_ref, required=True, help="owner/name")
    parser.add_argument("--installation-id", type=int, required=True)


def _repo_ref(value: str) -> RepoRef:
    owner, sep, name = value.strip().partition("/")
    if not sep or not owner or not name or "/" in name:
        raise argparse.ArgumentTypeError(f"expected owner/name, got {value!r}")
    return RepoRef(owner=owner, name=name)
