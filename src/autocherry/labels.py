from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import re


WORK_BRANCH_PREFIX = "autocherry"
LABEL_PREFIX = "cherry-pick to "
SHORT_SHA_LENGTH = 7

# Accepts "cherry-pick to X", "cherry pick to X", "cherrypick to X" in any case.
_CHERRY_TO_RE = re.compile(r"^\s*cherry[\s-]?pick\s+to\s+(.+?)\s*$", re.IGNORECASE)
_RELEASE_BRANCH_RE = re.compile(r"^([a-z0-9-]+-release)/(\d{4})$")
_RELEASE_LABEL_RE = re.compile(r"^cherry-pick to ([a-z0-9-]+-release)/(\d+)$")
_REFS_HEADS = "refs/heads/"


@dataclass(frozen=True)
class ReleaseLabel:
    name: str
    team: str
    number: int


def parse_target_branches(labels: Iterable[str]) -> list[str]:
    """Return target branches named by cherry-pick labels, first-seen order, no duplicates."""
    seen: set[str] = set()
    out: list[str] = []
    for label in labels:
        for branch in _branches_in_label(label):
            if branch in seen:
                continue
            seen.add(branch)
            out.append(branch)
    return out


def is_cherry_pick_label(label: str) -> bool:
    return bool(_branches_in_label(label))


def normalize_branch(name: str) -> str:
    branch = name.strip()
    while branch.startswith(_REFS_HEADS):
        branch = branch[len(_REFS_HEADS) :].strip()
    return branch


def short_sha(sha: str) -> str:
    return sha[:SHORT_SHA_LENGTH]


def sanitize_branch_component(target: str) -> str:
    return target.replace("/", "-")


def work_branch_name(target: str, sha: str) -> str:
    return f"{WORK_BRANCH_PREFIX}/{sanitize_branch_component(target)}/{short_sha(sha)}"


def work_branch_prefix(target: str) -> str:
    return f"{WORK_BRANCH_PREFIX}/{sanitize_branch_component(target)}/"


def release_label_for_branch(branch: str) -> str:
    return f"{LABEL_PREFIX}{branch}"


def is_release_branch(ref: str) -> bool:
    return _RELEASE_BRANCH_RE.match(ref) is not None


def parse_release_label(name: str) -> ReleaseLabel | None:
    match = _RELEASE_LABEL_RE.match(name)
    if match is None:
        return None
    return ReleaseLabel(name=name, team=match.group(1), number=int(match.group(2)))


def target_from_label(name: str) -> str:
    """Strip the literal label prefix; used where a label no longer exists to re-parse."""
    if not name.startswith(LABEL_PREFIX):
        return ""
    return name[len(LABEL_PREFIX) :].strip()


def _branches_in_label(label: str) -> list[str]:
    match = _CHERRY_TO_RE.match(label.strip())
    if match is None:
        return []
    out: list[str] = []
    for part in match.group(1).split(","):
        for candidate in part.split():
            branch = normalize_branch(candidate)
            if branch:
                out.append(branch)
    return out
