"""
Idempotency keys, markers and deterministic branch names for write runs.

Everything here is a pure function of stable trigger identifiers: no clock,
no randomness. The marker string is what makes retries safe across process
restarts, since the publisher scans git history and PR bodies for it.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from patchbay.identity import PRODUCT

KEY_PREFIX = f"{PRODUCT}-write-output"
KEY_VERSION = "v1"
KEY_DELIMITER = ":"

MARKER_LABEL = f"{PRODUCT}-write-output-key"
DELIVERY_LABEL = f"{PRODUCT}-delivery-id"

HASH_LENGTH = 12
SUMMARY_MAX_CHARS = 72


def _norm(value: object) -> str:
    return str(value).strip().lower()


def build_write_output_key(
    installation_id: int | str,
    owner: str,
    repo: str,
    thread_id: int | str,
    trigger_id: int | str,
    keyword: str,
) -> str:
    return KEY_DELIMITER.join([
        KEY_PREFIX,
        KEY_VERSION,
        f"inst-{installation_id}",
        f"{_norm(owner)}/{_norm(repo)}",
        f"thread-{thread_id}",
        f"trigger-{trigger_id}",
        f"keyword-{_norm(keyword)}",
    ])


def short_hash(value: str, length: int = HASH_LENGTH) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def build_write_output_marker(key: str) -> str:
    return f"{MARKER_LABEL}: {key}"


def build_delivery_line(delivery_id: str) -> str:
    return f"{DELIVERY_LABEL}: {delivery_id}"


@dataclass(frozen=True)
class WriteOutputKey:
    key: str
    hash: str
    marker: str


def derive_idempotency_key(
    installation_id: int | str,
    owner: str,
    repo: str,
    thread_id: int | str,
    trigger_id: int | str,
    keyword: str,
) -> WriteOutputKey:
    key = build_write_output_key(installation_id, owner, repo, thread_id, trigger_id, keyword)
    return WriteOutputKey(key=key, hash=short_hash(key), marker=build_write_output_marker(key))


# ---------------------------------------------------------------------------
# Branch names
# ---------------------------------------------------------------------------

def build_github_branch_name(
    key_hash: str,
    trigger_id: int | str,
    pr_number: int | None = None,
    issue_number: int | None = None,
) -> str:
    if pr_number is not None:
        scope = f"pr-{pr_number}"
    elif issue_number is not None:
        scope = f"issue-{issue_number}"
    else:
        scope = "repo"
    return f"{PRODUCT}/write/{scope}-comment-{trigger_id}-{key_hash}"


def build_slack_branch_name(
    keyword: str,
    owner: str,
    repo: str,
    channel: str,
    thread_ts: str,
    message_ts: str,
    request: str,
) -> str:
    digest = short_hash(f"{owner}/{repo}:{channel}:{thread_ts}:{message_ts}:{request}")
    return f"{PRODUCT}/slack/{_norm(keyword)}-{digest}"


# ---------------------------------------------------------------------------
# Human-facing text derived from the request
# ---------------------------------------------------------------------------

def summarize_request(request: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """Single-line summary used for commit subjects, PR titles and replies."""
    single = " ".join(request.split())
    if not single:
        return "requested update"
    if len(single) <= max_chars:
        return single
    return single[: max_chars - 3].rstrip() + "..."


def build_commit_message(request: str, marker: str, delivery_id: str | None = None) -> str:
    lines = [f"chore(write): {summarize_request(request)}", "", marker]
    if delivery_id:
        lines.append(build_delivery_line(delivery_id))
    return "\n".join(lines)


def build_pr_title(request: str) -> str:
    return f"chore(write): {summarize_request(request)}"


def build_pr_body(request: str, marker: str, delivery_id: str | None = None) -> str:
    lines = [
        "Automated write run requested via chat.",
        "",
        "**Request**",
        "",
        f"> {' '.join(request.split()) or 'requested update'}",
        "",
        "<!--",
        marker,
    ]
    if delivery_id:
        lines.append(build_delivery_line(delivery_id))
    lines.append("-->")
    return "\n".join(lines)
