"""
User-visible reply text.

These strings are part of the product surface: users copy the commands out
of them and tests assert on them literally. Keep wording stable.
"""

from __future__ import annotations

from typing import Sequence

from patchbay.confirmation import CONFIRM_PREFIX, PendingConfirmation
from patchbay.config_loader import REPO_CONFIG_RELPATH
from patchbay.idempotency import summarize_request
from patchbay.intent import build_quick_action_text
from patchbay.results import CommentMirror, WriteDuplicate, WriteFailure, WritePlan, WriteRefusal, WriteSuccess

REQUIRED_PERMISSIONS = (
    "Contents: Read and write",
    "Pull requests: Read and write",
    "Issues: Read and write",
)


# ---------------------------------------------------------------------------
# Pre-execution replies
# ---------------------------------------------------------------------------

def build_clarification_text(request: str) -> str:
    return build_quick_action_text(request)


def build_confirmation_text(command: str, timeout_minutes: int) -> str:
    return "\n".join([
        "This looks like a high-impact write request, so I did not execute it yet.",
        f"Reply in this thread with the command below prefixed by `{CONFIRM_PREFIX}` to proceed:",
        f"- {command}",
        f"Confirmation timeout: {timeout_minutes} minutes",
    ])


def build_pending_reminder_text(pending: PendingConfirmation, timeout_minutes: int) -> str:
    """Repeated verbatim for every non-matching message while a confirmation is open."""
    return build_confirmation_text(pending.command, timeout_minutes)


def build_no_pending_text() -> str:
    return "There is no pending write request to confirm in this thread (it may have expired)."


def build_in_progress_text(retry_command: str) -> str:
    return "\n".join([
        "This write request is already in progress; I will not start it twice.",
        f"Retry command (if it fails): {retry_command}",
    ])


# ---------------------------------------------------------------------------
# Refusals and failures
# ---------------------------------------------------------------------------

def build_permission_refusal_text(retry_command: str) -> str:
    return "\n".join([
        "Write request refused due to missing GitHub App permissions.",
        "Minimum required permissions:",
        *[f"- {perm}" for perm in REQUIRED_PERMISSIONS],
        "",
        f"Retry command: {retry_command}",
    ])


def build_write_disabled_text(retry_command: str) -> str:
    return "\n".join([
        "Write mode is disabled for this repository.",
        f"Update `{REPO_CONFIG_RELPATH.as_posix()}`:",
        "```yml",
        "write:",
        "  enabled: true",
        "```",
        "",
        f"Retry command: {retry_command}",
    ])


def build_unsupported_repo_text(owner: str, repo: str, retry_command: str) -> str:
    return "\n".join([
        f"Repository {owner}/{repo} is not accessible to this GitHub App installation.",
        "Install the app on that repository (or choose a repo the app can access).",
        f"Retry command: {retry_command}",
    ])


def build_failure_text(reason: str, retry_command: str) -> str:
    return "\n".join([
        "Write request failed before PR publication completed.",
        f"Reason: {reason}",
        f"Retry command: {retry_command}",
    ])


def build_policy_refusal_text(policy_message: str, retry_command: str) -> str:
    return f"{policy_message}\n\nRetry command: {retry_command}"


# ---------------------------------------------------------------------------
# Success and duplicates
# ---------------------------------------------------------------------------

def build_mirror_lines(mirrors: Sequence[CommentMirror]) -> list[str]:
    if not mirrors:
        return []
    return ["", "Mirrored GitHub comments:", *[f"- {m.url}\n  {m.excerpt}" for m in mirrors]]


def build_success_text(request: str, owner: str, repo: str, result: WriteSuccess) -> str:
    return "\n".join([
        "Write run complete.",
        f"- Changed: {summarize_request(request)}",
        f"- Where: {owner}/{repo}",
        f"PR: {result.pr_url}",
        *build_mirror_lines(result.mirrors),
    ])


def build_duplicate_text(result: WriteDuplicate, retry_command: str) -> str:
    if result.status == "in_progress":
        return build_in_progress_text(retry_command)
    lines = ["This write request was already applied; nothing new was pushed."]
    if result.pr_url:
        lines.append(f"PR: {result.pr_url}")
    elif result.branch_name:
        lines.append(f"Branch: {result.branch_name}")
    return "\n".join(lines)


def build_plan_text(owner: str, repo: str, summary: str) -> str:
    return "\n".join([
        f"Plan for {owner}/{repo} (no changes were made):",
        "",
        summary.strip() or "(the planner returned no summary)",
    ])


def render_result(
    result: WriteSuccess | WriteRefusal | WriteFailure | WriteDuplicate | WritePlan,
    owner: str,
    repo: str,
    request: str,
    retry_command: str,
) -> str:
    if isinstance(result, WriteSuccess):
        return build_success_text(request, owner, repo, result)
    if isinstance(result, WritePlan):
        return build_plan_text(owner, repo, result.summary)
    if isinstance(result, WriteDuplicate):
        return build_duplicate_text(result, retry_command)
    if isinstance(result, WriteFailure):
        return build_failure_text(result.reason, result.retry_command)

    if result.kind == "permission":
        return build_permission_refusal_text(result.retry_command)
    if result.kind == "write-disabled":
        return build_write_disabled_text(result.retry_command)
    if result.kind == "unsupported-repo":
        return build_unsupported_repo_text(owner, repo, result.retry_command)
    return build_policy_refusal_text(result.reason, result.retry_command)
