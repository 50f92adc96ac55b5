"""
VersionControlPublisher: staged workspace in, pushed branch and PR out.

Strategy order for one publish attempt:

  1. Nothing changed          -> write-policy-no-changes, no commit.
  2. Same-repo PR follow-up   -> scan the PR head for our marker, else commit
                                 on top of it and push straight to the head.
                                 A rejected push re-checks the marker and then
                                 falls through to (3) with the commit in hand.
  3. Bot branch               -> deterministic branch from the key hash,
                                 commit, push, open a PR. An existing branch
                                 or PR for the same name is reported, not
                                 treated as an error.

Git operations run strictly one after another; the marker embedded in every
commit and PR body is the durable duplicate check across restarts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

from loguru import logger
from pydantic import BaseModel

from patchbay.idempotency import WriteOutputKey, build_commit_message, build_pr_body, build_pr_title
from patchbay.policy import (
    PolicyRefusal,
    WritePolicyConfig,
    WritePolicyEnforcer,
    build_policy_refusal_message,
)
from patchbay.results import WriteDuplicate, WriteFailure, WriteRefusal, WriteSuccess
from patchbay.workspace import BranchExistsError, PushRejectedError, VersionControlSystem, redact_secrets

PERMISSION_SIGNALS = (
    "resource not accessible by integration",
    "write access to repository not granted",
    "permission denied",
    "insufficient permission",
    "forbidden",
    "not permitted",
    "requires write",
)
# git over HTTPS: "remote: Permission to acme/widgets.git denied to patchbay[bot]."
_GIT_PERMISSION_PATTERN = re.compile(r"permission to \S+ denied")


class PullRequestRef(BaseModel):
    url: str
    number: int = 0
    head_ref: str = ""
    body: str = ""


class PullRequestClient(Protocol):
    async def create_pull_request(
        self, owner: str, repo: str, title: str, head: str, base: str, body: str,
    ) -> PullRequestRef: ...

    async def list_pull_requests_by_head(self, owner: str, repo: str, head: str) -> list[PullRequestRef]: ...


@dataclass
class PublishRequest:
    owner: str
    repo: str
    keyword: str
    request: str
    retry_command: str
    key: WriteOutputKey
    bot_branch: str
    base_branch: str
    policy: WritePolicyConfig = field(default_factory=WritePolicyConfig)
    pr_head_ref: Optional[str] = None
    pr_url: Optional[str] = None
    delivery_id: Optional[str] = None


def is_permission_error(err: BaseException) -> bool:
    status = getattr(err, "status", None)
    if status in (401, 403):
        return True
    signal = str(err).lower()
    return any(s in signal for s in PERMISSION_SIGNALS) or bool(_GIT_PERMISSION_PATTERN.search(signal))


def _is_already_exists(err: BaseException) -> bool:
    return "already exists" in str(err).lower()


PublishOutcome = WriteSuccess | WriteRefusal | WriteFailure | WriteDuplicate


class VersionControlPublisher:
    def __init__(self, pull_requests: PullRequestClient, marker_scan_depth: int = 50):
        self.pull_requests = pull_requests
        self.marker_scan_depth = marker_scan_depth

    # -----------------------------------------------------------------------
    # Pre-execution duplicate check
    # -----------------------------------------------------------------------

    async def find_existing(self, vcs: VersionControlSystem, req: PublishRequest) -> WriteDuplicate | None:
        """Look for evidence that this key was already published, before the executor runs."""
        if req.pr_head_ref and await vcs.fetch_branch(req.pr_head_ref):
            if await self._marker_in_history(vcs, f"origin/{req.pr_head_ref}", req.key.marker):
                logger.info(f"[PUBLISH] Marker already on PR head {req.pr_head_ref}")
                return WriteDuplicate(status="already_applied", pr_url=req.pr_url, branch_name=req.pr_head_ref)

        existing = await self._find_pr_by_head(req, req.bot_branch)
        if existing is not None:
            logger.info(f"[PUBLISH] PR already open for {req.bot_branch}: {existing.url}")
            return WriteDuplicate(status="already_applied", pr_url=existing.url, branch_name=req.bot_branch)
        return None

    # -----------------------------------------------------------------------
    # Publish
    # -----------------------------------------------------------------------

    async def publish(self, vcs: VersionControlSystem, req: PublishRequest) -> PublishOutcome:
        try:
            return await self._publish(vcs, req)
        except Exception as e:
            reason = redact_secrets(str(e))
            if is_permission_error(e):
                logger.warning(f"[PUBLISH] Permission failure for {req.owner}/{req.repo}: {reason}")
                return WriteRefusal(kind="permission", reason=reason, retry_command=req.retry_command)
            logger.error(f"[PUBLISH] Publish failed for {req.owner}/{req.repo}: {reason}")
            return WriteFailure(kind="unexpected", reason=reason, retry_command=req.retry_command)

    async def _publish(self, vcs: VersionControlSystem, req: PublishRequest) -> PublishOutcome:
        if not await vcs.has_changes():
            logger.info("[PUBLISH] Working tree clean; nothing to publish")
            return self._policy_refusal(
                PolicyRefusal(
                    kind="write-policy-no-changes",
                    rule="changes",
                    message="No file changes were produced",
                ),
                req,
            )

        committed_sha = None
        if req.pr_head_ref:
            outcome, committed_sha = await self._publish_to_pr_head(vcs, req)
            if outcome is not None:
                return outcome
            logger.warning(f"[PUBLISH] Falling back to bot branch {req.bot_branch}")

        return await self._publish_to_bot_branch(vcs, req, committed_sha)

    async def _publish_to_pr_head(
        self, vcs: VersionControlSystem, req: PublishRequest,
    ) -> tuple[PublishOutcome | None, str | None]:
        head = req.pr_head_ref
        remote_ref = f"origin/{head}"

        if await vcs.fetch_branch(head) and await self._marker_in_history(vcs, remote_ref, req.key.marker):
            return WriteDuplicate(status="already_applied", pr_url=req.pr_url, branch_name=head), None

        refusal = await self._stage_and_check(vcs, req)
        if refusal is not None:
            return refusal, None

        sha = await vcs.commit(build_commit_message(req.request, req.key.marker, req.delivery_id))
        try:
            await vcs.push(head)
        except PushRejectedError as e:
            logger.warning(f"[PUBLISH] Push to PR head {head} rejected: {e.stderr.strip()}")
            if await vcs.fetch_branch(head) and await self._marker_in_history(vcs, remote_ref, req.key.marker):
                return WriteDuplicate(status="already_applied", pr_url=req.pr_url, branch_name=head), None
            return None, sha

        logger.info(f"[PUBLISH] Pushed {sha[:8]} to PR head {head}")
        return WriteSuccess(
            pr_url=req.pr_url or "",
            branch_name=head,
            head_sha=sha,
            strategy="pr_head",
        ), sha

    async def _publish_to_bot_branch(
        self, vcs: VersionControlSystem, req: PublishRequest, committed_sha: str | None,
    ) -> PublishOutcome:
        branch = req.bot_branch

        if await vcs.remote_branch_exists(branch):
            return await self._resolve_existing_branch(vcs, req)

        try:
            await vcs.checkout_new_branch(branch)
        except BranchExistsError:
            return await self._resolve_existing_branch(vcs, req)

        sha = committed_sha
        if sha is None:
            refusal = await self._stage_and_check(vcs, req)
            if refusal is not None:
                return refusal
            sha = await vcs.commit(build_commit_message(req.request, req.key.marker, req.delivery_id))

        try:
            await vcs.push(branch)
        except PushRejectedError as e:
            logger.warning(f"[PUBLISH] Push to {branch} rejected: {e.stderr.strip()}")
            existing = await self._find_pr_by_head(req, branch)
            if existing is not None:
                return WriteDuplicate(status="already_applied", pr_url=existing.url, branch_name=branch)
            return WriteFailure(
                kind="push-conflict",
                reason=f"Push to {branch} was rejected: {e.stderr.strip()}",
                retry_command=req.retry_command,
            )

        pr = await self._open_pr(req, branch)
        logger.info(f"[PUBLISH] Opened {pr.url} from {branch}")
        return WriteSuccess(pr_url=pr.url, branch_name=branch, head_sha=sha, strategy="bot_branch")

    async def _resolve_existing_branch(self, vcs: VersionControlSystem, req: PublishRequest) -> PublishOutcome:
        branch = req.bot_branch
        existing = await self._find_pr_by_head(req, branch)
        if existing is not None:
            logger.info(f"[PUBLISH] Branch {branch} already has PR {existing.url}")
            return WriteDuplicate(status="already_applied", pr_url=existing.url, branch_name=branch)

        # Pushed by an earlier run that died before opening the PR.
        if await vcs.fetch_branch(branch) and await self._marker_in_history(vcs, f"origin/{branch}", req.key.marker):
            pr = await self._open_pr(req, branch)
            logger.info(f"[PUBLISH] Opened {pr.url} for previously pushed {branch}")
            return WriteDuplicate(status="already_applied", pr_url=pr.url, branch_name=branch)

        return WriteFailure(
            kind="push-conflict",
            reason=f"Branch {branch} already exists without this request's marker",
            retry_command=req.retry_command,
        )

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    async def _stage_and_check(self, vcs: VersionControlSystem, req: PublishRequest) -> WriteRefusal | None:
        paths = await vcs.stage_all()
        diff = await vcs.staged_diff()
        result = WritePolicyEnforcer(req.policy).check(paths, diff)
        if isinstance(result, PolicyRefusal):
            return self._policy_refusal(result, req)
        return None

    def _policy_refusal(self, refusal: PolicyRefusal, req: PublishRequest) -> WriteRefusal:
        return WriteRefusal(
            kind=refusal.kind,
            reason=build_policy_refusal_message(refusal, req.policy.allow_paths),
            retry_command=req.retry_command,
            details=refusal.model_dump(exclude={"ok"}),
        )

    async def _open_pr(self, req: PublishRequest, branch: str) -> PullRequestRef:
        try:
            return await self.pull_requests.create_pull_request(
                req.owner,
                req.repo,
                title=build_pr_title(req.request),
                head=branch,
                base=req.pr_head_ref or req.base_branch,
                body=build_pr_body(req.request, req.key.marker, req.delivery_id),
            )
        except Exception as e:
            if not _is_already_exists(e):
                raise
            existing = await self._find_pr_by_head(req, branch)
            if existing is None:
                raise
            return existing

    async def _find_pr_by_head(self, req: PublishRequest, branch: str) -> PullRequestRef | None:
        prs = await self.pull_requests.list_pull_requests_by_head(req.owner, req.repo, branch)
        return prs[0] if prs else None

    async def _marker_in_history(self, vcs: VersionControlSystem, ref: str, marker: str) -> bool:
        messages = await vcs.recent_commit_messages(ref, self.marker_scan_depth)
        return any(marker in m for m in messages)
