"""
GitHub collaborator backed by the `gh` CLI.

Covers what the write pipeline needs from GitHub: opening and finding pull
requests, reading a PR's head, posting issue comments, and checking that a
repository is reachable with the current credentials.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import subprocess
from typing import Optional

from loguru import logger
from pydantic import BaseModel

from patchbay.publisher import PullRequestRef
from patchbay.trigger import WriteTrigger
from patchbay.workspace import redact_secrets

GH_TIMEOUT_SECONDS = 60

_HTTP_STATUS_PATTERN = re.compile(r"HTTP (\d{3})")
_PR_NUMBER_PATTERN = re.compile(r"/pull/(\d+)")
_NOT_FOUND_SIGNALS = ("could not resolve to a repository", "http 404", "not found")


class GitHubCliError(Exception):
    """A `gh` call failed. `status` is the HTTP status when gh reported one."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class PullRequestInfo(BaseModel):
    url: str
    number: int
    head_ref: str
    base_ref: str
    head_repo: Optional[str] = None  # "owner/name"
    is_cross_repository: bool = False


class InstallationContext(BaseModel):
    installation_id: int
    default_branch: str


def _parse_status(text: str) -> int | None:
    match = _HTTP_STATUS_PATTERN.search(text)
    return int(match.group(1)) if match else None


class GhCliClient:
    def __init__(self, token: str | None = None, installation_id: int = 0):
        self.token = token
        self.installation_id = installation_id

    def token_for(self, installation_id: int) -> str:
        token = self.token or os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN")
        if not token:
            raise GitHubCliError("No GitHub token available (set GITHUB_TOKEN)", status=401)
        return token

    # -- pull requests -----------------------------------------------------

    async def create_pull_request(
        self, owner: str, repo: str, title: str, head: str, base: str, body: str,
    ) -> PullRequestRef:
        out = await self._agh(
            "pr", "create",
            "--repo", f"{owner}/{repo}",
            "--title", title,
            "--body", body,
            "--head", head,
            "--base", base,
        )
        url = out.strip().splitlines()[-1] if out.strip() else ""
        match = _PR_NUMBER_PATTERN.search(url)
        logger.info(f"[GITHUB] Created PR {url}")
        return PullRequestRef(url=url, number=int(match.group(1)) if match else 0, head_ref=head, body=body)

    async def list_pull_requests_by_head(self, owner: str, repo: str, head: str) -> list[PullRequestRef]:
        out = await self._agh(
            "pr", "list",
            "--repo", f"{owner}/{repo}",
            "--head", head,
            "--state", "all",
            "--json", "url,number,body,headRefName",
        )
        items = json.loads(out or "[]")
        return [
            PullRequestRef(
                url=item["url"],
                number=item.get("number", 0),
                head_ref=item.get("headRefName", ""),
                body=item.get("body") or "",
            )
            for item in items
            if item.get("headRefName", head) == head
        ]

    async def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequestInfo:
        out = await self._agh(
            "pr", "view", str(number),
            "--repo", f"{owner}/{repo}",
            "--json", "url,number,headRefName,baseRefName,headRepository,headRepositoryOwner,isCrossRepository",
        )
        data = json.loads(out)
        head_owner = (data.get("headRepositoryOwner") or {}).get("login")
        head_name = (data.get("headRepository") or {}).get("name")
        return PullRequestInfo(
            url=data["url"],
            number=data["number"],
            head_ref=data["headRefName"],
            base_ref=data["baseRefName"],
            head_repo=f"{head_owner}/{head_name}" if head_owner and head_name else None,
            is_cross_repository=bool(data.get("isCrossRepository")),
        )

    # -- comments ----------------------------------------------------------

    async def post_comment(self, owner: str, repo: str, number: int, body: str) -> str:
        out = await self._agh("issue", "comment", str(number), "--repo", f"{owner}/{repo}", "--body", body)
        url = out.strip()
        logger.info(f"[GITHUB] Commented on {owner}/{repo}#{number}")
        return url

    def post_comment_sync(self, owner: str, repo: str, number: int, body: str) -> str:
        return self._gh("issue", "comment", str(number), "--repo", f"{owner}/{repo}", "--body", body).strip()

    # -- repository access -------------------------------------------------

    async def resolve_installation(self, owner: str, repo: str) -> InstallationContext | None:
        """None when the repository cannot be reached with these credentials."""
        try:
            out = await self._agh("repo", "view", f"{owner}/{repo}", "--json", "defaultBranchRef")
        except GitHubCliError as e:
            if e.status in (403, 404) or any(s in str(e).lower() for s in _NOT_FOUND_SIGNALS):
                logger.warning(f"[GITHUB] {owner}/{repo} is not accessible: {e}")
                return None
            raise
        data = json.loads(out)
        branch = (data.get("defaultBranchRef") or {}).get("name") or "main"
        return InstallationContext(installation_id=self.installation_id, default_branch=branch)

    # -- plumbing ----------------------------------------------------------

    async def _agh(self, *args: str) -> str:
        return await asyncio.to_thread(self._gh, *args)

    def _gh(self, *args: str) -> str:
        env = dict(os.environ)
        if self.token:
            env["GH_TOKEN"] = self.token
        try:
            result = subprocess.run(
                ["gh", *args], capture_output=True, text=True, env=env, timeout=GH_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as e:
            raise GitHubCliError("gh CLI not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise GitHubCliError(f"gh {args[0]} {args[1] if len(args) > 1 else ''} timed out") from e

        if result.returncode != 0:
            stderr = redact_secrets(result.stderr.strip() or result.stdout.strip(), self.token)
            raise GitHubCliError(f"gh {' '.join(args[:2])} failed: {stderr}", status=_parse_status(stderr))
        return result.stdout


class GitHubReplier:
    """Replies to a GitHub trigger with an issue comment on the same issue or PR."""

    def __init__(self, client: GhCliClient):
        self.client = client

    async def reply(self, trigger: WriteTrigger, text: str) -> None:
        await self.client.post_comment(trigger.owner, trigger.repo, int(trigger.thread_id), text)
