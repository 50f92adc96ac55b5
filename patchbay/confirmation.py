"""
ConfirmationGate: pending high-impact writes waiting for an exact `confirm:` reply.

Entries live in process memory only, keyed by (channel, thread). For Slack the
channel is the Slack channel id and the thread is the thread timestamp; for
GitHub the channel is `github:<installation>:<owner>/<repo>` and the thread is
the issue or PR number.
"""

from __future__ import annotations

import time
from typing import Callable, Literal, Optional

from loguru import logger
from pydantic import BaseModel

from patchbay.intent import build_write_command

CONFIRM_PREFIX = "confirm:"


class PendingConfirmation(BaseModel):
    channel: str
    thread: str
    owner: str
    repo: str
    keyword: str
    request: str
    prompt: str
    command: str
    trigger_id: str = ""
    created_at: float
    expires_at: float


class ConfirmResult(BaseModel):
    outcome: Literal["confirmed", "mismatch", "not_found"]
    pending: Optional[PendingConfirmation] = None


def extract_confirm_command(text: str) -> str | None:
    """Return the command after a leading `confirm:` (case-insensitive), else None."""
    trimmed = text.strip()
    if trimmed.lower().startswith(CONFIRM_PREFIX):
        return trimmed[len(CONFIRM_PREFIX):].strip()
    return None


class ConfirmationGate:
    """
    TTL-bounded store of pending confirmations.

    Lookups never return an expired entry. A confirmed entry is removed
    and handed back exactly once; a mismatching command leaves it in place.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._pending: dict[tuple[str, str], PendingConfirmation] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def open_pending(
        self,
        channel: str,
        thread: str,
        owner: str,
        repo: str,
        keyword: str,
        request: str,
        prompt: str,
        timeout_seconds: float,
        trigger_id: str = "",
    ) -> PendingConfirmation:
        now = self._clock()
        pending = PendingConfirmation(
            channel=channel,
            thread=thread,
            owner=owner,
            repo=repo,
            keyword=keyword,
            request=request,
            prompt=prompt,
            command=build_write_command(keyword, request),
            trigger_id=trigger_id,
            created_at=now,
            expires_at=now + timeout_seconds,
        )
        if (channel, thread) in self._pending:
            logger.debug(f"[CONFIRM] Replacing pending confirmation for {channel}/{thread}")
        self._pending[(channel, thread)] = pending
        logger.info(f"[CONFIRM] Pending confirmation opened for {owner}/{repo} ({channel}/{thread})")
        return pending

    def get_pending(self, channel: str, thread: str) -> PendingConfirmation | None:
        key = (channel, thread)
        pending = self._pending.get(key)
        if pending is None:
            return None
        if self._clock() >= pending.expires_at:
            del self._pending[key]
            logger.info(f"[CONFIRM] Pending confirmation expired for {channel}/{thread}")
            return None
        return pending

    def confirm(self, channel: str, thread: str, submitted_command: str) -> ConfirmResult:
        pending = self.get_pending(channel, thread)
        if pending is None:
            return ConfirmResult(outcome="not_found")
        if submitted_command != pending.command:
            logger.info(f"[CONFIRM] Command mismatch for {channel}/{thread}; keeping entry")
            return ConfirmResult(outcome="mismatch", pending=pending)
        del self._pending[(channel, thread)]
        logger.info(f"[CONFIRM] Confirmed {pending.command!r} for {pending.owner}/{pending.repo}")
        return ConfirmResult(outcome="confirmed", pending=pending)

    def prune_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, p in self._pending.items() if now >= p.expires_at]
        for key in expired:
            del self._pending[key]
        if expired:
            logger.debug(f"[CONFIRM] Pruned {len(expired)} expired confirmation(s)")
        return len(expired)
