"""The inbound event a write run starts from, for either front-end."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel

Surface = Literal["github_mention", "slack_message"]


class WriteTrigger(BaseModel):
    """
    One @mention comment or Slack message.

    `thread_id` is the issue/PR number on GitHub and the thread timestamp on
    Slack; `trigger_id` is the comment id or message timestamp.
    """
    surface: Surface
    installation_id: int = 0
    owner: str
    repo: str
    thread_id: str
    trigger_id: str
    text: str
    channel: str = ""
    pr_number: Optional[int] = None
    pr_head_ref: Optional[str] = None
    pr_head_repo: Optional[str] = None
    pr_base_ref: Optional[str] = None
    pr_url: Optional[str] = None
    delivery_id: Optional[str] = None

    @property
    def confirmation_channel(self) -> str:
        if self.surface == "slack_message":
            return self.channel
        return f"github:{self.installation_id}:{self.owner.lower()}/{self.repo.lower()}"

    @property
    def same_repo_pr_head(self) -> Optional[str]:
        """The PR head branch when it lives in the repository the trigger came from."""
        if self.pr_number is None or not self.pr_head_ref:
            return None
        if self.pr_head_repo and self.pr_head_repo.lower() != f"{self.owner}/{self.repo}".lower():
            return None
        return self.pr_head_ref
