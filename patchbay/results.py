"""Tagged result types for a write run. Discriminated by `outcome`."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

RefusalKind = Literal[
    "write-disabled",
    "write-policy-denied-path",
    "write-policy-not-allowed",
    "write-policy-secret-detected",
    "write-policy-no-changes",
    "unsupported-repo",
    "permission",
]

FailureKind = Literal["execution-failure", "push-conflict", "unexpected"]


class CommentMirror(BaseModel):
    """A GitHub comment the executor posted during the run, echoed back to chat."""
    url: str
    excerpt: str = ""


class WriteSuccess(BaseModel):
    outcome: Literal["success"] = "success"
    pr_url: str
    branch_name: str
    head_sha: str
    strategy: Literal["pr_head", "bot_branch"] = "bot_branch"
    mirrors: list[CommentMirror] = Field(default_factory=list)


class WriteRefusal(BaseModel):
    outcome: Literal["refusal"] = "refusal"
    kind: RefusalKind
    reason: str
    retry_command: str
    details: dict[str, Any] = Field(default_factory=dict)


class WriteFailure(BaseModel):
    outcome: Literal["failure"] = "failure"
    kind: FailureKind = "unexpected"
    reason: str
    retry_command: str


class WriteDuplicate(BaseModel):
    outcome: Literal["duplicate"] = "duplicate"
    status: Literal["already_applied", "in_progress"]
    pr_url: Optional[str] = None
    branch_name: Optional[str] = None


class WritePlan(BaseModel):
    """A `plan:` run: the executor ran with writes disabled and nothing was published."""
    outcome: Literal["plan"] = "plan"
    summary: str = ""


WriteResult = Annotated[
    Union[WriteSuccess, WriteRefusal, WriteFailure, WriteDuplicate, WritePlan],
    Field(discriminator="outcome"),
]
