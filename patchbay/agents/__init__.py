"""
PATCHBAY Agents

An agent turns one write request into model calls through the Router and
reports back a plain dict. Agents hold no state between runs; whatever they
change lives in the workspace checkout.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from patchbay.router import Router


class AgentContext(BaseModel):
    """Everything an agent needs to know about the run it serves."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    objective: str
    trigger_body: str = ""
    working_dir: str
    owner: str = ""
    repo: str = ""
    write_mode: bool = True
    max_steps: int = 15
    # Set by the caller when the run must stop; checked before every model and tool call.
    stop_event: Optional[threading.Event] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def stopped(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()


class BaseAgent(ABC):
    role: str = "implementer"
    plan_role: str = "planner"

    def __init__(self, router: Router):
        self.router = router

    def role_for(self, context: AgentContext) -> str:
        return self.role if context.write_mode else self.plan_role

    @abstractmethod
    def system_prompt_for(self, context: AgentContext) -> str:
        ...

    @abstractmethod
    def run(self, context: AgentContext, **kwargs) -> dict[str, Any]:
        ...

    def opening_messages(self, context: AgentContext, user_content: str) -> list[dict[str, Any]]:
        return [
            {"role": "system", "content": self.system_prompt_for(context)},
            self._user_msg(user_content),
        ]

    @staticmethod
    def _user_msg(content: str) -> dict[str, str]:
        return {"role": "user", "content": content}
