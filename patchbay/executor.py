"""
Executor: the step that actually edits files in a workspace.

The pipeline only depends on the `Executor` protocol. `AgentExecutor` is the
default: it runs the implementer agent in a worker thread under a timeout.
Every failure mode is reported as an `ExecutionResult`, never raised, so the
caller always has something to reply with.

A timed-out run is stopped, not abandoned: the agent's stop event is set and
the executor waits a short grace period for the worker to leave its current
step, so nothing touches the workspace after the caller has moved on.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from pathlib import Path
from typing import Callable, Literal, Optional, Protocol

from loguru import logger
from pydantic import BaseModel, Field

from patchbay.agents import AgentContext
from patchbay.agents.implementer import ImplementerAgent
from patchbay.config_loader import PatchbayConfig
from patchbay.router import Router


class ExecutionRequest(BaseModel):
    workspace_dir: Path
    prompt: str
    trigger_body: str = ""
    owner: str = ""
    repo: str = ""
    installation_id: int = 0
    write_mode: bool = True
    issue_number: Optional[int] = None


class PublishEvent(BaseModel):
    type: Literal["comment"] = "comment"
    url: str
    excerpt: str = ""


class ExecutionResult(BaseModel):
    conclusion: Literal["success", "failure", "error"]
    error_message: Optional[str] = None
    is_timeout: bool = False
    summary: str = ""
    publish_events: list[PublishEvent] = Field(default_factory=list)


class Executor(Protocol):
    async def execute(self, request: ExecutionRequest) -> ExecutionResult: ...


CommentPosterFactory = Callable[[ExecutionRequest], Optional[Callable[[str], str]]]


def _drain(task: asyncio.Future) -> None:
    # Retrieve a late worker failure so asyncio does not warn about it.
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"[EXECUTOR] Stopped agent ended with: {task.exception()}")


class AgentExecutor:
    """Runs the LiteLLM-backed implementer against the workspace."""

    stop_grace_seconds: float = 10.0

    def __init__(
        self,
        config: PatchbayConfig,
        comment_poster_factory: CommentPosterFactory | None = None,
    ):
        self.config = config
        self.comment_poster_factory = comment_poster_factory

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        timeout = self.config.limits.execution_timeout_seconds
        mode = "write" if request.write_mode else "plan"
        logger.info(f"[EXECUTOR] Starting {mode} run for {request.owner}/{request.repo} (timeout {timeout:.0f}s)")

        stop = threading.Event()
        worker = asyncio.ensure_future(asyncio.to_thread(self._run_agent, request, stop))
        try:
            output = await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[EXECUTOR] Timed out after {timeout:.0f}s; stopping the agent")
            stop.set()
            await self._wait_for_stop(worker)
            return ExecutionResult(
                conclusion="error",
                is_timeout=True,
                error_message=f"execution timed out after {timeout:.0f}s",
            )
        except Exception as e:
            logger.exception(f"[EXECUTOR] Agent crashed: {e}")
            return ExecutionResult(conclusion="error", error_message=str(e))

        events = [PublishEvent(url=c["url"], excerpt=c.get("excerpt", "")) for c in output.get("comments", [])]
        if not output.get("completed"):
            return ExecutionResult(
                conclusion="failure",
                error_message=output.get("summary") or "executor did not finish",
                summary=output.get("summary", ""),
                publish_events=events,
            )

        logger.info(f"[EXECUTOR] Done; {len(output.get('files_written', []))} file(s) written")
        return ExecutionResult(conclusion="success", summary=output.get("summary", ""), publish_events=events)

    async def _wait_for_stop(self, worker: asyncio.Future) -> None:
        worker.add_done_callback(_drain)
        done, _ = await asyncio.wait({worker}, timeout=self.stop_grace_seconds)
        if not done:
            logger.warning(
                f"[EXECUTOR] Agent still inside a model call after {self.stop_grace_seconds:.0f}s; "
                "it will not run another tool"
            )

    def _run_agent(self, request: ExecutionRequest, stop: threading.Event | None = None) -> dict:
        extra = {}
        if self.comment_poster_factory is not None:
            poster = self.comment_poster_factory(request)
            if poster is not None:
                extra["comment_poster"] = poster

        context = AgentContext(
            run_id=uuid.uuid4().hex[:12],
            objective=request.prompt,
            trigger_body=request.trigger_body,
            working_dir=str(request.workspace_dir),
            owner=request.owner,
            repo=request.repo,
            write_mode=request.write_mode,
            max_steps=self.config.limits.max_agent_steps,
            stop_event=stop,
            extra=extra,
        )
        agent = ImplementerAgent(Router(self.config))
        return agent.run(context)
