"""
PATCHBAY Controller

Deterministic coordinator for one inbound message, GitHub or Slack:

  message -> classify -> (clarify | confirm | run)
  run     -> resolve repo -> key -> in-flight lock -> installation queue
          -> clone -> repo config -> existing marker/PR? -> executor
          -> publisher -> reply -> cleanup -> release lock

Every path that takes the in-flight lock replies exactly once and releases
the lock, including timeouts and unexpected exceptions.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Optional, Protocol

from loguru import logger
from pydantic import BaseModel

from patchbay.concurrency import ConcurrencyGuard
from patchbay.config_loader import ConfigError, PatchbayConfig, load_config
from patchbay.confirmation import ConfirmationGate, extract_confirm_command
from patchbay.event_bus import EventBus
from patchbay.executor import ExecutionRequest, Executor
from patchbay.github import InstallationContext
from patchbay.idempotency import (
    WriteOutputKey,
    build_github_branch_name,
    build_slack_branch_name,
    derive_idempotency_key,
)
from patchbay.intent import (
    ClarificationIntent,
    ReadOnlyIntent,
    build_write_command,
    classify_write_intent,
    normalize_message,
)
from patchbay.policy import WritePolicyConfig
from patchbay.publisher import PublishRequest, VersionControlPublisher, is_permission_error
from patchbay.replies import (
    build_clarification_text,
    build_confirmation_text,
    build_no_pending_text,
    build_pending_reminder_text,
    render_result,
)
from patchbay.results import (
    CommentMirror,
    WriteDuplicate,
    WriteFailure,
    WritePlan,
    WriteRefusal,
    WriteSuccess,
)
from patchbay.trigger import Surface, WriteTrigger
from patchbay.workspace import redact_secrets

HandleOutcome = Literal[
    "ignored",
    "read_only",
    "clarification_required",
    "confirmation_required",
    "pending_reminder",
    "confirmation_not_found",
    "completed",
]

AnyWriteResult = WriteSuccess | WriteRefusal | WriteFailure | WriteDuplicate | WritePlan


class HandleResult(BaseModel):
    outcome: HandleOutcome
    reply_text: Optional[str] = None
    result: Optional[AnyWriteResult] = None


class Replier(Protocol):
    async def reply(self, trigger: WriteTrigger, text: str) -> None: ...


class WorkspaceFactory(Protocol):
    """Returns a clone exposing `path`, `cleanup()` and the VersionControlSystem operations."""

    async def create(
        self, installation_id: int, owner: str, repo: str, ref: str | None = None, depth: int | None = None,
    ) -> Any: ...


InstallationResolver = Callable[[str, str], Awaitable[Optional[InstallationContext]]]
ConfigLoader = Callable[[Optional[Path]], PatchbayConfig]


class WriteController:
    def __init__(
        self,
        config: PatchbayConfig,
        executor: Executor,
        publisher: VersionControlPublisher,
        workspaces: WorkspaceFactory,
        resolve_installation: InstallationResolver,
        repliers: dict[Surface, Replier],
        confirmations: ConfirmationGate | None = None,
        guard: ConcurrencyGuard | None = None,
        bus: EventBus | None = None,
        config_loader: ConfigLoader = load_config,
    ):
        self.config = config
        self.executor = executor
        self.publisher = publisher
        self.workspaces = workspaces
        self.resolve_installation = resolve_installation
        self.repliers = repliers
        self.confirmations = confirmations or ConfirmationGate()
        self.guard = guard or ConcurrencyGuard()
        self.bus = bus or EventBus()
        self.config_loader = config_loader

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    async def handle(self, trigger: WriteTrigger) -> HandleResult:
        self.confirmations.prune_expired()
        message = normalize_message(trigger.text, self.config.github.bot_handles)
        where = f"{trigger.owner}/{trigger.repo}#{trigger.thread_id}"

        if not message:
            logger.info(f"[CONTROLLER] Empty request after mention stripping on {where}; skipping")
            return HandleResult(outcome="ignored")

        channel = trigger.confirmation_channel
        thread = trigger.thread_id
        timeout_minutes = self.config.confirmation.timeout_minutes

        submitted = extract_confirm_command(message)
        if submitted is not None:
            confirmed = self.confirmations.confirm(channel, thread, submitted)
            if confirmed.outcome == "not_found":
                text = build_no_pending_text()
                await self._reply(trigger, text)
                return HandleResult(outcome="confirmation_not_found", reply_text=text)
            if confirmed.outcome == "mismatch":
                text = build_pending_reminder_text(confirmed.pending, timeout_minutes)
                await self._reply(trigger, text)
                return HandleResult(outcome="pending_reminder", reply_text=text)

            pending = confirmed.pending
            self._emit("confirmation_accepted", {"command": pending.command, "where": where})
            return await self._run_write(
                trigger, pending.keyword, pending.request, pending.trigger_id or trigger.trigger_id,
            )

        pending = self.confirmations.get_pending(channel, thread)
        if pending is not None:
            text = build_pending_reminder_text(pending, timeout_minutes)
            await self._reply(trigger, text)
            return HandleResult(outcome="pending_reminder", reply_text=text)

        intent = classify_write_intent(message)
        self._emit("intent_classified", {"outcome": intent.outcome, "where": where})

        if isinstance(intent, ReadOnlyIntent):
            logger.debug(f"[CONTROLLER] Read-only message on {where}; no write run")
            return HandleResult(outcome="read_only")

        if isinstance(intent, ClarificationIntent):
            text = build_clarification_text(intent.request)
            await self._reply(trigger, text)
            return HandleResult(outcome="clarification_required", reply_text=text)

        if intent.confirmation_required:
            pending = self.confirmations.open_pending(
                channel,
                thread,
                trigger.owner,
                trigger.repo,
                intent.keyword,
                intent.request,
                prompt=trigger.text,
                timeout_seconds=self.config.confirmation.timeout_seconds,
                trigger_id=trigger.trigger_id,
            )
            self._emit("confirmation_opened", {"command": pending.command, "where": where})
            text = build_confirmation_text(pending.command, timeout_minutes)
            await self._reply(trigger, text)
            return HandleResult(outcome="confirmation_required", reply_text=text)

        return await self._run_write(trigger, intent.keyword, intent.request, trigger.trigger_id)

    # -----------------------------------------------------------------------
    # Write run
    # -----------------------------------------------------------------------

    async def _run_write(self, trigger: WriteTrigger, keyword: str, request: str, trigger_id: str) -> HandleResult:
        retry_command = build_write_command(keyword, request)
        owner, repo = trigger.owner, trigger.repo

        try:
            installation = await self.resolve_installation(owner, repo)
        except Exception as e:
            logger.exception(f"[CONTROLLER] Could not resolve {owner}/{repo}")
            return await self._finish(trigger, request, retry_command, self._error_result(e, retry_command))

        if installation is None:
            result = WriteRefusal(
                kind="unsupported-repo",
                reason=f"{owner}/{repo} is not accessible to this installation",
                retry_command=retry_command,
            )
            return await self._finish(trigger, request, retry_command, result)

        installation_id = installation.installation_id or trigger.installation_id
        key = derive_idempotency_key(installation_id, owner, repo, trigger.thread_id, trigger_id, keyword)

        if not self.guard.try_acquire(key.key):
            result = WriteDuplicate(status="in_progress")
            return await self._finish(trigger, request, retry_command, result)

        try:
            result = await self.guard.run_exclusive(
                installation_id,
                key.key,
                lambda: self._execute_job(trigger, installation, keyword, request, trigger_id, key, retry_command),
            )
        except Exception as e:
            logger.exception(f"[CONTROLLER] Write run crashed for {key.key}")
            result = self._error_result(e, retry_command)

        return await self._finish(trigger, request, retry_command, result)

    async def _execute_job(
        self,
        trigger: WriteTrigger,
        installation: InstallationContext,
        keyword: str,
        request: str,
        trigger_id: str,
        key: WriteOutputKey,
        retry_command: str,
    ) -> AnyWriteResult:
        self._emit("write_started", {"key": key.key, "keyword": keyword})
        plan_only = keyword == "plan"
        head_ref = trigger.same_repo_pr_head
        ref = head_ref or installation.default_branch

        workspace = await self.workspaces.create(installation.installation_id, trigger.owner, trigger.repo, ref=ref)
        try:
            try:
                repo_config = self.config_loader(workspace.path)
            except ConfigError as e:
                return WriteFailure(kind="unexpected", reason=str(e), retry_command=retry_command)

            if not plan_only and not repo_config.write.enabled:
                logger.info(f"[CONTROLLER] Write mode disabled in {trigger.owner}/{trigger.repo}")
                return WriteRefusal(kind="write-disabled", reason="write.enabled is false", retry_command=retry_command)

            publish_req = PublishRequest(
                owner=trigger.owner,
                repo=trigger.repo,
                keyword=keyword,
                request=request,
                retry_command=retry_command,
                key=key,
                bot_branch=self._bot_branch(trigger, keyword, request, trigger_id, key),
                base_branch=installation.default_branch,
                policy=WritePolicyConfig.from_write_config(repo_config.write),
                pr_head_ref=head_ref,
                pr_url=trigger.pr_url,
                delivery_id=trigger.delivery_id,
            )

            if not plan_only:
                existing = await self.publisher.find_existing(workspace, publish_req)
                if existing is not None:
                    return existing

            execution = await self.executor.execute(ExecutionRequest(
                workspace_dir=workspace.path,
                prompt=request,
                trigger_body=trigger.text,
                owner=trigger.owner,
                repo=trigger.repo,
                installation_id=installation.installation_id,
                write_mode=not plan_only,
                issue_number=self._issue_number(trigger),
            ))
            if execution.conclusion != "success":
                reason = execution.error_message or f"execution-{execution.conclusion}"
                logger.warning(f"[CONTROLLER] Executor did not succeed: {reason}")
                return WriteFailure(kind="execution-failure", reason=redact_secrets(reason), retry_command=retry_command)

            if plan_only:
                return WritePlan(summary=execution.summary)

            result = await self.publisher.publish(workspace, publish_req)
            if isinstance(result, WriteSuccess):
                result.mirrors = [
                    CommentMirror(url=e.url, excerpt=e.excerpt)
                    for e in execution.publish_events
                    if e.type == "comment"
                ]
            return result
        finally:
            await workspace.cleanup()

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _bot_branch(
        self, trigger: WriteTrigger, keyword: str, request: str, trigger_id: str, key: WriteOutputKey,
    ) -> str:
        if trigger.surface == "slack_message":
            return build_slack_branch_name(
                keyword, trigger.owner, trigger.repo, trigger.channel, trigger.thread_id, trigger_id, request,
            )
        return build_github_branch_name(
            key.hash, trigger_id, pr_number=trigger.pr_number, issue_number=self._issue_number(trigger),
        )

    @staticmethod
    def _issue_number(trigger: WriteTrigger) -> int | None:
        if trigger.surface != "github_mention" or trigger.pr_number is not None:
            return None
        return int(trigger.thread_id) if trigger.thread_id.isdigit() else None

    @staticmethod
    def _error_result(err: BaseException, retry_command: str) -> WriteRefusal | WriteFailure:
        reason = redact_secrets(str(err)) or type(err).__name__
        if is_permission_error(err):
            return WriteRefusal(kind="permission", reason=reason, retry_command=retry_command)
        return WriteFailure(kind="unexpected", reason=reason, retry_command=retry_command)

    async def _finish(
        self, trigger: WriteTrigger, request: str, retry_command: str, result: AnyWriteResult,
    ) -> HandleResult:
        text = render_result(result, trigger.owner, trigger.repo, request, retry_command)
        self._emit("write_finished", {
            "outcome": result.outcome,
            "kind": getattr(result, "kind", None) or getattr(result, "status", None),
            "pr_url": getattr(result, "pr_url", None),
        })
        await self._reply(trigger, text)
        return HandleResult(outcome="completed", reply_text=text, result=result)

    async def _reply(self, trigger: WriteTrigger, text: str) -> None:
        replier = self.repliers.get(trigger.surface)
        if replier is None:
            logger.warning(f"[CONTROLLER] No replier configured for {trigger.surface}")
            return
        try:
            await replier.reply(trigger, text)
        except Exception as e:
            logger.error(f"[CONTROLLER] Reply to {trigger.owner}/{trigger.repo}#{trigger.thread_id} failed: {e}")

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.bus.emit(event_type, "controller", payload)
