"""
PATCHBAY CLI

Run the write pipeline for one trigger:
  patchbay mention --repo owner/name --issue 12 --comment-id 99 --body "apply: ..."
  patchbay slack   --repo owner/name --channel C1 --thread 1700.1 --message-ts 1700.2 --text "..."

Plus utilities:
  - patchbay status         (credentials, effective write config, tools)
  - patchbay init <path>    (bootstrap .patchbay/config.yaml in a repo)
  - patchbay classify TEXT  (show the intent decision and its scores)
  - patchbay key            (show key, marker and bot branch for a trigger)
  - patchbay check-policy   (run the write policy on a local checkout's staged changes)
"""

from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from patchbay.audit_logger import AuditLogger
from patchbay.config_loader import REPO_CONFIG_RELPATH, ConfigError, PatchbayConfig, load_config, validate_credentials
from patchbay.controller import HandleResult, WriteController
from patchbay.event_bus import EventBus
from patchbay.executor import AgentExecutor, ExecutionRequest
from patchbay.github import GhCliClient, GitHubReplier
from patchbay.idempotency import build_github_branch_name, derive_idempotency_key
from patchbay.identity import BANNER, __codename__, __tagline__, __version__
from patchbay.intent import classify_write_intent, is_high_impact, normalize_message, score_write_intent
from patchbay.policy import WritePolicyConfig, WritePolicyEnforcer, build_policy_refusal_message
from patchbay.publisher import VersionControlPublisher
from patchbay.slack import SlackReplier, SlackThreadPublisher
from patchbay.trigger import WriteTrigger
from patchbay.workspace import GitWorkspace, WorkspaceManager

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".patchbay" / ".env")

app = typer.Typer(
    name="patchbay",
    help=f"{__codename__}: {__tagline__}\nChat requests in, pull requests out.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------

def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__}: {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Inspection commands
# ---------------------------------------------------------------------------

@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Local checkout to read .patchbay/config.yaml from"),
):
    """Check credentials, effective write config and required tools."""
    _print_banner()

    creds = validate_credentials()
    cred_table = Table(title="Credentials", border_style="cyan")
    cred_table.add_column("Variable")
    cred_table.add_column("Status")
    for name, available in creds.items():
        cred_table.add_row(name, "[green]✓ Available[/]" if available else "[red]✗ Missing[/]")
    console.print(cred_table)

    config = _load_config_or_exit(repo.resolve() if repo else None)
    console.print("\n[bold]Write mode:[/]")
    console.print(f"  Enabled:     {config.write.enabled}")
    console.print(f"  allowPaths:  {', '.join(config.write.allow_paths) or '(no restriction)'}")
    console.print(f"  denyPaths:   {', '.join(config.write.deny_paths) or '(none)'}")
    console.print(f"  Secret scan: {config.write.secret_scan.enabled}")
    console.print(f"  Confirmation timeout: {config.confirmation.timeout_minutes} minutes")

    console.print("\n[bold]Routing:[/]")
    console.print(f"  Implementer: {config.routing.implementer}")
    console.print(f"  Planner:     {config.routing.planner}")

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", "gh"]:
        found = shutil.which(tool)
        tools_table.add_row(tool, f"[green]✓ {found}[/]" if found else "[red]✗ Not found[/]")
    console.print(tools_table)


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Create .patchbay/config.yaml in a repository."""
    repo = (repo or Path.cwd()).resolve()
    config_path = repo / REPO_CONFIG_RELPATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    (config_path.parent / "logs").mkdir(exist_ok=True)

    if not config_path.exists():
        config_path.write_text("""# PATCHBAY repo-level config overrides
# These merge with the built-in defaults.

write:
  # Chat requests may open PRs against this repository only when enabled.
  enabled: false
  # Empty means "anything not denied".
  allowPaths: []
  # denyPaths always wins over allowPaths.
  # denyPaths:
  #   - ".github/workflows/"
  #   - "*.pem"
  secretScan:
    enabled: true

# confirmation:
#   timeout_minutes: 15
""")

    gitignore = repo / ".gitignore"
    entry = ".patchbay/logs/"
    if gitignore.exists():
        content = gitignore.read_text()
        if entry not in content:
            with open(gitignore, "a") as f:
                f.write(f"\n# PATCHBAY\n{entry}\n")
    else:
        gitignore.write_text(f"# PATCHBAY\n{entry}\n")

    console.print(f"[green]✅ Initialized PATCHBAY in {config_path.parent}[/]")
    console.print(f"  Config: {config_path}")


@app.command()
def classify(
    text: str = typer.Argument(..., help="Message text as the user wrote it"),
):
    """Show how a message would be classified, with the score breakdown."""
    message = normalize_message(text, ["patchbay"])
    intent = classify_write_intent(text, bot_handles=["patchbay"])
    scored = score_write_intent(message)

    table = Table(title="Write intent", border_style="cyan")
    table.add_column("Signal")
    table.add_column("Value")
    table.add_row("Decision", f"[bold]{intent.outcome}[/]")
    table.add_row("Score", str(scored.score))
    table.add_row("Strong request", str(scored.strong_request))
    table.add_row("Write-verb patterns", str(scored.write_verb_matches))
    table.add_row("Path token", str(scored.path_cue))
    table.add_row("Git vocabulary", str(scored.git_cue))
    table.add_row("Write cue", str(scored.write_cue))
    table.add_row("Ambiguous", str(scored.ambiguous))
    table.add_row("High impact", str(is_high_impact(message)))
    if intent.outcome == "write":
        table.add_row("Keyword", intent.keyword)
        table.add_row("Source", intent.source)
        table.add_row("Confirmation required", str(intent.confirmation_required))
    console.print(table)

    if intent.outcome == "clarification_required":
        console.print(Panel(Text(intent.quick_action_text), title="Reply", border_style="yellow"))


@app.command()
def key(
    repo: str = typer.Option(..., "--repo", help="owner/name"),
    thread: str = typer.Option(..., "--thread", help="Issue/PR number or Slack thread ts"),
    trigger: str = typer.Option(..., "--trigger", help="Comment id or Slack message ts"),
    keyword: str = typer.Option("apply", "--keyword"),
    installation: int = typer.Option(0, "--installation"),
    pr: Optional[int] = typer.Option(None, "--pr", help="PR number when the trigger is on a PR"),
):
    """Print the idempotency key, marker and GitHub bot branch for a trigger."""
    owner, name = _split_repo(repo)
    derived = derive_idempotency_key(installation, owner, name, thread, trigger, keyword)
    issue_number = None if pr is not None or not thread.isdigit() else int(thread)

    table = Table(border_style="cyan", show_header=False)
    table.add_row("Key", derived.key)
    table.add_row("Hash", derived.hash)
    table.add_row("Marker", derived.marker)
    table.add_row("Bot branch", build_github_branch_name(derived.hash, trigger, pr_number=pr, issue_number=issue_number))
    console.print(table)


@app.command("check-policy")
def check_policy(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Local checkout with staged changes"),
):
    """Run the write policy against the changes staged in a local checkout."""
    repo = repo.resolve()
    config = _load_config_or_exit(repo)
    workspace = GitWorkspace(repo)

    async def _collect() -> tuple[list[str], str]:
        return await workspace.staged_paths(), await workspace.staged_diff()

    paths, diff = asyncio.run(_collect())
    result = WritePolicyEnforcer(WritePolicyConfig.from_write_config(config.write)).check(paths, diff)
    if result.ok:
        console.print(f"[green]✓ {len(paths)} staged path(s) pass the write policy[/]")
        return

    console.print(Panel(Text(build_policy_refusal_message(result, config.write.allow_paths)), border_style="red"))
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Pipeline commands
# ---------------------------------------------------------------------------

@app.command()
def mention(
    repo: str = typer.Option(..., "--repo", help="owner/name"),
    issue: int = typer.Option(..., "--issue", "-i", help="Issue or PR number the comment is on"),
    comment_id: str = typer.Option(..., "--comment-id", help="Triggering comment id"),
    body: str = typer.Option(..., "--body", "-b", help="Comment body, including the @mention"),
    is_pr: bool = typer.Option(False, "--pr", help="The number refers to a pull request"),
    delivery_id: Optional[str] = typer.Option(None, "--delivery-id"),
    print_only: bool = typer.Option(False, "--print-only", help="Print replies instead of commenting"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Offer to confirm high-impact requests here"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Handle one GitHub @mention comment end to end."""
    _configure_logging(verbose)
    owner, name = _split_repo(repo)
    config = _load_config_or_exit(None)
    gh = GhCliClient(installation_id=config.github.installation_id)

    trigger = WriteTrigger(
        surface="github_mention",
        installation_id=config.github.installation_id,
        owner=owner,
        repo=name,
        thread_id=str(issue),
        trigger_id=comment_id,
        text=body,
        delivery_id=delivery_id,
    )
    if is_pr:
        pr = asyncio.run(gh.get_pull_request(owner, name, issue))
        trigger = trigger.model_copy(update={
            "pr_number": pr.number,
            "pr_head_ref": pr.head_ref,
            "pr_head_repo": pr.head_repo,
            "pr_base_ref": pr.base_ref,
            "pr_url": pr.url,
        })

    replier = _ConsoleReplier() if print_only else GitHubReplier(gh)
    controller = _build_controller(config, gh, {"github_mention": replier})
    _run_trigger(controller, trigger, yes)


@app.command()
def slack(
    repo: str = typer.Option(..., "--repo", help="owner/name the request targets"),
    channel: str = typer.Option(..., "--channel"),
    thread: str = typer.Option(..., "--thread", help="Thread ts"),
    message_ts: str = typer.Option(..., "--message-ts", help="Triggering message ts"),
    text: str = typer.Option(..., "--text", "-t"),
    print_only: bool = typer.Option(False, "--print-only", help="Print replies instead of posting to Slack"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Offer to confirm high-impact requests here"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Handle one Slack message end to end."""
    _configure_logging(verbose)
    owner, name = _split_repo(repo)
    config = _load_config_or_exit(None)
    gh = GhCliClient(installation_id=config.github.installation_id)

    if print_only:
        replier = _ConsoleReplier()
    else:
        token = os.environ.get("SLACK_BOT_TOKEN")
        if not token:
            console.print("[red]SLACK_BOT_TOKEN is not set[/]")
            raise typer.Exit(1)
        replier = SlackReplier(SlackThreadPublisher(token))

    trigger = WriteTrigger(
        surface="slack_message",
        installation_id=config.github.installation_id,
        owner=owner,
        repo=name,
        channel=channel,
        thread_id=thread,
        trigger_id=message_ts,
        text=text,
    )
    controller = _build_controller(config, gh, {"slack_message": replier})
    _run_trigger(controller, trigger, yes)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _ConsoleReplier:
    async def reply(self, trigger: WriteTrigger, text: str) -> None:
        console.print(Panel(Text(text), title=f"{trigger.surface} reply", border_style="cyan"))


def _build_controller(config: PatchbayConfig, gh: GhCliClient, repliers: dict) -> WriteController:
    workspaces = WorkspaceManager(gh.token_for, config.git)
    workspaces.cleanup_stale()

    def comment_poster(request: ExecutionRequest):
        if request.issue_number is None:
            return None
        return lambda body: gh.post_comment_sync(request.owner, request.repo, request.issue_number, body)

    bus = EventBus()
    bus.subscribe(AuditLogger(Path.cwd() / ".patchbay" / "logs" / "audit.jsonl", batch_size=1))

    return WriteController(
        config=config,
        executor=AgentExecutor(config, comment_poster_factory=comment_poster),
        publisher=VersionControlPublisher(gh, marker_scan_depth=config.git.marker_scan_depth),
        workspaces=workspaces,
        resolve_installation=gh.resolve_installation,
        repliers=repliers,
        bus=bus,
    )


def _run_trigger(controller: WriteController, trigger: WriteTrigger, yes: bool) -> None:
    result: HandleResult = asyncio.run(controller.handle(trigger))

    if result.outcome == "confirmation_required" and yes:
        pending = controller.confirmations.get_pending(trigger.confirmation_channel, trigger.thread_id)
        if pending and Confirm.ask(f"Confirm [bold]{pending.command}[/]?"):
            follow_up = trigger.model_copy(update={"text": f"confirm: {pending.command}"})
            result = asyncio.run(controller.handle(follow_up))

    console.print(f"[dim]outcome: {result.outcome}[/]")
    if result.result is not None and result.result.outcome in ("refusal", "failure"):
        raise typer.Exit(1)


def _split_repo(value: str) -> tuple[str, str]:
    owner, sep, name = value.partition("/")
    if not sep or not owner or not name:
        console.print(f"[red]Expected owner/name, got {value!r}[/]")
        raise typer.Exit(2)
    return owner, name


def _load_config_or_exit(repo: Path | None) -> PatchbayConfig:
    try:
        return load_config(repo)
    except ConfigError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        lambda msg: console.print(msg, style="dim", markup=False, highlight=False, end=""),
        level="DEBUG" if verbose else "WARNING",
        format="{time:HH:mm:ss} | {level:<7} | {message}" if verbose else "{message}",
    )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
