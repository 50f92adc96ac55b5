"""Tests for the implementer tool loop and the executor wrapped around it."""

import asyncio
import json
import threading
import time
import uuid

import pytest

from patchbay import executor as executor_module
from patchbay.agents import AgentContext
from patchbay.agents.implementer import ImplementerAgent, WorkspacePathError, resolve_in_workspace
from patchbay.config_loader import PatchbayConfig
from patchbay.executor import AgentExecutor, ExecutionRequest
from patchbay.router import BudgetExceededError, Router, RouterResponse, RunBudget, accepts_temperature, completion_params


class FakeFunction:
    def __init__(self, name, arguments):
        self.name = name
        self.arguments = arguments


class FakeToolCall:
    def __init__(self, name, **arguments):
        self.id = uuid.uuid4().hex[:8]
        self.function = FakeFunction(name, json.dumps(arguments))

    def model_dump(self):
        return {"id": self.id, "type": "function",
                "function": {"name": self.function.name, "arguments": self.function.arguments}}


class ScriptedRouter:
    """Returns one scripted response per call and records the tools offered."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.offered_tools = []
        self.roles = []

    def complete(self, role, messages, tools=None, **kwargs):
        self.roles.append(role)
        self.offered_tools.append([t["function"]["name"] for t in tools or []])
        calls = self.steps.pop(0)
        return RouterResponse(content="", model="fake/model", tool_calls=calls)


def _context(tmp_path, write_mode=True, **extra):
    return AgentContext(
        run_id="r1",
        objective="update README wording",
        working_dir=str(tmp_path),
        owner="acme",
        repo="widgets",
        write_mode=write_mode,
        max_steps=5,
        extra=extra,
    )


def test_resolve_in_workspace_refuses_escapes(tmp_path):
    assert resolve_in_workspace(tmp_path, "src/app.py") == (tmp_path / "src" / "app.py").resolve()
    with pytest.raises(WorkspacePathError):
        resolve_in_workspace(tmp_path, "../outside.txt")
    with pytest.raises(WorkspacePathError):
        resolve_in_workspace(tmp_path, ".git/config")


def test_write_mode_edits_files(tmp_path):
    (tmp_path / "README.md").write_text("old\n")
    router = ScriptedRouter(
        [FakeToolCall("read_file", path="README.md")],
        [FakeToolCall("write_file", path="README.md", content="new\n")],
        [FakeToolCall("done", summary="Reworded the README.")],
    )
    result = ImplementerAgent(router).run(_context(tmp_path))

    assert result["completed"] is True
    assert result["summary"] == "Reworded the README."
    assert result["files_written"] == ["README.md"]
    assert (tmp_path / "README.md").read_text() == "new\n"
    assert "write_file" in router.offered_tools[0]


def test_plan_mode_cannot_write(tmp_path):
    router = ScriptedRouter(
        [FakeToolCall("write_file", path="README.md", content="sneaky")],
        [FakeToolCall("done", summary="1. Edit README.md")],
    )
    result = ImplementerAgent(router).run(_context(tmp_path, write_mode=False))

    assert result["completed"] is True
    assert result["files_written"] == []
    assert not (tmp_path / "README.md").exists()
    assert "write_file" not in router.offered_tools[0]


def test_comment_tool_records_mirror(tmp_path):
    posted = []

    def poster(body):
        posted.append(body)
        return "https://github.com/acme/widgets/issues/7#issuecomment-9"

    router = ScriptedRouter(
        [FakeToolCall("post_comment", body="Working on it")],
        [FakeToolCall("done", summary="ok")],
    )
    result = ImplementerAgent(router).run(_context(tmp_path, comment_poster=poster))
    assert posted == ["Working on it"]
    assert result["comments"] == [
        {"url": "https://github.com/acme/widgets/issues/7#issuecomment-9", "excerpt": "Working on it"}
    ]


def test_step_limit_reports_incomplete(tmp_path):
    router = ScriptedRouter(*[[FakeToolCall("list_files")] for _ in range(5)])
    result = ImplementerAgent(router).run(_context(tmp_path))
    assert result["completed"] is False


def test_plan_mode_uses_planner_role(tmp_path):
    router = ScriptedRouter([FakeToolCall("done", summary="1. Edit README.md")])
    ImplementerAgent(router).run(_context(tmp_path, write_mode=False))
    assert router.roles == ["planner"]

    router = ScriptedRouter([FakeToolCall("done", summary="ok")])
    ImplementerAgent(router).run(_context(tmp_path))
    assert router.roles == ["implementer"]


def test_stop_event_ends_run_before_tools(tmp_path):
    stop = threading.Event()

    class StoppingRouter(ScriptedRouter):
        def complete(self, role, messages, tools=None, **kwargs):
            response = super().complete(role, messages, tools=tools, **kwargs)
            stop.set()
            return response

    router = StoppingRouter(
        [FakeToolCall("write_file", path="late.txt", content="x")],
        [FakeToolCall("done", summary="ok")],
    )
    context = _context(tmp_path)
    context.stop_event = stop
    result = ImplementerAgent(router).run(context)

    assert result["completed"] is False
    assert result["stopped"] is True
    assert len(router.roles) == 1
    assert not (tmp_path / "late.txt").exists()


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

def _request(tmp_path):
    return ExecutionRequest(workspace_dir=tmp_path, prompt="update README", owner="acme", repo="widgets")


@pytest.mark.asyncio
async def test_executor_success(tmp_path, monkeypatch):
    executor = AgentExecutor(PatchbayConfig())
    monkeypatch.setattr(executor, "_run_agent", lambda request, stop=None: {
        "summary": "done",
        "completed": True,
        "files_written": ["README.md"],
        "comments": [{"url": "u", "excerpt": "e"}],
    })
    result = await executor.execute(_request(tmp_path))
    assert result.conclusion == "success"
    assert result.summary == "done"
    assert result.publish_events[0].url == "u"


@pytest.mark.asyncio
async def test_executor_incomplete_is_failure(tmp_path, monkeypatch):
    executor = AgentExecutor(PatchbayConfig())
    monkeypatch.setattr(executor, "_run_agent", lambda request, stop=None: {"summary": "ran out of steps", "completed": False})
    result = await executor.execute(_request(tmp_path))
    assert result.conclusion == "failure"
    assert result.error_message == "ran out of steps"


@pytest.mark.asyncio
async def test_executor_crash_is_error(tmp_path, monkeypatch):
    def crash(request, stop=None):
        raise RuntimeError("model unavailable")

    executor = AgentExecutor(PatchbayConfig())
    monkeypatch.setattr(executor, "_run_agent", crash)
    result = await executor.execute(_request(tmp_path))
    assert result.conclusion == "error"
    assert result.error_message == "model unavailable"


@pytest.mark.asyncio
async def test_executor_timeout(tmp_path, monkeypatch):
    config = PatchbayConfig(limits={"execution_timeout_seconds": 0.05})
    executor = AgentExecutor(config)
    monkeypatch.setattr(executor, "_run_agent", lambda request, stop=None: time.sleep(0.5) or {"completed": True})
    result = await executor.execute(_request(tmp_path))
    assert result.conclusion == "error"
    assert result.is_timeout is True


class SlowWritingRouter:
    """Takes longer than the run's timeout, then asks to write a file."""

    def __init__(self, config):
        pass

    def complete(self, role, messages, tools=None, **kwargs):
        time.sleep(0.3)
        return RouterResponse(
            content="", model="fake/model", tool_calls=[FakeToolCall("write_file", path="late.txt", content="x")],
        )


@pytest.mark.asyncio
async def test_timed_out_run_writes_nothing_afterwards(tmp_path, monkeypatch):
    monkeypatch.setattr(executor_module, "Router", SlowWritingRouter)
    executor = AgentExecutor(PatchbayConfig(limits={"execution_timeout_seconds": 0.1}))

    result = await executor.execute(_request(tmp_path))
    assert result.is_timeout is True

    await asyncio.sleep(0.5)
    assert not (tmp_path / "late.txt").exists()


# ---------------------------------------------------------------------------
# Router helpers
# ---------------------------------------------------------------------------

def test_temperature_support():
    assert accepts_temperature("anthropic/claude-sonnet-4-20250514") is True
    assert accepts_temperature("openai/o3-mini") is False
    params = completion_params("gpt-5", [], 0.2, 100, tools=[{"type": "function"}])
    assert "temperature" not in params
    assert params["tool_choice"] == "auto"


def test_run_budget():
    budget = RunBudget(token_cap=100, dollar_cap=1.0)
    budget.ensure_available()
    budget.tokens_spent = 100
    assert budget.exhausted is True
    assert budget.snapshot()["tokens_left"] == 0
    with pytest.raises(BudgetExceededError):
        budget.ensure_available()


def test_unknown_role_is_rejected():
    with pytest.raises(ValueError):
        Router(PatchbayConfig()).resolve_model("reviewer")
