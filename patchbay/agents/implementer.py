"""
The implementer: a read-write-observe tool loop over one workspace.

In plan mode (`plan:` requests) `write_file` is not offered and any attempt
to call it is refused, so the loop can only read and summarize.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from patchbay.agents import AgentContext, BaseAgent

MAX_READ_CHARS = 40_000
MAX_LISTED_FILES = 400


def _tool(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


READ_FILE_TOOL = _tool(
    "read_file",
    "Read a file from the repository checkout.",
    {"path": {"type": "string"}},
    ["path"],
)
LIST_FILES_TOOL = _tool(
    "list_files",
    "List files under a directory of the repository checkout (repo root when empty).",
    {"path": {"type": "string"}},
    [],
)
WRITE_FILE_TOOL = _tool(
    "write_file",
    "Write complete content to a file in the checkout (creates or overwrites).",
    {"path": {"type": "string"}, "content": {"type": "string"}},
    ["path", "content"],
)
COMMENT_TOOL = _tool(
    "post_comment",
    "Post a short comment on the issue or pull request that triggered this run.",
    {"body": {"type": "string"}},
    ["body"],
)
DONE_TOOL = _tool(
    "done",
    "Finish the run with a short summary of what changed (or, in plan mode, the plan).",
    {"summary": {"type": "string"}},
    ["summary"],
)


class WorkspacePathError(ValueError):
    pass


def resolve_in_workspace(root: Path, relative: str) -> Path:
    """Resolve `relative` under `root`, refusing anything that escapes it or touches .git."""
    root = root.resolve()
    target = (root / (relative or ".")).resolve()
    if target != root and root not in target.parents:
        raise WorkspacePathError(f"Path escapes the workspace: {relative}")
    if ".git" in target.relative_to(root).parts:
        raise WorkspacePathError(f"Path is inside .git: {relative}")
    return target


class ImplementerAgent(BaseAgent):
    role = "implementer"

    system_prompt = """You are the implementation engine behind a chat-driven repository bot.

You operate in a tool loop over a checkout of the target repository.
1. Do not guess file contents. Use `list_files` and `read_file` first.
2. Make the smallest change that satisfies the request. Write whole files with `write_file`.
3. Never write credentials, tokens or keys into files.
4. When finished, call `done` with a one-paragraph summary of what you changed.
"""

    plan_prompt = """You are planning a change to a repository; you may NOT modify files.

Read what you need with `list_files` and `read_file`, then call `done` with a
concise step-by-step plan naming the files you would change.
"""

    def tools_for(self, context: AgentContext) -> list[dict]:
        tools = [READ_FILE_TOOL, LIST_FILES_TOOL]
        if context.write_mode:
            tools.append(WRITE_FILE_TOOL)
        if context.extra.get("comment_poster"):
            tools.append(COMMENT_TOOL)
        tools.append(DONE_TOOL)
        return tools

    def system_prompt_for(self, context: AgentContext) -> str:
        return self.system_prompt if context.write_mode else self.plan_prompt

    def build_messages(self, context: AgentContext) -> list[dict[str, Any]]:
        user_content = f"""Repository: {context.owner}/{context.repo}
Request: {context.objective}

Original message:
{context.trigger_body or context.objective}

Use your tools, then call `done`."""
        return self.opening_messages(context, user_content)

    def run(self, context: AgentContext, **kwargs) -> dict[str, Any]:
        """Run the tool loop until `done` or the step limit."""
        messages = self.build_messages(context)
        workspace_dir = Path(context.working_dir)
        comment_poster: Callable[[str], str] | None = context.extra.get("comment_poster")
        tools = self.tools_for(context)

        written: set[str] = set()
        comments: list[dict[str, str]] = []

        role = self.role_for(context)

        for step in range(context.max_steps):
            if context.stopped:
                return self._stopped_result(written, comments)
            logger.debug(f"[IMPLEMENTER] Loop step {step + 1}/{context.max_steps}")
            response = self.router.complete(role=role, messages=messages, tools=tools, **kwargs)

            assist_msg: dict[str, Any] = {"role": "assistant", "content": response.content or None}
            if response.tool_calls:
                assist_msg["tool_calls"] = [
                    tc.model_dump() if hasattr(tc, "model_dump") else dict(tc)
                    for tc in response.tool_calls
                ]
            messages.append(assist_msg)

            if not response.tool_calls:
                messages.append(self._user_msg("Use your tools to act, or call `done` if you are finished."))
                continue

            for tool_call in response.tool_calls:
                # The model call may have outlived the run's deadline.
                if context.stopped:
                    return self._stopped_result(written, comments)
                tc_id = tool_call.id
                tc_name = tool_call.function.name
                try:
                    tc_args = json.loads(tool_call.function.arguments or "{}")
                except json.JSONDecodeError:
                    messages.append(_tool_reply(tc_id, tc_name, "Error: invalid JSON in arguments."))
                    continue

                logger.info(f"[IMPLEMENTER] Tool call: {tc_name}")

                if tc_name == "done":
                    return {
                        "summary": tc_args.get("summary", "").strip(),
                        "files_written": sorted(written),
                        "comments": comments,
                        "completed": True,
                        "_model": response.model,
                        "_tokens": response.tokens_used,
                        "_cost": response.cost,
                    }

                if tc_name == "read_file":
                    res = self._read_file(workspace_dir, tc_args.get("path", ""))
                elif tc_name == "list_files":
                    res = self._list_files(workspace_dir, tc_args.get("path", ""))
                elif tc_name == "write_file":
                    if not context.write_mode:
                        res = "Error: this is a plan-only run; files cannot be modified."
                    else:
                        res = self._write_file(workspace_dir, tc_args.get("path", ""), tc_args.get("content", ""))
                        if res.startswith("Wrote"):
                            written.add(tc_args["path"])
                elif tc_name == "post_comment" and comment_poster:
                    body = tc_args.get("body", "")
                    try:
                        url = comment_poster(body)
                        comments.append({"url": url, "excerpt": body[:200]})
                        res = f"Comment posted: {url}"
                    except Exception as e:
                        logger.warning(f"[IMPLEMENTER] Comment failed: {e}")
                        res = f"Error posting comment: {e}"
                else:
                    res = f"Error: unknown tool {tc_name}"

                messages.append(_tool_reply(tc_id, tc_name, res))

        logger.warning("[IMPLEMENTER] Loop exhausted without calling `done`.")
        return {
            "summary": "Implementer hit the step limit before finishing.",
            "files_written": sorted(written),
            "comments": comments,
            "completed": False,
        }

    @staticmethod
    def _stopped_result(written: set[str], comments: list[dict[str, str]]) -> dict[str, Any]:
        logger.warning("[IMPLEMENTER] Stop requested; abandoning the run.")
        return {
            "summary": "Implementer was stopped before finishing.",
            "files_written": sorted(written),
            "comments": comments,
            "completed": False,
            "stopped": True,
        }

    # -- tools -------------------------------------------------------------

    @staticmethod
    def _read_file(root: Path, path: str) -> str:
        try:
            content = resolve_in_workspace(root, path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError, WorkspacePathError) as e:
            return f"Error reading file: {e}"
        if len(content) > MAX_READ_CHARS:
            content = content[:MAX_READ_CHARS] + "\n... (truncated)"
        return f"Read {len(content)} characters:\n\n{content}"

    @staticmethod
    def _list_files(root: Path, path: str) -> str:
        try:
            base = resolve_in_workspace(root, path)
        except WorkspacePathError as e:
            return f"Error: {e}"
        if not base.is_dir():
            return f"Error: not a directory: {path}"
        files = []
        for entry in sorted(base.rglob("*")):
            rel = entry.relative_to(root.resolve())
            if ".git" in rel.parts or not entry.is_file():
                continue
            files.append(rel.as_posix())
            if len(files) >= MAX_LISTED_FILES:
                files.append("... (truncated)")
                break
        return "\n".join(files) or "(empty)"

    @staticmethod
    def _write_file(root: Path, path: str, content: str) -> str:
        try:
            target = resolve_in_workspace(root, path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except (OSError, WorkspacePathError) as e:
            return f"Error writing file: {e}"
        return f"Wrote {len(content)} characters to {path}."


def _tool_reply(tc_id: str, name: str, content: str) -> dict[str, str]:
    return {"role": "tool", "tool_call_id": tc_id, "name": name, "content": content}
