# src/taskmaster_sync/cli/commands.py

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, cast

from ..core.state import AppState
from ..errors import TaskMasterError
from ..tasks.task_models import Task, TaskFilter

CommandEmitter = Callable[[str], None]
# Runs a coroutine on the background event loop and returns its result.
CoroutineRunner = Callable[[Awaitable[Any]], Any]
CommandHandler3 = Callable[[AppState, list[str], CoroutineRunner], str]
CommandHandler4 = Callable[[AppState, list[str], CoroutineRunner, CommandEmitter | None], str]
CommandHandler = CommandHandler3 | CommandHandler4

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the console (/help, /list, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        run: CoroutineRunner,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 4

        try:
            if nparams >= 4:
                h4 = cast(CommandHandler4, handler)
                return h4(state, args, run, emit)
            h3 = cast(CommandHandler3, handler)
            return h3(state, args, run)
        except TaskMasterError as e:
            return f"Error: {e.message}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _split_title(args: list[str]) -> tuple[str, str]:
    """"Title words | description words" -> (title, description)."""
    text = " ".join(args)
    title, _, description = text.partition("|")
    title = title.strip()
    description = description.strip() or title
    return title, description


def _task_line(task: Task) -> str:
    deps = f" deps={','.join(task.dependencies)}" if task.dependencies else ""
    subs = f" subtasks={len(task.subtasks)}" if task.subtasks else ""
    return f"  {task.id:>4} [{task.status.value}] ({task.priority.value}) {task.title}{deps}{subs}"


def cmd_help(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    return registry.build_help()


def cmd_status(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    polling = run(state.engine.handle_command({"type": "getPollingStatus"}))["data"]
    network = run(state.engine.handle_command({"type": "getNetworkStatus"}))["data"]
    mode = "remote" if state.remote_mode else "local"
    interval = polling.get("interval")
    interval_s = f"{interval:.1f}s" if isinstance(interval, (int, float)) else "-"
    return (
        "Status:\n"
        f"  Source: {mode}\n"
        f"  Active tag: {state.service.active_tag}\n"
        f"  Polling: {'ON' if polling.get('isPolling') else 'OFF'} (interval {interval_s})\n"
        f"  Connection: {network.get('status') or '-'}"
        f" (attempts {network.get('reconnectAttempts', 0)}/{network.get('maxReconnectAttempts', '-')})"
    )


def cmd_list(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    """
    /list            -> all tasks in the active tag
    /list pending    -> filter by status (comma separated for several)
    """
    task_filter = TaskFilter(status=args[0].split(",")) if args else None
    result = run(state.service.get_task_list(task_filter))
    if not result.tasks:
        return f"No tasks in tag {result.tag!r} (total {result.total})."
    lines = [f"Tasks in {result.tag!r} ({result.filtered}/{result.total}):"]
    lines.extend(_task_line(t) for t in result.tasks)
    if result.invalid:
        lines.append(f"  ({len(result.invalid)} invalid record(s) skipped, see log)")
    return "\n".join(lines)


def cmd_show(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    if not args:
        return "Usage: /show <id> | /show <parent>.<n>"
    ref = args[0]
    if "." in ref:
        subtask = run(state.service.get_subtask(ref))
        if subtask is None:
            return f"Subtask {ref} not found."
        return json.dumps(subtask.to_dict(), ensure_ascii=False, indent=2)
    task = run(state.service.get_task(ref))
    if task is None:
        return f"Task {ref} not found."
    return json.dumps(task.to_dict(), ensure_ascii=False, indent=2)


def cmd_next(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    task = run(state.service.get_next_task())
    if task is None:
        return "No actionable task."
    return "Next task:\n" + _task_line(task)


def cmd_add(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    title, description = _split_title(args)
    if not title:
        return "Usage: /add <title> [| description]"
    task = run(state.service.add_task({"title": title, "description": description}))
    return f"Added task {task.id}: {task.title}"


def cmd_sub(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    if len(args) < 2:
        return "Usage: /sub <parent id> <title> [| description]"
    title, description = _split_title(args[1:])
    subtask = run(state.service.add_subtask(args[0], {"title": title, "description": description}))
    return f"Added subtask {args[0]}.{subtask.id}: {subtask.title}"


def cmd_set(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    if len(args) != 2:
        return "Usage: /set <id|parent.n> <status>"
    ref, status = args
    if "." in ref:
        subtask = run(state.service.set_subtask_status(ref, status))
        return f"Subtask {ref} -> {subtask.status.value}"
    task = run(state.service.set_task_status(ref, status))
    return f"Task {task.id} -> {task.status.value}"


def cmd_done(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    if len(args) != 1:
        return "Usage: /done <id>"
    task = run(state.service.complete_task(args[0]))
    return f"Task {task.id} completed."


def cmd_reopen(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    if len(args) != 1:
        return "Usage: /reopen <id>"
    task = run(state.service.reopen_task(args[0]))
    return f"Task {task.id} reopened."


def cmd_rm(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    if len(args) != 1:
        return "Usage: /rm <id>"
    run(state.service.delete_task(args[0]))
    return f"Task {args[0]} deleted."


def cmd_stats(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    stats = run(state.service.get_task_stats())
    by_status = ", ".join(f"{k}={v}" for k, v in stats.by_status.items() if v)
    return (
        f"Tasks: {stats.total} ({stats.completion_percentage:.0f}% done)\n"
        f"  By status: {by_status or '-'}\n"
        f"  Subtasks: {stats.subtasks_done}/{stats.subtasks_total} done"
    )


def cmd_tags(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    """
    /tags                  -> list tags
    /tags use <tag>        -> switch the active tag
    /tags copy <src> <dst> -> copy a tag
    /tags rename <a> <b>   -> rename a tag
    /tags delete <tag>     -> delete a tag
    """
    if not args:
        tags = run(state.service.list_tags())
        active = state.service.active_tag
        return "Tags:\n" + "\n".join(f"  {'*' if t == active else ' '} {t}" for t in tags)

    sub, rest = args[0].lower(), args[1:]
    if sub == "use" and len(rest) == 1:
        run(state.service.use_tag(rest[0]))
        return f"Active tag: {rest[0]}"
    if sub == "copy" and len(rest) == 2:
        run(state.service.copy_tag(rest[0], rest[1]))
        return f"Copied {rest[0]} -> {rest[1]}"
    if sub == "rename" and len(rest) == 2:
        run(state.service.rename_tag(rest[0], rest[1]))
        return f"Renamed {rest[0]} -> {rest[1]}"
    if sub == "delete" and len(rest) == 1:
        run(state.service.delete_tag(rest[0]))
        return f"Deleted tag {rest[0]}"
    return "Usage: /tags | /tags use <tag> | /tags copy <src> <dst> | /tags rename <a> <b> | /tags delete <tag>"


def cmd_poll(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    sub = args[0].lower() if args else ""
    if sub == "start":
        reply = run(state.engine.handle_command({"type": "startPolling"}))
    elif sub == "stop":
        reply = run(state.engine.handle_command({"type": "stopPolling"}))
    elif sub == "now":
        reply = run(state.engine.handle_command({"type": "getTasks"}))
        if reply["success"]:
            return f"Fetched {len(reply['data'])} tasks."
    else:
        return "Usage: /poll start | /poll stop | /poll now"
    return "OK." if reply["success"] else f"Error: {reply.get('error')}"


def cmd_reconnect(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    reply = run(state.engine.handle_command({"type": "attemptReconnection"}))
    if reply["success"]:
        return f"Reconnection attempted ({reply['data']['status']})."
    return f"Error: {reply.get('error')}"


def cmd_rewrite(
    state: AppState,
    args: list[str],
    run: CoroutineRunner,
    emit: CommandEmitter | None = None,
) -> str:
    if len(args) < 2:
        return "Usage: /rewrite <id> <instructions>"
    if emit:
        emit("[LLM] Drafting... (may take a while)")
    reply = run(
        state.engine.handle_command(
            {"type": "rewriteTask", "data": {"taskId": args[0], "prompt": " ".join(args[1:]), "options": {"append": True}}}
        )
    )
    if reply["success"]:
        return f"Task {args[0]} updated."
    return f"Error: {reply.get('error')}"


def cmd_tool(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    if not args:
        return "Usage: /tool <name> [json params]"
    raw = " ".join(args[1:]).strip()
    try:
        params = json.loads(raw) if raw else {}
    except json.JSONDecodeError as e:
        return f"Params must be JSON: {e}"
    reply = run(state.engine.handle_command({"type": "invokeTool", "data": {"toolName": args[0], "params": params}}))
    if reply["success"]:
        return json.dumps(reply["data"], ensure_ascii=False, indent=2, default=str)
    return f"Error: {reply.get('error')}"


def cmd_inbox(state: AppState, args: list[str], run: CoroutineRunner) -> str:
    if not state.inbox:
        return "No notifications."
    lines = ["Recent notifications:"]
    for msg in state.inbox[-10:]:
        lines.append(f"  {msg.get('type')}: {json.dumps(msg.get('data'), default=str)[:120]}")
    return "\n".join(lines)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show source, active tag, polling and connection state.")
registry.register("list", cmd_list, help_text="List tasks: /list [status[,status]].", aliases=["ls"])
registry.register("show", cmd_show, help_text="Show one task or subtask: /show 3 | /show 3.1.")
registry.register("next", cmd_next, help_text="Show the next actionable task.")
registry.register("add", cmd_add, help_text="Add a task: /add <title> [| description].")
registry.register("sub", cmd_sub, help_text="Add a subtask: /sub <parent> <title> [| description].")
registry.register("set", cmd_set, help_text="Set status: /set <id|parent.n> <status>.")
registry.register("done", cmd_done, help_text="Complete a task: /done <id>.")
registry.register("reopen", cmd_reopen, help_text="Reopen a done task: /reopen <id>.")
registry.register("rm", cmd_rm, help_text="Delete a task: /rm <id>.")
registry.register("stats", cmd_stats, help_text="Show task statistics for the active tag.")
registry.register("tags", cmd_tags, help_text="Tags: /tags | use | copy | rename | delete.")
registry.register("poll", cmd_poll, help_text="Polling: /poll start | stop | now.")
registry.register("reconnect", cmd_reconnect, help_text="Retry the connection while offline.")
registry.register("rewrite", cmd_rewrite, help_text="Draft task details with the LLM: /rewrite <id> <instructions>.")
registry.register("tool", cmd_tool, help_text="Invoke a remote tool: /tool <name> [json params].")
registry.register("inbox", cmd_inbox, help_text="Show recent sync notifications.")
