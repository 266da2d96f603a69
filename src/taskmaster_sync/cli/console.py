# src/taskmaster_sync/cli/console.py

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

from ..cli.commands import registry as command_registry
from ..core.ports import Message
from ..core.state import AppState

logger = logging.getLogger(__name__)

T = TypeVar("T")

INBOX_LIMIT = 200


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


@dataclass
class BackgroundLoop:
    """
    asyncio loop running in a daemon thread.

    The console REPL is blocking (input()), the sync engine wants a live event loop for
    its timers, so the loop lives in its own thread and the REPL submits coroutines.
    """

    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    stop_event: asyncio.Event

    def run(self, coro: Awaitable[T], timeout: float | None = 120.0) -> T:
        fut = asyncio.run_coroutine_threadsafe(_as_coroutine(coro), self.loop)
        return fut.result(timeout=timeout)

    def stop(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except RuntimeError:
            logger.debug("Background loop already closed.", exc_info=True)

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)


async def _as_coroutine(awaitable: Awaitable[T]) -> T:
    return await awaitable


def start_background_loop() -> BackgroundLoop:
    ready = threading.Event()
    holder: dict[str, Any] = {}

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()

        holder["loop"] = loop
        holder["stop_event"] = stop_event
        ready.set()

        try:
            loop.run_until_complete(stop_event.wait())
        finally:
            with contextlib.suppress(RuntimeError):
                loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    t = threading.Thread(target=runner, name="taskmaster-sync-loop", daemon=True)
    t.start()

    if not ready.wait(timeout=5.0):
        raise RuntimeError("Background event loop did not start.")

    logger.info("Background event loop started.")
    return BackgroundLoop(thread=t, loop=holder["loop"], stop_event=holder["stop_event"])


def _describe(message: Message) -> str | None:
    kind = message.get("type")
    data = message.get("data")
    if kind == "tasksUpdated":
        return f"[SYNC] {len(data or [])} tasks ({message.get('source', 'polling')})"
    if kind == "connectionStatusUpdate" and isinstance(data, dict):
        return f"[SYNC] {data.get('status')}: {data.get('message')}"
    if kind == "networkOffline" and isinstance(data, dict):
        cached = data.get("cachedTasks") or []
        return f"[SYNC] offline, {len(cached)} cached tasks. Use /reconnect to retry."
    return None


def make_console_subscriber(state: AppState, *, echo: bool = True):
    """Subscriber that keeps recent notifications in state.inbox and prints a short line."""

    def subscriber(message: Message) -> None:
        state.inbox.append(message)
        del state.inbox[:-INBOX_LIMIT]
        if echo:
            line = _describe(message)
            if line:
                _print_ts(line)

    return subscriber


def run_console_loop(state: AppState, background: BackgroundLoop) -> None:
    logger.info("Console started (project=%s).", state.settings.project_root)
    _print_ts("[CONSOLE] Use /help for commands. Use /exit to quit.\n")

    def emit(text: str) -> None:
        # Immediate user-visible feedback for long operations (e.g., LLM drafts)
        _print_ts(text)

    while True:
        try:
            user_input = input(">>> ").strip()
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not user_input:
            continue

        if user_input.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        try:
            reply = command_registry.handle(state, user_input, background.run, emit=emit)
        except Exception:
            logger.exception("Command handler crashed.")
            reply = "Internal error while handling a command."

        if reply is None:
            reply = "Not a command. Use /help to list available commands."
        _print_ts(reply)

    logger.info("Console finished.")
