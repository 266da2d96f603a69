# src/taskmaster_sync/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, starts the sync engine on a background event
loop, then runs the console REPL in the main thread.
"""

from __future__ import annotations

import logging

from ..cli.bootstrap import create_initial_state
from ..cli.console import make_console_subscriber, run_console_loop, start_background_loop
from ..config import get_settings
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()

    level_name = str(settings.log_level).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    # keep noisy libs readable
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    logger.info("Starting %s...", settings.app_name)

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)
    background = start_background_loop()
    subscriber = make_console_subscriber(state)

    try:
        background.run(state.service.initialize())
        background.run(state.engine.attach(subscriber))
        run_console_loop(state, background)
    finally:
        try:
            background.run(state.engine.detach(subscriber))
            # Waits for queued writes before returning.
            background.run(state.engine.close())
        except Exception:
            logger.exception("Shutdown failed.")
        background.stop()
        background.join(timeout=10.0)
        logger.info("Bye.")


if __name__ == "__main__":
    main()
