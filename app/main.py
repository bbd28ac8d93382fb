"""
Reminder bot entry point: configuration, logging, process-level error hooks and the run loop
"""

import asyncio
import logging
import os
import signal
import sys
import time
from typing import Optional, Set

import discord

from reminder_playback.bot import ReminderBot
from reminder_playback.config import ReminderConfig
from reminder_playback.errors import ConfigError
from reminder_playback.logging_utils import setup_logging

logger = logging.getLogger(__name__)

# Time given to log handlers before exiting on an uncaught exception
EXIT_GRACE_S = 1.0

_shutdown_tasks: Set[asyncio.Task] = set()


def _flush_logs() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def handle_uncaught_exception(exc_type, exc_value, exc_tb) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    logger.critical("Uncaught exception, exiting", exc_info=(exc_type, exc_value, exc_tb))
    _flush_logs()
    time.sleep(EXIT_GRACE_S)
    os._exit(1)


def handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Log errors nobody awaited; the process keeps running"""
    error: Optional[BaseException] = context.get("exception")
    message = context.get("message", "Unhandled error in event loop")
    if error is not None:
        logger.error(f"Unhandled async error: {message}", exc_info=error)
    else:
        logger.error(f"Unhandled async error: {message}")


async def run_bot(config: ReminderConfig) -> None:
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_loop_exception)

    bot = ReminderBot(config)

    def request_shutdown(signame: str) -> None:
        logger.info(f"Received {signame}, shutting down")
        task = asyncio.ensure_future(bot.close())
        _shutdown_tasks.add(task)
        task.add_done_callback(_shutdown_tasks.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown, sig.name)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt
            pass

    async with bot:
        await bot.start(config.token)
    logger.info("Bot stopped")


def main() -> None:
    try:
        config = ReminderConfig.from_env()
    except ConfigError as e:
        setup_logging()
        logger.error(f"Failed to start bot: {e}")
        sys.exit(1)

    setup_logging(log_level=config.log_level, log_format=config.log_format, log_file=os.getenv("LOG_FILE"))

    try:
        config.validate_required()
    except ConfigError as e:
        logger.error(f"Failed to start bot: {e}")
        sys.exit(1)

    sys.excepthook = handle_uncaught_exception

    logger.info(f"Starting reminder bot for {len(config.channel_ids)} channels (timezone {config.timezone})")
    try:
        asyncio.run(run_bot(config))
    except discord.LoginFailure as e:
        logger.error(f"Failed to start bot: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
