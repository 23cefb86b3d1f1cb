"""CLI entry point for telechat-bot."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys

from telechat_bot.app import TelechatApp
from telechat_bot.config import AppConfig, load_config
from telechat_bot.errors import ConfigError
from telechat_bot.log import setup_logging


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="telechat-bot",
        description="Telegram bot relaying chats to an OpenAI-compatible completion API",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    for name, help_text in (
        ("start", "Start the bot"),
        ("config-check", "Validate configuration"),
        ("model-info", "Show completion model settings"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("-c", "--config", default="config.yaml", help="Path to optional config file")
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    args = parser.parse_args()

    if args.command is None:
        # Default to start
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    config = _load_or_exit(args.config, args.env)

    if args.command == "config-check":
        _check_config(config, args.config)
    elif args.command == "model-info":
        _model_info(config)
    elif args.command == "start":
        _run(config)


def _load_or_exit(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config: AppConfig, config_path: str) -> None:
    """Print a summary of a configuration that already validated."""
    print(f"Configuration valid: {config_path}")
    print(f"  Bot username : {config.telegram.bot_username or '(resolved at startup)'}")
    print(f"  API keys     : {len(config.completion.api_keys)}")
    print(f"  Storage      : {config.storage.db_path}")
    print(f"  History      : {config.chat.history_limit} turns per conversation")


def _model_info(config: AppConfig) -> None:
    print("Completion Model Configuration")
    print("=" * 50)
    print(f"  Endpoint : {config.completion.endpoint}")
    print(f"  Model    : {config.completion.model}")
    print(f"  Timeout  : {config.completion.timeout}s")
    print(f"  Keys     : {len(config.completion.api_keys)} (rotated on failure)")
    print(f"  Citations: {'on' if config.chat.cite_sources else 'off'}")
    print()


def _run(config: AppConfig) -> None:
    setup_logging(config.log_level, config.log_format)

    async def _async_main() -> None:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _signal_handler() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(_signal_handler))

        app = TelechatApp(config)
        await app.start()
        poll_task = asyncio.create_task(app.run())

        stop_task = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait({poll_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            for t in (poll_task, stop_task):
                t.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await t
        finally:
            await app.stop()

    asyncio.run(_async_main())


if __name__ == "__main__":
    main()
