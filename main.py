#!/usr/bin/env python3
"""
Guess Quiz Bot - Main Entry Point

Starts the Discord bot that runs the avatar and artwork guessing games.

Usage:
    python main.py

Environment Variables:
    DISCORD_BOT_TOKEN: Bot token; wins over the "bot.token" entry of the config
    GUESSQUIZ_CONFIG: Path of the JSON config (default: config.json)
"""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path

TOKEN_PLACEHOLDER = "YOUR_DISCORD_BOT_TOKEN_HERE"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class StartupError(Exception):
    """The bot cannot start; the message tells the operator what to fix."""


def load_config(config_path=None):
    """Read the JSON config named by ``config_path`` or GUESSQUIZ_CONFIG."""
    path = Path(config_path or os.getenv('GUESSQUIZ_CONFIG', 'config.json'))
    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except FileNotFoundError:
        raise StartupError(f"{path} not found. Copy config.json and set your bot token.")
    except json.JSONDecodeError as e:
        raise StartupError(f"Invalid JSON in {path}: {e}")
    except OSError as e:
        raise StartupError(f"Cannot read {path}: {e}")

    if not isinstance(config, dict):
        raise StartupError(f"{path} must contain a JSON object")
    return config


def get_bot_token(config):
    token = os.getenv('DISCORD_BOT_TOKEN') or config.get('bot', {}).get('token')
    if not token or token == TOKEN_PLACEHOLDER:
        raise StartupError(
            "Discord bot token not configured. Set DISCORD_BOT_TOKEN "
            "or the 'token' field of the bot section."
        )
    return token


def setup_logging_from_config(config):
    """
    Console plus ``bot.log``, and ``errors.log`` for ERROR and above.
    discord.py's own loggers are kept at WARNING.
    """
    log_config = config.get('logging', {})
    log_level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    log_directory = Path(log_config.get('log_directory', './logs/'))
    log_directory.mkdir(parents=True, exist_ok=True)

    error_handler = logging.FileHandler(log_directory / "errors.log", encoding='utf-8')
    error_handler.setLevel(logging.ERROR)
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_directory / "bot.log", encoding='utf-8'),
            error_handler
        ]
    )

    for name in ('discord', 'discord.http'):
        logging.getLogger(name).setLevel(logging.WARNING)


async def run_bot_with_config(config):
    setup_logging_from_config(config)
    token = get_bot_token(config)

    from guessquiz.bot import run_bot
    await run_bot(token, config)


def main():
    print("🤖 Starting Guess Quiz Bot...")
    try:
        asyncio.run(run_bot_with_config(load_config()))
    except KeyboardInterrupt:
        print("\n👋 Bot stopped by user")
    except StartupError as e:
        print(f"❌ {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
