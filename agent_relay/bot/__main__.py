"""Entry point for running the agent relay Discord bot."""

import asyncio
import logging

from dotenv import load_dotenv

load_dotenv()

# Configure root logger
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

from agent_relay.bot.client import run_bot  # noqa: E402

if __name__ == "__main__":
    asyncio.run(run_bot())
