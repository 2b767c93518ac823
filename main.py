"""
Household Coordinator — Entry Point.

Single entry point: `python main.py` starts the operator bot and its job queue.
"""

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from src.bot.telegram_bot import main

if __name__ == "__main__":
    main()
